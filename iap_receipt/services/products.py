"""
Product catalog configuration.

Lists the App Store product ids the app sells. Product IDs must match those
configured in App Store Connect; the manager restores persisted entitlements
for exactly these ids at startup.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Product:
    """App Store product configuration."""

    product_id: str  # App Store Connect product ID
    title: str  # Short label shown next to the price
    subscription: bool = False

    def __post_init__(self) -> None:
        """Validate product configuration."""
        if not self.product_id:
            raise ValueError("Product ID required")
        if not self.title:
            raise ValueError("Title required")


PREMIUM_MONTH_PRODUCT_ID = "com.testapp.month"
PREMIUM_YEAR_PRODUCT_ID = "com.testapp.year"

# Product catalog (must match App Store Connect configuration)
PRODUCTS: dict[str, Product] = {
    PREMIUM_MONTH_PRODUCT_ID: Product(
        product_id=PREMIUM_MONTH_PRODUCT_ID,
        title="Monthly",
        subscription=True,
    ),
    PREMIUM_YEAR_PRODUCT_ID: Product(
        product_id=PREMIUM_YEAR_PRODUCT_ID,
        title="7 days free then",  # yearly plan starts with a free week
        subscription=True,
    ),
}


def get_product(product_id: str) -> Product:
    """
    Get product configuration by ID.

    Raises:
        ValueError: If product ID not found
    """
    product = PRODUCTS.get(product_id)
    if not product:
        raise ValueError(f"Unknown product ID: {product_id}")
    return product


def catalog_product_ids() -> frozenset[str]:
    return frozenset(PRODUCTS)
