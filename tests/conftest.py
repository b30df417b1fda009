"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for receipt validation tests:
- Certificate hierarchy (root -> intermediate -> leaf) and a standalone
  self-signed test certificate
- Signed receipts built from DER payloads
- Receipt sources, entitlement stores and validators
"""

import os
from pathlib import Path

import pytest

# Set required environment variables BEFORE importing package modules
os.environ.setdefault("IAP_BUNDLE_ID", "com.example.app")
os.environ.setdefault("IAP_BUNDLE_VERSION", "1.0")
os.environ.setdefault("IAP_ENVIRONMENT", "debug")
os.environ.setdefault("IAP_DEVICE_IDENTIFIER", "12345678-1234-5678-1234-567812345678")

from receipt_builder import (  # noqa: E402
    SigningIdentity,
    StaticReceiptSource,
    build_payload,
    make_certificate,
    sign_payload,
)

from iap_receipt.services.identity import AppIdentity  # noqa: E402
from iap_receipt.services.persistence import InMemoryEntitlementStore  # noqa: E402
from iap_receipt.services.receipt import ReceiptValidator  # noqa: E402
from iap_receipt.services.signature import TrustPolicy  # noqa: E402

# ============================================================================
# Certificate Fixtures (session scoped - RSA key generation is slow)
# ============================================================================


@pytest.fixture(scope="session")
def root_ca() -> SigningIdentity:
    """Trusted root certificate authority."""
    return make_certificate("Test Root CA", ca=True)


@pytest.fixture(scope="session")
def intermediate_ca(root_ca: SigningIdentity) -> SigningIdentity:
    """Intermediate authority issued by the root."""
    return make_certificate("Test Worldwide Developer Relations", issuer=root_ca, ca=True)


@pytest.fixture(scope="session")
def receipt_signer(intermediate_ca: SigningIdentity) -> SigningIdentity:
    """Leaf certificate that signs receipts, chained to the root."""
    return make_certificate("Test Receipt Signing", issuer=intermediate_ca)


@pytest.fixture(scope="session")
def test_certificate() -> SigningIdentity:
    """Self-signed certificate not linked to any root (StoreKit testing)."""
    return make_certificate("StoreKit Testing")


@pytest.fixture
def root_certificate_path(tmp_path: Path, root_ca: SigningIdentity) -> Path:
    path = tmp_path / "AppleIncRootCertificate.cer"
    path.write_bytes(root_ca.der)
    return path


@pytest.fixture
def test_certificate_path(tmp_path: Path, test_certificate: SigningIdentity) -> Path:
    path = tmp_path / "StoreKitTestCertificate.cer"
    path.write_bytes(test_certificate.der)
    return path


@pytest.fixture
def production_policy(root_certificate_path: Path) -> TrustPolicy:
    return TrustPolicy(str(root_certificate_path), chain_verification_required=True)


@pytest.fixture
def debug_policy(test_certificate_path: Path) -> TrustPolicy:
    return TrustPolicy(str(test_certificate_path), chain_verification_required=False)


# ============================================================================
# Receipt Fixtures
# ============================================================================


@pytest.fixture
def payload() -> bytes:
    """Well-formed receipt payload with two purchased products."""
    return build_payload(product_ids=("com.testapp.month", "com.testapp.year"))


@pytest.fixture
def production_receipt(
    payload: bytes,
    receipt_signer: SigningIdentity,
    intermediate_ca: SigningIdentity,
) -> bytes:
    """Receipt signed by the leaf, embedding the intermediate."""
    return sign_payload(payload, receipt_signer, extra_certificates=[intermediate_ca])


@pytest.fixture
def test_receipt(payload: bytes, test_certificate: SigningIdentity) -> bytes:
    """Receipt signed by the self-signed StoreKit test certificate."""
    return sign_payload(payload, test_certificate)


@pytest.fixture
def app_identity() -> AppIdentity:
    return AppIdentity(bundle_id="com.example.app", bundle_version="1.0")


@pytest.fixture
def store() -> InMemoryEntitlementStore:
    return InMemoryEntitlementStore()


@pytest.fixture
def debug_validator(
    test_receipt: bytes,
    app_identity: AppIdentity,
    debug_policy: TrustPolicy,
) -> ReceiptValidator:
    """Validator over the StoreKit test receipt with chain checks disabled."""
    return ReceiptValidator(StaticReceiptSource(test_receipt), app_identity, debug_policy)
