"""
Entitlement reconciliation.

Replaces the persisted entitlements with a freshly validated product set,
touching the store only when the set actually changed.
"""

import threading
from collections.abc import Iterable

from structlog import get_logger

from iap_receipt.exceptions import EntitlementStoreError
from iap_receipt.observability.metrics import metrics
from iap_receipt.services.persistence import EntitlementStore

logger = get_logger(__name__)


class EntitlementState:
    """
    Process-resident set of purchased product ids.

    Single writer: only the Reconciler replaces the set, under ``lock``.
    Readers get a frozen snapshot.
    """

    def __init__(self, product_ids: Iterable[str] = ()) -> None:
        self.lock = threading.RLock()
        self._product_ids: frozenset[str] = frozenset(product_ids)

    @property
    def product_ids(self) -> frozenset[str]:
        with self.lock:
            return self._product_ids

    def contains(self, product_id: str) -> bool:
        return product_id in self.product_ids

    def replace(self, product_ids: Iterable[str]) -> None:
        with self.lock:
            self._product_ids = frozenset(product_ids)


class Reconciler:
    """Diffs validated product ids against the resident state and persists changes."""

    def __init__(self, store: EntitlementStore, state: EntitlementState) -> None:
        self.store = store
        self.state = state

    def reconcile(self, validated: Iterable[str]) -> bool:
        """
        Make the store and the resident state reflect ``validated``.

        Returns:
            True if anything was written, False if the sets were already equal

        Raises:
            EntitlementStoreError: The store failed; it is restored to the resident
                set where possible and the resident set is left unchanged
        """
        new_ids = frozenset(validated)

        with self.state.lock:
            old_ids = self.state.product_ids
            if old_ids == new_ids:
                logger.info("entitlements_unchanged", product_count=len(new_ids))
                metrics.record_reconciliation(changed=False)
                return False

            try:
                for product_id in old_ids:
                    self.store.remove(product_id)
                for product_id in new_ids:
                    self.store.set(product_id, True)
            except OSError as exc:
                logger.error("entitlements_persist_failed", error=str(exc))
                self._restore(old_ids, new_ids)
                raise EntitlementStoreError(str(exc)) from exc
            self.state.replace(new_ids)

        logger.info(
            "entitlements_reconciled",
            removed=sorted(old_ids - new_ids),
            added=sorted(new_ids - old_ids),
            product_count=len(new_ids),
        )
        metrics.record_reconciliation(changed=True)
        return True

    def _restore(self, old_ids: frozenset[str], new_ids: frozenset[str]) -> None:
        """Put the store back to the resident set after a failed write."""
        try:
            for product_id in new_ids - old_ids:
                self.store.remove(product_id)
            for product_id in old_ids:
                self.store.set(product_id, True)
        except OSError as exc:
            logger.error("entitlements_restore_failed", error=str(exc))
