"""
Entitlement manager.

Owns the process-resident entitlement state and runs receipt validation as a
single-flight unit: a purchase completion and a manual restore that arrive
together are serialized, never interleaved.
"""

import threading
from collections.abc import Iterable
from datetime import datetime
from uuid import uuid4

from structlog import get_logger

from iap_receipt.config import Settings
from iap_receipt.exceptions import EntitlementStoreError, ReceiptError
from iap_receipt.observability.logging import log_context
from iap_receipt.observability.metrics import track_validation
from iap_receipt.services.identity import AppIdentity
from iap_receipt.services.persistence import (
    EntitlementStore,
    JsonFileEntitlementStore,
    load_purchased_product_ids,
)
from iap_receipt.services.platform import FileReceiptSource
from iap_receipt.services.products import catalog_product_ids
from iap_receipt.services.receipt import ReceiptValidator
from iap_receipt.services.reconciler import EntitlementState, Reconciler
from iap_receipt.services.remote import RemoteReceiptValidator
from iap_receipt.services.signature import TrustPolicy

logger = get_logger(__name__)


class EntitlementManager:
    """
    Validates receipts and keeps entitlements in sync with them.

    Usage:
        manager = EntitlementManager.from_settings(settings)
        manager.initialize()
        if manager.process_receipt():
            manager.is_purchased("com.testapp.month")
    """

    def __init__(
        self,
        validator: ReceiptValidator,
        store: EntitlementStore,
        remote: RemoteReceiptValidator | None = None,
        local_validation_enabled: bool = True,
        sandbox: bool = False,
    ) -> None:
        self.validator = validator
        self.store = store
        self.remote = remote
        self.local_validation_enabled = local_validation_enabled
        self.sandbox = sandbox
        self.state = EntitlementState()
        self.reconciler = Reconciler(store, self.state)
        self._run_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: EntitlementStore | None = None,
        remote: RemoteReceiptValidator | None = None,
    ) -> "EntitlementManager":
        source = FileReceiptSource.from_settings(settings)
        validator = ReceiptValidator(
            source,
            AppIdentity.from_settings(settings),
            TrustPolicy.from_settings(settings),
        )
        return cls(
            validator=validator,
            store=store or JsonFileEntitlementStore(settings.entitlements_path),
            remote=remote,
            local_validation_enabled=settings.local_validation_enabled,
            sandbox=not settings.is_production or source.is_sandbox,
        )

    @property
    def purchased_product_ids(self) -> frozenset[str]:
        return self.state.product_ids

    def is_purchased(self, product_id: str) -> bool:
        return self.state.contains(product_id)

    def initialize(self, product_ids: Iterable[str] | None = None) -> frozenset[str]:
        """Restore entitlements persisted by earlier runs for the catalog products."""
        ids = catalog_product_ids() if product_ids is None else frozenset(product_ids)
        purchased = load_purchased_product_ids(self.store, ids)
        self.state.replace(purchased)
        logger.info("entitlements_restored", product_ids=sorted(purchased))
        return self.state.product_ids

    def process_receipt(self, now: datetime | None = None) -> bool:
        """
        Validate the current receipt and reconcile entitlements.

        Returns:
            True when the receipt proved a product set (which is now persisted),
            False on any validation failure (persisted state is then untouched)
            or when the store cannot be written (resident state is then unchanged).
        """
        with self._run_lock, log_context(run_id=uuid4().hex):
            if not self.local_validation_enabled:
                return self._process_remote()

            try:
                with track_validation():
                    receipt = self.validator.validate(now=now)
            except ReceiptError as exc:
                logger.warning(
                    "receipt_processing_failure",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return False

            if not self._reconcile(receipt.product_ids):
                return False
            logger.info("receipt_processing_success", product_ids=sorted(receipt.product_ids))
            return True

    def _process_remote(self) -> bool:
        if self.remote is None:
            logger.error("remote_validation_unavailable")
            return False

        try:
            raw = self.validator.read_raw_receipt()
        except ReceiptError:
            return False

        try:
            result = self.remote.validate(raw, sandbox=self.sandbox)
        except Exception:
            logger.exception("remote_validation_failed")
            return False

        if not result.status.is_valid:
            logger.warning("remote_validation_not_valid", status=result.status.name)
            return False

        if not self._reconcile(result.proven_product_ids):
            return False
        logger.info(
            "remote_validation_success",
            product_ids=sorted(result.proven_product_ids),
        )
        return True

    def _reconcile(self, product_ids: frozenset[str]) -> bool:
        try:
            self.reconciler.reconcile(product_ids)
        except EntitlementStoreError as exc:
            logger.error("entitlement_persist_failure", error=exc.reason)
            return False
        return True
