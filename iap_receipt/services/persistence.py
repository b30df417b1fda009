"""
Entitlement persistence.

Key-value store of product id -> purchased flag. The Reconciler is the only
writer; the manager reads it at startup to restore previously granted
entitlements.
"""

import json
import os
import tempfile
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from structlog import get_logger

logger = get_logger(__name__)


class EntitlementStore(Protocol):
    """Persistence collaborator used by the Reconciler."""

    def set(self, product_id: str, purchased: bool) -> None: ...

    def get(self, product_id: str) -> bool: ...

    def remove(self, product_id: str) -> None: ...


class InMemoryEntitlementStore:
    """Process-local store, used in tests and when nothing should hit disk."""

    def __init__(self) -> None:
        self._values: dict[str, bool] = {}

    def set(self, product_id: str, purchased: bool) -> None:
        self._values[product_id] = purchased

    def get(self, product_id: str) -> bool:
        return self._values.get(product_id, False)

    def remove(self, product_id: str) -> None:
        self._values.pop(product_id, None)

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._values


class JsonFileEntitlementStore:
    """
    File-backed store; the whole map is rewritten atomically on every change.

    Usage:
        store = JsonFileEntitlementStore(settings.entitlements_path)
        store.set("com.testapp.month", True)
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._values = self._load()

    def _load(self) -> dict[str, bool]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("entitlement_store_corrupt", path=str(self.path), error=str(exc))
            return {}
        if not isinstance(data, dict):
            logger.error("entitlement_store_corrupt", path=str(self.path), error="not an object")
            return {}
        return {str(key): bool(value) for key, value in data.items()}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".entitlements-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(self._values, handle, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def set(self, product_id: str, purchased: bool) -> None:
        with self._lock:
            previous = dict(self._values)
            self._values[product_id] = purchased
            self._flush_or_rollback(previous)

    def get(self, product_id: str) -> bool:
        with self._lock:
            return self._values.get(product_id, False)

    def remove(self, product_id: str) -> None:
        with self._lock:
            if product_id not in self._values:
                return
            previous = dict(self._values)
            del self._values[product_id]
            self._flush_or_rollback(previous)

    def _flush_or_rollback(self, previous: dict[str, bool]) -> None:
        """Write the map; on failure memory goes back to what the file holds."""
        try:
            self._flush()
        except OSError as exc:
            self._values = previous
            logger.error("entitlement_store_write_failed", path=str(self.path), error=str(exc))
            raise


def load_purchased_product_ids(store: EntitlementStore, product_ids: Iterable[str]) -> set[str]:
    """Subset of ``product_ids`` the store remembers as purchased."""
    purchased = set()
    for product_id in product_ids:
        if store.get(product_id):
            purchased.add(product_id)
            logger.info("entitlement_loaded", product_id=product_id)
    return purchased
