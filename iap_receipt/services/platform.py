"""
Platform inputs for receipt validation.

The platform supplies the raw receipt bytes and a stable 16-byte device
identifier. FileReceiptSource reads both from local configuration.
"""

from pathlib import Path
from typing import Protocol
from uuid import UUID

from iap_receipt.config import Settings


class ReceiptSource(Protocol):
    """Platform collaborator providing receipt bytes and the device identifier."""

    @property
    def location(self) -> str: ...

    def read_receipt(self) -> bytes: ...

    def device_identifier(self) -> bytes: ...


def parse_device_identifier(value: str | bytes | UUID) -> bytes:
    """Normalise a UUID string, UUID or raw 16 bytes into 16 bytes."""
    if isinstance(value, UUID):
        return value.bytes
    if isinstance(value, bytes):
        if len(value) != 16:
            raise ValueError(f"Device identifier must be 16 bytes, got {len(value)}")
        return value
    return UUID(value).bytes


class FileReceiptSource:
    """Receipt stored as a file (the app bundle's appStoreReceiptURL)."""

    def __init__(self, path: str | Path, device_identifier: str | bytes | UUID) -> None:
        self.path = Path(path)
        self._device_identifier = parse_device_identifier(device_identifier)

    @classmethod
    def from_settings(cls, settings: Settings) -> "FileReceiptSource":
        return cls(settings.receipt_path, settings.device_identifier)

    @property
    def location(self) -> str:
        return str(self.path)

    @property
    def is_sandbox(self) -> bool:
        """TestFlight and sandbox builds name their receipt ``sandboxReceipt``."""
        return self.path.name == "sandboxReceipt"

    def read_receipt(self) -> bytes:
        return self.path.read_bytes()

    def device_identifier(self) -> bytes:
        return self._device_identifier
