"""
Tests for platform receipt sources.
"""

from uuid import UUID

import pytest
from receipt_builder import DEVICE_ID

from iap_receipt.config import Settings
from iap_receipt.services.platform import FileReceiptSource, parse_device_identifier

DEVICE_UUID = "12345678-1234-5678-1234-567812345678"


class TestParseDeviceIdentifier:
    """Tests for device identifier normalisation."""

    def test_uuid_string(self):
        """UUID strings become their 16 raw bytes."""
        assert parse_device_identifier(DEVICE_UUID) == DEVICE_ID

    def test_uuid(self):
        """UUID objects become their 16 raw bytes."""
        assert parse_device_identifier(UUID(DEVICE_UUID)) == DEVICE_ID

    def test_raw_bytes(self):
        """16 raw bytes pass through."""
        assert parse_device_identifier(DEVICE_ID) == DEVICE_ID

    def test_wrong_length_bytes(self):
        """Raw bytes must be 16 long."""
        with pytest.raises(ValueError, match="16 bytes"):
            parse_device_identifier(b"\x00" * 6)

    def test_invalid_string(self):
        """Non-UUID strings are rejected."""
        with pytest.raises(ValueError):
            parse_device_identifier("not-a-uuid")


class TestFileReceiptSource:
    """Tests for FileReceiptSource."""

    def test_reads_file(self, tmp_path):
        """Receipt bytes are read from the file on every call."""
        path = tmp_path / "receipt"
        path.write_bytes(b"first")
        source = FileReceiptSource(path, DEVICE_UUID)

        assert source.read_receipt() == b"first"
        path.write_bytes(b"second")
        assert source.read_receipt() == b"second"
        assert source.location == str(path)
        assert source.device_identifier() == DEVICE_ID

    def test_missing_file(self, tmp_path):
        """A missing receipt raises OSError."""
        with pytest.raises(OSError):
            FileReceiptSource(tmp_path / "receipt", DEVICE_UUID).read_receipt()

    @pytest.mark.parametrize("name,sandbox", [("receipt", False), ("sandboxReceipt", True)])
    def test_is_sandbox(self, tmp_path, name, sandbox):
        """Sandbox receipts are recognised by their file name."""
        assert FileReceiptSource(tmp_path / name, DEVICE_UUID).is_sandbox is sandbox

    def test_from_settings(self, tmp_path):
        """Path and device identifier come from settings."""
        settings = Settings(receipt_path=str(tmp_path / "receipt"), device_identifier=DEVICE_UUID)
        source = FileReceiptSource.from_settings(settings)

        assert source.location == str(tmp_path / "receipt")
        assert source.device_identifier() == DEVICE_ID
