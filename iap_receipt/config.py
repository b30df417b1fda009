"""
Receipt Verifier Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENTS = ("production", "sandbox", "debug")


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Verifier settings loaded from IAP_* environment variables."""

    # Host application identity - NO DEFAULT, must match the receipt
    bundle_id: str = ""  # e.g., "com.example.app"
    bundle_version: str = ""  # CFBundleVersion of the running build

    # Build environment: "production" requires full certificate chain checks
    environment: str = "production"

    # Trust anchors (DER or PEM)
    production_root_certificate_path: str = "certificates/AppleIncRootCertificate.cer"
    test_certificate_path: str = "certificates/StoreKitTestCertificate.cer"

    # Platform inputs
    receipt_path: str = "StoreKit/receipt"
    device_identifier: str = ""  # identifierForVendor as UUID string

    # Persistence
    entitlements_path: str = "entitlements.json"

    # Remote validation is used only when local validation is disabled
    local_validation_enabled: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    service_name: str = "iap-receipt"
    version: str = "0.1.0"

    # Observability - Metrics
    metrics_enabled: bool = True

    model_config = SettingsConfigDict(
        env_prefix="IAP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        A verifier without the host identity would compare receipts against
        empty strings, so it MUST NOT start.
        """
        errors: list[str] = []

        if not self.bundle_id:
            errors.append("IAP_BUNDLE_ID is required but empty or missing")
        if not self.bundle_version:
            errors.append("IAP_BUNDLE_VERSION is required but empty or missing")
        if self.environment.lower() not in _ENVIRONMENTS:
            errors.append(
                f"IAP_ENVIRONMENT must be one of {', '.join(_ENVIRONMENTS)}, "
                f"got: {self.environment}"
            )

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - VERIFIER CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def is_production(self) -> bool:
        """True when running against the real App Store."""
        return self.environment.lower() == "production"

    @property
    def chain_verification_required(self) -> bool:
        """Only production builds verify the signer's certificate chain."""
        return self.is_production

    @property
    def root_certificate_path(self) -> str:
        """Trusted root for the current environment."""
        if self.is_production:
            return self.production_root_certificate_path
        return self.test_certificate_path


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get verifier settings instance."""
    return settings
