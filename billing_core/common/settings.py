"""Environment-driven configuration for the billing reconciliation core.

All tunables live on a single :class:`CoreSettings` model.  Services build it
once with :meth:`CoreSettings.from_env` and pass it down explicitly; nothing
reads ``os.environ`` after start-up.
"""

from __future__ import annotations

import json
import os

from pydantic import BaseModel, Field, field_validator


def _validate_country_code(value: str) -> str:
    if not value or not value.isdigit() or value.startswith("0"):
        raise ValueError(f"Invalid country code {value!r}: expected digits without a leading zero")
    return value


class CoreSettings(BaseModel):
    """Runtime configuration shared by stores, processors and the API."""

    mongodb_uri: str = "mongodb://localhost:27017"
    database_prefix: str = "newsportal_"
    default_tenant: str = "default"
    default_country_code: str = "49"
    tenant_country_codes: dict[str, str] = Field(default_factory=dict)
    max_pool_size: int = Field(50, ge=1)
    store_timeout_seconds: float = Field(10.0, gt=0)
    heavy_user_threshold: int = Field(3, ge=1)
    session_history_cap: int = Field(100, ge=1)
    purchase_ref_cap: int = Field(500, ge=1)
    major_unit_threshold: int = Field(100, ge=0)
    import_error_cap: int = Field(1000, ge=0)
    callback_secret: str = ""
    environment: str = "development"

    @field_validator("default_country_code")
    @classmethod
    def _check_default_country_code(cls, v: str) -> str:
        return _validate_country_code(v)

    @field_validator("tenant_country_codes")
    @classmethod
    def _check_tenant_country_codes(cls, v: dict[str, str]) -> dict[str, str]:
        return {tenant: _validate_country_code(code) for tenant, code in v.items()}

    def country_code_for(self, tenant_id: str) -> str:
        """Country code used to rewrite local-format numbers for *tenant_id*."""
        return self.tenant_country_codes.get(tenant_id, self.default_country_code)

    @classmethod
    def from_env(cls) -> CoreSettings:
        """Build settings from ``BILLING_*`` / ``MONGODB_URI`` environment variables."""
        raw_codes = os.getenv("BILLING_TENANT_COUNTRY_CODES", "")
        return cls(
            mongodb_uri=os.getenv("MONGODB_URI", "mongodb://localhost:27017"),
            database_prefix=os.getenv("BILLING_DB_PREFIX", "newsportal_"),
            default_tenant=os.getenv("BILLING_DEFAULT_TENANT", "default"),
            default_country_code=os.getenv("BILLING_DEFAULT_COUNTRY_CODE", "49"),
            tenant_country_codes=json.loads(raw_codes) if raw_codes else {},
            max_pool_size=int(os.getenv("BILLING_MAX_POOL_SIZE", "50")),
            store_timeout_seconds=float(os.getenv("BILLING_STORE_TIMEOUT_S", "10")),
            heavy_user_threshold=int(os.getenv("BILLING_HEAVY_USER_THRESHOLD", "3")),
            session_history_cap=int(os.getenv("BILLING_SESSION_HISTORY_CAP", "100")),
            purchase_ref_cap=int(os.getenv("BILLING_PURCHASE_REF_CAP", "500")),
            major_unit_threshold=int(os.getenv("BILLING_MAJOR_UNIT_THRESHOLD", "100")),
            import_error_cap=int(os.getenv("BILLING_IMPORT_ERROR_CAP", "1000")),
            callback_secret=os.getenv("BILLING_CALLBACK_SECRET", ""),
            environment=os.getenv("BILLING_ENV", "development"),
        )
