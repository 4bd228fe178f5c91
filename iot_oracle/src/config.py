"""
Oracle configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded URLs or credentials.

CHANGELOG:
- 2026-10-07: Add ANCHOR_RETRY_CLIENT_ERRORS policy switch (STORY-116)
- 2026-10-03: Add Redis lease settings (STORY-109)
- 2026-10-02: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from iot_oracle.src.normalizer import Precision


class OracleSettings(BaseSettings):
    """Oracle daemon configuration.

    Attributes:
        database_path: SQLite file backing the telemetry store.
        redis_url: Redis URL for cross-process leases (optional).
        anchor_enabled: Submit daily roots to the anchoring service.
        adapter_api_url: Anchoring service base URL (must be HTTPS).
        adapter_api_key: Bearer key for the anchoring service.
        anchor_max_attempts: Total submission attempts per anchor call.
        anchor_base_delay_s: First backoff delay; doubles per attempt.
        anchor_retry_client_errors: Retry 4xx responses from the service.
        anchor_timeout_s: Per-request HTTP timeout.
        anchor_delay_s: Delay between a daily digest and its anchor job.
        hash_precision_*_dp: Decimal places used to normalize and hash.
        default_baseline_factor_kg_per_kwh: Factor for site entries that
            omit one.
        daily_run_hour_utc / daily_run_minute_utc: Daily trigger time.
        sites_file: JSON file with the site list, loaded at startup.
        health_path: Health JSON file path.
        lock_ttl_s: Redis lease time-to-live.
        lock_wait_s: Max time to wait for a Redis lease.
    """

    database_path: str = "/data/oracle.db"
    redis_url: str | None = None

    anchor_enabled: bool = False
    adapter_api_url: str | None = None
    adapter_api_key: str | None = None
    anchor_max_attempts: int = 4
    anchor_base_delay_s: float = 1.0
    anchor_retry_client_errors: bool = True
    anchor_timeout_s: float = 10.0
    anchor_delay_s: float = 5.0

    hash_precision_power_dp: int = 3
    hash_precision_energy_dp: int = 2
    hash_precision_temp_dp: int = 1
    hash_precision_irr_dp: int = 1

    default_baseline_factor_kg_per_kwh: float = 0.82

    daily_run_hour_utc: int = 1
    daily_run_minute_utc: int = 0

    sites_file: str | None = None
    health_path: str = "/data/health.json"

    lock_ttl_s: float = 60.0
    lock_wait_s: float = 30.0

    @field_validator("adapter_api_url")
    @classmethod
    def adapter_api_url_must_be_https(cls, v: str | None) -> str | None:
        """Validate that the anchoring service URL uses HTTPS.

        Empty strings are treated as unset so a blank env var does not
        count as configured.
        """
        if not v:
            return None
        if not v.lower().startswith("https://"):
            raise ValueError(f"ADAPTER_API_URL must use HTTPS (got: '{v[:20]}...').")
        return v.rstrip("/")

    @field_validator("anchor_max_attempts")
    @classmethod
    def anchor_max_attempts_must_be_bounded(cls, v: int) -> int:
        """Validate the attempt budget is between 1 and 10."""
        if v < 1 or v > 10:
            raise ValueError("ANCHOR_MAX_ATTEMPTS must be >= 1 and <= 10")
        return v

    @field_validator("anchor_base_delay_s", "anchor_delay_s")
    @classmethod
    def delays_must_be_non_negative(cls, v: float) -> float:
        """Validate delays are non-negative."""
        if v < 0:
            raise ValueError("Delays must be >= 0")
        return v

    @field_validator(
        "hash_precision_power_dp",
        "hash_precision_energy_dp",
        "hash_precision_temp_dp",
        "hash_precision_irr_dp",
    )
    @classmethod
    def precision_must_be_valid(cls, v: int) -> int:
        """Validate decimal places are between 0 and 6."""
        if v < 0 or v > 6:
            raise ValueError("HASH_PRECISION_*_DP must be between 0 and 6")
        return v

    @field_validator("default_baseline_factor_kg_per_kwh")
    @classmethod
    def baseline_factor_must_be_positive(cls, v: float) -> float:
        """Validate the default baseline factor is positive."""
        if v <= 0:
            raise ValueError("DEFAULT_BASELINE_FACTOR_KG_PER_KWH must be > 0")
        return v

    @field_validator("daily_run_hour_utc")
    @classmethod
    def daily_hour_must_be_valid(cls, v: int) -> int:
        """Validate the daily run hour is 0-23."""
        if v < 0 or v > 23:
            raise ValueError("DAILY_RUN_HOUR_UTC must be between 0 and 23")
        return v

    @field_validator("daily_run_minute_utc")
    @classmethod
    def daily_minute_must_be_valid(cls, v: int) -> int:
        """Validate the daily run minute is 0-59."""
        if v < 0 or v > 59:
            raise ValueError("DAILY_RUN_MINUTE_UTC must be between 0 and 59")
        return v

    @model_validator(mode="after")
    def _blank_redis_url_is_unset(self) -> OracleSettings:
        """Treat an empty REDIS_URL as not configured."""
        if not self.redis_url:
            self.redis_url = None
        return self

    @property
    def precision(self) -> Precision:
        """Normalization precision built from the HASH_PRECISION_* vars."""
        return Precision(
            power=self.hash_precision_power_dp,
            energy=self.hash_precision_energy_dp,
            temp=self.hash_precision_temp_dp,
            irradiance=self.hash_precision_irr_dp,
        )

    @property
    def anchor_configured(self) -> bool:
        """True when both the adapter URL and key are present."""
        return bool(self.adapter_api_url and self.adapter_api_key)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
