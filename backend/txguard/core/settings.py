"""Engine settings and configuration management."""
from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Engine settings with environment variable support.

    Every field can be overridden with a ``TXGUARD_`` prefixed variable
    or through a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TXGUARD_",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
    )

    # App basics
    app_name: str = "TxGuard"
    environment: str = "development"  # development, staging, production
    debug: bool = False
    log_level: str = "INFO"
    logs_dir: str = "data/logs"

    # Chain provider
    rpc_url: str = "http://127.0.0.1:8545"
    rpc_timeout_seconds: float = 5.0
    explorer_api_url: Optional[str] = None
    explorer_api_key: Optional[str] = None
    webhook_url: Optional[str] = None

    # Background monitor intervals (seconds)
    gas_refresh_interval_seconds: int = 15
    position_monitor_interval_seconds: int = 30
    block_sample_interval_seconds: int = 12
    audit_maintenance_interval_seconds: int = 3600
    verification_refresh_interval_seconds: int = 3600
    notification_flush_interval_seconds: int = 10
    block_sample_depth: int = 5

    # Oracle validation
    oracle_max_deviation: float = 0.05
    oracle_max_staleness_seconds: int = 300
    oracle_breaker_cooldown_seconds: int = 600
    oracle_history_capacity: int = 1000
    oracle_reference_window_seconds: int = 600
    oracle_volatility_window: int = 10
    oracle_volatility_delta: float = 0.1
    oracle_min_correlation: float = 0.7
    flash_loan_value_threshold: float = 1000.0

    # MEV detection
    mev_window_seconds: int = 30
    mev_competition_threshold: int = 3
    mev_high_gas_multiplier: float = 2.0

    # Protocol guard
    liquidation_health_threshold: float = 1.1
    large_trade_threshold: float = 100.0
    governance_concentration_threshold: float = 0.2
    sender_prune_interval_seconds: int = 300

    # Transaction policy
    max_gas_price_wei: int = 500 * 10**9
    min_gas_limit: int = 21_000
    max_gas_limit: int = 10_000_000
    max_transaction_value: float = 1000.0
    max_call_data_bytes: int = 100_000
    blacklisted_addresses: List[str] = Field(default_factory=list)

    # Decision thresholds
    flag_risk_threshold: float = 0.6
    block_risk_threshold: float = 0.8
    min_corroborating_signals: int = 2

    # Emergency response
    auto_response_enabled: bool = True
    resource_breaker_cooldown_seconds: int = 300

    # Audit retention
    audit_default_retention_days: int = 90
    audit_high_risk_retention_days: int = 365
    audit_compliance_retention_days: int = 2555
    audit_high_risk_score: float = 0.7

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment name."""
        allowed = {"development", "staging", "production"}
        if v.lower() not in allowed:
            raise ValueError(f"environment must be one of {sorted(allowed)}")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return v.upper()

    @field_validator(
        "oracle_max_deviation", "oracle_volatility_delta", "oracle_min_correlation",
        "flag_risk_threshold", "block_risk_threshold", "audit_high_risk_score",
        "governance_concentration_threshold",
    )
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        """Ratios and thresholds must lie in [0, 1]."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("value must be between 0 and 1")
        return v

    @field_validator("max_gas_limit")
    @classmethod
    def validate_gas_limits(cls, v: int, info) -> int:
        """Upper gas bound must not be below the lower bound."""
        min_limit = info.data.get("min_gas_limit", 0)
        if v < min_limit:
            raise ValueError("max_gas_limit must be >= min_gas_limit")
        return v

    @field_validator("blacklisted_addresses")
    @classmethod
    def normalize_addresses(cls, v: List[str]) -> List[str]:
        """Store blacklisted addresses lower-cased."""
        return [address.lower() for address in v]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Raises:
        ConfigurationError: If the environment holds invalid values
    """
    try:
        return Settings()
    except ValidationError as e:
        raise ConfigurationError(
            "Invalid engine settings",
            details={"errors": e.errors(include_url=False)}
        ) from e


def reload_settings() -> Settings:
    """Drop the cached instance and re-read the environment."""
    get_settings.cache_clear()
    return get_settings()


settings = get_settings()
