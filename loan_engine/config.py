"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineConfig(BaseSettings):
    """Loan engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LOAN_ENGINE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Money configuration
    currency: str = "NGN"

    # Amortization configuration
    accrual_policy: str = "actual_365_capitalized/v2"
    max_tenor_months: int = 60

    # Tolerances (money stored as strings, like every other amount)
    emi_tolerance: str = "1.00"          # Absorbs rounding drift when matching installments
    discrepancy_tolerance: str = "0.01"  # System vs ledger total paid
    completion_tolerance: str = "0.01"   # Outstanding below this means completed

    # Delinquency configuration
    npl_days_threshold: int = 90
    par_30_days: int = 30
    par_90_days: int = 90

    # Reconciliation configuration
    max_discrepancy_details: int = 50
    reconciliation_workers: int = 1
    reconciliation_deadline_seconds: Optional[float] = None
    integrity_check_type: str = "daily_reconciliation"

    # Clock configuration
    timezone: str = "Africa/Lagos"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    @property
    def emi_tolerance_amount(self) -> Decimal:
        return Decimal(self.emi_tolerance)

    @property
    def discrepancy_tolerance_amount(self) -> Decimal:
        return Decimal(self.discrepancy_tolerance)

    @property
    def completion_tolerance_amount(self) -> Decimal:
        return Decimal(self.completion_tolerance)


# Global configuration instance
config = EngineConfig()


def get_config() -> EngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EngineConfig:
    """Reload configuration from environment"""
    global config
    config = EngineConfig()
    return config
