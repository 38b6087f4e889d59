"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class BankConfig(BaseSettings):
    """Scrooge bank core configuration"""

    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///path, postgresql://...
    lock_timeout_seconds: Optional[float] = 30.0  # None waits forever

    # Ledger configuration
    base_cash_amount: str = "250000.00"
    seed_base_cash_on_startup: bool = True
    base_cash_memo: str = "Initial capitalization"

    # Lending policy
    loanable_deposit_divisor: int = 4  # 25% of deposits on hand
    zero_capacity_on_negative_base_cash: bool = False
    loan_approval_lock_key: str = "bank"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    class Config:
        env_prefix = "SCROOGE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = BankConfig()


def get_config() -> BankConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BankConfig:
    """Reload configuration from environment"""
    global config
    config = BankConfig()
    return config
