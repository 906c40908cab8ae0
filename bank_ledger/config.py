"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Bank ledger configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "bank_ledger.db"

    # Atomic unit configuration
    atomic_timeout_seconds: Optional[float] = 5.0  # None waits forever

    # Account configuration
    default_currency: str = "ZAR"
    account_number_length: int = 10

    # History configuration
    history_page_size: int = 10

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Auth collaborator configuration
    auth_enabled: bool = False
    session_timeout_minutes: int = 30

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    class Config:
        env_prefix = "BANK_LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
