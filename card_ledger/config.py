"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Card ledger configuration"""
    
    # Storage configuration
    storage_backend: str = "json"  # memory, json or sqlite
    data_dir: str = "data"
    sqlite_path: str = "card_ledger.db"
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr
    configure_logging: bool = False  # Install the card_ledger handler when a LedgerSystem is built
    
    # Security configuration
    max_failed_attempts: int = 3
    temporary_lock_minutes: int = 15
    pin_hash_cost: int = 16384  # scrypt N parameter, power of two
    salt_length: int = 16
    
    # Business rules configuration
    withdrawal_denomination: Decimal = Decimal("100")
    max_deposit_amount: Decimal = Decimal("1000000")
    max_transfer_amount: Decimal = Decimal("1000000")
    
    # Administrator created on load when missing
    admin_card_number: str = "9999888877776666"
    admin_initial_pin: str = "8888"
    admin_holder_name: str = "Administrator"
    admin_initial_balance: Decimal = Decimal("50000")
    admin_withdraw_limit: Decimal = Decimal("10000")
    seed_demo_accounts: bool = False
    
    # Analytics configuration
    forecast_window_days: int = 90
    forecast_decay: Decimal = Decimal("0.05")
    regression_min_points: int = 5
    simple_trend_sample: int = 10
    simple_trend_days: int = 30
    
    # Encryption configuration
    encryption_enabled: bool = False  # Must opt-in
    encryption_master_key: str = ""  # CARD_LEDGER_ENCRYPTION_MASTER_KEY env var
    
    class Config:
        env_prefix = "CARD_LEDGER_"
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
