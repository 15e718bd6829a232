"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class WalletConfig(BaseSettings):
    """Banka wallet core configuration"""

    # Storage configuration
    database_path: str = "wallet.db"
    use_sqlite: bool = True

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_workers: int = 1

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    auth_enabled: bool = True
    pin_hash_n: int = 16384  # scrypt cost factor

    # Logging configuration
    log_level: str = "INFO"
    log_file: Optional[str] = None  # If None, logs to stdout

    # Institution
    bank_name: str = "Banka Bank"
    local_timezone: str = "Africa/Lagos"  # Day boundaries for the daily tax counter

    # Business rules configuration
    min_transfer_amount: str = "100"
    min_deposit_amount: str = "100"

    # Tax configuration
    vat_rate: str = "0.1075"
    free_transactions_per_day: int = 5
    nibss_fee_amount: str = "50"
    nibss_fee_threshold: str = "10000"
    exempt_internal_transfers: bool = False
    tax_cache_ttl_seconds: int = 86400

    # Settlement configuration
    credit_surcharge_threshold: str = "10000"
    credit_surcharge_amount: str = "50"
    duplicate_debit_window_seconds: int = 300

    # Inter-bank rail
    interbank_base_url: str = "https://nibss-test.onrender.com"
    interbank_secret_key: str = ""
    interbank_webhook_secret: str = ""

    # Card / deposit rail
    card_base_url: str = "https://api.paystack.co"
    card_secret_key: str = ""
    deposit_callback_url: str = ""

    rail_timeout_seconds: float = 10.0

    # Auto-charge scheduler
    auto_charge_enabled: bool = True
    auto_charge_tick_seconds: int = 60

    class Config:
        env_prefix = "BANKA_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = WalletConfig()


def get_config() -> WalletConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> WalletConfig:
    """Reload configuration from environment"""
    global config
    config = WalletConfig()
    return config
