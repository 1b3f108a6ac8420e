"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class CardLedgerConfig(BaseSettings):
    """Bank cards ledger configuration"""

    # Storage configuration
    database_url: str = "sqlite:///bankcards.db"  # memory:// for in-memory storage

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Encryption configuration
    encryption_master_key: str = ""  # BANKCARDS_ENCRYPTION_MASTER_KEY env var
    encryption_provider: str = "fernet"  # fernet or aesgcm
    encryption_retired_keys: str = ""  # Comma separated, decrypt-only during rotation
    encryption_salt: str = "bank_cards_salt_v1"

    # Card issuing rules
    card_number_prefix: str = "4000"
    card_number_length: int = 16
    card_validity_years: int = 3

    # Block request rules
    block_reason_max_length: int = 500

    # Expiration sweep, daily at HH:MM local time
    expiration_run_at: str = "00:00"

    class Config:
        env_prefix = "BANKCARDS_"
        env_file = ".env"
        case_sensitive = False

    @property
    def retired_keys(self) -> List[str]:
        """Retired encryption keys in the order they were configured"""
        return [key.strip() for key in self.encryption_retired_keys.split(",") if key.strip()]


# Global configuration instance
config = CardLedgerConfig()


def get_config() -> CardLedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> CardLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = CardLedgerConfig()
    return config
