"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import Field
from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Ledger engine configuration"""
    
    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///ledger.db, postgresql://...
    
    # Concurrency configuration
    enable_optimistic_locking: bool = False  # False = exclusive ordered locks
    max_retries: int = Field(default=3, ge=0)  # Retries after the first attempt
    retry_backoff_seconds: float = Field(default=0.01, ge=0)
    lock_timeout_seconds: float = Field(default=5.0, gt=0)
    
    # Integrity configuration
    reconcile_on_read: bool = False
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    class Config:
        env_prefix = "LEDGER_"
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
