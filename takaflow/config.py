"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class TakaflowConfig(BaseSettings):
    """Takaflow transfer core configuration"""
    
    # Storage configuration
    storage_type: str = "sqlite"  # memory, sqlite or postgresql
    database_url: str = "takaflow.db"  # SQLite path or PostgreSQL DSN
    database_pool_size: int = 20  # PostgreSQL connections shared by worker threads
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    
    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_expiry_hours: int = 1
    jwt_algorithm: str = "HS256"
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    transfer_fee: int = 5
    fee_threshold: int = 100  # Fee applies to amounts strictly above this
    max_transfer_amount: int = 1_000_000_000
    transaction_id_length: int = 10
    transaction_id_max_attempts: int = 5
    
    # History page sizes
    agent_history_page_size: int = 10
    default_history_page_size: int = 20
    
    class Config:
        env_prefix = "TAKAFLOW_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = TakaflowConfig()


def get_config() -> TakaflowConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> TakaflowConfig:
    """Reload configuration from environment"""
    global config
    config = TakaflowConfig()
    return config
