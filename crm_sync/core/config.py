"""Configuration settings for the CRM sync service."""

from typing import Optional, Dict, Any
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Service Configuration
    service_name: str = "crm-sync-service"
    port: int = 8000
    environment: str = "development"
    debug: bool = False

    # Security
    encryption_key: str
    encryption_salt: str = "crm-sync-credential-vault"

    # Database
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "crm_sync"
    redis_url: str = "redis://localhost:6379"

    # Auth Service
    auth_service_url: str = "http://localhost:8001"

    # Provider calls
    provider_timeout_seconds: float = 15.0
    provider_max_attempts: int = 2
    provider_retry_backoff_seconds: float = 1.0
    token_expiry_skew_seconds: int = 60
    default_token_ttl_seconds: int = 3600

    # Sync runs
    sync_batch_size: int = 500
    sync_history_max_limit: int = 100

    # Rate Limiting
    rate_limit_enabled: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8080"]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Provider specific configurations
PROVIDER_CONFIGS: Dict[str, Dict[str, Any]] = {
    "servicetitan": {
        "name": "ServiceTitan",
        "description": (
            "Complete field service management platform with scheduling, "
            "dispatching, and customer management"
        ),
        "auth_type": "oauth2",
        "token_url": "https://auth.servicetitan.io/connect/token",
        "api_base_url": "https://api.servicetitan.io",
        "scope": "servicetitan.api",
        "features": ["Customer Management", "Job Scheduling", "Invoicing", "Technician Tracking"],
        "rate_limit": {
            "calls": 60,
            "window": 1,  # seconds
        },
    },
    "housecallpro": {
        "name": "Housecall Pro",
        "description": (
            "Simple field service software for scheduling, dispatching, "
            "and customer communication"
        ),
        "auth_type": "api_key",
        "api_base_url": "https://api.housecallpro.com/v1",
        "features": ["Scheduling", "Customer Communication", "Invoicing", "Photo Documentation"],
        "rate_limit": {
            "calls": 100,
            "window": 60,  # 1 minute
        },
    },
}


def get_provider_config(provider: str) -> Optional[Dict[str, Any]]:
    """Get catalog configuration for a provider."""
    return PROVIDER_CONFIGS.get(provider)
