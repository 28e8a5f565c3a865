"""
Shared configuration management for the ChatRoom services.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CHATROOM_",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_socket_timeout: float = Field(default=5.0)
    postgres_dsn: str = Field(default="postgres://localhost:5432/chatroom")
    postgres_pool_min_size: int = Field(default=2)
    postgres_pool_max_size: int = Field(default=10)
    postgres_command_timeout: float = Field(default=30.0)

    # Sticker entitlement cache
    sticker_cache_ttl_seconds: int = Field(default=3600, gt=0)
    cache_warm_concurrency: int = Field(default=5, ge=1)

    # Wallet
    wallet_min_charge: int = Field(default=1, ge=1)
    wallet_max_charge: int = Field(default=1000, ge=1)

    # Tracing
    enable_tracing: bool = Field(default=False)
    otel_exporter: Optional[str] = Field(default=None)
    enable_console_tracing: bool = Field(default=False)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port)
