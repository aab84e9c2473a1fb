"""
Shared configuration management for the 254Carbon Authorization Service.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment")
    log_level: str = Field(default="info", description="Root log level")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL for the permission cache")


class AuthorizationConfig(BaseConfig):
    """Authorization engine configuration."""

    service_name: str = "authorization"

    # Caching of effective permission sets
    enable_caching: bool = Field(default=False, description="Cache effective permission sets per user")
    cache_ttl_seconds: int = Field(default=300, ge=1, description="TTL for cached permission sets")
    cache_key_prefix: str = Field(default="", description="Optional namespace prepended to cache keys")

    # Evaluation
    default_effect: Literal["allow", "deny"] = Field(default="deny", description="Decision when nothing matches")
    max_inheritance_depth: int = Field(default=10, ge=0, description="Maximum parent-role traversal depth")

    # Observability
    enable_audit_log: bool = Field(default=True, description="Emit audit events to the configured sink")
    enable_metrics: bool = Field(default=True, description="Record Prometheus metrics")


def get_config(**overrides) -> AuthorizationConfig:
    """Get configuration for the authorization engine."""
    return AuthorizationConfig(**overrides)
