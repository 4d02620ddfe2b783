"""
Configuration module for the FarmSync records server.

This module centralizes server configuration using environment variables
with appropriate defaults.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class ServerConfig:
    """HTTP server configuration settings."""
    host: str = "0.0.0.0"
    port: int = 8080
    environment: str = "production"
    log_level: str = "INFO"
    structured_logging: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on')


def get_env_int(key: str, default: int) -> int:
    """Get integer value from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def get_env_list(key: str, default: Optional[List[str]] = None, separator: str = ',') -> List[str]:
    value = os.getenv(key, '')
    if not value:
        return list(default or [])
    return [item.strip() for item in value.split(separator) if item.strip()]


def load_config() -> ServerConfig:
    """Load configuration from environment variables."""
    return ServerConfig(
        host=os.getenv("FARMSYNC_HTTP_HOST", "0.0.0.0"),
        port=get_env_int("FARMSYNC_HTTP_PORT", 8080),
        environment=os.getenv("FARMSYNC_ENVIRONMENT", "production"),
        log_level=os.getenv("FARMSYNC_LOG_LEVEL", "INFO").upper(),
        structured_logging=get_env_bool("FARMSYNC_STRUCTURED_LOGGING", False),
        cors_origins=get_env_list("FARMSYNC_CORS_ORIGINS", ["*"])
    )


# Global configuration instance
_config: Optional[ServerConfig] = None


def get_config() -> ServerConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> ServerConfig:
    """Reload configuration from environment variables."""
    global _config
    _config = load_config()
    return _config
