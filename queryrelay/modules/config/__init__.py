"""
Config Module - Black Box Interface

Purpose: Application configuration management
Interface: get_config(), set_config(), load_from_env()
Hidden: Config sources, validation logic, environment parsing

Can be replaced with different config systems (Consul, etcd, AWS Parameter Store).
"""

import os
from typing import Any, Dict


# Configuration Contract: Required and Optional Keys
# This defines the black box interface - what the config module guarantees to provide

REQUIRED_CONFIG_KEYS = {
    "redis_host": "Redis server hostname",
    "redis_port": "Redis server port number",
    "redis_db": "Redis database number",
    "host": "API server bind address",
    "port": "API server port",
    "log_level": "Logging level (DEBUG, INFO, WARNING, ERROR)",
    "poll_interval": "Seconds between command re-reads while watching",
    "watch_timeout": "Maximum duration of one watch in seconds",
    "claim_max_attempts": "Store attempts per executor step before giving up",
}

OPTIONAL_CONFIG_KEYS = {
    "redis_password": {
        "description": "Redis authentication password",
        "default": None,
    },
    "debug": {
        "description": "Enable debug mode",
        "default": False,
    },
    "store_backend": {
        "description": "Shared store backend: redis or memory",
        "default": "redis",
    },
    "watch_mode": {
        "description": "Watch mode: push (subscription) or pull (interval re-read)",
        "default": "push",
    },
    "row_idle_timeout": {
        "description": "Seconds a watch stream waits for further rows on an unfinalized channel",
        "default": 10.0,
    },
}

STORE_BACKENDS = ("redis", "memory")
WATCH_MODES = ("push", "pull")


class ConfigModule:
    """Configuration management module."""

    def __init__(self):
        """Initialize with environment variables."""
        self._config = self._load_from_env()
        self._validate_required_keys()
        self._validate_choices()

    def _validate_required_keys(self) -> None:
        """
        Validate that all required configuration keys are present.

        Raises:
            ValueError: If required keys are missing
        """
        missing_keys = []
        for key in REQUIRED_CONFIG_KEYS:
            if key not in self._config or self._config[key] is None:
                missing_keys.append(key)

        if missing_keys:
            raise ValueError(
                f"Missing required configuration keys: {', '.join(missing_keys)}. "
                f"Check environment variables and deployment configuration."
            )

    def _validate_choices(self) -> None:
        if self._config["store_backend"] not in STORE_BACKENDS:
            raise ValueError(
                f"STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}, "
                f"got {self._config['store_backend']!r}"
            )
        if self._config["watch_mode"] not in WATCH_MODES:
            raise ValueError(
                f"WATCH_MODE must be one of {', '.join(WATCH_MODES)}, "
                f"got {self._config['watch_mode']!r}"
            )
        if self._config["poll_interval"] <= 0:
            raise ValueError("WATCH_POLL_INTERVAL must be positive")
        if self._config["claim_max_attempts"] < 1:
            raise ValueError("CLAIM_MAX_ATTEMPTS must be at least 1")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment."""
        # Parse Redis port (might be in tcp://host:port format from K8s)
        redis_port_env = os.getenv("REDIS_PORT", "6379")
        if redis_port_env.startswith("tcp://"):
            # Extract port from tcp://host:port format
            redis_port = int(redis_port_env.split(":")[-1])
        else:
            redis_port = int(redis_port_env)

        return {
            # Redis settings
            "redis_host": os.getenv("REDIS_HOST", "localhost"),
            "redis_port": redis_port,
            "redis_db": int(os.getenv("REDIS_DB", "0")),
            "redis_password": os.getenv("REDIS_PASSWORD"),  # Optional: for authenticated Redis
            "store_backend": os.getenv("STORE_BACKEND", "redis").lower(),
            # API settings
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8080")),
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "debug": os.getenv("DEBUG", "false").lower() == "true",
            # Protocol settings
            "watch_mode": os.getenv("WATCH_MODE", "push").lower(),
            "poll_interval": float(os.getenv("WATCH_POLL_INTERVAL", "2.0")),
            "watch_timeout": float(os.getenv("WATCH_TIMEOUT", "300")),
            "claim_max_attempts": int(os.getenv("CLAIM_MAX_ATTEMPTS", "3")),
            "row_idle_timeout": float(os.getenv("ROW_IDLE_TIMEOUT", "10")),
        }

    @property
    def redis_url(self) -> str:
        """Connection URL assembled from the Redis settings."""
        return (
            f"redis://{self._config['redis_host']}:{self._config['redis_port']}"
            f"/{self._config['redis_db']}"
        )

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value."""
        self._config[key] = value

    def get_all(self) -> Dict[str, Any]:
        """Get all configuration values."""
        return self._config.copy()

    @staticmethod
    def get_config_schema() -> Dict[str, Any]:
        """
        Get the configuration schema (contract) for this module.

        Returns:
            Dictionary with 'required' and 'optional' key specifications

        Example:
            >>> schema = ConfigModule.get_config_schema()
            >>> print(schema['required']['redis_host'])
            'Redis server hostname'
        """
        return {
            "required": REQUIRED_CONFIG_KEYS.copy(),
            "optional": OPTIONAL_CONFIG_KEYS.copy(),
        }


# Singleton instance
_instance = None


def get_config() -> ConfigModule:
    """Get the configuration module singleton."""
    global _instance
    if _instance is None:
        _instance = ConfigModule()
    return _instance


def reset_config() -> None:
    """Drop the singleton so the next get_config() re-reads the environment."""
    global _instance
    _instance = None


__all__ = ["get_config", "reset_config", "ConfigModule", "REQUIRED_CONFIG_KEYS", "OPTIONAL_CONFIG_KEYS"]
