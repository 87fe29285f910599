"""
Configuration module for converge.

Loads configuration from environment variables.
Supports plugin-based providers with provider-specific configuration.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class StateConfig:
    """State store selection."""

    backend: str = "local"  # 'local' or 'postgres'
    path: str = "converge.state.json"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            backend=os.getenv("CONVERGE_STATE_BACKEND", "local"),
            path=os.getenv("CONVERGE_STATE_PATH", "converge.state.json"),
        )


@dataclass
class DatabaseConfig:
    """PostgreSQL configuration for the postgres state backend."""

    host: str = "localhost"
    port: int = 5432
    database: str = "converge"
    user: str = "converge"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 1
    max_pool_size: int = 10

    @classmethod
    def from_env(cls):
        """
        Load from environment variables.

        Raises:
            ValueError: If DB_PASSWORD is not set
        """
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "converge"),
            user=os.getenv("DB_USER", "converge"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "1")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
        )


@dataclass
class ExecutorConfig:
    """Apply concurrency and retry configuration."""

    parallelism: int = 10

    # Retry of transient provider errors
    retry_max_attempts: int = 5
    backoff_base_delay: float = 1.0  # base delay in seconds
    backoff_max_delay: float = 30.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    def __post_init__(self):
        if self.parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be at least 1")

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            parallelism=int(os.getenv("CONVERGE_PARALLELISM", "10")),
            retry_max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "5")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1.0")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "30.0")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class ProviderConfig:
    """Provider plugin configuration."""

    # List of enabled provider names (empty = use all registered providers)
    enabled_providers: List[str] = field(default_factory=list)

    # Provider-specific configurations keyed by provider name
    provider_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        enabled_str = os.getenv("ENABLED_PROVIDERS", "")
        enabled = (
            [p.strip() for p in enabled_str.split(",") if p.strip()]
            if enabled_str
            else []
        )

        # Load provider configs from JSON environment variable
        provider_configs = {}
        if os.getenv("PROVIDER_CONFIGS"):
            try:
                provider_configs = json.loads(os.getenv("PROVIDER_CONFIGS"))
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring malformed PROVIDER_CONFIGS: {e}")

        return cls(enabled_providers=enabled, provider_configs=provider_configs)

    def get_provider_config(self, provider_name: str) -> Dict[str, Any]:
        """Get configuration for a specific provider."""
        return self.provider_configs.get(provider_name, {})


@dataclass
class Config:
    """Main configuration object."""

    state: StateConfig
    executor: ExecutorConfig
    providers: ProviderConfig
    database: Optional[DatabaseConfig] = None
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls):
        """
        Load all configuration from environment variables.

        Database configuration is only loaded for the postgres backend.
        """
        state = StateConfig.from_env()
        return cls(
            state=state,
            executor=ExecutorConfig.from_env(),
            providers=ProviderConfig.from_env(),
            database=DatabaseConfig.from_env() if state.backend == "postgres" else None,
            log_level=os.getenv("LOG_LEVEL", "WARNING"),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            state=StateConfig(),
            executor=ExecutorConfig(),
            providers=ProviderConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
