"""
Configuration module for the Schema Registry Operator.

Loads configuration from environment variables. Every value has a default
so the operator can start with an empty environment.
"""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_FINALIZER = "registry.strimzi.io/schema-finalizer"


@dataclass
class ControllerConfig:
    """Controller work queue and reconciliation timing configuration."""

    max_concurrent_reconciles: int = 5
    reconcile_timeout: int = 120  # seconds, bounds a whole reconcile pass

    # Fixed requeue intervals
    health_check_interval: int = 300  # seconds (5 minutes)
    registration_retry_interval: int = 60  # seconds (1 minute)

    # Registry request timeout used when a SchemaRegistry leaves it unset or 0
    default_request_timeout: int = 30

    # Remote cleanup attempts before a deleting Schema releases its finalizer
    max_deletion_attempts: int = 5

    # Full relist of every watched resource; 0 disables
    resync_interval: int = 36000  # seconds (10 hours)

    finalizer_name: str = DEFAULT_FINALIZER

    # Exponential backoff for unexpected errors and write conflicts
    backoff_base_delay: float = 1.0  # base delay in seconds
    backoff_max_delay: float = 300.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            reconcile_timeout=int(os.getenv("RECONCILE_TIMEOUT", "120")),
            health_check_interval=int(os.getenv("HEALTH_CHECK_INTERVAL", "300")),
            registration_retry_interval=int(
                os.getenv("REGISTRATION_RETRY_INTERVAL", "60")
            ),
            default_request_timeout=int(os.getenv("DEFAULT_REQUEST_TIMEOUT", "30")),
            max_deletion_attempts=int(os.getenv("MAX_DELETION_ATTEMPTS", "5")),
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "36000")),
            finalizer_name=os.getenv("FINALIZER_NAME", DEFAULT_FINALIZER),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class OperatorConfig:
    """Process-level settings for the standalone operator."""

    log_level: str = "INFO"
    watch_namespace: str = ""  # empty = all namespaces
    manifest_path: str = ""

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            watch_namespace=os.getenv("WATCH_NAMESPACE", ""),
            manifest_path=os.getenv("MANIFEST_PATH", ""),
        )


@dataclass
class Config:
    """Main configuration object."""

    controller: ControllerConfig
    operator: OperatorConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            controller=ControllerConfig.from_env(),
            operator=OperatorConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            controller=ControllerConfig(),
            operator=OperatorConfig(),
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
