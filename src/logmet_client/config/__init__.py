"""Configuration models and loaders."""

from .settings import (
    ConsumerConfig,
    LoggingConfig,
    LogmetSettings,
    ProducerConfig,
    RetryConfig,
    load_settings,
    substitute_env_vars,
)

__all__ = [
    "ConsumerConfig",
    "LoggingConfig",
    "LogmetSettings",
    "ProducerConfig",
    "RetryConfig",
    "load_settings",
    "substitute_env_vars",
]
