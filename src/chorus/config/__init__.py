"""Configuration models and parser for chorus.yaml."""

from chorus.config.models import (
    BackendConfig,
    ChorusConfig,
    LogConfig,
    SupervisorConfig,
    TelemetryConfig,
    default_backends,
)
from chorus.config.parser import ConfigError, load_config

__all__ = [
    "BackendConfig",
    "ChorusConfig",
    "ConfigError",
    "LogConfig",
    "SupervisorConfig",
    "TelemetryConfig",
    "default_backends",
    "load_config",
]
