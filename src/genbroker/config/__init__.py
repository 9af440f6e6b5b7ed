"""
Configuration system for genbroker.

This package provides typed configuration classes with:
- Dataclass-based settings with validation
- Environment variable loading
- TOML file loading validated against a JSON schema
- Sensible defaults with override capability
"""

from .base import BackendType, ImageProviderName, LogFormat, LogLevel
from .broker import AdmissionConfig, CreditsConfig, OrchestratorConfig, RoutingConfig, check_stale_cutoff
from .logging import LoggingConfig
from .provider import OpenAIConfig, ProviderConfig, ReplicateConfig
from .settings import Settings, configure, get_settings, load_env

__all__ = [
    # Types
    "BackendType",
    "ImageProviderName",
    "LogLevel",
    "LogFormat",
    # Provider configs
    "ProviderConfig",
    "OpenAIConfig",
    "ReplicateConfig",
    # Broker configs
    "CreditsConfig",
    "AdmissionConfig",
    "RoutingConfig",
    "OrchestratorConfig",
    "check_stale_cutoff",
    "LoggingConfig",
    # Master config
    "Settings",
    # Global functions
    "get_settings",
    "configure",
    "load_env",
]
