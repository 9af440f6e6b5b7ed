"""
Settings master configuration and global helpers.
"""

from __future__ import annotations

import dataclasses
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
from dotenv import find_dotenv, load_dotenv

from ..config_schema import CONFIG_SCHEMA
from .broker import AdmissionConfig, CreditsConfig, OrchestratorConfig, RoutingConfig, check_stale_cutoff
from .logging import LoggingConfig
from .provider import OpenAIConfig, ReplicateConfig


@dataclass
class Settings:
    """
    Master configuration for the generation broker.

    This aggregates all configuration sections into a single object
    that can be loaded from environment variables, a TOML file, or
    constructed programmatically. Components receive the section they
    need in their constructor.
    """

    # Provider configurations
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    replicate: ReplicateConfig = field(default_factory=ReplicateConfig)

    # Broker sections
    credits: CreditsConfig = field(default_factory=CreditsConfig)
    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)

    # Logging configuration
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Cross-section checks the individual sections cannot make alone."""
        check_stale_cutoff(self.admission, self.orchestrator)

    @classmethod
    def from_env(cls, prefix: str = "GENBROKER_") -> Settings:
        """
        Load settings from environment variables.

        Environment variables are prefixed (default: GENBROKER_). Provider
        credentials are also read from their conventional unprefixed names.

        Example:
            GENBROKER_REPLICATE_API_TOKEN=r8_...
            GENBROKER_GUEST_INITIAL_CREDITS=3
            GENBROKER_MAX_CONCURRENT_JOBS=2
        """
        settings = cls()

        # OpenAI settings
        if key := os.getenv(f"{prefix}OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY"):
            settings.openai.api_key = key
        if url := os.getenv(f"{prefix}OPENAI_BASE_URL"):
            settings.openai.base_url = url
        if model := os.getenv(f"{prefix}OPENAI_IMAGE_MODEL"):
            settings.openai.image_model = model
        if model := os.getenv(f"{prefix}OPENAI_STORY_MODEL"):
            settings.openai.story_model = model

        # Replicate settings
        if token := os.getenv(f"{prefix}REPLICATE_API_TOKEN") or os.getenv("REPLICATE_API_TOKEN"):
            settings.replicate.api_key = token
        if version := os.getenv(f"{prefix}REPLICATE_MODEL_VERSION"):
            settings.replicate.model_version = version
        if max_wait := os.getenv(f"{prefix}REPLICATE_MAX_WAIT"):
            settings.replicate.max_wait = float(max_wait)

        # Credits
        if guest := os.getenv(f"{prefix}GUEST_INITIAL_CREDITS"):
            settings.credits.guest_initial_credits = int(guest)
        if registered := os.getenv(f"{prefix}REGISTERED_INITIAL_CREDITS"):
            settings.credits.registered_initial_credits = int(registered)

        # Admission
        if limit := os.getenv(f"{prefix}GENERATION_MAX_REQUESTS"):
            settings.admission.generation_max_requests = int(limit)
        if window := os.getenv(f"{prefix}GENERATION_WINDOW_SECONDS"):
            settings.admission.generation_window_seconds = int(window)
        if limit := os.getenv(f"{prefix}ORIGIN_MAX_REQUESTS"):
            settings.admission.origin_max_requests = int(limit)
        if max_jobs := os.getenv(f"{prefix}MAX_CONCURRENT_JOBS"):
            settings.admission.max_concurrent_jobs = int(max_jobs)
        if stale := os.getenv(f"{prefix}STALE_JOB_SECONDS"):
            settings.admission.stale_job_seconds = int(stale)

        # Routing
        if preferred := os.getenv(f"{prefix}IMAGE_PROVIDER"):
            settings.routing.preferred_image_provider = preferred.lower()  # type: ignore
        if fallback := os.getenv(f"{prefix}FALLBACK_ENABLED"):
            settings.routing.fallback_enabled = fallback.lower() == "true"
        if story_fallback := os.getenv(f"{prefix}STORY_FALLBACK_MODEL"):
            settings.routing.story_fallback_model = story_fallback

        # Orchestrator
        if timeout := os.getenv(f"{prefix}GENERATION_TIMEOUT"):
            settings.orchestrator.generation_timeout = float(timeout)

        # Logging settings
        if level := os.getenv(f"{prefix}LOG_LEVEL"):
            settings.logging.level = level.upper()  # type: ignore
        if log_format := os.getenv(f"{prefix}LOG_FORMAT"):
            settings.logging.format = log_format.lower()  # type: ignore

        settings.validate()
        return settings

    @classmethod
    def from_file(cls, path: str | Path) -> Settings:
        """
        Load settings from a TOML file.

        Args:
            path: Path to configuration file (.toml)

        Returns:
            Settings object with values from file
        """
        path = Path(path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")
        if path.suffix.lower() != ".toml":
            raise ValueError(f"Unsupported config file format: {path.suffix}")

        with open(path, "rb") as f:
            data = tomllib.load(f)

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> Settings:
        """
        Create Settings from a dictionary.

        The dictionary is validated against the configuration schema first.
        """
        try:
            jsonschema.validate(instance=data, schema=CONFIG_SCHEMA)
        except jsonschema.ValidationError as e:
            raise ValueError(f"Configuration validation failed: {e.message}") from e

        sections = {
            "openai": OpenAIConfig,
            "replicate": ReplicateConfig,
            "credits": CreditsConfig,
            "admission": AdmissionConfig,
            "routing": RoutingConfig,
            "orchestrator": OrchestratorConfig,
            "logging": LoggingConfig,
        }
        kwargs: dict[str, Any] = {}
        for name, section_cls in sections.items():
            if name in data:
                known = {f.name for f in dataclasses.fields(section_cls)}
                kwargs[name] = section_cls(**{k: v for k, v in data[name].items() if k in known})
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to dictionary."""
        return dataclasses.asdict(self)


# =============================================================================
# Global Settings & Helpers
# =============================================================================

_global_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance, creating from the environment if needed."""
    global _global_settings
    if _global_settings is None:
        _global_settings = Settings.from_env()
    return _global_settings


def configure(settings: Settings | None = None, **kwargs) -> Settings:
    """
    Configure global settings.

    Args:
        settings: Settings object to use globally
        **kwargs: Override specific sections

    Returns:
        The configured Settings object
    """
    global _global_settings

    if settings is not None:
        _global_settings = settings
    elif _global_settings is None:
        _global_settings = Settings.from_env()

    for key, value in kwargs.items():
        if hasattr(_global_settings, key):
            setattr(_global_settings, key, value)

    return _global_settings


def load_env(path: str | None = None, *, override: bool = False) -> bool:
    """
    Load environment variables from a .env file.

    Args:
        path: Optional path to a .env file. If not provided, uses find_dotenv().
        override: Whether to override existing environment variables.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    env_path = path or find_dotenv(usecwd=True)
    if not env_path:
        return False
    return load_dotenv(env_path, override=override)


__all__ = ["Settings", "get_settings", "configure", "load_env"]
