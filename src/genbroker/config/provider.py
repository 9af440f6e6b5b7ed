"""
Provider configuration classes.

Credentials live here and are handed to provider constructors; providers
never read the environment themselves.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ProviderConfig:
    """Common settings for a generation provider."""

    api_key: str | None = None
    base_url: str | None = None

    # Request settings
    timeout: float = 60.0
    estimated_duration_seconds: int = 30

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.estimated_duration_seconds <= 0:
            raise ValueError("estimated_duration_seconds must be positive")


@dataclass
class OpenAIConfig(ProviderConfig):
    """OpenAI image and story settings."""

    timeout: float = 120.0
    estimated_duration_seconds: int = 20

    image_model: str = "dall-e-3"
    image_quality: str = "hd"

    story_model: str = "gpt-4-turbo-preview"
    story_temperature: float = 0.8
    story_max_tokens: int = 4096

    def __post_init__(self):
        super().__post_init__()
        if not 0.0 <= self.story_temperature <= 2.0:
            raise ValueError("story_temperature must be between 0 and 2")
        if self.image_quality not in ("standard", "hd"):
            raise ValueError(f"Invalid image quality: {self.image_quality}")


@dataclass
class ReplicateConfig(ProviderConfig):
    """Replicate (SDXL) settings."""

    base_url: str | None = "https://api.replicate.com/v1"
    timeout: float = 30.0
    estimated_duration_seconds: int = 45

    model_version: str = "39ed52f2a78e934b3ba6e2a89f5b1c712de7dfea535525255b1aa35c5565e08b"
    poll_interval: float = 2.0
    max_wait: float = 300.0

    def __post_init__(self):
        super().__post_init__()
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.max_wait < self.poll_interval:
            raise ValueError("max_wait must be at least poll_interval")


__all__ = ["ProviderConfig", "OpenAIConfig", "ReplicateConfig"]
