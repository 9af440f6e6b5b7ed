"""
Base types for configuration.
"""

from __future__ import annotations

from typing import Literal

BackendType = Literal["memory", "postgres", "redis"]
ImageProviderName = Literal["openai", "replicate"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
LogFormat = Literal["text", "json"]


__all__ = ["BackendType", "ImageProviderName", "LogLevel", "LogFormat"]
