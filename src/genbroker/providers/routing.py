"""
Primary/fallback provider selection.

Pure functions of configuration and provider availability. Nothing here
performs I/O or holds state.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Generic, TypeVar

from ..config import RoutingConfig
from .base import ImageProvider
from .story import StoryGenerator

T = TypeVar("T")

# Order tried when the preferred provider is not available.
DEFAULT_IMAGE_ORDER: tuple[str, ...] = ("replicate", "openai")


@dataclass(frozen=True)
class Selection(Generic[T]):
    primary: T | None
    fallback: T | None = None

    @property
    def available(self) -> bool:
        return self.primary is not None

    def candidates(self) -> list[T]:
        return [p for p in (self.primary, self.fallback) if p is not None]


def select_image_providers(
    routing: RoutingConfig,
    providers: Mapping[str, ImageProvider],
) -> Selection[ImageProvider]:
    """
    Pick the primary and fallback image providers.

    The preferred provider wins when available, otherwise the first
    available one in DEFAULT_IMAGE_ORDER. The fallback is any other
    available provider, and only when fallback is enabled.
    """
    order = [routing.preferred_image_provider]
    order += [n for n in DEFAULT_IMAGE_ORDER if n not in order]
    order += [n for n in providers if n not in order]

    available = [providers[n] for n in order if n in providers and providers[n].is_available()]
    if not available:
        return Selection(primary=None)

    primary = available[0]
    fallback = None
    if routing.fallback_enabled:
        fallback = next((p for p in available[1:] if p.name != primary.name), None)
    return Selection(primary=primary, fallback=fallback)


def select_story_generators(
    routing: RoutingConfig,
    generator: StoryGenerator,
) -> Selection[StoryGenerator]:
    """The configured story model, plus the fallback model when one is set."""
    if not generator.is_available():
        return Selection(primary=None)
    fallback = None
    if routing.fallback_enabled and routing.story_fallback_model and routing.story_fallback_model != generator.model:
        fallback = generator.with_model(routing.story_fallback_model)
    return Selection(primary=generator, fallback=fallback)


__all__ = ["Selection", "DEFAULT_IMAGE_ORDER", "select_image_providers", "select_story_generators"]
