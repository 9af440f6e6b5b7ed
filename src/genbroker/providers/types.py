"""
Core types for the provider abstraction layer.

Requests and results shared by every image provider and the story
generator, independent of the backend that produced them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RemoteState(str, Enum):
    """Lifecycle of a job held by a fire-and-poll provider."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {RemoteState.COMPLETED, RemoteState.FAILED}


@dataclass(frozen=True)
class ImageRequest:
    """Parameters for one image generation."""

    prompt: str
    style: str = "photorealistic"
    width: int = 1024
    height: int = 1024
    negative_prompt: str | None = None
    seed: int | None = None
    steps: int | None = None
    guidance_scale: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "style": self.style,
            "width": self.width,
            "height": self.height,
            "negative_prompt": self.negative_prompt,
            "seed": self.seed,
            "steps": self.steps,
            "guidance_scale": self.guidance_scale,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageRequest:
        return cls(
            prompt=data["prompt"],
            style=data.get("style") or "photorealistic",
            width=int(data.get("width") or 1024),
            height=int(data.get("height") or 1024),
            negative_prompt=data.get("negative_prompt"),
            seed=data.get("seed"),
            steps=data.get("steps"),
            guidance_scale=data.get("guidance_scale"),
        )


@dataclass(frozen=True)
class ImageResult:
    """A generated image, still hosted by the provider."""

    image_url: str
    width: int
    height: int
    provider: str
    provider_job_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RemoteJobStatus:
    """Snapshot of a remote job as reported by the provider."""

    state: RemoteState
    progress: int | None = None
    result: ImageResult | None = None
    error: str | None = None


@dataclass(frozen=True)
class StoryRequest:
    subject_name: str
    theme: str = "adventure"
    page_count: int = 8
    subject_age: int | None = None
    custom_elements: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_name": self.subject_name,
            "subject_age": self.subject_age,
            "theme": self.theme,
            "page_count": self.page_count,
            "custom_elements": self.custom_elements,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoryRequest:
        return cls(
            subject_name=data.get("subject_name") or "",
            theme=data.get("theme") or "adventure",
            page_count=int(data.get("page_count") or 8),
            subject_age=data.get("subject_age"),
            custom_elements=data.get("custom_elements"),
        )


@dataclass(frozen=True)
class StoryPage:
    page_number: int
    text: str
    illustration_prompt: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "pageNumber": self.page_number,
            "text": self.text,
            "illustrationPrompt": self.illustration_prompt,
        }


@dataclass(frozen=True)
class Story:
    title: str
    pages: list[StoryPage] = field(default_factory=list)
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "pages": [p.to_dict() for p in self.pages]}


__all__ = [
    "RemoteState",
    "ImageRequest",
    "ImageResult",
    "RemoteJobStatus",
    "StoryRequest",
    "StoryPage",
    "Story",
]
