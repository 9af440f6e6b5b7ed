"""
Provider abstraction for image and story generation.

This package provides:
- ImageProvider protocol with SYNC and POLL execution variants
- OpenAI (DALL-E, synchronous) and Replicate (SDXL, fire-and-poll) providers
- Style presets, prompt enhancement and request validation
- Story generation through an OpenAI chat model
- Pure primary/fallback selection
"""

from .base import (
    BaseImageProvider,
    ExecutionMode,
    ImageProvider,
    PollingImageProvider,
    SubmittedCallback,
    is_polling,
)
from .openai import OpenAIImageProvider, dalle_size, translate_openai_error
from .prompts import (
    PREVIEW_RESOLUTION,
    PRINT_RESOLUTION,
    STYLE_PRESETS,
    SUPPORTED_DIMENSIONS,
    PromptValidation,
    StylePreset,
    available_styles,
    build_enhanced_prompt,
    build_negative_prompt,
    dimension_label,
    is_print_resolution,
    is_supported_dimension,
    resolution_dimensions,
    validate_image_request,
    validate_prompt,
)
from .replicate import ReplicateImageProvider, parse_progress
from .routing import Selection, select_image_providers, select_story_generators
from .story import (
    MAX_PAGES,
    MIN_PAGES,
    STORY_THEMES,
    StoryGenerator,
    available_themes,
    extract_illustration_prompts,
    parse_story_structure,
    validate_story_request,
)
from .types import (
    ImageRequest,
    ImageResult,
    RemoteJobStatus,
    RemoteState,
    Story,
    StoryPage,
    StoryRequest,
)

__all__ = [
    # Protocol
    "ImageProvider",
    "PollingImageProvider",
    "BaseImageProvider",
    "ExecutionMode",
    "SubmittedCallback",
    "is_polling",
    # Implementations
    "OpenAIImageProvider",
    "ReplicateImageProvider",
    "StoryGenerator",
    # Types
    "ImageRequest",
    "ImageResult",
    "RemoteJobStatus",
    "RemoteState",
    "StoryRequest",
    "StoryPage",
    "Story",
    # Prompts
    "StylePreset",
    "STYLE_PRESETS",
    "SUPPORTED_DIMENSIONS",
    "PREVIEW_RESOLUTION",
    "PRINT_RESOLUTION",
    "PromptValidation",
    "build_enhanced_prompt",
    "build_negative_prompt",
    "validate_prompt",
    "validate_image_request",
    "is_supported_dimension",
    "dimension_label",
    "resolution_dimensions",
    "is_print_resolution",
    "available_styles",
    # Story
    "STORY_THEMES",
    "MIN_PAGES",
    "MAX_PAGES",
    "available_themes",
    "validate_story_request",
    "parse_story_structure",
    "extract_illustration_prompts",
    # Helpers
    "dalle_size",
    "translate_openai_error",
    "parse_progress",
    # Routing
    "Selection",
    "select_image_providers",
    "select_story_generators",
]
