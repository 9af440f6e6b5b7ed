"""
Prompt tooling: style presets, prompt enhancement and request validation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal

from ..errors import ValidationFailedError
from .types import ImageRequest

MIN_PROMPT_LENGTH = 3
MAX_PROMPT_LENGTH = 2000

PREVIEW_RESOLUTION = 1024
PRINT_RESOLUTION = 2048

DEFAULT_STEPS = 30
DEFAULT_GUIDANCE_SCALE = 7.5

_TAG_RE = re.compile(r"<[^>]*>")
_SCRIPT_RE = re.compile(r"javascript:", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class StylePreset:
    name: str
    description: str
    prompt_suffix: str
    negative_prompt_suffix: str
    preview_url: str
    prompt_prefix: str = ""


STYLE_PRESETS: dict[str, StylePreset] = {
    "photorealistic": StylePreset(
        name="Photorealistic",
        description="Lifelike, high-quality photographs",
        prompt_suffix=", photorealistic, highly detailed, professional photography, 8k resolution, sharp focus, natural lighting",
        negative_prompt_suffix="cartoon, illustration, drawing, painting, low quality, blurry, distorted, deformed, ugly",
        preview_url="/images/styles/photorealistic.jpg",
    ),
    "cartoon": StylePreset(
        name="Cartoon",
        description="Fun, animated cartoon style",
        prompt_prefix="Cartoon style illustration of ",
        prompt_suffix=", vibrant colours, clean lines, animated style, Pixar quality, whimsical",
        negative_prompt_suffix="photorealistic, photograph, realistic, 3d render, dark, scary, violent",
        preview_url="/images/styles/cartoon.jpg",
    ),
    "watercolour": StylePreset(
        name="Watercolour",
        description="Soft, flowing watercolour paintings",
        prompt_prefix="Watercolour painting of ",
        prompt_suffix=", soft colours, flowing paint, artistic brush strokes, delicate, ethereal, traditional watercolour technique",
        negative_prompt_suffix="photorealistic, sharp edges, digital art, 3d, harsh colours, neon",
        preview_url="/images/styles/watercolour.jpg",
    ),
    "oil_painting": StylePreset(
        name="Oil Painting",
        description="Classic oil painting style",
        prompt_prefix="Oil painting of ",
        prompt_suffix=", rich colours, visible brush strokes, classical painting, museum quality, textured canvas, masterpiece",
        negative_prompt_suffix="photorealistic, digital, flat colours, cartoon, modern, minimalist",
        preview_url="/images/styles/oil-painting.jpg",
    ),
    "digital_art": StylePreset(
        name="Digital Art",
        description="Modern digital illustration",
        prompt_suffix=", digital art, highly detailed, vibrant, trending on artstation, concept art, professional illustration",
        negative_prompt_suffix="low quality, amateur, blurry, noisy, watermark, signature",
        preview_url="/images/styles/digital-art.jpg",
    ),
    "pop_art": StylePreset(
        name="Pop Art",
        description="Bold, colourful pop art style",
        prompt_prefix="Pop art style ",
        prompt_suffix=", bold colours, halftone dots, comic book style, Andy Warhol inspired, retro, vibrant",
        negative_prompt_suffix="photorealistic, muted colours, realistic, dark, gloomy",
        preview_url="/images/styles/pop-art.jpg",
    ),
    "minimalist": StylePreset(
        name="Minimalist",
        description="Clean, simple minimalist design",
        prompt_suffix=", minimalist design, clean lines, simple shapes, negative space, modern, elegant, flat design",
        negative_prompt_suffix="complex, detailed, realistic, cluttered, busy, ornate, decorative",
        preview_url="/images/styles/minimalist.jpg",
    ),
    "storybook": StylePreset(
        name="Storybook",
        description="Whimsical children's book illustration",
        prompt_prefix="Children's book illustration of ",
        prompt_suffix=", whimsical, magical, soft colours, enchanting, fairy tale style, gentle, friendly, suitable for children",
        negative_prompt_suffix="scary, dark, violent, realistic, adult themes, complex, detailed",
        preview_url="/images/styles/storybook.jpg",
    ),
    "vintage": StylePreset(
        name="Vintage",
        description="Nostalgic retro aesthetic",
        prompt_suffix=", vintage style, retro, nostalgic, sepia tones, aged look, classic, 1950s aesthetic",
        negative_prompt_suffix="modern, futuristic, digital, neon, bright colours",
        preview_url="/images/styles/vintage.jpg",
    ),
    "anime": StylePreset(
        name="Anime",
        description="Japanese anime art style",
        prompt_prefix="Anime style ",
        prompt_suffix=", anime art style, vibrant colours, expressive, manga inspired, detailed, studio quality",
        negative_prompt_suffix="photorealistic, western cartoon, 3d render, low quality, deformed",
        preview_url="/images/styles/anime.jpg",
    ),
}


SUPPORTED_DIMENSIONS: list[tuple[int, int, str]] = [
    (512, 512, "Square (512x512)"),
    (768, 768, "Square (768x768)"),
    (1024, 1024, "Square (1024x1024) - Preview"),
    (768, 1024, "Portrait (768x1024)"),
    (1024, 768, "Landscape (1024x768)"),
    (512, 768, "Portrait (512x768)"),
    (768, 512, "Landscape (768x512)"),
    (2048, 2048, "Square (2048x2048) - Print Quality"),
]


@dataclass(frozen=True)
class PromptValidation:
    valid: bool
    errors: list[str]
    sanitised: str | None = None


def build_enhanced_prompt(prompt: str, style: str) -> str:
    """Wrap the prompt in the style's prefix and suffix. Unknown styles pass through."""
    preset = STYLE_PRESETS.get(style)
    if preset is None:
        return prompt
    return f"{preset.prompt_prefix}{prompt}{preset.prompt_suffix}"


def build_negative_prompt(user_negative: str | None, style: str) -> str:
    """User negative terms followed by the style's default negative terms."""
    preset = STYLE_PRESETS.get(style)
    style_negative = preset.negative_prompt_suffix if preset else ""
    if not user_negative:
        return style_negative
    return f"{user_negative}, {style_negative}"


def validate_prompt(prompt: str | None) -> PromptValidation:
    """
    Validate and sanitise a user prompt.

    Length is checked on the trimmed text; markup and ``javascript:`` are
    stripped and whitespace collapsed in the sanitised copy.
    """
    if not prompt or not prompt.strip():
        return PromptValidation(valid=False, errors=["Prompt cannot be empty"])

    trimmed = prompt.strip()
    errors: list[str] = []
    if len(trimmed) < MIN_PROMPT_LENGTH:
        errors.append(f"Prompt is too short (minimum {MIN_PROMPT_LENGTH} characters)")
    if len(trimmed) > MAX_PROMPT_LENGTH:
        errors.append(f"Prompt is too long (maximum {MAX_PROMPT_LENGTH} characters)")

    sanitised = _TAG_RE.sub("", trimmed)
    sanitised = _SCRIPT_RE.sub("", sanitised)
    sanitised = _WHITESPACE_RE.sub(" ", sanitised).strip()

    return PromptValidation(valid=not errors, errors=errors, sanitised=sanitised)


def is_supported_dimension(width: int, height: int) -> bool:
    return any(w == width and h == height for w, h, _ in SUPPORTED_DIMENSIONS)


def dimension_label(width: int, height: int) -> str:
    for w, h, label in SUPPORTED_DIMENSIONS:
        if w == width and h == height:
            return label
    return f"{width}x{height}"


def resolution_dimensions(
    resolution: Literal["preview", "print"] = "preview",
    aspect_ratio: float = 1.0,
) -> tuple[int, int]:
    """Width and height for a resolution tier at the given aspect ratio."""
    max_dimension = PRINT_RESOLUTION if resolution == "print" else PREVIEW_RESOLUTION
    if aspect_ratio == 1:
        return max_dimension, max_dimension
    if aspect_ratio > 1:
        return max_dimension, round(max_dimension / aspect_ratio)
    return round(max_dimension * aspect_ratio), max_dimension


def is_preview_resolution(width: int, height: int) -> bool:
    return width == PREVIEW_RESOLUTION and height == PREVIEW_RESOLUTION


def is_print_resolution(width: int, height: int) -> bool:
    return width == PRINT_RESOLUTION and height == PRINT_RESOLUTION


def available_styles() -> list[dict[str, Any]]:
    return [
        {
            "id": style_id,
            "name": preset.name,
            "description": preset.description,
            "previewUrl": preset.preview_url,
        }
        for style_id, preset in STYLE_PRESETS.items()
    ]


def validate_image_request(
    prompt: str | None,
    *,
    style: str = "photorealistic",
    width: int = PREVIEW_RESOLUTION,
    height: int = PREVIEW_RESOLUTION,
    negative_prompt: str | None = None,
    seed: int | None = None,
) -> ImageRequest:
    """
    Build a sanitised ImageRequest or raise.

    Raises:
        ValidationFailedError: Bad prompt, unknown style, or unsupported size
    """
    result = validate_prompt(prompt)
    if not result.valid:
        raise ValidationFailedError(errors=result.errors)

    if style not in STYLE_PRESETS:
        raise ValidationFailedError(
            errors=[f"Invalid style: {style}. Available styles: {', '.join(STYLE_PRESETS)}"]
        )

    if not is_supported_dimension(width, height):
        raise ValidationFailedError(errors=[f"Invalid dimensions: {width}x{height}"])

    return ImageRequest(
        prompt=result.sanitised or "",
        style=style,
        width=width,
        height=height,
        negative_prompt=negative_prompt or None,
        seed=seed,
    )


__all__ = [
    "MIN_PROMPT_LENGTH",
    "MAX_PROMPT_LENGTH",
    "PREVIEW_RESOLUTION",
    "PRINT_RESOLUTION",
    "DEFAULT_STEPS",
    "DEFAULT_GUIDANCE_SCALE",
    "StylePreset",
    "STYLE_PRESETS",
    "SUPPORTED_DIMENSIONS",
    "PromptValidation",
    "build_enhanced_prompt",
    "build_negative_prompt",
    "validate_prompt",
    "is_supported_dimension",
    "dimension_label",
    "resolution_dimensions",
    "is_preview_resolution",
    "is_print_resolution",
    "available_styles",
    "validate_image_request",
]
