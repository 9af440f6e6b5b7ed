"""
Story generation.

Children's stories written by a chat model in JSON mode, one page of text
plus an illustration prompt per page.
"""

from __future__ import annotations

import json
from dataclasses import replace
from typing import Any

import jsonschema
import openai
from openai import AsyncOpenAI

from ..config import OpenAIConfig
from ..errors import ErrorContext, InvalidResponseError, ProviderUnavailableError
from ..logging import StructuredLogger, get_logger
from .openai import PROVIDER_NAME, build_client, translate_openai_error
from .types import Story, StoryPage, StoryRequest

MIN_PAGES = 4
MAX_PAGES = 20
MAX_NAME_LENGTH = 50

STORY_THEMES: dict[str, dict[str, str]] = {
    "adventure": {"name": "Adventure", "description": "Exciting journeys and discoveries", "icon": "compass"},
    "magic": {"name": "Magic", "description": "Spells, wizards, and enchantment", "icon": "wand"},
    "animals": {"name": "Animals", "description": "Furry friends and animal adventures", "icon": "paw"},
    "space": {"name": "Space", "description": "Rockets, planets, and the stars", "icon": "rocket"},
    "friendship": {"name": "Friendship", "description": "Making friends and working together", "icon": "heart"},
    "nature": {"name": "Nature", "description": "Forests, gardens, and the outdoors", "icon": "tree"},
    "underwater": {"name": "Underwater", "description": "Ocean adventures and sea creatures", "icon": "fish"},
    "dinosaurs": {"name": "Dinosaurs", "description": "Prehistoric creatures and adventures", "icon": "bone"},
    "fairy_tale": {"name": "Fairy Tale", "description": "Princes, princesses, and happily ever after", "icon": "crown"},
    "superheroes": {"name": "Superheroes", "description": "Powers, capes, and saving the day", "icon": "zap"},
}

# Shape the model must return; page fields are filled in by parse_story_structure.
STORY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "pages"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "pages": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "pageNumber": {"type": "integer"},
                    "text": {"type": "string"},
                    "illustrationPrompt": {"type": "string"},
                },
            },
        },
    },
}


def available_themes() -> list[dict[str, str]]:
    return [{"id": theme_id, **info} for theme_id, info in STORY_THEMES.items()]


def validate_story_request(request: StoryRequest) -> list[str]:
    """Return every problem with the request; empty means valid."""
    errors: list[str] = []

    name = request.subject_name or ""
    if not name.strip():
        errors.append("Child name is required")
    elif len(name) > MAX_NAME_LENGTH:
        errors.append(f"Child name must be {MAX_NAME_LENGTH} characters or less")

    if request.theme not in STORY_THEMES:
        errors.append(f"Invalid theme. Available themes: {', '.join(STORY_THEMES)}")

    if request.page_count < MIN_PAGES:
        errors.append(f"Page count must be at least {MIN_PAGES}")
    elif request.page_count > MAX_PAGES:
        errors.append(f"Page count must be at most {MAX_PAGES}")

    if request.subject_age is not None and not 1 <= request.subject_age <= 18:
        errors.append("Child age must be between 1 and 18")

    return errors


def build_system_prompt(subject_age: int | None = None) -> str:
    if subject_age:
        age_guidance = f"The story should be appropriate for a {subject_age}-year-old child."
    else:
        age_guidance = "The story should be appropriate for children aged 4-8."

    return f"""You are a children's book author creating personalised stories.
{age_guidance}

Your task is to create engaging, age-appropriate stories that:
- Feature the child as the main character
- Have positive messages and happy endings
- Use simple, clear language
- Include vivid descriptions suitable for illustration

For each page, you must provide:
1. The story text (2-4 sentences, simple language)
2. An illustration prompt (detailed description for AI image generation)

The illustration prompts should:
- Be suitable for children's book illustration style
- Describe the scene, characters, and mood
- Include colours and setting details
- Be in the style: "Children's book illustration of..."

Respond with valid JSON in this exact format:
{{
  "title": "Story Title",
  "pages": [
    {{
      "pageNumber": 1,
      "text": "Story text for this page...",
      "illustrationPrompt": "Children's book illustration of..."
    }}
  ]
}}

IMPORTANT: Only respond with the JSON, no additional text."""


def build_user_prompt(request: StoryRequest) -> str:
    name = request.subject_name
    prompt = f"Create a {request.page_count}-page children's story about {name}"
    if request.subject_age:
        prompt += f" (age {request.subject_age})"
    prompt += f" with a {request.theme} theme."
    if request.custom_elements:
        prompt += f" Include these elements: {request.custom_elements}"

    prompt += (
        f"\n\nGenerate exactly {request.page_count} pages with engaging text and detailed illustration prompts."
        f"\nMake {name} the hero of the story."
        "\nEnsure a clear beginning, middle, and happy ending."
    )
    return prompt


def parse_story_structure(content: Any) -> Story:
    """
    Turn the model's JSON into a Story, defaulting missing page fields.

    Raises:
        InvalidResponseError: No title or no page list
    """
    try:
        jsonschema.validate(content, STORY_SCHEMA)
    except jsonschema.ValidationError as e:
        raise InvalidResponseError("Invalid story structure", context=ErrorContext(provider=PROVIDER_NAME), cause=e) from e

    pages: list[StoryPage] = []
    for index, page in enumerate(content["pages"]):
        text = page.get("text") or ""
        illustration = page.get("illustrationPrompt") or (
            "Children's book illustration of a scene from the story: " + (text[:100] or "a magical moment")
        )
        pages.append(
            StoryPage(
                page_number=page.get("pageNumber") or index + 1,
                text=text,
                illustration_prompt=illustration,
            )
        )
    return Story(title=content["title"], pages=pages)


def extract_illustration_prompts(story: Story) -> list[str]:
    return [page.illustration_prompt for page in story.pages]


class StoryGenerator:
    """
    Story writer backed by an OpenAI chat model.

    ``with_model`` returns a generator for another model that shares the
    same client, which is how a fallback model is expressed.
    """

    def __init__(
        self,
        config: OpenAIConfig,
        *,
        model: str | None = None,
        client: AsyncOpenAI | None = None,
        logger: StructuredLogger | None = None,
    ):
        self._config = config
        self._model = model or config.story_model
        self._client = client
        self._logger = logger or get_logger()

    @property
    def name(self) -> str:
        return PROVIDER_NAME

    @property
    def model(self) -> str:
        return self._model

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = build_client(self._config)
        return self._client

    def is_available(self) -> bool:
        return bool(self._config.api_key)

    def estimated_duration_seconds(self) -> int:
        return self._config.estimated_duration_seconds

    def with_model(self, model: str) -> StoryGenerator:
        return StoryGenerator(self._config, model=model, client=self._client, logger=self._logger)

    async def generate(self, request: StoryRequest) -> Story:
        """
        Write one story.

        Raises:
            ProviderError: API failure or an unusable response
        """
        if not self.is_available():
            raise ProviderUnavailableError("OpenAI API key not configured", context=ErrorContext(provider=self.name))

        request = replace(request, page_count=min(request.page_count, MAX_PAGES))
        try:
            response = await self.client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": build_system_prompt(request.subject_age)},
                    {"role": "user", "content": build_user_prompt(request)},
                ],
                temperature=self._config.story_temperature,
                max_tokens=self._config.story_max_tokens,
                response_format={"type": "json_object"},
            )
        except openai.OpenAIError as e:
            raise translate_openai_error(e, provider=self.name) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise InvalidResponseError("No content in API response", context=ErrorContext(provider=self.name))

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise InvalidResponseError(
                "Invalid JSON response from AI",
                context=ErrorContext(provider=self.name),
                cause=e,
            ) from e

        story = parse_story_structure(data)
        return replace(story, model=self._model)


__all__ = [
    "MIN_PAGES",
    "MAX_PAGES",
    "STORY_THEMES",
    "STORY_SCHEMA",
    "available_themes",
    "validate_story_request",
    "build_system_prompt",
    "build_user_prompt",
    "parse_story_structure",
    "extract_illustration_prompts",
    "StoryGenerator",
]
