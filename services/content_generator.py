"""
Content Generator – Gemini text generation behind one small interface.

Two call shapes are used by the workers:
- generate_json(prompt, schema): JSON-mode call parsed into a pydantic
  model (problem generation)
- generate_text(prompt): free-form text whose only contract is being
  non-empty (feedback generation)

Every failure (timeout, provider error, malformed or empty output) is
raised as GeneratorError so the worker pool's retry policy applies. There
are no fallbacks here: a placeholder problem would be worse than a retry.
"""

import asyncio
import json
import logging
import re
from typing import TypeVar

import google.generativeai as genai
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class GeneratorError(Exception):
    """The content generator produced no usable output."""


def parse_json_object(text: str) -> dict:
    """
    Parse the model's reply as a JSON object.

    JSON mode normally returns bare JSON, but replies wrapped in prose or
    code fences still carry the object between the outermost braces.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(text or "")
        if not match:
            raise GeneratorError("Failed to extract JSON from AI response")
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise GeneratorError(f"Malformed JSON in AI response: {e}") from e

    if not isinstance(data, dict):
        raise GeneratorError("AI response JSON is not an object")
    return data


class ContentGenerator:
    def __init__(
        self,
        api_key: str,
        model_name: str = "gemini-2.5-flash",
        timeout_seconds: float = 30.0,
    ) -> None:
        genai.configure(api_key=api_key)
        self._model = genai.GenerativeModel(model_name)
        self._timeout = timeout_seconds

    async def _generate(self, prompt: str, generation_config: dict) -> str:
        try:
            response = await asyncio.wait_for(
                self._model.generate_content_async(prompt, generation_config=generation_config),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise GeneratorError(f"Content generation timed out after {self._timeout}s") from e
        except Exception as e:
            raise GeneratorError(f"Content generation failed: {e}") from e

        try:
            text = response.text
        except ValueError as e:
            # Raised by the SDK when the candidate was blocked or empty.
            raise GeneratorError(f"Content generation returned no text: {e}") from e
        return (text or "").strip()

    async def generate_json(self, prompt: str, schema: type[T]) -> T:
        text = await self._generate(
            prompt,
            {
                "temperature": 0.7,
                "response_mime_type": "application/json",
            },
        )
        data = parse_json_object(text)
        try:
            return schema.model_validate(data)
        except ValidationError as e:
            raise GeneratorError(f"AI response does not match {schema.__name__}: {e}") from e

    async def generate_text(self, prompt: str) -> str:
        text = await self._generate(prompt, {"temperature": 0.5, "max_output_tokens": 512})
        if not text:
            raise GeneratorError("Content generation returned empty text")
        return text
