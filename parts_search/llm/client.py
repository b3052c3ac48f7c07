"""Structured-output client over any OpenAI-compatible chat endpoint (OpenRouter by default)."""

from __future__ import annotations

import json
import re
from typing import Optional, Type, TypeVar

from loguru import logger
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from ..exceptions import LanguageModelError

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)

SYSTEM_PROMPT = (
    "You are a heavy-equipment parts specialist. "
    "Respond ONLY with valid JSON matching the requested shape (no markdown)."
)


def _parse_json(content: str) -> dict:
    text = _FENCE_RE.sub("", (content or "").strip()).strip()
    if not text:
        raise ValueError("empty response")
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


class OpenAICompatibleClient:
    """
    - Sends a single user prompt with ``response_format={"type": "json_object"}``.
    - Validates the JSON reply against the caller's pydantic model.
    - Every failure is raised as ``LanguageModelError`` so callers can degrade.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self.model = model

    async def generate_structured_output(
        self,
        prompt: str,
        schema: Type[T],
        *,
        temperature: float = 0.1,
        max_tokens: int = 2048,
    ) -> T:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                temperature=temperature,
                max_tokens=max_tokens,
            )
            content = response.choices[0].message.content or ""
        except Exception as e:
            raise LanguageModelError(f"LLM call failed: {e}", cause=e) from e

        try:
            return schema.model_validate(_parse_json(content))
        except (ValueError, ValidationError) as e:
            logger.debug(f"Unparsable LLM output for {schema.__name__}: {content[:200]}")
            raise LanguageModelError(
                f"LLM output did not match {schema.__name__}", cause=e
            ) from e

    async def close(self) -> None:
        await self.client.close()
