"""
Shared fixtures for parts_search tests.

No backend is contacted: the database session, Qdrant client, Neo4j driver,
Serper transport and language model are all replaced by in-memory fakes.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from parts_search.exceptions import LanguageModelError
from parts_search.models import PartCandidate, SourceKind


def _candidate(part_number: str, source: SourceKind, score: float, **fields: Any) -> PartCandidate:
    return PartCandidate(part_number=part_number, source=source, score=score, **fields)


class FakeLLM:
    """
    LanguageModelClient double.

    ``responses`` maps a response model name (e.g. ``_RerankResponse``) to the
    JSON payload the model "returns"; a missing entry behaves like a model
    that rejects the request.
    """

    def __init__(
        self,
        responses: Optional[Dict[str, Any]] = None,
        *,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.responses = responses or {}
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    async def generate_structured_output(self, prompt, schema, *, temperature=0.1, max_tokens=2048):
        self.calls.append({"prompt": prompt, "schema": schema.__name__})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        payload = self.responses.get(schema.__name__)
        if payload is None:
            raise LanguageModelError(f"no canned response for {schema.__name__}")
        return schema.model_validate(payload)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_candidate():
    return _candidate


@pytest.fixture
def fake_llm():
    return FakeLLM
