"""Tests for the LLM re-ranker."""

from __future__ import annotations

from typing import List

import pytest

from parts_search.exceptions import LanguageModelError
from parts_search.models import EnrichedResult, ProcessedQuery, SourceKind
from parts_search.search.reranker import SmartReranker

PROCESSED = ProcessedQuery(original_query="fuel filter")


def _results(count: int) -> List[EnrichedResult]:
    return [
        EnrichedResult(
            part_number=f"P-{i}",
            source=SourceKind.STRUCTURED,
            score=100 - i,
            confidence=100 - i,
            found_by=[SourceKind.STRUCTURED],
            reason="Description match",
        )
        for i in range(count)
    ]


@pytest.mark.asyncio
async def test_long_tail_is_preserved(fake_llm):
    results = _results(35)
    # the model returns the 30 it was sent, reversed
    ranked = [
        {"partNumber": f"P-{i}", "matchConfidence": 50 + i, "explanation": "fits"}
        for i in reversed(range(30))
    ]
    llm = fake_llm(responses={"_RerankResponse": {"rankedResults": ranked}})

    outcome = await SmartReranker(top_n=30).rerank("fuel filter", PROCESSED, results, llm)

    assert len(outcome.results) == 35
    assert [r.part_number for r in outcome.results[:30]] == [f"P-{i}" for i in reversed(range(30))]
    assert outcome.results[30:] == results[30:]
    assert "P-34" not in llm.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_low_confidence_and_omitted_results_are_dropped(fake_llm):
    results = _results(4)
    llm = fake_llm(
        responses={
            "_RerankResponse": {
                "rankedResults": [
                    {"partNumber": "P-2", "matchConfidence": 90, "explanation": "exact fit"},
                    {"partNumber": "P-0", "matchConfidence": 10},
                    {"partNumber": "UNKNOWN", "matchConfidence": 99},
                ],
                "suggestedFilters": ["Filters", "John Deere"],
                "relatedQueries": ["fuel filter housing"],
            }
        }
    )

    outcome = await SmartReranker().rerank("fuel filter", PROCESSED, results, llm)

    assert [r.part_number for r in outcome.results] == ["P-2"]
    assert outcome.results[0].confidence == 90
    assert outcome.results[0].reason == "exact fit"
    assert outcome.suggested_filters == ["Filters", "John Deere"]
    assert outcome.related_queries == ["fuel filter housing"]
    assert outcome.web_enrichment is None


@pytest.mark.asyncio
async def test_top_n_is_chosen_by_confidence(fake_llm):
    results = _results(5)[::-1]
    llm = fake_llm(responses={"_RerankResponse": {"rankedResults": []}})

    sent, unsent = SmartReranker(top_n=2).split(results)

    assert [r.part_number for r in sent] == ["P-0", "P-1"]
    assert [r.part_number for r in unsent] == ["P-4", "P-3", "P-2"]

    outcome = await SmartReranker(top_n=2).rerank("fuel filter", PROCESSED, results, llm)
    assert [r.part_number for r in outcome.results] == ["P-4", "P-3", "P-2"]


@pytest.mark.asyncio
async def test_failure_keeps_incoming_order(fake_llm):
    results = _results(3)
    llm = fake_llm(error=LanguageModelError("upstream 502"))

    outcome = await SmartReranker().rerank("fuel filter", PROCESSED, results, llm)

    assert outcome.results == results
    assert outcome.suggested_filters == []


@pytest.mark.asyncio
async def test_timeout_keeps_incoming_order(fake_llm):
    results = _results(3)
    llm = fake_llm(responses={"_RerankResponse": {"rankedResults": []}}, delay=1.0)

    outcome = await SmartReranker(timeout_s=0.01).rerank("fuel filter", PROCESSED, results, llm)

    assert outcome.results == results


@pytest.mark.asyncio
async def test_web_results_are_flagged_and_noted(fake_llm):
    web = EnrichedResult(
        part_number="W-1", source=SourceKind.WEB, score=60, confidence=60,
        found_by=[SourceKind.WEB], reason="Found via web search - unverified",
    )
    llm = fake_llm(
        responses={"_RerankResponse": {"rankedResults": [{"partNumber": "W-1", "matchConfidence": 55}]}}
    )

    outcome = await SmartReranker().rerank("fuel filter", PROCESSED, [web], llm)

    assert outcome.results[0].is_web_result is True
    assert outcome.web_enrichment.startswith("Found 1 result from web search")
