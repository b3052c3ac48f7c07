"""LLM re-ranking of merged results, degrading to the incoming order on any failure."""

from __future__ import annotations

import asyncio
from typing import List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from ..collaborators import LanguageModelClient
from ..config import settings
from ..llm.prompts import rerank_prompt
from ..models import EnrichedResult, ProcessedQuery, RerankOutcome, SourceKind, VehicleContext

# Ranked results below this confidence are dropped as noise
MIN_MATCH_CONFIDENCE = 20


class _RankedItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    part_number: str = Field(alias="partNumber")
    match_confidence: float = Field(alias="matchConfidence")
    explanation: Optional[str] = None


class _RerankResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ranked_results: List[_RankedItem] = Field(default_factory=list, alias="rankedResults")
    suggested_filters: Optional[List[str]] = Field(default=None, alias="suggestedFilters")
    related_queries: Optional[List[str]] = Field(default=None, alias="relatedQueries")


def web_enrichment_note(results: List[EnrichedResult]) -> Optional[str]:
    count = sum(1 for r in results if r.source == SourceKind.WEB or r.is_web_result)
    if not count:
        return None
    plural = "" if count == 1 else "s"
    return (
        f"Found {count} result{plural} from web search. "
        "Web results are unverified and shown separately for reference."
    )


def apply_ranking(
    sent: List[EnrichedResult],
    unsent: List[EnrichedResult],
    ranked: List[_RankedItem],
) -> List[EnrichedResult]:
    """
    Reorder ``sent`` by the model's ranking and append ``unsent`` untouched.

    Sent results the model omits, or scores below the noise floor, are dropped.
    """
    remaining = list(sent)
    reranked: List[EnrichedResult] = []
    for item in ranked:
        idx = next((i for i, r in enumerate(remaining) if r.part_number == item.part_number), None)
        if idx is None:
            continue
        original = remaining.pop(idx)
        if item.match_confidence < MIN_MATCH_CONFIDENCE:
            continue
        reranked.append(
            original.model_copy(
                update={
                    "confidence": float(item.match_confidence),
                    "reason": item.explanation or original.reason,
                    "is_web_result": original.source == SourceKind.WEB or original.is_web_result,
                }
            )
        )
    return reranked + unsent


class SmartReranker:
    def __init__(self, top_n: Optional[int] = None, timeout_s: Optional[float] = None):
        self.top_n = top_n or settings.rerank_top_n
        self.timeout_s = timeout_s or settings.rerank_timeout_s

    def split(self, results: List[EnrichedResult]):
        """Top-N by confidence (stable) for the model; the rest keeps its incoming order."""
        order = sorted(range(len(results)), key=lambda i: results[i].confidence, reverse=True)
        chosen = set(order[: self.top_n])
        sent = [results[i] for i in order[: self.top_n]]
        unsent = [r for i, r in enumerate(results) if i not in chosen]
        return sent, unsent

    async def rerank(
        self,
        query: str,
        processed: ProcessedQuery,
        results: List[EnrichedResult],
        llm_client: LanguageModelClient,
        vehicle_context: Optional[VehicleContext] = None,
    ) -> RerankOutcome:
        if not results:
            return RerankOutcome()

        sent, unsent = self.split(results)
        try:
            response = await asyncio.wait_for(
                llm_client.generate_structured_output(
                    rerank_prompt(query, processed.intent.value, sent, vehicle_context),
                    _RerankResponse,
                    temperature=0.1,
                    max_tokens=4000,
                ),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Re-ranking timed out after {self.timeout_s}s, keeping original order")
            return RerankOutcome(results=list(results))
        except Exception as e:
            logger.warning(f"Re-ranking failed, keeping original order: {e}")
            return RerankOutcome(results=list(results))

        reranked = apply_ranking(sent, unsent, response.ranked_results)
        logger.debug(
            f"Re-ranked {len(sent)} results ({len(response.ranked_results)} ranked), "
            f"{len(unsent)} appended unranked"
        )
        return RerankOutcome(
            results=reranked,
            suggested_filters=response.suggested_filters or [],
            related_queries=response.related_queries or [],
            web_enrichment=web_enrichment_note(reranked),
        )
