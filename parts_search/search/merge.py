"""
Cross-source merge and confidence scoring.

Candidates are keyed by part number. Merging never mutates its inputs: every
merged value is a fresh model, so the same candidate lists can be merged in
any grouping (all at once, or folded into a previous merge) with the same
outcome.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from ..models import (
    SOURCE_ORDER,
    Compatibility,
    EnrichedResult,
    MergedResult,
    PartCandidate,
    PartMetadata,
    SourceKind,
)

MULTI_SOURCE_BONUS = 10
MAX_CONFIDENCE = 100.0

# Compatibility list fields unioned on merge; relationships are concatenated instead
COMPATIBILITY_LIST_FIELDS = (
    "makes",
    "models",
    "years",
    "manufacturers",
    "serial_ranges",
    "categories",
    "domains",
)

METADATA_SCALAR_FIELDS = (
    "diagram_title",
    "category_breadcrumb",
    "source_url",
    "quantity",
    "remarks",
    "text",
)

CANDIDATE_SCALAR_FIELDS = ("id", "description", "price", "stock_quantity", "category")

CandidateInput = Union[Mapping[SourceKind, Iterable[PartCandidate]], Iterable[PartCandidate]]


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _union(first: List[Any], second: List[Any]) -> List[Any]:
    return list(dict.fromkeys([*first, *second]))


def _fill(existing: Any, incoming: Any) -> Any:
    return incoming if _is_empty(existing) else existing


def merge_compatibility(existing: Compatibility, incoming: Compatibility) -> Compatibility:
    update: Dict[str, Any] = {
        name: _union(getattr(existing, name), getattr(incoming, name))
        for name in COMPATIBILITY_LIST_FIELDS
    }
    update["relationships"] = [*existing.relationships, *incoming.relationships]
    update["web_source"] = existing.web_source or incoming.web_source
    update["extra"] = {**incoming.extra, **existing.extra}
    return existing.model_copy(update=update, deep=True)


def merge_metadata(existing: PartMetadata, incoming: PartMetadata) -> PartMetadata:
    update: Dict[str, Any] = {
        name: _fill(getattr(existing, name), getattr(incoming, name))
        for name in METADATA_SCALAR_FIELDS
    }
    update["merged_entries"] = [*existing.merged_entries, *incoming.merged_entries]
    update["extra"] = {**incoming.extra, **existing.extra}
    return existing.model_copy(update=update, deep=True)


def _ordered_sources(sources: Iterable[SourceKind]) -> List[SourceKind]:
    present = set(sources)
    return [s for s in SOURCE_ORDER if s in present]


def _start(candidate: PartCandidate) -> MergedResult:
    data = candidate.model_dump()
    data["sources"] = [candidate.source]
    return MergedResult.model_validate(data)


def _combine(existing: MergedResult, candidate: PartCandidate) -> MergedResult:
    update: Dict[str, Any] = {
        name: _fill(getattr(existing, name), getattr(candidate, name))
        for name in CANDIDATE_SCALAR_FIELDS
    }
    update["sources"] = _ordered_sources([*existing.sources, candidate.source])
    update["score"] = max(existing.score, candidate.score)
    update["compatibility"] = merge_compatibility(existing.compatibility, candidate.compatibility)
    update["metadata"] = merge_metadata(existing.metadata, candidate.metadata)
    return existing.model_copy(update=update)


def _flatten(candidates: CandidateInput) -> Iterable[PartCandidate]:
    if isinstance(candidates, Mapping):
        for source in SOURCE_ORDER:
            yield from candidates.get(source, [])
    else:
        yield from candidates


def merge(
    candidates: CandidateInput,
    into: Optional[Mapping[str, MergedResult]] = None,
) -> Dict[str, MergedResult]:
    """
    One MergedResult per part number.

    ``candidates`` is either a mapping of source -> candidates (processed in
    canonical source order) or a flat iterable. Passing a previous result as
    ``into`` folds the new candidates on top of it.
    """
    merged: Dict[str, MergedResult] = dict(into or {})
    for candidate in _flatten(candidates):
        key = candidate.part_number
        if not key:
            continue
        existing = merged.get(key)
        merged[key] = _start(candidate) if existing is None else _combine(existing, candidate)
    return merged


def confidence_for(score: float, source_count: int) -> float:
    if source_count > 1:
        return min(MAX_CONFIDENCE, score + MULTI_SOURCE_BONUS * source_count)
    return min(MAX_CONFIDENCE, score)


def reason_for(sources: List[SourceKind], score: float) -> str:
    if len(sources) >= 3:
        return "High confidence: Found by all search methods"
    if len(sources) == 2:
        return f"Good match: Found by {sources[0].value} and {sources[1].value}"
    if score >= 80:
        return "Exact or close part number match"
    if score >= 60:
        return "Description match"
    return "Partial match"


def score_results(merged: Union[Mapping[str, MergedResult], Iterable[MergedResult]]) -> List[EnrichedResult]:
    """Enrich merged results with confidence and reason, sorted by confidence (stable)."""
    values = merged.values() if isinstance(merged, Mapping) else merged
    enriched = []
    for result in values:
        data = result.model_dump()
        data.update(
            confidence=confidence_for(result.score, len(result.sources)),
            found_by=list(result.sources),
            reason=reason_for(result.sources, result.score),
        )
        enriched.append(EnrichedResult.model_validate(data))
    enriched.sort(key=lambda r: r.confidence, reverse=True)
    return enriched


def merge_and_score(candidates: CandidateInput) -> List[EnrichedResult]:
    return score_results(merge(candidates))


def dedupe_by_part_number(results: Iterable[EnrichedResult]) -> List[EnrichedResult]:
    """Keep the highest-confidence occurrence of each part number, sorted by confidence."""
    best: Dict[str, EnrichedResult] = {}
    for result in results:
        current = best.get(result.part_number)
        if current is None or result.confidence > current.confidence:
            best[result.part_number] = result
    return sorted(best.values(), key=lambda r: r.confidence, reverse=True)
