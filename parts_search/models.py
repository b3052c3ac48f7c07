"""Pydantic models for the parts search pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ─── Enums ────────────────────────────────────────────────────────

class SourceKind(str, Enum):
    STRUCTURED = "structured"
    SEMANTIC = "semantic"
    GRAPH = "graph"
    WEB = "web"


# Canonical order used whenever a set of sources is rendered as a list
SOURCE_ORDER: List[SourceKind] = [
    SourceKind.STRUCTURED,
    SourceKind.SEMANTIC,
    SourceKind.GRAPH,
    SourceKind.WEB,
]


class QueryIntent(str, Enum):
    EXACT_PART_NUMBER = "exact_part_number"
    PART_DESCRIPTION = "part_description"
    COMPATIBILITY_CHECK = "compatibility_check"
    ALTERNATIVES = "alternatives"
    GENERAL_QUESTION = "general_question"


class VehicleSearchStatus(str, Enum):
    PENDING_ADMIN_REVIEW = "PENDING_ADMIN_REVIEW"
    SEARCH_READY = "SEARCH_READY"
    NEEDS_UPDATE = "NEEDS_UPDATE"
    INACTIVE = "INACTIVE"


# ─── Vehicle Context & Mapping ────────────────────────────────────

class VehicleContext(BaseModel):
    vehicle_id: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    serial_number: Optional[str] = None
    search_config_status: Optional[VehicleSearchStatus] = None


class SemanticMapping(BaseModel):
    namespace: Optional[str] = None
    machine_model: Optional[str] = None
    manufacturer: Optional[str] = None
    year: Optional[int] = None


class GraphMapping(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_name: Optional[str] = None
    manufacturer: Optional[str] = None
    serial_range: Optional[str] = None
    technical_domains: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    namespace: Optional[str] = None


class StructuredMapping(BaseModel):
    category: Optional[str] = None
    subcategory: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None


class VehicleSearchMapping(BaseModel):
    """Per-vehicle aliases that scope each internal store to the right catalog."""

    vehicle_id: str
    semantic: SemanticMapping = Field(default_factory=SemanticMapping)
    graph: GraphMapping = Field(default_factory=GraphMapping)
    structured: StructuredMapping = Field(default_factory=StructuredMapping)


# ─── Candidate Payloads ───────────────────────────────────────────

class RelationshipEdge(BaseModel):
    type: str
    part_number: str
    description: Optional[str] = None


class WebSource(BaseModel):
    source_name: str
    source_url: str
    snippet: str = ""
    is_verified: bool = False


class Compatibility(BaseModel):
    """Known compatibility fields; adapter-specific passthrough lives in ``extra``."""

    makes: List[str] = Field(default_factory=list)
    models: List[str] = Field(default_factory=list)
    years: List[Union[int, str]] = Field(default_factory=list)
    manufacturers: List[str] = Field(default_factory=list)
    serial_ranges: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    domains: List[str] = Field(default_factory=list)
    relationships: List[RelationshipEdge] = Field(default_factory=list)
    web_source: Optional[WebSource] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class MergedEntry(BaseModel):
    """One underlying vector hit folded into an aggregated semantic candidate."""

    part_key: Optional[str] = None
    diagram_title: Optional[str] = None
    quantity: Optional[Union[int, float, str]] = None
    remarks: Optional[str] = None
    source_url: Optional[str] = None


class PartMetadata(BaseModel):
    diagram_title: Optional[str] = None
    category_breadcrumb: Optional[str] = None
    source_url: Optional[str] = None
    quantity: Optional[Union[int, float, str]] = None
    remarks: Optional[str] = None
    text: Optional[str] = None
    merged_entries: List[MergedEntry] = Field(default_factory=list)
    extra: Dict[str, Any] = Field(default_factory=dict)


# ─── Search Results ───────────────────────────────────────────────

class PartCandidate(BaseModel):
    """One hit from one adapter."""

    part_number: str
    description: str = ""
    id: Optional[str] = None
    price: Optional[float] = None
    stock_quantity: Optional[int] = None
    category: Optional[str] = None
    score: float = 0.0
    source: SourceKind
    compatibility: Compatibility = Field(default_factory=Compatibility)
    metadata: PartMetadata = Field(default_factory=PartMetadata)


class MergedResult(PartCandidate):
    sources: List[SourceKind] = Field(default_factory=list)


class EnrichedResult(MergedResult):
    confidence: float = 0.0
    found_by: List[SourceKind] = Field(default_factory=list)
    reason: str = ""
    is_web_result: bool = False


# ─── Query Understanding ──────────────────────────────────────────

class PartIntent(BaseModel):
    label: str
    query_text: str
    part_type: Optional[str] = None
    part_number: Optional[str] = None
    expanded_terms: List[str] = Field(default_factory=list)


class ProcessedQuery(BaseModel):
    original_query: str
    intent: QueryIntent = QueryIntent.GENERAL_QUESTION
    part_numbers: List[str] = Field(default_factory=list)
    part_types: List[str] = Field(default_factory=list)
    expanded_terms: List[str] = Field(default_factory=list)
    attributes: List[str] = Field(default_factory=list)
    urgent: bool = False
    should_search_web: bool = False
    processed_query: str = ""
    part_intents: Optional[List[PartIntent]] = None


# ─── Response Envelope ────────────────────────────────────────────

class RerankOutcome(BaseModel):
    results: List[EnrichedResult] = Field(default_factory=list)
    suggested_filters: List[str] = Field(default_factory=list)
    related_queries: List[str] = Field(default_factory=list)
    web_enrichment: Optional[str] = None


class PartGroup(BaseModel):
    label: str
    query_used: str
    results: List[EnrichedResult] = Field(default_factory=list)
    web_results: Optional[List[EnrichedResult]] = None
    result_count: int = 0


class SearchMetadata(BaseModel):
    total_results: int = 0
    search_time_ms: float = 0.0
    sources_used: List[str] = Field(default_factory=list)
    query_intent: Optional[QueryIntent] = None
    processed_query: Optional[ProcessedQuery] = None
    is_multi_part_query: Optional[bool] = None
    part_count: Optional[int] = None
    web_enrichment: Optional[str] = None


class SearchResponse(BaseModel):
    results: List[EnrichedResult] = Field(default_factory=list)
    web_results: Optional[List[EnrichedResult]] = None
    part_groups: Optional[List[PartGroup]] = None
    suggested_filters: List[str] = Field(default_factory=list)
    related_queries: List[str] = Field(default_factory=list)
    metadata: SearchMetadata = Field(default_factory=SearchMetadata)
