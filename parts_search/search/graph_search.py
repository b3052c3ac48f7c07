"""
Relationship-aware parts search over the Neo4j parts graph.

Graph shape:
    (Manufacturer)-[:MANUFACTURES]->(Model)<-[:HAS_DOMAIN]-(TechnicalDomain)
    (Part)-[:CONTAINS_PART]->(TechnicalDomain)      direction varies by import
    (Part)-[:SHOWN_IN_DIAGRAM]->(Diagram)
    (Part)-[:BELONGS_TO_CATEGORY]->(Category)
    (Part)-[:VALID_FOR_RANGE]->(SerialNumberRange)
    (Part)-[:REQUIRES_PART|CONTAINS_PART]-(Part)

With a vehicle mapping the primary query is scoped to the mapped
manufacturer/model. When it finds nothing, a ladder of progressively
broader strategies runs in order and the first non-empty tier wins:

    1. reversed domain<->part direction, ANY keyword        score 70
    2. namespace, ALL keywords                               score 65
    2b. namespace, ANY keyword                               score 40 + 10 * matches
    3. global, ALL keywords (no vehicle scope, 10 max)       score 40
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger
from neo4j import AsyncDriver, AsyncGraphDatabase, AsyncSession
from neo4j.exceptions import Neo4jError, ServiceUnavailable, SessionExpired

from ..collaborators import MappingLookup, resolve_mapping
from ..config import settings
from ..exceptions import GraphSearchError
from ..models import (
    Compatibility,
    PartCandidate,
    PartMetadata,
    RelationshipEdge,
    SourceKind,
    VehicleContext,
    VehicleSearchMapping,
)
from .keywords import extract_keywords

# Messages meaning "graph store not reachable or not populated", a valid empty state
UNAVAILABLE_SIGNATURES = ("not found", "connection refused", "econnrefused")


# ─── Cypher fragments ─────────────────────────────────────────────

_TEXT_MATCH = """(
    toLower(p.part_number) CONTAINS $query
    OR toLower(p.part_title) CONTAINS $query
    OR ANY(term IN $searchTerms WHERE toLower(p.part_title) CONTAINS term)
  )"""

_ANY_TERM = "ANY(term IN $searchTerms WHERE toLower(p.part_title) CONTAINS term)"
_ALL_TERMS = "ALL(term IN $searchTerms WHERE toLower(p.part_title) CONTAINS term)"

_VEHICLE_MATCH = """toLower(mfg.name) CONTAINS toLower($manufacturer)
  AND toLower(model.name) CONTAINS toLower($modelName)"""

_MATCH_SCORE = """CASE
    WHEN toLower(p.part_number) = $query THEN 100
    WHEN toLower(p.part_number) CONTAINS $query THEN 85
    WHEN toLower(p.part_title) CONTAINS $query THEN 70
    WHEN ANY(term IN $searchTerms WHERE toLower(p.part_title) CONTAINS term) THEN 60
    ELSE 40
  END"""

_RELATED_BONUS = "size([r IN relationships WHERE r.partNumber IS NOT NULL]) * 5"

_OPTIONAL_VEHICLE = """
OPTIONAL MATCH (p)-[:CONTAINS_PART]-(domain:TechnicalDomain)
OPTIONAL MATCH (domain)-[:HAS_DOMAIN]->(model:Model)
OPTIONAL MATCH (model)<-[:MANUFACTURES]-(mfg:Manufacturer)"""

_VEHICLE_COLLECT = """WITH p,
  collect(DISTINCT domain.name) AS domains,
  collect(DISTINCT model.name) AS compatibleModels,
  collect(DISTINCT mfg.name) AS manufacturers"""


def _details(with_relationships: bool, extra_with: str = "") -> str:
    """OPTIONAL MATCHes for diagrams, categories, serial ranges and (optionally) related parts."""
    related = ""
    related_collect = "[] AS relationships"
    if with_relationships:
        related = "\nOPTIONAL MATCH (p)-[rel:REQUIRES_PART|CONTAINS_PART]-(related:Part)"
        related_collect = """collect(DISTINCT {
    type: type(rel),
    partNumber: related.part_number,
    partTitle: related.part_title
  }) AS relationships"""
    return f"""
OPTIONAL MATCH (p)-[:SHOWN_IN_DIAGRAM]->(diag:Diagram)
OPTIONAL MATCH (p)-[:BELONGS_TO_CATEGORY]->(cat:Category)
OPTIONAL MATCH (p)-[:VALID_FOR_RANGE]->(snr:SerialNumberRange){related}
WITH p, domains, compatibleModels, manufacturers{extra_with},
  collect(DISTINCT diag.diagram_title) AS diagrams,
  collect(DISTINCT cat.name) AS categories,
  collect(DISTINCT snr.range) AS serialRanges,
  {related_collect}"""


def _returning(score_expr: str, order: str = "score DESC") -> str:
    return f"""
RETURN
  p.part_number AS partNumber,
  p.part_title AS partTitle,
  p.diagram_title AS diagramTitle,
  p.category_breadcrumb AS categoryBreadcrumb,
  p.namespace AS namespace,
  p.quantity AS quantity,
  p.remarks AS remarks,
  p.source_url AS sourceUrl,
  diagrams, categories, domains, compatibleModels, manufacturers, serialRanges, relationships,
  ({score_expr}) AS score
ORDER BY {order}
LIMIT $limit"""


def scoped_cypher(with_namespace: bool) -> str:
    namespace = "\n  AND p.namespace = $namespace" if with_namespace else ""
    return (
        f"""MATCH (p:Part)-[:CONTAINS_PART]->(domain:TechnicalDomain)-[:HAS_DOMAIN]->(model:Model)
MATCH (model)<-[:MANUFACTURES]-(mfg:Manufacturer)
WHERE {_VEHICLE_MATCH}{namespace}
  AND {_TEXT_MATCH}
{_VEHICLE_COLLECT}"""
        + _details(with_relationships=True)
        + _returning(f"{_MATCH_SCORE} + {_RELATED_BONUS}")
    )


def unscoped_cypher() -> str:
    return (
        f"""MATCH (p:Part)
WHERE {_TEXT_MATCH}{_OPTIONAL_VEHICLE}
{_VEHICLE_COLLECT}"""
        + _details(with_relationships=True)
        + _returning(f"{_MATCH_SCORE} + {_RELATED_BONUS} + size(compatibleModels) * 3")
    )


def reversed_direction_cypher(with_namespace: bool) -> str:
    namespace = "\n  AND p.namespace = $namespace" if with_namespace else ""
    return (
        f"""MATCH (domain:TechnicalDomain)-[:CONTAINS_PART]->(p:Part)
MATCH (domain)-[:HAS_DOMAIN]->(model:Model)<-[:MANUFACTURES]-(mfg:Manufacturer)
WHERE {_VEHICLE_MATCH}{namespace}
  AND {_ANY_TERM}
{_VEHICLE_COLLECT}"""
        + _details(with_relationships=True)
        + _returning("70")
    )


def namespace_all_cypher() -> str:
    return (
        f"""MATCH (p:Part)
WHERE p.namespace = $namespace
  AND {_ALL_TERMS}{_OPTIONAL_VEHICLE}
{_VEHICLE_COLLECT}"""
        + _details(with_relationships=True)
        + _returning("65")
    )


def namespace_any_cypher() -> str:
    return (
        f"""MATCH (p:Part)
WHERE p.namespace = $namespace
  AND {_ANY_TERM}{_OPTIONAL_VEHICLE}
{_VEHICLE_COLLECT}"""
        + _details(
            with_relationships=False,
            extra_with=",\n  size([term IN $searchTerms WHERE toLower(p.part_title) CONTAINS term]) AS matchCount",
        )
        + _returning("40 + matchCount * 10", order="score DESC, matchCount DESC")
    )


def global_cypher() -> str:
    return (
        f"""MATCH (p:Part)
WHERE {_ALL_TERMS}{_OPTIONAL_VEHICLE}
{_VEHICLE_COLLECT}"""
        + _details(with_relationships=False)
        + _returning("40")
    )


# ─── Params & parsing ─────────────────────────────────────────────

@dataclass
class GraphQueryParams:
    terms: List[str]
    manufacturer: Optional[str] = None
    model_name: Optional[str] = None
    namespace: Optional[str] = None
    limit: int = 20
    global_limit: int = 10

    @property
    def phrase(self) -> str:
        return " ".join(self.terms)

    @property
    def has_vehicle(self) -> bool:
        return bool(self.manufacturer and self.model_name)

    def to_cypher(self, limit: Optional[int] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "query": self.phrase,
            "searchTerms": self.terms,
            "limit": limit or self.limit,
        }
        if self.manufacturer:
            params["manufacturer"] = self.manufacturer
        if self.model_name:
            params["modelName"] = self.model_name
        if self.namespace:
            params["namespace"] = self.namespace
        return params

    @classmethod
    def from_mapping(
        cls,
        terms: List[str],
        mapping: Optional[VehicleSearchMapping],
        *,
        limit: int = 20,
        global_limit: int = 10,
    ) -> "GraphQueryParams":
        if mapping is None:
            return cls(terms=terms, limit=limit, global_limit=global_limit)
        graph = mapping.graph
        return cls(
            terms=terms,
            manufacturer=graph.manufacturer,
            model_name=graph.model_name,
            namespace=(graph.namespace or "").strip() or None,
            limit=limit,
            global_limit=global_limit,
        )


def _clean(values: Optional[List[Any]]) -> List[Any]:
    return [v for v in values or [] if v]


def record_to_candidate(record: Dict[str, Any]) -> PartCandidate:
    relationships = [
        RelationshipEdge(
            type=r.get("type") or "RELATED",
            part_number=r["partNumber"],
            description=r.get("partTitle"),
        )
        for r in record.get("relationships") or []
        if r and r.get("partNumber")
    ]
    categories = _clean(record.get("categories"))
    breadcrumb = record.get("categoryBreadcrumb")
    category = categories[0] if categories else (breadcrumb.split(" - ")[-1] if breadcrumb else None)

    score = record.get("score")
    quantity = record.get("quantity")

    return PartCandidate(
        part_number=record.get("partNumber") or "",
        description=record.get("partTitle") or record.get("diagramTitle") or "",
        category=category,
        score=float(score) if isinstance(score, (int, float)) else 50.0,
        source=SourceKind.GRAPH,
        compatibility=Compatibility(
            models=_clean(record.get("compatibleModels")),
            manufacturers=_clean(record.get("manufacturers")),
            serial_ranges=_clean(record.get("serialRanges")),
            categories=categories,
            domains=_clean(record.get("domains")),
            relationships=relationships,
        ),
        metadata=PartMetadata(
            diagram_title=record.get("diagramTitle"),
            category_breadcrumb=breadcrumb,
            source_url=record.get("sourceUrl"),
            quantity=str(quantity) if quantity is not None else None,
            remarks=record.get("remarks"),
            extra={"diagrams": _clean(record.get("diagrams"))} if record.get("diagrams") else {},
        ),
    )


# ─── Fallback ladder ──────────────────────────────────────────────

Runner = Callable[[str, Dict[str, Any]], Awaitable[List[Dict[str, Any]]]]


@dataclass(frozen=True)
class FallbackTier:
    name: str
    applies: Callable[[GraphQueryParams], bool]
    cypher: Callable[[GraphQueryParams], str]
    global_scope: bool = False


FALLBACK_LADDER: List[FallbackTier] = [
    FallbackTier(
        "reversed_direction",
        applies=lambda p: p.has_vehicle,
        cypher=lambda p: reversed_direction_cypher(bool(p.namespace)),
    ),
    FallbackTier(
        "namespace_all_keywords",
        applies=lambda p: bool(p.namespace),
        cypher=lambda p: namespace_all_cypher(),
    ),
    FallbackTier(
        "namespace_any_keyword",
        applies=lambda p: bool(p.namespace),
        cypher=lambda p: namespace_any_cypher(),
    ),
    FallbackTier(
        "global_keywords",
        applies=lambda p: True,
        cypher=lambda p: global_cypher(),
        global_scope=True,
    ),
]


async def run_ladder(
    run: Runner,
    params: GraphQueryParams,
    ladder: Optional[List[FallbackTier]] = None,
) -> List[Dict[str, Any]]:
    """Try each applicable tier in order; the first one with rows wins."""
    for tier in ladder if ladder is not None else FALLBACK_LADDER:
        if not tier.applies(params):
            continue
        limit = params.global_limit if tier.global_scope else params.limit
        try:
            rows = await run(tier.cypher(params), params.to_cypher(limit))
        except Neo4jError as e:
            logger.warning(f"Graph fallback '{tier.name}' failed: {e}")
            continue
        logger.info(f"Graph fallback '{tier.name}' returned {len(rows)} rows")
        if rows:
            return rows
    return []


def is_unavailable(error: Exception) -> bool:
    if isinstance(error, (ServiceUnavailable, SessionExpired, ConnectionError)):
        return True
    message = str(error).lower()
    return any(sig in message for sig in UNAVAILABLE_SIGNATURES)


# ─── Adapter ──────────────────────────────────────────────────────

class GraphSearchAdapter:
    """Graph search for one tenant; owns its driver and must be closed."""

    def __init__(
        self,
        driver: AsyncDriver,
        database: str = "neo4j",
        mappings: Optional[MappingLookup] = None,
        *,
        top_k: Optional[int] = None,
        global_top_k: Optional[int] = None,
    ):
        self.driver = driver
        self.database = database
        self.mappings = mappings
        self.top_k = top_k or settings.graph_top_k
        self.global_top_k = global_top_k or settings.graph_global_top_k

    @classmethod
    def from_credentials(cls, creds: Dict[str, Any], mappings: Optional[MappingLookup] = None) -> "GraphSearchAdapter":
        driver = AsyncGraphDatabase.driver(
            creds["uri"],
            auth=(creds.get("username") or "neo4j", creds.get("password") or ""),
        )
        return cls(driver, creds.get("database") or "neo4j", mappings)

    async def _run(self, session: AsyncSession, cypher: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        result = await session.run(cypher, params)
        return await result.data()

    async def graph_search(
        self,
        query: str,
        tenant_id: str,
        vehicle_context: Optional[VehicleContext] = None,
    ) -> List[PartCandidate]:
        terms = extract_keywords(query)
        if not terms:
            logger.warning(f"No meaningful keywords for graph search: {query!r}")
            return []

        mapping = await resolve_mapping(self.mappings, vehicle_context)
        params = GraphQueryParams.from_mapping(
            terms, mapping, limit=self.top_k, global_limit=self.global_top_k
        )

        try:
            async with self.driver.session(database=self.database) as session:

                async def run(cypher: str, cypher_params: Dict[str, Any]) -> List[Dict[str, Any]]:
                    return await self._run(session, cypher, cypher_params)

                if params.has_vehicle:
                    primary = scoped_cypher(bool(params.namespace))
                else:
                    primary = unscoped_cypher()
                rows = await run(primary, params.to_cypher())
                logger.debug(f"Graph primary query returned {len(rows)} rows")

                if not rows and mapping is not None:
                    logger.info("No graph results, trying fallback strategies")
                    rows = await run_ladder(run, params)
        except Exception as e:
            if is_unavailable(e):
                logger.warning(f"Graph store unavailable, returning no results: {e}")
                return []
            raise GraphSearchError("Graph search failed", query=query, cause=e) from e

        return [record_to_candidate(r) for r in rows if r.get("partNumber")]

    async def close(self) -> None:
        await self.driver.close()
