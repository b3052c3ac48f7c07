"""
Semantic (hybrid dense + sparse) search over the parts vector index in Qdrant.

Points carry catalog payloads (part_number, part_title, diagram_title,
category_breadcrumb, manufacturer, machine_model, namespace, ...). Several
points can describe the same part, one per diagram page; results are folded
back into one candidate per part number.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from loguru import logger
from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models as qm

from ..collaborators import MappingLookup, resolve_mapping
from ..config import settings
from ..exceptions import EmbeddingError, SemanticSearchError
from ..models import (
    Compatibility,
    MergedEntry,
    PartCandidate,
    PartMetadata,
    SourceKind,
    VehicleContext,
    VehicleSearchMapping,
)
from .embeddings import DenseEmbedder, SparseEncoder, SparseVector

# Error messages meaning "the index is not there yet", a valid empty state
EMPTY_INDEX_SIGNATURES = ("not found", "not configured", "doesn't exist")


def _match(key: str, value: Any) -> qm.FieldCondition:
    return qm.FieldCondition(key=key, match=qm.MatchValue(value=value))


def build_filter(namespace: Optional[str], metadata_conditions: List[qm.FieldCondition]) -> Optional[qm.Filter]:
    must: List[qm.Condition] = []
    if namespace:
        must.append(_match("namespace", namespace))
    must.extend(metadata_conditions)
    return qm.Filter(must=must) if must else None


def metadata_conditions(mapping: Optional[VehicleSearchMapping]) -> List[qm.FieldCondition]:
    """Manufacturer/model equality from the vehicle mapping (year is deliberately not filtered)."""
    if mapping is None:
        return []
    conditions = []
    if mapping.semantic.manufacturer:
        conditions.append(_match("manufacturer", mapping.semantic.manufacturer))
    if mapping.semantic.machine_model:
        conditions.append(_match("machine_model", mapping.semantic.machine_model))
    return conditions


def _as_list(value: Any) -> List[Any]:
    if value is None or value == "":
        return []
    return [value]


def point_to_candidate(point_id: Any, score: float, payload: Dict[str, Any]) -> PartCandidate:
    part_number = payload.get("part_number") or payload.get("partNumber") or str(point_id)

    description = payload.get("part_title") or payload.get("description") or payload.get("name") or ""
    if not description and payload.get("diagram_title"):
        description = payload["diagram_title"]

    breadcrumb = payload.get("category_breadcrumb")
    category = payload.get("category")
    if not category and breadcrumb:
        category = breadcrumb.split(" - ")[-1] or payload.get("technical_domain")

    price = payload.get("price")
    return PartCandidate(
        part_number=str(part_number),
        description=description,
        price=float(price) if isinstance(price, (int, float)) else None,
        category=category,
        score=float(score or 0.0) * 100,
        source=SourceKind.SEMANTIC,
        compatibility=Compatibility(
            manufacturers=_as_list(payload.get("manufacturer") or payload.get("make")),
            models=_as_list(payload.get("machine_model") or payload.get("model")),
            years=_as_list(payload.get("year")),
            serial_ranges=_as_list(payload.get("serial_number_range")),
            domains=_as_list(payload.get("technical_domain")),
        ),
        metadata=PartMetadata(
            diagram_title=payload.get("diagram_title"),
            category_breadcrumb=breadcrumb,
            text=payload.get("text"),
            source_url=payload.get("source_url"),
            quantity=payload.get("quantity"),
            remarks=payload.get("remarks"),
            extra={"part_key": payload["part_key"]} if payload.get("part_key") else {},
        ),
    )


def aggregate_by_part_number(candidates: List[PartCandidate]) -> List[PartCandidate]:
    """One candidate per part number; the best hit is primary, every hit becomes a merged entry."""
    groups: Dict[str, List[PartCandidate]] = {}
    for candidate in candidates:
        groups.setdefault(candidate.part_number, []).append(candidate)

    aggregated: List[PartCandidate] = []
    for group in groups.values():
        group = sorted(group, key=lambda c: c.score, reverse=True)
        primary = group[0]
        if len(group) > 1:
            entries = [
                MergedEntry(
                    part_key=c.metadata.extra.get("part_key"),
                    diagram_title=c.metadata.diagram_title,
                    quantity=c.metadata.quantity,
                    remarks=c.metadata.remarks,
                    source_url=c.metadata.source_url,
                )
                for c in group
            ]
            primary = primary.model_copy(
                update={"metadata": primary.metadata.model_copy(update={"merged_entries": entries})}
            )
        aggregated.append(primary)

    aggregated.sort(key=lambda c: c.score, reverse=True)
    return aggregated


class SemanticSearchAdapter:
    """Hybrid search against one tenant's Qdrant collection."""

    def __init__(
        self,
        client: AsyncQdrantClient,
        embedder: DenseEmbedder,
        collection: str,
        mappings: Optional[MappingLookup] = None,
        *,
        top_k: Optional[int] = None,
        score_threshold: Optional[float] = None,
        dense_vector: Optional[str] = None,
        sparse_vector: Optional[str] = None,
        sparse_encoder: Optional[SparseEncoder] = None,
    ):
        self.client = client
        self.embedder = embedder
        self.collection = collection
        self.mappings = mappings
        self.top_k = top_k or settings.semantic_top_k
        self.score_threshold = score_threshold if score_threshold is not None else settings.semantic_score_threshold
        self.dense_vector = dense_vector or settings.qdrant_dense_vector
        self.sparse_vector = sparse_vector or settings.qdrant_sparse_vector
        self.sparse_encoder = sparse_encoder

    async def _query(
        self,
        dense: List[float],
        sparse: SparseVector,
        query_filter: Optional[qm.Filter],
    ) -> List[PartCandidate]:
        indices, values = sparse
        prefetch = [
            qm.Prefetch(query=dense, using=self.dense_vector, filter=query_filter, limit=self.top_k * 2),
        ]
        if indices:
            prefetch.append(
                qm.Prefetch(
                    query=qm.SparseVector(indices=indices, values=values),
                    using=self.sparse_vector,
                    filter=query_filter,
                    limit=self.top_k * 2,
                )
            )

        # Final pass re-scores the union with the dense vector so scores stay cosine
        res = await self.client.query_points(
            collection_name=self.collection,
            prefetch=prefetch,
            query=dense,
            using=self.dense_vector,
            query_filter=query_filter,
            limit=self.top_k,
            score_threshold=self.score_threshold,
            with_payload=True,
            with_vectors=False,
        )
        raw = [point_to_candidate(p.id, p.score, p.payload or {}) for p in res.points]
        return aggregate_by_part_number(raw)

    async def _encode_sparse(self, query: str) -> SparseVector:
        if self.sparse_encoder is None:
            return ([], [])
        try:
            return await self.sparse_encoder.encode_query(query)
        except EmbeddingError as e:
            logger.warning(f"Sparse encoding failed, searching dense only: {e}")
            return ([], [])

    async def hybrid_search(
        self,
        query: str,
        tenant_id: str,
        vehicle_context: Optional[VehicleContext] = None,
    ) -> List[PartCandidate]:
        try:
            dense = await self.embedder.embed_query(query)
        except EmbeddingError as e:
            logger.warning(f"Dense embedding failed, skipping semantic search: {e}")
            return []
        sparse = await self._encode_sparse(query)

        mapping = await resolve_mapping(self.mappings, vehicle_context)
        namespace = mapping.semantic.namespace if mapping else None
        conditions = metadata_conditions(mapping)

        try:
            results = await self._query(dense, sparse, build_filter(namespace, conditions))

            # Metadata can be stricter than the data; keep the namespace, drop the rest
            if not results and namespace and conditions:
                logger.info(f"No semantic hits with model filter, retrying namespace '{namespace}' only")
                results = await self._query(dense, sparse, build_filter(namespace, []))
        except Exception as e:
            message = str(e).lower()
            if any(sig in message for sig in EMPTY_INDEX_SIGNATURES):
                logger.warning(f"Vector collection '{self.collection}' not available: {e}")
                return []
            raise SemanticSearchError("Vector search failed", query=query, cause=e) from e

        logger.debug(f"Semantic search: {len(results)} parts for tenant {tenant_id}")
        return results

    async def close(self) -> None:
        await self.client.close()
        await self.embedder.close()
