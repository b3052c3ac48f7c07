"""
Multi-source search orchestration.

Flow for one call:

    readiness gate -> query understanding -> {keyword, semantic, graph}
    -> merge & confidence -> conditional web search -> LLM re-rank -> envelope

Adapters are built per call from the tenant's credentials and closed when
the call ends, whatever the outcome. Backend failures are isolated per
adapter; only invalid requests, unknown tenants and unexpected internal
errors reach the caller.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from loguru import logger
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from qdrant_client import AsyncQdrantClient

from ..collaborators import (
    CredentialResolver,
    IntegrationKind,
    LanguageModelClient,
    MappingLookup,
    VehicleStatusLookup,
)
from ..config import Settings, settings as default_settings
from ..exceptions import (
    AdapterNotConfigured,
    InvalidSearchRequest,
    PartsSearchError,
    SearchFailedError,
    TenantNotFoundError,
)
from ..llm.client import OpenAICompatibleClient
from ..models import (
    EnrichedResult,
    PartCandidate,
    PartGroup,
    PartIntent,
    ProcessedQuery,
    SearchMetadata,
    SearchResponse,
    SourceKind,
    VehicleContext,
    VehicleSearchStatus,
)
from .embeddings import DenseEmbedder, get_sparse_encoder
from .graph_search import GraphSearchAdapter
from .keyword_search import KeywordSearchAdapter
from .merge import dedupe_by_part_number, merge_and_score
from .query_understanding import analyze
from .reranker import SmartReranker
from .semantic_search import SemanticSearchAdapter
from .web_search import WebSearchAdapter

WEB_UNVERIFIED_REASON = "Found via web search - unverified"
WEB_PENDING_REASON = "Found via web search - vehicle configuration pending"


# ─── Adapter set ──────────────────────────────────────────────────

@dataclass
class SearchAdapters:
    """The adapters available to one call; None means not configured for the tenant."""

    keyword: Optional[KeywordSearchAdapter] = None
    semantic: Optional[SemanticSearchAdapter] = None
    graph: Optional[GraphSearchAdapter] = None
    web: Optional[WebSearchAdapter] = None
    llm: Optional[LanguageModelClient] = None

    async def aclose(self) -> None:
        for name in ("keyword", "semantic", "graph", "web", "llm"):
            adapter = getattr(self, name)
            close = getattr(adapter, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning(f"Failed to close {name} adapter: {e}")


class AdapterFactory(Protocol):
    async def build(self, tenant_id: str) -> SearchAdapters:
        ...


class CredentialAdapterFactory:
    """
    Builds each adapter from the tenant's credentials.

    A missing credential or a failing constructor leaves that adapter out;
    only an unknown tenant is an error. When ``session_factory`` is given it
    is shared for keyword search and its engine stays owned by the caller.
    """

    def __init__(
        self,
        credentials: CredentialResolver,
        mappings: Optional[MappingLookup] = None,
        *,
        session_factory: Optional[async_sessionmaker] = None,
        config: Optional[Settings] = None,
    ):
        self.credentials = credentials
        self.mappings = mappings
        self.session_factory = session_factory
        self.config = config or default_settings

    async def _require(self, tenant_id: str, kind: IntegrationKind) -> Dict[str, Any]:
        creds = await self.credentials.get_credentials_with_fallback(tenant_id, kind)
        if not creds:
            raise AdapterNotConfigured(kind.value.lower(), tenant_id)
        return creds

    async def keyword(self, tenant_id: str) -> KeywordSearchAdapter:
        if self.session_factory is not None:
            return KeywordSearchAdapter(self.session_factory, self.mappings)
        creds = await self._require(tenant_id, IntegrationKind.POSTGRES)
        engine = create_async_engine(creds["url"], poolclass=NullPool)
        return KeywordSearchAdapter(
            async_sessionmaker(engine, expire_on_commit=False),
            self.mappings,
            engine=engine,
        )

    async def semantic(self, tenant_id: str) -> SemanticSearchAdapter:
        qdrant = await self._require(tenant_id, IntegrationKind.QDRANT)
        openai_creds = await self._require(tenant_id, IntegrationKind.OPENAI)
        return SemanticSearchAdapter(
            AsyncQdrantClient(url=qdrant["url"], api_key=qdrant.get("api_key")),
            DenseEmbedder(
                openai_creds["api_key"],
                openai_creds.get("model") or self.config.embedding_model,
                openai_creds.get("dimensions") or self.config.embedding_dimensions,
            ),
            qdrant.get("collection") or self.config.qdrant_collection,
            self.mappings,
            sparse_encoder=get_sparse_encoder(self.config),
        )

    async def graph(self, tenant_id: str) -> GraphSearchAdapter:
        creds = await self._require(tenant_id, IntegrationKind.NEO4J)
        return GraphSearchAdapter.from_credentials(creds, self.mappings)

    async def web(self, tenant_id: str) -> WebSearchAdapter:
        creds = await self._require(tenant_id, IntegrationKind.SERPER)
        return WebSearchAdapter(creds["api_key"], url=creds.get("url"))

    async def llm(self, tenant_id: str) -> OpenAICompatibleClient:
        creds = await self._require(tenant_id, IntegrationKind.LLM)
        return OpenAICompatibleClient(
            creds["api_key"],
            creds.get("model") or self.config.llm_model,
            base_url=creds.get("base_url") or self.config.llm_base_url,
        )

    async def _optional(self, name: str, builder: Callable[[str], Awaitable[Any]], tenant_id: str) -> Any:
        try:
            return await builder(tenant_id)
        except TenantNotFoundError:
            raise
        except AdapterNotConfigured:
            logger.debug(f"{name} not configured for tenant {tenant_id}")
        except Exception as e:
            logger.warning(f"{name} unavailable for tenant {tenant_id}: {e}")
        return None

    async def build(self, tenant_id: str) -> SearchAdapters:
        adapters = SearchAdapters()
        for name in ("keyword", "semantic", "graph", "web", "llm"):
            setattr(adapters, name, await self._optional(name, getattr(self, name), tenant_id))
        return adapters


# ─── Helpers ──────────────────────────────────────────────────────

def to_web_results(candidates: List[PartCandidate], reason: str) -> List[EnrichedResult]:
    results = []
    for candidate in candidates:
        data = candidate.model_dump()
        data.update(
            sources=[SourceKind.WEB],
            confidence=candidate.score,
            found_by=[SourceKind.WEB],
            reason=reason,
            is_web_result=True,
        )
        results.append(EnrichedResult.model_validate(data))
    return results


def keyword_query(text: str, expanded_terms: List[str]) -> str:
    return f"{text} {' '.join(expanded_terms)}" if expanded_terms else text


def intent_query(processed: ProcessedQuery, intent: PartIntent) -> ProcessedQuery:
    """The shared ProcessedQuery narrowed to one part intent."""
    return processed.model_copy(
        update={
            "processed_query": intent.query_text,
            "part_types": [intent.part_type] if intent.part_type else [],
            "part_numbers": [intent.part_number] if intent.part_number else [],
            "expanded_terms": list(intent.expanded_terms),
            "part_intents": None,
        }
    )


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 1)


# ─── Orchestrator ─────────────────────────────────────────────────

class SearchOrchestrator:
    def __init__(
        self,
        adapter_factory: AdapterFactory,
        vehicle_status: Optional[VehicleStatusLookup] = None,
        *,
        reranker: Optional[SmartReranker] = None,
        config: Optional[Settings] = None,
    ):
        self.adapter_factory = adapter_factory
        self.vehicle_status = vehicle_status
        self.config = config or default_settings
        self.reranker = reranker or SmartReranker(
            top_n=self.config.rerank_top_n, timeout_s=self.config.rerank_timeout_s
        )

    # ── public ──

    async def search(
        self,
        query: str,
        tenant_id: str,
        vehicle_context: Optional[VehicleContext] = None,
        *,
        web_only: bool = False,
    ) -> SearchResponse:
        if not query or not query.strip():
            raise InvalidSearchRequest("Search query must not be empty", field="query")
        if not tenant_id or not tenant_id.strip():
            raise InvalidSearchRequest("Tenant id is required", field="tenant_id")

        start = time.perf_counter()
        adapters: Optional[SearchAdapters] = None
        try:
            adapters = await self.adapter_factory.build(tenant_id)

            if web_only or not await self._vehicle_ready(vehicle_context):
                return await self._search_web_only(query, vehicle_context, adapters, start)

            processed = await analyze(
                query,
                vehicle_context,
                adapters.llm,
                self.config.query_understanding_timeout_ms,
            )
            logger.info(
                f"Query analyzed: intent={processed.intent.value} "
                f"part_numbers={processed.part_numbers} part_types={processed.part_types} "
                f"web={processed.should_search_web}"
            )

            if processed.part_intents:
                return await self._search_multi_part(processed, tenant_id, vehicle_context, adapters, start)
            return await self._search_single(query, processed, tenant_id, vehicle_context, adapters, start)
        except PartsSearchError as e:
            if not e.recoverable:
                raise
            raise SearchFailedError("Search failed", query=query, cause=e) from e
        except Exception as e:
            logger.exception(f"Search failed for tenant {tenant_id}")
            raise SearchFailedError(f"Search failed: {e}", query=query, cause=e) from e
        finally:
            if adapters is not None:
                await adapters.aclose()

    # ── readiness gate ──

    async def _vehicle_ready(self, vehicle_context: Optional[VehicleContext]) -> bool:
        if vehicle_context is None or not vehicle_context.vehicle_id:
            return True
        if self.vehicle_status is not None:
            status = await self.vehicle_status.get_vehicle_status(vehicle_context.vehicle_id)
        elif vehicle_context.search_config_status is not None:
            status = vehicle_context.search_config_status
        else:
            return True
        if status != VehicleSearchStatus.SEARCH_READY:
            logger.warning(
                f"Vehicle {vehicle_context.vehicle_id} not search-ready "
                f"(status={status.value if status else None}), using web search only"
            )
            return False
        return True

    # ── stages ──

    async def _fan_out(
        self,
        adapters: SearchAdapters,
        structured_query: str,
        vector_query: str,
        tenant_id: str,
        vehicle_context: Optional[VehicleContext],
    ) -> Tuple[Dict[SourceKind, List[PartCandidate]], List[str]]:
        """Run the internal adapters concurrently; a failing adapter contributes nothing."""
        tasks: Dict[SourceKind, Awaitable[List[PartCandidate]]] = {}
        if adapters.keyword is not None:
            tasks[SourceKind.STRUCTURED] = adapters.keyword.search(structured_query, tenant_id, vehicle_context)
        else:
            logger.warning(f"Keyword search not configured for tenant {tenant_id}")
        if adapters.semantic is not None:
            tasks[SourceKind.SEMANTIC] = adapters.semantic.hybrid_search(vector_query, tenant_id, vehicle_context)
        if adapters.graph is not None:
            tasks[SourceKind.GRAPH] = adapters.graph.graph_search(vector_query, tenant_id, vehicle_context)

        outcomes = await asyncio.gather(*tasks.values(), return_exceptions=True)

        results: Dict[SourceKind, List[PartCandidate]] = {}
        for source, outcome in zip(tasks, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"{source.value} search failed (degraded): {outcome}")
                results[source] = []
            else:
                logger.info(f"{source.value} search: {len(outcome)} candidates")
                results[source] = outcome
        return results, [s.value for s in tasks]

    async def _web_search(
        self,
        adapters: SearchAdapters,
        processed: ProcessedQuery,
        vehicle_context: Optional[VehicleContext],
        reason: str,
    ) -> List[EnrichedResult]:
        try:
            candidates = await adapters.web.search(processed, vehicle_context, adapters.llm)
        except Exception as e:
            logger.warning(f"Web search failed: {e}")
            return []
        return to_web_results(candidates, reason)

    async def _rerank(
        self,
        query: str,
        processed: ProcessedQuery,
        ranked: List[EnrichedResult],
        web_results: List[EnrichedResult],
        adapters: SearchAdapters,
        vehicle_context: Optional[VehicleContext],
    ):
        """(internal, web, suggested_filters, related_queries, web_enrichment)"""
        if adapters.llm is None or not (ranked or web_results):
            return ranked, web_results, [], [], None
        outcome = await self.reranker.rerank(
            query, processed, ranked + web_results, adapters.llm, vehicle_context
        )
        internal = [r for r in outcome.results if not r.is_web_result]
        web = [r for r in outcome.results if r.is_web_result]
        return internal, web, outcome.suggested_filters, outcome.related_queries, outcome.web_enrichment

    # ── paths ──

    async def _search_web_only(
        self,
        query: str,
        vehicle_context: Optional[VehicleContext],
        adapters: SearchAdapters,
        start: float,
    ) -> SearchResponse:
        if adapters.web is None:
            logger.info("Web-only search requested but web search is not configured")
            return SearchResponse(metadata=SearchMetadata(search_time_ms=_elapsed_ms(start)))

        processed = await analyze(
            query, vehicle_context, adapters.llm, self.config.query_understanding_timeout_ms
        )
        web_results = await self._web_search(adapters, processed, vehicle_context, WEB_PENDING_REASON)
        return SearchResponse(
            results=web_results[: self.config.web_result_limit],
            metadata=SearchMetadata(
                total_results=len(web_results),
                search_time_ms=_elapsed_ms(start),
                sources_used=[SourceKind.WEB.value],
                query_intent=processed.intent,
                processed_query=processed,
            ),
        )

    async def _search_single(
        self,
        query: str,
        processed: ProcessedQuery,
        tenant_id: str,
        vehicle_context: Optional[VehicleContext],
        adapters: SearchAdapters,
        start: float,
    ) -> SearchResponse:
        # Keyword search gets the synonyms; vector and graph search get the raw text
        candidates, sources_used = await self._fan_out(
            adapters,
            keyword_query(processed.processed_query or query, processed.expanded_terms),
            query,
            tenant_id,
            vehicle_context,
        )
        ranked = merge_and_score(candidates)

        web_results: List[EnrichedResult] = []
        if adapters.web is not None and (
            len(ranked) < self.config.web_escalation_threshold or processed.should_search_web
        ):
            sources_used.append(SourceKind.WEB.value)
            web_results = await self._web_search(adapters, processed, vehicle_context, WEB_UNVERIFIED_REASON)

        final, final_web, filters, related, enrichment = await self._rerank(
            query, processed, ranked, web_results, adapters, vehicle_context
        )

        logger.info(
            f"Search complete: {len(final)} internal, {len(final_web)} web, "
            f"sources={sources_used}, {_elapsed_ms(start)}ms"
        )
        return SearchResponse(
            results=final[: self.config.result_limit],
            web_results=final_web[: self.config.web_result_limit] or None,
            suggested_filters=filters,
            related_queries=related,
            metadata=SearchMetadata(
                total_results=len(final) + len(final_web),
                search_time_ms=_elapsed_ms(start),
                sources_used=sources_used,
                query_intent=processed.intent,
                processed_query=processed,
                web_enrichment=enrichment,
            ),
        )

    async def _search_group(
        self,
        intent: PartIntent,
        processed: ProcessedQuery,
        tenant_id: str,
        vehicle_context: Optional[VehicleContext],
        adapters: SearchAdapters,
    ) -> Tuple[PartGroup, List[str]]:
        candidates, sources_used = await self._fan_out(
            adapters,
            keyword_query(intent.query_text, intent.expanded_terms),
            intent.query_text,
            tenant_id,
            vehicle_context,
        )
        ranked = merge_and_score(candidates)

        web_results: List[EnrichedResult] = []
        if adapters.web is not None and len(ranked) < self.config.web_escalation_threshold:
            sources_used.append(SourceKind.WEB.value)
            web_results = await self._web_search(
                adapters, intent_query(processed, intent), vehicle_context, WEB_UNVERIFIED_REASON
            )

        final, final_web, _, _, _ = await self._rerank(
            intent.query_text, processed, ranked, web_results, adapters, vehicle_context
        )
        group = PartGroup(
            label=intent.label,
            query_used=intent.query_text,
            results=final[: self.config.group_result_limit],
            web_results=final_web[: self.config.group_web_result_limit] or None,
            result_count=len(final) + len(final_web),
        )
        return group, sources_used

    async def _search_multi_part(
        self,
        processed: ProcessedQuery,
        tenant_id: str,
        vehicle_context: Optional[VehicleContext],
        adapters: SearchAdapters,
        start: float,
    ) -> SearchResponse:
        intents = list(processed.part_intents or [])[: self.config.max_part_intents]
        if len(processed.part_intents or []) > len(intents):
            logger.warning(f"Capped part intents from {len(processed.part_intents)} to {len(intents)}")
        logger.info(f"Multi-part search: {[i.label for i in intents]}")

        outcomes = await asyncio.gather(
            *(self._search_group(i, processed, tenant_id, vehicle_context, adapters) for i in intents),
            return_exceptions=True,
        )

        groups: List[PartGroup] = []
        sources_used: List[str] = []
        all_results: List[EnrichedResult] = []
        all_web: List[EnrichedResult] = []
        for intent, outcome in zip(intents, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Part group '{intent.label}' failed: {outcome}")
                groups.append(PartGroup(label=intent.label, query_used=intent.query_text))
                continue
            group, group_sources = outcome
            groups.append(group)
            all_results.extend(group.results)
            all_web.extend(group.web_results or [])
            sources_used.extend(s for s in group_sources if s not in sources_used)

        flat = dedupe_by_part_number(all_results)
        flat_web = dedupe_by_part_number(all_web)
        return SearchResponse(
            results=flat[: self.config.result_limit],
            web_results=flat_web[: self.config.web_result_limit] or None,
            part_groups=groups,
            metadata=SearchMetadata(
                total_results=len(flat) + len(flat_web),
                search_time_ms=_elapsed_ms(start),
                sources_used=sources_used,
                query_intent=processed.intent,
                processed_query=processed,
                is_multi_part_query=True,
                part_count=len(intents),
            ),
        )
