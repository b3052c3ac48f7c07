"""
External collaborators consumed by the search core.

The core only needs to know whether a tenant has a client for an adapter,
how a vehicle maps onto each catalog, and whether that vehicle is ready to
be searched. The protocols below describe those seams; the concrete classes
serve platform credentials from ``Settings`` and keep vehicle mappings in
memory, which is enough for the CLI and for tests.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Protocol, Set, Tuple, Type, TypeVar, Union

from loguru import logger
from pydantic import BaseModel

from .config import Settings, settings as default_settings
from .exceptions import TenantNotFoundError
from .models import VehicleContext, VehicleSearchMapping, VehicleSearchStatus

T = TypeVar("T", bound=BaseModel)

Credentials = Dict[str, Any]


class IntegrationKind(str, Enum):
    POSTGRES = "POSTGRES"
    QDRANT = "QDRANT"
    NEO4J = "NEO4J"
    OPENAI = "OPENAI"
    LLM = "LLM"
    SERPER = "SERPER"


# ─── Protocols ────────────────────────────────────────────────────

class CredentialResolver(Protocol):
    async def get_credentials(self, tenant_id: str, kind: IntegrationKind) -> Optional[Credentials]:
        ...

    async def get_credentials_with_fallback(
        self, tenant_id: str, kind: IntegrationKind
    ) -> Optional[Credentials]:
        ...


class MappingLookup(Protocol):
    async def get_mapping(self, vehicle_id: str) -> Optional[VehicleSearchMapping]:
        ...


class VehicleStatusLookup(Protocol):
    async def get_vehicle_status(self, vehicle_id: str) -> Optional[VehicleSearchStatus]:
        ...


class LanguageModelClient(Protocol):
    async def generate_structured_output(
        self,
        prompt: str,
        schema: Type[T],
        *,
        temperature: float = 0.1,
        max_tokens: int = 2048,
    ) -> T:
        ...


async def resolve_mapping(
    lookup: Optional[MappingLookup],
    vehicle_context: Optional[VehicleContext],
) -> Optional[VehicleSearchMapping]:
    """Mapping for the vehicle in context, or None when the search is unscoped."""
    if lookup is None or vehicle_context is None or not vehicle_context.vehicle_id:
        return None
    try:
        return await lookup.get_mapping(vehicle_context.vehicle_id)
    except Exception as e:
        logger.warning(f"Vehicle mapping lookup failed for {vehicle_context.vehicle_id}: {e}")
        return None


# ─── Settings-backed credentials ──────────────────────────────────

class SettingsCredentialResolver:
    """
    Tenant-owned credentials held in memory, with platform-shared
    credentials from ``Settings`` as the fallback.

    ``known_tenants`` restricts which tenant ids are accepted; ``None``
    accepts any tenant.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        *,
        tenant_credentials: Optional[Dict[str, Dict[IntegrationKind, Credentials]]] = None,
        known_tenants: Optional[Iterable[str]] = None,
    ) -> None:
        self.config = config or default_settings
        self.tenant_credentials = tenant_credentials or {}
        self.known_tenants: Optional[Set[str]] = set(known_tenants) if known_tenants is not None else None
        self.last_used_at: Dict[Tuple[str, IntegrationKind], datetime] = {}

    def _check_tenant(self, tenant_id: str) -> None:
        if self.known_tenants is not None and tenant_id not in self.known_tenants:
            raise TenantNotFoundError(tenant_id)

    def _touch(self, tenant_id: str, kind: IntegrationKind) -> None:
        self.last_used_at[(tenant_id, kind)] = datetime.now(timezone.utc)

    async def get_credentials(self, tenant_id: str, kind: IntegrationKind) -> Optional[Credentials]:
        self._check_tenant(tenant_id)
        creds = self.tenant_credentials.get(tenant_id, {}).get(kind)
        if creds:
            self._touch(tenant_id, kind)
        return creds

    async def get_credentials_with_fallback(
        self, tenant_id: str, kind: IntegrationKind
    ) -> Optional[Credentials]:
        creds = await self.get_credentials(tenant_id, kind)
        if creds:
            return creds
        creds = self._platform_credentials(kind)
        if creds:
            self._touch(tenant_id, kind)
        return creds

    def _platform_credentials(self, kind: IntegrationKind) -> Optional[Credentials]:
        cfg = self.config
        if kind == IntegrationKind.POSTGRES and cfg.database_url:
            return {"url": cfg.database_url}
        if kind == IntegrationKind.QDRANT and cfg.qdrant_url:
            return {
                "url": cfg.qdrant_url,
                "api_key": cfg.qdrant_api_key or None,
                "collection": cfg.qdrant_collection,
            }
        if kind == IntegrationKind.NEO4J and cfg.neo4j_uri:
            return {
                "uri": cfg.neo4j_uri,
                "username": cfg.neo4j_user,
                "password": cfg.neo4j_password,
                "database": cfg.neo4j_database,
            }
        if kind == IntegrationKind.OPENAI and cfg.openai_api_key:
            return {
                "api_key": cfg.openai_api_key,
                "model": cfg.embedding_model,
                "dimensions": cfg.embedding_dimensions,
            }
        if kind == IntegrationKind.LLM and cfg.llm_api_key:
            return {
                "api_key": cfg.llm_api_key,
                "base_url": cfg.llm_base_url,
                "model": cfg.llm_model,
            }
        if kind == IntegrationKind.SERPER and cfg.serper_api_key:
            return {"api_key": cfg.serper_api_key, "url": cfg.serper_url}
        return None


# ─── In-memory vehicle registry ───────────────────────────────────

class InMemoryVehicleRegistry:
    """Vehicle mappings and readiness statuses keyed by vehicle id."""

    def __init__(self) -> None:
        self._mappings: Dict[str, VehicleSearchMapping] = {}
        self._statuses: Dict[str, VehicleSearchStatus] = {}

    def register(
        self,
        mapping: VehicleSearchMapping,
        status: VehicleSearchStatus = VehicleSearchStatus.SEARCH_READY,
    ) -> None:
        self._mappings[mapping.vehicle_id] = mapping
        self._statuses[mapping.vehicle_id] = status

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "InMemoryVehicleRegistry":
        """
        Load a JSON list of mappings. Each entry may carry a ``status``;
        entries without one are treated as search-ready.
        """
        registry = cls()
        entries = json.loads(Path(path).read_text(encoding="utf-8"))
        for entry in entries:
            entry = dict(entry)
            status = VehicleSearchStatus(entry.pop("status", VehicleSearchStatus.SEARCH_READY.value))
            registry.register(VehicleSearchMapping.model_validate(entry), status)
        logger.info(f"Loaded {len(entries)} vehicle mappings from {path}")
        return registry

    def set_status(self, vehicle_id: str, status: VehicleSearchStatus) -> None:
        self._statuses[vehicle_id] = status

    async def get_mapping(self, vehicle_id: str) -> Optional[VehicleSearchMapping]:
        return self._mappings.get(vehicle_id)

    async def get_vehicle_status(self, vehicle_id: str) -> Optional[VehicleSearchStatus]:
        return self._statuses.get(vehicle_id)
