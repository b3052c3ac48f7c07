"""Tests for credential resolution, the vehicle registry and the LLM client."""

from __future__ import annotations

from types import SimpleNamespace
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest
from pydantic import BaseModel

from parts_search.collaborators import (
    IntegrationKind,
    InMemoryVehicleRegistry,
    SettingsCredentialResolver,
    resolve_mapping,
)
from parts_search.config import Settings
from parts_search.exceptions import LanguageModelError, TenantNotFoundError
from parts_search.llm.client import OpenAICompatibleClient, _parse_json
from parts_search.models import VehicleContext, VehicleSearchMapping, VehicleSearchStatus


def _settings(**overrides) -> Settings:
    values = dict(
        _env_file=None,
        database_url="",
        qdrant_url="",
        neo4j_uri="",
        openai_api_key="",
        llm_api_key="",
        serper_api_key="",
    )
    values.update(overrides)
    return Settings(**values)


# ─── Credentials ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_tenant_credentials_win_over_platform():
    resolver = SettingsCredentialResolver(
        _settings(serper_api_key="platform-key"),
        tenant_credentials={"org-1": {IntegrationKind.SERPER: {"api_key": "tenant-key"}}},
    )

    own = await resolver.get_credentials_with_fallback("org-1", IntegrationKind.SERPER)
    shared = await resolver.get_credentials_with_fallback("org-2", IntegrationKind.SERPER)

    assert own == {"api_key": "tenant-key"}
    assert shared["api_key"] == "platform-key"
    assert await resolver.get_credentials("org-2", IntegrationKind.SERPER) is None


@pytest.mark.asyncio
async def test_missing_platform_credentials_resolve_to_none():
    resolver = SettingsCredentialResolver(_settings())

    assert await resolver.get_credentials_with_fallback("org-1", IntegrationKind.NEO4J) is None
    assert resolver.last_used_at == {}


@pytest.mark.asyncio
async def test_unknown_tenant_is_rejected():
    resolver = SettingsCredentialResolver(_settings(), known_tenants=["org-1"])

    with pytest.raises(TenantNotFoundError) as exc_info:
        await resolver.get_credentials_with_fallback("org-2", IntegrationKind.POSTGRES)
    assert exc_info.value.to_dict() == {
        "error_type": "TenantNotFoundError",
        "message": "Tenant not found: org-2",
        "source": "credentials",
        "query": None,
        "recoverable": False,
    }


# ─── Vehicle registry ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_registry_mapping_and_status():
    registry = InMemoryVehicleRegistry()
    registry.register(VehicleSearchMapping(vehicle_id="v1"))
    registry.set_status("v1", VehicleSearchStatus.INACTIVE)

    assert (await registry.get_mapping("v1")).vehicle_id == "v1"
    assert await registry.get_vehicle_status("v1") == VehicleSearchStatus.INACTIVE
    assert await registry.get_vehicle_status("missing") is None


@pytest.mark.asyncio
async def test_resolve_mapping_tolerates_lookup_failures():
    broken = SimpleNamespace(get_mapping=AsyncMock(side_effect=RuntimeError("db down")))

    assert await resolve_mapping(broken, VehicleContext(vehicle_id="v1")) is None
    assert await resolve_mapping(broken, VehicleContext(make="Deere")) is None
    broken.get_mapping.assert_awaited_once()


# ─── LLM client ───────────────────────────────────────────────────

class _Answer(BaseModel):
    part_types: List[str]
    note: Optional[str] = None


def _client_returning(content: str) -> OpenAICompatibleClient:
    client = OpenAICompatibleClient("key", "test/model", base_url="http://localhost")
    response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])
    client.client.chat.completions.create = AsyncMock(return_value=response)
    return client


def test_parse_json_strips_code_fences():
    assert _parse_json('```json\n{"a": 1}\n```') == {"a": 1}
    with pytest.raises(ValueError):
        _parse_json("[1, 2]")
    with pytest.raises(ValueError):
        _parse_json("   ")


@pytest.mark.asyncio
async def test_structured_output_is_validated():
    client = _client_returning('{"part_types": ["belt"]}')

    answer = await client.generate_structured_output("prompt", _Answer)

    assert answer.part_types == ["belt"]
    kwargs = client.client.chat.completions.create.await_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["model"] == "test/model"


@pytest.mark.asyncio
async def test_unusable_output_raises_language_model_error():
    client = _client_returning('{"unexpected": true}')

    with pytest.raises(LanguageModelError):
        await client.generate_structured_output("prompt", _Answer)


@pytest.mark.asyncio
async def test_transport_failure_raises_language_model_error():
    client = OpenAICompatibleClient("key", "test/model", base_url="http://localhost")
    client.client.chat.completions.create = AsyncMock(side_effect=ConnectionError("refused"))

    with pytest.raises(LanguageModelError):
        await client.generate_structured_output("prompt", _Answer)
