"""Tests for keyword extraction, catalog row scoring and the keyword adapter."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from parts_search.collaborators import InMemoryVehicleRegistry
from parts_search.exceptions import KeywordSearchError
from parts_search.models import (
    SourceKind,
    StructuredMapping,
    VehicleContext,
    VehicleSearchMapping,
)
from parts_search.search.keyword_search import KeywordSearchAdapter, build_statement, score_row
from parts_search.search.keywords import extract_keywords


# ─── Fakes ────────────────────────────────────────────────────────

class _FakeResult:
    def __init__(self, rows: List[Dict[str, Any]]):
        self._rows = rows

    def mappings(self):
        return self

    def all(self):
        return list(self._rows)


class _FakeSession:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.statements = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, stmt):
        self.statements.append(stmt)
        if self.error is not None:
            raise self.error
        return _FakeResult(self.rows)


def _row(**overrides):
    row = {
        "id": "p1",
        "part_number": "FF-100",
        "description": "Fuel filter element",
        "category": "Filters",
        "subcategory": "Fuel",
        "price": Decimal("24.50"),
        "stock_quantity": 0,
        "compatibility": None,
    }
    row.update(overrides)
    return row


# ─── Keywords ─────────────────────────────────────────────────────

def test_extract_keywords_drops_stop_words_and_punctuation():
    assert extract_keywords("I need the fuel filter, please!") == ["fuel", "filter"]
    assert extract_keywords("a ?") == []
    assert extract_keywords("Where is the AT-123456?") == ["at-123456"]


# ─── Scoring ──────────────────────────────────────────────────────

def test_score_row_exact_part_number_is_top_tier():
    assert score_row(_row(part_number="AT-123456"), ["at-123456"]) == 100


def test_score_row_description_prefix_bonus():
    assert score_row(_row(), ["fuel", "filter"]) == 80
    assert score_row(_row(description="Primary fuel filter"), ["fuel", "filter"]) == 70


def test_score_row_partial_keyword_match_is_proportional():
    row = _row(description="Hydraulic hose", category="Hoses", subcategory=None)
    assert score_row(row, ["hose", "clamp"]) == pytest.approx(15.0)


def test_score_row_adds_compatibility_and_stock_bonuses():
    row = _row(stock_quantity=3, compatibility={"makes": ["John Deere"], "models": []})
    vehicle = VehicleContext(make="John Deere")
    assert score_row(row, ["fuel", "filter"], vehicle) == 80 + 20 + 5


def test_build_statement_applies_tenant_and_mapping_filters():
    mapping = VehicleSearchMapping(
        vehicle_id="v1",
        structured=StructuredMapping(category="Filters", make="John Deere"),
    )
    stmt = build_statement(["fuel", "filter"], "org-1", mapping, limit=50)
    sql = str(stmt.compile(dialect=postgresql.dialect()))

    assert '"organizationId"' in sql
    assert '"isActive" IS true' in sql
    assert "@>" in sql
    assert "LIMIT" in sql


# ─── Adapter ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_search_returns_scored_candidates_sorted():
    session = _FakeSession(
        rows=[
            _row(id="a", part_number="FF-200", description="Filter housing", category=None, subcategory=None),
            _row(id="b", part_number="FF-100", description="Fuel filter element"),
        ]
    )
    adapter = KeywordSearchAdapter(lambda: session, top_k=5)

    results = await adapter.search("fuel filter", "org-1")

    assert [r.part_number for r in results] == ["FF-100", "FF-200"]
    assert results[0].source == SourceKind.STRUCTURED
    assert results[0].price == pytest.approx(24.5)
    assert len(session.statements) == 1


@pytest.mark.asyncio
async def test_search_without_keywords_skips_the_database():
    session = _FakeSession()
    adapter = KeywordSearchAdapter(lambda: session)

    assert await adapter.search("the a", "org-1") == []
    assert session.statements == []


@pytest.mark.asyncio
async def test_search_uses_vehicle_mapping():
    registry = InMemoryVehicleRegistry()
    registry.register(
        VehicleSearchMapping(vehicle_id="v1", structured=StructuredMapping(subcategory="Fuel"))
    )
    session = _FakeSession(rows=[_row()])
    adapter = KeywordSearchAdapter(lambda: session, registry)

    await adapter.search("fuel filter", "org-1", VehicleContext(vehicle_id="v1"))

    params = session.statements[0].compile(dialect=postgresql.dialect()).params
    assert "Fuel" in params.values()


@pytest.mark.asyncio
async def test_database_errors_raise_keyword_search_error():
    session = _FakeSession(error=OperationalError("SELECT", {}, Exception("connection lost")))
    adapter = KeywordSearchAdapter(lambda: session)

    with pytest.raises(KeywordSearchError) as exc_info:
        await adapter.search("fuel filter", "org-1")
    assert exc_info.value.recoverable
    assert exc_info.value.source == "postgres"
    assert exc_info.value.query == "fuel filter"
    assert isinstance(exc_info.value.cause, OperationalError)
