"""Tests for graph search, its fallback ladder and schema discovery (no real Neo4j)."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest
from neo4j.exceptions import Neo4jError, ServiceUnavailable

from parts_search.collaborators import InMemoryVehicleRegistry
from parts_search.exceptions import GraphSearchError
from parts_search.models import GraphMapping, SourceKind, VehicleContext, VehicleSearchMapping
from parts_search.search.graph_schema import GraphSchemaDiscovery
from parts_search.search.graph_search import (
    FallbackTier,
    GraphQueryParams,
    GraphSearchAdapter,
    record_to_candidate,
    run_ladder,
)


class _FakeResult:
    def __init__(self, rows):
        self._rows = rows

    async def data(self):
        return self._rows


class _FakeSession:
    def __init__(self, driver: "_FakeDriver"):
        self.driver = driver

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def run(self, cypher: str, params: Optional[Dict[str, Any]] = None):
        self.driver.queries.append({"cypher": cypher, "params": params or {}})
        if self.driver.error is not None:
            raise self.driver.error
        if callable(self.driver.responder):
            return _FakeResult(self.driver.responder(cypher, params or {}))
        rows = self.driver.read_queue.pop(0) if self.driver.read_queue else []
        return _FakeResult(rows)


class _FakeDriver:
    def __init__(self, read_queue: List[List[Dict[str, Any]]] = None, *, error=None, responder=None):
        self.read_queue = list(read_queue or [])
        self.error = error
        self.responder = responder
        self.queries: List[Dict[str, Any]] = []
        self.closed = False

    def session(self, database: str = None):
        return _FakeSession(self)

    async def close(self):
        self.closed = True


def _record(part_number: str, score: float, **extra) -> Dict[str, Any]:
    record = {
        "partNumber": part_number,
        "partTitle": f"Part {part_number}",
        "categories": [],
        "compatibleModels": [],
        "manufacturers": [],
        "serialRanges": [],
        "domains": [],
        "relationships": [],
        "score": score,
    }
    record.update(extra)
    return record


def _registry(namespace: Optional[str] = "deere-310sl"):
    registry = InMemoryVehicleRegistry()
    registry.register(
        VehicleSearchMapping(
            vehicle_id="v1",
            graph=GraphMapping(model_name="310SL", manufacturer="John Deere", namespace=namespace),
        )
    )
    return registry


VEHICLE = VehicleContext(vehicle_id="v1", make="John Deere", model="310SL")


# ─── Parsing ──────────────────────────────────────────────────────

def test_record_to_candidate_keeps_relationships_and_category():
    candidate = record_to_candidate(
        _record(
            "AT-1",
            85,
            categoryBreadcrumb="Engine - Cooling",
            relationships=[
                {"type": "REQUIRES_PART", "partNumber": "AT-2", "partTitle": "Gasket"},
                {"type": None, "partNumber": None, "partTitle": None},
            ],
        )
    )

    assert candidate.source == SourceKind.GRAPH
    assert candidate.category == "Cooling"
    assert candidate.score == 85.0
    assert [(r.type, r.part_number) for r in candidate.compatibility.relationships] == [("REQUIRES_PART", "AT-2")]


def test_query_params_from_mapping():
    mapping = VehicleSearchMapping(
        vehicle_id="v1", graph=GraphMapping(model_name="310SL", manufacturer="John Deere", namespace="  ")
    )
    params = GraphQueryParams.from_mapping(["water", "pump"], mapping)

    assert params.has_vehicle
    assert params.namespace is None
    assert params.to_cypher() == {
        "query": "water pump",
        "searchTerms": ["water", "pump"],
        "limit": 20,
        "manufacturer": "John Deere",
        "modelName": "310SL",
    }


# ─── Ladder ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_ladder_stops_at_first_non_empty_tier():
    calls = []
    outcomes = {"first": [], "second": [{"partNumber": "X"}], "third": [{"partNumber": "Y"}]}

    async def run(cypher, params):
        calls.append(cypher)
        return outcomes[cypher]

    ladder = [
        FallbackTier(name, applies=lambda p: True, cypher=lambda p, name=name: name)
        for name in ("first", "second", "third")
    ]
    rows = await run_ladder(run, GraphQueryParams(terms=["pump"]), ladder)

    assert rows == [{"partNumber": "X"}]
    assert calls == ["first", "second"]


@pytest.mark.asyncio
async def test_ladder_skips_failing_tier():
    async def run(cypher, params):
        if cypher == "broken":
            raise Neo4jError("syntax")
        return [{"partNumber": "Z"}]

    ladder = [
        FallbackTier("broken", applies=lambda p: True, cypher=lambda p: "broken"),
        FallbackTier("ok", applies=lambda p: True, cypher=lambda p: "ok"),
    ]

    assert await run_ladder(run, GraphQueryParams(terms=["pump"]), ladder) == [{"partNumber": "Z"}]


# ─── Adapter ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_namespace_any_tier_wins_without_global_rows():
    any_rows = [_record("WP-1", 60), _record("WP-2", 50), _record("WP-3", 50)]
    driver = _FakeDriver(read_queue=[[], [], [], any_rows, [_record("GLOBAL-1", 40)]])
    adapter = GraphSearchAdapter(driver, mappings=_registry())

    results = await adapter.graph_search("water pump", "org-1", VEHICLE)

    assert [r.part_number for r in results] == ["WP-1", "WP-2", "WP-3"]
    assert all((r.score - 40) % 10 == 0 and r.score > 40 for r in results)
    # primary, reversed direction, namespace ALL, namespace ANY; global never runs
    assert len(driver.queries) == 4
    assert "matchCount" in driver.queries[-1]["cypher"]
    assert driver.queries[-1]["params"]["namespace"] == "deere-310sl"


@pytest.mark.asyncio
async def test_primary_hit_skips_ladder():
    driver = _FakeDriver(read_queue=[[_record("WP-1", 100)]])
    adapter = GraphSearchAdapter(driver, mappings=_registry())

    results = await adapter.graph_search("water pump", "org-1", VEHICLE)

    assert [r.part_number for r in results] == ["WP-1"]
    assert len(driver.queries) == 1
    assert "$manufacturer" in driver.queries[0]["cypher"]


@pytest.mark.asyncio
async def test_no_mapping_runs_unscoped_query_only():
    driver = _FakeDriver(read_queue=[[]])
    adapter = GraphSearchAdapter(driver)

    assert await adapter.graph_search("water pump", "org-1") == []
    assert len(driver.queries) == 1
    assert "size(compatibleModels) * 3" in driver.queries[0]["cypher"]


@pytest.mark.asyncio
async def test_rows_without_part_number_are_dropped():
    driver = _FakeDriver(read_queue=[[_record("WP-1", 70), _record(None, 70)]])
    adapter = GraphSearchAdapter(driver)

    results = await adapter.graph_search("water pump", "org-1")

    assert [r.part_number for r in results] == ["WP-1"]


@pytest.mark.asyncio
async def test_unreachable_graph_returns_empty():
    adapter = GraphSearchAdapter(_FakeDriver(error=ServiceUnavailable("Connection refused")))

    assert await adapter.graph_search("water pump", "org-1") == []


@pytest.mark.asyncio
async def test_other_graph_errors_raise():
    adapter = GraphSearchAdapter(_FakeDriver(error=RuntimeError("Invalid input 'RETRUN'")))

    with pytest.raises(GraphSearchError):
        await adapter.graph_search("water pump", "org-1")


@pytest.mark.asyncio
async def test_close_closes_driver():
    driver = _FakeDriver()
    await GraphSearchAdapter(driver).close()
    assert driver.closed


# ─── Schema discovery ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_discover_keeps_sections_that_succeed():
    def responder(cypher, params):
        if "db.labels" in cypher:
            raise Neo4jError("procedure not allowed")
        if "(c:Category)" in cypher:
            raise ServiceUnavailable("connection reset")
        if "db.relationshipTypes" in cypher:
            return [{"name": "CONTAINS_PART"}, {"name": "HAS_DOMAIN"}]
        if "(d:TechnicalDomain)" in cypher:
            return [{"name": "Hydraulics"}]
        if "p.namespace" in cypher:
            return [{"name": "deere-310sl"}]
        if "MANUFACTURES" in cypher:
            return [{"name": "310SL", "manufacturer": "John Deere"}, {"name": "410L", "manufacturer": None}]
        if "(m:Manufacturer)" in cypher:
            return [{"name": "John Deere"}, {"name": None}]
        return []

    driver = _FakeDriver(responder=responder)
    schema = await GraphSchemaDiscovery(driver).discover()

    assert len(driver.queries) == 7
    assert schema.node_labels == []
    assert schema.categories == []
    assert schema.manufacturers == ["John Deere"]
    assert [(m.manufacturer, m.name) for m in schema.models] == [("John Deere", "310SL")]
    assert schema.namespaces == ["deere-310sl"]
    assert schema.technical_domains == ["Hydraulics"]
    assert schema.relationship_types == ["CONTAINS_PART", "HAS_DOMAIN"]


@pytest.mark.asyncio
async def test_model_details_are_scoped_to_manufacturer_and_model():
    def responder(cypher, params):
        if "SerialNumberRange" in cypher:
            return [{"name": "1T0310SL001-1T0310SL999"}]
        if "BELONGS_TO_CATEGORY" in cypher:
            return [{"name": "Filters"}]
        if "p.namespace" in cypher:
            return [{"name": "deere-310sl"}]
        return [{"name": "Engine"}]

    driver = _FakeDriver(responder=responder)
    details = await GraphSchemaDiscovery(driver).get_model_details("John Deere", "310SL")

    assert details.namespaces == ["deere-310sl"]
    assert details.technical_domains == ["Engine"]
    assert details.categories == ["Filters"]
    assert details.serial_ranges == ["1T0310SL001-1T0310SL999"]
    assert all(q["params"] == {"manufacturer": "John Deere", "model": "310SL"} for q in driver.queries)
