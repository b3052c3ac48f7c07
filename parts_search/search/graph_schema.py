"""
Schema discovery for the parts graph.

Lists the manufacturer/model/namespace vocabulary actually present in a
tenant's graph so administrators can fill in vehicle search mappings with
names the graph adapter will match.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from loguru import logger
from neo4j import AsyncDriver, AsyncGraphDatabase
from pydantic import BaseModel, Field


class ModelRef(BaseModel):
    name: str
    manufacturer: str


class ModelDetails(BaseModel):
    namespaces: List[str] = Field(default_factory=list)
    technical_domains: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    serial_ranges: List[str] = Field(default_factory=list)


class GraphSchema(BaseModel):
    manufacturers: List[str] = Field(default_factory=list)
    models: List[ModelRef] = Field(default_factory=list)
    namespaces: List[str] = Field(default_factory=list)
    technical_domains: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    node_labels: List[str] = Field(default_factory=list)
    relationship_types: List[str] = Field(default_factory=list)


MANUFACTURERS = "MATCH (m:Manufacturer) RETURN DISTINCT m.name AS name ORDER BY name"
MODELS_BY_MANUFACTURER = """
MATCH (mfg:Manufacturer {name: $manufacturer})-[:MANUFACTURES]->(model:Model)
RETURN DISTINCT model.name AS name ORDER BY name
"""
ALL_MODELS = """
MATCH (mfg:Manufacturer)-[:MANUFACTURES]->(model:Model)
RETURN DISTINCT model.name AS name, mfg.name AS manufacturer
ORDER BY manufacturer, name
"""
NAMESPACES = """
MATCH (p:Part) WHERE p.namespace IS NOT NULL
RETURN DISTINCT p.namespace AS name ORDER BY name
LIMIT 100
"""
TECHNICAL_DOMAINS = "MATCH (d:TechnicalDomain) RETURN DISTINCT d.name AS name ORDER BY name"
CATEGORIES = "MATCH (c:Category) RETURN DISTINCT c.name AS name ORDER BY name"
NODE_LABELS = "CALL db.labels() YIELD label RETURN label AS name ORDER BY name"
RELATIONSHIP_TYPES = "CALL db.relationshipTypes() YIELD relationshipType RETURN relationshipType AS name ORDER BY name"

_MODEL_SCOPE = "MATCH (mfg:Manufacturer {name: $manufacturer})-[:MANUFACTURES]->(m:Model {name: $model})"
MODEL_NAMESPACES = _MODEL_SCOPE + """
MATCH (m)<-[:HAS_DOMAIN]-(:TechnicalDomain)-[:CONTAINS_PART]-(p:Part)
WHERE p.namespace IS NOT NULL
RETURN DISTINCT p.namespace AS name ORDER BY name
"""
MODEL_DOMAINS = _MODEL_SCOPE + """
MATCH (m)<-[:HAS_DOMAIN]-(d:TechnicalDomain)
RETURN DISTINCT d.name AS name ORDER BY name
"""
MODEL_CATEGORIES = _MODEL_SCOPE + """
MATCH (m)<-[:HAS_DOMAIN]-(:TechnicalDomain)-[:CONTAINS_PART]-(p:Part)-[:BELONGS_TO_CATEGORY]->(c:Category)
RETURN DISTINCT c.name AS name ORDER BY name
"""
MODEL_SERIAL_RANGES = _MODEL_SCOPE + """
MATCH (m)<-[:HAS_DOMAIN]-(:TechnicalDomain)-[:CONTAINS_PART]-(p:Part)-[:VALID_FOR_RANGE]->(s:SerialNumberRange)
RETURN DISTINCT s.range AS name ORDER BY name
"""


class GraphSchemaDiscovery:
    def __init__(self, driver: AsyncDriver, database: str = "neo4j"):
        self.driver = driver
        self.database = database

    @classmethod
    def from_credentials(cls, creds: Dict[str, Any]) -> "GraphSchemaDiscovery":
        driver = AsyncGraphDatabase.driver(
            creds["uri"],
            auth=(creds.get("username") or "neo4j", creds.get("password") or ""),
        )
        return cls(driver, creds.get("database") or "neo4j")

    async def _names(self, cypher: str, **params: Any) -> List[str]:
        async with self.driver.session(database=self.database) as session:
            result = await session.run(cypher, params)
            rows = await result.data()
        return [r["name"] for r in rows if r.get("name")]

    async def get_manufacturers(self) -> List[str]:
        return await self._names(MANUFACTURERS)

    async def get_models(self, manufacturer: Optional[str] = None) -> List[ModelRef]:
        if manufacturer:
            names = await self._names(MODELS_BY_MANUFACTURER, manufacturer=manufacturer)
            return [ModelRef(name=n, manufacturer=manufacturer) for n in names]
        async with self.driver.session(database=self.database) as session:
            result = await session.run(ALL_MODELS)
            rows = await result.data()
        return [
            ModelRef(name=r["name"], manufacturer=r["manufacturer"])
            for r in rows
            if r.get("name") and r.get("manufacturer")
        ]

    async def get_namespaces(self) -> List[str]:
        return await self._names(NAMESPACES)

    async def get_technical_domains(self) -> List[str]:
        return await self._names(TECHNICAL_DOMAINS)

    async def get_categories(self) -> List[str]:
        return await self._names(CATEGORIES)

    async def get_model_details(self, manufacturer: str, model: str) -> ModelDetails:
        namespaces, domains, categories, serial_ranges = await asyncio.gather(
            self._names(MODEL_NAMESPACES, manufacturer=manufacturer, model=model),
            self._names(MODEL_DOMAINS, manufacturer=manufacturer, model=model),
            self._names(MODEL_CATEGORIES, manufacturer=manufacturer, model=model),
            self._names(MODEL_SERIAL_RANGES, manufacturer=manufacturer, model=model),
        )
        return ModelDetails(
            namespaces=namespaces,
            technical_domains=domains,
            categories=categories,
            serial_ranges=serial_ranges,
        )

    async def discover(self, manufacturer: Optional[str] = None) -> GraphSchema:
        """Full vocabulary snapshot; sections that fail are left empty."""
        sections = {
            "manufacturers": self.get_manufacturers(),
            "models": self.get_models(manufacturer),
            "namespaces": self.get_namespaces(),
            "technical_domains": self.get_technical_domains(),
            "categories": self.get_categories(),
            "node_labels": self._names(NODE_LABELS),
            "relationship_types": self._names(RELATIONSHIP_TYPES),
        }
        results = await asyncio.gather(*sections.values(), return_exceptions=True)

        data: Dict[str, Any] = {}
        for key, result in zip(sections, results):
            if isinstance(result, Exception):
                logger.warning(f"Graph schema discovery: {key} failed: {result}")
                continue
            data[key] = result
        return GraphSchema(**data)

    async def close(self) -> None:
        await self.driver.close()
