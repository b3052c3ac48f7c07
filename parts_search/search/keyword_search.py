"""
Structured (keyword) search over the tenant's parts catalog in PostgreSQL.

Rows are pre-filtered in SQL (tenant, active, keyword OR-conditions, and the
vehicle mapping as a required AND filter), then scored in Python:

    exact part number            100
    part number contains phrase   80
    description contains phrase   70  (+10 when it starts with it)
    category/subcategory phrase   50
    all keywords matched          40
    some keywords matched         matched/total * 30

plus +20 for vehicle compatibility and +5 when in stock.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, List, Mapping, Optional

from loguru import logger
from sqlalchemy import Boolean, Column, Integer, MetaData, Numeric, String, Table, Text, and_, or_, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from ..collaborators import MappingLookup, resolve_mapping
from ..config import settings
from ..exceptions import KeywordSearchError
from ..models import Compatibility, PartCandidate, SourceKind, VehicleContext, VehicleSearchMapping
from .keywords import extract_keywords

metadata = MetaData()

parts_table = Table(
    "parts",
    metadata,
    Column("id", String, primary_key=True),
    Column("partNumber", String, key="part_number", nullable=False),
    Column("description", Text, nullable=False),
    Column("category", String),
    Column("subcategory", String),
    Column("organizationId", String, key="organization_id", nullable=False),
    Column("price", Numeric(10, 2)),
    Column("stockQuantity", Integer, key="stock_quantity"),
    Column("compatibility", JSONB),
    Column("isActive", Boolean, key="is_active"),
)

_SELECT_COLUMNS = [
    parts_table.c.id.label("id"),
    parts_table.c.part_number.label("part_number"),
    parts_table.c.description.label("description"),
    parts_table.c.category.label("category"),
    parts_table.c.subcategory.label("subcategory"),
    parts_table.c.price.label("price"),
    parts_table.c.stock_quantity.label("stock_quantity"),
    parts_table.c.compatibility.label("compatibility"),
]

# Keywords shorter than this are too noisy to match against part numbers
MIN_PART_NUMBER_TERM = 3

COMPATIBILITY_BONUS = 20
IN_STOCK_BONUS = 5


def build_statement(
    terms: List[str],
    tenant_id: str,
    mapping: Optional[VehicleSearchMapping] = None,
    *,
    limit: int = 100,
):
    """SELECT for one keyword search; mapping filters are ANDed on top of the text OR."""
    phrase = " ".join(terms)
    c = parts_table.c

    text_conditions = [
        c.part_number.icontains(phrase, autoescape=True),
        c.description.icontains(phrase, autoescape=True),
        c.category.icontains(phrase, autoescape=True),
        c.subcategory.icontains(phrase, autoescape=True),
    ]
    for term in terms:
        text_conditions.append(c.description.icontains(term, autoescape=True))
        text_conditions.append(c.category.icontains(term, autoescape=True))
        text_conditions.append(c.subcategory.icontains(term, autoescape=True))
    for term in terms:
        if len(term) >= MIN_PART_NUMBER_TERM:
            text_conditions.append(c.part_number.icontains(term, autoescape=True))

    where = [
        c.organization_id == tenant_id,
        c.is_active.is_(True),
        or_(*text_conditions),
    ]

    if mapping is not None:
        scope = mapping.structured
        if scope.category:
            where.append(c.category.icontains(scope.category, autoescape=True))
        if scope.subcategory:
            where.append(c.subcategory.icontains(scope.subcategory, autoescape=True))
        compat = []
        if scope.make:
            compat.append(c.compatibility["makes"].contains([scope.make]))
        if scope.model:
            compat.append(c.compatibility["models"].contains([scope.model]))
        if compat:
            where.append(or_(*compat))

    return (
        select(*_SELECT_COLUMNS)
        .where(and_(*where))
        .order_by(c.part_number.asc(), c.description.asc())
        .limit(limit)
    )


def _contains(value: Optional[str], needle: str) -> bool:
    return bool(value) and needle in value.lower()


def vehicle_matches(compatibility: Optional[Mapping[str, Any]], vehicle: Optional[VehicleContext]) -> bool:
    if not compatibility or vehicle is None:
        return False
    makes = compatibility.get("makes") or []
    models = compatibility.get("models") or []
    years = compatibility.get("years") or []
    return (
        (vehicle.make is not None and vehicle.make in makes)
        or (vehicle.model is not None and vehicle.model in models)
        or (vehicle.year is not None and (vehicle.year in years or str(vehicle.year) in years))
    )


def score_row(
    row: Mapping[str, Any],
    terms: List[str],
    vehicle: Optional[VehicleContext] = None,
) -> float:
    """Relevance of one catalog row; the highest matching tier wins, bonuses add on top."""
    phrase = " ".join(terms)
    part_number = (row.get("part_number") or "").lower()
    description = (row.get("description") or "").lower()
    category = row.get("category")
    subcategory = row.get("subcategory")

    score = 0.0
    if part_number == phrase:
        score = 100.0
    elif phrase in part_number:
        score = 80.0
    elif phrase in description:
        score = 70.0
        if description.startswith(phrase):
            score += 10
    elif _contains(category, phrase) or _contains(subcategory, phrase):
        score = 50.0
    else:
        matched = [
            t for t in terms
            if t in description or _contains(category, t) or _contains(subcategory, t)
        ]
        if terms and len(matched) == len(terms):
            score = 40.0
        elif matched:
            score = len(matched) / len(terms) * 30

    if vehicle_matches(row.get("compatibility"), vehicle):
        score += COMPATIBILITY_BONUS

    if (row.get("stock_quantity") or 0) > 0:
        score += IN_STOCK_BONUS

    return score


def _to_candidate(row: Mapping[str, Any], score: float) -> PartCandidate:
    raw = dict(row.get("compatibility") or {})
    compatibility = Compatibility(
        makes=raw.pop("makes", None) or [],
        models=raw.pop("models", None) or [],
        years=raw.pop("years", None) or [],
        extra=raw,
    )
    price = row.get("price")
    return PartCandidate(
        id=str(row["id"]) if row.get("id") is not None else None,
        part_number=row["part_number"],
        description=row.get("description") or "",
        price=float(price) if isinstance(price, (Decimal, int, float)) else None,
        stock_quantity=row.get("stock_quantity"),
        category=row.get("category"),
        score=score,
        source=SourceKind.STRUCTURED,
        compatibility=compatibility,
    )


class KeywordSearchAdapter:
    """Keyword search over the ``parts`` table, always scoped to one tenant."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        mappings: Optional[MappingLookup] = None,
        *,
        engine: Optional[AsyncEngine] = None,
        pool_size: Optional[int] = None,
        top_k: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.mappings = mappings
        # Only set when this adapter owns the engine and must dispose it
        self.engine = engine
        self.pool_size = pool_size or settings.keyword_pool_size
        self.top_k = top_k or settings.keyword_top_k

    async def search(
        self,
        query: str,
        tenant_id: str,
        vehicle_context: Optional[VehicleContext] = None,
    ) -> List[PartCandidate]:
        terms = extract_keywords(query)
        if not terms:
            logger.warning(f"No meaningful keywords in query: {query!r}")
            return []

        mapping = await resolve_mapping(self.mappings, vehicle_context)
        if vehicle_context and vehicle_context.vehicle_id and mapping is None:
            logger.debug(f"No search mapping for vehicle {vehicle_context.vehicle_id}")

        stmt = build_statement(terms, tenant_id, mapping, limit=self.pool_size)
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                rows = result.mappings().all()
        except SQLAlchemyError as e:
            raise KeywordSearchError("Parts catalog query failed", query=query, cause=e) from e

        logger.debug(f"Keyword search: {len(rows)} raw rows for {terms}")

        candidates = [_to_candidate(row, score_row(row, terms, vehicle_context)) for row in rows]
        candidates.sort(key=lambda c: c.score, reverse=True)
        return candidates[: self.top_k]

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
