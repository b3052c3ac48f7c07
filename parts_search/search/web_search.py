"""
Web search for parts via the Serper API.

Web hits are unverified: scores are kept in the 40-70 band so they never
outrank a verified internal match, and each candidate carries its source in
``compatibility.web_source``.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from ..collaborators import LanguageModelClient
from ..config import settings
from ..exceptions import WebSearchError
from ..llm.prompts import extract_web_parts_prompt
from ..models import Compatibility, PartCandidate, PartMetadata, ProcessedQuery, SourceKind, VehicleContext, WebSource

KNOWN_SUPPLIER_DOMAINS = [
    # OEM
    "deere.com", "jdparts.deere.com", "cat.com", "parts.cat.com", "komatsu.com",
    "volvoce.com", "kubota.com", "case.com", "casece.com", "bobcat.com", "hitachicm.com",
    # marketplaces
    "amazon.com", "ebay.com", "aliexpress.com",
    # aftermarket
    "tractorhouseparts.com", "tractorjoe.com", "jacks-small-engines.com", "messicks.com",
    "agkits.com", "yesterdaystractors.com", "partstore.com",
]

MIN_RELEVANCE = 20
BASE_SCORE_FLOOR = 40.0
BASE_SCORE_CEILING = 60.0
PART_NUMBER_BONUS = 20
SUPPLIER_BONUS = 10
WEB_SCORE_CAP = 70.0

_SNIPPET_PART_NUMBER_RE = re.compile(r"\b[A-Z]{1,3}-?\d{4,7}\b|\b\d{3,4}-\d{4,6}\b", re.IGNORECASE)
_PRICE_RE = re.compile(r"\$[\d,]+\.?\d{0,2}")


class ExtractedWebPart(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    part_number: Optional[str] = Field(default=None, alias="partNumber")
    description: Optional[str] = None
    price: Optional[float] = None
    source_name: Optional[str] = Field(default=None, alias="sourceName")
    source_url: Optional[str] = Field(default=None, alias="sourceUrl")
    snippet: Optional[str] = None
    relevance_score: float = Field(default=0, alias="relevanceScore")


class _WebExtraction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    extracted_parts: List[ExtractedWebPart] = Field(default_factory=list, alias="extractedParts")


def _normalize_part_number(value: str) -> str:
    return re.sub(r"[-\s]", "", value).upper()


def build_search_query(
    search_text: str,
    processed: Optional[ProcessedQuery] = None,
    vehicle: Optional[VehicleContext] = None,
) -> str:
    parts: List[str] = []
    if processed is not None and processed.part_numbers:
        parts.append(" OR ".join(processed.part_numbers))
    parts.append(search_text)
    if vehicle is not None and (vehicle.make or vehicle.model):
        parts.append(" ".join(p for p in (vehicle.make, vehicle.model) if p))
    parts.append("parts")
    return " ".join(parts)


def hostname(url: str) -> str:
    try:
        host = urlparse(url).hostname
    except ValueError:
        host = None
    return host.replace("www.", "", 1) if host else "Unknown"


def basic_extract(organic: List[Dict[str, Any]]) -> List[ExtractedWebPart]:
    """Regex extraction used when no language model is available."""
    extracted = []
    for result in organic:
        title = result.get("title") or ""
        snippet = result.get("snippet") or ""
        link = result.get("link") or ""

        part_match = _SNIPPET_PART_NUMBER_RE.search(f"{title} {snippet}")
        price_match = _PRICE_RE.search(snippet)
        price = None
        if price_match:
            try:
                price = float(price_match.group(0).replace("$", "").replace(",", ""))
            except ValueError:
                price = None

        extracted.append(
            ExtractedWebPart(
                part_number=part_match.group(0) if part_match else None,
                description=title,
                price=price,
                source_name=hostname(link),
                source_url=link,
                snippet=snippet,
                relevance_score=50,
            )
        )
    return extracted


def score_web_part(part: ExtractedWebPart, query_part_numbers: List[str]) -> float:
    """Base 40-60 from relevance, +20 part number match, +10 known supplier, capped at 70."""
    score = min(max(part.relevance_score * 0.6, BASE_SCORE_FLOOR), BASE_SCORE_CEILING)

    if part.part_number and query_part_numbers:
        wanted = {_normalize_part_number(p) for p in query_part_numbers}
        if _normalize_part_number(part.part_number) in wanted:
            score += PART_NUMBER_BONUS

    url = (part.source_url or "").lower()
    if any(domain in url for domain in KNOWN_SUPPLIER_DOMAINS):
        score += SUPPLIER_BONUS

    return min(score, WEB_SCORE_CAP)


def to_candidates(parts: List[ExtractedWebPart], processed: Optional[ProcessedQuery] = None) -> List[PartCandidate]:
    query_part_numbers = processed.part_numbers if processed is not None else []
    candidates = []
    for part in parts:
        if part.relevance_score < MIN_RELEVANCE:
            continue
        source_url = part.source_url or ""
        source_name = part.source_name or hostname(source_url)
        snippet = part.snippet or ""
        candidates.append(
            PartCandidate(
                part_number=part.part_number or f"WEB-{source_name[:10]}",
                description=part.description or "",
                price=part.price or None,
                score=score_web_part(part, query_part_numbers),
                source=SourceKind.WEB,
                metadata=PartMetadata(source_url=source_url, text=snippet),
                compatibility=Compatibility(
                    web_source=WebSource(
                        source_name=source_name,
                        source_url=source_url,
                        snippet=snippet,
                        is_verified=False,
                    )
                ),
            )
        )
    return candidates


class WebSearchAdapter:
    """Serper-backed web search; failures yield an empty list."""

    def __init__(
        self,
        api_key: str,
        *,
        url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        num_results: Optional[int] = None,
        extract_top_n: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key
        self.url = url or settings.serper_url
        self.client = client
        self.num_results = num_results or settings.web_num_results
        self.extract_top_n = extract_top_n or settings.web_extract_top_n
        self.timeout = timeout or settings.web_timeout_s

    async def _post(self, client: httpx.AsyncClient, query: str) -> Dict[str, Any]:
        resp = await client.post(
            self.url,
            json={"q": query, "num": self.num_results},
            headers={"X-API-KEY": self.api_key, "Content-Type": "application/json"},
        )
        resp.raise_for_status()
        return resp.json()

    async def call_serper(self, query: str) -> Dict[str, Any]:
        try:
            if self.client is not None:
                return await self._post(self.client, query)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await self._post(client, query)
        except (httpx.HTTPError, ValueError) as e:
            raise WebSearchError(f"Serper request failed: {e}", query=query, cause=e) from e

    async def llm_extract(
        self,
        search_text: str,
        organic: List[Dict[str, Any]],
        llm_client: LanguageModelClient,
    ) -> List[ExtractedWebPart]:
        try:
            result = await llm_client.generate_structured_output(
                extract_web_parts_prompt(search_text, organic),
                _WebExtraction,
                temperature=0.1,
                max_tokens=2000,
            )
            return result.extracted_parts
        except Exception as e:
            logger.warning(f"LLM web extraction failed, using basic extraction: {e}")
            return basic_extract(organic)

    async def search(
        self,
        query: Union[str, ProcessedQuery],
        vehicle_context: Optional[VehicleContext] = None,
        llm_client: Optional[LanguageModelClient] = None,
    ) -> List[PartCandidate]:
        processed = query if isinstance(query, ProcessedQuery) else None
        search_text = (processed.processed_query or processed.original_query) if processed else str(query)

        search_query = build_search_query(search_text, processed, vehicle_context)
        try:
            response = await self.call_serper(search_query)
        except WebSearchError as e:
            logger.error(f"Web search failed: {e}")
            return []

        organic = response.get("organic") or []
        if not organic:
            logger.info(f"No organic web results for: {search_query}")
            return []

        top = organic[: self.extract_top_n]
        if llm_client is not None:
            extracted = await self.llm_extract(search_text, top, llm_client)
        else:
            extracted = basic_extract(top)

        candidates = to_candidates(extracted, processed)
        logger.info(f"Web search: {len(candidates)} candidates from {len(organic)} organic results")
        return candidates

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
