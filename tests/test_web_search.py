"""Tests for Serper web search, extraction and the web score ceiling."""

from __future__ import annotations

import json

import httpx
import pytest

from parts_search.exceptions import LanguageModelError
from parts_search.models import ProcessedQuery, SourceKind, VehicleContext
from parts_search.search.web_search import (
    WEB_SCORE_CAP,
    ExtractedWebPart,
    WebSearchAdapter,
    basic_extract,
    build_search_query,
    hostname,
    score_web_part,
    to_candidates,
)

ORGANIC = [
    {
        "title": "AT-123456 Water Pump | John Deere Parts",
        "link": "https://www.deere.com/parts/AT-123456",
        "snippet": "Genuine water pump AT-123456 for 310SL. $189.99",
    },
    {
        "title": "Backhoe water pumps",
        "link": "https://example-forum.net/thread/42",
        "snippet": "Anyone replaced the pump on a 310?",
    },
]


def _adapter(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebSearchAdapter("serper-key", client=client, **kwargs)


# ─── Scoring ──────────────────────────────────────────────────────

@pytest.mark.parametrize("relevance", [0, 20, 50, 100, 1000])
@pytest.mark.parametrize("url", ["https://parts.cat.com/x", "https://unknown.example/x"])
def test_web_score_never_exceeds_ceiling(relevance, url):
    part = ExtractedWebPart(part_number="AT-123456", source_url=url, relevance_score=relevance)

    score = score_web_part(part, ["AT 123456"])

    assert 40 <= score <= WEB_SCORE_CAP


def test_score_bands():
    plain = ExtractedWebPart(part_number="X-1", source_url="https://unknown.example", relevance_score=90)
    supplier = ExtractedWebPart(part_number="X-1", source_url="https://www.ebay.com/itm/1", relevance_score=50)

    assert score_web_part(plain, []) == 54
    assert score_web_part(supplier, []) == 50


def test_low_relevance_parts_are_dropped():
    parts = [
        ExtractedWebPart(part_number="A-1", relevance_score=10),
        ExtractedWebPart(part_number=None, source_name="ebay.com", relevance_score=30),
    ]

    candidates = to_candidates(parts)

    assert [c.part_number for c in candidates] == ["WEB-ebay.com"]
    assert candidates[0].source == SourceKind.WEB
    assert candidates[0].compatibility.web_source.is_verified is False


def test_basic_extract_reads_part_number_price_and_host():
    extracted = basic_extract(ORGANIC)

    assert extracted[0].part_number == "AT-123456"
    assert extracted[0].price == pytest.approx(189.99)
    assert extracted[0].source_name == "deere.com"
    assert extracted[1].part_number is None
    assert hostname("not a url") == "Unknown"


def test_build_search_query_prioritizes_part_numbers():
    processed = ProcessedQuery(original_query="AT-123456 pump", part_numbers=["AT-123456"])
    vehicle = VehicleContext(make="John Deere", model="310SL")

    query = build_search_query("water pump", processed, vehicle)

    assert query == "AT-123456 water pump John Deere 310SL parts"


# ─── Adapter ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_search_posts_to_serper_and_extracts():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"organic": ORGANIC})

    adapter = _adapter(handler)
    processed = ProcessedQuery(
        original_query="AT-123456", part_numbers=["AT-123456"], processed_query="AT-123456"
    )

    candidates = await adapter.search(processed)
    await adapter.close()

    assert seen["headers"]["x-api-key"] == "serper-key"
    assert seen["body"]["q"] == "AT-123456 AT-123456 parts"
    top = candidates[0]
    assert top.part_number == "AT-123456"
    # base 40 (relevance 50 * 0.6 = 30, floored) + 20 part number + 10 supplier
    assert top.score == 70


@pytest.mark.asyncio
async def test_llm_extraction_is_used_when_available(fake_llm):
    llm = fake_llm(
        responses={
            "_WebExtraction": {
                "extractedParts": [
                    {
                        "partNumber": "AT-123456",
                        "description": "Water pump",
                        "sourceName": "deere.com",
                        "sourceUrl": "https://www.deere.com/parts/AT-123456",
                        "relevanceScore": 95,
                    },
                    {"partNumber": "JUNK", "relevanceScore": 5},
                ]
            }
        }
    )
    adapter = _adapter(lambda r: httpx.Response(200, json={"organic": ORGANIC}))

    candidates = await adapter.search("water pump", llm_client=llm)

    assert [c.part_number for c in candidates] == ["AT-123456"]
    assert candidates[0].score == 67


@pytest.mark.asyncio
async def test_llm_failure_falls_back_to_regex(fake_llm):
    llm = fake_llm(error=LanguageModelError("bad json"))
    adapter = _adapter(lambda r: httpx.Response(200, json={"organic": ORGANIC}))

    candidates = await adapter.search("water pump", llm_client=llm)

    assert len(candidates) == 2


@pytest.mark.asyncio
async def test_provider_errors_yield_empty_list():
    adapter = _adapter(lambda r: httpx.Response(500, json={"message": "quota"}))
    assert await adapter.search("water pump") == []

    adapter = _adapter(lambda r: httpx.Response(200, json={"organic": []}))
    assert await adapter.search("water pump") == []
