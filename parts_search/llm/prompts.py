"""Prompt templates for the LLM-assisted search stages."""

from __future__ import annotations

from typing import Iterable, List, Optional

from ..models import EnrichedResult, VehicleContext


def _vehicle_line(vehicle: Optional[VehicleContext]) -> str:
    if vehicle is None or not (vehicle.make or vehicle.model):
        return "No vehicle context"
    parts = [str(vehicle.year) if vehicle.year else "", vehicle.make or "", vehicle.model or ""]
    return "Vehicle: " + " ".join(p for p in parts if p)


def analyze_query_prompt(query: str, vehicle: Optional[VehicleContext] = None) -> str:
    return f"""Analyze this heavy-equipment parts search query and extract structured information.

Query: "{query}"
{_vehicle_line(vehicle)}

Extract:
1. partTypes: part types mentioned (e.g. "filter", "belt", "hydraulic pump")
2. partNumbers: part numbers mentioned (e.g. "RE54321", "AT-123456", "123-4567")
3. attributes: qualifiers such as "front", "left", "OEM", "aftermarket", "genuine"
4. urgent: true if the user signals urgency ("asap", "machine down", ...)
5. intent: one of exact_part_number, part_description, compatibility_check, alternatives, general_question
6. expandedTerms: synonyms for the part types in heavy-equipment usage
7. shouldSearchWeb: true if the question is about pricing, suppliers, specifications,
   or an obscure part number unlikely to be in an internal catalog
8. partIntents: ONLY when several distinct parts are requested, one entry per part,
   each with synonyms for THAT part only. Omit for single-part queries.

Return JSON:
{{
  "partTypes": ["string"],
  "partNumbers": ["string"],
  "attributes": ["string"],
  "urgent": false,
  "intent": "part_description",
  "processedQuery": "cleaned query text",
  "expandedTerms": ["string"],
  "shouldSearchWeb": false,
  "partIntents": [{{"label": "string", "queryText": "string", "partType": "string or null", "partNumber": "string or null", "expandedTerms": ["string"]}}]
}}
"""


def extract_web_parts_prompt(query: str, organic: Iterable[dict]) -> str:
    listing = "\n\n".join(
        f"{i}. Title: {r.get('title', '')}\n   URL: {r.get('link', '')}\n   Snippet: {r.get('snippet', '')}"
        for i, r in enumerate(organic, start=1)
    )
    return f"""Extract structured parts information from these web search results.

Search query: "{query}"

Results:
{listing}

For each result that is actually about a part, extract:
- partNumber (null if none is mentioned)
- description (short)
- price (number without currency symbol, or null)
- sourceName (website or supplier name)
- sourceUrl
- snippet (most relevant text)
- relevanceScore (0-100, relevance to the query)

Skip results that are not about parts.

Return JSON:
{{
  "extractedParts": [
    {{"partNumber": "string or null", "description": "string", "price": null, "sourceName": "string", "sourceUrl": "string", "snippet": "string", "relevanceScore": 0}}
  ]
}}
"""


def rerank_prompt(
    query: str,
    intent: str,
    results: List[EnrichedResult],
    vehicle: Optional[VehicleContext] = None,
) -> str:
    lines = []
    for i, r in enumerate(results, start=1):
        tag = r.source.value + (" - WEB" if r.is_web_result else "")
        found_by = ", ".join(s.value for s in r.found_by)
        lines.append(
            f"{i}. [{tag}] {r.part_number}: {r.description} "
            f"(score: {r.confidence:.0f}, found by: {found_by})"
        )
    listing = "\n".join(lines)
    return f"""Re-rank these parts search results by relevance to the user's query.

Query: "{query}"
Intent: {intent}
{_vehicle_line(vehicle)}

Results ({len(results)} total):
{listing}

Scoring guidelines for matchConfidence:
- Exact part number match: 90-100
- Strong description and category match: 70-89
- Right category, wrong specifics: 50-69
- Weak or tangential: 30-49
- Likely irrelevant: 0-29

Web results are unverified; say so in their explanation.

Return JSON:
{{
  "rankedResults": [{{"partNumber": "string", "matchConfidence": 0, "explanation": "string"}}],
  "suggestedFilters": ["string"],
  "relatedQueries": ["string"]
}}

Return every result, highest matchConfidence first, each with an explanation.
"""
