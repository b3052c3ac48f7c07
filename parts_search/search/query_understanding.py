"""
Query understanding: free text -> ProcessedQuery.

The language model is tried first under a hard timeout. Any failure (no
client, timeout, error, unusable output) falls back to the deterministic
regex/dictionary analyzer, so ``analyze`` always returns a usable result.
"""

from __future__ import annotations

import asyncio
import re
from typing import Dict, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from ..collaborators import LanguageModelClient
from ..config import settings
from ..llm.prompts import analyze_query_prompt
from ..models import PartIntent, ProcessedQuery, QueryIntent, VehicleContext

PART_NUMBER_PATTERNS = [
    re.compile(r"\b[A-Z]{1,3}[-\s]?\d{4,7}\b", re.IGNORECASE),   # AT-123456, RE 54321
    re.compile(r"\b\d{3,4}[-\s]?\d{4,6}\b"),                     # 123-4567
    re.compile(r"\b[A-Z]{2,4}\d{4,8}\b", re.IGNORECASE),          # ABC12345
    re.compile(r"\b\d{1,2}[A-Z]\d{4,5}\b", re.IGNORECASE),        # 1R0750
    re.compile(r"\b[A-Z]\d{2,3}[A-Z]\d{3,5}\b", re.IGNORECASE),   # T19K0440
]

# "for 2015", "310 2018": a word and a model year, not a part number
MODEL_YEAR_PHRASE = re.compile(r"^\w+\s+(?:19|20)\d{2}$")

PART_SYNONYMS: Dict[str, List[str]] = {
    "filter": ["filter element", "strainer", "filtration"],
    "fuel filter": ["fuel element", "fuel strainer", "fuel filtration element"],
    "oil filter": ["oil element", "lube filter", "oil strainer"],
    "air filter": ["air element", "air cleaner", "air intake filter"],
    "hydraulic filter": ["hydraulic element", "hydraulic strainer", "hyd filter"],
    "belt": ["drive belt", "v-belt", "serpentine belt", "fan belt"],
    "gasket": ["seal", "o-ring", "packing"],
    "bearing": ["bushing", "roller bearing", "ball bearing"],
    "pump": ["hydraulic pump", "fuel pump", "water pump"],
    "hose": ["hydraulic hose", "coolant hose", "rubber hose", "line"],
    "cylinder": ["hydraulic cylinder", "ram", "actuator"],
    "valve": ["control valve", "check valve", "relief valve", "solenoid valve"],
    "sprocket": ["drive sprocket", "idler sprocket", "final drive sprocket"],
    "track": ["track chain", "track link", "crawler track"],
    "bucket": ["bucket teeth", "cutting edge", "bucket pin"],
    "pin": ["bucket pin", "track pin", "pivot pin", "dowel pin"],
    "starter": ["starter motor", "starting motor"],
    "alternator": ["generator", "charging alternator"],
    "turbo": ["turbocharger", "turbo charger"],
    "injector": ["fuel injector", "injection nozzle", "nozzle"],
    "radiator": ["cooler", "heat exchanger"],
    "muffler": ["exhaust muffler", "silencer"],
}

ATTRIBUTE_KEYWORDS = [
    "oem", "aftermarket", "genuine", "front", "rear", "left", "right",
    "upper", "lower", "inner", "outer", "new", "remanufactured", "reman",
]

URGENCY_KEYWORDS = ["urgent", "asap", "emergency", "rush", "critical", "down", "broken", "immediately"]

WEB_SEARCH_HINTS = [
    "price", "cost", "buy", "order", "where to find", "supplier", "dealer",
    "catalog", "specification", "specs", "datasheet",
]

COMPATIBILITY_CUES = ["compatible", "fit", "work with", "replace"]
ALTERNATIVE_CUES = ["alternative", "substitute", "instead of", "equivalent"]

LLM_INTENT_MAP: Dict[str, QueryIntent] = {
    "exact_part_number": QueryIntent.EXACT_PART_NUMBER,
    "part_type": QueryIntent.PART_DESCRIPTION,
    "part_description": QueryIntent.PART_DESCRIPTION,
    "compatibility": QueryIntent.COMPATIBILITY_CHECK,
    "compatibility_check": QueryIntent.COMPATIBILITY_CHECK,
    "alternatives": QueryIntent.ALTERNATIVES,
    "general_question": QueryIntent.GENERAL_QUESTION,
}


# ─── LLM response shape ───────────────────────────────────────────

class _LLMPartIntent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    label: Optional[str] = None
    query_text: Optional[str] = Field(default=None, alias="queryText")
    part_type: Optional[str] = Field(default=None, alias="partType")
    part_number: Optional[str] = Field(default=None, alias="partNumber")
    expanded_terms: Optional[List[str]] = Field(default=None, alias="expandedTerms")


class _LLMQueryAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    part_types: Optional[List[str]] = Field(default=None, alias="partTypes")
    part_numbers: Optional[List[str]] = Field(default=None, alias="partNumbers")
    attributes: Optional[List[str]] = None
    urgent: Optional[bool] = None
    intent: Optional[str] = None
    processed_query: Optional[str] = Field(default=None, alias="processedQuery")
    expanded_terms: Optional[List[str]] = Field(default=None, alias="expandedTerms")
    should_search_web: Optional[bool] = Field(default=None, alias="shouldSearchWeb")
    part_intents: Optional[List[_LLMPartIntent]] = Field(default=None, alias="partIntents")


# ─── Helpers ──────────────────────────────────────────────────────

def _mentions(text: str, term: str) -> bool:
    """Whole-word (plural-tolerant) containment of ``term`` in lowercased ``text``."""
    return re.search(rf"\b{re.escape(term)}(?:s|es)?\b", text) is not None


def _dedupe(items: List[str]) -> List[str]:
    return list(dict.fromkeys(items))


def extract_part_numbers(query: str) -> List[str]:
    found: List[str] = []
    for pattern in PART_NUMBER_PATTERNS:
        found.extend(
            re.sub(r"\s", "", m.group(0))
            for m in pattern.finditer(query)
            if not MODEL_YEAR_PHRASE.match(m.group(0))
        )
    return _dedupe(found)


def _drop_subsumed(part_types: List[str]) -> List[str]:
    """Remove generic types already covered by a more specific one ("filter" under "fuel filter")."""
    lowered = [t.lower() for t in part_types]
    return [
        t for t, low in zip(part_types, lowered)
        if not any(other != low and _mentions(other, low) for other in lowered)
    ]


def detect_part_types(lower_query: str) -> Tuple[List[str], Dict[str, List[str]]]:
    """
    Dictionary part types found in the query and, per type, its expansion.

    A type named directly expands to all of its synonyms; a type reached
    through one of its synonyms expands to the other synonyms only.
    """
    part_types: List[str] = []
    expansions: Dict[str, List[str]] = {}
    for part_type, synonyms in PART_SYNONYMS.items():
        if _mentions(lower_query, part_type):
            part_types.append(part_type)
            expansions[part_type] = list(synonyms)
            continue
        for synonym in synonyms:
            if _mentions(lower_query, synonym):
                part_types.append(part_type)
                expansions[part_type] = [s for s in synonyms if s != synonym]
                break

    part_types = _drop_subsumed(part_types)
    return part_types, {t: expansions[t] for t in part_types}


def build_part_intents(
    part_types: List[str],
    part_numbers: List[str],
    expansions: Optional[Dict[str, List[str]]] = None,
) -> Optional[List[PartIntent]]:
    """
    One intent per part type and per part number, or None for a single part.

    Each part-type intent carries only the synonyms of its own type.
    """
    if len(part_types) + len(part_numbers) <= 1:
        return None

    expansions = expansions or {}
    intents: List[PartIntent] = []
    for part_type in part_types:
        terms = expansions.get(part_type)
        if terms is None:
            terms = PART_SYNONYMS.get(part_type.lower(), [])
        intents.append(
            PartIntent(
                label=part_type.title(),
                query_text=part_type,
                part_type=part_type,
                expanded_terms=list(terms),
            )
        )
    for part_number in part_numbers:
        intents.append(
            PartIntent(label=part_number, query_text=part_number, part_number=part_number)
        )
    return intents


def _processed_text(query: str, part_numbers: List[str], part_types: List[str]) -> str:
    if not part_numbers:
        return query
    text = " ".join(part_numbers + part_types).strip()
    return text or query


# ─── Analyzers ────────────────────────────────────────────────────

def regex_fallback(query: str) -> ProcessedQuery:
    """Deterministic analysis used whenever the language model is unavailable."""
    lower_query = query.lower()

    part_numbers = extract_part_numbers(query)
    part_types, expansions = detect_part_types(lower_query)
    expanded_terms = _dedupe([term for t in part_types for term in expansions[t]])

    attributes = [a for a in ATTRIBUTE_KEYWORDS if _mentions(lower_query, a)]
    urgent = any(_mentions(lower_query, k) for k in URGENCY_KEYWORDS)

    if part_numbers:
        intent = QueryIntent.EXACT_PART_NUMBER
    elif part_types:
        intent = QueryIntent.PART_DESCRIPTION
    elif any(_mentions(lower_query, cue) for cue in COMPATIBILITY_CUES):
        intent = QueryIntent.COMPATIBILITY_CHECK
    elif any(_mentions(lower_query, cue) for cue in ALTERNATIVE_CUES):
        intent = QueryIntent.ALTERNATIVES
    else:
        intent = QueryIntent.GENERAL_QUESTION

    # A bare part number may not exist internally
    should_search_web = any(_mentions(lower_query, h) for h in WEB_SEARCH_HINTS) or (
        bool(part_numbers) and not part_types
    )

    return ProcessedQuery(
        original_query=query,
        intent=intent,
        part_numbers=part_numbers,
        part_types=part_types,
        expanded_terms=expanded_terms,
        attributes=attributes,
        urgent=urgent,
        should_search_web=should_search_web,
        processed_query=_processed_text(query, part_numbers, part_types),
        part_intents=build_part_intents(part_types, part_numbers, expansions),
    )


async def llm_analyze(
    query: str,
    vehicle_context: Optional[VehicleContext],
    llm_client: LanguageModelClient,
) -> ProcessedQuery:
    result = await llm_client.generate_structured_output(
        analyze_query_prompt(query, vehicle_context),
        _LLMQueryAnalysis,
        temperature=0.1,
        max_tokens=800,
    )

    part_types = _drop_subsumed(_dedupe([t.strip() for t in result.part_types or [] if t and t.strip()]))
    part_numbers = _dedupe([n.strip() for n in result.part_numbers or [] if n and n.strip()])

    # Dictionary synonyms for known types, model-supplied synonyms for the rest
    expansions: Dict[str, List[str]] = {}
    llm_terms = {
        (pi.part_type or "").lower(): pi.expanded_terms or []
        for pi in result.part_intents or []
        if pi.part_type
    }
    for part_type in part_types:
        key = part_type.lower()
        expansions[part_type] = PART_SYNONYMS.get(key) or llm_terms.get(key, [])

    return ProcessedQuery(
        original_query=query,
        intent=LLM_INTENT_MAP.get((result.intent or "").lower(), QueryIntent.GENERAL_QUESTION),
        part_numbers=part_numbers,
        part_types=part_types,
        expanded_terms=_dedupe(result.expanded_terms or []),
        attributes=result.attributes or [],
        urgent=bool(result.urgent),
        should_search_web=bool(result.should_search_web),
        processed_query=(result.processed_query or "").strip() or query,
        part_intents=build_part_intents(part_types, part_numbers, expansions),
    )


async def analyze(
    query: str,
    vehicle_context: Optional[VehicleContext] = None,
    llm_client: Optional[LanguageModelClient] = None,
    timeout_ms: Optional[int] = None,
) -> ProcessedQuery:
    """Structured intent for ``query``; never raises."""
    if llm_client is None:
        return regex_fallback(query)

    timeout_ms = timeout_ms if timeout_ms is not None else settings.query_understanding_timeout_ms
    try:
        # wait_for cancels the model call on timeout, so a late reply is discarded
        return await asyncio.wait_for(
            llm_analyze(query, vehicle_context, llm_client),
            timeout=timeout_ms / 1000,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Query analysis timed out after {timeout_ms}ms, using regex fallback")
    except Exception as e:
        logger.warning(f"Query analysis failed, using regex fallback: {e}")
    return regex_fallback(query)
