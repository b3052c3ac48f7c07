"""Keyword extraction shared by the structured and graph adapters."""

from __future__ import annotations

import re
from typing import FrozenSet, List

STOP_WORDS: FrozenSet[str] = frozenset({
    # pronouns
    "i", "me", "my", "we", "our", "you", "your", "it", "its", "they", "them",
    # articles / determiners
    "a", "an", "the", "this", "that", "these", "those",
    # auxiliaries
    "is", "am", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did",
    "will", "would", "could", "should", "can", "may", "might", "shall", "must",
    # conjunctions / prepositions
    "and", "or", "but", "if", "of", "at", "by", "for", "with", "to", "from",
    "in", "on", "up", "out", "off", "about", "into", "over", "after",
    "not", "no", "nor", "so", "too", "very", "just",
    # conversational filler
    "need", "looking", "find", "want", "search", "get", "show", "give",
    "please", "help", "think", "know", "sure", "like", "also",
    # question words
    "what", "where", "which", "who", "how", "when",
})

_NON_WORD_RE = re.compile(r"[^\w\s-]")


def extract_keywords(query: str) -> List[str]:
    """Lowercased tokens minus punctuation, stop words and single characters."""
    cleaned = _NON_WORD_RE.sub(" ", (query or "").lower())
    return [t for t in cleaned.split() if len(t) > 1 and t not in STOP_WORDS]
