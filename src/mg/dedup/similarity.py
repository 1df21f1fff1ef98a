"""Cheap lexical similarity used to find dedup candidates. Pure functions, no I/O."""

from __future__ import annotations

import re
from collections import Counter

STOPWORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "is", "are", "was", "were", "be", "been",
    "has", "have", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "shall", "it", "its", "this", "that", "these",
    "those", "i", "me", "my", "we", "our", "you", "your", "he", "she", "they",
    "not", "no", "as", "up",
})

TOKEN_WEIGHT = 0.6
TRIGRAM_WEIGHT = 0.4

# anything that is not a letter or digit in any script
_SPLIT = re.compile(r"[\W_]+")


def trigrams(text: str) -> Counter[str]:
    """Character trigram multiset; strings shorter than 3 chars have none."""
    return Counter(text[i:i + 3] for i in range(len(text) - 2))


def trigram_jaccard(a: str, b: str) -> float:
    ta, tb = trigrams(a.lower()), trigrams(b.lower())
    if not ta and not tb:
        return 0.0
    union = sum((ta | tb).values())
    return sum((ta & tb).values()) / union if union else 0.0


def tokenize(text: str) -> set[str]:
    """Lowercase word set without stopwords. Letters with diacritics stay inside tokens."""
    return {w for w in _SPLIT.split(text.lower()) if w and w not in STOPWORDS}


def token_jaccard(a: str, b: str) -> float:
    ta, tb = tokenize(a), tokenize(b)
    if not ta and not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


def combined_similarity(desc_a: str, desc_b: str, key_a: str, key_b: str) -> float:
    """Token overlap of descriptions blended with trigram overlap of canonical keys."""
    return TOKEN_WEIGHT * token_jaccard(desc_a, desc_b) + TRIGRAM_WEIGHT * trigram_jaccard(key_a, key_b)


def similarity(a: str, b: str) -> float:
    """Both measures over the same pair of strings. Identical text scores 1.0."""
    if a == b:
        return 1.0
    return combined_similarity(a, b, a, b)


def key_prefix(canonical_key: str) -> str:
    """'preferences.editor_theme' -> 'preferences'."""
    return canonical_key.split(".", 1)[0]
