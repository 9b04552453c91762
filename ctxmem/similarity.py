"""
Stdlib lexical similarity for dedupe and tag/task overlap.

Provides the normalization used for dedupe fingerprints and summary
deduplication, token-level Jaccard, and the lenient tag-vs-task matching
used by the context assembler.  Relevance is lexical only: no embeddings.
"""

from __future__ import annotations

import re
import string
from typing import Iterable, List

# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

# Precompiled translation table: strip all punctuation
_PUNCT_TABLE = str.maketrans("", "", string.punctuation)

# Collapse runs of whitespace
_WS_RE = re.compile(r"\s+")

# Minimum word length for substring matching between tags and task words
MIN_MATCH_LEN = 3


def normalize(text: str) -> str:
    """Normalize text for comparison.

    Steps:
      1. Lowercase
      2. Strip punctuation
      3. Collapse whitespace
      4. Strip leading/trailing whitespace

    Returns empty string for empty/whitespace-only input.
    """
    text = text.lower()
    text = text.translate(_PUNCT_TABLE)
    text = _WS_RE.sub(" ", text)
    return text.strip()


def tokenize(text: str) -> list[str]:
    """Split normalized text into word tokens.

    Operates on already-normalized text (lowercase, no punctuation).
    Returns empty list for empty input.
    """
    if not text:
        return []
    return text.split()


# ---------------------------------------------------------------------------
# Similarity measures
# ---------------------------------------------------------------------------


def jaccard(a: str, b: str) -> float:
    """Token-level Jaccard similarity between two texts.

    J(A, B) = |A ∩ B| / |A ∪ B|

    Inputs are normalized internally. Returns 1.0 if both are empty
    (vacuous similarity), 0.0 if one is empty and the other is not.
    """
    tokens_a = set(tokenize(normalize(a)))
    tokens_b = set(tokenize(normalize(b)))

    if not tokens_a and not tokens_b:
        return 1.0
    if not tokens_a or not tokens_b:
        return 0.0

    intersection = tokens_a & tokens_b
    union = tokens_a | tokens_b
    return len(intersection) / len(union)


def is_near_duplicate(a: str, b: str, threshold: float = 0.8) -> bool:
    """True if two summaries are the same after normalization, or their
    token Jaccard reaches ``threshold``."""
    norm_a = normalize(a)
    norm_b = normalize(b)
    if norm_a == norm_b:
        return True
    return jaccard(norm_a, norm_b) >= threshold


def tag_overlap_ratio(tags_a: Iterable[str], tags_b: Iterable[str]) -> float:
    """Overlap ratio between two tag sets: |A ∩ B| / max(|A|, |B|).

    Tags compare case-insensitively. Returns 0.0 when either set is empty.
    """
    set_a = {t.lower() for t in tags_a if t}
    set_b = {t.lower() for t in tags_b if t}
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / max(len(set_a), len(set_b))


def _word_matches_tag(word: str, tag: str) -> bool:
    """Lenient match: containment either way, once both are long enough."""
    if word == tag:
        return True
    if len(word) < MIN_MATCH_LEN or len(tag) < MIN_MATCH_LEN:
        return False
    return word in tag or tag in word


def task_match_strength(tags: List[str], task: str) -> float:
    """Fraction of ``tags`` that lexically match any word of ``task``.

    "auth" matches "authentication" and vice versa; hyphenated tags are
    compared whole and by component ("rate-limit" matches "limit").
    """
    if not tags:
        return 0.0
    words = tokenize(normalize(task.replace("-", " ")))
    if not words:
        return 0.0
    matches = 0
    for tag in tags:
        tag_lower = tag.lower()
        parts = [tag_lower] + [p for p in re.split(r"[-_\s/]+", tag_lower) if p]
        if any(_word_matches_tag(w, p) for w in words for p in parts):
            matches += 1
    return matches / len(tags)
