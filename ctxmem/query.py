"""
Query construction and the FTS fallback cascade.

Provides three capabilities:
  1. build_stages() — the ordered, deduplicated query reformulations tried
     by MemoryStore.search (LITERAL → SANITIZED → OR_TERMS → FIRST_TERM).
  2. run_cascade() — execute the stages until one returns results, keeping
     a trace of every query tried and every stage that failed.
  3. extract_search_terms() / build_task_query() — reduce a task
     description to a handful of FTS keywords for context assembly.

All functions are deterministic and stdlib-only.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from ctxmem.types import CascadeStage, StageFailure

logger = logging.getLogger(__name__)

# ── Stop words ──────────────────────────────────────────────────────────

TASK_STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "up", "about", "into", "through", "during",
    "how", "when", "where", "why", "what", "which", "who", "whom", "this",
    "that", "these", "those", "am", "is", "are", "was", "were", "be", "been",
    "being", "have", "has", "had", "do", "does", "did", "will", "would",
    "should", "could", "may", "might", "must", "can",
    # Action verbs: they describe the task, not its subject
    "need", "new", "create", "implement", "fix", "update", "add", "remove",
    "change", "modify",
})

# Minimum length of a term kept by OR_TERMS / FIRST_TERM and task extraction
MIN_TERM_LEN = 3

_NON_ALNUM_RE = re.compile(r"[\W_]+")
_WS_RE = re.compile(r"\s+")
_TRIM_CHARS = ".,;:!?\"'()[]{}<>`*#"


# ── Cascade stages ──────────────────────────────────────────────────────

def sanitize_query(text: str) -> str:
    """Replace every non-alphanumeric character by a space and collapse runs.

    >>> sanitize_query("foo-bar!")
    'foo bar'
    """
    return _WS_RE.sub(" ", _NON_ALNUM_RE.sub(" ", text)).strip()


def query_terms(text: str) -> List[str]:
    """Whitespace terms of at least MIN_TERM_LEN chars, after sanitizing."""
    return [t for t in sanitize_query(text).split() if len(t) >= MIN_TERM_LEN]


def _quote(term: str) -> str:
    return '"' + term.replace('"', '""') + '"'


def build_stages(query: str) -> List[Tuple[CascadeStage, str]]:
    """Return the cascade as ``[(stage, fts_query), ...]``.

    Stages with an empty query, or a query identical to one already listed,
    are omitted.  OR_TERMS only appears with two or more terms (with one
    term it would duplicate FIRST_TERM).
    """
    candidates: List[Tuple[CascadeStage, str]] = [("LITERAL", query.strip())]
    candidates.append(("SANITIZED", sanitize_query(query)))
    terms = query_terms(query)
    if len(terms) >= 2:
        candidates.append(("OR_TERMS", " OR ".join(_quote(t) for t in terms)))
    if terms:
        candidates.append(("FIRST_TERM", _quote(terms[0])))

    stages: List[Tuple[CascadeStage, str]] = []
    seen: set = set()
    for stage, text in candidates:
        if not text or text in seen:
            continue
        seen.add(text)
        stages.append((stage, text))
    return stages


@dataclass
class CascadeOutcome:
    """Result of one cascade run."""
    results: list = field(default_factory=list)
    stage_used: Optional[CascadeStage] = None
    queries_tried: List[str] = field(default_factory=list)
    degraded: List[StageFailure] = field(default_factory=list)
    total_scanned: int = 0


def run_cascade(
    query: str,
    search_fn: Callable[[str], Tuple[list, int]],
) -> CascadeOutcome:
    """Execute the fallback cascade for ``query``.

    ``search_fn(fts_query)`` returns ``(results, scanned)`` where
    ``scanned`` is the number of FTS rows examined before filtering.  A
    stage raising a SQLite error counts as zero results: the failure is
    logged and recorded, and the cascade advances.

    The first stage with at least one result wins; exhaustion yields an
    empty outcome with ``stage_used=None``.
    """
    outcome = CascadeOutcome()
    for stage, fts_query in build_stages(query):
        outcome.queries_tried.append(fts_query)
        try:
            results, scanned = search_fn(fts_query)
        except (sqlite3.OperationalError, sqlite3.DatabaseError) as exc:
            logger.warning(
                "[search] %s(%s) failed: %s", stage, fts_query, exc,
            )
            outcome.degraded.append(
                StageFailure(stage=stage, query=fts_query, error=str(exc))
            )
            continue
        outcome.total_scanned += scanned
        logger.debug(
            "[search] %s(%s) → %d hits", stage, fts_query, len(results),
        )
        if results:
            outcome.results = results
            outcome.stage_used = stage
            return outcome
    logger.debug("[search] cascade exhausted for %r", query)
    return outcome


# ── Path tokens ─────────────────────────────────────────────────────────

def extract_path_tokens(query: str) -> List[str]:
    """Path-like tokens of ``query``: whitespace words containing ``/``,
    ``\\`` or ``.``, with surrounding punctuation trimmed.

    >>> extract_path_tokens("bug in src/auth.ts please")
    ['src/auth.ts']
    """
    tokens: List[str] = []
    for word in query.split():
        word = word.strip(",;:!?\"'()[]{}<>`")
        if not word or word == ".":
            continue
        if "/" in word or "\\" in word or "." in word:
            tokens.append(word.replace("\\", "/"))
    return tokens


# ── Task term extraction ────────────────────────────────────────────────

def extract_search_terms(task: str, max_terms: int = 5) -> List[str]:
    """Meaningful keywords of a task description.

    Lowercases, trims punctuation, drops stop words and words of two chars
    or fewer, and keeps at most ``max_terms`` distinct words in order.

    >>> extract_search_terms("Fix the auth bug in the login flow")
    ['auth', 'bug', 'login', 'flow']
    """
    terms: List[str] = []
    for word in task.lower().split():
        word = word.strip(_TRIM_CHARS)
        if len(word) < MIN_TERM_LEN or word in TASK_STOP_WORDS or word in terms:
            continue
        terms.append(word)
        if len(terms) >= max_terms:
            break
    return terms


def build_task_query(task: str, max_terms: int = 5) -> Tuple[str, List[str]]:
    """FTS query for a task, plus the extracted terms.

    One term becomes a prefix query (``auth*``); several are joined with
    ``OR``; none falls back to the raw task text.
    """
    terms = extract_search_terms(task, max_terms)
    if len(terms) == 1:
        return f"{terms[0]}*", terms
    if terms:
        return " OR ".join(terms), terms
    return task, terms
