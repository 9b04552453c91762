"""
Retrieval Data Model — First-Class Objects

Defines project memory records, global concepts and their relationship
edges, allowlist entries, and the result objects returned by searches and
context assembly.  All objects are plain dataclasses with ``to_dict()`` for
JSON-safe serialization at the dispatch boundary.

Timestamps are UTC ISO-8601 strings with microsecond precision, so they
compare lexicographically in SQL and in Python.
"""

from __future__ import annotations

import hashlib
import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from ctxmem.similarity import normalize

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

CascadeStage = Literal["LITERAL", "SANITIZED", "OR_TERMS", "FIRST_TERM"]
Provenance = Literal["manual", "discovered", "imported"]
EdgeType = Literal["related", "prerequisite", "extends", "conflicts"]
InjectionType = Literal["memory", "concept"]
AssemblyMode = Literal["hard", "soft", "smart"]

VALID_PROVENANCE: set = {"manual", "discovered", "imported"}
VALID_EDGE_TYPES: set = {"related", "prerequisite", "extends", "conflicts"}
VALID_MODES: set = {"hard", "soft", "smart"}

MIN_IMPORTANCE = 1
MAX_IMPORTANCE = 5
DEFAULT_IMPORTANCE = 3


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string (always with microseconds)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _iso_after(seconds: float) -> str:
    """UTC ISO-8601 timestamp ``seconds`` from now."""
    moment = datetime.now(timezone.utc) + timedelta(seconds=seconds)
    return moment.isoformat(timespec="microseconds")


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp written by ``_now_iso``; None on bad input."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _generate_id(prefix: str = "mem") -> str:
    """Generate a unique record ID with prefix."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(title: str, max_len: int = 50) -> str:
    """Lowercase, hyphen-separated slug of a title (may be empty)."""
    slug = _SLUG_RE.sub("-", title.lower()).strip("-")
    return slug[:max_len].rstrip("-")


def concept_id_for(title: str) -> str:
    """Concept id: title slug plus a short random suffix."""
    slug = slugify(title) or "concept"
    return f"{slug}-{uuid.uuid4().hex[:6]}"


def content_hash(text: str) -> str:
    """SHA-256 content hash with prefix."""
    h = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"sha256:{h}"


def fingerprint(summary: str, paths: List[str]) -> str:
    """Dedupe fingerprint: hash of normalized summary + sorted paths."""
    key = normalize(summary) + "|" + "|".join(sorted(set(paths)))
    return content_hash(key)


def check_importance(value: int) -> int:
    """Validate an importance level (1-5)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"importance must be an integer, got {value!r}")
    if not MIN_IMPORTANCE <= value <= MAX_IMPORTANCE:
        raise ValueError(
            f"importance must be in [{MIN_IMPORTANCE}, {MAX_IMPORTANCE}], got {value}"
        )
    return value


def _clean_strings(values: Optional[List[str]]) -> List[str]:
    """Strip, drop empties, dedupe while keeping first-seen order."""
    seen: Dict[str, None] = {}
    for v in values or []:
        s = str(v).strip()
        if s and s not in seen:
            seen[s] = None
    return list(seen)


# ---------------------------------------------------------------------------
# Memory Record (project-scoped)
# ---------------------------------------------------------------------------

@dataclass
class MemoryRecord:
    """
    A project-scoped note.

    ``project_id`` reflects the owning store and is never used as a query
    column: isolation is structural (one database file per project).
    """

    id: str = field(default_factory=lambda: _generate_id("mem"))
    project_id: str = ""
    summary: str = ""
    text: str = ""
    tags: List[str] = field(default_factory=list)
    paths: List[str] = field(default_factory=list)
    importance: int = DEFAULT_IMPORTANCE
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    ttl: Optional[int] = None
    expires_at: Optional[str] = None
    fingerprint: str = ""

    def __post_init__(self):
        self.tags = _clean_strings(self.tags)
        self.paths = _clean_strings(self.paths)
        if not self.fingerprint:
            self.fingerprint = fingerprint(self.summary, self.paths)

    def is_expired(self, now: Optional[str] = None) -> bool:
        """True if the record has an expiry in the past."""
        if not self.expires_at:
            return False
        return self.expires_at <= (now or _now_iso())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryRecord:
        """Deserialize from dict, filtering to known fields."""
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class SearchHit:
    """One ranked full-text match from a project store."""

    record: MemoryRecord
    relevance: float = 0.0
    snippet: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record": self.record.to_dict(),
            "relevance": self.relevance,
            "snippet": self.snippet,
        }


@dataclass
class StageFailure:
    """A cascade stage whose query failed to execute (QueryDegraded)."""

    stage: CascadeStage
    query: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SearchDebug:
    """Search results plus the trace of the fallback cascade.

    ``queries_tried`` lists every query text that was executed, in order.
    ``stage_used`` names the stage that produced ``results``, or None when
    every stage came back empty.
    """

    results: List[SearchHit] = field(default_factory=list)
    queries_tried: List[str] = field(default_factory=list)
    stage_used: Optional[CascadeStage] = None
    elapsed_ms: float = 0.0
    total_scanned: int = 0
    degraded: List[StageFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [h.to_dict() for h in self.results],
            "queries_tried": list(self.queries_tried),
            "stage_used": self.stage_used,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "total_scanned": self.total_scanned,
            "degraded": [f.to_dict() for f in self.degraded],
        }


@dataclass
class SearchPreview:
    """Dry run of a search: what it would return, without the records.

    ``processed`` is the query text of the stage that would answer, or of
    the last stage tried when none matches.  ``match_examples`` holds the
    summaries of the top (at most three) matches.
    """

    query: str
    would_return: int = 0
    total_matches: int = 0
    stage_used: Optional[CascadeStage] = None
    processed: str = ""
    terms: List[str] = field(default_factory=list)
    filters_applied: List[str] = field(default_factory=list)
    queries_tried: List[str] = field(default_factory=list)
    match_examples: List[str] = field(default_factory=list)
    degraded: List[StageFailure] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ForgetResult:
    """Outcome of a delete request. Absence is reported, never raised."""

    ok: bool
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Concepts (global)
# ---------------------------------------------------------------------------

@dataclass
class ConceptEdge:
    """Directed, weighted relationship between two concepts."""

    source_id: str = ""
    target_id: str = ""
    type: EdgeType = "related"
    strength: float = 0.5
    inferred: bool = False

    def __post_init__(self):
        if self.type not in VALID_EDGE_TYPES:
            raise ValueError(f"Invalid edge type: {self.type!r}")
        if not 0.0 <= self.strength <= 1.0:
            raise ValueError(f"Edge strength must be in [0, 1], got {self.strength}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Concept:
    """Reusable, project-agnostic knowledge entry."""

    id: str = ""
    title: str = ""
    body: str = ""
    tags: List[str] = field(default_factory=list)
    importance: int = DEFAULT_IMPORTANCE
    usage_count: int = 0
    last_used: Optional[str] = None
    provenance: Provenance = "manual"
    confidence: float = 1.0
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    edges: List[ConceptEdge] = field(default_factory=list)

    def __post_init__(self):
        if self.provenance not in VALID_PROVENANCE:
            raise ValueError(f"Invalid provenance: {self.provenance!r}")
        self.tags = _clean_strings(self.tags)
        if not self.id:
            self.id = concept_id_for(self.title)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["edges"] = [e.to_dict() for e in self.edges]
        return d


@dataclass
class ConceptHit:
    """One ranked concept.

    ``matched`` is False when the hit comes from the "showing all" wildcard
    fallback rather than from a text match.
    """

    concept: Concept
    score: float = 0.0
    relevance: float = 0.0
    snippet: str = ""
    matched: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "concept": self.concept.to_dict(),
            "score": self.score,
            "relevance": self.relevance,
            "snippet": self.snippet,
            "matched": self.matched,
        }


@dataclass
class ConceptSearchMeta:
    """How the last concept search was resolved."""

    query: str = ""
    wildcard: bool = False
    fallback_used: bool = False
    restricted_to_project: Optional[str] = None
    total_hits: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AllowlistEntry:
    """A concept made visible to one project."""

    project_id: str
    concept_id: str
    added_at: str = field(default_factory=_now_iso)
    auto_suggested: bool = False
    accepted: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AllowlistUpdate:
    """Result of an allowlist update; unset parts stay None."""

    added: Optional[List[str]] = None
    removed: Optional[List[str]] = None
    allowlist: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


# ---------------------------------------------------------------------------
# Context assembly
# ---------------------------------------------------------------------------

@dataclass
class Injection:
    """A text block selected for delivery as task context."""

    id: str
    type: InjectionType
    summary: str
    content: str
    score: float
    source: str
    byte_size: int = 0

    def __post_init__(self):
        if not self.byte_size:
            self.byte_size = len(self.content.encode("utf-8"))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PreviewStats:
    """Per-category candidate counts for one assembly call."""

    project_matches: int = 0
    path_matches: int = 0
    concept_matches: int = 0
    total_candidates: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ContextPreview:
    """Ranked injection list plus budget usage and diagnostics."""

    injections: List[Injection] = field(default_factory=list)
    budget_used: int = 0
    budget_limit: int = 0
    top_k: int = 0
    stats: PreviewStats = field(default_factory=PreviewStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "injections": [i.to_dict() for i in self.injections],
            "budget_used": self.budget_used,
            "budget_limit": self.budget_limit,
            "top_k": self.top_k,
            "stats": self.stats.to_dict(),
        }
