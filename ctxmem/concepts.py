"""
Concept Store — Global Concept Graph (SQLite)

Tables:
    concepts           - Reusable, project-agnostic knowledge entries
    concept_tags       - Concept tags (normalized join table)
    concept_edges      - Typed, weighted edges (explicit or tag-inferred)
    project_allowlists - Concepts made visible to each project
    concepts_fts       - FTS5 index over title, body and the joined tag string

Ranking ("smart score"):
    importance * 2 + usage_count * 0.1 + 2 if used in the last 7 days,
    plus -bm25 * 3 when a text query is given.

Relationship inference: on every save, ``related`` edges are recomputed
against every other concept from the tag-overlap ratio
``|A ∩ B| / max(|A|, |B|)``, kept above ``related_threshold``.  This is a
full scan per save; fine for hundreds of concepts, linear beyond.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
from pathlib import Path
from typing import Dict, List, Optional

from ctxmem.errors import StoreUnavailable
from ctxmem.query import sanitize_query
from ctxmem.similarity import tag_overlap_ratio
from ctxmem.types import (
    DEFAULT_IMPORTANCE,
    VALID_EDGE_TYPES,
    VALID_PROVENANCE,
    AllowlistEntry,
    AllowlistUpdate,
    Concept,
    ConceptEdge,
    ConceptHit,
    ConceptSearchMeta,
    _clean_strings,
    _iso_after,
    _now_iso,
    check_importance,
    concept_id_for,
)

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS concepts (
    id           TEXT PRIMARY KEY,
    title        TEXT NOT NULL,
    body         TEXT NOT NULL DEFAULT '',
    tag_text     TEXT NOT NULL DEFAULT '',   -- space-joined tags, FTS only
    importance   INTEGER NOT NULL DEFAULT 3 CHECK(importance BETWEEN 1 AND 5),
    usage_count  INTEGER NOT NULL DEFAULT 0,
    last_used    TEXT,
    provenance   TEXT NOT NULL DEFAULT 'manual'
                 CHECK(provenance IN ('manual','discovered','imported')),
    confidence   REAL NOT NULL DEFAULT 1.0,
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS concept_tags (
    concept_id  TEXT NOT NULL REFERENCES concepts(id) ON DELETE CASCADE,
    tag         TEXT NOT NULL,
    PRIMARY KEY (concept_id, tag)
);

CREATE TABLE IF NOT EXISTS concept_edges (
    source_id   TEXT NOT NULL REFERENCES concepts(id) ON DELETE CASCADE,
    target_id   TEXT NOT NULL REFERENCES concepts(id) ON DELETE CASCADE,
    type        TEXT NOT NULL
                CHECK(type IN ('related','prerequisite','extends','conflicts')),
    strength    REAL NOT NULL DEFAULT 0.5,
    inferred    INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT NOT NULL,
    PRIMARY KEY (source_id, target_id, type)
);

CREATE TABLE IF NOT EXISTS project_allowlists (
    project_id      TEXT NOT NULL,
    concept_id      TEXT NOT NULL REFERENCES concepts(id) ON DELETE CASCADE,
    added_at        TEXT NOT NULL,
    auto_suggested  INTEGER NOT NULL DEFAULT 0,
    accepted        INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (project_id, concept_id)
);

CREATE INDEX IF NOT EXISTS idx_concepts_importance ON concepts(importance DESC);
CREATE INDEX IF NOT EXISTS idx_concepts_usage ON concepts(usage_count DESC);
CREATE INDEX IF NOT EXISTS idx_edges_target ON concept_edges(target_id);
CREATE INDEX IF NOT EXISTS idx_allowlist_project ON project_allowlists(project_id, accepted);

CREATE VIRTUAL TABLE IF NOT EXISTS concepts_fts USING fts5(
    title, body, tag_text,
    content='concepts',
    content_rowid='rowid',
    tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS concepts_fts_ai
AFTER INSERT ON concepts BEGIN
    INSERT INTO concepts_fts(rowid, title, body, tag_text)
    VALUES (new.rowid, new.title, new.body, new.tag_text);
END;

CREATE TRIGGER IF NOT EXISTS concepts_fts_bd
BEFORE DELETE ON concepts BEGIN
    INSERT INTO concepts_fts(concepts_fts, rowid, title, body, tag_text)
    VALUES ('delete', old.rowid, old.title, old.body, old.tag_text);
END;

CREATE TRIGGER IF NOT EXISTS concepts_fts_bu
BEFORE UPDATE ON concepts BEGIN
    INSERT INTO concepts_fts(concepts_fts, rowid, title, body, tag_text)
    VALUES ('delete', old.rowid, old.title, old.body, old.tag_text);
END;

CREATE TRIGGER IF NOT EXISTS concepts_fts_au
AFTER UPDATE ON concepts BEGIN
    INSERT INTO concepts_fts(rowid, title, body, tag_text)
    VALUES (new.rowid, new.title, new.body, new.tag_text);
END;
"""

_SMART_SCORE_SQL = (
    "c.importance * 2.0 + c.usage_count * 0.1 + "
    "CASE WHEN c.last_used > ? THEN 2.0 ELSE 0 END"
)

_WILDCARD_QUERIES = frozenset({"", "*", "**"})

RECENT_USE_SECONDS = 7 * 24 * 3600

# Auto-discovery patterns: the captured group becomes the concept body
_DISCOVERY_PATTERNS = [
    re.compile(r"(?:best practice|pattern|principle|rule):\s*([^.]+)", re.IGNORECASE),
    re.compile(r"\b(?:always|never|should|must)\s+([^.]+)", re.IGNORECASE),
    re.compile(r"(?:tip|note|important):\s*([^.]+)", re.IGNORECASE),
    re.compile(r"(?:remember|keep in mind):\s*([^.]+)", re.IGNORECASE),
]

_MODAL_WORDS = frozenset({"should", "would", "could", "might", "must"})

# Starter library written into an empty store when seeding is enabled
STARTER_CONCEPTS = [
    {
        "concept_id": "jwt-auth-v2",
        "title": "JWT Authentication Pattern",
        "body": (
            "Client posts credentials; server validates them and issues a signed "
            "JWT carrying the user claims. Client sends it in the Authorization "
            "header; server checks signature and expiry before trusting claims. "
            "Prefer RS256 in production with short-lived tokens plus refresh tokens."
        ),
        "tags": ["jwt", "auth", "security", "pattern"],
        "importance": 5,
    },
    {
        "concept_id": "s3-upload-checklist",
        "title": "S3 Upload Security Checklist",
        "body": (
            "Generate presigned URLs server-side with an expiry under five minutes. "
            "Validate file type and size, use random object keys rather than user "
            "filenames, set a bucket CORS policy, enable versioning and lifecycle "
            "rules, and monitor uploads."
        ),
        "tags": ["s3", "aws", "upload", "security", "checklist"],
        "importance": 5,
    },
    {
        "concept_id": "rate-limiter-pattern",
        "title": "API Rate Limiting Pattern",
        "body": (
            "Token bucket: each client gets N tokens per window, each request "
            "spends one, an empty bucket answers 429. Refill at a fixed rate. "
            "Back it with Redis INCR plus TTL or an in-memory sliding window, and "
            "send X-RateLimit-Limit/Remaining/Reset headers."
        ),
        "tags": ["api", "rate-limit", "security", "pattern"],
        "importance": 4,
    },
    {
        "concept_id": "error-boundary-react",
        "title": "React Error Boundary Pattern",
        "body": (
            "A class component implementing componentDidCatch logs the error and "
            "renders a fallback instead of its children. Wrap each route. It does "
            "not catch errors from async code, event handlers or server rendering."
        ),
        "tags": ["react", "error-handling", "pattern", "frontend"],
        "importance": 4,
    },
    {
        "concept_id": "db-migration-safety",
        "title": "Safe Database Migration Checklist",
        "body": (
            "Back up first and test the rollback. Keep changes backwards "
            "compatible, split schema from data migrations, build indexes "
            "concurrently, never add NOT NULL without a default, run inside a "
            "transaction and watch the deploy."
        ),
        "tags": ["database", "migration", "safety", "checklist"],
        "importance": 5,
    },
]


def is_wildcard(query: Optional[str]) -> bool:
    """True for the "rank everything" queries: empty, whitespace, ``*``."""
    return (query or "").strip() in _WILDCARD_QUERIES


def _title_from_text(text: str) -> str:
    words = " ".join(text.split()[:5])
    return words[:1].upper() + words[1:]


def _tags_from_text(text: str) -> List[str]:
    tags: List[str] = []
    for word in text.lower().split():
        word = word.strip(".,;:!?\"'()[]{}")
        if len(word) > 4 and word not in _MODAL_WORDS and word not in tags:
            tags.append(word)
        if len(tags) >= 5:
            break
    return tags


class ConceptStore:
    """
    SQLite-backed global concept graph shared by every project.

    Thread-safe via explicit lock.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        wal_mode: bool = True,
        related_threshold: float = 0.3,
        default_edge_strength: float = 0.5,
        body_soft_limit: int = 1200,
        suggest_min_score: float = 2.0,
        discover_min_chars: int = 20,
        discover_max_chars: int = 500,
        seed_defaults: bool = False,
    ):
        self._db_path = db_path
        self._lock = threading.Lock()
        self._closed = False
        self.related_threshold = related_threshold
        self.default_edge_strength = default_edge_strength
        self.body_soft_limit = body_soft_limit
        self.suggest_min_score = suggest_min_score
        self.discover_min_chars = discover_min_chars
        self.discover_max_chars = discover_max_chars
        self._last_search_meta: Optional[ConceptSearchMeta] = None
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if wal_mode and db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        try:
            self._conn.executescript(_SCHEMA_SQL)
            self._conn.commit()
        except sqlite3.OperationalError as exc:
            self._conn.close()
            self._closed = True
            raise StoreUnavailable(f"Concept store unavailable: {exc}") from exc
        logger.info("ConceptStore initialized: %s", db_path)
        if seed_defaults:
            self.seed_starter_concepts()

    @classmethod
    def from_config(cls, db_path: str, config) -> ConceptStore:
        """Build from a ``ConceptConfig``."""
        return cls(
            db_path,
            related_threshold=config.related_threshold,
            default_edge_strength=config.default_edge_strength,
            body_soft_limit=config.body_soft_limit,
            suggest_min_score=config.suggest_min_score,
            discover_min_chars=config.discover_min_chars,
            discover_max_chars=config.discover_max_chars,
            seed_defaults=config.seed_defaults,
        )

    @property
    def last_search_meta(self) -> Optional[ConceptSearchMeta]:
        return self._last_search_meta

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Close the underlying SQLite connection (idempotent)."""
        with self._lock:
            if not self._closed:
                self._conn.close()
                self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreUnavailable("Concept store is closed")

    # -- Write operations --------------------------------------------------

    def save(
        self,
        title: str,
        body: str = "",
        tags: Optional[List[str]] = None,
        importance: int = DEFAULT_IMPORTANCE,
        provenance: str = "manual",
        concept_id: Optional[str] = None,
        related_to: Optional[List[str]] = None,
        relationship: str = "related",
        strength: Optional[float] = None,
        confidence: float = 1.0,
    ) -> Concept:
        """Insert or replace a concept, then refresh its edges.

        Replacing an existing id keeps its usage statistics and
        ``created_at``.  Inferred ``related`` edges are recomputed against
        every other concept; ``related_to`` adds explicit edges of type
        ``relationship`` (unknown target ids are skipped).
        """
        if not title or not title.strip():
            raise ValueError("title must not be empty")
        check_importance(importance)
        if provenance not in VALID_PROVENANCE:
            raise ValueError(f"Invalid provenance: {provenance!r}")
        if relationship not in VALID_EDGE_TYPES:
            raise ValueError(f"Invalid relationship type: {relationship!r}")
        if strength is None:
            strength = self.default_edge_strength
        if not 0.0 <= strength <= 1.0:
            raise ValueError(f"strength must be in [0, 1], got {strength}")
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {confidence}")
        if len(body) > self.body_soft_limit:
            logger.warning(
                "Concept %r body is %d chars (recommended <= %d)",
                title, len(body), self.body_soft_limit,
            )
        tags = _clean_strings(tags)
        cid = concept_id or concept_id_for(title)
        now = _now_iso()

        with self._lock:
            self._ensure_open()
            self._conn.execute(
                """INSERT INTO concepts
                   (id, title, body, tag_text, importance, provenance,
                    confidence, created_at, updated_at)
                   VALUES (?,?,?,?,?,?,?,?,?)
                   ON CONFLICT(id) DO UPDATE SET
                     title=excluded.title, body=excluded.body,
                     tag_text=excluded.tag_text, importance=excluded.importance,
                     provenance=excluded.provenance, confidence=excluded.confidence,
                     updated_at=excluded.updated_at""",
                (cid, title, body, " ".join(tags), importance, provenance,
                 confidence, now, now),
            )
            self._conn.execute("DELETE FROM concept_tags WHERE concept_id=?", (cid,))
            self._conn.executemany(
                "INSERT OR IGNORE INTO concept_tags (concept_id, tag) VALUES (?, ?)",
                [(cid, t) for t in tags],
            )
            inferred = self._infer_related(cid, tags, now)
            explicit = 0
            for target in _clean_strings(related_to):
                if target == cid:
                    continue
                exists = self._conn.execute(
                    "SELECT 1 FROM concepts WHERE id=?", (target,)
                ).fetchone()
                if exists is None:
                    logger.warning("Concept %s: related id %s not found, skipped", cid, target)
                    continue
                self._conn.execute(
                    """INSERT OR REPLACE INTO concept_edges
                       (source_id, target_id, type, strength, inferred, created_at)
                       VALUES (?,?,?,?,0,?)""",
                    (cid, target, relationship, strength, now),
                )
                explicit += 1
            self._conn.commit()
            logger.debug(
                "Saved concept %s (%d inferred, %d explicit edges)", cid, inferred, explicit,
            )
            return self._load(cid)

    def _infer_related(self, cid: str, tags: List[str], now: str) -> int:
        """Recompute symmetric inferred edges for ``cid``. Caller holds the lock."""
        self._conn.execute(
            "DELETE FROM concept_edges WHERE inferred=1 AND (source_id=? OR target_id=?)",
            (cid, cid),
        )
        if not tags:
            return 0
        others: Dict[str, List[str]] = {}
        for row in self._conn.execute(
            "SELECT concept_id, tag FROM concept_tags WHERE concept_id<>?", (cid,)
        ).fetchall():
            others.setdefault(row["concept_id"], []).append(row["tag"])
        count = 0
        for other_id, other_tags in others.items():
            ratio = tag_overlap_ratio(tags, other_tags)
            if ratio <= self.related_threshold:
                continue
            # Explicit edges of the same type take precedence
            self._conn.executemany(
                """INSERT OR IGNORE INTO concept_edges
                   (source_id, target_id, type, strength, inferred, created_at)
                   VALUES (?,?,'related',?,1,?)""",
                [(cid, other_id, ratio, now), (other_id, cid, ratio, now)],
            )
            count += 1
        return count

    def seed_starter_concepts(self) -> int:
        """Write STARTER_CONCEPTS into an empty store.

        Returns the number of concepts written; 0 when the store already
        holds concepts.
        """
        if self.count():
            return 0
        for entry in STARTER_CONCEPTS:
            self.save(provenance="imported", **entry)
        logger.info("Seeded %d starter concepts", len(STARTER_CONCEPTS))
        return len(STARTER_CONCEPTS)

    def delete(self, concept_id: str) -> bool:
        """Remove a concept with its edges and allowlist rows."""
        with self._lock:
            self._ensure_open()
            cur = self._conn.execute("DELETE FROM concepts WHERE id=?", (concept_id,))
            self._conn.commit()
            return cur.rowcount > 0

    def discover(self, text: str) -> List[Concept]:
        """Save concepts found in free text by indicator phrases.

        Recognized forms: "best practice/pattern/principle/rule: …",
        "always/never/should/must …", "tip/note/important: …" and
        "remember/keep in mind: …", each up to the next period.  Captured
        text must be strictly between the configured length bounds.  Bodies
        already stored (by an earlier run, typically) are skipped, so only
        new concepts are returned.
        """
        found: List[str] = []
        for pattern in _DISCOVERY_PATTERNS:
            for match in pattern.finditer(text):
                body = " ".join(match.group(1).split())
                if self.discover_min_chars < len(body) < self.discover_max_chars:
                    if body not in found:
                        found.append(body)
        if found:
            with self._lock:
                self._ensure_open()
                known = {
                    row["body"] for row in self._conn.execute(
                        f"SELECT body FROM concepts WHERE body IN ({','.join('?' for _ in found)})",
                        found,
                    ).fetchall()
                }
            if known:
                logger.debug("Discovery skipped %d known concept(s)", len(known))
            found = [body for body in found if body not in known]
        concepts = [
            self.save(
                title=_title_from_text(body),
                body=body,
                tags=_tags_from_text(body),
                provenance="discovered",
                confidence=0.5,
            )
            for body in found
        ]
        if concepts:
            logger.info("Discovered %d concept(s)", len(concepts))
        return concepts

    # -- Read operations ---------------------------------------------------

    def get(self, concept_id: str) -> Optional[Concept]:
        """Read a concept with its outgoing edges; None if absent."""
        with self._lock:
            self._ensure_open()
            return self._load(concept_id)

    def edges(self, concept_id: str) -> List[ConceptEdge]:
        """Outgoing edges of a concept, strongest first."""
        with self._lock:
            self._ensure_open()
            return self._edges(concept_id)

    def count(self) -> int:
        with self._lock:
            self._ensure_open()
            return self._conn.execute("SELECT COUNT(*) AS cnt FROM concepts").fetchone()["cnt"]

    # -- Search ------------------------------------------------------------

    def search(
        self,
        query: str = "",
        k: int = 10,
        allowlist: Optional[List[str]] = None,
        project_id: Optional[str] = None,
        include_related: bool = False,
        fallback: bool = True,
    ) -> List[ConceptHit]:
        """Rank concepts for a query.

        Empty, whitespace or ``*`` queries rank every visible concept by
        the smart score.  A text query that matches nothing (or fails to
        parse in both literal and sanitized forms) is answered with the
        wildcard ranking, each hit flagged ``matched=False``, unless
        ``fallback`` is False.

        ``project_id`` restricts to that project's accepted allowlist;
        ``allowlist`` restricts to the given ids.  The top hit's usage is
        recorded.
        """
        meta = ConceptSearchMeta(query=query or "", restricted_to_project=project_id)
        if k <= 0 or (allowlist is not None and not allowlist):
            self._last_search_meta = meta
            return []
        with self._lock:
            self._ensure_open()
            if is_wildcard(query):
                meta.wildcard = True
                hits = self._rank(None, k, allowlist, project_id)
            else:
                hits = []
                for fts_query in dict.fromkeys([query.strip(), sanitize_query(query)]):
                    if not fts_query:
                        continue
                    try:
                        hits = self._rank(fts_query, k, allowlist, project_id)
                        break
                    except sqlite3.OperationalError as exc:
                        logger.warning("[concepts] query %r failed: %s", fts_query, exc)
                if not hits and fallback:
                    meta.fallback_used = True
                    hits = self._rank(None, k, allowlist, project_id)
                    for hit in hits:
                        hit.matched = False
            if hits:
                self._conn.execute(
                    "UPDATE concepts SET usage_count = usage_count + 1, last_used = ? "
                    "WHERE id = ?",
                    (_now_iso(), hits[0].concept.id),
                )
                self._conn.commit()
        if include_related and hits:
            hits = self.enrich_with_related(hits, allowlist=allowlist, project_id=project_id)
        meta.total_hits = len(hits)
        self._last_search_meta = meta
        return hits

    def _rank(
        self,
        fts_query: Optional[str],
        k: int,
        allowlist: Optional[List[str]],
        project_id: Optional[str],
    ) -> List[ConceptHit]:
        """One ranked SELECT. Caller holds the lock; SQLite errors propagate."""
        recent = _iso_after(-RECENT_USE_SECONDS)
        conditions: List[str] = []
        params: list = [recent]
        if fts_query is None:
            select = (
                f"SELECT c.id, ({_SMART_SCORE_SQL}) AS score, 0.0 AS relevance, "
                "'' AS snip FROM concepts c"
            )
        else:
            select = (
                f"SELECT c.id, (-bm25(concepts_fts) * 3.0 + {_SMART_SCORE_SQL}) AS score, "
                "-bm25(concepts_fts) AS relevance, "
                "snippet(concepts_fts, -1, '[', ']', '…', 32) AS snip "
                "FROM concepts_fts JOIN concepts c ON c.rowid = concepts_fts.rowid"
            )
            conditions.append("concepts_fts MATCH ?")
            params.append(fts_query)
        if project_id is not None:
            conditions.append(
                "c.id IN (SELECT concept_id FROM project_allowlists "
                "WHERE project_id = ? AND accepted = 1)"
            )
            params.append(project_id)
        if allowlist is not None:
            conditions.append(f"c.id IN ({','.join('?' for _ in allowlist)})")
            params.extend(allowlist)
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self._conn.execute(
            f"{select}{where} ORDER BY score DESC, c.importance DESC, c.created_at DESC LIMIT ?",
            params + [k],
        ).fetchall()
        hits: List[ConceptHit] = []
        for row in rows:
            concept = self._load(row["id"])
            if concept is None:
                continue
            hits.append(ConceptHit(
                concept=concept,
                score=float(row["score"]),
                relevance=max(0.0, float(row["relevance"])),
                snippet=row["snip"] or "",
                matched=True,
            ))
        return hits

    def enrich_with_related(
        self,
        hits: List[ConceptHit],
        top_n: int = 3,
        per_source: int = 2,
        discount: float = 0.5,
        allowlist: Optional[List[str]] = None,
        project_id: Optional[str] = None,
    ) -> List[ConceptHit]:
        """Append the strongest neighbours of the top hits.

        Each of the first ``top_n`` hits contributes up to ``per_source``
        unseen targets of its outgoing edges, scored
        ``source.score * strength * discount``.  The result is re-sorted by
        score.  ``project_id`` and ``allowlist`` restrict the candidate
        targets the same way they restrict ``search``.
        """
        enriched = list(hits)
        seen = {h.concept.id for h in hits}
        with self._lock:
            self._ensure_open()
            sql = "SELECT target_id, strength FROM concept_edges WHERE source_id=?"
            restrict: list = []
            if project_id is not None:
                sql += (
                    " AND target_id IN (SELECT concept_id FROM project_allowlists "
                    "WHERE project_id = ? AND accepted = 1)"
                )
                restrict.append(project_id)
            if allowlist is not None:
                sql += f" AND target_id IN ({','.join('?' for _ in allowlist)})"
                restrict.extend(allowlist)
            sql += " ORDER BY strength DESC, target_id LIMIT ?"
            for hit in hits[:top_n]:
                rows = self._conn.execute(
                    sql, [hit.concept.id] + restrict + [per_source],
                ).fetchall()
                for row in rows:
                    if row["target_id"] in seen:
                        continue
                    related = self._load(row["target_id"])
                    if related is None:
                        continue
                    seen.add(related.id)
                    enriched.append(ConceptHit(
                        concept=related,
                        score=hit.score * row["strength"] * discount,
                        snippet=f"[Related to: {hit.concept.title}]",
                        matched=hit.matched,
                    ))
        enriched.sort(key=lambda h: -h.score)
        return enriched

    # -- Allowlists --------------------------------------------------------

    def update_allowlist(
        self,
        project_id: str,
        add: Optional[List[str]] = None,
        remove: Optional[List[str]] = None,
        list_: bool = False,
    ) -> AllowlistUpdate:
        """Add, remove and/or list a project's accepted concepts.

        Only existing concept ids are added; adding a pending suggestion
        accepts it.  The listing is most-recently-added first.
        """
        result = AllowlistUpdate()
        with self._lock:
            self._ensure_open()
            if add is not None:
                result.added = []
                for cid in _clean_strings(add):
                    if self._conn.execute(
                        "SELECT 1 FROM concepts WHERE id=?", (cid,)
                    ).fetchone() is None:
                        logger.debug("Allowlist %s: unknown concept %s", project_id, cid)
                        continue
                    self._conn.execute(
                        """INSERT INTO project_allowlists
                           (project_id, concept_id, added_at, auto_suggested, accepted)
                           VALUES (?,?,?,0,1)
                           ON CONFLICT(project_id, concept_id) DO UPDATE SET
                             accepted=1, added_at=excluded.added_at""",
                        (project_id, cid, _now_iso()),
                    )
                    result.added.append(cid)
            if remove is not None:
                result.removed = []
                for cid in _clean_strings(remove):
                    cur = self._conn.execute(
                        "DELETE FROM project_allowlists WHERE project_id=? AND concept_id=?",
                        (project_id, cid),
                    )
                    if cur.rowcount:
                        result.removed.append(cid)
            self._conn.commit()
            if list_:
                result.allowlist = [
                    row["concept_id"] for row in self._conn.execute(
                        "SELECT concept_id FROM project_allowlists "
                        "WHERE project_id=? AND accepted=1 "
                        "ORDER BY added_at DESC, rowid DESC",
                        (project_id,),
                    ).fetchall()
                ]
        return result

    def allowlist_entries(
        self, project_id: str, include_pending: bool = True,
    ) -> List[AllowlistEntry]:
        """Allowlist rows of a project, pending suggestions included by default."""
        sql = "SELECT * FROM project_allowlists WHERE project_id=?"
        if not include_pending:
            sql += " AND accepted=1"
        with self._lock:
            self._ensure_open()
            rows = self._conn.execute(
                sql + " ORDER BY added_at DESC, rowid DESC", (project_id,)
            ).fetchall()
        return [
            AllowlistEntry(
                project_id=row["project_id"],
                concept_id=row["concept_id"],
                added_at=row["added_at"],
                auto_suggested=bool(row["auto_suggested"]),
                accepted=bool(row["accepted"]),
            )
            for row in rows
        ]

    def suggest_for_project(self, project_id: str, context: str, k: int = 5) -> List[Concept]:
        """Record concepts relevant to ``context`` as pending suggestions.

        Hits of a text search scoring above ``suggest_min_score`` are
        inserted as auto-suggested, not-yet-accepted allowlist rows;
        existing rows are left alone.
        """
        hits = self.search(context, k=k, fallback=False)
        suggestions = [h.concept for h in hits if h.score > self.suggest_min_score]
        with self._lock:
            self._ensure_open()
            now = _now_iso()
            self._conn.executemany(
                """INSERT OR IGNORE INTO project_allowlists
                   (project_id, concept_id, added_at, auto_suggested, accepted)
                   VALUES (?,?,?,1,0)""",
                [(project_id, c.id, now) for c in suggestions],
            )
            self._conn.commit()
        return suggestions

    # -- Internals (caller holds the lock) ---------------------------------

    def _edges(self, concept_id: str) -> List[ConceptEdge]:
        rows = self._conn.execute(
            "SELECT * FROM concept_edges WHERE source_id=? "
            "ORDER BY strength DESC, target_id",
            (concept_id,),
        ).fetchall()
        return [
            ConceptEdge(
                source_id=row["source_id"],
                target_id=row["target_id"],
                type=row["type"],
                strength=row["strength"],
                inferred=bool(row["inferred"]),
            )
            for row in rows
        ]

    def _load(self, concept_id: str) -> Optional[Concept]:
        row = self._conn.execute(
            "SELECT * FROM concepts WHERE id=?", (concept_id,)
        ).fetchone()
        if row is None:
            return None
        tags = [
            r["tag"] for r in self._conn.execute(
                "SELECT tag FROM concept_tags WHERE concept_id=? ORDER BY rowid",
                (concept_id,),
            ).fetchall()
        ]
        return Concept(
            id=row["id"],
            title=row["title"],
            body=row["body"],
            tags=tags,
            importance=row["importance"],
            usage_count=row["usage_count"],
            last_used=row["last_used"],
            provenance=row["provenance"],
            confidence=row["confidence"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            edges=self._edges(concept_id),
        )
