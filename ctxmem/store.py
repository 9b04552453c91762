"""
Memory Store — Project-Scoped SQLite Backend

Tables:
    memories       - One row per memory record (current state)
    memory_tags    - Record tags (normalized join table)
    memory_paths   - Record path prefixes (normalized join table)
    memories_fts   - FTS5 index over summary, text and the joined tag string
    schema_meta    - Schema metadata

Each project owns its own database file, so project isolation is structural:
no query ever filters on a project column.

Thread safety: uses sqlite3 check_same_thread=False with explicit
serialization.  The ExpirySweeper thread takes the same lock.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ctxmem.errors import StoreUnavailable
from ctxmem.query import extract_path_tokens, query_terms, run_cascade
from ctxmem.types import (
    DEFAULT_IMPORTANCE,
    ForgetResult,
    MemoryRecord,
    SearchDebug,
    SearchHit,
    SearchPreview,
    _clean_strings,
    _generate_id,
    _iso_after,
    _now_iso,
    check_importance,
    fingerprint,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memories (
    id           TEXT PRIMARY KEY,
    summary      TEXT NOT NULL,
    text         TEXT NOT NULL DEFAULT '',
    tag_text     TEXT NOT NULL DEFAULT '',   -- space-joined tags, FTS only
    importance   INTEGER NOT NULL DEFAULT 3 CHECK(importance BETWEEN 1 AND 5),
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL,
    ttl          INTEGER,
    expires_at   TEXT,
    fingerprint  TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS memory_tags (
    memory_id  TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    tag        TEXT NOT NULL,
    PRIMARY KEY (memory_id, tag)
);

CREATE TABLE IF NOT EXISTS memory_paths (
    memory_id  TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    path       TEXT NOT NULL,
    PRIMARY KEY (memory_id, path)
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at);
CREATE INDEX IF NOT EXISTS idx_memories_expires ON memories(expires_at);
CREATE INDEX IF NOT EXISTS idx_tags_tag ON memory_tags(tag);
CREATE INDEX IF NOT EXISTS idx_paths_path ON memory_paths(path);
"""

# ---------------------------------------------------------------------------
# FTS5 Schema (external content over memories)
# ---------------------------------------------------------------------------
# INSERT OR REPLACE fires DELETE then INSERT, so the delete/insert trigger
# pair keeps the index in sync for every write path.
# ---------------------------------------------------------------------------

# Only alphanumeric, space, underscore, dot and hyphen: the tokenizer string
# is interpolated into DDL.
_FTS_TOKENIZER_PATTERN = re.compile(r"^[a-zA-Z0-9_ .\-]+$")


def _validate_fts_tokenizer(tokenizer: str) -> str:
    """Validate and return a safe FTS5 tokenizer string."""
    tokenizer = tokenizer.strip()
    if not tokenizer:
        raise ValueError("FTS5 tokenizer string cannot be empty")
    if not _FTS_TOKENIZER_PATTERN.match(tokenizer):
        raise ValueError(
            f"Unsafe FTS5 tokenizer string: {tokenizer!r} — "
            "only [a-zA-Z0-9_ .-] characters allowed"
        )
    return tokenizer


def _fts5_schema_sql(tokenizer: str) -> str:
    """Generate FTS5 schema SQL with a validated tokenizer string."""
    safe = _validate_fts_tokenizer(tokenizer)
    return f"""
CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
    summary, text, tag_text,
    content='memories',
    content_rowid='rowid',
    tokenize='{safe}'
);

CREATE TRIGGER IF NOT EXISTS memories_fts_ai
AFTER INSERT ON memories BEGIN
    INSERT INTO memories_fts(rowid, summary, text, tag_text)
    VALUES (new.rowid, new.summary, new.text, new.tag_text);
END;

-- BEFORE DELETE so the old rowid is still accessible
CREATE TRIGGER IF NOT EXISTS memories_fts_bd
BEFORE DELETE ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, summary, text, tag_text)
    VALUES ('delete', old.rowid, old.summary, old.text, old.tag_text);
END;

CREATE TRIGGER IF NOT EXISTS memories_fts_bu
BEFORE UPDATE ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, summary, text, tag_text)
    VALUES ('delete', old.rowid, old.summary, old.text, old.tag_text);
END;

CREATE TRIGGER IF NOT EXISTS memories_fts_au
AFTER UPDATE ON memories BEGIN
    INSERT INTO memories_fts(rowid, summary, text, tag_text)
    VALUES (new.rowid, new.summary, new.text, new.tag_text);
END;
"""


# ---------------------------------------------------------------------------
# Helpers (module-level)
# ---------------------------------------------------------------------------

_UPDATABLE_FIELDS = frozenset({"summary", "text", "tags", "paths", "importance", "ttl"})

# Parameter chunk size for IN (...) lookups
_IN_CHUNK = 500


def _check_ttl(ttl: Optional[int]) -> Optional[int]:
    if ttl is None:
        return None
    if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
        raise ValueError(f"ttl must be a positive number of seconds, got {ttl!r}")
    return ttl


def _normalize_prefix(prefix: str) -> str:
    """Path prefix as stored: forward slashes, no leading ./ or /, no trailing *."""
    p = prefix.strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/").rstrip("*")


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

class MemoryStore:
    """
    SQLite-backed persistent store for one project's memory records.

    Thread-safe via explicit lock.  Saves are deduplicated on the record
    fingerprint; searches run the four-stage FTS fallback cascade.
    """

    def __init__(
        self,
        project_id: str,
        db_path: str = ":memory:",
        wal_mode: bool = True,
        fts_tokenizer: str = "porter unicode61",
        importance_weight: float = 0.25,
        snippet_tokens: int = 16,
    ):
        """Open (or create) a project store.

        Args:
            project_id: Owning project; reported on every returned record.
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
            fts_tokenizer: FTS5 tokenizer string, ``[a-zA-Z0-9_ .-]+``.
            importance_weight: BM25 points subtracted per importance level
                when ranking full-text matches.
            snippet_tokens: Maximum tokens in a search snippet.

        Raises:
            StoreUnavailable: If the SQLite build lacks FTS5.
        """
        self.project_id = project_id
        self._db_path = db_path
        self._lock = threading.Lock()
        self._closed = False
        self._fts_tokenizer = _validate_fts_tokenizer(fts_tokenizer)
        self._importance_weight = float(importance_weight)
        self._snippet_tokens = int(snippet_tokens)
        self._last_search_debug: Optional[SearchDebug] = None
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if wal_mode and db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('project_id', ?)",
            (project_id,),
        )
        self._conn.commit()
        try:
            self._conn.executescript(_fts5_schema_sql(self._fts_tokenizer))
            self._conn.commit()
        except sqlite3.OperationalError as exc:
            # Typical message: "no such module: fts5"
            self._conn.close()
            self._closed = True
            raise StoreUnavailable(f"FTS5 is not available: {exc}") from exc
        logger.info(
            "MemoryStore initialized: project=%s db=%s tokenizer=%s",
            project_id, db_path, self._fts_tokenizer,
        )

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_search_debug(self) -> Optional[SearchDebug]:
        """Trace of the most recent search call, if any."""
        return self._last_search_debug

    def close(self) -> None:
        """Close the underlying SQLite connection (idempotent)."""
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True
        logger.debug("MemoryStore closed: project=%s", self.project_id)

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreUnavailable(f"Store for project {self.project_id!r} is closed")

    # -- Write operations --------------------------------------------------

    def save(
        self,
        summary: str,
        text: str = "",
        tags: Optional[List[str]] = None,
        paths: Optional[List[str]] = None,
        importance: int = DEFAULT_IMPORTANCE,
        ttl: Optional[int] = None,
    ) -> MemoryRecord:
        """Save a memory, deduplicating on fingerprint.

        A save whose normalized summary and path set match an existing
        record updates that record in place (summary, text, tags, paths,
        importance, updated_at; ttl/expires_at only when ``ttl`` is given)
        and returns it under its original id.  A matching record that has
        expired but not yet been swept gets a fresh expiry from its stored
        ttl, so the saved record is visible again.
        """
        if not summary or not summary.strip():
            raise ValueError("summary must not be empty")
        check_importance(importance)
        _check_ttl(ttl)
        tags = _clean_strings(tags)
        paths = _clean_strings([_normalize_prefix(p) for p in _clean_strings(paths)])
        fp = fingerprint(summary, paths)
        now = _now_iso()

        with self._lock:
            self._ensure_open()
            row = self._conn.execute(
                "SELECT id, ttl, expires_at FROM memories WHERE fingerprint=?", (fp,)
            ).fetchone()
            if row is not None:
                record_id = row["id"]
                sets = [
                    "summary=?", "text=?", "tag_text=?", "importance=?", "updated_at=?",
                ]
                params: list = [summary, text or "", " ".join(tags), importance, now]
                if ttl is not None:
                    sets += ["ttl=?", "expires_at=?"]
                    params += [ttl, _iso_after(ttl)]
                elif row["ttl"] and row["expires_at"] and row["expires_at"] <= now:
                    # Expired but not yet swept: the save restarts its ttl
                    sets.append("expires_at=?")
                    params.append(_iso_after(row["ttl"]))
                self._conn.execute(
                    f"UPDATE memories SET {', '.join(sets)} WHERE id=?",
                    params + [record_id],
                )
                logger.debug("save: fingerprint collision, updated %s", record_id)
            else:
                record_id = _generate_id("mem")
                self._conn.execute(
                    """INSERT INTO memories
                       (id, summary, text, tag_text, importance, created_at,
                        updated_at, ttl, expires_at, fingerprint)
                       VALUES (?,?,?,?,?,?,?,?,?,?)""",
                    (
                        record_id, summary, text or "", " ".join(tags), importance,
                        now, now, ttl, _iso_after(ttl) if ttl else None, fp,
                    ),
                )
                logger.debug("save: created %s", record_id)
            self._write_facets(record_id, tags, paths)
            self._conn.commit()
            return self._load_records([record_id])[record_id]

    def update(self, record_id: str, **fields: Any) -> Optional[MemoryRecord]:
        """Explicitly update fields of an existing record.

        Accepts ``summary``, ``text``, ``tags``, ``paths``, ``importance``
        and ``ttl``.  The fingerprint is recomputed.

        Returns:
            The updated record, or None if ``record_id`` does not exist.

        Raises:
            ValueError: On unknown fields, invalid values, or if the new
                fingerprint belongs to a different record.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        if "importance" in fields:
            check_importance(fields["importance"])
        if "ttl" in fields:
            _check_ttl(fields["ttl"])
        if "summary" in fields and not str(fields["summary"]).strip():
            raise ValueError("summary must not be empty")

        with self._lock:
            self._ensure_open()
            current = self._load_records([record_id]).get(record_id)
            if current is None:
                return None
            summary = fields.get("summary", current.summary)
            text = fields.get("text", current.text)
            tags = _clean_strings(fields.get("tags", current.tags))
            paths = _clean_strings(
                [_normalize_prefix(p) for p in _clean_strings(fields.get("paths", current.paths))]
            )
            importance = fields.get("importance", current.importance)
            fp = fingerprint(summary, paths)
            clash = self._conn.execute(
                "SELECT id FROM memories WHERE fingerprint=? AND id<>?",
                (fp, record_id),
            ).fetchone()
            if clash is not None:
                raise ValueError(
                    f"Update would duplicate record {clash['id']} (same summary and paths)"
                )
            now = _now_iso()
            ttl = fields.get("ttl", current.ttl)
            expires_at = current.expires_at
            if "ttl" in fields:
                expires_at = _iso_after(ttl) if ttl else None
            self._conn.execute(
                """UPDATE memories SET summary=?, text=?, tag_text=?, importance=?,
                   updated_at=?, ttl=?, expires_at=?, fingerprint=? WHERE id=?""",
                (summary, text, " ".join(tags), importance, now, ttl,
                 expires_at, fp, record_id),
            )
            self._write_facets(record_id, tags, paths)
            self._conn.commit()
            return self._load_records([record_id])[record_id]

    def forget(self, record_id: str) -> ForgetResult:
        """Delete a record. Idempotent; reports absence instead of raising.

        Raises:
            StoreUnavailable: If the store is closed.
        """
        with self._lock:
            self._ensure_open()
            try:
                cur = self._conn.execute("DELETE FROM memories WHERE id=?", (record_id,))
                self._conn.commit()
            except sqlite3.Error as exc:
                logger.warning("forget(%s) failed: %s", record_id, exc)
                return ForgetResult(ok=False, message=f"delete failed: {exc}")
        if cur.rowcount:
            return ForgetResult(ok=True, message=f"Memory {record_id} forgotten")
        return ForgetResult(ok=False, message=f"Memory {record_id} not found")

    def sweep_expired(self) -> int:
        """Delete every record whose expiry has passed. Returns the count."""
        with self._lock:
            self._ensure_open()
            cur = self._conn.execute(
                "DELETE FROM memories WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (_now_iso(),),
            )
            self._conn.commit()
            removed = cur.rowcount
        if removed:
            logger.info("Expiry sweep removed %d record(s) from %s", removed, self.project_id)
        return removed

    # -- Read operations ---------------------------------------------------

    def get(self, record_id: str, include_expired: bool = False) -> Optional[MemoryRecord]:
        """Read a single record by id; None if absent (or expired)."""
        return self.get_multiple([record_id], include_expired=include_expired)[record_id]

    def get_multiple(
        self, record_ids: List[str], include_expired: bool = False,
    ) -> Dict[str, Optional[MemoryRecord]]:
        """Read several records; every requested id maps to a record or None."""
        with self._lock:
            self._ensure_open()
            found = self._load_records(list(dict.fromkeys(record_ids)))
        now = _now_iso()
        out: Dict[str, Optional[MemoryRecord]] = {}
        for rid in record_ids:
            rec = found.get(rid)
            if rec is not None and not include_expired and rec.is_expired(now):
                rec = None
            out[rid] = rec
        return out

    def get_recent(
        self,
        k: int = 10,
        path_prefix: Optional[str] = None,
        include_expired: bool = False,
    ) -> List[MemoryRecord]:
        """Most recently created records, newest first."""
        conditions: List[str] = []
        params: list = []
        if not include_expired:
            conditions.append("(m.expires_at IS NULL OR m.expires_at > ?)")
            params.append(_now_iso())
        if path_prefix:
            prefix = _normalize_prefix(path_prefix)
            conditions.append(
                "EXISTS (SELECT 1 FROM memory_paths p WHERE p.memory_id = m.id "
                "AND p.path LIKE ? ESCAPE '\\')"
            )
            params.append(_escape_like(prefix) + "%")
        where = " AND ".join(conditions) if conditions else "1=1"
        with self._lock:
            self._ensure_open()
            rows = self._conn.execute(
                f"SELECT m.id FROM memories m WHERE {where} "
                "ORDER BY m.created_at DESC, m.rowid DESC LIMIT ?",
                params + [max(0, int(k))],
            ).fetchall()
            ids = [r["id"] for r in rows]
            found = self._load_records(ids)
        return [found[i] for i in ids]

    def count(self, include_expired: bool = True) -> int:
        """Number of records in the store."""
        with self._lock:
            self._ensure_open()
            if include_expired:
                row = self._conn.execute("SELECT COUNT(*) AS cnt FROM memories").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) AS cnt FROM memories "
                    "WHERE expires_at IS NULL OR expires_at > ?",
                    (_now_iso(),),
                ).fetchone()
            return row["cnt"]

    def stats(self) -> Dict[str, Any]:
        """Summary statistics for the project store."""
        now = _now_iso()
        with self._lock:
            self._ensure_open()
            total = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM memories"
            ).fetchone()["cnt"]
            expired = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM memories "
                "WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now,),
            ).fetchone()["cnt"]
            by_importance = {
                row["importance"]: row["cnt"]
                for row in self._conn.execute(
                    "SELECT importance, COUNT(*) AS cnt FROM memories GROUP BY importance"
                ).fetchall()
            }
            tag_count = self._conn.execute(
                "SELECT COUNT(DISTINCT tag) AS cnt FROM memory_tags"
            ).fetchone()["cnt"]
            path_count = self._conn.execute(
                "SELECT COUNT(DISTINCT path) AS cnt FROM memory_paths"
            ).fetchone()["cnt"]
        return {
            "project_id": self.project_id,
            "db_path": self._db_path,
            "total_records": total,
            "expired_records": expired,
            "by_importance": by_importance,
            "distinct_tags": tag_count,
            "distinct_paths": path_count,
            "fts_tokenizer": self._fts_tokenizer,
        }

    # -- Search ------------------------------------------------------------

    def search(
        self,
        query: str,
        k: int = 10,
        require_path_match: bool = False,
        tags: Optional[List[str]] = None,
        include_expired: bool = False,
    ) -> List[SearchHit]:
        """Full-text search with the LITERAL → SANITIZED → OR_TERMS →
        FIRST_TERM fallback cascade.  See ``search_with_debug``."""
        return self.search_with_debug(
            query, k=k, require_path_match=require_path_match,
            tags=tags, include_expired=include_expired,
        ).results

    def search_with_debug(
        self,
        query: str,
        k: int = 10,
        require_path_match: bool = False,
        tags: Optional[List[str]] = None,
        include_expired: bool = False,
    ) -> SearchDebug:
        """Full-text search returning the cascade trace.

        The first stage yielding at least one hit wins.  Stages whose SQL
        fails (FTS syntax errors on the literal query, typically) are
        recorded in ``degraded`` and treated as empty.

        ``tags`` keeps only records sharing at least one tag.
        ``require_path_match`` keeps only records whose stored paths
        substring-match a path-like token of ``query``; with no such token
        the result is empty without touching the index.

        Ranking: ``bm25 - importance_weight * importance`` ascending, then
        ``created_at`` descending.  ``relevance`` is ``-bm25``.
        """
        started = time.perf_counter()
        debug = SearchDebug()
        path_tokens: List[str] = []
        if require_path_match:
            path_tokens = extract_path_tokens(query)
        if (require_path_match and not path_tokens) or not query.strip() or k <= 0:
            debug.elapsed_ms = (time.perf_counter() - started) * 1000.0
            self._last_search_debug = debug
            return debug
        tag_filter = _clean_strings(tags)

        def stage_fn(fts_query: str) -> Tuple[List[SearchHit], int]:
            return self._search_stage(
                fts_query, k, tag_filter, path_tokens, include_expired,
            )

        outcome = run_cascade(query, stage_fn)
        debug.results = outcome.results
        debug.queries_tried = outcome.queries_tried
        debug.stage_used = outcome.stage_used
        debug.degraded = outcome.degraded
        debug.total_scanned = outcome.total_scanned
        debug.elapsed_ms = (time.perf_counter() - started) * 1000.0
        self._last_search_debug = debug
        return debug

    def search_preview(
        self,
        query: str,
        k: int = 10,
        require_path_match: bool = False,
        tags: Optional[List[str]] = None,
        include_expired: bool = False,
    ) -> SearchPreview:
        """Dry run of ``search``: count what it would return.

        Runs the same cascade with the same filters but returns only the
        number of matches, the stage and query text that would answer, the
        filters applied and up to three example summaries.  Does not update
        ``last_search_debug``.
        """
        preview = SearchPreview(query=query, terms=query_terms(query))
        tag_filter = _clean_strings(tags)
        path_tokens: List[str] = []
        if not include_expired:
            preview.filters_applied.append("excluding expired memories")
        if tag_filter:
            preview.filters_applied.append(f"tags: {', '.join(tag_filter)}")
        if require_path_match:
            path_tokens = extract_path_tokens(query)
            preview.filters_applied.append(
                f"paths matching: {', '.join(path_tokens) or '(no path in query)'}"
            )
        if (require_path_match and not path_tokens) or not query.strip() or k <= 0:
            if require_path_match and not path_tokens:
                preview.suggestions.append(
                    "Mention a path in the query or drop require_path_match"
                )
            return preview

        counts: Dict[str, int] = {}

        def stage_fn(fts_query: str) -> Tuple[List[SearchHit], int]:
            hits, scanned = self._search_stage(
                fts_query, 3, tag_filter, path_tokens, include_expired,
            )
            if hits:
                counts[fts_query] = self._count_stage(
                    fts_query, tag_filter, path_tokens, include_expired,
                )
            return hits, scanned

        outcome = run_cascade(query, stage_fn)
        preview.queries_tried = outcome.queries_tried
        preview.stage_used = outcome.stage_used
        preview.degraded = outcome.degraded
        if outcome.queries_tried:
            preview.processed = outcome.queries_tried[-1]
        if outcome.results:
            preview.total_matches = counts.get(preview.processed, len(outcome.results))
            preview.would_return = min(k, preview.total_matches)
            preview.match_examples = [h.record.summary for h in outcome.results]
        else:
            preview.suggestions.append("Try fewer or more general terms")
            if tag_filter:
                preview.suggestions.append("Drop the tag filter")
            if require_path_match:
                preview.suggestions.append("Search without require_path_match")
            if not include_expired:
                preview.suggestions.append("Retry with include_expired")
        logger.debug(
            "[preview] %r → stage=%s would_return=%d",
            query, preview.stage_used, preview.would_return,
        )
        return preview

    def _search_stage(
        self,
        fts_query: str,
        k: int,
        tags: List[str],
        path_tokens: List[str],
        include_expired: bool,
    ) -> Tuple[List[SearchHit], int]:
        """Run one FTS5 MATCH with filters. SQLite errors propagate."""
        conditions, params = self._stage_filters(
            fts_query, tags, path_tokens, include_expired,
        )
        where = " AND ".join(conditions)
        sql = (
            "SELECT m.id, bm25(memories_fts) AS score, "
            f"snippet(memories_fts, -1, '[', ']', '…', {self._snippet_tokens}) AS snip "
            "FROM memories_fts JOIN memories m ON m.rowid = memories_fts.rowid "
            f"WHERE {where} "
            "ORDER BY bm25(memories_fts) - ? * m.importance ASC, m.created_at DESC "
            "LIMIT ?"
        )
        params += [self._importance_weight, k]
        with self._lock:
            self._ensure_open()
            rows = self._conn.execute(sql, params).fetchall()
            scanned = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM memories_fts WHERE memories_fts MATCH ?",
                (fts_query,),
            ).fetchone()["cnt"]
            records = self._load_records([r["id"] for r in rows])
        hits = [
            SearchHit(
                record=records[r["id"]],
                relevance=max(0.0, -float(r["score"])),
                snippet=r["snip"] or "",
            )
            for r in rows
        ]
        return hits, scanned

    def _count_stage(
        self,
        fts_query: str,
        tags: List[str],
        path_tokens: List[str],
        include_expired: bool,
    ) -> int:
        """Number of records one stage matches after filters."""
        conditions, params = self._stage_filters(
            fts_query, tags, path_tokens, include_expired,
        )
        with self._lock:
            self._ensure_open()
            return self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM memories_fts "
                "JOIN memories m ON m.rowid = memories_fts.rowid "
                f"WHERE {' AND '.join(conditions)}",
                params,
            ).fetchone()["cnt"]

    @staticmethod
    def _stage_filters(
        fts_query: str,
        tags: List[str],
        path_tokens: List[str],
        include_expired: bool,
    ) -> Tuple[List[str], list]:
        conditions = ["memories_fts MATCH ?"]
        params: list = [fts_query]
        if not include_expired:
            conditions.append("(m.expires_at IS NULL OR m.expires_at > ?)")
            params.append(_now_iso())
        if tags:
            marks = ",".join("?" for _ in tags)
            conditions.append(
                "EXISTS (SELECT 1 FROM memory_tags t WHERE t.memory_id = m.id "
                f"AND t.tag IN ({marks}))"
            )
            params.extend(tags)
        if path_tokens:
            alternatives = []
            for token in path_tokens:
                alternatives.append(
                    "instr(p.path, ?) > 0 OR instr(?, rtrim(p.path, '*')) > 0"
                )
                params.extend([token, token])
            conditions.append(
                "EXISTS (SELECT 1 FROM memory_paths p WHERE p.memory_id = m.id "
                f"AND ({' OR '.join(alternatives)}))"
            )
        return conditions, params

    # -- Internals (caller holds the lock) ---------------------------------

    def _write_facets(self, record_id: str, tags: List[str], paths: List[str]) -> None:
        self._conn.execute("DELETE FROM memory_tags WHERE memory_id=?", (record_id,))
        self._conn.execute("DELETE FROM memory_paths WHERE memory_id=?", (record_id,))
        self._conn.executemany(
            "INSERT OR IGNORE INTO memory_tags (memory_id, tag) VALUES (?, ?)",
            [(record_id, t) for t in tags],
        )
        self._conn.executemany(
            "INSERT OR IGNORE INTO memory_paths (memory_id, path) VALUES (?, ?)",
            [(record_id, p) for p in paths],
        )

    def _load_records(self, record_ids: List[str]) -> Dict[str, MemoryRecord]:
        """Fetch records with their tags and paths, keyed by id."""
        out: Dict[str, MemoryRecord] = {}
        for start in range(0, len(record_ids), _IN_CHUNK):
            chunk = record_ids[start:start + _IN_CHUNK]
            if not chunk:
                continue
            marks = ",".join("?" for _ in chunk)
            rows = self._conn.execute(
                f"SELECT * FROM memories WHERE id IN ({marks})", chunk,
            ).fetchall()
            tags: Dict[str, List[str]] = {}
            for r in self._conn.execute(
                f"SELECT memory_id, tag FROM memory_tags WHERE memory_id IN ({marks}) "
                "ORDER BY rowid", chunk,
            ).fetchall():
                tags.setdefault(r["memory_id"], []).append(r["tag"])
            paths: Dict[str, List[str]] = {}
            for r in self._conn.execute(
                f"SELECT memory_id, path FROM memory_paths WHERE memory_id IN ({marks}) "
                "ORDER BY rowid", chunk,
            ).fetchall():
                paths.setdefault(r["memory_id"], []).append(r["path"])
            for row in rows:
                out[row["id"]] = MemoryRecord(
                    id=row["id"],
                    project_id=self.project_id,
                    summary=row["summary"],
                    text=row["text"],
                    tags=tags.get(row["id"], []),
                    paths=paths.get(row["id"], []),
                    importance=row["importance"],
                    created_at=row["created_at"],
                    updated_at=row["updated_at"],
                    ttl=row["ttl"],
                    expires_at=row["expires_at"],
                    fingerprint=row["fingerprint"],
                )
        return out


# ---------------------------------------------------------------------------
# Expiry sweeper
# ---------------------------------------------------------------------------

class ExpirySweeper:
    """Runs ``store.sweep_expired()`` every ``interval`` seconds in a daemon
    thread until cancelled."""

    def __init__(self, store: MemoryStore, interval: float = 3600.0):
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self._store = store
        self._interval = float(interval)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the sweeper thread (no-op when already running)."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"ctxmem-sweeper-{self._store.project_id}",
            daemon=True,
        )
        self._thread.start()

    def cancel(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the thread and wait for it to exit."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._store.sweep_expired()
                self.sweeps += 1
            except StoreUnavailable:
                logger.debug("Sweeper stopping: store %s closed", self._store.project_id)
                return
            except sqlite3.Error as exc:
                logger.warning("Expiry sweep failed for %s: %s", self._store.project_id, exc)
