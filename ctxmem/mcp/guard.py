"""
MCP Server Guard — Project validation and resource caps.

Layer 0 of MCP defense-in-depth: rejects project ids that could escape the
data root, keeps every database path under it, and caps write sizes both
per call and per minute.

The guard is instantiated once at server startup and shared across
all tool calls via closure.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Dict, Optional

from ctxmem.context import validate_project_id

logger = logging.getLogger(__name__)


class GuardError(ValueError):
    """Raised when a guard check fails (bad project, path escape, size cap)."""


class ServerGuard:
    """Project and resource guardrails for the MCP server."""

    def __init__(
        self,
        data_root: Path,
        max_write_bytes: int = 65_536,
        max_write_bytes_per_minute: int = 524_288,
        max_db_size_mb: Optional[int] = None,
    ):
        self._data_root: Path = Path(data_root).resolve()
        self._max_write_bytes = max_write_bytes
        self._max_write_bytes_per_minute = max_write_bytes_per_minute
        self._max_db_size_mb = max_db_size_mb

        # Per-project cumulative write tracking (project_id → {window_start, bytes})
        self._write_budgets: Dict[str, dict] = {}

    @property
    def data_root(self) -> Path:
        """The canonical data root."""
        return self._data_root

    @property
    def max_write_bytes(self) -> int:
        return self._max_write_bytes

    def check_project(self, project_id: Optional[str]) -> str:
        """Validate a project id and the database path it maps to.

        Raises GuardError if no project is selected, the id is malformed,
        or its directory resolves outside the data root (symlink escape).
        """
        if not project_id:
            raise GuardError(
                "No project selected: pass --project, set CTXMEM_PROJECT, "
                "or call project_select"
            )
        try:
            validate_project_id(project_id)
        except ValueError as exc:
            raise GuardError(str(exc)) from exc
        resolved = (self._data_root / "projects" / project_id).resolve()
        try:
            resolved.relative_to(self._data_root)
        except ValueError:
            raise GuardError(
                f"Project path outside data root: '{resolved}' is not under "
                f"'{self._data_root}'"
            )
        return project_id

    def relative_path(self, path: Path) -> str:
        """Root-relative path string for audit logging (never absolute when
        under the root)."""
        try:
            return str(Path(path).resolve().relative_to(self._data_root))
        except ValueError:
            return str(path)

    def check_write_size(self, content: str) -> None:
        """Raise GuardError if content exceeds max_write_bytes."""
        size = len(content.encode("utf-8"))
        if size > self._max_write_bytes:
            raise GuardError(
                f"Write size {size} bytes exceeds limit of {self._max_write_bytes} bytes"
            )

    def check_write_budget(self, project_id: str, content_bytes: int) -> None:
        """Track cumulative writes per project per minute. Raise GuardError
        if over budget."""
        now = time.monotonic()
        bucket = self._write_budgets.get(project_id)

        if bucket is None or (now - bucket["window_start"]) >= 60.0:
            self._write_budgets[project_id] = {
                "window_start": now,
                "bytes": content_bytes,
            }
            return

        new_total = bucket["bytes"] + content_bytes
        if new_total > self._max_write_bytes_per_minute:
            raise GuardError(
                f"Write budget exceeded: {new_total} bytes in current minute "
                f"(limit: {self._max_write_bytes_per_minute} bytes/min)"
            )
        bucket["bytes"] = new_total

    def check_db_size(self, db_path: Path) -> None:
        """Log warning if a database exceeds max_db_size_mb. Non-blocking."""
        if self._max_db_size_mb is None:
            return
        try:
            size_mb = Path(db_path).stat().st_size / (1024 * 1024)
        except OSError:
            return
        if size_mb > self._max_db_size_mb:
            logger.warning(
                "Database %s is %.1f MB (limit: %d MB)",
                db_path, size_mb, self._max_db_size_mb,
            )
