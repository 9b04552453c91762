"""
MCP Audit Logger — one structured JSONL record per tool call.

Privacy rules:
- Never log raw content beyond a 120-char preview
- Include a SHA-256 hash for correlation without content storage
- Paths are data-root-relative

``log()`` is fire-and-forget: write failures are reported through the
``logging`` module and never disrupt tool execution.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

logger = logging.getLogger(__name__)

AUDIT_SCHEMA_VERSION = 1
PREVIEW_MAX_CHARS = 120


class AuditLogger:
    """Structured JSONL audit logger for MCP tool calls."""

    def __init__(self, output: Optional[TextIO] = None):
        """
        Args:
            output: File handle for audit output. None → stderr.
        """
        self._output = output if output is not None else sys.stderr

    def new_rid(self) -> str:
        """Generate a new request ID (UUID4 hex string)."""
        return uuid.uuid4().hex

    def log(
        self,
        tool: str,
        rid: str,
        project_id: Optional[str],
        outcome: str,
        detail: Optional[Dict[str, Any]] = None,
        latency_ms: float = 0.0,
    ) -> None:
        """Write one JSONL audit record. Never raises.

        Args:
            tool: MCP tool name (e.g. "memory_save").
            rid: Request ID (from new_rid()).
            project_id: Selected project, or None.
            outcome: "ok", "error" or "rejected".
            detail: Tool-specific fields.
            latency_ms: Wall-clock latency in milliseconds.
        """
        now = datetime.now(timezone.utc)
        record: Dict[str, Any] = {
            "v": AUDIT_SCHEMA_VERSION,
            "ts": now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z",
            "rid": rid,
            "tool": tool,
            "project": project_id,
            "outcome": outcome,
        }
        if detail:
            record["d"] = detail
        record["ms"] = round(latency_ms, 1)
        try:
            line = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)
            self._output.write(line + "\n")
            self._output.flush()
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Audit write failed for %s/%s: %s", tool, rid, exc)

    @staticmethod
    def make_content_detail(content: str) -> Dict[str, Any]:
        """Safe audit fields for content-carrying tools: byte size, SHA-256
        and a single-line preview truncated with '…'."""
        data = content.encode("utf-8")
        preview = content[:PREVIEW_MAX_CHARS].replace("\n", " ").replace("\r", "")
        if len(content) > PREVIEW_MAX_CHARS:
            preview = preview.rstrip() + "…"
        return {
            "bytes": len(data),
            "hash": hashlib.sha256(data).hexdigest(),
            "preview": preview,
        }
