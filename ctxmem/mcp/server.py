"""
ctxmem MCP Server — Project Memory and Context for Coding Assistants

Standalone MCP server exposing ctxmem operations via the Model Context
Protocol.

Architecture: thin MCP layer delegating to the ContextRegistry.  No
business logic in this module; it all lives in ctxmem/*.

Middleware:
    L0: ServerGuard  — project id validation, data-root containment, size caps
    L1: AuditLogger  — structured JSONL audit trail

Usage:
    python -m ctxmem.mcp.server --project my-app
    python -m ctxmem.mcp.server --data-root ~/.local/share/ctxmem --config ctxmem.json
    CTXMEM_PROJECT=my-app ctxmem-mcp -v
"""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP, visible to every MCP client.
_MCP_INSTRUCTIONS = (
    "Project memory and reusable concepts for coding work (14 tools).\n"
    "\n"
    "PRIMARY: Call context_preview with your task and open files before\n"
    "         starting work; inject the returned inject_text.\n"
    "STORE:   memory_save for project facts (summary + paths + tags),\n"
    "         concept_save for knowledge that applies across projects.\n"
    "SEARCH:  memory_search / concept_search for interactive lookup.\n"
    "PROJECT: project_select switches the default project.\n"
    "\n"
    "Rules:\n"
    "- One fact per memory; keep summaries to one line\n"
    "- Attach the paths a memory is about, so it surfaces for those files\n"
    "- Use importance 4-5 only for things that must not be missed\n"
    "- NEVER store secrets or credentials\n"
)

_DEFAULT_DATA_ROOT = (
    Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    / "ctxmem"
)


def _env_int(name: str, default: int) -> int:
    """Read an integer from environment, with fallback."""
    val = os.environ.get(name)
    if val is not None:
        try:
            return int(val)
        except ValueError:
            pass
    return default


def _env_float(name: str, default: float) -> float:
    """Read a float from environment, with fallback."""
    val = os.environ.get(name)
    if val is not None:
        try:
            return float(val)
        except ValueError:
            pass
    return default


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the ctxmem MCP server."""
    p = argparse.ArgumentParser(
        prog="ctxmem-mcp",
        description="ctxmem MCP Server — project memory and context for coding assistants",
    )
    p.add_argument(
        "--project",
        default=os.environ.get("CTXMEM_PROJECT"),
        help="Initially selected project id (default: $CTXMEM_PROJECT)",
    )
    p.add_argument(
        "--data-root",
        default=os.environ.get("CTXMEM_DATA_ROOT", str(_DEFAULT_DATA_ROOT)),
        help=(
            "Directory holding projects/<id>/memories.db and global/concepts.db "
            "(default: ~/.local/share/ctxmem or $CTXMEM_DATA_ROOT)"
        ),
    )
    p.add_argument(
        "--config",
        default=os.environ.get("CTXMEM_CONFIG"),
        help="JSON config file (default: $CTXMEM_CONFIG; compiled defaults if unset)",
    )
    p.add_argument(
        "--strict-config",
        action="store_true",
        help="Fail on out-of-range config values instead of using them",
    )
    p.add_argument(
        "--sweep-interval",
        type=float,
        default=_env_float("CTXMEM_SWEEP_INTERVAL", 0.0),
        help="Expiry sweep interval in seconds (default: from config, 3600)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    g = p.add_argument_group("resource guardrails")
    g.add_argument(
        "--max-write-bytes",
        type=int,
        default=_env_int("CTXMEM_MAX_WRITE_BYTES", 65_536),
        help="Per-call write size cap in bytes (default: 65536)",
    )
    g.add_argument(
        "--max-write-bytes-per-minute",
        type=int,
        default=_env_int("CTXMEM_MAX_WRITE_BYTES_PER_MINUTE", 524_288),
        help="Per-project write volume cap per minute (default: 524288)",
    )

    a = p.add_argument_group("audit")
    a.add_argument(
        "--audit-log",
        default=os.environ.get("CTXMEM_AUDIT_LOG"),
        help="Audit log file path (default: stderr)",
    )

    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with ctxmem tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, registry) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from ctxmem.config import load_config
    from ctxmem.context import ContextRegistry
    from ctxmem.mcp.audit import AuditLogger
    from ctxmem.mcp.guard import ServerGuard
    from ctxmem.mcp.tools import register_tools

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config, strict=getattr(args, "strict_config", False))
    if getattr(args, "sweep_interval", 0) and args.sweep_interval > 0:
        config.store.sweep_interval_seconds = args.sweep_interval

    data_root = Path(args.data_root).expanduser()
    data_root.mkdir(parents=True, exist_ok=True)
    guard = ServerGuard(
        data_root,
        max_write_bytes=args.max_write_bytes,
        max_write_bytes_per_minute=getattr(args, "max_write_bytes_per_minute", 524_288),
    )

    project = None
    if args.project:
        project = guard.check_project(args.project)

    registry = ContextRegistry(str(guard.data_root), config)
    if project:
        registry.open_project(project)
        guard.check_db_size(registry.project_db_path(project))

    audit_output = None
    if args.audit_log:
        audit_output = open(args.audit_log, "a", encoding="utf-8")
    audit = AuditLogger(output=audit_output)

    mcp = FastMCP(
        name="ctxmem Context",
        instructions=_MCP_INSTRUCTIONS,
    )
    register_tools(mcp, registry, guard=guard, audit=audit, project_id=project)

    logger.info(
        "ctxmem MCP server ready: data_root=%s, project=%s",
        guard.data_root, project or "(none)",
    )
    return mcp, registry


def main():
    """CLI entry point — parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, registry = create_server(args)
    try:
        mcp.run()
    finally:
        registry.close()


if __name__ == "__main__":
    main()
