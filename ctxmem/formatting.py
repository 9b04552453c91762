"""
Injection Formatting — Stable Contract (format_version=1)

Renders memory records and concepts into the markdown blocks the context
assembler measures and delivers.  Injection byte sizes are computed on the
exact text produced here, so any change to these templates changes which
candidates fit a budget.

Breaking changes to the output format MUST increment FORMAT_VERSION.
"""

from __future__ import annotations

from typing import List

from ctxmem.types import Concept, ContextPreview, MemoryRecord

FORMAT_VERSION = 1


def render_memory(record: MemoryRecord) -> str:
    """Markdown block for one memory record."""
    parts: List[str] = [f"## {record.summary}"]
    if record.text:
        parts.append(record.text)
    if record.paths:
        parts.append(f"**Paths:** {', '.join(record.paths)}")
    if record.tags:
        parts.append(f"**Tags:** {', '.join(record.tags)}")
    return "\n\n".join(parts)


def render_concept(concept: Concept) -> str:
    """Markdown block for one concept."""
    parts: List[str] = [f"## {concept.title}"]
    if concept.body:
        parts.append(concept.body)
    if concept.tags:
        parts.append(f"**Tags:** {', '.join(concept.tags)}")
    return "\n\n".join(parts)


def memory_source(project_id: str, record_id: str) -> str:
    return f"{project_id}:{record_id}"


def concept_source(concept_id: str) -> str:
    return f"global:{concept_id}"


def format_preview(preview: ContextPreview) -> str:
    """Concatenate the selected injections into one deliverable block.

    Returns an empty string when nothing was selected.
    """
    if not preview.injections:
        return ""
    lines: List[str] = [
        "## Context (Injected)",
        f"format_version: {FORMAT_VERSION}",
        f"budget_bytes: {preview.budget_limit}",
        f"used_bytes: {preview.budget_used}",
        "",
    ]
    for inj in preview.injections:
        lines.append(f"<!-- {inj.type} {inj.source} score={inj.score:.2f} -->")
        lines.append(inj.content)
        lines.append("")
    lines.append(f"--- End Context (format_version={FORMAT_VERSION}) ---")
    return "\n".join(lines)
