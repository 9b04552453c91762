"""
ctxmem MCP Tools — 14 retrieval tools for MCP integration.

Thin wrappers around MemoryStore, ConceptStore and ContextAssembler, all
reached through the shared ContextRegistry.  Each tool follows the same
middleware order:

    ① Project resolve  — explicit argument, else the selected project (L0)
    ② Tool execution   — guard size caps → business logic (L0)
    ③ Audit log        — always, including on failure (in finally block)

Tool hierarchy:
    PRIMARY:    context_preview      — ranked, byte-budgeted context
    MEMORY:     memory_save, memory_search, memory_get_recent, memory_get,
                memory_get_multiple, memory_forget
    CONCEPTS:   concept_search, concept_get, concept_save, concept_allowlist
    RULES:      context_get_rules, context_set_rules
    SESSION:    project_select

Every tool returns ``{"status": "ok", ...}`` or
``{"status": "error"|"rejected", "message": ...}``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from ctxmem.context import ContextRegistry
from ctxmem.formatting import FORMAT_VERSION, format_preview
from ctxmem.mcp.audit import AuditLogger
from ctxmem.mcp.guard import GuardError, ServerGuard

logger = logging.getLogger(__name__)


def register_tools(
    mcp,
    registry: ContextRegistry,
    *,
    guard: ServerGuard,
    audit: Optional[AuditLogger] = None,
    project_id: Optional[str] = None,
) -> Dict[str, Optional[str]]:
    """
    Register all 14 MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance.
        registry: Registry owning every store.
        guard: ServerGuard for project and size validation.
        audit: AuditLogger for structured logging.
        project_id: Initially selected project (may be None).

    Returns:
        The mutable session state (``{"project": ...}``) shared by the tools.
    """
    if audit is None:
        audit = AuditLogger()
    state: Dict[str, Optional[str]] = {"project": project_id}

    def _project(explicit: Optional[str]) -> str:
        """Resolve and open the target project."""
        pid = guard.check_project(explicit or state["project"])
        registry.open_project(pid)
        return pid

    # =====================================================================
    # PRIMARY: Context assembly
    # =====================================================================

    @mcp.tool()
    def context_preview(
        task: str,
        open_files: Optional[List[str]] = None,
        budget_bytes: int = 2048,
        top_k: int = 10,
        mode: str = "smart",
        project_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Ranked, byte-budgeted context for a task.

        PRIMARY tool — merges project memories with global concepts, scores
        them against the task and the open files, and returns the best set
        that fits the budget.

        Args:
            task: What you are about to do, in a sentence.
            open_files: Files you are working on (boosts path-matched memories).
            budget_bytes: Maximum total size of the injected text (default 2048).
            top_k: Maximum number of injections (default 10).
            mode: hard (memories only), smart (plus allowlisted concepts),
                soft (plus every important concept).
            project_id: Target project (default: the selected one).

        Returns:
            inject_text: Concatenated injection block (format_version=1).
            injections, budget_used, budget_limit, top_k, stats.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        pid = project_id or state["project"]
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            pid = _project(project_id)
            preview = registry.assembler(pid).preview(
                task, open_files=open_files, budget_bytes=budget_bytes,
                top_k=top_k, mode=mode,
            )
            detail = {
                "task_len": len(task), "mode": mode,
                "selected": len(preview.injections), "bytes": preview.budget_used,
            }
            return {
                "status": "ok",
                "inject_text": format_preview(preview),
                "format_version": FORMAT_VERSION,
                **preview.to_dict(),
            }
        except GuardError as e:
            outcome = "rejected"
            return {"status": "rejected", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Preview failed: {e}"}
        finally:
            audit.log("context_preview", rid, pid, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # MEMORY
    # =====================================================================

    @mcp.tool()
    def memory_save(
        summary: str,
        text: str = "",
        tags: Optional[List[str]] = None,
        paths: Optional[List[str]] = None,
        importance: int = 3,
        ttl: Optional[int] = None,
        project_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Save a project memory.

        Saving the same summary for the same paths again updates the
        existing memory instead of creating a duplicate.

        Args:
            summary: One-line description (searchable, used for dedupe).
            text: Details.
            tags: Short lowercase tags.
            paths: Path prefixes the memory applies to (e.g. src/api/).
            importance: 1 (trivia) to 5 (critical), default 3.
            ttl: Lifetime in seconds; omit for permanent.
            project_id: Target project (default: the selected one).

        Returns:
            id: Record id (the existing id on a dedupe hit).
            record: Stored record.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        pid = project_id or state["project"]
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            pid = _project(project_id)
            payload = summary + "\n" + text
            guard.check_write_size(payload)
            guard.check_write_budget(pid, len(payload.encode("utf-8")))
            detail = AuditLogger.make_content_detail(payload)
            record = registry.store(pid).save(
                summary, text, tags=tags, paths=paths,
                importance=importance, ttl=ttl,
            )
            detail["id"] = record.id
            return {"status": "ok", "id": record.id, "record": record.to_dict()}
        except GuardError as e:
            outcome = "rejected"
            return {"status": "rejected", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Save failed: {e}"}
        finally:
            audit.log("memory_save", rid, pid, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def memory_search(
        query: str,
        k: int = 10,
        tags: Optional[List[str]] = None,
        require_path_match: bool = False,
        include_expired: bool = False,
        debug: bool = False,
        preview: bool = False,
        project_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Full-text search of project memories.

        The query is tried as written, then with punctuation removed, then
        as an OR of its words, then as its first word, until one form
        matches.

        Args:
            query: Search text (FTS5 BM25 ranked).
            k: Max results (default 10).
            tags: Keep only memories with at least one of these tags.
            require_path_match: Keep only memories whose paths match a path
                mentioned in the query.
            include_expired: Include memories past their ttl.
            debug: Also return the queries tried and the stage that matched.
            preview: Dry run; report how many memories would match, the
                processed query and the filters, without the records.
            project_id: Target project (default: the selected one).

        Returns:
            count: Number of results.
            results: Records with relevance and snippet.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        pid = project_id or state["project"]
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            pid = _project(project_id)
            if preview:
                dry = registry.store(pid).search_preview(
                    query, k=k, require_path_match=require_path_match,
                    tags=tags, include_expired=include_expired,
                )
                detail = {
                    "query_len": len(query), "preview": True,
                    "would_return": dry.would_return, "stage": dry.stage_used,
                }
                return {"status": "ok", **dry.to_dict()}
            trace = registry.store(pid).search_with_debug(
                query, k=k, require_path_match=require_path_match,
                tags=tags, include_expired=include_expired,
            )
            detail = {
                "query_len": len(query), "count": len(trace.results),
                "stage": trace.stage_used,
            }
            if debug:
                return {"status": "ok", "count": len(trace.results), **trace.to_dict()}
            return {
                "status": "ok",
                "count": len(trace.results),
                "results": [h.to_dict() for h in trace.results],
            }
        except GuardError as e:
            outcome = "rejected"
            return {"status": "rejected", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Search failed: {e}"}
        finally:
            audit.log("memory_search", rid, pid, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def memory_get_recent(
        k: int = 10,
        path_prefix: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Most recent project memories, newest first.

        Args:
            k: Max results (default 10).
            path_prefix: Keep only memories with a path under this prefix.
            project_id: Target project (default: the selected one).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        pid = project_id or state["project"]
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            pid = _project(project_id)
            records = registry.store(pid).get_recent(k=k, path_prefix=path_prefix)
            detail = {"count": len(records)}
            return {
                "status": "ok",
                "count": len(records),
                "records": [r.to_dict() for r in records],
            }
        except GuardError as e:
            outcome = "rejected"
            return {"status": "rejected", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Get recent failed: {e}"}
        finally:
            audit.log("memory_get_recent", rid, pid, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def memory_get(
        id: str,
        include_expired: bool = False,
        project_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Read one memory by id.

        Returns:
            found: Whether the memory exists.
            record: The record, or null.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        pid = project_id or state["project"]
        outcome = "ok"
        detail: Dict[str, Any] = {"id": id}
        try:
            pid = _project(project_id)
            record = registry.store(pid).get(id, include_expired=include_expired)
            detail["found"] = record is not None
            return {
                "status": "ok",
                "found": record is not None,
                "record": record.to_dict() if record else None,
            }
        except GuardError as e:
            outcome = "rejected"
            return {"status": "rejected", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Get failed: {e}"}
        finally:
            audit.log("memory_get", rid, pid, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def memory_get_multiple(
        ids: List[str],
        project_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Read several memories by id.

        Returns:
            records: Mapping of every requested id to its record or null.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        pid = project_id or state["project"]
        outcome = "ok"
        detail: Dict[str, Any] = {"requested": len(ids)}
        try:
            pid = _project(project_id)
            found = registry.store(pid).get_multiple(ids)
            detail["found"] = sum(1 for r in found.values() if r is not None)
            return {
                "status": "ok",
                "records": {k: (r.to_dict() if r else None) for k, r in found.items()},
            }
        except GuardError as e:
            outcome = "rejected"
            return {"status": "rejected", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Get multiple failed: {e}"}
        finally:
            audit.log("memory_get_multiple", rid, pid, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def memory_forget(id: str, project_id: Optional[str] = None) -> Dict[str, Any]:
        """Delete a memory. Deleting an unknown id reports ok=false."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        pid = project_id or state["project"]
        outcome = "ok"
        detail: Dict[str, Any] = {"id": id}
        try:
            pid = _project(project_id)
            result = registry.store(pid).forget(id)
            detail["deleted"] = result.ok
            return {"status": "ok", **result.to_dict()}
        except GuardError as e:
            outcome = "rejected"
            return {"status": "rejected", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Forget failed: {e}"}
        finally:
            audit.log("memory_forget", rid, pid, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # CONCEPTS
    # =====================================================================

    @mcp.tool()
    def concept_search(
        query: str = "",
        k: int = 10,
        include_related: bool = False,
        restrict_to_project: bool = False,
        project_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Search global concepts.

        An empty query or "*" lists concepts by importance and usage.  A
        query with no match falls back to that listing, flagged
        fallback_used=true.

        Args:
            query: Search text.
            k: Max results (default 10).
            include_related: Append strongly related concepts.
            restrict_to_project: Only concepts allowlisted for the project.
            project_id: Project for restrict_to_project (default: selected).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        pid = project_id or state["project"]
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            restrict = guard.check_project(pid) if restrict_to_project else None
            concepts = registry.concepts()
            hits = concepts.search(
                query, k=k, project_id=restrict, include_related=include_related,
            )
            meta = concepts.last_search_meta
            detail = {"query_len": len(query or ""), "count": len(hits)}
            return {
                "status": "ok",
                "count": len(hits),
                "results": [h.to_dict() for h in hits],
                "meta": meta.to_dict() if meta else None,
            }
        except GuardError as e:
            outcome = "rejected"
            return {"status": "rejected", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Concept search failed: {e}"}
        finally:
            audit.log("concept_search", rid, pid, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def concept_get(concept_id: str) -> Dict[str, Any]:
        """Read one concept with its outgoing relationships."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"id": concept_id}
        try:
            concept = registry.concepts().get(concept_id)
            detail["found"] = concept is not None
            return {
                "status": "ok",
                "found": concept is not None,
                "concept": concept.to_dict() if concept else None,
            }
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Concept get failed: {e}"}
        finally:
            audit.log("concept_get", rid, state["project"], outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def concept_save(
        title: str,
        body: str = "",
        tags: Optional[List[str]] = None,
        importance: int = 3,
        concept_id: Optional[str] = None,
        related_to: Optional[List[str]] = None,
        relationship: str = "related",
        strength: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Save a reusable, project-independent concept.

        Keep the body short (about 1200 characters at most).  Concepts
        sharing tags are linked automatically.

        Args:
            title: Concept title.
            body: Explanation.
            tags: Short lowercase tags (drive automatic linking).
            importance: 1 to 5, default 3.
            concept_id: Existing id to replace (usage stats are kept).
            related_to: Ids of concepts to link explicitly.
            relationship: related, prerequisite, extends or conflicts.
            strength: Link strength in [0, 1] (default 0.5).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            payload = title + "\n" + body
            guard.check_write_size(payload)
            detail = AuditLogger.make_content_detail(payload)
            concept = registry.concepts().save(
                title, body, tags=tags, importance=importance,
                concept_id=concept_id, related_to=related_to,
                relationship=relationship, strength=strength,
            )
            detail["id"] = concept.id
            result: Dict[str, Any] = {
                "status": "ok", "id": concept.id, "concept": concept.to_dict(),
            }
            limit = registry.concepts().body_soft_limit
            if len(body) > limit:
                result["warning"] = f"Body is {len(body)} chars (recommended <= {limit})"
            return result
        except GuardError as e:
            outcome = "rejected"
            return {"status": "rejected", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Concept save failed: {e}"}
        finally:
            audit.log("concept_save", rid, state["project"], outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def concept_allowlist(
        add: Optional[List[str]] = None,
        remove: Optional[List[str]] = None,
        list_entries: bool = True,
        project_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Manage which concepts a project sees in smart mode.

        Args:
            add: Concept ids to allow (unknown ids are ignored).
            remove: Concept ids to disallow.
            list_entries: Return the resulting allowlist, newest first.
            project_id: Target project (default: the selected one).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        pid = project_id or state["project"]
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            pid = guard.check_project(pid)
            update = registry.concepts().update_allowlist(
                pid, add=add, remove=remove, list_=list_entries,
            )
            detail = {
                "added": len(update.added or []), "removed": len(update.removed or []),
            }
            return {"status": "ok", **update.to_dict()}
        except GuardError as e:
            outcome = "rejected"
            return {"status": "rejected", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Allowlist update failed: {e}"}
        finally:
            audit.log("concept_allowlist", rid, pid, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # RULES
    # =====================================================================

    @mcp.tool()
    def context_get_rules(project_id: Optional[str] = None) -> Dict[str, Any]:
        """Current context assembly rules of the project."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        pid = project_id or state["project"]
        outcome = "ok"
        try:
            pid = _project(project_id)
            return {"status": "ok", "rules": registry.assembler(pid).get_rules()}
        except GuardError as e:
            outcome = "rejected"
            return {"status": "rejected", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Get rules failed: {e}"}
        finally:
            audit.log("context_get_rules", rid, pid, outcome, None,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def context_set_rules(
        max_memory_age_days: Optional[int] = None,
        min_importance: Optional[int] = None,
        path_boost_multiplier: Optional[float] = None,
        concept_importance_threshold: Optional[int] = None,
        dedupe_threshold: Optional[float] = None,
        project_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Change context assembly rules for subsequent previews.

        Args:
            max_memory_age_days: Ignore memories older than this (1-36500).
            min_importance: Ignore memories below this importance (1-5).
            path_boost_multiplier: Weight of path affinity (0-100).
            concept_importance_threshold: Minimum concept importance in soft mode (1-5).
            dedupe_threshold: Summary similarity treated as duplicate (0-1).
            project_id: Target project (default: the selected one).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        pid = project_id or state["project"]
        outcome = "ok"
        changes = {
            k: v for k, v in {
                "max_memory_age_days": max_memory_age_days,
                "min_importance": min_importance,
                "path_boost_multiplier": path_boost_multiplier,
                "concept_importance_threshold": concept_importance_threshold,
                "dedupe_threshold": dedupe_threshold,
            }.items() if v is not None
        }
        try:
            pid = _project(project_id)
            rules = registry.assembler(pid).set_rules(**changes)
            return {"status": "ok", "changed": sorted(changes), "rules": rules}
        except GuardError as e:
            outcome = "rejected"
            return {"status": "rejected", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Set rules failed: {e}"}
        finally:
            audit.log("context_set_rules", rid, pid, outcome, {"changed": sorted(changes)},
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # SESSION
    # =====================================================================

    @mcp.tool()
    def project_select(project_id: str) -> Dict[str, Any]:
        """Select the project used by tools called without project_id."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        try:
            pid = _project(project_id)
            previous = state["project"]
            state["project"] = pid
            logger.info("Selected project %s (was %s)", pid, previous)
            return {"status": "ok", "project_id": pid, "previous": previous}
        except GuardError as e:
            outcome = "rejected"
            return {"status": "rejected", "message": str(e)}
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Project select failed: {e}"}
        finally:
            audit.log("project_select", rid, project_id, outcome, None,
                      (time.monotonic() - t0) * 1000)

    return state
