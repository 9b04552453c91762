"""
Context Assembler — scored, budgeted context selection.

Merges full-text memory hits from one project store with concepts from the
global store, scores every candidate with a weighted formula, and greedily
selects the best ones under a byte budget and a count limit.

Memory score:
    project match         + project_match
    path affinity         * single_term_path_multiplier  (single-term task, affinity > 0)
                          * rules.path_boost_multiplier  (otherwise)
                          + strong_path_bonus            (affinity > strong_path_threshold)
    tag overlap           * tag_overlap (+ single_term_tag_bonus when single-term)
    recency               * recency   (1.0 <24h, 0.8 <7d, 0.5 <30d, 0.2 beyond)
    importance            * importance
    other project         - cross_project_penalty
    FTS relevance         min(relevance / relevance_divisor, 1)

Concept score:
    concept_base + tag overlap * tag_overlap + importance * importance
    + min(relevance / relevance_divisor, 1)

Weights live in ``ScoringWeights``; runtime rules (age and importance
floors, path multiplier, concept threshold, dedupe threshold) in
``ContextRules`` and can be changed between calls.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ctxmem.concepts import ConceptStore
from ctxmem.config import AssemblerConfig, RulesConfig, ScoringWeights
from ctxmem.formatting import concept_source, memory_source, render_concept, render_memory
from ctxmem.query import build_task_query
from ctxmem.similarity import is_near_duplicate, task_match_strength
from ctxmem.store import MemoryStore
from ctxmem.types import (
    VALID_MODES,
    ConceptHit,
    ContextPreview,
    Injection,
    PreviewStats,
    SearchHit,
    _parse_iso,
)

logger = logging.getLogger(__name__)

# Runtime rules share the config schema and its validation
ContextRules = RulesConfig

_DAY = 86400.0


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

def normalize_path(path: str) -> str:
    """Forward slashes, no leading ``./`` or ``/``."""
    p = path.strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")


def infer_path_prefixes(open_files: Optional[List[str]]) -> List[str]:
    """Every ``/``-delimited ancestor of each open file, plus a ``/*``
    variant for each directory.

    >>> infer_path_prefixes(["src/api/auth.ts"])
    ['src', 'src/*', 'src/api', 'src/api/*', 'src/api/auth.ts']
    """
    prefixes: Dict[str, None] = {}
    for f in open_files or []:
        parts = [p for p in normalize_path(f).split("/") if p]
        for i in range(1, len(parts) + 1):
            prefix = "/".join(parts[:i])
            prefixes[prefix] = None
            if i < len(parts):
                prefixes[prefix + "/*"] = None
    return list(prefixes)


def _clean_glob(path: str) -> str:
    return normalize_path(path).rstrip("*").rstrip("/")


def _is_segment_prefix(shorter: str, longer: str) -> bool:
    return longer == shorter or longer.startswith(shorter + "/")


def path_affinity(memory_paths: List[str], prefixes: List[str]) -> float:
    """Best alignment in [0, 1] between a record's paths and the open-file
    prefixes.

    An exact match scores 1.0.  When one path is a directory ancestor of
    the other the score is ``len(shorter) / len(longer)``, so deeper shared
    ancestry scores higher.  Unrelated paths score 0.
    """
    if not memory_paths or not prefixes:
        return 0.0
    targets = {_clean_glob(p) for p in prefixes}
    targets.discard("")
    best = 0.0
    for raw in memory_paths:
        mem = _clean_glob(raw)
        if not mem:
            continue
        for target in targets:
            if mem == target:
                return 1.0
            if _is_segment_prefix(mem, target) or _is_segment_prefix(target, mem):
                short, long_ = sorted((len(mem), len(target)))
                best = max(best, short / long_)
    return best


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def age_days(timestamp: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Age in days of an ISO timestamp; None when unparseable."""
    moment = _parse_iso(timestamp)
    if moment is None:
        return None
    return ((now or datetime.now(timezone.utc)) - moment).total_seconds() / _DAY


def recency_score(timestamp: Optional[str], now: Optional[datetime] = None) -> float:
    """Step decay: 1.0 within a day, 0.8 within a week, 0.5 within 30 days,
    0.2 beyond (and for unparseable timestamps)."""
    age = age_days(timestamp, now)
    if age is None:
        return 0.2
    if age < 1:
        return 1.0
    if age < 7:
        return 0.8
    if age < 30:
        return 0.5
    return 0.2


def score_memory(
    hit: SearchHit,
    *,
    project_id: str,
    affinity: float,
    task: str,
    single_term: bool,
    weights: ScoringWeights,
    path_boost_multiplier: float,
    now: Optional[datetime] = None,
) -> float:
    """Score one memory candidate (see module docstring)."""
    record = hit.record
    same_project = record.project_id == project_id
    score = weights.project_match if same_project else 0.0

    if single_term and affinity > 0:
        score += weights.single_term_path_multiplier * affinity
    else:
        score += path_boost_multiplier * affinity
        if affinity > weights.strong_path_threshold:
            score += weights.strong_path_bonus

    tag_score = task_match_strength(record.tags, task)
    score += weights.tag_overlap * tag_score
    if single_term and tag_score > 0:
        score += weights.single_term_tag_bonus

    score += weights.recency * recency_score(record.created_at, now)
    score += weights.importance * record.importance
    if not same_project:
        score -= weights.cross_project_penalty
    score += min(hit.relevance / weights.relevance_divisor, 1.0)
    return score


def score_concept(hit: ConceptHit, *, task: str, weights: ScoringWeights) -> float:
    """Score one concept candidate (see module docstring)."""
    concept = hit.concept
    score = weights.concept_base
    score += weights.tag_overlap * task_match_strength(concept.tags, task)
    score += weights.importance * concept.importance
    score += min(hit.relevance / weights.relevance_divisor, 1.0)
    return score


def select_by_budget(
    candidates: List[Injection],
    budget_bytes: int,
    top_k: int,
    dedupe_threshold: float = 0.8,
) -> List[Injection]:
    """Greedy selection over score-sorted candidates.

    A candidate is taken while fewer than ``top_k`` are selected, if it
    fits the remaining budget and its summary is not a near-duplicate of
    one already taken.  Candidates failing a test are skipped and the scan
    continues.
    """
    selected: List[Injection] = []
    used = 0
    for cand in candidates:
        if len(selected) >= top_k:
            break
        if used + cand.byte_size > budget_bytes:
            continue
        if any(is_near_duplicate(cand.summary, s.summary, dedupe_threshold) for s in selected):
            continue
        selected.append(cand)
        used += cand.byte_size
    return selected


# ---------------------------------------------------------------------------
# ContextAssembler
# ---------------------------------------------------------------------------

class ContextAssembler:
    """Builds ranked, budgeted context for one project."""

    def __init__(
        self,
        project_id: str,
        store: MemoryStore,
        concepts: Optional[ConceptStore] = None,
        config: Optional[AssemblerConfig] = None,
    ):
        self.project_id = project_id
        self.store = store
        self.concepts = concepts
        self.config = config or AssemblerConfig()
        self._rules_lock = threading.Lock()
        self._rules: RulesConfig = dataclasses.replace(self.config.rules)

    # -- Rules -------------------------------------------------------------

    def get_rules(self) -> Dict[str, Any]:
        """Current runtime rules as a dict."""
        with self._rules_lock:
            return dataclasses.asdict(self._rules)

    def set_rules(self, **changes: Any) -> Dict[str, Any]:
        """Change runtime rules; applies to subsequent ``preview`` calls.

        Raises:
            ValueError: On unknown rule names or out-of-range values (the
                current rules are left untouched).
        """
        known = {f.name for f in dataclasses.fields(RulesConfig)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown rules: {sorted(unknown)}")
        with self._rules_lock:
            candidate = dataclasses.replace(self._rules, **changes)
            errors = candidate.validate()
            if errors:
                raise ValueError("; ".join(errors))
            old = dataclasses.asdict(self._rules)
            self._rules = candidate
            new = dataclasses.asdict(candidate)
        for name in sorted(changes):
            if old[name] != new[name]:
                logger.info(
                    "Context rule %s changed for %s: %r -> %r",
                    name, self.project_id, old[name], new[name],
                )
        return new

    # -- Assembly ----------------------------------------------------------

    def preview(
        self,
        task: str,
        open_files: Optional[List[str]] = None,
        budget_bytes: Optional[int] = None,
        top_k: Optional[int] = None,
        mode: Optional[str] = None,
    ) -> ContextPreview:
        """Select context for ``task``.

        Args:
            task: Free-text task description.
            open_files: Files the caller is working on; drives path affinity.
            budget_bytes: Maximum total UTF-8 size of the injections.
            top_k: Maximum number of injections.
            mode: ``hard`` (memories only), ``smart`` (plus allowlisted
                concepts) or ``soft`` (plus every sufficiently important
                concept).

        Raises:
            ValueError: On an unknown mode or a negative budget / top_k.
        """
        cfg = self.config
        budget = cfg.default_budget_bytes if budget_bytes is None else budget_bytes
        k = cfg.default_top_k if top_k is None else top_k
        mode = mode or cfg.default_mode
        if mode not in VALID_MODES:
            raise ValueError(f"Invalid mode {mode!r}; expected one of {sorted(VALID_MODES)}")
        if budget < 0 or k < 0:
            raise ValueError("budget_bytes and top_k must be >= 0")
        with self._rules_lock:
            rules = dataclasses.replace(self._rules)
        weights = cfg.weights
        now = datetime.now(timezone.utc)

        prefixes = infer_path_prefixes(open_files)
        query, terms = build_task_query(task, cfg.max_terms)
        single_term = len(terms) == 1

        memory_hits = self._memory_candidates(query, max(cfg.candidate_pool, 3 * k))
        memory_hits = [
            h for h in memory_hits
            if h.record.importance >= rules.min_importance
            and (age_days(h.record.created_at, now) or 0.0) <= rules.max_memory_age_days
        ]
        concept_hits = self._concept_candidates(query, mode, rules)

        stats = PreviewStats()
        candidates: List[Injection] = []
        for hit in memory_hits:
            affinity = path_affinity(hit.record.paths, prefixes)
            if hit.record.project_id == self.project_id:
                stats.project_matches += 1
            if affinity > weights.path_match_threshold:
                stats.path_matches += 1
            score = score_memory(
                hit,
                project_id=self.project_id,
                affinity=affinity,
                task=task,
                single_term=single_term,
                weights=weights,
                path_boost_multiplier=rules.path_boost_multiplier,
                now=now,
            )
            candidates.append(Injection(
                id=hit.record.id,
                type="memory",
                summary=hit.record.summary,
                content=render_memory(hit.record),
                score=score,
                source=memory_source(hit.record.project_id, hit.record.id),
            ))
        for hit in concept_hits:
            candidates.append(Injection(
                id=hit.concept.id,
                type="concept",
                summary=hit.concept.title,
                content=render_concept(hit.concept),
                score=score_concept(hit, task=task, weights=weights),
                source=concept_source(hit.concept.id),
            ))
        stats.concept_matches = len(concept_hits)
        stats.total_candidates = len(candidates)

        candidates.sort(key=lambda c: -c.score)
        selected = select_by_budget(candidates, budget, k, rules.dedupe_threshold)
        logger.debug(
            "preview(%s): query=%r mode=%s candidates=%d selected=%d",
            self.project_id, query, mode, len(candidates), len(selected),
        )
        return ContextPreview(
            injections=selected,
            budget_used=sum(i.byte_size for i in selected),
            budget_limit=budget,
            top_k=k,
            stats=stats,
        )

    def _memory_candidates(self, query: str, pool: int) -> List[SearchHit]:
        hits = self.store.search(query, k=pool)
        if not hits and query.endswith("*"):
            hits = self.store.search(query[:-1], k=pool)
        return hits

    def _concept_candidates(
        self, query: str, mode: str, rules: RulesConfig,
    ) -> List[ConceptHit]:
        if mode == "hard" or self.concepts is None:
            return []
        min_score = self.config.min_concept_score
        if mode == "smart":
            hits = self.concepts.search(
                query, k=self.config.concept_pool,
                project_id=self.project_id, fallback=False,
            )
            return [h for h in hits if h.score > min_score]
        hits = self.concepts.search(query, k=self.config.concept_pool, fallback=False)
        return [
            h for h in hits
            if h.score > min_score
            and h.concept.importance >= rules.concept_importance_threshold
        ]
