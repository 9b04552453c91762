"""
Retrieval Engine Configuration

Configuration dataclasses for ctxmem: project store, concept store, context
assembler, scoring weights and runtime rules.  Includes load_config() for
reading a JSON config file with silent fallback to compiled defaults.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type.

    ``typ=float`` accepts ints as well; bools are never numbers here.
    """
    if typ is not None:
        accepted = (int, float) if typ is float else typ
        if isinstance(value, bool) or not isinstance(value, accepted):
            errors.append(
                f"{name}: expected {typ.__name__}, got {type(value).__name__}"
            )
            return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """Per-project SQLite store configuration."""
    wal_mode: bool = True
    fts_tokenizer: str = "porter unicode61"
    importance_weight: float = 0.25
    sweep_interval_seconds: float = 3600.0
    snippet_tokens: int = 16

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "store.importance_weight",
                     self.importance_weight, 0.0, 10.0, float)
        _check_range(errors, "store.sweep_interval_seconds",
                     self.sweep_interval_seconds, 0.01, 86400.0 * 7, float)
        _check_range(errors, "store.snippet_tokens",
                     self.snippet_tokens, 1, 64, int)
        return errors


@dataclass
class ConceptConfig:
    """Global concept store configuration."""
    related_threshold: float = 0.3
    default_edge_strength: float = 0.5
    body_soft_limit: int = 1200
    suggest_min_score: float = 2.0
    discover_min_chars: int = 20
    discover_max_chars: int = 500
    seed_defaults: bool = False

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "concepts.related_threshold",
                     self.related_threshold, 0.0, 1.0, float)
        _check_range(errors, "concepts.default_edge_strength",
                     self.default_edge_strength, 0.0, 1.0, float)
        _check_range(errors, "concepts.body_soft_limit",
                     self.body_soft_limit, 100, 100000, int)
        _check_range(errors, "concepts.suggest_min_score",
                     self.suggest_min_score, 0.0, 100.0, float)
        _check_range(errors, "concepts.discover_min_chars",
                     self.discover_min_chars, 1, 10000, int)
        _check_range(errors, "concepts.discover_max_chars",
                     self.discover_max_chars, 1, 10000, int)
        if (isinstance(self.discover_min_chars, int)
                and isinstance(self.discover_max_chars, int)
                and self.discover_min_chars > self.discover_max_chars):
            errors.append("concepts.discover_min_chars: exceeds discover_max_chars")
        if not isinstance(self.seed_defaults, bool):
            errors.append(
                f"concepts.seed_defaults: expected bool, got {type(self.seed_defaults).__name__}"
            )
        return errors


@dataclass
class ScoringWeights:
    """Named weights of the context scoring formula."""
    project_match: float = 1.5
    single_term_path_multiplier: float = 10.0
    strong_path_bonus: float = 2.0
    strong_path_threshold: float = 0.5
    tag_overlap: float = 0.8
    single_term_tag_bonus: float = 3.0
    recency: float = 0.6
    importance: float = 0.6
    cross_project_penalty: float = 1.0
    relevance_divisor: float = 10.0
    concept_base: float = 2.0
    path_match_threshold: float = 0.3

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        for name, value in asdict(self).items():
            _check_range(errors, f"scoring.{name}", value, 0.0, 100.0, float)
        if isinstance(self.relevance_divisor, (int, float)) and self.relevance_divisor <= 0:
            errors.append("scoring.relevance_divisor: must be > 0")
        return errors


@dataclass
class RulesConfig:
    """Runtime-adjustable assembly rules."""
    max_memory_age_days: int = 30
    min_importance: int = 2
    path_boost_multiplier: float = 2.0
    concept_importance_threshold: int = 3
    dedupe_threshold: float = 0.8

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "rules.max_memory_age_days",
                     self.max_memory_age_days, 1, 36500, int)
        _check_range(errors, "rules.min_importance",
                     self.min_importance, 1, 5, int)
        _check_range(errors, "rules.path_boost_multiplier",
                     self.path_boost_multiplier, 0.0, 100.0, float)
        _check_range(errors, "rules.concept_importance_threshold",
                     self.concept_importance_threshold, 1, 5, int)
        _check_range(errors, "rules.dedupe_threshold",
                     self.dedupe_threshold, 0.0, 1.0, float)
        return errors


@dataclass
class AssemblerConfig:
    """Context assembler configuration."""
    default_budget_bytes: int = 2048
    default_top_k: int = 10
    default_mode: str = "smart"
    candidate_pool: int = 50
    concept_pool: int = 20
    min_concept_score: float = 0.5
    max_terms: int = 5
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    rules: RulesConfig = field(default_factory=RulesConfig)

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "assembler.default_budget_bytes",
                     self.default_budget_bytes, 1, 10_000_000, int)
        _check_range(errors, "assembler.default_top_k",
                     self.default_top_k, 1, 1000, int)
        if self.default_mode not in ("hard", "soft", "smart"):
            errors.append(f"assembler.default_mode: unknown mode {self.default_mode!r}")
        _check_range(errors, "assembler.candidate_pool",
                     self.candidate_pool, 1, 10000, int)
        _check_range(errors, "assembler.concept_pool",
                     self.concept_pool, 1, 10000, int)
        _check_range(errors, "assembler.min_concept_score",
                     self.min_concept_score, 0.0, 100.0, float)
        _check_range(errors, "assembler.max_terms",
                     self.max_terms, 1, 50, int)
        errors.extend(self.weights.validate())
        errors.extend(self.rules.validate())
        return errors

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> AssemblerConfig:
        """Build from a nested dict; ``weights`` and ``rules`` are sub-dicts."""
        d = dict(d)
        kwargs: Dict[str, Any] = {}
        if "weights" in d:
            kwargs["weights"] = ScoringWeights(**d.pop("weights"))
        if "rules" in d:
            kwargs["rules"] = RulesConfig(**d.pop("rules"))
        kwargs.update(d)
        return cls(**kwargs)


@dataclass
class CtxConfig:
    """Top-level ctxmem configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    concepts: ConceptConfig = field(default_factory=ConceptConfig)
    assembler: AssemblerConfig = field(default_factory=AssemblerConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> CtxConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "concepts" in d:
            kwargs["concepts"] = ConceptConfig(**d["concepts"])
        if "assembler" in d:
            kwargs["assembler"] = AssemblerConfig.from_dict(d["assembler"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.concepts.validate())
        errors.extend(self.assembler.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> CtxConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = CtxConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = CtxConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = CtxConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
