"""
ctxmem — local, per-project knowledge retrieval for coding assistants.

Project memories live in one SQLite + FTS5 + WAL database per project;
reusable concepts live in one global store.  The context assembler merges
both into a ranked, byte-budgeted set of snippets for the current task.
"""

__version__ = "0.1.0"

from ctxmem.types import (
    Concept,
    ConceptEdge,
    ConceptHit,
    ContextPreview,
    Injection,
    MemoryRecord,
    SearchDebug,
    SearchHit,
)
from ctxmem.errors import StoreUnavailable
from ctxmem.store import ExpirySweeper, MemoryStore, SCHEMA_VERSION
from ctxmem.concepts import ConceptStore
from ctxmem.assembler import ContextAssembler, ContextRules
from ctxmem.context import ContextRegistry
from ctxmem.config import CtxConfig, load_config

__all__ = [
    "__version__",
    "Concept",
    "ConceptEdge",
    "ConceptHit",
    "ContextPreview",
    "Injection",
    "MemoryRecord",
    "SearchDebug",
    "SearchHit",
    "StoreUnavailable",
    "ExpirySweeper",
    "MemoryStore",
    "SCHEMA_VERSION",
    "ConceptStore",
    "ContextAssembler",
    "ContextRules",
    "ContextRegistry",
    "CtxConfig",
    "load_config",
]
