"""
Context Registry — explicit owner of every open store.

One ``MemoryStore`` (and its expiry sweeper) per opened project, one shared
``ConceptStore`` and one ``ContextAssembler`` per project.  Stores open on
first use and close on ``close()``; the registry is a context manager.

On-disk layout under ``data_root``:

    projects/<project_id>/memories.db
    global/concepts.db
"""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Dict, List, Optional

from ctxmem.assembler import ContextAssembler
from ctxmem.concepts import ConceptStore
from ctxmem.config import CtxConfig
from ctxmem.errors import StoreUnavailable
from ctxmem.store import ExpirySweeper, MemoryStore

logger = logging.getLogger(__name__)

_PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")
MAX_PROJECT_ID_LEN = 128


def validate_project_id(project_id: str) -> str:
    """Return ``project_id`` if it is a safe directory name, else raise
    ValueError."""
    if (
        not isinstance(project_id, str)
        or len(project_id) > MAX_PROJECT_ID_LEN
        or not _PROJECT_ID_RE.match(project_id)
        or ".." in project_id
    ):
        raise ValueError(f"Invalid project id: {project_id!r}")
    return project_id


class ContextRegistry:
    """Per-process registry of project stores, the concept store and the
    assemblers built on them."""

    def __init__(
        self,
        data_root: str,
        config: Optional[CtxConfig] = None,
        start_sweepers: bool = True,
    ):
        self.data_root = Path(data_root)
        self.config = config or CtxConfig()
        self._start_sweepers = start_sweepers
        self._lock = threading.RLock()
        self._stores: Dict[str, MemoryStore] = {}
        self._sweepers: Dict[str, ExpirySweeper] = {}
        self._assemblers: Dict[str, ContextAssembler] = {}
        self._concepts: Optional[ConceptStore] = None
        self._closed = False

    def __enter__(self) -> ContextRegistry:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- Paths -------------------------------------------------------------

    def project_db_path(self, project_id: str) -> Path:
        return self.data_root / "projects" / validate_project_id(project_id) / "memories.db"

    def concepts_db_path(self) -> Path:
        return self.data_root / "global" / "concepts.db"

    # -- Lifecycle ---------------------------------------------------------

    def open_project(self, project_id: str) -> MemoryStore:
        """Open (or return the already open) store for ``project_id``."""
        path = self.project_db_path(project_id)
        with self._lock:
            if self._closed:
                raise StoreUnavailable("Registry is closed")
            store = self._stores.get(project_id)
            if store is not None:
                return store
            sc = self.config.store
            store = MemoryStore(
                project_id,
                str(path),
                wal_mode=sc.wal_mode,
                fts_tokenizer=sc.fts_tokenizer,
                importance_weight=sc.importance_weight,
                snippet_tokens=sc.snippet_tokens,
            )
            self._stores[project_id] = store
            if self._start_sweepers:
                sweeper = ExpirySweeper(store, sc.sweep_interval_seconds)
                sweeper.start()
                self._sweepers[project_id] = sweeper
            logger.info("Opened project %s (%s)", project_id, path)
            return store

    def store(self, project_id: str) -> MemoryStore:
        """The open store of ``project_id``.

        Raises:
            StoreUnavailable: If the project was never opened, was closed,
                or its store has been closed.
        """
        with self._lock:
            store = self._stores.get(project_id)
        if store is None or store.closed:
            raise StoreUnavailable(f"Project {project_id!r} is not open")
        return store

    def concepts(self) -> ConceptStore:
        """The shared concept store, opened on first use."""
        with self._lock:
            if self._closed:
                raise StoreUnavailable("Registry is closed")
            if self._concepts is None:
                self._concepts = ConceptStore.from_config(
                    str(self.concepts_db_path()), self.config.concepts,
                )
            return self._concepts

    def assembler(self, project_id: str) -> ContextAssembler:
        """The assembler of an open project (rules persist across calls)."""
        store = self.store(project_id)
        with self._lock:
            asm = self._assemblers.get(project_id)
            if asm is None:
                asm = ContextAssembler(
                    project_id, store, self.concepts(), self.config.assembler,
                )
                self._assemblers[project_id] = asm
            return asm

    def open_projects(self) -> List[str]:
        with self._lock:
            return sorted(self._stores)

    def close_project(self, project_id: str) -> bool:
        """Stop the sweeper and close the store. False if it was not open."""
        with self._lock:
            store = self._stores.pop(project_id, None)
            sweeper = self._sweepers.pop(project_id, None)
            self._assemblers.pop(project_id, None)
        if store is None:
            return False
        if sweeper is not None:
            sweeper.cancel()
        store.close()
        logger.info("Closed project %s", project_id)
        return True

    def close(self) -> None:
        """Close every project store and the concept store (idempotent)."""
        for project_id in self.open_projects():
            self.close_project(project_id)
        with self._lock:
            if self._concepts is not None:
                self._concepts.close()
                self._concepts = None
            self._closed = True
