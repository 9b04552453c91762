"""
Store Errors

Exceptions raised by the storage layer when a store cannot serve a request.
Lookups that find nothing return None; they never raise.
"""

from __future__ import annotations


class StoreUnavailable(RuntimeError):
    """Raised when a store is closed, a project is not opened, or the
    SQLite build lacks FTS5."""

    pass
