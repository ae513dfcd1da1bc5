"""
Engine Errors — Structured Failure Values

Every failure surfaced by the engine is an ``EngineError`` carrying a
machine-readable ``kind``, a human message and an optional remediation hint.
Callers (CLI, MCP tools) serialize them with ``to_dict()`` instead of
printing tracebacks.

Kinds:
    validation   - bad enum value, malformed id list or structured field
    not_found    - operation targets a nonexistent id
    contention   - store locked beyond the retry budget
    schema_stale - read session against an out-of-date schema
    fts_parse    - query could not be turned into a valid MATCH expression
    sqlite       - any other storage failure
"""

from __future__ import annotations

import sqlite3
from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for all structured engine errors."""

    kind = "unknown"

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-safe error payload."""
        d: Dict[str, Any] = {"error": self.message, "kind": self.kind}
        if self.hint:
            d["hint"] = self.hint
        d.update(self.details)
        return d


class ValidationError(EngineError, ValueError):
    """Rejected input, raised before storage is touched."""

    kind = "validation"


class NotFoundError(EngineError, LookupError):
    """Target record does not exist."""

    kind = "not_found"

    def __init__(self, record_id: int, **kwargs):
        kwargs.setdefault("details", {"id": record_id})
        super().__init__("Not found", **kwargs)
        self.record_id = record_id


class ContentionError(EngineError):
    """Store stayed locked by a concurrent writer after every retry."""

    kind = "contention"


class SchemaStaleError(EngineError):
    """Store schema is missing or behind the code's expected version."""

    kind = "schema_stale"


class IndexParseError(EngineError):
    """The full-text index rejected the query expression."""

    kind = "fts_parse"


class StorageError(EngineError):
    """Any other SQLite failure."""

    kind = "sqlite"


CONTENTION_HINT = "The store is busy with another writer; retry the command."
MIGRATE_HINT = 'Run "machine-memory migrate" to bring the store schema up to date.'

_FTS_PARSE_MARKERS = (
    "fts5: syntax error",
    "malformed match expression",
    "unterminated string",
    "no such column",
    "unknown special query",
)


def is_contention(exc: BaseException) -> bool:
    """True if a driver exception means another connection holds the lock."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    lower = str(exc).lower()
    return "database is locked" in lower or "database is busy" in lower


def classify_sqlite_error(exc: sqlite3.Error) -> EngineError:
    """Map a driver exception onto the engine error taxonomy."""
    lower = str(exc).lower()
    if is_contention(exc):
        return ContentionError(
            f"Store is locked: {exc}", hint=CONTENTION_HINT,
        )
    if any(marker in lower for marker in _FTS_PARSE_MARKERS):
        return IndexParseError(
            "Search query could not be parsed by the full-text index.",
            hint=(
                "Try simpler terms without punctuation, or pass file paths "
                "as a JSON list."
            ),
        )
    if "no such table" in lower:
        return SchemaStaleError(f"Store schema is incomplete: {exc}", hint=MIGRATE_HINT)
    return StorageError(
        f"SQLite command failed: {exc}",
        hint="Retry once; if this persists, run migrate and verify the store path.",
    )
