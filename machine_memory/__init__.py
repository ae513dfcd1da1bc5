"""
machine-memory — persistent project memory for coding agents.

A single SQLite + FTS5 + WAL file holds short factual memories (conventions,
decisions, gotchas, status notes) that agents add, search, verify and prune
across sessions.
"""

__version__ = "0.4.0"

from machine_memory.types import (
    MemoryRecord,
    ScoredRecord,
    SearchFilters,
)
from machine_memory.errors import (
    EngineError,
    ValidationError,
    NotFoundError,
    ContentionError,
    SchemaStaleError,
    IndexParseError,
    StorageError,
)
from machine_memory.store import MemoryStore, SCHEMA_VERSION, open_store
from machine_memory.config import MemoryConfig, load_config

__all__ = [
    "__version__",
    "MemoryRecord",
    "ScoredRecord",
    "SearchFilters",
    "EngineError",
    "ValidationError",
    "NotFoundError",
    "ContentionError",
    "SchemaStaleError",
    "IndexParseError",
    "StorageError",
    "MemoryStore",
    "SCHEMA_VERSION",
    "open_store",
    "MemoryConfig",
    "load_config",
]
