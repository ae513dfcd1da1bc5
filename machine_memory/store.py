"""
Memory Store — SQLite Persistent Backend

Tables:
    memories      - Canonical memory records (current state)
    memories_fts  - FTS5 external-content shadow of (content, tags, context)
    schema_meta   - Key/value metadata (schema_version, created_by, migrated_at)

Sessions are opened in one of two modes:
    write - migrates the schema on open when it is behind SCHEMA_VERSION
    read  - never migrates; fails fast with SchemaStaleError instead

Every statement goes through a retry loop that backs off exponentially while
another connection holds the write lock. No other failure is retried.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import (
    TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple,
)

from machine_memory.config import StoreConfig
from machine_memory.errors import (
    MIGRATE_HINT,
    SchemaStaleError,
    StorageError,
    ValidationError,
    classify_sqlite_error,
    is_contention,
)
from machine_memory.types import (
    LEGACY_CERTAINTY_ALIASES,
    IndexHit,
    MemoryRecord,
    SearchFilters,
    certainty_storage_variants,
    parse_tags,
    require_certainty,
    require_memory_type,
    require_status,
)

if TYPE_CHECKING:
    from machine_memory.neighborhood import Neighborhood

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
CREATED_BY = "machine-memory"

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_CREATE_MEMORIES = """
CREATE TABLE IF NOT EXISTS memories (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    content            TEXT NOT NULL,
    tags               TEXT DEFAULT '',
    context            TEXT DEFAULT '',
    memory_type        TEXT NOT NULL DEFAULT 'convention',
    status             TEXT NOT NULL DEFAULT 'active',
    superseded_by      INTEGER,
    source_agent       TEXT DEFAULT '',
    last_updated_by    TEXT DEFAULT '',
    update_count       INTEGER NOT NULL DEFAULT 0,
    certainty          TEXT NOT NULL DEFAULT 'inferred',
    refs               TEXT NOT NULL DEFAULT '[]',   -- JSON array
    expires_after_days INTEGER,
    created_at         TEXT DEFAULT (datetime('now')),
    updated_at         TEXT DEFAULT (datetime('now'))
)
"""

_CREATE_SCHEMA_META = """
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""

# Columns added after the first release, in the order they appeared.
# ALTER TABLE cannot add a column with a non-constant default, so the
# timestamp columns are back-filled instead.
_COLUMN_MIGRATIONS: Tuple[Tuple[str, str], ...] = (
    ("tags", "tags TEXT DEFAULT ''"),
    ("context", "context TEXT DEFAULT ''"),
    ("memory_type", "memory_type TEXT NOT NULL DEFAULT 'convention'"),
    ("status", "status TEXT NOT NULL DEFAULT 'active'"),
    ("superseded_by", "superseded_by INTEGER"),
    ("source_agent", "source_agent TEXT DEFAULT ''"),
    ("last_updated_by", "last_updated_by TEXT DEFAULT ''"),
    ("update_count", "update_count INTEGER NOT NULL DEFAULT 0"),
    ("certainty", "certainty TEXT NOT NULL DEFAULT 'inferred'"),
    ("refs", "refs TEXT NOT NULL DEFAULT '[]'"),
    ("expires_after_days", "expires_after_days INTEGER"),
    ("created_at", "created_at TEXT"),
    ("updated_at", "updated_at TEXT"),
)

REQUIRED_COLUMNS = ("id", "content") + tuple(name for name, _ in _COLUMN_MIGRATIONS)

_BACKFILL_SQL = (
    "UPDATE memories SET memory_type = 'convention' WHERE memory_type IS NULL OR memory_type = ''",
    "UPDATE memories SET status = 'active' WHERE status IS NULL OR status = ''",
    "UPDATE memories SET certainty = 'inferred' WHERE certainty IS NULL OR certainty = ''",
    "UPDATE memories SET refs = '[]' WHERE refs IS NULL OR trim(refs) = ''",
    "UPDATE memories SET source_agent = '' WHERE source_agent IS NULL",
    "UPDATE memories SET last_updated_by = COALESCE(source_agent, '') WHERE last_updated_by IS NULL",
    "UPDATE memories SET update_count = 0 WHERE update_count IS NULL",
    "UPDATE memories SET created_at = datetime('now') WHERE created_at IS NULL",
    "UPDATE memories SET updated_at = created_at WHERE updated_at IS NULL",
)

# Back-fills touching indexed columns; any change forces an FTS rebuild.
_BACKFILL_INDEXED_SQL = (
    "UPDATE memories SET tags = '' WHERE tags IS NULL",
    "UPDATE memories SET context = '' WHERE context IS NULL",
)

# ---------------------------------------------------------------------------
# FTS5 shadow index
# ---------------------------------------------------------------------------
# External-content mode: the FTS table mirrors memories(content, tags,
# context) keyed by rowid = memories.id and stores no copy of the text.
# The AFTER UPDATE trigger removes the old entry before inserting the new
# one, so the shadow never holds terms of a previous revision.
# ---------------------------------------------------------------------------

FTS_TABLE = "memories_fts"
FTS_TRIGGERS = ("memories_ai", "memories_ad", "memories_au")

_CREATE_FTS = """
CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts
USING fts5(content, tags, context, content='memories', content_rowid='id')
"""

_CREATE_TRIGGERS = (
    """
CREATE TRIGGER memories_ai AFTER INSERT ON memories BEGIN
    INSERT INTO memories_fts(rowid, content, tags, context)
    VALUES (new.id, new.content, new.tags, new.context);
END
""",
    """
CREATE TRIGGER memories_ad AFTER DELETE ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, content, tags, context)
    VALUES ('delete', old.id, old.content, old.tags, old.context);
END
""",
    """
CREATE TRIGGER memories_au AFTER UPDATE ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, content, tags, context)
    VALUES ('delete', old.id, old.content, old.tags, old.context);
    INSERT INTO memories_fts(rowid, content, tags, context)
    VALUES (new.id, new.content, new.tags, new.context);
END
""",
)

# Never move updated_at backwards (imported rows may carry future stamps).
_TOUCH_UPDATED_AT = (
    "updated_at = max(datetime('now'), "
    "COALESCE(datetime(updated_at), datetime('now')))"
)

_UPDATABLE_FIELDS = (
    "content", "tags", "context", "memory_type", "certainty",
    "refs", "expires_after_days", "last_updated_by",
)


# ---------------------------------------------------------------------------
# Filter helpers (module-level)
# ---------------------------------------------------------------------------

def apply_sql_filters(
    clauses: List[str],
    params: List[Any],
    filters: Optional[SearchFilters],
    *,
    alias: str = "m",
    default_active_only: bool = True,
) -> None:
    """Append WHERE clauses for *filters* (in place).

    Without an explicit status filter, only active records are visible unless
    ``include_deprecated`` is set or *default_active_only* is False. Certainty
    filters also match legacy alias spellings still present in old rows.
    """
    f = filters or SearchFilters()
    p = f"{alias}." if alias else ""
    if f.tag:
        clauses.append(f"{p}tags LIKE ?")
        params.append(f"%{f.tag}%")
    if f.memory_type:
        clauses.append(f"{p}memory_type = ?")
        params.append(f.memory_type)
    if f.certainty:
        variants = certainty_storage_variants(f.certainty)
        clauses.append(f"{p}certainty IN ({', '.join('?' for _ in variants)})")
        params.extend(variants)
    if f.status:
        clauses.append(f"{p}status = ?")
        params.append(f.status)
    elif default_active_only and not f.include_deprecated:
        clauses.append(f"{p}status = 'active'")


def _where(clauses: Sequence[str]) -> str:
    return f"WHERE {' AND '.join(clauses)}" if clauses else ""


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

class MemoryStore:
    """
    SQLite-backed session over one memory store file.

    Thread-safe via explicit lock. Open with ``mode="write"`` (migrates when
    needed) or ``mode="read"`` (query-only, fails on a stale schema). Use as
    a context manager, or through :func:`open_store`, so the connection is
    always released.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        mode: str = "write",
        config: Optional[StoreConfig] = None,
    ):
        """Open a session on *db_path* (defaults to ``config.db_path``).

        Raises:
            ValueError: Unknown mode.
            SchemaStaleError: Read mode on a missing file or out-of-date schema.
            ContentionError: Store stayed locked beyond the retry budget.
        """
        if mode not in ("read", "write"):
            raise ValueError(f"Invalid store mode {mode!r}: expected 'read' or 'write'")
        self._config = config or StoreConfig()
        self._db_path = db_path or self._config.db_path
        self._mode = mode
        self._lock = threading.Lock()
        in_memory = self._db_path == ":memory:"

        if mode == "read" and not in_memory and not Path(self._db_path).exists():
            raise SchemaStaleError(
                f"Memory store not found: {self._db_path}", hint=MIGRATE_HINT,
            )
        if mode == "write" and not in_memory:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(
            self._db_path,
            timeout=self._config.busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        try:
            self._open_session(in_memory)
        except BaseException:
            self._conn.close()
            raise
        logger.info(f"MemoryStore opened: {self._db_path} (mode={mode})")

    def _open_session(self, in_memory: bool) -> None:
        self._conn.execute(f"PRAGMA busy_timeout={int(self._config.busy_timeout_ms)}")
        if self._mode == "read":
            status = self.schema_status()
            if not status["current"]:
                raise SchemaStaleError(
                    "Memory store schema is not current: "
                    + "; ".join(status["problems"]),
                    hint=MIGRATE_HINT,
                    details={"schema_version": status["version"],
                             "expected_version": SCHEMA_VERSION},
                )
            self._conn.execute("PRAGMA query_only=ON")
            return
        if self._config.wal_mode and not in_memory:
            self._retrying(
                lambda: self._conn.execute("PRAGMA journal_mode=WAL").fetchone(),
                "enable WAL",
            )
        if not self.schema_status()["current"]:
            self.migrate()

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def mode(self) -> str:
        return self._mode

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> MemoryStore:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- Execution core ----------------------------------------------------

    def _retrying(self, fn: Callable[[], Any], what: str) -> Any:
        """Run *fn*, backing off while the store is locked.

        Only lock contention is retried; every other driver error is mapped
        onto the engine taxonomy and raised at once.
        """
        attempts = self._config.retry_attempts
        for attempt in range(attempts):
            try:
                return fn()
            except sqlite3.Error as exc:
                if is_contention(exc) and attempt < attempts - 1:
                    delay = self._config.backoff_delay(attempt)
                    logger.warning(
                        f"Store locked during {what} "
                        f"(attempt {attempt + 1}/{attempts}), "
                        f"retrying in {delay:.3f}s"
                    )
                    time.sleep(delay)
                    continue
                raise classify_sqlite_error(exc) from exc
        # retry_attempts >= 1, so the loop always returns or raises
        raise StorageError(f"{what}: no attempt was made")

    def _fetchall(self, sql: str, params: Sequence[Any] = (), what: str = "query") -> List[sqlite3.Row]:
        def run():
            with self._lock:
                return self._conn.execute(sql, tuple(params)).fetchall()
        return self._retrying(run, what)

    def _fetchone(self, sql: str, params: Sequence[Any] = (), what: str = "query") -> Optional[sqlite3.Row]:
        def run():
            with self._lock:
                return self._conn.execute(sql, tuple(params)).fetchone()
        return self._retrying(run, what)

    def _transaction(
        self,
        body: Callable[[sqlite3.Connection], Any],
        what: str,
        *,
        exclusive: bool = False,
    ) -> Any:
        """Run *body* inside one BEGIN IMMEDIATE (or EXCLUSIVE) transaction.

        Any exception rolls the transaction back. A locked store retries the
        whole transaction.
        """
        self._require_write(what)

        def run():
            with self._lock:
                self._conn.execute("BEGIN EXCLUSIVE" if exclusive else "BEGIN IMMEDIATE")
                try:
                    result = body(self._conn)
                    self._conn.execute("COMMIT")
                except BaseException:
                    if self._conn.in_transaction:
                        self._conn.execute("ROLLBACK")
                    raise
                return result
        return self._retrying(run, what)

    def _require_write(self, what: str) -> None:
        if self._mode != "write":
            raise StorageError(
                f"Cannot {what}: store was opened read-only.",
                hint="Open the store in write mode for mutating commands.",
            )

    # -- Schema ------------------------------------------------------------

    def schema_status(self) -> Dict[str, Any]:
        """Inspect the on-disk schema without changing it.

        Returns:
            Dict with ``version`` (stored, or None), ``expected``,
            ``current`` (bool) and ``problems`` (list of strings).
        """
        objects = {
            (row["type"], row["name"])
            for row in self._fetchall(
                "SELECT type, name FROM sqlite_master", what="schema check",
            )
        }
        problems: List[str] = []
        version: Optional[int] = None

        if ("table", "schema_meta") in objects:
            row = self._fetchone(
                "SELECT value FROM schema_meta WHERE key = 'schema_version'",
                what="schema check",
            )
            if row is not None:
                try:
                    version = int(row["value"])
                except (TypeError, ValueError):
                    problems.append(f"unreadable schema_version {row['value']!r}")
        else:
            problems.append("schema_meta table missing")

        if version is None:
            problems.append("schema version not recorded")
        elif version < SCHEMA_VERSION:
            problems.append(f"schema version {version} < {SCHEMA_VERSION}")

        if ("table", "memories") not in objects:
            problems.append("memories table missing")
        else:
            columns = {
                row["name"]
                for row in self._fetchall("PRAGMA table_info(memories)", what="schema check")
            }
            missing = [c for c in REQUIRED_COLUMNS if c not in columns]
            if missing:
                problems.append(f"missing columns: {', '.join(missing)}")
        if ("table", FTS_TABLE) not in objects:
            problems.append("full-text table missing")
        for trigger in FTS_TRIGGERS:
            if ("trigger", trigger) not in objects:
                problems.append(f"trigger {trigger} missing")

        return {
            "version": version,
            "expected": SCHEMA_VERSION,
            "current": not problems,
            "problems": problems,
        }

    def migrate(self) -> Dict[str, Any]:
        """Bring the schema to SCHEMA_VERSION in one exclusive transaction.

        Idempotent: creates what is absent, adds missing columns, back-fills
        defaults, rewrites legacy certainty aliases, recreates the shadow
        triggers, rebuilds the FTS index when it was (re)created or its
        source columns were back-filled, then records the version. Any
        failure rolls everything back.

        Returns:
            Migration report (previous/new version, added columns, rebuild flag).
        """
        def body(conn: sqlite3.Connection) -> Dict[str, Any]:
            conn.execute(_CREATE_MEMORIES)
            conn.execute(_CREATE_SCHEMA_META)
            previous = conn.execute(
                "SELECT value FROM schema_meta WHERE key = 'schema_version'"
            ).fetchone()

            for trigger in FTS_TRIGGERS:
                conn.execute(f"DROP TRIGGER IF EXISTS {trigger}")

            columns = {row["name"] for row in conn.execute("PRAGMA table_info(memories)")}
            added: List[str] = []
            for name, ddl in _COLUMN_MIGRATIONS:
                if name not in columns:
                    conn.execute(f"ALTER TABLE memories ADD COLUMN {ddl}")
                    added.append(name)

            for stmt in _BACKFILL_SQL:
                conn.execute(stmt)
            indexed_changes = 0
            for stmt in _BACKFILL_INDEXED_SQL:
                indexed_changes += conn.execute(stmt).rowcount
            for alias, canonical in LEGACY_CERTAINTY_ALIASES.items():
                conn.execute(
                    "UPDATE memories SET certainty = ? WHERE certainty = ?",
                    (canonical, alias),
                )

            fts_existed = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?",
                (FTS_TABLE,),
            ).fetchone() is not None
            conn.execute(_CREATE_FTS)
            for ddl in _CREATE_TRIGGERS:
                conn.execute(ddl)
            rebuilt = not fts_existed or indexed_changes > 0
            if rebuilt:
                conn.execute("INSERT INTO memories_fts(memories_fts) VALUES ('rebuild')")

            conn.execute(
                "INSERT OR REPLACE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
            conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', ?)",
                (CREATED_BY,),
            )
            conn.execute(
                "INSERT OR REPLACE INTO schema_meta (key, value) "
                "VALUES ('migrated_at', datetime('now'))",
            )
            return {
                "previous_version": int(previous["value"]) if previous else None,
                "schema_version": SCHEMA_VERSION,
                "added_columns": added,
                "fts_rebuilt": rebuilt,
            }

        report = self._transaction(body, "migrate", exclusive=True)
        logger.info(
            f"Schema migrated: {report['previous_version']} -> "
            f"{report['schema_version']} (added={report['added_columns']}, "
            f"fts_rebuilt={report['fts_rebuilt']})"
        )
        return report

    # -- Write operations --------------------------------------------------

    def insert(self, record: MemoryRecord) -> MemoryRecord:
        """Insert *record* (its id is ignored) and return the stored row.

        Empty ``created_at``/``updated_at`` take the database clock.

        Raises:
            ValidationError: Empty content, invalid enums, or a
                ``superseded_by`` status without an existing superseding record.
        """
        content = (record.content or "").strip()
        if not content:
            raise ValidationError("Memory content cannot be empty.")
        require_memory_type(record.memory_type)
        require_status(record.status)
        certainty = require_certainty(record.certainty)
        superseded_by = record.superseded_by
        if record.status == "superseded_by":
            if superseded_by is None:
                raise ValidationError("status 'superseded_by' requires a superseding id.")
        elif superseded_by is not None:
            raise ValidationError(
                f"superseded_by is only valid with status 'superseded_by', got '{record.status}'."
            )
        columns = [
            "content", "tags", "context", "memory_type", "certainty", "status",
            "superseded_by", "source_agent", "last_updated_by", "update_count",
            "refs", "expires_after_days",
        ]
        values: List[Any] = [
            record.content, record.tags or "", record.context or "",
            record.memory_type, certainty, record.status,
            record.superseded_by, record.source_agent or "",
            record.last_updated_by or record.source_agent or "",
            max(0, int(record.update_count or 0)),
            json.dumps(list(record.refs)), record.expires_after_days,
        ]
        if record.created_at:
            columns.append("created_at")
            values.append(record.created_at)
        if record.updated_at:
            columns.append("updated_at")
            values.append(record.updated_at)

        sql = (
            f"INSERT INTO memories ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )

        def body(conn: sqlite3.Connection) -> int:
            if superseded_by is not None and conn.execute(
                "SELECT 1 FROM memories WHERE id = ?", (superseded_by,)
            ).fetchone() is None:
                raise ValidationError(
                    f"Superseding memory {superseded_by} does not exist.",
                    details={"superseded_by": superseded_by},
                )
            return conn.execute(sql, values).lastrowid

        new_id = self._transaction(body, "insert")
        logger.debug(f"Inserted memory {new_id}")
        stored = self.get(new_id)
        if stored is None:
            raise StorageError(f"Inserted memory {new_id} could not be read back.")
        return stored

    def update_fields(self, record_id: int, **changes: Any) -> Optional[MemoryRecord]:
        """Patch fields of an existing record.

        Always increments ``update_count`` and refreshes ``updated_at``.
        Returns None if the record does not exist.

        Raises:
            ValidationError: Unknown field, empty content or invalid enum value.
        """
        unknown = sorted(set(changes) - set(_UPDATABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(unknown)}")
        sets: List[str] = []
        params: List[Any] = []
        for name in _UPDATABLE_FIELDS:
            if name not in changes or changes[name] is None:
                continue
            value = changes[name]
            if name == "content":
                if not str(value).strip():
                    raise ValidationError("Memory content cannot be empty.")
            elif name == "memory_type":
                require_memory_type(value)
            elif name == "certainty":
                value = require_certainty(value)
            elif name == "refs":
                value = json.dumps(list(value))
            sets.append(f"{name} = ?")
            params.append(value)
        sets.append("update_count = update_count + 1")
        sets.append(_TOUCH_UPDATED_AT)

        def body(conn: sqlite3.Connection) -> int:
            return conn.execute(
                f"UPDATE memories SET {', '.join(sets)} WHERE id = ?",
                params + [record_id],
            ).rowcount

        if not self._transaction(body, "update"):
            return None
        return self.get(record_id)

    def set_status(
        self,
        record_id: int,
        status: str,
        superseded_by: Optional[int] = None,
        updated_by: Optional[str] = None,
    ) -> Optional[MemoryRecord]:
        """Change lifecycle status. Returns None if the record does not exist.

        Raises:
            ValidationError: Invalid status, self-supersession, a missing or
                nonexistent superseding record, or superseded_by given for a
                status other than ``superseded_by``.
        """
        require_status(status)
        if status == "superseded_by":
            if superseded_by is None:
                raise ValidationError("status 'superseded_by' requires a superseding id.")
            if superseded_by == record_id:
                raise ValidationError(
                    f"Memory {record_id} cannot supersede itself.",
                    details={"id": record_id},
                )
        elif superseded_by is not None:
            raise ValidationError(
                f"superseded_by is only valid with status 'superseded_by', got '{status}'."
            )

        sets = ["status = ?", "superseded_by = ?",
                "update_count = update_count + 1", _TOUCH_UPDATED_AT]
        params: List[Any] = [status, superseded_by]
        if updated_by:
            sets.append("last_updated_by = ?")
            params.append(updated_by)

        def body(conn: sqlite3.Connection) -> int:
            if conn.execute("SELECT 1 FROM memories WHERE id = ?", (record_id,)).fetchone() is None:
                return 0
            if superseded_by is not None and conn.execute(
                "SELECT 1 FROM memories WHERE id = ?", (superseded_by,)
            ).fetchone() is None:
                raise ValidationError(
                    f"Superseding memory {superseded_by} does not exist.",
                    details={"superseded_by": superseded_by},
                )
            return conn.execute(
                f"UPDATE memories SET {', '.join(sets)} WHERE id = ?",
                params + [record_id],
            ).rowcount

        if not self._transaction(body, "set status"):
            return None
        return self.get(record_id)

    def delete(self, record_id: int) -> bool:
        """Physically remove a record (and its shadow index entry)."""
        def body(conn: sqlite3.Connection) -> int:
            return conn.execute("DELETE FROM memories WHERE id = ?", (record_id,)).rowcount

        deleted = bool(self._transaction(body, "delete"))
        if deleted:
            logger.debug(f"Deleted memory {record_id}")
        return deleted

    # -- Query operations --------------------------------------------------

    def get(self, record_id: int) -> Optional[MemoryRecord]:
        """Read a single record by id."""
        row = self._fetchone("SELECT * FROM memories WHERE id = ?", (record_id,), "get")
        return MemoryRecord.from_row(row) if row is not None else None

    def list_records(
        self,
        filters: Optional[SearchFilters] = None,
        *,
        since: Optional[str] = None,
        limit: Optional[int] = None,
        default_active_only: bool = True,
    ) -> List[MemoryRecord]:
        """List records, most recently updated first.

        Args:
            filters: Visibility filters (default: active only).
            since: Lower bound on ``updated_at`` (SQLite datetime text).
            limit: Maximum rows.
            default_active_only: If False and no status filter is given,
                every status is listed.
        """
        clauses: List[str] = []
        params: List[Any] = []
        apply_sql_filters(
            clauses, params, filters, alias="", default_active_only=default_active_only,
        )
        if since:
            clauses.append("datetime(updated_at) >= datetime(?)")
            params.append(since)
        sql = f"SELECT * FROM memories {_where(clauses)} ORDER BY updated_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [MemoryRecord.from_row(r) for r in self._fetchall(sql, params, "list")]

    def query_by_index(
        self,
        match_expr: str,
        filters: Optional[SearchFilters] = None,
        *,
        limit: Optional[int] = None,
        exclude_id: Optional[int] = None,
    ) -> List[IndexHit]:
        """Run an FTS5 MATCH expression and return hits ordered by bm25.

        Raises:
            IndexParseError: The index rejected the expression.
        """
        clauses = ["memories_fts MATCH ?"]
        params: List[Any] = [match_expr]
        apply_sql_filters(clauses, params, filters)
        if exclude_id is not None:
            clauses.append("m.id != ?")
            params.append(exclude_id)
        sql = (
            "SELECT m.*, bm25(memories_fts) AS fts_rank "
            "FROM memories m JOIN memories_fts ON m.id = memories_fts.rowid "
            f"{_where(clauses)} ORDER BY bm25(memories_fts)"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        logger.debug(f"Index query: {match_expr!r} (limit={limit})")
        rows = self._fetchall(sql, params, "index query")
        return [IndexHit(MemoryRecord.from_row(r), r["fts_rank"]) for r in rows]

    def query_neighborhood(
        self,
        neighborhood: Neighborhood,
        filters: Optional[SearchFilters] = None,
        *,
        limit: int = 30,
        max_hints: int = 10,
    ) -> List[IndexHit]:
        """Find records whose tags mention a tag hint, or whose content,
        context or refs mention a path hint. Hits carry no index rank."""
        or_clauses: List[str] = []
        params: List[Any] = []
        for hint in neighborhood.tag_hints[:max_hints]:
            or_clauses.append("LOWER(m.tags) LIKE ?")
            params.append(f"%{hint.lower()}%")
        for hint in neighborhood.path_hints[:max_hints]:
            lowered = f"%{hint.lower()}%"
            for column in ("content", "context", "refs"):
                or_clauses.append(f"LOWER(m.{column}) LIKE ?")
                params.append(lowered)
        if not or_clauses:
            return []
        clauses = [f"({' OR '.join(or_clauses)})"]
        apply_sql_filters(clauses, params, filters)
        sql = (
            f"SELECT m.* FROM memories m {_where(clauses)} "
            "ORDER BY m.updated_at DESC, m.id DESC LIMIT ?"
        )
        params.append(int(limit))
        rows = self._fetchall(sql, params, "neighborhood query")
        return [IndexHit(MemoryRecord.from_row(r)) for r in rows]

    def find_exact_duplicate(
        self, content: str, tags: str = "", context: str = "",
    ) -> Optional[MemoryRecord]:
        """First active record with exactly this (content, tags, context)."""
        row = self._fetchone(
            "SELECT * FROM memories WHERE status = 'active' "
            "AND content = ? AND tags = ? AND context = ? ORDER BY id LIMIT 1",
            (content, tags or "", context or ""),
            "duplicate lookup",
        )
        return MemoryRecord.from_row(row) if row is not None else None

    def find_status_cascade_candidates(
        self, tags: str, exclude_id: int,
    ) -> List[MemoryRecord]:
        """Other active ``status`` records sharing at least one tag."""
        wanted = {t.lower() for t in parse_tags(tags)}
        if not wanted:
            return []
        rows = self._fetchall(
            "SELECT * FROM memories WHERE status = 'active' "
            "AND memory_type = 'status' AND id != ? "
            "ORDER BY updated_at DESC, id DESC",
            (exclude_id,),
            "status cascade",
        )
        records = [MemoryRecord.from_row(r) for r in rows]
        return [
            r for r in records
            if any(t.lower() in wanted for t in r.tag_list)
        ]

    def list_expired(self) -> List[MemoryRecord]:
        """Active records past their advisory TTL, oldest first. Read-only."""
        rows = self._fetchall(
            "SELECT * FROM memories WHERE status = 'active' "
            "AND expires_after_days IS NOT NULL "
            "AND datetime(updated_at, '+' || expires_after_days || ' days') "
            "<= datetime('now') ORDER BY updated_at ASC",
            what="gc scan",
        )
        return [MemoryRecord.from_row(r) for r in rows]

    def count(self) -> int:
        row = self._fetchone("SELECT COUNT(*) AS cnt FROM memories", what="count")
        return int(row["cnt"])


@contextmanager
def open_store(
    db_path: Optional[str] = None,
    mode: str = "write",
    config: Optional[StoreConfig] = None,
) -> Iterator[MemoryStore]:
    """Open a session and guarantee ``close()`` on every exit path."""
    store = MemoryStore(db_path, mode=mode, config=config)
    try:
        yield store
    finally:
        store.close()
