"""
Memory Data Model — Records, Index Hits and Filters

Defines the canonical memory record, the typed wrappers used by the scorer,
and the pure alias/parsing functions applied at every read/write boundary.
Nothing outside this module ever sees raw legacy certainty aliases or a
string-encoded ``refs`` column.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional

from machine_memory.errors import ValidationError

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

MemoryType = Literal[
    "decision", "convention", "gotcha", "preference",
    "constraint", "reference", "status",
]
Certainty = Literal["verified", "inferred", "speculative"]
MemoryStatus = Literal["active", "deprecated", "superseded_by"]

# Valid values for runtime checks (ordered for error messages)
MEMORY_TYPES = (
    "decision", "convention", "gotcha", "preference",
    "constraint", "reference", "status",
)
CERTAINTY_LEVELS = ("verified", "inferred", "speculative")
MEMORY_STATUSES = ("active", "deprecated", "superseded_by")

DEFAULT_MEMORY_TYPE = "convention"
DEFAULT_CERTAINTY = "inferred"

LEGACY_CERTAINTY_ALIASES: Dict[str, str] = {
    "hard": "verified",
    "soft": "inferred",
    "uncertain": "speculative",
}


# ---------------------------------------------------------------------------
# Alias resolution and validation
# ---------------------------------------------------------------------------


def canonical_certainty(raw: Any) -> Optional[str]:
    """Resolve a certainty value or legacy alias. None if unrecognized."""
    if not isinstance(raw, str):
        return None
    value = raw.strip().lower()
    if value in CERTAINTY_LEVELS:
        return value
    return LEGACY_CERTAINTY_ALIASES.get(value)


def normalize_certainty(raw: Any, fallback: str = DEFAULT_CERTAINTY) -> str:
    """Total variant of canonical_certainty: unknown values map to *fallback*."""
    return canonical_certainty(raw) or fallback


def certainty_storage_variants(certainty: str) -> List[str]:
    """All stored spellings of a canonical certainty (for filters on old rows)."""
    variants = [certainty]
    variants.extend(k for k, v in LEGACY_CERTAINTY_ALIASES.items() if v == certainty)
    return variants


def require_memory_type(raw: str) -> str:
    if raw not in MEMORY_TYPES:
        raise ValidationError(
            f"Invalid memory type '{raw}'. Expected one of: {', '.join(MEMORY_TYPES)}",
            details={"expected": list(MEMORY_TYPES)},
        )
    return raw


def require_certainty(raw: str) -> str:
    """Validate a certainty value, accepting legacy aliases."""
    value = canonical_certainty(raw)
    if value is None:
        raise ValidationError(
            f"Invalid certainty '{raw}'. Expected one of: {', '.join(CERTAINTY_LEVELS)}",
            details={"expected": list(CERTAINTY_LEVELS)},
        )
    return value


def require_status(raw: str) -> str:
    if raw not in MEMORY_STATUSES:
        raise ValidationError(
            f"Invalid status '{raw}'. Expected one of: {', '.join(MEMORY_STATUSES)}",
            details={"expected": list(MEMORY_STATUSES)},
        )
    return raw


def parse_id_spec(raw: Any) -> List[int]:
    """Parse ``"3"``, ``"3,7,9"`` or an int list into unique positive ids.

    Order of first appearance is preserved.

    Raises:
        ValidationError: On empty input or any non-positive / non-integer id.
    """
    if isinstance(raw, int) and not isinstance(raw, bool):
        entries: List[Any] = [raw]
    elif isinstance(raw, (list, tuple)):
        entries = list(raw)
    else:
        entries = [e.strip() for e in str(raw or "").split(",") if e.strip()]
    if not entries:
        raise ValidationError(f"Invalid id: {raw!r}")

    ids: List[int] = []
    for entry in entries:
        try:
            value = int(entry)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid id list: {raw!r}") from None
        if isinstance(entry, bool) or value <= 0 or (
            isinstance(entry, float) and not entry.is_integer()
        ):
            raise ValidationError(f"Invalid id list: {raw!r}")
        if value not in ids:
            ids.append(value)
    return ids


def parse_tags(tags: Optional[str]) -> List[str]:
    """Split a comma-joined tag string, dropping blanks."""
    return [t.strip() for t in (tags or "").split(",") if t.strip()]


# ---------------------------------------------------------------------------
# refs: strict list in memory, tolerant parsing from storage
# ---------------------------------------------------------------------------


@dataclass
class RefsParse:
    """Result of decoding a stored refs value."""

    refs: List[str] = field(default_factory=list)
    malformed: bool = False


def parse_stored_refs(value: Any) -> RefsParse:
    """Decode the refs column. Never raises.

    Accepted encodings:
      - JSON array of strings (canonical)
      - list already decoded by the driver
      - legacy comma-separated string (salvaged, flagged malformed)
    Anything else yields the salvageable strings (possibly none) with
    ``malformed=True``.
    """
    if isinstance(value, list):
        valid = [v for v in value if isinstance(v, str)]
        return RefsParse(valid, malformed=len(valid) != len(value))
    if not isinstance(value, str) or not value.strip():
        return RefsParse([], malformed=True)
    try:
        parsed = json.loads(value)
    except (ValueError, TypeError):
        split = [v.strip() for v in value.split(",") if v.strip()]
        return RefsParse(split, malformed=True)
    if isinstance(parsed, list):
        valid = [v for v in parsed if isinstance(v, str)]
        return RefsParse(valid, malformed=len(valid) != len(parsed))
    return RefsParse([], malformed=True)


def parse_refs_value(raw: Any) -> List[str]:
    """Parse caller-supplied refs (JSON array or comma-separated list).

    Raises:
        ValidationError: If nothing usable can be extracted.
    """
    if isinstance(raw, (list, tuple)):
        if not all(isinstance(r, str) for r in raw):
            raise ValidationError("Invalid refs value: expected a list of strings.")
        return list(raw)
    text = str(raw or "")
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    if isinstance(parsed, list) and all(isinstance(r, str) for r in parsed):
        return parsed
    fallback = [r.strip() for r in text.split(",") if r.strip()]
    if not fallback:
        raise ValidationError(
            "Invalid refs value. Provide a JSON array (e.g. '[\"https://...\"]') "
            "or a comma-separated list."
        )
    return fallback


# ---------------------------------------------------------------------------
# Memory Record (canonical)
# ---------------------------------------------------------------------------


@dataclass
class MemoryRecord:
    """
    One stored memory, always in canonical form.

    Rules:
    - id is assigned by the store and never changes.
    - certainty and memory_type are canonical values, never aliases.
    - refs is a list; ``refs_malformed`` records whether the stored encoding
      had to be salvaged.
    """

    id: int = 0
    content: str = ""
    tags: str = ""
    context: str = ""
    memory_type: MemoryType = DEFAULT_MEMORY_TYPE
    certainty: Certainty = DEFAULT_CERTAINTY
    status: MemoryStatus = "active"
    superseded_by: Optional[int] = None
    source_agent: str = ""
    last_updated_by: str = ""
    update_count: int = 0
    refs: List[str] = field(default_factory=list)
    expires_after_days: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""
    refs_malformed: bool = False

    @property
    def tag_list(self) -> List[str]:
        return parse_tags(self.tags)

    @property
    def dedup_key(self):
        """Structural identity used for exact-duplicate detection."""
        return (self.content, self.tags, self.context)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe). Internal flags are omitted."""
        d = asdict(self)
        d.pop("refs_malformed", None)
        return d

    @classmethod
    def from_row(cls, row: Any) -> MemoryRecord:
        """Normalize a raw storage row (sqlite3.Row or mapping).

        This is the single decoding step between the driver and the rest of
        the engine.
        """
        data = {k: row[k] for k in row.keys()}
        refs = parse_stored_refs(data.get("refs"))
        memory_type = data.get("memory_type")
        if memory_type not in MEMORY_TYPES:
            memory_type = DEFAULT_MEMORY_TYPE
        status = data.get("status")
        if status not in MEMORY_STATUSES:
            status = "active"
        superseded_by = data.get("superseded_by")
        expires = data.get("expires_after_days")
        return cls(
            id=int(data["id"]),
            content=data.get("content") or "",
            tags=data.get("tags") or "",
            context=data.get("context") or "",
            memory_type=memory_type,
            certainty=normalize_certainty(data.get("certainty")),
            status=status,
            superseded_by=int(superseded_by) if superseded_by is not None else None,
            source_agent=data.get("source_agent") or "",
            last_updated_by=data.get("last_updated_by") or "",
            update_count=int(data.get("update_count") or 0),
            refs=refs.refs,
            expires_after_days=int(expires) if expires is not None else None,
            created_at=data.get("created_at") or "",
            updated_at=data.get("updated_at") or "",
            refs_malformed=refs.malformed,
        )


# ---------------------------------------------------------------------------
# Index hits and scored results
# ---------------------------------------------------------------------------


@dataclass
class IndexHit:
    """A record returned by a store query, with the index's native rank.

    ``rank`` is the bm25 value (more negative = more relevant), or None
    for rows found without the full-text index.
    """

    record: MemoryRecord
    rank: Optional[float] = None


@dataclass
class ScoredRecord:
    """A record with its final relevance score."""

    record: MemoryRecord
    score: float = 0.0
    found_via: List[str] = field(default_factory=list)

    @property
    def id(self) -> int:
        return self.record.id

    def to_dict(self) -> Dict[str, Any]:
        d = self.record.to_dict()
        d["score"] = self.score
        if self.found_via:
            d["found_via"] = list(self.found_via)
        return d


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


@dataclass
class SearchFilters:
    """Common visibility filters for search-like operations."""

    tag: Optional[str] = None
    memory_type: Optional[str] = None
    certainty: Optional[str] = None
    status: Optional[str] = None
    include_deprecated: bool = False

    def __post_init__(self):
        """Validate enum filters; certainty aliases are canonicalized."""
        if self.memory_type is not None:
            require_memory_type(self.memory_type)
        if self.certainty is not None:
            self.certainty = require_certainty(self.certainty)
        if self.status is not None:
            require_status(self.status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tags": self.tag,
            "type": self.memory_type,
            "certainty": self.certainty,
            "status": self.status,
            "include_deprecated": self.include_deprecated,
        }
