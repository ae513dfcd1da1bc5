"""
Engine Operations — the consumer-facing memory commands.

Each operation takes an open :class:`MemoryStore` session and returns a
typed result (or a JSON-safe dict for the diagnostic commands). Inputs are
validated before storage is touched; batch operations report ``not_found``
ids instead of raising, single-target reads raise :class:`NotFoundError`.

Scoring always goes through :func:`scoring.score_and_rank` so that query,
suggest, match resolution and conflict search rank identically.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from machine_memory.config import MemoryConfig
from machine_memory.dedup import CLI_NAME
from machine_memory.errors import NotFoundError, ValidationError
from machine_memory.neighborhood import (
    FOUND_VIA_INDEX,
    FOUND_VIA_NEIGHBORHOOD,
    Neighborhood,
    derive_neighborhood,
    extract_path_terms,
    merge_suggestion_results,
)
from machine_memory.scoring import (
    NO_MATCHES,
    NO_TERMS,
    empty_result_payload,
    score_and_rank,
    sqlite_date_to_datetime,
)
from machine_memory.similarity import compare_facts
from machine_memory.store import MemoryStore
from machine_memory.terms import build_fts_query, extract_terms, merge_tag_values
from machine_memory.types import (
    CERTAINTY_LEVELS,
    DEFAULT_CERTAINTY,
    DEFAULT_MEMORY_TYPE,
    MEMORY_STATUSES,
    MEMORY_TYPES,
    MemoryRecord,
    ScoredRecord,
    SearchFilters,
    canonical_certainty,
    parse_id_spec,
    parse_refs_value,
    parse_stored_refs,
    require_certainty,
    require_memory_type,
)

logger = logging.getLogger(__name__)

MATCH_LIMIT = 5
STALE_AFTER_DAYS = 90


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class AddResult:
    """Created record plus what the caller should look at next."""

    record: MemoryRecord
    potential_conflicts: Optional[List[ScoredRecord]] = None
    status_cascade: List[MemoryRecord] = field(default_factory=list)

    @property
    def cascade_command(self) -> Optional[str]:
        if not self.status_cascade:
            return None
        ids = ",".join(str(r.id) for r in self.status_cascade)
        return f"{CLI_NAME} deprecate {ids} --superseded-by {self.record.id}"

    def to_dict(self) -> Dict[str, Any]:
        d = self.record.to_dict()
        if self.potential_conflicts is not None:
            d["potential_conflicts"] = [c.to_dict() for c in self.potential_conflicts]
        if self.status_cascade:
            d["status_cascade"] = {
                "overlapping_ids": [r.id for r in self.status_cascade],
                "suggested_command": self.cascade_command,
            }
        return d


@dataclass
class BatchResult:
    """Outcome of an operation over an id list."""

    action: str
    records: List[MemoryRecord] = field(default_factory=list)
    ids: List[int] = field(default_factory=list)
    not_found: List[int] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.ids)

    def to_dict(self) -> Dict[str, Any]:
        done: List[Any] = [r.to_dict() for r in self.records] if self.records else list(self.ids)
        return {self.action: done, "not_found": list(self.not_found), "count": self.count}


@dataclass
class QueryOutcome:
    """Ranked search results, or the diagnostics explaining why there are none."""

    term: str
    derived_terms: List[str]
    filters: SearchFilters
    results: List[ScoredRecord] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.results:
            return empty_result_payload(
                self.term, self.filters, self.derived_terms, self.reason or NO_MATCHES,
            )
        return {
            "search_term": self.term,
            "derived_terms": list(self.derived_terms),
            "count": len(self.results),
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class SuggestOutcome:
    files: List[str]
    derived_terms: List[str]
    neighborhood: Neighborhood
    results: List[ScoredRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "files": list(self.files),
            "derived_terms": list(self.derived_terms),
            "neighborhood": self.neighborhood.to_dict(),
            "count": len(self.results),
            "results": [r.to_dict() for r in self.results],
        }


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _require_content(content: Optional[str]) -> str:
    if content is None or not str(content).strip():
        raise ValidationError("Memory content cannot be empty.")
    return str(content)


def _require_expiry(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Invalid expires_after_days: {value!r}")
    try:
        days = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid expires_after_days: {value!r}") from None
    if days < 0 or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(
            f"Invalid expires_after_days: {value!r}. Expected a non-negative integer."
        )
    return days


def to_sqlite_datetime(value: Any) -> Optional[str]:
    """UTC ``YYYY-MM-DD HH:MM:SS`` text for a parseable timestamp, else None."""
    parsed = sqlite_date_to_datetime(value)
    if parsed is None:
        return None
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


def detect_potential_conflicts(
    store: MemoryStore,
    content: str,
    tags: str = "",
    context: str = "",
    *,
    exclude_id: Optional[int] = None,
    limit: int = MATCH_LIMIT,
) -> List[ScoredRecord]:
    """Top active index matches for new content, scored with its own terms."""
    terms = extract_terms(" ".join([content or "", tags or "", context or ""]))
    match_expr = build_fts_query(terms)
    if match_expr is None:
        return []
    hits = store.query_by_index(
        match_expr, SearchFilters(), limit=limit, exclude_id=exclude_id,
    )
    return score_and_rank(hits, terms)


def find_memory_by_match(store: MemoryStore, query: str) -> Optional[MemoryRecord]:
    """Best-scoring active memory for free text (top 5 index hits), or None."""
    terms = extract_terms(query)
    match_expr = build_fts_query(terms)
    if match_expr is None:
        return None
    hits = store.query_by_index(match_expr, SearchFilters(), limit=MATCH_LIMIT)
    ranked = score_and_rank(hits, terms)
    return ranked[0].record if ranked else None


def resolve_targets(
    store: MemoryStore,
    ids: Any = None,
    match: Optional[str] = None,
) -> List[int]:
    """Target ids from an explicit id spec or a ``--match`` query (exclusive).

    Raises:
        ValidationError: Neither or both given, bad id list, or no match.
    """
    if match is not None:
        if ids not in (None, "", []):
            raise ValidationError("Pass either ids or a match query, not both.")
        found = find_memory_by_match(store, match)
        if found is None:
            raise ValidationError(f'No active memory matched --match "{match}".')
        return [found.id]
    if ids in (None, "", []):
        raise ValidationError("No target ids given.")
    return parse_id_spec(ids)


def query_memories(
    store: MemoryStore,
    term: str,
    filters: Optional[SearchFilters] = None,
    *,
    limit: Optional[int] = None,
) -> QueryOutcome:
    """Full-text search ranked by the five-signal score.

    A term yielding no tokens never reaches the index: the outcome carries
    reason ``no_search_terms``. An index query with no rows carries
    ``no_matches``.
    """
    filters = filters or SearchFilters()
    tokens = extract_terms(" ".join([term or "", filters.tag or ""]))
    outcome = QueryOutcome(term=term, derived_terms=tokens, filters=filters)
    match_expr = build_fts_query(tokens)
    if match_expr is None:
        outcome.reason = NO_TERMS
        return outcome
    hits = store.query_by_index(match_expr, filters)
    outcome.results = score_and_rank(hits, tokens)
    if limit is not None:
        outcome.results = outcome.results[:limit]
    if not outcome.results:
        outcome.reason = NO_MATCHES
    return outcome


def suggest_memories(
    store: MemoryStore,
    files: Sequence[str],
    filters: Optional[SearchFilters] = None,
    config: Optional[MemoryConfig] = None,
) -> SuggestOutcome:
    """Memories relevant to a set of files, via index terms and path hints."""
    cfg = (config or MemoryConfig()).suggest
    files = [f.strip() for f in files if f and f.strip()]
    if not files:
        raise ValidationError("No files given to suggest for.")
    filters = filters or SearchFilters()

    path_terms = extract_path_terms(files)
    neighborhood = derive_neighborhood(files)
    suggest_terms = list(dict.fromkeys(path_terms + neighborhood.terms))

    index_results: List[ScoredRecord] = []
    match_expr = build_fts_query(path_terms)
    if match_expr is not None:
        hits = store.query_by_index(match_expr, filters, limit=cfg.index_limit)
        index_results = score_and_rank(hits, suggest_terms, source=FOUND_VIA_INDEX)

    hint_hits = store.query_neighborhood(
        neighborhood, filters, limit=cfg.neighborhood_limit, max_hints=cfg.max_hints,
    )
    hint_results = score_and_rank(
        hint_hits, neighborhood.terms, source=FOUND_VIA_NEIGHBORHOOD,
    )
    results = merge_suggestion_results(
        index_results, hint_results,
        bonus=cfg.neighborhood_bonus, limit=cfg.max_results,
    )
    logger.debug(
        f"Suggest: {len(index_results)} index hits, "
        f"{len(hint_results)} neighborhood hits, {len(results)} merged"
    )
    return SuggestOutcome(
        files=files, derived_terms=suggest_terms,
        neighborhood=neighborhood, results=results,
    )


def get_memory(store: MemoryStore, record_id: int) -> MemoryRecord:
    record = store.get(record_id)
    if record is None:
        raise NotFoundError(record_id)
    return record


# ---------------------------------------------------------------------------
# Write operations
# ---------------------------------------------------------------------------


def add_memory(
    store: MemoryStore,
    content: str,
    *,
    tags: Optional[str] = None,
    extra_tags: Iterable[str] = (),
    context: str = "",
    memory_type: Optional[str] = None,
    certainty: Optional[str] = None,
    source_agent: str = "",
    updated_by: Optional[str] = None,
    refs: Any = None,
    expires_after_days: Any = None,
    check_conflicts: bool = True,
    config: Optional[MemoryConfig] = None,
) -> AddResult:
    """Create an active memory.

    Potential conflicts are searched before the insert, so the new record
    never reports itself. Adding a ``status`` memory also lists the other
    active status memories sharing one of its tags (``status_cascade``).
    """
    cfg = config or MemoryConfig()
    content = _require_content(content)
    record = MemoryRecord(
        content=content,
        tags=merge_tag_values(tags, extra_tags),
        context=context or "",
        memory_type=require_memory_type(memory_type or DEFAULT_MEMORY_TYPE),
        certainty=require_certainty(certainty or DEFAULT_CERTAINTY),
        source_agent=source_agent or "",
        last_updated_by=updated_by if updated_by is not None else (source_agent or ""),
        refs=parse_refs_value(refs) if refs is not None else [],
        expires_after_days=_require_expiry(expires_after_days),
    )

    conflicts: Optional[List[ScoredRecord]] = None
    if check_conflicts:
        conflicts = detect_potential_conflicts(
            store, record.content, record.tags, record.context,
            limit=cfg.dedup.conflict_limit,
        )

    created = store.insert(record)
    cascade: List[MemoryRecord] = []
    if created.memory_type == "status":
        cascade = store.find_status_cascade_candidates(created.tags, created.id)
    logger.info(
        f"Added memory {created.id} (type={created.memory_type}, "
        f"conflicts={len(conflicts or [])}, cascade={len(cascade)})"
    )
    return AddResult(record=created, potential_conflicts=conflicts, status_cascade=cascade)


def update_memories(
    store: MemoryStore,
    ids: Any,
    content: str,
    *,
    tags: Optional[str] = None,
    context: Optional[str] = None,
    memory_type: Optional[str] = None,
    certainty: Optional[str] = None,
    refs: Any = None,
    expires_after_days: Any = None,
    updated_by: Optional[str] = None,
) -> BatchResult:
    """Replace content (and optional fields) of every id in *ids*."""
    target_ids = parse_id_spec(ids)
    changes: Dict[str, Any] = {
        "content": _require_content(content),
        "tags": tags,
        "context": context,
        "memory_type": require_memory_type(memory_type) if memory_type is not None else None,
        "certainty": require_certainty(certainty) if certainty is not None else None,
        "refs": parse_refs_value(refs) if refs is not None else None,
        "expires_after_days": _require_expiry(expires_after_days),
        "last_updated_by": updated_by,
    }
    result = BatchResult(action="updated")
    for record_id in target_ids:
        updated = store.update_fields(record_id, **changes)
        if updated is None:
            result.not_found.append(record_id)
        else:
            result.records.append(updated)
            result.ids.append(record_id)
    logger.info(f"Updated {result.count} memories (not found: {result.not_found})")
    return result


def deprecate_memories(
    store: MemoryStore,
    ids: Any,
    superseded_by: Optional[int] = None,
    *,
    updated_by: Optional[str] = None,
) -> BatchResult:
    """Mark memories deprecated, or superseded by another existing memory."""
    target_ids = parse_id_spec(ids)
    if superseded_by is not None:
        superseded_by = parse_id_spec(superseded_by)[0]
        if superseded_by in target_ids:
            raise ValidationError(
                "A memory cannot supersede itself.",
                details={"id": superseded_by},
            )
        if store.get(superseded_by) is None:
            raise ValidationError(
                f"Superseding memory {superseded_by} does not exist.",
                details={"superseded_by": superseded_by},
            )
    status = "superseded_by" if superseded_by is not None else "deprecated"
    result = BatchResult(action="deprecated")
    for record_id in target_ids:
        changed = store.set_status(record_id, status, superseded_by, updated_by)
        if changed is None:
            result.not_found.append(record_id)
        else:
            result.records.append(changed)
            result.ids.append(record_id)
    logger.info(f"Deprecated {result.count} memories (status={status})")
    return result


def delete_memories(store: MemoryStore, ids: Any) -> BatchResult:
    target_ids = parse_id_spec(ids)
    result = BatchResult(action="deleted")
    for record_id in target_ids:
        if store.delete(record_id):
            result.ids.append(record_id)
        else:
            result.not_found.append(record_id)
    logger.info(f"Deleted {result.count} memories")
    return result


# ---------------------------------------------------------------------------
# Fact comparison
# ---------------------------------------------------------------------------


def verify_fact(
    store: MemoryStore,
    record_id: int,
    fact: str,
    config: Optional[MemoryConfig] = None,
) -> Dict[str, Any]:
    """Check a statement against a stored memory: consistent or conflict."""
    cfg = config or MemoryConfig()
    fact = _require_content(fact)
    record = get_memory(store, record_id)
    comparison = compare_facts(record.content, fact, cfg.dedup.conflict_threshold)
    payload: Dict[str, Any] = {
        "id": record.id,
        "ok": not comparison.conflict,
        "result": "conflict" if comparison.conflict else "consistent",
        "similarity": comparison.similarity,
    }
    if comparison.conflict:
        payload["warning"] = "Conflict"
        payload["negation_mismatch"] = comparison.negation_mismatch
    return payload


def diff_fact(
    store: MemoryStore,
    record_id: int,
    new_content: str,
    config: Optional[MemoryConfig] = None,
) -> Dict[str, Any]:
    """Read-only term diff between a stored memory and proposed content."""
    cfg = config or MemoryConfig()
    new_content = _require_content(new_content)
    record = get_memory(store, record_id)
    comparison = compare_facts(record.content, new_content, cfg.dedup.conflict_threshold)
    payload = {"id": record.id}
    payload.update(comparison.to_dict())
    return payload


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


def gc_dry_run(store: MemoryStore) -> Dict[str, Any]:
    """List active memories past their advisory TTL. Never deletes."""
    expired = store.list_expired()
    return {
        "dry_run": True,
        "count": len(expired),
        "expired": [r.to_dict() for r in expired],
    }


def memory_stats(store: MemoryStore, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Corpus statistics over every memory, whatever its status."""
    now = now or datetime.now(timezone.utc)
    records = store.list_records(default_active_only=False)
    by_type = {t: 0 for t in MEMORY_TYPES}
    by_certainty = {c: 0 for c in CERTAINTY_LEVELS}
    tag_frequency: Dict[str, int] = {}
    oldest: Optional[MemoryRecord] = None
    oldest_at: Optional[datetime] = None
    stale = 0
    no_tags = 0

    for record in records:
        by_type[record.memory_type] = by_type.get(record.memory_type, 0) + 1
        by_certainty[record.certainty] = by_certainty.get(record.certainty, 0) + 1
        tags = record.tag_list
        if not tags:
            no_tags += 1
        for tag in tags:
            tag_frequency[tag] = tag_frequency.get(tag, 0) + 1
        created = sqlite_date_to_datetime(record.created_at)
        if oldest is None or (
            created is not None and (oldest_at is None or created < oldest_at)
        ):
            oldest, oldest_at = record, created
        updated = sqlite_date_to_datetime(record.updated_at)
        if updated is not None and (now - updated).total_seconds() / 86400.0 > STALE_AFTER_DAYS:
            stale += 1

    return {
        "total_memories": len(records),
        "breakdown_by_memory_type": by_type,
        "breakdown_by_certainty": by_certainty,
        "tag_frequency_map": tag_frequency,
        "oldest_memory": oldest.to_dict() if oldest else None,
        "memories_not_updated_over_90_days": stale,
        "memories_with_no_tags": no_tags,
    }


def export_records(
    store: MemoryStore,
    filters: Optional[SearchFilters] = None,
    since: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Filtered records, newest first, optionally updated on/after *since*."""
    since_value = None
    if since is not None:
        since_value = to_sqlite_datetime(since)
        if since_value is None:
            raise ValidationError(
                f"Invalid since date: {since!r}. Expected an ISO-8601 date or timestamp."
            )
    return [r.to_dict() for r in store.list_records(filters, since=since_value)]


# -- Import ----------------------------------------------------------------


class _Skip(Exception):
    def __init__(self, reason: str, **extra: Any):
        super().__init__(reason)
        self.reason = reason
        self.extra = extra


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def normalize_import_entry(raw: Any) -> MemoryRecord:
    """Turn one exported entry into a record ready for insertion.

    Raises:
        _Skip: With the reason the entry cannot be imported.
    """
    if not isinstance(raw, dict):
        raise _Skip("invalid_entry")
    content = raw.get("content")
    if not isinstance(content, str) or not content.strip():
        raise _Skip("missing_content")

    memory_type = raw.get("memory_type")
    if not isinstance(memory_type, str):
        memory_type = DEFAULT_MEMORY_TYPE
    certainty_raw = raw.get("certainty")
    if not isinstance(certainty_raw, str):
        certainty_raw = DEFAULT_CERTAINTY
    status = raw.get("status")
    if not isinstance(status, str):
        status = "active"
    if memory_type not in MEMORY_TYPES:
        raise _Skip("invalid_memory_type", memory_type=memory_type)
    certainty = canonical_certainty(certainty_raw)
    if certainty is None:
        raise _Skip("invalid_certainty", certainty=certainty_raw)
    if status not in MEMORY_STATUSES:
        raise _Skip("invalid_status", status_value=status)
    superseded_by = _int_or_none(raw.get("superseded_by"))
    if status != "superseded_by":
        superseded_by = None
    elif superseded_by is None or superseded_by <= 0:
        raise _Skip("invalid_superseded_by", superseded_by=raw.get("superseded_by"))

    refs_raw = raw.get("refs")
    if isinstance(refs_raw, list):
        refs = [r for r in refs_raw if isinstance(r, str)]
    elif isinstance(refs_raw, str):
        refs = parse_stored_refs(refs_raw).refs
    else:
        refs = []

    source_agent = raw.get("source_agent") if isinstance(raw.get("source_agent"), str) else ""
    last_updated_by = raw.get("last_updated_by")
    if not isinstance(last_updated_by, str):
        last_updated_by = source_agent
    update_count = _int_or_none(raw.get("update_count"))
    expires = _int_or_none(raw.get("expires_after_days"))
    return MemoryRecord(
        content=content,
        tags=raw.get("tags") if isinstance(raw.get("tags"), str) else "",
        context=raw.get("context") if isinstance(raw.get("context"), str) else "",
        memory_type=memory_type,
        certainty=certainty,
        status=status,
        superseded_by=superseded_by,
        source_agent=source_agent,
        last_updated_by=last_updated_by,
        update_count=update_count if update_count is not None and update_count >= 0 else 0,
        refs=refs,
        expires_after_days=expires if expires is not None and expires >= 0 else None,
        created_at=to_sqlite_datetime(raw.get("created_at")) or "",
        updated_at=to_sqlite_datetime(raw.get("updated_at")) or "",
    )


def import_entries(
    store: MemoryStore,
    entries: Sequence[Any],
    config: Optional[MemoryConfig] = None,
) -> List[Dict[str, Any]]:
    """Import exported entries one by one, reporting a status per entry.

    Statuses: ``success`` (inserted, with ``id``), ``skip`` (with a reason,
    including ``exact_duplicate`` and ``existing_id``), ``conflict`` (active
    entry overlapping existing memories; not inserted).
    """
    cfg = config or MemoryConfig()
    results: List[Dict[str, Any]] = []
    for index, raw in enumerate(entries):
        try:
            record = normalize_import_entry(raw)
        except _Skip as skip:
            results.append({"index": index, "status": "skip", "reason": skip.reason, **skip.extra})
            continue

        if record.superseded_by is not None and store.get(record.superseded_by) is None:
            results.append({
                "index": index, "status": "skip",
                "reason": "invalid_superseded_by", "superseded_by": record.superseded_by,
            })
            continue

        duplicate = store.find_exact_duplicate(record.content, record.tags, record.context)
        if duplicate is not None:
            results.append({
                "index": index, "status": "skip",
                "reason": "exact_duplicate", "existing_id": duplicate.id,
            })
            continue

        if record.status == "active":
            conflicts = detect_potential_conflicts(
                store, record.content, record.tags, record.context,
                limit=cfg.dedup.conflict_limit,
            )
            if conflicts:
                results.append({
                    "index": index, "status": "conflict",
                    "potential_conflicts": [c.to_dict() for c in conflicts],
                })
                continue

        created = store.insert(record)
        results.append({"index": index, "status": "success", "id": created.id})

    logger.info(
        f"Imported {sum(1 for r in results if r['status'] == 'success')}"
        f"/{len(results)} entries"
    )
    return results
