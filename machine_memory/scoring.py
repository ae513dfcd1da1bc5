"""
Relevance Scorer — five-signal ranking of index hits.

    score = recency + tag_exactness + update_frequency + certainty + index_rank

Each signal is clamped on its own, the sum is rounded to 3 decimals:

    recency           0..30   linear decay over 180 days since updated_at
    tag exactness     0/8/18  substring / exact tag match with a query term
    update frequency  0..20   2 points per update, capped at 10 updates
    certainty         2/10/20 speculative / inferred / verified
    index rank        0..30   -bm25 * 10

Results are sorted descending by score. Python's sort is stable, so rows
with equal scores keep the order of the underlying query.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from machine_memory.types import (
    IndexHit,
    MemoryRecord,
    ScoredRecord,
    SearchFilters,
    normalize_certainty,
    parse_tags,
)

RECENCY_MAX = 30.0
RECENCY_WINDOW_DAYS = 180.0
TAG_EXACT_WEIGHT = 18.0
TAG_PARTIAL_WEIGHT = 8.0
UPDATE_WEIGHT = 2.0
UPDATE_CAP = 10
INDEX_RANK_SCALE = 10.0
INDEX_RANK_MAX = 30.0

CERTAINTY_WEIGHTS: Dict[str, float] = {
    "verified": 20.0,
    "inferred": 10.0,
    "speculative": 2.0,
}


def sqlite_date_to_datetime(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp (SQLite ``YYYY-MM-DD HH:MM:SS`` or ISO-8601).

    Naive timestamps are UTC, as written by ``datetime('now')``.
    Returns None when unparseable.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if "T" not in text:
        text = text.replace(" ", "T", 1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


def recency_weight(updated_at: Any, now: Optional[datetime] = None) -> float:
    updated = sqlite_date_to_datetime(updated_at)
    if updated is None:
        return 0.0
    now = now or datetime.now(timezone.utc)
    age_days = max(0.0, (now - updated).total_seconds() / 86400.0)
    capped = min(age_days, RECENCY_WINDOW_DAYS)
    return round(RECENCY_MAX * (1.0 - capped / RECENCY_WINDOW_DAYS), 3)


def tag_exactness_weight(tags: str, query_tokens: List[str]) -> float:
    if not query_tokens:
        return 0.0
    tag_list = [t.lower() for t in parse_tags(tags)]
    tokens = [t.lower() for t in query_tokens]
    token_set = set(tokens)
    if any(tag in token_set for tag in tag_list):
        return TAG_EXACT_WEIGHT
    if any(token in tag for tag in tag_list for token in tokens):
        return TAG_PARTIAL_WEIGHT
    return 0.0


def update_count_weight(update_count: Any) -> float:
    try:
        count = float(update_count or 0)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(count) or count <= 0:
        return 0.0
    return min(count, UPDATE_CAP) * UPDATE_WEIGHT


def certainty_weight(certainty: Any) -> float:
    return CERTAINTY_WEIGHTS[normalize_certainty(certainty, fallback="speculative")]


def index_rank_weight(rank: Any) -> float:
    """Negated bm25 rank scaled x10 and clamped to [0, 30]. Absent/NaN -> 0."""
    try:
        value = float(rank)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return round(max(0.0, min(INDEX_RANK_MAX, -value * INDEX_RANK_SCALE)), 3)


# ---------------------------------------------------------------------------
# Score + rank
# ---------------------------------------------------------------------------


def score_record(
    record: MemoryRecord,
    query_tokens: List[str],
    rank: Optional[float] = None,
    now: Optional[datetime] = None,
) -> float:
    """Deterministic relevance score of one record for a token query."""
    total = (
        recency_weight(record.updated_at, now)
        + tag_exactness_weight(record.tags, query_tokens)
        + update_count_weight(record.update_count)
        + certainty_weight(record.certainty)
        + index_rank_weight(rank)
    )
    return round(total, 3)


def score_and_rank(
    hits: Iterable[IndexHit],
    query_tokens: List[str],
    *,
    source: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[ScoredRecord]:
    """Score every hit and sort strictly descending by score.

    Args:
        hits: Rows from a store query.
        query_tokens: Terms the caller searched for (see terms.extract_terms).
        source: Optional "found via" label attached to every result.
        now: Reference time (defaults to current UTC time).
    """
    now = now or datetime.now(timezone.utc)
    scored = [
        ScoredRecord(
            record=hit.record,
            score=score_record(hit.record, query_tokens, hit.rank, now),
            found_via=[source] if source else [],
        )
        for hit in hits
    ]
    scored.sort(key=lambda s: -s.score)
    return scored


# ---------------------------------------------------------------------------
# Empty-result diagnostics
# ---------------------------------------------------------------------------

NO_TERMS = "no_search_terms"
NO_MATCHES = "no_matches"

_NO_TERMS_HINTS = [
    "The search text produced no usable terms (too short or only stop words).",
    "Use distinctive keywords: identifiers, library names, file or module names.",
]
_NO_MATCHES_HINTS = [
    "Try broader keywords or synonyms.",
    "Use --include-deprecated to include superseded/archived memories.",
    "Narrow with --tags/--type/--certainty when you know the scope.",
]


def empty_result_payload(
    term: str,
    filters: SearchFilters,
    query_tokens: List[str],
    reason: str,
) -> Dict[str, Any]:
    """Diagnostic payload returned instead of a bare empty list.

    *reason* is ``"no_search_terms"`` when the text yielded no tokens (no
    search was possible) and ``"no_matches"`` when the index was queried
    and nothing matched.
    """
    hints = _NO_TERMS_HINTS if reason == NO_TERMS else _NO_MATCHES_HINTS
    return {
        "count": 0,
        "results": [],
        "reason": reason,
        "search_term": term,
        "derived_terms": list(query_tokens),
        "filters": filters.to_dict(),
        "hints": list(hints),
    }
