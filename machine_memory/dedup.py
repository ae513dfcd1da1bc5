"""
Duplicate Detection — exact groups and bounded near-duplicate search.

Two independent checks over a working set of active records:

  - Exact duplicates: identical (content, tags, context) triples. The first
    record of each group (in scan order) is kept.
  - Near duplicates: Jaccard similarity of the combined term sets at or above
    a threshold.

Near-duplicate candidate generation contract:
  - Records are scanned once, in order.
  - Candidates for a record come from an inverted postings index over the
    records scanned *before* it, probing at most ``probe_tokens`` of its terms.
  - The record's own terms are posted only after it has been compared, so
    each pair is compared at most once.
  - Candidates per record and postings per term are capped, which bounds both
    time and memory on large corpora.
  - Members of the same exact-duplicate group are never compared again.

No index, no embeddings, fully deterministic.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from machine_memory.config import DedupConfig
from machine_memory.similarity import jaccard
from machine_memory.terms import extract_terms
from machine_memory.types import MemoryRecord

logger = logging.getLogger(__name__)

CLI_NAME = "machine-memory"

DedupKey = Tuple[str, str, str]


@dataclass
class MemorySnapshot:
    """Comparison view of one record: raw triple plus extracted terms."""

    id: int
    content: str
    tags: str
    context: str
    terms: List[str] = field(default_factory=list)
    term_set: FrozenSet[str] = frozenset()

    @property
    def key(self) -> DedupKey:
        return (self.content, self.tags, self.context)

    @classmethod
    def from_record(cls, record: MemoryRecord) -> MemorySnapshot:
        terms = extract_terms(" ".join([record.content, record.tags, record.context]))
        return cls(
            id=record.id,
            content=record.content,
            tags=record.tags,
            context=record.context,
            terms=terms,
            term_set=frozenset(terms),
        )


@dataclass
class ExactDuplicateFinding:
    keep_id: int
    duplicate_ids: List[int]
    suggested_command: str
    kind: str = "exact_duplicate"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class NearDuplicateFinding:
    keep_id: int
    duplicate_id: int
    similarity: float
    suggested_command: str
    kind: str = "near_duplicate"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Exact duplicates
# ---------------------------------------------------------------------------


def find_exact_duplicates(
    snapshots: List[MemorySnapshot],
) -> Tuple[List[ExactDuplicateFinding], Dict[int, DedupKey]]:
    """Group snapshots by their (content, tags, context) triple.

    Returns:
        (findings, duplicate_key_by_id) where the mapping covers every member
        of every group with more than one record.
    """
    groups: Dict[DedupKey, List[MemorySnapshot]] = defaultdict(list)
    for snap in snapshots:
        groups[snap.key].append(snap)

    findings: List[ExactDuplicateFinding] = []
    key_by_id: Dict[int, DedupKey] = {}
    for key, group in groups.items():
        if len(group) <= 1:
            continue
        for snap in group:
            key_by_id[snap.id] = key
        duplicate_ids = [snap.id for snap in group[1:]]
        findings.append(ExactDuplicateFinding(
            keep_id=group[0].id,
            duplicate_ids=duplicate_ids,
            suggested_command=f"{CLI_NAME} delete {','.join(map(str, duplicate_ids))}",
        ))
    return findings, key_by_id


# ---------------------------------------------------------------------------
# Near duplicates
# ---------------------------------------------------------------------------


class PostingsIndex:
    """Term -> scan positions, built incrementally during a single pass."""

    def __init__(self, max_postings_per_token: int = 200):
        self._max_postings = max_postings_per_token
        self._postings: Dict[str, List[int]] = {}

    def candidates(
        self, terms: Iterable[str], probe_tokens: int, max_candidates: int,
    ) -> List[int]:
        """Positions sharing at most the first *probe_tokens* terms."""
        seen: Dict[int, None] = {}
        for token in list(terms)[:probe_tokens]:
            for position in self._postings.get(token, ()):
                seen[position] = None
                if len(seen) >= max_candidates:
                    return list(seen)
        return list(seen)

    def add(self, terms: Iterable[str], position: int) -> None:
        for token in terms:
            existing = self._postings.setdefault(token, [])
            if len(existing) < self._max_postings:
                existing.append(position)


def _comparable(
    left: MemorySnapshot,
    right: MemorySnapshot,
    key_by_id: Dict[int, DedupKey],
) -> bool:
    if left.id == right.id:
        return False
    left_key = key_by_id.get(left.id)
    return left_key is None or left_key != key_by_id.get(right.id)


def find_near_duplicates(
    snapshots: List[MemorySnapshot],
    duplicate_key_by_id: Optional[Dict[int, DedupKey]] = None,
    config: Optional[DedupConfig] = None,
) -> List[NearDuplicateFinding]:
    """Report, for each record, its most similar earlier record above threshold.

    The earlier record (scan order) is kept; the later one gets a deprecate
    command pointing at it.
    """
    cfg = config or DedupConfig()
    key_by_id = duplicate_key_by_id or {}
    postings = PostingsIndex(cfg.max_postings_per_token)
    findings: List[NearDuplicateFinding] = []
    comparisons = 0

    for position, snap in enumerate(snapshots):
        if not snap.term_set:
            continue

        best: Optional[Tuple[int, float]] = None
        for candidate_pos in postings.candidates(
            snap.terms, cfg.probe_tokens, cfg.max_candidates,
        ):
            candidate = snapshots[candidate_pos]
            if not _comparable(snap, candidate, key_by_id):
                continue
            comparisons += 1
            score = jaccard(snap.term_set, candidate.term_set)
            if score < cfg.near_duplicate_threshold:
                continue
            if best is None or score > best[1]:
                best = (candidate.id, score)

        if best is not None:
            findings.append(NearDuplicateFinding(
                keep_id=best[0],
                duplicate_id=snap.id,
                similarity=best[1],
                suggested_command=(
                    f"{CLI_NAME} deprecate {snap.id} --superseded-by {best[0]}"
                ),
            ))

        postings.add(snap.terms, position)

    logger.debug(
        f"Near-duplicate scan: {len(snapshots)} records, "
        f"{comparisons} comparisons, {len(findings)} findings"
    )
    return findings


def find_duplicates(
    records: List[MemoryRecord],
    config: Optional[DedupConfig] = None,
) -> Tuple[List[ExactDuplicateFinding], List[NearDuplicateFinding]]:
    """Run both checks over active records (convenience wrapper)."""
    snapshots = [MemorySnapshot.from_record(r) for r in records if r.status == "active"]
    exact, key_by_id = find_exact_duplicates(snapshots)
    near = find_near_duplicates(snapshots, key_by_id, config)
    return exact, near
