"""
Doctor — read-only hygiene sweep over active memories.

Checks, each producing findings with a ready-to-run remediation command:
    exact_duplicates       identical (content, tags, context)
    near_duplicates        token Jaccard >= threshold (see dedup.py)
    stale_status_overlaps  an older ``status`` memory shares a tag with a newer one
    tag_hygiene            empty tags, or tags not in normalized form
    malformed_refs         refs column not a JSON array of strings

Records are scanned most-recently-updated first, so the newest record of a
group is the one kept.
"""

from __future__ import annotations

import json
import logging
import shlex
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from machine_memory.config import DedupConfig
from machine_memory.dedup import (
    CLI_NAME,
    ExactDuplicateFinding,
    NearDuplicateFinding,
    find_duplicates,
)
from machine_memory.terms import unique_lower_preserve_order
from machine_memory.types import MemoryRecord, SearchFilters, parse_tags

logger = logging.getLogger(__name__)


@dataclass
class StaleStatusFinding:
    stale_id: int
    superseded_by: int
    shared_tags: List[str]
    suggested_command: str
    kind: str = "stale_status_overlap"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TagFinding:
    kind: str  # "empty_tags" | "invalid_tags"
    id: int
    tags: str
    normalized_tags: str
    suggested_command: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RefsFinding:
    id: int
    suggested_refs: List[str]
    suggested_command: str
    kind: str = "malformed_refs"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DoctorReport:
    """Findings of one sweep plus a de-duplicated remediation command list."""

    checked: int = 0
    exact_duplicates: List[ExactDuplicateFinding] = field(default_factory=list)
    near_duplicates: List[NearDuplicateFinding] = field(default_factory=list)
    stale_status_overlaps: List[StaleStatusFinding] = field(default_factory=list)
    tag_hygiene: List[TagFinding] = field(default_factory=list)
    malformed_refs: List[RefsFinding] = field(default_factory=list)

    @property
    def suggested_commands(self) -> List[str]:
        commands = [
            f.suggested_command
            for group in (
                self.exact_duplicates, self.near_duplicates,
                self.stale_status_overlaps, self.tag_hygiene,
                self.malformed_refs,
            )
            for f in group
        ]
        return unique_lower_preserve_order(commands)

    @property
    def finding_count(self) -> int:
        return (
            len(self.exact_duplicates) + len(self.near_duplicates)
            + len(self.stale_status_overlaps) + len(self.tag_hygiene)
            + len(self.malformed_refs)
        )

    def summary(self) -> Dict[str, int]:
        return {
            "checked": self.checked,
            "exact_duplicates": len(self.exact_duplicates),
            "near_duplicates": len(self.near_duplicates),
            "stale_status_overlaps": len(self.stale_status_overlaps),
            "tag_hygiene": len(self.tag_hygiene),
            "malformed_refs": len(self.malformed_refs),
            "suggested_commands": len(self.suggested_commands),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "findings": {
                "exact_duplicates": [f.to_dict() for f in self.exact_duplicates],
                "near_duplicates": [f.to_dict() for f in self.near_duplicates],
                "stale_status_overlaps": [f.to_dict() for f in self.stale_status_overlaps],
                "tag_hygiene": [f.to_dict() for f in self.tag_hygiene],
                "malformed_refs": [f.to_dict() for f in self.malformed_refs],
            },
            "suggested_commands": self.suggested_commands,
        }


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def normalized_tag_value(raw: str) -> str:
    """Canonical tag string: trimmed, blanks and case-insensitive repeats dropped."""
    return ",".join(unique_lower_preserve_order(parse_tags(raw)))


def detect_stale_status_overlaps(records: List[MemoryRecord]) -> List[StaleStatusFinding]:
    """Flag ``status`` records sharing a tag with a more recent ``status`` record.

    *records* must be ordered newest first.
    """
    findings: List[StaleStatusFinding] = []
    latest_by_tag: Dict[str, int] = {}
    for record in records:
        if record.memory_type != "status":
            continue
        tags = unique_lower_preserve_order(t.lower() for t in record.tag_list)
        if not tags:
            continue
        newer_id = next((latest_by_tag[t] for t in tags if t in latest_by_tag), None)
        if newer_id is not None:
            findings.append(StaleStatusFinding(
                stale_id=record.id,
                superseded_by=newer_id,
                shared_tags=[t for t in tags if latest_by_tag.get(t) == newer_id],
                suggested_command=(
                    f"{CLI_NAME} deprecate {record.id} --superseded-by {newer_id}"
                ),
            ))
        for tag in tags:
            latest_by_tag.setdefault(tag, record.id)
    return findings


def detect_tag_hygiene(records: List[MemoryRecord]) -> List[TagFinding]:
    findings: List[TagFinding] = []
    for record in records:
        normalized = normalized_tag_value(record.tags)
        content_arg = shlex.quote(record.content)
        if not normalized:
            findings.append(TagFinding(
                kind="empty_tags",
                id=record.id,
                tags=record.tags,
                normalized_tags=normalized,
                suggested_command=(
                    f'{CLI_NAME} update {record.id} {content_arg} --tags "<tag1,tag2>"'
                ),
            ))
        elif record.tags != normalized:
            findings.append(TagFinding(
                kind="invalid_tags",
                id=record.id,
                tags=record.tags,
                normalized_tags=normalized,
                suggested_command=(
                    f"{CLI_NAME} update {record.id} {content_arg} "
                    f"--tags {shlex.quote(normalized)}"
                ),
            ))
    return findings


def detect_malformed_refs(records: List[MemoryRecord]) -> List[RefsFinding]:
    findings: List[RefsFinding] = []
    for record in records:
        if not record.refs_malformed:
            continue
        findings.append(RefsFinding(
            id=record.id,
            suggested_refs=list(record.refs),
            suggested_command=(
                f"{CLI_NAME} update {record.id} {shlex.quote(record.content)} "
                f"--refs {shlex.quote(json.dumps(record.refs))}"
            ),
        ))
    return findings


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------


def diagnose(
    records: List[MemoryRecord],
    config: Optional[DedupConfig] = None,
) -> DoctorReport:
    """Run every check over *records* (active, newest first)."""
    exact, near = find_duplicates(records, config)
    report = DoctorReport(
        checked=len(records),
        exact_duplicates=exact,
        near_duplicates=near,
        stale_status_overlaps=detect_stale_status_overlaps(records),
        tag_hygiene=detect_tag_hygiene(records),
        malformed_refs=detect_malformed_refs(records),
    )
    logger.info(f"Doctor checked {report.checked} memories: {report.finding_count} findings")
    return report


def run_doctor(store, config: Optional[DedupConfig] = None) -> DoctorReport:
    """Load active memories from *store* and diagnose them."""
    records = store.list_records(SearchFilters())
    return diagnose(records, config)
