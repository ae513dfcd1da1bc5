"""
Neighborhood Deriver — file paths to tag/path hints and search terms.

Used by ``suggest``: a set of files the agent is about to touch is turned
into hints that find topically related memories without any search text.

For each path (separators normalized, leading ``./`` stripped):
  - path hints: ``<dir>/`` and ``<dir>/%.<ext>`` (a LIKE pattern)
  - tag hints: every directory segment except src/lib/app/apps/test/tests

Records found only through hints are boosted by a fixed bonus when merged
with index hits, so a record reached by both signals outranks one reached by
either alone.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from machine_memory.terms import extract_terms, unique_lower_preserve_order
from machine_memory.types import ScoredRecord

IGNORED_SEGMENTS = frozenset({"src", "lib", "app", "apps", "test", "tests"})

DEFAULT_BONUS = 12.0
DEFAULT_LIMIT = 20

FOUND_VIA_INDEX = "index"
FOUND_VIA_NEIGHBORHOOD = "neighborhood"

_LEADING_DOT_SLASH = re.compile(r"^\./+")
_SEGMENT_SPLIT = re.compile(r"[._-]+")


@dataclass
class Neighborhood:
    """Hints derived from a file set."""

    tag_hints: List[str] = field(default_factory=list)
    path_hints: List[str] = field(default_factory=list)
    terms: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[str]]:
        return {"tags": list(self.tag_hints), "paths": list(self.path_hints)}


def normalize_path(path: str) -> str:
    return _LEADING_DOT_SLASH.sub("", (path or "").replace("\\", "/"))


def derive_neighborhood(files: Iterable[str]) -> Neighborhood:
    """Derive tag hints, path hints and terms from file paths.

    Examples:
        >>> n = derive_neighborhood(["./src/auth/jwt.ts"])
        >>> n.tag_hints, n.path_hints
        (['auth'], ['src/auth/', 'src/auth/%.ts'])
    """
    tag_hints: List[str] = []
    path_hints: List[str] = []
    for raw in files:
        normalized = normalize_path(raw)
        directory = posixpath.dirname(normalized)
        if not directory or directory == ".":
            continue
        path_hints.append(f"{directory}/")
        extension = posixpath.splitext(normalized)[1].lstrip(".")
        if extension:
            path_hints.append(f"{directory}/%.{extension}")
        for segment in directory.split("/"):
            if segment and segment.lower() not in IGNORED_SEGMENTS:
                tag_hints.append(segment)

    unique_tags = unique_lower_preserve_order(tag_hints)
    unique_paths = unique_lower_preserve_order(path_hints)
    return Neighborhood(
        tag_hints=unique_tags,
        path_hints=unique_paths,
        terms=extract_terms(" ".join(unique_tags + unique_paths)),
    )


def extract_path_terms(files: Iterable[str]) -> List[str]:
    """Search terms from file paths: whole segments plus their
    ``._-``-separated pieces (``jwt-utils.ts`` -> jwt, utils, ts)."""
    pieces: List[str] = []
    for raw in files:
        for segment in (raw or "").replace("\\", "/").split("/"):
            if not segment:
                continue
            pieces.append(segment)
            pieces.extend(p for p in _SEGMENT_SPLIT.split(segment) if p)
    return extract_terms(" ".join(pieces))


def merge_suggestion_results(
    primary: List[ScoredRecord],
    secondary: List[ScoredRecord],
    bonus: float = DEFAULT_BONUS,
    limit: int = DEFAULT_LIMIT,
) -> List[ScoredRecord]:
    """Merge index hits (*primary*) with neighborhood hits (*secondary*).

    A secondary hit scores ``score + bonus``. When both lists contain the
    same id, the higher of the primary score and the boosted secondary score
    wins and the ``found_via`` labels are unioned. The merged list is sorted
    by descending score and truncated to *limit*.
    """
    by_id: Dict[int, ScoredRecord] = {}
    for hit in primary:
        by_id[hit.id] = ScoredRecord(
            record=hit.record,
            score=hit.score,
            found_via=list(hit.found_via) or [FOUND_VIA_INDEX],
        )
    for hit in secondary:
        boosted = round(hit.score + bonus, 3)
        labels = list(hit.found_via) or [FOUND_VIA_NEIGHBORHOOD]
        existing = by_id.get(hit.id)
        if existing is None:
            by_id[hit.id] = ScoredRecord(hit.record, boosted, labels)
            continue
        existing.score = round(max(existing.score, boosted), 3)
        for label in labels:
            if label not in existing.found_via:
                existing.found_via.append(label)

    merged = sorted(by_id.values(), key=lambda s: -s.score)
    return merged[:limit]
