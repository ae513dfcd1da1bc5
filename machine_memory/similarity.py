"""
Term-set similarity and fact comparison.

Provides the comparison primitives used by verify/diff and by the
duplicate detector:
- **Token Jaccard**: set-overlap of extracted terms (order-insensitive).
- **Negation mismatch**: one text negates, the other does not.

A stored fact and a candidate statement are in *conflict* when their
negation differs or their Jaccard similarity falls below a threshold.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import AbstractSet, Any, Dict, List

from machine_memory.terms import extract_terms

DEFAULT_CONFLICT_THRESHOLD = 0.35
MAX_TERM_DIFF = 12

_NEGATION_RE = re.compile(r"\b(not|no|never|without|cannot|can't)\b")


# ---------------------------------------------------------------------------
# Similarity measures
# ---------------------------------------------------------------------------


def term_set(text: str) -> set:
    """Set of extracted terms of *text*."""
    return set(extract_terms(text))


def jaccard(a: AbstractSet[str], b: AbstractSet[str]) -> float:
    """Jaccard similarity between two term sets, rounded to 3 decimals.

    J(A, B) = |A ∩ B| / |A ∪ B|

    Returns 1.0 if both are empty (vacuous similarity).
    """
    if not a and not b:
        return 1.0
    union = len(a | b)
    if union == 0:
        return 0.0
    return round(len(a & b) / union, 3)


def has_negation(text: str) -> bool:
    return _NEGATION_RE.search((text or "").lower()) is not None


# ---------------------------------------------------------------------------
# Fact comparison
# ---------------------------------------------------------------------------


@dataclass
class FactComparison:
    """Outcome of comparing a stored fact with a candidate text."""

    similarity: float = 1.0
    conflict: bool = False
    negation_mismatch: bool = False
    added_terms: List[str] = field(default_factory=list)
    removed_terms: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "similarity": self.similarity,
            "conflict": self.conflict,
            "negation_mismatch": self.negation_mismatch,
            "added_terms": list(self.added_terms),
            "removed_terms": list(self.removed_terms),
        }


def compare_facts(
    stored: str,
    candidate: str,
    conflict_threshold: float = DEFAULT_CONFLICT_THRESHOLD,
) -> FactComparison:
    """Compare a stored fact against a candidate statement.

    Args:
        stored: Text currently held by the record.
        candidate: Text to check against it.
        conflict_threshold: Similarity below which the pair conflicts.

    Returns:
        FactComparison. ``added_terms`` are candidate terms missing from the
        stored text, ``removed_terms`` the reverse; both keep term order and
        are capped at 12 entries.
    """
    stored_terms = extract_terms(stored)
    candidate_terms = extract_terms(candidate)
    stored_set = set(stored_terms)
    candidate_set = set(candidate_terms)

    score = jaccard(stored_set, candidate_set)
    negation_mismatch = has_negation(stored) != has_negation(candidate)
    return FactComparison(
        similarity=score,
        conflict=negation_mismatch or score < conflict_threshold,
        negation_mismatch=negation_mismatch,
        added_terms=[t for t in candidate_terms if t not in stored_set][:MAX_TERM_DIFF],
        removed_terms=[t for t in stored_terms if t not in candidate_set][:MAX_TERM_DIFF],
    )
