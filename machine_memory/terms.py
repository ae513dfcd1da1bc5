"""
Token Model — term extraction and full-text query building.

Provides two capabilities:
  1. extract_terms() — turn free text into an ordered, de-duplicated list of
     lowercase alphanumeric tokens with stop words removed.
  2. build_fts_query() — turn a token list into an FTS5 MATCH expression.

Both are pure and deterministic. They feed the scorer, the duplicate
detector, the fact comparator and the neighborhood deriver alike, so every
component agrees on what a "term" is.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

# ── Stop words ──────────────────────────────────────────────────────────

# Articles, prepositions, filler verbs, and code-structure path segments
# that carry no topical signal. Negation words are deliberately absent.
STOP_WORDS = frozenset({
    "the", "an", "and", "or", "of", "to", "in", "on", "at", "by",
    "for", "with", "from", "into", "that", "this", "your", "have",
    "are", "use", "uses", "using",
    "src", "lib", "app", "test", "tests",
})

MIN_TERM_LENGTH = 2
MAX_QUERY_TERMS = 12

_TOKEN_RE = re.compile(r"[a-z0-9]+")


# ── Term extraction ─────────────────────────────────────────────────────

def extract_terms(text: str) -> List[str]:
    """Extract ordered unique terms from *text*.

    Lowercases, splits on non-alphanumeric runs, drops tokens shorter than
    two characters and stop words, keeps first-seen order.

    Examples:
        >>> extract_terms("Auth uses JWT with RS256 signatures")
        ['auth', 'jwt', 'rs256', 'signatures']
        >>> extract_terms("src/auth/jwt.ts")
        ['auth', 'jwt', 'ts']
        >>> extract_terms("a the of")
        []
    """
    seen = set()
    terms: List[str] = []
    for token in _TOKEN_RE.findall((text or "").lower()):
        if len(token) < MIN_TERM_LENGTH or token in STOP_WORDS:
            continue
        if token not in seen:
            seen.add(token)
            terms.append(token)
    return terms


def build_fts_query(terms: Iterable[str]) -> Optional[str]:
    """Build a disjunctive FTS5 MATCH expression from terms.

    Uses at most the first 12 non-empty terms, each double-quoted with
    embedded quotes doubled, joined with OR. Returns None for an empty
    list: callers must treat that as "no search possible", never as
    "match everything".

    Examples:
        >>> build_fts_query(["jwt", "auth"])
        '"jwt" OR "auth"'
        >>> build_fts_query([]) is None
        True
    """
    usable = [t for t in terms if t][:MAX_QUERY_TERMS]
    if not usable:
        return None
    return " OR ".join('"' + t.replace('"', '""') + '"' for t in usable)


# ── Case-insensitive list helpers ───────────────────────────────────────

def unique_lower_preserve_order(values: Iterable[str]) -> List[str]:
    """Trim values and drop blanks and case-insensitive repeats.

    The first spelling seen wins.
    """
    seen = set()
    unique: List[str] = []
    for value in values:
        cleaned = (value or "").strip()
        if not cleaned:
            continue
        lowered = cleaned.lower()
        if lowered in seen:
            continue
        seen.add(lowered)
        unique.append(cleaned)
    return unique


def merge_tag_values(explicit_tags: Optional[str], extra_tags: Iterable[str] = ()) -> str:
    """Merge a comma-joined tag string with extra tags into one tag string."""
    explicit = [t for t in (explicit_tags or "").split(",")]
    return ",".join(unique_lower_preserve_order([*explicit, *extra_tags]))
