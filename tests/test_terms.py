"""
Tests for machine_memory.terms — term extraction and FTS query building.
"""

import pytest

from machine_memory.terms import (
    MAX_QUERY_TERMS,
    STOP_WORDS,
    build_fts_query,
    extract_terms,
    merge_tag_values,
    unique_lower_preserve_order,
)


# ---------------------------------------------------------------------------
# extract_terms
# ---------------------------------------------------------------------------


class TestExtractTerms:
    def test_lowercase_and_split(self):
        assert extract_terms("Auth uses JWT with RS256") == ["auth", "jwt", "rs256"]

    def test_order_and_dedup(self):
        assert extract_terms("jwt auth JWT Auth tokens") == ["jwt", "auth", "tokens"]

    def test_drops_short_tokens(self):
        assert extract_terms("a b cd e") == ["cd"]

    def test_drops_stop_words(self):
        assert extract_terms("the use of the api") == ["api"]

    def test_path_segments_are_stop_words(self):
        assert extract_terms("src/lib/app/tests/router.py") == ["router", "py"]

    def test_negations_are_kept(self):
        terms = extract_terms("never use no cache")
        assert "never" in terms
        assert "no" in terms

    def test_non_alphanumeric_splits(self):
        assert extract_terms("snake_case-and.dots") == ["snake", "case", "dots"]

    def test_unicode_letters_split(self):
        # Only [a-z0-9] runs count as terms
        assert extract_terms("café résumé") == ["caf", "sum"]

    def test_empty_and_none(self):
        assert extract_terms("") == []
        assert extract_terms(None) == []

    def test_stop_word_set_contents(self):
        for word in ("the", "and", "using", "src", "tests"):
            assert word in STOP_WORDS
        for word in ("not", "no", "never"):
            assert word not in STOP_WORDS


# ---------------------------------------------------------------------------
# build_fts_query
# ---------------------------------------------------------------------------


class TestBuildFtsQuery:
    def test_or_join_quoted(self):
        assert build_fts_query(["jwt", "auth"]) == '"jwt" OR "auth"'

    def test_single_term(self):
        assert build_fts_query(["jwt"]) == '"jwt"'

    def test_empty_returns_none(self):
        assert build_fts_query([]) is None
        assert build_fts_query(["", ""]) is None

    def test_caps_terms(self):
        terms = [f"t{i}" for i in range(20)]
        expr = build_fts_query(terms)
        assert expr.count(" OR ") == MAX_QUERY_TERMS - 1
        assert '"t11"' in expr
        assert '"t12"' not in expr

    def test_escapes_quotes(self):
        assert build_fts_query(['say"hi']) == '"say""hi"'


# ---------------------------------------------------------------------------
# Case-insensitive helpers
# ---------------------------------------------------------------------------


class TestUniqueLower:
    def test_first_spelling_wins(self):
        assert unique_lower_preserve_order(["Auth", "auth", "JWT", "jwt"]) == ["Auth", "JWT"]

    def test_trims_and_drops_blanks(self):
        assert unique_lower_preserve_order([" a ", "", "  ", "b"]) == ["a", "b"]


class TestMergeTagValues:
    def test_merges_explicit_and_extra(self):
        assert merge_tag_values("auth, jwt", ["JWT", "api"]) == "auth,jwt,api"

    def test_none_explicit(self):
        assert merge_tag_values(None, ["x"]) == "x"

    def test_empty(self):
        assert merge_tag_values("", []) == ""

    @pytest.mark.parametrize("raw,expected", [
        ("a,,b", "a,b"),
        (" a , A ", "a"),
    ])
    def test_normalizes(self, raw, expected):
        assert merge_tag_values(raw) == expected
