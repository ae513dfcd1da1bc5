"""
Tests for machine_memory.similarity — Jaccard, negation, fact comparison.
"""

import pytest

from machine_memory.similarity import (
    compare_facts,
    has_negation,
    jaccard,
    term_set,
)


class TestJaccard:
    def test_identical(self):
        assert jaccard({"a", "b"}, {"a", "b"}) == 1.0

    def test_disjoint(self):
        assert jaccard({"a"}, {"b"}) == 0.0

    def test_partial(self):
        assert jaccard({"a", "b", "c"}, {"b", "c", "d"}) == 0.5

    def test_both_empty(self):
        assert jaccard(set(), set()) == 1.0

    def test_one_empty(self):
        assert jaccard({"a"}, set()) == 0.0

    def test_rounded(self):
        assert jaccard({"a"}, {"a", "b", "c"}) == 0.333

    def test_term_set(self):
        assert term_set("The JWT and the jwt") == {"jwt"}

    @pytest.mark.parametrize("a,b", [
        ({"a", "b", "c"}, {"b", "c", "d"}),
        ({"jwt"}, {"jwt", "rs256", "auth"}),
        ({"x"}, set()),
        (set(), set()),
    ])
    def test_symmetric(self, a, b):
        assert jaccard(a, b) == jaccard(b, a)

    @pytest.mark.parametrize("terms", [{"a"}, {"cache", "redis"}, {"x", "y", "z"}])
    def test_self_similarity(self, terms):
        assert jaccard(terms, terms) == 1.0


class TestNegation:
    @pytest.mark.parametrize("text", [
        "Do not commit secrets",
        "no globals",
        "Never push to main",
        "builds without cache",
        "We cannot use eval",
        "you can't skip tests",
    ])
    def test_detects(self, text):
        assert has_negation(text)

    @pytest.mark.parametrize("text", ["nothing here", "notable change", "knot tying", ""])
    def test_word_boundaries(self, text):
        assert not has_negation(text)


class TestCompareFacts:
    def test_consistent(self):
        result = compare_facts(
            "Auth tokens are signed with RS256",
            "Auth tokens signed with RS256 keys",
        )
        assert not result.conflict
        assert result.similarity >= 0.35
        assert result.added_terms == ["keys"]
        assert result.removed_terms == []

    def test_negation_conflict(self):
        result = compare_facts("Cache API responses", "Do not cache API responses")
        assert result.negation_mismatch
        assert result.conflict

    def test_low_similarity_conflict(self):
        result = compare_facts("Use postgres for storage", "Deploy on fridays")
        assert result.similarity < 0.35
        assert result.conflict
        assert not result.negation_mismatch

    def test_threshold_parameter(self):
        result = compare_facts("alpha beta gamma", "alpha delta epsilon", conflict_threshold=0.1)
        assert result.similarity == 0.2
        assert not result.conflict

    def test_term_diffs_capped(self):
        stored = " ".join(f"s{i}x" for i in range(20))
        candidate = " ".join(f"c{i}x" for i in range(20))
        result = compare_facts(stored, candidate)
        assert len(result.added_terms) == 12
        assert len(result.removed_terms) == 12
        assert result.added_terms[0] == "c0x"

    def test_to_dict_keys(self):
        d = compare_facts("a bb", "a bb").to_dict()
        assert set(d) == {
            "similarity", "conflict", "negation_mismatch",
            "added_terms", "removed_terms",
        }

    def test_negated_statement_conflicts_despite_overlap(self):
        result = compare_facts(
            "the cache is invalidated on writes",
            "the cache is not invalidated on writes",
        )
        assert result.similarity >= 0.35
        assert result.negation_mismatch
        assert result.conflict
        assert result.added_terms == ["not"]
