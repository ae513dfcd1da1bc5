"""
Tests for machine_memory.neighborhood — path hints and suggestion merging.
"""

from machine_memory.neighborhood import (
    Neighborhood,
    derive_neighborhood,
    extract_path_terms,
    merge_suggestion_results,
    normalize_path,
)
from machine_memory.types import MemoryRecord, ScoredRecord


def _scored(id, score, via=None):
    return ScoredRecord(MemoryRecord(id=id, content=f"m{id}"), score, list(via or []))


class TestNormalizePath:
    def test_strips_dot_slash_and_backslashes(self):
        assert normalize_path(".\\src\\auth\\jwt.ts") == "src/auth/jwt.ts"
        assert normalize_path(".//a/b.py") == "a/b.py"

    def test_none(self):
        assert normalize_path(None) == ""


class TestDeriveNeighborhood:
    def test_single_file(self):
        n = derive_neighborhood(["./src/auth/jwt.ts"])
        assert n.tag_hints == ["auth"]
        assert n.path_hints == ["src/auth/", "src/auth/%.ts"]

    def test_ignored_segments(self):
        n = derive_neighborhood(["apps/web/tests/login/form.tsx"])
        assert n.tag_hints == ["web", "login"]

    def test_no_extension(self):
        n = derive_neighborhood(["scripts/Makefile"])
        assert n.path_hints == ["scripts/"]

    def test_top_level_file_has_no_hints(self):
        n = derive_neighborhood(["README.md"])
        assert n.tag_hints == []
        assert n.path_hints == []

    def test_dedup_case_insensitive(self):
        n = derive_neighborhood(["src/Auth/a.ts", "src/auth/b.ts"])
        assert n.tag_hints == ["Auth"]
        assert n.path_hints == ["src/Auth/", "src/Auth/%.ts"]

    def test_terms_from_hints(self):
        n = derive_neighborhood(["src/billing/invoice.py"])
        assert "billing" in n.terms
        assert "py" in n.terms

    def test_to_dict(self):
        n = Neighborhood(tag_hints=["a"], path_hints=["x/"])
        assert n.to_dict() == {"tags": ["a"], "paths": ["x/"]}


class TestExtractPathTerms:
    def test_segments_and_pieces(self):
        terms = extract_path_terms(["src/auth/jwt-utils.ts"])
        assert terms == ["auth", "jwt", "utils", "ts"]

    def test_backslashes(self):
        assert extract_path_terms(["db\\pool_manager.go"]) == ["db", "pool", "manager", "go"]


class TestMergeSuggestionResults:
    def test_secondary_gets_bonus(self):
        merged = merge_suggestion_results([], [_scored(1, 10.0)])
        assert merged[0].score == 22.0
        assert merged[0].found_via == ["neighborhood"]

    def test_primary_default_label(self):
        merged = merge_suggestion_results([_scored(1, 5.0)], [])
        assert merged[0].found_via == ["index"]

    def test_shared_id_takes_max_and_unions_labels(self):
        merged = merge_suggestion_results(
            [_scored(1, 50.0, ["index"])],
            [_scored(1, 10.0, ["neighborhood"])],
        )
        assert len(merged) == 1
        assert merged[0].score == 50.0
        assert merged[0].found_via == ["index", "neighborhood"]

    def test_boosted_secondary_can_win(self):
        merged = merge_suggestion_results([_scored(1, 15.0)], [_scored(1, 10.0)])
        assert merged[0].score == 22.0

    def test_sorted_and_limited(self):
        primary = [_scored(i, float(i)) for i in range(1, 6)]
        merged = merge_suggestion_results(primary, [], limit=3)
        assert [s.id for s in merged] == [5, 4, 3]

    def test_inputs_not_mutated(self):
        primary = [_scored(1, 5.0, ["index"])]
        merge_suggestion_results(primary, [_scored(1, 40.0)])
        assert primary[0].score == 5.0
        assert primary[0].found_via == ["index"]
