"""
Tests for machine_memory.types — record model, aliases, parsing helpers.
"""

import json

import pytest

from machine_memory.errors import ValidationError
from machine_memory.types import (
    CERTAINTY_LEVELS,
    MEMORY_TYPES,
    MemoryRecord,
    ScoredRecord,
    SearchFilters,
    canonical_certainty,
    certainty_storage_variants,
    normalize_certainty,
    parse_id_spec,
    parse_refs_value,
    parse_stored_refs,
    parse_tags,
    require_certainty,
    require_memory_type,
    require_status,
)


class TestCertaintyAliases:
    @pytest.mark.parametrize("alias,canonical", [
        ("hard", "verified"),
        ("soft", "inferred"),
        ("uncertain", "speculative"),
        ("Verified", "verified"),
        (" inferred ", "inferred"),
    ])
    def test_canonical(self, alias, canonical):
        assert canonical_certainty(alias) == canonical

    def test_unknown_is_none(self):
        assert canonical_certainty("maybe") is None
        assert canonical_certainty(None) is None

    def test_normalize_falls_back(self):
        assert normalize_certainty("maybe") == "inferred"
        assert normalize_certainty("maybe", fallback="speculative") == "speculative"

    def test_storage_variants(self):
        assert certainty_storage_variants("verified") == ["verified", "hard"]

    def test_require_certainty_accepts_alias(self):
        assert require_certainty("soft") == "inferred"

    def test_require_certainty_rejects(self):
        with pytest.raises(ValidationError) as exc:
            require_certainty("maybe")
        assert exc.value.details["expected"] == list(CERTAINTY_LEVELS)


class TestEnums:
    def test_memory_types(self):
        for t in MEMORY_TYPES:
            assert require_memory_type(t) == t
        with pytest.raises(ValidationError):
            require_memory_type("note")

    def test_status(self):
        assert require_status("superseded_by") == "superseded_by"
        with pytest.raises(ValidationError):
            require_status("archived")


class TestParseIdSpec:
    def test_single(self):
        assert parse_id_spec("3") == [3]

    def test_list_dedup_order(self):
        assert parse_id_spec("9, 3,9,7") == [9, 3, 7]

    def test_int_and_list(self):
        assert parse_id_spec(4) == [4]
        assert parse_id_spec([1, "2"]) == [1, 2]

    def test_leading_zero(self):
        assert parse_id_spec("03") == [3]

    @pytest.mark.parametrize("raw", ["", None, "abc", "0", "-1", "1,x", "1.5", True, [0]])
    def test_invalid(self, raw):
        with pytest.raises(ValidationError):
            parse_id_spec(raw)


class TestParseTags:
    def test_split_and_trim(self):
        assert parse_tags(" a, b ,,c ") == ["a", "b", "c"]

    def test_empty(self):
        assert parse_tags("") == []
        assert parse_tags(None) == []


class TestRefs:
    def test_stored_json_array(self):
        parsed = parse_stored_refs('["a.py", "b.py"]')
        assert parsed.refs == ["a.py", "b.py"]
        assert not parsed.malformed

    def test_stored_legacy_csv(self):
        parsed = parse_stored_refs("a.py, b.py")
        assert parsed.refs == ["a.py", "b.py"]
        assert parsed.malformed

    def test_stored_mixed_array(self):
        parsed = parse_stored_refs('["a.py", 3]')
        assert parsed.refs == ["a.py"]
        assert parsed.malformed

    def test_stored_object(self):
        parsed = parse_stored_refs('{"a": 1}')
        assert parsed.refs == []
        assert parsed.malformed

    def test_stored_empty(self):
        assert parse_stored_refs("").malformed
        assert parse_stored_refs(None).malformed

    def test_value_json(self):
        assert parse_refs_value('["https://x"]') == ["https://x"]

    def test_value_csv(self):
        assert parse_refs_value("a, b") == ["a", "b"]

    def test_value_list(self):
        assert parse_refs_value(["a"]) == ["a"]

    def test_value_invalid(self):
        with pytest.raises(ValidationError):
            parse_refs_value("  ")
        with pytest.raises(ValidationError):
            parse_refs_value(["a", 1])


class TestMemoryRecord:
    def _row(self, **overrides):
        row = {
            "id": 1, "content": "c", "tags": None, "context": None,
            "memory_type": "convention", "certainty": "hard",
            "status": "active", "superseded_by": None,
            "source_agent": None, "last_updated_by": None,
            "update_count": None, "refs": "x.py,y.py",
            "expires_after_days": None,
            "created_at": "2024-01-01 00:00:00", "updated_at": None,
        }
        row.update(overrides)
        return row

    def test_from_row_normalizes(self):
        rec = MemoryRecord.from_row(self._row())
        assert rec.certainty == "verified"
        assert rec.tags == ""
        assert rec.update_count == 0
        assert rec.refs == ["x.py", "y.py"]
        assert rec.refs_malformed

    def test_from_row_unknown_enums(self):
        rec = MemoryRecord.from_row(self._row(memory_type="bogus", status="weird"))
        assert rec.memory_type == "convention"
        assert rec.status == "active"

    def test_to_dict_hides_internal_flag(self):
        rec = MemoryRecord.from_row(self._row())
        d = rec.to_dict()
        assert "refs_malformed" not in d
        assert d["refs"] == ["x.py", "y.py"]
        json.dumps(d)

    def test_tag_list_and_dedup_key(self):
        rec = MemoryRecord(content="x", tags="a, b", context="ctx")
        assert rec.tag_list == ["a", "b"]
        assert rec.dedup_key == ("x", "a, b", "ctx")

    def test_scored_to_dict(self):
        scored = ScoredRecord(MemoryRecord(id=2, content="x"), 12.5, ["index"])
        d = scored.to_dict()
        assert d["id"] == 2
        assert d["score"] == 12.5
        assert d["found_via"] == ["index"]


class TestSearchFilters:
    def test_canonicalizes_certainty(self):
        assert SearchFilters(certainty="hard").certainty == "verified"

    def test_rejects_bad_values(self):
        with pytest.raises(ValidationError):
            SearchFilters(memory_type="note")
        with pytest.raises(ValidationError):
            SearchFilters(status="gone")

    def test_to_dict(self):
        d = SearchFilters(tag="auth").to_dict()
        assert d == {
            "tags": "auth", "type": None, "certainty": None,
            "status": None, "include_deprecated": False,
        }
