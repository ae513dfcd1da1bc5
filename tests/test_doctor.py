"""
Tests for machine_memory.doctor — hygiene sweep and remediation commands.
"""

import pytest

from machine_memory.doctor import (
    DoctorReport,
    detect_malformed_refs,
    detect_stale_status_overlaps,
    detect_tag_hygiene,
    diagnose,
    normalized_tag_value,
    run_doctor,
)
from machine_memory.store import MemoryStore
from machine_memory.types import MemoryRecord


class TestNormalizedTagValue:
    @pytest.mark.parametrize("raw,expected", [
        ("auth,jwt", "auth,jwt"),
        (" auth , jwt ", "auth,jwt"),
        ("auth,,Auth", "auth"),
        ("", ""),
    ])
    def test_values(self, raw, expected):
        assert normalized_tag_value(raw) == expected


class TestStaleStatus:
    def test_older_status_flagged(self):
        records = [
            MemoryRecord(id=5, content="deploy green", memory_type="status", tags="deploy"),
            MemoryRecord(id=2, content="deploy red", memory_type="status", tags="Deploy,ci"),
        ]
        findings = detect_stale_status_overlaps(records)
        assert len(findings) == 1
        f = findings[0]
        assert f.stale_id == 2
        assert f.superseded_by == 5
        assert f.shared_tags == ["deploy"]
        assert f.suggested_command == "machine-memory deprecate 2 --superseded-by 5"

    def test_non_status_ignored(self):
        records = [
            MemoryRecord(id=5, content="a", memory_type="status", tags="x"),
            MemoryRecord(id=2, content="b", memory_type="decision", tags="x"),
        ]
        assert detect_stale_status_overlaps(records) == []

    def test_untagged_status_ignored(self):
        records = [
            MemoryRecord(id=5, content="a", memory_type="status"),
            MemoryRecord(id=2, content="b", memory_type="status"),
        ]
        assert detect_stale_status_overlaps(records) == []


class TestTagHygiene:
    def test_empty_tags(self):
        findings = detect_tag_hygiene([MemoryRecord(id=3, content="Use pnpm")])
        assert findings[0].kind == "empty_tags"
        assert findings[0].suggested_command == (
            "machine-memory update 3 'Use pnpm' --tags \"<tag1,tag2>\""
        )

    def test_non_normalized_tags(self):
        findings = detect_tag_hygiene([MemoryRecord(id=4, content="x", tags="a, A ,b")])
        assert findings[0].kind == "invalid_tags"
        assert findings[0].normalized_tags == "a,b"
        assert findings[0].suggested_command == "machine-memory update 4 x --tags a,b"

    def test_clean_tags(self):
        assert detect_tag_hygiene([MemoryRecord(id=1, content="x", tags="a,b")]) == []


class TestMalformedRefs:
    def test_flagged_with_salvaged_refs(self):
        rec = MemoryRecord(id=6, content="x", refs=["a.py", "b.py"], refs_malformed=True)
        findings = detect_malformed_refs([rec])
        assert findings[0].suggested_refs == ["a.py", "b.py"]
        assert "--refs" in findings[0].suggested_command
        assert '["a.py", "b.py"]' in findings[0].suggested_command

    def test_well_formed_ignored(self):
        assert detect_malformed_refs([MemoryRecord(id=1, content="x", refs=["a"])]) == []


class TestDiagnose:
    def test_report_shape(self):
        records = [
            MemoryRecord(id=3, content="same", tags="t"),
            MemoryRecord(id=1, content="same", tags="t"),
        ]
        report = diagnose(records)
        d = report.to_dict()
        assert d["summary"]["checked"] == 2
        assert d["summary"]["exact_duplicates"] == 1
        assert d["findings"]["exact_duplicates"][0]["keep_id"] == 3
        assert "machine-memory delete 1" in d["suggested_commands"]

    def test_suggested_commands_deduplicated(self):
        report = DoctorReport()
        report.tag_hygiene = detect_tag_hygiene([
            MemoryRecord(id=1, content="x"),
        ]) * 2
        assert len(report.suggested_commands) == 1
        assert report.finding_count == 2

    def test_inactive_records_not_reported_as_duplicates(self):
        records = [
            MemoryRecord(id=2, content="same", tags="t"),
            MemoryRecord(id=1, content="same", tags="t", status="deprecated"),
        ]
        report = diagnose(records)
        assert report.exact_duplicates == []
        assert report.near_duplicates == []

    def test_empty(self):
        report = diagnose([])
        assert report.finding_count == 0
        assert report.suggested_commands == []


class TestRunDoctor:
    def test_only_active_newest_first(self, tmp_path):
        with MemoryStore(str(tmp_path / "m.db")) as store:
            old = store.insert(MemoryRecord(content="ci is red", memory_type="status", tags="ci"))
            new = store.insert(MemoryRecord(content="ci is green", memory_type="status", tags="ci"))
            gone = store.insert(MemoryRecord(content="ci flaky", memory_type="status", tags="ci"))
            store.set_status(gone.id, "deprecated")
            store._conn.execute(
                "UPDATE memories SET updated_at = '2020-01-01 00:00:00' WHERE id = ?", (old.id,)
            )
            report = run_doctor(store)
        assert report.checked == 2
        assert [(f.stale_id, f.superseded_by) for f in report.stale_status_overlaps] == [
            (old.id, new.id)
        ]
