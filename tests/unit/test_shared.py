"""Unit tests for school_migration.shared."""

from __future__ import annotations

import csv
import json

from school_migration.shared import (
    MigrationError,
    RejectWriter,
    RowError,
    RunCounters,
    StorageUnavailableError,
    UnreadableSourceError,
    normalize_headers,
    write_run_report,
)


class TestExceptions:
    def test_hierarchy(self):
        assert issubclass(UnreadableSourceError, MigrationError)
        assert issubclass(StorageUnavailableError, MigrationError)


class TestRowError:
    def test_dict_round_trip(self):
        err = RowError(row=4, email="N/A", reason="Missing email")
        assert err.to_dict() == {"row": 4, "email": "N/A", "reason": "Missing email"}
        assert RowError.from_dict(err.to_dict()) == err


class TestRunCounters:
    def test_to_dict_keys(self):
        d = RunCounters(processed_rows=3, valid_rows=1).to_dict()
        assert set(d) == {
            "total_rows", "processed_rows", "valid_rows", "skipped_rows", "failed_rows",
            "users_created", "schools_created", "users_to_create", "schools_to_create",
        }
        assert d["processed_rows"] == 3

    def test_from_dict_fills_missing_and_nulls(self):
        c = RunCounters.from_dict({"valid_rows": 2, "failed_rows": None})
        assert c.valid_rows == 2
        assert c.failed_rows == 0
        assert c.total_rows == 0


class TestRejectWriter:
    def test_lazy_open(self, tmp_path):
        path = tmp_path / "rejects" / "r.csv"
        writer = RejectWriter(path)
        writer.close()
        assert not path.exists()
        assert writer.count == 0

    def test_line_and_reason_lead_the_row(self, tmp_path):
        path = tmp_path / "r.csv"
        with RejectWriter(path) as writer:
            writer.write(7, {"user_email": "a@example.org"}, "Missing legacy user id")
            writer.write(9, {"user_email": "b@example.org"}, "No stage_1 data")
        with path.open(encoding="utf-8") as fh:
            header = next(csv.reader(fh))
        assert header == ["_source_line", "_reject_reason", "user_email"]
        rows = list(csv.DictReader(path.open(encoding="utf-8")))
        assert rows[0] == {
            "_source_line": "7",
            "_reject_reason": "Missing legacy user id",
            "user_email": "a@example.org",
        }
        assert rows[1]["_source_line"] == "9"
        assert writer.count == 2


class TestNormalizeHeaders:
    def test_strips(self):
        assert normalize_headers([" user_email ", "stage_1"]) == ["user_email", "stage_1"]


class TestWriteRunReport:
    def test_report_contents(self, tmp_path):
        path = write_run_report(
            "run-1", "2024-01-01T00:00:00", "migrate", True, "completed",
            {"csv_path": "export.csv"}, {"valid_rows": 2},
            report_dir=tmp_path,
        )
        assert path == tmp_path / "run-1.json"
        data = json.loads(path.read_text())
        assert data["run_id"] == "run-1"
        assert data["mode"] == "migrate"
        assert data["dry_run"] is True
        assert data["status"] == "completed"
        assert data["csv_path"] == "export.csv"
        assert data["counters"] == {"valid_rows": 2}

    def test_settings_hash_recorded_when_given(self, tmp_path):
        path = write_run_report(
            "run-2", "2024-01-01T00:00:00", "migrate", False, "completed",
            {}, {}, report_dir=tmp_path, settings_hash="abc123",
        )
        assert json.loads(path.read_text())["settings_hash"] == "abc123"

    def test_settings_hash_omitted_for_defaults(self, tmp_path):
        path = write_run_report(
            "run-3", "2024-01-01T00:00:00", "consolidate", False, "completed",
            {}, {}, report_dir=tmp_path,
        )
        assert "settings_hash" not in json.loads(path.read_text())
