"""Integration tests for duplicate school consolidation against a live DB."""

from __future__ import annotations

from datetime import datetime, timezone

import psycopg

from school_migration.api import consolidate, execute_consolidation


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _ts(day: int) -> datetime:
    return datetime(2023, 3, day, tzinfo=timezone.utc)


def _insert_school(conn: psycopg.Connection, name: str, created_at: datetime, **cols) -> str:
    values = {"name": name, "country": "United Kingdom", "created_at": created_at, **cols}
    columns = ", ".join(values)
    placeholders = ", ".join(f"%({c})s" for c in values)
    return conn.execute(
        f"INSERT INTO schools ({columns}) VALUES ({placeholders}) RETURNING id", values
    ).fetchone()[0]


def _insert_user(conn: psycopg.Connection, email: str) -> str:
    return conn.execute(
        "INSERT INTO users (email) VALUES (%s) RETURNING id", (email,)
    ).fetchone()[0]


def _add_member(conn: psycopg.Connection, school_id: str, user_id: str, role: str = "teacher") -> None:
    conn.execute(
        "INSERT INTO school_users (school_id, user_id, role) VALUES (%s, %s, %s)",
        (school_id, user_id, role),
    )


def _add_evidence(conn: psycopg.Connection, school_id: str, stage: str = "inspire") -> str:
    return conn.execute(
        "INSERT INTO evidence (school_id, stage, title) VALUES (%s, %s, 'poster') RETURNING id",
        (school_id, stage),
    ).fetchone()[0]


def _greenfield(conn: psycopg.Connection) -> dict:
    """Two spellings of one school sharing a member, plus an unrelated school."""
    older = _insert_school(
        conn, " Greenfield Primary ", _ts(1),
        inspire_completed=True, current_stage="inspire", progress_percentage=33,
        current_round=1, legacy_evidence_count=2,
    )
    younger = _insert_school(
        conn, "Greenfield Primary", _ts(5),
        investigate_completed=True, current_stage="investigate", progress_percentage=33,
        current_round=2, legacy_evidence_count=1,
        legacy_district="Leeds", latitude="53.8008", longitude="-1.5491",
    )
    other = _insert_school(conn, "Hillside Academy", _ts(2))

    shared = _insert_user(conn, "shared@example.org")
    only_younger = _insert_user(conn, "younger@example.org")
    _add_member(conn, older, shared, "head_teacher")
    _add_member(conn, younger, shared)
    _add_member(conn, younger, only_younger)
    evidence = _add_evidence(conn, younger, "investigate")
    conn.commit()
    return {
        "older": older,
        "younger": younger,
        "other": other,
        "shared": shared,
        "only_younger": only_younger,
        "evidence": evidence,
    }


def _school_ids(conn: psycopg.Connection) -> set[str]:
    return {r[0] for r in conn.execute("SELECT id FROM schools").fetchall()}


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestConsolidation:
    def test_greenfield_merge(self, db_conn):
        conn, _ = db_conn
        ids = _greenfield(conn)

        out = consolidate(conn)

        assert out["groups_found"] == 1
        assert out["groups_merged"] == 1
        assert out["schools_deleted"] == 1
        assert out["memberships_moved"] == 1
        assert out["memberships_deleted"] == 1
        assert out["evidence_moved"] == 1
        assert out["db_errors"] == 0
        assert _school_ids(conn) == {ids["older"], ids["other"]}

    def test_memberships_end_on_survivor_without_duplicates(self, db_conn):
        conn, _ = db_conn
        ids = _greenfield(conn)
        consolidate(conn)

        rows = conn.execute(
            "SELECT user_id, role FROM school_users WHERE school_id = %s ORDER BY user_id",
            (ids["older"],),
        ).fetchall()
        assert dict(rows) == {ids["shared"]: "head_teacher", ids["only_younger"]: "teacher"}
        assert conn.execute("SELECT count(*) FROM school_users").fetchone()[0] == 2

    def test_evidence_moved(self, db_conn):
        conn, _ = db_conn
        ids = _greenfield(conn)
        consolidate(conn)

        school_id = conn.execute(
            "SELECT school_id FROM evidence WHERE id = %s", (ids["evidence"],)
        ).fetchone()[0]
        assert school_id == ids["older"]

    def test_progress_merged_forward_and_nulls_filled(self, db_conn):
        conn, _ = db_conn
        ids = _greenfield(conn)
        consolidate(conn)

        row = conn.execute(
            """
            SELECT name, inspire_completed, investigate_completed, act_completed,
                   current_stage, progress_percentage, current_round,
                   legacy_evidence_count, legacy_district, latitude, longitude
            FROM schools WHERE id = %s
            """,
            (ids["older"],),
        ).fetchone()
        (name, inspire, investigate, act, stage, progress, round_number,
         evidence, district, lat, lng) = row
        assert name == " Greenfield Primary "
        assert (inspire, investigate, act) == (True, True, False)
        assert stage == "investigate"
        assert progress == 66
        assert round_number == 2
        assert evidence == 2
        assert district == "Leeds"
        assert str(lat) == "53.8008"
        assert str(lng) == "-1.5491"

    def test_survivor_values_not_overwritten(self, db_conn):
        conn, _ = db_conn
        survivor = _insert_school(conn, "St Mary's", _ts(1), legacy_district="York")
        _insert_school(conn, "st mary's", _ts(2), legacy_district="Leeds", address="1 High St")
        conn.commit()

        consolidate(conn)

        district, address = conn.execute(
            "SELECT legacy_district, address FROM schools WHERE id = %s", (survivor,)
        ).fetchone()
        assert district == "York"
        assert address == "1 High St"

    def test_three_way_group(self, db_conn):
        conn, _ = db_conn
        survivor = _insert_school(conn, "Hillside", _ts(2))
        _insert_school(conn, "HILLSIDE", _ts(3))
        _insert_school(conn, "hillside ", _ts(4))
        conn.commit()

        out = consolidate(conn)
        assert out["groups_found"] == 1
        assert out["schools_deleted"] == 2
        assert _school_ids(conn) == {survivor}

    def test_second_run_is_noop(self, db_conn):
        conn, _ = db_conn
        _greenfield(conn)
        consolidate(conn)
        before = conn.execute(
            "SELECT id, progress_percentage, current_round FROM schools ORDER BY id"
        ).fetchall()

        out = consolidate(conn)

        assert out["groups_found"] == 0
        assert out["schools_deleted"] == 0
        assert out["memberships_moved"] == 0
        after = conn.execute(
            "SELECT id, progress_percentage, current_round FROM schools ORDER BY id"
        ).fetchall()
        assert after == before

    def test_dry_run_changes_nothing(self, db_conn):
        conn, _ = db_conn
        ids = _greenfield(conn)

        ctrs = execute_consolidation(conn, dry_run=True)

        assert ctrs.groups_merged == 1
        assert ctrs.schools_deleted == 1
        assert ids["younger"] in _school_ids(conn)
        assert conn.execute(
            "SELECT count(*) FROM school_users WHERE school_id = %s", (ids["younger"],)
        ).fetchone()[0] == 2

    def test_no_duplicates(self, db_conn):
        conn, _ = db_conn
        _insert_school(conn, "Greenfield Primary", _ts(1))
        _insert_school(conn, "Hillside Academy", _ts(2))
        conn.commit()
        out = consolidate(conn)
        assert out["groups_found"] == 0
        assert out["groups_merged"] == 0


class TestCli:
    def test_consolidate_mode(self, db_conn, tmp_path, monkeypatch):
        conn, dsn = db_conn
        ids = _greenfield(conn)
        monkeypatch.chdir(tmp_path)

        from click.testing import CliRunner
        from school_migration.cli import main

        result = CliRunner().invoke(main, [
            "--mode", "consolidate",
            "--db-dsn", dsn,
            "--run-id", "test-consolidate",
        ])
        assert result.exit_code == 0, f"CLI failed:\n{result.output}"
        assert "Duplicate School Consolidation Report" in result.output
        assert (tmp_path / "artifacts" / "reports" / "test-consolidate.json").exists()
        assert _school_ids(conn) == {ids["older"], ids["other"]}
