"""school_migration.storage

psycopg collaborators for the migration executor.

Read side:
    PostgresIdentityDirectory -- existing emails, migrated legacy ids and the
        school index the resolver builds its cache from.

Write side (WriteStrategy):
    PostgresWriter -- live run; every row is its own transaction.
    NullWriter     -- dry run; allocates placeholder ids and writes nothing.

A lost connection surfaces as StorageUnavailableError so the executor can
stop the run. Any other database error propagates as-is and only fails the
row being written.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterator, Protocol

import psycopg

from school_migration.credentials import hash_password
from school_migration.shared import StorageUnavailableError
from school_migration.validation import MigrationCandidate

log = logging.getLogger(__name__)

MIGRATION_VERIFICATION_METHOD = "migration"

# Progress contributed by each completed stage; sums to 100.
STAGE_PROGRESS = {"inspire": 33, "investigate": 33, "act": 34}


# ---------------------------------------------------------------------------
# Connection guard
# ---------------------------------------------------------------------------

def _guarded_execute(conn: psycopg.Connection, sql: str, params: tuple | dict | None = None):
    try:
        return conn.execute(sql, params)
    except psycopg.Error as exc:
        if conn.closed or conn.broken:
            raise StorageUnavailableError(f"database connection lost: {exc}") from exc
        raise


# ---------------------------------------------------------------------------
# Forward-only school progress (shared with consolidate)
# ---------------------------------------------------------------------------

def merge_school_progress(
    conn: psycopg.Connection,
    school_id: str,
    inspire: bool,
    investigate: bool,
    act: bool,
    stage: str,
    round_number: int,
    legacy_evidence_count: int,
) -> None:
    """Move a school's recorded progress forward, never backward.

    Completion flags are OR'd, current stage and round take the maximum,
    legacy evidence count takes the maximum, and progress_percentage is
    recomputed from the resulting flags.
    """
    _guarded_execute(
        conn,
        """
        UPDATE schools SET
            inspire_completed     = inspire_completed OR %(inspire)s,
            investigate_completed = investigate_completed OR %(investigate)s,
            act_completed         = act_completed OR %(act)s,
            progress_percentage   =
                  CASE WHEN inspire_completed OR %(inspire)s THEN %(p_inspire)s ELSE 0 END
                + CASE WHEN investigate_completed OR %(investigate)s THEN %(p_investigate)s ELSE 0 END
                + CASE WHEN act_completed OR %(act)s THEN %(p_act)s ELSE 0 END,
            current_stage = CASE
                WHEN array_position(ARRAY['inspire','investigate','act'], %(stage)s::text)
                   > array_position(ARRAY['inspire','investigate','act'], current_stage)
                THEN %(stage)s::text
                ELSE current_stage
            END,
            current_round         = GREATEST(current_round, %(round)s),
            legacy_evidence_count = GREATEST(legacy_evidence_count, %(evidence)s),
            updated_at            = now()
        WHERE id = %(school_id)s
        """,
        {
            "school_id": school_id,
            "inspire": inspire,
            "investigate": investigate,
            "act": act,
            "stage": stage,
            "round": round_number,
            "evidence": legacy_evidence_count,
            "p_inspire": STAGE_PROGRESS["inspire"],
            "p_investigate": STAGE_PROGRESS["investigate"],
            "p_act": STAGE_PROGRESS["act"],
        },
    )


# ---------------------------------------------------------------------------
# Read collaborators
# ---------------------------------------------------------------------------

class PostgresIdentityDirectory:
    """IdentityLookup + SchoolIndex over the live tables."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def _exists(self, sql: str, params: tuple) -> bool:
        try:
            row = _guarded_execute(self._conn, sql, params).fetchone()
        except psycopg.Error:
            # Leave the connection usable for the next row's lookups.
            self._conn.rollback()
            raise
        return row is not None

    def email_exists(self, email: str) -> bool:
        return self._exists(
            "SELECT 1 FROM users WHERE lower(email) = lower(%s) LIMIT 1", (email,)
        )

    def legacy_id_exists(self, legacy_id: str) -> bool:
        return self._exists(
            "SELECT 1 FROM users WHERE migrated_from = %s LIMIT 1", (legacy_id,)
        )

    def school_index(self) -> Iterator[tuple[str, str, datetime | None]]:
        rows = _guarded_execute(
            self._conn, "SELECT id, name, created_at FROM schools"
        ).fetchall()
        for school_id, name, created_at in rows:
            yield str(school_id), name, created_at


# ---------------------------------------------------------------------------
# Write strategies
# ---------------------------------------------------------------------------

class WriteStrategy(Protocol):
    def create_school(self, candidate: MigrationCandidate, placeholder: str | None) -> str: ...

    def create_user(self, candidate: MigrationCandidate, temporary_password: str) -> str: ...

    def add_membership(self, school_id: str, user_id: str, role: str) -> None: ...

    def record_school_progress(self, school_id: str, candidate: MigrationCandidate) -> None: ...

    def commit_row(self) -> None: ...

    def rollback_row(self) -> None: ...


class NullWriter:
    """Dry-run strategy: no writes, no password hashing."""

    def __init__(self) -> None:
        self._users = 0

    def create_school(self, candidate: MigrationCandidate, placeholder: str | None) -> str:
        return placeholder or f"dry-run-school:{candidate.school_key}"

    def create_user(self, candidate: MigrationCandidate, temporary_password: str) -> str:
        self._users += 1
        return f"dry-run-user-{self._users}"

    def add_membership(self, school_id: str, user_id: str, role: str) -> None:
        pass

    def record_school_progress(self, school_id: str, candidate: MigrationCandidate) -> None:
        pass

    def commit_row(self) -> None:
        pass

    def rollback_row(self) -> None:
        pass


class PostgresWriter:
    """Live strategy. The connection must not be in autocommit mode."""

    def __init__(self, conn: psycopg.Connection, bcrypt_rounds: int = 10) -> None:
        self._conn = conn
        self._bcrypt_rounds = bcrypt_rounds

    def create_school(self, candidate: MigrationCandidate, placeholder: str | None) -> str:
        row = _guarded_execute(
            self._conn,
            """
            INSERT INTO schools
                (name, country, legacy_district, latitude, longitude,
                 is_migrated, migrated_at)
            VALUES (%s, %s, %s, %s, %s, true, now())
            RETURNING id
            """,
            (
                candidate.school_name,
                candidate.country,
                candidate.district or None,
                candidate.latitude,
                candidate.longitude,
            ),
        ).fetchone()
        log.debug("created school %s for %r", row[0], candidate.school_name)
        return str(row[0])

    def create_user(self, candidate: MigrationCandidate, temporary_password: str) -> str:
        password_hash = hash_password(temporary_password, rounds=self._bcrypt_rounds)
        row = _guarded_execute(
            self._conn,
            """
            INSERT INTO users
                (email, first_name, last_name, phone_number, role, password_hash,
                 is_migrated, migrated_from, migrated_at,
                 needs_evidence_resubmission, needs_password_reset)
            VALUES (%s, %s, %s, %s, 'teacher', %s, true, %s, now(), %s, true)
            RETURNING id
            """,
            (
                candidate.email,
                candidate.first_name,
                candidate.last_name,
                candidate.phone_number,
                password_hash,
                candidate.legacy_user_id,
                candidate.has_evidence,
            ),
        ).fetchone()
        return str(row[0])

    def add_membership(self, school_id: str, user_id: str, role: str) -> None:
        _guarded_execute(
            self._conn,
            """
            INSERT INTO school_users
                (school_id, user_id, role, is_verified, verified_at, verification_method)
            VALUES (%s, %s, %s, true, now(), %s)
            """,
            (school_id, user_id, role, MIGRATION_VERIFICATION_METHOD),
        )

    def record_school_progress(self, school_id: str, candidate: MigrationCandidate) -> None:
        merge_school_progress(
            self._conn,
            school_id,
            inspire=candidate.stage1_complete,
            investigate=candidate.stage2_complete,
            act=candidate.stage3_complete,
            stage=candidate.current_stage,
            round_number=candidate.round,
            legacy_evidence_count=candidate.legacy_evidence_count,
        )

    def commit_row(self) -> None:
        try:
            self._conn.commit()
        except psycopg.Error as exc:
            if self._conn.closed or self._conn.broken:
                raise StorageUnavailableError(f"database connection lost: {exc}") from exc
            raise

    def rollback_row(self) -> None:
        try:
            self._conn.rollback()
        except psycopg.Error as exc:
            raise StorageUnavailableError(f"rollback failed: {exc}") from exc
