"""school_migration.api

Invocation surface: plain functions over psycopg connections that return
JSON-ready dicts. The CLI and any admin front end call these.

    run_migration        -> {logId, status, result:{...}}
    list_logs            -> [{id, startedAt, status, dryRun, usersCreated, schoolsCreated}]
    get_log              -> {totalRows, validRows, skippedRows, failedRows, errorLog, reportData?}
    list_migrated_users  -> {total, users:[...]}
    consolidate          -> consolidation counters

The migration log always gets its own autocommit connection: the caller's
``log_conn``, or one opened here with the row connection's parameters. The
log commits after every error and must stay writable when the row
connection is lost.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import psycopg

from school_migration.consolidate import ConsolidationCounters, run_consolidation
from school_migration.executor import MigrationExecutor, MigrationResult
from school_migration.migration_log import MigrationLogRecord, PostgresMigrationLogStore
from school_migration.settings import MigrationSettings
from school_migration.shared import RejectWriter
from school_migration.storage import NullWriter, PostgresIdentityDirectory, PostgresWriter


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def open_log_connection(conn: psycopg.Connection) -> psycopg.Connection:
    """Open an autocommit connection to the same database as ``conn``."""
    params = {}
    # info.dsn leaves the password out
    if conn.info.password:
        params["password"] = conn.info.password
    return psycopg.connect(conn.info.dsn, autocommit=True, **params)


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------

def execute_migration(
    conn: psycopg.Connection,
    csv_content: str | bytes,
    dry_run: bool = False,
    *,
    log_conn: psycopg.Connection | None = None,
    settings: MigrationSettings | None = None,
    source_name: str | None = None,
    performed_by: str | None = None,
    rejects: RejectWriter | None = None,
    force: bool = False,
) -> MigrationResult:
    """Build the executor for one run and execute it.

    Raises:
        ConcurrentRunError: if another run is still in progress and
            ``force`` is not set.
    """
    settings = settings or MigrationSettings()
    writer = NullWriter() if dry_run else PostgresWriter(conn, bcrypt_rounds=settings.bcrypt_rounds)
    own_log_conn = log_conn is None
    if own_log_conn:
        log_conn = open_log_connection(conn)
    try:
        executor = MigrationExecutor(
            store=PostgresMigrationLogStore(log_conn),
            directory=PostgresIdentityDirectory(conn),
            writer=writer,
            settings=settings,
        )
        result = executor.execute(
            csv_content,
            dry_run=dry_run,
            source_name=source_name,
            performed_by=performed_by,
            rejects=rejects,
            force=force,
        )
    finally:
        if own_log_conn:
            log_conn.close()
    if dry_run and not (conn.closed or conn.broken):
        # Reads may have opened a transaction; nothing in it is kept.
        conn.rollback()
    return result


def run_migration(
    conn: psycopg.Connection,
    csv_content: str | bytes,
    dry_run: bool = False,
    **kwargs: Any,
) -> dict[str, Any]:
    return execute_migration(conn, csv_content, dry_run, **kwargs).to_dict()


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------

def _summary(record: MigrationLogRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "startedAt": _iso(record.started_at),
        "status": record.status.value,
        "dryRun": record.dry_run,
        "usersCreated": record.counters.users_created,
        "schoolsCreated": record.counters.schools_created,
    }


def list_logs(conn: psycopg.Connection) -> list[dict[str, Any]]:
    """All runs, newest first."""
    return [_summary(r) for r in PostgresMigrationLogStore(conn).list_runs()]


def get_log(conn: psycopg.Connection, log_id: str) -> dict[str, Any]:
    """Detail of one run.

    reportData (the credential report) is present only for live runs that
    finalized.

    Raises:
        LogNotFoundError: for an unknown id.
    """
    record = PostgresMigrationLogStore(conn).get_run(log_id)
    out: dict[str, Any] = {
        **_summary(record),
        "completedAt": _iso(record.completed_at),
        "sourceName": record.source_name,
        "performedBy": record.performed_by,
        "totalRows": record.counters.total_rows,
        "processedRows": record.counters.processed_rows,
        "validRows": record.counters.valid_rows,
        "skippedRows": record.counters.skipped_rows,
        "failedRows": record.counters.failed_rows,
        "errorLog": [e.to_dict() for e in record.errors],
    }
    if record.failure_reason:
        out["failureReason"] = record.failure_reason
    if record.credentials is not None:
        out["reportData"] = {"credentials": [c.to_dict() for c in record.credentials]}
    return out


# ---------------------------------------------------------------------------
# Migrated users
# ---------------------------------------------------------------------------

def list_migrated_users(conn: psycopg.Connection) -> dict[str, Any]:
    rows = conn.execute(
        """
        SELECT id, email, first_name, last_name, migrated_at, migrated_from,
               needs_evidence_resubmission
        FROM users
        WHERE is_migrated
        ORDER BY migrated_at DESC, email
        """
    ).fetchall()
    users = [
        {
            "id": str(user_id),
            "email": email,
            "firstName": first_name,
            "lastName": last_name,
            "migratedAt": _iso(migrated_at),
            "legacyUserId": legacy_id,
            "needsEvidenceResubmission": bool(needs_resubmission),
        }
        for user_id, email, first_name, last_name, migrated_at, legacy_id, needs_resubmission
        in rows
    ]
    return {"total": len(users), "users": users}


# ---------------------------------------------------------------------------
# Consolidation
# ---------------------------------------------------------------------------

def execute_consolidation(conn: psycopg.Connection, dry_run: bool = False) -> ConsolidationCounters:
    """Run the consolidator and commit, or roll back when dry_run is set."""
    try:
        ctrs = run_consolidation(conn)
    except Exception:
        conn.rollback()
        raise
    if dry_run:
        conn.rollback()
    else:
        conn.commit()
    return ctrs


def consolidate(conn: psycopg.Connection, dry_run: bool = False) -> dict[str, Any]:
    return execute_consolidation(conn, dry_run).to_dict()
