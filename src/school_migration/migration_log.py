"""school_migration.migration_log

Durable audit record of migration runs (table ``migration_log``).

Lifecycle of one record:
    create_run    -> status 'running', committed before any row is parsed
    append_error  -> one RowError appended and committed per failed row
    finalize_run  -> counters, terminal status and (live runs only) the
                     credential report, written exactly once

A run whose process dies stays 'running'; the executor treats young
'running' records as an advisory lock and old ones as stale.

Every write commits on its own, so the store should be given a connection
that is not shared with an open row transaction.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

import psycopg
from psycopg.types.json import Jsonb

from school_migration.credentials import CredentialEntry
from school_migration.shared import (
    LogAlreadyFinalizedError,
    LogNotFoundError,
    RowError,
    RunCounters,
)

log = logging.getLogger(__name__)


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class MigrationLogRecord:
    id: str
    status: RunStatus
    dry_run: bool
    started_at: datetime
    completed_at: datetime | None = None
    source_name: str | None = None
    performed_by: str | None = None
    counters: RunCounters = field(default_factory=RunCounters)
    errors: list[RowError] = field(default_factory=list)
    credentials: list[CredentialEntry] | None = field(default=None, repr=False)
    failure_reason: str | None = None


class MigrationLogStore(Protocol):
    def create_run(
        self, dry_run: bool, source_name: str | None, performed_by: str | None
    ) -> str: ...

    def append_error(self, log_id: str, error: RowError) -> None: ...

    def finalize_run(
        self,
        log_id: str,
        counters: RunCounters,
        status: RunStatus,
        credentials: list[CredentialEntry] | None = None,
        failure_reason: str | None = None,
    ) -> None: ...

    def get_run(self, log_id: str) -> MigrationLogRecord: ...

    def list_runs(self) -> list[MigrationLogRecord]: ...

    def running_runs(self) -> list[MigrationLogRecord]: ...


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

_COUNTER_COLUMNS = tuple(RunCounters.__dataclass_fields__)

_SELECT_COLUMNS = (
    "id, status, dry_run, started_at, completed_at, source_name, performed_by, "
    + ", ".join(_COUNTER_COLUMNS)
    + ", error_log, report_data, failure_reason"
)


def _record_from_row(row: tuple) -> MigrationLogRecord:
    (log_id, status, dry_run, started_at, completed_at, source_name, performed_by) = row[:7]
    n = len(_COUNTER_COLUMNS)
    counter_values = row[7:7 + n]
    error_log, report_data, failure_reason = row[7 + n:]
    credentials = None
    if report_data is not None:
        credentials = [
            CredentialEntry.from_dict(c) for c in (report_data.get("credentials") or [])
        ]
    return MigrationLogRecord(
        id=str(log_id),
        status=RunStatus(status),
        dry_run=bool(dry_run),
        started_at=started_at,
        completed_at=completed_at,
        source_name=source_name,
        performed_by=performed_by,
        counters=RunCounters.from_dict(dict(zip(_COUNTER_COLUMNS, counter_values))),
        errors=[RowError.from_dict(e) for e in (error_log or [])],
        credentials=credentials,
        failure_reason=failure_reason,
    )


class PostgresMigrationLogStore:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def create_run(
        self, dry_run: bool, source_name: str | None = None, performed_by: str | None = None
    ) -> str:
        row = self._conn.execute(
            """
            INSERT INTO migration_log (status, dry_run, source_name, performed_by)
            VALUES ('running', %s, %s, %s)
            RETURNING id
            """,
            (dry_run, source_name, performed_by),
        ).fetchone()
        self._conn.commit()
        log.info("migration log %s created (dry_run=%s)", row[0], dry_run)
        return str(row[0])

    def append_error(self, log_id: str, error: RowError) -> None:
        cur = self._conn.execute(
            """
            UPDATE migration_log
            SET error_log = error_log || %s
            WHERE id = %s AND status = 'running'
            """,
            (Jsonb([error.to_dict()]), log_id),
        )
        if cur.rowcount == 0:
            self._conn.rollback()
            self._raise_not_running(log_id)
        self._conn.commit()

    def finalize_run(
        self,
        log_id: str,
        counters: RunCounters,
        status: RunStatus,
        credentials: list[CredentialEntry] | None = None,
        failure_reason: str | None = None,
    ) -> None:
        if status is RunStatus.RUNNING:
            raise ValueError("finalize_run requires a terminal status")
        values = counters.to_dict()
        set_counters = ", ".join(f"{c} = %({c})s" for c in _COUNTER_COLUMNS)
        report_data = None
        if credentials is not None:
            report_data = Jsonb({"credentials": [c.to_dict() for c in credentials]})
        cur = self._conn.execute(
            f"""
            UPDATE migration_log
            SET status = %(status)s,
                completed_at = now(),
                {set_counters},
                report_data = %(report_data)s,
                failure_reason = %(failure_reason)s
            WHERE id = %(id)s AND status = 'running'
            """,
            {
                **{c: values[c] for c in _COUNTER_COLUMNS},
                "status": status.value,
                "report_data": report_data,
                "failure_reason": failure_reason,
                "id": log_id,
            },
        )
        if cur.rowcount == 0:
            self._conn.rollback()
            self._raise_not_running(log_id)
        self._conn.commit()
        log.info("migration log %s finalized as %s", log_id, status.value)

    def get_run(self, log_id: str) -> MigrationLogRecord:
        row = self._conn.execute(
            f"SELECT {_SELECT_COLUMNS} FROM migration_log WHERE id = %s", (log_id,)
        ).fetchone()
        if row is None:
            raise LogNotFoundError(f"migration log {log_id} not found")
        return _record_from_row(row)

    def list_runs(self) -> list[MigrationLogRecord]:
        rows = self._conn.execute(
            f"SELECT {_SELECT_COLUMNS} FROM migration_log ORDER BY started_at DESC, id"
        ).fetchall()
        return [_record_from_row(r) for r in rows]

    def running_runs(self) -> list[MigrationLogRecord]:
        rows = self._conn.execute(
            f"""
            SELECT {_SELECT_COLUMNS} FROM migration_log
            WHERE status = 'running'
            ORDER BY started_at
            """
        ).fetchall()
        return [_record_from_row(r) for r in rows]

    def _raise_not_running(self, log_id: str) -> None:
        exists = self._conn.execute(
            "SELECT 1 FROM migration_log WHERE id = %s", (log_id,)
        ).fetchone()
        self._conn.rollback()
        if exists is None:
            raise LogNotFoundError(f"migration log {log_id} not found")
        raise LogAlreadyFinalizedError(f"migration log {log_id} is already finalized")

