"""school_migration.executor

Drives one migration run end to end:

    parse -> validate -> resolve -> write (via strategy) -> outcome

Dry and live runs share this pipeline; a dry run only differs by being
handed a NullWriter. Every row ends as exactly one of VALID, SKIPPED or
FAILED, so valid + skipped + failed == processed.

Run state machine (mirrored in migration_log.status):
    Created -> Running -> Completed | Failed

Rows are committed one at a time. A row whose identity lookup or write
raises is rolled back and recorded FAILED; the run carries on. A lost
connection, an unreadable source or any other fault fails the run, but
whatever was counted, logged and committed up to that point is still
finalized.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

import psycopg

from school_migration.credentials import CredentialEntry, generate_temporary_password
from school_migration.legacy_parser import RawRow, parse_rows
from school_migration.migration_log import MigrationLogStore, RunStatus
from school_migration.resolver import SchoolIndex, SchoolResolver
from school_migration.settings import MigrationSettings
from school_migration.shared import (
    ConcurrentRunError,
    RejectWriter,
    RowError,
    RunCounters,
    StorageUnavailableError,
    UnreadableSourceError,
)
from school_migration.storage import WriteStrategy
from school_migration.validation import IdentityLookup, Outcome, validate_row

log = logging.getLogger(__name__)


class IdentityDirectory(IdentityLookup, SchoolIndex, Protocol):
    """Everything the executor reads from storage."""


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class MigrationResult:
    log_id: str
    status: RunStatus
    dry_run: bool
    counters: RunCounters
    errors: list[RowError] = field(default_factory=list)
    credentials: list[CredentialEntry] = field(default_factory=list, repr=False)
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Invocation-surface shape of a finished run."""
        out: dict[str, Any] = {
            "logId": self.log_id,
            "status": self.status.value,
            "result": {
                "processedRows": self.counters.processed_rows,
                "validRows": self.counters.valid_rows,
                "skippedRows": self.counters.skipped_rows,
                "failedRows": self.counters.failed_rows,
                "usersCreated": self.counters.users_created,
                "schoolsCreated": self.counters.schools_created,
            },
        }
        if self.dry_run:
            out["result"]["wouldCreate"] = {
                "users": self.counters.users_to_create,
                "schools": self.counters.schools_to_create,
            }
        if self.failure_reason:
            out["error"] = self.failure_reason
        return out


# ---------------------------------------------------------------------------
# In-run identity claims
# ---------------------------------------------------------------------------

class _ClaimingLookup:
    """Existing identities plus the ones claimed by earlier rows of this run.

    Makes a repeated email or legacy id inside one file fail the same way in
    dry and live runs, even though a dry run never writes the first one.
    """

    def __init__(self, directory: IdentityLookup) -> None:
        self._directory = directory
        self.emails: set[str] = set()
        self.legacy_ids: set[str] = set()

    def email_exists(self, email: str) -> bool:
        return email.lower() in self.emails or self._directory.email_exists(email)

    def legacy_id_exists(self, legacy_id: str) -> bool:
        return legacy_id in self.legacy_ids or self._directory.legacy_id_exists(legacy_id)

    def claim(self, email: str, legacy_id: str) -> None:
        self.emails.add(email.lower())
        self.legacy_ids.add(legacy_id)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class MigrationExecutor:
    def __init__(
        self,
        store: MigrationLogStore,
        directory: IdentityDirectory,
        writer: WriteStrategy,
        settings: MigrationSettings | None = None,
        password_factory: Callable[[int], str] = generate_temporary_password,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._directory = directory
        self._writer = writer
        self._settings = settings or MigrationSettings()
        self._password_factory = password_factory
        self._clock = clock

    # -- advisory lock -------------------------------------------------------

    def check_concurrent_runs(self) -> None:
        """Refuse to start while a recent run is still marked running.

        Raises:
            ConcurrentRunError: if a running log is younger than
                settings.stale_run_minutes.
        """
        threshold = timedelta(minutes=self._settings.stale_run_minutes)
        now = self._clock()
        for record in self._store.running_runs():
            age = now - record.started_at
            if age < threshold:
                raise ConcurrentRunError(
                    f"migration {record.id} is still running "
                    f"(started {record.started_at.isoformat()}); "
                    "wait for it to finish or force the run"
                )
            log.warning(
                "ignoring stale running migration %s (started %s, %d minutes ago)",
                record.id, record.started_at.isoformat(), age.total_seconds() // 60,
            )

    # -- run -----------------------------------------------------------------

    def execute(
        self,
        content: str | bytes,
        dry_run: bool = False,
        source_name: str | None = None,
        performed_by: str | None = None,
        rejects: RejectWriter | None = None,
        force: bool = False,
    ) -> MigrationResult:
        if not force:
            self.check_concurrent_runs()

        log_id = self._store.create_run(dry_run, source_name, performed_by)
        result = MigrationResult(
            log_id=log_id,
            status=RunStatus.RUNNING,
            dry_run=dry_run,
            counters=RunCounters(),
        )
        log.info("migration %s running (dry_run=%s, source=%s)", log_id, dry_run, source_name)

        try:
            # Parsing is restartable; the first pass validates the header
            # and sizes the run.
            result.counters.total_rows = sum(1 for _ in parse_rows(content))
            resolver = SchoolResolver.load(self._directory)
            lookup = _ClaimingLookup(self._directory)
            for raw in parse_rows(content):
                self._process_row(raw, resolver, lookup, result, rejects)
        except (UnreadableSourceError, StorageUnavailableError) as exc:
            result.status = RunStatus.FAILED
            result.failure_reason = str(exc)
            log.error("migration %s failed: %s", log_id, exc)
        except Exception as exc:
            result.status = RunStatus.FAILED
            result.failure_reason = f"unexpected error: {exc!r}"
            log.exception("migration %s failed unexpectedly", log_id)
        else:
            result.status = RunStatus.COMPLETED

        self._store.finalize_run(
            log_id,
            result.counters,
            result.status,
            credentials=None if dry_run else result.credentials,
            failure_reason=result.failure_reason,
        )
        log.info(
            "migration %s %s: processed=%d valid=%d skipped=%d failed=%d",
            log_id,
            result.status.value,
            result.counters.processed_rows,
            result.counters.valid_rows,
            result.counters.skipped_rows,
            result.counters.failed_rows,
        )
        return result

    # -- per row -------------------------------------------------------------

    def _process_row(
        self,
        raw: RawRow,
        resolver: SchoolResolver,
        lookup: _ClaimingLookup,
        result: MigrationResult,
        rejects: RejectWriter | None,
    ) -> None:
        ctrs = result.counters
        try:
            validated = validate_row(raw, lookup, self._settings)
        except psycopg.Error as exc:
            # Statement timeouts and the like; a lost connection arrives as
            # StorageUnavailableError and stops the run instead.
            self._fail_row(raw, f"lookup failed: {exc}", result, rejects)
            return

        if validated.outcome is Outcome.SKIPPED:
            ctrs.processed_rows += 1
            ctrs.skipped_rows += 1
            if rejects:
                rejects.write(raw.line_number, raw.fields, validated.reason or "skipped")
            return

        if validated.outcome is Outcome.FAILED:
            self._fail_row(raw, validated.reason or "invalid row", result, rejects)
            return

        candidate = validated.candidate
        ref = resolver.resolve(candidate)
        password = self._password_factory(self._settings.password_length)
        try:
            if ref.needs_create:
                school_id = self._writer.create_school(candidate, ref.placeholder)
            else:
                school_id = ref.school_id
            user_id = self._writer.create_user(candidate, password)
            self._writer.add_membership(school_id, user_id, resolver.membership_role(ref))
            self._writer.record_school_progress(school_id, candidate)
            self._writer.commit_row()
        except StorageUnavailableError:
            raise
        except Exception as exc:
            self._writer.rollback_row()
            self._fail_row(raw, f"write failed: {exc}", result, rejects)
            return

        # Only committed rows touch run state.
        school_created = ref.needs_create
        if school_created:
            resolver.bind(ref, school_id)
        resolver.record_member(ref)
        lookup.claim(candidate.email, candidate.legacy_user_id)

        ctrs.processed_rows += 1
        ctrs.valid_rows += 1
        ctrs.users_to_create += 1
        ctrs.schools_to_create += int(school_created)
        if not result.dry_run:
            ctrs.users_created += 1
            ctrs.schools_created += int(school_created)
            result.credentials.append(
                CredentialEntry(
                    email=candidate.email,
                    temporary_password=password,
                    school_name=ref.display_name,
                )
            )
        log.debug("row %d migrated %s", raw.line_number, candidate.email)

    def _fail_row(
        self,
        raw: RawRow,
        reason: str,
        result: MigrationResult,
        rejects: RejectWriter | None,
    ) -> None:
        result.counters.processed_rows += 1
        result.counters.failed_rows += 1
        error = RowError(row=raw.line_number, email=raw.get("user_email") or "N/A", reason=reason)
        result.errors.append(error)
        self._store.append_error(result.log_id, error)
        if rejects:
            rejects.write(raw.line_number, raw.fields, reason)
        log.warning("row %d failed: %s", raw.line_number, reason)
