"""school_migration.cli

Unified CLI entrypoint for legacy user migration.

Modes (--mode):
  migrate             import a legacy user export (default)
  consolidate         merge schools that share a normalized name
  logs                list migration runs, newest first
  show_log            show one run's counters and error list
  migrated_users      list users created by migration
  export_credentials  write a live run's credential report to CSV

Usage (migrate):
    python -m school_migration.cli \\
        --mode migrate \\
        --db-dsn "$DB_DSN" \\
        --csv-path "exports/user-export_2024.csv" \\
        --performed-by "ops@example.org" \\
        --credentials-path "artifacts/credentials/user-export_2024.csv"

Usage (consolidate):
    python -m school_migration.cli --mode consolidate --db-dsn "$DB_DSN" --dry-run

Temporary passwords are only ever written to --credentials-path; they never
appear on the console, in the run report, or in log output.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

import click
import psycopg

from school_migration.api import (
    execute_consolidation,
    execute_migration,
    get_log,
    list_logs,
    list_migrated_users,
)
from school_migration.consolidate import build_consolidation_report
from school_migration.credentials import write_credentials_csv
from school_migration.executor import MigrationResult
from school_migration.migration_log import PostgresMigrationLogStore, RunStatus
from school_migration.settings import SettingsValidationError, load_settings
from school_migration.shared import (
    ConcurrentRunError,
    LogNotFoundError,
    RejectWriter,
    write_run_report,
)


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.command()
@click.option(
    "--mode",
    default="migrate",
    type=click.Choice([
        "migrate", "consolidate", "logs", "show_log",
        "migrated_users", "export_credentials",
    ]),
    show_default=True,
    help="Operation mode",
)
@click.option("--db-dsn", required=True, envvar="DB_DSN", help="PostgreSQL DSN (or $DB_DSN)")
@click.option("--config", "config_path", default=None, type=click.Path(), help="YAML settings file (default: config/migration.yml)")
# migrate flags
@click.option("--csv-path", default=None, type=click.Path(), help="[migrate] Legacy user export CSV")
@click.option("--performed-by", default=None, help="[migrate] Operator recorded on the migration log")
@click.option("--force", is_flag=True, default=False, help="[migrate] Start even if another run is marked running")
@click.option("--credentials-path", default=None, type=click.Path(), help="[migrate|export_credentials] Credential CSV output")
# show_log / export_credentials flags
@click.option("--log-id", default=None, help="[show_log|export_credentials] Migration log id")
# shared flags
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/migration_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    config_path: str | None,
    csv_path: str | None,
    performed_by: str | None,
    force: bool,
    credentials_path: str | None,
    log_id: str | None,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Unified legacy migration CLI."""
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    if mode == "migrate":
        _run_migrate(
            run_id, started_at, db_dsn, config_path, csv_path, performed_by,
            force, credentials_path, dry_run, rejects_path,
        )
    elif mode == "consolidate":
        _run_consolidate(run_id, started_at, db_dsn, dry_run)
    elif mode == "logs":
        with psycopg.connect(db_dsn) as conn:
            _echo_json(list_logs(conn))
    elif mode == "show_log":
        if not log_id:
            _fatal(run_id, "show_log mode requires: --log-id")
        with psycopg.connect(db_dsn) as conn:
            try:
                detail = get_log(conn, log_id)
            except LogNotFoundError as exc:
                _fatal(run_id, str(exc))
        report = detail.pop("reportData", None)
        if report is not None:
            detail["credentialCount"] = len(report["credentials"])
        _echo_json(detail)
    elif mode == "migrated_users":
        with psycopg.connect(db_dsn) as conn:
            _echo_json(list_migrated_users(conn))
    elif mode == "export_credentials":
        _run_export_credentials(run_id, db_dsn, log_id, credentials_path)


# ---------------------------------------------------------------------------
# migrate
# ---------------------------------------------------------------------------

def _run_migrate(
    run_id: str,
    started_at: str,
    db_dsn: str,
    config_path: str | None,
    csv_path: str | None,
    performed_by: str | None,
    force: bool,
    credentials_path: str | None,
    dry_run: bool,
    rejects_path: str,
) -> None:
    if not csv_path:
        _fatal(run_id, "migrate mode requires: --csv-path")
    source = Path(csv_path)
    if not source.exists():
        _fatal(run_id, f"--csv-path not found: {csv_path}")
    try:
        settings = load_settings(Path(config_path) if config_path else None)
    except (SettingsValidationError, FileNotFoundError) as exc:
        _fatal(run_id, f"settings: {exc}")

    click.echo(f"[{run_id}] Starting migrate run (dry_run={dry_run}) source={source.name}")
    rejects = RejectWriter(Path(rejects_path))
    conn = psycopg.connect(db_dsn, autocommit=False)
    log_conn = psycopg.connect(db_dsn, autocommit=True)
    try:
        result = execute_migration(
            conn,
            source.read_bytes(),
            dry_run,
            log_conn=log_conn,
            settings=settings,
            source_name=source.name,
            performed_by=performed_by,
            rejects=rejects,
            force=force,
        )
    except ConcurrentRunError as exc:
        _fatal(run_id, str(exc))
    finally:
        rejects.close()
        log_conn.close()
        conn.close()

    _echo_migration_summary(result)
    if rejects.count:
        click.echo(f"[{run_id}] Rejects ({rejects.count}): {rejects_path}")

    if credentials_path and not dry_run and result.credentials:
        path = write_credentials_csv(result.credentials, Path(credentials_path))
        click.echo(f"[{run_id}] Credentials ({len(result.credentials)}): {path}")

    report_path = write_run_report(
        run_id, started_at, "migrate", dry_run, result.status.value,
        {"csv_path": str(source), "log_id": result.log_id},
        result.counters.to_dict(),
        settings_hash=settings.yaml_hash,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if result.status is RunStatus.FAILED:
        click.echo(f"[{run_id}] Run failed: {result.failure_reason}", err=True)
        sys.exit(1)


def _echo_migration_summary(result: MigrationResult) -> None:
    ctrs = result.counters
    lines = [
        "=" * 60,
        "Legacy Migration Report",
        f"  log_id:  {result.log_id}",
        f"  dry_run: {result.dry_run}",
        f"  status:  {result.status.value}",
        "=" * 60,
        f"  total rows:       {ctrs.total_rows}",
        f"  processed rows:   {ctrs.processed_rows}",
        f"  valid rows:       {ctrs.valid_rows}",
        f"  skipped rows:     {ctrs.skipped_rows}",
        f"  failed rows:      {ctrs.failed_rows}",
    ]
    if result.dry_run:
        lines.append(f"  would create:     {ctrs.users_to_create} users, {ctrs.schools_to_create} schools")
    else:
        lines.append(f"  users created:    {ctrs.users_created}")
        lines.append(f"  schools created:  {ctrs.schools_created}")
    if result.errors:
        lines.append(f"\nErrors ({len(result.errors)}):")
        for err in result.errors[:20]:
            lines.append(f"  row {err.row} ({err.email}): {err.reason}")
        if len(result.errors) > 20:
            lines.append(f"  ... and {len(result.errors) - 20} more")
    lines.append("=" * 60)
    click.echo("\n".join(lines))


# ---------------------------------------------------------------------------
# consolidate
# ---------------------------------------------------------------------------

def _run_consolidate(run_id: str, started_at: str, db_dsn: str, dry_run: bool) -> None:
    click.echo(f"[{run_id}] Starting consolidate run (dry_run={dry_run})")
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        ctrs = execute_consolidation(conn, dry_run=dry_run)
    finally:
        conn.close()

    click.echo(build_consolidation_report(ctrs, dry_run=dry_run))
    if dry_run:
        click.echo(f"[{run_id}] DRY RUN: rolled back.")
    else:
        click.echo(f"[{run_id}] Committed.")

    report_path = write_run_report(
        run_id, started_at, "consolidate", dry_run,
        "failed" if ctrs.db_errors else "completed",
        {},
        ctrs.to_dict(),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if ctrs.db_errors > 0 and not dry_run:
        click.echo(f"[{run_id}] {ctrs.db_errors} group(s) rolled back, exiting non-zero", err=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# export_credentials
# ---------------------------------------------------------------------------

def _run_export_credentials(
    run_id: str,
    db_dsn: str,
    log_id: str | None,
    credentials_path: str | None,
) -> None:
    if not log_id:
        _fatal(run_id, "export_credentials mode requires: --log-id")
    if not credentials_path:
        _fatal(run_id, "export_credentials mode requires: --credentials-path")
    with psycopg.connect(db_dsn) as conn:
        try:
            record = PostgresMigrationLogStore(conn).get_run(log_id)
        except LogNotFoundError as exc:
            _fatal(run_id, str(exc))
    if record.credentials is None:
        _fatal(run_id, f"migration log {log_id} has no credential report (dry run or unfinished)")
    path = write_credentials_csv(record.credentials, Path(credentials_path))
    click.echo(f"[{run_id}] Credentials ({len(record.credentials)}): {path}")


if __name__ == "__main__":
    main()
