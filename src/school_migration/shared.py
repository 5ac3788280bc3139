"""school_migration.shared

Shared utilities used by the migration and consolidation pipelines.
Includes the exception hierarchy, RunCounters, RowError, RejectWriter and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MigrationError(Exception):
    """Base class for run-level migration faults."""


class UnreadableSourceError(MigrationError):
    """Raised when the export cannot be decoded or lacks required headers."""


class StorageUnavailableError(MigrationError):
    """Raised when the database connection is lost mid-run."""


class ConcurrentRunError(MigrationError):
    """Raised when another migration run is still marked running."""


class LogNotFoundError(MigrationError):
    """Raised when a migration log id does not exist."""


class LogAlreadyFinalizedError(MigrationError):
    """Raised when finalize is called twice for the same run."""


# ---------------------------------------------------------------------------
# RowError
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RowError:
    """One entry of a run's ordered error list."""

    row: int
    email: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"row": self.row, "email": self.email, "reason": self.reason}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RowError":
        return cls(row=int(data["row"]), email=str(data["email"]), reason=str(data["reason"]))


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    total_rows: int = 0
    processed_rows: int = 0
    valid_rows: int = 0
    skipped_rows: int = 0
    failed_rows: int = 0
    users_created: int = 0
    schools_created: int = 0
    # Dry-run preview: what a live run would have created
    users_to_create: int = 0
    schools_to_create: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunCounters":
        return cls(**{k: int(data.get(k) or 0) for k in cls.__dataclass_fields__})


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """CSV of the rows a run skipped or failed, opened on the first reject.

    Each record carries the source line and the reason ahead of the row's
    own columns, so the file can be sorted back into export order.
    """

    LEADING_COLUMNS = ("_source_line", "_reject_reason")

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, line_number: int, row: dict[str, str], reason: str) -> None:
        if self._writer is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(
                self._fh,
                fieldnames=[*self.LEADING_COLUMNS, *row],
                extrasaction="ignore",
            )
            self._writer.writeheader()
        self._writer.writerow(
            {**row, "_source_line": line_number, "_reject_reason": reason}
        )
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def __enter__(self) -> "RejectWriter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

def normalize_headers(raw: list[str]) -> list[str]:
    """Return header names whitespace-stripped (BOM already removed)."""
    return [h.strip() for h in raw]


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    status: str,
    source_paths: dict[str, str],
    counters: dict[str, Any],
    report_dir: Path = Path("./artifacts/reports"),
    settings_hash: str | None = None,
) -> Path:
    """Write a JSON summary of a run. Credentials are never part of it.

    settings_hash is the sha256 of the YAML settings file the run loaded;
    it is omitted when the run used built-in defaults.
    """
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        "status": status,
        **source_paths,
        "counters": counters,
    }
    if settings_hash is not None:
        report["settings_hash"] = settings_hash
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
