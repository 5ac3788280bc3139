"""school_migration.resolver

Maps a validated MigrationCandidate to an existing School or marks it for
creation.

The school cache is built once per run from a single index query and is
never re-queried per row. It keeps repeated rows of the same file from
creating the same school twice; it does not protect against separate runs
racing each other, which is what school_migration.consolidate repairs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Protocol

from school_migration.normalize import normalize_school_name
from school_migration.validation import MigrationCandidate

PLACEHOLDER_PREFIX = "new-school-"


class SchoolIndex(Protocol):
    def school_index(self) -> Iterable[tuple[str, str, datetime | None]]:
        """Yield (school_id, display_name, created_at) for every school."""
        ...


@dataclass
class SchoolRef:
    key: str
    display_name: str
    school_id: str | None
    placeholder: str | None = None

    @property
    def needs_create(self) -> bool:
        return self.school_id is None


@dataclass
class _CacheEntry:
    school_id: str | None
    placeholder: str | None
    display_name: str
    created_this_run: bool
    members_added: int = 0


def school_rank(created_at: datetime | None, school_id: str) -> tuple:
    """Sort key for picking the canonical school among same-named ones.

    Oldest first; unknown creation time sorts last; id breaks ties.
    """
    return (created_at is None, created_at or datetime.max, school_id)


class SchoolResolver:
    """Within-run cache from normalized school name to school id."""

    def __init__(self, entries: dict[str, _CacheEntry]) -> None:
        self._entries = entries
        self._placeholders = 0

    @classmethod
    def load(cls, index: SchoolIndex) -> "SchoolResolver":
        best: dict[str, tuple[tuple, str, str]] = {}
        for school_id, name, created_at in index.school_index():
            key = normalize_school_name(name)
            if not key:
                continue
            rank = school_rank(created_at, str(school_id))
            if key not in best or rank < best[key][0]:
                best[key] = (rank, str(school_id), name)
        entries = {
            key: _CacheEntry(
                school_id=school_id,
                placeholder=None,
                display_name=name,
                created_this_run=False,
            )
            for key, (_rank, school_id, name) in best.items()
        }
        return cls(entries)

    def __len__(self) -> int:
        return len(self._entries)

    def resolve(self, candidate: MigrationCandidate) -> SchoolRef:
        entry = self._entries.get(candidate.school_key)
        if entry is None:
            self._placeholders += 1
            entry = _CacheEntry(
                school_id=None,
                placeholder=f"{PLACEHOLDER_PREFIX}{self._placeholders}",
                display_name=candidate.school_name,
                created_this_run=True,
            )
            self._entries[candidate.school_key] = entry
        return SchoolRef(
            key=candidate.school_key,
            display_name=entry.display_name,
            school_id=entry.school_id,
            placeholder=entry.placeholder,
        )

    def bind(self, ref: SchoolRef, school_id: str) -> None:
        """Record the id allocated for a school once its row has committed."""
        self._entries[ref.key].school_id = school_id

    def membership_role(self, ref: SchoolRef) -> str:
        """head_teacher for the first user of a school created in this run."""
        entry = self._entries[ref.key]
        if entry.created_this_run and entry.members_added == 0:
            return "head_teacher"
        return "teacher"

    def record_member(self, ref: SchoolRef) -> None:
        self._entries[ref.key].members_added += 1
