"""school_migration.consolidate

Duplicate School consolidator (--mode consolidate).

Schools whose names normalize to the same key are merged into one survivor:
the earliest-created school, then the lowest id, with unknown creation
times last.

For every non-survivor, in order:
    1. memberships re-pointed to the survivor; a membership whose user
       already belongs to the survivor is deleted instead
    2. evidence re-pointed to the survivor
    3. survivor progress merged forward; survivor nulls filled from the
       duplicate (district, address, coordinates)
    4. the duplicate school deleted

Groups are processed sequentially with one SAVEPOINT per group, so a
failing group is rolled back on its own and the rest still apply. The
caller owns the transaction: commit to apply, rollback for a dry run.

Running it twice in a row is a no-op the second time.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

import psycopg

from school_migration.normalize import normalize_school_name
from school_migration.resolver import school_rank
from school_migration.storage import merge_school_progress

log = logging.getLogger(__name__)

# Survivor columns filled from a duplicate when the survivor has none.
_FILL_NULL_COLUMNS = ("legacy_district", "address", "latitude", "longitude")


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class ConsolidationCounters:
    groups_found: int = 0
    groups_merged: int = 0
    schools_deleted: int = 0
    memberships_moved: int = 0
    memberships_deleted: int = 0
    evidence_moved: int = 0
    db_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "groups_found": self.groups_found,
            "groups_merged": self.groups_merged,
            "schools_deleted": self.schools_deleted,
            "memberships_moved": self.memberships_moved,
            "memberships_deleted": self.memberships_deleted,
            "evidence_moved": self.evidence_moved,
            "db_errors": self.db_errors,
            "warnings": self.warnings[:50],
        }


@dataclass(frozen=True)
class DuplicateGroup:
    key: str
    survivor_id: str
    survivor_name: str
    duplicate_ids: tuple[str, ...]


# ---------------------------------------------------------------------------
# Group discovery
# ---------------------------------------------------------------------------

def find_duplicate_groups(conn: psycopg.Connection) -> list[DuplicateGroup]:
    """Return one group per normalized name shared by more than one school."""
    rows = conn.execute("SELECT id, name, created_at FROM schools").fetchall()

    by_key: dict[str, list[tuple[tuple, str, str]]] = defaultdict(list)
    for school_id, name, created_at in rows:
        key = normalize_school_name(name)
        if not key:
            continue
        by_key[key].append((school_rank(created_at, str(school_id)), str(school_id), name))

    groups = []
    for key in sorted(by_key):
        members = sorted(by_key[key])
        if len(members) < 2:
            continue
        _rank, survivor_id, survivor_name = members[0]
        groups.append(
            DuplicateGroup(
                key=key,
                survivor_id=survivor_id,
                survivor_name=survivor_name,
                duplicate_ids=tuple(m[1] for m in members[1:]),
            )
        )
    return groups


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def _merge_school(
    conn: psycopg.Connection,
    survivor_id: str,
    duplicate_id: str,
    ctrs: ConsolidationCounters,
) -> None:
    # 1. Memberships: drop the ones the survivor already has, move the rest.
    cur = conn.execute(
        """
        DELETE FROM school_users d
        WHERE d.school_id = %s
          AND EXISTS (
              SELECT 1 FROM school_users s
              WHERE s.school_id = %s AND s.user_id = d.user_id
          )
        """,
        (duplicate_id, survivor_id),
    )
    ctrs.memberships_deleted += cur.rowcount
    cur = conn.execute(
        "UPDATE school_users SET school_id = %s WHERE school_id = %s",
        (survivor_id, duplicate_id),
    )
    ctrs.memberships_moved += cur.rowcount

    # 2. Evidence moves unconditionally.
    cur = conn.execute(
        "UPDATE evidence SET school_id = %s WHERE school_id = %s",
        (survivor_id, duplicate_id),
    )
    ctrs.evidence_moved += cur.rowcount

    # 3. Progress forward + fill-nulls survivorship.
    progress = conn.execute(
        """
        SELECT inspire_completed, investigate_completed, act_completed,
               current_stage, current_round, legacy_evidence_count
        FROM schools WHERE id = %s
        """,
        (duplicate_id,),
    ).fetchone()
    if progress is None:
        raise LookupError(f"school {duplicate_id} disappeared during consolidation")
    inspire, investigate, act, stage, round_number, evidence_count = progress
    merge_school_progress(
        conn,
        survivor_id,
        inspire=inspire,
        investigate=investigate,
        act=act,
        stage=stage,
        round_number=round_number,
        legacy_evidence_count=evidence_count,
    )
    set_clauses = ", ".join(f"{c} = COALESCE(s.{c}, d.{c})" for c in _FILL_NULL_COLUMNS)
    conn.execute(
        f"""
        UPDATE schools s
        SET {set_clauses}
        FROM schools d
        WHERE s.id = %s AND d.id = %s
        """,
        (survivor_id, duplicate_id),
    )

    # 4. Remove the duplicate.
    conn.execute("DELETE FROM schools WHERE id = %s", (duplicate_id,))
    ctrs.schools_deleted += 1


# ---------------------------------------------------------------------------
# Top-level runner
# ---------------------------------------------------------------------------

def run_consolidation(conn: psycopg.Connection) -> ConsolidationCounters:
    """Merge every duplicate group.

    Args:
        conn: Open psycopg connection (caller manages transaction).

    Returns:
        ConsolidationCounters with run statistics.
    """
    ctrs = ConsolidationCounters()
    groups = find_duplicate_groups(conn)
    ctrs.groups_found = len(groups)

    for gidx, group in enumerate(groups):
        sp = f"consolidate_grp_{gidx}"
        conn.execute(f"SAVEPOINT {sp}")
        try:
            for duplicate_id in group.duplicate_ids:
                _merge_school(conn, group.survivor_id, duplicate_id, ctrs)
            conn.execute(f"RELEASE SAVEPOINT {sp}")
        except Exception as exc:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
            ctrs.db_errors += 1
            ctrs.warnings.append(f"group {group.key!r} (survivor {group.survivor_id}): {exc}")
            log.warning("consolidation of %r rolled back: %s", group.key, exc)
            continue
        ctrs.groups_merged += 1
        log.info(
            "merged %d duplicate(s) of %r into %s",
            len(group.duplicate_ids), group.survivor_name, group.survivor_id,
        )

    return ctrs


def build_consolidation_report(ctrs: ConsolidationCounters, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        "Duplicate School Consolidation Report",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  groups found:         {ctrs.groups_found}",
        f"  groups merged:        {ctrs.groups_merged}",
        f"  schools deleted:      {ctrs.schools_deleted}",
        f"  memberships moved:    {ctrs.memberships_moved}",
        f"  memberships deleted:  {ctrs.memberships_deleted}",
        f"  evidence moved:       {ctrs.evidence_moved}",
        f"DB errors:              {ctrs.db_errors}",
    ]
    if ctrs.warnings:
        lines.append(f"\nWarnings ({len(ctrs.warnings)}):")
        for w in ctrs.warnings[:20]:
            lines.append(f"  {w}")
        if len(ctrs.warnings) > 20:
            lines.append(f"  ... and {len(ctrs.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)
