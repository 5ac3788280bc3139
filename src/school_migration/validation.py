"""school_migration.validation

Row validator: turns each RawRow into exactly one ValidatedRow.

Rule order (first match wins):
  1. parse_error set upstream           -> FAILED
  2. no stage-1 program data            -> SKIPPED  (incomplete sign-ups)
  3. missing / malformed email          -> FAILED
  4. email already registered           -> FAILED
  5. missing / already-migrated legacy id -> FAILED
  6. school not derivable from display_name -> FAILED
  7. otherwise                          -> VALID, with a MigrationCandidate

Validation never writes. Existing emails and legacy ids are read through an
injected IdentityLookup so the outcome is deterministic for a given input
and storage snapshot.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from email_validator import EmailNotValidError, validate_email

from school_migration.legacy_parser import RawRow
from school_migration.normalize import (
    derive_current_stage,
    has_stage_data,
    is_stage_complete,
    normalize_email,
    normalize_school_name,
    normalize_space,
    parse_numeric,
    parse_php_evidence_count,
    parse_round,
    split_display_name,
    trim,
)
from school_migration.settings import MigrationSettings


class Outcome(enum.Enum):
    VALID = "valid"
    SKIPPED = "skipped"
    FAILED = "failed"


class IdentityLookup(Protocol):
    """Read-only view of identities that already exist in storage."""

    def email_exists(self, email: str) -> bool: ...

    def legacy_id_exists(self, legacy_id: str) -> bool: ...


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MigrationCandidate:
    """Everything needed to create one School membership + User."""

    school_name: str
    school_key: str
    district: str
    country: str
    latitude: Decimal | None
    longitude: Decimal | None
    email: str
    legacy_user_id: str
    first_name: str
    last_name: str
    phone_number: str | None
    stage1_complete: bool
    stage2_complete: bool
    stage3_complete: bool
    current_stage: str
    round: int
    legacy_evidence_count: int

    @property
    def has_evidence(self) -> bool:
        return self.stage1_complete or self.stage2_complete or self.stage3_complete


@dataclass(frozen=True)
class ValidatedRow:
    raw: RawRow
    outcome: Outcome
    reason: str | None = None
    candidate: MigrationCandidate | None = None

    @property
    def line_number(self) -> int:
        return self.raw.line_number

    @property
    def email(self) -> str:
        return self.raw.get("user_email") or "N/A"


def _failed(raw: RawRow, reason: str) -> ValidatedRow:
    return ValidatedRow(raw=raw, outcome=Outcome.FAILED, reason=reason)


# ---------------------------------------------------------------------------
# Email syntax
# ---------------------------------------------------------------------------

def check_email_syntax(email: str) -> str | None:
    """Return None when the address is RFC-shaped, else a reason string."""
    if email.endswith(".invalid"):
        return f"Invalid email (ends with .invalid): {email}"
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError as exc:
        return f"Invalid email {email}: {exc}"
    return None


# ---------------------------------------------------------------------------
# Transform helpers
# ---------------------------------------------------------------------------

def extract_country(raw: RawRow, settings: MigrationSettings) -> str:
    code = trim(raw.get("country"))
    if code:
        code = code.upper()
        return settings.country_codes.get(code, code)
    login = (raw.get("user_login") or "").lower()
    for prefix, country in settings.login_prefixes.items():
        if login.startswith(prefix):
            return country
    return settings.default_country


def build_candidate(
    raw: RawRow,
    email: str,
    legacy_id: str,
    settings: MigrationSettings,
) -> MigrationCandidate | None:
    """Derive a MigrationCandidate, or None if no school can be extracted."""
    parts = split_display_name(raw.get("display_name"))
    if len(parts) < 2:
        return None
    school_name = normalize_space(parts[1])
    school_key = normalize_school_name(school_name)
    if not school_name or not school_key:
        return None

    district = (
        trim(raw.get("district"))
        or trim(raw.get("la_name"))
        or (trim(parts[2]) if len(parts) > 2 else None)
        or ""
    )

    stage1 = is_stage_complete(raw.get("stage_1"))
    stage2 = is_stage_complete(raw.get("stage_2"))
    stage3 = is_stage_complete(raw.get("stage_3"))
    evidence_count = sum(
        parse_php_evidence_count(raw.get(col)) for col in ("stage_1", "stage_2", "stage_3")
    )

    return MigrationCandidate(
        school_name=school_name,
        school_key=school_key,
        district=district,
        country=extract_country(raw, settings),
        latitude=parse_numeric(raw.get("latitude")),
        longitude=parse_numeric(raw.get("longitude")),
        email=email,
        legacy_user_id=legacy_id,
        first_name=normalize_space(raw.get("first_name")) or "Team",
        last_name=normalize_space(raw.get("last_name")) or school_name,
        phone_number=trim(raw.get("phone_number")),
        stage1_complete=stage1,
        stage2_complete=stage2,
        stage3_complete=stage3,
        current_stage=derive_current_stage(stage1, stage2, stage3),
        round=parse_round(raw.get("round")),
        legacy_evidence_count=evidence_count,
    )


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------

def validate_row(
    raw: RawRow,
    lookup: IdentityLookup,
    settings: MigrationSettings,
) -> ValidatedRow:
    if raw.parse_error:
        return _failed(raw, raw.parse_error)

    if not has_stage_data(raw.get("stage_1")):
        return ValidatedRow(raw=raw, outcome=Outcome.SKIPPED, reason="No stage_1 data")

    email = normalize_email(raw.get("user_email"))
    if not email:
        return _failed(raw, "Missing email")
    syntax_problem = check_email_syntax(email)
    if syntax_problem:
        return _failed(raw, syntax_problem)
    if lookup.email_exists(email):
        return _failed(raw, f"Email already registered: {email}")

    legacy_id = trim(raw.get("source_user_id"))
    if not legacy_id:
        return _failed(raw, "Missing legacy user id (source_user_id)")
    if lookup.legacy_id_exists(legacy_id):
        return _failed(raw, f"Legacy user {legacy_id} already migrated")

    candidate = build_candidate(raw, email, legacy_id, settings)
    if candidate is None:
        return _failed(raw, "Failed to extract school information from display_name")

    return ValidatedRow(raw=raw, outcome=Outcome.VALID, candidate=candidate)
