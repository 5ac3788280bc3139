"""Normalization functions for legacy user-export ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

# PHP serialize() output for an empty array; the legacy system wrote this for
# stages that were opened but never submitted.
PHP_EMPTY_ARRAY = "a:0:{}"

_PHP_ARRAY_RE = re.compile(r"^a:(\d+):")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: normalize_school_name  (comparison key only, never stored as display)
# ---------------------------------------------------------------------------

def normalize_school_name(value: str | None) -> str | None:
    """Case-folded, whitespace-collapsed school name used for matching.

    The legacy export HTML-escapes ampersands, so "Smith &amp; Jones" and
    "Smith & Jones" must compare equal.
    """
    v = normalize_space(value)
    if v is None:
        return None
    return v.replace("&amp;", "&").casefold()


# ---------------------------------------------------------------------------
# Rule 5: stage data
# ---------------------------------------------------------------------------

def has_stage_data(value: str | None) -> bool:
    """True when a stage column holds anything beyond an empty PHP array."""
    v = trim(value)
    return v is not None and v != PHP_EMPTY_ARRAY


def is_stage_complete(value: str | None) -> bool:
    """A stage counts as completed when its serialized payload is non-trivial.

    Serialized arrays with at least one submission are always longer than
    ten characters (``a:1:{i:0;...}``); shorter values are sign-up noise.
    """
    v = trim(value)
    if v is None or v == PHP_EMPTY_ARRAY:
        return False
    return len(v) > 10


def parse_php_evidence_count(value: str | None) -> int:
    """Return the number of evidence items recorded in a stage column.

    Accepts a plain integer ("3") or a PHP serialized array ("a:2:{...}");
    anything else counts as zero.
    """
    v = trim(value)
    if v is None:
        return 0
    if v.isdigit():
        return int(v)
    m = _PHP_ARRAY_RE.match(v)
    if m:
        return int(m.group(1))
    return 0


def derive_current_stage(stage1: bool, stage2: bool, stage3: bool) -> str:
    if stage3:
        return "act"
    if stage2:
        return "investigate"
    return "inspire"


# ---------------------------------------------------------------------------
# Rule 6: parse_round
# ---------------------------------------------------------------------------

def parse_round(value: str | None) -> int:
    """Positive integer round number; defaults to 1."""
    v = trim(value)
    if v is None:
        return 1
    try:
        n = int(v)
    except ValueError:
        return 1
    return n if n > 0 else 1


# ---------------------------------------------------------------------------
# Rule 7: parse_numeric
# ---------------------------------------------------------------------------

def parse_numeric(value: str | None) -> Decimal | None:
    """Parse a decimal number from a string, returning None on failure."""
    v = trim(value)
    if v is None:
        return None
    try:
        d = Decimal(v)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


# ---------------------------------------------------------------------------
# Helper: display-name parsing
# ---------------------------------------------------------------------------

def split_display_name(value: str | None) -> list[str]:
    """Split the legacy "<contact>, <school>[, <district>]" display name."""
    v = trim(value)
    if v is None:
        return []
    return [p.strip() for p in v.split(",")]
