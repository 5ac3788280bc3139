"""school_migration.legacy_parser

Row parser for the predecessor system's user export (WordPress
``user-export_*.csv``).

The export is a single CSV whose first record is the header. Rows are
produced lazily and never raise individually: a malformed record becomes a
RawRow with ``parse_error`` set, which the validator turns into FAILED.
Only file-level problems (undecodable bytes, empty file, missing required
headers) raise UnreadableSourceError.

Parsing the same input twice yields an identical sequence.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from typing import Iterator

from school_migration.shared import UnreadableSourceError, normalize_headers

# ---------------------------------------------------------------------------
# Legacy column layout
# ---------------------------------------------------------------------------

LEGACY_COLUMNS: tuple[str, ...] = (
    "user_login",
    "user_email",
    "source_user_id",
    "user_registered",
    "display_name",
    "first_name",
    "last_name",
    "district",
    "la_name",
    "country",
    "latitude",
    "longitude",
    "phone_number",
    "stage_0",
    "stage_1",
    "stage_2",
    "stage_3",
    "stage_1_completed_date",
    "stage_2_completed_date",
    "stage_3_completed_date",
    "round",
)

REQUIRED_HEADERS = frozenset({
    "user_email",
    "source_user_id",
    "display_name",
    "stage_1",
})


# ---------------------------------------------------------------------------
# RawRow
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RawRow:
    """One record of the export, keyed by column name.

    line_number is the 1-based source line the record starts on; the header
    occupies line 1.
    """

    line_number: int
    fields: dict[str, str] = field(default_factory=dict)
    parse_error: str | None = None

    def get(self, column: str) -> str:
        return self.fields.get(column, "")


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def decode_content(content: str | bytes) -> str:
    """Return export text with any byte-order mark removed."""
    if isinstance(content, bytes):
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise UnreadableSourceError(f"export is not valid UTF-8: {exc}") from exc
    else:
        text = content
    if text.startswith("\ufeff"):
        text = text[1:]
    return text


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def read_header(
    content: str | bytes,
    required: frozenset[str] = REQUIRED_HEADERS,
) -> list[str]:
    """Read and validate only the header record."""
    reader = csv.reader(io.StringIO(decode_content(content), newline=""))
    return _read_header(reader, required)


def parse_rows(
    content: str | bytes,
    columns: tuple[str, ...] = LEGACY_COLUMNS,
    required: frozenset[str] = REQUIRED_HEADERS,
) -> Iterator[RawRow]:
    """Yield one RawRow per data record, in file order.

    Missing trailing columns are treated as empty. Blank lines are not
    records. Quoted fields may contain delimiters and line breaks; \\n,
    \\r\\n and \\r line endings are all accepted.

    Raises:
        UnreadableSourceError: on the first ``next()`` if the content cannot
            be decoded, is empty, or lacks a required header.
    """
    reader = csv.reader(io.StringIO(decode_content(content), newline=""))
    header = _read_header(reader, required)
    last_line = reader.line_num

    while True:
        try:
            record = next(reader)
        except StopIteration:
            return
        except csv.Error as exc:
            start = last_line + 1
            last_line = reader.line_num
            yield RawRow(
                line_number=start,
                fields=_empty_fields(header, columns),
                parse_error=f"malformed CSV record: {exc}",
            )
            continue

        start = last_line + 1
        last_line = reader.line_num
        if not record:
            continue
        yield _build_row(start, header, columns, record)


def _read_header(reader, required: frozenset[str]) -> list[str]:
    try:
        for record in reader:
            if record and any(v.strip() for v in record):
                header = normalize_headers(record)
                break
        else:
            raise UnreadableSourceError("export is empty (no header row)")
    except csv.Error as exc:
        raise UnreadableSourceError(f"export header is not valid CSV: {exc}") from exc

    missing = required - set(header)
    if missing:
        raise UnreadableSourceError(f"export missing required headers: {sorted(missing)}")
    return header


def _empty_fields(header: list[str], columns: tuple[str, ...]) -> dict[str, str]:
    fields = {name: "" for name in columns}
    for name in header:
        fields.setdefault(name, "")
    return fields


def _build_row(
    line_number: int,
    header: list[str],
    columns: tuple[str, ...],
    record: list[str],
) -> RawRow:
    fields = _empty_fields(header, columns)
    for name, value in zip(header, record):
        fields[name] = value.strip()

    parse_error = None
    extra = record[len(header):]
    if any(v.strip() for v in extra):
        parse_error = (
            f"row has {len(record)} fields but header has {len(header)} columns"
        )
    return RawRow(line_number=line_number, fields=fields, parse_error=parse_error)
