"""school_migration.credentials

Temporary credentials for migrated users.

Passwords are drawn from the operating system CSPRNG via ``secrets`` and
stored only as salted bcrypt hashes. The plaintext exists in exactly one
place: the credential report of a live migration log, which operators
download as ``email,temporaryPassword,schoolName`` CSV.
"""

from __future__ import annotations

import csv
import io
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import bcrypt

# No 0/O, 1/l/I: passwords are read off a spreadsheet by teachers.
PASSWORD_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz23456789!@#$%"

CREDENTIAL_CSV_HEADER = ("email", "temporaryPassword", "schoolName")


@dataclass(frozen=True)
class CredentialEntry:
    email: str
    temporary_password: str = field(repr=False)
    school_name: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "temporaryPassword": self.temporary_password,
            "schoolName": self.school_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CredentialEntry":
        return cls(
            email=data["email"],
            temporary_password=data["temporaryPassword"],
            school_name=data["schoolName"],
        )


def generate_temporary_password(length: int = 12) -> str:
    if length <= 0:
        raise ValueError("password length must be positive")
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def hash_password(password: str, rounds: int = 10) -> str:
    """Return a salted bcrypt hash as text."""
    if not password:
        raise ValueError("password cannot be empty")
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# ---------------------------------------------------------------------------
# Credential report CSV
# ---------------------------------------------------------------------------

def credentials_to_csv(entries: Iterable[CredentialEntry]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CREDENTIAL_CSV_HEADER)
    for entry in entries:
        writer.writerow((entry.email, entry.temporary_password, entry.school_name))
    return buf.getvalue()


def write_credentials_csv(entries: Iterable[CredentialEntry], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(credentials_to_csv(entries), encoding="utf-8")
    return path
