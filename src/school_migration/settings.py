"""school_migration.settings

YAML-based settings for the migration engine.

Responsibilities:
  - Load and validate config/migration.yml (or an operator-supplied file)
  - Fall back to built-in defaults for any key the file omits
  - Hash YAML content so run reports can record which settings were used

Usage:
    from pathlib import Path
    from school_migration.settings import load_settings

    settings = load_settings(Path("config/migration.yml"))
    settings.password_length  # -> 12
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_PATH = Path("config/migration.yml")

DEFAULT_COUNTRY_CODES: dict[str, str] = {
    "GB": "United Kingdom",
    "IE": "Ireland",
    "XI": "Northern Ireland",
}

DEFAULT_LOGIN_PREFIXES: dict[str, str] = {
    "xi-": "Northern Ireland",
    "ie-": "Ireland",
}

KNOWN_KEYS = frozenset({
    "password_length",
    "bcrypt_rounds",
    "stale_run_minutes",
    "default_country",
    "country_codes",
    "login_prefixes",
})

MIN_PASSWORD_LENGTH = 8


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SettingsValidationError(ValueError):
    """Raised when a settings file fails validation."""


# ---------------------------------------------------------------------------
# Settings dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MigrationSettings:
    """Tunables for one migration or consolidation invocation."""

    password_length: int = 12
    bcrypt_rounds: int = 10
    stale_run_minutes: int = 120
    default_country: str = "United Kingdom"
    country_codes: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_COUNTRY_CODES))
    login_prefixes: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_LOGIN_PREFIXES))
    yaml_hash: str | None = None


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_settings(yaml_path: Path | None = None) -> MigrationSettings:
    """Load, validate, and return MigrationSettings.

    Args:
        yaml_path: Path to a YAML settings file. When None, the default
            config/migration.yml is used if present, otherwise built-in
            defaults apply.

    Raises:
        SettingsValidationError: If any key is unknown or has a bad value.
        FileNotFoundError: If an explicit yaml_path does not exist.
    """
    if yaml_path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return MigrationSettings()
        yaml_path = DEFAULT_CONFIG_PATH

    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    validate_settings(data)
    defaults = MigrationSettings()
    return MigrationSettings(
        password_length=int(data.get("password_length", defaults.password_length)),
        bcrypt_rounds=int(data.get("bcrypt_rounds", defaults.bcrypt_rounds)),
        stale_run_minutes=int(data.get("stale_run_minutes", defaults.stale_run_minutes)),
        default_country=str(data.get("default_country", defaults.default_country)),
        country_codes={
            str(k).upper(): str(v)
            for k, v in (data.get("country_codes") or defaults.country_codes).items()
        },
        login_prefixes={
            str(k).lower(): str(v)
            for k, v in (data.get("login_prefixes") or defaults.login_prefixes).items()
        },
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )


def validate_settings(data: Any) -> None:
    """Validate a parsed YAML settings mapping.

    Raises:
        SettingsValidationError: On the first problem found.
    """
    if not isinstance(data, dict):
        raise SettingsValidationError("settings file must contain a mapping")

    unknown = set(data) - KNOWN_KEYS
    if unknown:
        raise SettingsValidationError(f"unknown settings keys: {sorted(unknown)}")

    if "password_length" in data:
        _require_int(data, "password_length", minimum=MIN_PASSWORD_LENGTH)
    if "bcrypt_rounds" in data:
        # bcrypt accepts cost factors 4..31
        _require_int(data, "bcrypt_rounds", minimum=4, maximum=31)
    if "stale_run_minutes" in data:
        _require_int(data, "stale_run_minutes", minimum=1)
    if "default_country" in data and not str(data["default_country"]).strip():
        raise SettingsValidationError("default_country must not be empty")
    for key in ("country_codes", "login_prefixes"):
        if key in data and not isinstance(data[key], dict):
            raise SettingsValidationError(f"{key} must be a mapping")


def _require_int(
    data: dict[str, Any],
    key: str,
    minimum: int | None = None,
    maximum: int | None = None,
) -> None:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise SettingsValidationError(f"{key} must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise SettingsValidationError(f"{key} must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise SettingsValidationError(f"{key} must be <= {maximum}, got {value}")
