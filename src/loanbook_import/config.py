"""loanbook_import.config

Engine settings loaded from YAML (defaults ship in schemas/settings.yml).

Usage:
    settings = load_settings()                                   # packaged defaults
    settings = load_settings(Path("import_settings.yml"))
    settings = load_settings(overrides={"batch_ceiling": 250})
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "schemas" / "settings.yml"

SETTINGS_KEYS = frozenset({
    "version",
    "fuzzy_threshold",
    "date_formats",
    "batch_ceiling",
    "max_in_flight_chunks",
    "normalize_workers",
})


class SettingsValidationError(ValueError):
    """Raised when a settings file or override fails validation."""


@dataclass(frozen=True)
class ImportSettings:
    version: str
    yaml_hash: str
    fuzzy_threshold: float
    date_formats: tuple[str, ...]
    batch_ceiling: int
    max_in_flight_chunks: int
    normalize_workers: int


def load_settings(
    yaml_path: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> ImportSettings:
    """Load settings from YAML, apply overrides, validate.

    Raises:
        SettingsValidationError: On unknown keys or out-of-range values.
    """
    raw = (yaml_path or DEFAULT_SETTINGS_PATH).read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw) or {}
    if not isinstance(data, dict):
        raise SettingsValidationError("YAML root must be a mapping.")
    if overrides:
        data = {**data, **overrides}
    validate_settings(data)
    return ImportSettings(
        version=str(data["version"]),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        fuzzy_threshold=float(data["fuzzy_threshold"]),
        date_formats=tuple(str(f) for f in data["date_formats"]),
        batch_ceiling=int(data["batch_ceiling"]),
        max_in_flight_chunks=int(data["max_in_flight_chunks"]),
        normalize_workers=int(data["normalize_workers"]),
    )


def validate_settings(data: dict[str, Any]) -> None:
    unknown = set(data.keys()) - SETTINGS_KEYS
    if unknown:
        raise SettingsValidationError(f"Unknown settings keys: {sorted(unknown)}")
    missing = SETTINGS_KEYS - set(data.keys())
    if missing:
        raise SettingsValidationError(f"Missing settings keys: {sorted(missing)}")

    try:
        threshold = float(data["fuzzy_threshold"])
    except (TypeError, ValueError):
        raise SettingsValidationError(
            f"fuzzy_threshold '{data['fuzzy_threshold']}' is not numeric."
        )
    if not (0.0 < threshold <= 1.0):
        raise SettingsValidationError(f"fuzzy_threshold {threshold} must be in (0.0, 1.0].")

    formats = data["date_formats"]
    if not isinstance(formats, list) or not formats:
        raise SettingsValidationError("date_formats must be a non-empty list.")

    for key in ("batch_ceiling", "max_in_flight_chunks", "normalize_workers"):
        val = data[key]
        if isinstance(val, bool) or not isinstance(val, int) or val < 1:
            raise SettingsValidationError(f"{key} must be a positive integer, got {val!r}.")
