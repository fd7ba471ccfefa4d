"""Unit tests for loanbook_import.config."""

from __future__ import annotations

import hashlib
import textwrap
from pathlib import Path

import pytest

from loanbook_import.config import (
    DEFAULT_SETTINGS_PATH,
    ImportSettings,
    SettingsValidationError,
    load_settings,
)

SETTINGS_YAML = textwrap.dedent("""\
    version: "test"
    fuzzy_threshold: 0.9
    date_formats:
      - "%m/%d/%Y"
    batch_ceiling: 50
    max_in_flight_chunks: 2
    normalize_workers: 1
""")


@pytest.fixture
def settings_path(tmp_path: Path) -> Path:
    p = tmp_path / "settings.yml"
    p.write_text(SETTINGS_YAML, encoding="utf-8")
    return p


# ---------------------------------------------------------------------------
# Packaged defaults
# ---------------------------------------------------------------------------

class TestDefaults:
    def test_default_file_exists(self):
        assert DEFAULT_SETTINGS_PATH.exists()

    def test_batch_ceiling(self):
        assert load_settings().batch_ceiling == 400

    def test_fuzzy_threshold(self):
        assert load_settings().fuzzy_threshold == pytest.approx(0.80)

    def test_in_flight_cap(self):
        assert load_settings().max_in_flight_chunks == 4

    def test_iso_dates_first(self):
        assert load_settings().date_formats[0] == "%Y-%m-%d"

    def test_returns_frozen_settings(self):
        settings = load_settings()
        assert isinstance(settings, ImportSettings)
        with pytest.raises(AttributeError):
            settings.batch_ceiling = 1  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Custom file + overrides
# ---------------------------------------------------------------------------

class TestLoadSettings:
    def test_custom_file(self, settings_path: Path):
        settings = load_settings(settings_path)
        assert settings.batch_ceiling == 50
        assert settings.date_formats == ("%m/%d/%Y",)

    def test_yaml_hash(self, settings_path: Path):
        expected = hashlib.sha256(SETTINGS_YAML.encode("utf-8")).hexdigest()
        assert load_settings(settings_path).yaml_hash == expected

    def test_override_wins(self, settings_path: Path):
        assert load_settings(settings_path, overrides={"batch_ceiling": 7}).batch_ceiling == 7

    def test_override_on_defaults(self):
        assert load_settings(overrides={"normalize_workers": 1}).normalize_workers == 1


# ---------------------------------------------------------------------------
# Validation failures
# ---------------------------------------------------------------------------

class TestValidateSettings:
    def test_unknown_key(self):
        with pytest.raises(SettingsValidationError, match="Unknown settings keys"):
            load_settings(overrides={"bogus": 1})

    def test_missing_key(self, tmp_path: Path):
        p = tmp_path / "s.yml"
        p.write_text("version: x\nfuzzy_threshold: 0.8\n", encoding="utf-8")
        with pytest.raises(SettingsValidationError, match="Missing settings keys"):
            load_settings(p)

    @pytest.mark.parametrize("value", [0, 0.0, 1.5, -0.2])
    def test_threshold_out_of_range(self, value):
        with pytest.raises(SettingsValidationError, match="fuzzy_threshold"):
            load_settings(overrides={"fuzzy_threshold": value})

    def test_threshold_not_numeric(self):
        with pytest.raises(SettingsValidationError, match="not numeric"):
            load_settings(overrides={"fuzzy_threshold": "high"})

    def test_empty_date_formats(self):
        with pytest.raises(SettingsValidationError, match="date_formats"):
            load_settings(overrides={"date_formats": []})

    @pytest.mark.parametrize("value", [0, -1, 2.5, True, "400"])
    def test_batch_ceiling_must_be_positive_int(self, value):
        with pytest.raises(SettingsValidationError, match="batch_ceiling"):
            load_settings(overrides={"batch_ceiling": value})
