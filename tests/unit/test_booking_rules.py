"""Unit tests for booking_etl.booking_rules: YAML loading and validation."""

from __future__ import annotations

from datetime import date, time
from decimal import Decimal
from pathlib import Path

import pytest
import yaml

from booking_etl.booking_rules import (
    BookingRules,
    BookingRulesValidationError,
    load_booking_rules,
    validate_booking_rules,
)

SHIPPED_RULES = Path(__file__).parent.parent.parent / "config" / "booking_rules.yml"


def _base() -> dict:
    return yaml.safe_load(SHIPPED_RULES.read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

class TestLoadBookingRules:
    def test_shipped_file_loads(self):
        rules = load_booking_rules(SHIPPED_RULES)
        assert rules.version == "v1.0.0"
        assert rules.opens_at == time(9, 0)
        assert rules.closes_at == time(17, 0)
        assert rules.closed_weekdays == frozenset({6})
        assert rules.duplicate_match_precision == "hour"
        assert rules.batch_size == 10
        assert rules.yaml_hash and len(rules.yaml_hash) == 64

    def test_defaults_match_shipped_file(self):
        loaded = load_booking_rules(SHIPPED_RULES)
        default = BookingRules()
        for attr in (
            "timezone", "opens_at", "closes_at", "closed_weekdays", "weight_bands",
            "max_rows", "max_file_bytes", "batch_size", "batch_pause_seconds",
            "duplicate_match_precision", "notes_max_length", "max_imports_per_hour",
        ):
            assert getattr(loaded, attr) == getattr(default, attr), attr

    def test_minute_precision(self, tmp_path):
        data = _base()
        data["duplicates"]["match_precision"] = "minute"
        path = tmp_path / "rules.yml"
        path.write_text(yaml.safe_dump(data))
        assert load_booking_rules(path).duplicate_match_precision == "minute"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_booking_rules(tmp_path / "nope.yml")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidateBookingRules:
    def test_shipped_is_valid(self):
        validate_booking_rules(_base())

    def test_not_a_mapping(self):
        with pytest.raises(BookingRulesValidationError):
            validate_booking_rules(["a"])  # type: ignore[arg-type]

    def test_missing_key(self):
        data = _base()
        del data["weight_bands"]
        with pytest.raises(BookingRulesValidationError, match="weight_bands"):
            validate_booking_rules(data)

    def test_unknown_timezone(self):
        data = _base()
        data["timezone"] = "Mars/Olympus"
        with pytest.raises(BookingRulesValidationError, match="timezone"):
            validate_booking_rules(data)

    def test_open_after_close(self):
        data = _base()
        data["business_hours"] = {"open": "18:00", "close": "09:00"}
        with pytest.raises(BookingRulesValidationError):
            validate_booking_rules(data)

    def test_bad_clock(self):
        data = _base()
        data["business_hours"]["open"] = "9am"
        with pytest.raises(BookingRulesValidationError):
            validate_booking_rules(data)

    def test_unknown_weekday(self):
        data = _base()
        data["closed_weekdays"] = ["funday"]
        with pytest.raises(BookingRulesValidationError):
            validate_booking_rules(data)

    def test_missing_size_band(self):
        data = _base()
        del data["weight_bands"]["xlarge"]
        with pytest.raises(BookingRulesValidationError, match="xlarge"):
            validate_booking_rules(data)

    def test_inverted_band(self):
        data = _base()
        data["weight_bands"]["small"] = {"min": 20, "max": 10}
        with pytest.raises(BookingRulesValidationError):
            validate_booking_rules(data)

    def test_zero_limit(self):
        data = _base()
        data["import_limits"]["max_rows"] = 0
        with pytest.raises(BookingRulesValidationError):
            validate_booking_rules(data)

    def test_zero_pause_allowed(self):
        data = _base()
        data["import_limits"]["batch_pause_seconds"] = 0
        validate_booking_rules(data)

    def test_bad_precision(self):
        data = _base()
        data["duplicates"]["match_precision"] = "day"
        with pytest.raises(BookingRulesValidationError):
            validate_booking_rules(data)


# ---------------------------------------------------------------------------
# BookingRules helpers
# ---------------------------------------------------------------------------

class TestBookingRulesHelpers:
    def test_sunday_closed(self):
        rules = BookingRules()
        assert rules.is_closed(date(2030, 6, 2))
        assert not rules.is_closed(date(2030, 6, 3))

    def test_hours_half_open(self):
        rules = BookingRules()
        assert rules.is_within_hours(time(9, 0))
        assert rules.is_within_hours(time(16, 59))
        assert not rules.is_within_hours(time(17, 0))
        assert not rules.is_within_hours(time(8, 59))

    @pytest.mark.parametrize("weight,size,ok", [
        ("18", "small", True),
        ("19", "small", False),
        ("45", "small", False),
        ("35", "medium", True),
        ("200", "xlarge", True),
        ("50", "xlarge", False),
    ])
    def test_weight_bands(self, weight, size, ok):
        assert BookingRules().weight_matches_size(Decimal(weight), size) is ok
