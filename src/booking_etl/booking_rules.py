"""booking_etl.booking_rules

YAML-based business configuration for appointment validation and import.

Responsibilities:
  - Load and validate the rules file (config/booking_rules.yml)
  - Expose business hours, closed weekdays, timezone and weight bands to the
    business-rule validator
  - Expose import limits (row/size ceilings, group size, pause, rate limit)
  - Hash YAML content for traceability in run reports

Usage:
    from pathlib import Path
    from booking_etl.booking_rules import load_booking_rules

    rules = load_booking_rules(Path("config/booking_rules.yml"))
    rules.is_closed(appointment_date)
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from booking_etl.normalize import PET_SIZES

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

VALID_PRECISIONS = ("hour", "minute")

REQUIRED_YAML_KEYS = frozenset({
    "version",
    "timezone",
    "business_hours",
    "closed_weekdays",
    "weight_bands",
})

_DEFAULT_WEIGHT_BANDS: dict[str, tuple[Decimal, Decimal | None]] = {
    "small": (Decimal("0"), Decimal("18")),
    "medium": (Decimal("19"), Decimal("35")),
    "large": (Decimal("36"), Decimal("65")),
    "xlarge": (Decimal("66"), None),
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class BookingRulesValidationError(ValueError):
    """Raised when a booking rules YAML file fails schema validation."""


# ---------------------------------------------------------------------------
# BookingRules dataclass
# ---------------------------------------------------------------------------

@dataclass
class BookingRules:
    """Parsed, validated booking rules.  Defaults match config/booking_rules.yml."""

    version: str = "builtin"
    timezone: str = "America/New_York"
    opens_at: time = time(9, 0)
    closes_at: time = time(17, 0)
    closed_weekdays: frozenset[int] = frozenset({6})
    weight_bands: dict[str, tuple[Decimal, Decimal | None]] = field(
        default_factory=lambda: dict(_DEFAULT_WEIGHT_BANDS)
    )
    max_rows: int = 1000
    max_file_bytes: int = 5 * 1024 * 1024
    batch_size: int = 10
    batch_pause_seconds: float = 0.1
    duplicate_match_precision: str = "hour"
    notes_max_length: int = 1000
    max_imports_per_hour: int = 10
    yaml_hash: str | None = None

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def is_closed(self, day: date) -> bool:
        return day.weekday() in self.closed_weekdays

    def is_within_hours(self, at: time) -> bool:
        return self.opens_at <= at < self.closes_at

    def weight_band(self, size: str) -> tuple[Decimal, Decimal | None]:
        return self.weight_bands[size]

    def weight_matches_size(self, weight: Decimal, size: str) -> bool:
        low, high = self.weight_band(size)
        if weight < low:
            return False
        return high is None or weight <= high


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_booking_rules(yaml_path: Path) -> BookingRules:
    """Load, validate, and return BookingRules from a YAML file.

    Raises:
        BookingRulesValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_booking_rules(data)

    hours = data["business_hours"]
    limits = data.get("import_limits") or {}
    duplicates = data.get("duplicates") or {}
    defaults = BookingRules()

    return BookingRules(
        version=str(data["version"]),
        timezone=str(data["timezone"]),
        opens_at=_parse_clock(hours["open"]),
        closes_at=_parse_clock(hours["close"]),
        closed_weekdays=frozenset(
            WEEKDAYS.index(str(d).lower()) for d in (data.get("closed_weekdays") or [])
        ),
        weight_bands={
            size: (
                Decimal(str(band["min"])),
                Decimal(str(band["max"])) if band.get("max") is not None else None,
            )
            for size, band in data["weight_bands"].items()
        },
        max_rows=int(limits.get("max_rows", defaults.max_rows)),
        max_file_bytes=int(limits.get("max_file_bytes", defaults.max_file_bytes)),
        batch_size=int(limits.get("batch_size", defaults.batch_size)),
        batch_pause_seconds=float(
            limits.get("batch_pause_seconds", defaults.batch_pause_seconds)
        ),
        duplicate_match_precision=str(
            duplicates.get("match_precision", defaults.duplicate_match_precision)
        ),
        notes_max_length=int(limits.get("notes_max_length", defaults.notes_max_length)),
        max_imports_per_hour=int(
            limits.get("max_imports_per_hour", defaults.max_imports_per_hour)
        ),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )


def validate_booking_rules(data: dict[str, Any]) -> None:
    """Raise BookingRulesValidationError if data does not match required schema.

    Validates:
      - Required top-level keys present
      - timezone resolvable
      - business_hours open < close, both HH:MM
      - closed_weekdays are weekday names
      - weight_bands cover every pet size with min <= max
      - import_limits are positive
      - duplicates.match_precision is 'hour' or 'minute'
    """
    if not isinstance(data, dict):
        raise BookingRulesValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise BookingRulesValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    try:
        ZoneInfo(str(data["timezone"]))
    except (ZoneInfoNotFoundError, ValueError):
        raise BookingRulesValidationError(f"Unknown timezone '{data['timezone']}'.")

    hours = data.get("business_hours") or {}
    if "open" not in hours or "close" not in hours:
        raise BookingRulesValidationError("business_hours requires 'open' and 'close'.")
    opens_at = _parse_clock(hours["open"])
    closes_at = _parse_clock(hours["close"])
    if opens_at >= closes_at:
        raise BookingRulesValidationError(
            f"business_hours open ({opens_at}) must be before close ({closes_at})."
        )

    for day in data.get("closed_weekdays") or []:
        if str(day).lower() not in WEEKDAYS:
            raise BookingRulesValidationError(f"Unknown weekday '{day}' in closed_weekdays.")

    bands = data.get("weight_bands") or {}
    missing_sizes = set(PET_SIZES) - set(bands.keys())
    if missing_sizes:
        raise BookingRulesValidationError(f"weight_bands missing sizes: {sorted(missing_sizes)}")
    for size, band in bands.items():
        if size not in PET_SIZES:
            raise BookingRulesValidationError(f"Unknown pet size '{size}' in weight_bands.")
        if not isinstance(band, dict) or "min" not in band:
            raise BookingRulesValidationError(f"weight_bands.{size} requires 'min'.")
        try:
            low = float(band["min"])
            high = float(band["max"]) if band.get("max") is not None else None
        except (TypeError, ValueError):
            raise BookingRulesValidationError(f"weight_bands.{size} values must be numeric.")
        if high is not None and low > high:
            raise BookingRulesValidationError(
                f"weight_bands.{size} min ({low}) must be <= max ({high})."
            )

    for key, val in (data.get("import_limits") or {}).items():
        try:
            fval = float(val)
        except (TypeError, ValueError):
            raise BookingRulesValidationError(f"import_limits.{key} value '{val}' is not numeric.")
        if fval < 0 or (fval == 0 and key != "batch_pause_seconds"):
            raise BookingRulesValidationError(f"import_limits.{key} must be positive.")

    precision = (data.get("duplicates") or {}).get("match_precision", "hour")
    if precision not in VALID_PRECISIONS:
        raise BookingRulesValidationError(
            f"duplicates.match_precision must be one of {list(VALID_PRECISIONS)}."
        )


def _parse_clock(value: Any) -> time:
    try:
        return datetime.strptime(str(value).strip(), "%H:%M").time()
    except ValueError:
        raise BookingRulesValidationError(f"Invalid HH:MM clock value '{value}'.")
