"""booking_etl.sanitize

File-level guards and per-cell formula-injection stripping for uploaded
appointment CSVs.

Every file-level problem (extension, size, encoding, header, row count)
raises FileError with a stable code before any row is validated.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from pathlib import PurePath

from booking_etl.normalize import normalize_header

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FORMULA_TRIGGERS = frozenset("=+-@")

REQUIRED_COLUMNS = (
    "customer_email",
    "customer_name",
    "customer_phone",
    "pet_name",
    "pet_breed",
    "pet_size",
    "pet_weight",
    "service_name",
    "appointment_date",
    "appointment_time",
)

OPTIONAL_COLUMNS = (
    "addons",
    "notes",
    "payment_status",
    "payment_method",
    "amount_paid",
)

ALL_COLUMNS = REQUIRED_COLUMNS + OPTIONAL_COLUMNS

DEFAULT_MAX_ROWS = 1000
DEFAULT_MAX_BYTES = 5 * 1024 * 1024


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class FileError(Exception):
    """Raised when an upload is rejected as a whole."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


# ---------------------------------------------------------------------------
# RawRow
# ---------------------------------------------------------------------------

@dataclass
class RawRow:
    """One data record.  row_number is the 1-indexed record position in the
    file, with the header as row 1."""

    row_number: int
    values: dict[str, str]
    original: dict[str, str]


# ---------------------------------------------------------------------------
# Cell sanitization
# ---------------------------------------------------------------------------

def sanitize_cell(value: str | None) -> str | None:
    """Strip leading formula triggers until none remains.

    Whitespace in front of a trigger is dropped with it; a cell that does not
    start with a trigger is returned unchanged.
    """
    if value is None:
        return None
    v = value
    while True:
        stripped = v.lstrip()
        if not stripped or stripped[0] not in FORMULA_TRIGGERS:
            return v
        v = stripped[1:]


def sanitize_row(values: dict[str, str | None]) -> dict[str, str]:
    """Sanitize every cell of a column mapping; None becomes ''."""
    return {k: sanitize_cell(v) or "" for k, v in values.items()}


# ---------------------------------------------------------------------------
# Upload reader
# ---------------------------------------------------------------------------

def read_upload(
    filename: str,
    content: bytes,
    max_rows: int = DEFAULT_MAX_ROWS,
    max_bytes: int = DEFAULT_MAX_BYTES,
    required_columns: tuple[str, ...] = REQUIRED_COLUMNS,
) -> list[RawRow]:
    """Validate the upload as a whole and return its sanitized rows.

    Raises:
        FileError: INVALID_EXTENSION, FILE_TOO_LARGE, UNREADABLE_FILE,
            EMPTY_FILE, MISSING_COLUMNS or TOO_MANY_ROWS.
    """
    if PurePath(filename).suffix.lower() != ".csv":
        raise FileError("INVALID_EXTENSION", f"{filename!r} is not a .csv file")

    if len(content) > max_bytes:
        raise FileError(
            "FILE_TOO_LARGE",
            f"file is {len(content)} bytes; the limit is {max_bytes} bytes",
        )

    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise FileError("UNREADABLE_FILE", f"file is not valid UTF-8: {exc}")

    try:
        records = list(csv.reader(io.StringIO(text, newline="")))
    except csv.Error as exc:
        raise FileError("UNREADABLE_FILE", f"CSV parsing failed: {exc}")

    if not records or not any(cell.strip() for cell in records[0]):
        raise FileError("EMPTY_FILE", "file has no header row")

    raw_headers = records[0]
    headers = [normalize_header(h) for h in raw_headers]
    missing = [c for c in required_columns if c not in headers]
    if missing:
        raise FileError(
            "MISSING_COLUMNS", f"CSV is missing required columns: {', '.join(missing)}"
        )

    rows: list[RawRow] = []
    for row_number, record in enumerate(records[1:], start=2):
        if not any(cell.strip() for cell in record):
            continue
        if len(rows) >= max_rows:
            raise FileError(
                "TOO_MANY_ROWS",
                f"CSV files must contain {max_rows} rows or fewer",
            )
        padded = record + [""] * (len(headers) - len(record))
        values = {
            h: sanitize_cell(cell) or ""
            for h, cell in zip(headers, padded)
            if h
        }
        original = dict(zip(raw_headers, padded))
        rows.append(RawRow(row_number=row_number, values=values, original=original))

    return rows
