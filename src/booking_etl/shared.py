"""booking_etl.shared

Shared records and utilities used by the bulk-import and manual-creation
paths.  Includes the per-row diagnostic records, ImportSummary, the
error-report writer, and run-report support.
"""

from __future__ import annotations

import csv
import io
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class PersistenceError(Exception):
    """Raised when one row's writes cannot be completed."""


# ---------------------------------------------------------------------------
# Diagnostic records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldError:
    """Blocking problem with one field (schema or business rule)."""

    field: str
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "code": self.code, "message": self.message}


@dataclass(frozen=True)
class FieldWarning:
    """Non-blocking, overridable observation about one field."""

    field: str
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "code": self.code, "message": self.message}


ROW_OUTCOMES = (
    "valid",
    "invalid",
    "created",
    "updated",
    "skipped_duplicate",
    "failed",
    "rolled_back",
    "not_attempted",
)


@dataclass
class RowDiagnostic:
    row_number: int
    outcome: str
    errors: list[FieldError] = field(default_factory=list)
    warnings: list[FieldWarning] = field(default_factory=list)
    duplicate: dict[str, Any] | None = None
    appointment_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_number": self.row_number,
            "outcome": self.outcome,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "duplicate": self.duplicate,
            "appointment_id": self.appointment_id,
        }


# ---------------------------------------------------------------------------
# ImportSummary
# ---------------------------------------------------------------------------

IMPORT_STATUSES = (
    "completed",
    "completed_with_errors",
    "rolled_back",
    "rejected",
    "cancelled",
    "aborted",
)


@dataclass
class ImportSummary:
    import_id: str
    status: str = "completed"
    total_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    duplicates_found: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    customers_created: int = 0
    pets_created: int = 0
    inactive_profiles_created: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    notifications_skipped_inactive: int = 0
    diagnostics: list[RowDiagnostic] = field(default_factory=list)
    duplicates: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def diagnostic(self, row_number: int) -> RowDiagnostic:
        for diag in self.diagnostics:
            if diag.row_number == row_number:
                return diag
        raise KeyError(row_number)

    def set_outcome(self, row_number: int, outcome: str, **changes: Any) -> RowDiagnostic:
        if outcome not in ROW_OUTCOMES:
            raise ValueError(f"unknown row outcome {outcome!r}")
        diag = self.diagnostic(row_number)
        diag.outcome = outcome
        for key, value in changes.items():
            setattr(diag, key, value)
        return diag

    def to_dict(self) -> dict[str, Any]:
        return {
            "import_id": self.import_id,
            "status": self.status,
            "totals": {
                "rows": self.total_rows,
                "valid": self.valid_rows,
                "invalid": self.invalid_rows,
                "duplicates": self.duplicates_found,
                "created": self.created,
                "updated": self.updated,
                "skipped": self.skipped,
                "failed": self.failed,
                "customers_created": self.customers_created,
                "pets_created": self.pets_created,
                "inactive_profiles_created": self.inactive_profiles_created,
            },
            "notifications": {
                "sent": self.notifications_sent,
                "failed": self.notifications_failed,
                "skipped_inactive": self.notifications_skipped_inactive,
            },
            "rows": [d.to_dict() for d in self.diagnostics],
            "duplicates": self.duplicates,
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Error report
# ---------------------------------------------------------------------------

ERROR_COLUMN = "_errors"


def format_errors(errors: Iterable[FieldError]) -> str:
    return "; ".join(f"{e.field}: {e.message}" for e in errors)


class ErrorReportWriter:
    """Lazy-open CSV writer for rows that failed validation or persistence."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.rows_written = 0

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + [ERROR_COLUMN]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out[ERROR_COLUMN] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.rows_written += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


def error_report_rows(
    summary: ImportSummary,
    originals: dict[int, dict[str, str]],
) -> list[tuple[dict[str, str], str]]:
    """Return (original row cells, error text) for every invalid or failed row."""
    out: list[tuple[dict[str, str], str]] = []
    for diag in summary.diagnostics:
        if diag.outcome not in ("invalid", "failed") or not diag.errors:
            continue
        original = originals.get(diag.row_number)
        if original is None:
            continue
        out.append((original, format_errors(diag.errors)))
    return out


def render_error_report(
    summary: ImportSummary,
    originals: dict[int, dict[str, str]],
) -> str:
    """Render the downloadable error report as CSV text ('' when clean)."""
    rows = error_report_rows(summary, originals)
    if not rows:
        return ""
    buf = io.StringIO()
    fieldnames = list(rows[0][0].keys()) + [ERROR_COLUMN]
    writer = csv.DictWriter(buf, fieldnames=fieldnames, extrasaction="ignore")
    writer.writeheader()
    for original, reason in rows:
        out = dict(original)
        out[ERROR_COLUMN] = reason
        writer.writerow(out)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

def build_import_report(summary: ImportSummary, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        "Appointment Import Report",
        f"  import_id: {summary.import_id}",
        f"  status:    {summary.status}",
        f"  dry_run:   {dry_run}",
        "=" * 60,
        f"  rows:                           {summary.total_rows}",
        f"  valid:                          {summary.valid_rows}",
        f"  invalid:                        {summary.invalid_rows}",
        f"  duplicates found:               {summary.duplicates_found}",
        f"  appointments created:           {summary.created}",
        f"  appointments overwritten:       {summary.updated}",
        f"  skipped:                        {summary.skipped}",
        f"  failed:                         {summary.failed}",
        f"  customers created:              {summary.customers_created}",
        f"  inactive profiles created:      {summary.inactive_profiles_created}",
        f"  pets created:                   {summary.pets_created}",
        f"  notifications sent/failed:      "
        f"{summary.notifications_sent}/{summary.notifications_failed}",
    ]
    problem_rows = [d for d in summary.diagnostics if d.errors]
    if problem_rows:
        lines.append(f"\nRow errors ({len(problem_rows)}):")
        for diag in problem_rows[:20]:
            lines.append(f"  row {diag.row_number}: {format_errors(diag.errors)}")
        if len(problem_rows) > 20:
            lines.append(f"  ... and {len(problem_rows) - 20} more")
    if summary.warnings:
        lines.append(f"\nWarnings ({len(summary.warnings)}):")
        for w in summary.warnings[:20]:
            lines.append(f"  {w}")
    lines.append("=" * 60)
    return "\n".join(lines)


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    summary: ImportSummary,
    rules_hash: str | None = None,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        "rules_hash": rules_hash,
        **source_paths,
        "summary": summary.to_dict(),
    }
    report_path = Path(f"./artifacts/reports/{run_id}.json")
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
