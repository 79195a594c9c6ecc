"""booking_etl.pipeline

Entry points for the two ways appointments are created by staff:

  run_import          -- bulk CSV upload
  create_appointment  -- one appointment entered by an operator

Both go through the same sanitizer cell rule, schema and business-rule
validators, duplicate detector, entity resolver and persistence function, so
identical input produces identical outcomes on either path.

Processing order (run_import):
  1.  Rate-limit check for the operator (before the file is read)
  2.  import_run row opened (skipped on dry run / validate-only)
  3.  File guards + per-cell sanitization        -> FileError aborts
  4.  Schema + business-rule validation per row  -> valid / invalid
  5.  Duplicate detection over valid rows        -> strategy applied
  6.  Batch execution under the failure policy
  7.  import_run row closed with status and counters
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

import psycopg
from psycopg.types.json import Jsonb

from booking_etl.audit import CREATION_METHODS, AuditSink
from booking_etl.batch_executor import (
    PARTIAL,
    ExecutionOptions,
    WorkItem,
    execute_batch,
)
from booking_etl.booking_rules import BookingRules
from booking_etl.business_rules import validate_row
from booking_etl.catalog import PriceCatalog
from booking_etl.duplicates import (
    DUPLICATE_STRATEGIES,
    OVERWRITE,
    REJECT,
    SKIP,
    DuplicateMatch,
    DuplicateRejectedError,
    detect_duplicates,
    fetch_existing_appointments,
)
from booking_etl.notify import Notifier
from booking_etl.rate_limit import OperatorRateLimiter
from booking_etl.sanitize import ALL_COLUMNS, FileError, RawRow, read_upload, sanitize_row
from booking_etl.schema_validation import ValidatedRow
from booking_etl.shared import (
    IMPORT_STATUSES,
    ImportSummary,
    RowDiagnostic,
    render_error_report,
)

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result record
# ---------------------------------------------------------------------------

@dataclass
class ImportResult:
    summary: ImportSummary
    originals: dict[int, dict[str, str]] = field(default_factory=dict)
    content_hash: str | None = None

    def error_report(self) -> str:
        return render_error_report(self.summary, self.originals)


# ---------------------------------------------------------------------------
# Shared stages
# ---------------------------------------------------------------------------

def validate_rows(
    rows: Iterable[RawRow],
    catalog: PriceCatalog,
    rules: BookingRules,
    summary: ImportSummary,
    now: datetime | None = None,
    overrides: Iterable[str] = (),
) -> list[ValidatedRow]:
    """Validate every row and record a diagnostic for each."""
    now = now or rules.now()
    overrides = frozenset(overrides)
    validated: list[ValidatedRow] = []
    for raw in rows:
        vrow = validate_row(raw, catalog, rules, now=now, overrides=overrides)
        validated.append(vrow)
        summary.diagnostics.append(RowDiagnostic(
            row_number=vrow.row_number,
            outcome="valid" if vrow.is_valid else "invalid",
            errors=list(vrow.errors),
            warnings=list(vrow.warnings),
        ))
        if vrow.is_valid:
            summary.valid_rows += 1
        else:
            summary.invalid_rows += 1
        for w in vrow.warnings:
            summary.warnings.append(f"row {vrow.row_number}: {w.code} {w.message}")
    return validated


def find_duplicates(
    conn: psycopg.Connection,
    validated: list[ValidatedRow],
    rules: BookingRules,
    summary: ImportSummary,
) -> list[DuplicateMatch]:
    valid = [v for v in validated if v.is_valid]
    existing = fetch_existing_appointments(conn, [v.payload.customer.email for v in valid])
    matches = detect_duplicates(valid, existing, rules.tz, rules.duplicate_match_precision)
    summary.duplicates_found = len(matches)
    summary.duplicates = [m.to_dict() for m in matches]
    for m in matches:
        summary.diagnostic(m.row_number).duplicate = m.to_dict()
    return matches


def plan_work(
    validated: list[ValidatedRow],
    matches: list[DuplicateMatch],
    strategy: str,
    summary: ImportSummary,
) -> list[WorkItem]:
    """Apply the duplicate strategy and return the rows to persist.

    Raises:
        DuplicateRejectedError: strategy is 'reject' and there is any match.
    """
    if strategy not in DUPLICATE_STRATEGIES:
        raise ValueError(f"unknown duplicate strategy {strategy!r}")
    if strategy == REJECT and matches:
        raise DuplicateRejectedError(matches)

    by_row = {m.row_number: m for m in matches}
    items: list[WorkItem] = []
    for vrow in validated:
        if not vrow.is_valid:
            continue
        match = by_row.get(vrow.row_number)
        if match is None:
            items.append(WorkItem(row=vrow))
        elif strategy == SKIP:
            summary.skipped += 1
            summary.set_outcome(vrow.row_number, "skipped_duplicate")
        elif strategy == OVERWRITE:
            items.append(WorkItem(
                row=vrow,
                overwrite_appointment_id=match.existing_appointment_id,
                overwrite_row_number=match.earlier_row_number,
            ))
    return items


def _final_status(summary: ImportSummary, execution_status: str) -> str:
    if execution_status in ("rolled_back", "cancelled"):
        return execution_status
    if summary.invalid_rows or summary.failed:
        return "completed_with_errors"
    return "completed"


# ---------------------------------------------------------------------------
# import_run bookkeeping
# ---------------------------------------------------------------------------

def _open_import_run(
    conn: psycopg.Connection,
    import_id: str,
    operator_id: str | None,
    filename: str,
    content_hash: str,
    duplicate_strategy: str,
    failure_policy: str,
) -> None:
    with conn.transaction():
        conn.execute(
            """
            INSERT INTO import_run
                (id, operator_id, source_name, content_hash,
                 duplicate_strategy, failure_policy, status)
            VALUES (%s, %s, %s, %s, %s, %s, 'running')
            """,
            (import_id, operator_id, filename, content_hash, duplicate_strategy, failure_policy),
        )


def _close_import_run(conn: psycopg.Connection, summary: ImportSummary) -> None:
    if summary.status not in IMPORT_STATUSES:
        raise ValueError(f"unknown import status {summary.status!r}")
    counters = summary.to_dict()
    with conn.transaction():
        conn.execute(
            """
            UPDATE import_run
            SET status = %s, counters = %s, finished_at = now()
            WHERE id = %s
            """,
            (
                summary.status,
                Jsonb({"totals": counters["totals"], "notifications": counters["notifications"]}),
                summary.import_id,
            ),
        )


# ---------------------------------------------------------------------------
# Bulk import
# ---------------------------------------------------------------------------

def run_import(
    conn: psycopg.Connection,
    filename: str,
    content: bytes,
    catalog: PriceCatalog,
    rules: BookingRules | None = None,
    duplicate_strategy: str = SKIP,
    failure_policy: str = PARTIAL,
    send_notifications: bool = False,
    operator_id: str | None = None,
    notifier: Notifier | None = None,
    audit: AuditSink | None = None,
    rate_limiter: OperatorRateLimiter | None = None,
    import_id: str | None = None,
    dry_run: bool = False,
    validate_only: bool = False,
    overrides: Iterable[str] = (),
    now: datetime | None = None,
    progress: Callable[[int, int], None] | None = None,
    cancel: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ImportResult:
    """Run one bulk import.  conn must be in autocommit mode.

    Raises:
        RateLimitExceededError: operator is over the hourly import limit.
        FileError: the upload was rejected as a whole.
    """
    rules = rules or BookingRules()
    if duplicate_strategy not in DUPLICATE_STRATEGIES:
        raise ValueError(f"unknown duplicate strategy {duplicate_strategy!r}")
    import_id = import_id or str(uuid.uuid4())
    record_run = not (dry_run or validate_only)

    if rate_limiter is not None and operator_id and record_run:
        rate_limiter.acquire(conn, operator_id)

    content_hash = hashlib.sha256(content).hexdigest()
    summary = ImportSummary(import_id=import_id)
    result = ImportResult(summary=summary, content_hash=content_hash)

    if record_run:
        _open_import_run(
            conn, import_id, operator_id, filename, content_hash,
            duplicate_strategy, failure_policy,
        )

    try:
        rows = read_upload(filename, content, max_rows=rules.max_rows, max_bytes=rules.max_file_bytes)
        summary.total_rows = len(rows)
        result.originals = {r.row_number: r.original for r in rows}

        validated = validate_rows(rows, catalog, rules, summary, now=now, overrides=overrides)
        matches = find_duplicates(conn, validated, rules, summary)
        log.info(
            "Import %s: %d rows, %d valid, %d invalid, %d duplicate(s)",
            import_id, summary.total_rows, summary.valid_rows, summary.invalid_rows, len(matches),
        )

        if validate_only:
            summary.status = "completed_with_errors" if summary.invalid_rows else "completed"
            return result

        try:
            items = plan_work(validated, matches, duplicate_strategy, summary)
        except DuplicateRejectedError as exc:
            summary.status = "rejected"
            summary.warnings.append(str(exc))
            for vrow in validated:
                if vrow.is_valid:
                    summary.set_outcome(vrow.row_number, "not_attempted")
            log.warning("Import %s rejected: %s", import_id, exc)
        else:
            options = ExecutionOptions(
                failure_policy=failure_policy,
                creation_method="bulk_import",
                operator_id=operator_id,
                import_run_id=None if dry_run else import_id,
                batch_size=rules.batch_size,
                pause_seconds=rules.batch_pause_seconds,
                send_notifications=send_notifications,
                dry_run=dry_run,
            )
            outcome = execute_batch(
                conn, items, catalog, summary, options,
                audit=audit, notifier=notifier, progress=progress, cancel=cancel, sleep=sleep,
            )
            summary.status = _final_status(summary, outcome.status)
    except FileError as exc:
        summary.status = "aborted"
        summary.warnings.append(f"{exc.code}: {exc.message}")
        log.warning("Import %s aborted: %s %s", import_id, exc.code, exc.message)
        if record_run:
            _close_import_run(conn, summary)
        raise
    except Exception as exc:
        summary.status = "aborted"
        summary.warnings.append(f"{type(exc).__name__}: {exc}")
        log.error("Import %s aborted by unexpected error: %s", import_id, exc)
        if record_run:
            _close_import_run(conn, summary)
        raise

    if record_run:
        _close_import_run(conn, summary)
    log.info(
        "Import %s %s: created=%d updated=%d skipped=%d failed=%d",
        import_id, summary.status, summary.created, summary.updated,
        summary.skipped, summary.failed,
    )
    return result


# ---------------------------------------------------------------------------
# Manual single-record creation
# ---------------------------------------------------------------------------

@dataclass
class ManualAppointmentRequest:
    """One appointment as entered by an operator.

    Field names mirror the CSV columns.  customer_id / pet_id select existing
    records; blank identity fields are then filled from the stored record.
    """

    customer_email: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    pet_name: str | None = None
    pet_breed: str | None = None
    pet_size: str | None = None
    pet_weight: str | None = None
    service_name: str | None = None
    appointment_date: str | None = None
    appointment_time: str | None = None
    addons: list[str] = field(default_factory=list)
    notes: str | None = None
    payment_status: str | None = None
    payment_method: str | None = None
    amount_paid: str | None = None
    customer_id: str | None = None
    pet_id: str | None = None
    overrides: frozenset[str] = frozenset()
    creation_method: str = "operator_manual"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManualAppointmentRequest:
        known = {f for f in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"unknown request field(s): {sorted(unknown)}")
        values = dict(data)
        method = values.get("creation_method", "operator_manual")
        if method not in CREATION_METHODS:
            raise ValueError(f"unknown creation method {method!r}")
        addons = values.get("addons")
        if isinstance(addons, str):
            values["addons"] = addons.split(",")
        if "overrides" in values:
            values["overrides"] = frozenset(values["overrides"] or ())
        for key in ("pet_weight", "amount_paid"):
            if values.get(key) is not None:
                values[key] = str(values[key])
        return cls(**values)

    def to_columns(self) -> dict[str, str | None]:
        columns: dict[str, str | None] = {c: getattr(self, c) for c in ALL_COLUMNS if c != "addons"}
        columns["addons"] = ", ".join(self.addons) if self.addons else None
        return columns


def _prefill_existing(conn: psycopg.Connection, request: ManualAppointmentRequest) -> None:
    if request.customer_id:
        row = conn.execute(
            "SELECT email, first_name, last_name, phone FROM customer WHERE id = %s",
            (request.customer_id,),
        ).fetchone()
        if row is not None:
            full_name = " ".join(p for p in (row[1], row[2]) if p)
            request.customer_email = request.customer_email or row[0]
            request.customer_name = request.customer_name or full_name
            request.customer_phone = request.customer_phone or row[3]
    if request.customer_id and request.pet_id:
        row = conn.execute(
            "SELECT name, breed, size, weight FROM pet WHERE id = %s AND customer_id = %s",
            (request.pet_id, request.customer_id),
        ).fetchone()
        if row is not None:
            request.pet_name = request.pet_name or row[0]
            request.pet_breed = request.pet_breed or row[1]
            request.pet_size = request.pet_size or row[2]
            if request.pet_weight is None and row[3] is not None:
                request.pet_weight = str(row[3])


def create_appointment(
    conn: psycopg.Connection,
    request: ManualAppointmentRequest,
    catalog: PriceCatalog,
    rules: BookingRules | None = None,
    operator_id: str | None = None,
    duplicate_strategy: str = REJECT,
    send_notifications: bool = False,
    notifier: Notifier | None = None,
    audit: AuditSink | None = None,
    dry_run: bool = False,
    now: datetime | None = None,
) -> ImportSummary:
    """Create one appointment through the bulk-import rule set.

    The request is reported as row 1 of a one-row summary.
    """
    rules = rules or BookingRules()
    summary = ImportSummary(import_id=str(uuid.uuid4()), total_rows=1)

    _prefill_existing(conn, request)
    columns = sanitize_row(request.to_columns())
    raw = RawRow(row_number=1, values=columns, original=dict(columns))

    validated = validate_rows([raw], catalog, rules, summary, now=now, overrides=request.overrides)
    vrow = validated[0]
    vrow.payload.customer.customer_id = request.customer_id
    vrow.payload.pet.pet_id = request.pet_id
    if not vrow.is_valid:
        summary.status = "completed_with_errors"
        return summary

    matches = find_duplicates(conn, validated, rules, summary)
    try:
        items = plan_work(validated, matches, duplicate_strategy, summary)
    except DuplicateRejectedError as exc:
        summary.status = "rejected"
        summary.warnings.append(str(exc))
        summary.set_outcome(vrow.row_number, "not_attempted")
        return summary

    options = ExecutionOptions(
        failure_policy=PARTIAL,
        creation_method=request.creation_method,
        operator_id=operator_id,
        batch_size=1,
        pause_seconds=0,
        send_notifications=send_notifications,
        dry_run=dry_run,
    )
    outcome = execute_batch(conn, items, catalog, summary, options, audit=audit, notifier=notifier)
    summary.status = _final_status(summary, outcome.status)
    return summary
