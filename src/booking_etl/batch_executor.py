"""booking_etl.batch_executor

Persistence of validated appointment rows.

Each row is written inside its own conn.transaction() block: resolve
customer, resolve pet, price the service, insert (or overwrite) the
appointment, replace its addons, record the payment.  The connection must
be in autocommit mode so that a top-level block is a real BEGIN/COMMIT and
a nested one is a savepoint.

Failure policies:
  partial         -- every row commits on its own; a failed row is recorded
                     and the run continues
  all_or_nothing  -- one outer transaction; the first failed row rolls back
                     every write of the import

Rows are processed in groups (default 10) with a short pause between
groups.  Progress is reported once per group and a cancel event is checked
between groups.  Audit events and notifications are sent only for rows
whose writes have committed.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

import psycopg

from booking_etl.audit import (
    APPOINTMENT_CREATED,
    APPOINTMENT_OVERWRITTEN,
    CREATION_METHODS,
    AuditEvent,
    AuditSink,
)
from booking_etl.catalog import PriceCatalog, PricingUnavailableError, quote
from booking_etl.notify import Notifier
from booking_etl.resolution import ResolutionCache, resolve_customer, resolve_pet
from booking_etl.schema_validation import AppointmentPayload, ValidatedRow
from booking_etl.shared import FieldError, ImportSummary, PersistenceError

log = logging.getLogger(__name__)

PARTIAL = "partial"
ALL_OR_NOTHING = "all_or_nothing"
FAILURE_POLICIES = (PARTIAL, ALL_OR_NOTHING)

PERSISTENCE_FAILED = "PERSISTENCE_FAILED"

# creation method -> customer.origin for profiles created on someone's behalf
_CUSTOMER_ORIGIN = {
    "bulk_import": "bulk_import",
    "operator_manual": "operator_manual",
    "self_service": "operator_manual",
}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class WorkItem:
    """One row to persist, with its overwrite target if it is a duplicate."""

    row: ValidatedRow
    overwrite_appointment_id: str | None = None
    overwrite_row_number: int | None = None


@dataclass
class RowResult:
    row_number: int
    appointment_id: str
    customer_id: str
    overwritten: bool = False
    customer_created: bool = False
    pet_created: bool = False


@dataclass
class ExecutionOptions:
    failure_policy: str = PARTIAL
    creation_method: str = "bulk_import"
    operator_id: str | None = None
    import_run_id: str | None = None
    batch_size: int = 10
    pause_seconds: float = 0.1
    send_notifications: bool = False
    dry_run: bool = False


@dataclass
class ExecutionOutcome:
    status: str
    results: list[RowResult] = field(default_factory=list)
    failed_rows: list[int] = field(default_factory=list)
    cancelled: bool = False


class _AbortImport(Exception):
    """Internal: unwinds the outer all_or_nothing transaction."""


# ---------------------------------------------------------------------------
# Single-row persistence
# ---------------------------------------------------------------------------

def persist_row(
    conn: psycopg.Connection,
    payload: AppointmentPayload,
    catalog: PriceCatalog,
    cache: ResolutionCache,
    row_number: int = 0,
    creation_method: str = "bulk_import",
    operator_id: str | None = None,
    import_run_id: str | None = None,
    overwrite_appointment_id: str | None = None,
) -> RowResult:
    """Write one appointment and its child records.  Caller manages the
    transaction."""

    if creation_method not in _CUSTOMER_ORIGIN:
        raise ValueError(f"unknown creation method {creation_method!r}")

    # Step 1: identities
    customer = resolve_customer(
        conn, payload.customer, cache, origin=_CUSTOMER_ORIGIN[creation_method]
    )
    pet = resolve_pet(conn, customer.id, payload.pet, cache)

    # Step 2: price at write time
    priced = quote(catalog, payload.service_name or "", payload.pet.size or "", payload.addon_names)

    # Step 3: appointment
    if overwrite_appointment_id:
        row = conn.execute(
            """
            UPDATE appointment SET
                customer_id          = %s,
                pet_id               = %s,
                service_id           = %s,
                scheduled_at         = %s,
                duration_minutes     = %s,
                total_price          = %s,
                notes                = %s,
                payment_status       = %s,
                last_modified_method = %s,
                last_modified_by     = %s,
                updated_at           = now()
            WHERE id = %s
            RETURNING id
            """,
            (
                customer.id, pet.id, priced.service.id, payload.scheduled_at,
                priced.service.duration_minutes, priced.total, payload.notes,
                payload.payment_status, creation_method, operator_id,
                overwrite_appointment_id,
            ),
        ).fetchone()
        if row is None:
            raise PersistenceError(
                f"appointment {overwrite_appointment_id} no longer exists"
            )
        appointment_id = str(row[0])
        conn.execute("DELETE FROM appointment_addon WHERE appointment_id = %s", (appointment_id,))
        conn.execute("DELETE FROM payment WHERE appointment_id = %s", (appointment_id,))
    else:
        row = conn.execute(
            """
            INSERT INTO appointment
                (customer_id, pet_id, service_id, scheduled_at, duration_minutes,
                 total_price, notes, payment_status, creation_method,
                 created_by_operator_id, import_run_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                customer.id, pet.id, priced.service.id, payload.scheduled_at,
                priced.service.duration_minutes, priced.total, payload.notes,
                payload.payment_status, creation_method, operator_id, import_run_id,
            ),
        ).fetchone()
        appointment_id = str(row[0])

    # Step 4: addons at their current price
    for addon in priced.addons:
        conn.execute(
            """
            INSERT INTO appointment_addon (appointment_id, addon_id, price)
            VALUES (%s, %s, %s)
            ON CONFLICT (appointment_id, addon_id) DO NOTHING
            """,
            (appointment_id, addon.id, addon.price),
        )

    # Step 5: payment
    if payload.payment_status in ("paid", "partially_paid"):
        if payload.payment_status == "paid":
            amount = payload.amount_paid if payload.amount_paid is not None else priced.total
            status = "succeeded"
        else:
            amount = payload.amount_paid
            status = "pending"
        conn.execute(
            """
            INSERT INTO payment
                (appointment_id, customer_id, amount, status, payment_method, recorded_via)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                appointment_id, customer.id, amount, status,
                payload.payment_method or "other", creation_method,
            ),
        )

    return RowResult(
        row_number=row_number,
        appointment_id=appointment_id,
        customer_id=customer.id,
        overwritten=bool(overwrite_appointment_id),
        customer_created=customer.created,
        pet_created=pet.created,
    )


# ---------------------------------------------------------------------------
# Batch execution
# ---------------------------------------------------------------------------

def execute_batch(
    conn: psycopg.Connection,
    items: list[WorkItem],
    catalog: PriceCatalog,
    summary: ImportSummary,
    options: ExecutionOptions | None = None,
    cache: ResolutionCache | None = None,
    audit: AuditSink | None = None,
    notifier: Notifier | None = None,
    progress: Callable[[int, int], None] | None = None,
    cancel: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ExecutionOutcome:
    """Persist items in row order under the chosen failure policy.

    Per-row outcomes and counters are written into summary.  Returns the
    execution status: completed, completed_with_errors, rolled_back or
    cancelled.
    """
    options = options or ExecutionOptions()
    if options.failure_policy not in FAILURE_POLICIES:
        raise ValueError(f"unknown failure policy {options.failure_policy!r}")
    if options.creation_method not in CREATION_METHODS:
        raise ValueError(f"unknown creation method {options.creation_method!r}")
    cache = cache or ResolutionCache()
    run = _BatchRun(conn, items, catalog, summary, options, cache, progress, cancel, sleep)

    if options.dry_run:
        with conn.transaction(force_rollback=True):
            outcome = run.run()
        cache.clear()
        return outcome

    outcome = run.run()
    if outcome.results:
        _dispatch(conn, outcome.results, summary, options, audit, notifier)
    return outcome


class _BatchRun:
    def __init__(
        self,
        conn: psycopg.Connection,
        items: list[WorkItem],
        catalog: PriceCatalog,
        summary: ImportSummary,
        options: ExecutionOptions,
        cache: ResolutionCache,
        progress: Callable[[int, int], None] | None,
        cancel: threading.Event | None,
        sleep: Callable[[float], None],
    ) -> None:
        self.conn = conn
        self.items = sorted(items, key=lambda i: i.row.row_number)
        self.catalog = catalog
        self.summary = summary
        self.options = options
        self.cache = cache
        self.progress = progress
        self.cancel = cancel
        self.sleep = sleep
        # row number -> appointment id written by that row in this import
        self.written: dict[int, str] = {}

    def groups(self) -> list[list[WorkItem]]:
        size = max(1, self.options.batch_size)
        return [self.items[i:i + size] for i in range(0, len(self.items), size)]

    def run(self) -> ExecutionOutcome:
        if self.options.failure_policy == ALL_OR_NOTHING:
            return self._run_all_or_nothing()
        return self._run_partial()

    # -- partial ------------------------------------------------------------

    def _run_partial(self) -> ExecutionOutcome:
        outcome = ExecutionOutcome(status="completed")
        groups = self.groups()
        done = 0
        for idx, group in enumerate(groups):
            if self._cancelled():
                self._mark_remaining(groups[idx:], "not_attempted")
                outcome.cancelled = True
                break
            for item in group:
                try:
                    result = self._write(item)
                except PersistenceError as exc:
                    self._record_failure(item, exc)
                    outcome.failed_rows.append(item.row.row_number)
                    continue
                self._record_success(result)
                outcome.results.append(result)
            done += len(group)
            self._report_progress(done)
            if idx < len(groups) - 1:
                self.sleep(self.options.pause_seconds)

        if outcome.cancelled:
            outcome.status = "cancelled"
        elif outcome.failed_rows:
            outcome.status = "completed_with_errors"
        return outcome

    # -- all_or_nothing -----------------------------------------------------

    def _run_all_or_nothing(self) -> ExecutionOutcome:
        outcome = ExecutionOutcome(status="completed")
        groups = self.groups()
        pending: list[RowResult] = []
        try:
            with self.conn.transaction():
                done = 0
                for idx, group in enumerate(groups):
                    if self._cancelled():
                        outcome.cancelled = True
                        self._mark_remaining(groups[idx:], "not_attempted")
                        raise _AbortImport()
                    for pos, item in enumerate(group):
                        try:
                            result = self._write(item)
                        except PersistenceError as exc:
                            self._record_failure(item, exc)
                            outcome.failed_rows.append(item.row.row_number)
                            self._mark_remaining(
                                [group[pos + 1:]] + groups[idx + 1:], "not_attempted"
                            )
                            raise _AbortImport()
                        pending.append(result)
                    done += len(group)
                    self._report_progress(done)
                    if idx < len(groups) - 1:
                        self.sleep(self.options.pause_seconds)
        except _AbortImport:
            self.cache.clear()
            for result in pending:
                self.summary.set_outcome(result.row_number, "rolled_back", appointment_id=None)
            outcome.status = "cancelled" if outcome.cancelled else "rolled_back"
            log.warning(
                "all_or_nothing import %s rolled back (%d row(s) undone)",
                self.summary.import_id, len(pending),
            )
            return outcome

        for result in pending:
            self._record_success(result)
        outcome.results = pending
        return outcome

    # -- helpers ------------------------------------------------------------

    def _write(self, item: WorkItem) -> RowResult:
        target = item.overwrite_appointment_id
        if target is None and item.overwrite_row_number is not None:
            target = self.written.get(item.overwrite_row_number)
        try:
            with self.conn.transaction():
                result = persist_row(
                    self.conn,
                    item.row.payload,
                    self.catalog,
                    self.cache,
                    row_number=item.row.row_number,
                    creation_method=self.options.creation_method,
                    operator_id=self.options.operator_id,
                    import_run_id=self.options.import_run_id,
                    overwrite_appointment_id=target,
                )
        except PersistenceError:
            self.cache.discard()
            raise
        except psycopg.Error as exc:
            self.cache.discard()
            raise PersistenceError(str(exc).strip()) from exc
        self.cache.commit()
        self.written[item.row.row_number] = result.appointment_id
        return result

    def _record_success(self, result: RowResult) -> None:
        s = self.summary
        if result.overwritten:
            s.updated += 1
            s.set_outcome(result.row_number, "updated", appointment_id=result.appointment_id)
        else:
            s.created += 1
            s.set_outcome(result.row_number, "created", appointment_id=result.appointment_id)
        if result.customer_created:
            s.customers_created += 1
            s.inactive_profiles_created += 1
        if result.pet_created:
            s.pets_created += 1

    def _record_failure(self, item: WorkItem, exc: PersistenceError) -> None:
        code = "PRICING_UNAVAILABLE" if isinstance(exc, PricingUnavailableError) else PERSISTENCE_FAILED
        diag = self.summary.diagnostic(item.row.row_number)
        diag.outcome = "failed"
        diag.errors = list(diag.errors) + [FieldError("_row", code, str(exc))]
        self.summary.failed += 1
        self.summary.warnings.append(f"row {item.row.row_number}: {exc}")
        log.warning("Row %d failed: %s", item.row.row_number, exc)

    def _mark_remaining(self, groups: list[list[WorkItem]], outcome: str) -> None:
        for group in groups:
            for item in group:
                self.summary.set_outcome(item.row.row_number, outcome)

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def _report_progress(self, done: int) -> None:
        if self.progress is not None:
            self.progress(done, len(self.items))


# ---------------------------------------------------------------------------
# Post-commit side effects
# ---------------------------------------------------------------------------

def _dispatch(
    conn: psycopg.Connection,
    results: list[RowResult],
    summary: ImportSummary,
    options: ExecutionOptions,
    audit: AuditSink | None,
    notifier: Notifier | None,
) -> None:
    if audit is not None:
        for result in results:
            try:
                audit.record(AuditEvent(
                    appointment_id=result.appointment_id,
                    event_type=APPOINTMENT_OVERWRITTEN if result.overwritten else APPOINTMENT_CREATED,
                    creation_method=options.creation_method,
                    operator_id=options.operator_id,
                    import_run_id=options.import_run_id,
                    row_number=result.row_number,
                    details={"customer_id": result.customer_id},
                ))
            except Exception as exc:  # noqa: BLE001
                log.error("Audit record failed for %s: %s", result.appointment_id, exc)

    if not options.send_notifications or notifier is None:
        return
    active = _active_customers(conn, {r.customer_id for r in results})
    for result in results:
        if result.customer_id not in active:
            summary.notifications_skipped_inactive += 1
            continue
        try:
            ok = notifier.notify(
                result.appointment_id,
                {"event": "appointment_overwritten" if result.overwritten else "appointment_created"},
            )
        except Exception as exc:  # noqa: BLE001
            log.warning("Notifier raised for %s: %s", result.appointment_id, exc)
            ok = False
        if ok:
            summary.notifications_sent += 1
        else:
            summary.notifications_failed += 1


def _active_customers(conn: psycopg.Connection, customer_ids: set[str]) -> set[str]:
    if not customer_ids:
        return set()
    rows = conn.execute(
        "SELECT id FROM customer WHERE id = ANY(%s::uuid[]) AND is_active = true",
        (sorted(customer_ids),),
    ).fetchall()
    return {str(r[0]) for r in rows}
