"""Integration tests for booking_etl.batch_executor.

Covers failure policies, group progress, cancellation, overwrite provenance
and post-commit side effects.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone

import pytest

from booking_etl.audit import InMemoryAuditRecorder
from booking_etl.batch_executor import (
    ALL_OR_NOTHING,
    PARTIAL,
    ExecutionOptions,
    WorkItem,
    execute_batch,
)
from booking_etl.booking_rules import BookingRules
from booking_etl.business_rules import validate_row
from booking_etl.catalog import PostgresCatalog
from booking_etl.resolution import register_customer
from booking_etl.sanitize import RawRow
from booking_etl.shared import ImportSummary, RowDiagnostic

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FailingAuditSink:
    def record(self, event):
        raise RuntimeError("audit backend down")

    def flush(self):
        pass

    def close(self):
        pass


class RecordingNotifier:
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.sent: list[str] = []

    def notify(self, appointment_id, payload):
        self.sent.append(appointment_id)
        return self.ok


def _values(n: int, **overrides) -> dict[str, str]:
    values = {
        "customer_email": f"owner{n}@example.com",
        "customer_name": f"Owner {n}",
        "customer_phone": "555-123-4567",
        "pet_name": f"Pet{n}",
        "pet_breed": "Mixed",
        "pet_size": "Medium",
        "pet_weight": "25",
        "service_name": "Full Groom",
        "appointment_date": "2030-06-03",
        "appointment_time": "10:00",
        "addons": "Nail Trim",
        "notes": "",
        "payment_status": "",
        "payment_method": "",
        "amount_paid": "",
    }
    values.update(overrides)
    return values


def _items(conn, rows: list[dict[str, str]], summary: ImportSummary) -> list[WorkItem]:
    catalog = PostgresCatalog(conn)
    items = []
    for idx, values in enumerate(rows, start=2):
        vrow = validate_row(RawRow(idx, values, dict(values)), catalog, BookingRules(), now=NOW)
        assert vrow.is_valid, vrow.errors
        summary.diagnostics.append(RowDiagnostic(idx, "valid"))
        items.append(WorkItem(row=vrow))
    return items


def _break(item: WorkItem) -> None:
    # a pet id that does not exist fails inside the row transaction
    item.row.payload.pet.pet_id = str(uuid.uuid4())


def _count(conn, table: str) -> int:
    return conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]


def _run(conn, items, summary, **kwargs):
    audit = kwargs.pop("audit", None)
    notifier = kwargs.pop("notifier", None)
    progress = kwargs.pop("progress", None)
    cancel = kwargs.pop("cancel", None)
    options = ExecutionOptions(pause_seconds=0, **kwargs)
    return execute_batch(
        conn, items, PostgresCatalog(conn), summary, options,
        audit=audit, notifier=notifier, progress=progress, cancel=cancel,
        sleep=lambda s: None,
    )


# ---------------------------------------------------------------------------
# Failure policies
# ---------------------------------------------------------------------------

class TestFailurePolicies:
    def test_partial_keeps_earlier_and_attempts_later(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        items = _items(conn, [_values(1), _values(2), _values(3)], summary)
        _break(items[1])

        outcome = _run(conn, items, summary, failure_policy=PARTIAL)

        assert outcome.status == "completed_with_errors"
        assert [d.outcome for d in summary.diagnostics] == ["created", "failed", "created"]
        assert summary.diagnostic(3).errors[0].code == "PERSISTENCE_FAILED"
        assert summary.created == 2 and summary.failed == 1
        assert _count(conn, "appointment") == 2
        assert _count(conn, "appointment_addon") == 2

    def test_all_or_nothing_leaves_no_writes(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        items = _items(conn, [_values(1), _values(2), _values(3)], summary)
        _break(items[1])

        outcome = _run(conn, items, summary, failure_policy=ALL_OR_NOTHING)

        assert outcome.status == "rolled_back"
        assert [d.outcome for d in summary.diagnostics] == ["rolled_back", "failed", "not_attempted"]
        assert summary.created == 0
        assert summary.customers_created == 0
        for table in ("appointment", "customer", "pet", "appointment_addon", "payment"):
            assert _count(conn, table) == 0, table

    def test_all_or_nothing_success(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        items = _items(conn, [_values(1), _values(2)], summary)
        outcome = _run(conn, items, summary, failure_policy=ALL_OR_NOTHING)
        assert outcome.status == "completed"
        assert summary.created == 2
        assert _count(conn, "appointment") == 2

    def test_same_customer_resolved_once(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        rows = [
            _values(1, customer_email="a@b.com", pet_name="Rex"),
            _values(2, customer_email="A@B.com", pet_name="rex", appointment_time="11:00"),
        ]
        _run(conn, _items(conn, rows, summary), summary)
        assert _count(conn, "customer") == 1
        assert _count(conn, "pet") == 1
        assert summary.customers_created == 1
        assert summary.inactive_profiles_created == 1
        assert summary.pets_created == 1

    def test_rolled_back_row_does_not_poison_cache(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        rows = [
            _values(1, customer_email="a@b.com"),
            _values(2, customer_email="a@b.com", appointment_time="11:00"),
        ]
        items = _items(conn, rows, summary)
        _break(items[0])
        _run(conn, items, summary)
        assert summary.diagnostic(3).outcome == "created"
        assert _count(conn, "customer") == 1


# ---------------------------------------------------------------------------
# Groups, progress, cancellation
# ---------------------------------------------------------------------------

class TestGroups:
    def test_progress_once_per_group(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        items = _items(conn, [_values(n) for n in range(1, 6)], summary)
        calls: list[tuple[int, int]] = []
        _run(conn, items, summary, batch_size=2, progress=lambda d, t: calls.append((d, t)))
        assert calls == [(2, 5), (4, 5), (5, 5)]

    def test_pause_between_groups_only(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        items = _items(conn, [_values(n) for n in range(1, 6)], summary)
        pauses: list[float] = []
        execute_batch(
            conn, items, PostgresCatalog(conn), summary,
            ExecutionOptions(batch_size=2, pause_seconds=0.1),
            sleep=pauses.append,
        )
        assert pauses == [0.1, 0.1]

    def test_cancel_partial_keeps_committed(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        items = _items(conn, [_values(n) for n in range(1, 5)], summary)
        cancel = threading.Event()

        def progress(done, total):
            cancel.set()

        outcome = _run(conn, items, summary, batch_size=2, progress=progress, cancel=cancel)
        assert outcome.status == "cancelled"
        assert [d.outcome for d in summary.diagnostics] == [
            "created", "created", "not_attempted", "not_attempted",
        ]
        assert _count(conn, "appointment") == 2

    def test_cancel_all_or_nothing_rolls_back(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        items = _items(conn, [_values(n) for n in range(1, 5)], summary)
        cancel = threading.Event()
        outcome = _run(
            conn, items, summary,
            failure_policy=ALL_OR_NOTHING, batch_size=2,
            progress=lambda d, t: cancel.set(), cancel=cancel,
        )
        assert outcome.status == "cancelled"
        assert [d.outcome for d in summary.diagnostics] == [
            "rolled_back", "rolled_back", "not_attempted", "not_attempted",
        ]
        assert _count(conn, "appointment") == 0


# ---------------------------------------------------------------------------
# Writes: payments, overwrite, provenance
# ---------------------------------------------------------------------------

class TestWrites:
    def test_payment_records(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        rows = [
            _values(1, payment_status="Paid", payment_method="Card"),
            _values(2, payment_status="Partially Paid", amount_paid="$20"),
            _values(3),
        ]
        _run(conn, _items(conn, rows, summary), summary)
        payments = conn.execute(
            "SELECT amount, status, payment_method, recorded_via FROM payment ORDER BY amount"
        ).fetchall()
        assert [(str(p[0]), p[1], p[2], p[3]) for p in payments] == [
            ("20.00", "pending", "other", "bulk_import"),
            ("70.00", "succeeded", "card", "bulk_import"),
        ]

    def test_appointment_fields(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        _run(
            conn, _items(conn, [_values(1)], summary), summary,
            operator_id="op-1", import_run_id="imp",
        )
        row = conn.execute(
            """
            SELECT total_price, duration_minutes, creation_method, created_by_operator_id,
                   import_run_id, status, payment_status
            FROM appointment
            """
        ).fetchone()
        assert (str(row[0]), row[1], row[2], row[3], row[4], row[5], row[6]) == (
            "70.00", 60, "bulk_import", "op-1", "imp", "pending", "pending",
        )

    def test_overwrite_preserves_provenance(self, db_conn, catalog_ids):
        conn, _ = db_conn
        first = ImportSummary(import_id="one")
        _run(conn, _items(conn, [_values(1)], first), first, operator_id="op-a",
             creation_method="operator_manual")
        appt_id = first.diagnostic(2).appointment_id
        created_at = conn.execute(
            "SELECT created_at FROM appointment WHERE id = %s", (appt_id,)
        ).fetchone()[0]

        second = ImportSummary(import_id="two")
        items = _items(conn, [_values(1, notes="updated", addons="Teeth Brushing")], second)
        items[0].overwrite_appointment_id = appt_id
        _run(conn, items, second, operator_id="op-b")

        assert second.updated == 1 and second.created == 0
        assert second.diagnostic(2).appointment_id == appt_id
        row = conn.execute(
            """
            SELECT created_at, creation_method, created_by_operator_id,
                   last_modified_method, last_modified_by, notes, total_price
            FROM appointment WHERE id = %s
            """,
            (appt_id,),
        ).fetchone()
        assert row[:6] == (created_at, "operator_manual", "op-a", "bulk_import", "op-b", "updated")
        assert str(row[6]) == "68.00"
        addons = conn.execute(
            "SELECT a.name FROM appointment_addon aa JOIN addon a ON a.id = aa.addon_id"
        ).fetchall()
        assert addons == [("Teeth Brushing",)]
        assert _count(conn, "appointment") == 1

    def test_in_batch_overwrite_targets_earlier_row(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        items = _items(conn, [_values(1), _values(1, notes="second")], summary)
        items[1].overwrite_row_number = 2
        _run(conn, items, summary)
        assert summary.created == 1 and summary.updated == 1
        assert summary.diagnostic(3).appointment_id == summary.diagnostic(2).appointment_id
        assert conn.execute("SELECT notes FROM appointment").fetchall() == [("second",)]


# ---------------------------------------------------------------------------
# Post-commit side effects
# ---------------------------------------------------------------------------

class TestSideEffects:
    def test_audit_only_for_committed_rows(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        items = _items(conn, [_values(1), _values(2)], summary)
        _break(items[1])
        audit = InMemoryAuditRecorder()
        _run(conn, items, summary, audit=audit, operator_id="op-1", import_run_id="imp")
        assert len(audit.events) == 1
        event = audit.events[0]
        assert event.event_type == "appointment_created"
        assert event.row_number == 2
        assert event.operator_id == "op-1"
        assert event.creation_method == "bulk_import"

    def test_no_audit_after_rollback(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        items = _items(conn, [_values(1), _values(2)], summary)
        _break(items[1])
        audit = InMemoryAuditRecorder()
        _run(conn, items, summary, audit=audit, failure_policy=ALL_OR_NOTHING)
        assert audit.events == []

    def test_notifications_only_for_active_customers(self, db_conn, catalog_ids):
        conn, _ = db_conn
        register_customer(conn, "owner1@example.com", "Owner", "hash")
        summary = ImportSummary(import_id="imp")
        items = _items(conn, [_values(1), _values(2)], summary)
        notifier = RecordingNotifier()
        _run(conn, items, summary, notifier=notifier, send_notifications=True)
        assert len(notifier.sent) == 1
        assert notifier.sent[0] == summary.diagnostic(2).appointment_id
        assert summary.notifications_sent == 1
        assert summary.notifications_skipped_inactive == 1

    def test_notification_failure_counted(self, db_conn, catalog_ids):
        conn, _ = db_conn
        register_customer(conn, "owner1@example.com", "Owner", "hash")
        summary = ImportSummary(import_id="imp")
        items = _items(conn, [_values(1)], summary)
        _run(conn, items, summary, notifier=RecordingNotifier(ok=False), send_notifications=True)
        assert summary.notifications_failed == 1
        assert summary.created == 1

    def test_failing_audit_sink_does_not_fail_import(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        items = _items(conn, [_values(1), _values(2)], summary)
        outcome = _run(conn, items, summary, audit=FailingAuditSink())
        assert outcome.status == "completed"
        assert summary.created == 2
        assert [d.outcome for d in summary.diagnostics] == ["created", "created"]
        assert _count(conn, "appointment") == 2

    def test_dry_run_rolls_back_and_skips_side_effects(self, db_conn, catalog_ids):
        conn, _ = db_conn
        summary = ImportSummary(import_id="imp")
        items = _items(conn, [_values(1), _values(2)], summary)
        audit = InMemoryAuditRecorder()
        outcome = _run(conn, items, summary, dry_run=True, audit=audit)
        assert outcome.status == "completed"
        assert summary.created == 2
        assert _count(conn, "appointment") == 0
        assert _count(conn, "customer") == 0
        assert audit.events == []


def test_unknown_policy(db_conn):
    conn, _ = db_conn
    with pytest.raises(ValueError):
        execute_batch(
            conn, [], PostgresCatalog(conn), ImportSummary(import_id="x"),
            ExecutionOptions(failure_policy="sometimes"),
        )


def test_unknown_creation_method(db_conn):
    conn, _ = db_conn
    with pytest.raises(ValueError):
        execute_batch(
            conn, [], PostgresCatalog(conn), ImportSummary(import_id="x"),
            ExecutionOptions(creation_method="carrier_pigeon"),
        )
