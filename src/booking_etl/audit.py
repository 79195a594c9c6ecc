"""booking_etl.audit

Fire-and-forget audit trail for created and overwritten appointments.

The provenance columns (creation_method, created_by_operator_id) are written
with the appointment row itself.  The audit log entry is a side channel:
events are queued and a background thread writes them to
appointment_audit_log on its own autocommit connection.  A failed write is
logged and counted, never raised to the import.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

import psycopg
from psycopg.types.json import Jsonb

log = logging.getLogger(__name__)

APPOINTMENT_CREATED = "appointment_created"
APPOINTMENT_OVERWRITTEN = "appointment_overwritten"

CREATION_METHODS = ("self_service", "operator_manual", "bulk_import")


@dataclass(frozen=True)
class AuditEvent:
    appointment_id: str
    event_type: str
    creation_method: str
    operator_id: str | None = None
    import_run_id: str | None = None
    row_number: int | None = None
    details: dict[str, Any] = field(default_factory=dict)


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None:
        ...

    def flush(self) -> None:
        ...

    def close(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Postgres-backed recorder
# ---------------------------------------------------------------------------

class AuditRecorder:
    """Queue + worker thread writing appointment_audit_log."""

    def __init__(self, dsn: str, max_queue: int = 10_000) -> None:
        self._dsn = dsn
        self._queue: queue.Queue[AuditEvent | None] = queue.Queue(maxsize=max_queue)
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self.recorded = 0
        self.failed = 0

    def record(self, event: AuditEvent) -> None:
        self._ensure_started()
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.failed += 1
            log.error("Audit queue full; dropped %s for %s", event.event_type, event.appointment_id)

    def flush(self) -> None:
        """Block until every queued event has been written or has failed."""
        self._queue.join()

    def close(self) -> None:
        with self._lock:
            thread, self._thread = self._thread, None
        if thread is None:
            return
        self._queue.put(None)
        thread.join()

    def _ensure_started(self) -> None:
        with self._lock:
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._run, name="audit-recorder", daemon=True
                )
                self._thread.start()

    def _run(self) -> None:
        conn: psycopg.Connection | None = None
        try:
            while True:
                event = self._queue.get()
                try:
                    if event is None:
                        return
                    if conn is None or conn.closed:
                        conn = psycopg.connect(self._dsn, autocommit=True)
                    write_audit_event(conn, event)
                    self.recorded += 1
                except Exception as exc:  # noqa: BLE001
                    self.failed += 1
                    log.error(
                        "Audit write failed for %s %s: %s",
                        event.event_type if event else "?",
                        event.appointment_id if event else "?",
                        exc,
                    )
                    if conn is not None and not conn.closed:
                        conn.close()
                    conn = None
                finally:
                    self._queue.task_done()
        finally:
            if conn is not None and not conn.closed:
                conn.close()


def write_audit_event(conn: psycopg.Connection, event: AuditEvent) -> None:
    conn.execute(
        """
        INSERT INTO appointment_audit_log
            (appointment_id, event_type, creation_method, operator_id,
             import_run_id, row_number, details)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        """,
        (
            event.appointment_id,
            event.event_type,
            event.creation_method,
            event.operator_id,
            event.import_run_id,
            event.row_number,
            Jsonb(event.details),
        ),
    )


# ---------------------------------------------------------------------------
# In-memory recorder
# ---------------------------------------------------------------------------

@dataclass
class InMemoryAuditRecorder:
    """Collects events in a list (tests, offline runs)."""

    events: list[AuditEvent] = field(default_factory=list)

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass
