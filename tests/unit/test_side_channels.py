"""Unit tests for notification dispatch and the audit recorders.

No database or network access required.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import requests

from booking_etl.audit import (
    APPOINTMENT_CREATED,
    AuditEvent,
    AuditRecorder,
    InMemoryAuditRecorder,
)
from booking_etl.batch_executor import ExecutionOptions, RowResult, _dispatch
from booking_etl.notify import NullNotifier, WebhookNotifier
from booking_etl.shared import ImportSummary


# ---------------------------------------------------------------------------
# WebhookNotifier
# ---------------------------------------------------------------------------

class TestWebhookNotifier:
    def _notifier(self, response=None, exc=None):
        session = MagicMock(spec=requests.Session)
        if exc is not None:
            session.post.side_effect = exc
        else:
            session.post.return_value = response
        return WebhookNotifier(url="https://notify.test/hook", token="t0k", session=session), session

    def test_success(self):
        resp = MagicMock(status_code=202)
        notifier, session = self._notifier(response=resp)
        assert notifier.notify("appt-1", {"event": "appointment_created"}) is True
        _, kwargs = session.post.call_args
        assert kwargs["json"] == {"appointment_id": "appt-1", "event": "appointment_created"}
        assert kwargs["headers"] == {"Authorization": "Bearer t0k"}
        assert kwargs["timeout"] == 10.0

    def test_http_error_is_false(self):
        notifier, _ = self._notifier(response=MagicMock(status_code=503))
        assert notifier.notify("appt-1", {}) is False

    def test_transport_error_is_false(self):
        notifier, _ = self._notifier(exc=requests.ConnectionError("down"))
        assert notifier.notify("appt-1", {}) is False

    def test_no_token_no_header(self):
        session = MagicMock(spec=requests.Session)
        session.post.return_value = MagicMock(status_code=200)
        WebhookNotifier(url="https://notify.test/hook", session=session).notify("a", {})
        assert session.post.call_args.kwargs["headers"] == {}


class TestNullNotifier:
    def test_accepts(self):
        assert NullNotifier().notify("appt-1", {}) is True


# ---------------------------------------------------------------------------
# Audit recorders
# ---------------------------------------------------------------------------

def _event() -> AuditEvent:
    return AuditEvent(
        appointment_id="00000000-0000-0000-0000-000000000001",
        event_type=APPOINTMENT_CREATED,
        creation_method="bulk_import",
        operator_id="op-1",
        row_number=2,
    )


class TestInMemoryAuditRecorder:
    def test_collects(self):
        rec = InMemoryAuditRecorder()
        rec.record(_event())
        rec.flush()
        rec.close()
        assert rec.events == [_event()]


class TestAuditRecorderFailures:
    def test_unreachable_database_is_counted_not_raised(self):
        rec = AuditRecorder("host=127.0.0.1 port=1 dbname=none user=none connect_timeout=1")
        rec.record(_event())
        rec.record(_event())
        rec.flush()
        rec.close()
        assert rec.failed == 2
        assert rec.recorded == 0

    def test_close_without_events(self):
        rec = AuditRecorder("host=127.0.0.1 port=1")
        rec.close()
        assert rec.failed == 0


# ---------------------------------------------------------------------------
# Post-commit dispatch
# ---------------------------------------------------------------------------

class _FailingSink(InMemoryAuditRecorder):
    def record(self, event):
        raise RuntimeError("audit backend down")


class TestDispatch:
    def test_audit_failure_is_logged_not_raised(self, caplog):
        summary = ImportSummary(import_id="imp")
        results = [RowResult(row_number=2, appointment_id="a1", customer_id="c1")]
        _dispatch(None, results, summary, ExecutionOptions(), _FailingSink(), None)
        assert "Audit record failed for a1" in caplog.text
