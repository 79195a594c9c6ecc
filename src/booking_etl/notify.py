"""booking_etl.notify

Appointment-confirmation dispatch.  Delivery itself belongs to the
notification service; this module only hands it an appointment id.

Implementations:
  WebhookNotifier -- POST to a notification endpoint with requests
  NullNotifier    -- accepts everything, sends nothing
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

log = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, appointment_id: str, payload: dict[str, Any]) -> bool:
        """Return True when the notification was accepted."""
        ...


@dataclass
class WebhookNotifier:
    """POST {"appointment_id": ..., **payload} to url with a bearer token."""

    url: str
    token: str | None = None
    timeout: float = 10.0
    session: requests.Session = field(default_factory=requests.Session, repr=False)

    def notify(self, appointment_id: str, payload: dict[str, Any]) -> bool:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        body = {"appointment_id": appointment_id, **payload}
        try:
            resp = self.session.post(self.url, json=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            log.warning("Notification for %s failed: %s", appointment_id, exc)
            return False
        if resp.status_code >= 400:
            log.warning(
                "Notification for %s rejected with status %s", appointment_id, resp.status_code
            )
            return False
        return True


@dataclass
class NullNotifier:
    """No-op notifier for dry runs and tests."""

    def notify(self, appointment_id: str, payload: dict[str, Any]) -> bool:
        return True
