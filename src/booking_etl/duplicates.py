"""booking_etl.duplicates

Collision detection between incoming rows and booked appointments.

A slot is (customer email, pet name, local date, local hour), both names
compared case-insensitively; with match_precision 'minute' the local minute
is part of the key as well.  Rows are checked against persisted appointments
that are still live (not cancelled or completed) and against earlier valid
rows of the same batch.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any, Iterable

import psycopg

from booking_etl.normalize import name_key, normalize_email
from booking_etl.schema_validation import ValidatedRow

SKIP = "skip"
OVERWRITE = "overwrite"
REJECT = "reject"
DUPLICATE_STRATEGIES = (SKIP, OVERWRITE, REJECT)

INACTIVE_STATUSES = ("cancelled", "completed", "no_show")


class DuplicateRejectedError(Exception):
    """Raised when the reject strategy meets at least one collision."""

    def __init__(self, matches: list[DuplicateMatch]) -> None:
        rows = ", ".join(str(m.row_number) for m in matches)
        super().__init__(f"{len(matches)} duplicate row(s) under reject strategy: {rows}")
        self.matches = matches


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExistingAppointment:
    id: str
    email: str
    pet_name: str
    scheduled_at: datetime


@dataclass(frozen=True)
class DuplicateMatch:
    row_number: int
    existing_appointment_id: str | None
    earlier_row_number: int | None
    email: str
    pet_name: str
    date: str
    hour: int

    @property
    def in_batch(self) -> bool:
        return self.existing_appointment_id is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_number": self.row_number,
            "existing_appointment_id": self.existing_appointment_id,
            "earlier_row_number": self.earlier_row_number,
            "matched": {
                "email": self.email,
                "pet_name": self.pet_name,
                "date": self.date,
                "hour": self.hour,
            },
        }


def slot_key(
    email: str | None,
    pet_name: str | None,
    scheduled_at: datetime,
    tz: tzinfo,
    precision: str = "hour",
) -> tuple:
    local = scheduled_at.astimezone(tz)
    key: tuple = (normalize_email(email), name_key(pet_name), local.date(), local.hour)
    if precision == "minute":
        key += (local.minute,)
    return key


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def detect_duplicates(
    rows: Iterable[ValidatedRow],
    existing: Iterable[ExistingAppointment],
    tz: tzinfo,
    precision: str = "hour",
) -> list[DuplicateMatch]:
    """Return one DuplicateMatch per colliding valid row, in row order.

    Existing appointments win over in-batch rows; among existing appointments
    the earliest (scheduled_at, id) wins, so the result is deterministic.
    """
    booked: dict[tuple, ExistingAppointment] = {}
    for appt in sorted(existing, key=lambda a: (a.scheduled_at, a.id)):
        booked.setdefault(
            slot_key(appt.email, appt.pet_name, appt.scheduled_at, tz, precision), appt
        )

    seen: dict[tuple, int] = {}
    matches: list[DuplicateMatch] = []
    for row in sorted(rows, key=lambda r: r.row_number):
        if not row.is_valid or row.payload.scheduled_at is None:
            continue
        payload = row.payload
        key = slot_key(
            payload.customer.email, payload.pet.name, payload.scheduled_at, tz, precision
        )
        local = payload.scheduled_at.astimezone(tz)
        hit = booked.get(key)
        earlier = seen.get(key)
        if hit is None and earlier is None:
            seen[key] = row.row_number
            continue
        matches.append(DuplicateMatch(
            row_number=row.row_number,
            existing_appointment_id=hit.id if hit else None,
            earlier_row_number=None if hit else earlier,
            email=normalize_email(payload.customer.email) or "",
            pet_name=payload.pet.name or "",
            date=local.date().isoformat(),
            hour=local.hour,
        ))
    return matches


def fetch_existing_appointments(
    conn: psycopg.Connection,
    emails: Iterable[str],
) -> list[ExistingAppointment]:
    """Load live appointments for the given customer emails, oldest first."""
    keys = sorted({e for e in (normalize_email(x) for x in emails) if e})
    if not keys:
        return []
    rows = conn.execute(
        """
        SELECT a.id, c.email_normalized, p.name, a.scheduled_at
        FROM appointment a
        JOIN customer c ON c.id = a.customer_id
        JOIN pet p ON p.id = a.pet_id
        WHERE c.email_normalized = ANY(%s)
          AND a.status <> ALL(%s)
        ORDER BY a.scheduled_at, a.id
        """,
        (keys, list(INACTIVE_STATUSES)),
    ).fetchall()
    return [
        ExistingAppointment(id=str(r[0]), email=r[1], pet_name=r[2], scheduled_at=r[3])
        for r in rows
    ]
