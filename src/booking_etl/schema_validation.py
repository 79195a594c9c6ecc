"""booking_etl.schema_validation

Per-field parsing of one appointment row into an AppointmentPayload.

Every field is checked independently: a bad email does not stop the phone,
date or payment fields from being parsed and reported.  Cross-field and
catalog checks live in booking_etl.business_rules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from booking_etl.booking_rules import BookingRules
from booking_etl.normalize import (
    is_valid_email,
    name_key,
    normalize_email,
    normalize_payment_method,
    normalize_payment_status,
    normalize_pet_size,
    normalize_phone,
    normalize_space,
    parse_addons,
    parse_amount,
    parse_date,
    parse_name_parts,
    parse_numeric,
    parse_time,
    trim,
)
from booking_etl.sanitize import RawRow
from booking_etl.shared import FieldError, FieldWarning

INVALID_FORMAT = "INVALID_FORMAT"
REQUIRED = "REQUIRED"

PET_NAME_MAX_LENGTH = 100

_REQUIRED_FIELDS = (
    ("customer_email", "Customer email"),
    ("customer_name", "Customer name"),
    ("customer_phone", "Customer phone"),
    ("pet_name", "Pet name"),
    ("pet_breed", "Pet breed"),
    ("pet_size", "Pet size"),
    ("service_name", "Service name"),
    ("appointment_date", "Appointment date"),
    ("appointment_time", "Appointment time"),
)


# ---------------------------------------------------------------------------
# Payload records
# ---------------------------------------------------------------------------

@dataclass
class CustomerRef:
    """An existing customer id, or a draft to resolve by email."""

    customer_id: str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None

    @property
    def identity_key(self) -> str | None:
        return normalize_email(self.email)


@dataclass
class PetRef:
    """An existing pet id, or a draft to resolve by (customer, name)."""

    pet_id: str | None = None
    name: str | None = None
    breed: str | None = None
    size: str | None = None
    weight: Decimal | None = None

    def identity_key(self, customer_id: str) -> tuple[str, str | None]:
        return (customer_id, name_key(self.name))


@dataclass
class AppointmentPayload:
    customer: CustomerRef = field(default_factory=CustomerRef)
    pet: PetRef = field(default_factory=PetRef)
    service_name: str | None = None
    service_id: str | None = None
    addon_names: list[str] = field(default_factory=list)
    addon_ids: list[str] = field(default_factory=list)
    scheduled_at: datetime | None = None
    total_price: Decimal | None = None
    notes: str | None = None
    payment_status: str | None = "pending"
    payment_method: str | None = None
    amount_paid: Decimal | None = None


@dataclass
class ValidatedRow:
    row_number: int
    payload: AppointmentPayload
    errors: list[FieldError] = field(default_factory=list)
    warnings: list[FieldWarning] = field(default_factory=list)
    raw: RawRow | None = None

    @property
    def is_valid(self) -> bool:
        return not self.errors


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------

def _invalid(field_name: str, message: str) -> FieldError:
    return FieldError(field=field_name, code=INVALID_FORMAT, message=message)


def validate_row_schema(
    values: dict[str, str],
    rules: BookingRules,
) -> tuple[AppointmentPayload, list[FieldError]]:
    """Parse every field of one row.  Returns the payload and all field errors."""
    errors: list[FieldError] = []
    payload = AppointmentPayload()

    blank = set()
    for field_name, label in _REQUIRED_FIELDS:
        if trim(values.get(field_name)) is None:
            blank.add(field_name)
            errors.append(FieldError(field_name, REQUIRED, f"{label} is required"))

    # Customer
    email = values.get("customer_email")
    if "customer_email" not in blank:
        if is_valid_email(email):
            payload.customer.email = normalize_email(email)
        else:
            errors.append(_invalid("customer_email", "Invalid email format"))

    if "customer_name" not in blank:
        first, last = parse_name_parts(values.get("customer_name"))
        payload.customer.first_name = first
        payload.customer.last_name = last

    if "customer_phone" not in blank:
        phone = normalize_phone(values.get("customer_phone"))
        if phone is None:
            errors.append(_invalid("customer_phone", "Invalid phone number format"))
        payload.customer.phone = phone

    # Pet
    if "pet_name" not in blank:
        pet_name = normalize_space(values.get("pet_name"))
        if len(pet_name or "") > PET_NAME_MAX_LENGTH:
            errors.append(
                _invalid("pet_name", f"Pet name must be {PET_NAME_MAX_LENGTH} characters or fewer")
            )
        payload.pet.name = pet_name

    payload.pet.breed = normalize_space(values.get("pet_breed"))

    if "pet_size" not in blank:
        size = normalize_pet_size(values.get("pet_size"))
        if size is None:
            errors.append(
                _invalid("pet_size", "Invalid pet size. Must be Small, Medium, Large, or X-Large")
            )
        payload.pet.size = size

    weight_raw = trim(values.get("pet_weight"))
    if weight_raw is not None:
        weight = parse_numeric(weight_raw)
        if weight is None or weight < 0:
            errors.append(_invalid("pet_weight", "Pet weight must be a non-negative number"))
        else:
            payload.pet.weight = weight

    # Service and addons (catalog resolution happens in business_rules)
    payload.service_name = normalize_space(values.get("service_name"))
    payload.addon_names = parse_addons(values.get("addons"))

    # Date and time
    appt_date = None
    if "appointment_date" not in blank:
        appt_date = parse_date(values.get("appointment_date"))
        if appt_date is None:
            errors.append(
                _invalid("appointment_date", "Invalid date format. Use YYYY-MM-DD or MM/DD/YYYY")
            )
    appt_time = None
    if "appointment_time" not in blank:
        appt_time = parse_time(values.get("appointment_time"))
        if appt_time is None:
            errors.append(
                _invalid("appointment_time", "Invalid time format. Use HH:MM or HH:MM AM/PM")
            )
    if appt_date is not None and appt_time is not None:
        payload.scheduled_at = datetime.combine(appt_date, appt_time, tzinfo=rules.tz)

    # Notes
    notes = trim(values.get("notes"))
    if notes is not None and len(notes) > rules.notes_max_length:
        errors.append(
            _invalid("notes", f"Notes must be {rules.notes_max_length} characters or fewer")
        )
    payload.notes = notes

    # Payment
    status = normalize_payment_status(values.get("payment_status"))
    if status is None:
        errors.append(
            _invalid("payment_status", "Invalid payment status. Must be Pending, Paid, or Partially Paid")
        )
    payload.payment_status = status

    method_raw = trim(values.get("payment_method"))
    if method_raw is not None:
        method = normalize_payment_method(method_raw)
        if method is None:
            errors.append(
                _invalid("payment_method", "Invalid payment method. Must be Cash, Card, or Other")
            )
        payload.payment_method = method

    amount_raw = trim(values.get("amount_paid"))
    if amount_raw is not None:
        amount = parse_amount(amount_raw)
        if amount is None:
            errors.append(_invalid("amount_paid", "Amount paid must be a non-negative amount"))
        payload.amount_paid = amount

    return payload, errors
