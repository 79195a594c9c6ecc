"""booking_etl.business_rules

Cross-field and catalog checks applied after schema parsing.

Every check runs regardless of the others, so one row reports all of its
problems at once.  Errors block the row; warnings never do and may be
suppressed by an operator override.

Error codes:   CLOSED_DAY, OUTSIDE_HOURS, SERVICE_NOT_FOUND, ADDON_NOT_FOUND,
               PRICING_UNAVAILABLE, PAYMENT_AMOUNT_INVALID,
               PAYMENT_METHOD_REQUIRED
Warning codes: WEIGHT_MISMATCH, PAST_DATE
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable

from booking_etl.booking_rules import WEEKDAYS, BookingRules
from booking_etl.catalog import PriceCatalog
from booking_etl.sanitize import RawRow
from booking_etl.schema_validation import (
    AppointmentPayload,
    ValidatedRow,
    validate_row_schema,
)
from booking_etl.shared import FieldError, FieldWarning

CLOSED_DAY = "CLOSED_DAY"
OUTSIDE_HOURS = "OUTSIDE_HOURS"
SERVICE_NOT_FOUND = "SERVICE_NOT_FOUND"
ADDON_NOT_FOUND = "ADDON_NOT_FOUND"
PRICING_UNAVAILABLE = "PRICING_UNAVAILABLE"
PAYMENT_AMOUNT_INVALID = "PAYMENT_AMOUNT_INVALID"
PAYMENT_METHOD_REQUIRED = "PAYMENT_METHOD_REQUIRED"

WEIGHT_MISMATCH = "WEIGHT_MISMATCH"
PAST_DATE = "PAST_DATE"

WARNING_CODES = frozenset({WEIGHT_MISMATCH, PAST_DATE})


def validate_business_rules(
    payload: AppointmentPayload,
    catalog: PriceCatalog,
    rules: BookingRules,
    now: datetime | None = None,
    overrides: Iterable[str] = (),
) -> tuple[list[FieldError], list[FieldWarning]]:
    """Check one parsed payload; fills service_id, addon_ids and total_price.

    Args:
        now: reference instant for the past-date check (default rules.now()).
        overrides: warning codes the operator has chosen to suppress.
    """
    errors: list[FieldError] = []
    warnings: list[FieldWarning] = []
    suppressed = frozenset(overrides) & WARNING_CODES
    now = now or rules.now()

    # Rule 1: declared size vs. weight
    pet = payload.pet
    if pet.weight is not None and pet.size is not None:
        if not rules.weight_matches_size(pet.weight, pet.size):
            low, high = rules.weight_band(pet.size)
            band = f"{low}-{high}" if high is not None else f"{low}+"
            warnings.append(FieldWarning(
                "pet_weight",
                WEIGHT_MISMATCH,
                f"Weight {pet.weight} lbs is outside the {pet.size} range ({band} lbs)",
            ))

    # Rules 2-4: schedule
    if payload.scheduled_at is not None:
        local = payload.scheduled_at.astimezone(rules.tz)
        if rules.is_closed(local.date()):
            errors.append(FieldError(
                "appointment_date",
                CLOSED_DAY,
                f"The salon is closed on {WEEKDAYS[local.weekday()].capitalize()}",
            ))
        if not rules.is_within_hours(local.time()):
            errors.append(FieldError(
                "appointment_time",
                OUTSIDE_HOURS,
                f"Appointments must start between {rules.opens_at:%H:%M} "
                f"and {rules.closes_at:%H:%M}",
            ))
        if payload.scheduled_at < now:
            warnings.append(FieldWarning(
                "appointment_date",
                PAST_DATE,
                "Appointment is in the past",
            ))

    # Rule 5: catalog
    service = catalog.find_service(payload.service_name) if payload.service_name else None
    if payload.service_name and service is None:
        errors.append(FieldError(
            "service_name",
            SERVICE_NOT_FOUND,
            f"Service '{payload.service_name}' not found",
        ))
    payload.service_id = service.id if service else None

    addon_total = Decimal("0")
    payload.addon_ids = []
    for addon_name in payload.addon_names:
        addon = catalog.find_addon(addon_name)
        if addon is None:
            errors.append(FieldError(
                "addons",
                ADDON_NOT_FOUND,
                f"Add-on '{addon_name}' not found",
            ))
            continue
        payload.addon_ids.append(addon.id)
        addon_total += addon.price

    # Rule 6: price for (service, size)
    payload.total_price = None
    if service is not None and pet.size is not None:
        service_price = catalog.price(service.id, pet.size)
        if service_price is None:
            errors.append(FieldError(
                "pet_size",
                PRICING_UNAVAILABLE,
                f"No price configured for {service.name} - {pet.size}",
            ))
        else:
            payload.total_price = service_price + addon_total

    # Rule 7: payment consistency
    if payload.payment_status == "partially_paid":
        amount = payload.amount_paid
        if (
            amount is None
            or amount <= 0
            or (payload.total_price is not None and amount >= payload.total_price)
        ):
            errors.append(FieldError(
                "amount_paid",
                PAYMENT_AMOUNT_INVALID,
                "Partial payment must be greater than 0 and less than the total price",
            ))
    if payload.payment_status == "paid" and payload.payment_method is None:
        errors.append(FieldError(
            "payment_method",
            PAYMENT_METHOD_REQUIRED,
            "Payment method is required when status is Paid",
        ))

    warnings = [w for w in warnings if w.code not in suppressed]
    return errors, warnings


def validate_row(
    raw: RawRow,
    catalog: PriceCatalog,
    rules: BookingRules,
    now: datetime | None = None,
    overrides: Iterable[str] = (),
) -> ValidatedRow:
    """Schema + business-rule validation for one sanitized row."""
    payload, errors = validate_row_schema(raw.values, rules)
    rule_errors, warnings = validate_business_rules(
        payload, catalog, rules, now=now, overrides=overrides
    )
    return ValidatedRow(
        row_number=raw.row_number,
        payload=payload,
        errors=errors + rule_errors,
        warnings=warnings,
        raw=raw,
    )
