"""booking_etl.resolution

Customer and pet identity resolution.

Each identity is resolved with one INSERT ... ON CONFLICT ... RETURNING
statement, so two imports racing on the same email (or the same pet name
under one customer) converge on a single row without any in-process lock.

New customers created on someone's behalf are inactive and have no
credential.  The only transition to active is register_customer().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import psycopg

from booking_etl.normalize import name_key, normalize_email
from booking_etl.schema_validation import CustomerRef, PetRef
from booking_etl.shared import PersistenceError

log = logging.getLogger(__name__)

ORIGINS = ("self_registration", "operator_manual", "bulk_import")


class CustomerAlreadyRegisteredError(Exception):
    """Raised when registration matches a customer that is already active."""


@dataclass(frozen=True)
class Resolved:
    id: str
    created: bool


# ---------------------------------------------------------------------------
# Upserts
# ---------------------------------------------------------------------------

def upsert_customer(
    conn: psycopg.Connection,
    draft: CustomerRef,
    origin: str = "bulk_import",
) -> Resolved:
    """Find or create a customer by normalized email.

    Existing customers are returned untouched, active or not.
    """
    if origin not in ORIGINS:
        raise ValueError(f"unknown customer origin {origin!r}")
    email_key = normalize_email(draft.email)
    if not email_key:
        raise PersistenceError("customer email is required for resolution")
    if not draft.first_name:
        raise PersistenceError("customer first name is required for resolution")
    row = conn.execute(
        """
        INSERT INTO customer
            (email, email_normalized, first_name, last_name, phone, is_active, origin)
        VALUES (%s, %s, %s, %s, %s, false, %s)
        ON CONFLICT (email_normalized) DO UPDATE
            SET email_normalized = customer.email_normalized
        RETURNING id, (xmax = 0) AS inserted
        """,
        (draft.email, email_key, draft.first_name, draft.last_name, draft.phone, origin),
    ).fetchone()
    return Resolved(id=str(row[0]), created=bool(row[1]))


def upsert_pet(conn: psycopg.Connection, customer_id: str, draft: PetRef) -> Resolved:
    """Find or create a pet by (customer, case-insensitive name)."""
    key = name_key(draft.name)
    if not key:
        raise PersistenceError("pet name is required for resolution")
    if draft.size is None:
        raise PersistenceError("pet size is required for resolution")
    row = conn.execute(
        """
        INSERT INTO pet (customer_id, name, name_normalized, breed, size, weight)
        VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT (customer_id, name_normalized) DO UPDATE
            SET name_normalized = pet.name_normalized
        RETURNING id, (xmax = 0) AS inserted
        """,
        (customer_id, draft.name, key, draft.breed, draft.size, draft.weight),
    ).fetchone()
    return Resolved(id=str(row[0]), created=bool(row[1]))


# ---------------------------------------------------------------------------
# ResolutionCache
# ---------------------------------------------------------------------------

@dataclass
class ResolutionCache:
    """Per-import identity key -> id map.

    Ids found while a row is being written are staged; commit() publishes
    them once the row's transaction has committed, discard() drops them when
    it rolls back.
    """

    customers: dict[str, str] = field(default_factory=dict)
    pets: dict[tuple[str, str], str] = field(default_factory=dict)
    _staged_customers: dict[str, str] = field(default_factory=dict)
    _staged_pets: dict[tuple[str, str], str] = field(default_factory=dict)

    def customer(self, email_key: str) -> str | None:
        return self._staged_customers.get(email_key) or self.customers.get(email_key)

    def pet(self, key: tuple[str, str]) -> str | None:
        return self._staged_pets.get(key) or self.pets.get(key)

    def stage_customer(self, email_key: str, customer_id: str) -> None:
        self._staged_customers[email_key] = customer_id

    def stage_pet(self, key: tuple[str, str], pet_id: str) -> None:
        self._staged_pets[key] = pet_id

    def commit(self) -> None:
        self.customers.update(self._staged_customers)
        self.pets.update(self._staged_pets)
        self.discard()

    def discard(self) -> None:
        self._staged_customers.clear()
        self._staged_pets.clear()

    def clear(self) -> None:
        self.discard()
        self.customers.clear()
        self.pets.clear()


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def resolve_customer(
    conn: psycopg.Connection,
    ref: CustomerRef,
    cache: ResolutionCache,
    origin: str = "bulk_import",
) -> Resolved:
    """Existing id (verified) -> cache -> upsert."""
    if ref.customer_id:
        row = conn.execute(
            "SELECT id FROM customer WHERE id = %s", (ref.customer_id,)
        ).fetchone()
        if row is None:
            raise PersistenceError(f"customer {ref.customer_id} does not exist")
        return Resolved(id=str(row[0]), created=False)

    email_key = normalize_email(ref.email)
    cached = cache.customer(email_key) if email_key else None
    if cached:
        return Resolved(id=cached, created=False)

    result = upsert_customer(conn, ref, origin)
    cache.stage_customer(email_key, result.id)
    if result.created:
        log.debug("created inactive customer %s (%s)", result.id, origin)
    return result


def resolve_pet(
    conn: psycopg.Connection,
    customer_id: str,
    ref: PetRef,
    cache: ResolutionCache,
) -> Resolved:
    """Existing id (verified to belong to the customer) -> cache -> upsert."""
    if ref.pet_id:
        row = conn.execute(
            "SELECT id FROM pet WHERE id = %s AND customer_id = %s",
            (ref.pet_id, customer_id),
        ).fetchone()
        if row is None:
            raise PersistenceError(
                f"pet {ref.pet_id} does not exist for customer {customer_id}"
            )
        return Resolved(id=str(row[0]), created=False)

    key = ref.identity_key(customer_id)
    cached = cache.pet(key)
    if cached:
        return Resolved(id=cached, created=False)

    result = upsert_pet(conn, customer_id, ref)
    cache.stage_pet(key, result.id)
    return result


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------

def register_customer(
    conn: psycopg.Connection,
    email: str,
    first_name: str,
    credential_hash: str,
    last_name: str | None = None,
    phone: str | None = None,
) -> Resolved:
    """Self-registration: activate a matching inactive profile in place, or
    create a new active customer.

    Returns Resolved(id, created) where created=False means an existing
    inactive profile was activated and kept its id.

    Raises:
        CustomerAlreadyRegisteredError: the email belongs to an active customer.
    """
    email_key = normalize_email(email)
    if not email_key:
        raise ValueError("email is required")
    if not credential_hash:
        raise ValueError("credential hash is required")
    row = conn.execute(
        """
        INSERT INTO customer
            (email, email_normalized, first_name, last_name, phone,
             is_active, password_hash, origin, activated_at)
        VALUES (%s, %s, %s, %s, %s, true, %s, 'self_registration', now())
        ON CONFLICT (email_normalized) DO UPDATE
            SET is_active     = true,
                password_hash = EXCLUDED.password_hash,
                activated_at  = now(),
                phone         = COALESCE(customer.phone, EXCLUDED.phone),
                updated_at    = now()
            WHERE customer.is_active = false
        RETURNING id, (xmax = 0) AS inserted
        """,
        (email, email_key, first_name, last_name, phone, credential_hash),
    ).fetchone()
    if row is None:
        raise CustomerAlreadyRegisteredError(f"{email_key} is already registered")
    result = Resolved(id=str(row[0]), created=bool(row[1]))
    if result.created:
        log.info("registered new customer %s", result.id)
    else:
        log.info("activated existing customer %s", result.id)
    return result
