"""booking_etl.catalog

Service / addon / price lookup.  The catalog itself is owned elsewhere; the
import pipeline only reads it through the PriceCatalog protocol.

Implementations:
  PostgresCatalog  -- reads service, service_price, addon (cached per import)
  StaticCatalog    -- in-memory catalog for tests and offline validation
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol

import psycopg

from booking_etl.normalize import name_key
from booking_etl.shared import PersistenceError


class PricingUnavailableError(PersistenceError):
    """Raised when no price exists for a (service, size) pair at write time."""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServiceRecord:
    id: str
    name: str
    duration_minutes: int = 60


@dataclass(frozen=True)
class AddonRecord:
    id: str
    name: str
    price: Decimal


@dataclass(frozen=True)
class PriceQuote:
    service: ServiceRecord
    service_price: Decimal
    addons: tuple[AddonRecord, ...]

    @property
    def total(self) -> Decimal:
        return self.service_price + sum((a.price for a in self.addons), Decimal("0"))


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class PriceCatalog(Protocol):
    def find_service(self, name: str) -> ServiceRecord | None:
        ...

    def find_addon(self, name: str) -> AddonRecord | None:
        ...

    def price(self, service_id: str, size: str) -> Decimal | None:
        """Return the price of a service for a pet size, or None if not offered."""
        ...


def quote(
    catalog: PriceCatalog,
    service_name: str,
    size: str,
    addon_names: list[str],
) -> PriceQuote:
    """Resolve service, addons and prices for one appointment.

    Raises:
        PricingUnavailableError: service or addon unknown, or no price for size.
    """
    service = catalog.find_service(service_name)
    if service is None:
        raise PricingUnavailableError(f"service {service_name!r} not found")
    service_price = catalog.price(service.id, size)
    if service_price is None:
        raise PricingUnavailableError(f"no price for {service.name} - {size}")
    addons: list[AddonRecord] = []
    for addon_name in addon_names:
        addon = catalog.find_addon(addon_name)
        if addon is None:
            raise PricingUnavailableError(f"addon {addon_name!r} not found")
        addons.append(addon)
    return PriceQuote(service=service, service_price=service_price, addons=tuple(addons))


# ---------------------------------------------------------------------------
# PostgresCatalog
# ---------------------------------------------------------------------------

class PostgresCatalog:
    """Catalog reads against the service/service_price/addon tables.

    Lookups are cached for the lifetime of the instance; create one per import.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn
        self._services: dict[str, ServiceRecord | None] = {}
        self._addons: dict[str, AddonRecord | None] = {}
        self._prices: dict[tuple[str, str], Decimal | None] = {}

    def find_service(self, name: str) -> ServiceRecord | None:
        key = name_key(name) or ""
        if key not in self._services:
            row = self._conn.execute(
                """
                SELECT id, name, duration_minutes FROM service
                WHERE name_normalized = %s AND is_active = true
                """,
                (key,),
            ).fetchone()
            self._services[key] = (
                ServiceRecord(id=str(row[0]), name=row[1], duration_minutes=row[2])
                if row else None
            )
        return self._services[key]

    def find_addon(self, name: str) -> AddonRecord | None:
        key = name_key(name) or ""
        if key not in self._addons:
            row = self._conn.execute(
                """
                SELECT id, name, price FROM addon
                WHERE name_normalized = %s AND is_active = true
                """,
                (key,),
            ).fetchone()
            self._addons[key] = (
                AddonRecord(id=str(row[0]), name=row[1], price=row[2]) if row else None
            )
        return self._addons[key]

    def price(self, service_id: str, size: str) -> Decimal | None:
        key = (service_id, size)
        if key not in self._prices:
            row = self._conn.execute(
                "SELECT price FROM service_price WHERE service_id = %s AND size = %s",
                key,
            ).fetchone()
            self._prices[key] = row[0] if row else None
        return self._prices[key]


# ---------------------------------------------------------------------------
# StaticCatalog
# ---------------------------------------------------------------------------

@dataclass
class StaticCatalog:
    """In-memory catalog keyed by case-insensitive name."""

    services: dict[str, ServiceRecord] = field(default_factory=dict)
    addons: dict[str, AddonRecord] = field(default_factory=dict)
    prices: dict[tuple[str, str], Decimal] = field(default_factory=dict)

    def add_service(
        self,
        name: str,
        prices: dict[str, Decimal],
        duration_minutes: int = 60,
        service_id: str | None = None,
    ) -> ServiceRecord:
        record = ServiceRecord(
            id=service_id or str(uuid.uuid4()),
            name=name,
            duration_minutes=duration_minutes,
        )
        self.services[name_key(name) or ""] = record
        for size, amount in prices.items():
            self.prices[(record.id, size)] = Decimal(amount)
        return record

    def add_addon(self, name: str, price: Decimal, addon_id: str | None = None) -> AddonRecord:
        record = AddonRecord(id=addon_id or str(uuid.uuid4()), name=name, price=Decimal(price))
        self.addons[name_key(name) or ""] = record
        return record

    def find_service(self, name: str) -> ServiceRecord | None:
        return self.services.get(name_key(name) or "")

    def find_addon(self, name: str) -> AddonRecord | None:
        return self.addons.get(name_key(name) or "")

    def price(self, service_id: str, size: str) -> Decimal | None:
        return self.prices.get((service_id, size))
