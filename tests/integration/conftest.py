"""Integration test fixtures.

Applies migrations 0001-0003 against an ephemeral PostgreSQL database
provided by pytest-postgresql before any integration test runs.
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_extensions.sql",
    PROJECT_ROOT / "migrations" / "0002_core_entities.sql",
    PROJECT_ROOT / "migrations" / "0003_import_ops.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture: applies all migrations for each test
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (autocommit connection, dsn) with schema applied.

    The connection stays in autocommit mode: the import code opens its own
    transaction blocks.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            sql = migration.read_text(encoding="utf-8")
            conn.execute(sql)
        yield conn, dsn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Catalog seed
# ---------------------------------------------------------------------------

SERVICE_PRICES = {
    "Full Groom": {
        "small": Decimal("45.00"),
        "medium": Decimal("60.00"),
        "large": Decimal("75.00"),
        "xlarge": Decimal("90.00"),
    },
    # no xlarge price on purpose
    "Bath Only": {
        "small": Decimal("25.00"),
        "medium": Decimal("30.00"),
        "large": Decimal("40.00"),
    },
}

ADDON_PRICES = {
    "Nail Trim": Decimal("10.00"),
    "Teeth Brushing": Decimal("8.00"),
}


@pytest.fixture
def catalog_ids(db_conn):
    """Seed services, prices and addons; return {name: id}."""
    conn, _ = db_conn
    ids: dict[str, str] = {}
    for name, prices in SERVICE_PRICES.items():
        row = conn.execute(
            """
            INSERT INTO service (name, name_normalized, duration_minutes)
            VALUES (%s, %s, 60) RETURNING id
            """,
            (name, name.lower()),
        ).fetchone()
        ids[name] = str(row[0])
        for size, price in prices.items():
            conn.execute(
                "INSERT INTO service_price (service_id, size, price) VALUES (%s, %s, %s)",
                (row[0], size, price),
            )
    for name, price in ADDON_PRICES.items():
        row = conn.execute(
            "INSERT INTO addon (name, name_normalized, price) VALUES (%s, %s, %s) RETURNING id",
            (name, name.lower(), price),
        ).fetchone()
        ids[name] = str(row[0])
    return ids
