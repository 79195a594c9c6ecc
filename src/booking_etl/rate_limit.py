"""booking_etl.rate_limit

Per-operator import rate limit backed by the import_rate_limit table.

The counter lives in the database so every worker process sees the same
window.  One upsert either opens a fresh window (when the stored one has
expired) or increments the current count, and returns the new count.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

import psycopg

log = logging.getLogger(__name__)


class RateLimitExceededError(Exception):
    """Raised when an operator has used up the imports allowed in the window."""

    def __init__(self, operator_id: str, limit: int, window: timedelta) -> None:
        super().__init__(
            f"operator {operator_id!r} exceeded {limit} imports per "
            f"{int(window.total_seconds())}s"
        )
        self.operator_id = operator_id
        self.limit = limit
        self.window = window


@dataclass
class OperatorRateLimiter:
    max_per_window: int = 10
    window: timedelta = timedelta(hours=1)

    def acquire(self, conn: psycopg.Connection, operator_id: str) -> int:
        """Count one import for operator_id; returns the count in the window.

        Raises:
            RateLimitExceededError: the count would exceed max_per_window.
        """
        with conn.transaction():
            row = conn.execute(
                """
                INSERT INTO import_rate_limit (operator_id, window_started_at, import_count)
                VALUES (%s, now(), 1)
                ON CONFLICT (operator_id) DO UPDATE SET
                    window_started_at = CASE
                        WHEN import_rate_limit.window_started_at <= now() - %s
                        THEN now()
                        ELSE import_rate_limit.window_started_at
                    END,
                    import_count = CASE
                        WHEN import_rate_limit.window_started_at <= now() - %s
                        THEN 1
                        ELSE import_rate_limit.import_count + 1
                    END
                RETURNING import_count
                """,
                (operator_id, self.window, self.window),
            ).fetchone()
        count = row[0]
        if count > self.max_per_window:
            log.warning(
                "Rate limit hit for operator %s (%d > %d)", operator_id, count, self.max_per_window
            )
            raise RateLimitExceededError(operator_id, self.max_per_window, self.window)
        return count

    def reset(self, conn: psycopg.Connection, operator_id: str) -> None:
        with conn.transaction():
            conn.execute("DELETE FROM import_rate_limit WHERE operator_id = %s", (operator_id,))
