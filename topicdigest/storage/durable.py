"""
Durable Storage - per-subscription key/value records and the single alarm.

Each actor owns one DurableStorage bound to its subscription id. Values are
JSON encoded. The alarm table holds at most one wake-up time per subscription;
setting a new alarm replaces the old one.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from topicdigest.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from topicdigest.observability.logging import get_logger

logger = get_logger(__name__)

_MISSING = object()


def to_epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=UTC)


class DurableStorage:
    """Key/value storage and alarm slot for one subscription."""

    def __init__(self, subscription_id: str):
        self.subscription_id = subscription_id

    def get(self, key: str, default: Any = None) -> Any:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT value FROM actor_storage WHERE subscription_id = ? AND key = ?",
                (self.subscription_id, key),
            ).fetchone()
        if row is None:
            return default
        return json.loads(row["value"])

    def has(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    @retry_on_db_lock()
    def put(self, key: str, value: Any) -> None:
        """
        Side Effects:
            - Upserts a row in actor_storage
        """
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO actor_storage (subscription_id, key, value, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (subscription_id, key)
                DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (self.subscription_id, key, json.dumps(value), datetime.now(UTC).isoformat()),
            )

    @retry_on_db_lock()
    def delete(self, key: str) -> bool:
        with db_transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM actor_storage WHERE subscription_id = ? AND key = ?",
                (self.subscription_id, key),
            )
            return cursor.rowcount > 0

    # --- Alarm slot ---

    def get_alarm(self) -> datetime | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT fire_at_ms FROM actor_alarms WHERE subscription_id = ?",
                (self.subscription_id,),
            ).fetchone()
        return from_epoch_ms(row["fire_at_ms"]) if row else None

    @retry_on_db_lock()
    def set_alarm(self, fire_at: datetime) -> None:
        """
        Side Effects:
            - Replaces any existing alarm row for this subscription
        """
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO actor_alarms (subscription_id, fire_at_ms) VALUES (?, ?)
                ON CONFLICT (subscription_id) DO UPDATE SET fire_at_ms = excluded.fire_at_ms
                """,
                (self.subscription_id, to_epoch_ms(fire_at)),
            )
        logger.debug("Alarm for %s set to %s", self.subscription_id, fire_at.isoformat())

    @retry_on_db_lock()
    def delete_alarm(self) -> None:
        with db_transaction() as conn:
            conn.execute(
                "DELETE FROM actor_alarms WHERE subscription_id = ?",
                (self.subscription_id,),
            )


def due_alarms(now: datetime, limit: int = 100) -> list[tuple[str, datetime]]:
    """Return (subscription_id, fire_at) for alarms at or before now, oldest first."""
    with get_db_connection() as conn:
        rows = conn.execute(
            """
            SELECT subscription_id, fire_at_ms FROM actor_alarms
            WHERE fire_at_ms <= ? ORDER BY fire_at_ms LIMIT ?
            """,
            (to_epoch_ms(now), limit),
        ).fetchall()
    return [(row["subscription_id"], from_epoch_ms(row["fire_at_ms"])) for row in rows]


@retry_on_db_lock()
def claim_alarm(subscription_id: str, fire_at: datetime) -> bool:
    """
    Consume an alarm that is about to fire.

    Only deletes the row if it still holds the same fire time, so an alarm
    rescheduled in the meantime is left alone. Returns True if claimed.
    """
    with db_transaction() as conn:
        cursor = conn.execute(
            "DELETE FROM actor_alarms WHERE subscription_id = ? AND fire_at_ms = ?",
            (subscription_id, to_epoch_ms(fire_at)),
        )
        return cursor.rowcount > 0
