"""
Typed view over a subscription's replicated document.

Layout:
    config  (map)       email, enabled, frequency, timezone,
                        confirmed, confirmedAt, nextAlarmTime
    topics  (sequence)  topic strings, insertion ordered, no duplicates
    digests (sequence)  Digest records, oldest first, at most MAX_DIGESTS

Timestamps inside the document are epoch milliseconds.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from topicdigest.config import MAX_DIGESTS
from topicdigest.observability.logging import get_logger
from topicdigest.replication.document import DocumentEvent, ReplicatedDocument
from topicdigest.storage.durable import from_epoch_ms, to_epoch_ms
from topicdigest.subscription.models import Digest, Frequency

logger = get_logger(__name__)

CONFIG_MAP = "config"
TOPICS_SEQ = "topics"
DIGESTS_SEQ = "digests"

# Transaction origin for writes made by the actor itself
SERVER_ORIGIN = "server"

DEFAULT_TIMEZONE = "UTC"


class ConfigStore:
    def __init__(self, doc: ReplicatedDocument, max_digests: int = MAX_DIGESTS):
        self.doc = doc
        self.max_digests = max_digests
        self._config = doc.get_map(CONFIG_MAP)
        self._topics = doc.get_sequence(TOPICS_SEQ)
        self._digests = doc.get_sequence(DIGESTS_SEQ)

    def observe(self, callback: Callable[[DocumentEvent], None]) -> Callable[[], None]:
        return self.doc.observe(callback)

    # ------------------------------------------------------------------
    # Scalar config fields
    # ------------------------------------------------------------------

    @property
    def email(self) -> str:
        value = self._config.get("email")
        return value.strip() if isinstance(value, str) else ""

    def set_email(self, email: str | None) -> None:
        with self.doc.transaction(SERVER_ORIGIN):
            self._config.set("email", email or None)

    @property
    def enabled(self) -> bool:
        return self._config.get("enabled") is True

    def set_enabled(self, enabled: bool) -> None:
        with self.doc.transaction(SERVER_ORIGIN):
            self._config.set("enabled", bool(enabled))

    @property
    def frequency(self) -> Frequency:
        return Frequency.parse(self._config.get("frequency"))

    def set_frequency(self, frequency: Frequency) -> None:
        with self.doc.transaction(SERVER_ORIGIN):
            self._config.set("frequency", Frequency(frequency).value)

    @property
    def timezone(self) -> str:
        value = self._config.get("timezone")
        return value if isinstance(value, str) and value else DEFAULT_TIMEZONE

    def set_timezone(self, timezone: str) -> None:
        with self.doc.transaction(SERVER_ORIGIN):
            self._config.set("timezone", timezone)

    @property
    def is_periodic(self) -> bool:
        """True when the subscription should hold a pending alarm."""
        return self.enabled and self.frequency.is_periodic

    # ------------------------------------------------------------------
    # Server-projected fields (read-only for clients)
    # ------------------------------------------------------------------

    @property
    def mirrored_confirmed(self) -> Any:
        return self._config.get("confirmed")

    @property
    def mirrored_confirmed_at(self) -> Any:
        return self._config.get("confirmedAt")

    def set_mirrored_confirmation(self, confirmed: bool, confirmed_at: datetime | None) -> None:
        with self.doc.transaction(SERVER_ORIGIN):
            self._config.set("confirmed", bool(confirmed))
            self._config.set("confirmedAt", to_epoch_ms(confirmed_at) if confirmed_at else None)

    @property
    def next_alarm_time(self) -> datetime | None:
        value = self._config.get("nextAlarmTime")
        if isinstance(value, int) and not isinstance(value, bool):
            return from_epoch_ms(value)
        return None

    def set_next_alarm_time(self, moment: datetime | None) -> None:
        with self.doc.transaction(SERVER_ORIGIN):
            self._config.set("nextAlarmTime", to_epoch_ms(moment) if moment else None)

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    def topics(self) -> list[str]:
        return [topic for topic in self._topics.to_list() if isinstance(topic, str)]

    def add_topic(self, topic: str) -> bool:
        """Append a topic unless an identical one exists. Returns True if added."""
        topic = (topic or "").strip()
        if not topic or topic in self.topics():
            return False
        with self.doc.transaction(SERVER_ORIGIN):
            self._topics.push([topic])
        return True

    def remove_topic(self, index: int) -> None:
        with self.doc.transaction(SERVER_ORIGIN):
            self._topics.delete(index, 1)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def history(self) -> list[Digest]:
        """Digests oldest first. Entries that fail validation are skipped."""
        digests = []
        for raw in self._digests.to_list():
            try:
                digests.append(Digest.from_document(raw))
            except ValidationError:
                logger.warning("Skipping malformed history entry")
        return digests

    def history_length(self) -> int:
        return len(self._digests)

    def push_digest(self, digest: Digest) -> int:
        """
        Append a digest and evict the oldest entries beyond max_digests.

        Returns the number of evicted entries.
        """
        with self.doc.transaction(SERVER_ORIGIN):
            self._digests.push([digest.to_document()])
            return self.trim_history()

    def trim_history(self) -> int:
        """Delete the oldest entries beyond max_digests. Returns how many went."""
        excess = len(self._digests) - self.max_digests
        if excess <= 0:
            return 0
        with self.doc.transaction(SERVER_ORIGIN):
            self._digests.delete(0, excess)
        return excess

    def to_public_dict(self) -> dict[str, Any]:
        """Read-only summary for the status endpoint."""
        next_alarm = self.next_alarm_time
        return {
            "email": self.email,
            "enabled": self.enabled,
            "frequency": self.frequency.value,
            "timezone": self.timezone,
            "confirmed": self.mirrored_confirmed is True,
            "topics": self.topics(),
            "nextAlarmTime": next_alarm.isoformat() if next_alarm else None,
            "history": [{"date": d.date, "subject": d.subject} for d in self.history()],
        }
