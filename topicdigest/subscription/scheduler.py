"""
Alarm scheduling for subscription actors.

Each actor holds at most one durable alarm. It exists iff the subscription
is enabled with a periodic frequency. The fire time is the subscriber's
local send hour, computed against the timezone offset in effect now.

AlarmDispatcher polls the alarm table and wakes the owning actor for every
alarm that is due. Each poll also lets the registry evict idle actors.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from topicdigest.config import ALARM_POLL_SECONDS, SEND_HOUR_LOCAL
from topicdigest.observability.logging import get_logger
from topicdigest.observability.telemetry import counter, log_event
from topicdigest.storage.durable import DurableStorage, claim_alarm, due_alarms
from topicdigest.subscription.config_store import ConfigStore
from topicdigest.subscription.models import Frequency

if TYPE_CHECKING:
    from topicdigest.subscription.registry import ActorRegistry

logger = get_logger(__name__)


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def resolve_utc_offset(timezone: str, now: datetime) -> timedelta:
    """
    Offset of ``timezone`` from UTC at ``now``.

    Computed by rendering the same instant as UTC and as local wall time and
    differencing. Unknown or malformed zone names fall back to UTC.
    """
    try:
        zone = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        counter("scheduler.invalid_timezone")
        logger.warning("Unknown timezone %r, falling back to UTC", timezone)
        return timedelta(0)

    local_wall = now.astimezone(zone).replace(tzinfo=None)
    utc_wall = now.astimezone(UTC).replace(tzinfo=None)
    return local_wall - utc_wall


def compute_next_fire_time(
    frequency: Frequency,
    timezone: str,
    now: datetime,
    send_hour: int = SEND_HOUR_LOCAL,
) -> datetime:
    """
    Next time to wake for a periodic frequency.

    Starts from today's ``send_hour`` local time. If that has passed, moves
    forward one interval (repeated until it is in the future); otherwise
    moves forward interval - 1 days for multi-day frequencies.

    Raises:
        ValueError: If frequency is MANUAL
    """
    days = frequency.interval_days
    if days is None:
        raise ValueError(f"Frequency {frequency.value!r} has no schedule")

    now_utc = now.astimezone(UTC)
    offset = resolve_utc_offset(timezone, now_utc)
    candidate = now_utc.replace(hour=send_hour, minute=0, second=0, microsecond=0) - offset

    if candidate <= now_utc:
        candidate += timedelta(days=days)
        # Large positive offsets can leave today's candidate more than a day behind
        while candidate <= now_utc:
            candidate += timedelta(days=days)
    elif days > 1:
        candidate += timedelta(days=days - 1)

    return candidate


class AlarmScheduler:
    """
    Keeps the actor's durable alarm in line with its config.

    sync() runs on every document change, so it only touches storage when
    the alarm must be created, removed, or moved.
    """

    def __init__(
        self,
        store: ConfigStore,
        storage: DurableStorage,
        clock: Callable[[], datetime] = utc_now,
        send_hour: int = SEND_HOUR_LOCAL,
    ):
        self.store = store
        self.storage = storage
        self.clock = clock
        self.send_hour = send_hour
        self._last_scheduled: tuple[Frequency, str] | None = None

    def prime(self) -> None:
        """Adopt an alarm persisted by an earlier boot without moving it."""
        if self.storage.get_alarm() is not None and self.store.is_periodic:
            self._last_scheduled = (self.store.frequency, self.store.timezone)

    def sync(self) -> None:
        if not self.store.is_periodic:
            self.cancel()
            return

        schedule_key = (self.store.frequency, self.store.timezone)
        if self.storage.get_alarm() is None or self._last_scheduled != schedule_key:
            self.schedule_next()

    def schedule_next(self) -> datetime:
        """
        Arm the alarm for the next fire time.

        Side Effects:
            - Replaces the durable alarm
            - Mirrors the time into the replicated nextAlarmTime field
        """
        frequency = self.store.frequency
        timezone = self.store.timezone
        fire_at = compute_next_fire_time(frequency, timezone, self.clock(), self.send_hour)

        self.storage.set_alarm(fire_at)
        self.store.set_next_alarm_time(fire_at)
        self._last_scheduled = (frequency, timezone)

        log_event(
            "scheduler.alarm_set",
            subscription=self.storage.subscription_id,
            frequency=frequency.value,
            timezone=timezone,
            fire_at=fire_at.isoformat(),
        )
        return fire_at

    def cancel(self) -> None:
        if self.storage.get_alarm() is not None:
            self.storage.delete_alarm()
            log_event("scheduler.alarm_cleared", subscription=self.storage.subscription_id)
        if self.store.next_alarm_time is not None:
            self.store.set_next_alarm_time(None)
        self._last_scheduled = None

    def rearm_after_fire(self) -> datetime | None:
        """Called first thing when the alarm fires; re-arms if still periodic."""
        if self.store.is_periodic:
            return self.schedule_next()
        self.cancel()
        return None


class AlarmDispatcher:
    """
    Background loop that fires due alarms.

    An alarm row is claimed (deleted) before its actor runs, so each fire
    time is delivered once even if several dispatchers share the database.
    """

    def __init__(
        self,
        registry: ActorRegistry,
        poll_seconds: float = ALARM_POLL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.registry = registry
        self.poll_seconds = poll_seconds
        self.clock = clock
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def run_once(self) -> int:
        """Fire every alarm that is due now. Returns how many fired."""
        fired = 0
        due = await asyncio.to_thread(due_alarms, self.clock())
        for subscription_id, fire_at in due:
            if not await asyncio.to_thread(claim_alarm, subscription_id, fire_at):
                continue
            fired += 1
            counter("scheduler.alarms_fired")
            try:
                actor = await self.registry.get_for_alarm(subscription_id)
                await actor.on_alarm()
            except Exception:
                counter("scheduler.alarm_errors")
                logger.exception("Alarm handling failed for %s", subscription_id)
        return fired

    async def run_forever(self) -> None:
        logger.info("Alarm dispatcher started (poll every %ss)", self.poll_seconds)
        while not self._stop.is_set():
            try:
                await self.run_once()
                self.registry.evict_idle()
            except Exception:
                logger.exception("Alarm poll failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_seconds)
            except TimeoutError:
                pass
        logger.info("Alarm dispatcher stopped")

    def start(self) -> asyncio.Task:
        self._stop.clear()
        self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
