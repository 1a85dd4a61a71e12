"""
Actor registry: at most one live SubscriptionActor per subscription id.

Actors boot lazily on first use and are evicted once they have had no
connections or background work for idle_seconds. Request-driven wakes
record the subscription id in durable storage; alarm-only wakes read it back
from there, backfilling it for subscriptions created before it was recorded.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime

from topicdigest.collaborators.email import EmailSender
from topicdigest.collaborators.research import ResearchComposer
from topicdigest.config import ACTOR_IDLE_SECONDS, PUBLIC_URL
from topicdigest.observability.logging import get_logger
from topicdigest.observability.telemetry import counter
from topicdigest.storage.durable import DurableStorage
from topicdigest.subscription.actor import DOC_KEY, ROOM_ID_KEY, SubscriptionActor
from topicdigest.subscription.scheduler import utc_now

logger = get_logger(__name__)


class ActorRegistry:
    def __init__(
        self,
        email_sender: EmailSender,
        composer: ResearchComposer,
        base_url: str = PUBLIC_URL,
        clock: Callable[[], datetime] = utc_now,
        idle_seconds: float = ACTOR_IDLE_SECONDS,
    ):
        self.email_sender = email_sender
        self.composer = composer
        self.base_url = base_url
        self.clock = clock
        self.idle_seconds = idle_seconds
        self._actors: dict[str, SubscriptionActor] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __contains__(self, subscription_id: str) -> bool:
        return subscription_id in self._actors

    def __len__(self) -> int:
        return len(self._actors)

    async def get(self, subscription_id: str) -> SubscriptionActor:
        """Actor for a request-driven wake; records its identity."""
        actor = await self._get_or_boot(subscription_id)
        actor.record_identity()
        return actor

    async def get_existing(self, subscription_id: str) -> SubscriptionActor | None:
        """
        Actor for a subscription that has already been created, or None.

        Nothing is booted or written for an id with no stored document.
        """
        if subscription_id not in self._actors:
            stored = await asyncio.to_thread(DurableStorage(subscription_id).has, DOC_KEY)
            if not stored:
                counter("registry.unknown_lookups")
                return None
        return await self.get(subscription_id)

    async def get_for_alarm(self, subscription_id: str) -> SubscriptionActor:
        """Actor for an alarm-only wake, resolved through the stored identity."""
        storage = DurableStorage(subscription_id)
        room_id = storage.get(ROOM_ID_KEY)
        if room_id is None:
            counter("registry.identity_backfilled")
            logger.info("No stored identity for %s; backfilling from alarm", subscription_id)
            storage.put(ROOM_ID_KEY, subscription_id)
            room_id = subscription_id
        return await self._get_or_boot(room_id)

    async def _get_or_boot(self, subscription_id: str) -> SubscriptionActor:
        actor = self._actors.get(subscription_id)
        if actor is None:
            async with self._locks[subscription_id]:
                actor = self._actors.get(subscription_id)
                if actor is None:
                    actor = SubscriptionActor(
                        subscription_id,
                        self.email_sender,
                        self.composer,
                        base_url=self.base_url,
                        clock=self.clock,
                    )
                    actor.boot()
                    self._actors[subscription_id] = actor
                    counter("registry.actors_booted")
                self._locks.pop(subscription_id, None)
        actor.touch()
        return actor

    def evict_idle(self) -> int:
        """Drop actors that have been idle for idle_seconds. Returns how many."""
        now = self.clock()
        evicted = 0
        for subscription_id, actor in list(self._actors.items()):
            if not actor.is_idle:
                continue
            if (now - actor.last_active_at).total_seconds() < self.idle_seconds:
                continue
            del self._actors[subscription_id]
            evicted += 1
        if evicted:
            counter("registry.actors_evicted", evicted)
            logger.info("Evicted %d idle actors (%d resident)", evicted, len(self._actors))
        return evicted

    async def shutdown(self) -> None:
        """Wait for every actor's background work to finish."""
        for actor in list(self._actors.values()):
            await actor.wait_for_background()
        logger.info("Registry drained %d actors", len(self._actors))
