"""
Tests for the actor registry and the alarm dispatcher.

Validates:
1. One live actor per subscription id, even under concurrent wakes
2. Request-driven wakes record the subscription identity
3. Alarm-only wakes backfill a missing identity
4. Due alarms are claimed, delivered and re-armed
5. Lookups never create subscriptions; idle actors are evicted
"""

from __future__ import annotations

import asyncio

from topicdigest.observability.telemetry import get_counter
from topicdigest.storage.durable import DurableStorage
from topicdigest.subscription.actor import DOC_KEY, ROOM_ID_KEY
from topicdigest.subscription.models import Frequency
from topicdigest.subscription.registry import ActorRegistry
from topicdigest.subscription.scheduler import AlarmDispatcher

BASE_URL = "https://digest.test"


def _registry(email_sender, composer, clock) -> ActorRegistry:
    return ActorRegistry(email_sender, composer, base_url=BASE_URL, clock=clock)


def test_concurrent_wakes_share_one_actor(email_sender, composer, clock, subscription_id):
    registry = _registry(email_sender, composer, clock)

    async def scenario():
        return await asyncio.gather(*(registry.get(subscription_id) for _ in range(5)))

    actors = asyncio.run(scenario())

    assert all(actor is actors[0] for actor in actors)
    assert len(registry) == 1
    assert subscription_id in registry
    assert get_counter("registry.actors_booted") == 1


def test_request_wake_records_identity(email_sender, composer, clock, subscription_id):
    registry = _registry(email_sender, composer, clock)

    asyncio.run(registry.get(subscription_id))

    assert DurableStorage(subscription_id).get(ROOM_ID_KEY) == subscription_id


def test_alarm_wake_backfills_identity(email_sender, composer, clock, subscription_id):
    registry = _registry(email_sender, composer, clock)

    actor = asyncio.run(registry.get_for_alarm(subscription_id))

    assert actor.subscription_id == subscription_id
    assert DurableStorage(subscription_id).get(ROOM_ID_KEY) == subscription_id
    assert get_counter("registry.identity_backfilled") == 1


def test_lookup_of_unknown_subscription_writes_nothing(email_sender, composer, clock, subscription_id):
    registry = _registry(email_sender, composer, clock)

    actor = asyncio.run(registry.get_existing(subscription_id))

    assert actor is None
    assert len(registry) == 0
    assert DurableStorage(subscription_id).get(DOC_KEY) is None
    assert DurableStorage(subscription_id).get(ROOM_ID_KEY) is None


def test_lookup_of_created_subscription_reboots_it(email_sender, composer, clock, subscription_id):
    first = _registry(email_sender, composer, clock)

    async def create():
        actor = await first.get(subscription_id)
        actor.store.add_topic("ai")
        await actor.wait_for_background()

    asyncio.run(create())
    second = _registry(email_sender, composer, clock)
    actor = asyncio.run(second.get_existing(subscription_id))

    assert actor is not None
    assert actor.store.topics() == ["ai"]


def test_idle_actors_are_evicted(email_sender, composer, clock, make_connection):
    registry = ActorRegistry(
        email_sender, composer, base_url=BASE_URL, clock=clock, idle_seconds=300
    )
    busy_id = "0b6f5c3e-1d2a-4e8f-9c7b-6a5d4e3f2a1b"
    idle_id = "7e2d9a41-5c3b-4f6e-8a1d-0c9b8e7f6d5a"

    async def scenario():
        busy = await registry.get(busy_id)
        await busy.connect(make_connection())
        idle = await registry.get(idle_id)
        await busy.wait_for_background()
        await idle.wait_for_background()

        too_soon = registry.evict_idle()
        clock.advance(seconds=301)
        evicted = registry.evict_idle()
        return too_soon, evicted

    too_soon, evicted = asyncio.run(scenario())

    assert too_soon == 0
    assert evicted == 1
    assert busy_id in registry
    assert idle_id not in registry
    assert get_counter("registry.actors_evicted") == 1


def test_dispatcher_fires_due_alarm_and_rearms(email_sender, composer, clock, subscription_id):
    registry = _registry(email_sender, composer, clock)
    dispatcher = AlarmDispatcher(registry, clock=clock)

    async def scenario():
        actor = await registry.get(subscription_id)
        actor.store.add_topic("ai")
        actor.store.set_frequency(Frequency.DAILY)
        actor.store.set_enabled(True)
        actor.store.set_email("a@b.com")
        await actor.wait_for_background()
        actor.handle_confirm(email_sender.last_token)

        first_alarm = actor.storage.get_alarm()
        not_yet = await dispatcher.run_once()

        clock.now = first_alarm
        fired = await dispatcher.run_once()
        await registry.shutdown()
        return actor, first_alarm, not_yet, fired

    actor, first_alarm, not_yet, fired = asyncio.run(scenario())

    assert not_yet == 0
    assert fired == 1
    assert actor.store.history_length() == 1
    assert email_sender.digests[0]["to"] == "a@b.com"
    assert actor.storage.get_alarm() > first_alarm
    assert get_counter("scheduler.alarms_fired") == 1


def test_dispatcher_skips_unconfirmed_but_rearms(email_sender, composer, clock, subscription_id):
    registry = _registry(email_sender, composer, clock)
    dispatcher = AlarmDispatcher(registry, clock=clock)

    async def scenario():
        actor = await registry.get(subscription_id)
        actor.store.add_topic("ai")
        actor.store.set_enabled(True)
        await actor.wait_for_background()

        clock.now = actor.storage.get_alarm()
        await dispatcher.run_once()
        await registry.shutdown()
        return actor

    actor = asyncio.run(scenario())

    assert composer.calls == []
    assert actor.storage.get_alarm() > clock()


def test_dispatcher_start_and_stop(email_sender, composer, clock):
    registry = _registry(email_sender, composer, clock)
    dispatcher = AlarmDispatcher(registry, poll_seconds=0.01, clock=clock)

    async def scenario():
        task = dispatcher.start()
        await asyncio.sleep(0.05)
        await dispatcher.stop()
        return task

    task = asyncio.run(scenario())

    assert task.done()
