"""
Tests for per-subscription durable storage and the alarm table.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from topicdigest.storage.durable import (
    DurableStorage,
    claim_alarm,
    due_alarms,
    from_epoch_ms,
    to_epoch_ms,
)

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


def test_put_get_has_delete():
    storage = DurableStorage("sub-1")

    assert storage.get("confirmed") is None
    assert storage.get("confirmed", "fallback") == "fallback"
    assert storage.has("confirmed") is False

    storage.put("confirmed", False)
    assert storage.has("confirmed") is True
    assert storage.get("confirmed") is False

    storage.put("confirmed", True)
    assert storage.get("confirmed") is True

    assert storage.delete("confirmed") is True
    assert storage.delete("confirmed") is False
    assert storage.has("confirmed") is False


def test_values_are_json_round_tripped():
    storage = DurableStorage("sub-1")
    snapshot = {"format": 1, "maps": {"config": {"email": {"value": "a@b.com", "stamp": [1, "s"]}}}}

    storage.put("doc", snapshot)

    assert storage.get("doc") == snapshot


def test_records_are_scoped_per_subscription():
    DurableStorage("sub-1").put("token", "abc")

    assert DurableStorage("sub-2").get("token") is None


def test_single_alarm_slot_is_replaced():
    storage = DurableStorage("sub-1")
    assert storage.get_alarm() is None

    storage.set_alarm(T0)
    storage.set_alarm(T0 + timedelta(days=1))

    assert storage.get_alarm() == T0 + timedelta(days=1)

    storage.delete_alarm()
    assert storage.get_alarm() is None


def test_due_alarms_oldest_first():
    DurableStorage("late").set_alarm(T0 - timedelta(minutes=1))
    DurableStorage("early").set_alarm(T0 - timedelta(hours=1))
    DurableStorage("future").set_alarm(T0 + timedelta(minutes=1))

    due = due_alarms(T0)

    assert [sub for sub, _ in due] == ["early", "late"]
    assert due[0][1] == T0 - timedelta(hours=1)


def test_claim_alarm_only_when_unchanged():
    storage = DurableStorage("sub-1")
    storage.set_alarm(T0)

    storage.set_alarm(T0 + timedelta(days=1))
    assert claim_alarm("sub-1", T0) is False
    assert storage.get_alarm() == T0 + timedelta(days=1)

    assert claim_alarm("sub-1", T0 + timedelta(days=1)) is True
    assert storage.get_alarm() is None


def test_epoch_ms_conversion():
    assert to_epoch_ms(datetime(1970, 1, 1, tzinfo=UTC)) == 0
    assert from_epoch_ms(to_epoch_ms(T0)) == T0
