"""
Tests for the replicated document.

Validates:
1. Concurrent map writes converge (last writer by stamp wins everywhere)
2. Concurrent sequence inserts/deletes converge with a stable order
3. Ops are idempotent and out-of-order ops are buffered (bounded)
4. Observers fire once per transaction; observer writes are queued
5. Snapshots restore identical state
"""

from __future__ import annotations

import pytest

from topicdigest.observability.telemetry import get_counter
from topicdigest.replication.document import InvalidUpdateError, ReplicatedDocument


def _capture(doc: ReplicatedDocument) -> list[dict]:
    """Collect ops from local transactions only."""
    ops: list[dict] = []
    doc.observe(lambda event: ops.extend(event.ops) if event.origin != "remote" else None)
    return ops


def _sync(a: ReplicatedDocument, ops_from_a: list[dict], b: ReplicatedDocument, ops_from_b: list[dict]) -> None:
    b.apply_update(list(ops_from_a), origin="remote")
    a.apply_update(list(ops_from_b), origin="remote")


def test_concurrent_map_writes_converge():
    a, b = ReplicatedDocument("a"), ReplicatedDocument("b")
    ops_a, ops_b = _capture(a), _capture(b)

    a.get_map("config").set("frequency", "weekly")
    b.get_map("config").set("frequency", "daily")
    _sync(a, ops_a, b, ops_b)

    # Equal clocks: replica id breaks the tie ("b" > "a")
    assert a.get_map("config").get("frequency") == "daily"
    assert b.get_map("config").get("frequency") == "daily"


def test_later_write_wins_after_seeing_earlier():
    a, b = ReplicatedDocument("a"), ReplicatedDocument("b")
    ops_a, ops_b = _capture(a), _capture(b)

    b.get_map("config").set("timezone", "Europe/Paris")
    a.apply_update(list(ops_b), origin="remote")
    ops_b.clear()

    a.get_map("config").set("timezone", "Asia/Tokyo")
    b.apply_update(list(ops_a), origin="remote")

    assert a.get_map("config").get("timezone") == "Asia/Tokyo"
    assert b.get_map("config").get("timezone") == "Asia/Tokyo"


def test_deleted_key_reads_as_absent():
    doc = ReplicatedDocument("a")
    config = doc.get_map("config")
    config.set("email", "a@b.com")
    config.delete("email")

    assert config.get("email") is None
    assert "email" not in config
    assert config.to_dict() == {}


def test_concurrent_inserts_at_same_position_converge():
    a, b = ReplicatedDocument("a"), ReplicatedDocument("b")
    ops_a, ops_b = _capture(a), _capture(b)

    a.get_sequence("topics").push(["base"])
    b.apply_update(list(ops_a), origin="remote")
    ops_a.clear()

    a.get_sequence("topics").insert(1, ["from-a"])
    b.get_sequence("topics").insert(1, ["from-b"])
    _sync(a, ops_a, b, ops_b)

    assert a.get_sequence("topics").to_list() == b.get_sequence("topics").to_list()
    assert a.get_sequence("topics")[0] == "base"
    assert set(a.get_sequence("topics").to_list()[1:]) == {"from-a", "from-b"}


def test_multi_value_insert_stays_contiguous():
    a, b = ReplicatedDocument("a"), ReplicatedDocument("b")
    ops_a, ops_b = _capture(a), _capture(b)

    a.get_sequence("topics").push(["a1", "a2", "a3"])
    b.get_sequence("topics").push(["b1", "b2"])
    _sync(a, ops_a, b, ops_b)

    merged = a.get_sequence("topics").to_list()
    assert merged == b.get_sequence("topics").to_list()
    assert "".join(merged).find("a1a2a3") != -1
    assert "".join(merged).find("b1b2") != -1


def test_concurrent_delete_and_insert_converge():
    a, b = ReplicatedDocument("a"), ReplicatedDocument("b")
    ops_a, ops_b = _capture(a), _capture(b)

    a.get_sequence("topics").push(["ai", "rust", "go"])
    b.apply_update(list(ops_a), origin="remote")
    ops_a.clear()

    a.get_sequence("topics").delete(1)
    b.get_sequence("topics").insert(2, ["python"])
    _sync(a, ops_a, b, ops_b)

    assert a.get_sequence("topics").to_list() == ["ai", "python", "go"]
    assert b.get_sequence("topics").to_list() == ["ai", "python", "go"]


def test_apply_update_is_idempotent():
    a, b = ReplicatedDocument("a"), ReplicatedDocument("b")
    ops_a = _capture(a)

    a.get_sequence("topics").push(["ai"])
    a.get_map("config").set("enabled", True)

    first = b.apply_update(list(ops_a), origin="remote")
    second = b.apply_update(list(ops_a), origin="remote")

    assert len(first) == 2
    assert second == []
    assert b.get_sequence("topics").to_list() == ["ai"]


def test_out_of_order_ops_are_buffered():
    a, b = ReplicatedDocument("a"), ReplicatedDocument("b")
    ops_a = _capture(a)

    a.get_sequence("topics").push(["first"])
    a.get_sequence("topics").push(["second"])
    first_op, second_op = ops_a

    b.apply_update([second_op], origin="remote")
    assert b.pending_count == 1
    assert b.get_sequence("topics").to_list() == []

    b.apply_update([first_op], origin="remote")
    assert b.pending_count == 0
    assert b.get_sequence("topics").to_list() == ["first", "second"]


def test_pending_buffer_is_capped_oldest_first():
    doc = ReplicatedDocument("a", max_pending=3)
    dangling = [{"kind": "delete", "seq": "topics", "id": [n, "ghost"]} for n in range(1, 11)]

    for op in dangling:
        doc.apply_update([op], origin="remote")

    assert doc.pending_count == 3
    assert [op["id"][0] for op in doc._pending] == [8, 9, 10]
    assert get_counter("document.pending_dropped") == 7


def test_malformed_update_is_rejected_whole():
    doc = ReplicatedDocument("a")
    good = {"kind": "set", "map": "config", "key": "enabled", "value": True, "stamp": [1, "x"]}
    bad = {"kind": "set", "map": "config", "key": "email", "value": "a@b.com", "stamp": "nope"}

    with pytest.raises(InvalidUpdateError):
        doc.apply_update([good, bad])
    with pytest.raises(InvalidUpdateError):
        doc.apply_update({"kind": "set"})
    with pytest.raises(InvalidUpdateError):
        doc.apply_update([{"kind": "move"}])

    assert doc.get_map("config").to_dict() == {}


def test_observer_fires_once_per_transaction():
    doc = ReplicatedDocument("a")
    events = []
    doc.observe(events.append)

    with doc.transaction("server"):
        doc.get_map("config").set("email", "a@b.com")
        doc.get_map("config").set("enabled", True)
        doc.get_sequence("topics").push(["ai"])

    assert len(events) == 1
    event = events[0]
    assert event.origin == "server"
    assert event.touches("config", "email")
    assert event.touches("config", "enabled")
    assert not event.touches("config", "timezone")
    assert event.changed_sequences == {"topics"}
    assert doc.version == 1


def test_unchanged_set_does_not_notify():
    doc = ReplicatedDocument("a")
    doc.get_map("config").set("enabled", True)
    events = []
    doc.observe(events.append)

    doc.get_map("config").set("enabled", True)

    assert events == []


def test_observer_write_is_queued_not_nested():
    doc = ReplicatedDocument("a")
    config = doc.get_map("config")
    order = []

    def enforce(event):
        order.append(("enforce", event.origin))
        if config.get("confirmed") is not False:
            with doc.transaction("server"):
                config.set("confirmed", False)

    def audit(event):
        order.append(("audit", event.origin))

    doc.observe(enforce)
    doc.observe(audit)

    with doc.transaction("client"):
        config.set("confirmed", True)

    assert config.get("confirmed") is False
    assert order == [
        ("enforce", "client"),
        ("audit", "client"),
        ("enforce", "server"),
        ("audit", "server"),
    ]


def test_failing_observer_does_not_block_others():
    doc = ReplicatedDocument("a")
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    doc.observe(broken)
    doc.observe(seen.append)
    doc.get_map("config").set("enabled", True)

    assert len(seen) == 1


def test_unobserve_stops_notifications():
    doc = ReplicatedDocument("a")
    seen = []
    unobserve = doc.observe(seen.append)
    unobserve()

    doc.get_map("config").set("enabled", True)

    assert seen == []


def test_snapshot_round_trip_preserves_order_and_tombstones():
    a, b = ReplicatedDocument("a"), ReplicatedDocument("b")
    ops_a, ops_b = _capture(a), _capture(b)
    a.get_sequence("topics").push(["x", "y", "z"])
    b.get_sequence("topics").push(["w"])
    _sync(a, ops_a, b, ops_b)
    a.get_sequence("topics").delete(0)
    a.get_map("config").set("frequency", "weekly")

    restored = ReplicatedDocument.from_snapshot(a.encode_snapshot(), replica_id="a2")

    assert restored.get_sequence("topics").to_list() == a.get_sequence("topics").to_list()
    assert restored.get_map("config").to_dict() == {"frequency": "weekly"}
    assert restored.encode_snapshot()["sequences"] == a.encode_snapshot()["sequences"]


def test_restored_replica_keeps_merging():
    a = ReplicatedDocument("a")
    a.get_sequence("topics").push(["ai"])
    restored = ReplicatedDocument.from_snapshot(a.encode_snapshot(), replica_id="server")
    ops = _capture(a)

    a.get_sequence("topics").push(["rust"])
    restored.apply_update(list(ops))

    assert restored.get_sequence("topics").to_list() == ["ai", "rust"]


def test_load_snapshot_rejects_unknown_format():
    doc = ReplicatedDocument("a")
    with pytest.raises(InvalidUpdateError):
        doc.load_snapshot({"format": 99})
    with pytest.raises(InvalidUpdateError):
        doc.load_snapshot({"format": 1, "maps": {"config": {"email": "nope"}}})


@pytest.mark.parametrize("clock", [None, "12", -1, True])
def test_load_snapshot_rejects_bad_clock(clock):
    doc = ReplicatedDocument("a")
    doc.get_map("config").set("email", "a@b.com")

    with pytest.raises(InvalidUpdateError):
        doc.load_snapshot({"format": 1, "clock": clock, "maps": {}, "sequences": {}})

    assert doc.get_map("config").get("email") == "a@b.com"


def test_sequence_index_errors():
    doc = ReplicatedDocument("a")
    topics = doc.get_sequence("topics")
    topics.push(["ai"])

    with pytest.raises(IndexError):
        topics.insert(5, ["x"])
    with pytest.raises(IndexError):
        topics.delete(1)
