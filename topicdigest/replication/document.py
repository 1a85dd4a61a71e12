"""
Replicated document shared by the subscription actor and its connected clients.

The document holds named maps and named ordered sequences:

- Map entries are last-write-wins registers. Each write carries a Lamport
  stamp ``(clock, replica_id)``; the greater stamp wins on every replica.
- Sequences use RGA ordering. Each element has a unique id stamp and is
  inserted after an origin element; concurrent inserts after the same origin
  are ordered by descending id. Deletes leave tombstones.

Every mutation becomes an op dict (JSON-safe) so it can be shipped to other
replicas and merged with apply_update(). Ops are idempotent, and ops that
reference elements not yet seen are buffered until their dependency arrives.

Mutations are grouped into transactions. Observers fire once per transaction
that changed something, after the transaction closes. A transaction opened
from inside an observer is notified after the current round of observers
finishes.
"""

from __future__ import annotations

import copy
import uuid
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from topicdigest.observability.logging import get_logger
from topicdigest.observability.telemetry import counter

logger = get_logger(__name__)

Stamp = tuple[int, str]
Op = dict[str, Any]
Observer = Callable[["DocumentEvent"], None]

SNAPSHOT_FORMAT = 1
MAX_PENDING_OPS = 1000


class InvalidUpdateError(ValueError):
    """Raised when a remote op or snapshot is malformed."""


@dataclass
class _Element:
    id: Stamp
    value: Any
    deleted: bool = False


@dataclass
class DocumentEvent:
    """Changes made by one transaction."""

    origin: str | None
    ops: list[Op]
    changed_keys: dict[str, set[str]] = field(default_factory=dict)
    changed_sequences: set[str] = field(default_factory=set)

    def touches(self, map_name: str, key: str | None = None) -> bool:
        keys = self.changed_keys.get(map_name)
        if not keys:
            return False
        return key is None or key in keys


@dataclass
class _Transaction:
    origin: str | None
    ops: list[Op] = field(default_factory=list)


def _stamp(raw: Any) -> Stamp:
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        raise InvalidUpdateError(f"Invalid stamp: {raw!r}")
    clock, replica = raw
    if not isinstance(clock, int) or isinstance(clock, bool) or not isinstance(replica, str):
        raise InvalidUpdateError(f"Invalid stamp: {raw!r}")
    return (clock, replica)


class ReplicatedMap:
    """Map view bound to a document."""

    def __init__(self, doc: ReplicatedDocument, name: str):
        self._doc = doc
        self.name = name

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._doc._maps.get(self.name, {}).get(key)
        if entry is None or entry[0] is None:
            return default
        return copy.deepcopy(entry[0])

    def set(self, key: str, value: Any) -> None:
        self._doc._local_set(self.name, key, value)

    def delete(self, key: str) -> None:
        self._doc._local_set(self.name, key, None)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            key: copy.deepcopy(value)
            for key, (value, _) in self._doc._maps.get(self.name, {}).items()
            if value is not None
        }


class ReplicatedSequence:
    """Ordered sequence view bound to a document."""

    def __init__(self, doc: ReplicatedDocument, name: str):
        self._doc = doc
        self.name = name

    def _visible(self) -> list[_Element]:
        return [el for el in self._doc._seqs.get(self.name, []) if not el.deleted]

    def __len__(self) -> int:
        return len(self._visible())

    def __iter__(self) -> Iterator[Any]:
        return iter(self.to_list())

    def __getitem__(self, index: int) -> Any:
        return copy.deepcopy(self._visible()[index].value)

    def to_list(self) -> list[Any]:
        return [copy.deepcopy(el.value) for el in self._visible()]

    def insert(self, index: int, values: list[Any]) -> None:
        visible = self._visible()
        if index < 0 or index > len(visible):
            raise IndexError(f"insert index {index} out of range for length {len(visible)}")
        origin = visible[index - 1].id if index > 0 else None
        self._doc._local_insert(self.name, origin, values)

    def push(self, values: list[Any]) -> None:
        self.insert(len(self), values)

    def delete(self, index: int, length: int = 1) -> None:
        visible = self._visible()
        if index < 0 or length < 0 or index + length > len(visible):
            raise IndexError(
                f"delete range {index}:{index + length} out of range for length {len(visible)}"
            )
        self._doc._local_delete(self.name, [el.id for el in visible[index : index + length]])


class ReplicatedDocument:
    """
    Conflict-free replicated document with observer callbacks.

    Not thread-safe: the owning actor serializes access.
    """

    def __init__(self, replica_id: str | None = None, max_pending: int = MAX_PENDING_OPS):
        self.replica_id = replica_id or uuid.uuid4().hex
        self.max_pending = max_pending
        self.version = 0
        self._clock = 0
        self._maps: dict[str, dict[str, tuple[Any, Stamp]]] = {}
        self._seqs: dict[str, list[_Element]] = {}
        self._index: dict[str, dict[Stamp, _Element]] = {}
        self._pending: list[Op] = []
        self._observers: list[Observer] = []
        self._txn: _Transaction | None = None
        self._queued: deque[DocumentEvent] = deque()
        self._notifying = False

    # ------------------------------------------------------------------
    # Views and observers
    # ------------------------------------------------------------------

    def get_map(self, name: str) -> ReplicatedMap:
        return ReplicatedMap(self, name)

    def get_sequence(self, name: str) -> ReplicatedSequence:
        return ReplicatedSequence(self, name)

    def observe(self, callback: Observer) -> Callable[[], None]:
        """Register an observer; returns a function that unregisters it."""
        self._observers.append(callback)

        def unobserve() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unobserve

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self, origin: str | None = None) -> Iterator[None]:
        """Group mutations; nested calls join the outermost transaction."""
        if self._txn is not None:
            yield
            return

        self._txn = _Transaction(origin=origin)
        try:
            yield
        finally:
            txn, self._txn = self._txn, None
            if txn.ops:
                self._close(txn)

    def _close(self, txn: _Transaction) -> None:
        self.version += 1
        event = DocumentEvent(origin=txn.origin, ops=txn.ops)
        for op in txn.ops:
            if op["kind"] == "set":
                event.changed_keys.setdefault(op["map"], set()).add(op["key"])
            else:
                event.changed_sequences.add(op["seq"])
        self._queued.append(event)
        self._drain()

    def _drain(self) -> None:
        if self._notifying:
            return
        self._notifying = True
        try:
            while self._queued:
                event = self._queued.popleft()
                for observer in list(self._observers):
                    try:
                        observer(event)
                    except Exception:
                        counter("document.observer_errors")
                        logger.exception("Document observer failed")
        finally:
            self._notifying = False

    def _record(self, op: Op) -> None:
        if self._txn is None:
            with self.transaction():
                self._txn.ops.append(op)  # type: ignore[union-attr]
        else:
            self._txn.ops.append(op)

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    def _tick(self) -> Stamp:
        self._clock += 1
        return (self._clock, self.replica_id)

    def _local_set(self, map_name: str, key: str, value: Any) -> None:
        current = self._maps.get(map_name, {}).get(key)
        if current is not None and current[0] == value:
            return
        if current is None and value is None:
            return
        op: Op = {
            "kind": "set",
            "map": map_name,
            "key": key,
            "value": copy.deepcopy(value),
            "stamp": list(self._tick()),
        }
        self._integrate(op)
        self._record(op)

    def _local_insert(self, seq_name: str, origin: Stamp | None, values: list[Any]) -> None:
        with self.transaction():
            for value in values:
                elem_id = self._tick()
                op: Op = {
                    "kind": "insert",
                    "seq": seq_name,
                    "id": list(elem_id),
                    "origin": list(origin) if origin else None,
                    "value": copy.deepcopy(value),
                }
                self._integrate(op)
                self._record(op)
                origin = elem_id

    def _local_delete(self, seq_name: str, ids: list[Stamp]) -> None:
        with self.transaction():
            for elem_id in ids:
                op: Op = {"kind": "delete", "seq": seq_name, "id": list(elem_id)}
                self._integrate(op)
                self._record(op)

    # ------------------------------------------------------------------
    # Remote updates
    # ------------------------------------------------------------------

    def apply_update(self, ops: list[Op], origin: str | None = None) -> list[Op]:
        """
        Merge ops produced by another replica.

        Returns the ops that changed local state. Ops waiting on unseen
        elements stay buffered and are retried on every later update; at
        most max_pending are kept, oldest dropped first.

        Raises:
            InvalidUpdateError: If any op is malformed (nothing is applied)
        """
        if not isinstance(ops, list):
            raise InvalidUpdateError("ops must be a list")
        normalized = [self._normalize(op) for op in ops]

        applied: list[Op] = []
        with self.transaction(origin):
            queue = self._pending + normalized
            self._pending = []
            progress = True
            while queue and progress:
                progress = False
                waiting: list[Op] = []
                for op in queue:
                    result = self._integrate(op)
                    if result is None:
                        waiting.append(op)
                        continue
                    progress = True
                    if result:
                        applied.append(op)
                        self._record(op)
                queue = waiting
            overflow = len(queue) - self.max_pending
            if overflow > 0:
                # oldest first
                queue = queue[overflow:]
                counter("document.pending_dropped", overflow)
                logger.warning("Dropped %d buffered ops waiting on unseen elements", overflow)
            self._pending = queue

        if self._pending:
            counter("document.pending_ops", len(self._pending))
        return applied

    def _normalize(self, op: Any) -> Op:
        if not isinstance(op, dict):
            raise InvalidUpdateError(f"op must be an object: {op!r}")
        kind = op.get("kind")
        if kind == "set":
            if not isinstance(op.get("map"), str) or not isinstance(op.get("key"), str):
                raise InvalidUpdateError("set op requires map and key")
            return {
                "kind": "set",
                "map": op["map"],
                "key": op["key"],
                "value": op.get("value"),
                "stamp": list(_stamp(op.get("stamp"))),
            }
        if kind == "insert":
            if not isinstance(op.get("seq"), str):
                raise InvalidUpdateError("insert op requires seq")
            origin = op.get("origin")
            return {
                "kind": "insert",
                "seq": op["seq"],
                "id": list(_stamp(op.get("id"))),
                "origin": list(_stamp(origin)) if origin is not None else None,
                "value": op.get("value"),
            }
        if kind == "delete":
            if not isinstance(op.get("seq"), str):
                raise InvalidUpdateError("delete op requires seq")
            return {"kind": "delete", "seq": op["seq"], "id": list(_stamp(op.get("id")))}
        raise InvalidUpdateError(f"Unknown op kind: {kind!r}")

    def _integrate(self, op: Op) -> bool | None:
        """Apply one op. True = changed, False = no-op, None = dependency missing."""
        kind = op["kind"]

        if kind == "set":
            stamp = _stamp(op["stamp"])
            self._clock = max(self._clock, stamp[0])
            entries = self._maps.setdefault(op["map"], {})
            current = entries.get(op["key"])
            if current is not None and stamp <= current[1]:
                return False
            entries[op["key"]] = (copy.deepcopy(op["value"]), stamp)
            return True

        seq = self._seqs.setdefault(op["seq"], [])
        index = self._index.setdefault(op["seq"], {})
        elem_id = _stamp(op["id"])

        if kind == "insert":
            if elem_id in index:
                return False
            origin = _stamp(op["origin"]) if op["origin"] is not None else None
            if origin is not None and origin not in index:
                return None
            self._clock = max(self._clock, elem_id[0])
            pos = seq.index(index[origin]) + 1 if origin is not None else 0
            while pos < len(seq) and seq[pos].id > elem_id:
                pos += 1
            element = _Element(id=elem_id, value=copy.deepcopy(op["value"]))
            seq.insert(pos, element)
            index[elem_id] = element
            return True

        # delete
        target = index.get(elem_id)
        if target is None:
            return None
        if target.deleted:
            return False
        target.deleted = True
        target.value = None
        return True

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def encode_snapshot(self) -> dict[str, Any]:
        """Full JSON-safe state, including tombstones and stamps."""
        return {
            "format": SNAPSHOT_FORMAT,
            "clock": self._clock,
            "maps": {
                name: {
                    key: {"value": copy.deepcopy(value), "stamp": list(stamp)}
                    for key, (value, stamp) in entries.items()
                }
                for name, entries in self._maps.items()
            },
            "sequences": {
                name: [
                    {"id": list(el.id), "value": copy.deepcopy(el.value), "deleted": el.deleted}
                    for el in elements
                ]
                for name, elements in self._seqs.items()
            },
        }

    def load_snapshot(self, state: dict[str, Any]) -> None:
        """
        Replace local state with a snapshot. Observers are not notified.

        Raises:
            InvalidUpdateError: If the snapshot is malformed
        """
        if not isinstance(state, dict) or state.get("format") != SNAPSHOT_FORMAT:
            raise InvalidUpdateError("Unsupported snapshot format")

        maps: dict[str, dict[str, tuple[Any, Stamp]]] = {}
        seqs: dict[str, list[_Element]] = {}
        index: dict[str, dict[Stamp, _Element]] = {}
        try:
            clock = state.get("clock", 0)
            if not isinstance(clock, int) or isinstance(clock, bool) or clock < 0:
                raise InvalidUpdateError(f"Invalid snapshot clock: {clock!r}")
            for name, entries in (state.get("maps") or {}).items():
                maps[name] = {
                    key: (entry.get("value"), _stamp(entry.get("stamp")))
                    for key, entry in entries.items()
                }
            for name, elements in (state.get("sequences") or {}).items():
                seqs[name] = [
                    _Element(
                        id=_stamp(el.get("id")),
                        value=el.get("value"),
                        deleted=bool(el.get("deleted")),
                    )
                    for el in elements
                ]
                index[name] = {el.id: el for el in seqs[name]}
        except (AttributeError, TypeError) as e:
            raise InvalidUpdateError(f"Malformed snapshot: {e}") from e

        self._maps = maps
        self._seqs = seqs
        self._index = index
        self._clock = max(clock, self._clock)
        self._pending = []

    @classmethod
    def from_snapshot(cls, state: dict[str, Any], replica_id: str | None = None) -> ReplicatedDocument:
        doc = cls(replica_id=replica_id)
        doc.load_snapshot(state)
        return doc
