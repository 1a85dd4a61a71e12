"""
Subscription actor.

One SubscriptionActor owns one subscription: its replicated document, its
durable records and its alarm. All of its work runs on the event loop, so
state mutations are serialized without locks. Client connections share the
document; every change (local or merged) runs the same reconciliation:

    enforce confirmation mirror -> trim history -> detect email change
    -> sync alarm -> persist snapshot -> broadcast ops

The history sequence is server-owned: client ops that touch it are dropped
before merging. Snapshot writes are coalesced and run in a worker thread.

Generation runs as background tasks owned by the actor. They run to
completion or failure; wait_for_background() lets shutdown and tests drain
them.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Coroutine
from datetime import datetime
from typing import Any, Protocol

from topicdigest.collaborators.email import EmailSender
from topicdigest.collaborators.research import ResearchComposer
from topicdigest.config import PUBLIC_URL, SEND_HOUR_LOCAL, TRIGGER_MIN_INTERVAL_SECONDS
from topicdigest.observability.logging import get_logger
from topicdigest.observability.telemetry import counter, log_event
from topicdigest.replication.document import DocumentEvent, InvalidUpdateError, ReplicatedDocument
from topicdigest.storage.durable import DurableStorage
from topicdigest.subscription.config_store import DIGESTS_SEQ, SERVER_ORIGIN, ConfigStore
from topicdigest.subscription.confirmation import ConfirmationStateMachine
from topicdigest.subscription.errors import (
    ConfigurationError,
    GenerationInProgressError,
    RateLimitError,
    SubscriptionError,
)
from topicdigest.subscription.models import Frequency, SubscriptionLinks, TriggerError, TriggerResult
from topicdigest.subscription.pipeline import GenerationPipeline
from topicdigest.subscription.scheduler import AlarmScheduler, utc_now

logger = get_logger(__name__)

DOC_KEY = "doc"
ROOM_ID_KEY = "room_id"


class Connection(Protocol):
    """A live client connection (websocket or test double)."""

    id: str

    async def send(self, message: str) -> None: ...


class SubscriptionActor:
    def __init__(
        self,
        subscription_id: str,
        email_sender: EmailSender,
        composer: ResearchComposer,
        base_url: str = PUBLIC_URL,
        clock: Callable[[], datetime] = utc_now,
        storage: DurableStorage | None = None,
        trigger_min_interval_seconds: float = TRIGGER_MIN_INTERVAL_SECONDS,
        send_hour: int = SEND_HOUR_LOCAL,
    ):
        self.subscription_id = subscription_id
        self.clock = clock
        self.trigger_min_interval_seconds = trigger_min_interval_seconds
        self.storage = storage or DurableStorage(subscription_id)
        self.links = SubscriptionLinks(base_url=base_url, subscription_id=subscription_id)

        self.doc = ReplicatedDocument(replica_id=SERVER_ORIGIN)
        self.store = ConfigStore(self.doc)
        self.confirmation = ConfirmationStateMachine(
            self.store, self.storage, email_sender, self.links, clock=clock
        )
        self.scheduler = AlarmScheduler(self.store, self.storage, clock=clock, send_hour=send_hour)
        self.pipeline = GenerationPipeline(
            self.store, self.confirmation, composer, email_sender, self.links
        )

        self._connections: dict[str, Connection] = {}
        self._tasks: set[asyncio.Task] = set()
        self._generating = False
        self._last_generation_at: datetime | None = None
        self._dirty = False
        self._flush_task: asyncio.Task | None = None
        self.last_active_at = clock()
        self._booted = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def boot(self) -> None:
        """
        Restore persisted state and start observing the document.

        A subscription with no stored snapshot is new; one with a snapshot
        but no confirmation record is grandfathered as confirmed.
        """
        if self._booted:
            return

        snapshot = self.storage.get(DOC_KEY)
        is_new = snapshot is None
        if snapshot is not None:
            try:
                self.doc.load_snapshot(snapshot)
            except InvalidUpdateError:
                counter("actor.snapshot_errors")
                logger.exception("Stored snapshot for %s is unreadable", self.subscription_id)

        self.confirmation.load(is_new_subscription=is_new)
        self.scheduler.prime()
        self.store.observe(self._on_change)
        self._booted = True

        # Reconcile anything that drifted while the actor was not running
        self.confirmation.enforce_mirror()
        self.store.trim_history()
        self.scheduler.sync()
        if is_new:
            self._persist()

        log_event("actor.booted", subscription=self.subscription_id, new=is_new)

    @property
    def is_generating(self) -> bool:
        return self._generating

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def is_idle(self) -> bool:
        """No open connections, no background work."""
        return not self._connections and not self._tasks and not self._generating

    def touch(self) -> None:
        self.last_active_at = self.clock()

    # ------------------------------------------------------------------
    # Change handling
    # ------------------------------------------------------------------

    def _on_change(self, event: DocumentEvent) -> None:
        self.confirmation.enforce_mirror()
        if self.store.trim_history():
            counter("actor.history_trimmed")
        email_changed = self.confirmation.detect_email_change()
        self.scheduler.sync()
        self._persist()
        self._broadcast(event)
        if email_changed and self.store.email and not self.confirmation.confirmed:
            self._spawn(self._auto_verify(), "auto-verify")

    def _persist(self) -> None:
        """
        Save the document snapshot.

        On the event loop, bursts of changes collapse into one write that
        runs in a worker thread. Without a running loop (boot from sync
        code) the write happens inline.
        """
        self._dirty = True
        if self._flush_task is not None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._dirty = False
            self.storage.put(DOC_KEY, self.doc.encode_snapshot())
            return
        self._flush_task = self._spawn(self._flush(), "persist")

    async def _flush(self) -> None:
        try:
            while self._dirty:
                self._dirty = False
                snapshot = self.doc.encode_snapshot()
                await asyncio.to_thread(self.storage.put, DOC_KEY, snapshot)
        except Exception:
            counter("actor.persist_failures")
            logger.exception("Persisting snapshot for %s failed", self.subscription_id)
        finally:
            self._flush_task = None

    def _broadcast(self, event: DocumentEvent) -> None:
        """Forward ops to every connection except the one they came from."""
        targets = [c for cid, c in self._connections.items() if cid != event.origin]
        if not targets:
            return
        message = json.dumps({"type": "update", "ops": event.ops})
        self._spawn(self._send_all(targets, message), "broadcast")

    async def _send_all(self, targets: list[Connection], message: str) -> None:
        for connection in targets:
            await self._safe_send(connection, message)

    async def _safe_send(self, connection: Connection, message: str) -> None:
        try:
            await connection.send(message)
        except Exception as e:
            counter("actor.send_failures")
            logger.warning("Dropping connection %s after send failure: %s", connection.id, e)
            self._connections.pop(connection.id, None)

    async def _auto_verify(self) -> None:
        try:
            await self.confirmation.issue_verification()
        except SubscriptionError as e:
            logger.info("Automatic verification skipped for %s: %s", self.subscription_id, e)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def connect(self, connection: Connection) -> None:
        self._connections[connection.id] = connection
        counter("actor.connections")
        await connection.send(json.dumps({"type": "sync", "state": self.doc.encode_snapshot()}))

    def disconnect(self, connection: Connection) -> None:
        self._connections.pop(connection.id, None)
        self.touch()

    async def handle_message(self, connection: Connection, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            counter("actor.invalid_messages")
            logger.warning("Ignoring non-JSON message from %s", connection.id)
            return
        if not isinstance(message, dict):
            counter("actor.invalid_messages")
            logger.warning("Ignoring non-object message from %s", connection.id)
            return

        kind = message.get("type")
        if kind == "update":
            ops = message.get("ops")
            if isinstance(ops, list):
                ops = self._drop_history_ops(connection, ops)
            try:
                self.doc.apply_update(ops, origin=connection.id)
            except InvalidUpdateError as e:
                counter("actor.invalid_updates")
                logger.warning("Rejected update from %s: %s", connection.id, e)
        elif kind == "trigger":
            result = await self.handle_trigger(connection)
            await self._safe_send(connection, result.to_message())
        else:
            counter("actor.invalid_messages")
            logger.warning("Unknown message type %r from %s", kind, connection.id)

    def _drop_history_ops(self, connection: Connection, ops: list) -> list:
        """History is written only by generation; client ops on it are discarded."""
        kept = [op for op in ops if not (isinstance(op, dict) and op.get("seq") == DIGESTS_SEQ)]
        dropped = len(ops) - len(kept)
        if dropped:
            counter("actor.rejected_history_ops", dropped)
            logger.warning("Discarded %d history ops from %s", dropped, connection.id)
        return kept

    # ------------------------------------------------------------------
    # Triggers and alarms
    # ------------------------------------------------------------------

    async def handle_trigger(self, connection: Connection | None = None) -> TriggerResult:
        """
        Manual trigger.

        Unconfirmed subscriptions get a verification email instead; the
        result reflects that send attempt. Confirmed subscriptions start a
        background generation and are acknowledged immediately.
        """
        if not self.confirmation.confirmed:
            try:
                result = await self.confirmation.issue_verification()
            except SubscriptionError as e:
                return TriggerResult(ok=False, error=str(e))
            return TriggerResult(ok=result.success, error=result.error)

        try:
            self._begin_generation()
        except SubscriptionError as e:
            log_event("actor.trigger_rejected", subscription=self.subscription_id, reason=str(e))
            return TriggerResult(ok=False, error=str(e))

        self._spawn(self._generate(connection), "generate")
        return TriggerResult(ok=True)

    def _begin_generation(self) -> None:
        """
        Raises:
            ConfigurationError: If no topics are configured
            RateLimitError: If the last generation started under the minimum interval ago
            GenerationInProgressError: If a generation is still running
        """
        if not self.store.topics():
            raise ConfigurationError("No topics configured")

        now = self.clock()
        if self._last_generation_at is not None:
            elapsed = (now - self._last_generation_at).total_seconds()
            if elapsed < self.trigger_min_interval_seconds:
                counter("actor.trigger_rate_limited")
                retry_after = self.trigger_min_interval_seconds - elapsed
                raise RateLimitError(
                    f"Please wait {int(retry_after) + 1}s before generating again.",
                    retry_after=retry_after,
                )

        if self._generating:
            raise GenerationInProgressError("A digest is already being generated")

        self._mark_generation_started(now)

    def _mark_generation_started(self, now: datetime) -> None:
        self._generating = True
        self._last_generation_at = now

    async def on_alarm(self) -> None:
        """
        Alarm fired. The next alarm is armed before anything else so a
        failing generation cannot stop the cadence.
        """
        self.scheduler.rearm_after_fire()

        if not self.confirmation.confirmed:
            log_event("actor.alarm_skipped", subscription=self.subscription_id, reason="unconfirmed")
            return
        if self._generating:
            log_event("actor.alarm_skipped", subscription=self.subscription_id, reason="in_progress")
            return

        self._mark_generation_started(self.clock())
        self._spawn(self._generate(), "alarm-generate")

    async def _generate(self, connection: Connection | None = None) -> None:
        try:
            await self.pipeline.run_digest()
            log_event("actor.generation_succeeded", subscription=self.subscription_id)
        except SubscriptionError as e:
            counter("actor.generation_failures")
            logger.error("Digest generation failed for %s: %s", self.subscription_id, e)
            await self._report_failure(connection, str(e))
        except Exception as e:
            counter("actor.generation_failures")
            logger.exception("Digest generation crashed for %s", self.subscription_id)
            await self._report_failure(connection, f"Generation failed: {e}")
        finally:
            self._generating = False

    async def _report_failure(self, connection: Connection | None, error: str) -> None:
        if connection is not None and connection.id in self._connections:
            await self._safe_send(connection, TriggerError(error=error).to_message())

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{name}:{self.subscription_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_for_background(self) -> None:
        """Wait until no background task is left, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # HTTP-driven operations
    # ------------------------------------------------------------------

    def handle_confirm(self, token: str) -> bool:
        """
        Redeem a confirmation token.

        Raises:
            OwnershipError: If the token is absent or does not match
        """
        return self.confirmation.redeem(token)

    def handle_unsubscribe(self) -> None:
        """Stop scheduled digests by switching to manual frequency."""
        self.store.set_frequency(Frequency.MANUAL)
        log_event("actor.unsubscribed", subscription=self.subscription_id)

    def record_identity(self) -> None:
        """Persist the subscription id so an alarm-only wake can resolve it."""
        if self.storage.get(ROOM_ID_KEY) != self.subscription_id:
            self.storage.put(ROOM_ID_KEY, self.subscription_id)

    def status(self) -> dict[str, Any]:
        data = self.store.to_public_dict()
        data["id"] = self.subscription_id
        data["confirmed"] = self.confirmation.confirmed
        return data
