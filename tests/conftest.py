"""
Pytest configuration for Topic Digest tests

Every test gets its own SQLite database (via TOPICDIGEST_DB_PATH) and clean
in-memory metrics. Collaborators are replaced by in-process fakes.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta

import pytest

from topicdigest.infrastructure.database import init_database, reset_pool
from topicdigest.observability.telemetry import reset_metrics
from topicdigest.subscription.actor import SubscriptionActor
from topicdigest.subscription.models import Digest, DigestSection, DigestSource, SendResult

BASE_URL = "https://digest.test"
SUBSCRIPTION_ID = "3f1c2a9e-8b7d-4c6e-9a51-2d0f7e4b6c18"


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    """Fresh database per test."""
    db_path = tmp_path / "topicdigest.db"
    monkeypatch.setenv("TOPICDIGEST_DB_PATH", str(db_path))
    reset_pool()
    init_database()
    yield db_path
    reset_pool()


@pytest.fixture(autouse=True)
def clean_metrics():
    reset_metrics()
    yield


class ManualClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeEmailSender:
    def __init__(self):
        self.digests: list[dict] = []
        self.confirmations: list[dict] = []
        self.fail_digest = False
        self.fail_confirmation = False

    async def send_digest(self, to: str, subject: str, html: str) -> SendResult:
        self.digests.append({"to": to, "subject": subject, "html": html})
        if self.fail_digest:
            return SendResult.failed("provider unavailable")
        return SendResult.ok()

    async def send_confirmation(
        self, to: str, confirm_url: str, dashboard_url: str, topics: list[str]
    ) -> SendResult:
        self.confirmations.append(
            {"to": to, "confirm_url": confirm_url, "dashboard_url": dashboard_url, "topics": topics}
        )
        if self.fail_confirmation:
            return SendResult.failed("provider unavailable")
        return SendResult.ok()

    @property
    def last_token(self) -> str:
        return self.confirmations[-1]["confirm_url"].rsplit("/", 1)[1]


class FakeComposer:
    """Returns numbered digests; can be made to fail or to block until released."""

    def __init__(self):
        self.calls: list[dict] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def compose(self, topics, previous, previous_fun_facts, dashboard_url) -> Digest:
        self.calls.append(
            {
                "topics": list(topics),
                "previous": list(previous),
                "previous_fun_facts": list(previous_fun_facts),
                "dashboard_url": dashboard_url,
            }
        )
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        n = len(self.calls)
        return Digest(
            date="2026-01-15",
            subject=f"Digest {n}",
            fun_fact=f"Fact {n}",
            sections=(DigestSection(title="Today's Updates", content=f"- item {n}"),),
            sources=(DigestSource(url="https://example.com/a", title="example"),),
            html=f"<p>digest {n}</p>",
        )


class FakeConnection:
    def __init__(self, connection_id: str = "client-1"):
        self.id = connection_id
        self.sent: list[dict] = []

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    def of_type(self, message_type: str) -> list[dict]:
        return [m for m in self.sent if m.get("type") == message_type]


@pytest.fixture
def clock():
    return ManualClock(datetime(2026, 1, 15, 12, 0, tzinfo=UTC))


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def composer():
    return FakeComposer()


@pytest.fixture
def make_connection():
    return FakeConnection


@pytest.fixture
def make_actor(email_sender, composer, clock):
    """Factory for booted actors sharing the test's fakes and clock."""

    def _make(subscription_id: str = SUBSCRIPTION_ID, **kwargs) -> SubscriptionActor:
        actor = SubscriptionActor(
            subscription_id,
            email_sender,
            composer,
            base_url=BASE_URL,
            clock=clock,
            **kwargs,
        )
        actor.boot()
        return actor

    return _make


@pytest.fixture
def subscription_id():
    return SUBSCRIPTION_ID
