"""
Subscription domain models.

Digest records are written into the replicated history, so their field names
follow the client wire format (camelCase aliases such as ``funFact``).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class Frequency(str, Enum):
    """How often the scheduled digest is generated."""

    DAILY = "daily"
    EVERY_OTHER_DAY = "every_other_day"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MANUAL = "manual"  # No alarm; digests only on explicit trigger

    @property
    def interval_days(self) -> int | None:
        return _INTERVAL_DAYS.get(self)

    @property
    def is_periodic(self) -> bool:
        return self is not Frequency.MANUAL

    @classmethod
    def parse(cls, value: Any) -> Frequency:
        """Unknown or missing values read as DAILY."""
        try:
            return cls(value)
        except ValueError:
            return cls.DAILY


_INTERVAL_DAYS = {
    Frequency.DAILY: 1,
    Frequency.EVERY_OTHER_DAY: 2,
    Frequency.WEEKLY: 7,
    Frequency.BIWEEKLY: 14,
}


class DigestSection(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    content: str


class DigestSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    title: str


class Digest(BaseModel):
    """
    One generated digest. Immutable once appended to history.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    date: str = Field(..., description="ISO date the digest was generated (YYYY-MM-DD)")
    subject: str
    fun_fact: str | None = Field(default=None, alias="funFact")
    sections: tuple[DigestSection, ...] = ()
    sources: tuple[DigestSource, ...] = ()
    html: str = ""

    def to_document(self) -> dict[str, Any]:
        """JSON-safe dict in wire format for the replicated history."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> Digest:
        return cls.model_validate(data)


class SendResult(BaseModel):
    """Outcome of one email send attempt."""

    success: bool
    error: str | None = None

    @classmethod
    def ok(cls) -> SendResult:
        return cls(success=True)

    @classmethod
    def failed(cls, reason: str) -> SendResult:
        return cls(success=False, error=reason)


# ============================================================================
# Connection protocol messages
# ============================================================================


class TriggerResult(BaseModel):
    """Immediate acknowledgement of a trigger message."""

    type: Literal["trigger-result"] = "trigger-result"
    ok: bool
    error: str | None = None

    def to_message(self) -> str:
        return self.model_dump_json(exclude_none=True)


class TriggerError(BaseModel):
    """Sent later when background generation fails."""

    type: Literal["trigger-error"] = "trigger-error"
    error: str

    def to_message(self) -> str:
        return self.model_dump_json()


class SubscriptionLinks(BaseModel):
    """Public URLs for one subscription."""

    model_config = ConfigDict(frozen=True)

    base_url: str
    subscription_id: str

    @property
    def dashboard_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/d/{self.subscription_id}"

    @property
    def unsubscribe_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/unsubscribe/{self.subscription_id}"

    def confirm_url(self, token: str) -> str:
        return f"{self.base_url.rstrip('/')}/confirm/{self.subscription_id}/{token}"
