"""
Email ownership confirmation for a subscription.

The authoritative state (confirmed flag, confirmation time, token) lives in
durable storage that clients never see. The replicated ``confirmed`` and
``confirmedAt`` fields are only a projection and are rewritten whenever a
client changes them.

States:
    UNCONFIRMED   -> TOKEN_ISSUED  (verification email sent)
    TOKEN_ISSUED  -> CONFIRMED     (token redeemed)
    any           -> UNCONFIRMED   (email changed; token deleted)
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from datetime import datetime
from enum import Enum

from topicdigest.collaborators.email import EmailSender
from topicdigest.config import VERIFICATION_MIN_INTERVAL_SECONDS
from topicdigest.observability.logging import get_logger, redact_email
from topicdigest.observability.telemetry import counter, log_event
from topicdigest.storage.durable import DurableStorage, to_epoch_ms
from topicdigest.subscription.config_store import ConfigStore
from topicdigest.subscription.errors import ConfigurationError, OwnershipError, RateLimitError
from topicdigest.subscription.models import SendResult, SubscriptionLinks
from topicdigest.subscription.scheduler import utc_now

logger = get_logger(__name__)

TOKEN_KEY = "confirmation_token"
CONFIRMED_KEY = "confirmed"
CONFIRMED_AT_KEY = "confirmed_at"


class ConfirmationState(str, Enum):
    UNCONFIRMED = "unconfirmed"
    TOKEN_ISSUED = "token_issued"
    CONFIRMED = "confirmed"


class ConfirmationStateMachine:
    def __init__(
        self,
        store: ConfigStore,
        storage: DurableStorage,
        email_sender: EmailSender,
        links: SubscriptionLinks,
        clock: Callable[[], datetime] = utc_now,
        min_interval_seconds: float = VERIFICATION_MIN_INTERVAL_SECONDS,
    ):
        self.store = store
        self.storage = storage
        self.email_sender = email_sender
        self.links = links
        self.clock = clock
        self.min_interval_seconds = min_interval_seconds

        self._confirmed = False
        self._confirmed_at: datetime | None = None
        self._last_email = ""
        self._last_verification_at: datetime | None = None

    def load(self, is_new_subscription: bool) -> None:
        """
        Read the authoritative record, creating it on first boot.

        Subscriptions that already had a document but no confirmation record
        predate confirmation and are grandfathered in as confirmed. New
        subscriptions start unconfirmed.
        """
        if self.storage.has(CONFIRMED_KEY):
            self._confirmed = bool(self.storage.get(CONFIRMED_KEY))
            raw_at = self.storage.get(CONFIRMED_AT_KEY)
            self._confirmed_at = datetime.fromisoformat(raw_at) if raw_at else None
        else:
            grandfathered = not is_new_subscription
            self._persist(grandfathered, self.clock() if grandfathered else None)
            if grandfathered:
                log_event("confirmation.grandfathered", subscription=self.links.subscription_id)

        self._last_email = self.store.email

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def confirmed(self) -> bool:
        return self._confirmed

    @property
    def confirmed_at(self) -> datetime | None:
        return self._confirmed_at

    @property
    def state(self) -> ConfirmationState:
        if self._confirmed:
            return ConfirmationState.CONFIRMED
        if self.storage.get(TOKEN_KEY):
            return ConfirmationState.TOKEN_ISSUED
        return ConfirmationState.UNCONFIRMED

    def _persist(self, confirmed: bool, confirmed_at: datetime | None) -> None:
        self._confirmed = confirmed
        self._confirmed_at = confirmed_at
        self.storage.put(CONFIRMED_KEY, confirmed)
        if confirmed_at is not None:
            self.storage.put(CONFIRMED_AT_KEY, confirmed_at.isoformat())
        else:
            self.storage.delete(CONFIRMED_AT_KEY)

    # ------------------------------------------------------------------
    # Enforcement
    # ------------------------------------------------------------------

    def enforce_mirror(self) -> bool:
        """
        Overwrite the replicated projection if it differs from the
        authoritative record. Returns True if a correction was written.
        """
        expected_at = to_epoch_ms(self._confirmed_at) if self._confirmed_at else None
        if (
            self.store.mirrored_confirmed is self._confirmed
            and self.store.mirrored_confirmed_at == expected_at
        ):
            return False

        self.store.set_mirrored_confirmation(self._confirmed, self._confirmed_at)
        counter("confirmation.mirror_corrections")
        return True

    def detect_email_change(self) -> bool:
        """
        Compare the current email with the last one seen. On change, revoke
        confirmation and delete the token. Returns True if the email changed.
        """
        email = self.store.email
        if email == self._last_email:
            return False

        self._last_email = email
        self.revoke()
        log_event(
            "confirmation.email_changed",
            subscription=self.links.subscription_id,
            email=redact_email(email),
        )
        return True

    def revoke(self) -> None:
        """
        Side Effects:
            - Marks the subscription unconfirmed in durable storage
            - Deletes the confirmation token
            - Rewrites the replicated projection
        """
        self._persist(False, None)
        self.storage.delete(TOKEN_KEY)
        self.enforce_mirror()

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _ensure_token(self) -> str:
        token = self.storage.get(TOKEN_KEY)
        if not token:
            token = secrets.token_urlsafe(32)
            self.storage.put(TOKEN_KEY, token)
        return token

    async def issue_verification(self) -> SendResult:
        """
        Send a confirmation email containing the tokenized confirm link.

        Raises:
            ConfigurationError: If no email is configured
            RateLimitError: If called within min_interval_seconds of the last attempt

        A failed send is logged and returned; state does not change.
        """
        email = self.store.email
        if not email:
            raise ConfigurationError("No email configured")

        now = self.clock()
        if self._last_verification_at is not None:
            elapsed = (now - self._last_verification_at).total_seconds()
            if elapsed < self.min_interval_seconds:
                counter("confirmation.rate_limited")
                retry_after = self.min_interval_seconds - elapsed
                raise RateLimitError(
                    f"Confirmation email already sent. Try again in {int(retry_after) + 1}s.",
                    retry_after=retry_after,
                )
        self._last_verification_at = now

        token = self._ensure_token()
        result = await self.email_sender.send_confirmation(
            email,
            self.links.confirm_url(token),
            self.links.dashboard_url,
            self.store.topics(),
        )

        if result.success:
            log_event(
                "confirmation.sent",
                subscription=self.links.subscription_id,
                email=redact_email(email),
            )
        else:
            counter("confirmation.send_failures")
            logger.error(
                "Confirmation email to %s failed: %s", redact_email(email), result.error
            )
        return result

    def redeem(self, token: str) -> bool:
        """
        Confirm ownership with a presented token.

        Returns True on the transition to confirmed, False if already
        confirmed (idempotent success). The token is kept.

        Raises:
            OwnershipError: If no token is stored or it does not match
        """
        stored = self.storage.get(TOKEN_KEY)
        if (
            not isinstance(stored, str)
            or not stored
            or not isinstance(token, str)
            or not token
            or not secrets.compare_digest(stored.encode(), token.encode())
        ):
            counter("confirmation.invalid_token")
            raise OwnershipError("Invalid or expired confirmation link")

        if self._confirmed:
            return False

        self._persist(True, self.clock())
        self.enforce_mirror()
        log_event("confirmation.confirmed", subscription=self.links.subscription_id)
        return True
