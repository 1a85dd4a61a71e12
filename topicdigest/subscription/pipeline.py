"""
Generate-and-deliver orchestration for one subscription.

Generation and delivery are decoupled: once the composer returns, the
digest is appended to history before any email is attempted, and a failed
send never undoes the append or fails the run.
"""

from __future__ import annotations

from topicdigest.collaborators.email import EmailSender
from topicdigest.collaborators.research import ResearchComposer
from topicdigest.config import DIGEST_CONTEXT_COUNT
from topicdigest.observability.logging import get_logger, redact_email
from topicdigest.observability.telemetry import counter, log_event, time_block
from topicdigest.subscription.config_store import ConfigStore
from topicdigest.subscription.confirmation import ConfirmationStateMachine
from topicdigest.subscription.errors import ConfigurationError, RateLimitError
from topicdigest.subscription.models import Digest, SubscriptionLinks

logger = get_logger(__name__)


class GenerationPipeline:
    def __init__(
        self,
        store: ConfigStore,
        confirmation: ConfirmationStateMachine,
        composer: ResearchComposer,
        email_sender: EmailSender,
        links: SubscriptionLinks,
        context_count: int = DIGEST_CONTEXT_COUNT,
    ):
        self.store = store
        self.confirmation = confirmation
        self.composer = composer
        self.email_sender = email_sender
        self.links = links
        self.context_count = context_count

    async def run_digest(self) -> Digest:
        """
        Compose a digest, append it to history, then deliver it.

        Raises:
            ConfigurationError: If no topics are configured
            CollaboratorError: If the composer fails (history untouched)

        Side Effects:
            - Appends to the replicated history (evicting the oldest beyond the cap)
            - Sends either a verification email or the digest email
        """
        topics = self.store.topics()
        if not topics:
            raise ConfigurationError("No topics configured")

        history = self.store.history()
        previous = history[-self.context_count :] if self.context_count > 0 else []
        previous_fun_facts = [d.fun_fact for d in history if d.fun_fact]

        with time_block("pipeline.compose.latency"):
            digest = await self.composer.compose(
                topics, previous, previous_fun_facts, self.links.dashboard_url
            )

        evicted = self.store.push_digest(digest)
        counter("pipeline.digests_generated")
        log_event(
            "pipeline.digest_appended",
            subscription=self.links.subscription_id,
            subject=digest.subject,
            history=self.store.history_length(),
            evicted=evicted,
        )

        await self._deliver(digest)
        return digest

    async def _deliver(self, digest: Digest) -> None:
        email = self.store.email
        if not email:
            return

        if not self.confirmation.confirmed:
            try:
                await self.confirmation.issue_verification()
            except RateLimitError as e:
                logger.info("Verification not re-sent for %s: %s", self.links.subscription_id, e)
            return

        result = await self.email_sender.send_digest(email, digest.subject, digest.html)
        if result.success:
            counter("pipeline.digests_delivered")
            log_event(
                "pipeline.digest_sent",
                subscription=self.links.subscription_id,
                email=redact_email(email),
            )
        else:
            counter("pipeline.delivery_failures")
            logger.error(
                "Digest delivery to %s failed: %s", redact_email(email), result.error
            )
