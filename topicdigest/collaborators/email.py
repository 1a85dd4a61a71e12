"""
Email delivery collaborator.

EmailSender is the narrow contract the actor depends on. ResendEmailSender
sends through the Resend SDK; sender identity (from address and name) is
passed in by the caller rather than read from module constants.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import resend
from resend.exceptions import ResendError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from topicdigest.config import EMAIL_MAX_ATTEMPTS, FROM_ADDRESS, FROM_NAME, RESEND_API_KEY, get_env
from topicdigest.observability.logging import get_logger, redact_email
from topicdigest.observability.telemetry import counter, time_block
from topicdigest.subscription.models import SendResult
from topicdigest.utils.html import escape_html

logger = get_logger(__name__)

CONFIRMATION_SUBJECT = "Confirm your topic digest"


class EmailSender(Protocol):
    async def send_digest(self, to: str, subject: str, html: str) -> SendResult: ...

    async def send_confirmation(
        self,
        to: str,
        confirm_url: str,
        dashboard_url: str,
        topics: list[str],
    ) -> SendResult: ...


def render_confirmation_html(confirm_url: str, dashboard_url: str, topics: list[str]) -> str:
    topics_html = ""
    if topics:
        joined = "</strong>, <strong>".join(escape_html(t) for t in topics)
        topics_html = (
            '<p style="color:#555;font-size:14px;line-height:1.6;margin:0 0 24px 0;">'
            f"Your topics: <strong>{joined}</strong></p>"
        )

    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><meta name="viewport" content="width=device-width,initial-scale=1"></head>
<body style="margin:0;padding:0;background:#f5f5f5;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;">
  <div style="max-width:600px;margin:0 auto;padding:20px;">
    <div style="background:#fff;border-radius:12px;padding:32px;text-align:center;">
      <h1 style="color:#1a1a2e;font-size:24px;margin:0 0 12px 0;">{CONFIRMATION_SUBJECT}</h1>
      <p style="color:#555;font-size:15px;line-height:1.6;margin:0 0 24px 0;">Click the button below to verify your email and start receiving digests.</p>
      {topics_html}
      <a href="{escape_html(confirm_url)}" style="display:inline-block;background:#e67e22;color:#fff;text-decoration:none;font-weight:700;font-size:16px;padding:14px 36px;border-radius:8px;">Confirm subscription</a>
      <p style="color:#999;font-size:12px;margin:24px 0 0 0;">If you didn't sign up, you can safely ignore this email.</p>
      <div style="padding-top:20px;margin-top:20px;border-top:1px solid #f0f0f0;">
        <a href="{escape_html(dashboard_url)}" style="color:#e67e22;font-size:12px;text-decoration:none;">Manage digest settings</a>
      </div>
    </div>
  </div>
</body>
</html>"""


def _is_transient(exc: BaseException) -> bool:
    """True for 429 and 5xx responses from Resend, and for network errors."""
    if isinstance(exc, ResendError):
        try:
            status = int(exc.code)
        except (TypeError, ValueError):
            return False
        return status == 429 or status >= 500
    return isinstance(exc, OSError)


@retry(
    stop=stop_after_attempt(EMAIL_MAX_ATTEMPTS),
    wait=wait_exponential(multiplier=0.5, max=5),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)
def deliver(api_key: str, params: dict[str, Any]) -> Any:
    """Send one email through Resend.

    Raises:
        ResendError: On a rejected request (429 and 5xx are retried first)
        OSError: On network failure (retried)
    """
    resend.api_key = api_key
    return resend.Emails.send(params)


class ResendEmailSender:
    """
    Sends email through Resend.

    The final outcome is returned as a SendResult, never raised.
    """

    def __init__(self, api_key: str | None, from_address: str, from_name: str):
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self.enabled = bool(api_key)

        if not self.enabled:
            logger.warning("RESEND_API_KEY not set; email delivery disabled")

    @classmethod
    def from_env(cls) -> ResendEmailSender:
        """Build from environment variables, read at call time."""
        return cls(
            api_key=get_env("RESEND_API_KEY", RESEND_API_KEY),
            from_address=get_env("TOPICDIGEST_FROM_ADDRESS", FROM_ADDRESS),
            from_name=get_env("TOPICDIGEST_FROM_NAME", FROM_NAME),
        )

    def _send(self, to: str, subject: str, html: str) -> SendResult:
        if not self.enabled:
            return SendResult.failed("Email delivery not configured")

        params = {
            "from": f"{self.from_name} <{self.from_address}>",
            "to": [to],
            "subject": subject,
            "html": html,
        }
        try:
            with time_block("email.send.latency"):
                deliver(self.api_key, params)
        except Exception as e:
            counter("email.send_failures")
            logger.error("Email to %s failed: %s", redact_email(to), e)
            return SendResult.failed(str(e))

        counter("email.sent")
        logger.info("Email sent to %s: %s", redact_email(to), subject)
        return SendResult.ok()

    async def send_digest(self, to: str, subject: str, html: str) -> SendResult:
        return await asyncio.to_thread(self._send, to, subject, html)

    async def send_confirmation(
        self,
        to: str,
        confirm_url: str,
        dashboard_url: str,
        topics: list[str],
    ) -> SendResult:
        html = render_confirmation_html(confirm_url, dashboard_url, topics)
        return await asyncio.to_thread(self._send, to, CONFIRMATION_SUBJECT, html)
