"""
Research-and-compose collaborator.

ResearchComposer is the contract the generation pipeline depends on: given
topics, recent digests, previously used fun facts and the dashboard URL, it
returns a finished Digest (including rendered HTML) or raises
CollaboratorError.

GeminiDigestComposer asks Gemini for a digest in a fixed plain-text layout:

    subject: <line>

    ## Section title
    markdown body...

and a separate short fun fact that avoids the ones already used.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

from topicdigest.llm.retry import call_llm
from topicdigest.observability.logging import get_logger
from topicdigest.observability.telemetry import counter, time_block
from topicdigest.subscription.errors import CollaboratorError
from topicdigest.subscription.models import Digest, DigestSection, DigestSource
from topicdigest.utils.html import escape_html, extract_links, render_markdown

logger = get_logger(__name__)

DEFAULT_SUBJECT = "Daily Digest"
PREVIOUS_SECTION_CHARS = 200

_SUBJECT_RE = re.compile(r"^subject:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_HEADING_RE = re.compile(r"^##\s+(.+)$", re.MULTILINE)
_RULE_RE = re.compile(r"^-{3,}\s*$", re.MULTILINE)


class ResearchComposer(Protocol):
    async def compose(
        self,
        topics: list[str],
        previous: list[Digest],
        previous_fun_facts: list[str],
        dashboard_url: str,
    ) -> Digest: ...


def build_digest_instruction(topics: list[str], previous: list[Digest], today: str) -> str:
    previous_context = ""
    if previous:
        blocks = []
        for digest in previous:
            lines = "\n".join(
                f"{s.title}: {s.content[:PREVIOUS_SECTION_CHARS]}" for s in digest.sections
            )
            blocks.append(f"--- {digest.date} ---\n{lines}")
        previous_context = (
            "\n\nPrevious digests (avoid repeating, track developing stories):\n"
            + "\n\n".join(blocks)
        )

    return f"""You are a concise news digest curator. Today is {today}. Topics: {", ".join(topics)}.

Write a digest in this exact format:

subject: Brief catchy subject line

## Today's Updates
What happened in the last 24 hours (bullet points)

## This Week
Notable developments from the past 7 days (bullet points)

## Big Picture
Major trends across the topics (1-2 short paragraphs)

Rules:
- The first line MUST be "subject: ..." followed by a blank line, then the sections.
- Be concise. Short, punchy bullet points. No filler.
- If there's no significant news for a topic or section, say so. Don't fabricate.
- Cite sources inline as markdown links: [site](https://...).
- Use **bold** for emphasis, never italics.{previous_context}"""


def build_fun_fact_instruction(topics: list[str], previous_fun_facts: list[str]) -> str:
    previous_context = ""
    if previous_fun_facts:
        listed = "\n".join(f"{i}. {fact}" for i, fact in enumerate(previous_fun_facts, 1))
        previous_context = f"\n\nPrevious fun facts (DO NOT repeat any of these):\n{listed}"

    return f"""You are a fun fact researcher. The reader is interested in: {", ".join(topics)}.

Pick ONE of these topics and give an obscure, surprising fact related to it. Avoid anything
well known: prefer odd historical connections, counterintuitive statistics, strange origins.{previous_context}

Respond with ONLY the fun fact: one or two sentences, no preamble, no quotation marks."""


def parse_digest_text(text: str) -> tuple[str, list[DigestSection]]:
    """Split composer output into (subject, sections)."""
    match = _SUBJECT_RE.search(text)
    subject = match.group(1).strip() if match else DEFAULT_SUBJECT

    headings = list(_HEADING_RE.finditer(text))
    sections = []
    for i, heading in enumerate(headings):
        end = headings[i + 1].start() if i + 1 < len(headings) else len(text)
        content = _RULE_RE.sub("", text[heading.end() : end]).strip()
        sections.append(DigestSection(title=heading.group(1).strip(), content=content))
    return subject, sections


def render_digest_html(
    subject: str,
    fun_fact: str,
    sections: list[DigestSection],
    sources: list[DigestSource],
    date: str,
    dashboard_url: str,
) -> str:
    unsubscribe_url = dashboard_url.replace("/d/", "/unsubscribe/")
    h2 = "color:#e67e22;font-size:20px;margin:0 0 12px 0;border-bottom:2px solid #f0f0f0;padding-bottom:8px;"

    fun_fact_html = ""
    if fun_fact:
        fun_fact_html = f"""
    <div style="margin-bottom:24px;padding:16px 20px;background:#fef9f0;border-left:4px solid #e67e22;">
      <p style="color:#b45309;font-size:12px;font-weight:700;text-transform:uppercase;margin:0 0 6px 0;">Did you know?</p>
      <p style="color:#92400e;font-size:14px;line-height:1.6;margin:0;">{escape_html(fun_fact)}</p>
    </div>"""

    section_html = "".join(
        f"""
    <div style="margin-bottom:28px;">
      <h2 style="{h2}">{escape_html(s.title)}</h2>
      <div style="color:#333;font-size:15px;line-height:1.7;">{render_markdown(s.content)}</div>
    </div>"""
        for s in sections
    )

    sources_html = ""
    if sources:
        items = "\n        ".join(
            f'<li><a href="{escape_html(s.url)}" style="color:#e67e22;text-decoration:none;">'
            f"{escape_html(s.title)}</a></li>"
            for s in sources
        )
        sources_html = f"""
    <div style="margin-bottom:28px;">
      <h2 style="{h2}">Sources</h2>
      <ul style="color:#555;font-size:13px;line-height:1.8;padding-left:20px;margin:0;">
        {items}
      </ul>
    </div>"""

    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><meta name="viewport" content="width=device-width,initial-scale=1"></head>
<body style="margin:0;padding:0;background:#f5f5f5;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;">
  <div style="max-width:600px;margin:0 auto;padding:20px;">
    <div style="background:#fff;border-radius:12px;padding:32px;">
      <div style="text-align:center;margin-bottom:24px;">
        <h1 style="color:#1a1a2e;font-size:24px;margin:0 0 4px 0;">{escape_html(subject)}</h1>
        <p style="color:#888;font-size:13px;margin:0;">{escape_html(date)} &middot; Topic Digest</p>
      </div>
      {fun_fact_html}
      {section_html}
      {sources_html}
      <div style="text-align:center;padding-top:20px;border-top:1px solid #f0f0f0;">
        <p style="color:#aaa;font-size:12px;margin:0;">
          <a href="{escape_html(dashboard_url)}" style="color:#e67e22;text-decoration:none;">Manage digest settings</a>
          &nbsp;&middot;&nbsp;
          <a href="{escape_html(unsubscribe_url)}" style="color:#999;text-decoration:none;">Unsubscribe</a>
        </p>
      </div>
    </div>
  </div>
</body>
</html>"""


class GeminiDigestComposer:
    """Composes digests with Gemini through call_llm (blocking, run in a thread)."""

    def __init__(
        self,
        llm: Callable[..., str] = call_llm,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.llm = llm
        self.clock = clock

    async def compose(
        self,
        topics: list[str],
        previous: list[Digest],
        previous_fun_facts: list[str],
        dashboard_url: str,
    ) -> Digest:
        today = self.clock().date().isoformat()

        try:
            with time_block("research.compose.latency"):
                text = await asyncio.to_thread(
                    self.llm,
                    "Research and generate today's digest.",
                    counter_prefix="research",
                    system_instruction=build_digest_instruction(topics, previous, today),
                )
        except Exception as e:
            counter("research.failures")
            raise CollaboratorError(f"Digest generation failed: {e}") from e

        subject, sections = parse_digest_text(text or "")
        if not sections:
            counter("research.failures")
            raise CollaboratorError("Digest generation returned no sections")

        sources = [DigestSource(url=url, title=title) for url, title in extract_links(text)]
        fun_fact = await self._fun_fact(topics, previous_fun_facts)

        return Digest(
            date=today,
            subject=subject,
            fun_fact=fun_fact or None,
            sections=tuple(sections),
            sources=tuple(sources),
            html=render_digest_html(subject, fun_fact, sections, sources, today, dashboard_url),
        )

    async def _fun_fact(self, topics: list[str], previous_fun_facts: list[str]) -> str:
        """A missing fun fact never fails the digest."""
        try:
            text = await asyncio.to_thread(
                self.llm,
                "Find me an interesting fun fact.",
                counter_prefix="research.fun_fact",
                system_instruction=build_fun_fact_instruction(topics, previous_fun_facts),
                max_output_tokens=300,
            )
        except Exception as e:
            counter("research.fun_fact_failures")
            logger.warning("Fun fact generation failed: %s", e)
            return ""
        return (text or "").strip().strip('"')
