"""HTML helpers for digest and confirmation emails.

Digest sections come back from the composer as a small markdown subset
(bullets, **bold**, [links](url), paragraphs). render_markdown() turns that
subset into inline-safe HTML; anything else is escaped and kept as text.
"""

from __future__ import annotations

import html
import re

_LINK_RE = re.compile(r"\[([^\]]+)\]\((https?://[^\s)]+)\)")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_BULLET_RE = re.compile(r"^\s*[-*]\s+(.*)$")


def escape_html(text: str) -> str:
    return html.escape(text or "", quote=True)


def _render_inline(text: str) -> str:
    # Escape first; link/bold markers survive escaping unchanged
    escaped = escape_html(text)
    escaped = _LINK_RE.sub(
        lambda m: f'<a href="{m.group(2)}" style="color:#e67e22;text-decoration:none;">{m.group(1)}</a>',
        escaped,
    )
    return _BOLD_RE.sub(r"<strong>\1</strong>", escaped)


def render_markdown(text: str) -> str:
    """Render the digest markdown subset to HTML."""
    blocks: list[str] = []
    bullets: list[str] = []
    paragraph: list[str] = []

    def flush_bullets() -> None:
        if bullets:
            items = "".join(f"<li>{_render_inline(item)}</li>" for item in bullets)
            blocks.append(f'<ul style="padding-left:20px;margin:0 0 12px 0;">{items}</ul>')
            bullets.clear()

    def flush_paragraph() -> None:
        if paragraph:
            blocks.append(f'<p style="margin:0 0 12px 0;">{_render_inline(" ".join(paragraph))}</p>')
            paragraph.clear()

    for line in (text or "").splitlines():
        bullet = _BULLET_RE.match(line)
        if bullet:
            flush_paragraph()
            bullets.append(bullet.group(1).strip())
        elif not line.strip():
            flush_bullets()
            flush_paragraph()
        else:
            flush_bullets()
            paragraph.append(line.strip())

    flush_bullets()
    flush_paragraph()
    return "\n".join(blocks)


def extract_links(text: str) -> list[tuple[str, str]]:
    """Return (url, title) pairs for markdown links, first occurrence order."""
    seen: dict[str, str] = {}
    for title, url in ((m.group(1), m.group(2)) for m in _LINK_RE.finditer(text or "")):
        seen.setdefault(url, title)
    return list(seen.items())
