"""
Email link endpoints.

- GET  /confirm/{id}/{token}   redeem a confirmation token, redirect to the dashboard
- GET  /unsubscribe/{id}       ask before unsubscribing (a page view changes nothing)
- POST /unsubscribe/{id}       switch the subscription to manual frequency
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse, RedirectResponse

from topicdigest.api.dependencies import (
    get_registry,
    load_existing_actor,
    require_subscription_id,
)
from topicdigest.observability.logging import get_logger
from topicdigest.observability.telemetry import counter
from topicdigest.subscription.errors import OwnershipError
from topicdigest.subscription.registry import ActorRegistry
from topicdigest.utils.error_sanitizer import sanitize_error_message
from topicdigest.utils.html import escape_html

router = APIRouter(tags=["email-links"])
logger = get_logger(__name__)


def _page(title: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><meta name="viewport" content="width=device-width,initial-scale=1"><title>{escape_html(title)}</title></head>
<body style="margin:0;padding:0;background:#f5f5f5;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;">
  <div style="max-width:480px;margin:60px auto;background:#fff;border-radius:12px;padding:32px;text-align:center;">
    <h1 style="color:#1a1a2e;font-size:22px;margin:0 0 16px 0;">{escape_html(title)}</h1>
    {body}
  </div>
</body>
</html>"""


def render_unsubscribe_page(subscription_id: str, done: bool) -> str:
    dashboard = f"/d/{escape_html(subscription_id)}"
    if done:
        return _page(
            "You've been unsubscribed",
            '<p style="color:#555;font-size:15px;">Scheduled digests are turned off. '
            f'You can turn them back on from <a href="{dashboard}" style="color:#e67e22;">your dashboard</a>.</p>',
        )
    return _page(
        "Unsubscribe from this digest?",
        '<p style="color:#555;font-size:15px;">Scheduled digests will stop. Your topics and history are kept.</p>'
        f'<form method="post" action="/unsubscribe/{escape_html(subscription_id)}">'
        '<button type="submit" style="background:#e67e22;color:#fff;border:0;border-radius:8px;'
        'font-size:16px;font-weight:700;padding:12px 32px;cursor:pointer;">Unsubscribe</button></form>'
        f'<p style="margin-top:20px;"><a href="{dashboard}" style="color:#999;font-size:13px;">Keep my digest</a></p>',
    )


@router.get("/confirm/{subscription_id}/{token}")
async def confirm_subscription(
    subscription_id: str,
    token: str,
    registry: ActorRegistry = Depends(get_registry),
) -> RedirectResponse:
    require_subscription_id(subscription_id)
    actor = await load_existing_actor(registry, subscription_id)
    try:
        actor.handle_confirm(token)
    except OwnershipError:
        counter("api.confirm_denied")
        raise HTTPException(
            status_code=403, detail="Invalid or expired confirmation link"
        ) from None
    except Exception as e:
        logger.error("Confirmation failed for %s: %s", subscription_id, e)
        raise HTTPException(
            status_code=500,
            detail=sanitize_error_message(str(e), 500),
        ) from None

    return RedirectResponse(url=f"/d/{subscription_id}", status_code=302)


@router.get("/unsubscribe/{subscription_id}", response_class=HTMLResponse)
async def unsubscribe_page(subscription_id: str, done: int = 0) -> HTMLResponse:
    require_subscription_id(subscription_id)
    return HTMLResponse(render_unsubscribe_page(subscription_id, done=bool(done)))


@router.post("/unsubscribe/{subscription_id}")
async def unsubscribe(
    subscription_id: str,
    registry: ActorRegistry = Depends(get_registry),
) -> RedirectResponse:
    require_subscription_id(subscription_id)
    actor = await load_existing_actor(registry, subscription_id)
    try:
        actor.handle_unsubscribe()
    except Exception as e:
        logger.error("Unsubscribe failed for %s: %s", subscription_id, e)
        raise HTTPException(
            status_code=500,
            detail=sanitize_error_message(str(e), 500),
        ) from None

    return RedirectResponse(url=f"/unsubscribe/{subscription_id}?done=1", status_code=303)
