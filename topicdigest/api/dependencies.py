"""Shared route dependencies."""

from __future__ import annotations

import uuid

from fastapi import HTTPException
from starlette.requests import HTTPConnection

from topicdigest.observability.logging import get_logger
from topicdigest.subscription.actor import SubscriptionActor
from topicdigest.subscription.registry import ActorRegistry
from topicdigest.utils.error_sanitizer import sanitize_error_message

logger = get_logger(__name__)


def get_registry(conn: HTTPConnection) -> ActorRegistry:
    return conn.app.state.registry


def is_subscription_id(value: str) -> bool:
    """True for canonical (lowercase, hyphenated) UUID strings."""
    try:
        return str(uuid.UUID(value)) == value
    except ValueError:
        return False


def require_subscription_id(value: str) -> str:
    if not is_subscription_id(value):
        raise HTTPException(status_code=404, detail="Subscription not found")
    return value


async def load_existing_actor(registry: ActorRegistry, subscription_id: str) -> SubscriptionActor:
    """
    Raises:
        HTTPException: 404 if the subscription was never created, 500 on storage errors
    """
    try:
        actor = await registry.get_existing(subscription_id)
    except Exception as e:
        logger.error("Failed to load subscription %s: %s", subscription_id, e)
        raise HTTPException(
            status_code=500,
            detail=sanitize_error_message(str(e), 500),
        ) from None
    if actor is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return actor
