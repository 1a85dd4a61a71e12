"""
Subscription endpoints.

- POST /api/create                   new subscription id (actor boots lazily)
- GET  /api/subscriptions/{id}       read-only status summary (404 until a first connection creates it)
- WS   /parties/subscription/{id}    document sync and trigger protocol
"""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from topicdigest.api.dependencies import (
    get_registry,
    is_subscription_id,
    load_existing_actor,
    require_subscription_id,
)
from topicdigest.observability.telemetry import counter, log_event
from topicdigest.subscription.registry import ActorRegistry

router = APIRouter(tags=["subscriptions"])

# Policy violation: close code for unknown subscription ids
WS_POLICY_VIOLATION = 1008


class WebSocketConnection:
    """Adapts a FastAPI WebSocket to the actor's Connection protocol."""

    def __init__(self, websocket: WebSocket):
        self.id = uuid.uuid4().hex
        self.websocket = websocket

    async def send(self, message: str) -> None:
        await self.websocket.send_text(message)


@router.post("/api/create")
async def create_subscription() -> dict[str, str]:
    subscription_id = str(uuid.uuid4())
    log_event("api.subscription_created", subscription=subscription_id)
    return {"id": subscription_id}


@router.get("/api/subscriptions/{subscription_id}")
async def get_subscription(
    subscription_id: str,
    registry: ActorRegistry = Depends(get_registry),
) -> dict[str, Any]:
    require_subscription_id(subscription_id)
    actor = await load_existing_actor(registry, subscription_id)
    return actor.status()


@router.websocket("/parties/subscription/{subscription_id}")
async def subscription_socket(
    websocket: WebSocket,
    subscription_id: str,
    registry: ActorRegistry = Depends(get_registry),
) -> None:
    if not is_subscription_id(subscription_id):
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    actor = await registry.get(subscription_id)
    await websocket.accept()
    connection = WebSocketConnection(websocket)
    await actor.connect(connection)

    try:
        while True:
            raw = await websocket.receive_text()
            await actor.handle_message(connection, raw)
    except WebSocketDisconnect:
        counter("api.websocket_disconnects")
    finally:
        actor.disconnect(connection)
