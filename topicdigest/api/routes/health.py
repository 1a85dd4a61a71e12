"""Health check endpoint for the Topic Digest API."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from topicdigest.config import APP_VERSION, get_env

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Liveness check. Reports which collaborators have credentials (no API calls)."""
    has_api_key = bool(get_env("GOOGLE_API_KEY"))
    has_project = bool(get_env("GOOGLE_CLOUD_PROJECT"))

    return {
        "status": "healthy",
        "service": "Topic Digest API",
        "version": APP_VERSION,
        "timestamp": datetime.now(UTC).isoformat(),
        "llm": {
            "ready": has_api_key or has_project,
            "google_api_key": has_api_key,
            "google_cloud_project": has_project,
        },
        "email": {"ready": bool(get_env("RESEND_API_KEY"))},
    }
