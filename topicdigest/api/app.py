"""FastAPI server for Topic Digest"""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from topicdigest.api.middleware.rate_limit import RateLimitMiddleware
from topicdigest.api.middleware.security_headers import SecurityHeadersMiddleware
from topicdigest.api.routes.confirm import router as confirm_router
from topicdigest.api.routes.health import router as health_router
from topicdigest.api.routes.subscriptions import router as subscriptions_router
from topicdigest.collaborators.email import EmailSender, ResendEmailSender
from topicdigest.collaborators.research import GeminiDigestComposer, ResearchComposer
from topicdigest.config import (
    APP_VERSION,
    PUBLIC_URL,
    RATE_LIMIT_RPH,
    RATE_LIMIT_RPM,
    get_env,
    is_development,
)
from topicdigest.infrastructure.database import init_database
from topicdigest.observability.logging import get_logger
from topicdigest.observability.telemetry import counter, log_event
from topicdigest.subscription.registry import ActorRegistry
from topicdigest.subscription.scheduler import AlarmDispatcher

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)


def _init_schema() -> None:
    try:
        logger.info("Initializing database schema...")
        init_database()
        logger.info("Database initialization complete")
    except sqlite3.Error as e:
        logger.critical("Database schema error: %s", e)
        raise RuntimeError(f"Database initialization failed: {e}") from e


def create_app(
    email_sender: EmailSender | None = None,
    composer: ResearchComposer | None = None,
    base_url: str | None = None,
    run_alarms: bool = True,
    requests_per_minute: int = RATE_LIMIT_RPM,
    requests_per_hour: int = RATE_LIMIT_RPH,
) -> FastAPI:
    """
    Build the API app.

    Collaborators default to the Resend and Gemini implementations; tests
    pass fakes. The alarm dispatcher runs for the lifetime of the app unless
    run_alarms is False.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        _init_schema()
        registry = ActorRegistry(
            email_sender or ResendEmailSender.from_env(),
            composer or GeminiDigestComposer(),
            base_url=base_url or get_env("TOPICDIGEST_PUBLIC_URL", PUBLIC_URL).rstrip("/"),
        )
        dispatcher = AlarmDispatcher(registry)
        app.state.registry = registry
        app.state.dispatcher = dispatcher
        if run_alarms:
            dispatcher.start()

        log_event("api.startup", service="topicdigest", version=APP_VERSION)
        try:
            yield
        finally:
            await dispatcher.stop()
            await registry.shutdown()
            log_event("api.shutdown", service="topicdigest")

    app = FastAPI(title="Topic Digest API", version=APP_VERSION, lifespan=lifespan)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Log the full validation error; return only field names to the client."""
        logger.warning("Validation error on %s: %s", request.url.path, exc.errors())
        counter("api.validation_errors")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": "Invalid request format. Please check your request and try again.",
                "error_count": len(exc.errors()),
                "invalid_fields": [str(err["loc"][-1]) for err in exc.errors()],
            },
        )

    allowed_origins = [base_url or PUBLIC_URL]
    if is_development():
        allowed_origins.extend(["http://localhost:3000", "http://127.0.0.1:3000"])

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_minute=requests_per_minute,
        requests_per_hour=requests_per_hour,
    )
    app.add_middleware(SecurityHeadersMiddleware)

    app.include_router(health_router)
    app.include_router(subscriptions_router)
    app.include_router(confirm_router)

    @app.get("/")
    def root() -> dict[str, Any]:
        return {
            "service": "Topic Digest API",
            "version": APP_VERSION,
            "status": "running",
            "endpoints": {
                "health": "/health",
                "create": "/api/create",
                "subscription": "/api/subscriptions/{id}",
                "socket": "/parties/subscription/{id}",
                "confirm": "/confirm/{id}/{token}",
                "unsubscribe": "/unsubscribe/{id}",
            },
        }

    return app


app = create_app()
