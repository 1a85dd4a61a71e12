"""Centralized configuration for the Topic Digest service.

Re-exports everything from topicdigest.infrastructure.settings, then adds
typed constants for scheduling, retention, rate limiting, storage and the
HTTP surface.  Environment overrides use safe defaults so the app starts
without extra env configuration.
"""

from __future__ import annotations

import os

from topicdigest.infrastructure.settings import *  # noqa: F401, F403  re-export


def _env_int(key: str, default: int) -> int:
    return int(os.getenv(key, str(default)))


# --- App ---
APP_VERSION: str = "0.1.0"

# --- History / generation ---
MAX_DIGESTS: int = 30
DIGEST_CONTEXT_COUNT: int = 3

# --- Scheduling ---
SEND_HOUR_LOCAL: int = _env_int("TOPICDIGEST_SEND_HOUR", 8)
ALARM_POLL_SECONDS: int = _env_int("TOPICDIGEST_ALARM_POLL_SECONDS", 30)

# --- Per-actor rate limits ---
TRIGGER_MIN_INTERVAL_SECONDS: int = 60
VERIFICATION_MIN_INTERVAL_SECONDS: int = 60

# --- Actor residency ---
ACTOR_IDLE_SECONDS: int = _env_int("TOPICDIGEST_ACTOR_IDLE_SECONDS", 300)

# --- HTTP rate limiting (per IP) ---
RATE_LIMIT_RPM: int = 60
RATE_LIMIT_RPH: int = 1000
RATE_LIMIT_MAX_IPS: int = 10000

# --- Database ---
DB_CONNECT_TIMEOUT: float = 10.0
DB_POOL_SIZE: int = 5
DB_POOL_TIMEOUT: float = 5.0
DB_RETRY_MAX: int = 5
DB_RETRY_BASE_DELAY: float = 0.1
DB_RETRY_MAX_DELAY: float = 2.0
DB_RETRY_JITTER: float = 0.25

# --- Email delivery ---
EMAIL_MAX_ATTEMPTS: int = 3
