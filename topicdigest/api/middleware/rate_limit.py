"""Per-IP rate limiting middleware for the Topic Digest API

Buckets live in TTLCache so memory stays bounded as new IPs appear.
X-Forwarded-For is only trusted behind the Cloud Run proxy, or in
development.
"""

from __future__ import annotations

import ipaddress
import time
from collections.abc import Callable
from typing import Any

from cachetools import TTLCache
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from topicdigest.config import RATE_LIMIT_MAX_IPS, RATE_LIMIT_RPH, RATE_LIMIT_RPM, is_development
from topicdigest.observability.telemetry import log_event

EXEMPT_PATHS = {"/health", "/"}


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Limits requests per client IP (per minute and per hour).

    Websocket upgrades are not HTTP requests and never reach dispatch().
    """

    def __init__(
        self,
        app: Any,
        requests_per_minute: int = RATE_LIMIT_RPM,
        requests_per_hour: int = RATE_LIMIT_RPH,
        max_ips: int = RATE_LIMIT_MAX_IPS,
    ) -> None:
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.requests_per_hour = requests_per_hour

        # {ip: [timestamp, ...]}, auto-evicted after ttl seconds
        self.minute_buckets: TTLCache[str, list[float]] = TTLCache(maxsize=max_ips, ttl=120)
        self.hour_buckets: TTLCache[str, list[float]] = TTLCache(maxsize=max_ips, ttl=7200)

        self._trusted_proxy_header = "X-Cloud-Trace-Context"

    @staticmethod
    def _is_valid_ip(ip_str: str) -> bool:
        try:
            ipaddress.ip_address(ip_str)
            return True
        except ValueError:
            return False

    def _forwarded_ip(self, request: Request) -> str | None:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            ip = forwarded.split(",")[0].strip()
            if self._is_valid_ip(ip):
                return ip
        return None

    def _get_client_ip(self, request: Request) -> str:
        if self._trusted_proxy_header in request.headers or is_development():
            ip = self._forwarded_ip(request)
            if ip:
                return ip
        return request.client.host if request.client else "unknown"

    @staticmethod
    def _recent(bucket: list[float], now: float, max_age_seconds: int) -> list[float]:
        return [ts for ts in bucket if now - ts < max_age_seconds]

    def _reject(self, client_ip: str, limit: str, count: int, retry_after: int) -> JSONResponse:
        log_event("api.rate_limit.request_exceeded", ip=client_ip, limit=limit, count=count)
        maximum = self.requests_per_minute if limit == "minute" else self.requests_per_hour
        return JSONResponse(
            status_code=429,
            content={
                "detail": f"Rate limit exceeded. Maximum {maximum} requests per {limit}.",
                "retry_after": retry_after,
            },
            headers={"Retry-After": str(retry_after)},
        )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        client_ip = self._get_client_ip(request)
        now = time.time()

        minute_bucket = self._recent(self.minute_buckets.get(client_ip, []), now, 60)
        hour_bucket = self._recent(self.hour_buckets.get(client_ip, []), now, 3600)

        if len(minute_bucket) >= self.requests_per_minute:
            self.minute_buckets[client_ip] = minute_bucket
            return self._reject(client_ip, "minute", len(minute_bucket), 60)
        if len(hour_bucket) >= self.requests_per_hour:
            self.hour_buckets[client_ip] = hour_bucket
            return self._reject(client_ip, "hour", len(hour_bucket), 3600)

        minute_bucket.append(now)
        hour_bucket.append(now)
        self.minute_buckets[client_ip] = minute_bucket
        self.hour_buckets[client_ip] = hour_bucket

        response = await call_next(request)

        response.headers["X-RateLimit-Limit-Minute"] = str(self.requests_per_minute)
        response.headers["X-RateLimit-Remaining-Minute"] = str(
            self.requests_per_minute - len(minute_bucket)
        )
        response.headers["X-RateLimit-Limit-Hour"] = str(self.requests_per_hour)
        response.headers["X-RateLimit-Remaining-Hour"] = str(
            self.requests_per_hour - len(hour_bucket)
        )
        return response
