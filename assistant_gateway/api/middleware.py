"""
API Middleware.

Request ID injection, rate limiting, and structured request logging
for every incoming HTTP request. WebSocket upgrades pass through
untouched; the gateways log their own connection lifecycle.
"""

from __future__ import annotations

import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from assistant_gateway.config import get_settings
from assistant_gateway.logging_config import generate_trace_id, get_logger, trace_id_var

logger = get_logger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Inject a unique request ID into every request and response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", generate_trace_id())
        trace_id_var.set(request_id)

        start = time.monotonic()

        response = await call_next(request)

        elapsed_ms = round((time.monotonic() - start) * 1000, 1)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time-Ms"] = str(elapsed_ms)

        logger.info(
            "api_request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            elapsed_ms=elapsed_ms,
            request_id=request_id,
        )

        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window rate limiter per client IP (single instance only)."""

    def __init__(
        self,
        app: ASGIApp,
        max_requests: int | None = None,
        window_seconds: int | None = None,
    ) -> None:
        super().__init__(app)
        settings = get_settings()
        self.max_requests = max_requests or settings.rate_limit_max
        self.window_seconds = window_seconds or settings.rate_limit_window_seconds
        self._hits: dict[str, list[float]] = {}
        self._last_sweep = 0.0

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        client_ip = request.client.host if request.client else "unknown"
        now = time.time()

        if now - self._last_sweep >= self.window_seconds:
            self._sweep(now)

        # Clean old entries, forgetting IPs whose window has emptied
        recent = [
            t for t in self._hits.pop(client_ip, [])
            if now - t < self.window_seconds
        ]
        if recent:
            self._hits[client_ip] = recent

        if len(recent) >= self.max_requests:
            logger.warning("rate_limit_exceeded", client_ip=client_ip)
            return Response(
                content='{"errorCode": "RATE_LIMITED", "message": "Rate limit exceeded"}',
                status_code=429,
                media_type="application/json",
                headers={"Retry-After": str(self.window_seconds)},
            )

        self._hits[client_ip] = [*recent, now]
        return await call_next(request)

    def _sweep(self, now: float) -> None:
        """Drop clients whose newest hit has left the window."""
        stale = [ip for ip, hits in self._hits.items() if now - hits[-1] >= self.window_seconds]
        for ip in stale:
            del self._hits[ip]
        self._last_sweep = now
