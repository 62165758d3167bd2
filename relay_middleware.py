"""
relay_middleware.py - ASGI middleware for the relay.

  RateLimitMiddleware   - in-memory sliding window per client IP
  RequestLogMiddleware  - one log line per request (no query strings)
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from typing import Any

from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger("relay-http")
audit_logger = logging.getLogger("relay-audit")


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


def get_client_ip(scope: Scope) -> str:
    """Socket peer address. Request headers are never consulted.

    Behind a proxy, uvicorn rewrites scope["client"] from X-Forwarded-For
    only when the peer is listed in FORWARDED_ALLOW_IPS.
    """
    client = scope.get("client")
    if client:
        return client[0]
    return "unknown"


class RateLimiter:
    """In-memory sliding window rate limiter."""

    def __init__(self, max_requests: int, window: int):
        self.max_requests = max_requests
        self.window = window
        self._buckets: dict[str, deque[float]] = {}

    def is_allowed(self, key: str, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        cutoff = now - self.window
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = deque()
            self._buckets[key] = bucket
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()
        if len(bucket) >= self.max_requests:
            return False
        bucket.append(now)
        return True

    def cleanup(self, now: float | None = None) -> None:
        """Remove buckets with no hits left in the window."""
        now = time.time() if now is None else now
        cutoff = now - self.window
        stale = [k for k, v in self._buckets.items() if not v or v[-1] <= cutoff]
        for k in stale:
            del self._buckets[k]


class RateLimitMiddleware:
    CLEANUP_INTERVAL = 300  # seconds

    def __init__(self, app: ASGIApp, max_requests: int, window: int):
        self.app = app
        self.limiter = RateLimiter(max_requests, window)
        self._last_cleanup = time.time()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        now = time.time()
        if now - self._last_cleanup > self.CLEANUP_INTERVAL:
            self.limiter.cleanup(now)
            self._last_cleanup = now

        client_ip = get_client_ip(scope)
        if not self.limiter.is_allowed(client_ip, now):
            logger.warning("rate limit exceeded for %s", client_ip)
            _audit("rate_limited", ip=client_ip, path=scope.get("path", ""))
            body = json.dumps({
                "error": "too_many_requests",
                "error_description": "Rate limit exceeded. Try again later.",
            }).encode()
            await send({
                "type": "http.response.start",
                "status": 429,
                "headers": [
                    [b"content-type", b"application/json"],
                    [b"content-length", str(len(body)).encode()],
                    [b"retry-after", str(self.limiter.window).encode()],
                ],
            })
            await send({"type": "http.response.body", "body": body})
            return

        await self.app(scope, receive, send)


class RequestLogMiddleware:
    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        hdrs = dict(scope.get("headers", []))
        ua = hdrs.get(b"user-agent", b"").decode(errors="replace")
        status: list[int] = []

        async def _send(message: dict) -> None:
            if message["type"] == "http.response.start":
                status.append(message["status"])
            await send(message)

        started = time.monotonic()
        try:
            await self.app(scope, receive, _send)
        finally:
            # Query strings carry tokens; only the path is logged.
            logger.info("%s %s -> %s (%.1f ms) ua=%s",
                        scope.get("method", "?"), scope.get("path", "?"),
                        status[0] if status else "-",
                        (time.monotonic() - started) * 1000, ua[:60])
