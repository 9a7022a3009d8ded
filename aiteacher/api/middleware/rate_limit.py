"""
Per-learner rate limiting with a sliding window.

Callers are identified by the X-User-Id header (sent by TeacherClient), the
learner id in per-user paths, a bearer token, then the client IP.
"""

import logging
import re
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from aiteacher.shared.config import settings
from aiteacher.shared.logging import get_logger, log_with_context

logger = get_logger(__name__)

_USER_PATH = re.compile(r"^/api/teacher/(?:analytics|learning-style)/([^/]+)")


class SlidingWindowRateLimiter:
    """In-memory sliding window; keys with no requests in the window are dropped."""

    def __init__(
        self,
        requests_per_minute: int = 30,
        clock: Callable[[], float] = time.time,
        prune_every: int = 256,
    ):
        self.requests_per_minute = requests_per_minute
        self.window_seconds = 60
        self.clock = clock
        self.prune_every = prune_every
        self._requests: Dict[str, Deque[float]] = {}
        self._recorded = 0

    def __len__(self) -> int:
        return len(self._requests)

    def _window(self, key: str) -> Deque[float]:
        cutoff = self.clock() - self.window_seconds
        window = self._requests.get(key, deque())
        while window and window[0] <= cutoff:
            window.popleft()
        if not window:
            self._requests.pop(key, None)
        return window

    def is_allowed(self, key: str) -> bool:
        return len(self._window(key)) < self.requests_per_minute

    def record(self, key: str):
        self._requests.setdefault(key, deque()).append(self.clock())
        self._recorded += 1
        if self._recorded % self.prune_every == 0:
            self.prune()

    def retry_after_seconds(self, key: str) -> int:
        """Seconds until the oldest request in the window expires; 0 if not limited."""
        window = self._window(key)
        if len(window) < self.requests_per_minute:
            return 0
        return max(1, int(self.window_seconds - (self.clock() - window[0])))

    def prune(self):
        """Drop every key whose window has emptied."""
        for key in list(self._requests):
            self._window(key)


def get_rate_limit_key(request: Request) -> Optional[str]:
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        match = _USER_PATH.match(request.url.path)
        user_id = match.group(1) if match else None
    if user_id:
        return f"user:{user_id[:64]}"
    auth = request.headers.get("Authorization")
    if auth and auth.startswith("Bearer "):
        return f"bearer:{auth[7:][:64]}"
    client = request.client
    if client:
        return f"ip:{client.host}"
    return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Returns 429 with Retry-After once a caller exceeds the per-minute budget."""

    def __init__(
        self,
        app,
        requests_per_minute: Optional[int] = None,
        skip_paths: Optional[list[str]] = None,
    ):
        super().__init__(app)
        self.limiter = SlidingWindowRateLimiter(
            requests_per_minute or settings.api.rate_limit_requests_per_minute
        )
        self.skip_paths = set(skip_paths or ["/health", "/docs", "/openapi.json", "/redoc"])

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in self.skip_paths or path.startswith("/docs") or path.startswith("/redoc"):
            return await call_next(request)

        key = get_rate_limit_key(request)
        if not key:
            return await call_next(request)

        if not self.limiter.is_allowed(key):
            retry_after = self.limiter.retry_after_seconds(key)
            log_with_context(
                logger, logging.WARNING, "Rate limit exceeded",
                action="rate_limited", client=key[:16], retry_after=retry_after,
            )
            return JSONResponse(
                {"detail": "Rate limit exceeded. Try again later."},
                status_code=429,
                headers={"Retry-After": str(retry_after)},
            )

        self.limiter.record(key)
        return await call_next(request)
