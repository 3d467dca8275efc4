import logging
import time
from threading import Lock
from typing import Dict, Optional, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Simple in-memory rate limiter using a fixed window algorithm.
    Tracks requests per client address within a time window.
    """

    def __init__(self, max_requests: int = 100, window_seconds: float = 900.0):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        # identifier -> (count, window_start_time)
        self.requests: Dict[str, Tuple[int, float]] = {}
        self._lock = Lock()
        self._last_cleanup = time.time()

    def is_allowed(self, identifier: str, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        with self._lock:
            count, start_time = self.requests.get(identifier, (0, now))

            if now - start_time >= self.window_seconds:
                # New window
                self.requests[identifier] = (1, now)
                return True

            if count >= self.max_requests:
                return False

            self.requests[identifier] = (count + 1, start_time)
            return True

    def cleanup(self, now: Optional[float] = None) -> None:
        """Drop expired windows so the table does not grow without bound."""
        now = time.time() if now is None else now
        with self._lock:
            expired = [key for key, (_, start) in self.requests.items() if now - start >= self.window_seconds]
            for key in expired:
                del self.requests[key]
            self._last_cleanup = now

    def cleanup_if_due(self, now: Optional[float] = None) -> bool:
        """Run ``cleanup`` at most once per window. Returns True if it ran."""
        now = time.time() if now is None else now
        with self._lock:
            if now - self._last_cleanup < self.window_seconds:
                return False
        self.cleanup(now)
        return True


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rejects requests under ``path_prefix`` once a client exceeds its window budget."""

    def __init__(self, app, limiter: RateLimiter, path_prefix: str = "/api/"):
        super().__init__(app)
        self.limiter = limiter
        self.path_prefix = path_prefix

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith(self.path_prefix):
            self.limiter.cleanup_if_due()
            client = request.client.host if request.client else "unknown"
            if not self.limiter.is_allowed(client):
                logger.warning("Rate limit exceeded for %s on %s", client, request.url.path)
                return JSONResponse(
                    status_code=429,
                    content={
                        "detail": "Too many requests from this IP, please try again later.",
                        "error": "RATE_LIMITED",
                    },
                )
        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("%s %s -> %d (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
        return response
