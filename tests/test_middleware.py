"""
Tests for the fixed-window rate limiter and its middleware.
"""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from pdf_ops_backend.middleware import RateLimiter, RateLimitMiddleware


class TestRateLimiter:
    def test_allows_up_to_limit_within_window(self):
        limiter = RateLimiter(max_requests=3, window_seconds=60)

        results = [limiter.is_allowed("1.2.3.4", now=100.0 + n) for n in range(4)]

        assert results == [True, True, True, False]

    def test_window_resets(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)

        assert limiter.is_allowed("1.2.3.4", now=0.0)
        assert not limiter.is_allowed("1.2.3.4", now=30.0)
        assert limiter.is_allowed("1.2.3.4", now=60.0)

    def test_clients_are_tracked_separately(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)

        assert limiter.is_allowed("a", now=0.0)
        assert limiter.is_allowed("b", now=0.0)

    def test_cleanup_drops_expired_windows(self):
        limiter = RateLimiter(max_requests=5, window_seconds=10)
        limiter.is_allowed("old", now=0.0)
        limiter.is_allowed("new", now=15.0)

        limiter.cleanup(now=15.0)

        assert set(limiter.requests) == {"new"}


def test_middleware_returns_429_on_api_paths():
    app = FastAPI()
    app.add_middleware(
        RateLimitMiddleware,
        limiter=RateLimiter(max_requests=1, window_seconds=900),
        path_prefix="/api/",
    )

    @app.get("/api/ping")
    def ping():
        return {"ok": True}

    @app.get("/health")
    def health():
        return {"ok": True}

    client = TestClient(app)

    assert client.get("/api/ping").status_code == 200
    limited = client.get("/api/ping")
    assert limited.status_code == 429
    assert limited.json()["error"] == "RATE_LIMITED"
    assert client.get("/health").status_code == 200


def test_cleanup_runs_at_most_once_per_window():
    limiter = RateLimiter(max_requests=5, window_seconds=10)
    limiter.cleanup(now=0.0)
    limiter.is_allowed("stale", now=0.0)

    assert not limiter.cleanup_if_due(now=5.0)
    assert "stale" in limiter.requests
    assert limiter.cleanup_if_due(now=10.0)
    assert limiter.requests == {}
    assert not limiter.cleanup_if_due(now=12.0)


def test_middleware_prunes_expired_windows():
    limiter = RateLimiter(max_requests=5, window_seconds=60)
    limiter.cleanup(now=0.0)
    limiter.is_allowed("203.0.113.9", now=0.0)

    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, limiter=limiter, path_prefix="/api/")

    @app.get("/api/ping")
    def ping():
        return {"ok": True}

    assert TestClient(app).get("/api/ping").status_code == 200
    assert "203.0.113.9" not in limiter.requests
