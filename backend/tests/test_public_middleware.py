"""Tests for the public-surface middleware: rate limiting, client IP and security headers."""

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from claimflow.core.config import get_settings
from claimflow.core.dependencies import get_db
from claimflow.main import app
from claimflow.utils.rate_limit import SlidingWindowRateLimiter, get_client_ip


def _request(*, peer_ip, real_ip=None, forwarded_for=None):
    headers = {}
    if real_ip is not None:
        headers["x-real-ip"] = real_ip
    if forwarded_for is not None:
        headers["x-forwarded-for"] = forwarded_for
    return SimpleNamespace(headers=headers, client=SimpleNamespace(host=peer_ip))


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# ── Rate limiter ─────────────────────────────────────────────────────


def test_rate_limiter_blocks_within_window(monkeypatch):
    rl = SlidingWindowRateLimiter()
    t = {"now": 1000.0}
    monkeypatch.setattr("claimflow.utils.rate_limit.time.monotonic", lambda: t["now"])

    assert rl.allow("approval:ip:1.2.3.4", limit=2, window_seconds=60) == (True, 1)
    assert rl.allow("approval:ip:1.2.3.4", limit=2, window_seconds=60) == (True, 2)
    assert rl.allow("approval:ip:1.2.3.4", limit=2, window_seconds=60) == (False, 2)
    assert rl.allow("approval:ip:5.6.7.8", limit=2, window_seconds=60)[0] is True

    t["now"] += 61
    assert rl.allow("approval:ip:1.2.3.4", limit=2, window_seconds=60) == (True, 1)


def test_rate_limiter_prunes_stale_buckets_on_interval(monkeypatch):
    rl = SlidingWindowRateLimiter(max_buckets=10_000, prune_interval_seconds=1)
    t = {"now": 1000.0}
    monkeypatch.setattr("claimflow.utils.rate_limit.time.monotonic", lambda: t["now"])

    for i in range(200):
        ok, _ = rl.allow(f"k:{i}", limit=1, window_seconds=60)
        assert ok is True

    t["now"] = 1000.0 + 120.0
    ok, _ = rl.allow("k:new", limit=1, window_seconds=60)
    assert ok is True
    assert len(rl._buckets) == 1

    ok, _ = rl.allow("k:0", limit=1, window_seconds=60)
    assert ok is True


def test_zero_limit_disables_limiting():
    rl = SlidingWindowRateLimiter()
    assert rl.allow("k", limit=0, window_seconds=60) == (True, 0)


# ── Client IP ────────────────────────────────────────────────────────


def test_forwarded_headers_ignored_from_untrusted_peer():
    req = _request(peer_ip="198.51.100.15", real_ip="203.0.113.9", forwarded_for="203.0.113.9")
    assert get_client_ip(req, trusted_proxy_cidrs=["10.0.0.0/8"]) == "198.51.100.15"


def test_real_ip_used_for_trusted_proxy():
    req = _request(peer_ip="10.1.2.3", real_ip="203.0.113.9")
    assert get_client_ip(req, trusted_proxy_cidrs=["10.0.0.0/8"]) == "203.0.113.9"


def test_rightmost_forwarded_for_used_for_trusted_proxy():
    req = _request(peer_ip="10.1.2.3", forwarded_for="1.1.1.1, 203.0.113.9")
    assert get_client_ip(req, trusted_proxy_cidrs=["10.0.0.0/8"]) == "203.0.113.9"


def test_invalid_cidr_entries_are_skipped():
    req = _request(peer_ip="10.1.2.3", real_ip="203.0.113.9")
    assert get_client_ip(req, trusted_proxy_cidrs=["not-a-network", "10.0.0.0/8"]) == "203.0.113.9"


# ── Middleware ───────────────────────────────────────────────────────


def test_security_headers_on_every_response(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["Referrer-Policy"] == "no-referrer"
    assert "max-age" in resp.headers["Strict-Transport-Security"]
    assert "Cache-Control" not in resp.headers


def test_approval_pages_are_not_cached(client):
    resp = client.get("/api/v1/public/invoice-approval/not-a-token")
    assert resp.status_code == 400
    assert resp.headers["Cache-Control"] == "no-store"


def test_approval_endpoint_is_rate_limited(client, monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_APPROVAL_IP_PER_MIN", "2")
    get_settings.cache_clear()

    statuses = [client.get("/api/v1/public/invoice-approval/not-a-token").status_code for _ in range(3)]

    assert statuses == [400, 400, 429]


def test_rate_limit_can_be_disabled(client, monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_APPROVAL_IP_PER_MIN", "1")
    monkeypatch.setenv("RATE_LIMIT_PUBLIC_ENABLED", "false")
    get_settings.cache_clear()

    statuses = [client.get("/api/v1/public/invoice-approval/not-a-token").status_code for _ in range(3)]

    assert 429 not in statuses
