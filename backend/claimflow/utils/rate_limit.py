import ipaddress
import time
from collections import deque
from threading import Lock
from typing import Optional

from fastapi import Request

from claimflow.core.config import get_settings

_MAX_BUCKETS = 50_000
_PRUNE_INTERVAL_SECONDS = 60


class SlidingWindowRateLimiter:
    def __init__(
        self,
        *,
        max_buckets: int = _MAX_BUCKETS,
        prune_interval_seconds: int = _PRUNE_INTERVAL_SECONDS,
    ) -> None:
        self._buckets: dict[str, deque[float]] = {}
        self._lock = Lock()
        self._max_buckets = max_buckets
        self._prune_interval_seconds = max(1, int(prune_interval_seconds))
        self._last_prune_at = 0.0

    def allow(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        """Record a hit for ``key``; returns (allowed, hits in window)."""
        if limit <= 0 or window_seconds <= 0:
            return True, 0
        now = time.monotonic()
        with self._lock:
            overdue = (now - self._last_prune_at) >= self._prune_interval_seconds
            if overdue or len(self._buckets) > self._max_buckets:
                self._drop_idle_keys(now - window_seconds)
                self._last_prune_at = now

            hits = self._buckets.setdefault(key, deque())
            _expire(hits, now - window_seconds)
            if len(hits) >= limit:
                return False, len(hits)
            hits.append(now)
            return True, len(hits)

    def _drop_idle_keys(self, cutoff: float) -> None:
        # Caller holds the lock.
        idle = []
        for key, hits in self._buckets.items():
            _expire(hits, cutoff)
            if not hits:
                idle.append(key)
        for key in idle:
            del self._buckets[key]

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._last_prune_at = 0.0


def _expire(hits: deque, cutoff: float) -> None:
    while hits and hits[0] <= cutoff:
        hits.popleft()


rate_limiter = SlidingWindowRateLimiter()


def _ip_in_networks(ip: str, networks: list[str]) -> bool:
    if not ip:
        return False
    if ip in networks:
        return True
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    for entry in networks:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def is_trusted_proxy_peer(request: Request, trusted_proxy_cidrs: Optional[list[str]] = None) -> bool:
    peer_ip = request.client.host if request.client else None
    trusted = trusted_proxy_cidrs if trusted_proxy_cidrs is not None else get_settings().trusted_proxy_cidrs
    if not (peer_ip and trusted):
        return False
    # Starlette's TestClient reports its peer as "testclient".
    if "testclient" in trusted and peer_ip in {"testclient", "127.0.0.1", "::1"}:
        return True
    return _ip_in_networks(peer_ip, trusted)


def get_client_ip(request: Request, trusted_proxy_cidrs: Optional[list[str]] = None) -> Optional[str]:
    """Client IP for audit and rate limiting.

    Forwarded headers are honoured only when the direct peer is a trusted proxy.
    """
    peer_ip = request.client.host if request.client else None
    if not is_trusted_proxy_peer(request, trusted_proxy_cidrs):
        return peer_ip

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        # Rightmost entry was appended by our own proxy.
        parts = [part.strip() for part in forwarded.split(",") if part.strip()]
        if parts:
            return parts[-1]
    return peer_ip


def get_user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent") if request else None
