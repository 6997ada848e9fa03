import ipaddress
import math
import time
from collections import deque
from threading import Lock
from typing import Optional

from fastapi import Request

from huanale.core.config import get_settings

_MAX_BUCKETS = 50_000
_PRUNE_INTERVAL_SECONDS = 60


class SlidingWindowRateLimiter:
    """In-process sliding-window limiter keyed by an arbitrary string."""

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
        """Record one hit for *key*.

        Returns ``(allowed, retry_after_seconds)``; ``retry_after_seconds`` is
        0 when the hit was allowed.
        """
        if limit <= 0 or window_seconds <= 0:
            return True, 0
        now = time.monotonic()
        with self._lock:
            if len(self._buckets) > self._max_buckets or (now - self._last_prune_at) >= self._prune_interval_seconds:
                self._prune_stale(now, window_seconds)
                self._last_prune_at = now

            bucket = self._buckets.setdefault(key, deque())
            self._drop_expired(bucket, now - window_seconds)
            if len(bucket) >= limit:
                return False, max(1, math.ceil(bucket[0] + window_seconds - now))
            bucket.append(now)
            return True, 0

    @staticmethod
    def _drop_expired(bucket: deque[float], cutoff: float) -> None:
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()

    def _prune_stale(self, now: float, window_seconds: int) -> None:
        """Remove buckets with no hits inside the window (called under lock)."""
        cutoff = now - window_seconds
        for key in list(self._buckets):
            bucket = self._buckets[key]
            self._drop_expired(bucket, cutoff)
            if not bucket:
                del self._buckets[key]

    def bucket_count(self) -> int:
        """Live bucket count; lets tests observe pruning."""
        with self._lock:
            return len(self._buckets)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._last_prune_at = 0.0


rate_limiter = SlidingWindowRateLimiter()


def _in_networks(ip: str, networks: list[str]) -> bool:
    try:
        ip_obj = ipaddress.ip_address(ip)
    except ValueError:
        return ip in networks
    for entry in networks:
        try:
            if ip_obj in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            if entry == ip:
                return True
    return False


def get_client_ip(request: Request, trusted_proxy_cidrs: Optional[list[str]] = None) -> Optional[str]:
    """Client IP of *request*.

    ``X-Forwarded-For`` is honoured only when the direct peer is one of
    ``TRUSTED_PROXY_CIDRS``; the rightmost entry is the one our proxy added.
    """
    peer_ip = request.client.host if request.client else None
    trusted = trusted_proxy_cidrs if trusted_proxy_cidrs is not None else get_settings().trusted_proxy_cidrs
    if not (peer_ip and trusted and _in_networks(peer_ip, trusted)):
        return peer_ip

    forwarded = request.headers.get("x-forwarded-for", "")
    parts = [p.strip() for p in forwarded.split(",") if p.strip()]
    if parts:
        return parts[-1]
    return request.headers.get("x-real-ip", "").strip() or peer_ip
