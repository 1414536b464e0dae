"""In-memory per-IP rate limiter using sliding window counters.

Each tier (e.g. "public", "booking") has its own config and tracking map.
Keys are client IP strings; values are lists of request timestamps taken
from a monotonic clock.  State is process-local.
"""
from __future__ import annotations

import ipaddress
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping

logger = logging.getLogger(__name__)

__all__ = [
    "TIER_PUBLIC",
    "TIER_AUTH",
    "TIER_BOOKING",
    "TIER_ADMIN",
    "RateLimitConfig",
    "RateLimiter",
    "DEFAULT_TIERS",
    "build_default_limiter",
    "extract_client_ip",
]

TIER_PUBLIC = "public"
TIER_AUTH = "auth"
TIER_BOOKING = "booking"
TIER_ADMIN = "admin"


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_seconds: float


DEFAULT_TIERS: dict[str, RateLimitConfig] = {
    TIER_PUBLIC: RateLimitConfig(max_requests=60, window_seconds=60),
    TIER_AUTH: RateLimitConfig(max_requests=30, window_seconds=60),
    # strictest: booking creation talks to the payment gateway
    TIER_BOOKING: RateLimitConfig(max_requests=5, window_seconds=300),
    TIER_ADMIN: RateLimitConfig(max_requests=120, window_seconds=60),
}


class RateLimiter:
    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._configs: dict[str, RateLimitConfig] = {}
        self._hits: dict[str, dict[str, list[float]]] = {}

    def add_tier(self, name: str, config: RateLimitConfig) -> None:
        with self._lock:
            self._configs[name] = config
            self._hits.setdefault(name, {})

    @property
    def tiers(self) -> Mapping[str, RateLimitConfig]:
        return dict(self._configs)

    def check(self, tier: str, client_ip: str) -> int | None:
        """Admit or reject one request.

        Returns ``None`` when admitted, otherwise the retry-after delay in
        whole seconds (at least 1).  Unknown tiers raise ``KeyError``.
        """
        config = self._configs[tier]
        now = self._clock()
        window_start = now - config.window_seconds
        with self._lock:
            timestamps = self._hits[tier].setdefault(client_ip, [])
            timestamps[:] = [t for t in timestamps if t > window_start]

            if len(timestamps) >= config.max_requests:
                oldest = timestamps[0]
                retry_after = max(1, math.ceil(oldest + config.window_seconds - now))
                return retry_after

            timestamps.append(now)
            return None

    def cleanup(self) -> int:
        """Drop entries older than twice the window; returns keys removed."""
        now = self._clock()
        removed = 0
        with self._lock:
            for tier, ip_map in self._hits.items():
                cutoff = self._configs[tier].window_seconds * 2
                for ip in list(ip_map):
                    fresh = [t for t in ip_map[ip] if now - t < cutoff]
                    if fresh:
                        ip_map[ip] = fresh
                    else:
                        del ip_map[ip]
                        removed += 1
        if removed:
            logger.debug("rate limiter cleanup removed %d stale keys", removed)
        return removed

    def tracked_keys(self, tier: str) -> int:
        with self._lock:
            return len(self._hits.get(tier, {}))


def build_default_limiter(clock: Callable[[], float] | None = None) -> RateLimiter:
    limiter = RateLimiter(clock=clock)
    for name, config in DEFAULT_TIERS.items():
        limiter.add_tier(name, config)
    return limiter


def _valid_ip(raw: str | None) -> str | None:
    if not raw:
        return None
    try:
        return str(ipaddress.ip_address(raw.strip()))
    except ValueError:
        return None


def extract_client_ip(forwarded_for: str | None, peer_host: str | None) -> str:
    """First ``X-Forwarded-For`` hop (reverse proxy), else the peer address."""
    if forwarded_for:
        ip = _valid_ip(forwarded_for.split(",")[0])
        if ip:
            return ip
    return _valid_ip(peer_host) or "127.0.0.1"
