# paygate/x402/ratelimit.py
"""
Rate limiting for priced endpoints.

Every request to a protected endpoint counts against its client IP,
whether or not it carries a payment, because each proof costs a ledger
round-trip to verify. Uses a sliding window with in-memory storage.

Configuration:
- X402_RATE_LIMIT_PER_IP: Maximum requests per minute per IP (default: 5)
"""
import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from paygate.core.config import settings

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 300


@dataclass
class RateLimitWindow:
    """Request timestamps for a single IP within the sliding window."""
    requests: List[float] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)


class RateLimiter:
    """
    In-memory sliding window rate limiter.

    Thread-safe. State is per process; a multi-process deployment limits
    each worker separately.
    """

    def __init__(
        self,
        requests_per_minute: Optional[int] = None,
        window_seconds: int = 60
    ):
        """
        Initialize the rate limiter.

        Args:
            requests_per_minute: Max requests allowed per window. If None, uses config.
            window_seconds: Size of the sliding window in seconds.
        """
        self._requests_per_minute = requests_per_minute
        self._window_seconds = window_seconds
        self._windows: Dict[str, RateLimitWindow] = defaultdict(RateLimitWindow)
        self._cleanup_lock = threading.Lock()
        self._last_cleanup = time.time()

    @property
    def requests_per_minute(self) -> int:
        if self._requests_per_minute is not None:
            return self._requests_per_minute
        return settings.X402_RATE_LIMIT_PER_IP

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    def hit(self, client_ip: str) -> Tuple[bool, Dict[str, int]]:
        """
        Count a request and decide whether it may proceed.

        Args:
            client_ip: The client's IP address

        Returns:
            Tuple of (is_allowed, stats) where stats holds limit, remaining
            and window_seconds for the response headers
        """
        limit = self.requests_per_minute
        if not client_ip or client_ip == "unknown":
            return True, self._stats(limit, 0)

        now = time.time()
        window_start = now - self._window_seconds
        self._maybe_cleanup(now)

        window = self._windows[client_ip]
        with window.lock:
            window.requests = [ts for ts in window.requests if ts > window_start]

            if len(window.requests) >= limit:
                logger.warning(
                    f"Rate limit exceeded for {client_ip}: "
                    f"{len(window.requests)}/{limit} requests in {self._window_seconds}s"
                )
                return False, self._stats(limit, len(window.requests))

            window.requests.append(now)
            return True, self._stats(limit, len(window.requests))

    def _stats(self, limit: int, used: int) -> Dict[str, int]:
        return {
            "limit": limit,
            "remaining": max(0, limit - used),
            "window_seconds": self._window_seconds,
        }

    def reset_all(self) -> None:
        """Forget all tracked requests."""
        self._windows.clear()
        logger.info("Reset all rate limits")

    def _maybe_cleanup(self, now: float) -> None:
        """Drop IPs with no requests in the window, at most every 5 minutes."""
        if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
            return

        with self._cleanup_lock:
            if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
                return

            self._last_cleanup = now
            window_start = now - self._window_seconds
            stale_ips = []

            for ip, window in list(self._windows.items()):
                with window.lock:
                    window.requests = [ts for ts in window.requests if ts > window_start]
                    if not window.requests:
                        stale_ips.append(ip)

            for ip in stale_ips:
                del self._windows[ip]

            if stale_ips:
                logger.debug(f"Cleaned up {len(stale_ips)} stale rate limit entries")


def get_rate_limit_headers(stats: Dict[str, int]) -> Dict[str, str]:
    """Build X-RateLimit-* response headers from RateLimiter.hit() stats."""
    return {
        "X-RateLimit-Limit": str(stats.get("limit", 0)),
        "X-RateLimit-Remaining": str(stats.get("remaining", 0)),
        "X-RateLimit-Reset": str(stats.get("window_seconds", 60)),
    }
