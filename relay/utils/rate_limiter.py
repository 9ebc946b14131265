"""
Per-client Rate Limiter for the Enclave Proxy

Bounds how often a single client may hit the enclave through the relay:
- N requests max per client per rolling minute (PROXY_MAX_REQUESTS_PER_MINUTE)
- Checked BEFORE the network call (the enclave is the expensive part)

Design:
- In-memory cache keyed by client id (O(1) lookups)
- Fixed window per client, reset once the window elapses
- Stale client entries are dropped when the cache grows past a bound
"""

import threading
import time
from typing import Callable, Dict, Tuple

from relay.config import PROXY_MAX_REQUESTS_PER_MINUTE

WINDOW_SECONDS = 60
MAX_TRACKED_CLIENTS = 10_000


class RateLimiter:
    """Fixed one-minute window per client, thread-safe."""

    def __init__(
        self,
        max_requests: int = PROXY_MAX_REQUESTS_PER_MINUTE,
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        # Structure: {client_id: {"count": int, "reset_at": float}}
        self._cache: Dict[str, Dict] = {}
        self._lock = threading.Lock()

    def check(self, client_id: str) -> Tuple[bool, str, Dict]:
        """
        Count one request for ``client_id``.

        Returns:
            Tuple[bool, str, Dict]: (allowed, reason, stats)
                - allowed: True if the request may proceed
                - reason: Human-readable reason for rejection (empty if allowed)
                - stats: {count, max_requests, reset_in_seconds}
        """
        with self._lock:
            now = self._clock()

            if len(self._cache) > MAX_TRACKED_CLIENTS:
                self._cache = {k: v for k, v in self._cache.items() if v["reset_at"] > now}

            entry = self._cache.get(client_id)
            if entry is None or now >= entry["reset_at"]:
                entry = {"count": 0, "reset_at": now + self.window_seconds}
                self._cache[client_id] = entry

            stats = {
                "count": entry["count"],
                "max_requests": self.max_requests,
                "reset_in_seconds": max(0, int(entry["reset_at"] - now)),
            }

            if entry["count"] >= self.max_requests:
                return (
                    False,
                    f"Rate limit reached ({self.max_requests}/min). Resets in {stats['reset_in_seconds']}s.",
                    stats,
                )

            entry["count"] += 1
            stats["count"] = entry["count"]
            return True, "", stats

    def reset(self) -> None:
        """Clear all counters (tests / operator use)."""
        with self._lock:
            self._cache.clear()
