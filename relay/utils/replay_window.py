"""
Quote Replay Window

Spent-set of enclave quotes, bounded in both time and size.

REPLAY KEY:
    (enclave public key, intent scope, timestamp_ms, subject)

The timestamp alone can collide (two users priced in the same millisecond),
so it is paired with the signing key and the quote's subject identifiers.

WINDOW:
    A quote is only accepted while
        now - validity_ms <= timestamp_ms <= now + future_skew_ms
    Anything older is StaleQuote, so a key can be evicted as soon as its
    quote has aged out: an evicted key can never be presented again.

CAPACITY:
    If the set is full of still-live keys, new quotes are refused with
    ReplayCapacityExceeded rather than evicting a live key early.

check_and_mark() is atomic under a lock: of N concurrent callers presenting
the same quote, exactly one succeeds.
"""

import heapq
import threading
import time
from typing import Callable, Dict, List, Tuple

from relay.config import QUOTE_FUTURE_SKEW_MS, QUOTE_VALIDITY_MS, REPLAY_WINDOW_CAPACITY
from relay.utils.errors import ReplayCapacityExceeded, ReplayedQuote, StaleQuote

ReplayKey = Tuple[str, int, int, str]


def _now_ms() -> int:
    return int(time.time() * 1000)


class ReplayWindow:
    """Fixed-capacity spent-set with expiry."""

    def __init__(
        self,
        validity_ms: int = QUOTE_VALIDITY_MS,
        future_skew_ms: int = QUOTE_FUTURE_SKEW_MS,
        capacity: int = REPLAY_WINDOW_CAPACITY,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        if capacity <= 0:
            raise ValueError("Replay window capacity must be positive")
        self.validity_ms = validity_ms
        self.future_skew_ms = future_skew_ms
        self.capacity = capacity
        self._clock_ms = clock_ms

        self._spent: Dict[ReplayKey, int] = {}       # key -> expires_at_ms
        self._expiry: List[Tuple[int, ReplayKey]] = []  # min-heap of (expires_at_ms, key)
        self._lock = threading.Lock()

    def check_and_mark(self, key: ReplayKey, timestamp_ms: int) -> None:
        """
        Atomically reject a stale or already-seen quote, else mark it spent.

        Raises:
            StaleQuote: timestamp outside the validity window
            ReplayedQuote: key already spent
            ReplayCapacityExceeded: window full of live keys
        """
        with self._lock:
            now = self._clock_ms()

            if timestamp_ms < now - self.validity_ms:
                raise StaleQuote(
                    f"Quote timestamp {timestamp_ms} is older than the {self.validity_ms}ms validity window",
                    extra={"timestamp_ms": timestamp_ms, "now_ms": now},
                )
            if timestamp_ms > now + self.future_skew_ms:
                raise StaleQuote(
                    f"Quote timestamp {timestamp_ms} is more than {self.future_skew_ms}ms in the future",
                    extra={"timestamp_ms": timestamp_ms, "now_ms": now},
                )

            self._evict_expired(now)

            if key in self._spent:
                raise ReplayedQuote(
                    f"Quote at {timestamp_ms} for {key[3]} was already used",
                    extra={"timestamp_ms": timestamp_ms},
                )

            if len(self._spent) >= self.capacity:
                raise ReplayCapacityExceeded(
                    f"Replay window is full ({self.capacity} live quotes); retry shortly"
                )

            expires_at = timestamp_ms + self.validity_ms
            self._spent[key] = expires_at
            heapq.heappush(self._expiry, (expires_at, key))

    def is_spent(self, key: ReplayKey) -> bool:
        with self._lock:
            self._evict_expired(self._clock_ms())
            return key in self._spent

    def __len__(self) -> int:
        with self._lock:
            return len(self._spent)

    def _evict_expired(self, now: int) -> None:
        # A key expires once its quote would be rejected as stale anyway
        while self._expiry and self._expiry[0][0] < now:
            _, key = heapq.heappop(self._expiry)
            self._spent.pop(key, None)
