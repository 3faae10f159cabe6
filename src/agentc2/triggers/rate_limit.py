"""Fixed-window rate limiting keyed by caller."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: float = 60.0


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float


RATE_LIMIT_POLICIES: dict[str, RateLimitPolicy] = {
    "webhook": RateLimitPolicy(limit=60),
    "chat": RateLimitPolicy(limit=30),
    "org_mutation": RateLimitPolicy(limit=20),
    "public_chat": RateLimitPolicy(limit=10),
}


class RateLimiter:
    """In-memory fixed windows per key.

    The first hit on a key opens a window. Hits are allowed until the
    count reaches the policy limit, then rejected until the window ends.
    """

    def __init__(self, clock=time.monotonic, prune_every: int = 500) -> None:
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()
        self._prune_every = prune_every
        self._checks = 0

    def check(self, key: str, policy: RateLimitPolicy | str) -> RateLimitResult:
        if isinstance(policy, str):
            policy = RATE_LIMIT_POLICIES[policy]

        now = self._clock()
        with self._lock:
            self._checks += 1
            if self._checks % self._prune_every == 0:
                self._prune(now)

            reset_at, count = self._windows.get(key, (0.0, 0))
            if now >= reset_at:
                reset_at, count = now + policy.window_seconds, 0

            if count >= policy.limit:
                self._windows[key] = (reset_at, count)
                return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)

            count += 1
            self._windows[key] = (reset_at, count)
            return RateLimitResult(
                allowed=True, remaining=policy.limit - count, reset_at=reset_at
            )

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    def _prune(self, now: float) -> None:
        for key in [k for k, (reset_at, _) in self._windows.items() if reset_at <= now]:
            del self._windows[key]
