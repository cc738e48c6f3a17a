"""
Rate limiting for aigate.

Caps how many model calls (and tokens) one identity can make per window,
protecting against runaway costs.

Windows are fixed, wall-clock based: the first request of an identity opens
a window and every request until ``window_seconds`` later counts against
it. A burst straddling two windows can therefore reach twice the ceiling;
this is a known limitation of fixed windows, kept for its simplicity.
"""

import math
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional

from aigate.models import RateLimitDecision, RateLimitWindow


@dataclass
class RateLimitConfig:
    """Rate limit configuration."""
    max_requests: int = 50
    window_seconds: float = 3600.0
    max_tokens: Optional[int] = None  # per window; None means unlimited


class RateLimiter:
    """
    Fixed-window rate limiter keyed by identity (user or client).

    Never raises: an unknown identity is simply an unused one.

    Example:
        ```python
        limiter = RateLimiter(RateLimitConfig(max_requests=50, window_seconds=3600))

        if not limiter.check_rate_limit("user_123"):
            return 429
        ```
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize rate limiter.

        Args:
            config: Rate limit configuration. Uses defaults if not provided.
            clock: Time source in epoch seconds.
        """
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._lock = Lock()
        self._windows: dict[str, RateLimitWindow] = {}

    def _expired(self, window: RateLimitWindow, now: float) -> bool:
        return now - window.window_start > self.config.window_seconds

    def check(self, identity: str, tokens: int = 0) -> RateLimitDecision:
        """
        Check if a request is allowed and count it if so.

        Args:
            identity: User or client identifier
            tokens: Estimated tokens the request will consume

        Returns:
            RateLimitDecision. A rejection leaves the window untouched.
        """
        with self._lock:
            now = self._clock()
            window = self._windows.get(identity)

            if window is None or self._expired(window, now):
                window = RateLimitWindow(identity=identity, window_start=now)
                self._windows[identity] = window

            reset_at = window.window_start + self.config.window_seconds
            requests_ok = window.request_count < self.config.max_requests
            tokens_ok = (
                self.config.max_tokens is None
                or window.token_count + tokens <= self.config.max_tokens
            )

            if requests_ok and tokens_ok:
                window.request_count += 1
                window.token_count += max(0, tokens)
                return RateLimitDecision(
                    allowed=True,
                    identity=identity,
                    limit=self.config.max_requests,
                    remaining=self.config.max_requests - window.request_count,
                    reset_at=reset_at,
                )

            return RateLimitDecision(
                allowed=False,
                identity=identity,
                limit=self.config.max_requests,
                remaining=max(0, self.config.max_requests - window.request_count),
                reset_at=reset_at,
                retry_after_seconds=max(1, math.ceil(reset_at - now)),
            )

    def check_rate_limit(self, identity: str, tokens: int = 0) -> bool:
        """Return True if the request is allowed (and count it)."""
        return self.check(identity, tokens).allowed

    def record_tokens(self, identity: str, tokens: int) -> None:
        """
        Add actual token usage after a call completed.

        Usage for an identity without a live window is dropped.
        """
        if tokens <= 0:
            return
        with self._lock:
            window = self._windows.get(identity)
            if window is not None and not self._expired(window, self._clock()):
                window.token_count += tokens

    def get_usage(self, identity: str) -> dict:
        """
        Get current usage statistics for an identity.

        Args:
            identity: User or client identifier

        Returns:
            Dictionary with usage stats
        """
        with self._lock:
            now = self._clock()
            window = self._windows.get(identity)
            if window is None or self._expired(window, now):
                return {
                    "identity": identity,
                    "requests": 0,
                    "tokens": 0,
                    "remaining": self.config.max_requests,
                    "reset_at": None,
                    "window_time_left": 0,
                }
            reset_at = window.window_start + self.config.window_seconds
            return {
                "identity": identity,
                "requests": window.request_count,
                "tokens": window.token_count,
                "remaining": self.config.max_requests - window.request_count,
                "reset_at": reset_at,
                "window_time_left": max(0.0, reset_at - now),
            }

    def get_global_stats(self, top_n: int = 10) -> dict:
        """Totals across all live windows plus the heaviest users."""
        with self._lock:
            now = self._clock()
            live = [w for w in self._windows.values() if not self._expired(w, now)]
        top = sorted(live, key=lambda w: w.request_count, reverse=True)[:top_n]
        return {
            "total_entries": len(live),
            "total_requests": sum(w.request_count for w in live),
            "total_tokens": sum(w.token_count for w in live),
            "max_requests": self.config.max_requests,
            "window_seconds": self.config.window_seconds,
            "top_users": [
                {"identity": w.identity, "requests": w.request_count, "tokens": w.token_count}
                for w in top
            ],
        }

    def cleanup(self) -> int:
        """Drop expired windows. Returns the number dropped."""
        with self._lock:
            now = self._clock()
            stale = [k for k, w in self._windows.items() if self._expired(w, now)]
            for key in stale:
                del self._windows[key]
            return len(stale)

    def reset(self, identity: Optional[str] = None) -> None:
        """
        Reset rate limits for an identity or all identities.

        Args:
            identity: Identity to reset, or None for all
        """
        with self._lock:
            if identity:
                self._windows.pop(identity, None)
            else:
                self._windows.clear()
