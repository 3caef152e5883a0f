"""
Rate Limiter module for the ENS gateway.

This module provides sliding-window request limits for HTTP clients:
- Per-client limits keyed by the client address
- An optional global limit shared by every client
- Optional minimum spacing between requests of the same key

Checks and bookkeeping never await, so they are atomic on the event loop.
"""

import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Optional

from ens_gateway.config import RateLimitConfig, RateLimitRule


@dataclass
class RateLimitStatus:
    """Result of a rate limit check."""

    allowed: bool
    wait_seconds: float
    reason: Optional[str] = None
    limit: Optional[int] = None
    remaining: Optional[int] = None


class RateLimiter:
    """
    Sliding-window rate limiter.

    Ensures:
    - Request counts per client stay within the configured window
    - The global request count stays within its window
    - Keys whose window is empty are swept at most once per window, so
      clients that never return do not accumulate
    """

    def __init__(
        self,
        config: RateLimitConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the rate limiter.

        Args:
            config: Rate limit configuration with per-client and global limits
            clock: Monotonic time source (injectable for tests)
        """
        self._config = config
        self._clock = clock
        # Track request timestamps per key (client:<id>, global)
        self._request_times: dict[str, list[float]] = defaultdict(list)
        self._last_sweep = clock()

    @property
    def enabled(self) -> bool:
        return self._config.per_client is not None or self._config.global_limit is not None

    def hit(self, client_id: str) -> RateLimitStatus:
        """
        Check the limits for ``client_id`` and record the request if allowed.

        Args:
            client_id: Identifier of the caller (usually its IP address)

        Returns:
            RateLimitStatus; when not allowed nothing is recorded
        """
        self._sweep_if_due()
        status = self.check(client_id)
        if status.allowed:
            self.record_request(client_id)
            if status.remaining is not None:
                status.remaining = max(0, status.remaining - 1)
        return status

    def check(self, client_id: str) -> RateLimitStatus:
        """
        Calculate whether a request from ``client_id`` may proceed.

        Returns:
            RateLimitStatus with the longest wait among the applicable rules
        """
        current_time = self._clock()
        max_wait = 0.0
        wait_reason = None
        limit = None
        remaining = None

        if self._config.per_client:
            key = f"client:{client_id}"
            rule = self._config.per_client
            wait, reason = self._check_rule(key, rule, current_time)
            limit = rule.max_requests
            remaining = max(0, rule.max_requests - len(self._request_times.get(key, ())))
            if wait > max_wait:
                max_wait = wait
                wait_reason = reason

        if self._config.global_limit:
            wait, reason = self._check_rule("global", self._config.global_limit, current_time)
            if wait > max_wait:
                max_wait = wait
                wait_reason = reason

        return RateLimitStatus(
            allowed=max_wait <= 0,
            wait_seconds=max_wait,
            reason=wait_reason,
            limit=limit,
            remaining=remaining,
        )

    def _check_rule(
        self, key: str, rule: RateLimitRule, current_time: float
    ) -> tuple[float, Optional[str]]:
        """
        Check a single rate limit rule and calculate wait time if needed.

        Args:
            key: The tracking key for this rule
            rule: The rate limit rule to check
            current_time: Current monotonic time

        Returns:
            Tuple of (wait_seconds, reason)
        """
        window_start = current_time - rule.window_seconds
        recent = [t for t in self._request_times.get(key, ()) if t > window_start]
        if recent:
            self._request_times[key] = recent
        else:
            self._request_times.pop(key, None)

        request_count = len(recent)

        if request_count >= rule.max_requests:
            oldest_request = min(recent)
            wait_seconds = min(
                rule.window_seconds,
                max(0.0, oldest_request + rule.window_seconds - current_time),
            )
            return wait_seconds, f"Rate limit reached for {key}: {request_count}/{rule.max_requests}"

        if rule.min_delay_seconds > 0 and recent:
            time_since_last = current_time - max(recent)
            if time_since_last < rule.min_delay_seconds:
                return rule.min_delay_seconds - time_since_last, f"Minimum delay for {key}"

        return 0.0, None

    def record_request(self, client_id: str) -> None:
        """
        Record that a request was admitted.

        Args:
            client_id: Identifier of the caller
        """
        current_time = self._clock()

        if self._config.per_client:
            self._request_times[f"client:{client_id}"].append(current_time)

        if self._config.global_limit:
            self._request_times["global"].append(current_time)

    def sweep(self) -> int:
        """
        Drop every key whose newest request has left its window.

        Returns:
            Number of keys removed
        """
        current_time = self._clock()
        self._last_sweep = current_time
        expired = [
            key for key, times in self._request_times.items()
            if not times or max(times) <= current_time - self._window_for(key)
        ]
        for key in expired:
            del self._request_times[key]
        return len(expired)

    def _sweep_if_due(self) -> None:
        windows = [
            rule.window_seconds
            for rule in (self._config.per_client, self._config.global_limit)
            if rule is not None
        ]
        if windows and self._clock() - self._last_sweep >= max(windows):
            self.sweep()

    def _window_for(self, key: str) -> float:
        rule = self._config.global_limit if key == "global" else self._config.per_client
        return rule.window_seconds if rule is not None else 0.0

    def tracked_clients(self) -> int:
        """Number of client keys currently holding request history."""
        return sum(1 for key in self._request_times if key.startswith("client:"))
