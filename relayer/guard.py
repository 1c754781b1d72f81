"""Pre-execution policy checks."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from .config import GuardConfig
from .models import Budget, Operation


@dataclass(frozen=True)
class GuardDecision:
    passed: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "GuardDecision":
        return cls(passed=True)

    @classmethod
    def reject(cls, reason: str) -> "GuardDecision":
        return cls(passed=False, reason=reason)


class RateLimiter:
    """Sliding window rate limiter keyed by principal."""

    def __init__(self, limit: int, window_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: Dict[str, Deque[float]] = defaultdict(deque)

    def allow(self, key: str) -> bool:
        if self._limit <= 0:
            return True
        now = self._clock()
        window_start = now - self._window
        with self._lock:
            bucket = self._buckets[key]
            while bucket and bucket[0] <= window_start:
                bucket.popleft()
            if len(bucket) >= self._limit:
                return False
            bucket.append(now)
            return True

    def remaining(self, key: str) -> int:
        if self._limit <= 0:
            return -1
        window_start = self._clock() - self._window
        with self._lock:
            used = sum(1 for stamp in self._buckets.get(key, ()) if stamp > window_start)
        return max(0, self._limit - used)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


class SecurityGuard:
    """Allow-list, rate limit, payload rules and cost ceilings.

    The allow-list runs first since it is the cheapest and most common
    rejection. The rate limiter runs last so requests refused by another rule
    do not consume a slot in the principal's window.
    """

    def __init__(self, config: GuardConfig, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._allowed = {policy.target: set(policy.selectors) for policy in config.allowed_targets}
        self._limiter = RateLimiter(config.rate_limit, config.rate_window_seconds, clock=clock)

    @property
    def config(self) -> GuardConfig:
        return self._config

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._limiter

    def check(self, operation: Operation, principal: Optional[str] = None) -> GuardDecision:
        principal = principal or operation.principal
        selector = operation.selector

        if self._allowed:
            selectors = self._allowed.get(operation.target)
            if selectors is None:
                return GuardDecision.reject("target_not_allowed")
            if selectors and selector not in selectors:
                return GuardDecision.reject("selector_not_allowed")

        if selector is not None and selector in self._config.blocked_selectors:
            return GuardDecision.reject("blocked_selector")
        if self._config.blocked_patterns:
            payload_hex = operation.payload.hex()
            for pattern in self._config.blocked_patterns:
                if pattern in payload_hex:
                    return GuardDecision.reject("blocked_pattern")

        if operation.gas > self._config.max_gas:
            return GuardDecision.reject("gas_ceiling")
        # value is paid from the relayer's own account.
        if self._config.max_value_wei is not None and operation.value > self._config.max_value_wei:
            return GuardDecision.reject("value_ceiling")

        if not self._limiter.allow(principal):
            return GuardDecision.reject("rate_limited")
        return GuardDecision.ok()

    def check_budget(self, budget: Budget) -> GuardDecision:
        if budget.limit > self._config.max_gas:
            return GuardDecision.reject("gas_ceiling")
        if self._config.max_cost_wei is not None and budget.max_cost > self._config.max_cost_wei:
            return GuardDecision.reject("cost_ceiling")
        return GuardDecision.ok()

    def reset(self) -> None:
        self._limiter.reset()
