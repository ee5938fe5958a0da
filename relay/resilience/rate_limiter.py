"""
Token-bucket rate limiting.

Refill is lazy: tokens are topped up from elapsed wall-clock time whenever
the bucket is touched, so no timer is needed. Times are in milliseconds.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class RateLimiterConfig(BaseModel):
    """Bucket capacity and refill of ``refill_rate`` tokens per ``refill_interval`` ms."""

    max_tokens: float = Field(gt=0)
    refill_rate: float = Field(gt=0)
    refill_interval: float = Field(default=1000, gt=0)


class RateLimiter:
    """Single token bucket."""

    def __init__(self, config: RateLimiterConfig, clock: Clock = _monotonic_ms):
        self.config = config
        self._clock = clock
        self._tokens: float = config.max_tokens
        self._last_refill: float = clock()

    @property
    def max_tokens(self) -> float:
        return self.config.max_tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        to_add = elapsed / self.config.refill_interval * self.config.refill_rate
        if to_add > 0:
            self._tokens = min(self.config.max_tokens, self._tokens + to_add)
            self._last_refill = now

    def try_consume(self, tokens: float = 1) -> bool:
        """Refill, then take ``tokens`` if available; on failure nothing changes."""
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    def can_consume(self, tokens: float = 1) -> bool:
        self._refill()
        return self._tokens >= tokens

    def get_tokens(self) -> float:
        self._refill()
        return self._tokens

    def get_wait_time(self, tokens: float = 1) -> int:
        """Milliseconds until ``tokens`` could be consumed (0 if already possible)."""
        self._refill()
        if self._tokens >= tokens:
            return 0
        deficit = tokens - self._tokens
        return math.ceil(deficit / self.config.refill_rate * self.config.refill_interval)

    def reset(self) -> None:
        self._tokens = self.config.max_tokens
        self._last_refill = self._clock()


class _ClientState:
    __slots__ = ("last_access", "limiter")

    def __init__(self, limiter: RateLimiter, last_access: float):
        self.limiter = limiter
        self.last_access = last_access


class PerClientRateLimiter:
    """
    One isolated bucket per client key, created on first access.

    Call ``cleanup`` periodically so buckets of departed clients do not
    accumulate.
    """

    def __init__(self, config: RateLimiterConfig, clock: Clock = _monotonic_ms):
        self.config = config
        self._clock = clock
        self._clients: dict[str, _ClientState] = {}

    def _get_or_create(self, client_id: str) -> RateLimiter:
        state = self._clients.get(client_id)
        now = self._clock()
        if state is None:
            state = _ClientState(RateLimiter(self.config, self._clock), now)
            self._clients[client_id] = state
        state.last_access = now
        return state.limiter

    def try_consume(self, client_id: str, tokens: float = 1) -> bool:
        return self._get_or_create(client_id).try_consume(tokens)

    def can_consume(self, client_id: str, tokens: float = 1) -> bool:
        return self._get_or_create(client_id).can_consume(tokens)

    def get_tokens(self, client_id: str) -> float:
        return self._get_or_create(client_id).get_tokens()

    def get_wait_time(self, client_id: str, tokens: float = 1) -> int:
        return self._get_or_create(client_id).get_wait_time(tokens)

    def reset(self, client_id: str | None = None) -> None:
        """Refill one client's bucket, or every bucket when no id is given."""
        if client_id is not None:
            state = self._clients.get(client_id)
            if state:
                state.limiter.reset()
            return
        for state in self._clients.values():
            state.limiter.reset()

    def remove_client(self, client_id: str) -> None:
        self._clients.pop(client_id, None)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def cleanup(self, max_idle_ms: float = 60_000) -> int:
        """Drop buckets untouched for ``max_idle_ms``; returns how many were dropped."""
        now = self._clock()
        idle = [cid for cid, state in self._clients.items() if now - state.last_access >= max_idle_ms]
        for cid in idle:
            del self._clients[cid]
        if idle:
            logger.debug("Evicted %d idle rate-limit bucket(s)", len(idle))
        return len(idle)
