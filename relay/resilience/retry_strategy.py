"""
Reconnect backoff.

``delay(attempt) = min(base_delay * backoff_factor ** attempt, max_delay)``,
optionally spread by ``±jitter_range`` and clamped again. Delays are in
seconds, like the reconnect settings in config.yaml.
"""

from __future__ import annotations

import random
from typing import Literal

from pydantic import BaseModel, Field

PresetName = Literal["default", "aggressive", "conservative"]


class RetryConfig(BaseModel):
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    max_retries: int = Field(default=10, ge=-1)  # -1 retries forever
    backoff_factor: float = Field(default=2.0, ge=1)
    jitter: bool = True
    jitter_range: float = Field(default=0.5, ge=0, le=1)


PRESETS: dict[str, RetryConfig] = {
    "default": RetryConfig(),
    "aggressive": RetryConfig(
        base_delay=0.2, max_delay=5.0, max_retries=20, backoff_factor=1.5, jitter_range=0.3
    ),
    "conservative": RetryConfig(
        base_delay=2.0, max_delay=60.0, max_retries=5, backoff_factor=3.0, jitter_range=0.5
    ),
}


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    try:
        return config.base_delay * config.backoff_factor**attempt
    except OverflowError:
        # unlimited retries eventually push the float power past its range
        return config.max_delay


def add_jitter(delay: float, jitter_range: float = 0.5) -> float:
    return delay + random.uniform(-1, 1) * delay * jitter_range


def clamp_delay(delay: float, max_delay: float) -> float:
    return min(max(delay, 0.0), max_delay)


class RetryStrategy:
    """Exponential backoff counter; call ``reset`` after a successful connect."""

    def __init__(self, config: RetryConfig | None = None):
        self.config = config or RetryConfig()
        self.attempt = 0
        self.total_wait_time = 0.0

    def next_delay(self) -> float:
        """Return the wait before the next attempt and advance the counter."""
        delay = clamp_delay(calculate_delay(self.attempt, self.config), self.config.max_delay)
        if self.config.jitter:
            delay = clamp_delay(add_jitter(delay, self.config.jitter_range), self.config.max_delay)
        self.attempt += 1
        self.total_wait_time += delay
        return delay

    def peek_delay(self) -> float:
        """Un-jittered delay ``next_delay`` would start from; no side effects."""
        return clamp_delay(calculate_delay(self.attempt, self.config), self.config.max_delay)

    def should_retry(self) -> bool:
        return self.config.max_retries == -1 or self.attempt < self.config.max_retries

    def is_exhausted(self) -> bool:
        return not self.should_retry()

    def reset(self) -> None:
        self.attempt = 0
        self.total_wait_time = 0.0


def create_strategy(preset: PresetName = "default", **overrides: object) -> RetryStrategy:
    """Build a strategy from a named preset with optional field overrides."""
    if preset not in PRESETS:
        raise ValueError(f"Unknown retry preset '{preset}'")
    config = PRESETS[preset].model_copy(update=overrides) if overrides else PRESETS[preset]
    return RetryStrategy(config)


def create_default_strategy() -> RetryStrategy:
    return create_strategy("default")


def create_aggressive_strategy() -> RetryStrategy:
    return create_strategy("aggressive")


def create_conservative_strategy() -> RetryStrategy:
    return create_strategy("conservative")
