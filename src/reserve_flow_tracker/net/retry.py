"""Exponential backoff with jitter, modelled as plain values.

The policy is immutable configuration; the state is threaded through a
pagination loop so the whole schedule can be unit-tested without sleeping.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field

DEFAULT_INITIAL_DELAY_SECONDS = 0.3
DEFAULT_MAX_DELAY_SECONDS = 5.0
DEFAULT_JITTER_SECONDS = (0.05, 0.15)


@dataclass(frozen=True)
class BackoffPolicy:
    """Doubling delay starting at ``initial_delay``, never waiting longer than ``max_delay``."""

    initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS
    jitter: tuple[float, float] = DEFAULT_JITTER_SECONDS

    def __post_init__(self) -> None:
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("backoff delays must be >= 0")
        low, high = self.jitter
        if low < 0 or high < low:
            raise ValueError("jitter must be a non-negative (low, high) range")


@dataclass
class BackoffState:
    """Attempt counter and current delay for one retry sequence."""

    policy: BackoffPolicy = field(default_factory=BackoffPolicy)
    attempts: int = 0
    delay: float = field(init=False)

    def __post_init__(self) -> None:
        self.delay = self.policy.initial_delay

    def next_delay(self, rng: random.Random | None = None) -> float:
        """Record a failed attempt and return how long to wait before the next one."""
        self.attempts += 1
        low, high = self.policy.jitter
        jitter = (rng or random).uniform(low, high)
        wait = min(self.delay + jitter, self.policy.max_delay)
        self.delay = min(self.delay * 2, self.policy.max_delay)
        return wait

    def reset(self) -> None:
        self.attempts = 0
        self.delay = self.policy.initial_delay
