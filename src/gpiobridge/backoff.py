"""Reconnect backoff policy.

Delays grow exponentially from a base delay and are capped. Jitter
spreads reconnects of several bridges sharing one broker.
"""

from __future__ import annotations

import random
from collections.abc import Callable


class BackoffPolicy:
    """Exponential backoff with multiplicative jitter.

    ``delay(attempt) = min(min(base * 2**attempt, cap) * (1 + j), cap)`` with
    ``j`` drawn from ``[0, jitter_factor]``. Because ``jitter_factor <= 1``
    a jittered delay never overtakes the next un-jittered one, so
    consecutive delays are non-decreasing and never exceed the cap.
    """

    def __init__(
        self,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 60.0,
        jitter_factor: float = 0.1,
        *,
        rng: Callable[[float, float], float] = random.uniform,
    ) -> None:
        if base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be positive")
        if max_delay_seconds < base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if not 0.0 <= jitter_factor <= 1.0:
            raise ValueError("jitter_factor must be between 0 and 1")
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter_factor = jitter_factor
        self._rng = rng

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay for *attempt* (0-indexed)."""
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        # 2**attempt grows without bound; stop doubling once the cap is reached.
        delay = self.base_delay_seconds
        for _ in range(attempt):
            delay *= 2
            if delay >= self.max_delay_seconds:
                return self.max_delay_seconds
        return min(delay, self.max_delay_seconds)

    def delay(self, attempt: int) -> float:
        """Jittered delay for *attempt* (0-indexed), never above the cap."""
        delay = self.base_delay(attempt)
        if self.jitter_factor:
            delay *= 1.0 + self._rng(0.0, self.jitter_factor)
        return min(delay, self.max_delay_seconds)

    def __repr__(self) -> str:
        return (
            f"BackoffPolicy(base_delay={self.base_delay_seconds}s, "
            f"max_delay={self.max_delay_seconds}s, "
            f"jitter_factor={self.jitter_factor})"
        )
