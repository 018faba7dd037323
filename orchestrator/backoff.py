"""
Retry backoff.

    delay(attempt) = min(2^attempt * base_delay_seconds * jitter, max_delay_seconds)
    jitter ~ U[0.75, 1.25]

With the default 30s base:
    attempt 1 →  45..75s
    attempt 2 →  90..150s
    attempt 3 → 180..300s
    attempt 4 → 360..600s

The jitter is drawn per call so that a batch of jobs failing together
(e.g., a downstream API outage) doesn't come back as one synchronized wave.

The cap (one day by default) keeps long retry budgets schedulable: without
it, attempt 32 is already past any datetime the database can store.
"""

import random
from typing import Optional

DEFAULT_MAX_DELAY_SECONDS = 24 * 60 * 60


class BackoffPolicy:

    def __init__(
        self,
        base_delay_seconds: int = 30,
        jitter_low: float = 0.75,
        jitter_high: float = 1.25,
        rng: Optional[random.Random] = None,
        max_delay_seconds: int = DEFAULT_MAX_DELAY_SECONDS,
    ):
        if base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be positive")
        if not 0 < jitter_low <= jitter_high:
            raise ValueError("jitter bounds must satisfy 0 < low <= high")
        if max_delay_seconds < 1:
            raise ValueError("max_delay_seconds must be >= 1")
        self.base_delay_seconds = base_delay_seconds
        self.jitter_low = jitter_low
        self.jitter_high = jitter_high
        self.max_delay_seconds = max_delay_seconds
        self._rng = rng or random.Random()

    def delay(self, attempt: int) -> int:
        """Seconds to wait before the next attempt, after `attempt` failed attempts."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        jitter = self._rng.uniform(self.jitter_low, self.jitter_high)
        # integer math first: 2**attempt for large attempts doesn't fit a float
        exponential = min(
            (2 ** attempt) * self.base_delay_seconds,
            int(self.max_delay_seconds / self.jitter_low) + 1,
        )
        seconds = int(exponential * jitter)
        return max(1, min(seconds, self.max_delay_seconds))
