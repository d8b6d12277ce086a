"""Bounded exponential backoff with jitter, shared by reconnect, publish and write retries."""

from __future__ import annotations

import random


class ExponentialBackoff:
    """Delay for retry number `attempt` (1-based): min(max_delay, base_delay * 2**(attempt-1)).

    With jitter on, the delay is split in half: one half fixed, the other drawn
    uniformly, so concurrent clients do not retry in lock step but never wait
    less than half the nominal delay.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        *,
        max_attempts: int = 5,
        jitter: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        if base_delay < 0 or max_delay < 0:
            raise ValueError("delays must be >= 0")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.jitter = jitter
        self._rng = rng or random.Random()

    def nominal(self, attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        # Cap the exponent; 2**64 seconds is already past any sane max_delay.
        return min(self.max_delay, self.base_delay * (2 ** min(attempt - 1, 64)))

    def delay(self, attempt: int) -> float:
        d = self.nominal(attempt)
        if not self.jitter or d == 0:
            return d
        half = d / 2
        return half + self._rng.uniform(0, half)

    def exhausted(self, attempt: int) -> bool:
        """True once `attempt` retries have been used up."""
        return attempt >= self.max_attempts
