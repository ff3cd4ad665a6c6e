"""Exponential backoff with cap and jitter."""

import random
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Delay schedule ``initial * multiplier ** attempt``, capped at ``maximum``.
    Each delay is spread by +/- ``jitter`` (a fraction of the delay).
    """

    initial: float = 0.5
    multiplier: float = 2.0
    maximum: float = 4.0
    jitter: float = 0.1

    def base_delay(self, attempt: int) -> float:
        return min(self.maximum, self.initial * self.multiplier ** min(attempt, 64))

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        base = self.base_delay(attempt)
        if not self.jitter:
            return base
        rng = rng or random
        return max(0.0, base * (1.0 + rng.uniform(-self.jitter, self.jitter)))

    def max_attempts(self, timeout: float) -> int:
        """Upper bound on attempts that fit in ``timeout`` seconds.

        The first attempt is immediate; each later one waits at least the
        jitter-reduced delay.
        """
        floor = 1.0 - self.jitter
        if floor <= 0 or self.initial <= 0:
            raise ValueError("backoff must have a positive minimum delay")
        attempts, elapsed = 1, 0.0
        while True:
            elapsed += self.base_delay(attempts - 1) * floor
            if elapsed > timeout:
                return attempts
            attempts += 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackoffPolicy":
        known = {"initial", "multiplier", "maximum", "jitter"}
        return cls(**{k: float(v) for k, v in data.items() if k in known})
