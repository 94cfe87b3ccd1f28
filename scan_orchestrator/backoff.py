"""Retry backoff policy."""

import random
from typing import Callable, Optional

# 2 ** 62 seconds is far beyond any sensible cap
_MAX_EXPONENT = 62


class BackoffPolicy:
    """
    Exponential backoff with additive jitter and a hard cap.

    ``delay(attempt) = min(base * 2**attempt + U(0, base), cap)``

    Each exponential step grows the delay by at least ``base`` while the
    jitter never exceeds ``base``, so the delay is non-decreasing in
    ``attempt`` for any jitter draw and never exceeds ``cap``.

    Example:
        ```python
        policy = BackoffPolicy(base_seconds=2, cap_seconds=300)
        policy.delay(0)  # somewhere in [2, 4)
        policy.delay(10)  # 300
        ```
    """

    def __init__(
        self,
        base_seconds: float = 2.0,
        cap_seconds: float = 300.0,
        jitter: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the policy.

        Args:
            base_seconds: Delay for attempt 0 and the maximum jitter
            cap_seconds: Upper bound for any delay
            jitter: Callable returning a value in [0, 1); defaults to random.random
        """
        if base_seconds < 0:
            raise ValueError("base_seconds must be >= 0")
        if cap_seconds < base_seconds:
            raise ValueError("cap_seconds must be >= base_seconds")
        self.base_seconds = float(base_seconds)
        self.cap_seconds = float(cap_seconds)
        self._jitter = jitter or random.random

    def delay(self, attempt: int) -> float:
        """Return the retry delay in seconds for a zero-based attempt count."""
        if attempt < 0:
            raise ValueError("attempt must be >= 0")

        exponent = min(attempt, _MAX_EXPONENT)
        exponential = self.base_seconds * (2**exponent)
        if exponential >= self.cap_seconds:
            return self.cap_seconds

        jitter = self.base_seconds * min(max(self._jitter(), 0.0), 1.0)
        return min(exponential + jitter, self.cap_seconds)

    def __call__(self, attempt: int) -> float:
        return self.delay(attempt)

    def __repr__(self) -> str:
        return f"BackoffPolicy(base_seconds={self.base_seconds}, cap_seconds={self.cap_seconds})"
