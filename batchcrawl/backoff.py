from __future__ import annotations

import random
from typing import Dict, Optional

from .models import ErrorType

# Rate-limited targets get a longer floor than plain network trouble.
ERROR_TYPE_MULTIPLIERS: Dict[ErrorType, float] = {
    ErrorType.RATE_LIMITED: 4.0,
}


class BackoffStrategy:
    """Exponential backoff with jitter for retry delays.

    Computes the delay as base * 2^(attempt-1), scaled per error type, plus
    random jitter of up to ``jitter_ratio`` of that value. The result is
    capped at ``max_seconds`` after the jitter is added, so delays never
    decrease as the attempt number grows."""

    def __init__(
        self,
        base_seconds: float = 5.0,
        max_seconds: float = 300.0,
        jitter_ratio: float = 0.1,
    ) -> None:
        self._base = base_seconds
        self._max = max_seconds
        self._jitter_ratio = max(0.0, jitter_ratio)

    @property
    def max_seconds(self) -> float:
        return self._max

    def get_sleep(self, attempt: int, error_type: Optional[ErrorType] = None) -> float:
        """Calculate the backoff sleep duration in seconds for a given retry attempt."""
        multiplier = ERROR_TYPE_MULTIPLIERS.get(error_type, 1.0) if error_type else 1.0
        exp = min(self._max, self._base * multiplier * (2 ** max(attempt - 1, 0)))
        jitter = random.uniform(0, exp * self._jitter_ratio) if self._jitter_ratio else 0.0
        return min(self._max, exp + jitter)
