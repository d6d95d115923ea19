"""
Backoff policies — exponential delays for downloads and requeues.

Two users:
    - the artifact fetcher, which retries a download within a fixed
      min/max wait window;
    - the work queue, which requeues keys whose reconciliation raised,
      with a per-key failure counter that resets on success.
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_MAX_EXPONENT = 62


def exponential_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float = 0.0,
) -> float:
    """Delay before retry number ``attempt`` (1-based), capped at ``max_delay``.

    ``jitter`` is a fraction of the delay added at random (0.3 → up to +30%).
    The jittered value never exceeds ``max_delay``.
    """
    if attempt < 1:
        attempt = 1
    # 2**62 already exceeds any cap; larger exponents overflow float
    delay = min(base_delay * (2 ** min(attempt - 1, _MAX_EXPONENT)), max_delay)
    if jitter > 0:
        delay = min(delay + random.uniform(0, delay * jitter), max_delay)
    return delay


@dataclass
class RetryPolicy:
    """Bounded retry window for a single operation.

    Args:
        retries: Retries after the first attempt (0 = single attempt).
        wait_min: Delay before the first retry, in seconds.
        wait_max: Upper bound for any delay, in seconds.
    """

    retries: int = 10
    wait_min: float = 5.0
    wait_max: float = 30.0

    @property
    def attempts(self) -> int:
        return self.retries + 1

    def delay(self, attempt: int) -> float:
        return exponential_delay(attempt, self.wait_min, self.wait_max)


@dataclass
class ItemBackoff:
    """Per-key exponential backoff for failed reconciliations.

    Starts at ``base_delay`` and doubles per consecutive failure of the
    same key, up to ``max_delay``. ``forget()`` resets a key after a
    successful attempt.
    """

    base_delay: float = 0.005
    max_delay: float = 1000.0
    _failures: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def when(self, key: str) -> float:
        """Record a failure of ``key`` and return its next delay."""
        with self._lock:
            self._failures[key] = self._failures.get(key, 0) + 1
            attempt = self._failures[key]
        delay = exponential_delay(attempt, self.base_delay, self.max_delay)
        logger.debug("Backoff for '%s': attempt %d, delay %.3fs", key, attempt, delay)
        return delay

    def failures(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)
