"""Shared minimum-interval gate for calls to the language model."""
import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Spaces calls at least min_interval seconds apart across threads.

    Each caller reserves the next free slot under the lock and sleeps until
    that slot outside of it, so no lock is held while waiting.
    """

    def __init__(
        self,
        min_interval: float = 1.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call = None

    def acquire(self) -> float:
        """
        Block until the caller may proceed.

        Returns:
            Seconds the caller waited
        """
        with self._lock:
            now = self._clock()
            if self._last_call is None:
                slot = now
            else:
                slot = max(now, self._last_call + self.min_interval)
            self._last_call = slot

        wait = slot - now
        if wait > 0:
            logger.debug(f"Rate limit: waiting {wait:.2f}s before AI call")
            self._sleep(wait)
        return wait
