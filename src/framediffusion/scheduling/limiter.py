"""System-wide cap on simultaneous render requests."""

import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class Permit:
    """One slot of a :class:`ConcurrencyLimiter`.

    Owned by exactly one dispatch attempt. Releasing twice is a no-op.
    """

    def __init__(self, limiter: "ConcurrencyLimiter"):
        self._limiter = limiter
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._limiter._release()

    def __enter__(self) -> "Permit":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class ConcurrencyLimiter:
    """Counting semaphore bounding in-flight renders across all workers.

    Tracks the number of permits in use and the peak for reporting.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"Limiter capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self._in_use = 0
        self._peak = 0
        self._condition = threading.Condition()

    @property
    def in_use(self) -> int:
        with self._condition:
            return self._in_use

    @property
    def peak(self) -> int:
        with self._condition:
            return self._peak

    def acquire(self, timeout: Optional[float] = None) -> Optional[Permit]:
        """Block until a slot is free.

        Returns:
            A permit, or None if ``timeout`` elapsed first
        """
        with self._condition:
            if not self._condition.wait_for(lambda: self._in_use < self.capacity, timeout):
                return None
            self._in_use += 1
            self._peak = max(self._peak, self._in_use)
        return Permit(self)

    def _release(self) -> None:
        with self._condition:
            if self._in_use == 0:
                logger.error("Concurrency limiter released more permits than acquired")
                return
            self._in_use -= 1
            self._condition.notify()
