import threading
import time
from typing import Callable, Optional
from loguru import logger


class CallBudget:
    """
    Fixed-window call budget for hosted model requests.

    The window opens on the first acquire and resets explicitly at
    ``reset_at``. The clock is injected so tests can fast-forward time.
    All mutation happens under one lock; concurrent documents cannot
    overspend a window.
    """

    def __init__(
        self,
        max_calls: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._used = 0
        self._reset_at: Optional[float] = None

    def _roll_window(self, now: float) -> None:
        if self._reset_at is None or now >= self._reset_at:
            self._used = 0
            self._reset_at = now + self.window_seconds

    def try_acquire(self) -> bool:
        """Consume one call if the current window has room"""
        with self._lock:
            self._roll_window(self._clock())
            if self._used >= self.max_calls:
                logger.warning("AI call budget exhausted", max_calls=self.max_calls, reset_at=self._reset_at)
                return False
            self._used += 1
            return True

    def remaining(self) -> int:
        with self._lock:
            self._roll_window(self._clock())
            return max(self.max_calls - self._used, 0)

    @property
    def reset_at(self) -> Optional[float]:
        return self._reset_at
