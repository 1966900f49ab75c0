import logging
import threading
import time
from collections import deque
from functools import wraps

logger = logging.getLogger(__name__)


class RequestRateLimiter:
    """
    Keeps calls to the AI service under its per-minute quota.

    Start times of recent calls are kept in a sliding window. A caller that
    would exceed `requests_per_minute` inside the window is held until the
    oldest start ages out.

    Args:
        requests_per_minute (int): Calls allowed per window.
        window_seconds (float): Window length, 60 for a per-minute quota.
    """

    def __init__(self, requests_per_minute=10, window_seconds=60.0):
        self.requests_per_minute = requests_per_minute
        self.window_seconds = window_seconds
        self._starts = deque()
        self._lock = threading.Lock()

    @property
    def recent_starts(self):
        """Start times still inside the window, oldest first."""
        return list(self._starts)

    def _prune(self, now):
        cutoff = now - self.window_seconds
        while self._starts and self._starts[0] <= cutoff:
            self._starts.popleft()

    def _delay(self, now):
        if len(self._starts) < self.requests_per_minute:
            return 0.0
        return max(0.0, self._starts[0] + self.window_seconds - now)

    def acquire(self):
        """
        Blocks until a call may start and records its start.

        Returns:
            float: Seconds spent waiting.
        """
        with self._lock:
            now = time.time()
            self._prune(now)
            delay = self._delay(now)
            if delay:
                logger.info(f"AI request quota of {self.requests_per_minute}/window used up, holding for {delay:.2f}s")
                time.sleep(delay)
                now = time.time()
                self._prune(now)
            self._starts.append(now)
            return delay

    def rate_limited(self, func):
        """Decorator form of `acquire()`."""
        @wraps(func)
        def wrapper(*args, **kwargs):
            self.acquire()
            return func(*args, **kwargs)
        return wrapper
