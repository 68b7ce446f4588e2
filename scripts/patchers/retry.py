"""
retry.py — Bounded retry with a fixed delay between attempts.
"""

import time


class RetryPolicy:
    """Call `fn(attempt)` until it returns truthy or attempts run out.

    `fn` receives the 1-based attempt number. No backoff growth: the same
    `delay` is slept between attempts, never after the last one.
    """

    def __init__(self, max_attempts=3, delay=1.0, sleep=time.sleep):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self.delay = delay
        self._sleep = sleep

    def run(self, fn):
        """Return (last_result, attempts_used)."""
        result = None
        for attempt in range(1, self.max_attempts + 1):
            result = fn(attempt)
            if result:
                return result, attempt
            if attempt < self.max_attempts and self.delay > 0:
                self._sleep(self.delay)
        return result, self.max_attempts
