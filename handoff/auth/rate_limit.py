from __future__ import annotations

import threading
import time
from collections import defaultdict
from typing import Callable, Dict, List, Tuple


class RateLimiter:
    """
    Simple in-memory limiter for failed handoff attempts.

    Tracks failures per identifier (client address). Once `max_attempts` failures
    fall inside `window_seconds`, further attempts are refused until they age out.
    """

    def __init__(self, max_attempts: int = 10, window_seconds: float = 300, clock: Callable[[], float] = time.time):
        self._attempts: Dict[str, List[float]] = defaultdict(list)
        self._max_attempts = max_attempts
        self._window = float(window_seconds)
        self._clock = clock
        self._lock = threading.Lock()

    def _prune_locked(self, identifier: str, now: float) -> List[float]:
        recent = [t for t in self._attempts.get(identifier, []) if now - t < self._window]
        if recent:
            self._attempts[identifier] = recent
        else:
            self._attempts.pop(identifier, None)
        return recent

    def is_limited(self, identifier: str) -> bool:
        with self._lock:
            return len(self._prune_locked(identifier, self._clock())) >= self._max_attempts

    def record_failure(self, identifier: str) -> Tuple[bool, int]:
        """
        Record a failed attempt.

        Returns:
            Tuple of (is_allowed, attempts_remaining) after recording.
        """
        with self._lock:
            now = self._clock()
            recent = self._prune_locked(identifier, now)
            if len(recent) >= self._max_attempts:
                return False, 0
            self._attempts[identifier].append(now)
            remaining = self._max_attempts - len(self._attempts[identifier])
            return remaining > 0, remaining
