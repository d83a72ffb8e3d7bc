import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Lock


@dataclass
class _AttemptState:
    failures: deque[float] = field(default_factory=deque)
    lock_until: float = 0.0


class LoginRateLimiter:
    """Locks a login key after ``max_attempts`` failures inside ``window_seconds``."""

    def __init__(
        self,
        *,
        max_attempts: int,
        window_seconds: int,
        lock_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lock_seconds = lock_seconds
        self._clock = clock
        self._states: dict[str, _AttemptState] = {}
        self._lock = Lock()

    def check(self, key: str) -> int:
        """Returns retry-after seconds when blocked, otherwise 0."""
        now = self._clock()
        with self._lock:
            state = self._states.get(key)
            if state is None:
                return 0
            self._prune(state, now)
            if state.lock_until > now:
                return int(state.lock_until - now) + 1
            if not state.failures:
                self._states.pop(key, None)
            return 0

    def register_failure(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            state = self._states.setdefault(key, _AttemptState())
            self._prune(state, now)
            state.failures.append(now)
            if len(state.failures) >= self.max_attempts:
                state.lock_until = now + self.lock_seconds
                state.failures.clear()

    def register_success(self, key: str) -> None:
        with self._lock:
            self._states.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._states.clear()

    def _prune(self, state: _AttemptState, now: float) -> None:
        cutoff = now - self.window_seconds
        while state.failures and state.failures[0] < cutoff:
            state.failures.popleft()
