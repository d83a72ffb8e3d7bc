from app.core.rate_limit import LoginRateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_limiter_locks_after_max_failures_and_unlocks_after_lock_period():
    clock = FakeClock()
    limiter = LoginRateLimiter(max_attempts=3, window_seconds=60, lock_seconds=120, clock=clock)

    for _ in range(3):
        assert limiter.check("admin:1.2.3.4") == 0
        limiter.register_failure("admin:1.2.3.4")

    assert limiter.check("admin:1.2.3.4") == 121
    clock.now += 121
    assert limiter.check("admin:1.2.3.4") == 0


def test_failures_outside_window_do_not_accumulate():
    clock = FakeClock()
    limiter = LoginRateLimiter(max_attempts=2, window_seconds=10, lock_seconds=60, clock=clock)

    limiter.register_failure("key")
    clock.now += 11
    limiter.register_failure("key")
    assert limiter.check("key") == 0


def test_success_resets_failures():
    clock = FakeClock()
    limiter = LoginRateLimiter(max_attempts=2, window_seconds=60, lock_seconds=60, clock=clock)

    limiter.register_failure("key")
    limiter.register_success("key")
    limiter.register_failure("key")
    assert limiter.check("key") == 0
