"""Tests for bounded polling."""

from provisioner.polling import wait_until


class FakeClock:
    """Monotonic clock that only moves when slept on."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TestWaitUntil:
    """Tests for wait_until."""

    def test_immediate_success(self) -> None:
        """Test that a passing check never sleeps."""
        clock = FakeClock()

        assert wait_until(lambda: True, timeout=10, interval=2, clock=clock, sleep=clock.sleep)
        assert clock.sleeps == []

    def test_success_after_polls(self) -> None:
        """Test that the check is repeated at the interval."""
        clock = FakeClock()
        results = iter([False, False, True])

        passed = wait_until(
            lambda: next(results), timeout=10, interval=2, clock=clock, sleep=clock.sleep
        )

        assert passed
        assert clock.sleeps == [2, 2]

    def test_timeout(self) -> None:
        """Test that the deadline bounds the number of checks."""
        clock = FakeClock()
        calls = []

        def check() -> bool:
            calls.append(clock.now)
            return False

        passed = wait_until(check, timeout=5, interval=2, clock=clock, sleep=clock.sleep)

        assert not passed
        assert calls == [0, 2, 4, 5]
        assert clock.sleeps == [2, 2, 1]

    def test_zero_timeout_checks_once(self) -> None:
        """Test that a zero timeout still checks once."""
        clock = FakeClock()
        calls = []

        def check() -> bool:
            calls.append(1)
            return False

        assert not wait_until(check, timeout=0, interval=1, clock=clock, sleep=clock.sleep)
        assert calls == [1]
