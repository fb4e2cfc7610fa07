"""Tests for the credential attempt limiter."""

from utils.rate_limiter import RateLimiter, constant_time_equals


def make_limiter(fake_time, **kwargs):
    return RateLimiter(
        max_attempts=kwargs.pop("max_attempts", 5),
        window_ms=kwargs.pop("window_ms", 300_000),
        lockout_ms=kwargs.pop("lockout_ms", 300_000),
        record_expiry_ms=kwargs.pop("record_expiry_ms", 86_400_000),
        time_func=lambda: fake_time[0],
    )


class TestRateLimiter:
    def test_unknown_identifier_is_allowed(self):
        rl = make_limiter([0.0])
        assert rl.check("ui").allowed is True

    def test_fifth_failure_locks(self):
        fake_time = [0.0]
        rl = make_limiter(fake_time)
        for _ in range(4):
            assert rl.record_failure("ui").allowed is True

        decision = rl.record_failure("ui")
        assert decision.allowed is False
        assert decision.retry_after_ms == 300_000
        assert rl.check("ui").allowed is False

    def test_retry_after_counts_down(self):
        fake_time = [0.0]
        rl = make_limiter(fake_time, max_attempts=1)
        rl.record_failure("ui")

        fake_time[0] = 100.0
        assert rl.check("ui").retry_after_ms == 200_000

    def test_lockout_expires(self):
        fake_time = [0.0]
        rl = make_limiter(fake_time, max_attempts=1)
        rl.record_failure("ui")

        fake_time[0] = 300.0
        assert rl.check("ui").allowed is True
        assert rl.get("ui") is None

    def test_window_expiry_resets_count(self):
        fake_time = [0.0]
        rl = make_limiter(fake_time, max_attempts=3, window_ms=10_000)
        rl.record_failure("ui")
        rl.record_failure("ui")

        fake_time[0] = 10.0
        assert rl.record_failure("ui").allowed is True
        assert rl.get("ui").count == 1

    def test_identifiers_are_independent(self):
        rl = make_limiter([0.0], max_attempts=1)
        rl.record_failure("a")
        assert rl.check("a").allowed is False
        assert rl.check("b").allowed is True

    def test_clear_removes_record(self):
        rl = make_limiter([0.0])
        rl.record_failure("ui")
        rl.clear("ui")
        assert len(rl) == 0

    def test_sweep_drops_idle_records(self):
        fake_time = [0.0]
        rl = make_limiter(fake_time, record_expiry_ms=1000)
        rl.record_failure("idle")

        fake_time[0] = 0.5
        assert rl.sweep() == 0

        fake_time[0] = 2.0
        assert rl.sweep() == 1
        assert len(rl) == 0

    def test_sweep_keeps_locked_records(self):
        fake_time = [0.0]
        rl = make_limiter(fake_time, max_attempts=1, lockout_ms=60_000, record_expiry_ms=1000)
        rl.record_failure("locked")

        fake_time[0] = 30.0
        assert rl.sweep() == 0
        assert rl.check("locked").allowed is False


class TestConstantTimeEquals:
    def test_equal(self):
        assert constant_time_equals("secret", "secret") is True

    def test_different(self):
        assert constant_time_equals("secret", "secreT") is False

    def test_prefix_is_not_equal(self):
        assert constant_time_equals("sec", "secret") is False

    def test_empty_against_value(self):
        assert constant_time_equals("", "secret") is False
