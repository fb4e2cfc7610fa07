"""Tests for the network and session hysteresis in HealthMonitor."""

import pytest

from apps.health.monitor import HealthMonitor
from tests.conftest import FakeClock


class ScriptedProbe:
    """Returns queued results, then repeats the last one."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        value = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(value, Exception):
            raise value
        return value


def make_monitor(network, session, clock, **kwargs):
    monitor = HealthMonitor(
        network,
        session,
        time_func=clock,
        failure_threshold=kwargs.pop("failure_threshold", 3),
        stable_ms=kwargs.pop("stable_ms", 5000),
        miss_threshold=kwargs.pop("miss_threshold", 3),
        quarantine_ms=kwargs.pop("quarantine_ms", 5000),
        **kwargs,
    )
    events = []
    for name in ("online", "online_stable", "offline", "login", "logout"):
        monitor.on(name, lambda name=name: events.append(name))
    return monitor, events


class TestNetwork:
    @pytest.mark.asyncio
    async def test_offline_only_after_threshold(self):
        clock = FakeClock()
        monitor, events = make_monitor(ScriptedProbe(False), ScriptedProbe(True), clock)

        await monitor.poll()
        await monitor.poll()
        assert monitor.is_online is True

        await monitor.poll()
        assert monitor.is_online is False
        assert events == ["login", "offline"]

    @pytest.mark.asyncio
    async def test_single_failure_does_not_flap(self):
        clock = FakeClock()
        network = ScriptedProbe(False, True)
        monitor, events = make_monitor(network, ScriptedProbe(True), clock)

        await monitor.poll()
        await monitor.poll()
        assert monitor.is_online is True
        assert "offline" not in events
        assert monitor.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_probe_exception_counts_as_failure(self):
        clock = FakeClock()
        monitor, events = make_monitor(ScriptedProbe(OSError("boom")), ScriptedProbe(None), clock, failure_threshold=1)

        await monitor.poll()
        assert monitor.is_online is False
        assert monitor.errors == 1
        assert events == ["offline"]

    @pytest.mark.asyncio
    async def test_recovery_is_unstable_until_stable_window(self):
        clock = FakeClock()
        network = ScriptedProbe(False, True)
        monitor, events = make_monitor(network, ScriptedProbe(None), clock, failure_threshold=1)

        await monitor.poll()
        assert events == ["offline"]

        clock.advance(1)
        await monitor.poll()
        assert monitor.is_online is True
        assert monitor.is_online_stable is False
        assert events == ["offline", "online"]

        clock.advance(4)
        await monitor.poll()
        assert monitor.is_online_stable is False

        clock.advance(1)
        await monitor.poll()
        assert monitor.is_online_stable is True
        assert events == ["offline", "online", "online_stable"]


class TestSession:
    @pytest.mark.asyncio
    async def test_login_fires_once(self):
        clock = FakeClock()
        monitor, events = make_monitor(ScriptedProbe(True), ScriptedProbe(True), clock)

        await monitor.poll()
        await monitor.poll()
        assert events == ["login"]
        assert monitor.login_state is True
        assert monitor.last_login_at == clock.now

    @pytest.mark.asyncio
    async def test_unknown_session_changes_nothing(self):
        clock = FakeClock()
        monitor, events = make_monitor(ScriptedProbe(True), ScriptedProbe(None), clock)

        for _ in range(5):
            await monitor.poll()
        assert monitor.login_state is None
        assert events == []

    @pytest.mark.asyncio
    async def test_logout_needs_consecutive_misses_and_confirmation(self):
        clock = FakeClock()
        session = ScriptedProbe(True, False)
        monitor, events = make_monitor(ScriptedProbe(True), session, clock)

        await monitor.poll()
        assert events == ["login"]

        clock.advance(10)
        await monitor.poll()
        await monitor.poll()
        assert monitor.login_state is True

        await monitor.poll()
        assert monitor.login_state is False
        assert events == ["login", "logout"]

    @pytest.mark.asyncio
    async def test_logout_ignored_during_quarantine(self):
        clock = FakeClock()
        session = ScriptedProbe(True, False)
        monitor, events = make_monitor(ScriptedProbe(True), session, clock, miss_threshold=1)

        await monitor.poll()
        clock.advance(1)
        await monitor.poll()
        assert events == ["login"]

        clock.advance(5)
        await monitor.poll()
        assert events == ["login", "logout"]

    @pytest.mark.asyncio
    async def test_failed_confirmation_keeps_session(self):
        clock = FakeClock()
        session = ScriptedProbe(True, False, True)
        monitor, events = make_monitor(ScriptedProbe(True), session, clock, miss_threshold=1)

        await monitor.poll()
        clock.advance(10)
        await monitor.poll()
        assert monitor.login_state is True
        assert monitor.consecutive_misses == 0
        assert events == ["login"]

    @pytest.mark.asyncio
    async def test_session_not_checked_while_reloading(self):
        clock = FakeClock()
        session = ScriptedProbe(True)
        monitor, _ = make_monitor(ScriptedProbe(True), session, clock)

        monitor.set_reloading(True)
        await monitor.poll()
        assert session.calls == 0

    @pytest.mark.asyncio
    async def test_reload_flag_times_out(self):
        clock = FakeClock()
        session = ScriptedProbe(True)
        monitor, _ = make_monitor(ScriptedProbe(True), session, clock, reload_timeout_ms=1000)

        monitor.set_reloading(True)
        clock.advance(2)
        await monitor.poll()
        assert monitor.reloading is False
        assert session.calls == 1


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_async_callback_awaited_and_errors_contained(self):
        clock = FakeClock()
        monitor = HealthMonitor(ScriptedProbe(True), ScriptedProbe(True), time_func=clock)
        seen = []

        async def on_login():
            seen.append("async")

        def broken():
            raise RuntimeError("callback bug")

        monitor.on("login", broken)
        monitor.on("login", on_login)
        await monitor.poll()
        assert seen == ["async"]

    def test_unknown_event_rejected(self):
        monitor = HealthMonitor(ScriptedProbe(True), ScriptedProbe(True))
        with pytest.raises(ValueError):
            monitor.on("reboot", lambda: None)
