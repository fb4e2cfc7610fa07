"""
Health Monitor - two hysteresis state machines polled on a fixed tick

Network: online -> offline only after `failure_threshold` consecutive probe
failures; offline -> online on the first success, but the new online state
is unstable until `stable_ms` have passed.

Session: checked only while online, stable and not reloading. Logout needs
`miss_threshold` consecutive misses, is ignored during the quarantine after
the last login, and is confirmed by a second probe before it is declared.

Callbacks fire once per transition:
    on_online, on_online_stable, on_offline, on_login, on_logout
"""

import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from utils.events import EventSink

NetworkProbe = Callable[[], Awaitable[bool]]
SessionProbe = Callable[[], Awaitable[Optional[bool]]]
Callback = Callable[[], Union[None, Awaitable[Any]]]

EVENTS = ("online", "online_stable", "offline", "login", "logout")
JOB_ID = "health_poll"


@dataclass(frozen=True)
class NetworkSnapshot:
    is_online: bool
    is_online_stable: bool
    last_change_at: float
    consecutive_failures: int


@dataclass(frozen=True)
class SessionSnapshot:
    login_state: Optional[bool]
    last_login_at: float
    consecutive_misses: int


@dataclass(frozen=True)
class HealthSnapshot:
    network: NetworkSnapshot
    session: SessionSnapshot
    reloading: bool
    errors: int


class HealthMonitor:
    def __init__(
        self,
        network_probe: NetworkProbe,
        session_probe: SessionProbe,
        sink: Optional[EventSink] = None,
        time_func: Optional[Callable[[], float]] = None,
        failure_threshold: int = 3,
        stable_ms: int = 5000,
        miss_threshold: int = 3,
        quarantine_ms: int = 5000,
        reload_timeout_ms: int = 20000,
    ) -> None:
        self.network_probe = network_probe
        self.session_probe = session_probe
        self.sink = sink or EventSink(logging.getLogger(__name__))
        self._time = time_func or time.time
        self.failure_threshold = max(1, failure_threshold)
        self.stable_after = stable_ms / 1000
        self.miss_threshold = max(1, miss_threshold)
        self.quarantine = quarantine_ms / 1000
        self.reload_timeout = reload_timeout_ms / 1000

        # network
        self.is_online = True
        self.is_online_stable = True
        self.last_change_at = 0.0
        self.consecutive_failures = 0
        # session
        self.login_state: Optional[bool] = None
        self.last_login_at = 0.0
        self.consecutive_misses = 0

        self.reloading = False
        self._reload_started_at = 0.0
        self.errors = 0
        self._busy = False
        self._callbacks: dict[str, list[Callback]] = {name: [] for name in EVENTS}
        self._scheduler: Optional[AsyncIOScheduler] = None

    # ---- wiring ----

    def on(self, event: str, callback: Callback) -> None:
        if event not in self._callbacks:
            raise ValueError(f"Unknown health event: {event}")
        self._callbacks[event].append(callback)

    def start(self, scheduler: AsyncIOScheduler, interval_ms: int = 1200) -> None:
        self._scheduler = scheduler
        scheduler.add_job(
            self.poll,
            "interval",
            seconds=max(100, interval_ms) / 1000,
            id=JOB_ID,
            name="Health poll",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.sink.info("Health monitor started", interval_ms=interval_ms)

    def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.get_job(JOB_ID) is not None:
            self._scheduler.remove_job(JOB_ID)
        self._scheduler = None
        self.consecutive_failures = 0
        self.consecutive_misses = 0

    def set_reloading(self, flag: bool) -> None:
        """Suspend session checks while the page reloads."""
        self.reloading = bool(flag)
        if flag:
            self._reload_started_at = self._time()

    def snapshot(self) -> HealthSnapshot:
        return HealthSnapshot(
            network=NetworkSnapshot(
                self.is_online, self.is_online_stable, self.last_change_at, self.consecutive_failures
            ),
            session=SessionSnapshot(self.login_state, self.last_login_at, self.consecutive_misses),
            reloading=self.reloading,
            errors=self.errors,
        )

    # ---- polling ----

    async def poll(self) -> HealthSnapshot:
        """One tick: network first, then session. Overlapping ticks are skipped."""
        if self._busy:
            return self.snapshot()
        self._busy = True
        try:
            if self.reloading and self._time() - self._reload_started_at > self.reload_timeout:
                self.sink.warning("Reload flag timed out, clearing")
                self.reloading = False
            await self._check_network()
            if self.is_online:
                await self._check_session()
        finally:
            self._busy = False
        return self.snapshot()

    async def _check_network(self) -> None:
        try:
            ok = bool(await self.network_probe())
        except Exception as e:
            self.errors += 1
            self.sink.warning("Network probe raised", error=str(e))
            ok = False
        now = self._time()

        if ok:
            self.consecutive_failures = 0
            if not self.is_online:
                self.is_online = True
                self.is_online_stable = False
                self.last_change_at = now
                self.sink.info("Network online (unstable)")
                await self._fire("online")
        else:
            self.consecutive_failures += 1
            if self.is_online and self.consecutive_failures >= self.failure_threshold:
                self.is_online = False
                self.is_online_stable = False
                self.last_change_at = now
                self.sink.warning("Network offline", failures=self.consecutive_failures)
                await self._fire("offline")

        if self.is_online and not self.is_online_stable and now - self.last_change_at >= self.stable_after:
            self.is_online_stable = True
            self.sink.info("Network online (stable)")
            await self._fire("online_stable")

    async def _check_session(self) -> None:
        if not self.is_online_stable or self.reloading:
            return

        present = await self._probe_session()
        if present is None:
            return

        now = self._time()
        if present:
            self.consecutive_misses = 0
            if self.login_state is not True:
                self.login_state = True
                self.last_login_at = now
                self.sink.info("Session logged in")
                await self._fire("login")
            return

        self.consecutive_misses += 1
        if self.consecutive_misses < self.miss_threshold:
            return
        if self.last_login_at and now - self.last_login_at < self.quarantine:
            return

        # Confirm before declaring logout
        if await self._probe_session() is not False:
            self.consecutive_misses = 0
            return
        if self.login_state is not False:
            self.login_state = False
            self.sink.warning("Session logged out", misses=self.consecutive_misses)
            await self._fire("logout")

    async def _probe_session(self) -> Optional[bool]:
        try:
            result = await self.session_probe()
        except Exception as e:
            self.errors += 1
            self.sink.debug("Session probe raised", error=str(e))
            return None
        return None if result is None else bool(result)

    async def _fire(self, event: str) -> None:
        for callback in list(self._callbacks[event]):
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.sink.error("Health callback failed", event=event, error=str(e))
