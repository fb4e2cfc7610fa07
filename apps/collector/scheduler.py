"""
Cycle Scheduler - "collect, wait, repeat" against the portal page

Drives collection passes on an APScheduler date job that is re-armed after
every pass, so the next pass is always measured from the end of the last one.

Features:
- Interval clamped to [MIN_INTERVAL_MS, MAX_INTERVAL_MS]
- At most one pass in flight; overlapping tick() callers join it
- One short retry when the page reports not ready
- Pause reasons (e.g. offline, logged out) drop ticks until all are cleared
- CycleState persisted for restart continuity
- Optional on_reload hook around page reloads (health checks pause meanwhile)
- Listeners receive (items, cycle_id) after each successful pass
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Literal, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError

from apps.collector.adapter import PageAdapter, reload_page
from utils.atomic import JsonStateFile
from utils.events import EventSink
from utils.inflight import SingleFlight
from utils.schemas import CycleState, PageItem

MIN_INTERVAL_MS = 3000
MAX_INTERVAL_MS = 3_600_000
DEFAULT_INTERVAL_MS = 7000
RETRY_DELAY_MS = 1000

JOB_ID = "collector_cycle"

CycleStatus = Literal["ok", "not_ready", "error", "aborted", "skipped"]
CycleListener = Callable[[list[PageItem], int], Awaitable[Any]]


def clamp_interval(interval_ms: Optional[int]) -> int:
    try:
        value = int(interval_ms)
    except (TypeError, ValueError):
        return DEFAULT_INTERVAL_MS
    return max(MIN_INTERVAL_MS, min(MAX_INTERVAL_MS, value))


@dataclass(frozen=True)
class CycleOutcome:
    cycle_id: int
    status: CycleStatus
    items: list[PageItem] = field(default_factory=list)
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class CycleScheduler:
    def __init__(
        self,
        adapter: PageAdapter,
        scheduler: AsyncIOScheduler,
        state_file: Optional[JsonStateFile] = None,
        sink: Optional[EventSink] = None,
        time_func: Optional[Callable[[], float]] = None,
        retry_delay_ms: int = RETRY_DELAY_MS,
        settle_delay_ms: int = 0,
        job_id: str = JOB_ID,
        on_reload: Optional[Callable[[bool], Any]] = None,
    ) -> None:
        self.adapter = adapter
        self.scheduler = scheduler
        self.state_file = state_file
        self.sink = sink or EventSink(logging.getLogger(__name__))
        self._time = time_func or time.time
        self.retry_delay_ms = retry_delay_ms
        self.settle_delay_ms = settle_delay_ms
        self.job_id = job_id
        # Called with True before a page reload and False once it has settled
        self.on_reload = on_reload

        self.state = CycleState(interval_ms=DEFAULT_INTERVAL_MS)
        self._pause_reasons: set[str] = set()
        self._listeners: list[CycleListener] = []
        self._flight: SingleFlight[CycleOutcome] = SingleFlight()
        self._retry_pending = False
        self._next_run_at: Optional[float] = None
        self.last_outcome: Optional[CycleOutcome] = None

    # ---- lifecycle ----

    async def load(self) -> CycleState:
        """Restore persisted state; re-arms the timer if it was enabled."""
        if self.state_file is not None:
            data = await self.state_file.load({})
            try:
                self.state = CycleState(**(data or {}))
            except (TypeError, ValidationError) as e:
                self.sink.warning("Ignoring invalid cycle state", error=str(e))
                self.state = CycleState(interval_ms=DEFAULT_INTERVAL_MS)
        self.state.interval_ms = clamp_interval(self.state.interval_ms)
        if self.state.enabled:
            self._arm(0)
        return self.state

    async def enable(self, interval_ms: Optional[int] = None) -> CycleState:
        interval = clamp_interval(interval_ms if interval_ms is not None else self.state.interval_ms)
        self.state.enabled = True
        self.state.interval_ms = interval
        self.state.last_start_at = self._time()
        self._retry_pending = False
        await self._persist()
        self._arm(0)
        self.sink.info("Auto-refresh started", interval_ms=interval)
        return self.state

    async def disable(self, reason: str = "") -> CycleState:
        self.state.enabled = False
        self.state.last_stop_at = self._time()
        self._disarm()
        await self._persist()
        self.sink.info("Auto-refresh stopped", reason=reason)
        return self.state

    def pause(self, reason: str) -> None:
        if reason not in self._pause_reasons:
            self._pause_reasons.add(reason)
            self.sink.info("Collection paused", reason=reason)

    def resume(self, reason: str) -> None:
        """Clear one pause reason; the next pass is armed once none remain."""
        if reason not in self._pause_reasons:
            return
        self._pause_reasons.discard(reason)
        self.sink.info("Collection pause cleared", reason=reason, remaining=sorted(self._pause_reasons))
        if not self._pause_reasons and self.state.enabled and not self._flight.in_flight:
            self._arm(0)

    @property
    def paused(self) -> bool:
        return bool(self._pause_reasons)

    @property
    def active(self) -> bool:
        return self.state.enabled and not self._pause_reasons

    @property
    def in_flight(self) -> bool:
        return self._flight.in_flight

    def add_listener(self, listener: CycleListener) -> None:
        self._listeners.append(listener)

    def get_state(self) -> dict[str, Any]:
        state = self.state.model_dump()
        state.update(
            paused=self.paused,
            pause_reasons=sorted(self._pause_reasons),
            in_flight=self.in_flight,
            next_run_at=self._next_run_at,
        )
        return state

    # ---- passes ----

    async def tick(self) -> CycleOutcome:
        """Run a pass, or join the one already in flight.

        Ticks arriving while disabled or paused are dropped, not queued.
        """
        if not self._flight.in_flight and not self.active:
            reason = "paused" if self.state.enabled else "disabled"
            return CycleOutcome(self.state.cycle_count, "skipped", reason=reason)
        return await self._flight.run(self._run_pass)

    async def run_once(self) -> CycleOutcome:
        """One pass regardless of enablement (RUN_ONCE mode, manual refresh)."""
        return await self._flight.run(lambda: self._run_pass(force=True))

    async def wait_idle(self) -> None:
        await self._flight.wait()

    async def _on_timer(self) -> None:
        self._next_run_at = None
        await self.tick()

    async def _run_pass(self, force: bool = False) -> CycleOutcome:
        cycle_id = self.state.cycle_count + 1
        self.state.cycle_count = cycle_id
        self.state.last_cycle_at = self._time()
        self.sink.debug("Cycle starting", cycle_id=cycle_id)

        outcome = await self._collect(cycle_id, force)
        self.last_outcome = outcome
        await self._persist()

        if outcome.status == "not_ready" and not self._retry_pending:
            self._retry_pending = True
            self._arm(self.retry_delay_ms)
        else:
            self._retry_pending = False
            self._arm(self.state.interval_ms)

        self.sink.info(
            "Cycle finished",
            cycle_id=cycle_id,
            status=outcome.status,
            items=len(outcome.items),
            reason=outcome.reason,
        )
        return outcome

    async def _collect(self, cycle_id: int, force: bool) -> CycleOutcome:
        def aborted() -> bool:
            return not force and not self.active

        try:
            await self._reload()
            if aborted():
                return CycleOutcome(cycle_id, "aborted", reason="stopped")

            if not await self.adapter.is_ready():
                return CycleOutcome(cycle_id, "not_ready", reason="page not ready")
            if aborted():
                return CycleOutcome(cycle_id, "aborted", reason="stopped")

            raw_items = await self.adapter.extract_items() or []
        except Exception as e:
            self.sink.error("Page adapter failed", cycle_id=cycle_id, error=str(e))
            return CycleOutcome(cycle_id, "error", reason=str(e))

        items = self._validate(raw_items)
        if aborted():
            return CycleOutcome(cycle_id, "aborted", items, reason="stopped")

        for listener in list(self._listeners):
            try:
                await listener(items, cycle_id)
            except Exception as e:
                self.sink.error("Cycle listener failed", cycle_id=cycle_id, error=str(e))
            if aborted():
                return CycleOutcome(cycle_id, "aborted", items, reason="stopped")

        return CycleOutcome(cycle_id, "ok", items)

    async def _reload(self) -> None:
        if getattr(self.adapter, "reload", None) is None:
            return
        self._notify_reload(True)
        try:
            if await reload_page(self.adapter) and self.settle_delay_ms:
                await asyncio.sleep(self.settle_delay_ms / 1000)
        finally:
            self._notify_reload(False)

    def _notify_reload(self, flag: bool) -> None:
        if self.on_reload is None:
            return
        try:
            self.on_reload(flag)
        except Exception as e:
            self.sink.error("Reload hook failed", reloading=flag, error=str(e))

    def _validate(self, raw_items: list[Any]) -> list[PageItem]:
        items: list[PageItem] = []
        for raw in raw_items:
            try:
                item = raw if isinstance(raw, PageItem) else PageItem(**raw)
            except (TypeError, ValidationError) as e:
                self.sink.warning("Dropping malformed item", error=str(e))
                continue
            if item.title:
                items.append(item)
        return items

    # ---- timer ----

    def _arm(self, delay_ms: int) -> None:
        """(Re)arm the single date job for the next pass."""
        if not self.state.enabled:
            return
        self._disarm()
        run_date = datetime.now(timezone.utc) + timedelta(milliseconds=max(0, delay_ms))
        self.scheduler.add_job(
            self._on_timer,
            "date",
            run_date=run_date,
            id=self.job_id,
            name="Collection pass",
            replace_existing=True,
            misfire_grace_time=None,
        )
        self._next_run_at = self._time() + delay_ms / 1000

    def _disarm(self) -> None:
        if self.scheduler.get_job(self.job_id) is not None:
            self.scheduler.remove_job(self.job_id)
        self._next_run_at = None

    async def _persist(self) -> None:
        if self.state_file is not None:
            await self.state_file.save(self.state.model_dump())
