"""
Daily Scheduler - named "HH:MM" slots fired once per calendar day

"Today" and "now" are taken in the configured timezone, never machine local
time. A slot runs when the current time is at or past it by no more than the
catch-up window and it has not run yet that day. The run is recorded and
persisted before the job starts, so a crash mid-run cannot fire the slot a
second time after restart.

State file layout:
    {"2025-01-15": {"08:00": "2025-01-15T08:00:12+05:30"}}
"""

import logging
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Awaitable, Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from utils.atomic import JsonStateFile
from utils.config import parse_slots
from utils.events import EventSink
from utils.inflight import SingleFlight

DailyJob = Callable[[str, bool], Awaitable[Any]]

JOB_ID = "daily_tick"
KEEP_DAYS = 7


def slot_minutes(slot: str) -> int:
    hours, minutes = slot.split(":")
    return int(hours) * 60 + int(minutes)


def should_run_slot(
    slot: str,
    now: datetime,
    already_ran: bool,
    catch_up_minutes: int,
    inclusive: bool = True,
) -> bool:
    """Decide whether `slot` is due at `now` (already in the target timezone)."""
    if already_ran:
        return False
    late_by = now.hour * 60 + now.minute - slot_minutes(slot)
    if late_by < 0:
        return False
    return late_by <= catch_up_minutes if inclusive else late_by < catch_up_minutes


class DailyScheduler:
    def __init__(
        self,
        job: DailyJob,
        state_file: JsonStateFile,
        tz: str | tzinfo = "Asia/Kolkata",
        slots: Iterable[str] = ("08:00", "20:00"),
        catch_up_minutes: int = 120,
        inclusive: bool = True,
        now_func: Optional[Callable[[], datetime]] = None,
        sink: Optional[EventSink] = None,
        keep_days: int = KEEP_DAYS,
    ) -> None:
        self.job = job
        self.state_file = state_file
        self.tz = ZoneInfo(tz) if isinstance(tz, str) else tz
        self.slots = parse_slots(",".join(slots))
        self.catch_up_minutes = catch_up_minutes
        self.inclusive = inclusive
        self._now_func = now_func
        self.sink = sink or EventSink(logging.getLogger(__name__))
        self.keep_days = keep_days

        self.state: dict[str, dict[str, str]] = {}
        self._loaded = False
        self._flight: SingleFlight[list[str]] = SingleFlight()
        self._scheduler: Optional[AsyncIOScheduler] = None

    def now(self) -> datetime:
        current = self._now_func() if self._now_func else datetime.now(self.tz)
        return current.astimezone(self.tz)

    def day_key(self, when: Optional[datetime] = None) -> str:
        return (when or self.now()).date().isoformat()

    async def load(self) -> dict[str, dict[str, str]]:
        data = await self.state_file.load({})
        self.state = {
            day: dict(slots)
            for day, slots in (data.items() if isinstance(data, dict) else [])
            if isinstance(slots, dict)
        }
        self._loaded = True
        return self.state

    async def start(
        self,
        scheduler: AsyncIOScheduler,
        slots: Optional[Iterable[str]] = None,
        catch_up_minutes: Optional[int] = None,
        tick_seconds: int = 30,
    ) -> None:
        """Install the periodic tick and run one check immediately."""
        if slots is not None:
            self.slots = parse_slots(",".join(slots))
        if catch_up_minutes is not None:
            self.catch_up_minutes = catch_up_minutes
        if not self._loaded:
            await self.load()

        self._scheduler = scheduler
        scheduler.add_job(
            self.tick,
            "interval",
            seconds=tick_seconds,
            id=JOB_ID,
            name="Daily slot check",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.sink.info(
            "Daily scheduler started",
            tz=str(self.tz),
            slots=self.slots,
            catch_up_minutes=self.catch_up_minutes,
        )
        await self.tick()

    def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.get_job(JOB_ID) is not None:
            self._scheduler.remove_job(JOB_ID)
        self._scheduler = None

    def has_run(self, slot: str, day: Optional[str] = None) -> bool:
        return slot in self.state.get(day or self.day_key(), {})

    def due_slots(self, now: Optional[datetime] = None) -> list[str]:
        now = (now or self.now()).astimezone(self.tz)
        day = self.day_key(now)
        return [
            slot
            for slot in self.slots
            if should_run_slot(slot, now, self.has_run(slot, day), self.catch_up_minutes, self.inclusive)
        ]

    async def tick(self) -> list[str]:
        """Run every due slot; overlapping ticks join the one in flight."""
        return await self._flight.run(self._tick)

    async def _tick(self) -> list[str]:
        if not self._loaded:
            await self.load()
        ran: list[str] = []
        for slot in self.due_slots():
            now = self.now()
            self.state.setdefault(self.day_key(now), {})[slot] = now.isoformat()
            self._prune(now.date())
            await self.state_file.save(self.state)

            self.sink.info("Daily slot running", slot=slot, tz=str(self.tz))
            try:
                await self.job(slot, True)
            except Exception as e:
                self.sink.error("Daily slot failed", slot=slot, error=str(e))
            else:
                self.sink.info("Daily slot done", slot=slot)
            ran.append(slot)
        return ran

    async def run_now(self, label: str = "manual") -> bool:
        """Run the job out of schedule. Slot bookkeeping is left untouched."""
        self.sink.info("Daily job run manually", label=label)
        try:
            await self.job(label, False)
        except Exception as e:
            self.sink.error("Manual daily run failed", label=label, error=str(e))
            return False
        return True

    def _prune(self, today: date) -> None:
        cutoff = (today - timedelta(days=self.keep_days)).isoformat()
        for day in [d for d in self.state if d < cutoff]:
            del self.state[day]
