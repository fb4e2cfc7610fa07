"""
Match Clicker

Configured product phrases are compiled to case-insensitive word-boundary
patterns that tolerate plural suffixes ("pipe" matches "Pipes"). A matching
listing gets its contact button clicked through the page adapter.

Repeat clicks are avoided two ways:
- cooldown: a clicked listing (by serial, or title and location) is not
  clicked again while it stays on the page in consecutive cycles
- recent clicks: a clicked title is ignored for `recent_click_ignore_cycles`
  further cycles even if it moved on the page

A cycle id that does not follow the previous one means passes were missed,
so the cooldown no longer reflects the page and is cleared.
"""

import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Callable, Optional, Pattern

from apps.collector import messages
from apps.collector.adapter import PageAdapter
from apps.collector.lists import PhraseList
from utils.dedup_store import DedupStore
from utils.events import EventSink
from utils.notify_dedup import Notifier
from utils.schemas import PageItem
from utils.text import compose_location, esc, norm

CLICK_WINDOW_SECONDS = 30 * 60
MAX_COOLDOWN = 100
MAX_RECENT = 200
MAX_CLICK_HISTORY = 1000


@lru_cache(maxsize=200)
def phrase_regex(phrase: str) -> Optional[Pattern[str]]:
    tokens = norm(phrase).split()
    if not tokens:
        return None
    if len(tokens) > 10:
        parts = [re.escape(t) for t in tokens]
    else:
        parts = [re.escape(t) + "e?s?" for t in tokens]
    return re.compile(r"\b" + r"\s+".join(parts) + r"\b", re.IGNORECASE)


@dataclass
class ClickSummary:
    cycle_id: int
    clicked: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: bool = False


class MatchClicker:
    def __init__(
        self,
        adapter: PageAdapter,
        products: PhraseList,
        store: DedupStore,
        notifier: Notifier,
        sink: Optional[EventSink] = None,
        time_func: Optional[Callable[[], float]] = None,
        recent_click_ignore_cycles: int = 1,
        silent: bool = True,
    ) -> None:
        self.adapter = adapter
        self.products = products
        self.store = store
        self.notifier = notifier
        self.sink = sink or EventSink(logging.getLogger(__name__))
        self._time = time_func or time.time
        self.recent_click_ignore_cycles = max(1, recent_click_ignore_cycles)
        self.silent = silent

        self._in_flight = False
        self._last_cycle = -1
        self._cooldown: set[str] = set()
        self._recent: dict[str, int] = {}
        self._click_times: deque[float] = deque(maxlen=MAX_CLICK_HISTORY)

    @property
    def cooldown(self) -> frozenset[str]:
        return frozenset(self._cooldown)

    def recent_click_count(self, window_seconds: float = CLICK_WINDOW_SECONDS) -> int:
        cutoff = self._time() - window_seconds
        return sum(1 for t in self._click_times if t >= cutoff)

    async def process_cycle(self, items: list[PageItem], cycle_id: int) -> ClickSummary:
        if self._in_flight:
            self.sink.info("Match click cycle skipped, previous cycle still running", cycle_id=cycle_id)
            return ClickSummary(cycle_id, skipped=True)
        self._in_flight = True
        try:
            return await self._process(items, cycle_id)
        finally:
            self._in_flight = False

    async def _process(self, items: list[PageItem], cycle_id: int) -> ClickSummary:
        summary = ClickSummary(cycle_id)
        if self._last_cycle != -1 and cycle_id != self._last_cycle + 1:
            self._cooldown.clear()
        self._last_cycle = cycle_id

        patterns = [(p, rx) for p in await self.products.load() if (rx := phrase_regex(p)) is not None]
        if not patterns:
            self.sink.debug("No products configured for match click")
            return summary
        if not items:
            return summary

        self._prune_recent({norm(item.title) for item in items}, cycle_id)

        seen_now: set[str] = set()
        clicked_keys: list[str] = []
        for item in items:
            title = norm(item.title)
            location = compose_location(item.model_dump())
            stable_key = f"serial#{norm(item.serial)}" if item.serial else f"sig#{title}|loc#{norm(location)}"
            seen_now.add(stable_key)
            if stable_key in self._cooldown:
                self.sink.debug("Match click cooldown", key=stable_key)
                continue

            matched = next((p for p, rx in patterns if rx.search(title)), None)
            if matched is None:
                if not self.silent:
                    await self.notifier.notify(
                        f'Attempted match for "{esc(item.title)}" - matched: no',
                        signature=f"N|{item.index}|{title}",
                    )
                continue

            expires = self._recent.get(title)
            if expires is not None and cycle_id <= expires:
                if not self.silent:
                    await self.notifier.notify(
                        messages.product_match(item.title, matched, "skip", location),
                        signature=f"M|{item.index}|{title}|skip",
                        metadata=dict(messages.HTML),
                    )
                continue

            ok = await self._click(item.index)
            status = "ok" if ok else "fail"
            await self.notifier.notify(
                messages.product_match(item.title, matched, status, location),
                signature=f"M|{item.index}|{title}|{status}",
                metadata=dict(messages.HTML),
            )
            if not ok:
                self.sink.error("Contact button not found", key=stable_key, index=item.index)
                summary.failed.append(item.title)
                continue

            self.store.upsert(
                {"title": item.title, "matched": matched, "status": "ok", "index": item.index, "cycle": cycle_id}
            )
            self._recent[title] = cycle_id + self.recent_click_ignore_cycles
            self._click_times.append(self._time())
            clicked_keys.append(stable_key)
            summary.clicked.append(item.title)
            self.sink.info("Clicked matching listing", title=item.title, matched=matched, key=stable_key)

        self._cooldown = {k for k in self._cooldown if k in seen_now}
        self._cooldown.update(clicked_keys)
        if len(self._cooldown) > MAX_COOLDOWN:
            self._cooldown = set(list(self._cooldown)[-MAX_COOLDOWN:])
        return summary

    async def _click(self, index: int) -> bool:
        try:
            return bool(await self.adapter.click(index))
        except Exception as e:
            self.sink.error("Click failed", index=index, error=str(e))
            return False

    def _prune_recent(self, current_titles: set[str], cycle_id: int) -> None:
        for title, expires in list(self._recent.items()):
            if title not in current_titles or cycle_id > expires:
                del self._recent[title]
        if len(self._recent) > MAX_RECENT:
            keep = list(self._recent)[-MAX_RECENT:]
            self._recent = {t: self._recent[t] for t in keep}

    def reset(self) -> None:
        self._cooldown.clear()
        self._recent.clear()
        self._click_times.clear()
        self._last_cycle = -1
        phrase_regex.cache_clear()
