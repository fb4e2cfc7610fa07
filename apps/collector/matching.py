"""
Keyword Matcher

Every cycle, listing titles are normalized and checked against the keyword
list by substring. A match is notified once: only when it was not matched in
the previous cycle and is not already in keyword_matches.json. Every match is
persisted (the store ignores ones it already holds).
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from apps.collector import messages
from apps.collector.lists import PhraseList
from utils.dedup_store import DedupStore
from utils.events import EventSink
from utils.inflight import SingleFlight
from utils.notify_dedup import Notifier
from utils.schemas import PageItem
from utils.text import compose_location, norm_title


@dataclass(frozen=True)
class MatchSummary:
    cycle_id: int
    matched: list[str] = field(default_factory=list)
    sent: int = 0
    persisted: int = 0


class KeywordMatcher:
    def __init__(
        self,
        keywords: PhraseList,
        store: DedupStore,
        notifier: Notifier,
        sink: Optional[EventSink] = None,
    ) -> None:
        self.keywords = keywords
        self.store = store
        self.notifier = notifier
        self.sink = sink or EventSink(logging.getLogger(__name__))
        self._last_cycle: set[str] = set()
        self._flight: SingleFlight[MatchSummary] = SingleFlight()
        self.last_match: Optional[str] = None

    async def process_cycle(self, items: list[PageItem], cycle_id: int) -> MatchSummary:
        """Classify one cycle's items; a concurrent caller joins the pass in flight."""
        return await self._flight.run(lambda: self._process(items, cycle_id))

    async def _process(self, items: list[PageItem], cycle_id: int) -> MatchSummary:
        keywords = await self.keywords.load()
        if not keywords:
            return MatchSummary(cycle_id)

        current: dict[str, tuple[str, str]] = {}
        for item in items:
            title = norm_title(item.title)
            if not title or title in current:
                continue
            if any(kw in title for kw in keywords):
                location = compose_location(item.model_dump())
                current[title] = (item.title, location)
                self.sink.info("Keyword match", title=item.title, location=location)

        sent = persisted = 0
        for key, (title, location) in current.items():
            record = {"name": title, "location": location}
            known = record in self.store
            if key not in self._last_cycle and not known:
                if await self.notifier.notify(
                    messages.keyword_match(title, location),
                    signature=f"kw|{self.store.key_func(record)}",
                    metadata=dict(messages.HTML),
                ):
                    sent += 1
            if self.store.upsert(record).is_new:
                persisted += 1
            self.last_match = title

        self._last_cycle = set(current)
        return MatchSummary(
            cycle_id,
            matched=[f"{t} - {loc}" if loc else t for t, loc in current.values()],
            sent=sent,
            persisted=persisted,
        )

    def reset(self) -> None:
        """Forget in-memory match state; the store is reset separately."""
        self._last_cycle.clear()
        self.last_match = None
