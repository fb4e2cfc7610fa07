"""Product log: every listing seen, once per title and location."""

import logging
from typing import Optional

from utils.dedup_store import DedupStore
from utils.events import EventSink
from utils.schemas import PageItem
from utils.text import compose_location


class ProductRecorder:
    def __init__(self, store: DedupStore, sink: Optional[EventSink] = None) -> None:
        self.store = store
        self.sink = sink or EventSink(logging.getLogger(__name__))
        self.last_product: Optional[str] = None
        self.last_cycle_new = 0

    async def process_cycle(self, items: list[PageItem], cycle_id: int) -> int:
        """Record the cycle's items; returns how many were new."""
        if not items:
            self.sink.info("No products found in this cycle", cycle_id=cycle_id)
            self.last_cycle_new = 0
            return 0

        new = 0
        for item in items:
            location = compose_location(item.model_dump())
            result = self.store.upsert({"name": item.title, "location": location})
            if result.is_new:
                new += 1
                self.sink.debug("New product", title=item.title, location=location)
        self.last_product = items[0].title
        self.last_cycle_new = new
        self.sink.info("Scraped products", cycle_id=cycle_id, total=len(items), new=new)
        return new

    def reset(self) -> None:
        self.last_product = None
        self.last_cycle_new = 0
