"""
Lead Tracker - message centre leads

Leads come from the adapter's optional `extract_leads()` capability. A lead is
identified by product, buyer and the last ten digits of the mobile number;
blank fields of a known lead are filled in by later sightings, which is
reported as an update.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import orjson
from pydantic import ValidationError

from apps.collector import messages
from apps.collector.adapter import PageAdapter, extract_leads
from utils.dedup_store import DedupStore
from utils.events import EventSink
from utils.inflight import SingleFlight
from utils.notify_dedup import Notifier
from utils.schemas import LeadRecord
from utils.text import last10


def lead_signature(record: dict) -> str:
    """Content signature so the same lead text is not sent twice."""
    fields = {name: str(record.get(name) or "") for name in LeadRecord.model_fields}
    return "lead|" + orjson.dumps(fields, option=orjson.OPT_SORT_KEYS).decode()


@dataclass(frozen=True)
class LeadSummary:
    cycle_id: int
    new: int = 0
    updated: int = 0
    seen: int = 0


class LeadTracker:
    def __init__(
        self,
        adapter: PageAdapter,
        store: DedupStore,
        notifier: Notifier,
        sink: Optional[EventSink] = None,
    ) -> None:
        self.adapter = adapter
        self.store = store
        self.notifier = notifier
        self.sink = sink or EventSink(logging.getLogger(__name__))
        self._flight: SingleFlight[LeadSummary] = SingleFlight()

    async def process_cycle(self, _items, cycle_id: int) -> LeadSummary:
        return await self._flight.run(lambda: self._process(cycle_id))

    async def _process(self, cycle_id: int) -> LeadSummary:
        try:
            raw_leads = await extract_leads(self.adapter)
        except Exception as e:
            self.sink.error("Lead extraction failed", cycle_id=cycle_id, error=str(e))
            return LeadSummary(cycle_id)
        return await self.ingest(raw_leads, cycle_id)

    async def ingest(self, raw_leads: list[dict], cycle_id: int = 0) -> LeadSummary:
        new = updated = seen = 0
        for raw in raw_leads:
            try:
                lead = LeadRecord(**raw)
            except (TypeError, ValidationError) as e:
                self.sink.warning("Dropping malformed lead", error=str(e))
                continue
            if not (lead.product or lead.buyer or last10(lead.mobile)):
                continue
            seen += 1

            result = self.store.upsert(lead)
            if result.action == "new":
                new += 1
                text = messages.new_lead(result.entry)
            elif result.action == "merge":
                updated += 1
                self.sink.info("Lead updated", fields=list(result.changed_fields))
                text = messages.updated_lead(result.entry)
            else:
                continue
            await self.notifier.notify(
                text,
                signature=lead_signature(result.entry),
                metadata=dict(messages.HTML),
            )

        if new or updated:
            self.sink.info("Leads processed", cycle_id=cycle_id, new=new, updated=updated)
        return LeadSummary(cycle_id, new=new, updated=updated, seen=seen)
