"""
Record stores

The four DedupStore instances the collector writes, one JSON file each under
REPORTS_DIR. Keys and merge policy per record kind are defined here.
"""

from dataclasses import dataclass
from datetime import tzinfo
from pathlib import Path
from typing import Callable, Iterator, Optional

from utils.dedup_store import DedupStore, field_key
from utils.events import EventSink
from utils.schemas import LeadRecord
from utils.text import last10

PRODUCT_KEY = field_key("name", "location")
KEYWORD_MATCH_KEY = field_key("name", "location")
CLICK_KEY = field_key("title", "cycle")
LEAD_KEY = field_key("product", "buyer", "mobile", normalizers={"mobile": last10})

# Blank or "---" lead fields are filled in by later sightings
LEAD_MERGE_FIELDS = tuple(LeadRecord.model_fields)

FILES = {
    "products": "products_log.json",
    "matches": "keyword_matches.json",
    "clicks": "matchclick.json",
    "leads": "messagecentre_log.json",
}


@dataclass
class Stores:
    products: DedupStore
    matches: DedupStore
    clicks: DedupStore
    leads: DedupStore

    def __iter__(self) -> Iterator[DedupStore]:
        return iter((self.products, self.matches, self.clicks, self.leads))

    def items(self) -> Iterator[tuple[str, DedupStore]]:
        return iter(zip(FILES, self))

    async def load(self) -> dict[str, int]:
        return {name: await store.load() for name, store in self.items()}

    async def flush(self) -> None:
        for store in self:
            await store.flush()

    async def reset(self, archive_dir: Optional[Path] = None) -> dict[str, int]:
        return {name: await store.reset(archive_dir) for name, store in self.items()}


def open_stores(
    reports_dir: Path | str,
    archive_dir: Path | str,
    sink: Optional[EventSink] = None,
    time_func: Optional[Callable[[], float]] = None,
    tz: Optional[tzinfo] = None,
    coalesce_ms: int = 120,
    max_live_rows: Optional[int] = None,
    rotate_threshold: Optional[int] = None,
) -> Stores:
    reports_dir = Path(reports_dir)
    sink = sink or EventSink("apps.collector.stores")

    def make(name: str, key_func, merge_fields=()) -> DedupStore:
        return DedupStore(
            reports_dir / FILES[name],
            key_func=key_func,
            merge_fields=merge_fields,
            sink=sink.child(name),
            time_func=time_func,
            tz=tz,
            coalesce_ms=coalesce_ms,
            max_live_rows=max_live_rows,
            rotate_threshold=rotate_threshold,
            archive_dir=archive_dir,
        )

    return Stores(
        products=make("products", PRODUCT_KEY),
        matches=make("matches", KEYWORD_MATCH_KEY),
        clicks=make("clicks", CLICK_KEY),
        leads=make("leads", LEAD_KEY, LEAD_MERGE_FIELDS),
    )
