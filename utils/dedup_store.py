"""
Deduplicated Append Log - keyed, serial-numbered, atomically persisted.

One DedupStore owns one homogeneous collection of entries backed by one JSON
file. Every record-producing component (products, keyword matches, clicks,
leads) uses its own instance.

Entries are kept newest first. Each carries a monotonically increasing
`serial` and an ISO `timestamp` next to its payload fields. A dedup key is
derived from normalized payload fields; the live set never holds two entries
with the same key. Entries only change afterwards through merge-on-blank of
the configured merge fields.

Writes are coalesced: upserts mark the store dirty and a single background
writer persists the latest snapshot after a short delay. `flush()` forces any
pending write and returns once it has completed.

Usage:
    store = DedupStore(path, key_func=field_key("name", "location"))
    await store.load()
    result = store.upsert({"name": "Steel pipes", "location": "Pune"})
    await store.flush()
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Any, Callable, Iterable, Literal, Mapping, Optional

from pydantic import BaseModel

from utils.atomic import archive_name, atomic_write_bytes, atomic_write_json, dumps, read_json
from utils.events import EventSink
from utils.text import is_blank, norm_key_part

Action = Literal["new", "merge", "duplicate"]
KeyFunc = Callable[[Mapping[str, Any]], str]


def field_key(*fields: str, normalizers: Optional[Mapping[str, Callable[[Any], str]]] = None) -> KeyFunc:
    """Build a key function joining normalized fields with '|'.

    Empty parts become '-' so "title|" and "title|-" cannot diverge.
    """
    normalizers = dict(normalizers or {})

    def key(record: Mapping[str, Any]) -> str:
        parts = []
        for name in fields:
            fn = normalizers.get(name, norm_key_part)
            parts.append(fn(record.get(name)) or "-")
        return "|".join(parts)

    return key


@dataclass(frozen=True)
class UpsertResult:
    action: Action
    entry: dict[str, Any]
    changed_fields: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_new(self) -> bool:
        return self.action == "new"


def _serial_of(entry: Mapping[str, Any]) -> int:
    try:
        return int(entry.get("serial"))
    except (TypeError, ValueError):
        return 0


class DedupStore:
    """Keyed, serial-numbered append log persisted as a JSON array."""

    def __init__(
        self,
        path: Path | str,
        key_func: KeyFunc,
        merge_fields: Iterable[str] = (),
        sink: Optional[EventSink] = None,
        time_func: Optional[Callable[[], float]] = None,
        tz: Optional[tzinfo] = None,
        coalesce_ms: int = 120,
        max_live_rows: Optional[int] = None,
        rotate_threshold: Optional[int] = None,
        archive_dir: Optional[Path | str] = None,
    ) -> None:
        self.path = Path(path)
        self.key_func = key_func
        self.merge_fields = tuple(merge_fields)
        self.sink = sink or EventSink(__name__)
        self._time = time_func or time.time
        self._tz = tz
        self._coalesce = max(0, coalesce_ms) / 1000
        self.max_live_rows = max_live_rows
        self.rotate_threshold = rotate_threshold
        self.archive_dir = Path(archive_dir) if archive_dir else self.path.parent / "archive"

        self._rows: deque[dict[str, Any]] = deque()
        self._index: dict[str, dict[str, Any]] = {}
        self._serial = 1

        self._dirty = False
        self._lock = asyncio.Lock()
        self._flush_requested = asyncio.Event()
        self._writer: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self.writes = 0

    # ---- loading ----

    async def load(self) -> int:
        """Load the backing file, compacting duplicate keys (earliest wins).

        A missing or corrupt file yields an empty store.

        Returns:
            Number of live entries after loading
        """
        data = await read_json(self.path, [])
        if not isinstance(data, list):
            self.sink.warning("Store file is not a JSON array, starting empty", path=str(self.path))
            data = []

        rows = [r for r in data if isinstance(r, dict)]
        rows.sort(key=_serial_of)

        kept: list[dict[str, Any]] = []
        self._index.clear()
        for row in rows:
            key = self.key_func(row)
            if key in self._index:
                continue
            self._index[key] = row
            kept.append(row)

        kept.reverse()
        self._rows = deque(kept)
        self._serial = max((_serial_of(r) for r in kept), default=0) + 1

        if len(kept) != len(data):
            self.sink.info(
                "Compacted store on load",
                path=str(self.path),
                before=len(data),
                after=len(kept),
            )
            self._dirty = True
            await self._write_now()

        self.sink.debug("Store loaded", path=str(self.path), rows=len(kept))
        return len(kept)

    # ---- queries ----

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, record: Mapping[str, Any]) -> bool:
        return self.key_func(record) in self._index

    @property
    def next_serial(self) -> int:
        return self._serial

    def list(self) -> list[dict[str, Any]]:
        """Live entries, newest first (copies)."""
        return [dict(r) for r in self._rows]

    def latest(self) -> Optional[dict[str, Any]]:
        return dict(self._rows[0]) if self._rows else None

    def count_since(self, seconds: float) -> int:
        """Entries whose timestamp falls within the last `seconds`."""
        cutoff = self._time() - seconds
        count = 0
        for row in self._rows:
            try:
                ts = datetime.fromisoformat(str(row.get("timestamp"))).timestamp()
            except ValueError:
                continue
            if ts <= cutoff:
                break
            count += 1
        return count

    # ---- mutation ----

    def upsert(self, record: Mapping[str, Any] | BaseModel) -> UpsertResult:
        """Insert a new record, merge blank fields of a known one, or report a duplicate."""
        payload = record.model_dump() if isinstance(record, BaseModel) else dict(record)
        payload.pop("serial", None)
        payload.pop("timestamp", None)
        key = self.key_func(payload)

        existing = self._index.get(key)
        if existing is not None:
            changed = self._merge_fill(existing, payload)
            if changed:
                self._schedule_write()
                return UpsertResult("merge", dict(existing), changed)
            return UpsertResult("duplicate", dict(existing))

        entry = {"serial": self._serial, "timestamp": self._timestamp(), **payload}
        self._serial += 1
        self._rows.appendleft(entry)
        self._index[key] = entry
        self._schedule_write()

        if self.rotate_threshold and len(self._rows) > self.rotate_threshold:
            self._auto_rotate()

        return UpsertResult("new", dict(entry))

    async def reset(self, archive_dir: Optional[Path | str] = None) -> int:
        """Clear the live set. With `archive_dir`, the rows are archived first.

        Returns:
            Number of entries removed
        """
        rows = list(self._rows)
        if archive_dir is not None and rows:
            await self._archive(rows, Path(archive_dir))
        self._rows.clear()
        self._index.clear()
        self._serial = 1
        self._schedule_write()
        await self.flush()
        self.sink.info("Store reset", path=str(self.path), removed=len(rows))
        return len(rows)

    async def rotate(self, max_live_rows: int, archive_dir: Optional[Path | str] = None) -> int:
        """Move entries beyond `max_live_rows` (the oldest) to an archive file.

        Their keys leave the live index, so they may be inserted again as new.

        Returns:
            Number of entries archived (0 if the archive could not be written,
            in which case the rows stay live)
        """
        archived = self._trim(max_live_rows)
        if not archived:
            return 0
        ok = await self._archive_or_restore(archived, Path(archive_dir) if archive_dir else self.archive_dir)
        await self.flush()
        return len(archived) if ok else 0

    async def flush(self) -> None:
        """Complete any pending write (and archive) before returning."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        writer = self._writer
        if writer is not None and not writer.done():
            self._flush_requested.set()
            await asyncio.shield(writer)
        if self._dirty:
            await self._write_now()

    async def close(self) -> None:
        await self.flush()

    # ---- internals ----

    def _timestamp(self) -> str:
        now = self._time()
        dt = datetime.fromtimestamp(now, self._tz) if self._tz else datetime.fromtimestamp(now).astimezone()
        return dt.isoformat(timespec="seconds")

    def _merge_fill(self, existing: dict[str, Any], incoming: Mapping[str, Any]) -> tuple[str, ...]:
        changed = []
        for name in self.merge_fields:
            if is_blank(existing.get(name)) and not is_blank(incoming.get(name)):
                existing[name] = incoming[name]
                changed.append(name)
        return tuple(changed)

    def _trim(self, max_live_rows: int) -> list[dict[str, Any]]:
        archived: list[dict[str, Any]] = []
        while len(self._rows) > max(0, max_live_rows):
            row = self._rows.pop()
            key = self.key_func(row)
            if self._index.get(key) is row:
                del self._index[key]
            archived.append(row)
        archived.reverse()
        return archived

    def _auto_rotate(self) -> None:
        archived = self._trim(self.max_live_rows or self.rotate_threshold)
        if archived:
            task = asyncio.get_running_loop().create_task(self._archive_or_restore(archived, self.archive_dir))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _archive(self, rows: list[dict[str, Any]], archive_dir: Path) -> bool:
        target = archive_dir / archive_name(self.path.stem)
        try:
            await atomic_write_json(target, rows)
            self.sink.info("Archived entries", path=str(target), count=len(rows))
        except OSError as e:
            self.sink.error("Archive write failed", path=str(target), error=str(e))
            return False
        return True

    async def _archive_or_restore(self, rows: list[dict[str, Any]], archive_dir: Path) -> bool:
        """Archive trimmed rows; if that fails they go back to the live set."""
        archived = await self._archive(rows, archive_dir)
        if not archived:
            self._restore(rows)
        self._schedule_write()
        return archived

    def _restore(self, rows: list[dict[str, Any]]) -> None:
        """Append rows (newest first) back at the old end of the live set.

        A key inserted again since the trim keeps its newer entry.
        """
        restored = 0
        for row in rows:
            key = self.key_func(row)
            if key in self._index:
                continue
            self._index[key] = row
            self._rows.append(row)
            restored += 1
        self.sink.warning("Archive failed, rows kept live", path=str(self.path), restored=restored)

    def _schedule_write(self) -> None:
        self._dirty = True
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(self._coalesced_writer())

    async def _coalesced_writer(self) -> None:
        while self._dirty:
            try:
                await asyncio.wait_for(self._flush_requested.wait(), timeout=self._coalesce)
            except asyncio.TimeoutError:
                pass
            self._flush_requested.clear()
            if not await self._write_now():
                # Keep the in-memory state; the next upsert schedules a retry
                break

    async def _write_now(self) -> bool:
        async with self._lock:
            if not self._dirty:
                return True
            self._dirty = False
            try:
                payload = dumps(list(self._rows))
                await atomic_write_bytes(self.path, payload)
            except (OSError, TypeError) as e:
                self._dirty = True
                self.sink.error("Store write failed", path=str(self.path), error=str(e))
                return False
            self.writes += 1
            return True
