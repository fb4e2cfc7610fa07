"""
Digest Reporter - status reports and daily digests

- Status report (every STATUS_REPORT_MINUTES and on demand): uptime, auth,
  refresh and network state, last scraped product, activity in the last
  30 minutes and the latest lead.
- Daily digest (scheduled slots and /runreports): entry counts per report
  file, then each report file as a document. Scheduled runs archive the
  report files into ARCHIVE_DIR/<stamp>/ and send the archived copies,
  reset every store and in-memory cycle state, and upload the archive over
  SFTP when configured. A failed archive leaves everything in place. Manual
  runs send the live files and skip cleanup.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

import aiofiles

from apps.collector import messages
from apps.collector.stores import Stores
from utils.atomic import atomic_write_bytes
from utils.events import EventSink
from utils.notify_dedup import Notifier
from utils.sftp import SftpUploader
from utils.text import esc

RECENT_WINDOW_SECONDS = 30 * 60
DAY_SECONDS = 24 * 60 * 60


class Resettable(Protocol):
    def reset(self) -> None: ...


def fmt_duration(seconds: float) -> str:
    seconds = max(0, int(seconds))
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m {secs}s"


@dataclass
class StatusSources:
    """Live components the status report reads from; any may be absent."""

    cycle: Any = None
    health: Any = None
    products: Any = None
    matcher: Any = None
    clicker: Any = None
    resettables: list[Resettable] = field(default_factory=list)


class DigestReporter:
    def __init__(
        self,
        stores: Stores,
        notifier: Notifier,
        archive_dir: Path | str,
        sources: Optional[StatusSources] = None,
        uploader: Optional[SftpUploader] = None,
        sink: Optional[EventSink] = None,
        time_func: Optional[Callable[[], float]] = None,
        tz: Optional[tzinfo] = None,
    ) -> None:
        self.stores = stores
        self.notifier = notifier
        self.archive_dir = Path(archive_dir)
        self.sources = sources or StatusSources()
        self.uploader = uploader
        self.sink = sink or EventSink(logging.getLogger(__name__))
        self._time = time_func or time.time
        self.tz = tz
        self.started_at = self._time()

    # ---- status ----

    def status_text(self) -> str:
        src = self.sources
        now = self._time()

        login = getattr(src.health, "login_state", None)
        auth = "Logged IN" if login is True else "Logged OUT" if login is False else "Unknown"

        if src.cycle is not None and src.cycle.state.enabled:
            refresh = f"Running @{round(src.cycle.state.interval_ms / 1000)}s"
            if src.cycle.paused:
                refresh += " (paused)"
        else:
            refresh = "Stopped"

        if src.health is None or src.health.is_online:
            net = "Online" if src.health is None or src.health.is_online_stable else "Online (stabilising)"
        else:
            net = "Offline"

        latest_product = self.stores.products.latest() or {}
        last_scraped = getattr(src.products, "last_product", None) or latest_product.get("name") or "-"
        latest_match = self.stores.matches.latest() or {}
        last_match = getattr(src.matcher, "last_match", None) or latest_match.get("name") or "-"

        if src.clicker is not None:
            clicks = src.clicker.recent_click_count(RECENT_WINDOW_SECONDS)
        else:
            clicks = self.stores.clicks.count_since(RECENT_WINDOW_SECONDS)

        head = "\n".join(
            [
                "🛰️ <b>Status</b>",
                f"⏱️ <b>Uptime:</b> {esc(fmt_duration(now - self.started_at))}",
                f"🔐 <b>Auth:</b> {esc(auth)}",
                f"🔄 <b>Refresh:</b> {esc(refresh)}",
                f"🌐 <b>Network:</b> {esc(net)}",
                f"📦 <b>Last Scraped Product:</b> {esc(last_scraped)}",
                f"🔑 <b>Last Keyword Match Product:</b> {esc(last_match)}",
                f"🆕 <b>New Products (Last 30 Min):</b> {self.stores.products.count_since(RECENT_WINDOW_SECONDS)}",
                f"🕧 <b>Clicks (Last 30 Min):</b> {clicks}",
            ]
        )
        latest_lead = self.stores.leads.latest()
        if latest_lead:
            return head + "\n\n" + messages.lead("🆕 <b>Latest Message Centre</b>", latest_lead)
        return head + "\n\nℹ️ No Message Centre entries yet."

    async def send_status(self, tag: str = "interval") -> bool:
        sent = await self.notifier.notify(self.status_text(), metadata=dict(messages.HTML))
        self.sink.info("Status report sent" if sent else "Status report not sent", tag=tag)
        return sent

    # ---- daily ----

    def digest_text(self, label: str) -> str:
        lines = [f"📤 <b>{esc(label)} - Reports</b>"]
        for store in self.stores:
            lines.append(
                f"• {esc(store.path.name)}: {len(store)} entries ({store.count_since(DAY_SECONDS)} in last 24h)"
            )
        return "\n".join(lines)

    async def run_daily(self, label: str, scheduled: bool = True) -> list[Path]:
        """Send the digest and the report files; scheduled runs also archive, reset and upload.

        Manual runs attach the live report files. Scheduled runs attach the
        archived copies, so the documents stay readable after the reset.

        Returns:
            Archived file paths (empty for manual runs)
        """
        await self.stores.flush()
        await self.notifier.notify(self.digest_text(label), metadata=dict(messages.HTML))

        if not scheduled:
            live = [store for store in self.stores if store.path.exists()]
            await self.send_report_files(label, [s.path for s in live], {s.path.name: len(s) for s in live})
            self.sink.info("Skipping cleanup for manual report run", label=label)
            return []
        return await self.clean_all(label, deliver=True)

    async def send_report_files(self, label: str, paths: list[Path], counts: dict[str, int]) -> int:
        """Send each report file as a document; returns how many the channel accepted."""
        sent = 0
        for path in paths:
            metadata = {**messages.HTML, "document": str(path), "filename": path.name}
            caption = messages.report_file(label, path.name, counts.get(path.name, 0))
            if await self.notifier.notify(caption, metadata=metadata):
                sent += 1
            else:
                self.sink.warning("Report file not delivered", path=str(path), label=label)
        self.sink.info("Report files sent", label=label, files=sent, total=len(paths))
        return sent

    async def clean_all(self, tag: str = "manual-cleanall", deliver: bool = False) -> list[Path]:
        """Archive report files, then wipe stores and in-memory cycle state.

        Raises:
            OSError: If any report file could not be archived; nothing is reset
        """
        sizes = {store.path.name: len(store) for store in self.stores}
        archived = await self.archive_reports(tag)
        if deliver:
            await self.send_report_files(tag, archived, sizes)
        counts = await self.stores.reset()
        self.reset_memory()
        self.sink.info("Deep reset complete", tag=tag, removed=counts)

        if archived and self.uploader is not None and self.uploader.enabled:
            await self.uploader.upload_many(archived, subdir=archived[0].parent.name)
        return archived

    def reset_memory(self) -> None:
        """Light reset of cycle-to-cycle state; stores are left as they are."""
        for component in self.sources.resettables:
            try:
                component.reset()
            except Exception as e:
                self.sink.error("Component reset failed", component=type(component).__name__, error=str(e))

    async def archive_reports(self, tag: str = "") -> list[Path]:
        await self.stores.flush()
        stamp = datetime.fromtimestamp(self._time(), self.tz).strftime("%Y-%m-%d_%H%M%S")
        target_dir = self.archive_dir / stamp
        archived: list[Path] = []
        failed: list[str] = []
        for store in self.stores:
            if not store.path.exists():
                continue
            target = target_dir / store.path.name
            try:
                async with aiofiles.open(store.path, "rb") as f:
                    data = await f.read()
                await atomic_write_bytes(target, data)
            except OSError as e:
                self.sink.error("Report archive failed", path=str(store.path), error=str(e))
                failed.append(store.path.name)
                continue
            archived.append(target)
        if failed:
            raise OSError(f"Report archive incomplete: {', '.join(failed)}")
        self.sink.info("Reports archived", directory=str(target_dir), files=len(archived), tag=tag)
        return archived
