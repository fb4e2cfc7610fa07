"""
Portal Watch Service - wiring and lifecycle

Builds every component from settings and runs them on one asyncio loop with
a single AsyncIOScheduler:

- collector_cycle   collection pass, re-armed after every pass
- health_poll       network and session probes
- daily_tick        daily digest slots
- status_report     periodic status message
- lock_sweep        expiry of stale rate limit records

Health transitions pause and resume collection: offline pauses until the
network is stable again, logout pauses until the next login.

Usage:
    # Long running service (default)
    python -m apps.runner

    # One collection pass plus a manual digest, then exit
    RUN_ONCE=true python -m apps.runner
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from apps.collector.adapter import PageAdapter, load_adapter
from apps.collector.clicker import MatchClicker
from apps.collector.leads import LeadTracker
from apps.collector.lists import PhraseList
from apps.collector.matching import KeywordMatcher
from apps.collector.products import ProductRecorder
from apps.collector.scheduler import CycleScheduler
from apps.collector.stores import Stores, open_stores
from apps.commands.consumer import CommandConsumer
from apps.digest.daily import DailyScheduler
from apps.digest.report import DigestReporter, StatusSources
from apps.health.monitor import HealthMonitor
from apps.health.probe import SessionProbe, TcpProbe
from apps.lock.auth import Authenticator
from utils.atomic import JsonStateFile
from utils.config import Settings, settings as default_settings
from utils.events import EventSink, Severity
from utils.logging import setup_logging
from utils.mq import RedisNotificationChannel
from utils.notify_dedup import NotificationDedup, Notifier
from utils.rate_limiter import RateLimiter
from utils.sftp import SftpUploader
from utils.text import esc

logger = logging.getLogger(__name__)

STATUS_JOB_ID = "status_report"
SWEEP_JOB_ID = "lock_sweep"


class PortalWatchService:
    """
    Owns the scheduler and every long-lived component.

    Handles:
    - Component construction and persisted state loading
    - Health-driven pause/resume of collection
    - RUN_ONCE execution
    - Signal handling for graceful shutdown
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        adapter: Optional[PageAdapter] = None,
        notifier: Optional[Notifier] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self.config = config or default_settings
        self.run_once = self.config.RUN_ONCE
        self.shutdown_event = asyncio.Event()
        self.tz = ZoneInfo(self.config.DAILY_TZ)

        self.scheduler = scheduler or AsyncIOScheduler(timezone=self.tz)
        self.adapter = adapter or load_adapter(self.config.PAGE_ADAPTER)
        self.channel: Optional[RedisNotificationChannel] = None
        if notifier is None:
            self.channel = RedisNotificationChannel()
            notifier = Notifier(self.channel, NotificationDedup(self.config.NOTIFY_DEDUP_TTL_SECONDS))
        self.notifier = notifier
        self.sink = EventSink("portalwatch", self._forward_error)
        self._alerts: set[asyncio.Task] = set()

        self._build()

        logger.info(
            "PortalWatchService initialized",
            extra={
                "run_once": self.run_once,
                "auto_start": self.config.AUTO_START,
                "daily_slots": self.config.daily_slots,
                "tz": self.config.DAILY_TZ,
            },
        )

    def _build(self) -> None:
        cfg = self.config
        state_dir = cfg.state_dir

        self.keywords = PhraseList(cfg.list_dir / "keywords.json")
        self.products_list = PhraseList(cfg.list_dir / "products.json")

        self.stores: Stores = open_stores(
            cfg.reports_dir,
            cfg.archive_dir,
            sink=self.sink.child("stores"),
            tz=self.tz,
            coalesce_ms=cfg.WRITE_COALESCE_MS,
            max_live_rows=cfg.MAX_LIVE_ROWS,
            rotate_threshold=cfg.ROTATE_THRESHOLD,
        )

        self.product_recorder = ProductRecorder(self.stores.products, sink=self.sink.child("products"))
        self.matcher = KeywordMatcher(
            self.keywords, self.stores.matches, self.notifier, sink=self.sink.child("matcher")
        )
        self.clicker = MatchClicker(
            self.adapter,
            self.products_list,
            self.stores.clicks,
            self.notifier,
            sink=self.sink.child("clicker"),
            silent=cfg.NOTIFY_SILENT,
        )
        self.leads = LeadTracker(self.adapter, self.stores.leads, self.notifier, sink=self.sink.child("leads"))

        self.cycle = CycleScheduler(
            self.adapter,
            self.scheduler,
            state_file=JsonStateFile(state_dir / "cycle_state.json"),
            sink=self.sink.child("cycle"),
            retry_delay_ms=cfg.RETRY_DELAY_MS,
            settle_delay_ms=cfg.SETTLE_DELAY_MS,
        )
        self.cycle.add_listener(self.product_recorder.process_cycle)
        self.cycle.add_listener(self.matcher.process_cycle)
        self.cycle.add_listener(self.clicker.process_cycle)
        self.cycle.add_listener(self.leads.process_cycle)

        self.health = HealthMonitor(
            TcpProbe(cfg.PROBE_HOST, cfg.PROBE_PORT, cfg.PROBE_TIMEOUT),
            SessionProbe(self.adapter),
            sink=self.sink.child("health"),
            failure_threshold=cfg.NETWORK_FAILURE_THRESHOLD,
            stable_ms=cfg.ONLINE_STABLE_MS,
            miss_threshold=cfg.LOGIN_MISS_THRESHOLD,
            quarantine_ms=cfg.LOGOUT_QUARANTINE_MS,
            reload_timeout_ms=cfg.RELOAD_TIMEOUT_MS,
        )
        self.health.on("offline", lambda: self.cycle.pause("offline"))
        self.health.on("online_stable", lambda: self.cycle.resume("offline"))
        self.health.on("logout", self._on_logout)
        self.health.on("login", lambda: self.cycle.resume("logout"))
        self.cycle.on_reload = self.health.set_reloading

        self.reporter = DigestReporter(
            self.stores,
            self.notifier,
            cfg.archive_dir,
            sources=StatusSources(
                cycle=self.cycle,
                health=self.health,
                products=self.product_recorder,
                matcher=self.matcher,
                clicker=self.clicker,
                resettables=[self.product_recorder, self.matcher, self.clicker],
            ),
            uploader=SftpUploader(cfg),
            sink=self.sink.child("digest"),
            tz=self.tz,
        )
        self.daily = DailyScheduler(
            self.reporter.run_daily,
            JsonStateFile(state_dir / "daily_runs.json"),
            tz=self.tz,
            slots=cfg.daily_slots,
            catch_up_minutes=cfg.DAILY_CATCHUP_MINS,
            inclusive=cfg.DAILY_CATCHUP_INCLUSIVE,
            sink=self.sink.child("daily"),
        )

        self.limiter = RateLimiter(
            max_attempts=cfg.LOCK_MAX_ATTEMPTS,
            window_ms=cfg.LOCK_WINDOW_MS,
            lockout_ms=cfg.LOCK_LOCKOUT_MS,
            record_expiry_ms=cfg.LOCK_RECORD_EXPIRY_MS,
        )
        self.authenticator = Authenticator(
            cfg.LOCK_USER,
            self.limiter,
            expected_secret=cfg.LOCK_PASS,
            secret_hash=cfg.LOCK_PASS_HASH,
            state_file=JsonStateFile(state_dir / "lock_state.json") if cfg.LOCK_PERSIST else None,
            persist_ttl_ms=cfg.LOCK_PERSIST_TTL_MS,
            sink=self.sink.child("lock"),
        )

        self.commands = CommandConsumer(
            self.cycle,
            self.daily,
            self.reporter,
            self.keywords,
            self.products_list,
            self.notifier,
        )

    async def _on_logout(self) -> None:
        self.cycle.pause("logout")
        await self.notifier.notify("🔒 Portal session logged out, auto-refresh paused", signature="session|logout")

    def _forward_error(self, severity: Severity, message: str, fields: dict[str, Any]) -> None:
        """Push ERROR events to the notification channel."""
        if severity is not Severity.ERROR:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        text = f"⚠️ <b>{esc(message)}</b>"
        if fields.get("error"):
            text += f"\n{esc(fields['error'])}"
        task = loop.create_task(self.notifier.notify(text, signature=f"error|{message}"))
        self._alerts.add(task)
        task.add_done_callback(self._alerts.discard)

    async def sweep_rate_limits(self) -> int:
        removed = self.limiter.sweep()
        if removed:
            logger.info("Expired rate limit records removed", extra={"removed": removed})
        return removed

    async def load_state(self) -> None:
        counts = await self.stores.load()
        await self.keywords.load()
        await self.products_list.load()
        await self.daily.load()
        logger.info("Persisted state loaded", extra={"stores": counts})

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""

        def signal_handler(signum: int, frame: object) -> None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown")
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def execute_once(self) -> None:
        """One forced collection pass followed by a manual digest."""
        logger.info("Running in RUN_ONCE mode")
        outcome = await self.cycle.run_once()
        await self.cycle.wait_idle()
        logger.info("Collection pass finished", extra={"cycle_id": outcome.cycle_id, "status": outcome.status})
        await self.daily.run_now("manual")

    async def start(self) -> None:
        """
        Start all jobs or execute once.

        In scheduled mode, runs continuously until shutdown signal.
        In RUN_ONCE mode, executes immediately and exits.
        """
        self.setup_signal_handlers()
        await self.load_state()

        if self.run_once:
            try:
                await self.execute_once()
            finally:
                await self.shutdown()
            return

        logger.info("Running in scheduled mode")
        self.scheduler.start()

        await self.cycle.load()
        if self.config.AUTO_START and not self.cycle.state.enabled:
            await self.cycle.enable(self.config.REFRESH_INTERVAL_MS)

        self.health.start(self.scheduler, self.config.HEALTH_CHECK_MS)
        await self.daily.start(self.scheduler, tick_seconds=self.config.DAILY_TICK_SECONDS)

        if self.config.STATUS_REPORT_MINUTES > 0:
            self.scheduler.add_job(
                self.reporter.send_status,
                "interval",
                minutes=self.config.STATUS_REPORT_MINUTES,
                id=STATUS_JOB_ID,
                name="Periodic status report",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self.scheduler.add_job(
            self.sweep_rate_limits,
            "interval",
            seconds=self.config.LOCK_SWEEP_SECONDS,
            id=SWEEP_JOB_ID,
            name="Rate limit sweep",
            replace_existing=True,
        )

        commands_task = asyncio.create_task(self.commands.start())
        logger.info("Waiting for jobs...")

        await self.shutdown_event.wait()

        self.commands.stop()
        try:
            await commands_task
        except Exception as e:
            logger.error("Command consumer stopped with error", extra={"error": str(e)})
        await self.shutdown()

    async def shutdown(self) -> None:
        logger.info("Shutting down")
        self.health.stop()
        self.daily.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.cycle.wait_idle()
        await self.stores.flush()
        if self._alerts:
            await asyncio.gather(*self._alerts, return_exceptions=True)
        if self.channel is not None:
            await self.channel.close()
        logger.info("Shutdown complete")


async def main() -> None:
    """Main entry point for the service."""
    setup_logging(default_settings.LOG_LEVEL, default_settings.LOG_FORMAT)

    try:
        service = PortalWatchService()
        await service.start()
    except Exception as e:
        logger.error("Service failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
