"""
Command Consumer - Redis Pub/Sub command handler

Consumes commands published by the chat-bot bridge (or any UI) on
REDIS_CHANNEL_COMMANDS and dispatches them to the running service. Every
command gets a short reply on the notification channel.

Supported commands:
    status                      send the status report now
    start [seconds]             enable auto-refresh (default: current interval)
    stop                        disable auto-refresh
    runreports                  send the daily digest without cleanup
    reset                       light reset of in-memory cycle state
    cleanall                    archive reports and deep reset all stores
    keywords|products           list configured phrases
    addkeyword|delkeyword <p>   edit the keyword list
    addproduct|delproduct <p>   edit the product (click) list

Message format:
    {"command": "start", "args": {"text": "10"}}
    {"command": "/addkeyword steel pipe"}
"""

import asyncio
import logging
from typing import Any, Optional

from pydantic import ValidationError

from apps.collector.lists import PhraseList
from apps.collector.scheduler import CycleScheduler
from apps.digest.daily import DailyScheduler
from apps.digest.report import DigestReporter
from utils.config import settings
from utils.mq import RedisSubscriber
from utils.notify_dedup import Notifier
from utils.schemas import CommandEvent
from utils.text import esc

logger = logging.getLogger(__name__)


class CommandConsumer:
    """
    Consumer for operator commands from Redis Pub/Sub.

    Handles:
    - Redis subscription management
    - Command validation and dispatch
    - Replies on the notification channel
    """

    def __init__(
        self,
        cycle: CycleScheduler,
        daily: DailyScheduler,
        reporter: DigestReporter,
        keywords: PhraseList,
        products: PhraseList,
        notifier: Notifier,
        subscriber: Optional[RedisSubscriber] = None,
        run_once: bool = False,
    ) -> None:
        self.cycle = cycle
        self.daily = daily
        self.reporter = reporter
        self.keywords = keywords
        self.products = products
        self.notifier = notifier
        self.subscriber = subscriber
        self.run_once = run_once
        self.shutdown_event = asyncio.Event()
        self._processed_count = 0

    @property
    def processed_count(self) -> int:
        return self._processed_count

    async def handle_message(self, channel: str, message: dict[str, Any]) -> None:
        """Validate one Pub/Sub message and dispatch it.

        Invalid payloads are logged and dropped; a failing command is
        reported back to the operator instead of ending the subscription.
        """
        try:
            event = CommandEvent(**message)
        except (TypeError, ValidationError) as e:
            logger.warning(
                "Invalid command payload",
                extra={"channel": channel, "payload": message, "error": str(e)},
            )
            return

        logger.info("Command received", extra={"command": event.command, "command_args": event.args})
        try:
            reply = await self.dispatch(event)
        except Exception as e:
            logger.error(
                "Command failed",
                extra={"command": event.command, "error": str(e)},
                exc_info=True,
            )
            reply = f"❌ /{event.command} failed: {esc(str(e))}"

        self._processed_count += 1
        if reply:
            await self.notifier.notify(reply, metadata={"parse_mode": "HTML"})

        if self.run_once:
            logger.info("RUN_ONCE mode: signaling shutdown after processing command")
            self.shutdown_event.set()

    async def dispatch(self, event: CommandEvent) -> Optional[str]:
        handler = getattr(self, f"_cmd_{event.command}")
        return await handler(event)

    async def _cmd_status(self, event: CommandEvent) -> Optional[str]:
        await self.reporter.send_status("manual")
        return None

    async def _cmd_start(self, event: CommandEvent) -> str:
        interval_ms = None
        if event.text:
            try:
                interval_ms = int(float(event.text) * 1000)
            except (ValueError, OverflowError):
                return f"⚠️ Invalid interval: {esc(event.text)}"
        state = await self.cycle.enable(interval_ms)
        return f"▶️ Auto-refresh started @{round(state.interval_ms / 1000)}s"

    async def _cmd_stop(self, event: CommandEvent) -> str:
        await self.cycle.disable("command stop")
        return "⏹️ Auto-refresh stopped"

    async def _cmd_runreports(self, event: CommandEvent) -> Optional[str]:
        ok = await self.daily.run_now("manual")
        return None if ok else "❌ Report run failed"

    async def _cmd_reset(self, event: CommandEvent) -> str:
        self.reporter.reset_memory()
        return "🧹 Memory reset complete"

    async def _cmd_cleanall(self, event: CommandEvent) -> str:
        archived = await self.reporter.clean_all("manual-cleanall")
        return f"🧹 Archived {len(archived)} files and reset all reports"

    async def _cmd_keywords(self, event: CommandEvent) -> str:
        return self._format_list("Keywords", await self.keywords.load())

    async def _cmd_products(self, event: CommandEvent) -> str:
        return self._format_list("Products", await self.products.load())

    async def _cmd_addkeyword(self, event: CommandEvent) -> str:
        return await self._edit(self.keywords, "keyword", event.text, add=True)

    async def _cmd_delkeyword(self, event: CommandEvent) -> str:
        return await self._edit(self.keywords, "keyword", event.text, add=False)

    async def _cmd_addproduct(self, event: CommandEvent) -> str:
        return await self._edit(self.products, "product", event.text, add=True)

    async def _cmd_delproduct(self, event: CommandEvent) -> str:
        return await self._edit(self.products, "product", event.text, add=False)

    async def _edit(self, phrases: PhraseList, kind: str, text: str, add: bool) -> str:
        if not text:
            return f"⚠️ Usage: /{'add' if add else 'del'}{kind} &lt;phrase&gt;"
        changed = await (phrases.add(text) if add else phrases.remove(text))
        if add:
            return f"✅ Added {kind}: {esc(text)}" if changed else f"ℹ️ {kind.title()} already listed: {esc(text)}"
        return f"🗑️ Removed {kind}: {esc(text)}" if changed else f"ℹ️ {kind.title()} not found: {esc(text)}"

    @staticmethod
    def _format_list(title: str, phrases: list[str]) -> str:
        if not phrases:
            return f"ℹ️ No {title.lower()} configured"
        lines = [f"📋 <b>{title} ({len(phrases)})</b>"]
        lines.extend(f"{i}. {esc(p)}" for i, p in enumerate(phrases, 1))
        return "\n".join(lines)

    async def start(self) -> None:
        """Subscribe and process commands until stop() is called."""
        if self.subscriber is None:
            self.subscriber = RedisSubscriber([settings.REDIS_CHANNEL_COMMANDS])
        logger.info("Command consumer listening", extra={"channels": self.subscriber.channels})

        task = asyncio.create_task(self.subscriber.subscribe(self.handle_message))
        try:
            await self.shutdown_event.wait()
        finally:
            self.subscriber.stop()
            await task
            await self.subscriber.close()

    def stop(self) -> None:
        self.shutdown_event.set()
