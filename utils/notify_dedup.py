"""Suppress repeat outbound notifications for the same signature within a TTL."""

import logging
import time
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class NotificationDedup:
    def __init__(self, ttl_seconds: float = 300, time_func: Optional[Callable[[], float]] = None, max_entries: int = 5000):
        self.ttl = ttl_seconds
        self.max_entries = max_entries
        self._time_func = time_func or time.time
        self._sent: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._sent)

    def should_send(self, signature: str) -> bool:
        """True (and the send is recorded) if `signature` is new or its TTL elapsed."""
        now = self._time_func()
        last = self._sent.get(signature)
        if last is not None and now - last < self.ttl:
            return False
        self._sent[signature] = now
        if len(self._sent) > self.max_entries:
            self.prune()
        return True

    def forget(self, signature: str) -> None:
        self._sent.pop(signature, None)

    def prune(self) -> int:
        """Drop signatures whose TTL has elapsed."""
        now = self._time_func()
        expired = [sig for sig, at in self._sent.items() if now - at >= self.ttl]
        for sig in expired:
            del self._sent[sig]
        return len(expired)

    def clear(self) -> None:
        self._sent.clear()


class NotificationChannel(Protocol):
    async def send(self, text: str, metadata: Optional[dict[str, Any]] = None) -> bool: ...


class Notifier:
    """Notification channel gated by a NotificationDedup.

    Messages without a signature are always sent. Channel failures are
    logged and reported as False.
    """

    def __init__(self, channel: NotificationChannel, dedup: Optional[NotificationDedup] = None):
        self.channel = channel
        self.dedup = dedup or NotificationDedup()

    async def notify(
        self,
        text: str,
        signature: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        if signature is not None and not self.dedup.should_send(signature):
            logger.debug("Suppressed duplicate notification", extra={"signature": signature})
            return False
        try:
            return bool(await self.channel.send(text, metadata or {"parse_mode": "HTML"}))
        except Exception as e:
            logger.error("Notification channel failed", extra={"error": str(e)})
            return False
