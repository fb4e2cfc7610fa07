"""Reachability and session probes used by the HealthMonitor."""

import asyncio
import logging
from typing import Optional

from apps.collector.adapter import PageAdapter

logger = logging.getLogger(__name__)


class TcpProbe:
    """True when a TCP connection to host:port opens within the timeout."""

    def __init__(self, host: str, port: int = 443, timeout: float = 4.0) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout

    async def __call__(self) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug("Probe failed", extra={"host": self.host, "port": self.port, "error": str(e)})
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True


class SessionProbe:
    """Login indicator read through the page adapter.

    Returns None when the page is not ready, so a half-loaded page is never
    mistaken for a logged-out one.
    """

    def __init__(self, adapter: PageAdapter) -> None:
        self.adapter = adapter

    async def __call__(self) -> Optional[bool]:
        if not await self.adapter.is_ready():
            return None
        return await self.adapter.is_session_active()
