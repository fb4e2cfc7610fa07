"""
Atomic File Utilities

Shared "write temp file, then rename over the target" helper used by every
store, plus tolerant JSON readers. Readers never observe a partially written
file because the rename is atomic within one directory.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiofiles
import aiofiles.os
import orjson

logger = logging.getLogger(__name__)


async def atomic_write_bytes(path: Path | str, data: bytes) -> None:
    """Atomically replace `path` with `data`.

    Raises:
        OSError: If the temp file cannot be written or renamed
    """
    target = Path(path)
    await aiofiles.os.makedirs(target.parent, exist_ok=True)
    tmp = target.parent / f".{target.name}.{uuid.uuid4().hex}.tmp"
    try:
        async with aiofiles.open(tmp, "wb") as f:
            await f.write(data)
        await aiofiles.os.replace(tmp, target)
    except OSError:
        try:
            await aiofiles.os.remove(tmp)
        except OSError:
            pass
        raise


def dumps(data: Any, pretty: bool = True) -> bytes:
    option = orjson.OPT_INDENT_2 if pretty else 0
    return orjson.dumps(data, option=option, default=str)


async def atomic_write_json(path: Path | str, data: Any, pretty: bool = True) -> None:
    await atomic_write_bytes(path, dumps(data, pretty=pretty))


async def read_json(path: Path | str, default: Any = None) -> Any:
    """Read a JSON file, returning `default` when missing or corrupt.

    A corrupt file is logged as a warning and treated as empty; it is
    overwritten by the next successful write.
    """
    source = Path(path)
    try:
        async with aiofiles.open(source, "rb") as f:
            raw = await f.read()
    except FileNotFoundError:
        return default
    except OSError as e:
        logger.warning("Failed to read %s: %s", source, e)
        return default

    if not raw.strip():
        return default
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        logger.warning("Corrupt JSON in %s, treating as empty: %s", source, e)
        return default


class JsonStateFile:
    """A small JSON document owned by one component.

    Saves are serialized through an asyncio.Lock (FIFO), so they land on disk
    in call order. Save failures are logged and reported as False; the
    in-memory state stays authoritative and is retried on the next save.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def load(self, default: Any = None) -> Any:
        return await read_json(self.path, default)

    async def save(self, data: Any) -> bool:
        payload = dumps(data)
        async with self._lock:
            try:
                await atomic_write_bytes(self.path, payload)
                return True
            except OSError as e:
                logger.error("State write failed for %s: %s", self.path, e)
                return False

    async def remove(self) -> None:
        async with self._lock:
            try:
                await aiofiles.os.remove(self.path)
            except FileNotFoundError:
                pass


def archive_name(stem: str, when: Optional[datetime] = None, suffix: str = ".json") -> str:
    """Timestamped side-file name, e.g. products_log_archive_20250101_080000_123456.json"""
    stamp = (when or datetime.now()).strftime("%Y%m%d_%H%M%S_%f")
    return f"{stem}_archive_{stamp}{suffix}"
