"""
Phrase lists (keywords.json, products.json)

A list is a JSON array of strings edited by the operator, either by hand or
through the add/delete commands. Reads are cached and reloaded only when the
file's mtime changes.
"""

import logging
from pathlib import Path
from typing import Optional

import aiofiles.os

from utils.atomic import JsonStateFile
from utils.text import norm

logger = logging.getLogger(__name__)


class PhraseList:
    def __init__(self, path: Path | str) -> None:
        self.file = JsonStateFile(path)
        self._cached: list[str] = []
        self._mtime: Optional[float] = None

    @property
    def path(self) -> Path:
        return self.file.path

    async def load(self) -> list[str]:
        """Current phrases, normalized and de-duplicated in file order."""
        try:
            stat = await aiofiles.os.stat(self.path)
        except FileNotFoundError:
            self._cached, self._mtime = [], None
            return []
        except OSError as e:
            logger.warning("Cannot stat phrase list %s: %s", self.path, e)
            return list(self._cached)

        if self._mtime == stat.st_mtime:
            return list(self._cached)

        data = await self.file.load([])
        if not isinstance(data, list):
            logger.warning("Phrase list %s is not a JSON array", self.path)
            data = []

        phrases: list[str] = []
        for raw in data:
            phrase = norm(raw)
            if phrase and phrase not in phrases:
                phrases.append(phrase)

        self._cached, self._mtime = phrases, stat.st_mtime
        logger.debug("Phrase list reloaded", extra={"path": str(self.path), "count": len(phrases)})
        return list(phrases)

    async def add(self, phrase: str) -> bool:
        """Append a phrase; False if blank or already present."""
        value = norm(phrase)
        phrases = await self.load()
        if not value or value in phrases:
            return False
        phrases.append(value)
        return await self._save(phrases)

    async def remove(self, phrase: str) -> bool:
        value = norm(phrase)
        phrases = await self.load()
        if value not in phrases:
            return False
        phrases.remove(value)
        return await self._save(phrases)

    async def _save(self, phrases: list[str]) -> bool:
        saved = await self.file.save(phrases)
        if saved:
            self._cached = list(phrases)
            self._mtime = None
        return saved
