"""Shared fixtures: fake clock, scripted page adapter, recording channel, stores."""

from datetime import timezone
from typing import Any, Optional

import orjson
import pytest

from apps.collector.lists import PhraseList
from apps.collector.stores import open_stores
from utils.notify_dedup import NotificationDedup, Notifier


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAdapter:
    """Page adapter driven by plain attributes set in each test."""

    def __init__(self, items: Optional[list[dict[str, Any]]] = None) -> None:
        self.items = items or []
        self.leads: list[dict[str, Any]] = []
        self.ready = True
        self.session: Optional[bool] = True
        self.click_result = True
        self.clicked: list[int] = []
        self.extract_calls = 0
        self.gate = None

    async def is_ready(self) -> bool:
        return self.ready

    async def extract_items(self) -> list[dict[str, Any]]:
        self.extract_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return list(self.items)

    async def extract_leads(self) -> list[dict[str, Any]]:
        return list(self.leads)

    async def click(self, index: int) -> bool:
        self.clicked.append(index)
        return self.click_result

    async def is_session_active(self) -> Optional[bool]:
        return self.session


class RecordingChannel:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict]] = []
        self.fail = False

    async def send(self, text: str, metadata: Optional[dict] = None) -> bool:
        if self.fail:
            raise ConnectionError("channel down")
        self.sent.append((text, dict(metadata or {})))
        return True

    @property
    def texts(self) -> list[str]:
        return [text for text, _ in self.sent]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def notifier(channel, clock):
    return Notifier(channel, NotificationDedup(ttl_seconds=300, time_func=clock))


@pytest.fixture
def stores(tmp_path, clock):
    return open_stores(
        tmp_path / "reports",
        tmp_path / "archive",
        time_func=clock,
        tz=timezone.utc,
        coalesce_ms=0,
    )


@pytest.fixture
def phrase_list(tmp_path):
    def make(name: str, phrases: list[str]) -> PhraseList:
        path = tmp_path / "list" / f"{name}.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(orjson.dumps(phrases))
        return PhraseList(path)

    return make
