"""Tests for service wiring: health-driven pause/resume and RUN_ONCE."""

import orjson
import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from apps.collector.scheduler import JOB_ID
from apps.runner.service import PortalWatchService
from utils.config import Settings


@pytest.fixture
def config(tmp_path):
    (tmp_path / "list").mkdir()
    (tmp_path / "list" / "keywords.json").write_bytes(orjson.dumps(["pipe"]))
    (tmp_path / "list" / "products.json").write_bytes(orjson.dumps(["valve"]))
    return Settings(
        STATE_DIR=str(tmp_path / "state"),
        REPORTS_DIR=str(tmp_path / "reports"),
        ARCHIVE_DIR=str(tmp_path / "archive"),
        LIST_DIR=str(tmp_path / "list"),
        WRITE_COALESCE_MS=0,
        SFTP_HOST="",
        RUN_ONCE=True,
    )


@pytest.fixture
def service(config, adapter, notifier):
    adapter.items = [
        {"index": 1, "title": "Steel Pipe", "city": "Pune"},
        {"index": 2, "title": "Brass Valves", "location": "Delhi"},
    ]
    return PortalWatchService(config=config, adapter=adapter, notifier=notifier, scheduler=AsyncIOScheduler())


class TestWiring:
    @pytest.mark.asyncio
    async def test_offline_pauses_until_stable(self, service):
        network = {"up": False}

        async def probe():
            return network["up"]

        service.health.network_probe = probe
        service.health.stable_after = 0
        await service.cycle.enable()

        for _ in range(3):
            await service.health.poll()
        assert service.cycle.paused is True
        assert (await service.cycle.tick()).status == "skipped"

        network["up"] = True
        await service.health.poll()
        assert service.cycle.paused is False
        assert service.scheduler.get_job(JOB_ID) is not None

    @pytest.mark.asyncio
    async def test_logout_pauses_and_notifies(self, service, adapter, channel):
        async def probe():
            return True

        service.health.network_probe = probe
        service.health.quarantine = 0
        await service.cycle.enable()

        await service.health.poll()
        assert service.health.login_state is True

        adapter.session = False
        for _ in range(3):
            await service.health.poll()
        assert service.cycle.paused is True
        assert any("logged out" in text for text in channel.texts)

        adapter.session = True
        await service.health.poll()
        assert service.cycle.paused is False

    @pytest.mark.asyncio
    async def test_session_miss_during_reload_is_ignored(self, service, adapter):
        async def reachable():
            return True

        service.health.network_probe = reachable
        service.health.miss_threshold = 1
        service.health.quarantine = 0
        service.cycle.settle_delay_ms = 0
        await service.health.poll()
        assert service.health.login_state is True

        async def reload():
            adapter.session = False
            await service.health.poll()
            adapter.session = True

        adapter.reload = reload
        outcome = await service.cycle.run_once()

        assert outcome.ok
        assert service.health.login_state is True
        assert service.health.consecutive_misses == 0
        assert service.health.reloading is False
        assert service.cycle.paused is False

    @pytest.mark.asyncio
    async def test_errors_are_forwarded(self, service, channel):
        service.sink.error("Store write failed", error="disk full")
        await service.shutdown()
        assert any("Store write failed" in text and "disk full" in text for text in channel.texts)


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_one_pass_runs_every_listener(self, service, adapter, channel, tmp_path):
        await service.load_state()
        await service.execute_once()
        await service.shutdown()

        products = orjson.loads((tmp_path / "reports" / "products_log.json").read_bytes())
        assert {row["name"] for row in products} == {"Steel Pipe", "Brass Valves"}
        assert adapter.clicked == [2]
        assert any("Keyword Matched" in text for text in channel.texts)
        assert any("Reports" in text for text in channel.texts)

    @pytest.mark.asyncio
    async def test_rate_limit_sweep(self, service):
        service.limiter.record_failure("ui")
        assert await service.sweep_rate_limits() == 0
