"""Tests for status reports, daily digests and deep reset."""

import orjson
import pytest

from apps.digest.report import DigestReporter, StatusSources, fmt_duration


class FakeUploader:
    enabled = True

    def __init__(self):
        self.uploads = []

    async def upload_many(self, paths, subdir=""):
        self.uploads.append(([p.name for p in paths], subdir))
        return [f"/upload/{subdir}/{p.name}" for p in paths]


class FakeHealth:
    is_online = True
    is_online_stable = True
    login_state = True


class TestFmtDuration:
    def test_minutes_and_seconds(self):
        assert fmt_duration(125) == "2m 5s"

    def test_hours(self):
        assert fmt_duration(3 * 3600 + 60) == "3h 1m"

    def test_days(self):
        assert fmt_duration(2 * 86400 + 3600) == "2d 1h 0m"

    def test_negative_clamped(self):
        assert fmt_duration(-5) == "0m 0s"


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_text_fields(self, stores, notifier, clock, tmp_path):
        reporter = DigestReporter(
            stores, notifier, tmp_path / "archive", sources=StatusSources(health=FakeHealth()), time_func=clock
        )
        stores.products.upsert({"name": "Steel Pipe", "location": "Pune"})
        clock.advance(90)

        text = reporter.status_text()
        assert "Uptime:</b> 1m 30s" in text
        assert "Logged IN" in text
        assert "Stopped" in text
        assert "Last Scraped Product:</b> Steel Pipe" in text
        assert "New Products (Last 30 Min):</b> 1" in text
        assert "No Message Centre entries yet" in text

    @pytest.mark.asyncio
    async def test_status_includes_latest_lead(self, stores, notifier, clock, tmp_path):
        reporter = DigestReporter(stores, notifier, tmp_path / "archive", time_func=clock)
        stores.leads.upsert({"product": "Valve", "buyer": "Asha", "mobile": "9876543210"})

        text = reporter.status_text()
        assert "Latest Message Centre" in text
        assert "Asha" in text

    @pytest.mark.asyncio
    async def test_send_status(self, stores, notifier, channel, clock, tmp_path):
        reporter = DigestReporter(stores, notifier, tmp_path / "archive", time_func=clock)
        assert await reporter.send_status() is True
        assert channel.sent[0][1]["parse_mode"] == "HTML"


class TestDaily:
    @pytest.mark.asyncio
    async def test_digest_counts_entries(self, stores, notifier, clock, tmp_path):
        reporter = DigestReporter(stores, notifier, tmp_path / "archive", time_func=clock)
        stores.products.upsert({"name": "a", "location": ""})
        stores.products.upsert({"name": "b", "location": ""})

        text = reporter.digest_text("08:00")
        assert "08:00 - Reports" in text
        assert "products_log.json: 2 entries" in text

    @pytest.mark.asyncio
    async def test_manual_run_keeps_reports(self, stores, notifier, channel, clock, tmp_path):
        reporter = DigestReporter(stores, notifier, tmp_path / "archive", time_func=clock)
        stores.products.upsert({"name": "a", "location": ""})

        assert await reporter.run_daily("manual", scheduled=False) == []
        assert len(stores.products) == 1
        assert len(channel.sent) == 2
        assert "manual - Reports" in channel.sent[0][0]

        caption, metadata = channel.sent[1]
        assert metadata["document"] == str(stores.products.path)
        assert metadata["filename"] == "products_log.json"
        assert "products_log.json (1 entries)" in caption
        assert stores.products.path.exists()

    @pytest.mark.asyncio
    async def test_scheduled_run_sends_archived_copies(self, stores, notifier, channel, clock, tmp_path):
        reporter = DigestReporter(stores, notifier, tmp_path / "archive", time_func=clock)
        stores.products.upsert({"name": "a", "location": ""})
        stores.products.upsert({"name": "b", "location": ""})

        archived = await reporter.run_daily("20:00")

        documents = [meta["document"] for _, meta in channel.sent if "document" in meta]
        assert documents == [str(p) for p in archived]
        assert "products_log.json (2 entries)" in channel.sent[1][0]
        # the delivered copy still holds the rows after the live store is reset
        assert len(orjson.loads(archived[0].read_bytes())) == 2
        assert len(stores.products) == 0

    @pytest.mark.asyncio
    async def test_failed_archive_skips_reset(self, stores, notifier, channel, clock, tmp_path):
        blocked = tmp_path / "archive"
        blocked.write_text("not a directory")
        reporter = DigestReporter(stores, notifier, blocked, time_func=clock)
        stores.products.upsert({"name": "a", "location": ""})
        stores.clicks.upsert({"title": "a", "cycle": 1})

        with pytest.raises(OSError, match="products_log.json"):
            await reporter.clean_all()

        assert len(stores.products) == 1
        assert len(stores.clicks) == 1
        assert stores.products.next_serial == 2
        assert orjson.loads(stores.products.path.read_bytes())

    @pytest.mark.asyncio
    async def test_scheduled_run_archives_resets_and_uploads(self, stores, notifier, clock, tmp_path):
        uploader = FakeUploader()
        reporter = DigestReporter(stores, notifier, tmp_path / "archive", uploader=uploader, time_func=clock)
        stores.products.upsert({"name": "a", "location": ""})
        stores.clicks.upsert({"title": "a", "cycle": 1})

        archived = await reporter.run_daily("20:00")

        assert sorted(p.name for p in archived) == ["matchclick.json", "products_log.json"]
        assert orjson.loads(archived[0].read_bytes())
        assert len(stores.products) == 0
        assert stores.products.next_serial == 1
        assert uploader.uploads == [([p.name for p in archived], archived[0].parent.name)]

    @pytest.mark.asyncio
    async def test_reset_memory_tolerates_failing_component(self, stores, notifier, tmp_path):
        calls = []

        class Broken:
            def reset(self):
                raise RuntimeError("bad state")

        class Good:
            def reset(self):
                calls.append("good")

        reporter = DigestReporter(
            stores, notifier, tmp_path / "archive", sources=StatusSources(resettables=[Broken(), Good()])
        )
        reporter.reset_memory()
        assert calls == ["good"]
