"""Tests for the per-cycle collector listeners: products, keyword matches, clicks, leads."""

import asyncio

import pytest

from apps.collector.clicker import MatchClicker, phrase_regex
from apps.collector.leads import LeadTracker
from apps.collector.lists import PhraseList
from apps.collector.matching import KeywordMatcher
from apps.collector.products import ProductRecorder
from utils.schemas import PageItem


def page(*rows):
    return [PageItem(index=i, **row) for i, row in enumerate(rows, 1)]


class TestProductRecorder:
    @pytest.mark.asyncio
    async def test_records_each_listing_once(self, stores):
        recorder = ProductRecorder(stores.products)
        items = page({"title": "Steel Pipe", "city": "Pune"}, {"title": "Copper Wire", "location": "Delhi"})

        assert await recorder.process_cycle(items, 1) == 2
        assert await recorder.process_cycle(items, 2) == 0
        assert len(stores.products) == 2
        assert recorder.last_product == "Steel Pipe"

    @pytest.mark.asyncio
    async def test_location_prefers_city_and_state(self, stores):
        recorder = ProductRecorder(stores.products)
        await recorder.process_cycle(page({"title": "Pipe", "city": "Pune", "state": "MH", "location": "x"}), 1)
        assert stores.products.latest()["location"] == "Pune, MH"

    @pytest.mark.asyncio
    async def test_empty_cycle(self, stores):
        recorder = ProductRecorder(stores.products)
        assert await recorder.process_cycle([], 1) == 0


class TestKeywordMatcher:
    @pytest.mark.asyncio
    async def test_match_notifies_and_persists(self, stores, notifier, channel, phrase_list):
        matcher = KeywordMatcher(phrase_list("keywords", ["steel pipe"]), stores.matches, notifier)
        summary = await matcher.process_cycle(page({"title": "Steel Pipe, 2 inch", "city": "Pune"}), 1)

        assert summary.sent == 1
        assert summary.persisted == 1
        assert len(channel.sent) == 1
        assert "Keyword" in channel.texts[0]
        assert matcher.last_match == "Steel Pipe, 2 inch"

    @pytest.mark.asyncio
    async def test_no_repeat_while_listing_stays(self, stores, notifier, channel, phrase_list):
        matcher = KeywordMatcher(phrase_list("keywords", ["pipe"]), stores.matches, notifier)
        items = page({"title": "Steel Pipe"})

        await matcher.process_cycle(items, 1)
        summary = await matcher.process_cycle(items, 2)
        assert summary.sent == 0
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_known_match_is_not_renotified_after_restart(self, stores, notifier, channel, phrase_list):
        stores.matches.upsert({"name": "steel pipe", "location": ""})
        matcher = KeywordMatcher(phrase_list("keywords", ["pipe"]), stores.matches, notifier)

        summary = await matcher.process_cycle(page({"title": "Steel Pipe"}), 1)
        assert summary.sent == 0
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_non_matching_titles_ignored(self, stores, notifier, channel, phrase_list):
        matcher = KeywordMatcher(phrase_list("keywords", ["valve"]), stores.matches, notifier)
        summary = await matcher.process_cycle(page({"title": "Steel Pipe"}), 1)
        assert summary.matched == []
        assert len(stores.matches) == 0

    @pytest.mark.asyncio
    async def test_empty_keyword_list(self, stores, notifier, tmp_path):
        matcher = KeywordMatcher(PhraseList(tmp_path / "missing.json"), stores.matches, notifier)
        summary = await matcher.process_cycle(page({"title": "Steel Pipe"}), 1)
        assert summary.matched == []

    @pytest.mark.asyncio
    async def test_reset_forgets_last_cycle(self, stores, notifier, phrase_list):
        matcher = KeywordMatcher(phrase_list("keywords", ["pipe"]), stores.matches, notifier)
        await matcher.process_cycle(page({"title": "Steel Pipe"}), 1)
        matcher.reset()
        assert matcher.last_match is None


class TestPhraseRegex:
    def test_plural_suffix_matches(self):
        assert phrase_regex("steel pipe").search("steel pipes for sale")

    def test_whole_words_only(self):
        assert phrase_regex("pipe").search("bagpipe") is None

    def test_blank_phrase(self):
        assert phrase_regex("   ") is None


class TestMatchClicker:
    @pytest.mark.asyncio
    async def test_clicks_matching_listing(self, adapter, stores, notifier, channel, phrase_list, clock):
        clicker = MatchClicker(adapter, phrase_list("products", ["pipe"]), stores.clicks, notifier, time_func=clock)
        summary = await clicker.process_cycle(page({"title": "Copper Wire"}, {"title": "Steel Pipes"}), 1)

        assert adapter.clicked == [2]
        assert summary.clicked == ["Steel Pipes"]
        assert stores.clicks.latest()["matched"] == "pipe"
        assert len(channel.sent) == 1
        assert clicker.recent_click_count() == 1

    @pytest.mark.asyncio
    async def test_cooldown_between_consecutive_cycles(self, adapter, stores, notifier, phrase_list, clock):
        clicker = MatchClicker(adapter, phrase_list("products", ["pipe"]), stores.clicks, notifier, time_func=clock)
        items = page({"title": "Steel Pipe", "city": "Pune"})

        await clicker.process_cycle(items, 1)
        await clicker.process_cycle(items, 2)
        await clicker.process_cycle(items, 3)
        assert adapter.clicked == [1]

    @pytest.mark.asyncio
    async def test_cooldown_cleared_after_gap(self, adapter, stores, notifier, phrase_list, clock):
        clicker = MatchClicker(adapter, phrase_list("products", ["pipe"]), stores.clicks, notifier, time_func=clock)
        items = page({"title": "Steel Pipe", "city": "Pune"})

        await clicker.process_cycle(items, 1)
        await clicker.process_cycle(items, 5)
        assert adapter.clicked == [1, 1]

    @pytest.mark.asyncio
    async def test_failed_click_is_reported(self, adapter, stores, notifier, channel, phrase_list, clock):
        adapter.click_result = False
        clicker = MatchClicker(adapter, phrase_list("products", ["pipe"]), stores.clicks, notifier, time_func=clock)
        summary = await clicker.process_cycle(page({"title": "Steel Pipe"}), 1)

        assert summary.failed == ["Steel Pipe"]
        assert len(stores.clicks) == 0
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_silent_mode_skips_no_match_messages(self, adapter, stores, notifier, channel, phrase_list, clock):
        clicker = MatchClicker(adapter, phrase_list("products", ["valve"]), stores.clicks, notifier, time_func=clock)
        await clicker.process_cycle(page({"title": "Steel Pipe"}), 1)
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_verbose_mode_reports_no_match(self, adapter, stores, notifier, channel, phrase_list, clock):
        clicker = MatchClicker(
            adapter, phrase_list("products", ["valve"]), stores.clicks, notifier, time_func=clock, silent=False
        )
        await clicker.process_cycle(page({"title": "Steel Pipe"}), 1)
        assert "matched: no" in channel.texts[0]

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, adapter, stores, notifier, phrase_list, clock):
        clicker = MatchClicker(adapter, phrase_list("products", ["pipe"]), stores.clicks, notifier, time_func=clock)
        gate = asyncio.Event()
        started = asyncio.Event()
        original_click = adapter.click

        async def slow_click(index):
            started.set()
            await gate.wait()
            return await original_click(index)

        adapter.click = slow_click
        first = asyncio.create_task(clicker.process_cycle(page({"title": "Steel Pipe"}), 1))
        await started.wait()

        second = await clicker.process_cycle(page({"title": "Steel Pipe"}), 2)
        assert second.skipped is True

        gate.set()
        assert (await first).clicked == ["Steel Pipe"]

    @pytest.mark.asyncio
    async def test_reset_clears_cooldown(self, adapter, stores, notifier, phrase_list, clock):
        clicker = MatchClicker(adapter, phrase_list("products", ["pipe"]), stores.clicks, notifier, time_func=clock)
        await clicker.process_cycle(page({"title": "Steel Pipe"}), 1)
        clicker.reset()

        assert clicker.cooldown == frozenset()
        assert clicker.recent_click_count() == 0


class TestLeadTracker:
    LEAD = {"product": "Steel Pipe", "buyer": "Asha", "mobile": "+91-98765 43210", "email": "---"}

    @pytest.mark.asyncio
    async def test_new_lead_notified(self, adapter, stores, notifier, channel):
        adapter.leads = [dict(self.LEAD)]
        tracker = LeadTracker(adapter, stores.leads, notifier)

        summary = await tracker.process_cycle([], 1)
        assert summary.new == 1
        assert len(channel.sent) == 1
        assert stores.leads.latest()["email"] == ""

    @pytest.mark.asyncio
    async def test_same_lead_not_renotified(self, adapter, stores, notifier, channel):
        adapter.leads = [dict(self.LEAD)]
        tracker = LeadTracker(adapter, stores.leads, notifier)

        await tracker.process_cycle([], 1)
        summary = await tracker.process_cycle([], 2)
        assert summary.new == 0
        assert summary.updated == 0
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_filled_field_is_an_update(self, adapter, stores, notifier, channel):
        tracker = LeadTracker(adapter, stores.leads, notifier)
        await tracker.ingest([dict(self.LEAD)], 1)

        summary = await tracker.ingest([{**self.LEAD, "mobile": "9876543210", "email": "asha@example.com"}], 2)
        assert summary.updated == 1
        assert len(stores.leads) == 1
        assert stores.leads.latest()["email"] == "asha@example.com"
        assert len(channel.sent) == 2

    @pytest.mark.asyncio
    async def test_blank_leads_skipped(self, stores, notifier, adapter):
        tracker = LeadTracker(adapter, stores.leads, notifier)
        summary = await tracker.ingest([{"email": "x@example.com"}, {"product": "---"}], 1)
        assert summary.seen == 0
        assert len(stores.leads) == 0

    @pytest.mark.asyncio
    async def test_extraction_error_contained(self, adapter, stores, notifier):
        async def broken():
            raise RuntimeError("frame detached")

        adapter.extract_leads = broken
        summary = await LeadTracker(adapter, stores.leads, notifier).process_cycle([], 3)
        assert summary.new == 0


class TestPhraseList:
    @pytest.mark.asyncio
    async def test_load_normalizes_and_dedupes(self, phrase_list):
        phrases = phrase_list("keywords", ["Steel  Pipe", "steel pipe", "", "Valve"])
        assert await phrases.load() == ["steel pipe", "valve"]

    @pytest.mark.asyncio
    async def test_add_and_remove(self, phrase_list):
        phrases = phrase_list("products", ["pipe"])
        assert await phrases.add("Valve") is True
        assert await phrases.add("valve") is False
        assert await phrases.remove("pipe") is True
        assert await phrases.remove("pipe") is False
        assert await phrases.load() == ["valve"]

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path):
        assert await PhraseList(tmp_path / "none.json").load() == []
