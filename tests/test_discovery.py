"""
Tests for candidate discovery
"""
from datetime import timedelta

import pytest

from conftest import FakeScraper
from nichefeed.exceptions import FetchError
from nichefeed.scrapers.amazon_parser import SearchItem
from nichefeed.services.cache import cache_key
from nichefeed.services.discovery import SEARCH_CACHE_NAMESPACE, DiscoveryEngine


def items(*asins):
    return [SearchItem(asin=a, url=f"https://www.amazon.com/dp/{a}", title=f"Item {a}") for a in asins]


def engine_for(scraper, cache, audit, page_size=3, max_pages=10):
    return DiscoveryEngine(scraper, cache, audit, ttl=timedelta(days=7), max_pages=max_pages, page_size=page_size)


class TestDiscover:
    @pytest.mark.asyncio
    async def test_returns_what_exists_without_padding(self, cache, audit):
        scraper = FakeScraper({1: items("A000000001", "A000000002", "A000000003"), 2: items("A000000002")})
        result = await engine_for(scraper, cache, audit).discover("wireless earbuds", 5)

        assert [c.asin for c in result.candidates] == ["A000000001", "A000000002", "A000000003"]
        assert result.pages_fetched == 2

    @pytest.mark.asyncio
    async def test_stops_once_target_reached(self, cache, audit):
        scraper = FakeScraper({1: items("A000000001", "A000000002", "A000000003"), 2: items("A000000004", "A000000005", "A000000006")})
        result = await engine_for(scraper, cache, audit).discover("earbuds", 2)

        assert [c.asin for c in result.candidates] == ["A000000001", "A000000002"]
        assert scraper.search_calls == [("earbuds", 1)]

    @pytest.mark.asyncio
    async def test_known_ids_excluded(self, cache, audit):
        scraper = FakeScraper({1: items("A000000001", "A000000002", "A000000003"), 2: items("A000000004")})
        result = await engine_for(scraper, cache, audit).discover("earbuds", 2, known_ids={"a000000001"})

        assert [c.asin for c in result.candidates] == ["A000000002", "A000000003"]

    @pytest.mark.asyncio
    async def test_bounded_page_count(self, cache, audit):
        scraper = FakeScraper({p: items(*(f"A0000000{p}{i}" for i in range(3))) for p in range(1, 20)})
        result = await engine_for(scraper, cache, audit, max_pages=4).discover("earbuds", 100)

        assert len(scraper.search_calls) == 4
        assert len(result.candidates) == 12

    @pytest.mark.asyncio
    async def test_search_url_keyword(self, cache, audit):
        scraper = FakeScraper({1: items("A000000001")})
        result = await engine_for(scraper, cache, audit).discover("https://www.amazon.com/s?k=usb+hub", 1)

        assert result.query == "usb hub"
        assert scraper.search_calls == [("usb hub", 1)]

    @pytest.mark.asyncio
    async def test_zero_candidates_is_not_an_error(self, cache, audit):
        result = await engine_for(FakeScraper({}), cache, audit).discover("nothing", 3)
        assert result.candidates == []


class TestSearchCache:
    @pytest.mark.asyncio
    async def test_second_run_served_from_cache(self, cache, audit):
        scraper = FakeScraper({1: items("A000000001")})
        engine = engine_for(scraper, cache, audit)
        await engine.discover("earbuds", 1)
        await engine.discover("earbuds", 1)

        assert len(scraper.search_calls) == 1
        assert audit.steps() == ["DISCOVERY_SEARCH_LIVE", "DISCOVERY_SEARCH_CACHE_FRESH"]

    @pytest.mark.asyncio
    async def test_stale_fallback_on_fetch_failure(self, cache, audit, clock):
        await cache.set(cache_key(SEARCH_CACHE_NAMESPACE, "earbuds", 1), [i.to_dict() for i in items("A000000009")], timedelta(days=7))
        clock.advance(days=10)

        scraper = FakeScraper({1: FetchError("Unexpected status 503", status=503)})
        result = await engine_for(scraper, cache, audit).discover("earbuds", 1)

        assert [c.asin for c in result.candidates] == ["A000000009"]
        assert audit.steps() == ["DISCOVERY_SEARCH_STALE_FALLBACK"]

    @pytest.mark.asyncio
    async def test_failure_without_stale_keeps_collected(self, cache, audit):
        scraper = FakeScraper({1: items("A000000001", "A000000002", "A000000003"), 2: FetchError("Robot check page", status=200)})
        result = await engine_for(scraper, cache, audit).discover("earbuds", 5)

        assert [c.asin for c in result.candidates] == ["A000000001", "A000000002", "A000000003"]
        assert result.failed_pages == [2]
        assert audit.steps()[-1] == "DISCOVERY_SEARCH_FAILED"

    @pytest.mark.asyncio
    async def test_empty_results_not_cached(self, cache, audit):
        scraper = FakeScraper({})
        engine = engine_for(scraper, cache, audit)
        await engine.discover("earbuds", 1)
        await engine.discover("earbuds", 1)
        assert len(scraper.search_calls) == 2
