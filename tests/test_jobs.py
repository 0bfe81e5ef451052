"""
Tests for the scheduled autopost and price backcheck jobs
"""
import random

import pytest
from sqlalchemy import select

from conftest import FakeScraper
from nichefeed.models import AutomationRun, Offer, Page, PageStatus, Product, RunStatus, StepLog
from nichefeed.services.jobs import run_autopost, run_price_backcheck
from test_pipeline import ASIN, add_niche, make_pipeline, scraped, search_item


async def only_run(session_factory) -> AutomationRun:
    async with session_factory() as session:
        return (await session.execute(select(AutomationRun))).scalars().one()


class TestAutopost:
    @pytest.mark.asyncio
    async def test_posts_one_page(self, session_factory, cache):
        await add_niche(session_factory, max_items=5)
        await add_niche(session_factory, path="electronics/speakers", keywords="bluetooth speaker", priority=2)
        scraper = FakeScraper({1: [search_item()]}, {ASIN: scraped()})

        outcome = await run_autopost(make_pipeline(session_factory, cache, scraper), candidates=2, rng=random.Random(5))

        assert outcome.ok
        assert outcome.posted == 1
        assert outcome.selected in ("electronics/headphones", "electronics/speakers")
        run = await only_run(session_factory)
        assert run.id == outcome.run_id
        assert run.status == RunStatus.SUCCESS.value
        assert run.items_posted == 1
        assert run.finished_at is not None
        assert "pagesCreated=1" in run.message

        async with session_factory() as session:
            run_steps = (await session.execute(select(StepLog.step).where(StepLog.run_id == run.id))).scalars().all()
        assert "PAGE_CREATED" in run_steps

    @pytest.mark.asyncio
    async def test_tries_next_niche_when_first_posts_nothing(self, session_factory, cache):
        await add_niche(session_factory)
        await add_niche(session_factory, path="electronics/speakers", keywords="bluetooth speaker", priority=2)
        scraper = FakeScraper({1: [search_item()]}, {ASIN: scraped()})
        pipeline = make_pipeline(session_factory, cache, scraper)
        # The candidate now has a page, so no niche can post it again
        await pipeline.run()

        outcome = await run_autopost(pipeline, candidates=2, rng=random.Random(1))

        assert outcome.ok
        assert outcome.posted == 0
        assert sorted(outcome.candidates) == ["electronics/headphones", "electronics/speakers"]
        assert (await only_run(session_factory)).status == RunStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_no_niches_is_a_skip(self, session_factory, cache):
        outcome = await run_autopost(make_pipeline(session_factory, cache, FakeScraper()))

        assert outcome.ok
        assert outcome.skipped
        async with session_factory() as session:
            assert (await session.execute(select(AutomationRun))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_configuration_error_fails_the_run(self, session_factory, cache):
        await add_niche(session_factory)
        pipeline = make_pipeline(session_factory, cache, FakeScraper(), AMAZON_PARTNER_TAG="")

        outcome = await run_autopost(pipeline, rng=random.Random(0))

        assert not outcome.ok
        run = await only_run(session_factory)
        assert run.status == RunStatus.FAILED.value
        assert "partner tag" in run.message

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_the_run(self, session_factory, cache):
        await add_niche(session_factory)
        pipeline = make_pipeline(session_factory, cache, FakeScraper())

        async def broken_run(options=None):
            raise RuntimeError("connection reset")

        pipeline.run = broken_run
        outcome = await run_autopost(pipeline, rng=random.Random(0))

        assert not outcome.ok
        run = await only_run(session_factory)
        assert run.status == RunStatus.FAILED.value
        assert run.finished_at is not None
        assert run.message == "connection reset"


class TestPriceBackcheckJob:
    @pytest.mark.asyncio
    async def test_records_counts(self, session_factory, cache):
        async with session_factory() as session:
            session.add(Product(id="prod_1", canonical_name="Nimbus Pro Earbuds", category="electronics/headphones", attributes={"asin": ASIN}))
            session.add(Page(slug="nimbus", product_id="prod_1", title="Nimbus", content_md="x", status=PageStatus.PUBLISHED.value))
            session.add(Offer(
                source="AMAZON",
                external_id=f"AMAZON_{ASIN}",
                product_id="prod_1",
                price=49.99,
                affiliate_url=f"https://www.amazon.com/dp/{ASIN}?tag=nichefeed-20",
            ))
            await session.commit()
        scraper = FakeScraper(products={ASIN: scraped(price=39.99)})

        outcome = await run_price_backcheck(make_pipeline(session_factory, cache, scraper), limit=10)

        assert outcome.ok
        assert outcome.posted == 1
        run = await only_run(session_factory)
        assert run.status == RunStatus.SUCCESS.value
        assert (run.items_seen, run.items_posted) == (1, 1)
        assert "priceUpdates=1" in run.message

    @pytest.mark.asyncio
    async def test_unexpected_backcheck_error_fails_the_run(self, session_factory, cache):
        pipeline = make_pipeline(session_factory, cache, FakeScraper())

        async def broken_backcheck(limit=500, run_id=None):
            raise RuntimeError("storage unreachable")

        pipeline.backcheck = broken_backcheck
        outcome = await run_price_backcheck(pipeline, limit=10)

        assert not outcome.ok
        run = await only_run(session_factory)
        assert run.status == RunStatus.FAILED.value
        assert run.finished_at is not None
        assert run.message == "storage unreachable"
