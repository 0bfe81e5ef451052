import asyncio
import json
import sys
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path

import typer
from loguru import logger
from pydantic import ValidationError

from nichefeed.config import settings
from nichefeed.database import AsyncSessionLocal, engine
from nichefeed.exceptions import ConfigurationError, PublishGateError
from nichefeed.models import Base, OfferSource
from nichefeed.repository import Repository
from nichefeed.scrapers.amazon import AmazonScraper
from nichefeed.services.ai_processor import AIProcessor
from nichefeed.services.analytics import ClickAnalytics
from nichefeed.services.cache import CacheStore
from nichefeed.services.ingest import IngestReconciler, OfferIngestItem
from nichefeed.services.jobs import run_autopost, run_price_backcheck
from nichefeed.services.media import ImageMirror
from nichefeed.services.pipeline import PipelineOrchestrator, RunOptions
from nichefeed.services.publisher import publish_page
from nichefeed.services.ranking import rank_offers
from nichefeed.services.scheduler import weighted_niches

app = typer.Typer()


@app.callback()
def setup_logging():
    logger.remove()
    logger.add(sys.stderr, level=settings.LOG_LEVEL)


async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def orchestrator():
    """Scraper, cache, AI client and mirror wired for one CLI invocation."""
    cache = CacheStore.from_url(settings.REDIS_URL, stale_retention=timedelta(days=settings.CACHE_STALE_RETENTION_DAYS))
    mirror = ImageMirror.from_settings(settings)
    scraper = AmazonScraper()
    try:
        yield PipelineOrchestrator(AsyncSessionLocal, scraper, cache, AIProcessor(), mirror)
    finally:
        await scraper.close()
        await mirror.close()
        await cache.close()


def echo_json(data):
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


@app.command(name="init-db")
def init_db_command():
    """Create all tables"""
    asyncio.run(init_db())
    logger.success("Tables created")


@app.command(name="bootstrap-niches")
def bootstrap_niches(max_items: int = typer.Option(8, help="maxItems for every created niche")):
    """Create one Amazon niche per taxonomy node when none exist yet"""
    async def run():
        await init_db()
        async with AsyncSessionLocal() as session:
            repo = Repository(session)
            created = await repo.ensure_default_niches(OfferSource.AMAZON, max_items=max_items)
            await repo.commit()
        logger.success(f"Created {created} niche(s)")

    asyncio.run(run())


@app.command(name="run")
def run_pipeline(
    category: list[str] = typer.Option(None, help="Only these niche category paths"),
    max_items: int = typer.Option(None, help="Override maxItems for every niche"),
    max_posts: int = typer.Option(None, help="Stop after this many created pages"),
    require_ai: bool = typer.Option(None, "--require-ai/--allow-fallback", help="Skip candidates without an AI review"),
):
    """Discover, scrape, write and ingest for every enabled niche"""
    async def run():
        await init_db()
        async with orchestrator() as pipeline:
            result = await pipeline.run(RunOptions(
                categories=category or None,
                max_items_per_niche=max_items,
                max_total_posts=max_posts,
                require_ai=require_ai,
            ))
        echo_json(result.to_dict())

    try:
        asyncio.run(run())
    except ConfigurationError as e:
        logger.error(f"Run aborted: {e}")
        raise typer.Exit(code=1)


@app.command()
def autopost():
    """Post one page from a click-weighted niche"""
    async def run():
        await init_db()
        async with orchestrator() as pipeline:
            outcome = await run_autopost(pipeline, settings.AUTOPOST_CANDIDATES, settings.SCHEDULER_WINDOW_DAYS)
        echo_json(outcome.__dict__)
        return outcome.ok

    if not asyncio.run(run()):
        raise typer.Exit(code=1)


@app.command()
def backcheck(limit: int = typer.Option(1000, help="Max offers to re-scrape")):
    """Refresh prices of offers behind published pages"""
    async def run():
        await init_db()
        async with orchestrator() as pipeline:
            outcome = await run_price_backcheck(pipeline, limit)
        echo_json(outcome.__dict__)
        return outcome.ok

    if not asyncio.run(run()):
        raise typer.Exit(code=1)


@app.command()
def ingest(file: Path = typer.Argument(..., exists=True, dir_okay=False, help='JSON file: {"items": [...]}')):
    """Ingest offer items from a JSON file"""
    data = json.loads(file.read_text(encoding="utf-8"))
    try:
        items = [OfferIngestItem.model_validate(x) for x in data.get("items", [])]
    except ValidationError as e:
        logger.error(f"Invalid offer items: {e}")
        raise typer.Exit(code=1)

    async def run():
        await init_db()
        async with AsyncSessionLocal() as session:
            stats = await IngestReconciler(Repository(session)).ingest(items)
        echo_json(stats.to_dict())

    asyncio.run(run())


@app.command()
def publish(slug: str):
    """Publish a page if every offer of its product passes affiliate validation"""
    async def run():
        async with AsyncSessionLocal() as session:
            repo = Repository(session)
            tag = settings.AMAZON_PARTNER_TAG or await repo.active_tracking_id(OfferSource.AMAZON)
            page = await publish_page(repo, slug, tag)
        logger.success(f"{page.slug} is {page.status}")

    try:
        asyncio.run(run())
    except PublishGateError as e:
        logger.error(f"Publish refused: {e}")
        raise typer.Exit(code=1)


@app.command()
def rank(product_id: str):
    """Print the ranked offers of a product"""
    async def run():
        async with AsyncSessionLocal() as session:
            offers = await Repository(session).offers_for_product(product_id)
        for ranked in rank_offers(offers):
            o = ranked.offer
            typer.echo(f"{ranked.score:.4f}  {ranked.reason:<30} {o.source:<10} {o.price if o.price is not None else '-':>9}  {o.affiliate_url}")

    asyncio.run(run())


@app.command()
def weights(window_days: int = typer.Option(settings.SCHEDULER_WINDOW_DAYS, help="Click window in days")):
    """Print click-weighted niche weights"""
    async def run():
        async with AsyncSessionLocal() as session:
            weighted = await weighted_niches(Repository(session), ClickAnalytics(session), window_days)
        for w in sorted(weighted, key=lambda x: -x.weight):
            typer.echo(f"{w.weight:>6}  {w.category_path}")

    asyncio.run(run())


if __name__ == "__main__":
    app()
