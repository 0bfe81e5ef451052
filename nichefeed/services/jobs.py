"""
Scheduled jobs. Each one is recorded as an AutomationRun that goes
QUEUED -> SUCCESS | FAILED with counters and a one-line message.
"""
import random
from dataclasses import dataclass, field

from loguru import logger

from nichefeed.models import OfferSource, RunStatus
from nichefeed.repository import Repository
from nichefeed.services.analytics import ClickAnalytics
from nichefeed.services.pipeline import PipelineOrchestrator, PipelineResult, RunOptions
from nichefeed.services.scheduler import pick_weighted_unique, weighted_niches


@dataclass
class JobOutcome:
    ok: bool
    run_id: str | None = None
    skipped: bool = False
    message: str = ""
    selected: str | None = None
    candidates: list[str] = field(default_factory=list)
    posted: int = 0


async def run_autopost(orchestrator: PipelineOrchestrator, candidates: int = 3, window_days: int = 30, rng: random.Random | None = None) -> JobOutcome:
    """Try click-weighted niches one by one until a single page gets created."""
    factory = orchestrator.session_factory
    async with factory() as session:
        weighted = await weighted_niches(Repository(session), ClickAnalytics(session), window_days, OfferSource.AMAZON)
    if not weighted:
        return JobOutcome(ok=True, skipped=True, message="no enabled niches")

    async with factory() as session:
        run = await Repository(session).create_run(OfferSource.AMAZON, "Autopost started.")

    picked = pick_weighted_unique(weighted, min(candidates, len(weighted)), rng)
    result = None
    winner = None
    try:
        for category_path in picked:
            attempt = await orchestrator.run(RunOptions(
                categories=[category_path],
                max_items_per_niche=1,
                max_total_posts=1,
                run_id=run.id,
            ))
            result = attempt
            if attempt.created_pages > 0:
                winner = category_path
                break
    except Exception as e:
        logger.exception(f"Autopost {run.id} failed: {e}")
        async with factory() as session:
            await Repository(session).finish_run(run, RunStatus.FAILED, str(e))
        return JobOutcome(ok=False, run_id=run.id, message=str(e), candidates=picked)

    result = result or PipelineResult(run_id=run.id)
    posted = result.created_pages
    message = (
        f"Autopost done. target={winner or (picked[0] if picked else 'none')}, candidates={', '.join(picked)}, "
        f"pagesCreated={result.created_pages}, aiAttempts={result.ai_attempts}, aiFailures={result.ai_failures}."
    )
    async with factory() as session:
        await Repository(session).finish_run(
            run,
            RunStatus.SUCCESS if posted > 0 else RunStatus.FAILED,
            message,
            items_seen=result.requested_posts,
            items_posted=posted,
        )
    logger.info(message)
    return JobOutcome(ok=True, run_id=run.id, message=message, selected=winner, candidates=picked, posted=posted)


async def run_price_backcheck(orchestrator: PipelineOrchestrator, limit: int = 1000) -> JobOutcome:
    factory = orchestrator.session_factory
    async with factory() as session:
        run = await Repository(session).create_run(OfferSource.AMAZON, "Price backcheck started.")

    try:
        result = await orchestrator.backcheck(limit=limit, run_id=run.id)
    except Exception as e:
        logger.exception(f"Backcheck {run.id} failed: {e}")
        async with factory() as session:
            await Repository(session).finish_run(run, RunStatus.FAILED, str(e))
        return JobOutcome(ok=False, run_id=run.id, message=str(e))

    message = (
        f"Price backcheck complete. scanned={result.scanned}, "
        f"updatedOffers={result.updated_offers}, priceUpdates={result.price_updates}."
    )
    async with factory() as session:
        await Repository(session).finish_run(
            run,
            RunStatus.SUCCESS,
            message,
            items_seen=result.scanned,
            items_posted=result.updated_offers,
        )
    return JobOutcome(ok=True, run_id=run.id, message=message, posted=result.updated_offers)
