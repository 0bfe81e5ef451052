import random
from dataclasses import dataclass

from loguru import logger

from nichefeed.models import OfferSource
from nichefeed.repository import Repository
from nichefeed.taxonomy import category_matches

MIN_WEIGHT = 0.0001


@dataclass
class NicheWeight:
    niche_id: str
    category_path: str
    weight: float


def weights_from_clicks(niches, clicks: list[dict]) -> list[NicheWeight]:
    """weight = 1 + clicks on pages whose product category sits under the niche."""
    out = []
    for niche in niches:
        total = sum(
            int(row.get("count") or 0)
            for row in clicks
            if row.get("category") and category_matches(row["category"], niche.category_path)
        )
        out.append(NicheWeight(niche_id=niche.id, category_path=niche.category_path, weight=1 + total))
    return out


async def weighted_niches(repo: Repository, analytics, window_days: int = 30, source=OfferSource.AMAZON) -> list[NicheWeight]:
    niches = await repo.enabled_niches(source)
    if not niches:
        return []
    clicks = await analytics.clicks_by_category_prefix(window_days)
    weighted = weights_from_clicks(niches, clicks)
    logger.debug(f"Niche weights over {window_days}d: " + ", ".join(f"{w.category_path}={w.weight}" for w in weighted))
    return weighted


def pick_weighted_unique(weighted: list[NicheWeight], count: int, rng: random.Random | None = None) -> list[str]:
    """
    Weighted sampling without replacement.

    Each draw scales a uniform value to the remaining total weight and walks
    the pool subtracting weights until the cursor lands; the picked niche
    leaves the pool.

    count is clamped to [1, len(weighted)]: a count of zero or less still
    picks one niche. Only an empty pool returns [].
    """
    rng = rng or random.Random()
    pool = list(weighted)
    if not pool:
        return []
    target = max(1, min(len(pool), count))
    out = []
    while len(out) < target and pool:
        total = sum(max(MIN_WEIGHT, item.weight) for item in pool)
        cursor = rng.random() * total
        picked = len(pool) - 1
        for i, item in enumerate(pool):
            cursor -= max(MIN_WEIGHT, item.weight)
            if cursor <= 0:
                picked = i
                break
        out.append(pool.pop(picked).category_path)
    return out
