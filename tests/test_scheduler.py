"""
Tests for click-weighted niche scheduling
"""
import random
from collections import Counter
from datetime import timedelta
from types import SimpleNamespace

import pytest

from nichefeed.models import ClickEvent, Niche, Page, PageStatus, Product, utcnow
from nichefeed.repository import Repository
from nichefeed.services.analytics import ClickAnalytics
from nichefeed.services.scheduler import NicheWeight, pick_weighted_unique, weighted_niches, weights_from_clicks


def niche(id, path):
    return SimpleNamespace(id=id, category_path=path)


class TestWeights:
    def test_weight_floor_is_one(self):
        weighted = weights_from_clicks([niche("n1", "electronics/tv")], [])
        assert weighted[0].weight == 1

    def test_clicks_attributed_by_prefix(self):
        clicks = [
            {"category": "electronics/headphones", "count": 4},
            {"category": "electronics/headphones/over-ear", "count": 2},
            {"category": "electronics/headphones-stand", "count": 9},
        ]
        weighted = weights_from_clicks([niche("n1", "electronics/headphones")], clicks)
        assert weighted[0].weight == 7


class TestPickWeightedUnique:
    def test_pool_of_n_returns_each_once(self):
        pool = [NicheWeight(f"n{i}", f"cat/{i}", w) for i, w in enumerate([1, 50, 3, 1])]
        picked = pick_weighted_unique(pool, 4, random.Random(7))
        assert sorted(picked) == ["cat/0", "cat/1", "cat/2", "cat/3"]

    def test_zero_click_niche_still_selectable(self):
        pool = [NicheWeight("a", "cat/a", 1), NicheWeight("b", "cat/b", 1000)]
        rng = random.Random(1)
        seen = Counter(pick_weighted_unique(pool, 1, rng)[0] for _ in range(5000))
        assert seen["cat/a"] > 0
        assert seen["cat/b"] > seen["cat/a"]

    def test_count_is_clamped(self):
        pool = [NicheWeight("a", "cat/a", 1), NicheWeight("b", "cat/b", 1)]
        assert len(pick_weighted_unique(pool, 10)) == 2
        assert len(pick_weighted_unique(pool, 0)) == 1
        assert pick_weighted_unique([], 3) == []


class TestWeightedNiches:
    @pytest.mark.asyncio
    async def test_reads_niches_and_published_clicks(self, session):
        session.add_all([
            Niche(id="n1", source="AMAZON", category_path="electronics/headphones", keywords="headphones", priority=1),
            Niche(id="n2", source="AMAZON", category_path="electronics/tv", keywords="tv", priority=2),
            Niche(id="n3", source="AMAZON", category_path="travel", keywords="travel", priority=3, is_enabled=False),
            Product(id="p1", canonical_name="Buds", category="electronics/headphones"),
            Page(id="pg1", slug="electronics/headphones/buds", product_id="p1", title="Buds", content_md="x", status=PageStatus.PUBLISHED.value),
            Product(id="p2", canonical_name="Draft", category="electronics/tv"),
            Page(id="pg2", slug="electronics/tv/draft", product_id="p2", title="Draft", content_md="x"),
        ])
        await session.flush()
        session.add_all([
            ClickEvent(page_id="pg1"),
            ClickEvent(page_id="pg1"),
            ClickEvent(page_id="pg1", created_at=utcnow() - timedelta(days=90)),
            ClickEvent(page_id="pg2"),
        ])
        await session.commit()

        weighted = await weighted_niches(Repository(session), ClickAnalytics(session), window_days=30)
        weights = {w.category_path: w.weight for w in weighted}
        assert weights == {"electronics/headphones": 3, "electronics/tv": 1}
