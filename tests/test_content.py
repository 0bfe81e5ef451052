"""
Tests for review generation
"""
import json
from datetime import timedelta

import pytest

from conftest import FakeOpenAI
from nichefeed.scrapers.amazon_parser import ScrapedProduct
from nichefeed.services.ai_processor import AIProcessor
from nichefeed.services.content import (
    DISCLAIMER,
    ContentGenerator,
    drop_source_restatements,
    fallback_review,
    pick_listing_highlights,
)

BULLETS = [
    "Active noise cancelling blocks up to 35 dB of ambient noise",
    "Up to 32 hours total playtime on a single battery charge",
    "Bluetooth 5.3 pairs instantly with iOS and Android",
]


def product(**kwargs):
    data = dict(
        asin="X1",
        url="https://www.amazon.com/dp/X1",
        title="Nimbus Pro Earbuds",
        description="Noise cancelling earbuds with a compact charging case.",
        bullets=list(BULLETS),
        images=[],
        price=49.99,
    )
    data.update(kwargs)
    return ScrapedProduct(**data)


def ai_review(**overrides):
    data = {
        "title": "Nimbus Pro Earbuds Review: Quiet Commutes on a Budget",
        "excerpt": "Solid noise cancelling for the price.",
        "listingHighlights": [
            "Noise cancelling is strong enough for trains and open offices",
            "Battery life easily covers a full work week of commutes",
            "Pairing with phones is quick on both major platforms",
        ],
        "pros": ["Strong noise cancelling for the price", "Long total battery life"],
        "cons": ["Case is bulky"],
        "bestFor": ["Commuters"],
        "notFor": ["Audiophiles"],
        "bodyParagraphs": ["Paragraph one.", "Paragraph two."],
    }
    data.update(overrides)
    return json.dumps(data)


class TestRestatementFilter:
    def test_normalized_match_removed(self):
        lines = ["ACTIVE noise cancelling blocks up to 35 dB of ambient noise!", "Something new and useful"]
        out = drop_source_restatements(lines, BULLETS)
        assert out == ["Something new and useful"]

    def test_highlights_fall_back_when_too_few_survive(self):
        out = pick_listing_highlights([BULLETS[0], BULLETS[1], "Fresh phrasing of the battery story"], BULLETS)
        assert out[0] == f"Highlights practical value: {BULLETS[0]}."
        assert len(out) == 3


class TestFallback:
    def test_template_from_bullets(self):
        review = fallback_review(product(), "electronics/headphones")
        assert review.title == "Nimbus Pro Earbuds Review"
        assert review.pros[0] == "Useful in practice: active noise cancelling blocks up to 35 dB of ambient noise"
        assert any("Battery runtime" in c for c in review.cons)
        assert any("companion apps" in b for b in review.best_for)

    def test_accessory_heuristics(self):
        review = fallback_review(product(title="USB-C Charger Cable", bullets=["Braided cable that resists fraying"]), "electronics/cell-phone-accessories")
        assert review.not_for == []
        assert "connector fit" in review.cons[1]


class TestContentGenerator:
    @pytest.mark.asyncio
    async def test_unconfigured_ai_uses_fallback(self, cache):
        review = await ContentGenerator(AIProcessor(client=None), cache).generate(product(), "electronics/headphones")

        assert review.used_ai is False
        assert review.fallback_used is True
        assert review.title == "Nimbus Pro Earbuds Review"
        assert "## Listing Highlights" in review.content_md
        assert review.content_md.rstrip().endswith(f"_{DISCLAIMER}_")

    @pytest.mark.asyncio
    async def test_ai_pros_restating_bullets_filtered(self, cache):
        client = FakeOpenAI([ai_review(pros=[BULLETS[0], "Long total battery life"])])
        review = await ContentGenerator(AIProcessor(client=client), cache).generate(product(), "electronics/headphones")

        assert review.used_ai is True
        assert review.payload.pros == ["Long total battery life"]
        assert f"- {BULLETS[0]}" not in review.content_md

    @pytest.mark.asyncio
    async def test_disclaimer_cannot_be_changed_by_ai(self, cache):
        client = FakeOpenAI([ai_review(disclaimer="No affiliate links here!")])
        review = await ContentGenerator(AIProcessor(client=client), cache).generate(product(), "electronics/headphones")
        assert review.disclaimer == DISCLAIMER
        assert "No affiliate links here!" not in review.content_md

    @pytest.mark.asyncio
    async def test_two_bad_answers_fall_back(self, cache):
        client = FakeOpenAI(["not json", "still not json"])
        review = await ContentGenerator(AIProcessor(client=client), cache).generate(product(), "electronics/headphones")

        assert review.used_ai is False
        assert review.error
        assert len(client.chat.completions.calls) == 2

    @pytest.mark.asyncio
    async def test_review_cache_skips_second_ai_call(self, cache):
        client = FakeOpenAI([ai_review()])
        generator = ContentGenerator(AIProcessor(client=client), cache, timedelta(days=30))
        first = await generator.generate(product(), "electronics/headphones")
        second = await generator.generate(product(), "electronics/headphones")

        assert len(client.chat.completions.calls) == 1
        assert second.from_cache is True
        assert second.used_ai is True
        assert second.title == first.title

    @pytest.mark.asyncio
    async def test_generation_metadata(self, cache):
        review = await ContentGenerator(AIProcessor(client=None, model="gpt-test"), cache).generate(product(), "electronics/headphones")
        assert review.model == "gpt-test"
        assert len(review.prompt_hash) == 40
        assert review.prompt_chars > 0
        assert review.output_chars > 0
