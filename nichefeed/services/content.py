"""
Review copy for one product.

The AI text service is preferred; when it is unconfigured or its answer
cannot be reduced to the review schema, a deterministic template built
from the listing bullets is used instead. Lines that merely restate a
source bullet are removed from highlights and pros either way.
"""
import json
import re
from dataclasses import asdict, dataclass, field
from datetime import timedelta

from loguru import logger

from nichefeed.scrapers.amazon_parser import ScrapedProduct
from nichefeed.services.ai_processor import AICompletion, AIProcessor, usage_summary
from nichefeed.services.cache import CacheStore, cache_key
from nichefeed.services.text import clean_product_title, clean_text, normalize_for_compare, stable_hash, truncate
from nichefeed.taxonomy import category_label

DISCLAIMER = "This page may include affiliate links."

LIST_FIELDS = ("listingHighlights", "pros", "cons", "bestFor", "notFor", "bodyParagraphs")

REVIEW_PROMPT = """You are an affiliate review writer.
Return ONLY valid JSON.
Write practical, product-specific content.
Do not copy listing bullets verbatim.
Schema:
{
  "title": "string",
  "excerpt": "1-2 sentence summary",
  "listingHighlights": ["4-6 rewritten highlights; do NOT copy source bullets verbatim"],
  "pros": ["5 items"],
  "cons": ["3 items"],
  "bestFor": ["3 items"],
  "notFor": ["2 items"],
  "bodyParagraphs": ["3-5 short paragraphs"]
}"""

MIN_HIGHLIGHT_LEN = 18
_ACCESSORY_RE = re.compile(r"cable|charger|adapter|airtag|\btag\b|strap|case|protector|mount|dongle|hub|remote")
_BATTERY_RE = re.compile(r"battery|mah|charge|charging|recharge", re.IGNORECASE)
_WATER_RE = re.compile(r"water|swim|ip67|ip68|waterproof", re.IGNORECASE)
_APP_RE = re.compile(r"alexa|\bapp\b|bluetooth|wifi|ios|android", re.IGNORECASE)


@dataclass
class ReviewPayload:
    title: str
    excerpt: str
    listing_highlights: list[str] = field(default_factory=list)
    pros: list[str] = field(default_factory=list)
    cons: list[str] = field(default_factory=list)
    best_for: list[str] = field(default_factory=list)
    not_for: list[str] = field(default_factory=list)
    body_paragraphs: list[str] = field(default_factory=list)

    @classmethod
    def from_ai(cls, data: dict) -> "ReviewPayload":
        def lines(name):
            return [clean_text(x) for x in data.get(name) or [] if clean_text(x)]

        return cls(
            title=clean_text(data.get("title")),
            excerpt=clean_text(data.get("excerpt")),
            listing_highlights=lines("listingHighlights"),
            pros=lines("pros"),
            cons=lines("cons"),
            best_for=lines("bestFor"),
            not_for=lines("notFor"),
            body_paragraphs=lines("bodyParagraphs"),
        )

    def to_ai(self) -> dict:
        return {
            "title": self.title,
            "excerpt": self.excerpt,
            "listingHighlights": self.listing_highlights,
            "pros": self.pros,
            "cons": self.cons,
            "bestFor": self.best_for,
            "notFor": self.not_for,
            "bodyParagraphs": self.body_paragraphs,
        }


@dataclass
class GeneratedReview:
    payload: ReviewPayload
    content_md: str
    used_ai: bool
    fallback_used: bool
    model: str
    prompt_hash: str
    prompt_chars: int
    output_chars: int
    from_cache: bool = False
    error: str | None = None
    usage: dict | None = None
    disclaimer: str = DISCLAIMER

    @property
    def title(self) -> str:
        return self.payload.title

    @property
    def excerpt(self) -> str:
        return self.payload.excerpt

    def summary(self) -> dict:
        return {
            "usedAi": self.used_ai,
            "fallbackUsed": self.fallback_used,
            "fromCache": self.from_cache,
            "title": self.title,
            "error": self.error,
            "usage": self.usage,
        }


def _sentence(text: str) -> str:
    return text if re.search(r"[.!?]$", text) else f"{text}."


def rephrase_highlights(bullets: list[str]) -> list[str]:
    return [f"Highlights practical value: {_sentence(clean_text(b))}" for b in bullets[:6] if clean_text(b)]


def rephrase_pros(bullets: list[str]) -> list[str]:
    out = []
    for line in bullets[:5]:
        cleaned = clean_text(line)
        short = re.split(r"[;,.]", cleaned)[0].strip() or cleaned
        if len(short) > 90:
            short = short[:87].strip() + "..."
        if short:
            out.append(f"Useful in practice: {short[0].lower()}{short[1:]}")
    return out


def drop_source_restatements(lines: list[str], bullets: list[str]) -> list[str]:
    """Remove lines whose normalized text equals a normalized source bullet."""
    source = {normalize_for_compare(b) for b in bullets if normalize_for_compare(b)}
    return [line for line in lines if normalize_for_compare(line) not in source]


def pick_listing_highlights(candidates: list[str], bullets: list[str]) -> list[str]:
    cleaned = [clean_text(x) for x in candidates]
    cleaned = [x for x in cleaned if len(x) >= MIN_HIGHLIGHT_LEN]
    cleaned = drop_source_restatements(cleaned, bullets)
    if len(cleaned) >= 3:
        return cleaned[:6]
    return rephrase_highlights(bullets)


def fallback_review(product: ScrapedProduct, category_path: str) -> ReviewPayload:
    name = clean_product_title(product.title) or f"Amazon product {product.asin}"
    label = category_label(category_path)
    bullets = [b for b in product.bullets if b][:8]
    hay = f"{name} {' '.join(bullets)}".lower()
    accessory = bool(_ACCESSORY_RE.search(hay))
    has_battery = any(_BATTERY_RE.search(b) for b in bullets)
    has_water = any(_WATER_RE.search(b) for b in bullets)
    has_app = any(_APP_RE.search(b) for b in bullets)

    if accessory:
        cons = [
            "Build quality and durability can differ noticeably between similar-looking options.",
            "Length and connector fit should be checked against your exact device setup.",
        ]
        best_for = [
            "Users who need a practical replacement or spare for everyday use.",
            "Buyers comparing price and value across similar options.",
        ]
        not_for = []
    else:
        cons = [
            "Battery runtime can vary a lot based on active features and notification load."
            if has_battery else "Battery and runtime behavior is not always predictable from listing text alone.",
            "App setup and connectivity stability depend on phone compatibility and environment."
            if has_app else "Setup experience can vary depending on your existing devices and ecosystem.",
            "Water resistance claims should still be checked against your real usage."
            if has_water else "Some practical limits only become clear after real-world daily use.",
        ]
        best_for = [
            f"Users looking for a practical {label.lower()} product in daily use.",
            "People already comfortable with companion apps and connected features."
            if has_app else "Buyers who prefer straightforward feature sets over niche extras.",
            "Buyers who want a single direct purchase path.",
        ]
        not_for = [
            "Power users who require highly specialized pro-level feature depth.",
            "Users who want a fully offline experience with no app or account dependency."
            if has_app else "Buyers expecting premium features without validating full specs first.",
        ]

    body = []
    if product.description:
        body.append(truncate(product.description, 600))
    body.append(
        f"{name} is selected as a relevant {label.lower()} option. "
        "Check the current price and seller details before buying."
    )

    return ReviewPayload(
        title=truncate(f"{name} Review", 200),
        excerpt=truncate(f"{name} is selected as a relevant {label.lower()} option. Use the offer box to compare seller pricing before buying.", 240),
        listing_highlights=rephrase_highlights(bullets),
        pros=rephrase_pros(bullets) or ["Relevant product match for the selected category."],
        cons=cons,
        best_for=best_for,
        not_for=not_for,
        body_paragraphs=body,
    )


def render_markdown(review: ReviewPayload, disclaimer: str = DISCLAIMER) -> str:
    def section(heading, lines, limit):
        if not lines:
            return []
        return [f"## {heading}", *[f"- {clean_text(x)}" for x in lines[:limit]], ""]

    parts = [
        *section("Listing Highlights", review.listing_highlights, 6),
        *section("Pros", review.pros, 5),
        *section("Cons", review.cons, 3),
        *section("Best For", review.best_for, 3),
        *section("Not For", review.not_for, 2),
    ]
    for paragraph in review.body_paragraphs[:5]:
        parts.extend([clean_text(paragraph), ""])
    parts.append(f"_{disclaimer}_")
    return "\n".join(parts)


class ContentGenerator:
    def __init__(self, ai: AIProcessor, cache: CacheStore | None = None, review_ttl: timedelta = timedelta(days=30)):
        self.ai = ai
        self.cache = cache
        self.review_ttl = review_ttl

    def _input(self, product: ScrapedProduct, category_path: str) -> dict:
        return {
            "category": category_label(category_path),
            "asin": product.asin,
            "title": product.title,
            "description": product.description,
            "bullets": product.bullets,
        }

    def _cache_key(self, product: ScrapedProduct, category_path: str) -> str:
        fingerprint = stable_hash(product.title + "|" + "|".join(product.bullets))
        return cache_key("review:v1", product.asin, category_path, fingerprint)

    def _finish(self, review: ReviewPayload, product: ScrapedProduct, used_ai: bool, prompt: str, payload: dict, **extra) -> GeneratedReview:
        # Both paths go through the same restatement filter
        review.listing_highlights = pick_listing_highlights(review.listing_highlights, product.bullets)
        review.pros = drop_source_restatements(review.pros, product.bullets) or rephrase_pros(product.bullets)
        if not review.title:
            review.title = truncate(f"{clean_product_title(product.title)} Review", 200)
        if not review.excerpt:
            review.excerpt = truncate(product.description or review.title, 240)

        prompt_text = prompt + json.dumps(payload, ensure_ascii=False)
        return GeneratedReview(
            payload=review,
            content_md=render_markdown(review),
            used_ai=used_ai,
            fallback_used=not used_ai,
            model=self.ai.model,
            prompt_hash=stable_hash(prompt_text),
            prompt_chars=len(prompt_text),
            output_chars=len(json.dumps(review.to_ai(), ensure_ascii=False)),
            **extra,
        )

    async def generate(self, product: ScrapedProduct, category_path: str) -> GeneratedReview:
        payload = self._input(product, category_path)
        key = self._cache_key(product, category_path)

        if self.cache is not None:
            cached = await self.cache.get(key)
            if isinstance(cached, dict):
                logger.info(f"Review cache hit for {product.asin}")
                return self._finish(ReviewPayload.from_ai(cached), product, True, REVIEW_PROMPT, payload, from_cache=True)

        completion = AICompletion(error="AI service not configured")
        if self.ai.configured:
            completion = await self.ai.complete_json(REVIEW_PROMPT, payload, required_lists=LIST_FIELDS)

        if completion.parsed is not None:
            review = ReviewPayload.from_ai(completion.parsed)
            if self.cache is not None:
                await self.cache.set(key, review.to_ai(), self.review_ttl)
            return self._finish(review, product, True, REVIEW_PROMPT, payload, usage=usage_summary(completion))

        logger.warning(f"Fallback review for {product.asin}: {completion.error}")
        return self._finish(
            fallback_review(product, category_path),
            product,
            False,
            REVIEW_PROMPT,
            payload,
            error=completion.error,
            usage=usage_summary(completion) if completion.attempts else None,
        )
