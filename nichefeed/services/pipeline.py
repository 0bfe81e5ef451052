"""
Niche -> pages pipeline.

One run walks the enabled niches in priority order and, for each
discovered candidate, scrapes the product, writes the review, ingests the
offer and creates a draft page. Everything is sequential. A failing
candidate or niche is recorded and skipped; only a missing tracking tag
aborts the run, and it does so before anything is written.
"""
from dataclasses import asdict, dataclass, field
from datetime import timedelta

from loguru import logger
from sqlalchemy.ext.asyncio import async_sessionmaker

from nichefeed.config import settings as default_settings
from nichefeed.exceptions import ConfigurationError, NichefeedError, PublishGateError
from nichefeed.models import Niche, OfferSource, PageStatus, new_id, utcnow
from nichefeed.repository import RecentTitle, Repository
from nichefeed.scrapers.amazon_parser import ScrapedProduct, SearchItem, search_query_from_keyword
from nichefeed.services.affiliate import amazon_product_url, validate_affiliate_url
from nichefeed.services.ai_processor import AIProcessor
from nichefeed.services.audit import StepAudit
from nichefeed.services.cache import CacheStore
from nichefeed.services.content import ContentGenerator
from nichefeed.services.discovery import DiscoveryEngine
from nichefeed.services.extractor import ProductExtractor
from nichefeed.services.ingest import IngestReconciler, OfferIngestItem
from nichefeed.services.media import ImageMirror
from nichefeed.services.publisher import publish
from nichefeed.services.text import clean_text, is_likely_duplicate_title, stable_hash, to_slug

MAX_ITEMS_PER_NICHE = 10


@dataclass
class RunOptions:
    categories: list[str] | None = None
    max_items_per_niche: int | None = None
    max_total_posts: int | None = None
    require_ai: bool | None = None
    publish_mode: str | None = None
    run_id: str | None = None


@dataclass
class PipelineResult:
    run_id: str
    niches_used: int = 0
    requested_posts: int = 0
    created_pages: int = 0
    published_pages: int = 0
    generated_offers: int = 0
    created_offers: int = 0
    updated_offers: int = 0
    price_updates: int = 0
    skipped: int = 0
    duplicates: int = 0
    failed: int = 0
    ai_attempts: int = 0
    ai_failures: int = 0
    page_slugs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BackcheckResult:
    scanned: int = 0
    updated_offers: int = 0
    price_updates: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TrackingTag:
    tag: str
    partner_name: str


def product_id_for(category_path: str, asin: str) -> str:
    return "prod_" + stable_hash(f"{category_path}:{asin.upper()}")


class PipelineOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        scraper,
        cache: CacheStore,
        ai: AIProcessor,
        mirror: ImageMirror,
        settings=default_settings,
    ):
        self.session_factory = session_factory
        self.scraper = scraper
        self.cache = cache
        self.ai = ai
        self.mirror = mirror
        self.settings = settings
        self.generator = ContentGenerator(ai, cache, timedelta(days=settings.REVIEW_CACHE_TTL_DAYS))

    def _extractor(self, audit: StepAudit) -> ProductExtractor:
        return ProductExtractor(
            self.scraper,
            self.cache,
            self.mirror,
            audit,
            ttl=timedelta(days=self.settings.PRODUCT_CACHE_TTL_DAYS),
            max_images=self.settings.MAX_PRODUCT_IMAGES,
        )

    def _discovery(self, audit: StepAudit) -> DiscoveryEngine:
        return DiscoveryEngine(
            self.scraper,
            self.cache,
            audit,
            ttl=timedelta(days=self.settings.SEARCH_CACHE_TTL_DAYS),
            max_pages=self.settings.SEARCH_MAX_PAGES,
            page_size=self.settings.SEARCH_PAGE_SIZE,
        )

    async def resolve_tracking_tag(self) -> TrackingTag:
        """Configured tag first, else the newest active account; offers are attributed to its partner."""
        tag = (self.settings.AMAZON_PARTNER_TAG or "").strip()
        if tag:
            return TrackingTag(tag, self.settings.AMAZON_PARTNER_NAME)
        async with self.session_factory() as session:
            account = await Repository(session).active_tracking_account(OfferSource.AMAZON)
        if not account:
            raise ConfigurationError("Amazon partner tag is required", {"setting": "AMAZON_PARTNER_TAG"})
        return TrackingTag(*account)

    def _offer_item(self, product: ScrapedProduct, item: SearchItem | None, product_id: str, category: str, affiliate_url: str, partner_name: str, run_id: str, mode: str) -> OfferIngestItem:
        title = clean_text(product.title)
        return OfferIngestItem(
            source=OfferSource.AMAZON,
            external_id=f"AMAZON_{product.asin}",
            product_id=product_id,
            title=title,
            price=product.price,
            currency="USD",
            affiliate_url=affiliate_url,
            image_url=(product.images[0] if product.images else None) or (item.image_url if item else None),
            product_name=title,
            product_category=category,
            partner_name=partner_name,
            payload={"mode": mode, "asin": product.asin, "runId": run_id},
        )

    async def run(self, options: RunOptions | None = None) -> PipelineResult:
        options = options or RunOptions()
        tracking = await self.resolve_tracking_tag()

        result = PipelineResult(run_id=options.run_id or new_id())
        audit = StepAudit(self.session_factory, result.run_id)
        discovery = self._discovery(audit)
        extractor = self._extractor(audit)
        require_ai = self.settings.REQUIRE_AI if options.require_ai is None else options.require_ai
        publish_mode = (options.publish_mode or self.settings.PUBLISH_MODE).upper()

        async with self.session_factory() as session:
            niches = await Repository(session).enabled_niches(OfferSource.AMAZON, options.categories)
        logger.info(f"🚀 Run {result.run_id}: {len(niches)} niche(s), publish={publish_mode}, requireAi={require_ai}")

        for niche in niches:
            created_before = result.created_pages
            await self._run_niche(niche, options, result, audit, discovery, extractor, tracking, require_ai, publish_mode)
            if result.created_pages > created_before:
                result.niches_used += 1
            if options.max_total_posts is not None and result.created_pages >= options.max_total_posts:
                break

        logger.success(f"Run {result.run_id} finished: {result.to_dict()}")
        return result

    async def _run_niche(self, niche: Niche, options: RunOptions, result: PipelineResult, audit: StepAudit, discovery: DiscoveryEngine, extractor: ProductExtractor, tracking: TrackingTag, require_ai: bool, publish_mode: str):
        target = max(1, min(MAX_ITEMS_PER_NICHE, options.max_items_per_niche or niche.max_items))
        result.requested_posts += target
        category = niche.category_path
        keyword = niche.keywords or category.replace("-", " ")

        try:
            async with self.session_factory() as session:
                repo = Repository(session)
                known = await repo.known_external_ids(category)
                since = utcnow() - timedelta(days=self.settings.RECENT_TITLE_WINDOW_DAYS)
                recent_titles = await repo.recent_page_titles(category, since)

            found = await discovery.discover(keyword, target, known)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.exception(f"Niche {category} failed before candidates")
            result.skipped += target
            await audit.error("NICHE_FAILED", {"niche": category, "keyword": keyword}, {"error": type(e).__name__}, str(e))
            return

        await audit.ok(
            "DISCOVERY",
            {"niche": category, "keyword": search_query_from_keyword(keyword), "target": target, "known": len(known)},
            {"found": len(found.candidates), "pages": found.pages_fetched, "failedPages": found.failed_pages},
        )
        if not found.candidates:
            await audit.warn("NO_FRESH_CANDIDATES", {"niche": category}, None, "No fresh candidates for this niche")
            result.skipped += target
            return

        for item in found.candidates:
            async with self.session_factory() as session:
                repo = Repository(session)
                try:
                    await self._run_candidate(repo, niche, item, result, audit, extractor, tracking, require_ai, publish_mode, recent_titles)
                except ConfigurationError:
                    raise
                except Exception as e:
                    if not isinstance(e, NichefeedError):
                        logger.exception(f"Unexpected failure on {item.asin}")
                    await repo.rollback()
                    result.failed += 1
                    await audit.error("CANDIDATE_FAILED", {"niche": category, "asin": item.asin}, {"error": type(e).__name__}, str(e))
            if options.max_total_posts is not None and result.created_pages >= options.max_total_posts:
                break

    async def _ingest(self, repo: Repository, offer_item: OfferIngestItem, result: PipelineResult, audit: StepAudit):
        stats = await IngestReconciler(repo).ingest([offer_item], commit=False)
        result.generated_offers += stats.processed
        result.created_offers += stats.created_offers
        result.updated_offers += stats.updated_offers
        result.price_updates += stats.price_updates
        await audit.ok("INGEST", {"externalId": offer_item.external_id}, stats.to_dict())

    async def _run_candidate(self, repo: Repository, niche: Niche, item: SearchItem, result: PipelineResult, audit: StepAudit, extractor: ProductExtractor, tracking: TrackingTag, require_ai: bool, publish_mode: str, recent_titles: list[RecentTitle]):
        category = niche.category_path
        asin = item.asin

        affiliate_url = amazon_product_url(asin, tracking.tag)
        check = validate_affiliate_url(OfferSource.AMAZON, affiliate_url, tracking.tag)
        if not check.ok:
            await audit.error("AFFILIATE_VALIDATE", {"asin": asin}, {"url": affiliate_url, "code": check.code}, check.reason)
            result.skipped += 1
            return

        product = await extractor.extract(item.url, snippet=item.snippet)
        if product is None:
            result.skipped += 1
            return

        product_id = product_id_for(category, asin)
        attributes = {"asin": asin, "images": product.images[:self.settings.MAX_PRODUCT_IMAGES]}
        offer_item = self._offer_item(product, item, product_id, category, affiliate_url, tracking.partner_name, result.run_id, "pipeline-main-offer")

        existing_page = await repo.find_page_for_product(product_id)
        if existing_page is not None:
            # Known product: refresh the offer, never a second page
            await repo.upsert_product(product_id, clean_text(product.title), category, attributes)
            await self._ingest(repo, offer_item, result, audit)
            await repo.commit()
            result.duplicates += 1
            await audit.warn(
                "DEDUPE_PAGE",
                {"asin": asin, "productId": product_id},
                {"existingPageId": existing_page.id, "slug": existing_page.slug, "status": existing_page.status},
                "Page already exists for product; skipped duplicate page creation.",
            )
            return

        if self.ai.configured:
            result.ai_attempts += 1
        review = await self.generator.generate(product, category)
        if not review.used_ai:
            if self.ai.configured:
                result.ai_failures += 1
            if require_ai:
                await audit.error("AI_REVIEW_REQUIRED", {"asin": asin}, review.summary(), review.error or "AI response missing/invalid")
                result.skipped += 1
                return
            await audit.warn("AI_REVIEW", {"asin": asin}, review.summary(), "Deterministic fallback review used")
        else:
            await audit.ok("AI_REVIEW", {"asin": asin}, review.summary())

        title = review.title
        repeat = next(
            (t for t in recent_titles if t.product_id != product_id and is_likely_duplicate_title(title, t.title)),
            None,
        )
        if repeat is not None:
            result.duplicates += 1
            await audit.warn(
                "DEDUPE_TITLE_REPEAT",
                {"asin": asin, "niche": category, "title": title},
                {"existingPageId": repeat.id, "existingSlug": repeat.slug, "existingTitle": repeat.title},
                f"Skipped repeated review title inside {self.settings.RECENT_TITLE_WINDOW_DAYS}-day window.",
            )
            return

        await repo.upsert_product(product_id, clean_text(product.title), category, attributes)
        await self._ingest(repo, offer_item, result, audit)

        # A concurrent run may have created the page while this one was scraping
        existing_page = await repo.find_page_for_product(product_id)
        if existing_page is not None:
            await repo.commit()
            result.duplicates += 1
            await audit.warn("DEDUPE_PAGE", {"asin": asin, "productId": product_id}, {"existingPageId": existing_page.id}, "Page created concurrently")
            return

        slug = await repo.unique_slug(f"{category}/{to_slug(title)}")
        page = await repo.create_page(
            slug=slug,
            product_id=product_id,
            type="REVIEW",
            title=title,
            excerpt=clean_text(review.excerpt or product.description or title)[:240],
            content_md=review.content_md,
            status=PageStatus.DRAFT.value,
            hero_image_url=offer_item.image_url,
        )
        await repo.add_ai_generation_log(
            run_id=result.run_id,
            page_id=page.id,
            category_path=category,
            keyword=niche.keywords,
            product_name=title,
            model=review.model,
            provider="openai",
            used_ai=review.used_ai,
            fallback_used=review.fallback_used,
            prompt_hash=review.prompt_hash,
            prompt_chars=review.prompt_chars,
            output_chars=review.output_chars,
            error_message=review.error,
        )
        await repo.commit()

        result.created_pages += 1
        result.page_slugs.append(slug)
        recent_titles.insert(0, RecentTitle(id=page.id, slug=slug, title=title, product_id=product_id))
        await audit.ok("PAGE_CREATED", {"asin": asin, "productId": product_id}, {"pageId": page.id, "slug": slug, "status": page.status})

        if publish_mode == PageStatus.PUBLISHED.value:
            try:
                await publish(repo, page, tracking.tag)
                await repo.commit()
                result.published_pages += 1
                await audit.ok("PUBLISH_GATE", {"slug": slug}, {"status": page.status})
            except PublishGateError as e:
                await audit.error("PUBLISH_GATE", {"slug": slug}, e.details, e.message)

    async def backcheck(self, limit: int = 500, run_id: str | None = None) -> BackcheckResult:
        """Re-scrape priced offers of published products and re-ingest them."""
        limit = max(1, min(2000, limit))
        audit = StepAudit(self.session_factory, run_id)
        extractor = self._extractor(audit)
        result = BackcheckResult()

        async with self.session_factory() as session:
            offers = await Repository(session).priced_offers_with_published_pages(OfferSource.AMAZON, limit)

        for offer in offers:
            result.scanned += 1
            attributes = offer.product.attributes or {}
            asin = str(attributes.get("asin") or "").upper()
            if not asin:
                continue
            try:
                stats = await self._backcheck_offer(offer, asin, extractor, audit)
            except ConfigurationError:
                raise
            except Exception as e:
                logger.exception(f"Price backcheck failed on {asin}")
                await audit.error("CANDIDATE_FAILED", {"asin": asin}, {"error": type(e).__name__}, str(e))
                continue
            if stats is None:
                continue
            result.updated_offers += stats.updated_offers
            result.price_updates += stats.price_updates

        await audit.ok("PRICE_BACKCHECK", {"limit": limit}, {**result.to_dict(), "offers": len(offers)})
        return result

    async def _backcheck_offer(self, offer, asin: str, extractor: ProductExtractor, audit: StepAudit):
        product = await extractor.extract(amazon_product_url(asin), refresh=True)
        if product is None:
            return None

        item = OfferIngestItem(
            source=OfferSource.AMAZON,
            external_id=offer.external_id or f"AMAZON_{asin}",
            product_id=offer.product_id,
            title=clean_text(product.title or offer.title or offer.product.canonical_name),
            price=product.price if product.price is not None else offer.price,
            currency=offer.currency or "USD",
            affiliate_url=offer.affiliate_url,
            image_url=(product.images[0] if product.images else None) or offer.image_url,
            product_name=offer.product.canonical_name,
            product_category=offer.product.category,
            partner_name=offer.partner.name if offer.partner else self.settings.AMAZON_PARTNER_NAME,
            payload={"mode": "price-backcheck", "asin": asin, "runId": audit.run_id},
        )
        async with self.session_factory() as session:
            repo = Repository(session)
            try:
                return await IngestReconciler(repo).ingest([item])
            except Exception:
                await repo.rollback()
                raise
