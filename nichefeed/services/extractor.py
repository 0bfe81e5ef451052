from datetime import timedelta

from nichefeed.exceptions import FetchError
from nichefeed.scrapers.amazon_parser import ScrapedProduct, parse_asin, product_url
from nichefeed.services.cache import CacheStore, cache_key
from nichefeed.services.media import ImageMirror

PRODUCT_CACHE_NAMESPACE = "product:v1"


class ProductExtractor:
    def __init__(
        self,
        scraper,
        cache: CacheStore,
        mirror: ImageMirror,
        audit,
        ttl: timedelta = timedelta(days=14),
        max_images: int = 4,
    ):
        self.scraper = scraper
        self.cache = cache
        self.mirror = mirror
        self.audit = audit
        self.ttl = ttl
        self.max_images = max_images

    async def extract(self, url: str, snippet: str = "", refresh: bool = False) -> ScrapedProduct | None:
        """
        Normalized detail-page record, or None when the page cannot be had.

        refresh skips the fresh-cache read (used by the price backcheck); the
        stale fallback still applies.
        """
        asin = parse_asin(url)
        if not asin:
            await self.audit.warn("SCRAPE_PRODUCT", {"url": url}, None, "no ASIN in url")
            return None
        url = product_url(asin)
        key = cache_key(PRODUCT_CACHE_NAMESPACE, url)

        if not refresh:
            cached = await self.cache.get(key)
            if cached:
                product = ScrapedProduct.from_dict(cached)
                await self.audit.ok("SCRAPE_PRODUCT_CACHE_HIT", {"asin": asin}, {"title": product.title, "images": len(product.images)})
                return product

        try:
            product = await self.scraper.product(url, snippet=snippet)
        except FetchError as e:
            stale = await self.cache.get_including_expired(key)
            if stale is not None and stale.value:
                product = ScrapedProduct.from_dict(stale.value)
                await self.audit.warn(
                    "SCRAPE_PRODUCT_STALE_FALLBACK",
                    {"asin": asin},
                    {"expired": stale.expired, "expiresAt": stale.expires_at.isoformat()},
                    str(e),
                )
                return product
            await self.audit.warn("SCRAPE_PRODUCT", {"asin": asin, "url": url}, {"status": e.status}, str(e))
            return None

        product.asin = asin
        product.images = await self.mirror.mirror(product.images[:self.max_images], f"amazon/{asin.lower()}", self.max_images)
        await self.cache.set(key, product.to_dict(), self.ttl)
        await self.audit.ok(
            "SCRAPE_PRODUCT",
            {"asin": asin},
            {"title": product.title, "price": product.price, "bullets": len(product.bullets), "images": len(product.images)},
        )
        return product
