from dataclasses import dataclass, field
from datetime import timedelta

from loguru import logger

from nichefeed.exceptions import FetchError
from nichefeed.scrapers.amazon_parser import SearchItem, search_query_from_keyword
from nichefeed.services.cache import CacheStore, cache_key

SEARCH_CACHE_NAMESPACE = "amz-search:v1"


@dataclass
class DiscoveryResult:
    query: str
    candidates: list[SearchItem] = field(default_factory=list)
    pages_fetched: int = 0
    failed_pages: list[int] = field(default_factory=list)


class DiscoveryEngine:
    """
    Keyword -> ordered, deduplicated candidates.

    Search pages are read cache-first. A live fetch failure falls back to
    an expired cache entry when one exists; otherwise pagination stops and
    the candidates collected so far are returned.
    """

    def __init__(self, scraper, cache: CacheStore, audit, ttl: timedelta = timedelta(days=7), max_pages: int = 10, page_size: int = 10):
        self.scraper = scraper
        self.cache = cache
        self.audit = audit
        self.ttl = ttl
        self.max_pages = max_pages
        self.page_size = page_size

    async def fetch_page(self, query: str, page: int) -> list[SearchItem] | None:
        key = cache_key(SEARCH_CACHE_NAMESPACE, query, page)
        step_input = {"query": query, "page": page}

        cached = await self.cache.get(key)
        if cached:
            items = [SearchItem.from_dict(x) for x in cached]
            await self.audit.ok("DISCOVERY_SEARCH_CACHE_FRESH", step_input, {"items": len(items)})
            return items

        try:
            items = await self.scraper.search(query, page)
        except FetchError as e:
            stale = await self.cache.get_including_expired(key)
            if stale is not None and stale.value:
                items = [SearchItem.from_dict(x) for x in stale.value]
                await self.audit.warn(
                    "DISCOVERY_SEARCH_STALE_FALLBACK",
                    step_input,
                    {"items": len(items), "expiresAt": stale.expires_at.isoformat()},
                    str(e),
                )
                return items
            await self.audit.error("DISCOVERY_SEARCH_FAILED", step_input, {"status": e.status}, str(e))
            return None

        if items:
            await self.cache.set(key, [i.to_dict() for i in items], self.ttl)
        await self.audit.ok("DISCOVERY_SEARCH_LIVE", step_input, {"items": len(items)})
        return items

    async def discover(self, keyword: str, target: int, known_ids: set[str] | None = None) -> DiscoveryResult:
        known = {x.upper() for x in known_ids or ()}
        result = DiscoveryResult(query=search_query_from_keyword(keyword))
        if target <= 0 or not result.query:
            return result

        found: dict[str, SearchItem] = {}
        for page in range(1, self.max_pages + 1):
            items = await self.fetch_page(result.query, page)
            if items is None:
                result.failed_pages.append(page)
                break
            result.pages_fetched += 1
            for item in items:
                asin = item.asin.upper()
                if asin not in found and asin not in known:
                    found[asin] = item
            if len(found) >= target:
                break
            # A short page is the last one
            if len(items) < self.page_size:
                break

        result.candidates = list(found.values())[:target]
        logger.info(f"Discovery '{result.query}': {len(result.candidates)}/{target} fresh candidates over {result.pages_fetched} page(s)")
        return result
