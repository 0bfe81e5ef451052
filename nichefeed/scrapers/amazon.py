from loguru import logger

from nichefeed.scrapers.amazon_parser import AmazonPageParser, ScrapedProduct, SearchItem, parse_asin, search_page_url
from nichefeed.scrapers.base import BaseScraper


class AmazonScraper(BaseScraper):
    def __init__(self, parser: AmazonPageParser | None = None, **kwargs):
        super().__init__(**kwargs)
        self.parser = parser or AmazonPageParser()

    async def search(self, query: str, page: int) -> list[SearchItem]:
        url = search_page_url(query, page)
        logger.info(f"Fetching search page {page}: {url}")
        html = await self.fetch_html(url)
        items = self.parser.parse_search(html)
        logger.info(f"✅ Found {len(items)} items on page {page}")
        return items

    async def product(self, url: str, snippet: str = "") -> ScrapedProduct:
        logger.info(f"Parsing detail: {url}")
        html = await self.fetch_html(url)
        asin = parse_asin(url) or ""
        return self.parser.parse_product(html, asin=asin, url=url, snippet=snippet)
