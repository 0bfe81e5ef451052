import asyncio
from abc import ABC, abstractmethod

from curl_cffi import CurlError
from curl_cffi.requests import AsyncSession
from loguru import logger

from nichefeed.config import settings
from nichefeed.exceptions import FetchError

ROBOT_CHECK_MARKERS = (
    "robot check",
    "/errors/validatecaptcha",
    "type the characters you see in this image",
    "enter the characters you see below",
)


def is_robot_check(html: str) -> bool:
    head = (html or "")[:20000].lower()
    return any(marker in head for marker in ROBOT_CHECK_MARKERS)


class BaseScraper(ABC):
    def __init__(self, session: AsyncSession | None = None, delay: float | None = None):
        proxies = {"http": settings.PROXY_URL, "https": settings.PROXY_URL} if settings.PROXY_URL else None

        self.session = session or AsyncSession(
            impersonate="chrome124",
            proxies=proxies,
            headers={
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
                "Cache-Control": "max-age=0",
                "Upgrade-Insecure-Requests": "1",
            },
            timeout=settings.HTTP_TIMEOUT,
        )
        self.delay = settings.REQUEST_DELAY_SECONDS if delay is None else delay

    async def close(self):
        if self.session:
            await self.session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def fetch_html(self, url: str) -> str:
        """GET a page. Non-2xx, network errors and captcha walls raise FetchError."""
        try:
            response = await self.session.get(url)
        except CurlError as e:
            raise FetchError(f"Request failed: {e}", url=url) from e
        finally:
            if self.delay:
                await asyncio.sleep(self.delay)

        if not 200 <= response.status_code < 300:
            raise FetchError(f"Unexpected status {response.status_code}", url=url, status=response.status_code)
        html = response.text
        if is_robot_check(html):
            logger.error(f"🛑 CAPTCHA DETECTED at {url}")
            raise FetchError("Robot check page", url=url, status=response.status_code)
        return html

    @abstractmethod
    async def search(self, query: str, page: int):
        """Should return the parsed items of one search results page"""
        pass

    @abstractmethod
    async def product(self, url: str):
        """Should return the parsed detail page of one product"""
        pass
