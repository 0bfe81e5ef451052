"""
Amazon HTML parsing.

Pure functions over HTML strings. Structured data (JSON-LD, meta tags)
is read first and heuristic markup parsing is only a fallback; every
field is optional.
"""
import json
import re
from dataclasses import asdict, dataclass, field
from urllib.parse import parse_qs, quote_plus, urljoin, urlparse

from bs4 import BeautifulSoup

from nichefeed.services.text import clean_product_title, clean_text, decode_html

AMAZON_BASE = "https://www.amazon.com"

_ASIN_RES = (
    re.compile(r"/dp/([A-Z0-9]{10})(?:[/?#]|$)", re.IGNORECASE),
    re.compile(r"/gp/product/([A-Z0-9]{10})(?:[/?#]|$)", re.IGNORECASE),
)
# Thousands-grouped amounts first, otherwise "1,299.99" stops at "1,29"
_PRICE_NUMBER = r"[0-9]{1,3}(?:,[0-9]{3})+(?:\.[0-9]{2})?|[0-9]+(?:[.,][0-9]{2})?"
_THOUSANDS_RE = re.compile(r"[0-9]{1,3}(?:,[0-9]{3})+(?:\.[0-9]+)?")
_LOOSE_PRICE_RE = re.compile(rf"\$\s*({_PRICE_NUMBER})")
_JSON_PRICE_RE = re.compile(rf"[\"']price[\"']\s*:\s*[\"']?\$?\s*({_PRICE_NUMBER})[\"']?", re.IGNORECASE)
_IMAGE_JSON_RE = re.compile(r"\"(?:hiRes|large|mainUrl)\"\s*:\s*\"([^\"]+)\"", re.IGNORECASE)
_SIZE_TOKEN_RE = re.compile(r"\._[^/]+_\.")
_NOISE_IMAGE_RE = re.compile(r"sprite|icon|logo|spinner|loading|play-button|transparent|avatar|badge|thumbnail|thumb")
_BIG_IMAGE_RE = re.compile(r"sl1500|sl2000|ul1500|ux1500", re.IGNORECASE)
_BOILERPLATE_RE = re.compile(
    r"customer reviews?|make sure this fits|see more product details|report an issue|by entering your model number",
    re.IGNORECASE,
)

MIN_BULLET_LEN = 12
MAX_BULLETS = 10


@dataclass
class SearchItem:
    asin: str
    url: str
    title: str
    snippet: str = ""
    image_url: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SearchItem":
        return cls(
            asin=data["asin"],
            url=data["url"],
            title=data.get("title") or "",
            snippet=data.get("snippet") or "",
            image_url=data.get("image_url"),
        )


@dataclass
class ScrapedProduct:
    asin: str
    url: str
    title: str
    description: str = ""
    bullets: list[str] = field(default_factory=list)
    images: list[str] = field(default_factory=list)
    price: float | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ScrapedProduct":
        price = data.get("price")
        return cls(
            asin=data["asin"],
            url=data["url"],
            title=data.get("title") or "",
            description=data.get("description") or "",
            bullets=list(data.get("bullets") or []),
            images=list(data.get("images") or []),
            price=float(price) if price is not None else None,
        )


def parse_asin(url: str) -> str | None:
    for pattern in _ASIN_RES:
        match = pattern.search(url or "")
        if match:
            return match.group(1).upper()
    return None


def product_url(asin: str) -> str:
    return f"{AMAZON_BASE}/dp/{asin.upper()}"


def search_query_from_keyword(raw: str) -> str:
    """A niche keyword may be a full search URL; pull the query out of it."""
    value = clean_text(raw)
    if not re.match(r"^https?://", value, re.IGNORECASE):
        return value
    params = parse_qs(urlparse(value).query)
    for name in ("k", "keywords", "field-keywords"):
        if params.get(name) and params[name][0].strip():
            return clean_text(params[name][0])
    return value


def search_page_url(query: str, page: int) -> str:
    return f"{AMAZON_BASE}/s?k={quote_plus(query)}&page={page}"


def parse_price_value(raw) -> float | None:
    if raw is None:
        return None
    text = str(raw).strip().replace("$", "").replace(" ", "")
    if _THOUSANDS_RE.fullmatch(text):
        text = text.replace(",", "")
    else:
        text = text.replace(",", ".")
    try:
        value = float(text)
    except ValueError:
        return None
    return value if value > 0 else None


def parse_price_loose(text: str) -> float | None:
    match = _LOOSE_PRICE_RE.search(text or "")
    if not match:
        return None
    return parse_price_value(match.group(1))


def high_res_image(url: str) -> str:
    out = _SIZE_TOKEN_RE.sub(".", str(url or "").strip())
    return re.sub(r"(\.jpg|\.jpeg|\.png|\.webp)\?.*$", r"\1", out, flags=re.IGNORECASE)


def is_noise_image(url: str) -> bool:
    return bool(_NOISE_IMAGE_RE.search(url.lower()))


def image_score(url: str) -> int:
    score = 0
    sizes = [int(n) for n in re.findall(r"([0-9]{3,4})", url)]
    if sizes:
        score += max(sizes)
    if _BIG_IMAGE_RE.search(url):
        score += 2000
    if is_noise_image(url):
        score -= 3000
    return score


class AmazonPageParser:
    def parse_search(self, html: str) -> list[SearchItem]:
        soup = BeautifulSoup(html, "html.parser")
        items = []
        for block in soup.select('div[data-component-type="s-search-result"]'):
            link = None
            for a in block.find_all("a", href=True):
                if parse_asin(a["href"]):
                    link = a
                    break
            if link is None:
                continue
            asin = parse_asin(urljoin(AMAZON_BASE, link["href"]))

            title_el = block.select_one("h2 span") or block.find("h2")
            title = clean_text(title_el.get_text(" ", strip=True)) if title_el else ""

            snippet_el = block.select_one("div.a-color-secondary") or block.select_one("span.a-size-base")
            snippet = clean_text(snippet_el.get_text(" ", strip=True)) if snippet_el else ""

            img = block.find("img", src=True)
            items.append(SearchItem(
                asin=asin,
                url=product_url(asin),
                title=title or f"Amazon product {asin}",
                snippet=snippet,
                image_url=high_res_image(img["src"]) if img else None,
            ))
        return items

    def parse_product(self, html: str, asin: str, url: str | None = None, snippet: str = "") -> ScrapedProduct:
        soup = BeautifulSoup(html, "html.parser")
        json_ld = [node for node in self.extract_json_ld(soup) if "product" in str(node.get("@type", "")).lower()]

        title = clean_product_title(self.extract_meta(soup, "og:title"))
        if not title and soup.title:
            title = clean_product_title(soup.title.get_text(" ", strip=True))

        description = clean_text(self.extract_meta(soup, "description") or self.extract_meta(soup, "og:description"))
        if not description:
            for node in json_ld:
                if isinstance(node.get("description"), str):
                    description = clean_text(BeautifulSoup(node["description"], "html.parser").get_text(" "))
                    break

        bullets = self.extract_bullets(soup)

        price = (
            self.json_ld_price(json_ld)
            or parse_price_value(self.extract_meta(soup, "product:price:amount"))
            or self.html_price(soup, html)
            or parse_price_loose(" ".join([description, *bullets, snippet]))
        )

        return ScrapedProduct(
            asin=asin,
            url=url or product_url(asin),
            title=title or f"Amazon product {asin}",
            description=description,
            bullets=bullets,
            images=self.extract_images(soup, html, json_ld),
            price=price,
        )

    def extract_meta(self, soup: BeautifulSoup, key: str) -> str:
        tag = soup.find("meta", attrs={"property": key}) or soup.find("meta", attrs={"name": key})
        if tag is None or not tag.get("content"):
            return ""
        return decode_html(tag["content"]).strip()

    def extract_json_ld(self, soup: BeautifulSoup) -> list[dict]:
        out = []
        for script in soup.find_all("script", type="application/ld+json"):
            raw = (script.string or script.get_text() or "").strip()
            if not raw:
                continue
            try:
                parsed = json.loads(raw)
            except ValueError:
                continue
            if isinstance(parsed, list):
                out.extend(item for item in parsed if isinstance(item, dict))
            elif isinstance(parsed, dict):
                out.append(parsed)
        return out

    def extract_bullets(self, soup: BeautifulSoup) -> list[str]:
        scope = soup.find(id="feature-bullets") or soup
        bullets = []
        for li in scope.find_all("li"):
            text = clean_text(li.get_text(" ", strip=True))
            if len(text) < MIN_BULLET_LEN or _BOILERPLATE_RE.search(text):
                continue
            bullets.append(text)
            if len(bullets) >= MAX_BULLETS:
                break
        return bullets

    def json_ld_price(self, nodes: list[dict]) -> float | None:
        for node in nodes:
            offers = node.get("offers")
            if isinstance(offers, dict):
                offers = [offers]
            if not isinstance(offers, list):
                continue
            for offer in offers:
                if isinstance(offer, dict):
                    price = parse_price_value(offer.get("price"))
                    if price:
                        return price
        return None

    def html_price(self, soup: BeautifulSoup, html: str) -> float | None:
        offscreen = soup.select_one("span.a-price span.a-offscreen") or soup.select_one("span.a-offscreen")
        if offscreen:
            price = parse_price_value(offscreen.get_text(strip=True))
            if price:
                return price

        whole = soup.select_one("span.a-price-whole")
        fraction = soup.select_one("span.a-price-fraction")
        if whole:
            whole_digits = re.sub(r"[^0-9]", "", whole.get_text())
            fraction_digits = re.sub(r"[^0-9]", "", fraction.get_text()) if fraction else ""
            if whole_digits:
                price = parse_price_value(f"{whole_digits}.{fraction_digits or '00'}")
                if price:
                    return price

        tagged = soup.find(attrs={"data-a-price": True})
        if tagged:
            price = parse_price_value(tagged["data-a-price"])
            if price:
                return price

        match = _JSON_PRICE_RE.search(html)
        return parse_price_value(match.group(1)) if match else None

    def extract_images(self, soup: BeautifulSoup, html: str, json_ld: list[dict]) -> list[str]:
        raw = []
        for node in json_ld:
            image = node.get("image")
            if isinstance(image, str):
                raw.append(image)
            elif isinstance(image, list):
                raw.extend(i for i in image if isinstance(i, str))

        for match in _IMAGE_JSON_RE.finditer(html):
            raw.append(decode_html(match.group(1).replace("\\u0026", "&").replace("\\/", "/")))

        og_image = self.extract_meta(soup, "og:image")
        if og_image:
            raw.append(og_image)

        # Score on the original URL: the size tokens are gone after upgrading
        scored: dict[str, int] = {}
        for url in raw:
            url = clean_text(url)
            if not re.match(r"^https?://", url, re.IGNORECASE) or is_noise_image(url):
                continue
            upgraded = high_res_image(url)
            score = image_score(url)
            if upgraded not in scored or score > scored[upgraded]:
                scored[upgraded] = score
        return sorted(scored, key=lambda u: scored[u], reverse=True)
