"""
Affiliate URL rules.

validate_affiliate_url is the publish gate: a page only goes live when
every offer attached to its product passes it.
"""
from dataclasses import dataclass
from urllib.parse import parse_qs, quote, urlencode, urlparse, urlunparse

from nichefeed.models import OfferSource

# Retail marketplaces that issue Associates tags
AMAZON_DOMAINS = tuple(f"amazon.{suffix}" for suffix in (
    "com", "ca", "com.mx", "com.br", "co.uk", "de", "fr", "it", "es", "nl", "se", "pl",
    "com.be", "com.tr", "ae", "sa", "eg", "in", "co.jp", "com.au", "sg",
))

# Plain catalog domains of secondary partners and the query params that
# mark a tracked link on the same domain.
PARTNER_DOMAINS = {
    OfferSource.ALIEXPRESS: ("aliexpress.com", "aliexpress.us"),
    OfferSource.TEMU: ("temu.com",),
    OfferSource.ALIBABA: ("alibaba.com",),
    OfferSource.EBAY: ("ebay.com",),
}

PARTNER_TRACKING_PARAMS = {
    OfferSource.ALIEXPRESS: ("aff_fcid", "aff_platform", "aff_trace_key"),
    OfferSource.TEMU: ("_x_ads_channel", "_x_campaign", "refer_page_sn"),
    OfferSource.ALIBABA: ("tracelog", "aff_id"),
    OfferSource.EBAY: ("campid", "mkcid", "mkevt"),
}

# Redirect hosts that are affiliate deep links by construction
PARTNER_DEEP_LINK_HOSTS = {
    OfferSource.ALIEXPRESS: ("s.click.aliexpress.com",),
    OfferSource.EBAY: ("rover.ebay.com",),
}


@dataclass(frozen=True)
class AffiliateCheck:
    ok: bool
    code: str | None = None
    reason: str | None = None


OK = AffiliateCheck(ok=True)


def _fail(code: str, reason: str) -> AffiliateCheck:
    return AffiliateCheck(ok=False, code=code, reason=reason)


def _host_in(host: str, domains) -> bool:
    return any(host == d or host.endswith("." + d) for d in domains)


def validate_affiliate_url(source, url: str, expected_tracking_tag: str | None = None) -> AffiliateCheck:
    source = OfferSource(source)
    try:
        parsed = urlparse(str(url or "").strip())
    except ValueError:
        return _fail("invalid-url", "Invalid affiliate URL")
    host = (parsed.hostname or "").lower()
    if parsed.scheme not in ("http", "https") or not host:
        return _fail("invalid-url", "Invalid affiliate URL")

    query = parse_qs(parsed.query)

    if source == OfferSource.AMAZON:
        if not _host_in(host, AMAZON_DOMAINS):
            return _fail("wrong-domain", "Amazon offer must point to an amazon.* URL")
        tag = (query.get("tag") or [""])[0].strip()
        if not tag:
            return _fail("missing-tag", "Amazon affiliate URL is missing tag parameter")
        if expected_tracking_tag and tag != expected_tracking_tag:
            return _fail(
                "tag-mismatch",
                f"Amazon affiliate tag mismatch. expected={expected_tracking_tag}, got={tag}",
            )
        return OK

    if _host_in(host, PARTNER_DEEP_LINK_HOSTS.get(source, ())):
        return OK
    if _host_in(host, PARTNER_DOMAINS.get(source, ())):
        tracked = any(p in query for p in PARTNER_TRACKING_PARAMS.get(source, ()))
        if not tracked:
            return _fail(
                "plain-partner-url",
                f"{source.value} offer is a plain direct URL, expected affiliate deep-link URL",
            )
    return OK


def amazon_product_url(asin: str, tracking_tag: str | None = None, marketplace: str = "www.amazon.com") -> str:
    url = f"https://{marketplace}/dp/{asin.upper()}"
    if tracking_tag:
        url += f"?tag={quote(tracking_tag, safe='')}"
    return url


def with_tracking_tag(url: str, tracking_tag: str | None) -> str:
    """Set (or replace) the tag query param. Unparsable URLs come back unchanged."""
    if not tracking_tag:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    if not parsed.scheme or not parsed.netloc:
        return url
    query = parse_qs(parsed.query, keep_blank_values=True)
    query["tag"] = [tracking_tag]
    return urlunparse(parsed._replace(query=urlencode(query, doseq=True)))


def apply_deep_link_pattern(pattern: str | None, target_url: str, query: str = "", tracking_id: str | None = None) -> str:
    if not pattern:
        return target_url
    return (
        pattern.replace("{url}", quote(target_url, safe=""))
        .replace("{query}", quote(query, safe=""))
        .replace("{trackingId}", quote(tracking_id or "", safe=""))
        .replace("{tag}", quote(tracking_id or "", safe=""))
    )


def build_affiliate_url(source, target_url: str, keyword: str = "", tracking_id: str | None = None, deep_link_pattern: str | None = None) -> str:
    source = OfferSource(source)
    if source == OfferSource.AMAZON:
        target_url = with_tracking_tag(target_url, tracking_id)
    return apply_deep_link_pattern(deep_link_pattern, target_url, keyword, tracking_id)
