from loguru import logger

from nichefeed.exceptions import PublishGateError
from nichefeed.models import OfferSource, Page, PageStatus, utcnow
from nichefeed.repository import Repository
from nichefeed.services.affiliate import validate_affiliate_url


def gate_failures(offers, tracking_tag: str | None) -> list[dict]:
    """Every offer of the product must pass affiliate validation."""
    failures = []
    for offer in offers:
        expected = tracking_tag if offer.source == OfferSource.AMAZON.value else None
        check = validate_affiliate_url(offer.source, offer.affiliate_url, expected)
        if not check.ok:
            failures.append({
                "offerId": offer.id,
                "source": offer.source,
                "url": offer.affiliate_url,
                "code": check.code,
                "reason": check.reason,
            })
    return failures


async def publish(repo: Repository, page: Page, tracking_tag: str | None) -> Page:
    """
    Move a page to PUBLISHED. Raises PublishGateError and leaves the page
    untouched when its product has no offers or any offer fails validation.
    """
    if not page.product_id:
        raise PublishGateError("Page has no product", {"slug": page.slug})
    offers = await repo.offers_for_product(page.product_id)
    if not offers:
        raise PublishGateError("Product has no offers", {"slug": page.slug, "productId": page.product_id})
    failures = gate_failures(offers, tracking_tag)
    if failures:
        raise PublishGateError("Affiliate validation failed", {"slug": page.slug, "failures": failures})

    page.status = PageStatus.PUBLISHED.value
    page.published_at = page.published_at or utcnow()
    await repo.session.flush()
    logger.success(f"Published {page.slug}")
    return page


async def publish_page(repo: Repository, slug: str, tracking_tag: str | None) -> Page:
    page = await repo.find_page_by_slug(slug)
    if page is None:
        raise PublishGateError("Page not found", {"slug": slug})
    page = await publish(repo, page, tracking_tag)
    await repo.commit()
    return page
