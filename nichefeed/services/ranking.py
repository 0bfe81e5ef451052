import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from nichefeed.models import OfferSource

SOURCE_PRIORITY = {
    OfferSource.AMAZON.value: 1.0,
    OfferSource.ALIEXPRESS.value: 0.85,
    OfferSource.TEMU.value: 0.75,
    OfferSource.ALIBABA.value: 0.72,
    OfferSource.EBAY.value: 0.7,
}
UNKNOWN_SOURCE_PRIORITY = 0.5


@dataclass
class RankedOffer:
    offer: Any
    score: float
    reason: str


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def freshness_score(updated: datetime | None, now: datetime | None = None) -> float:
    updated = _as_utc(updated)
    if updated is None:
        return 0.15
    now = now or datetime.now(timezone.utc)
    age_days = (now - updated).total_seconds() / 86400
    if age_days <= 1:
        return 1.0
    if age_days <= 3:
        return 0.85
    if age_days <= 7:
        return 0.65
    if age_days <= 30:
        return 0.35
    return 0.15


def source_priority(source) -> float:
    key = source.value if isinstance(source, OfferSource) else str(source)
    return SOURCE_PRIORITY.get(key, UNKNOWN_SOURCE_PRIORITY)


def api_confidence(partner) -> float:
    if partner is None:
        return 0.3
    return 1.0 if partner.has_api else 0.55


def offer_price(offer) -> float | None:
    if offer.price is None:
        return None
    try:
        value = float(offer.price)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def rank_offers(offers, now: datetime | None = None) -> list[RankedOffer]:
    """
    Score and order the offers of one product for display.

    Priced offers come first, cheapest first; the blended score breaks
    price ties and orders the unpriced tail. Offers of disabled partners
    are dropped.
    """
    now = now or datetime.now(timezone.utc)
    ranked = []
    for offer in offers:
        partner = getattr(offer, "partner", None)
        if partner is not None and not partner.is_enabled:
            continue

        price = offer_price(offer)
        fresh = freshness_score(offer.last_updated or offer.updated_at, now)
        src = source_priority(offer.source)
        api = api_confidence(partner)

        if price is not None:
            score = fresh * 0.45 + src * 0.35 + api * 0.2
            reason = "priced-offer"
        else:
            score = fresh * 0.4 + src * 0.4 + api * 0.2
            if partner is not None and partner.has_api and fresh >= 0.65:
                reason = "fresh-api-source"
            else:
                reason = "best-available-without-price"
        ranked.append(RankedOffer(offer=offer, score=round(score, 4), reason=reason))

    def sort_key(item: RankedOffer):
        price = offer_price(item.offer)
        if price is None:
            return (1, 0.0, -item.score)
        return (0, price, -item.score)

    return sorted(ranked, key=sort_key)
