"""
Offer ingestion.

Idempotent per (source, external_id): the first call creates the offer,
later calls update it. A price history row is appended only when the
price actually changes; an ingest event is appended every time.
"""
import math
from dataclasses import asdict, dataclass
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from nichefeed.models import OfferSource, Page, utcnow
from nichefeed.repository import Repository

UNASSIGNED_CATEGORY = "unassigned"


class OfferIngestItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    source: OfferSource
    external_id: str
    product_id: str | None = None
    title: str | None = None
    price: float | None = None
    currency: str = "USD"
    affiliate_url: str
    image_url: str | None = None
    availability: str | None = None
    product_name: str
    product_category: str | None = None
    page_slug: str | None = None
    partner_name: str | None = None
    payload: Any = None

    @field_validator("price")
    @classmethod
    def finite_price(cls, value):
        if value is None or not math.isfinite(value):
            return None
        return value

    @field_validator("currency")
    @classmethod
    def default_currency(cls, value):
        return (value or "USD").upper()


@dataclass
class IngestStats:
    processed: int = 0
    created_offers: int = 0
    updated_offers: int = 0
    price_updates: int = 0

    def add(self, other: "IngestStats"):
        self.processed += other.processed
        self.created_offers += other.created_offers
        self.updated_offers += other.updated_offers
        self.price_updates += other.price_updates

    def to_dict(self) -> dict:
        return asdict(self)


def price_changed(old: float | None, new: float | None) -> bool:
    if new is None:
        return False
    if old is None:
        return True
    return round(float(old), 2) != round(float(new), 2)


class IngestReconciler:
    def __init__(self, repo: Repository):
        self.repo = repo

    async def _resolve_product_id(self, item: OfferIngestItem) -> str:
        if item.product_id:
            if await self.repo.get_product(item.product_id) is not None:
                return item.product_id
            logger.warning(f"Product {item.product_id} not found, resolving {item.external_id} by name")

        page: Page | None = await self.repo.find_page_by_slug(item.page_slug) if item.page_slug else None
        if page is not None and page.product_id:
            page_product = await self.repo.get_product(page.product_id)
            if page_product and (not item.product_category or page_product.category == item.product_category):
                return page_product.id

        category = item.product_category or UNASSIGNED_CATEGORY
        product = await self.repo.find_product(item.product_name, category)
        if product is None:
            product = await self.repo.create_product(item.product_name, category)

        if page is not None and not page.product_id:
            await self.repo.link_page_product(page, product.id)
        return product.id

    async def ingest_one(self, item: OfferIngestItem) -> IngestStats:
        stats = IngestStats(processed=1)
        partner = await self.repo.find_partner(item.source, item.partner_name)
        partner_id = partner.id if partner else None
        product_id = await self._resolve_product_id(item)

        fields = {
            "product_id": product_id,
            "partner_id": partner_id,
            "title": item.title,
            "price": item.price,
            "currency": item.currency,
            "availability": item.availability,
            "affiliate_url": item.affiliate_url,
            "image_url": item.image_url,
            "last_updated": utcnow(),
        }

        existing = await self.repo.find_offer(item.source, item.external_id)
        if existing is None:
            offer_id = await self.repo.insert_offer_if_absent(
                source=item.source.value,
                external_id=item.external_id,
                **fields,
            )
            if offer_id is None:
                # Lost the insert race: the other writer's row is now the prior state
                existing = await self.repo.find_offer(item.source, item.external_id)

        if existing is None:
            stats.created_offers += 1
            prior_price = None
        else:
            offer_id = existing.id
            prior_price = existing.price
            for name, value in fields.items():
                setattr(existing, name, value)
            existing.updated_at = utcnow()
            stats.updated_offers += 1

        if price_changed(prior_price, item.price):
            await self.repo.add_price_history(offer_id, item.price, item.currency)
            stats.price_updates += 1

        await self.repo.add_ingest_event(
            offer_id,
            partner_id,
            item.source,
            item.external_id,
            item.payload,
        )
        await self.repo.session.flush()
        return stats

    async def ingest(self, items: list[OfferIngestItem], commit: bool = True) -> IngestStats:
        """commit=False leaves the transaction to the caller."""
        total = IngestStats()
        for item in items:
            total.add(await self.ingest_one(item))
            if commit:
                await self.repo.commit()
        logger.info(
            f"Ingested {total.processed} offer(s): "
            f"created={total.created_offers} updated={total.updated_offers} priceUpdates={total.price_updates}"
        )
        return total
