"""
Data-store contract used by the pipeline.

Everything here is a point lookup, a unique-key upsert or a small bounded
scan. Uniqueness (offer source+external_id, page slug) is enforced by the
database, not by application locks.
"""
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from nichefeed.models import (
    AffiliateAccount,
    AIGenerationLog,
    AutomationRun,
    Niche,
    Offer,
    OfferIngestEvent,
    Page,
    PageStatus,
    Partner,
    PriceHistory,
    Product,
    RunStatus,
    utcnow,
)
from nichefeed.taxonomy import automation_nodes, keyword_for_path

KNOWN_PRODUCTS_SCAN_LIMIT = 1000
RECENT_TITLES_SCAN_LIMIT = 300
MAX_SLUG_ATTEMPTS = 200


@dataclass
class RecentTitle:
    id: str
    slug: str
    title: str
    product_id: str | None


class Repository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def commit(self):
        await self.session.commit()

    async def rollback(self):
        await self.session.rollback()

    def _insert(self, model):
        if self.session.get_bind().dialect.name == "postgresql":
            return pg_insert(model)
        return sqlite_insert(model)

    # --- niches -------------------------------------------------------

    async def enabled_niches(self, source, categories: list[str] | None = None) -> list[Niche]:
        query = (
            select(Niche)
            .where(Niche.source == _value(source), Niche.is_enabled.is_(True))
            .order_by(Niche.priority.asc(), Niche.updated_at.desc())
        )
        niches = list((await self.session.execute(query)).scalars().all())
        if categories:
            wanted = set(categories)
            niches = [n for n in niches if n.category_path in wanted]
        return niches

    async def ensure_default_niches(self, source, max_items: int = 8) -> int:
        count = await self.session.scalar(select(func.count()).select_from(Niche).where(Niche.source == _value(source)))
        if count:
            return 0
        created = 0
        for index, node in enumerate(automation_nodes()):
            keyword = keyword_for_path(node.path)
            if not keyword:
                continue
            self.session.add(Niche(
                source=_value(source),
                category_path=node.path,
                keywords=keyword,
                priority=index + 1,
                max_items=max_items,
                is_enabled=True,
            ))
            created += 1
        await self.session.flush()
        return created

    # --- partners -----------------------------------------------------

    async def find_partner(self, source, name: str | None = None) -> Partner | None:
        query = select(Partner).where(Partner.source == _value(source))
        if name:
            query = query.where(Partner.name == name)
        else:
            query = query.where(Partner.is_enabled.is_(True)).order_by(Partner.created_at.asc())
        return (await self.session.execute(query.limit(1))).scalars().first()

    async def active_tracking_id(self, source) -> str | None:
        account = await self.active_tracking_account(source)
        return account[0] if account else None

    async def active_tracking_account(self, source) -> tuple[str, str] | None:
        """(tracking id, owning partner name) of the newest active account."""
        query = (
            select(AffiliateAccount.tracking_id, Partner.name)
            .join(Partner, Partner.id == AffiliateAccount.partner_id)
            .where(
                AffiliateAccount.is_active.is_(True),
                AffiliateAccount.tracking_id.is_not(None),
                Partner.source == _value(source),
                Partner.is_enabled.is_(True),
            )
            .order_by(AffiliateAccount.updated_at.desc())
            .limit(1)
        )
        row = (await self.session.execute(query)).first()
        if row is None or not (row.tracking_id or "").strip():
            return None
        return row.tracking_id.strip(), row.name

    # --- products -----------------------------------------------------

    async def get_product(self, product_id: str) -> Product | None:
        return await self.session.get(Product, product_id)

    async def find_product(self, canonical_name: str, category: str) -> Product | None:
        query = select(Product).where(Product.canonical_name == canonical_name, Product.category == category).limit(1)
        return (await self.session.execute(query)).scalars().first()

    async def create_product(self, canonical_name: str, category: str, attributes: dict | None = None) -> Product:
        product = Product(canonical_name=canonical_name, category=category, attributes=attributes)
        self.session.add(product)
        await self.session.flush()
        return product

    async def upsert_product(self, product_id: str, canonical_name: str, category: str, attributes: dict | None) -> Product:
        now = utcnow()
        stmt = self._insert(Product).values(
            id=product_id,
            canonical_name=canonical_name,
            category=category,
            attributes=attributes,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_update(
            index_elements=["id"],
            set_={
                "canonical_name": canonical_name,
                "category": category,
                "attributes": attributes,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        return await self.session.get(Product, product_id, populate_existing=True)

    async def known_external_ids(self, category: str) -> set[str]:
        """ASINs of products in the category that already have a published page."""
        query = (
            select(Product.attributes)
            .join(Page, Page.product_id == Product.id)
            .where(Product.category == category, Page.status == PageStatus.PUBLISHED.value)
            .limit(KNOWN_PRODUCTS_SCAN_LIMIT)
        )
        out = set()
        for attributes in (await self.session.execute(query)).scalars().all():
            if isinstance(attributes, dict) and isinstance(attributes.get("asin"), str):
                out.add(attributes["asin"].upper())
        return out

    # --- offers -------------------------------------------------------

    async def find_offer(self, source, external_id: str) -> Offer | None:
        query = select(Offer).where(Offer.source == _value(source), Offer.external_id == external_id)
        return (await self.session.execute(query)).scalars().first()

    async def insert_offer_if_absent(self, **values) -> str | None:
        """Insert keyed on (source, external_id). None when another writer got there first."""
        now = utcnow()
        values.setdefault("created_at", now)
        values.setdefault("updated_at", now)
        stmt = (
            self._insert(Offer)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["source", "external_id"])
            .returning(Offer.id)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def offers_for_product(self, product_id: str) -> list[Offer]:
        query = select(Offer).options(selectinload(Offer.partner)).where(Offer.product_id == product_id)
        return list((await self.session.execute(query)).scalars().all())

    async def price_history(self, offer_id: str) -> list[PriceHistory]:
        query = select(PriceHistory).where(PriceHistory.offer_id == offer_id).order_by(PriceHistory.created_at.asc())
        return list((await self.session.execute(query)).scalars().all())

    async def add_price_history(self, offer_id: str, price: float, currency: str):
        self.session.add(PriceHistory(offer_id=offer_id, price=price, currency=currency))

    async def add_ingest_event(self, offer_id: str, partner_id: str | None, source, external_id: str, payload):
        self.session.add(OfferIngestEvent(
            offer_id=offer_id,
            partner_id=partner_id,
            source=_value(source),
            external_id=external_id,
            payload=payload,
        ))

    async def priced_offers_with_published_pages(self, source, limit: int) -> list[Offer]:
        published = select(Page.product_id).where(Page.status == PageStatus.PUBLISHED.value, Page.product_id.is_not(None))
        query = (
            select(Offer)
            .options(selectinload(Offer.product), selectinload(Offer.partner))
            .where(Offer.source == _value(source), Offer.price.is_not(None), Offer.product_id.in_(published))
            .order_by(Offer.updated_at.asc())
            .limit(limit)
        )
        return list((await self.session.execute(query)).scalars().all())

    # --- pages --------------------------------------------------------

    async def find_page_by_slug(self, slug: str) -> Page | None:
        query = select(Page).where(Page.slug == slug)
        return (await self.session.execute(query)).scalars().first()

    async def find_page_for_product(self, product_id: str) -> Page | None:
        query = select(Page).where(Page.product_id == product_id).order_by(Page.created_at.asc()).limit(1)
        return (await self.session.execute(query)).scalars().first()

    async def recent_page_titles(self, category: str, since: datetime) -> list[RecentTitle]:
        query = (
            select(Page.id, Page.slug, Page.title, Page.product_id)
            .join(Product, Product.id == Page.product_id)
            .where(
                Page.type == "REVIEW",
                Page.created_at >= since,
                or_(Product.category == category, Product.category.startswith(f"{category}/")),
            )
            .order_by(Page.created_at.desc())
            .limit(RECENT_TITLES_SCAN_LIMIT)
        )
        rows = (await self.session.execute(query)).all()
        return [RecentTitle(id=r.id, slug=r.slug, title=r.title, product_id=r.product_id) for r in rows]

    async def unique_slug(self, base: str) -> str:
        base = "/".join(part for part in base.split("/") if part)
        candidate = base
        for index in range(2, MAX_SLUG_ATTEMPTS + 2):
            found = await self.session.scalar(select(Page.id).where(Page.slug == candidate))
            if not found:
                return candidate
            candidate = f"{base}-{index}"
        return f"{base}-{int(utcnow().timestamp())}"

    async def create_page(self, **values) -> Page:
        page = Page(**values)
        self.session.add(page)
        await self.session.flush()
        return page

    async def link_page_product(self, page: Page, product_id: str):
        page.product_id = product_id
        await self.session.flush()

    # --- runs ---------------------------------------------------------

    async def create_run(self, source, message: str) -> AutomationRun:
        run = AutomationRun(source=_value(source), status=RunStatus.QUEUED.value, message=message)
        self.session.add(run)
        await self.session.commit()
        return run

    async def finish_run(self, run: AutomationRun, status: RunStatus, message: str, items_seen: int = 0, items_posted: int = 0):
        run.status = status.value
        run.message = message
        run.items_seen = items_seen
        run.items_posted = items_posted
        run.finished_at = utcnow()
        self.session.add(run)
        await self.session.commit()

    async def add_ai_generation_log(self, **values) -> AIGenerationLog:
        row = AIGenerationLog(**values)
        self.session.add(row)
        return row


def _value(source) -> str:
    return getattr(source, "value", source)
