"""
Tests for idempotent offer ingestion
"""
import pytest
from sqlalchemy import func, select

from nichefeed.models import OfferIngestEvent, Page, Partner, PriceHistory, Product
from nichefeed.repository import Repository
from nichefeed.services.ingest import IngestReconciler, OfferIngestItem, price_changed


def item(**overrides):
    data = {
        "source": "AMAZON",
        "externalId": "AMAZON_B0NIMBUS01",
        "title": "Nimbus Pro Earbuds",
        "price": 49.99,
        "affiliateUrl": "https://www.amazon.com/dp/B0NIMBUS01?tag=nichefeed-20",
        "productName": "Nimbus Pro Earbuds",
        "productCategory": "electronics/headphones",
        "payload": {"mode": "test"},
    }
    data.update(overrides)
    return OfferIngestItem.model_validate(data)


async def count(session, model):
    return await session.scalar(select(func.count()).select_from(model))


class TestOfferIngestItem:
    def test_camel_and_snake_names(self):
        by_alias = item(currency="usd")
        by_name = OfferIngestItem(
            source="AMAZON",
            external_id="AMAZON_B0NIMBUS01",
            affiliate_url="https://www.amazon.com/dp/B0NIMBUS01?tag=x",
            product_name="Nimbus",
        )
        assert by_alias.external_id == by_name.external_id
        assert by_alias.currency == "USD"

    def test_non_finite_price_is_absent(self):
        assert item(price=float("nan")).price is None
        assert item(price=float("inf")).price is None


class TestPriceChanged:
    @pytest.mark.parametrize("old,new,expected", [
        (None, 10.0, True),
        (10.0, None, False),
        (None, None, False),
        (10.0, 10.001, False),
        (10.0, 10.01, True),
    ])
    def test_cases(self, old, new, expected):
        assert price_changed(old, new) is expected


class TestIngestReconciler:
    @pytest.mark.asyncio
    async def test_same_item_twice_is_idempotent(self, session):
        repo = Repository(session)
        reconciler = IngestReconciler(repo)

        first = await reconciler.ingest([item()])
        second = await reconciler.ingest([item()])

        assert (first.created_offers, first.updated_offers, first.price_updates) == (1, 0, 1)
        assert (second.created_offers, second.updated_offers, second.price_updates) == (0, 1, 0)
        offer = await repo.find_offer("AMAZON", "AMAZON_B0NIMBUS01")
        assert offer.price == 49.99
        assert len(await repo.price_history(offer.id)) == 1
        assert await count(session, OfferIngestEvent) == 2

    @pytest.mark.asyncio
    async def test_price_change_appends_history(self, session):
        repo = Repository(session)
        reconciler = IngestReconciler(repo)
        await reconciler.ingest([item(price=49.99)])
        stats = await reconciler.ingest([item(price=44.5)])

        assert stats.price_updates == 1
        offer = await repo.find_offer("AMAZON", "AMAZON_B0NIMBUS01")
        assert offer.price == 44.5
        assert sorted(h.price for h in await repo.price_history(offer.id)) == [44.5, 49.99]

    @pytest.mark.asyncio
    async def test_price_appearing_later_counts_as_change(self, session):
        repo = Repository(session)
        reconciler = IngestReconciler(repo)
        first = await reconciler.ingest([item(price=None)])
        second = await reconciler.ingest([item(price=39.0)])

        assert first.price_updates == 0
        assert second.price_updates == 1
        offer = await repo.find_offer("AMAZON", "AMAZON_B0NIMBUS01")
        assert [h.price for h in await repo.price_history(offer.id)] == [39.0]

    @pytest.mark.asyncio
    async def test_product_found_or_created_by_name_and_category(self, session):
        repo = Repository(session)
        await IngestReconciler(repo).ingest([
            item(),
            item(externalId="AMAZON_B0NIMBUS02"),
            item(externalId="AMAZON_B0OTHER001", productCategory=None),
        ])

        products = (await session.execute(select(Product).order_by(Product.category))).scalars().all()
        assert [(p.canonical_name, p.category) for p in products] == [
            ("Nimbus Pro Earbuds", "electronics/headphones"),
            ("Nimbus Pro Earbuds", "unassigned"),
        ]

    @pytest.mark.asyncio
    async def test_explicit_product_id_wins(self, session):
        session.add(Product(id="prod_explicit", canonical_name="Something Else", category="electronics/tv"))
        await session.commit()
        repo = Repository(session)
        await IngestReconciler(repo).ingest([item(productId="prod_explicit")])

        offer = await repo.find_offer("AMAZON", "AMAZON_B0NIMBUS01")
        assert offer.product_id == "prod_explicit"

    @pytest.mark.asyncio
    async def test_unknown_product_id_falls_back_to_name(self, session):
        repo = Repository(session)
        await IngestReconciler(repo).ingest([item(productId="prod_missing")])

        offer = await repo.find_offer("AMAZON", "AMAZON_B0NIMBUS01")
        product = await repo.get_product(offer.product_id)
        assert product.canonical_name == "Nimbus Pro Earbuds"

    @pytest.mark.asyncio
    async def test_page_slug_links_orphan_page(self, session):
        session.add(Page(id="pg1", slug="electronics/headphones/nimbus", title="Nimbus", content_md="x"))
        await session.commit()
        repo = Repository(session)
        await IngestReconciler(repo).ingest([item(pageSlug="electronics/headphones/nimbus")])

        page = await repo.find_page_by_slug("electronics/headphones/nimbus")
        offer = await repo.find_offer("AMAZON", "AMAZON_B0NIMBUS01")
        assert page.product_id == offer.product_id

    @pytest.mark.asyncio
    async def test_page_slug_reuses_page_product(self, session):
        session.add(Product(id="prod_page", canonical_name="Nimbus Pro (2025)", category="electronics/headphones"))
        session.add(Page(id="pg1", slug="nimbus", product_id="prod_page", title="Nimbus", content_md="x"))
        await session.commit()
        repo = Repository(session)
        await IngestReconciler(repo).ingest([item(pageSlug="nimbus")])

        offer = await repo.find_offer("AMAZON", "AMAZON_B0NIMBUS01")
        assert offer.product_id == "prod_page"

    @pytest.mark.asyncio
    async def test_partner_resolved_by_name(self, session):
        session.add_all([
            Partner(id="p1", name="Amazon US", source="AMAZON"),
            Partner(id="p2", name="Amazon UK", source="AMAZON"),
        ])
        await session.commit()
        repo = Repository(session)
        await IngestReconciler(repo).ingest([
            item(partnerName="Amazon UK"),
            item(externalId="AMAZON_B0NIMBUS02", partnerName="Nope"),
        ])

        assert (await repo.find_offer("AMAZON", "AMAZON_B0NIMBUS01")).partner_id == "p2"
        assert (await repo.find_offer("AMAZON", "AMAZON_B0NIMBUS02")).partner_id is None

    @pytest.mark.asyncio
    async def test_commit_false_leaves_transaction_open(self, session_factory):
        async with session_factory() as session:
            repo = Repository(session)
            await IngestReconciler(repo).ingest([item()], commit=False)
            await repo.rollback()

        async with session_factory() as session:
            assert await count(session, PriceHistory) == 0
            assert await Repository(session).find_offer("AMAZON", "AMAZON_B0NIMBUS01") is None
