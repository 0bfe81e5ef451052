from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from nichefeed.models import ClickEvent, Page, PageStatus, Product, utcnow


class ClickAnalytics:
    """Click counts grouped by the product category of the clicked review page."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def clicks_by_category_prefix(self, window_days: int = 30) -> list[dict]:
        since = utcnow() - timedelta(days=window_days)
        query = (
            select(Product.category, func.count(ClickEvent.id))
            .join(Page, Page.id == ClickEvent.page_id)
            .join(Product, Product.id == Page.product_id)
            .where(
                ClickEvent.created_at >= since,
                Page.type == "REVIEW",
                Page.status == PageStatus.PUBLISHED.value,
            )
            .group_by(Product.category)
        )
        rows = (await self.session.execute(query)).all()
        return [{"category": category, "count": int(count)} for category, count in rows]
