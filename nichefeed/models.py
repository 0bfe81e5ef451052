import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint

# Opaque provider payloads: JSONB on Postgres, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class OfferSource(str, enum.Enum):
    AMAZON = "AMAZON"
    ALIEXPRESS = "ALIEXPRESS"
    TEMU = "TEMU"
    ALIBABA = "ALIBABA"
    EBAY = "EBAY"


class PageStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"


class StepStatus(str, enum.Enum):
    OK = "OK"
    WARN = "WARN"
    ERROR = "ERROR"


class RunStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class Base(DeclarativeBase):
    pass


class Niche(Base):
    __tablename__ = "niches"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    source: Mapped[str] = mapped_column(String(20), index=True)
    category_path: Mapped[str] = mapped_column(String(200), index=True)
    # Plain keyword or a full marketplace search URL
    keywords: Mapped[str] = mapped_column(Text)
    priority: Mapped[int] = mapped_column(Integer, default=100)
    max_items: Mapped[int] = mapped_column(Integer, default=8)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Partner(Base):
    __tablename__ = "partners"
    __table_args__ = (UniqueConstraint("source", "name", name="uq_partner_source_name"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(120))
    source: Mapped[str] = mapped_column(String(20), index=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    has_api: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    accounts: Mapped[list["AffiliateAccount"]] = relationship(back_populates="partner")


class AffiliateAccount(Base):
    __tablename__ = "affiliate_accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    partner_id: Mapped[str] = mapped_column(ForeignKey("partners.id"), index=True)
    tracking_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    deep_link_pattern: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    partner: Mapped[Partner] = relationship(back_populates="accounts")


class Product(Base):
    __tablename__ = "products"

    # Either caller supplied or derived from (category, external id)
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    canonical_name: Mapped[str] = mapped_column(String(500))
    category: Mapped[str] = mapped_column(String(200), index=True)
    # asin, mirrored images, ...
    attributes: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    offers: Mapped[list["Offer"]] = relationship(back_populates="product")
    pages: Mapped[list["Page"]] = relationship(back_populates="product")


class Offer(Base):
    __tablename__ = "offers"
    # Idempotency key for ingestion
    __table_args__ = (UniqueConstraint("source", "external_id", name="uq_offer_source_external_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    source: Mapped[str] = mapped_column(String(20))
    external_id: Mapped[str] = mapped_column(String(120))
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), index=True)
    partner_id: Mapped[str | None] = mapped_column(ForeignKey("partners.id"), nullable=True)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    price: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    availability: Mapped[str | None] = mapped_column(String(120), nullable=True)
    affiliate_url: Mapped[str] = mapped_column(Text)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    product: Mapped[Product] = relationship(back_populates="offers")
    partner: Mapped[Partner | None] = relationship()


class PriceHistory(Base):
    """Append-only. One row per observed price change."""
    __tablename__ = "price_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    offer_id: Mapped[str] = mapped_column(ForeignKey("offers.id"), index=True)
    price: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class OfferIngestEvent(Base):
    """Append-only audit of every ingestion attempt with the raw payload."""
    __tablename__ = "offer_ingest_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    offer_id: Mapped[str] = mapped_column(ForeignKey("offers.id"), index=True)
    partner_id: Mapped[str | None] = mapped_column(ForeignKey("partners.id"), nullable=True)
    source: Mapped[str] = mapped_column(String(20))
    external_id: Mapped[str] = mapped_column(String(120))
    payload: Mapped[dict | list | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Page(Base):
    __tablename__ = "pages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    slug: Mapped[str] = mapped_column(String(300), unique=True, index=True)
    product_id: Mapped[str | None] = mapped_column(ForeignKey("products.id"), nullable=True, index=True)
    type: Mapped[str] = mapped_column(String(20), default="REVIEW")
    title: Mapped[str] = mapped_column(String(500))
    excerpt: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_md: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default=PageStatus.DRAFT.value)
    hero_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    product: Mapped[Product | None] = relationship(back_populates="pages")


class ClickEvent(Base):
    """Written by the click redirect endpoint, read by the niche scheduler."""
    __tablename__ = "click_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    page_id: Mapped[str | None] = mapped_column(ForeignKey("pages.id"), nullable=True, index=True)
    offer_id: Mapped[str | None] = mapped_column(ForeignKey("offers.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)


class AutomationRun(Base):
    __tablename__ = "automation_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    source: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20), default=RunStatus.QUEUED.value)
    items_seen: Mapped[int] = mapped_column(Integer, default=0)
    items_posted: Mapped[int] = mapped_column(Integer, default=0)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class StepLog(Base):
    __tablename__ = "step_logs"
    __table_args__ = (Index("idx_step_logs_run_created", "run_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    run_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    step: Mapped[str] = mapped_column(String(80))
    status: Mapped[str] = mapped_column(String(10))
    input: Mapped[dict | list | None] = mapped_column(JSONType, nullable=True)
    output: Mapped[dict | list | None] = mapped_column(JSONType, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class AIGenerationLog(Base):
    __tablename__ = "ai_generation_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    run_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    page_id: Mapped[str | None] = mapped_column(ForeignKey("pages.id"), nullable=True)
    category_path: Mapped[str] = mapped_column(String(200))
    keyword: Mapped[str | None] = mapped_column(Text, nullable=True)
    product_name: Mapped[str] = mapped_column(String(500))
    model: Mapped[str] = mapped_column(String(80))
    provider: Mapped[str] = mapped_column(String(40), default="openai")
    used_ai: Mapped[bool] = mapped_column(Boolean, default=False)
    fallback_used: Mapped[bool] = mapped_column(Boolean, default=False)
    prompt_hash: Mapped[str] = mapped_column(String(64))
    prompt_chars: Mapped[int] = mapped_column(Integer, default=0)
    output_chars: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
