from __future__ import annotations

from datetime import datetime
import uuid
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


json_type = JSON().with_variant(JSONB, "postgresql")
UNIT_TYPE_CHECK = "{column} in ('GRAM', 'ML', 'COUNT')"


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class CanonicalItem(Base):
    __tablename__ = "canonical_items"
    __table_args__ = (
        CheckConstraint(UNIT_TYPE_CHECK.format(column="unit_type"), name="canonical_items_unit_type_check"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    unit_type: Mapped[str] = mapped_column(String(8), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(64))
    aliases: Mapped[list] = mapped_column(json_type, nullable=False, default=list)
    is_pantry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"CanonicalItem(id={self.id}, name={self.name}, unit_type={self.unit_type})"


class StoreProduct(Base):
    __tablename__ = "store_products"
    __table_args__ = (
        UniqueConstraint("store", "provider_product_id", name="store_products_store_provider_key"),
        CheckConstraint(
            UNIT_TYPE_CHECK.format(column="pack_size_unit"), name="store_products_pack_size_unit_check"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    store: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_product_id: Mapped[str] = mapped_column(String(512), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    pack_size_value: Mapped[float] = mapped_column(Float, nullable=False)
    pack_size_unit: Mapped[str] = mapped_column(String(8), nullable=False)
    product_url: Mapped[Optional[str]] = mapped_column(Text)
    image_url: Mapped[Optional[str]] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"StoreProduct(id={self.id}, store={self.store}, title={self.title})"


class CanonicalToStoreProduct(Base):
    """Mapping row; `id` preserves insertion order for priority ties."""

    __tablename__ = "canonical_to_store_product"
    __table_args__ = (
        UniqueConstraint(
            "canonical_item_id", "store_product_id", name="canonical_to_store_product_pair_key"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    canonical_item_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("canonical_items.id", ondelete="CASCADE"), nullable=False
    )
    store_product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("store_products.id", ondelete="CASCADE"), nullable=False
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text)


class PriceCache(Base):
    __tablename__ = "price_cache"

    store_product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("store_products.id", ondelete="CASCADE"),
        primary_key=True,
    )
    postcode_area: Mapped[str] = mapped_column(String(16), primary_key=True, default="GLOBAL")
    price: Mapped[float] = mapped_column(Float, nullable=False)
    unit_price: Mapped[Optional[float]] = mapped_column(Float)
    promo_text: Mapped[Optional[str]] = mapped_column(Text)
    in_stock: Mapped[Optional[bool]] = mapped_column(Boolean)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    ttl_expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )


class QuoteLog(Base):
    __tablename__ = "quote_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    request: Mapped[dict] = mapped_column(json_type, nullable=False)
    response: Mapped[dict] = mapped_column(json_type, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
