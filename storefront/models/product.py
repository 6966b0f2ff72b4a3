import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, Numeric, Index
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database import Base
from storefront.db_types import UUIDType


class DeliveryType(str, Enum):
    """How a product is handed to the buyer."""
    INSTANT = "instant"  # Delivered automatically on payment confirmation
    MANUAL = "manual"    # Merchant delivers by hand


class InventoryType(str, Enum):
    """What an instant delivery hands out."""
    LINES = "lines"  # One pre-provisioned key per unit
    TEXT = "text"    # Same text content for every buyer
    FILE = "file"    # Downloadable file handled outside the core


class Product(Base):
    """Digital product sold by a store."""
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    store_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("stores.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Pricing
    price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="List price"
    )
    promotional_price: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2),
        nullable=True,
        comment="Takes precedence over price when set"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Delivery
    delivery_type: Mapped[str] = mapped_column(
        String(20),
        default=DeliveryType.INSTANT.value,
        nullable=False,
        comment="instant, manual"
    )
    inventory_type: Mapped[str] = mapped_column(
        String(20),
        default=InventoryType.LINES.value,
        nullable=False,
        comment="lines, text, file"
    )
    delivery_content: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Content delivered for text products"
    )

    sales_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    @property
    def active_price(self) -> Decimal:
        """Price charged right now: promotional price wins when set."""
        if self.promotional_price is not None and self.promotional_price > 0:
            return Decimal(self.promotional_price)
        return Decimal(self.price)

    @property
    def uses_keys(self) -> bool:
        return (
            self.delivery_type == DeliveryType.INSTANT.value
            and self.inventory_type == InventoryType.LINES.value
        )

    def __repr__(self) -> str:
        return f"<Product(name='{self.name}', price={self.price})>"


class ProductKey(Base):
    """
    A single deliverable inventory unit (serial/license key).

    Lifecycle: available -> reserved (bound to an order item while the order
    awaits payment) -> used (delivered, permanently bound to that item).
    A reservation can be released; a used key is never reassigned.
    """
    __tablename__ = "product_keys"
    __table_args__ = (
        Index('ix_product_key_available', 'product_id', 'used', 'reserved_item_id'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    key: Mapped[str] = mapped_column(Text, nullable=False)

    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reserved_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("order_items.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Order item holding this key while awaiting payment"
    )
    reserved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    order_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("order_items.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
        comment="Order item the key was delivered to"
    )
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<ProductKey(product_id={self.product_id}, used={self.used})>"
