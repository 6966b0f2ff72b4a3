"""
Coupon Model for the storefront.

Supports percentage and fixed discounts with usage limits and a validity window.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Numeric, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database import Base
from storefront.db_types import UUIDType


class DiscountType(str, Enum):
    """Discount type enumeration."""
    PERCENTAGE = "percentage"  # e.g., 10% off
    FIXED = "fixed"            # e.g., R$ 5,00 off


class Coupon(Base):
    """
    Coupon/Promo code for a store.
    """
    __tablename__ = "coupons"
    __table_args__ = (
        UniqueConstraint('store_id', 'code', name='uq_coupon_store_code'),
    )

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

    # Coupon Code
    code: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
        comment="Coupon code (stored uppercase, matched case-insensitively)"
    )

    # Discount Type & Value
    discount_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DiscountType.PERCENTAGE.value,
        comment="percentage, fixed"
    )
    value: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Discount value (percentage or amount)"
    )
    max_discount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2),
        nullable=True,
        comment="Cap on discount for percentage type"
    )

    # Minimum Requirements
    min_purchase: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2),
        nullable=True,
        comment="Minimum subtotal to apply coupon"
    )

    # Usage Limits
    usage_limit: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Total times this coupon can be used"
    )
    usage_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Number of times coupon has been used"
    )

    # Validity Period
    valid_from: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )
    valid_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Expiry date (null = never expires)"
    )

    # Status
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Coupon(code='{self.code}', type='{self.discount_type}', value={self.value})>"
