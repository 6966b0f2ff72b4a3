import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional, List
from decimal import Decimal

from sqlalchemy import (
    String, DateTime, ForeignKey, Integer, Text, Numeric, Index, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.database import Base
from storefront.db_types import UUIDType, JSONType

if TYPE_CHECKING:
    from storefront.models.product import Product


class OrderStatus(str, Enum):
    """Order status enumeration."""
    PENDING = "pending"      # Awaiting payment
    PAID = "paid"            # Payment confirmed, awaiting delivery
    DELIVERED = "delivered"  # Digital goods handed out
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Allowed order transitions; states missing as keys are terminal
ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
}


class OrderPaymentStatus(str, Enum):
    """Payment status as seen from the order."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    """Internal payment status. Provider vocabularies are normalized to this."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Allowed payment transitions; anything else reported by a provider is ignored
PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentStatus.APPROVED, PaymentStatus.REJECTED, PaymentStatus.CANCELLED,
    },
    PaymentStatus.APPROVED: {PaymentStatus.REFUNDED},
}


def can_transition_order(current: str, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS.get(OrderStatus(current), set())


def can_transition_payment(current: str, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS.get(PaymentStatus(current), set())


class Order(Base):
    """
    Customer order. Financial record: never deleted.
    """
    __tablename__ = "orders"
    __table_args__ = (
        Index('ix_order_store_created', 'store_id', 'created_at'),
        Index('ix_order_payment_status', 'payment_status', 'created_at'),
        CheckConstraint('discount >= 0', name='ck_order_discount_non_negative'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Order Identification
    order_number: Mapped[str] = mapped_column(
        String(40),
        unique=True,
        nullable=False,
        index=True
    )

    store_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("stores.id", ondelete="RESTRICT"),
        nullable=False
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("customers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    # Customer snapshot at order time
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    # Status
    status: Mapped[str] = mapped_column(
        String(20),
        default=OrderStatus.PENDING.value,
        nullable=False,
        index=True,
        comment="pending, paid, delivered, cancelled, refunded"
    )

    # Pricing (BRL)
    subtotal: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Sum of item totals"
    )
    discount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0.00"),
        nullable=False
    )
    total: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="subtotal - discount, frozen once a payment exists"
    )

    coupon_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("coupons.id", ondelete="SET NULL"),
        nullable=True
    )
    affiliate_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Payment
    payment_method: Mapped[str] = mapped_column(String(20), default="pix", nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(20),
        default=OrderPaymentStatus.PENDING.value,
        nullable=False,
        comment="pending, paid, failed, refunded"
    )
    payment_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
        comment="Provider charge id"
    )

    # IP, user agent, provider used
    order_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict, nullable=False)

    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Relationships
    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.created_at",
    )
    payment: Mapped[Optional["Payment"]] = relationship(
        "Payment",
        back_populates="order",
        uselist=False,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Order(number='{self.order_number}', status='{self.status}')>"


class OrderItem(Base):
    """Order line. Prices are snapshots taken at order time."""
    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False
    )
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="unit_price * quantity"
    )

    # Delivered content, one key per line
    product_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="items")
    product: Mapped["Product"] = relationship("Product", lazy="selectin")

    @property
    def delivered_keys(self) -> List[str]:
        if not self.product_key:
            return []
        return [k for k in self.product_key.split("\n") if k.strip()]


class Payment(Base):
    """
    PIX charge for an order (1:1).

    external_id is assigned by the provider once and never changes.
    """
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False
    )
    provider: Mapped[str] = mapped_column(String(30), nullable=False)
    external_id: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        index=True,
        comment="Provider charge id"
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING.value,
        nullable=False,
        index=True,
        comment="pending, approved, rejected, cancelled, refunded"
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), default="pix", nullable=False)

    # PIX
    qr_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    qr_code_base64: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    split_data: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    provider_metadata: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    wallet_credited_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set once when the sale is credited to the merchant wallet"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="payment")

    def __repr__(self) -> str:
        return f"<Payment(provider='{self.provider}', external_id='{self.external_id}', status='{self.status}')>"
