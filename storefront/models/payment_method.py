import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database import Base
from storefront.db_types import UUIDType, JSONType


class PaymentMethod(Base):
    """PIX provider enabled for a store."""
    __tablename__ = "payment_methods"
    __table_args__ = (
        UniqueConstraint('store_id', 'provider', name='uq_payment_method_store_provider'),
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
    provider: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment="pushin_pay, mercado_pago"
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    token: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Provider API token; platform token is used when empty"
    )
    sandbox: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<PaymentMethod(provider='{self.provider}', enabled={self.enabled})>"


class SplitConfig(Base):
    """
    Per-store payment split.

    rules is a list of up to six entries:
        {"percentage": "3.00", "accounts": {"pushin_pay": "acc-1", "mercado_pago": "123"}}
    Payee accounts are provider specific, so each rule names one per provider.
    """
    __tablename__ = "split_configs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    store_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("stores.id", ondelete="CASCADE"),
        unique=True,
        nullable=False
    )
    rules: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

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
