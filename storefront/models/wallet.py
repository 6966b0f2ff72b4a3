import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, DateTime, Date, ForeignKey, Text, Numeric, CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database import Base
from storefront.db_types import UUIDType


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    APPROVED = "approved"
    REJECTED = "rejected"


WITHDRAWAL_OPEN_STATES = (WithdrawalStatus.PENDING.value, WithdrawalStatus.PROCESSING.value)


class WalletTransactionType(str, Enum):
    SALE_CREDIT = "sale_credit"
    WITHDRAWAL_RESERVE = "withdrawal_reserve"
    WITHDRAWAL_RELEASE = "withdrawal_release"
    WITHDRAWAL_DEBIT = "withdrawal_debit"


class Wallet(Base):
    """
    Merchant balance (1:1 with store).

    available_balance: free for withdrawal
    retained_balance: earmarked by in-flight withdrawals
    """
    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint('available_balance >= 0', name='ck_wallet_available_non_negative'),
        CheckConstraint('retained_balance >= 0', name='ck_wallet_retained_non_negative'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    store_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("stores.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False
    )
    available_balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0.00"),
        nullable=False
    )
    retained_balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0.00"),
        nullable=False
    )
    pix_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Identity data required before any withdrawal
    full_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    cpf: Mapped[Optional[str]] = mapped_column(String(11), nullable=True)
    birth_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

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

    @property
    def has_personal_data(self) -> bool:
        return bool(self.full_name and self.cpf and self.birth_date and self.email)

    def __repr__(self) -> str:
        return (
            f"<Wallet(store_id={self.store_id}, available={self.available_balance}, "
            f"retained={self.retained_balance})>"
        )


class Withdrawal(Base):
    """Payout request. Funds move to retained balance on creation."""
    __tablename__ = "withdrawals"
    __table_args__ = (
        Index('ix_withdrawal_wallet_created', 'wallet_id', 'created_at'),
        CheckConstraint('amount > 0', name='ck_withdrawal_amount_positive'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    wallet_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("wallets.id", ondelete="RESTRICT"),
        nullable=False
    )
    store_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("stores.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    pix_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=WithdrawalStatus.PENDING.value,
        nullable=False,
        index=True,
        comment="pending, processing, approved, rejected"
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

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

    def __repr__(self) -> str:
        return f"<Withdrawal(amount={self.amount}, status='{self.status}')>"


class WalletTransaction(Base):
    """
    Append-only history of balance movements shown to the merchant.

    payment_id is unique so a sale can be credited once.
    """
    __tablename__ = "wallet_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    wallet_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("wallets.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("payments.id", ondelete="RESTRICT"),
        unique=True,
        nullable=True
    )
    withdrawal_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("withdrawals.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    gross_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    fee_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    available_after: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    retained_after: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
