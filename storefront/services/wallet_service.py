"""
Wallet Ledger Service

Merchant balances and the withdrawal lifecycle:

    pending --> processing --> approved   (retained -= amount)
       |             |
       +-------------+------> rejected   (retained -= amount, available += amount)

A withdrawal moves its amount from available to retained on creation. Every
balance change is a conditional UPDATE checked by rowcount, so concurrent
withdrawals can never overdraw the wallet and a sale can never be credited
twice. Each movement is appended to wallet_transactions.
"""
import logging
import re
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import settings
from storefront.core.exceptions import (
    AlreadyProcessed,
    InsufficientFunds,
    InvalidPersonalData,
    KycIncomplete,
    ValidationError,
    WithdrawalAmountInvalid,
    WithdrawalLimitReached,
    WithdrawalNotFound,
    WithdrawalReasonRequired,
)
from storefront.core.money import ZERO, percentage_of, to_money
from storefront.models.order import Order, Payment
from storefront.models.wallet import (
    WITHDRAWAL_OPEN_STATES,
    Wallet,
    WalletTransaction,
    WalletTransactionType,
    Withdrawal,
    WithdrawalStatus,
)

logger = logging.getLogger(__name__)

CPF_LENGTH = 11


def sale_fees(gross: Decimal) -> Tuple[Decimal, Decimal]:
    """(fee, net) for a sale: fixed gateway fee plus platform percentage."""
    gross = to_money(gross)
    fee = to_money(
        settings.WALLET_GATEWAY_FIXED_FEE
        + percentage_of(gross, settings.WALLET_PLATFORM_FEE_PERCENT)
    )
    net = gross - fee
    if net < ZERO:
        net = ZERO
    return fee, net


class WalletService:
    """Wallet balances and withdrawals for a store."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== WALLET ====================

    async def _get_wallet(self, store_id: uuid.UUID, lock: bool = False) -> Optional[Wallet]:
        query = select(Wallet).where(Wallet.store_id == store_id)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def _ensure_wallet(self, store_id: uuid.UUID, lock: bool = False) -> Wallet:
        """Wallet for the store, created inside the current transaction if missing."""
        wallet = await self._get_wallet(store_id, lock=lock)
        if wallet is None:
            wallet = Wallet(store_id=store_id)
            self.db.add(wallet)
            await self.db.flush()
            logger.info(f"Created wallet for store {store_id}")
        return wallet

    async def get_or_create_wallet(self, store_id: uuid.UUID) -> Wallet:
        wallet = await self._get_wallet(store_id)
        if wallet is not None:
            return wallet
        try:
            wallet = await self._ensure_wallet(store_id)
            await self.db.commit()
        except IntegrityError:
            # Created concurrently
            await self.db.rollback()
            wallet = await self._get_wallet(store_id)
        return wallet

    async def _reload(self, wallet_id: uuid.UUID) -> Wallet:
        result = await self.db.execute(
            select(Wallet)
            .where(Wallet.id == wallet_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    def _record(
        self,
        wallet: Wallet,
        type: WalletTransactionType,
        amount: Decimal,
        description: str,
        **fields,
    ) -> WalletTransaction:
        entry = WalletTransaction(
            wallet_id=wallet.id,
            type=type.value,
            amount=amount,
            available_after=wallet.available_balance,
            retained_after=wallet.retained_balance,
            description=description,
            **fields,
        )
        self.db.add(entry)
        return entry

    async def save_personal_data(
        self,
        store_id: uuid.UUID,
        full_name: str,
        cpf: str,
        birth_date: date,
        email: str,
    ) -> Wallet:
        """Register the identity data required before withdrawing."""
        full_name = (full_name or "").strip()
        email = (email or "").strip()
        if not full_name or not email or not birth_date:
            raise InvalidPersonalData("full_name, cpf, birth_date and email are required")

        clean_cpf = re.sub(r"\D", "", cpf or "")
        if len(clean_cpf) != CPF_LENGTH:
            raise InvalidPersonalData("CPF must have 11 digits")
        if birth_date >= date.today():
            raise InvalidPersonalData("birth_date must be in the past")

        try:
            wallet = await self._ensure_wallet(store_id, lock=True)
            wallet.full_name = full_name
            wallet.cpf = clean_cpf
            wallet.birth_date = birth_date
            wallet.email = email
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(wallet)
        logger.info(f"Personal data saved for store {store_id} wallet")
        return wallet

    # ==================== SALES ====================

    async def credit_on_sale(self, payment: Payment, order: Order) -> Optional[WalletTransaction]:
        """
        Credit an approved sale to the store's available balance.

        Runs inside the caller's transaction and does not commit. Returns None
        when the payment was already credited.
        """
        now = datetime.now(timezone.utc)
        claimed = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.wallet_credited_at.is_(None))
            .values(wallet_credited_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            logger.info(f"Payment {payment.id} already credited to wallet, skipping")
            return None

        gross = to_money(payment.amount)
        fee, net = sale_fees(gross)

        wallet = await self._ensure_wallet(order.store_id, lock=True)
        await self.db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .values(available_balance=Wallet.available_balance + net)
            .execution_options(synchronize_session=False)
        )
        wallet = await self._reload(wallet.id)

        entry = self._record(
            wallet,
            WalletTransactionType.SALE_CREDIT,
            net,
            f"Sale {order.order_number}",
            payment_id=payment.id,
            gross_amount=gross,
            fee_amount=fee,
        )
        await self.db.flush()

        logger.info(
            f"Credited {net} (gross {gross}, fees {fee}) to store {order.store_id} "
            f"for order {order.order_number}"
        )
        return entry

    # ==================== WITHDRAWALS ====================

    async def _withdrawals_today(self, wallet_id: uuid.UUID) -> int:
        start_of_day = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        result = await self.db.execute(
            select(func.count(Withdrawal.id)).where(
                Withdrawal.wallet_id == wallet_id,
                Withdrawal.created_at >= start_of_day,
            )
        )
        return result.scalar() or 0

    async def create_withdrawal(
        self,
        store_id: uuid.UUID,
        amount: Decimal,
        pix_key: str,
    ) -> Withdrawal:
        """Request a payout; the amount is retained until an admin resolves it."""
        amount = to_money(amount)
        pix_key = (pix_key or "").strip()
        if not pix_key:
            raise ValidationError("A PIX key is required")
        if amount < settings.WITHDRAWAL_MIN:
            raise WithdrawalAmountInvalid(
                f"Minimum withdrawal is R$ {to_money(settings.WITHDRAWAL_MIN)}"
            )
        if amount > settings.WITHDRAWAL_MAX:
            raise WithdrawalAmountInvalid(
                f"Maximum withdrawal is R$ {to_money(settings.WITHDRAWAL_MAX)}"
            )

        try:
            wallet = await self._ensure_wallet(store_id, lock=True)
            if not wallet.has_personal_data:
                raise KycIncomplete("Personal data must be registered before withdrawing")

            if await self._withdrawals_today(wallet.id) >= settings.WITHDRAWAL_MAX_PER_DAY:
                raise WithdrawalLimitReached(
                    f"Limit of {settings.WITHDRAWAL_MAX_PER_DAY} withdrawals per day reached"
                )

            moved = await self.db.execute(
                update(Wallet)
                .where(Wallet.id == wallet.id, Wallet.available_balance >= amount)
                .values(
                    available_balance=Wallet.available_balance - amount,
                    retained_balance=Wallet.retained_balance + amount,
                    pix_key=pix_key,
                )
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                raise InsufficientFunds(f"Available balance is lower than {amount}")

            withdrawal = Withdrawal(
                wallet_id=wallet.id,
                store_id=store_id,
                amount=amount,
                pix_key=pix_key,
                status=WithdrawalStatus.PENDING.value,
            )
            self.db.add(withdrawal)
            await self.db.flush()

            wallet = await self._reload(wallet.id)
            self._record(
                wallet,
                WalletTransactionType.WITHDRAWAL_RESERVE,
                -amount,
                "Withdrawal requested",
                withdrawal_id=withdrawal.id,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(withdrawal)
        logger.info(f"Withdrawal {withdrawal.id} of {amount} requested by store {store_id}")
        return withdrawal

    async def get_withdrawal(self, withdrawal_id: uuid.UUID) -> Withdrawal:
        result = await self.db.execute(
            select(Withdrawal)
            .where(Withdrawal.id == withdrawal_id)
            .execution_options(populate_existing=True)
        )
        withdrawal = result.scalar_one_or_none()
        if not withdrawal:
            raise WithdrawalNotFound(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    async def _resolve(
        self,
        withdrawal_id: uuid.UUID,
        target: WithdrawalStatus,
        reason: Optional[str] = None,
    ) -> Withdrawal:
        """Move an open withdrawal to approved or rejected and settle the balances."""
        try:
            withdrawal = await self.get_withdrawal(withdrawal_id)
            if withdrawal.status not in WITHDRAWAL_OPEN_STATES:
                raise AlreadyProcessed(f"Withdrawal {withdrawal_id} is already {withdrawal.status}")

            flipped = await self.db.execute(
                update(Withdrawal)
                .where(
                    Withdrawal.id == withdrawal_id,
                    Withdrawal.status.in_(WITHDRAWAL_OPEN_STATES),
                )
                .values(
                    status=target.value,
                    rejection_reason=reason,
                    processed_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount != 1:
                raise AlreadyProcessed(f"Withdrawal {withdrawal_id} was resolved concurrently")

            amount = to_money(withdrawal.amount)
            values = {"retained_balance": Wallet.retained_balance - amount}
            if target == WithdrawalStatus.REJECTED:
                values["available_balance"] = Wallet.available_balance + amount

            moved = await self.db.execute(
                update(Wallet)
                .where(Wallet.id == withdrawal.wallet_id, Wallet.retained_balance >= amount)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                logger.error(f"Retained balance lower than withdrawal {withdrawal_id} amount {amount}")
                raise InsufficientFunds("Retained balance does not cover this withdrawal")

            wallet = await self._reload(withdrawal.wallet_id)
            if target == WithdrawalStatus.APPROVED:
                self._record(
                    wallet,
                    WalletTransactionType.WITHDRAWAL_DEBIT,
                    -amount,
                    "Withdrawal paid",
                    withdrawal_id=withdrawal.id,
                )
            else:
                self._record(
                    wallet,
                    WalletTransactionType.WITHDRAWAL_RELEASE,
                    amount,
                    f"Withdrawal rejected: {reason}",
                    withdrawal_id=withdrawal.id,
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        withdrawal = await self.get_withdrawal(withdrawal_id)
        logger.info(f"Withdrawal {withdrawal_id} {target.value}")
        return withdrawal

    async def mark_processing(self, withdrawal_id: uuid.UUID) -> Withdrawal:
        """Admin picked the withdrawal up. Repeating it is a no-op."""
        try:
            withdrawal = await self.get_withdrawal(withdrawal_id)
            if withdrawal.status == WithdrawalStatus.PROCESSING.value:
                return withdrawal
            if withdrawal.status != WithdrawalStatus.PENDING.value:
                raise AlreadyProcessed(f"Withdrawal {withdrawal_id} is already {withdrawal.status}")

            flipped = await self.db.execute(
                update(Withdrawal)
                .where(
                    Withdrawal.id == withdrawal_id,
                    Withdrawal.status == WithdrawalStatus.PENDING.value,
                )
                .values(status=WithdrawalStatus.PROCESSING.value)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount != 1:
                raise AlreadyProcessed(f"Withdrawal {withdrawal_id} changed concurrently")
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Withdrawal {withdrawal_id} processing")
        return await self.get_withdrawal(withdrawal_id)

    async def approve_withdrawal(self, withdrawal_id: uuid.UUID) -> Withdrawal:
        return await self._resolve(withdrawal_id, WithdrawalStatus.APPROVED)

    async def reject_withdrawal(self, withdrawal_id: uuid.UUID, reason: str) -> Withdrawal:
        reason = (reason or "").strip()
        if not reason:
            raise WithdrawalReasonRequired("A rejection reason is required")
        return await self._resolve(withdrawal_id, WithdrawalStatus.REJECTED, reason=reason)

    # ==================== HISTORY ====================

    async def list_withdrawals(
        self,
        store_id: uuid.UUID,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[Withdrawal]:
        query = select(Withdrawal).where(Withdrawal.store_id == store_id)
        if status:
            query = query.where(Withdrawal.status == status)
        query = query.order_by(Withdrawal.created_at.desc()).offset(skip).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_transactions(self, store_id: uuid.UUID, limit: int = 100) -> List[WalletTransaction]:
        result = await self.db.execute(
            select(WalletTransaction)
            .join(Wallet, Wallet.id == WalletTransaction.wallet_id)
            .where(Wallet.store_id == store_id)
            .order_by(WalletTransaction.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
