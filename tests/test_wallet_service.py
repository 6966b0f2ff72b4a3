import uuid
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

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
from storefront.models import Store, Wallet, WalletTransaction
from storefront.services.wallet_service import WalletService, sale_fees

from factories import paid_order


async def balances(db, store_id):
    result = await db.execute(
        select(Wallet.available_balance, Wallet.retained_balance).where(Wallet.store_id == store_id)
    )
    return tuple(result.one())


@pytest.mark.parametrize("gross, fee, net", [
    ("20.00", "1.30", "18.70"),
    ("100.00", "3.70", "96.30"),
    ("10.01", "1.00", "9.01"),
    ("0.50", "0.72", "0.00"),
])
def test_sale_fees(gross, fee, net):
    assert sale_fees(Decimal(gross)) == (Decimal(fee), Decimal(net))


class TestWallet:
    async def test_created_empty(self, wallet_service, store):
        wallet = await wallet_service.get_or_create_wallet(store.id)

        assert wallet.available_balance == Decimal("0.00")
        assert wallet.retained_balance == Decimal("0.00")
        assert not wallet.has_personal_data
        assert (await wallet_service.get_or_create_wallet(store.id)).id == wallet.id

    async def test_sale_credited_once(self, db, wallet_service, order_service, reconciler, store, product, pushin):
        order, payment, _ = await paid_order(order_service, reconciler, pushin, store, product, 2)
        payment = await db.get(type(payment), payment.id, populate_existing=True)

        assert await wallet_service.credit_on_sale(payment, order) is None
        await db.commit()

        assert await balances(db, store.id) == (Decimal("18.70"), Decimal("0.00"))


class TestPersonalData:
    async def test_saved_with_clean_cpf(self, wallet_service, store):
        wallet = await wallet_service.save_personal_data(
            store.id, " Maria Souza ", "529.982.247-25", date(1990, 5, 17), "maria@lojagamer.com.br"
        )

        assert wallet.cpf == "52998224725"
        assert wallet.full_name == "Maria Souza"
        assert wallet.has_personal_data

    @pytest.mark.parametrize("full_name, cpf, birth_date", [
        ("", "52998224725", date(1990, 5, 17)),
        ("Maria", "1234", date(1990, 5, 17)),
        ("Maria", "52998224725", date.today() + timedelta(days=1)),
        ("Maria", "52998224725", None),
    ])
    async def test_rejected(self, wallet_service, store, full_name, cpf, birth_date):
        with pytest.raises(InvalidPersonalData):
            await wallet_service.save_personal_data(
                store.id, full_name, cpf, birth_date, "maria@lojagamer.com.br"
            )


class TestCreateWithdrawal:
    async def test_moves_amount_to_retained(self, db, wallet_service, store, kyc_wallet):
        withdrawal = await wallet_service.create_withdrawal(store.id, Decimal("60.00"), " maria@pix ")

        assert withdrawal.status == "pending"
        assert withdrawal.amount == Decimal("60.00")
        assert withdrawal.pix_key == "maria@pix"
        assert await balances(db, store.id) == (Decimal("40.00"), Decimal("60.00"))

        entry = (await db.execute(select(WalletTransaction))).scalar_one()
        assert entry.type == "withdrawal_reserve"
        assert entry.amount == Decimal("-60.00")
        assert entry.withdrawal_id == withdrawal.id
        assert (entry.available_after, entry.retained_after) == (Decimal("40.00"), Decimal("60.00"))

    async def test_stale_session_cannot_overdraw(self, db, session_factory, wallet_service, store, kyc_wallet):
        store_id = store.id

        async with session_factory() as other_db:
            # Both sessions have seen 100.00 available
            stale = await other_db.get(Wallet, kyc_wallet.id)
            assert stale.available_balance == Decimal("100.00")

            await wallet_service.create_withdrawal(store_id, Decimal("60.00"), "first@pix")

            with pytest.raises(InsufficientFunds):
                await WalletService(other_db).create_withdrawal(store_id, Decimal("50.00"), "second@pix")

        assert await balances(db, store_id) == (Decimal("40.00"), Decimal("60.00"))

    async def test_insufficient_funds(self, db, wallet_service, store, kyc_wallet):
        store_id = store.id

        with pytest.raises(InsufficientFunds):
            await wallet_service.create_withdrawal(store_id, Decimal("100.01"), "maria@pix")

        assert await balances(db, store_id) == (Decimal("100.00"), Decimal("0.00"))

    async def test_whole_balance(self, db, wallet_service, store, kyc_wallet):
        await wallet_service.create_withdrawal(store.id, Decimal("100.00"), "maria@pix")
        assert await balances(db, store.id) == (Decimal("0.00"), Decimal("100.00"))

    async def test_requires_personal_data(self, wallet_service, store):
        with pytest.raises(KycIncomplete):
            await wallet_service.create_withdrawal(store.id, Decimal("10.00"), "maria@pix")

    @pytest.mark.parametrize("amount", ["4.99", "50000.01"])
    async def test_amount_bounds(self, wallet_service, store, kyc_wallet, amount):
        with pytest.raises(WithdrawalAmountInvalid):
            await wallet_service.create_withdrawal(store.id, Decimal(amount), "maria@pix")

    async def test_requires_pix_key(self, wallet_service, store, kyc_wallet):
        with pytest.raises(ValidationError):
            await wallet_service.create_withdrawal(store.id, Decimal("10.00"), "   ")

    async def test_daily_limit(self, monkeypatch, wallet_service, store, kyc_wallet):
        monkeypatch.setattr(settings, "WITHDRAWAL_MAX_PER_DAY", 2)
        store_id = store.id
        await wallet_service.create_withdrawal(store_id, Decimal("10.00"), "maria@pix")
        await wallet_service.create_withdrawal(store_id, Decimal("10.00"), "maria@pix")

        with pytest.raises(WithdrawalLimitReached):
            await wallet_service.create_withdrawal(store_id, Decimal("10.00"), "maria@pix")


class TestResolveWithdrawal:
    async def test_approve(self, db, wallet_service, store, kyc_wallet):
        withdrawal = await wallet_service.create_withdrawal(store.id, Decimal("60.00"), "maria@pix")

        approved = await wallet_service.approve_withdrawal(withdrawal.id)

        assert approved.status == "approved"
        assert approved.processed_at is not None
        assert await balances(db, store.id) == (Decimal("40.00"), Decimal("0.00"))
        types = [t.type for t in await wallet_service.list_transactions(store.id)]
        assert sorted(types) == ["withdrawal_debit", "withdrawal_reserve"]

    async def test_reject_returns_amount(self, db, wallet_service, store, kyc_wallet):
        withdrawal = await wallet_service.create_withdrawal(store.id, Decimal("60.00"), "maria@pix")

        rejected = await wallet_service.reject_withdrawal(withdrawal.id, "Chave PIX nao confere")

        assert rejected.status == "rejected"
        assert rejected.rejection_reason == "Chave PIX nao confere"
        assert await balances(db, store.id) == (Decimal("100.00"), Decimal("0.00"))

    @pytest.mark.parametrize("reason", ["", "   ", None])
    async def test_reject_requires_reason(self, db, wallet_service, store, kyc_wallet, reason):
        withdrawal = await wallet_service.create_withdrawal(store.id, Decimal("60.00"), "maria@pix")

        with pytest.raises(WithdrawalReasonRequired):
            await wallet_service.reject_withdrawal(withdrawal.id, reason)

        assert (await wallet_service.get_withdrawal(withdrawal.id)).status == "pending"

    async def test_resolved_only_once(self, db, wallet_service, store, kyc_wallet):
        withdrawal = await wallet_service.create_withdrawal(store.id, Decimal("60.00"), "maria@pix")
        store_id, withdrawal_id = store.id, withdrawal.id
        await wallet_service.approve_withdrawal(withdrawal_id)

        with pytest.raises(AlreadyProcessed):
            await wallet_service.approve_withdrawal(withdrawal_id)
        with pytest.raises(AlreadyProcessed):
            await wallet_service.reject_withdrawal(withdrawal_id, "tarde demais")
        with pytest.raises(AlreadyProcessed):
            await wallet_service.mark_processing(withdrawal_id)

        assert await balances(db, store_id) == (Decimal("40.00"), Decimal("0.00"))

    async def test_processing_then_approve(self, db, wallet_service, store, kyc_wallet):
        withdrawal = await wallet_service.create_withdrawal(store.id, Decimal("25.00"), "maria@pix")

        assert (await wallet_service.mark_processing(withdrawal.id)).status == "processing"
        assert (await wallet_service.mark_processing(withdrawal.id)).status == "processing"

        approved = await wallet_service.approve_withdrawal(withdrawal.id)

        assert approved.status == "approved"
        assert await balances(db, store.id) == (Decimal("75.00"), Decimal("0.00"))

    async def test_unknown_withdrawal(self, wallet_service):
        with pytest.raises(WithdrawalNotFound):
            await wallet_service.approve_withdrawal(uuid.uuid4())


class TestHistory:
    async def test_lists_are_scoped_to_store(self, db, wallet_service, store, kyc_wallet):
        other = Store(name="Outra", slug="outra-wallet")
        db.add(other)
        await db.commit()
        first = await wallet_service.create_withdrawal(store.id, Decimal("10.00"), "maria@pix")
        await wallet_service.create_withdrawal(store.id, Decimal("20.00"), "maria@pix")
        await wallet_service.approve_withdrawal(first.id)

        assert len(await wallet_service.list_withdrawals(store.id)) == 2
        approved = await wallet_service.list_withdrawals(store.id, status="approved")
        assert [w.id for w in approved] == [first.id]
        assert len(await wallet_service.list_transactions(store.id)) == 3
        assert await wallet_service.list_withdrawals(other.id) == []
        assert await wallet_service.list_transactions(other.id) == []
