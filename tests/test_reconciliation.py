from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from storefront.config import settings
from storefront.jobs.payment_jobs import check_pending_payments
from storefront.models import (
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    ProductKey,
    Wallet,
    WalletTransaction,
)
from storefront.services.reconciliation_service import ReconcileOutcome

from factories import add_product, order_payload, paid_order


async def wallet_of(db, store_id):
    result = await db.execute(
        select(Wallet).where(Wallet.store_id == store_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def ledger_size(db):
    return (await db.execute(select(func.count(WalletTransaction.id)))).scalar()


async def reload(db, model, id_):
    return await db.get(model, id_, populate_existing=True)


async def mercado_payment(db, order, external_id="mp-1001"):
    """Pending Mercado Pago charge stored as if process_payment had created it."""
    payment = Payment(
        order_id=order.id,
        provider="mercado_pago",
        external_id=external_id,
        amount=order.total,
    )
    db.add(payment)
    await db.commit()
    return payment


class TestApproval:
    async def test_credits_wallet_and_delivers(self, db, order_service, reconciler, store, product, pushin):
        order, payment, result = await paid_order(order_service, reconciler, pushin, store, product, 2)

        assert result.outcome == ReconcileOutcome.APPLIED
        assert (result.previous_status, result.status) == ("pending", "approved")
        assert result.payment.wallet_credited_at is not None
        assert result.payment.provider_metadata["raw_status"] == "paid"
        assert result.delivery.order.status == OrderStatus.DELIVERED.value

        order = await reload(db, Order, order.id)
        assert order.payment_status == "paid"
        assert order.paid_at is not None

        wallet = await wallet_of(db, store.id)
        assert wallet.available_balance == Decimal("18.70")
        entry = (await db.execute(select(WalletTransaction))).scalar_one()
        assert entry.type == "sale_credit"
        assert entry.payment_id == payment.id
        assert (entry.gross_amount, entry.fee_amount, entry.amount) == (
            Decimal("20.00"), Decimal("1.30"), Decimal("18.70")
        )

    async def test_replayed_notification_credits_once(self, db, order_service, reconciler, store, product, pushin, dispatcher):
        _, payment, _ = await paid_order(order_service, reconciler, pushin, store, product, 2)

        for _ in range(3):
            replay = await reconciler.reconcile(payment.external_id, "paid", provider="pushin_pay")
            assert replay.outcome == ReconcileOutcome.UNCHANGED

        wallet = await wallet_of(db, store.id)
        assert wallet.available_balance == Decimal("18.70")
        assert await ledger_size(db) == 1
        assert dispatcher.types().count("order.approved") == 1

    async def test_credit_survives_failed_delivery(self, db, order_service, reconciler, store, pushin, dispatcher):
        product = await add_product(db, store, name="Gone Key", keys=2)
        order = await order_service.create_order(store.id, order_payload(product, 2))
        payment = await order_service.process_payment(store.id, order.id)
        order_id, store_id, product_id = order.id, store.id, product.id
        external_id = payment.external_id
        await db.execute(
            update(ProductKey)
            .where(ProductKey.product_id == product_id)
            .values(used=True, reserved_item_id=None)
        )
        await db.commit()

        result = await reconciler.reconcile(external_id, "paid", provider="pushin_pay")

        assert result.outcome == ReconcileOutcome.APPLIED
        assert result.delivery is None
        order = await reload(db, Order, order_id)
        assert order.status == OrderStatus.PAID.value
        wallet = await wallet_of(db, store_id)
        assert wallet.available_balance == Decimal("18.70")
        assert "order.fulfillment_delayed" in dispatcher.types()

        # Restocking lets the merchant deliver later
        for n in range(2):
            db.add(ProductKey(product_id=product_id, key=f"RESTOCK-{n}"))
        await db.commit()
        delivery = await order_service.deliver_order(order_id, store_id)
        assert delivery.order.status == OrderStatus.DELIVERED.value
        assert sorted(delivery.order.items[0].delivered_keys) == ["RESTOCK-0", "RESTOCK-1"]


class TestIgnoredNotifications:
    async def test_unknown_payment(self, reconciler):
        result = await reconciler.reconcile("does-not-exist", "paid")
        assert result.outcome == ReconcileOutcome.IGNORED

    async def test_provider_mismatch(self, order_service, reconciler, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 1))
        payment = await order_service.process_payment(store.id, order.id)

        result = await reconciler.reconcile(payment.external_id, "approved", provider="mercado_pago")

        assert result.outcome == ReconcileOutcome.IGNORED
        assert result.payment.status == PaymentStatus.PENDING.value

    async def test_unknown_status_keeps_pending(self, order_service, reconciler, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 1))
        payment = await order_service.process_payment(store.id, order.id)

        result = await reconciler.reconcile(payment.external_id, "processing_v2", provider="pushin_pay")

        assert result.outcome == ReconcileOutcome.UNCHANGED
        assert result.status == "pending"


class TestCancellation:
    async def test_cancel_releases_reservation(self, db, order_service, reconciler, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 2))
        payment = await order_service.process_payment(store.id, order.id)

        result = await reconciler.reconcile(payment.external_id, "canceled", provider="pushin_pay")

        assert result.outcome == ReconcileOutcome.APPLIED
        assert result.status == "cancelled"
        order = await reload(db, Order, order.id)
        assert order.status == OrderStatus.CANCELLED.value
        assert order.payment_status == "failed"
        assert await order_service.inventory.available_count(product.id) == 5

    async def test_late_approval_after_cancel_is_ignored(self, db, order_service, reconciler, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 2))
        payment = await order_service.process_payment(store.id, order.id)
        await reconciler.reconcile(payment.external_id, "canceled", provider="pushin_pay")

        result = await reconciler.reconcile(payment.external_id, "paid", provider="pushin_pay")

        assert result.outcome == ReconcileOutcome.UNCHANGED
        assert result.detail == "transition not allowed"
        order = await reload(db, Order, order.id)
        assert order.status == OrderStatus.CANCELLED.value
        assert await wallet_of(db, store.id) is None

    async def test_merchant_cancel_blocks_late_approval(self, db, order_service, reconciler, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 1))
        payment = await order_service.process_payment(store.id, order.id)
        await order_service.cancel_order(store.id, order.id)

        result = await reconciler.reconcile(payment.external_id, "paid", provider="pushin_pay")

        assert result.outcome == ReconcileOutcome.UNCHANGED
        assert await ledger_size(db) == 0

    async def test_rejection(self, db, order_service, reconciler, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 2))
        await mercado_payment(db, order)

        result = await reconciler.reconcile("mp-1001", "rejected", provider="mercado_pago")

        assert result.status == "rejected"
        order = await reload(db, Order, order.id)
        assert order.status == OrderStatus.CANCELLED.value
        assert await order_service.inventory.available_count(product.id) == 5


class TestRefund:
    async def test_refund_after_delivery(self, db, order_service, reconciler, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 2))
        await mercado_payment(db, order)
        await reconciler.reconcile("mp-1001", "approved", provider="mercado_pago")

        result = await reconciler.reconcile("mp-1001", "refunded", provider="mercado_pago")

        assert result.outcome == ReconcileOutcome.APPLIED
        assert result.payment.status == PaymentStatus.REFUNDED.value
        order = await reload(db, Order, order.id)
        assert order.status == OrderStatus.DELIVERED.value
        assert order.payment_status == "refunded"

    async def test_chargeback_of_undelivered_order(self, db, order_service, reconciler, store):
        product = await add_product(db, store, name="Mentoria", keys=0, delivery_type="manual")
        order = await order_service.create_order(store.id, order_payload(product, 1))
        await mercado_payment(db, order)
        order_id = order.id
        await db.execute(update(Order).where(Order.id == order_id).values(status="paid"))
        await db.execute(update(Payment).where(Payment.order_id == order_id).values(status="approved"))
        await db.commit()

        result = await reconciler.reconcile("mp-1001", "charged_back", provider="mercado_pago")

        assert result.status == "refunded"
        order = await reload(db, Order, order_id)
        assert order.status == OrderStatus.REFUNDED.value

    async def test_pending_payment_cannot_be_refunded(self, db, order_service, reconciler, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 1))
        await mercado_payment(db, order)

        result = await reconciler.reconcile("mp-1001", "refunded", provider="mercado_pago")

        assert result.outcome == ReconcileOutcome.UNCHANGED
        assert result.payment.status == PaymentStatus.PENDING.value


class TestPoll:
    async def test_poll_applies_provider_status(self, db, order_service, reconciler, store, product, pushin):
        order = await order_service.create_order(store.id, order_payload(product, 1))
        payment = await order_service.process_payment(store.id, order.id)
        pushin.set_status(payment.external_id, "paid")

        result = await reconciler.poll(store.id, order.id)

        assert result.outcome == ReconcileOutcome.APPLIED
        order = await reload(db, Order, order.id)
        assert order.status == OrderStatus.DELIVERED.value

    async def test_poll_still_pending(self, order_service, reconciler, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 1))
        await order_service.process_payment(store.id, order.id)

        result = await reconciler.poll(store.id, order.id)

        assert result.outcome == ReconcileOutcome.UNCHANGED

    async def test_poll_without_payment(self, order_service, reconciler, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 1))

        result = await reconciler.poll(store.id, order.id)

        assert result.outcome == ReconcileOutcome.IGNORED

    async def test_poll_charge_unknown_to_provider(self, order_service, reconciler, store, product, pushin):
        order = await order_service.create_order(store.id, order_payload(product, 1))
        payment = await order_service.process_payment(store.id, order.id)
        del pushin.charges[payment.external_id]

        result = await reconciler.poll(store.id, order.id)

        assert result.outcome == ReconcileOutcome.IGNORED


class TestWebhook:
    async def test_pushed_status_is_verified_with_provider(self, order_service, reconciler, store, product, pushin):
        order = await order_service.create_order(store.id, order_payload(product, 1))
        payment = await order_service.process_payment(store.id, order.id)
        payload = {"id": payment.external_id, "status": "paid"}

        forged = await reconciler.handle_webhook("pushin_pay", payload)
        assert forged.outcome == ReconcileOutcome.UNCHANGED
        assert forged.payment.status == PaymentStatus.PENDING.value

        pushin.set_status(payment.external_id, "paid")
        confirmed = await reconciler.handle_webhook("pushin_pay", payload)
        assert confirmed.outcome == ReconcileOutcome.APPLIED
        assert confirmed.payment.status == PaymentStatus.APPROVED.value

    async def test_pushed_status_trusted_when_verification_disabled(
        self, monkeypatch, order_service, reconciler, store, product, pushin
    ):
        monkeypatch.setattr(settings, "WEBHOOK_VERIFY_WITH_PROVIDER", False)
        order = await order_service.create_order(store.id, order_payload(product, 1))
        payment = await order_service.process_payment(store.id, order.id)

        result = await reconciler.handle_webhook(
            "pushin_pay", {"id": payment.external_id, "status": "paid"}
        )

        assert result.outcome == ReconcileOutcome.APPLIED
        assert [r.method for r in pushin.requests] == ["POST"]

    @pytest.mark.parametrize("provider, payload", [
        ("paypal", {"id": "x", "status": "paid"}),
        ("pushin_pay", {"status": "paid"}),
        ("pushin_pay", {"id": "never-created", "status": "paid"}),
        ("mercado_pago", {"type": "payment", "data": {"id": "404"}}),
    ])
    async def test_discarded(self, reconciler, provider, payload):
        result = await reconciler.handle_webhook(provider, payload)
        assert result.outcome == ReconcileOutcome.IGNORED


class TestPendingPaymentsJob:
    async def test_polls_pending_charges(
        self, monkeypatch, db, session_factory, gateways, dispatcher, order_service, store, product, pushin
    ):
        monkeypatch.setattr(settings, "PAYMENT_POLL_MIN_AGE_MINUTES", 0)
        paid = await order_service.create_order(store.id, order_payload(product, 1))
        waiting = await order_service.create_order(store.id, order_payload(product, 1))
        paid_payment = await order_service.process_payment(store.id, paid.id)
        await order_service.process_payment(store.id, waiting.id)
        pushin.set_status(paid_payment.external_id, "paid")

        stats = await check_pending_payments(session_factory, gateways=gateways, dispatcher=dispatcher)

        assert stats == {"processed": 2, "updated": 1, "failed": 0}
        assert (await reload(db, Order, paid.id)).status == OrderStatus.DELIVERED.value
        assert (await reload(db, Order, waiting.id)).status == OrderStatus.PENDING.value

    async def test_failures_do_not_stop_the_batch(
        self, monkeypatch, session_factory, gateways, dispatcher, order_service, store, product, pushin
    ):
        monkeypatch.setattr(settings, "PAYMENT_POLL_MIN_AGE_MINUTES", 0)
        for _ in range(2):
            order = await order_service.create_order(store.id, order_payload(product, 1))
            await order_service.process_payment(store.id, order.id)
        pushin.fail_with = 503

        stats = await check_pending_payments(session_factory, gateways=gateways, dispatcher=dispatcher)

        assert stats == {"processed": 2, "updated": 0, "failed": 2}

    async def test_recent_charges_are_left_alone(self, session_factory, gateways, order_service, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 1))
        await order_service.process_payment(store.id, order.id)

        stats = await check_pending_payments(session_factory, gateways=gateways)

        assert stats["processed"] == 0
