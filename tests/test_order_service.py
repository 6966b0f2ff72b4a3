import json
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, or_, select, update

from storefront.config import settings
from storefront.core.exceptions import (
    CouponInvalid,
    CustomerBlocked,
    CustomerNotFound,
    GatewayUnavailable,
    InsufficientStock,
    InvalidOrderTransition,
    OrderNotFound,
    SplitConfigInvalid,
)
from storefront.models import (
    Coupon,
    Customer,
    DeliveryType,
    InventoryType,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    ProductKey,
    SplitConfig,
    Store,
    Wallet,
)
from storefront.services.gateways import SplitCalculator
from storefront.services.order_service import OrderService

from factories import RecordingDispatcher, add_product, order_payload, paid_order


async def count(db, model):
    return (await db.execute(select(func.count()).select_from(model))).scalar()


class TestCreateOrder:
    async def test_prices_reserves_and_counts_coupon(self, db, order_service, store, product, coupon, dispatcher):
        order = await order_service.create_order(
            store.id,
            order_payload(product, 2, coupon_code="PROMO10", customer_email="Buyer@LojaGamer.com.br"),
            metadata={"ip": "203.0.113.9"},
        )

        assert order.order_number.startswith("ORD-")
        assert order.status == OrderStatus.PENDING.value
        assert order.payment_status == "pending"
        assert (order.subtotal, order.discount, order.total) == (
            Decimal("20.00"), Decimal("2.00"), Decimal("18.00")
        )
        assert order.customer_email == "buyer@lojagamer.com.br"
        assert order.order_metadata == {"ip": "203.0.113.9"}
        assert len(order.items) == 1
        assert order.items[0].unit_price == Decimal("10.00")

        assert await order_service.inventory.available_count(product.id) == 3
        await db.refresh(coupon)
        assert coupon.usage_count == 1
        assert dispatcher.types() == ["order.created"]

    async def test_insufficient_stock_leaves_nothing_behind(self, db, order_service, store, product, coupon, dispatcher):
        store_id, product_id, coupon_id = store.id, product.id, coupon.id

        with pytest.raises(InsufficientStock):
            await order_service.create_order(
                store_id, order_payload(product, 6, coupon_code="PROMO10")
            )

        assert await count(db, Order) == 0
        assert await count(db, Customer) == 0
        assert await order_service.inventory.available_count(product_id) == 5
        usage = (await db.execute(select(Coupon.usage_count).where(Coupon.id == coupon_id))).scalar()
        assert usage == 0
        assert dispatcher.events == []

    async def test_returning_customer_matched_by_email(self, order_service, store, product):
        first = await order_service.create_order(store.id, order_payload(product, 1))
        second = await order_service.create_order(
            store.id, order_payload(product, 1, customer_email="BUYER@lojagamer.com.br")
        )
        assert first.customer_id == second.customer_id

    async def test_existing_customer_by_id(self, db, order_service, store, product):
        customer = Customer(store_id=store.id, email="vip@lojagamer.com.br", name="VIP")
        db.add(customer)
        await db.commit()

        order = await order_service.create_order(
            store.id, order_payload(product, 1, customer_id=customer.id)
        )
        assert order.customer_id == customer.id

    async def test_unknown_customer_id(self, order_service, store, product):
        with pytest.raises(CustomerNotFound):
            await order_service.create_order(
                store.id, order_payload(product, 1, customer_id=uuid.uuid4())
            )

    async def test_blocked_customer(self, db, order_service, store, product):
        db.add(Customer(store_id=store.id, email="buyer@lojagamer.com.br", name="Banned", is_blocked=True))
        await db.commit()
        store_id = store.id

        with pytest.raises(CustomerBlocked):
            await order_service.create_order(store_id, order_payload(product, 1))
        assert await count(db, Order) == 0

    async def test_coupon_usage_limit(self, db, order_service, store, product):
        db.add(Coupon(store_id=store.id, code="ONCE", discount_type="fixed", value=Decimal("1.00"), usage_limit=1))
        await db.commit()
        store_id = store.id

        await order_service.create_order(store_id, order_payload(product, 1, coupon_code="ONCE"))
        with pytest.raises(CouponInvalid):
            await order_service.create_order(store_id, order_payload(product, 1, coupon_code="ONCE"))

    async def test_list_and_get(self, order_service, store, product):
        first = await order_service.create_order(store.id, order_payload(product, 1))
        await order_service.create_order(store.id, order_payload(product, 1))

        orders, total = await order_service.list_orders(store.id)
        assert total == 2
        assert len(orders) == 2

        found = await order_service.get_order(store.id, first.id)
        assert found.id == first.id

    async def test_get_order_of_another_store(self, db, order_service, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 1))
        other = Store(name="Outra", slug="outra")
        db.add(other)
        await db.commit()

        with pytest.raises(OrderNotFound):
            await order_service.get_order(other.id, order.id)

    async def test_stale_session_cannot_oversell(self, db, session_factory, gateways, order_service, store, product):
        store_id, product_id = store.id, product.id
        payload = order_payload(product, 3)

        async with session_factory() as other_db:
            other = OrderService(
                other_db, gateways=gateways, splitter=SplitCalculator(), dispatcher=RecordingDispatcher()
            )
            # Both sessions have seen 5 free keys
            assert await other.inventory.available_count(product_id) == 5
            assert await order_service.inventory.available_count(product_id) == 5

            await order_service.create_order(store_id, payload)

            with pytest.raises(InsufficientStock):
                await other.create_order(store_id, payload)

        taken = (
            await db.execute(
                select(func.count(ProductKey.id)).where(
                    ProductKey.product_id == product_id,
                    or_(ProductKey.used.is_(True), ProductKey.reserved_item_id.is_not(None)),
                )
            )
        ).scalar()
        assert taken == 3
        assert await count(db, Order) == 1


class TestProcessPayment:
    async def test_creates_one_charge(self, order_service, store, product, pushin):
        order = await order_service.create_order(store.id, order_payload(product, 2))

        payment = await order_service.process_payment(store.id, order.id)
        again = await order_service.process_payment(store.id, order.id)

        assert again.id == payment.id
        assert len(pushin.created) == 1
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.provider == "pushin_pay"
        assert payment.amount == Decimal("20.00")
        assert payment.qr_code.startswith("000201")

        body = json.loads(pushin.created[0].content)
        assert body["value"] == 2000
        assert body["webhook_url"] == f"{settings.APP_URL}/api/v1/webhooks/pushin_pay"
        assert pushin.created[0].headers["Authorization"] == "Bearer store-pushin-token"

        order = await order_service.get_order(store.id, order.id)
        assert order.payment_id == payment.external_id
        assert order.order_metadata["payment_provider"] == "pushin_pay"

    async def test_split_sent_and_stored(self, db, order_service, store, product, pushin):
        db.add(SplitConfig(
            store_id=store.id,
            rules=[{"percentage": "10", "accounts": {"pushin_pay": "partner-acc"}}],
        ))
        await db.commit()
        order = await order_service.create_order(store.id, order_payload(product, 2))

        payment = await order_service.process_payment(store.id, order.id)

        body = json.loads(pushin.created[0].content)
        assert body["split_rules"] == [{"value": 200, "account_id": "partner-acc"}]
        assert payment.split_data == [
            {"account_id": "partner-acc", "percentage": "10", "amount": "2.00"}
        ]

    async def test_invalid_split_never_reaches_provider(self, db, order_service, store, product, pushin):
        db.add(SplitConfig(
            store_id=store.id,
            rules=[{"percentage": "60", "accounts": {"pushin_pay": "greedy"}}],
        ))
        await db.commit()
        order = await order_service.create_order(store.id, order_payload(product, 2))
        store_id, order_id = store.id, order.id

        with pytest.raises(SplitConfigInvalid):
            await order_service.process_payment(store_id, order_id)

        assert pushin.requests == []
        assert await count(db, Payment) == 0
        order = await order_service.get_order(store_id, order_id)
        assert order.status == OrderStatus.PENDING.value

    async def test_provider_outage_can_be_retried(self, db, order_service, store, product, pushin):
        order = await order_service.create_order(store.id, order_payload(product, 2))
        store_id, order_id = store.id, order.id
        pushin.fail_with = "connect"

        with pytest.raises(GatewayUnavailable):
            await order_service.process_payment(store_id, order_id)
        assert await count(db, Payment) == 0

        pushin.fail_with = None
        payment = await order_service.process_payment(store_id, order_id)
        assert payment.status == PaymentStatus.PENDING.value
        assert await count(db, Payment) == 1

    async def test_charge_settled_on_creation(self, order_service, store, product, pushin, dispatcher):
        pushin.initial_status = "paid"
        order = await order_service.create_order(store.id, order_payload(product, 1))

        payment = await order_service.process_payment(store.id, order.id)

        assert payment.status == PaymentStatus.APPROVED.value
        order = await order_service.get_order(store.id, order.id)
        assert order.status == OrderStatus.DELIVERED.value
        assert "order.approved" in dispatcher.types()

    async def test_cancelled_order_cannot_be_charged(self, order_service, store, product, pushin):
        order = await order_service.create_order(store.id, order_payload(product, 1))
        await order_service.cancel_order(store.id, order.id)
        store_id, order_id = store.id, order.id

        with pytest.raises(InvalidOrderTransition):
            await order_service.process_payment(store_id, order_id)
        assert pushin.requests == []


class TestDeliverOrder:
    async def test_delivers_reserved_keys_once(self, db, order_service, reconciler, store, product, pushin, dispatcher):
        order, payment, result = await paid_order(order_service, reconciler, pushin, store, product, 2)

        delivered = result.delivery.order
        assert delivered.status == OrderStatus.DELIVERED.value
        assert delivered.delivered_at is not None
        assert delivered.items[0].delivered_keys == ["STEAM-KEY-0001", "STEAM-KEY-0002"]

        again = await order_service.deliver_order(order.id)
        assert again.already_delivered
        assert again.order.items[0].delivered_keys == ["STEAM-KEY-0001", "STEAM-KEY-0002"]
        assert dispatcher.types().count("order.approved") == 1

        await db.refresh(product)
        assert product.sales_count == 2
        customer = await db.get(Customer, order.customer_id, populate_existing=True)
        assert customer.total_orders == 1
        assert customer.total_spent == Decimal("20.00")

    async def test_second_session_sees_delivery(self, session_factory, order_service, reconciler, store, product, pushin):
        order, _, _ = await paid_order(order_service, reconciler, pushin, store, product, 1)

        async with session_factory() as other_db:
            result = await OrderService(other_db).deliver_order(order.id)

        assert result.already_delivered

    async def test_pending_order_cannot_be_delivered(self, order_service, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 1))
        order_id = order.id

        with pytest.raises(InvalidOrderTransition):
            await order_service.deliver_order(order_id)

    async def test_last_key_reports_out_of_stock(self, db, order_service, reconciler, store, pushin, dispatcher):
        product = await add_product(db, store, name="Last Key", keys=2)

        _, _, result = await paid_order(order_service, reconciler, pushin, store, product, 2)

        assert result.delivery.exhausted_products == [product.id]
        assert dispatcher.types()[-2:] == ["order.approved", "product.out_of_stock"]

    async def test_missing_stock_keeps_order_paid(self, db, order_service, reconciler, store, pushin, dispatcher):
        product = await add_product(db, store, name="Gone Key", keys=2)
        order = await order_service.create_order(store.id, order_payload(product, 2))
        order_id, product_id = order.id, product.id
        # Keys handed out elsewhere after the reservation was made
        await db.execute(
            update(ProductKey)
            .where(ProductKey.product_id == product_id)
            .values(used=True, reserved_item_id=None)
        )
        await db.execute(update(Order).where(Order.id == order_id).values(status="paid"))
        await db.commit()

        with pytest.raises(InsufficientStock):
            await order_service.deliver_order(order_id)

        status = (await db.execute(select(Order.status).where(Order.id == order_id))).scalar()
        assert status == OrderStatus.PAID.value
        assert dispatcher.types()[-2:] == ["product.out_of_stock", "order.fulfillment_delayed"]
        assert dispatcher.events[-1].data["order_id"] == str(order_id)

    async def test_text_product_delivers_shared_content(self, db, order_service, reconciler, store, pushin):
        product = await add_product(
            db, store, name="Ebook", keys=0,
            inventory_type=InventoryType.TEXT.value,
            delivery_content="https://cdn.lojagamer.com.br/ebook.pdf",
        )

        _, _, result = await paid_order(order_service, reconciler, pushin, store, product, 1)

        assert result.delivery.order.items[0].product_key == "https://cdn.lojagamer.com.br/ebook.pdf"

    async def test_manual_product_delivered_without_content(self, db, order_service, reconciler, store, pushin):
        product = await add_product(db, store, name="Mentoria", keys=0, delivery_type=DeliveryType.MANUAL.value)

        _, _, result = await paid_order(order_service, reconciler, pushin, store, product, 1)

        assert result.delivery.order.status == OrderStatus.DELIVERED.value
        assert result.delivery.order.items[0].product_key is None


class TestCancelOrder:
    async def test_releases_keys_and_payment(self, db, order_service, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 2))
        payment = await order_service.process_payment(store.id, order.id)

        cancelled = await order_service.cancel_order(store.id, order.id)

        assert cancelled.status == OrderStatus.CANCELLED.value
        assert cancelled.payment_status == "failed"
        assert cancelled.cancelled_at is not None
        assert cancelled.payment.status == PaymentStatus.CANCELLED.value
        assert cancelled.payment.id == payment.id
        assert await order_service.inventory.available_count(product.id) == 5

    async def test_delivered_order_cannot_be_cancelled(self, order_service, reconciler, store, product, pushin):
        order, _, _ = await paid_order(order_service, reconciler, pushin, store, product, 1)
        store_id, order_id = store.id, order.id

        with pytest.raises(InvalidOrderTransition):
            await order_service.cancel_order(store_id, order_id)


async def wallet_balance(db, store_id):
    result = await db.execute(
        select(Wallet.available_balance)
        .where(Wallet.store_id == store_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


class TestRefundOrder:
    async def test_delivered_order_payment_refunded(self, db, order_service, reconciler, store, product, pushin):
        order, payment, _ = await paid_order(order_service, reconciler, pushin, store, product, 2)
        store_id, order_id, product_id = store.id, order.id, product.id
        credited = await wallet_balance(db, store_id)

        refunded = await order_service.refund_order(store_id, order_id)

        assert refunded.status == OrderStatus.DELIVERED.value
        assert refunded.payment_status == "refunded"
        assert refunded.payment.status == PaymentStatus.REFUNDED.value
        assert refunded.payment.id == payment.id
        # Wallet and delivered keys are left as they were
        assert await wallet_balance(db, store_id) == credited
        assert await order_service.inventory.available_count(product_id) == 3

    async def test_paid_undelivered_order_becomes_refunded(self, db, order_service, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 1))
        store_id, order_id = store.id, order.id
        await db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(status=OrderStatus.PAID.value, payment_status="paid")
        )
        await db.commit()

        refunded = await order_service.refund_order(store_id, order_id)

        assert refunded.status == OrderStatus.REFUNDED.value
        assert refunded.payment_status == "refunded"

    async def test_unpaid_order_cannot_be_refunded(self, order_service, store, product):
        order = await order_service.create_order(store.id, order_payload(product, 1))
        store_id, order_id = store.id, order.id

        with pytest.raises(InvalidOrderTransition):
            await order_service.refund_order(store_id, order_id)

        assert (await order_service.get_order(store_id, order_id)).payment_status == "pending"

    async def test_refund_twice(self, order_service, reconciler, store, product, pushin):
        order, _, _ = await paid_order(order_service, reconciler, pushin, store, product, 1)
        store_id, order_id = store.id, order.id
        await order_service.refund_order(store_id, order_id)

        with pytest.raises(InvalidOrderTransition):
            await order_service.refund_order(store_id, order_id)

    async def test_replayed_approval_after_refund_is_ignored(
        self, db, order_service, reconciler, store, product, pushin
    ):
        order, payment, _ = await paid_order(order_service, reconciler, pushin, store, product, 1)
        store_id, order_id, external_id = store.id, order.id, payment.external_id
        await order_service.refund_order(store_id, order_id)
        credited = await wallet_balance(db, store_id)

        result = await reconciler.reconcile(external_id, "paid", provider="pushin_pay")

        assert result.outcome.value == "unchanged"
        assert result.payment.status == PaymentStatus.REFUNDED.value
        assert await wallet_balance(db, store_id) == credited
