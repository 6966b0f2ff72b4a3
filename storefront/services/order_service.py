"""
Order Orchestrator

Drives an order through its lifecycle:

    pending --> paid --> delivered
       |          |
       |          +--> refunded
       +----------+--> cancelled

Order creation, charge creation and delivery are separate short
transactions. The provider HTTP call never runs while this service holds
row locks; the charge is persisted in its own transaction afterwards.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import settings
from storefront.core.exceptions import (
    ChargeAmountInvalid,
    CouponInvalid,
    CustomerBlocked,
    CustomerNotFound,
    InsufficientStock,
    InvalidOrderTransition,
    NotFoundError,
    OrderNotFound,
)
from storefront.core.money import ZERO
from storefront.models.coupon import Coupon
from storefront.models.customer import Customer
from storefront.models.order import (
    Order,
    OrderItem,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentStatus,
    can_transition_order,
)
from storefront.models.payment_method import SplitConfig
from storefront.models.product import DeliveryType, InventoryType, Product
from storefront.models.store import Store
from storefront.schemas.order import OrderCreate, QuoteRequest
from storefront.services.gateways import ChargeRequest, GatewayRegistry, SplitCalculator
from storefront.services.inventory_allocator import InventoryAllocator
from storefront.services.notification_service import (
    DomainEvent,
    EventDispatcher,
    EventType,
    NullDispatcher,
    emit_safely,
)
from storefront.services.pricing_engine import LineRequest, PriceQuote, PricingEngine

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    order: Order
    already_delivered: bool = False
    exhausted_products: List[uuid.UUID] = field(default_factory=list)


class OrderService:
    """Creates, charges, delivers, cancels and refunds orders."""

    def __init__(
        self,
        db: AsyncSession,
        gateways: Optional[GatewayRegistry] = None,
        splitter: Optional[SplitCalculator] = None,
        dispatcher: Optional[EventDispatcher] = None,
    ):
        self.db = db
        self.gateways = gateways or GatewayRegistry()
        self.splitter = splitter or SplitCalculator.from_settings()
        self.dispatcher = dispatcher or NullDispatcher()
        self.pricing = PricingEngine(db)
        self.inventory = InventoryAllocator(db)

    # ==================== ORDER NUMBER GENERATION ====================

    def generate_order_number(self) -> str:
        """Generate unique order number: ORD-YYYYMMDD-XXXXXXXX"""
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        return f"ORD-{today}-{uuid.uuid4().hex[:8].upper()}"

    # ==================== READ ====================

    async def _load(
        self,
        order_id: uuid.UUID,
        store_id: Optional[uuid.UUID] = None,
        lock: bool = False,
    ) -> Order:
        stmt = select(Order).where(Order.id == order_id)
        if store_id is not None:
            stmt = stmt.where(Order.store_id == store_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def get_order(self, store_id: uuid.UUID, order_id: uuid.UUID) -> Order:
        return await self._load(order_id, store_id)

    async def list_orders(
        self,
        store_id: uuid.UUID,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Order], int]:
        """Get paginated orders of a store, newest first."""
        filters = [Order.store_id == store_id]
        if status:
            filters.append(Order.status == status)

        total = (
            await self.db.execute(select(func.count(Order.id)).where(*filters))
        ).scalar() or 0

        result = await self.db.execute(
            select(Order)
            .where(*filters)
            .order_by(Order.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def _get_payment(self, order_id: uuid.UUID) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ==================== QUOTE ====================

    async def quote(self, store_id: uuid.UUID, data: QuoteRequest) -> PriceQuote:
        """Price a cart with its coupon without reserving keys or using the coupon."""
        store = await self.db.get(Store, store_id)
        if not store or not store.is_active or store.is_blocked:
            raise NotFoundError(f"Store {store_id} not found")

        return await self.pricing.quote(
            store_id,
            [LineRequest(product_id=i.product_id, quantity=i.quantity) for i in data.items],
            coupon_code=data.coupon_code,
        )

    # ==================== CREATE ====================

    async def _resolve_customer(self, store_id: uuid.UUID, data: OrderCreate) -> Customer:
        email = str(data.customer_email).strip().lower()

        if data.customer_id:
            result = await self.db.execute(
                select(Customer).where(
                    Customer.id == data.customer_id,
                    Customer.store_id == store_id,
                )
            )
            customer = result.scalar_one_or_none()
            if not customer:
                raise CustomerNotFound(f"Customer {data.customer_id} not found")
        else:
            result = await self.db.execute(
                select(Customer).where(
                    Customer.store_id == store_id,
                    func.lower(Customer.email) == email,
                )
            )
            customer = result.scalar_one_or_none()
            if not customer:
                customer = Customer(
                    store_id=store_id,
                    email=email,
                    name=data.customer_name,
                    phone=data.customer_phone,
                )
                self.db.add(customer)
                await self.db.flush()
                logger.info(f"Created customer {customer.id} for store {store_id}")

        if customer.is_blocked:
            raise CustomerBlocked(f"Customer {customer.email} is blocked in this store")
        return customer

    async def _use_coupon(self, coupon_id: uuid.UUID) -> None:
        result = await self.db.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon_id,
                or_(
                    Coupon.usage_limit.is_(None),
                    Coupon.usage_count < Coupon.usage_limit,
                ),
            )
            .values(usage_count=Coupon.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise CouponInvalid("Coupon usage limit reached")

    async def create_order(
        self,
        store_id: uuid.UUID,
        data: OrderCreate,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Order:
        """
        Create a pending order in one transaction.

        Prices are snapshotted, keys for instant products are reserved and the
        coupon use is counted. Any failure leaves nothing behind.
        """
        try:
            store = await self.db.get(Store, store_id)
            if not store or not store.is_active or store.is_blocked:
                raise NotFoundError(f"Store {store_id} not found")

            quote = await self.pricing.quote(
                store_id,
                [LineRequest(product_id=i.product_id, quantity=i.quantity) for i in data.items],
                coupon_code=data.coupon_code,
            )
            customer = await self._resolve_customer(store_id, data)

            order = Order(
                order_number=self.generate_order_number(),
                store_id=store_id,
                customer_id=customer.id,
                customer_email=customer.email,
                customer_name=data.customer_name,
                customer_phone=data.customer_phone,
                status=OrderStatus.PENDING.value,
                payment_status=OrderPaymentStatus.PENDING.value,
                subtotal=quote.subtotal,
                discount=quote.discount,
                total=quote.total,
                coupon_id=quote.coupon_id,
                affiliate_code=data.affiliate_code,
                order_metadata=dict(metadata or {}),
            )
            self.db.add(order)
            await self.db.flush()

            for line in quote.lines:
                item = OrderItem(
                    order_id=order.id,
                    product_id=line.product.id,
                    product_name=line.product.name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    total=line.total,
                )
                self.db.add(item)
                await self.db.flush()

                if line.product.uses_keys:
                    await self.inventory.reserve(line.product.id, line.quantity, item.id)

            if quote.coupon_id:
                await self._use_coupon(quote.coupon_id)

            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.info(f"Order creation for store {store_id} rolled back: {e}")
            raise

        order = await self._load(order.id)
        logger.info(f"Order {order.order_number} created for store {store_id}, total {order.total}")

        await emit_safely(
            self.dispatcher,
            DomainEvent(
                type=EventType.ORDER_CREATED,
                store_id=store_id,
                data={
                    "order_id": str(order.id),
                    "order_number": order.order_number,
                    "total": str(order.total),
                    "customer_email": order.customer_email,
                },
            ),
        )
        return order

    # ==================== PAYMENT ====================

    def webhook_url(self, provider: str) -> str:
        return f"{settings.APP_URL.rstrip('/')}/api/v1/webhooks/{provider}"

    async def process_payment(self, store_id: uuid.UUID, order_id: uuid.UUID) -> Payment:
        """
        Create the PIX charge for a pending order.

        Safe to retry: an existing pending or approved payment is returned
        instead of creating a second charge.
        """
        # Validate and prepare under the order lock
        try:
            order = await self._load(order_id, store_id, lock=True)

            existing = await self._get_payment(order.id)
            if existing is not None and existing.status in (
                PaymentStatus.PENDING.value,
                PaymentStatus.APPROVED.value,
            ):
                await self.db.commit()
                logger.info(f"Order {order.order_number} already has payment {existing.external_id}")
                return existing

            if order.status != OrderStatus.PENDING.value:
                raise InvalidOrderTransition(
                    f"Order {order.order_number} is {order.status}, cannot be charged"
                )
            if order.total <= ZERO:
                raise ChargeAmountInvalid(f"Order total {order.total} cannot be charged")

            gateway = await self.gateways.select_for_store(self.db, store_id)

            split_result = await self.db.execute(
                select(SplitConfig).where(SplitConfig.store_id == store_id)
            )
            shares = self.splitter.calculate_for_config(
                order.total, split_result.scalar_one_or_none(), gateway.provider
            )

            request = ChargeRequest(
                order_id=order.id,
                amount=order.total,
                description=f"Pedido {order.order_number}",
                payer_email=order.customer_email,
                payer_name=order.customer_name,
                webhook_url=self.webhook_url(gateway.provider),
                splits=shares,
            )
            order_number = order.order_number
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        # No transaction is open during the provider call
        charge = await gateway.create_charge(request)

        try:
            payment = Payment(
                order_id=order_id,
                provider=gateway.provider,
                external_id=charge.external_id,
                status=PaymentStatus.PENDING.value,
                amount=request.amount,
                qr_code=charge.qr_code,
                qr_code_base64=charge.qr_code_base64,
                expires_at=charge.expires_at,
                split_data=[share.to_dict() for share in shares],
                provider_metadata={
                    "raw_status": charge.raw_status,
                    "sandbox": gateway.sandbox,
                },
            )
            self.db.add(payment)
            await self.db.flush()

            order = await self._load(order_id)
            await self.db.execute(
                update(Order)
                .where(Order.id == order_id)
                .values({
                    Order.payment_id: charge.external_id,
                    Order.order_metadata: {**(order.order_metadata or {}), "payment_provider": gateway.provider},
                })
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except IntegrityError:
            # Concurrent request stored its charge first
            await self.db.rollback()
            existing = await self._get_payment(order_id)
            if existing is None:
                raise
            logger.warning(
                f"Order {order_number} charged concurrently, discarding charge {charge.external_id}"
            )
            return existing
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Payment {charge.external_id} ({gateway.provider}) stored for order {order_number}"
        )

        if charge.status != PaymentStatus.PENDING:
            # Provider already settled the charge
            from storefront.services.reconciliation_service import ReconciliationService

            reconciler = ReconciliationService(
                self.db, gateways=self.gateways, order_service=self, dispatcher=self.dispatcher
            )
            await reconciler.reconcile(
                charge.external_id,
                charge.raw_status,
                provider=gateway.provider,
                source="create",
            )

        return await self._get_payment(order_id)

    # ==================== DELIVERY ====================

    async def _fill_item(self, item: OrderItem, product: Product) -> Optional[uuid.UUID]:
        """Write the item's deliverable. Returns product id if its last key went out."""
        if product.delivery_type != DeliveryType.INSTANT.value:
            return None

        if product.inventory_type == InventoryType.LINES.value:
            keys = await self.inventory.consume(product.id, item.id, item.quantity)
            item.product_key = "\n".join(keys)
            if await self.inventory.is_exhausted(product.id):
                return product.id
        else:
            item.product_key = product.delivery_content
        return None

    async def deliver_order(
        self,
        order_id: uuid.UUID,
        store_id: Optional[uuid.UUID] = None,
    ) -> DeliveryResult:
        """
        Hand out the digital goods of a paid order, exactly once.

        The paid -> delivered flip is a conditional UPDATE, so concurrent
        callers deliver once and the others see already_delivered.
        """
        order = await self._load(order_id, store_id)
        if order.status == OrderStatus.DELIVERED.value:
            return DeliveryResult(order=order, already_delivered=True)
        if not can_transition_order(order.status, OrderStatus.DELIVERED):
            raise InvalidOrderTransition(
                f"Order {order.order_number} is {order.status}, cannot be delivered"
            )

        # Rollback expires loaded rows; keep what the error path needs
        order_number, order_store_id = order.order_number, order.store_id
        now = datetime.now(timezone.utc)
        exhausted: List[uuid.UUID] = []
        try:
            claimed = await self.db.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == OrderStatus.PAID.value)
                .values(status=OrderStatus.DELIVERED.value, delivered_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                await self.db.rollback()
                order = await self._load(order_id)
                if order.status == OrderStatus.DELIVERED.value:
                    return DeliveryResult(order=order, already_delivered=True)
                raise InvalidOrderTransition(
                    f"Order {order.order_number} is {order.status}, cannot be delivered"
                )

            for item in order.items:
                product = await self.db.get(Product, item.product_id)
                exhausted_id = await self._fill_item(item, product)
                if exhausted_id and exhausted_id not in exhausted:
                    exhausted.append(exhausted_id)

                await self.db.execute(
                    update(Product)
                    .where(Product.id == item.product_id)
                    .values(sales_count=Product.sales_count + item.quantity)
                    .execution_options(synchronize_session=False)
                )

            await self.db.execute(
                update(Customer)
                .where(Customer.id == order.customer_id)
                .values(
                    total_orders=Customer.total_orders + 1,
                    total_spent=Customer.total_spent + order.total,
                    last_order_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except InsufficientStock as e:
            await self.db.rollback()
            logger.warning(f"Delivery of order {order_number} delayed: {e}")
            await emit_safely(
                self.dispatcher,
                DomainEvent(
                    type=EventType.PRODUCT_OUT_OF_STOCK,
                    store_id=order_store_id,
                    data={"product_id": str(e.product_id), "order_id": str(order_id)},
                ),
            )
            await emit_safely(
                self.dispatcher,
                DomainEvent(
                    type=EventType.ORDER_FULFILLMENT_DELAYED,
                    store_id=order_store_id,
                    data={
                        "order_id": str(order_id),
                        "order_number": order_number,
                        "product_id": str(e.product_id),
                        "requested": e.requested,
                        "available": e.available,
                    },
                ),
            )
            raise
        except Exception:
            await self.db.rollback()
            raise

        order = await self._load(order.id)
        logger.info(f"Order {order.order_number} delivered")

        await emit_safely(
            self.dispatcher,
            DomainEvent(
                type=EventType.ORDER_APPROVED,
                store_id=order.store_id,
                data={
                    "order_id": str(order.id),
                    "order_number": order.order_number,
                    "total": str(order.total),
                    "customer_email": order.customer_email,
                },
            ),
        )
        for product_id in exhausted:
            logger.warning(f"Product {product_id} is out of stock")
            await emit_safely(
                self.dispatcher,
                DomainEvent(
                    type=EventType.PRODUCT_OUT_OF_STOCK,
                    store_id=order.store_id,
                    data={"product_id": str(product_id)},
                ),
            )

        return DeliveryResult(order=order, exhausted_products=exhausted)

    # ==================== CANCEL ====================

    async def release_items(self, order: Order) -> None:
        """Return the reserved keys of every item. Caller commits."""
        for item in order.items:
            await self.inventory.release(item.id)

    async def cancel_order(self, store_id: uuid.UUID, order_id: uuid.UUID) -> Order:
        """Cancel a pending or paid order and free its reserved keys."""
        try:
            order = await self._load(order_id, store_id, lock=True)
            if not can_transition_order(order.status, OrderStatus.CANCELLED):
                raise InvalidOrderTransition(
                    f"Order {order.order_number} is {order.status}, cannot be cancelled"
                )

            values: Dict[str, Any] = {
                "status": OrderStatus.CANCELLED.value,
                "cancelled_at": datetime.now(timezone.utc),
            }
            if order.payment_status == OrderPaymentStatus.PENDING.value:
                values["payment_status"] = OrderPaymentStatus.FAILED.value

            result = await self.db.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == order.status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidOrderTransition(f"Order {order.order_number} changed concurrently")

            # A late approval of an abandoned charge must not revive the order
            await self.db.execute(
                update(Payment)
                .where(
                    Payment.order_id == order.id,
                    Payment.status == PaymentStatus.PENDING.value,
                )
                .values(status=PaymentStatus.CANCELLED.value)
                .execution_options(synchronize_session=False)
            )

            await self.release_items(order)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Order {order.order_number} cancelled")
        return await self._load(order.id)

    # ==================== REFUND ====================

    async def refund_order(self, store_id: uuid.UUID, order_id: uuid.UUID) -> Order:
        """
        Mark the payment of a paid order as refunded.

        A paid order becomes refunded; a delivered order keeps its status since
        the keys are already out. Delivered keys stay used and the merchant
        wallet is not debited.
        """
        try:
            order = await self._load(order_id, store_id, lock=True)
            if order.payment_status != OrderPaymentStatus.PAID.value:
                raise InvalidOrderTransition(
                    f"Order {order.order_number} payment is {order.payment_status}, cannot be refunded"
                )

            values: Dict[str, Any] = {"payment_status": OrderPaymentStatus.REFUNDED.value}
            if can_transition_order(order.status, OrderStatus.REFUNDED):
                values["status"] = OrderStatus.REFUNDED.value

            result = await self.db.execute(
                update(Order)
                .where(
                    Order.id == order.id,
                    Order.status == order.status,
                    Order.payment_status == OrderPaymentStatus.PAID.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidOrderTransition(f"Order {order.order_number} changed concurrently")

            await self.db.execute(
                update(Payment)
                .where(
                    Payment.order_id == order.id,
                    Payment.status == PaymentStatus.APPROVED.value,
                )
                .values(status=PaymentStatus.REFUNDED.value)
                .execution_options(synchronize_session=False)
            )
            order_number = order.order_number
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Order {order_number} refunded")
        return await self._load(order_id)
