"""
Payment Reconciliation Service

Applies provider-reported payment status to local state. Webhooks, manual
checks and the pending-payment job all funnel into reconcile(), which is
idempotent: replaying the same notification any number of times leaves the
same end state, and a sale is credited to the merchant wallet at most once.

Approval order of operations:
1. Payment pending -> approved (conditional UPDATE, losing a race is a no-op)
2. Order -> paid, wallet credited, in the same transaction
3. Delivery in its own transaction; a delivery failure is reported but never
   reverses the credit
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import settings
from storefront.core.exceptions import InsufficientStock, PaymentProviderNotConfigured
from storefront.models.order import (
    Order,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentStatus,
    can_transition_payment,
)
from storefront.services.gateways import GatewayRegistry
from storefront.services.notification_service import (
    DomainEvent,
    EventDispatcher,
    EventType,
    NullDispatcher,
    emit_safely,
)
from storefront.services.order_service import DeliveryResult, OrderService
from storefront.services.wallet_service import WalletService

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    IGNORED = "ignored"      # Unknown payment or malformed notification
    UNCHANGED = "unchanged"  # Duplicate or disallowed transition
    APPLIED = "applied"


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    payment: Optional[Payment] = None
    previous_status: Optional[str] = None
    status: Optional[str] = None
    delivery: Optional[DeliveryResult] = None
    detail: Optional[str] = None


class ReconciliationService:
    """Reconciles provider payment status with orders, wallet and delivery."""

    def __init__(
        self,
        db: AsyncSession,
        gateways: Optional[GatewayRegistry] = None,
        order_service: Optional[OrderService] = None,
        wallet_service: Optional[WalletService] = None,
        dispatcher: Optional[EventDispatcher] = None,
    ):
        self.db = db
        self.gateways = gateways or GatewayRegistry()
        self.dispatcher = dispatcher or NullDispatcher()
        self.orders = order_service or OrderService(
            db, gateways=self.gateways, dispatcher=self.dispatcher
        )
        self.wallet = wallet_service or WalletService(db)

    async def _payment_by_external_id(self, external_id: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.external_id == str(external_id))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _apply(
        self,
        payment: Payment,
        target: PaymentStatus,
        raw_status: Optional[str],
        source: str,
    ) -> Optional[bool]:
        """
        Write the transition and its order/wallet effects.

        Returns True when the order became paid and should be delivered, None
        when another writer changed the payment first. Caller commits.
        """
        now = datetime.now(timezone.utc)
        flipped = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == payment.status)
            .values(
                status=target.value,
                provider_metadata={
                    **(payment.provider_metadata or {}),
                    "raw_status": raw_status,
                    "last_source": source,
                    "reconciled_at": now.isoformat(),
                },
            )
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            return None

        order_result = await self.db.execute(
            select(Order)
            .where(Order.id == payment.order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = order_result.scalar_one()
        order_values: Dict[str, Any] = {}
        deliver = False

        if target == PaymentStatus.APPROVED:
            order_values["payment_status"] = OrderPaymentStatus.PAID.value
            if order.status == OrderStatus.PENDING.value:
                order_values.update(status=OrderStatus.PAID.value, paid_at=now)
                deliver = True
            else:
                logger.error(
                    f"Payment {payment.external_id} approved but order "
                    f"{order.order_number} is {order.status}"
                )
            await self.wallet.credit_on_sale(payment, order)

        elif target in (PaymentStatus.CANCELLED, PaymentStatus.REJECTED):
            order_values["payment_status"] = OrderPaymentStatus.FAILED.value
            if order.status == OrderStatus.PENDING.value:
                order_values.update(status=OrderStatus.CANCELLED.value, cancelled_at=now)
                await self.orders.release_items(order)

        elif target == PaymentStatus.REFUNDED:
            order_values["payment_status"] = OrderPaymentStatus.REFUNDED.value
            if order.status == OrderStatus.PAID.value:
                order_values["status"] = OrderStatus.REFUNDED.value

        if order_values:
            await self.db.execute(
                update(Order)
                .where(Order.id == order.id)
                .values(**order_values)
                .execution_options(synchronize_session=False)
            )
        return deliver

    async def _deliver(self, order_id: uuid.UUID) -> Optional[DeliveryResult]:
        """Deliver after approval. Failures are reported, never raised."""
        try:
            return await self.orders.deliver_order(order_id)
        except InsufficientStock as e:
            # Events already emitted by the order service
            logger.warning(f"Order {order_id} paid but not delivered: {e}")
        except Exception as e:
            logger.error(f"Order {order_id} paid but delivery failed: {e}")
            order = await self.db.get(Order, order_id, populate_existing=True)
            if order is not None:
                await emit_safely(
                    self.dispatcher,
                    DomainEvent(
                        type=EventType.ORDER_FULFILLMENT_DELAYED,
                        store_id=order.store_id,
                        data={"order_id": str(order_id), "error": str(e)},
                    ),
                )
        return None

    async def reconcile(
        self,
        external_id: str,
        provider_status: Optional[str],
        provider: Optional[str] = None,
        source: str = "webhook",
    ) -> ReconcileResult:
        """Apply a provider-reported status to the payment with `external_id`."""
        payment = await self._payment_by_external_id(external_id)
        if payment is None:
            logger.warning(f"Reconcile ({source}): unknown payment {external_id}, discarding")
            return ReconcileResult(ReconcileOutcome.IGNORED, detail="unknown payment")

        if provider and provider != payment.provider:
            logger.warning(
                f"Reconcile ({source}): payment {external_id} belongs to "
                f"{payment.provider}, not {provider}"
            )
            return ReconcileResult(ReconcileOutcome.IGNORED, payment=payment, detail="provider mismatch")

        target = self.gateways.normalize_status(payment.provider, provider_status)
        current = payment.status

        if target.value == current:
            logger.info(f"Reconcile ({source}): payment {external_id} already {current}")
            return ReconcileResult(ReconcileOutcome.UNCHANGED, payment, current, current)

        if not can_transition_payment(current, target):
            logger.warning(
                f"Reconcile ({source}): ignoring {current} -> {target.value} "
                f"for payment {external_id}"
            )
            return ReconcileResult(
                ReconcileOutcome.UNCHANGED, payment, current, current, detail="transition not allowed"
            )

        try:
            deliver = await self._apply(payment, target, provider_status, source)
            if deliver is None:
                await self.db.rollback()
                logger.info(f"Reconcile ({source}): payment {external_id} changed concurrently")
                payment = await self._payment_by_external_id(external_id)
                return ReconcileResult(ReconcileOutcome.UNCHANGED, payment, current, payment.status)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Reconcile ({source}): payment {external_id} {current} -> {target.value}")

        delivery = None
        if deliver:
            delivery = await self._deliver(payment.order_id)

        payment = await self._payment_by_external_id(external_id)
        return ReconcileResult(ReconcileOutcome.APPLIED, payment, current, target.value, delivery)

    async def poll(self, store_id: uuid.UUID, order_id: uuid.UUID, source: str = "poll") -> ReconcileResult:
        """Ask the provider for the order's charge status and reconcile it."""
        order = await self.orders.get_order(store_id, order_id)
        payment = order.payment
        if payment is None:
            return ReconcileResult(ReconcileOutcome.IGNORED, detail="order has no payment")

        if payment.status not in (PaymentStatus.PENDING.value, PaymentStatus.APPROVED.value):
            return ReconcileResult(
                ReconcileOutcome.UNCHANGED, payment, payment.status, payment.status
            )

        gateway = await self.gateways.for_payment(self.db, store_id, payment.provider)
        charge = await gateway.get_charge(payment.external_id)
        if charge is None:
            logger.warning(f"Provider {payment.provider} does not know charge {payment.external_id}")
            return ReconcileResult(ReconcileOutcome.IGNORED, payment, detail="charge not found at provider")

        return await self.reconcile(
            payment.external_id, charge.raw_status, provider=payment.provider, source=source
        )

    async def handle_webhook(self, provider: str, payload: Dict[str, Any]) -> ReconcileResult:
        """
        Process a provider notification.

        With WEBHOOK_VERIFY_WITH_PROVIDER the pushed status is not trusted:
        the charge is fetched from the provider first.
        """
        try:
            gateway_class = self.gateways.gateway_class(provider)
        except PaymentProviderNotConfigured:
            logger.warning(f"Webhook for unknown provider '{provider}' discarded")
            return ReconcileResult(ReconcileOutcome.IGNORED, detail="unknown provider")

        parsed = gateway_class.parse_webhook(payload or {})
        if parsed is None:
            logger.warning(f"Malformed {provider} webhook discarded: {payload}")
            return ReconcileResult(ReconcileOutcome.IGNORED, detail="malformed payload")
        external_id, raw_status = parsed

        if settings.WEBHOOK_VERIFY_WITH_PROVIDER or raw_status is None:
            payment = await self._payment_by_external_id(external_id)
            if payment is None:
                logger.warning(f"Webhook for unknown {provider} payment {external_id}, discarding")
                return ReconcileResult(ReconcileOutcome.IGNORED, detail="unknown payment")

            order = await self.db.get(Order, payment.order_id, populate_existing=True)
            gateway = await self.gateways.for_payment(self.db, order.store_id, payment.provider)
            charge = await gateway.get_charge(external_id)
            if charge is None:
                logger.warning(f"Webhook for {external_id} not confirmed by {provider}")
                return ReconcileResult(ReconcileOutcome.IGNORED, payment, detail="charge not found at provider")
            raw_status = charge.raw_status

        return await self.reconcile(external_id, raw_status, provider=provider, source="webhook")
