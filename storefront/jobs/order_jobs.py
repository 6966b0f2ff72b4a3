"""
Order background jobs.

Pending orders hold their reserved keys until they are paid or cancelled.
Orders nobody pays are cancelled here so the keys go back on sale.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import settings
from storefront.core.exceptions import InvalidOrderTransition
from storefront.models.order import Order, OrderStatus, Payment, PaymentStatus
from storefront.services.notification_service import EventDispatcher
from storefront.services.order_service import OrderService

logger = logging.getLogger(__name__)


async def expire_unpaid_orders(
    session_factory: Optional[Callable[[], AsyncSession]] = None,
    dispatcher: Optional[EventDispatcher] = None,
) -> dict:
    """
    Cancel pending orders older than ORDER_RESERVATION_TTL_MINUTES.

    Only orders that cannot be paid anymore are touched: no charge was ever
    created, or the pending charge expired at the provider before the cutoff.
    Charges still payable are left to the pending payments check.
    """
    if session_factory is None:
        from storefront.database import async_session_factory as session_factory
    if dispatcher is None:
        from storefront.services.notification_service import WebhookNotifier
        dispatcher = WebhookNotifier(session_factory)

    logger.info("Starting unpaid orders expiry...")
    start_time = datetime.now(timezone.utc)
    cutoff_time = start_time - timedelta(minutes=settings.ORDER_RESERVATION_TTL_MINUTES)

    async with session_factory() as session:
        result = await session.execute(
            select(Order.id, Order.store_id, Order.order_number)
            .outerjoin(Payment, Payment.order_id == Order.id)
            .where(
                Order.status == OrderStatus.PENDING.value,
                Order.created_at < cutoff_time,
                or_(
                    Payment.id.is_(None),
                    and_(
                        Payment.status == PaymentStatus.PENDING.value,
                        Payment.expires_at.is_not(None),
                        Payment.expires_at < cutoff_time,
                    ),
                ),
            )
            .order_by(Order.created_at.asc())
            .limit(settings.PAYMENT_POLL_BATCH_SIZE)
        )
        expired = result.all()

    processed_count = 0
    cancelled_count = 0
    failed_count = 0

    for order_id, store_id, order_number in expired:
        processed_count += 1
        try:
            async with session_factory() as session:
                await OrderService(session, dispatcher=dispatcher).cancel_order(store_id, order_id)
            cancelled_count += 1
            logger.info(f"Order {order_number}: expired due to no payment")
        except InvalidOrderTransition as e:
            # Paid or cancelled since the batch was selected
            logger.info(f"Order {order_number}: not expired, {e}")
        except Exception as e:
            failed_count += 1
            logger.error(f"Error expiring order {order_number}: {e}")

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(
        f"Unpaid orders expiry completed in {duration:.2f}s: "
        f"{processed_count} checked, {cancelled_count} cancelled, {failed_count} failed"
    )
    return {
        "processed": processed_count,
        "cancelled": cancelled_count,
        "failed": failed_count,
    }
