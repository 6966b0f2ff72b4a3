"""
Payment background jobs.

Safety net for lost or delayed provider webhooks: pending charges are
polled and fed through the same reconciliation path as notifications.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import settings
from storefront.models.order import Order, Payment, PaymentStatus
from storefront.services.gateways import GatewayRegistry
from storefront.services.notification_service import EventDispatcher
from storefront.services.reconciliation_service import ReconcileOutcome, ReconciliationService

logger = logging.getLogger(__name__)


async def check_pending_payments(
    session_factory: Optional[Callable[[], AsyncSession]] = None,
    gateways: Optional[GatewayRegistry] = None,
    dispatcher: Optional[EventDispatcher] = None,
) -> dict:
    """
    Poll pending payments older than PAYMENT_POLL_MIN_AGE_MINUTES.

    Each payment is reconciled in its own session so one failure does not
    stop the batch.
    """
    if session_factory is None:
        from storefront.database import async_session_factory as session_factory
    if dispatcher is None:
        from storefront.services.notification_service import WebhookNotifier
        dispatcher = WebhookNotifier(session_factory)
    gateways = gateways or GatewayRegistry()

    logger.info("Starting pending payments check...")
    start_time = datetime.now(timezone.utc)
    cutoff_time = start_time - timedelta(minutes=settings.PAYMENT_POLL_MIN_AGE_MINUTES)

    async with session_factory() as session:
        result = await session.execute(
            select(Payment.order_id, Order.store_id)
            .join(Order, Order.id == Payment.order_id)
            .where(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at < cutoff_time,
            )
            .order_by(Payment.created_at.asc())
            .limit(settings.PAYMENT_POLL_BATCH_SIZE)
        )
        pending = result.all()

    processed_count = 0
    updated_count = 0
    failed_count = 0

    for order_id, store_id in pending:
        processed_count += 1
        try:
            async with session_factory() as session:
                service = ReconciliationService(session, gateways=gateways, dispatcher=dispatcher)
                outcome = await service.poll(store_id, order_id, source="job")
            if outcome.outcome == ReconcileOutcome.APPLIED:
                updated_count += 1
        except Exception as e:
            failed_count += 1
            logger.error(f"Pending payment check failed for order {order_id}: {e}")

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(
        f"Pending payments check completed in {duration:.2f}s: "
        f"{processed_count} checked, {updated_count} updated, {failed_count} failed"
    )
    return {
        "processed": processed_count,
        "updated": updated_count,
        "failed": failed_count,
    }
