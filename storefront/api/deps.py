from typing import Annotated, Optional
import hmac
import uuid
import logging

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import settings
from storefront.database import async_session_factory, get_db
from storefront.services.gateways import GatewayRegistry, SplitCalculator
from storefront.services.notification_service import EventDispatcher, WebhookNotifier
from storefront.services.order_service import OrderService
from storefront.services.reconciliation_service import ReconciliationService
from storefront.services.wallet_service import WalletService


logger = logging.getLogger(__name__)


async def get_store_id(
    x_store_id: Annotated[Optional[str], Header(alias="X-Store-ID")] = None,
) -> uuid.UUID:
    """
    Tenant of the request.

    Domain/subdomain resolution happens in front of this service, which
    passes the resolved store id along.
    """
    if not x_store_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Store-ID header is required"
        )
    try:
        return uuid.UUID(x_store_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Store-ID must be a UUID"
        )


async def require_admin(
    x_admin_token: Annotated[Optional[str], Header(alias="X-Admin-Token")] = None,
) -> None:
    """Guard for payout review endpoints."""
    if not settings.ADMIN_API_TOKEN:
        logger.warning("Admin endpoint called but ADMIN_API_TOKEN is not configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access is not configured"
        )
    if not x_admin_token or not hmac.compare_digest(x_admin_token, settings.ADMIN_API_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin token"
        )


# ==================== SERVICE FACTORIES ====================
# Overridden in tests to inject fake providers and a recording dispatcher

def get_gateway_registry() -> GatewayRegistry:
    return GatewayRegistry()


def get_split_calculator() -> SplitCalculator:
    return SplitCalculator.from_settings()


def get_dispatcher() -> EventDispatcher:
    return WebhookNotifier(async_session_factory)


DB = Annotated[AsyncSession, Depends(get_db)]
StoreId = Annotated[uuid.UUID, Depends(get_store_id)]
Gateways = Annotated[GatewayRegistry, Depends(get_gateway_registry)]
Splitter = Annotated[SplitCalculator, Depends(get_split_calculator)]
Dispatcher = Annotated[EventDispatcher, Depends(get_dispatcher)]


def get_order_service(
    db: DB,
    gateways: Gateways,
    splitter: Splitter,
    dispatcher: Dispatcher,
) -> OrderService:
    return OrderService(db, gateways=gateways, splitter=splitter, dispatcher=dispatcher)


def get_reconciliation_service(
    db: DB,
    gateways: Gateways,
    orders: Annotated[OrderService, Depends(get_order_service)],
    dispatcher: Dispatcher,
) -> ReconciliationService:
    return ReconciliationService(db, gateways=gateways, order_service=orders, dispatcher=dispatcher)


def get_wallet_service(db: DB) -> WalletService:
    return WalletService(db)


Orders = Annotated[OrderService, Depends(get_order_service)]
Reconciler = Annotated[ReconciliationService, Depends(get_reconciliation_service)]
Wallets = Annotated[WalletService, Depends(get_wallet_service)]
AdminOnly = Depends(require_admin)
