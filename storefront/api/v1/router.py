from fastapi import APIRouter

from storefront.api.v1.endpoints import (
    orders,
    webhooks,
    wallet,
    admin_withdrawals,
)

api_router = APIRouter()

api_router.include_router(
    orders.router,
    prefix="/orders",
    tags=["Orders"]
)

api_router.include_router(
    webhooks.router,
    prefix="/webhooks",
    tags=["Webhooks"]
)

api_router.include_router(
    wallet.router,
    prefix="/wallet",
    tags=["Wallet"]
)

api_router.include_router(
    admin_withdrawals.router,
    prefix="/admin/withdrawals",
    tags=["Admin - Withdrawals"]
)
