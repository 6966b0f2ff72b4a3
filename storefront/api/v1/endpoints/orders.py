"""
Order API endpoints.

Checkout flow for a store:
- Create order (prices, coupon, key reservation)
- Create PIX charge
- Manual payment check
- Price preview
- Delivery
- Cancellation and refund
"""
import uuid
import logging
from typing import Optional

from fastapi import APIRouter, Query, Request, status

from storefront.api.deps import Orders, Reconciler, StoreId
from storefront.models.order import OrderStatus
from storefront.schemas.order import (
    DeliveryResponse,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    PaymentCheckResponse,
    PaymentResponse,
    QuoteLineResponse,
    QuoteRequest,
    QuoteResponse,
)

logger = logging.getLogger(__name__)


router = APIRouter(tags=["Orders"])


def _client_metadata(request: Request) -> dict:
    forwarded = request.headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else (
        request.client.host if request.client else None
    )
    return {
        "ip": ip,
        "user_agent": request.headers.get("user-agent"),
    }


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
)
async def create_order(
    data: OrderCreate,
    request: Request,
    store_id: StoreId,
    orders: Orders,
):
    """Create a pending order. Keys of instant products are reserved."""
    return await orders.create_order(store_id, data, metadata=_client_metadata(request))


@router.post(
    "/quote",
    response_model=QuoteResponse,
    summary="Preview cart prices",
)
async def quote_order(data: QuoteRequest, store_id: StoreId, orders: Orders):
    """Price the cart and apply the coupon. No order is created and no key is reserved."""
    quote = await orders.quote(store_id, data)
    return QuoteResponse(
        lines=[
            QuoteLineResponse(
                product_id=line.product.id,
                product_name=line.product.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total=line.total,
            )
            for line in quote.lines
        ],
        subtotal=quote.subtotal,
        discount=quote.discount,
        total=quote.total,
        coupon_id=quote.coupon_id,
    )


@router.get(
    "",
    response_model=OrderListResponse,
    summary="List orders",
)
async def list_orders(
    store_id: StoreId,
    orders: Orders,
    status: Optional[OrderStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
):
    items, total = await orders.list_orders(
        store_id, status=status.value if status else None, skip=skip, limit=limit
    )
    return OrderListResponse(
        items=[OrderResponse.model_validate(o) for o in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
)
async def get_order(order_id: uuid.UUID, store_id: StoreId, orders: Orders):
    return await orders.get_order(store_id, order_id)


@router.post(
    "/{order_id}/payment",
    response_model=PaymentResponse,
    summary="Create the PIX charge",
)
async def process_payment(order_id: uuid.UUID, store_id: StoreId, orders: Orders):
    """
    Create (or return the existing) PIX charge for the order.

    Retrying after a 503 is safe; no duplicate charge is created.
    """
    return await orders.process_payment(store_id, order_id)


@router.post(
    "/{order_id}/check-payment",
    response_model=PaymentCheckResponse,
    summary="Check payment status with the provider",
)
async def check_payment(
    order_id: uuid.UUID,
    store_id: StoreId,
    orders: Orders,
    reconciler: Reconciler,
):
    result = await reconciler.poll(store_id, order_id, source="manual")
    order = await orders.get_order(store_id, order_id)
    return PaymentCheckResponse(
        outcome=result.outcome.value,
        order_status=order.status,
        payment_status=order.payment.status if order.payment else None,
        delivered=order.status == OrderStatus.DELIVERED.value,
        detail=result.detail,
    )


@router.post(
    "/{order_id}/deliver",
    response_model=DeliveryResponse,
    summary="Deliver a paid order",
)
async def deliver_order(order_id: uuid.UUID, store_id: StoreId, orders: Orders):
    """Hand out the digital goods. Delivering twice is a no-op."""
    result = await orders.deliver_order(order_id, store_id=store_id)
    return DeliveryResponse(
        order=OrderResponse.model_validate(result.order),
        already_delivered=result.already_delivered,
    )


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel an order",
)
async def cancel_order(order_id: uuid.UUID, store_id: StoreId, orders: Orders):
    return await orders.cancel_order(store_id, order_id)


@router.post(
    "/{order_id}/refund",
    response_model=OrderResponse,
    summary="Refund a paid order",
)
async def refund_order(order_id: uuid.UUID, store_id: StoreId, orders: Orders):
    """Mark the order's payment refunded. Delivered keys are not returned to stock."""
    return await orders.refund_order(store_id, order_id)
