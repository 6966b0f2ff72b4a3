from pydantic import EmailStr, Field, field_validator
from typing import Optional, List, Any, Dict
from datetime import datetime
from decimal import Decimal
import uuid

from storefront.schemas.base import BaseCreateSchema, BaseResponseSchema


# ==================== ORDER ITEM SCHEMAS ====================

class OrderItemCreate(BaseCreateSchema):
    """Order item creation schema."""
    product_id: uuid.UUID
    quantity: int = Field(..., ge=1, le=1000)


class OrderItemResponse(BaseResponseSchema):
    """Order item response schema."""
    id: uuid.UUID
    product_id: uuid.UUID
    product_name: str
    quantity: int
    unit_price: Decimal
    total: Decimal
    delivered_keys: List[str] = []
    created_at: datetime


# ==================== ORDER SCHEMAS ====================

class OrderCreate(BaseCreateSchema):
    """
    Checkout request.

    customer_id identifies an existing customer of the store; otherwise the
    customer is matched by email or created.
    """
    items: List[OrderItemCreate] = Field(..., min_length=1)
    customer_id: Optional[uuid.UUID] = None
    customer_email: EmailStr
    customer_name: str = Field(..., min_length=1, max_length=200)
    customer_phone: Optional[str] = Field(None, max_length=30)
    coupon_code: Optional[str] = Field(None, max_length=50)
    affiliate_code: Optional[str] = Field(None, max_length=50)

    @field_validator("customer_name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("customer_name cannot be blank")
        return v


class QuoteRequest(BaseCreateSchema):
    """Price preview of a cart. Nothing is reserved."""
    items: List[OrderItemCreate] = Field(..., min_length=1)
    coupon_code: Optional[str] = Field(None, max_length=50)


class QuoteLineResponse(BaseResponseSchema):
    product_id: uuid.UUID
    product_name: str
    quantity: int
    unit_price: Decimal
    total: Decimal


class QuoteResponse(BaseResponseSchema):
    lines: List[QuoteLineResponse]
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    coupon_id: Optional[uuid.UUID] = None


class PaymentResponse(BaseResponseSchema):
    """PIX charge details shown at checkout."""
    id: uuid.UUID
    order_id: uuid.UUID
    provider: str
    external_id: str
    status: str
    amount: Decimal
    payment_method: str
    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime


class OrderResponse(BaseResponseSchema):
    """Order response schema."""
    id: uuid.UUID
    order_number: str
    store_id: uuid.UUID
    customer_id: uuid.UUID
    customer_email: str
    customer_name: str
    status: str
    payment_status: str
    payment_method: str
    payment_id: Optional[str] = None
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    coupon_id: Optional[uuid.UUID] = None
    affiliate_code: Optional[str] = None
    items: List[OrderItemResponse] = []
    payment: Optional[PaymentResponse] = None
    paid_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class OrderListResponse(BaseResponseSchema):
    """Paginated order list."""
    items: List[OrderResponse]
    total: int
    skip: int
    limit: int


class DeliveryResponse(BaseResponseSchema):
    order: OrderResponse
    already_delivered: bool


class PaymentCheckResponse(BaseResponseSchema):
    """Result of a manual payment status check."""
    outcome: str
    order_status: str
    payment_status: Optional[str] = None
    delivered: bool = False
    detail: Optional[str] = None


class WebhookAck(BaseResponseSchema):
    received: bool = True
    outcome: str
    detail: Optional[Dict[str, Any]] = None
