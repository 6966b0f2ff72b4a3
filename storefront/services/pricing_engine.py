"""
Pricing Engine for storefront orders.

Computes subtotal, coupon discount and total for a candidate order:
1. Line prices are snapshots of the product's active price
   (promotional price wins over list price)
2. Coupons are validated against window, usage limit and minimum purchase
3. Percentage discounts are capped at max_discount; fixed discounts are applied
   as configured (see COUPON_CAP_FIXED_DISCOUNT)
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import settings
from storefront.core.exceptions import ProductUnavailable, CouponInvalid, ValidationError
from storefront.core.money import ZERO, to_money, percentage_of
from storefront.models.coupon import Coupon, DiscountType
from storefront.models.product import Product

logger = logging.getLogger(__name__)


@dataclass
class LineRequest:
    """One requested order line."""
    product_id: uuid.UUID
    quantity: int


@dataclass
class PricedLine:
    product: Product
    quantity: int
    unit_price: Decimal
    total: Decimal


@dataclass
class PriceQuote:
    """Result of pricing a candidate order."""
    lines: List[PricedLine] = field(default_factory=list)
    subtotal: Decimal = ZERO
    discount: Decimal = ZERO
    total: Decimal = ZERO
    coupon_id: Optional[uuid.UUID] = None


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; stored values are always UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compute_discount(
    coupon: Coupon,
    subtotal: Decimal,
    cap_fixed: bool = False,
) -> Decimal:
    """Discount granted by an already validated coupon."""
    if coupon.discount_type == DiscountType.PERCENTAGE.value:
        discount = percentage_of(subtotal, coupon.value)
        if coupon.max_discount is not None and discount > coupon.max_discount:
            discount = to_money(coupon.max_discount)
        return discount

    discount = to_money(coupon.value)
    if cap_fixed and discount > subtotal:
        discount = subtotal
    return discount


def check_coupon(coupon: Coupon, subtotal: Decimal, now: Optional[datetime] = None) -> None:
    """Raise CouponInvalid if the coupon cannot be applied right now."""
    now = now or datetime.now(timezone.utc)

    if now < _aware(coupon.valid_from):
        raise CouponInvalid(f"Coupon {coupon.code} is not valid yet")
    valid_until = _aware(coupon.valid_until)
    if valid_until is not None and now > valid_until:
        raise CouponInvalid(f"Coupon {coupon.code} has expired")
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        raise CouponInvalid(f"Coupon {coupon.code} usage limit reached")
    if coupon.min_purchase is not None and subtotal < coupon.min_purchase:
        raise CouponInvalid(
            f"Coupon {coupon.code} requires a minimum purchase of {to_money(coupon.min_purchase)}"
        )


class PricingEngine:
    """Prices candidate orders for a store."""

    def __init__(self, db: AsyncSession, cap_fixed_discount: Optional[bool] = None):
        self.db = db
        self.cap_fixed_discount = (
            settings.COUPON_CAP_FIXED_DISCOUNT if cap_fixed_discount is None else cap_fixed_discount
        )

    async def _get_product(self, store_id: uuid.UUID, product_id: uuid.UUID) -> Product:
        result = await self.db.execute(
            select(Product).where(
                Product.id == product_id,
                Product.store_id == store_id,
                Product.is_active == True,  # noqa: E712
            )
        )
        product = result.scalar_one_or_none()
        if not product:
            raise ProductUnavailable(product_id)
        return product

    async def get_coupon(self, store_id: uuid.UUID, code: str) -> Coupon:
        result = await self.db.execute(
            select(Coupon).where(
                Coupon.store_id == store_id,
                func.upper(Coupon.code) == code.strip().upper(),
                Coupon.is_active == True,  # noqa: E712
            )
        )
        coupon = result.scalar_one_or_none()
        if not coupon:
            raise CouponInvalid(f"Coupon {code} not found")
        return coupon

    async def quote(
        self,
        store_id: uuid.UUID,
        items: Sequence[LineRequest],
        coupon_code: Optional[str] = None,
    ) -> PriceQuote:
        """Price an order. Nothing is written."""
        if not items:
            raise ValidationError("An order needs at least one item")

        quote = PriceQuote()
        for item in items:
            if item.quantity < 1:
                raise ValidationError("Quantity must be at least 1")
            product = await self._get_product(store_id, item.product_id)
            unit_price = to_money(product.active_price)
            line_total = to_money(unit_price * item.quantity)
            quote.lines.append(
                PricedLine(
                    product=product,
                    quantity=item.quantity,
                    unit_price=unit_price,
                    total=line_total,
                )
            )
            quote.subtotal += line_total

        quote.subtotal = to_money(quote.subtotal)

        if coupon_code:
            coupon = await self.get_coupon(store_id, coupon_code)
            check_coupon(coupon, quote.subtotal)
            quote.discount = compute_discount(coupon, quote.subtotal, self.cap_fixed_discount)
            quote.coupon_id = coupon.id

        quote.total = quote.subtotal - quote.discount
        if quote.total < 0:
            logger.warning(
                f"Fixed coupon exceeds subtotal for store {store_id}: "
                f"subtotal={quote.subtotal} discount={quote.discount}"
            )
        return quote
