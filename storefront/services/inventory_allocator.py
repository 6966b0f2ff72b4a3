"""
Inventory Allocator for instant-delivery products.

Hands out pre-provisioned keys so that no key is ever given to two orders:

1. reserve() - Called inside the order creation transaction; binds available
   keys to the order item while the order awaits payment
2. consume() - Called inside the delivery transaction; marks the item's keys
   used, claiming from the free pool when the reservation is short
3. release() - Called when an unpaid order is cancelled

Every claim is a locked read (SKIP LOCKED on PostgreSQL) followed by a
conditional UPDATE whose rowcount is checked, so a unit can only be bound
once even on backends without row locks. Callers own the transaction and
roll it back on InsufficientStock.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import List

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.exceptions import InsufficientStock
from storefront.models.product import ProductKey

logger = logging.getLogger(__name__)


class InventoryAllocator:
    """Claims, consumes and releases product keys."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _available(self, product_id: uuid.UUID):
        return (
            ProductKey.product_id == product_id,
            ProductKey.used == False,  # noqa: E712
            ProductKey.reserved_item_id.is_(None),
        )

    async def available_count(self, product_id: uuid.UUID) -> int:
        """Keys neither reserved nor used."""
        result = await self.db.execute(
            select(func.count(ProductKey.id)).where(*self._available(product_id))
        )
        return result.scalar() or 0

    async def is_exhausted(self, product_id: uuid.UUID) -> bool:
        return await self.available_count(product_id) == 0

    async def _claim(self, product_id: uuid.UUID, quantity: int, values: dict) -> int:
        """Bind `quantity` available keys with `values`. All or nothing."""
        result = await self.db.execute(
            select(ProductKey.id)
            .where(*self._available(product_id))
            .order_by(ProductKey.created_at, ProductKey.id)
            .limit(quantity)
            .with_for_update(skip_locked=True)
        )
        key_ids = list(result.scalars().all())

        if len(key_ids) < quantity:
            raise InsufficientStock(product_id, requested=quantity, available=len(key_ids))

        updated = await self.db.execute(
            update(ProductKey)
            .where(ProductKey.id.in_(key_ids), *self._available(product_id))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount != quantity:
            # Lost a race for some of the selected keys
            logger.warning(
                f"Key claim race for product {product_id}: "
                f"wanted {quantity}, bound {updated.rowcount}"
            )
            raise InsufficientStock(product_id, requested=quantity, available=updated.rowcount)

        return quantity

    async def reserve(
        self,
        product_id: uuid.UUID,
        quantity: int,
        order_item_id: uuid.UUID,
    ) -> int:
        """Reserve keys for an unpaid order item."""
        claimed = await self._claim(
            product_id,
            quantity,
            {
                "reserved_item_id": order_item_id,
                "reserved_at": datetime.now(timezone.utc),
            },
        )
        logger.info(f"Reserved {claimed} key(s) of product {product_id} for item {order_item_id}")
        return claimed

    async def release(self, order_item_id: uuid.UUID) -> int:
        """Return an item's unused reserved keys to the pool."""
        result = await self.db.execute(
            update(ProductKey)
            .where(
                ProductKey.reserved_item_id == order_item_id,
                ProductKey.used == False,  # noqa: E712
            )
            .values(reserved_item_id=None, reserved_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Released {result.rowcount} key(s) reserved by item {order_item_id}")
        return result.rowcount

    async def consume(
        self,
        product_id: uuid.UUID,
        order_item_id: uuid.UUID,
        quantity: int,
    ) -> List[str]:
        """
        Deliver `quantity` keys to an order item and return them.

        Reserved keys are used first. Any shortfall is claimed from the free
        pool; if the pool cannot cover it InsufficientStock is raised.
        """
        now = datetime.now(timezone.utc)

        already = await self._delivered_keys(order_item_id)
        remaining = quantity - len(already)
        if remaining <= 0:
            return already

        result = await self.db.execute(
            select(ProductKey.id)
            .where(
                ProductKey.reserved_item_id == order_item_id,
                ProductKey.used == False,  # noqa: E712
            )
            .order_by(ProductKey.created_at, ProductKey.id)
            .limit(remaining)
            .with_for_update()
        )
        reserved_ids = list(result.scalars().all())

        if reserved_ids:
            updated = await self.db.execute(
                update(ProductKey)
                .where(
                    ProductKey.id.in_(reserved_ids),
                    ProductKey.used == False,  # noqa: E712
                )
                .values(used=True, order_item_id=order_item_id, used_at=now)
                .execution_options(synchronize_session=False)
            )
            remaining -= updated.rowcount

        if remaining > 0:
            logger.info(
                f"Item {order_item_id} short {remaining} reserved key(s) of product "
                f"{product_id}, claiming from pool"
            )
            await self._claim(
                product_id,
                remaining,
                {
                    "used": True,
                    "order_item_id": order_item_id,
                    "reserved_item_id": order_item_id,
                    "used_at": now,
                },
            )

        return await self._delivered_keys(order_item_id)

    async def _delivered_keys(self, order_item_id: uuid.UUID) -> List[str]:
        result = await self.db.execute(
            select(ProductKey.key)
            .where(ProductKey.order_item_id == order_item_id)
            .order_by(ProductKey.created_at, ProductKey.id)
        )
        return list(result.scalars().all())
