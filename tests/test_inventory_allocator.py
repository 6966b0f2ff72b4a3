import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

from storefront.core.exceptions import InsufficientStock
from storefront.models import Customer, Order, OrderItem, ProductKey
from storefront.services.inventory_allocator import InventoryAllocator

from factories import add_product


async def make_item(db, store, product, quantity=1):
    """Pending order with a single line, without touching inventory."""
    customer = Customer(store_id=store.id, email=f"{uuid.uuid4().hex[:6]}@lojagamer.com.br", name="Cliente")
    db.add(customer)
    await db.flush()
    order = Order(
        order_number=f"ORD-TEST-{uuid.uuid4().hex[:8].upper()}",
        store_id=store.id,
        customer_id=customer.id,
        customer_email=customer.email,
        customer_name=customer.name,
        subtotal=Decimal("10.00") * quantity,
        total=Decimal("10.00") * quantity,
    )
    db.add(order)
    await db.flush()
    item = OrderItem(
        order_id=order.id,
        product_id=product.id,
        product_name=product.name,
        quantity=quantity,
        unit_price=Decimal("10.00"),
        total=Decimal("10.00") * quantity,
    )
    db.add(item)
    await db.commit()
    return item


async def keys_of(db, product_id):
    result = await db.execute(
        select(ProductKey)
        .where(ProductKey.product_id == product_id)
        .order_by(ProductKey.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def test_reserve_binds_keys_to_item(db, store, product):
    allocator = InventoryAllocator(db)
    item = await make_item(db, store, product, quantity=2)

    claimed = await allocator.reserve(product.id, 2, item.id)
    await db.commit()

    assert claimed == 2
    assert await allocator.available_count(product.id) == 3
    keys = await keys_of(db, product.id)
    assert [k.reserved_item_id for k in keys[:2]] == [item.id, item.id]
    assert all(k.reserved_item_id is None for k in keys[2:])
    assert not any(k.used for k in keys)


async def test_reserve_is_all_or_nothing(db, store, product):
    allocator = InventoryAllocator(db)
    item = await make_item(db, store, product, quantity=6)
    product_id = product.id

    with pytest.raises(InsufficientStock) as exc_info:
        await allocator.reserve(product_id, 6, item.id)
    await db.rollback()

    assert exc_info.value.requested == 6
    assert exc_info.value.available == 5
    assert await allocator.available_count(product_id) == 5


async def test_reserved_keys_are_not_offered_twice(db, store, product):
    allocator = InventoryAllocator(db)
    first = await make_item(db, store, product, quantity=3)
    second = await make_item(db, store, product, quantity=3)
    # Rollback expires loaded rows
    product_id, first_id, second_id = product.id, first.id, second.id

    await allocator.reserve(product_id, 3, first_id)
    await db.commit()

    with pytest.raises(InsufficientStock):
        await allocator.reserve(product_id, 3, second_id)
    await db.rollback()

    await allocator.reserve(product_id, 2, second_id)
    await db.commit()
    keys = await keys_of(db, product_id)
    assert sum(1 for k in keys if k.reserved_item_id == first_id) == 3
    assert sum(1 for k in keys if k.reserved_item_id == second_id) == 2
    assert await allocator.is_exhausted(product_id)


async def test_release_returns_keys_to_pool(db, store, product):
    allocator = InventoryAllocator(db)
    item = await make_item(db, store, product, quantity=2)
    await allocator.reserve(product.id, 2, item.id)
    await db.commit()

    released = await allocator.release(item.id)
    await db.commit()

    assert released == 2
    assert await allocator.available_count(product.id) == 5


async def test_consume_uses_reserved_keys(db, store, product):
    allocator = InventoryAllocator(db)
    item = await make_item(db, store, product, quantity=2)
    await allocator.reserve(product.id, 2, item.id)
    await db.commit()

    delivered = await allocator.consume(product.id, item.id, 2)
    await db.commit()

    assert delivered == ["STEAM-KEY-0001", "STEAM-KEY-0002"]
    keys = await keys_of(db, product.id)
    assert all(k.used and k.order_item_id == item.id for k in keys[:2])
    assert await allocator.available_count(product.id) == 3


async def test_consume_is_repeatable(db, store, product):
    allocator = InventoryAllocator(db)
    item = await make_item(db, store, product, quantity=2)
    await allocator.reserve(product.id, 2, item.id)
    first = await allocator.consume(product.id, item.id, 2)
    await db.commit()

    again = await allocator.consume(product.id, item.id, 2)

    assert again == first
    assert await allocator.available_count(product.id) == 3


async def test_consume_claims_shortfall_from_pool(db, store, product):
    allocator = InventoryAllocator(db)
    item = await make_item(db, store, product, quantity=3)
    await allocator.reserve(product.id, 1, item.id)
    await db.commit()

    delivered = await allocator.consume(product.id, item.id, 3)
    await db.commit()

    assert len(delivered) == 3
    assert len(set(delivered)) == 3
    assert await allocator.available_count(product.id) == 2


async def test_consume_without_stock_raises(db, store):
    product = await add_product(db, store, name="Rare Key", keys=1)
    allocator = InventoryAllocator(db)
    item = await make_item(db, store, product, quantity=2)
    product_id = product.id

    with pytest.raises(InsufficientStock):
        await allocator.consume(product_id, item.id, 2)
    await db.rollback()

    assert await allocator.available_count(product_id) == 1


async def test_used_keys_never_return_to_pool(db, store, product):
    allocator = InventoryAllocator(db)
    item = await make_item(db, store, product, quantity=2)
    await allocator.reserve(product.id, 2, item.id)
    await allocator.consume(product.id, item.id, 2)
    await db.commit()

    assert await allocator.release(item.id) == 0
    await db.commit()

    assert await allocator.available_count(product.id) == 3
