"""Create storefront order and payment core tables

Revision ID: 001_storefront_core
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

# revision identifiers
revision = '001_storefront_core'
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()'))


def _created_at():
    return sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False)


def _updated_at():
    return sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False)


def upgrade():
    """Create store, catalog, order, payment and wallet tables"""

    # ====================
    # STORES
    # ====================
    op.create_table(
        'stores',
        _id(),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('slug', sa.String(100), unique=True, nullable=False),
        sa.Column('is_active', sa.Boolean, server_default='true', nullable=False),
        sa.Column('is_blocked', sa.Boolean, server_default='false', nullable=False),
        _created_at(),
    )
    op.create_index('ix_stores_slug', 'stores', ['slug'])

    # ====================
    # CATALOG
    # ====================
    op.create_table(
        'products',
        _id(),
        sa.Column('store_id', UUID(as_uuid=True), sa.ForeignKey('stores.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('promotional_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('is_active', sa.Boolean, server_default='true', nullable=False),
        sa.Column('delivery_type', sa.String(20), server_default='instant', nullable=False),
        sa.Column('inventory_type', sa.String(20), server_default='lines', nullable=False),
        sa.Column('delivery_content', sa.Text, nullable=True),
        sa.Column('sales_count', sa.Integer, server_default='0', nullable=False),
        _created_at(),
    )
    op.create_index('ix_products_store_id', 'products', ['store_id'])

    op.create_table(
        'customers',
        _id(),
        sa.Column('store_id', UUID(as_uuid=True), sa.ForeignKey('stores.id', ondelete='CASCADE'), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('phone', sa.String(30), nullable=True),
        sa.Column('is_blocked', sa.Boolean, server_default='false', nullable=False),
        sa.Column('total_orders', sa.Integer, server_default='0', nullable=False),
        sa.Column('total_spent', sa.Numeric(12, 2), server_default='0', nullable=False),
        sa.Column('last_order_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint('store_id', 'email', name='uq_customer_store_email'),
    )
    op.create_index('ix_customers_store_id', 'customers', ['store_id'])

    op.create_table(
        'coupons',
        _id(),
        sa.Column('store_id', UUID(as_uuid=True), sa.ForeignKey('stores.id', ondelete='CASCADE'), nullable=False),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('discount_type', sa.String(20), server_default='percentage', nullable=False),
        sa.Column('value', sa.Numeric(12, 2), nullable=False),
        sa.Column('max_discount', sa.Numeric(12, 2), nullable=True),
        sa.Column('min_purchase', sa.Numeric(12, 2), nullable=True),
        sa.Column('usage_limit', sa.Integer, nullable=True),
        sa.Column('usage_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('valid_from', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean, server_default='true', nullable=False),
        _created_at(),
        sa.UniqueConstraint('store_id', 'code', name='uq_coupon_store_code'),
    )
    op.create_index('ix_coupons_store_id', 'coupons', ['store_id'])
    op.create_index('ix_coupons_code', 'coupons', ['code'])

    # ====================
    # ORDERS
    # ====================
    op.create_table(
        'orders',
        _id(),
        sa.Column('order_number', sa.String(40), unique=True, nullable=False),
        sa.Column('store_id', UUID(as_uuid=True), sa.ForeignKey('stores.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('customer_id', UUID(as_uuid=True), sa.ForeignKey('customers.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('customer_email', sa.String(255), nullable=False),
        sa.Column('customer_name', sa.String(200), nullable=False),
        sa.Column('customer_phone', sa.String(30), nullable=True),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount', sa.Numeric(12, 2), server_default='0', nullable=False),
        sa.Column('total', sa.Numeric(12, 2), nullable=False),
        sa.Column('coupon_id', UUID(as_uuid=True), sa.ForeignKey('coupons.id', ondelete='SET NULL'), nullable=True),
        sa.Column('affiliate_code', sa.String(50), nullable=True),
        sa.Column('payment_method', sa.String(20), server_default='pix', nullable=False),
        sa.Column('payment_status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('payment_id', sa.String(100), nullable=True),
        sa.Column('metadata', JSONB, server_default='{}', nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint('discount >= 0', name='ck_order_discount_non_negative'),
    )
    op.create_index('ix_orders_order_number', 'orders', ['order_number'])
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_payment_id', 'orders', ['payment_id'])
    op.create_index('ix_order_store_created', 'orders', ['store_id', 'created_at'])
    op.create_index('ix_order_payment_status', 'orders', ['payment_status', 'created_at'])

    op.create_table(
        'order_items',
        _id(),
        sa.Column('order_id', UUID(as_uuid=True), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', UUID(as_uuid=True), sa.ForeignKey('products.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('product_name', sa.String(255), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('total', sa.Numeric(12, 2), nullable=False),
        sa.Column('product_key', sa.Text, nullable=True),
        _created_at(),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'product_keys',
        _id(),
        sa.Column('product_id', UUID(as_uuid=True), sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False),
        sa.Column('key', sa.Text, nullable=False),
        sa.Column('used', sa.Boolean, server_default='false', nullable=False),
        sa.Column('reserved_item_id', UUID(as_uuid=True), sa.ForeignKey('order_items.id', ondelete='SET NULL'), nullable=True),
        sa.Column('reserved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('order_item_id', UUID(as_uuid=True), sa.ForeignKey('order_items.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index('ix_product_keys_product_id', 'product_keys', ['product_id'])
    op.create_index('ix_product_keys_reserved_item_id', 'product_keys', ['reserved_item_id'])
    op.create_index('ix_product_keys_order_item_id', 'product_keys', ['order_item_id'])
    op.create_index('ix_product_key_available', 'product_keys', ['product_id', 'used', 'reserved_item_id'])

    # ====================
    # PAYMENTS
    # ====================
    op.create_table(
        'payments',
        _id(),
        sa.Column('order_id', UUID(as_uuid=True), sa.ForeignKey('orders.id', ondelete='RESTRICT'), unique=True, nullable=False),
        sa.Column('provider', sa.String(30), nullable=False),
        sa.Column('external_id', sa.String(100), unique=True, nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('payment_method', sa.String(20), server_default='pix', nullable=False),
        sa.Column('qr_code', sa.Text, nullable=True),
        sa.Column('qr_code_base64', sa.Text, nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('split_data', JSONB, server_default='[]', nullable=False),
        sa.Column('provider_metadata', JSONB, server_default='{}', nullable=False),
        sa.Column('wallet_credited_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index('ix_payments_external_id', 'payments', ['external_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])

    op.create_table(
        'payment_methods',
        _id(),
        sa.Column('store_id', UUID(as_uuid=True), sa.ForeignKey('stores.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(30), nullable=False),
        sa.Column('enabled', sa.Boolean, server_default='true', nullable=False),
        sa.Column('token', sa.Text, nullable=True),
        sa.Column('sandbox', sa.Boolean, server_default='false', nullable=False),
        _created_at(),
        sa.UniqueConstraint('store_id', 'provider', name='uq_payment_method_store_provider'),
    )
    op.create_index('ix_payment_methods_store_id', 'payment_methods', ['store_id'])

    op.create_table(
        'split_configs',
        _id(),
        sa.Column('store_id', UUID(as_uuid=True), sa.ForeignKey('stores.id', ondelete='CASCADE'), unique=True, nullable=False),
        sa.Column('rules', JSONB, server_default='[]', nullable=False),
        sa.Column('is_active', sa.Boolean, server_default='true', nullable=False),
        _created_at(),
        _updated_at(),
    )

    # ====================
    # WALLET
    # ====================
    op.create_table(
        'wallets',
        _id(),
        sa.Column('store_id', UUID(as_uuid=True), sa.ForeignKey('stores.id', ondelete='RESTRICT'), unique=True, nullable=False),
        sa.Column('available_balance', sa.Numeric(12, 2), server_default='0', nullable=False),
        sa.Column('retained_balance', sa.Numeric(12, 2), server_default='0', nullable=False),
        sa.Column('pix_key', sa.String(255), nullable=True),
        sa.Column('full_name', sa.String(200), nullable=True),
        sa.Column('cpf', sa.String(11), nullable=True),
        sa.Column('birth_date', sa.Date, nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint('available_balance >= 0', name='ck_wallet_available_non_negative'),
        sa.CheckConstraint('retained_balance >= 0', name='ck_wallet_retained_non_negative'),
    )

    op.create_table(
        'withdrawals',
        _id(),
        sa.Column('wallet_id', UUID(as_uuid=True), sa.ForeignKey('wallets.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('store_id', UUID(as_uuid=True), sa.ForeignKey('stores.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('pix_key', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('rejection_reason', sa.Text, nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint('amount > 0', name='ck_withdrawal_amount_positive'),
    )
    op.create_index('ix_withdrawals_store_id', 'withdrawals', ['store_id'])
    op.create_index('ix_withdrawals_status', 'withdrawals', ['status'])
    op.create_index('ix_withdrawal_wallet_created', 'withdrawals', ['wallet_id', 'created_at'])

    op.create_table(
        'wallet_transactions',
        _id(),
        sa.Column('wallet_id', UUID(as_uuid=True), sa.ForeignKey('wallets.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('payment_id', UUID(as_uuid=True), sa.ForeignKey('payments.id', ondelete='RESTRICT'), unique=True, nullable=True),
        sa.Column('withdrawal_id', UUID(as_uuid=True), sa.ForeignKey('withdrawals.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('gross_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('fee_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('available_after', sa.Numeric(12, 2), nullable=False),
        sa.Column('retained_after', sa.Numeric(12, 2), nullable=False),
        sa.Column('description', sa.String(255), nullable=True),
        _created_at(),
    )
    op.create_index('ix_wallet_transactions_wallet_id', 'wallet_transactions', ['wallet_id'])
    op.create_index('ix_wallet_transactions_withdrawal_id', 'wallet_transactions', ['withdrawal_id'])

    # ====================
    # MERCHANT WEBHOOKS
    # ====================
    op.create_table(
        'merchant_webhooks',
        _id(),
        sa.Column('store_id', UUID(as_uuid=True), sa.ForeignKey('stores.id', ondelete='CASCADE'), nullable=False),
        sa.Column('event', sa.String(50), nullable=False),
        sa.Column('url', sa.Text, nullable=False),
        sa.Column('secret', sa.String(255), nullable=True),
        sa.Column('enabled', sa.Boolean, server_default='true', nullable=False),
        _created_at(),
    )
    op.create_index('ix_merchant_webhooks_store_id', 'merchant_webhooks', ['store_id'])


def downgrade():
    """Drop all core tables"""
    for table in (
        'merchant_webhooks',
        'wallet_transactions',
        'withdrawals',
        'wallets',
        'split_configs',
        'payment_methods',
        'payments',
        'product_keys',
        'order_items',
        'orders',
        'coupons',
        'customers',
        'products',
        'stores',
    ):
        op.drop_table(table)
