"""initial esim schema

Revision ID: 0001_initial_esim
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_initial_esim'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Каталог направлений eSIM
    op.create_table(
        'products',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('sku_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('data_limit', sa.String(), nullable=True),
        sa.Column('validity_days', sa.Integer(), nullable=True),
        sa.Column('countries', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_products_sku_id', 'products', ['sku_id'])

    # Цены пакетов RoamWiFi
    op.create_table(
        'package_prices',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('sku_id', sa.String(), nullable=False),
        sa.Column('provider_price_id', sa.Integer(), nullable=False),
        sa.Column('api_code', sa.String(), nullable=True),
        sa.Column('show_name', sa.String(), nullable=True),
        sa.Column('flows', sa.Numeric(10, 2), nullable=True),
        sa.Column('unit', sa.String(), nullable=True),
        sa.Column('days', sa.Integer(), nullable=True),
        sa.Column('raw_provider_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('markup_percent', sa.Numeric(6, 2), nullable=True),
        sa.Column('override_price_usd', sa.Numeric(10, 2), nullable=True),
        sa.Column('effective_price_usd', sa.Numeric(10, 2), nullable=False),
        sa.Column('effective_price_local', sa.Numeric(14, 2), nullable=True),
        sa.Column('exchange_rate', sa.Numeric(14, 4), nullable=True),
        sa.Column('price_source', sa.String(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_price_id')
    )
    op.create_index('ix_package_prices_sku_id', 'package_prices', ['sku_id'])
    op.create_index('ix_package_prices_api_code', 'package_prices', ['api_code'])

    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_number', sa.String(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('package_price_id', sa.Uuid(), nullable=True),
        sa.Column('provider_price_id', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('customer_email', sa.String(), nullable=False),
        sa.Column('customer_phone', sa.String(), nullable=True),
        sa.Column('qpay_invoice_id', sa.String(), nullable=True),
        sa.Column('roamwifi_order_id', sa.String(), nullable=True),
        sa.Column('esim_data', sa.JSON(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['package_price_id'], ['package_prices.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_orders_order_number', 'orders', ['order_number'], unique=True)
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_package_price_id', 'orders', ['package_price_id'])
    op.create_index('ix_orders_provider_price_id', 'orders', ['provider_price_id'])

    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('provider_transaction_id', sa.String(), nullable=True),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('payment_method', sa.String(), nullable=False),
        sa.Column('raw_payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_payment_transactions_order_id', 'payment_transactions', ['order_id'])

    # Курсы валют: только добавление строк
    op.create_table(
        'currency_rates',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('from_currency', sa.String(3), nullable=False),
        sa.Column('to_currency', sa.String(3), nullable=False),
        sa.Column('rate', sa.Numeric(14, 4), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('last_updated', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_currency_rates_last_updated', 'currency_rates', ['last_updated'])


def downgrade() -> None:
    op.drop_table('currency_rates')
    op.drop_table('payment_transactions')
    op.drop_table('orders')
    op.drop_table('package_prices')
    op.drop_table('products')
