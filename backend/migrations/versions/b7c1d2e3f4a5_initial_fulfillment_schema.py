"""initial fulfillment schema

Revision ID: b7c1d2e3f4a5
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the salesflow schema from scratch:
- products: catalog rows plus the denormalized stock counter (versioned)
- stock_movements: append-only stock ledger
- orders / order_items: orders in the fulfillment pipeline (versioned)
- separation_progress / verification_progress: per-item picking and checking
- shipment_volumes: packed volumes captured at the end of verification
- order_status_logs: append-only stage history (no FK, outlives the order)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'b7c1d2e3f4a5'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ============================================================================
    # products: catalog + stock counter
    # ============================================================================
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('internal_code', sa.String(length=64), nullable=True),
        sa.Column('barcode', sa.String(length=64), nullable=True),
        sa.Column('stock_unit', sa.String(length=16), nullable=False, server_default='un'),
        sa.Column('stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('stock >= 0', name='ck_products_stock_nonneg'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_internal_code', 'products', ['internal_code'])
    op.create_index('ix_products_barcode', 'products', ['barcode'])

    # ============================================================================
    # stock_movements: append-only ledger
    # ============================================================================
    op.create_table(
        'stock_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('direction', sa.String(length=8), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('previous_stock', sa.Integer(), nullable=False),
        sa.Column('new_stock', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=32), nullable=False),
        sa.Column('reference_id', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_stock_movements_product_id_products'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('quantity > 0', name='ck_stock_movements_qty_pos'),
        sa.CheckConstraint('new_stock >= 0', name='ck_stock_movements_new_stock_nonneg'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_movements_product_id', 'stock_movements', ['product_id'])
    op.create_index('ix_stock_movements_reason', 'stock_movements', ['reason'])
    op.create_index('ix_stock_movements_reference_id', 'stock_movements', ['reference_id'])
    op.create_index('ix_stock_movements_product_created', 'stock_movements', ['product_id', 'created_at'])
    op.create_index('ix_stock_movements_reason_reference', 'stock_movements', ['reason', 'reference_id'])

    # ============================================================================
    # orders
    # ============================================================================
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('budget_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('created_by', sa.String(length=64), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('stage', sa.String(length=32), nullable=False, server_default='separation'),
        sa.Column('separation_by', sa.String(length=64), nullable=True),
        sa.Column('separation_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('verification_by', sa.String(length=64), nullable=True),
        sa.Column('verification_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('invoicing_by', sa.String(length=64), nullable=True),
        sa.Column('invoicing_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivery_by', sa.String(length=64), nullable=True),
        sa.Column('delivery_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('separation_percentage', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('verification_percentage', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('invoice_number', sa.String(length=64), nullable=True),
        sa.Column('delivery_note', sa.Text(), nullable=True),
        sa.Column('total_volumes', sa.Integer(), nullable=True),
        sa.Column('total_weight_kg', sa.Numeric(10, 3), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            'separation_percentage >= 0 AND separation_percentage <= 100',
            name='ck_orders_separation_pct',
        ),
        sa.CheckConstraint(
            'verification_percentage >= 0 AND verification_percentage <= 100',
            name='ck_orders_verification_pct',
        ),
        sqlite_autoincrement=True
    )
    op.create_index('ix_orders_budget_id', 'orders', ['budget_id'])
    op.create_index('ix_orders_stage', 'orders', ['stage'])
    op.create_index('ix_orders_stage_created', 'orders', ['stage', 'created_at'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name='fk_order_items_order_id_orders'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_order_items_product_id_products'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_qty_pos'),
        sa.CheckConstraint('unit_price_cents >= 0', name='ck_order_items_price_nonneg'),
        sa.CheckConstraint('discount_cents >= 0', name='ck_order_items_discount_nonneg'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_product_id', 'order_items', ['product_id'])
    op.create_index('ix_order_items_order_position', 'order_items', ['order_id', 'position'])

    # ============================================================================
    # per-item progress
    # ============================================================================
    for table, extra in (
        ('separation_progress', []),
        ('verification_progress', [sa.Column('is_correct', sa.Boolean(), nullable=False,
                                             server_default=sa.false())]),
    ):
        op.create_table(
            table,
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('order_id', sa.Integer(), nullable=False),
            sa.Column('order_item_id', sa.Integer(), nullable=False),
            sa.Column('expected_quantity', sa.Integer(), nullable=False),
            sa.Column('confirmed_quantity', sa.Integer(), nullable=False),
            *extra,
            sa.Column('confirmed_by', sa.String(length=64), nullable=True),
            sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=False,
                      server_default=sa.text('CURRENT_TIMESTAMP')),
            sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name=f'fk_{table}_order_id_orders'),
            sa.ForeignKeyConstraint(['order_item_id'], ['order_items.id'], name=f'fk_{table}_order_item_id_order_items'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('order_id', 'order_item_id', name=f'uq_{table}_order_item'),
            sa.CheckConstraint('confirmed_quantity >= 0', name=f'ck_{table}_qty_nonneg'),
            sqlite_autoincrement=True
        )
        op.create_index(f'ix_{table}_order_id', table, ['order_id'])

    # ============================================================================
    # shipment_volumes
    # ============================================================================
    op.create_table(
        'shipment_volumes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('volume_number', sa.Integer(), nullable=False),
        sa.Column('weight_kg', sa.Numeric(10, 3), nullable=False),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name='fk_shipment_volumes_order_id_orders'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', 'volume_number', name='uq_shipment_volumes_order_number'),
        sa.CheckConstraint('weight_kg > 0', name='ck_shipment_volumes_weight_pos'),
        sa.CheckConstraint('volume_number > 0', name='ck_shipment_volumes_number_pos'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_shipment_volumes_order_id', 'shipment_volumes', ['order_id'])

    # ============================================================================
    # order_status_logs: append-only history
    # ============================================================================
    op.create_table(
        'order_status_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('previous_stage', sa.String(length=32), nullable=True),
        sa.Column('new_stage', sa.String(length=32), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('actor', sa.String(length=64), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_status_logs_order_created', 'order_status_logs', ['order_id', 'created_at'])


def downgrade():
    op.drop_table('order_status_logs')
    op.drop_table('shipment_volumes')
    op.drop_table('verification_progress')
    op.drop_table('separation_progress')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('stock_movements')
    op.drop_table('products')
