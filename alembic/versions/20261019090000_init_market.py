from alembic import op
import sqlalchemy as sa

revision = "20261019090000"
down_revision = None

NOW = sa.text("(now() at time zone 'utc')")

def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False, unique=True),
        sa.Column('full_name', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('role', sa.String(length=16), nullable=False, server_default='buyer'),
    )
    op.create_table(
        'addresses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('line1', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('line2', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('city', sa.String(length=120), nullable=False, server_default=''),
        sa.Column('postcode', sa.String(length=16), nullable=False, server_default=''),
        sa.Column('state', sa.String(length=64), nullable=False, server_default=''),
    )
    op.create_table(
        'shops',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('owner_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('stripe_account_id', sa.String(length=64), nullable=True),
    )
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('shop_id', sa.Integer(), sa.ForeignKey('shops.id'), nullable=False, index=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('price_cents', sa.BigInteger(), nullable=False),
        sa.Column('stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('images', sa.JSON(), nullable=True),
        sa.Column('discount_percentage', sa.Integer(), nullable=True),
        sa.Column('discounted_price_cents', sa.BigInteger(), nullable=True),
        sa.Column('discount_start', sa.DateTime(), nullable=True),
        sa.Column('discount_end', sa.DateTime(), nullable=True),
        sa.CheckConstraint('stock >= 0', name='ck_products_stock_nonnegative'),
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_number', sa.String(length=64), nullable=False, unique=True),
        sa.Column('checkout_token', sa.String(length=48), nullable=False, index=True),
        sa.Column('seller_id', sa.Integer(), sa.ForeignKey('shops.id'), nullable=False, index=True),
        sa.Column('buyer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('address_id', sa.Integer(), sa.ForeignKey('addresses.id'), nullable=False),
        sa.Column('total_cents', sa.BigInteger(), nullable=False),
        sa.Column('platform_fee_cents', sa.BigInteger(), nullable=False),
        sa.Column('seller_payout_cents', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='myr'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending', index=True),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='unpaid'),
        sa.Column('payment_session_id', sa.String(length=255), nullable=True, index=True),
        sa.Column('payment_account_id', sa.String(length=64), nullable=True),
        sa.Column('tracking_number', sa.String(length=64), nullable=True, index=True),
        sa.Column('courier_code', sa.String(length=64), nullable=True),
        sa.Column('courier_name', sa.String(length=120), nullable=True),
        sa.Column('detailed_tracking_status', sa.String(length=255), nullable=True),
        sa.Column('shipped_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('cancellation_date', sa.DateTime(), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=255), nullable=True),
        sa.Column('cancelled_by', sa.String(length=16), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=NOW),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=NOW),
    )
    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.BigInteger(), nullable=False),
        sa.Column('total_price_cents', sa.BigInteger(), nullable=False),
        sa.Column('variation', sa.String(length=255), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('product_image', sa.String(length=1024), nullable=True),
    )
    op.create_table(
        'tracking_checkpoints',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('tracking_number', sa.String(length=64), nullable=False, index=True),
        sa.Column('courier_code', sa.String(length=64), nullable=False, server_default='unknown'),
        sa.Column('status', sa.String(length=64), nullable=False),
        sa.Column('details', sa.Text(), nullable=False, server_default=''),
        sa.Column('location', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('checkpoint_time', sa.DateTime(), nullable=False, index=True),
        sa.Column('raw_payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=NOW),
    )

def downgrade():
    op.drop_table('tracking_checkpoints')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('products')
    op.drop_table('shops')
    op.drop_table('addresses')
    op.drop_table('users')
