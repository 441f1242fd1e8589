from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Text, DateTime, ForeignKey, BigInteger, JSON, CheckConstraint
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from campusmart.db.session import Base

def utcnow() -> datetime:
    # naive UTC, matching the DateTime() columns
    return datetime.now(timezone.utc).replace(tzinfo=None)

class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"

# --- collaborators owned by other services ---

class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), default="")
    role: Mapped[str] = mapped_column(String(16), default="buyer")

class Address(Base):
    __tablename__ = "addresses"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    line1: Mapped[str] = mapped_column(String(255), default="")
    line2: Mapped[str] = mapped_column(String(255), default="")
    city: Mapped[str] = mapped_column(String(120), default="")
    postcode: Mapped[str] = mapped_column(String(16), default="")
    state: Mapped[str] = mapped_column(String(64), default="")

class Shop(Base):
    __tablename__ = "shops"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    stripe_account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    products = relationship("Product", back_populates="shop")

class Product(Base):
    __tablename__ = "products"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_products_stock_nonnegative"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shop_id: Mapped[int] = mapped_column(ForeignKey("shops.id"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    stock: Mapped[int] = mapped_column(Integer, default=0)
    images: Mapped[list] = mapped_column(JSON, default=list)
    discount_percentage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    discounted_price_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    discount_start: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    discount_end: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)

    shop = relationship("Shop", back_populates="products")

# --- settlement core ---

class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    checkout_token: Mapped[str] = mapped_column(String(48), index=True)
    seller_id: Mapped[int] = mapped_column(ForeignKey("shops.id"), index=True)
    buyer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    address_id: Mapped[int] = mapped_column(ForeignKey("addresses.id"))
    total_cents: Mapped[int] = mapped_column(BigInteger)
    platform_fee_cents: Mapped[int] = mapped_column(BigInteger)
    seller_payout_cents: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3), default="myr")
    status: Mapped[str] = mapped_column(String(16), default=OrderStatus.PENDING.value, index=True)
    payment_status: Mapped[str] = mapped_column(String(16), default=PaymentStatus.UNPAID.value)
    payment_session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    payment_account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    courier_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    courier_name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    detailed_tracking_status: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    cancellation_date: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id")
    checkpoints = relationship(
        "TrackingCheckpoint",
        back_populates="order",
        order_by="TrackingCheckpoint.checkpoint_time.desc()",
    )
    buyer = relationship("User")

class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"))
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger)
    total_price_cents: Mapped[int] = mapped_column(BigInteger)
    variation: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    product_name: Mapped[str] = mapped_column(String(255))
    product_image: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    order = relationship("Order", back_populates="items")

class TrackingCheckpoint(Base):
    __tablename__ = "tracking_checkpoints"
    # sha256 hex of (order_id, tracking_number, checkpoint_time, details);
    # checkpoints without a courier time key on details and status instead
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    tracking_number: Mapped[str] = mapped_column(String(64), index=True)
    courier_code: Mapped[str] = mapped_column(String(64), default="unknown")
    status: Mapped[str] = mapped_column(String(64))
    details: Mapped[str] = mapped_column(Text, default="")
    location: Mapped[str] = mapped_column(String(255), default="")
    checkpoint_time: Mapped[datetime] = mapped_column(DateTime(), index=True)
    raw_payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow)

    order = relationship("Order", back_populates="checkpoints")
