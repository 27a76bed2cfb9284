import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_cart_id():
    return str(uuid.uuid4())


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    image_url = Column(String(500), nullable=True)
    sku = Column(String(100), unique=True, index=True, nullable=True)
    is_visible = Column(Boolean, default=True, nullable=False)
    # Square catalog identifiers - filled in by catalog sync
    square_catalog_id = Column(String(255), nullable=True)
    square_item_id = Column(String(255), nullable=True)
    square_variation_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ServiceItem(Base):
    """Bookable service, linked to a Square appointment service variation"""

    __tablename__ = "service_items"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=True)
    duration_minutes = Column(Integer, default=60, nullable=False)
    is_visible = Column(Boolean, default=True, nullable=False)
    square_service_id = Column(String(255), nullable=True)
    square_variation_id = Column(String(255), nullable=True)
    square_variation_version = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Cart(Base):
    __tablename__ = "carts"

    id = Column(String(36), primary_key=True, default=generate_cart_id)
    session_id = Column(String(64), unique=True, index=True, nullable=True)
    user_id = Column(String(255), index=True, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    items = relationship(
        "CartItem", back_populates="cart", cascade="all, delete-orphan", order_by="CartItem.id"
    )


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("cart_id", "product_id", name="uq_cart_items_cart_product"),)

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(String(36), ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)  # Snapshot at add-time
    created_at = Column(DateTime, default=utcnow, nullable=False)

    cart = relationship("Cart", back_populates="items")
    product = relationship("Product")


class Order(Base):
    """Local receipt of a completed Square order + payment"""

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    square_order_id = Column(String(255), unique=True, nullable=False)
    square_payment_id = Column(String(255), nullable=True)
    status = Column(String(50), default="COMPLETED", nullable=False)
    user_id = Column(String(255), index=True, nullable=True)
    buyer_email = Column(String(255), nullable=True)
    buyer_name = Column(String(255), nullable=True)
    subtotal = Column(Numeric(10, 2), nullable=False)
    total = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    receipt_url = Column(String(500), nullable=True)
    shipping_address = Column(JSON, nullable=True)
    billing_address = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    # Denormalized so catalog edits never rewrite history
    product_id = Column(Integer, nullable=True)
    name = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")


class Booking(Base):
    """Local cache of a Square booking - Square stays the source of truth"""

    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    square_booking_id = Column(String(255), unique=True, nullable=False)
    square_customer_id = Column(String(255), nullable=True)
    service_id = Column(Integer, ForeignKey("service_items.id"), nullable=True)
    team_member_id = Column(String(255), nullable=True)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    status = Column(String(50), default="ACCEPTED", nullable=False)
    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
