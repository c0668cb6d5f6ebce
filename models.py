"""
SQLAlchemy ORM Models for the Plas marketplace database

Tables:
- users: customers, guests and shoppers (login identity)
- shoppers: courier profile and last stored position
- shops / addresses: pickup and drop-off locations
- orders / order_items: every batch kind (regular, reel, restaurant)
- order_offers: exclusive, time-boxed offers of an order to one shopper
- ratings: customer ratings of shoppers
- wallets / wallet_transactions / refunds: shopper money movements
- fcm_tokens: push notification registrations
- system_logs: persisted warnings and errors
"""

import uuid
from datetime import datetime

import pytz
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# Order types
ORDER_TYPE_REGULAR = "regular"
ORDER_TYPE_REEL = "reel"
ORDER_TYPE_RESTAURANT = "restaurant"
ORDER_TYPES = (ORDER_TYPE_REGULAR, ORDER_TYPE_REEL, ORDER_TYPE_RESTAURANT)

# Order statuses
ORDER_PENDING = "PENDING"
ORDER_ACCEPTED = "accepted"
ORDER_SHOPPING = "shopping"
ORDER_IN_PROGRESS = "in_progress"
ORDER_PICKED_UP = "picked_up"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"
ACTIVE_ORDER_STATUSES = (ORDER_ACCEPTED, ORDER_IN_PROGRESS, ORDER_PICKED_UP)

# Offer statuses
OFFER_OFFERED = "OFFERED"
OFFER_ACCEPTED = "ACCEPTED"
OFFER_DECLINED = "DECLINED"
OFFER_EXPIRED = "EXPIRED"


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(pytz.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """Anyone who can sign in: customer, guest or shopper"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(20), index=True)
    gender = Column(String(30))
    role = Column(String(20), nullable=False, default="user")  # 'user' or 'shopper'
    password_hash = Column(String(255))
    is_guest = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    fcm_tokens = relationship("FCMToken", back_populates="user", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "gender": self.gender,
            "is_guest": self.is_guest,
        }

    def __repr__(self):
        return f"<User {self.email}>"


class Shopper(Base):
    """Courier profile; id is the shopper's user id"""
    __tablename__ = "shoppers"

    id = Column(String(36), ForeignKey("users.id"), primary_key=True)
    full_name = Column(String(255), nullable=False)
    phone_number = Column(String(20))
    status = Column(String(20), nullable=False, default="pending")  # 'pending', 'approved', 'suspended'
    active = Column(Boolean, default=False, nullable=False)
    latitude = Column(Numeric(10, 8))  # Last stored position, used when no live location
    longitude = Column(Numeric(11, 8))

    user = relationship("User")
    wallet = relationship("Wallet", back_populates="shopper", uselist=False)

    def __repr__(self):
        return f"<Shopper {self.full_name}>"


class Shop(Base):
    """Store or restaurant an order is picked up from"""
    __tablename__ = "shops"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    latitude = Column(Numeric(10, 8))
    longitude = Column(Numeric(11, 8))

    def __repr__(self):
        return f"<Shop {self.name}>"


class Address(Base):
    """Delivery address"""
    __tablename__ = "addresses"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"))
    street = Column(String(255))
    city = Column(String(100))
    latitude = Column(Numeric(10, 8), nullable=False)
    longitude = Column(Numeric(11, 8), nullable=False)


class Order(Base):
    """A batch a shopper can fulfil (regular shop, reel or restaurant order)"""
    __tablename__ = "orders"
    __table_args__ = (
        Index("idx_orders_status_shopper", "status", "shopper_id"),
        Index("idx_orders_created_at", "created_at"),
        Index("idx_orders_combined", "combined_order_id", "shop_id"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    order_type = Column(String(20), nullable=False, default=ORDER_TYPE_REGULAR)
    user_id = Column(String(36), ForeignKey("users.id"))
    shopper_id = Column(String(36), ForeignKey("shoppers.id"), nullable=True)
    shop_id = Column(String(36), ForeignKey("shops.id"), nullable=True)
    address_id = Column(String(36), ForeignKey("addresses.id"), nullable=False)
    status = Column(String(20), nullable=False, default=ORDER_PENDING)
    total = Column(Numeric(10, 2), nullable=False, default=0)
    service_fee = Column(Numeric(10, 2), default=0)
    delivery_fee = Column(Numeric(10, 2), default=0)
    quantity = Column(Integer)
    source_name = Column(String(255))  # Reel title or restaurant name when there is no shop
    combined_order_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    assigned_at = Column(DateTime, nullable=True)

    shop = relationship("Shop")
    address = relationship("Address")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    offers = relationship("OrderOffer", back_populates="order", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Order {self.id} {self.order_type} {self.status}>"


class OrderItem(Base):
    """Line item; price is the base (shop) price, final_price what the customer pays"""
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_name = Column(String(255))
    price = Column(Numeric(10, 2), nullable=False)
    final_price = Column(Numeric(10, 2))
    quantity = Column(Integer, nullable=False, default=1)

    order = relationship("Order", back_populates="items")


class OrderOffer(Base):
    """Exclusive offer of one order to one shopper for a limited time"""
    __tablename__ = "order_offers"
    __table_args__ = (
        Index("idx_offers_status_expires", "status", "expires_at"),
        Index("idx_offers_order", "order_id"),
        Index("idx_offers_shopper_status", "shopper_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False)
    shopper_id = Column(String(36), ForeignKey("shoppers.id"), nullable=False)
    order_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=OFFER_OFFERED)
    offered_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    round_number = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="offers")
    shopper = relationship("Shopper")

    def __repr__(self):
        return f"<OrderOffer {self.id} {self.status} round={self.round_number}>"


class Rating(Base):
    __tablename__ = "ratings"

    id = Column(String(36), primary_key=True, default=new_id)
    shopper_id = Column(String(36), ForeignKey("shoppers.id"), nullable=False, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"))
    rating = Column(Integer, nullable=False)  # 1..5
    created_at = Column(DateTime, default=utcnow)


class Wallet(Base):
    """Shopper wallet: available earnings and money reserved for order goods"""
    __tablename__ = "wallets"

    id = Column(String(36), primary_key=True, default=new_id)
    shopper_id = Column(String(36), ForeignKey("shoppers.id"), unique=True, nullable=False)
    available_balance = Column(Numeric(10, 2), nullable=False, default=0)
    reserved_balance = Column(Numeric(10, 2), nullable=False, default=0)
    last_updated = Column(DateTime, default=utcnow, onupdate=utcnow)

    shopper = relationship("Shopper", back_populates="wallet")
    transactions = relationship("WalletTransaction", back_populates="wallet", cascade="all, delete-orphan")


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id = Column(String(36), primary_key=True, default=new_id)
    wallet_id = Column(String(36), ForeignKey("wallets.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    type = Column(String(20), nullable=False)  # 'reserve', 'earnings', 'expense', 'refund'
    status = Column(String(20), nullable=False, default="completed")
    related_order_id = Column(String(36), ForeignKey("orders.id"))
    description = Column(String(255))
    created_at = Column(DateTime, default=utcnow)

    wallet = relationship("Wallet", back_populates="transactions")


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"))
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    reason = Column(String(255))
    generated_by = Column(String(50))
    paid = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class FCMToken(Base):
    """Firebase Cloud Messaging registration token for one device"""
    __tablename__ = "fcm_tokens"

    token = Column(String(512), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    platform = Column(String(20), nullable=False, default="web")  # 'web', 'android', 'ios'
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    last_used = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="fcm_tokens")


class SystemLog(Base):
    """Persisted warning/error log line"""
    __tablename__ = "system_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    time = Column(DateTime, default=utcnow, index=True)
    level = Column(String(20), nullable=False)
    component = Column(String(100))
    message = Column(Text, nullable=False)
    details = Column(Text)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "time": self.time.isoformat() if self.time else None,
            "level": self.level,
            "component": self.component,
            "message": self.message,
            "details": self.details,
        }
