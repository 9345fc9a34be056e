"""
SQLAlchemy Database Models

Tables for the ordering core:
- Users with a wallet balance
- Menu items with a shared stock counter
- Coupons and per-user coupon redemptions
- Orders and their line items (order_details)

Every row that the lifecycle engine mutates carries a ``version`` column
used by SQLAlchemy's optimistic version check.

Author: Khalil Bannouri
Version: 4.0.0
"""

import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from backend.database import Base

# Money columns: 10 digits, 2 decimal places
Money = Numeric(10, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class ItemSize(str, enum.Enum):
    SMALL = "small"
    LARGE = "large"


class DineOption(str, enum.Enum):
    DINE_IN = "dine_in"
    TAKEAWAY = "takeaway"


class User(Base):
    """
    Customer account and wallet.

    ``balance`` is only ever changed through the WalletLedger.
    """
    __tablename__ = "users"

    user_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=True, unique=True)
    role = Column(String(20), nullable=False, default="USER")
    balance = Column(Money, nullable=False, default=Decimal("0.00"))
    registration_date = Column(DateTime(timezone=True), default=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<User #{self.user_id} - {self.name} - balance {self.balance}>"


class MenuItem(Base):
    """
    A dish on a store's menu.

    ``stock`` is shared by every order of the store and is only ever
    changed through the InventoryLedger.
    """
    __tablename__ = "menu_items"

    item_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    store_id = Column(Integer, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=True)
    small_price = Column(Money, nullable=False)
    large_price = Column(Money, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def price_for(self, size: ItemSize) -> Decimal:
        return self.small_price if size == ItemSize.SMALL else self.large_price

    def __repr__(self):
        return f"<MenuItem #{self.item_id} - {self.name} - stock {self.stock}>"


class Coupon(Base):
    __tablename__ = "coupons"

    coupon_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String(12), nullable=False, unique=True, index=True)
    discount = Column(Money, nullable=False)
    min_purchase = Column(Money, nullable=False, default=Decimal("0.00"))
    expiration_date = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<Coupon {self.code} - {self.discount} off over {self.min_purchase}>"


class UserCoupon(Base):
    """
    A coupon handed to a user.

    ``is_used`` only ever moves from False to True, in the same transaction
    that debits the wallet for the order it was applied to.
    A coupon is handed out at most once, enforced by a unique coupon_id.
    """
    __tablename__ = "user_coupons"

    user_coupon_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False, index=True)
    coupon_id = Column(Integer, ForeignKey("coupons.coupon_id"), nullable=False, index=True)
    is_used = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False)

    __table_args__ = (UniqueConstraint("coupon_id", name="uq_user_coupons_coupon_id"),)
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<UserCoupon #{self.user_coupon_id} - user {self.user_id} - used {self.is_used}>"


class Order(Base):
    """
    Order aggregate root.

    Owns its line items; ``total_price`` is always recomputed from them
    minus ``discount``.
    """
    __tablename__ = "orders"

    order_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False, index=True)
    store_id = Column(Integer, nullable=False, index=True)

    status = Column(
        Enum(OrderStatus),
        default=OrderStatus.CREATED,
        nullable=False,
        index=True
    )

    # =========================================================================
    # PRICING
    # =========================================================================
    total_price = Column(Money, nullable=False, default=Decimal("0.00"))
    discount = Column(Money, nullable=False, default=Decimal("0.00"))
    user_coupon_id = Column(Integer, ForeignKey("user_coupons.user_coupon_id"), nullable=True)

    # =========================================================================
    # DETAILS
    # =========================================================================
    order_time = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    notes = Column(Text, nullable=True)
    dine_option = Column(Enum(DineOption), nullable=False, default=DineOption.DINE_IN)

    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    details = relationship(
        "OrderDetail",
        back_populates="order",
        order_by="OrderDetail.detail_id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Order #{self.order_id} - user {self.user_id} - {self.status.value} - {self.total_price}>"


class OrderDetail(Base):
    """
    A line item. ``unit_price`` is a snapshot of the menu price at add time.
    """
    __tablename__ = "order_details"

    detail_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.order_id"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("menu_items.item_id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)
    size = Column(Enum(ItemSize), nullable=False)
    special_requests = Column(String(200), nullable=True)

    order = relationship("Order", back_populates="details")

    def __repr__(self):
        return f"<OrderDetail #{self.detail_id} - item {self.item_id} x{self.quantity}>"
