"""
Restaurant Payments Core - Order Database Models

The order row is owned by the ordering service. Reconciliation reads the
pricing inputs snapshotted at checkout and writes only the payment facet,
the loyalty award granted on settlement and the pending → confirmed nudge.

Tables:
- orders: one row per customer order (or per table-payment bundle)
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Index, JSON
)

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== ENUMS ====================

class OrderStatus(str, PyEnum):
    """Order lifecycle status (owned by the ordering service)"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    DELIVERING = "delivering"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, PyEnum):
    """Payment facet status"""
    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, PyEnum):
    CASH = "cash"
    BANKING = "banking"
    CARD = "card"
    MOMO = "momo"
    ZALOPAY = "zalopay"


class DeliveryType(str, PyEnum):
    DELIVERY = "delivery"
    PICKUP = "pickup"
    DINE_IN = "dine_in"


class MembershipTier(str, PyEnum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


# Both values mean "still waiting for the transfer"
AWAITING_PAYMENT_STATUSES = (
    PaymentStatus.PENDING.value,
    PaymentStatus.AWAITING_PAYMENT.value,
)


# ==================== DATABASE MODELS ====================

class OrderDB(Base):
    """
    Customer order.

    Contains:
    - Identity (order number, customer)
    - Pricing inputs as captured at checkout (items, delivery type, tier, coupon)
    - Stored pricing breakdown (whole VND)
    - Payment facet
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    order_number = Column(String(40), nullable=False, unique=True, index=True)

    # Customer (guests have no customer_id)
    customer_id = Column(String(36), nullable=True, index=True)
    customer_name = Column(String(200), nullable=True)
    customer_phone = Column(String(30), nullable=True)
    customer_tier = Column(String(20), nullable=False, default=MembershipTier.BRONZE.value)

    status = Column(String(50), nullable=False, default=OrderStatus.PENDING.value, index=True)

    # Pricing inputs
    # items: [{"name": "...", "price": 100000, "quantity": 2}, ...]
    items = Column(JSON, nullable=False, default=list)
    delivery_type = Column(String(20), nullable=False, default=DeliveryType.DELIVERY.value)
    # coupon: snapshot of the coupon as validated at checkout, or null
    coupon = Column(JSON, nullable=True)

    # Stored pricing breakdown
    subtotal = Column(Integer, nullable=False, default=0)
    tax = Column(Integer, nullable=False, default=0)
    delivery_fee = Column(Integer, nullable=False, default=0)
    membership_discount = Column(Integer, nullable=False, default=0)
    coupon_discount = Column(Integer, nullable=False, default=0)
    discount = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False, default=0)

    # Payment facet
    payment_method = Column(String(20), nullable=False, default=PaymentMethod.BANKING.value)
    payment_status = Column(String(30), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    payment_transaction_id = Column(String(100), nullable=True, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    loyalty_points_awarded = Column(Integer, nullable=False, default=0)

    # Table payments settle several dine-in orders with one transfer
    is_table_payment = Column(Boolean, nullable=False, default=False)
    original_order_ids = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_orders_payment_status_created', 'payment_status', 'created_at'),
    )

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID.value

    @property
    def is_awaiting_payment(self) -> bool:
        return self.payment_status in AWAITING_PAYMENT_STATUSES

    def pricing_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "tax": self.tax,
            "delivery_fee": self.delivery_fee,
            "membership_discount": self.membership_discount,
            "coupon_discount": self.coupon_discount,
            "discount": self.discount,
            "total": self.total,
        }
