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

from qr_checkout.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def Money(**kwargs):
    return Column(Numeric(10, 2, asdecimal=False), **kwargs)


class OrderStatus:
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    DISPUTED = "disputed"

    # Money has moved; these rows are financial records
    SETTLED = (COMPLETED, REFUNDED, DISPUTED)


class PaymentMethod:
    CARD = "card"
    CASH = "cash"
    OTHER = "other"


class Restaurant(Base):
    __tablename__ = "restaurants"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String)
    phone = Column(String)
    address = Column(String)
    currency = Column(String, default="CHF")
    stripe_account_id = Column(String, index=True)          # Connected account
    stripe_account_enabled = Column(Boolean, default=False)
    stripe_account_requirements = Column(JSON)
    stripe_customer_id = Column(String, index=True)         # Billing customer
    subscription_status = Column(String)
    commission_rate = Column(Numeric(5, 4, asdecimal=False))
    payment_methods = Column(JSON)                          # {"cardEnabled": bool, "cashEnabled": bool}
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class MenuItem(Base):
    __tablename__ = "menu_items"

    id = Column(String, primary_key=True)
    restaurant_id = Column(String, ForeignKey("restaurants.id"), index=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    price = Money()
    preparation_time = Column(Integer)                      # minutes


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("restaurant_id", "order_number", name="uq_orders_restaurant_order_number"),
    )

    id = Column(String, primary_key=True)
    restaurant_id = Column(String, ForeignKey("restaurants.id"), index=True, nullable=False)
    table_id = Column(String, index=True, nullable=False)
    order_number = Column(String)
    status = Column(String, default=OrderStatus.PENDING, index=True)
    payment_method = Column(String)
    subtotal_amount = Money()
    tax_amount = Money(default=0)
    tip_amount = Money(default=0)
    total_amount = Money()
    customer_name = Column(String)
    customer_email = Column(String)
    notes = Column(Text)
    stripe_session_id = Column(String, index=True)
    stripe_payment_intent_id = Column(String, index=True)
    estimated_prep_time = Column(Integer)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", lazy="selectin")
    restaurant = relationship("Restaurant", lazy="joined")

    @property
    def display_number(self) -> str:
        if self.order_number:
            return self.order_number
        return f"#{self.id[-8:].upper()}"


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    menu_item_id = Column(String, index=True)
    name = Column(String)
    unit_price = Money()
    quantity = Column(Integer)
    total_price = Money()
    size = Column(String)
    modifiers = Column(JSON)
    combo_meal_id = Column(String)
    created_at = Column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="items")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True)
    restaurant_id = Column(String, index=True)
    # Not unique: legacy data can hold more than one row per order
    order_id = Column(String, index=True)
    amount = Money()
    currency = Column(String)
    status = Column(String)                                 # pending | completed | failed | refunded | disputed
    method = Column(String)                                 # card | cash | other
    stripe_payment_id = Column(String, unique=True)         # PaymentIntent ID
    stripe_refund_id = Column(String)
    idempotency_key = Column(String, index=True)
    payment_metadata = Column("metadata", JSON)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True)
    restaurant_id = Column(String, ForeignKey("restaurants.id"), index=True)
    stripe_customer_id = Column(String)
    stripe_subscription_id = Column(String, unique=True, nullable=False)
    plan = Column(String)
    interval = Column(String)
    status = Column(String)
    current_period_start = Column(DateTime)
    current_period_end = Column(DateTime)
    trial_start = Column(DateTime)
    trial_end = Column(DateTime)
    cancel_at = Column(DateTime)
    canceled_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
