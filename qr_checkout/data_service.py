"""Transactional data access for orders, payments, restaurants and subscriptions.

Every write commits on its own and translates SQLAlchemy failures into
``DataServiceError`` so callers can branch on ``is_duplicate`` without
knowing about the driver.
"""
import logging
import time
import uuid
from datetime import timedelta
from typing import Iterable, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from qr_checkout.config import ATOMIC_ORDER_CREATE
from qr_checkout.models import (
    MenuItem,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    Restaurant,
    Subscription,
    utcnow,
)

logger = logging.getLogger(__name__)

LIVE_SUBSCRIPTION_STATUSES = ("active", "trialing", "past_due")


class DataServiceError(Exception):
    def __init__(self, message: str, code: str = "data_error", constraint: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.constraint = constraint

    @property
    def is_duplicate(self) -> bool:
        return self.code == "duplicate_key"

    @classmethod
    def from_exception(cls, exc: SQLAlchemyError) -> "DataServiceError":
        detail = str(getattr(exc, "orig", None) or exc)
        if isinstance(exc, IntegrityError) and ("unique" in detail.lower() or "duplicate" in detail.lower()):
            return cls(detail, code="duplicate_key", constraint=detail)
        return cls(detail)


def new_id() -> str:
    return str(uuid.uuid4())


class DataService:
    def __init__(self, db: Session, atomic_create: bool = ATOMIC_ORDER_CREATE):
        self.db = db
        self.supports_atomic_create = atomic_create

    def _commit(self, *rows):
        try:
            for row in rows:
                self.db.add(row)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DataServiceError.from_exception(exc) from exc

    def _delete(self, query) -> int:
        try:
            count = query.delete(synchronize_session=False)
            self.db.commit()
            return count
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DataServiceError.from_exception(exc) from exc

    def save(self, *rows):
        self._commit(*rows)

    # Restaurants & menu

    def get_restaurant(self, restaurant_id: str) -> Optional[Restaurant]:
        return self.db.get(Restaurant, restaurant_id)

    def restaurant_by_customer_id(self, customer_id: str) -> Optional[Restaurant]:
        return self.db.query(Restaurant).filter_by(stripe_customer_id=customer_id).first()

    def restaurant_by_account_id(self, account_id: str) -> Optional[Restaurant]:
        return self.db.query(Restaurant).filter_by(stripe_account_id=account_id).first()

    def preparation_times(self, menu_item_ids: Iterable[str]) -> dict:
        ids = list(set(menu_item_ids))
        rows = self.db.query(MenuItem.id, MenuItem.preparation_time).filter(MenuItem.id.in_(ids)).all()
        return {row.id: row.preparation_time for row in rows}

    # Orders

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def order_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        return self.db.query(Order).filter_by(stripe_payment_intent_id=payment_intent_id).first()

    def order_by_session(self, session_id: str) -> Optional[Order]:
        return self.db.query(Order).filter_by(stripe_session_id=session_id).first()

    def find_recent_pending_order(self, table_id: str, window_minutes: int) -> Optional[Order]:
        since = utcnow() - timedelta(minutes=window_minutes)
        return (
            self.db.query(Order)
            .filter(Order.table_id == table_id, Order.status == OrderStatus.PENDING, Order.created_at >= since)
            .order_by(Order.created_at.desc())
            .first()
        )

    def generate_order_number(self, restaurant_id: str) -> str:
        now = utcnow()
        prefix = f"ORD-{now.year}-"
        # Six-digit suffixes only; fallback numbers share the prefix
        try:
            highest = (
                self.db.query(func.max(Order.order_number))
                .filter(Order.restaurant_id == restaurant_id, Order.order_number.like(f"{prefix}______"))
                .scalar()
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DataServiceError.from_exception(exc) from exc
        last = int(highest[len(prefix):]) if highest and highest[len(prefix):].isdigit() else 0
        return f"{prefix}{last + 1:06d}"

    @staticmethod
    def fallback_order_number() -> str:
        return f"ORD-{utcnow().year}-{int(time.time() * 1000)}"

    def create_order_with_items(self, order: Order, items: List[OrderItem], payment: Optional[Payment] = None):
        """Single-transaction insert of an order, its items and optional payment."""
        rows = [order, *items]
        if payment is not None:
            rows.append(payment)
        try:
            self.db.add(order)
            self.db.flush()
            self.db.add_all(rows[1:])
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DataServiceError.from_exception(exc) from exc

    def insert_order(self, order: Order):
        self._commit(order)

    def insert_order_items(self, items: List[OrderItem]):
        self._commit(*items)

    def update_order(self, order: Order, **changes):
        for key, value in changes.items():
            setattr(order, key, value)
        self._commit(order)

    def delete_order_items(self, order_id: str) -> int:
        return self._delete(self.db.query(OrderItem).filter(OrderItem.order_id == order_id))

    def delete_order(self, order_id: str) -> int:
        return self._delete(self.db.query(Order).filter(Order.id == order_id))

    # Payments

    def insert_payment(self, payment: Payment):
        self._commit(payment)

    def update_payment(self, payment: Payment, **changes):
        for key, value in changes.items():
            setattr(payment, key, value)
        self._commit(payment)

    def payments_for_order(self, order_id: str) -> List[Payment]:
        payments = (
            self.db.query(Payment)
            .filter(Payment.order_id == order_id)
            .order_by(Payment.created_at.desc())
            .all()
        )
        if len(payments) > 1:
            logger.warning("Order %s has %d payment rows; using the most recent", order_id, len(payments))
        return payments

    def payment_by_gateway_id(self, payment_intent_id: str) -> Optional[Payment]:
        return self.db.query(Payment).filter_by(stripe_payment_id=payment_intent_id).first()

    def payment_by_idempotency_key(self, key: str) -> Optional[Payment]:
        return (
            self.db.query(Payment)
            .filter_by(idempotency_key=key)
            .order_by(Payment.created_at.asc())
            .first()
        )

    def delete_payments(self, order_id: str) -> int:
        """Delete the order's unsettled payment rows; settled ones are kept."""
        return self._delete(
            self.db.query(Payment).filter(
                Payment.order_id == order_id,
                or_(Payment.status.is_(None), Payment.status.notin_(PaymentStatus.SETTLED)),
            )
        )

    # Subscriptions

    def subscription_by_gateway_id(self, subscription_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter_by(stripe_subscription_id=subscription_id).first()

    def other_live_subscription(self, restaurant_id: str, excluding_subscription_id: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.restaurant_id == restaurant_id,
                Subscription.stripe_subscription_id != excluding_subscription_id,
                Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
            )
            .first()
        )
