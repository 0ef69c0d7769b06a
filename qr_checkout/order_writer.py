"""The one place orders, their items and cash payments get written."""
import logging
import math
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from qr_checkout.config import (
    DEFAULT_PREP_MINUTES,
    DUPLICATE_ORDER_WINDOW_MINUTES,
    MAX_CREATE_ATTEMPTS,
    MAX_PREP_MINUTES,
    MIN_PREP_MINUTES,
    PREP_BUFFER_RATIO,
    PREP_PLATING_MINUTES,
    PREP_SEQUENTIAL_RATIO,
)
from qr_checkout.data_service import DataService, DataServiceError, new_id
from qr_checkout.models import (
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Restaurant,
    utcnow,
)
from qr_checkout.retry import exponential_backoff, linear_backoff, no_backoff, with_retry
from qr_checkout.schemas import OrderItemData, QRPaymentData
from qr_checkout.validation import validate_order_payload

logger = logging.getLogger(__name__)

DUPLICATE_PENDING_ORDER = "You already have a pending order. Please wait for it to be processed."


@dataclass
class OrderWriteResult:
    success: bool
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    payment_id: Optional[str] = None
    error: Optional[str] = None


def estimate_preparation_time(data: DataService, items: List[OrderItemData]) -> int:
    """Minutes until the order should be ready.

    Items cook in parallel, so the slowest one sets the base. Falls back to
    the default when any menu item cannot be looked up.
    """
    try:
        times = data.preparation_times(item.id for item in items)
    except SQLAlchemyError:
        logger.exception("Preparation time lookup failed")
        return DEFAULT_PREP_MINUTES

    if not items or any(not times.get(item.id) for item in items):
        return DEFAULT_PREP_MINUTES

    longest = max(times[item.id] for item in items)
    estimate = longest * (1 + PREP_BUFFER_RATIO) + PREP_PLATING_MINUTES
    if len({item.id for item in items}) > 1:
        estimate += PREP_SEQUENTIAL_RATIO * sum(times[item.id] * item.quantity for item in items)
    return int(min(max(math.ceil(round(estimate, 2)), MIN_PREP_MINUTES), MAX_PREP_MINUTES))


def delete_order_rows(data: DataService, order_id: str) -> bool:
    """Remove an order's items, payments and then the order itself."""
    steps = (
        ("order items", data.delete_order_items),
        ("payments", data.delete_payments),
        ("order", data.delete_order),
    )
    for label, step in steps:
        result = with_retry(
            lambda step=step: step(order_id),
            max_attempts=3,
            backoff=linear_backoff(),
            label=f"delete {label} for order {order_id}",
        )
        if not result.success:
            logger.error("Could not delete %s for order %s: %s", label, order_id, result.error)
            return False
    return True


def _order_number(data: DataService, restaurant_id: str) -> str:
    result = with_retry(
        lambda: data.generate_order_number(restaurant_id),
        max_attempts=3,
        backoff=exponential_backoff(),
        label="order number generation",
    )
    if result.success:
        return result.value
    number = data.fallback_order_number()
    logger.info("Using fallback order number %s", number)
    return number


def _build_rows(payload: QRPaymentData, restaurant: Restaurant, method: str, order_id: str,
                order_number: str, prep_minutes: int, idempotency_key: Optional[str]):
    order = Order(
        id=order_id,
        restaurant_id=restaurant.id,
        table_id=payload.table_id,
        order_number=order_number,
        status=OrderStatus.PENDING,
        payment_method=method,
        subtotal_amount=payload.subtotal,
        tax_amount=payload.tax,
        tip_amount=payload.tip,
        total_amount=payload.total,
        customer_name=payload.customer_name or None,
        customer_email=payload.email or None,
        notes=payload.special_instructions or None,
        estimated_prep_time=prep_minutes,
        created_at=utcnow(),
    )
    items = [
        OrderItem(
            id=new_id(),
            order_id=order_id,
            menu_item_id=item.id,
            name=item.name,
            unit_price=item.price,
            quantity=item.quantity,
            total_price=round(item.price * item.quantity, 2),
            size=item.size,
            modifiers=item.modifiers or None,
            combo_meal_id=item.combo_meal_id,
        )
        for item in payload.items
    ]

    payment = None
    if method == PaymentMethod.CASH:
        key = idempotency_key or f"cash_{order_id}"
        payment = Payment(
            id=new_id(),
            restaurant_id=restaurant.id,
            order_id=order_id,
            amount=payload.total,
            currency=restaurant.currency or "CHF",
            status=PaymentStatus.PENDING,
            method=PaymentMethod.CASH,
            idempotency_key=key,
            payment_metadata={"idempotency_key": key, "table_id": payload.table_id, "source": "qr"},
        )
    return order, items, payment


def _create_atomically(data: DataService, order: Order, items: List[OrderItem], payment: Optional[Payment]):
    data.create_order_with_items(order, items, payment)


def _create_stepwise(data: DataService, order: Order, items: List[OrderItem], payment: Optional[Payment]):
    data.insert_order(order)

    try:
        data.insert_order_items(items)
    except DataServiceError:
        logger.error("Order items insert failed for order %s, removing order", order.id)
        delete_order_rows(data, order.id)
        raise

    if payment is None:
        return
    try:
        data.insert_payment(payment)
    except DataServiceError as exc:
        if exc.is_duplicate:
            logger.info("Payment for order %s already recorded", order.id)
            return
        logger.error("Payment insert failed for order %s, removing order", order.id)
        delete_order_rows(data, order.id)
        raise


def _is_collision(exc: Exception) -> bool:
    return isinstance(exc, DataServiceError) and exc.is_duplicate


def _is_number_collision(exc: DataServiceError) -> bool:
    return exc.is_duplicate and "order_number" in (exc.constraint or str(exc))


def create_order(data: DataService, payload: QRPaymentData, method: str,
                 idempotency_key: Optional[str] = None) -> OrderWriteResult:
    validation = validate_order_payload(payload)
    if not validation.is_valid:
        return OrderWriteResult(False, error="; ".join(validation.errors))

    # Read-then-write window check; two simultaneous submissions can both pass.
    existing = data.find_recent_pending_order(payload.table_id, DUPLICATE_ORDER_WINDOW_MINUTES)
    if existing is not None:
        logger.info("Duplicate order prevented for table %s: pending order %s exists",
                    payload.table_id, existing.id)
        return OrderWriteResult(False, error=DUPLICATE_PENDING_ORDER)

    restaurant = data.get_restaurant(payload.restaurant_id)
    if restaurant is None:
        return OrderWriteResult(False, error="Restaurant not found")

    prep_minutes = estimate_preparation_time(data, payload.items)
    numbering = {"fallback": False}

    def write(order_id, order_number):
        order, items, payment = _build_rows(
            payload, restaurant, method, order_id, order_number, prep_minutes, idempotency_key
        )
        payment_id = payment.id if payment is not None else None
        if data.supports_atomic_create:
            try:
                _create_atomically(data, order, items, payment)
                return payment_id
            except DataServiceError as exc:
                if exc.is_duplicate:
                    raise
                logger.warning("Atomic order create failed (%s), falling back to stepwise insert", exc)
            order, items, payment = _build_rows(
                payload, restaurant, method, order_id, order_number, prep_minutes, idempotency_key
            )
            payment_id = payment.id if payment is not None else None
        _create_stepwise(data, order, items, payment)
        return payment_id

    def attempt():
        order_id = new_id()
        if numbering["fallback"]:
            order_number = data.fallback_order_number()
        else:
            order_number = _order_number(data, restaurant.id)
        try:
            payment_id = write(order_id, order_number)
        except DataServiceError as exc:
            if _is_number_collision(exc):
                logger.warning("Order number %s already taken, switching to fallback numbering", order_number)
                numbering["fallback"] = True
            raise
        return order_id, order_number, payment_id

    result = with_retry(
        attempt,
        max_attempts=MAX_CREATE_ATTEMPTS,
        backoff=no_backoff,
        should_retry=_is_collision,
        label="order creation",
    )
    if not result.success:
        if _is_collision(result.error):
            return OrderWriteResult(False, error="Failed to create order after multiple attempts")
        logger.error("Order creation failed for table %s: %s", payload.table_id, result.error)
        return OrderWriteResult(False, error="Failed to create order")

    order_id, order_number, payment_id = result.value
    logger.info("Created %s order %s (%s) for table %s", method, order_id, order_number, payload.table_id)
    return OrderWriteResult(True, order_id=order_id, order_number=order_number, payment_id=payment_id)
