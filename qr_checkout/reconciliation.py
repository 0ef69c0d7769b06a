"""Order/payment state transitions shared by webhooks and the QR entry points.

Writes are keyed by the gateway payment-intent id (or the idempotency key),
so replaying the same confirmation converges on the same rows. Failure
handling only touches orders that are still pending, so a late failure can
never undo a confirmed payment.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from qr_checkout.config import ABANDONED_ORDER_TIMEOUT_MINUTES
from qr_checkout.data_service import DataService, DataServiceError, new_id
from qr_checkout.models import Order, OrderStatus, Payment, PaymentStatus, utcnow
from qr_checkout.order_writer import delete_order_rows

logger = logging.getLogger(__name__)

DEFINITIVE_FAILURES = (
    "insufficient_funds",
    "card_declined",
    "expired_card",
    "incorrect_cvc",
    "processing_error",
    "invalid_request",
    "timeout",
)

# Statuses a confirmation may overwrite; refunded/disputed rows stay put.
_CONFIRMABLE = (None, PaymentStatus.PENDING, PaymentStatus.FAILED)


@dataclass
class CleanupResult:
    success: bool
    action: str                     # deleted | cancelled | skipped | not_found | failed
    error: Optional[str] = None


def promote_order_after_payment(data: DataService, order: Order) -> str:
    """Move an order out of pending once its payment is completed.

    Payment can land after the food was served, in which case the order is
    finished outright.
    """
    if order.status == OrderStatus.SERVED:
        target = OrderStatus.COMPLETED
    elif order.status in (OrderStatus.PENDING, OrderStatus.CANCELLED):
        target = OrderStatus.PREPARING
    else:
        return order.status
    data.update_order(order, status=target)
    logger.info("Order %s moved to %s after payment", order.id, target)
    return target


def _find_existing_payment(data: DataService, order: Order, payment_intent_id: Optional[str],
                           idempotency_key: Optional[str]) -> Optional[Payment]:
    if payment_intent_id:
        payment = data.payment_by_gateway_id(payment_intent_id)
        if payment is not None:
            return payment
    if idempotency_key:
        payment = data.payment_by_idempotency_key(idempotency_key)
        if payment is not None:
            return payment
    payments = data.payments_for_order(order.id)
    return payments[0] if payments else None


def record_completed_payment(data: DataService, order: Order, method: str,
                             payment_intent_id: Optional[str] = None,
                             amount: Optional[float] = None,
                             idempotency_key: Optional[str] = None) -> Payment:
    """Upsert the order's payment as completed and promote the order."""
    payment = _find_existing_payment(data, order, payment_intent_id, idempotency_key)

    if payment is None:
        key = idempotency_key or (payment_intent_id and f"pi_{payment_intent_id}") or f"{method}_{order.id}"
        payment = Payment(
            id=new_id(),
            restaurant_id=order.restaurant_id,
            order_id=order.id,
            amount=amount if amount is not None else order.total_amount,
            currency=(order.restaurant.currency if order.restaurant else None) or "CHF",
            status=PaymentStatus.COMPLETED,
            method=method,
            stripe_payment_id=payment_intent_id,
            idempotency_key=key,
            payment_metadata={"idempotency_key": key, "table_id": order.table_id, "source": "qr"},
        )
        try:
            data.insert_payment(payment)
            logger.info("Recorded %s payment %s for order %s", method, payment.id, order.id)
        except DataServiceError as exc:
            if not exc.is_duplicate or not payment_intent_id:
                raise
            logger.info("Payment for intent %s already recorded", payment_intent_id)
            payment = data.payment_by_gateway_id(payment_intent_id)
    elif payment.status in _CONFIRMABLE:
        data.update_payment(
            payment,
            status=PaymentStatus.COMPLETED,
            stripe_payment_id=payment_intent_id or payment.stripe_payment_id,
        )
        logger.info("Payment %s for order %s marked completed", payment.id, order.id)
    else:
        logger.info("Payment %s for order %s already %s", payment.id, order.id, payment.status)

    promote_order_after_payment(data, order)
    return payment


def has_settled_payment(data: DataService, order_id: str) -> bool:
    return any(p.status in PaymentStatus.SETTLED for p in data.payments_for_order(order_id))


def is_definitive_failure(message: Optional[str]) -> bool:
    normalized = re.sub(r"[\s\-]+", "_", (message or "").lower())
    return any(marker in normalized for marker in DEFINITIVE_FAILURES)


def _delete(data: DataService, order: Order) -> CleanupResult:
    order_id = order.id
    if delete_order_rows(data, order_id):
        logger.info("Deleted failed order %s", order_id)
        return CleanupResult(True, "deleted")
    return CleanupResult(False, "failed", error="Failed to clean up order")


def cleanup_failed_order(data: DataService, order_id: str, message: Optional[str],
                         now: Optional[datetime] = None) -> CleanupResult:
    """Undo an order whose payment did not go through.

    Orders past the abandonment timeout are reaped whatever the failure;
    otherwise definitive card failures delete the order and anything else
    marks it cancelled. Orders holding a completed, refunded or disputed
    payment are never touched.
    """
    order = data.get_order(order_id)
    if order is None:
        return CleanupResult(True, "not_found")

    if has_settled_payment(data, order_id):
        logger.info("Order %s has a settled payment, ignoring failure: %s", order_id, message)
        return CleanupResult(True, "skipped")

    now = now or utcnow()
    if order.created_at and now - order.created_at > timedelta(minutes=ABANDONED_ORDER_TIMEOUT_MINUTES):
        logger.info("Order %s exceeded the %d minute timeout, reaping", order_id, ABANDONED_ORDER_TIMEOUT_MINUTES)
        return _delete(data, order)

    if order.status != OrderStatus.PENDING:
        logger.info("Order %s is %s, ignoring failure: %s", order_id, order.status, message)
        return CleanupResult(True, "skipped")

    if is_definitive_failure(message):
        return _delete(data, order)

    try:
        data.update_order(order, status=OrderStatus.CANCELLED)
    except DataServiceError as exc:
        logger.error("Could not cancel order %s: %s", order_id, exc)
        return CleanupResult(False, "failed", error="Failed to update order status")
    logger.info("Order %s cancelled after payment failure: %s", order_id, message)
    return CleanupResult(True, "cancelled")
