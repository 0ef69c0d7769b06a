"""QR ordering entry points.

Every function takes an explicit database session and returns either a
success payload or ``{"error": <sentence>}`` that the UI shows as is.
Unexpected exceptions stop here: they are logged in full and converted to a
generic message.
"""
import logging
import uuid
from typing import Any, Mapping, Optional

import stripe
from sqlalchemy.orm import Session

from qr_checkout import stripe_service
from qr_checkout.checkout import create_checkout_session
from qr_checkout.data_service import DataService
from qr_checkout.eligibility import check_eligibility
from qr_checkout.models import OrderStatus, PaymentMethod, PaymentStatus
from qr_checkout.order_writer import create_order, delete_order_rows
from qr_checkout.reconciliation import cleanup_failed_order, record_completed_payment
from qr_checkout.schemas import GatewayMetadata, QRPaymentData
from qr_checkout.validation import validate_order_payload

logger = logging.getLogger(__name__)


def _payment_settings(restaurant) -> dict:
    settings = restaurant.payment_methods or {}
    return {
        "cardEnabled": settings.get("cardEnabled", True),
        "cashEnabled": settings.get("cashEnabled", True),
    }


def _failure_message(error: Optional[Mapping[str, Any]], fallback: str) -> str:
    if not error:
        return fallback
    return error.get("decline_code") or error.get("code") or error.get("message") or fallback


def create_qr_payment_intent(db: Session, payload: QRPaymentData) -> dict:
    data = DataService(db)
    try:
        validation = validate_order_payload(payload)
        if not validation.is_valid:
            return {"error": "; ".join(validation.errors)}

        eligibility = check_eligibility(data, payload.restaurant_id, payload.total)
        if not eligibility.is_valid:
            return {"error": eligibility.error}

        idempotency_key = payload.idempotency_key or f"qr_{payload.table_id}_{uuid.uuid4().hex}"
        existing = data.payment_by_idempotency_key(idempotency_key)
        if existing is not None:
            logger.info("Idempotency key %s already used by payment %s", idempotency_key, existing.id)
            return {
                "error": "This order has already been paid.",
                "order_id": existing.order_id,
                "payment_id": existing.id,
            }

        written = create_order(data, payload, PaymentMethod.CARD)
        if not written.success:
            return {"error": written.error}

        try:
            checkout = create_checkout_session(payload, eligibility.merchant, written.order_id, idempotency_key)
            if checkout.success:
                session = checkout.session
                data.update_order(data.get_order(written.order_id), stripe_session_id=session.id)
        except Exception:
            logger.info("Removing order %s after checkout error", written.order_id)
            delete_order_rows(data, written.order_id)
            raise
        if not checkout.success:
            logger.info("Removing order %s after checkout failure", written.order_id)
            delete_order_rows(data, written.order_id)
            return {"error": checkout.error}

        logger.info("QR card checkout started: order=%s session=%s table=%s amount=%.2f",
                    written.order_id, session.id, payload.table_id, payload.total)
        return {"checkout_url": session.url, "order_id": written.order_id, "session_id": session.id}
    except Exception:
        logger.exception("Error creating QR payment for table %s", payload.table_id)
        return {"error": "Failed to start payment. Please try again or pay at the counter."}


def create_cash_order(db: Session, payload: QRPaymentData) -> dict:
    data = DataService(db)
    try:
        if payload.idempotency_key:
            existing = data.payment_by_idempotency_key(payload.idempotency_key)
            if existing is not None:
                logger.info("Cash order replay for key %s, returning payment %s",
                            payload.idempotency_key, existing.id)
                return {
                    "success": True,
                    "order_id": existing.order_id,
                    "payment_id": existing.id,
                    "message": "Order already submitted",
                }

        restaurant = data.get_restaurant(payload.restaurant_id) if payload.restaurant_id else None
        if restaurant is not None and not _payment_settings(restaurant)["cashEnabled"]:
            return {"error": "Cash payment is not available at this restaurant."}

        written = create_order(data, payload, PaymentMethod.CASH, idempotency_key=payload.idempotency_key)
        if not written.success:
            return {"error": written.error}
        return {"success": True, "order_id": written.order_id, "payment_id": written.payment_id}
    except Exception:
        logger.exception("Error creating cash order for table %s", payload.table_id)
        return {"error": "Failed to create order"}


def complete_cash_order(db: Session, order_id: str) -> dict:
    """Staff "mark as paid" for a cash order."""
    data = DataService(db)
    try:
        order = data.get_order(order_id)
        if order is None:
            return {"success": False, "error": "Order not found"}

        payments = data.payments_for_order(order_id)
        current = payments[0] if payments else None
        if current is not None and current.status == PaymentStatus.COMPLETED:
            return {"success": True, "message": "Payment already completed"}
        method = current.method if current is not None else order.payment_method
        if method != PaymentMethod.CASH:
            return {"success": False, "error": "Only cash payments can be marked as paid"}
        if order.status == OrderStatus.CANCELLED:
            return {"success": False, "error": "Order has been cancelled"}

        record_completed_payment(data, order, PaymentMethod.CASH)
        return {"success": True, "message": "Cash payment completed"}
    except Exception:
        logger.exception("Error completing cash order %s", order_id)
        return {"success": False, "error": "Failed to complete order"}


def confirm_qr_payment(db: Session, order_id: str) -> dict:
    """Check the gateway for an order's card payment after the customer returns."""
    data = DataService(db)
    try:
        order = data.get_order(order_id)
        if order is None:
            return {"error": "Order not found"}

        if any(p.status == PaymentStatus.COMPLETED for p in data.payments_for_order(order_id)):
            return {"success": True, "message": "Payment already confirmed"}

        intent_id = order.stripe_payment_intent_id
        if not intent_id and order.stripe_session_id:
            session = stripe_service.retrieve_checkout_session(order.stripe_session_id)
            intent_id = session.payment_intent
            if not intent_id:
                if session.status == "expired":
                    cleanup_failed_order(data, order_id, "Checkout session expired")
                    return {"error": "Payment was not completed. Please try again."}
                return {"success": True, "message": "Payment is being processed"}

        if not intent_id:
            logger.error("No payment reference stored for order %s", order_id)
            return {"error": "Invalid payment information"}

        intent = stripe_service.retrieve_payment_intent(intent_id)
        if intent.status == "succeeded":
            metadata = GatewayMetadata.from_stripe(intent.metadata)
            if order.stripe_payment_intent_id != intent.id:
                data.update_order(order, stripe_payment_intent_id=intent.id)
            record_completed_payment(
                data, order, PaymentMethod.CARD,
                payment_intent_id=intent.id,
                idempotency_key=metadata.idempotency_key,
            )
            return {"success": True, "message": "Payment confirmed successfully"}

        if intent.status == "processing":
            return {"success": True, "message": "Payment is being processed"}

        reason = _failure_message(intent.last_payment_error, intent.status)
        logger.info("Payment for order %s not successful (%s): %s", order_id, intent.status, reason)
        cleanup_failed_order(data, order_id, reason)
        if intent.status == "canceled":
            return {"error": "Payment was canceled. Please try again."}
        return {"error": "Payment was not completed successfully. Please try again."}
    except stripe.StripeError:
        logger.exception("Error verifying payment for order %s with the gateway", order_id)
        return {"error": "Payment verification failed. Please try again."}
    except Exception:
        logger.exception("Error confirming QR payment for order %s", order_id)
        return {"error": "Failed to confirm payment"}


def get_qr_order_details(db: Session, order_id: str) -> dict:
    data = DataService(db)
    try:
        order = data.get_order(order_id)
        if order is None:
            return {"error": "Order not found"}

        payments = data.payments_for_order(order_id)
        restaurant = order.restaurant
        details = {
            "id": order.id,
            "order_number": order.display_number,
            "status": order.status,
            "table_id": order.table_id,
            "payment_method": order.payment_method,
            "payment_status": payments[0].status if payments else None,
            "subtotal": order.subtotal_amount,
            "tax": order.tax_amount,
            "tip": order.tip_amount,
            "total": order.total_amount,
            "customer_name": order.customer_name,
            "notes": order.notes,
            "estimated_prep_time": order.estimated_prep_time,
            "created_at": order.created_at.isoformat() if order.created_at else None,
            "items": [
                {
                    "id": item.id,
                    "menu_item_id": item.menu_item_id,
                    "name": item.name,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                    "total_price": item.total_price,
                    "size": item.size,
                    "modifiers": item.modifiers or [],
                    "combo_meal_id": item.combo_meal_id,
                }
                for item in order.items
            ],
            "restaurant": {
                "id": restaurant.id,
                "name": restaurant.name,
                "address": restaurant.address,
                "phone": restaurant.phone,
            } if restaurant else None,
        }
        return {"success": True, "data": details}
    except Exception:
        logger.exception("Error fetching QR order details for %s", order_id)
        return {"error": "Failed to fetch order details"}


def handle_failed_payment(db: Session, order_id: str, message: str) -> dict:
    data = DataService(db)
    try:
        result = cleanup_failed_order(data, order_id, message)
        if not result.success:
            return {"error": result.error}
        return {"success": True, "action": result.action}
    except Exception:
        logger.exception("Error handling failed payment for order %s", order_id)
        return {"error": "Failed to process payment failure"}


def validate_payment_methods(db: Session, restaurant_id: str) -> dict:
    data = DataService(db)
    try:
        restaurant = data.get_restaurant(restaurant_id)
        if restaurant is None:
            return {"error": "Restaurant not found"}

        settings = _payment_settings(restaurant)
        has_connect = bool(restaurant.stripe_account_enabled and restaurant.stripe_account_id)
        return {
            "success": True,
            "data": {
                "card_enabled": has_connect and settings["cardEnabled"],
                "cash_enabled": settings["cashEnabled"],
                "has_stripe_connect": has_connect,
                "payment_methods": settings,
            },
        }
    except Exception:
        logger.exception("Error validating payment methods for restaurant %s", restaurant_id)
        return {"error": "Failed to validate payment methods"}
