"""Gateway webhook reconciliation.

Events arrive already signature-verified, possibly duplicated and in any
order. Handlers upsert on the gateway's own identifiers so a redelivered
event finds its rows already in the target state.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from qr_checkout import notifications, stripe_service
from qr_checkout.data_service import LIVE_SUBSCRIPTION_STATUSES, DataService, new_id
from qr_checkout.models import Order, PaymentMethod, PaymentStatus, Subscription, utcnow
from qr_checkout.reconciliation import cleanup_failed_order, record_completed_payment
from qr_checkout.schemas import GatewayMetadata

logger = logging.getLogger(__name__)

CANCELED = "canceled"


def _ts(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def _first_item(subscription: Mapping) -> Mapping:
    data = (subscription.get("items") or {}).get("data") or []
    return data[0] if data else {}


def _period(subscription: Mapping, key: str):
    return subscription.get(key) or _first_item(subscription).get(key)


def _interval(subscription: Mapping) -> Optional[str]:
    price = _first_item(subscription).get("price") or {}
    return (price.get("recurring") or {}).get("interval")


def _find_order(data: DataService, metadata: GatewayMetadata, payment_intent_id: Optional[str] = None,
                session_id: Optional[str] = None) -> Optional[Order]:
    order = data.get_order(metadata.order_id) if metadata.order_id else None
    if order is None and payment_intent_id:
        order = data.order_by_payment_intent(payment_intent_id)
    if order is None and session_id:
        order = data.order_by_session(session_id)
    return order


# Orders

def _checkout_session_completed(data: DataService, session: Mapping):
    metadata = GatewayMetadata.from_stripe(session.get("metadata"))
    if session.get("mode") == "subscription" or metadata.is_subscription:
        subscription_id = session.get("subscription")
        if not subscription_id:
            logger.warning("Subscription checkout %s has no subscription", session.get("id"))
            return
        subscription = stripe_service.retrieve_subscription(subscription_id)
        _upsert_subscription(
            data, subscription,
            restaurant_hint=metadata.restaurant_id,
            customer_id=session.get("customer"),
        )
        return

    if not metadata.order_id and session.get("client_reference_id"):
        metadata.order_id = session["client_reference_id"]
    order = _find_order(data, metadata, session.get("payment_intent"), session.get("id"))
    if order is None:
        logger.warning("Checkout session %s completed for unknown order %s", session.get("id"), metadata.order_id)
        return
    if session.get("payment_status") != "paid":
        logger.info("Checkout session %s completed with payment_status=%s, waiting for payment",
                    session.get("id"), session.get("payment_status"))
        return

    intent_id = session.get("payment_intent")
    if intent_id and order.stripe_payment_intent_id != intent_id:
        data.update_order(order, stripe_payment_intent_id=intent_id)
    amount = session.get("amount_total")
    record_completed_payment(
        data, order, PaymentMethod.CARD,
        payment_intent_id=intent_id,
        amount=amount / 100 if amount is not None else None,
        idempotency_key=metadata.idempotency_key,
    )


def _payment_intent_succeeded(data: DataService, intent: Mapping):
    metadata = GatewayMetadata.from_stripe(intent.get("metadata"))
    order = _find_order(data, metadata, intent.get("id"))
    if order is None:
        logger.info("Payment intent %s is not tied to a QR order", intent.get("id"))
        return
    if order.stripe_payment_intent_id != intent["id"]:
        data.update_order(order, stripe_payment_intent_id=intent["id"])
    amount = intent.get("amount_received") or intent.get("amount")
    record_completed_payment(
        data, order, PaymentMethod.CARD,
        payment_intent_id=intent["id"],
        amount=amount / 100 if amount else None,
        idempotency_key=metadata.idempotency_key,
    )


def _payment_intent_failed(data: DataService, intent: Mapping):
    metadata = GatewayMetadata.from_stripe(intent.get("metadata"))
    order = _find_order(data, metadata, intent.get("id"))
    if order is None:
        return
    error = intent.get("last_payment_error") or {}
    message = error.get("decline_code") or error.get("code") or error.get("message") or "payment_failed"
    # The row may be gone after cleanup
    order_id = order.id
    result = cleanup_failed_order(data, order_id, message)
    logger.info("Payment intent %s failed (%s): order %s %s", intent.get("id"), message, order_id, result.action)


def _payment_intent_canceled(data: DataService, intent: Mapping):
    metadata = GatewayMetadata.from_stripe(intent.get("metadata"))
    order = _find_order(data, metadata, intent.get("id"))
    if order is None:
        return
    reason = intent.get("cancellation_reason") or "canceled"
    cleanup_failed_order(data, order.id, f"Payment intent canceled: {reason}")


def _checkout_session_expired(data: DataService, session: Mapping):
    metadata = GatewayMetadata.from_stripe(session.get("metadata"))
    if metadata.is_subscription:
        return
    order = _find_order(data, metadata, session.get("payment_intent"), session.get("id"))
    if order is None:
        return
    cleanup_failed_order(data, order.id, "Checkout session expired")


def _charge_refunded(data: DataService, charge: Mapping):
    if charge.get("invoice"):
        _subscription_refunded(data, charge)
        return

    intent_id = charge.get("payment_intent")
    payment = data.payment_by_gateway_id(intent_id) if intent_id else None
    if payment is None:
        logger.warning("Refund for charge %s has no matching payment", charge.get("id"))
        return
    if payment.status == PaymentStatus.REFUNDED:
        return

    refunds = (charge.get("refunds") or {}).get("data") or []
    refund_id = refunds[0].get("id") if refunds else payment.stripe_refund_id
    data.update_payment(payment, status=PaymentStatus.REFUNDED, stripe_refund_id=refund_id)
    logger.info("Payment %s for order %s refunded (%s)", payment.id, payment.order_id, refund_id)
    notifications.notify_order_refunded(payment, data.get_order(payment.order_id))


def _charge_dispute_created(data: DataService, dispute: Mapping):
    intent_id = dispute.get("payment_intent")
    payment = data.payment_by_gateway_id(intent_id) if intent_id else None
    if payment is None:
        logger.warning("Dispute %s has no matching payment", dispute.get("id"))
        return
    if payment.status != PaymentStatus.DISPUTED:
        data.update_payment(payment, status=PaymentStatus.DISPUTED)
        logger.warning("Payment %s for order %s disputed: %s", payment.id, payment.order_id, dispute.get("reason"))


# Billing

def _invoice_subscription_id(invoice: Mapping) -> Optional[str]:
    if invoice.get("subscription"):
        return invoice["subscription"]
    parent = invoice.get("parent") or {}
    return (parent.get("subscription_details") or {}).get("subscription")


def _subscription_refunded(data: DataService, charge: Mapping):
    invoice = stripe_service.retrieve_invoice(charge["invoice"])
    subscription_id = _invoice_subscription_id(invoice)
    subscription = data.subscription_by_gateway_id(subscription_id) if subscription_id else None
    if subscription is None:
        logger.warning("Refunded invoice %s has no known subscription", charge.get("invoice"))
        return

    if subscription.status != CANCELED:
        data.save(_apply(subscription, status=CANCELED, canceled_at=subscription.canceled_at or utcnow()))

    superseding = data.other_live_subscription(subscription.restaurant_id, subscription.stripe_subscription_id)
    if superseding is not None:
        logger.info("Refund of subscription %s is part of an upgrade to %s, no notification",
                    subscription.stripe_subscription_id, superseding.stripe_subscription_id)
        return

    restaurant = data.get_restaurant(subscription.restaurant_id)
    if restaurant is not None and restaurant.subscription_status != CANCELED:
        data.save(_apply(restaurant, subscription_status=CANCELED))
        notifications.notify_subscription_refunded(restaurant, subscription)


def _apply(row, **changes):
    for key, value in changes.items():
        setattr(row, key, value)
    return row


def _upsert_subscription(data: DataService, payload: Mapping, restaurant_hint: Optional[str] = None,
                         customer_id: Optional[str] = None) -> Optional[Subscription]:
    metadata = GatewayMetadata.from_stripe(payload.get("metadata"))
    subscription_id = payload["id"]
    existing = data.subscription_by_gateway_id(subscription_id)
    customer_id = payload.get("customer") or customer_id

    restaurant_id = metadata.restaurant_id or restaurant_hint or (existing.restaurant_id if existing else None)
    if not restaurant_id and customer_id:
        restaurant = data.restaurant_by_customer_id(customer_id)
        restaurant_id = restaurant.id if restaurant else None
    if not restaurant_id:
        logger.error("Subscription %s cannot be tied to a restaurant", subscription_id)
        return None

    status = payload.get("status")
    trial_end = _ts(payload.get("trial_end"))
    if metadata.trial_preserved and metadata.original_trial_end_at:
        trial_end = metadata.original_trial_end_at
    elif existing is not None and existing.trial_end and trial_end is None and status == "trialing":
        trial_end = existing.trial_end

    row = existing or Subscription(id=new_id(), stripe_subscription_id=subscription_id)
    _apply(
        row,
        restaurant_id=restaurant_id,
        stripe_customer_id=customer_id,
        plan=metadata.plan or row.plan,
        interval=metadata.interval or _interval(payload) or row.interval,
        status=status,
        current_period_start=_ts(_period(payload, "current_period_start") or payload.get("start_date")),
        current_period_end=_ts(_period(payload, "current_period_end")),
        trial_start=_ts(payload.get("trial_start")),
        trial_end=trial_end,
        cancel_at=_ts(payload.get("cancel_at")),
        canceled_at=_ts(payload.get("canceled_at")),
    )
    data.save(row)

    restaurant = data.get_restaurant(restaurant_id)
    if restaurant is not None:
        superseded = (
            status not in LIVE_SUBSCRIPTION_STATUSES
            and data.other_live_subscription(restaurant_id, subscription_id) is not None
        )
        changes = {}
        if not superseded and restaurant.subscription_status != status:
            changes["subscription_status"] = status
        if customer_id and not restaurant.stripe_customer_id:
            changes["stripe_customer_id"] = customer_id
        if changes:
            data.save(_apply(restaurant, **changes))
    return row


def _subscription_changed(data: DataService, payload: Mapping):
    _upsert_subscription(data, payload)


def _subscription_deleted(data: DataService, payload: Mapping):
    subscription = data.subscription_by_gateway_id(payload["id"])
    already_canceled = subscription is not None and subscription.status == CANCELED
    canceled_at = payload.get("canceled_at") or int(datetime.now(timezone.utc).timestamp())
    payload = dict(payload, status=CANCELED, canceled_at=canceled_at)
    subscription = _upsert_subscription(data, payload)
    if subscription is None or already_canceled:
        return

    superseding = data.other_live_subscription(subscription.restaurant_id, subscription.stripe_subscription_id)
    if superseding is not None:
        logger.info("Subscription %s replaced by %s, not a cancellation",
                    subscription.stripe_subscription_id, superseding.stripe_subscription_id)
        return
    restaurant = data.get_restaurant(subscription.restaurant_id)
    if restaurant is not None:
        notifications.notify_subscription_canceled(restaurant, subscription)


def _subscription_trial_will_end(data: DataService, payload: Mapping):
    subscription = data.subscription_by_gateway_id(payload["id"])
    if subscription is None:
        subscription = _upsert_subscription(data, payload)
    if subscription is None:
        return
    restaurant = data.get_restaurant(subscription.restaurant_id)
    if restaurant is not None:
        notifications.notify_trial_will_end(restaurant, subscription)


# Connected accounts

def _account_updated(data: DataService, account: Mapping):
    metadata = GatewayMetadata.from_stripe(account.get("metadata"))
    restaurant = data.get_restaurant(metadata.restaurant_id) if metadata.restaurant_id else None
    if restaurant is None:
        restaurant = data.restaurant_by_account_id(account["id"])
    if restaurant is None:
        logger.warning("Connected account %s has no restaurant", account.get("id"))
        return
    data.save(_apply(
        restaurant,
        stripe_account_id=restaurant.stripe_account_id or account["id"],
        stripe_account_enabled=bool(account.get("charges_enabled")),
        stripe_account_requirements=_plain(account.get("requirements")),
    ))
    logger.info("Connected account %s for restaurant %s: charges_enabled=%s",
                account.get("id"), restaurant.id, account.get("charges_enabled"))


HANDLERS = {
    "checkout.session.completed": _checkout_session_completed,
    "checkout.session.expired": _checkout_session_expired,
    "payment_intent.succeeded": _payment_intent_succeeded,
    "payment_intent.payment_failed": _payment_intent_failed,
    "payment_intent.canceled": _payment_intent_canceled,
    "charge.refunded": _charge_refunded,
    "charge.dispute.created": _charge_dispute_created,
    "customer.subscription.created": _subscription_changed,
    "customer.subscription.updated": _subscription_changed,
    "customer.subscription.deleted": _subscription_deleted,
    "customer.subscription.trial_will_end": _subscription_trial_will_end,
    "account.updated": _account_updated,
}


def handle_event(db, event: Mapping) -> bool:
    """Apply one verified event. Returns False for event types we ignore."""
    handler = HANDLERS.get(event["type"])
    if handler is None:
        logger.debug("Ignoring webhook event %s", event["type"])
        return False
    logger.info("Processing webhook %s (%s)", event.get("id"), event["type"])
    handler(DataService(db), event["data"]["object"])
    return True
