import logging
from dataclasses import dataclass
from typing import Any, Optional

from qr_checkout import stripe_service
from qr_checkout.config import APP_BASE_URL, PLATFORM_FEE_RATE
from qr_checkout.eligibility import merchant_currency
from qr_checkout.errors import API_ERROR, RATE_LIMIT_ERROR, PaymentErrorInfo, classify_payment_error
from qr_checkout.models import Restaurant
from qr_checkout.retry import linear_backoff, with_retry
from qr_checkout.schemas import GatewayMetadata, QRPaymentData

logger = logging.getLogger(__name__)

PAY_AT_COUNTER = (
    "Card payment is not available for this restaurant right now. "
    "Please contact the restaurant or pay at the counter."
)
TRY_LATER = "Payment service is busy right now. Please try again in a moment."

_CONFIGURATION_CODES = {"account_invalid", "transfer_destination_invalid", "account_country_invalid_address"}


@dataclass
class CheckoutResult:
    success: bool
    session: Any = None
    error: Optional[str] = None
    error_info: Optional[PaymentErrorInfo] = None


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def platform_fee(total: float, rate: Optional[float] = None) -> int:
    """Platform commission in minor currency units."""
    if rate is None:
        rate = PLATFORM_FEE_RATE
    return int(round(total * rate * 100))


def build_session_params(payload: QRPaymentData, merchant: Restaurant, order_id: str, idempotency_key: str) -> dict:
    metadata = GatewayMetadata(
        restaurant_id=merchant.id,
        order_id=order_id,
        table_id=payload.table_id,
        idempotency_key=idempotency_key,
    ).to_stripe()
    total = to_minor_units(payload.total)
    fee = platform_fee(payload.total, merchant.commission_rate)
    table_url = f"{APP_BASE_URL}/qr/{payload.table_id}"

    # One summary line item; per-item detail stays on our side.
    params = {
        "mode": "payment",
        "line_items": [{
            "price_data": {
                "currency": merchant_currency(merchant),
                "unit_amount": total,
                "product_data": {"name": f"Order at {merchant.name}"},
            },
            "quantity": 1,
        }],
        "success_url": f"{table_url}/payment-confirmation?order_id={order_id}&session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{table_url}/checkout?order_id={order_id}&canceled=true",
        "client_reference_id": order_id,
        "metadata": metadata,
        "payment_intent_data": {
            "application_fee_amount": fee,
            "transfer_data": {"destination": merchant.stripe_account_id},
            "metadata": metadata,
        },
    }
    if payload.email:
        params["customer_email"] = payload.email
    return params


def _is_transient(exc: Exception) -> bool:
    return classify_payment_error(exc).type in (RATE_LIMIT_ERROR, API_ERROR)


def _needs_counter_payment(exc: Exception, info: PaymentErrorInfo) -> bool:
    if info.code in _CONFIGURATION_CODES or info.code == "card_not_supported":
        return True
    if info.decline_code == "card_not_supported":
        return True
    param = getattr(exc, "param", None) or ""
    return "transfer_data" in param or "destination" in param


def create_checkout_session(payload: QRPaymentData, merchant: Restaurant, order_id: str,
                            idempotency_key: str) -> CheckoutResult:
    """Create the hosted checkout session bound to ``order_id``.

    The idempotency key goes to the gateway with the call itself, so a
    retried request can never open a second session. On failure the caller
    owns deleting the order.
    """
    params = build_session_params(payload, merchant, order_id, idempotency_key)
    result = with_retry(
        lambda: stripe_service.create_checkout_session(params, idempotency_key),
        max_attempts=3,
        backoff=linear_backoff(),
        should_retry=_is_transient,
        label=f"checkout session for order {order_id}",
    )
    if result.success:
        session = result.value
        logger.info("Checkout session %s created for order %s", session.id, order_id)
        return CheckoutResult(True, session=session)

    info = classify_payment_error(result.error)
    logger.error(
        "Checkout session failed for order %s: type=%s code=%s decline_code=%s message=%s",
        order_id, info.type, info.code, info.decline_code, info.message,
    )
    if _needs_counter_payment(result.error, info):
        return CheckoutResult(False, error=PAY_AT_COUNTER, error_info=info)
    if info.type in (RATE_LIMIT_ERROR, API_ERROR):
        return CheckoutResult(False, error=TRY_LATER, error_info=info)
    return CheckoutResult(False, error=info.user_message, error_info=info)
