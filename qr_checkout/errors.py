"""Classification of payment-gateway failures into user-facing feedback."""
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import stripe


@dataclass
class PaymentErrorInfo:
    type: str
    message: str
    retryable: bool
    user_message: str
    code: Optional[str] = None
    decline_code: Optional[str] = None


CARD_ERROR = "card_error"
VALIDATION_ERROR = "validation_error"
AUTHENTICATION_REQUIRED = "authentication_required"
RATE_LIMIT_ERROR = "rate_limit_error"
IDEMPOTENCY_ERROR = "idempotency_error"
INVALID_REQUEST_ERROR = "invalid_request_error"
API_ERROR = "api_error"

_EXCEPTION_TYPES = (
    (stripe.CardError, CARD_ERROR),
    (stripe.RateLimitError, RATE_LIMIT_ERROR),
    (stripe.IdempotencyError, IDEMPOTENCY_ERROR),
    (stripe.InvalidRequestError, INVALID_REQUEST_ERROR),
)

# decline reason -> (retryable, user message)
_CARD_DECLINES = {
    "insufficient_funds": (
        False,
        "Your card has insufficient funds. Please use a different card or pay at the counter.",
    ),
    "generic_decline": (
        False,
        "Your card was declined. Please use a different card or pay at the counter.",
    ),
    "card_declined": (
        False,
        "Your card was declined. Please use a different card or pay at the counter.",
    ),
    "expired_card": (
        False,
        "Your card has expired. Please use a different card.",
    ),
    "incorrect_cvc": (
        True,
        "The security code (CVC) is incorrect. Please check it and try again.",
    ),
    "processing_error": (
        True,
        "An error occurred while processing your card. Please try again.",
    ),
    "authentication_required": (
        False,
        "Your bank requires additional authentication. Please complete verification and try again.",
    ),
}

_GENERIC_CARD = (False, "Your card could not be charged. Please use a different card or pay at the counter.")


def _error_body(error: Any) -> Mapping[str, Any]:
    if isinstance(error, Mapping):
        inner = error.get("error")
        return inner if isinstance(inner, Mapping) else error
    body = getattr(error, "json_body", None)
    if isinstance(body, Mapping) and isinstance(body.get("error"), Mapping):
        return body["error"]
    return {}


def _error_type(error: Any, body: Mapping[str, Any]) -> str:
    for exc_class, kind in _EXCEPTION_TYPES:
        if isinstance(error, exc_class):
            return kind
    kind = body.get("type")
    if kind in (CARD_ERROR, VALIDATION_ERROR, RATE_LIMIT_ERROR, IDEMPOTENCY_ERROR, INVALID_REQUEST_ERROR):
        return kind
    if kind == AUTHENTICATION_REQUIRED or body.get("code") == AUTHENTICATION_REQUIRED:
        return AUTHENTICATION_REQUIRED
    return API_ERROR


def classify_payment_error(error: Any) -> PaymentErrorInfo:
    """Map a gateway exception (or its JSON error body) onto a stable taxonomy.

    Never raises: anything unrecognised lands in the generic API bucket.
    """
    try:
        body = _error_body(error)
        kind = _error_type(error, body)
        code = getattr(error, "code", None) or body.get("code")
        decline_code = body.get("decline_code") or getattr(error, "decline_code", None)
        message = (
            getattr(error, "user_message", None)
            or body.get("message")
            or (str(error) if isinstance(error, Exception) else "Unknown payment error")
        )
    except Exception:
        return PaymentErrorInfo(
            type=API_ERROR,
            message="Unknown payment error",
            retryable=True,
            user_message="Payment processing failed. Please try again.",
        )

    if kind == CARD_ERROR:
        reason = decline_code or code
        if code == AUTHENTICATION_REQUIRED:
            reason = AUTHENTICATION_REQUIRED
        retryable, user_message = _CARD_DECLINES.get(reason, _GENERIC_CARD)
        return PaymentErrorInfo(CARD_ERROR, message, retryable, user_message, code, decline_code)

    if kind == VALIDATION_ERROR:
        user_message = "Some payment details are invalid. Please check them and try again."
        return PaymentErrorInfo(kind, message, False, user_message, code, decline_code)

    if kind == AUTHENTICATION_REQUIRED:
        user_message = "Your bank requires additional authentication. Please complete verification and try again."
        return PaymentErrorInfo(kind, message, False, user_message, code, decline_code)

    if kind == RATE_LIMIT_ERROR:
        user_message = "Too many payment attempts right now. Please wait a moment and try again."
        return PaymentErrorInfo(kind, message, True, user_message, code)

    if kind == IDEMPOTENCY_ERROR:
        user_message = "This payment is already being processed. Please wait a moment."
        return PaymentErrorInfo(kind, message, False, user_message, code)

    if kind == INVALID_REQUEST_ERROR:
        user_message = "The payment request was invalid. Please try again or pay at the counter."
        return PaymentErrorInfo(kind, message, False, user_message, code)

    return PaymentErrorInfo(
        API_ERROR,
        message,
        True,
        "Payment processing is temporarily unavailable. Please try again or pay at the counter.",
        code,
    )
