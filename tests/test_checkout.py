import stripe

from qr_checkout.checkout import (
    PAY_AT_COUNTER,
    TRY_LATER,
    build_session_params,
    create_checkout_session,
    platform_fee,
)
from qr_checkout.schemas import QRPaymentData


def fake_session(mocker, session_id="cs_test_1"):
    session = mocker.Mock()
    session.id = session_id
    session.url = f"https://checkout.stripe.com/c/pay/{session_id}"
    return session


def test_session_params(restaurant, cart):
    params = build_session_params(QRPaymentData(**cart), restaurant, "order-1", "key-1")

    assert len(params["line_items"]) == 1
    price = params["line_items"][0]["price_data"]
    assert price["unit_amount"] == 3000
    assert price["currency"] == "chf"
    assert params["payment_intent_data"]["application_fee_amount"] == 60
    assert params["payment_intent_data"]["transfer_data"] == {"destination": "acct_123"}
    assert params["metadata"] == {
        "restaurantId": "rest-1",
        "orderId": "order-1",
        "tableId": "table-7",
        "idempotencyKey": "key-1",
    }
    assert params["payment_intent_data"]["metadata"] == params["metadata"]
    assert "order_id=order-1" in params["success_url"]
    assert "{CHECKOUT_SESSION_ID}" in params["success_url"]
    assert "order_id=order-1" in params["cancel_url"]
    assert params["customer_email"] == "guest@example.com"


def test_no_customer_email_without_address(restaurant, cart):
    cart["email"] = None

    params = build_session_params(QRPaymentData(**cart), restaurant, "order-1", "key-1")

    assert "customer_email" not in params


def test_platform_fee_in_minor_units():
    assert platform_fee(30.00) == 60
    assert platform_fee(12.34) == 25
    assert platform_fee(100.00, 0.05) == 500


def test_idempotency_key_is_sent_with_the_call(restaurant, cart, mocker):
    create = mocker.patch("stripe.checkout.Session.create", return_value=fake_session(mocker))

    result = create_checkout_session(QRPaymentData(**cart), restaurant, "order-1", "key-1")

    assert result.success
    assert result.session.id == "cs_test_1"
    assert create.call_args.kwargs["idempotency_key"] == "key-1"


def test_rate_limit_is_retried(restaurant, cart, mocker):
    create = mocker.patch(
        "stripe.checkout.Session.create",
        side_effect=[
            stripe.RateLimitError("Too many requests"),
            stripe.RateLimitError("Too many requests"),
            fake_session(mocker),
        ],
    )

    result = create_checkout_session(QRPaymentData(**cart), restaurant, "order-1", "key-1")

    assert result.success
    assert create.call_count == 3


def test_exhausted_retries_ask_to_try_later(restaurant, cart, mocker):
    create = mocker.patch("stripe.checkout.Session.create",
                          side_effect=stripe.RateLimitError("Too many requests"))

    result = create_checkout_session(QRPaymentData(**cart), restaurant, "order-1", "key-1")

    assert not result.success
    assert result.error == TRY_LATER
    assert create.call_count == 3


def test_invalid_transfer_destination_is_not_retried(restaurant, cart, mocker):
    create = mocker.patch(
        "stripe.checkout.Session.create",
        side_effect=stripe.InvalidRequestError(
            "No such destination: 'acct_123'",
            "payment_intent_data[transfer_data][destination]",
            "resource_missing",
        ),
    )

    result = create_checkout_session(QRPaymentData(**cart), restaurant, "order-1", "key-1")

    assert result.error == PAY_AT_COUNTER
    assert create.call_count == 1


def test_card_not_supported_means_pay_at_counter(restaurant, cart, mocker):
    mocker.patch(
        "stripe.checkout.Session.create",
        side_effect=stripe.CardError("Card not supported", None, "card_not_supported"),
    )

    result = create_checkout_session(QRPaymentData(**cart), restaurant, "order-1", "key-1")

    assert result.error == PAY_AT_COUNTER
    assert result.error_info.type == "card_error"
