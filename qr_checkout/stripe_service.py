import stripe

from qr_checkout.config import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET

stripe.api_key = STRIPE_SECRET_KEY


def create_checkout_session(params: dict, idempotency_key: str):
    return stripe.checkout.Session.create(idempotency_key=idempotency_key, **params)


def retrieve_checkout_session(session_id: str):
    return stripe.checkout.Session.retrieve(session_id)


def retrieve_payment_intent(payment_intent_id: str):
    return stripe.PaymentIntent.retrieve(payment_intent_id)


def retrieve_subscription(subscription_id: str):
    return stripe.Subscription.retrieve(subscription_id)


def retrieve_invoice(invoice_id: str):
    return stripe.Invoice.retrieve(invoice_id)


def construct_event(payload: bytes, signature: str):
    return stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
