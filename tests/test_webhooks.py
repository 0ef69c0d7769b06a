from datetime import datetime

import pytest

from qr_checkout.data_service import DataService
from qr_checkout.models import Order, Payment, Restaurant, Subscription
from qr_checkout.order_writer import create_order
from qr_checkout.schemas import QRPaymentData
from qr_checkout.webhooks import handle_event

JAN_2026 = 1767225600


def event(event_type, obj):
    return {"id": "evt_test", "type": event_type, "data": {"object": obj}}


@pytest.fixture
def order(db, restaurant, cart):
    result = create_order(DataService(db), QRPaymentData(**cart), "card")
    row = db.query(Order).filter_by(id=result.order_id).first()
    row.stripe_session_id = "cs_test_1"
    db.commit()
    return row


def intent(order, **extra):
    payload = {
        "id": "pi_123",
        "amount": 3000,
        "amount_received": 3000,
        "metadata": {"restaurantId": "rest-1", "orderId": order.id, "tableId": "table-7", "idempotencyKey": "key-1"},
    }
    payload.update(extra)
    return payload


def subscription(sub_id="sub_1", status="active", **extra):
    payload = {
        "id": sub_id,
        "customer": "cus_123",
        "status": status,
        "metadata": {"restaurantId": "rest-1", "plan": "pro"},
        "start_date": JAN_2026 - 86400 * 14,
        "trial_start": None,
        "trial_end": None,
        "cancel_at": None,
        "canceled_at": None,
        "items": {"data": [{
            "price": {"recurring": {"interval": "month"}},
            "current_period_start": JAN_2026 - 86400 * 14,
            "current_period_end": JAN_2026 + 86400 * 16,
        }]},
    }
    payload.update(extra)
    return payload


def payment_for(db, order):
    return db.query(Payment).filter_by(order_id=order.id).one()


# Order payments

def test_payment_success_completes_order(db, order):
    assert handle_event(db, event("payment_intent.succeeded", intent(order)))

    payment = payment_for(db, order)
    assert payment.status == "completed"
    assert payment.method == "card"
    assert payment.amount == 30.00
    assert payment.stripe_payment_id == "pi_123"
    assert payment.idempotency_key == "key-1"
    order = db.query(Order).filter_by(id=order.id).first()
    assert order.status == "preparing"
    assert order.stripe_payment_intent_id == "pi_123"


def test_redelivered_success_is_idempotent(db, order):
    handle_event(db, event("payment_intent.succeeded", intent(order)))
    handle_event(db, event("payment_intent.succeeded", intent(order)))

    assert db.query(Payment).count() == 1
    assert db.query(Order).filter_by(id=order.id).first().status == "preparing"


def test_payment_after_serving_completes_order(db, order):
    order.status = "served"
    db.commit()

    handle_event(db, event("payment_intent.succeeded", intent(order)))

    assert db.query(Order).filter_by(id=order.id).first().status == "completed"


def test_late_failure_cannot_undo_payment(db, order):
    handle_event(db, event("payment_intent.succeeded", intent(order)))

    failed = intent(order, last_payment_error={"code": "card_declined", "decline_code": "insufficient_funds"})
    handle_event(db, event("payment_intent.payment_failed", failed))

    assert db.query(Order).filter_by(id=order.id).first().status == "preparing"
    assert payment_for(db, order).status == "completed"


def test_definitive_failure_deletes_order(db, order):
    failed = intent(order, last_payment_error={"code": "expired_card"})

    handle_event(db, event("payment_intent.payment_failed", failed))

    assert db.query(Order).count() == 0


def test_success_after_soft_failure_revives_order(db, order):
    failed = intent(order, last_payment_error={"code": "card_declined", "decline_code": "generic_decline"})
    handle_event(db, event("payment_intent.payment_failed", failed))
    assert db.query(Order).filter_by(id=order.id).first().status == "cancelled"

    handle_event(db, event("payment_intent.succeeded", intent(order)))

    assert db.query(Order).filter_by(id=order.id).first().status == "preparing"
    assert payment_for(db, order).status == "completed"


def test_paid_checkout_session_records_payment(db, order):
    session = {
        "id": "cs_test_1",
        "mode": "payment",
        "payment_status": "paid",
        "payment_intent": "pi_123",
        "amount_total": 3000,
        "client_reference_id": order.id,
        "metadata": {"restaurantId": "rest-1", "orderId": order.id, "idempotencyKey": "key-1"},
    }

    handle_event(db, event("checkout.session.completed", session))
    handle_event(db, event("payment_intent.succeeded", intent(order)))

    assert db.query(Payment).count() == 1
    assert payment_for(db, order).status == "completed"
    assert db.query(Order).filter_by(id=order.id).first().status == "preparing"


def test_unpaid_checkout_session_waits(db, order):
    session = {
        "id": "cs_test_1",
        "mode": "payment",
        "payment_status": "unpaid",
        "payment_intent": None,
        "client_reference_id": order.id,
        "metadata": {},
    }

    handle_event(db, event("checkout.session.completed", session))

    assert db.query(Payment).count() == 0
    assert db.query(Order).filter_by(id=order.id).first().status == "pending"


def test_expired_checkout_session_cancels_order(db, order):
    session = {"id": "cs_test_1", "mode": "payment", "metadata": {"orderId": order.id}}

    handle_event(db, event("checkout.session.expired", session))

    assert db.query(Order).filter_by(id=order.id).first().status == "cancelled"


def test_refund_marks_payment_and_notifies_once(db, order, mocker):
    notify = mocker.patch("qr_checkout.notifications.notify_order_refunded")
    handle_event(db, event("payment_intent.succeeded", intent(order)))
    charge = {"id": "ch_1", "payment_intent": "pi_123", "invoice": None, "refunds": {"data": [{"id": "re_1"}]}}

    handle_event(db, event("charge.refunded", charge))
    handle_event(db, event("charge.refunded", charge))

    payment = payment_for(db, order)
    assert payment.status == "refunded"
    assert payment.stripe_refund_id == "re_1"
    assert notify.call_count == 1


def test_dispute_marks_payment(db, order):
    handle_event(db, event("payment_intent.succeeded", intent(order)))

    handle_event(db, event("charge.dispute.created", {"id": "dp_1", "payment_intent": "pi_123", "reason": "fraudulent"}))

    assert payment_for(db, order).status == "disputed"


def test_unknown_event_type_is_ignored(db):
    assert handle_event(db, event("customer.created", {"id": "cus_999"})) is False


# Subscriptions

def test_subscription_created(db, restaurant):
    handle_event(db, event("customer.subscription.created", subscription(status="trialing", trial_end=JAN_2026)))

    row = db.query(Subscription).filter_by(stripe_subscription_id="sub_1").one()
    assert row.restaurant_id == "rest-1"
    assert row.plan == "pro"
    assert row.interval == "month"
    assert row.trial_end == datetime(2026, 1, 1)
    assert db.query(Restaurant).filter_by(id="rest-1").first().subscription_status == "trialing"


def test_subscription_updates_converge(db, restaurant):
    handle_event(db, event("customer.subscription.created", subscription()))
    handle_event(db, event("customer.subscription.updated", subscription(status="past_due")))
    handle_event(db, event("customer.subscription.updated", subscription(status="past_due")))

    rows = db.query(Subscription).all()
    assert len(rows) == 1
    assert rows[0].status == "past_due"


def test_trial_end_survives_update_without_one(db, restaurant):
    handle_event(db, event("customer.subscription.created", subscription(status="trialing", trial_end=JAN_2026)))

    handle_event(db, event("customer.subscription.updated", subscription(status="trialing")))

    assert db.query(Subscription).one().trial_end == datetime(2026, 1, 1)


def test_trial_preserved_through_upgrade(db, restaurant):
    payload = subscription(sub_id="sub_2", status="trialing")
    payload["metadata"] = {
        "restaurantId": "rest-1",
        "plan": "business",
        "isUpgrade": "true",
        "trialPreserved": "true",
        "originalTrialEnd": str(JAN_2026),
    }

    handle_event(db, event("customer.subscription.created", payload))

    row = db.query(Subscription).filter_by(stripe_subscription_id="sub_2").one()
    assert row.plan == "business"
    assert row.trial_end == datetime(2026, 1, 1)


def test_subscription_deleted_notifies_owner(db, restaurant, mocker):
    notify = mocker.patch("qr_checkout.notifications.notify_subscription_canceled")
    handle_event(db, event("customer.subscription.created", subscription()))

    handle_event(db, event("customer.subscription.deleted", subscription()))
    handle_event(db, event("customer.subscription.deleted", subscription()))

    assert db.query(Subscription).one().status == "canceled"
    assert db.query(Restaurant).filter_by(id="rest-1").first().subscription_status == "canceled"
    assert notify.call_count == 1


def test_replaced_subscription_is_not_a_cancellation(db, restaurant, mocker):
    notify = mocker.patch("qr_checkout.notifications.notify_subscription_canceled")
    handle_event(db, event("customer.subscription.created", subscription("sub_1")))
    handle_event(db, event("customer.subscription.created", subscription("sub_2")))

    handle_event(db, event("customer.subscription.deleted", subscription("sub_1")))

    notify.assert_not_called()
    assert db.query(Restaurant).filter_by(id="rest-1").first().subscription_status == "active"


def test_subscription_refund_cancels_restaurant(db, restaurant, mocker):
    notify = mocker.patch("qr_checkout.notifications.notify_subscription_refunded")
    mocker.patch("stripe.Invoice.retrieve", return_value={"id": "in_1", "subscription": "sub_1"})
    handle_event(db, event("customer.subscription.created", subscription()))

    handle_event(db, event("charge.refunded", {"id": "ch_2", "invoice": "in_1", "payment_intent": "pi_sub"}))

    assert db.query(Subscription).one().status == "canceled"
    assert db.query(Restaurant).filter_by(id="rest-1").first().subscription_status == "canceled"
    notify.assert_called_once()


def test_subscription_checkout_stores_subscription(db, restaurant, mocker):
    retrieve = mocker.patch("stripe.Subscription.retrieve", return_value=subscription("sub_9"))
    session = {
        "id": "cs_sub_1",
        "mode": "subscription",
        "subscription": "sub_9",
        "customer": "cus_123",
        "metadata": {"restaurantId": "rest-1", "plan": "pro"},
    }

    handle_event(db, event("checkout.session.completed", session))

    retrieve.assert_called_once_with("sub_9")
    assert db.query(Subscription).filter_by(stripe_subscription_id="sub_9").one().status == "active"
    assert db.query(Payment).count() == 0


def test_trial_will_end_notifies(db, restaurant, mocker):
    notify = mocker.patch("qr_checkout.notifications.notify_trial_will_end")

    handle_event(db, event("customer.subscription.trial_will_end", subscription(status="trialing", trial_end=JAN_2026)))

    notify.assert_called_once()


# Connected accounts

def test_account_updated_tracks_charges_enabled(db, restaurant):
    account = {
        "id": "acct_123",
        "charges_enabled": False,
        "requirements": {"currently_due": ["external_account"], "past_due": [], "errors": []},
        "metadata": {},
    }

    handle_event(db, event("account.updated", account))

    row = db.query(Restaurant).filter_by(id="rest-1").first()
    assert row.stripe_account_enabled is False
    assert row.stripe_account_requirements["currently_due"] == ["external_account"]
