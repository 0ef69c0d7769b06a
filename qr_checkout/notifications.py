"""Hand-off point for customer and owner emails.

Delivery belongs to the mail service; this module only records what was
handed off.
"""
import logging

from qr_checkout.models import Order, Payment, Restaurant, Subscription

logger = logging.getLogger(__name__)


def notify_order_refunded(payment: Payment, order: Order = None):
    recipient = order.customer_email if order is not None else None
    logger.info("Notification queued: refund of %.2f for order %s to %s",
                payment.amount or 0, payment.order_id, recipient or "restaurant")


def notify_subscription_refunded(restaurant: Restaurant, subscription: Subscription):
    logger.info("Notification queued: subscription %s refunded for restaurant %s (%s)",
                subscription.stripe_subscription_id, restaurant.id, restaurant.email)


def notify_subscription_canceled(restaurant: Restaurant, subscription: Subscription):
    logger.info("Notification queued: subscription %s canceled for restaurant %s (%s)",
                subscription.stripe_subscription_id, restaurant.id, restaurant.email)


def notify_trial_will_end(restaurant: Restaurant, subscription: Subscription):
    logger.info("Notification queued: trial of subscription %s ends %s for restaurant %s",
                subscription.stripe_subscription_id, subscription.trial_end, restaurant.id)
