import logging
from dataclasses import dataclass
from typing import Optional

from qr_checkout.config import DEFAULT_CURRENCY, MAX_CARD_AMOUNT, MIN_CARD_AMOUNT, SUPPORTED_CURRENCIES
from qr_checkout.data_service import DataService
from qr_checkout.models import Restaurant

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "Restaurant payment processing is not available. Please pay at the counter."
DISABLED = "Restaurant payment processing is temporarily disabled. Please pay at the counter."


@dataclass
class EligibilityResult:
    is_valid: bool
    merchant: Optional[Restaurant] = None
    error: Optional[str] = None


def merchant_currency(restaurant: Restaurant) -> str:
    return (restaurant.currency or DEFAULT_CURRENCY).lower()


def check_eligibility(data: DataService, restaurant_id: str, amount: float) -> EligibilityResult:
    """Decide whether a restaurant may take a card payment of ``amount``.

    Connected accounts are hosted and pre-approved, so outstanding
    requirements do not block; a non-empty ``past_due`` list is only logged.
    """
    restaurant = data.get_restaurant(restaurant_id) if restaurant_id else None
    if restaurant is None:
        logger.warning("Card payment refused: restaurant %s not found", restaurant_id)
        return EligibilityResult(False, error=NOT_AVAILABLE)

    if not restaurant.stripe_account_id:
        logger.warning("Card payment refused: restaurant %s has no connected account", restaurant_id)
        return EligibilityResult(False, error=NOT_AVAILABLE)

    if not restaurant.stripe_account_enabled:
        logger.warning("Card payment refused: connected account %s is disabled", restaurant.stripe_account_id)
        return EligibilityResult(False, error=DISABLED)

    requirements = restaurant.stripe_account_requirements or {}
    past_due = requirements.get("past_due") if isinstance(requirements, dict) else None
    if past_due:
        logger.warning("Connected account %s has past due requirements: %s", restaurant.stripe_account_id, past_due)

    if amount < MIN_CARD_AMOUNT:
        return EligibilityResult(
            False, error=f"The minimum card payment is {MIN_CARD_AMOUNT:.2f}. Please pay at the counter."
        )
    if amount > MAX_CARD_AMOUNT:
        return EligibilityResult(
            False, error=f"Card payments are limited to {MAX_CARD_AMOUNT:.2f} per order. Please pay at the counter."
        )

    currency = merchant_currency(restaurant)
    if currency not in SUPPORTED_CURRENCIES:
        logger.warning("Card payment refused: currency %s not supported for restaurant %s", currency, restaurant_id)
        return EligibilityResult(
            False, error=f"Payment currency {currency.upper()} is not supported. Please pay at the counter."
        )

    return EligibilityResult(True, merchant=restaurant)
