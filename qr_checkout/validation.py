import math
import re
from dataclasses import dataclass, field
from typing import List

from qr_checkout.config import (
    AMOUNT_TOLERANCE,
    MAX_CUSTOMER_NAME_LENGTH,
    MAX_INSTRUCTIONS_LENGTH,
    MAX_ITEM_PRICE,
    MAX_ITEM_QUANTITY,
    MAX_ORDER_ITEMS,
    MAX_ORDER_TOTAL,
)
from qr_checkout.schemas import QRPaymentData

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


def validate_order_payload(payload: QRPaymentData) -> ValidationResult:
    """Check a cart before any side effect.

    Never raises for bad input and never stops at the first problem: every
    failing check contributes its own message.
    """
    errors = []

    if not payload.restaurant_id:
        errors.append("Restaurant ID is required")
    if not payload.table_id:
        errors.append("Table ID is required")
    if not payload.items:
        errors.append("At least one item is required")

    for label, amount in (("Subtotal", payload.subtotal), ("Tax", payload.tax),
                          ("Tip", payload.tip), ("Total", payload.total)):
        if not math.isfinite(amount):
            errors.append(f"{label} must be a valid number")

    if payload.subtotal <= 0:
        errors.append("Subtotal must be greater than 0")
    if payload.total <= 0:
        errors.append("Total must be greater than 0")
    if payload.tax < 0:
        errors.append("Tax cannot be negative")
    if payload.tip < 0:
        errors.append("Tip cannot be negative")

    for position, item in enumerate(payload.items, start=1):
        label = f"Item {position}"
        if not item.id:
            errors.append(f"{label}: ID is required")
        if not item.name or not item.name.strip():
            errors.append(f"{label}: name is required")
        if not math.isfinite(item.price):
            errors.append(f"{label}: price must be a valid number")
        elif item.price <= 0:
            errors.append(f"{label}: price must be greater than 0")
        elif item.price > MAX_ITEM_PRICE:
            errors.append(f"{label}: price cannot exceed {MAX_ITEM_PRICE}")
        if not 1 <= item.quantity <= MAX_ITEM_QUANTITY:
            errors.append(f"{label}: quantity must be between 1 and {MAX_ITEM_QUANTITY}")

    if payload.items:
        calculated = sum(item.price * item.quantity for item in payload.items)
        if abs(calculated - payload.subtotal) > AMOUNT_TOLERANCE:
            errors.append(
                f"Subtotal calculation mismatch: expected {calculated:.2f}, got {payload.subtotal:.2f}"
            )

    expected_total = payload.subtotal + payload.tax + payload.tip
    if abs(expected_total - payload.total) > AMOUNT_TOLERANCE:
        errors.append(
            f"Total calculation mismatch: expected {expected_total:.2f}, got {payload.total:.2f}"
        )

    if payload.email and not EMAIL_PATTERN.match(payload.email):
        errors.append("Invalid email address")
    if payload.customer_name and len(payload.customer_name) > MAX_CUSTOMER_NAME_LENGTH:
        errors.append(f"Customer name cannot exceed {MAX_CUSTOMER_NAME_LENGTH} characters")
    if payload.special_instructions and len(payload.special_instructions) > MAX_INSTRUCTIONS_LENGTH:
        errors.append(f"Special instructions cannot exceed {MAX_INSTRUCTIONS_LENGTH} characters")

    if payload.total > MAX_ORDER_TOTAL:
        errors.append(f"Order total cannot exceed {MAX_ORDER_TOTAL}")
    if len(payload.items) > MAX_ORDER_ITEMS:
        errors.append(f"Order cannot contain more than {MAX_ORDER_ITEMS} items")

    return ValidationResult(is_valid=not errors, errors=errors)
