from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


class OrderItemData(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    id: Optional[str] = None
    name: Optional[str] = None
    price: float = 0
    quantity: int = 0
    size: Optional[str] = None
    modifiers: List[Dict[str, Any]] = Field(default_factory=list)
    combo_meal_id: Optional[str] = None


class QRPaymentData(BaseModel):
    """Cart submitted from a table's QR session.

    Only non-finite numbers are refused here. Structural and business checks
    belong to ``validate_order_payload`` so the caller receives every problem
    at once.
    """

    model_config = ConfigDict(allow_inf_nan=False)

    restaurant_id: Optional[str] = None
    table_id: Optional[str] = None
    items: List[OrderItemData] = Field(default_factory=list)
    subtotal: float = 0
    tax: float = 0
    tip: float = 0
    total: float = 0
    email: Optional[str] = None
    customer_name: Optional[str] = None
    special_instructions: Optional[str] = None
    idempotency_key: Optional[str] = None


class FailedPaymentRequest(BaseModel):
    message: str = ""


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


class GatewayMetadata(BaseModel):
    """Closed view over the string-only metadata bag attached to gateway objects."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    restaurant_id: Optional[str] = Field(None, alias="restaurantId")
    order_id: Optional[str] = Field(None, alias="orderId")
    table_id: Optional[str] = Field(None, alias="tableId")
    idempotency_key: Optional[str] = Field(None, alias="idempotencyKey")
    plan: Optional[str] = None
    interval: Optional[str] = None
    is_upgrade: bool = Field(False, alias="isUpgrade")
    trial_preserved: bool = Field(False, alias="trialPreserved")
    original_trial_end: Optional[int] = Field(None, alias="originalTrialEnd")

    @classmethod
    def from_stripe(cls, raw: Optional[Mapping[str, Any]]) -> "GatewayMetadata":
        raw = dict(raw or {})
        for key in ("isUpgrade", "trialPreserved"):
            if key in raw:
                raw[key] = _as_bool(raw[key])
        trial_end = raw.get("originalTrialEnd")
        if trial_end in ("", None):
            raw.pop("originalTrialEnd", None)
        else:
            try:
                raw["originalTrialEnd"] = int(float(trial_end))
            except (TypeError, ValueError):
                raw.pop("originalTrialEnd")
        return cls.model_validate(raw)

    def to_stripe(self) -> Dict[str, str]:
        out = {}
        for key, value in self.model_dump(by_alias=True).items():
            if value is None or value is False:
                continue
            out[key] = "true" if value is True else str(value)
        return out

    @property
    def is_subscription(self) -> bool:
        return bool(self.plan) and not self.order_id

    @property
    def original_trial_end_at(self) -> Optional[datetime]:
        if self.original_trial_end is None:
            return None
        return datetime.fromtimestamp(self.original_trial_end, tz=timezone.utc).replace(tzinfo=None)
