"""Polar webhook payload schemas and shape detection.

Webhook ``data`` is either subscription-like or order-like; anything else is
dropped before reconciliation. Models are lenient (unknown keys ignored) because
the provider adds fields between API versions.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from canvas_billing.utils import ensure_utc

logger = logging.getLogger(__name__)


class PolarCustomer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    email: str | None = None


class PolarProduct(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PolarPrice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None


class PolarSubscription(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str
    customer_id: str | None = None
    customer: PolarCustomer | None = None
    product_id: str | None = None
    product: PolarProduct | None = None
    prices: list[PolarPrice] = Field(default_factory=list)
    plan_code: str | None = None
    current_period_end: datetime | None = None
    trial_ends_at: datetime | None = Field(None, validation_alias=AliasChoices("trial_ends_at", "trial_end"))
    cancel_at: datetime | None = Field(None, validation_alias=AliasChoices("cancel_at", "ends_at"))
    canceled_at: datetime | None = None
    seats: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("current_period_end", "trial_ends_at", "cancel_at", "canceled_at")
    @classmethod
    def _to_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_to_dict(cls, v: Any) -> Any:
        return v if v is not None else {}


class PolarOrder(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    customer_id: str | None = None
    customer: PolarCustomer | None = None
    subscription_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_to_dict(cls, v: Any) -> Any:
        return v if v is not None else {}


class PolarWebhookEvent(BaseModel):
    """Envelope delivered by the provider: ``{type, id?, data}``."""

    model_config = ConfigDict(extra="ignore")

    type: str = Field(min_length=1)
    id: str | int | None = None
    data: Any


@dataclass(frozen=True)
class BillingEvent:
    """A structurally valid event carrying a subscription and/or order snapshot."""

    type: str
    id: str | int | None
    subscription: PolarSubscription | None
    order: PolarOrder | None
    raw: dict[str, Any]


def extract_subscription_like(data: Any) -> PolarSubscription | None:
    """Return the subscription snapshot in ``data``, if any.

    Orders may embed the subscription they paid for under ``subscription``.
    """
    if not isinstance(data, dict):
        return None

    candidate = data
    if "subscription_id" in data:
        candidate = data.get("subscription")
        if not isinstance(candidate, dict):
            return None

    if not isinstance(candidate.get("id"), str) or not isinstance(candidate.get("status"), str):
        return None

    try:
        return PolarSubscription.model_validate(candidate)
    except ValidationError as e:
        logger.debug("Subscription-like payload failed validation: %s", e)
        return None


def extract_order_like(data: Any) -> PolarOrder | None:
    """Return the order snapshot in ``data``, if any."""
    if not isinstance(data, dict) or "subscription_id" not in data:
        return None

    try:
        return PolarOrder.model_validate(data)
    except ValidationError as e:
        logger.debug("Order-like payload failed validation: %s", e)
        return None


def parse_webhook_event(payload: Any, fallback_id: str | None = None) -> BillingEvent | None:
    """Validate a raw webhook payload. Returns None for unrecognized shapes."""
    try:
        envelope = PolarWebhookEvent.model_validate(payload)
    except ValidationError as e:
        logger.info("Dropping malformed billing event: %s", e.errors(include_url=False))
        return None

    subscription = extract_subscription_like(envelope.data)
    order = extract_order_like(envelope.data)
    if subscription is None and order is None:
        logger.info("Dropping billing event %s: no subscription or order payload", envelope.type)
        return None

    return BillingEvent(
        type=envelope.type,
        id=envelope.id if envelope.id is not None else fallback_id,
        subscription=subscription,
        order=order,
        raw=envelope.data,
    )
