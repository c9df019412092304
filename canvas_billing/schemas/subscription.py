"""Provider-neutral subscription snapshot applied by the reconciler."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class SubscriptionSnapshot(BaseModel):
    provider_customer_id: str = ""
    provider_subscription_id: str
    status: str
    product_id: str | None = None
    price_id: str | None = None
    plan_code: str | None = None
    current_period_end: datetime | None = None
    trial_ends_at: datetime | None = None
    cancel_at: datetime | None = None
    canceled_at: datetime | None = None
    seats: int | None = None
    metadata: dict[str, Any] | None = None
    credits_grant_per_period: int | None = None
    credits_rollover_limit: int | None = None
    # False for order-only events: only identity fields are patched
    has_plan_fields: bool = True

    def plan_fields(self, full: bool = False) -> dict[str, Any]:
        """Columns written on patch; order-only snapshots carry identity fields only."""
        fields: dict[str, Any] = {
            "provider_subscription_id": self.provider_subscription_id,
            "provider_metadata": self.metadata,
        }
        if self.provider_customer_id or full:
            fields["provider_customer_id"] = self.provider_customer_id
        if full or self.has_plan_fields:
            fields.update(
                status=self.status,
                product_id=self.product_id,
                price_id=self.price_id,
                plan_code=self.plan_code,
                current_period_end=self.current_period_end,
                trial_ends_at=self.trial_ends_at,
                cancel_at=self.cancel_at,
                canceled_at=self.canceled_at,
                seats=self.seats,
            )
        return fields
