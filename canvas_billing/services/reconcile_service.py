"""Reconciler — one provider webhook event in, one authoritative subscription update out.

Flow per event: resolve owner → upsert the subscription record → grant the cycle's
credits if entitled → fan out notifications → schedule the pre-expiry re-check.
Unresolvable events are no-ops; persistence errors propagate so the delivery
mechanism retries the whole event, which is safe because every step is idempotent.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from canvas_billing.constants import (
    DEFAULT_GRANT_REASON,
    EVENT_CREDITS_GRANTED,
    EVENT_SUBSCRIPTION_SYNCED,
    INITIAL_GRANT_REASON,
    MAX_DB_INT,
    ORDER_ONLY_STATUS,
)
from canvas_billing.models.subscription import Subscription
from canvas_billing.schemas.credits import GrantResult
from canvas_billing.schemas.polar import BillingEvent
from canvas_billing.schemas.subscription import SubscriptionSnapshot
from canvas_billing.services.credit_service import grant_if_needed, grant_key
from canvas_billing.services.notification_service import emit_event, schedule_pre_expiry_check
from canvas_billing.services.subscription_service import (
    is_entitled_status,
    report_duplicates,
    upsert_from_snapshot,
)
from canvas_billing.services.user_service import get_user, lookup_user_id_by_email
from canvas_billing.utils import ensure_utc, to_millis

logger = logging.getLogger(__name__)

_CREATE_EVENT = re.compile(r"subscription\.created", re.IGNORECASE)

_GRANT_KEYS = ("credits_grant_per_period", "creditsGrantPerPeriod")
_ROLLOVER_KEYS = ("credits_rollover_limit", "creditsRolloverLimit")


@dataclass(frozen=True)
class ReconcileOutcome:
    status: str
    action: str
    message: str
    subscription_id: int | None = None
    user_id: int | None = None
    grant: GrantResult | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "action": self.action,
            "message": self.message,
            "subscription_id": self.subscription_id,
            "user_id": self.user_id,
            "grant": self.grant.model_dump() if self.grant else None,
        }


def _metadata_user_id(event: BillingEvent) -> str | None:
    for source in (event.subscription, event.order):
        if source is None:
            continue
        value = source.metadata.get("userId") or source.metadata.get("user_id")
        if value:
            return str(value)
    return None


def _customer_email(event: BillingEvent) -> str | None:
    for source in (event.subscription, event.order):
        if source is not None and source.customer is not None and source.customer.email:
            return source.customer.email
    return None


def _parse_user_id(value: str) -> int | None:
    """A usable users.id, or None for non-numeric and out-of-range values."""
    try:
        user_id = int(value)
    except ValueError:
        return None
    return user_id if 1 <= user_id <= MAX_DB_INT else None


async def resolve_owner(db: AsyncSession, event: BillingEvent) -> int | None:
    """Resolve the internal user id: explicit metadata first, then customer email."""
    meta_user_id = _metadata_user_id(event)
    if meta_user_id:
        candidate = _parse_user_id(meta_user_id)
        user = await get_user(db, candidate) if candidate is not None else None
        if user is not None:
            logger.debug("Using metadata userId %s", user.id)
            return user.id
        logger.warning("Metadata userId %r does not match a user, falling back to email", meta_user_id)

    email = _customer_email(event)
    if not email:
        logger.info("Billing event %s has no customer email to resolve an owner", event.id)
        return None

    user_id = await lookup_user_id_by_email(db, email)
    if user_id is None:
        logger.info("No user found for billing customer %s", email)
    return user_id


def _metadata_int(keys: tuple[str, ...], *sources: dict[str, Any]) -> int | None:
    for source in sources:
        for key in keys:
            value = source.get(key)
            if value is None or value == "":
                continue
            try:
                number = int(value)
            except (TypeError, ValueError):
                logger.warning("Ignoring non-integer %s=%r in billing metadata", key, value)
                continue
            if 0 <= number <= MAX_DB_INT:
                return number
            logger.warning("Ignoring out-of-range %s=%r in billing metadata", key, value)
    return None


def build_snapshot(event: BillingEvent) -> SubscriptionSnapshot | None:
    """Normalize the event's subscription (or order) payload. None without a provider id."""
    sub = event.subscription
    order = event.order

    provider_subscription_id = (sub.id if sub else None) or (order.subscription_id if order else None)
    if not provider_subscription_id:
        return None

    customer_id = ""
    if sub is not None:
        customer_id = (sub.customer.id if sub.customer else None) or sub.customer_id or ""
    if not customer_id and order is not None:
        customer_id = order.customer_id or ""

    if sub is None:
        return SubscriptionSnapshot(
            provider_customer_id=customer_id,
            provider_subscription_id=provider_subscription_id,
            status=ORDER_ONLY_STATUS,
            metadata=event.raw,
            has_plan_fields=False,
        )

    product_meta = sub.product.metadata if sub.product else {}
    return SubscriptionSnapshot(
        provider_customer_id=customer_id,
        provider_subscription_id=provider_subscription_id,
        status=sub.status,
        product_id=sub.product_id or (sub.product.id if sub.product else None),
        price_id=sub.prices[0].id if sub.prices else None,
        plan_code=sub.plan_code or (sub.product.name if sub.product else None),
        current_period_end=sub.current_period_end,
        trial_ends_at=sub.trial_ends_at,
        cancel_at=sub.cancel_at,
        canceled_at=sub.canceled_at,
        seats=sub.seats,
        metadata=event.raw,
        credits_grant_per_period=_metadata_int(_GRANT_KEYS, sub.metadata, product_meta),
        credits_rollover_limit=_metadata_int(_ROLLOVER_KEYS, sub.metadata, product_meta),
    )


async def _sync(db: AsyncSession, event: BillingEvent) -> tuple[Subscription, int] | None:
    owner_id = await resolve_owner(db, event)
    if owner_id is None:
        logger.info("Skipping billing event %s (%s): owner not resolved", event.id, event.type)
        return None

    snapshot = build_snapshot(event)
    if snapshot is None:
        logger.info("Skipping billing event %s (%s): no provider subscription id", event.id, event.type)
        return None

    sub, _ = await upsert_from_snapshot(db, owner_id, snapshot)
    await report_duplicates(db, owner_id)
    return sub, owner_id


async def reconcile(db: AsyncSession, event: BillingEvent) -> int | None:
    """Apply the event to one subscription record. Returns its id, or None for a no-op."""
    synced = await _sync(db, event)
    return synced[0].id if synced else None


async def process_billing_event(db: AsyncSession, event: BillingEvent) -> ReconcileOutcome:
    """Reconcile, grant the cycle's credits if due, and fan out notifications."""
    synced = await _sync(db, event)
    if synced is None:
        return ReconcileOutcome(status="ok", action="ignored", message="Owner or subscription not resolved")

    sub, owner_id = synced
    provider_subscription_id = sub.provider_subscription_id
    # Order-only events fall back to the record's period so renewals are not granted twice
    period_end = ensure_utc(sub.current_period_end)
    period_end_ms = to_millis(period_end)
    period_tag = period_end_ms if period_end_ms is not None else "first"

    grant = None
    if is_entitled_status(sub.status):
        key = grant_key(provider_subscription_id, period_end_ms, event.id)
        reason = INITIAL_GRANT_REASON if _CREATE_EVENT.search(event.type) else DEFAULT_GRANT_REASON
        grant = await grant_if_needed(db, sub.id, key, reason=reason)
        if grant.ok and not grant.skipped and grant.granted:
            await emit_event(
                EVENT_CREDITS_GRANTED,
                {
                    "user_id": owner_id,
                    "amount": grant.granted,
                    "balance": grant.balance,
                    "period_end": period_end_ms,
                },
                event_id=f"credits-granted:{provider_subscription_id}:{period_tag}",
            )
        elif grant.ok and not grant.skipped:
            logger.info("Subscription %s is at its rollover limit, nothing credited", sub.id)
        else:
            logger.info("Credit grant for subscription %s skipped: %s", sub.id, grant.reason or grant.error)

    await emit_event(
        EVENT_SUBSCRIPTION_SYNCED,
        {
            "user_id": owner_id,
            "provider_subscription_id": provider_subscription_id,
            "status": sub.status,
            "period_end": period_end_ms,
        },
        event_id=f"sub-synced:{provider_subscription_id}:{period_tag}:{sub.status}",
    )
    await schedule_pre_expiry_check(owner_id, provider_subscription_id, period_end)

    return ReconcileOutcome(
        status="ok",
        action="synced",
        message=f"Subscription {sub.id} synced from {event.type}",
        subscription_id=sub.id,
        user_id=owner_id,
        grant=grant,
    )
