"""Subscription records — lookups, entitlement, and snapshot upserts."""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from canvas_billing.constants import DEFAULT_GRANT, DEFAULT_ROLLOVER_LIMIT, ENTITLED_STATUSES
from canvas_billing.models.subscription import Subscription
from canvas_billing.schemas.subscription import SubscriptionSnapshot
from canvas_billing.utils import ensure_utc, now_utc

logger = logging.getLogger(__name__)

# Owned by the credit accountant; a snapshot patch never writes these
FINANCIAL_FIELDS = frozenset({"credits_balance", "last_grant_cursor"})


def is_entitled_status(status: str | None) -> bool:
    return (status or "").lower() in ENTITLED_STATUSES


async def get_subscription_for_user(db: AsyncSession, user_id: int) -> Subscription | None:
    """Return the user's oldest subscription record."""
    result = await db.execute(
        select(Subscription).where(Subscription.user_id == user_id).order_by(Subscription.id).limit(1)
    )
    return result.scalar_one_or_none()


async def get_by_provider_id(db: AsyncSession, provider_subscription_id: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.provider_subscription_id == provider_subscription_id)
        .order_by(Subscription.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_all_for_user(db: AsyncSession, user_id: int) -> list[Subscription]:
    result = await db.execute(
        select(Subscription).where(Subscription.user_id == user_id).order_by(Subscription.id)
    )
    return list(result.scalars().all())


async def has_entitlement(db: AsyncSession, user_id: int, now: datetime | None = None) -> bool:
    """Check if any of the user's subscriptions is entitled and inside its paid period."""
    now = now or now_utc()
    for sub in await get_all_for_user(db, user_id):
        period_end = ensure_utc(sub.current_period_end)
        if is_entitled_status(sub.status) and (period_end is None or period_end > now):
            return True
    return False


async def get_credits_balance(db: AsyncSession, user_id: int) -> int:
    sub = await get_subscription_for_user(db, user_id)
    return sub.credits_balance if sub else 0


class MatchKind(str, Enum):
    """Which record a snapshot lands on, in precedence order."""

    PROVIDER = "provider"
    OWNER_AFTER_MISMATCH = "owner_after_mismatch"
    CREATE_AFTER_MISMATCH = "create_after_mismatch"
    OWNER = "owner"
    CREATE = "create"


@dataclass(frozen=True)
class SubscriptionMatch:
    kind: MatchKind
    target: Subscription | None
    by_provider: Subscription | None
    by_owner: Subscription | None

    @property
    def owner_mismatch(self) -> bool:
        return self.kind in (MatchKind.OWNER_AFTER_MISMATCH, MatchKind.CREATE_AFTER_MISMATCH)

    @property
    def duplicate(self) -> bool:
        """Both keys resolved, but to different records."""
        return (
            self.by_provider is not None
            and self.by_owner is not None
            and self.by_provider.id != self.by_owner.id
        )


def match_subscription(
    owner_id: int,
    by_provider: Subscription | None,
    by_owner: Subscription | None,
) -> SubscriptionMatch:
    """Decide which record a snapshot for ``owner_id`` should update.

    A provider-id hit owned by someone else is never touched; the owner's own
    record (or a new one) is used instead.
    """
    if by_provider is not None:
        if by_provider.user_id == owner_id:
            return SubscriptionMatch(MatchKind.PROVIDER, by_provider, by_provider, by_owner)
        if by_owner is not None:
            return SubscriptionMatch(MatchKind.OWNER_AFTER_MISMATCH, by_owner, by_provider, by_owner)
        return SubscriptionMatch(MatchKind.CREATE_AFTER_MISMATCH, None, by_provider, by_owner)
    if by_owner is not None:
        return SubscriptionMatch(MatchKind.OWNER, by_owner, by_provider, by_owner)
    return SubscriptionMatch(MatchKind.CREATE, None, by_provider, by_owner)


def _first_set(*values: int | None) -> int | None:
    for value in values:
        if value is not None:
            return value
    return None


def _credit_config(
    snapshot: SubscriptionSnapshot,
    by_provider: Subscription | None,
    by_owner: Subscription | None,
) -> dict[str, int]:
    """Event value, then the provider-id record, then the owner record, then defaults."""
    return {
        "credits_grant_per_period": _first_set(
            snapshot.credits_grant_per_period,
            by_provider.credits_grant_per_period if by_provider else None,
            by_owner.credits_grant_per_period if by_owner else None,
            DEFAULT_GRANT,
        ),
        "credits_rollover_limit": _first_set(
            snapshot.credits_rollover_limit,
            by_provider.credits_rollover_limit if by_provider else None,
            by_owner.credits_rollover_limit if by_owner else None,
            DEFAULT_ROLLOVER_LIMIT,
        ),
    }


async def upsert_from_snapshot(
    db: AsyncSession, owner_id: int, snapshot: SubscriptionSnapshot
) -> tuple[Subscription, SubscriptionMatch]:
    """Apply a provider snapshot to exactly one subscription record for ``owner_id``.

    Persistence errors propagate so the caller's delivery mechanism retries.
    """
    by_provider = await get_by_provider_id(db, snapshot.provider_subscription_id)
    by_owner = await get_subscription_for_user(db, owner_id)
    match = match_subscription(owner_id, by_provider, by_owner)

    if match.duplicate:
        logger.warning(
            "Duplicate subscription detected for user %s: by provider id -> %s, by user id -> %s",
            owner_id, by_provider.id, by_owner.id,
        )
    if match.owner_mismatch:
        logger.warning(
            "Provider subscription %s is held by record %s (user %s), not user %s; leaving it untouched",
            snapshot.provider_subscription_id, by_provider.id, by_provider.user_id, owner_id,
        )

    credit_config = _credit_config(snapshot, by_provider, by_owner)

    if match.target is None:
        sub = Subscription(
            user_id=owner_id,
            credits_balance=0,
            last_grant_cursor=None,
            **snapshot.plan_fields(full=True),
            **credit_config,
        )
        db.add(sub)
        await db.commit()
        logger.info("Created subscription %s for user %s (%s)", sub.id, owner_id, match.kind.value)
        return sub, match

    sub = match.target
    patch = {**snapshot.plan_fields(), **credit_config}
    for key, value in patch.items():
        if key in FINANCIAL_FIELDS:
            continue
        setattr(sub, key, value)
    await db.commit()
    logger.info("Updated subscription %s for user %s (%s)", sub.id, owner_id, match.kind.value)
    return sub, match


async def report_duplicates(db: AsyncSession, user_id: int) -> list[Subscription]:
    """Log every record when a user holds more than one. No automatic merge."""
    subs = await get_all_for_user(db, user_id)
    if len(subs) > 1:
        logger.error("User %s has %d subscription records:", user_id, len(subs))
        for index, sub in enumerate(subs, start=1):
            logger.error(
                "  %d. id=%s provider_id=%s status=%s balance=%s",
                index, sub.id, sub.provider_subscription_id, sub.status, sub.credits_balance,
            )
    return subs


async def find_duplicate_owners(db: AsyncSession) -> dict[int, list[Subscription]]:
    """Users holding more than one subscription record, for manual review."""
    result = await db.execute(
        select(Subscription.user_id)
        .group_by(Subscription.user_id)
        .having(func.count(Subscription.id) > 1)
    )
    return {user_id: await get_all_for_user(db, user_id) for user_id in result.scalars().all()}
