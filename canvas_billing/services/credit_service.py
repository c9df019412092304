"""Credit accountant — grant, consume and adjust with ledger-backed idempotency.

Every balance change writes a ledger row and the matching balance update in one
transaction, ledger row first. The unique ``idempotency_key`` on the ledger is the
durable dedupe gate; ``Subscription.last_grant_cursor`` is only a fast path.
The balance update is a compare-and-set on the balance that was read, so two
concurrent writers can never both apply against the same starting balance.
"""

import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from canvas_billing.constants import (
    CREDIT_CAS_MAX_ATTEMPTS,
    DEFAULT_ADJUST_REASON,
    DEFAULT_CONSUME_REASON,
    DEFAULT_GRANT,
    DEFAULT_GRANT_REASON,
    DEFAULT_ROLLOVER_LIMIT,
    ENTRY_ADJUST,
    ENTRY_CONSUME,
    ENTRY_GRANT,
    RECENT_LEDGER_ENTRIES,
)
from canvas_billing.models.credit_ledger import CreditLedgerEntry
from canvas_billing.models.subscription import Subscription
from canvas_billing.schemas.credits import AdjustResult, BalanceAudit, ConsumeResult, GrantResult
from canvas_billing.services.subscription_service import get_credits_balance, is_entitled_status

logger = logging.getLogger(__name__)


class CreditConflictError(RuntimeError):
    """The balance kept changing underneath us. Retrying the whole call is safe."""


def grant_key(
    provider_subscription_id: str,
    period_end_ms: int | None = None,
    event_id: str | int | None = None,
) -> str:
    """Build the idempotency key for one billing cycle's grant.

    ``{id}:{period_end_ms}`` when the period end is known, ``{id}:evt:{event_id}``
    when only the delivering event is known, ``{id}:first`` otherwise.
    """
    if period_end_ms is not None:
        return f"{provider_subscription_id}:{period_end_ms}"
    if event_id is not None:
        return f"{provider_subscription_id}:evt:{event_id}"
    return f"{provider_subscription_id}:first"


async def ledger_has_key(db: AsyncSession, idempotency_key: str) -> bool:
    result = await db.execute(
        select(CreditLedgerEntry.id).where(CreditLedgerEntry.idempotency_key == idempotency_key).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _fetch_by_id(db: AsyncSession, subscription_id: int) -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.id == subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _fetch_by_user(db: AsyncSession, user_id: int) -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.id)
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _apply_entry(
    db: AsyncSession,
    sub: Subscription,
    *,
    amount: int,
    next_balance: int,
    entry_type: str,
    reason: str,
    idempotency_key: str | None,
    meta: dict | None = None,
    grant_cursor: str | None = None,
) -> bool:
    """Write the ledger row and compare-and-set the balance in one transaction.

    Returns False (nothing written) when the balance moved since ``sub`` was read.
    Raises IntegrityError when another writer already used ``idempotency_key``.
    """
    prev = sub.credits_balance
    db.add(
        CreditLedgerEntry(
            user_id=sub.user_id,
            subscription_id=sub.id,
            amount=amount,
            entry_type=entry_type,
            reason=reason,
            idempotency_key=idempotency_key,
            meta={"prev": prev, "next": next_balance, **(meta or {})},
        )
    )
    await db.flush()

    values: dict = {"credits_balance": next_balance}
    if grant_cursor is not None:
        values["last_grant_cursor"] = grant_cursor
    result = await db.execute(
        update(Subscription)
        .where(Subscription.id == sub.id, Subscription.credits_balance == prev)
        .values(**values)
    )
    if result.rowcount != 1:
        await db.rollback()
        return False

    await db.commit()
    return True


async def _is_replay(db: AsyncSession, idempotency_key: str | None) -> bool:
    """After an IntegrityError: was it our idempotency key that collided?"""
    await db.rollback()
    return idempotency_key is not None and await ledger_has_key(db, idempotency_key)


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


async def grant_if_needed(
    db: AsyncSession,
    subscription_id: int,
    idempotency_key: str,
    amount: int | None = None,
    reason: str | None = None,
) -> GrantResult:
    """Grant one billing cycle's credits at most once per ``idempotency_key``."""
    for _ in range(CREDIT_CAS_MAX_ATTEMPTS):
        # The ledger is the authority; the cursor check below is only a shortcut
        if await ledger_has_key(db, idempotency_key):
            return GrantResult(ok=True, skipped=True, reason="duplicate-ledger")

        sub = await _fetch_by_id(db, subscription_id)
        if sub is None:
            return GrantResult(ok=False, error="subscription-not-found")

        if sub.last_grant_cursor == idempotency_key:
            return GrantResult(ok=True, skipped=True, reason="cursor-match")

        if not is_entitled_status(sub.status):
            return GrantResult(ok=True, skipped=True, reason="not-entitled")

        grant = amount if amount is not None else sub.credits_grant_per_period
        if grant is None:
            grant = DEFAULT_GRANT
        if grant <= 0:
            return GrantResult(ok=True, skipped=True, reason="zero-grant")

        limit = sub.credits_rollover_limit if sub.credits_rollover_limit is not None else DEFAULT_ROLLOVER_LIMIT
        prev = sub.credits_balance
        # Cap rule: min(prev + grant, limit). A balance already above the limit
        # (manual adjustment, lowered limit) is kept as is, so the max() guard
        # stops a grant from debiting it.
        next_balance = max(prev, min(prev + grant, limit))
        credited = next_balance - prev

        try:
            applied = await _apply_entry(
                db,
                sub,
                amount=credited,
                next_balance=next_balance,
                entry_type=ENTRY_GRANT,
                reason=reason or DEFAULT_GRANT_REASON,
                idempotency_key=idempotency_key,
                meta={"requested": grant},
                grant_cursor=idempotency_key,
            )
        except IntegrityError:
            if await _is_replay(db, idempotency_key):
                return GrantResult(ok=True, skipped=True, reason="duplicate-ledger")
            raise

        if applied:
            logger.info(
                "Granted %d credits to subscription %s (requested %d, balance %d -> %d, key=%s)",
                credited, subscription_id, grant, prev, next_balance, idempotency_key,
            )
            return GrantResult(ok=True, granted=credited, balance=next_balance)

        logger.info("Balance of subscription %s changed during grant, retrying", subscription_id)

    raise CreditConflictError(f"Could not grant credits to subscription {subscription_id}")


async def consume(
    db: AsyncSession,
    user_id: int,
    amount: int,
    reason: str | None = None,
    idempotency_key: str | None = None,
) -> ConsumeResult:
    """Deduct credits for metered work. Never drives the balance below zero."""
    if not _is_positive_int(amount):
        return ConsumeResult(ok=False, error="invalid-amount")

    for _ in range(CREDIT_CAS_MAX_ATTEMPTS):
        if idempotency_key and await ledger_has_key(db, idempotency_key):
            return ConsumeResult(ok=True, idempotent=True, balance=await get_credits_balance(db, user_id))

        sub = await _fetch_by_user(db, user_id)
        if sub is None:
            return ConsumeResult(ok=False, error="no-subscription")
        if not is_entitled_status(sub.status):
            return ConsumeResult(ok=False, error="not-entitled")
        if sub.credits_balance < amount:
            return ConsumeResult(ok=False, error="insufficient-credits", balance=sub.credits_balance)

        next_balance = sub.credits_balance - amount
        try:
            applied = await _apply_entry(
                db,
                sub,
                amount=-amount,
                next_balance=next_balance,
                entry_type=ENTRY_CONSUME,
                reason=reason or DEFAULT_CONSUME_REASON,
                idempotency_key=idempotency_key,
            )
        except IntegrityError:
            if await _is_replay(db, idempotency_key):
                return ConsumeResult(ok=True, idempotent=True, balance=await get_credits_balance(db, user_id))
            raise

        if applied:
            logger.debug("User %s consumed %d credits, balance %d", user_id, amount, next_balance)
            return ConsumeResult(ok=True, balance=next_balance)

        logger.info("Balance of user %s changed during consume, retrying", user_id)

    raise CreditConflictError(f"Could not consume credits for user {user_id}")


async def adjust_credits(
    db: AsyncSession,
    subscription_id: int,
    amount: int,
    reason: str | None = None,
    idempotency_key: str | None = None,
) -> AdjustResult:
    """Apply a signed manual correction (ops only, not gated on entitlement)."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
        return AdjustResult(ok=False, error="invalid-amount")

    for _ in range(CREDIT_CAS_MAX_ATTEMPTS):
        if idempotency_key and await ledger_has_key(db, idempotency_key):
            sub = await _fetch_by_id(db, subscription_id)
            return AdjustResult(ok=True, idempotent=True, balance=sub.credits_balance if sub else None)

        sub = await _fetch_by_id(db, subscription_id)
        if sub is None:
            return AdjustResult(ok=False, error="subscription-not-found")

        next_balance = sub.credits_balance + amount
        if next_balance < 0:
            return AdjustResult(ok=False, error="insufficient-credits", balance=sub.credits_balance)

        try:
            applied = await _apply_entry(
                db,
                sub,
                amount=amount,
                next_balance=next_balance,
                entry_type=ENTRY_ADJUST,
                reason=reason or DEFAULT_ADJUST_REASON,
                idempotency_key=idempotency_key,
            )
        except IntegrityError:
            if await _is_replay(db, idempotency_key):
                return AdjustResult(ok=True, idempotent=True)
            raise

        if applied:
            logger.warning(
                "Manual credit adjustment on subscription %s: %+d (balance %d)",
                subscription_id, amount, next_balance,
            )
            return AdjustResult(ok=True, balance=next_balance)

    raise CreditConflictError(f"Could not adjust credits on subscription {subscription_id}")


async def audit_balance(db: AsyncSession, subscription_id: int) -> BalanceAudit | None:
    """Compare the stored balance with the sum of its ledger rows."""
    sub = await _fetch_by_id(db, subscription_id)
    if sub is None:
        return None
    result = await db.execute(
        select(func.coalesce(func.sum(CreditLedgerEntry.amount), 0), func.count(CreditLedgerEntry.id))
        .where(CreditLedgerEntry.subscription_id == subscription_id)
    )
    total, count = result.one()
    return BalanceAudit(
        subscription_id=subscription_id,
        balance=sub.credits_balance,
        ledger_total=int(total or 0),
        entries=int(count or 0),
    )


async def recent_entries(db: AsyncSession, user_id: int, limit: int = RECENT_LEDGER_ENTRIES) -> list[CreditLedgerEntry]:
    result = await db.execute(
        select(CreditLedgerEntry)
        .where(CreditLedgerEntry.user_id == user_id)
        .order_by(CreditLedgerEntry.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
