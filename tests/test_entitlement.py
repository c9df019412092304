from datetime import timedelta

import pytest

from canvas_billing.services.notification_service import pre_expiry_run_at
from canvas_billing.services.subscription_service import get_credits_balance, has_entitlement
from canvas_billing.utils import now_utc


@pytest.mark.asyncio
async def test_entitlement_period_boundary(db, make_user, make_subscription):
    now = now_utc()
    expired = await make_user("expired@example.com")
    current = await make_user("current@example.com")
    open_ended = await make_user("open@example.com")
    await make_subscription(expired, "sub_e", current_period_end=now - timedelta(milliseconds=1))
    await make_subscription(current, "sub_c", current_period_end=now + timedelta(milliseconds=1))
    await make_subscription(open_ended, "sub_o", current_period_end=None)

    assert await has_entitlement(db, expired.id, now=now) is False
    assert await has_entitlement(db, current.id, now=now) is True
    assert await has_entitlement(db, open_ended.id, now=now) is True


@pytest.mark.asyncio
async def test_entitlement_by_status(db, make_user, make_subscription):
    trialing = await make_user("trial@example.com")
    canceled = await make_user("canceled@example.com")
    nobody = await make_user("nobody@example.com")
    await make_subscription(trialing, "sub_t", status="trialing")
    await make_subscription(canceled, "sub_x", status="canceled")

    assert await has_entitlement(db, trialing.id) is True
    assert await has_entitlement(db, canceled.id) is False
    assert await has_entitlement(db, nobody.id) is False


@pytest.mark.asyncio
async def test_entitlement_scans_every_record(db, make_user, make_subscription):
    user = await make_user()
    await make_subscription(user, "sub_old", status="canceled", credits_balance=4)
    await make_subscription(user, "sub_new", status="active")

    assert await has_entitlement(db, user.id) is True
    # The balance is read from the oldest record
    assert await get_credits_balance(db, user.id) == 4


@pytest.mark.asyncio
async def test_balance_without_subscription_is_zero(db, make_user):
    user = await make_user()
    assert await get_credits_balance(db, user.id) == 0


def test_pre_expiry_run_at():
    now = now_utc()

    far = now + timedelta(days=10)
    assert pre_expiry_run_at(far, now) == far - timedelta(days=3)

    soon = now + timedelta(hours=1)
    assert pre_expiry_run_at(soon, now) == now + timedelta(seconds=5)
