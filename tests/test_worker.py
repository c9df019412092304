from datetime import timedelta

import pytest

from canvas_billing import worker
from canvas_billing.constants import EVENT_PRE_EXPIRY
from canvas_billing.utils import now_utc, to_millis


@pytest.fixture
def worker_db(monkeypatch, session_maker):
    monkeypatch.setattr("canvas_billing.db.session.async_session_factory", session_maker)
    return session_maker


@pytest.mark.asyncio
async def test_pre_expiry_check_emits_notice(worker_db, make_user, make_subscription, queue):
    user = await make_user()
    period_end = now_utc() + timedelta(days=2)
    await make_subscription(user, current_period_end=period_end, credits_balance=6)

    assert await worker.pre_expiry_check_job({}, user.id, to_millis(period_end)) is True
    assert await worker.pre_expiry_check_job({}, user.id, to_millis(period_end)) is True

    notices = queue.named(EVENT_PRE_EXPIRY)
    assert len(notices) == 1
    assert notices[0]["args"][1] == {"user_id": user.id, "period_end": to_millis(period_end), "balance": 6}


@pytest.mark.asyncio
async def test_pre_expiry_check_skips_lapsed_user(worker_db, make_user, make_subscription, queue):
    user = await make_user()
    await make_subscription(user, status="canceled")

    assert await worker.pre_expiry_check_job({}, user.id, 0) is False
    assert queue.jobs == []


@pytest.mark.asyncio
async def test_pre_expiry_notice_sends_email(worker_db, make_user, monkeypatch):
    user = await make_user("alice@example.com")
    sent = []

    async def fake_send(to_email, period_end, balance):
        sent.append((to_email, period_end, balance))
        return True

    monkeypatch.setattr("canvas_billing.services.email_service.send_pre_expiry_email", fake_send)

    await worker.handle_billing_event(
        {}, EVENT_PRE_EXPIRY, {"user_id": user.id, "period_end": 1_800_000_000_000, "balance": 3}
    )

    assert sent == [("alice@example.com", "January 15, 2027", 3)]
