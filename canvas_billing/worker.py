"""ARQ worker — billing notification consumers and delayed entitlement checks."""

import logging
from typing import Any

from arq.connections import RedisSettings

from canvas_billing.config import get_settings
from canvas_billing.constants import (
    ARQ_JOB_TIMEOUT,
    ARQ_MAX_JOBS,
    EVENT_CREDITS_GRANTED,
    EVENT_PRE_EXPIRY,
    EVENT_SUBSCRIPTION_SYNCED,
)

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:
    """Let jobs enqueue follow-up notifications through the worker's own pool."""
    from canvas_billing.queue import set_queue

    set_queue(ctx["redis"])
    settings = get_settings()
    if settings.resend_api_key:
        import resend
        resend.api_key = settings.resend_api_key


async def shutdown(ctx: dict) -> None:
    from canvas_billing.db.session import engine
    from canvas_billing.queue import set_queue

    set_queue(None)
    await engine.dispose()


async def pre_expiry_check_job(ctx: dict, user_id: int, period_end_ms: int) -> bool:
    """ARQ job: re-check entitlement shortly before the period ends."""
    from canvas_billing.db.session import async_session_factory
    from canvas_billing.services.notification_service import emit_event
    from canvas_billing.services.subscription_service import get_credits_balance, has_entitlement

    async with async_session_factory() as db:
        if not await has_entitlement(db, user_id):
            logger.info(f"User {user_id} no longer entitled, no pre-expiry reminder")
            return False
        balance = await get_credits_balance(db, user_id)

    await emit_event(
        EVENT_PRE_EXPIRY,
        {"user_id": user_id, "period_end": period_end_ms, "balance": balance},
        event_id=f"pre-expiry-notice:{user_id}:{period_end_ms}",
    )
    return True


async def handle_billing_event(ctx: dict, name: str, data: dict[str, Any]) -> None:
    """ARQ job: downstream consumer for billing notifications."""
    if name == EVENT_CREDITS_GRANTED:
        logger.info(f"User {data.get('user_id')} received {data.get('amount')} credits (balance {data.get('balance')})")
    elif name == EVENT_SUBSCRIPTION_SYNCED:
        logger.info(f"Subscription {data.get('provider_subscription_id')} synced: {data.get('status')}")
    elif name == EVENT_PRE_EXPIRY:
        await _send_pre_expiry_reminder(data)
    else:
        logger.warning(f"Unknown billing notification {name}")


async def _send_pre_expiry_reminder(data: dict[str, Any]) -> None:
    from canvas_billing.db.session import async_session_factory
    from canvas_billing.services.email_service import send_pre_expiry_email
    from canvas_billing.services.user_service import get_user
    from canvas_billing.utils import from_millis

    async with async_session_factory() as db:
        user = await get_user(db, data["user_id"])
    if not user or not user.email:
        return

    period_end = from_millis(data.get("period_end"))
    await send_pre_expiry_email(
        to_email=user.email,
        period_end=period_end.strftime("%B %d, %Y") if period_end else "soon",
        balance=int(data.get("balance") or 0),
    )


class WorkerSettings:
    """ARQ worker configuration."""

    functions = [handle_billing_event, pre_expiry_check_job]
    on_startup = startup
    on_shutdown = shutdown

    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)

    max_jobs = ARQ_MAX_JOBS
    job_timeout = ARQ_JOB_TIMEOUT
