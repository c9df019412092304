"""Fire-and-forget billing notifications and the delayed pre-expiry check.

Delivery is at-least-once; the ARQ job id doubles as the dedupe key, so the same
logical notification enqueued twice runs once. Consumers must still be idempotent.
"""

import logging
from datetime import datetime, timedelta
from typing import Any

from redis.exceptions import RedisError

from canvas_billing.config import get_settings
from canvas_billing.constants import PRE_EXPIRY_MIN_DELAY
from canvas_billing.queue import get_queue
from canvas_billing.utils import ensure_utc, now_utc, to_millis

logger = logging.getLogger(__name__)


async def emit_event(name: str, data: dict[str, Any], event_id: str | None = None) -> bool:
    """Enqueue a notification for downstream fan-out. Returns False when not enqueued."""
    queue = get_queue()
    if queue is None:
        logger.info("No job queue configured, dropping notification %s (%s)", name, event_id)
        return False

    try:
        job = await queue.enqueue_job("handle_billing_event", name, data, _job_id=event_id)
    except (OSError, RedisError):
        logger.exception("Failed to enqueue notification %s (%s)", name, event_id)
        return False
    if job is None:
        logger.debug("Notification %s already enqueued (%s)", name, event_id)
        return False
    logger.info("Enqueued notification %s (%s)", name, event_id)
    return True


def pre_expiry_run_at(period_end: datetime, now: datetime | None = None) -> datetime:
    """When to re-check entitlement ahead of the period end."""
    now = now or now_utc()
    lead = timedelta(days=get_settings().pre_expiry_reminder_days)
    return max(now + timedelta(seconds=PRE_EXPIRY_MIN_DELAY), ensure_utc(period_end) - lead)


async def schedule_pre_expiry_check(
    user_id: int, provider_subscription_id: str, period_end: datetime | None
) -> datetime | None:
    """Defer an entitlement re-check until shortly before ``period_end``."""
    period_end = ensure_utc(period_end)
    now = now_utc()
    if period_end is None or period_end <= now:
        return None

    queue = get_queue()
    if queue is None:
        logger.info("No job queue configured, skipping pre-expiry check for user %s", user_id)
        return None

    run_at = pre_expiry_run_at(period_end, now)
    period_end_ms = to_millis(period_end)
    try:
        await queue.enqueue_job(
            "pre_expiry_check_job",
            user_id,
            period_end_ms,
            _job_id=f"pre-expiry:{provider_subscription_id}:{period_end_ms}",
            _defer_until=run_at,
        )
    except (OSError, RedisError):
        logger.exception("Failed to schedule pre-expiry check for user %s", user_id)
        return None
    logger.info("Scheduled pre-expiry check for user %s at %s", user_id, run_at.isoformat())
    return run_at
