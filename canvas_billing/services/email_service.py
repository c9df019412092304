"""Email delivery via Resend API."""

import asyncio
import logging

import resend

from canvas_billing.config import get_settings

logger = logging.getLogger(__name__)


async def send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send an email via Resend.

    Returns True on success, False on failure.
    """
    settings = get_settings()
    if not settings.resend_api_key:
        logger.warning("Resend API key not configured, skipping email")
        return False

    try:
        await asyncio.to_thread(
            resend.Emails.send,
            {
                "from": settings.email_from,
                "to": [to_email],
                "subject": subject,
                "html": html_body,
            },
        )
        logger.info("Email sent to %s", to_email)
        return True
    except Exception as e:
        logger.error("Failed to send email to %s: %s", to_email, e)
        return False


async def send_pre_expiry_email(to_email: str, period_end: str, balance: int) -> bool:
    settings = get_settings()
    html_body = (
        f"<p>Your {settings.app_name} subscription renews or ends on <strong>{period_end}</strong>.</p>"
        f"<p>You have <strong>{balance}</strong> credits left this period.</p>"
        f'<p><a href="{settings.app_url}/billing">Manage billing</a></p>'
    )
    return await send_email(to_email, f"Your {settings.app_name} billing period ends soon", html_body)
