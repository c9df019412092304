"""Polar checkout sessions, created over the Polar REST API."""

import logging

import httpx

from canvas_billing.config import get_settings
from canvas_billing.constants import POLAR_CHECKOUT_PATH
from canvas_billing.http_client import get_http_client
from canvas_billing.models.user import User

logger = logging.getLogger(__name__)

PLANS = ("starter", "professional", "business")


class CheckoutError(Exception):
    """Checkout could not be created (misconfiguration or provider error)."""


async def create_checkout_session(user: User, plan: str = "professional") -> str:
    """Create a Polar checkout for ``plan`` and return its URL.

    The user id travels in checkout metadata so webhook events resolve their owner
    without an email lookup.
    """
    settings = get_settings()
    plan = (plan or "professional").lower()
    if plan not in PLANS:
        plan = "professional"

    if not settings.polar_access_token:
        raise CheckoutError("POLAR_ACCESS_TOKEN is not configured")

    product_id = settings.product_id_for_plan(plan)
    if not product_id:
        raise CheckoutError(f'No Polar product configured for plan "{plan}"')

    payload = {
        "products": [product_id],
        "success_url": f"{settings.app_url}/billing/success?plan={plan}",
        "metadata": {"userId": str(user.id), "plan": plan},
    }
    if user.email:
        payload["customer_email"] = user.email

    client = get_http_client()
    try:
        response = await client.post(POLAR_CHECKOUT_PATH, json=payload)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("Polar checkout creation failed for user %s: %s", user.id, e)
        raise CheckoutError("Checkout provider request failed") from e

    checkout_url = response.json().get("url")
    if not checkout_url:
        raise CheckoutError("Checkout provider returned no URL")
    logger.info("Created %s checkout for user %s", plan, user.id)
    return checkout_url
