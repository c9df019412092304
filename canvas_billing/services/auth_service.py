"""Session cookie authentication for the billing API."""

from datetime import datetime, timedelta, UTC

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from canvas_billing.config import get_settings
from canvas_billing.constants import COOKIE_NAME, JWT_AUDIENCE
from canvas_billing.db.session import get_db
from canvas_billing.models.user import User
from canvas_billing.services.user_service import get_user


def create_jwt(user_id: int) -> str:
    """Create a signed session token for the given user."""
    settings = get_settings()
    now = datetime.now(UTC)
    payload = {
        "sub": str(user_id),
        "aud": JWT_AUDIENCE,
        "iat": now,
        "exp": now + timedelta(days=settings.jwt_expire_days),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def session_user_id(token: str | None) -> int | None:
    """User id carried by a valid session token, or None."""
    if not token:
        return None
    settings = get_settings()
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm],
            audience=JWT_AUDIENCE, options={"require": ["exp", "sub", "aud"]},
        )
        return int(payload["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError):
        return None


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    """FastAPI dependency: resolve the session cookie to an active User, or raise 401."""
    user_id = session_user_id(request.cookies.get(COOKIE_NAME))
    if user_id is None:
        raise HTTPException(status_code=401, detail="Not authenticated")

    user = await get_user(db, user_id)
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or deactivated")
    return user
