"""User lookups used to resolve the owner of a billing event."""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from canvas_billing.models.user import User


async def get_user(db: AsyncSession, user_id: int) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def lookup_user_id_by_email(db: AsyncSession, email: str) -> int | None:
    """Return the id of the user with this email (case-insensitive), or None."""
    normalized = (email or "").strip().lower()
    if not normalized:
        return None
    result = await db.execute(select(User.id).where(func.lower(User.email) == normalized))
    return result.scalars().first()
