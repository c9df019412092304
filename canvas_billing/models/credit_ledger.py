"""CreditLedgerEntry model — append-only record of every balance change."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from canvas_billing.utils import now_utc
from .base import Base


class CreditLedgerEntry(Base):
    """Immutable credit ledger entry. Never updated or deleted."""

    __tablename__ = "credits_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True, nullable=False)
    subscription_id: Mapped[int] = mapped_column(ForeignKey("subscriptions.id"), index=True, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_type: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Unique: the durable dedupe gate for grants and consumptions
    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, index=True)

    user: Mapped["User"] = relationship(back_populates="credit_entries")
    subscription: Mapped["Subscription"] = relationship(back_populates="ledger_entries")
