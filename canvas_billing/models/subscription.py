"""Subscription model — provider subscription snapshot plus credit balance.

Looked up by two independent keys (``user_id`` and ``provider_subscription_id``)
that can transiently diverge, so neither is declared unique.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from canvas_billing.constants import DEFAULT_GRANT, DEFAULT_ROLLOVER_LIMIT
from canvas_billing.utils import now_utc
from .base import Base


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("credits_balance >= 0", name="ck_subscriptions_balance_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True, nullable=False)
    provider_customer_id: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    provider_subscription_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    # --- Plan / period snapshot ---
    status: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    product_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    price_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    plan_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    seats: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # "metadata" is reserved on declarative classes
    provider_metadata: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    # --- Credits ---
    credits_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credits_grant_per_period: Mapped[int] = mapped_column(Integer, default=DEFAULT_GRANT, nullable=False)
    credits_rollover_limit: Mapped[int] = mapped_column(Integer, default=DEFAULT_ROLLOVER_LIMIT, nullable=False)
    last_grant_cursor: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)

    user: Mapped["User"] = relationship(back_populates="subscriptions")
    ledger_entries: Mapped[list["CreditLedgerEntry"]] = relationship(back_populates="subscription")
