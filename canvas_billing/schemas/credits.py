"""Credit accountant result and request schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class GrantResult(BaseModel):
    ok: bool
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    granted: int | None = None
    balance: int | None = None


class ConsumeResult(BaseModel):
    ok: bool
    idempotent: bool = False
    balance: int | None = None
    error: str | None = None


class AdjustResult(BaseModel):
    ok: bool
    idempotent: bool = False
    balance: int | None = None
    error: str | None = None


class BalanceAudit(BaseModel):
    subscription_id: int
    balance: int
    ledger_total: int
    entries: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_total


class ConsumeRequest(BaseModel):
    # Validated again in the accountant; the API reports invalid-amount itself
    amount: int
    reason: str | None = Field(None, max_length=255)
    idempotency_key: str | None = Field(None, max_length=255)


class LedgerEntryOut(BaseModel):
    id: int
    entry_type: str
    amount: int
    reason: str | None = None
    idempotency_key: str | None = None
    created_at: datetime | None = None


class CreditSummary(BaseModel):
    balance: int
    entitled: bool
    recent_entries: list[LedgerEntryOut]
