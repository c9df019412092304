"""SQLAlchemy models for the billing service."""

from .base import Base
from .user import User
from .subscription import Subscription
from .credit_ledger import CreditLedgerEntry

__all__ = [
    "Base",
    "User",
    "Subscription",
    "CreditLedgerEntry",
]
