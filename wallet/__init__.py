"""
Creator Wallet

This package provides:
- An in-memory ledger store that owns every wallet balance
- Atomic credit, debit and transfer primitives with per-user locking
- Premium post and pay-per-view message unlocks with purchase receipts
- Tips between verified users
- Time-bounded plan subscriptions
- Manually approved top-up requests with a terminal status machine
"""

from .models import (
    EntryType,
    EntryReason,
    PaymentRequestStatus,
    PlanDuration,
    Role,
    LedgerEntry,
    User,
)
from .storage import InMemoryStorage, Repository
from .unlock import UnlockService
from .tips import TipService
from .subscriptions import SubscriptionService
from .payments import PaymentRequestService

__all__ = [
    "EntryType",
    "EntryReason",
    "PaymentRequestStatus",
    "PlanDuration",
    "Role",
    "LedgerEntry",
    "User",
    "InMemoryStorage",
    "Repository",
    "UnlockService",
    "TipService",
    "SubscriptionService",
    "PaymentRequestService",
]
