"""
Points Ledger for Reward Redemptions

This module provides:
- User balances with the active reward code pair and milestone map
- Append-only action log (one entry per debit/credit)
- Per-user transactions: all-or-nothing, serialized per user
- In-memory and SQLAlchemy-backed stores with one contract
"""

from .errors import (
    LedgerError,
    UserNotFoundError,
    InsufficientBalanceError,
    PersistenceError,
)
from .models import (
    ActionKind,
    User,
    LedgerEntry,
    LedgerHistoryResponse,
)
from .store import LedgerStore, LedgerTransaction, InMemoryStorage

__all__ = [
    "LedgerError",
    "UserNotFoundError",
    "InsufficientBalanceError",
    "PersistenceError",
    "ActionKind",
    "User",
    "LedgerEntry",
    "LedgerHistoryResponse",
    "LedgerStore",
    "LedgerTransaction",
    "InMemoryStorage",
]
