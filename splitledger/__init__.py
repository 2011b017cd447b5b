"""
Expense Splitting Ledger

This module provides:
- Friendships, direct expenses, groups, group expenses and settlements
- Append-only ledger records; balances are recomputed on every read
- Pairwise, per-group and dashboard balance folding
- Equal and custom split validation
- Activity feed for every ledger mutation
"""

from .errors import (
    LedgerServiceError,
    ValidationError,
    SplitMismatchError,
    NotGroupMemberError,
    NotFoundError,
    UserNotFoundError,
    DuplicateFriendshipError,
    StoreUnavailableError,
)
from .models import (
    ActivityType,
    SettlementMethod,
    SplitMode,
    Identity,
    Member,
    Expense,
    Group,
    GroupExpense,
    Settlement,
    ActivityEntry,
)
from .service import LedgerService
from .storage import LedgerStore, InMemoryStorage, JsonFileStorage

__all__ = [
    "LedgerServiceError",
    "ValidationError",
    "SplitMismatchError",
    "NotGroupMemberError",
    "NotFoundError",
    "UserNotFoundError",
    "DuplicateFriendshipError",
    "StoreUnavailableError",
    "ActivityType",
    "SettlementMethod",
    "SplitMode",
    "Identity",
    "Member",
    "Expense",
    "Group",
    "GroupExpense",
    "Settlement",
    "ActivityEntry",
    "LedgerService",
    "LedgerStore",
    "InMemoryStorage",
    "JsonFileStorage",
]
