import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import UUID

from .errors import DuplicateFriendshipError, NotFoundError, StoreUnavailableError
from .models import (
    ActivityEntry,
    Expense,
    Friendship,
    Group,
    GroupExpense,
    Member,
    Settlement,
    User,
)

logger = logging.getLogger(__name__)


def friendship_key(phone_a: str, phone_b: str) -> str:
    low, high = sorted((phone_a, phone_b))
    return f"{low}_{high}"


class LedgerStore(ABC):
    """Persistence contract for every ledger collection.

    Expenses, group expenses, settlements and activity entries are append-only;
    the only destructive operations are friendship removal, expense deletion
    and group deletion.
    """

    @abstractmethod
    def add_user(self, user: User) -> None: ...

    @abstractmethod
    def get_user(self, phone: str) -> Optional[User]: ...

    @abstractmethod
    def add_friendship(self, user_a: str, user_b: str, name_a: str, name_b: str) -> str: ...

    @abstractmethod
    def remove_friendship(self, user_a: str, user_b: str) -> None: ...

    @abstractmethod
    def get_friendship(self, user_a: str, user_b: str) -> Optional[Friendship]: ...

    @abstractmethod
    def list_friends_of(self, user: str) -> list[Member]: ...

    @abstractmethod
    def add_expense(self, expense: Expense) -> UUID: ...

    @abstractmethod
    def get_expense(self, expense_id: UUID) -> Optional[Expense]: ...

    @abstractmethod
    def get_group_expense(self, expense_id: UUID) -> Optional[GroupExpense]: ...

    @abstractmethod
    def delete_expense(self, expense_id: UUID) -> None: ...

    @abstractmethod
    def list_expenses_involving(self, user: str) -> list[Expense]: ...

    @abstractmethod
    def list_expenses_involving_pair(self, user_a: str, user_b: str) -> list[Expense]: ...

    @abstractmethod
    def add_group(self, group: Group) -> UUID: ...

    @abstractmethod
    def get_group(self, group_id: UUID) -> Optional[Group]: ...

    @abstractmethod
    def update_group_members(
        self, group_id: UUID, members: list[Member], former_members: Optional[list[Member]] = None
    ) -> None: ...

    @abstractmethod
    def delete_group(self, group_id: UUID) -> None: ...

    @abstractmethod
    def list_groups_of(self, user: str) -> list[Group]: ...

    @abstractmethod
    def add_group_expense(self, group_id: UUID, expense: GroupExpense) -> UUID: ...

    @abstractmethod
    def list_group_expenses(self, group_id: UUID) -> list[GroupExpense]: ...

    @abstractmethod
    def add_settlement(self, settlement: Settlement) -> UUID: ...

    @abstractmethod
    def list_settlements_involving(self, user: str) -> list[Settlement]: ...

    @abstractmethod
    def list_settlements_between(self, user_a: str, user_b: str) -> list[Settlement]: ...

    @abstractmethod
    def list_group_settlements(self, group_id: UUID) -> list[Settlement]: ...

    @abstractmethod
    def append_activity(self, entry: ActivityEntry) -> None: ...

    @abstractmethod
    def list_activity_for(self, user: str) -> list[ActivityEntry]: ...


class InMemoryStorage(LedgerStore):
    durable = False

    def __init__(self):
        self.users: dict[str, dict] = {}
        self.friendships: dict[str, dict] = {}
        self.expenses: dict[UUID, dict] = {}
        self.groups: dict[UUID, dict] = {}
        self.group_expenses: dict[UUID, dict[UUID, dict]] = {}
        self.settlements: dict[UUID, dict] = {}
        self.activity_logs: list[dict] = []
        self._lock = threading.RLock()

    @contextmanager
    def _write(self):
        with self._lock:
            backup = self._collections() if self.durable else None
            try:
                yield
                self._flush()
            except Exception:
                if backup is not None:
                    self._restore(backup)
                raise

    def _collections(self) -> dict:
        return copy.deepcopy({
            "users": self.users,
            "friendships": self.friendships,
            "expenses": self.expenses,
            "groups": self.groups,
            "group_expenses": self.group_expenses,
            "settlements": self.settlements,
            "activity_logs": self.activity_logs,
        })

    def _restore(self, backup: dict) -> None:
        for name, value in backup.items():
            setattr(self, name, value)

    def _flush(self) -> None:
        pass

    # Users

    def add_user(self, user: User) -> None:
        with self._write():
            self.users[user.phone] = user.model_dump()

    def get_user(self, phone: str) -> Optional[User]:
        data = self.users.get(phone)
        return User(**data) if data else None

    # Friendships

    def add_friendship(self, user_a: str, user_b: str, name_a: str, name_b: str) -> str:
        key = friendship_key(user_a, user_b)
        with self._write():
            if key in self.friendships:
                raise DuplicateFriendshipError(f"{user_a} and {user_b} are already friends")
            self.friendships[key] = {
                "id": key,
                "user1": user_a,
                "user2": user_b,
                "metadata": {user_a: name_a, user_b: name_b},
                "created_at": datetime.now(timezone.utc),
            }
        return key

    def remove_friendship(self, user_a: str, user_b: str) -> None:
        key = friendship_key(user_a, user_b)
        with self._write():
            if key not in self.friendships:
                raise NotFoundError(f"No friendship between {user_a} and {user_b}")
            del self.friendships[key]

    def get_friendship(self, user_a: str, user_b: str) -> Optional[Friendship]:
        data = self.friendships.get(friendship_key(user_a, user_b))
        return Friendship(**data) if data else None

    def list_friends_of(self, user: str) -> list[Member]:
        with self._lock:
            records = [Friendship(**f) for f in self.friendships.values()]
        return [f.other(user) for f in records if f.involves(user)]

    # Direct expenses

    def add_expense(self, expense: Expense) -> UUID:
        with self._write():
            self.expenses[expense.id] = expense.model_dump()
        return expense.id

    def get_expense(self, expense_id: UUID) -> Optional[Expense]:
        data = self.expenses.get(expense_id)
        return Expense(**data) if data else None

    def get_group_expense(self, expense_id: UUID) -> Optional[GroupExpense]:
        with self._lock:
            for expenses in self.group_expenses.values():
                if expense_id in expenses:
                    return GroupExpense(**expenses[expense_id])
        return None

    def delete_expense(self, expense_id: UUID) -> None:
        with self._write():
            if expense_id in self.expenses:
                del self.expenses[expense_id]
                return
            for expenses in self.group_expenses.values():
                if expense_id in expenses:
                    del expenses[expense_id]
                    return
            raise NotFoundError(f"Expense {expense_id} not found")

    def list_expenses_involving(self, user: str) -> list[Expense]:
        with self._lock:
            records = [Expense(**e) for e in self.expenses.values()]
        return [e for e in records if e.involves(user)]

    def list_expenses_involving_pair(self, user_a: str, user_b: str) -> list[Expense]:
        return [e for e in self.list_expenses_involving(user_a) if e.involves(user_b)]

    # Groups

    def add_group(self, group: Group) -> UUID:
        with self._write():
            self.groups[group.id] = group.model_dump()
            self.group_expenses[group.id] = {}
        return group.id

    def get_group(self, group_id: UUID) -> Optional[Group]:
        data = self.groups.get(group_id)
        return Group(**data) if data else None

    def update_group_members(
        self, group_id: UUID, members: list[Member], former_members: Optional[list[Member]] = None
    ) -> None:
        with self._write():
            if group_id not in self.groups:
                raise NotFoundError(f"Group {group_id} not found")
            self.groups[group_id]["members"] = [m.model_dump() for m in members]
            if former_members is not None:
                self.groups[group_id]["former_members"] = [m.model_dump() for m in former_members]

    def delete_group(self, group_id: UUID) -> None:
        with self._write():
            if group_id not in self.groups:
                raise NotFoundError(f"Group {group_id} not found")
            del self.groups[group_id]
            self.group_expenses.pop(group_id, None)

    def list_groups_of(self, user: str) -> list[Group]:
        with self._lock:
            records = [Group(**g) for g in self.groups.values()]
        return [g for g in records if g.created_by == user or user in g.ledger_phones]

    def add_group_expense(self, group_id: UUID, expense: GroupExpense) -> UUID:
        with self._write():
            if group_id not in self.groups:
                raise NotFoundError(f"Group {group_id} not found")
            self.group_expenses.setdefault(group_id, {})[expense.id] = expense.model_dump()
        return expense.id

    def list_group_expenses(self, group_id: UUID) -> list[GroupExpense]:
        with self._lock:
            return [GroupExpense(**e) for e in self.group_expenses.get(group_id, {}).values()]

    # Settlements

    def add_settlement(self, settlement: Settlement) -> UUID:
        with self._write():
            self.settlements[settlement.id] = settlement.model_dump()
        return settlement.id

    def _all_settlements(self) -> list[Settlement]:
        with self._lock:
            return [Settlement(**s) for s in self.settlements.values()]

    def list_settlements_involving(self, user: str) -> list[Settlement]:
        return [s for s in self._all_settlements() if user in (s.from_phone, s.to_phone)]

    def list_settlements_between(self, user_a: str, user_b: str) -> list[Settlement]:
        return [s for s in self._all_settlements() if s.between(user_a, user_b)]

    def list_group_settlements(self, group_id: UUID) -> list[Settlement]:
        return [s for s in self._all_settlements() if s.group_id == group_id]

    # Activity

    def append_activity(self, entry: ActivityEntry) -> None:
        with self._write():
            data = entry.model_dump()
            data["sequence"] = len(self.activity_logs)
            self.activity_logs.append(data)

    def list_activity_for(self, user: str) -> list[ActivityEntry]:
        with self._lock:
            records = [ActivityEntry(**a) for a in self.activity_logs]
        visible = [a for a in records if a.visible_to(user)]
        visible.sort(key=lambda a: (a.timestamp, a.sequence), reverse=True)
        return visible


class JsonFileStorage(InMemoryStorage):
    """In-memory store mirrored to a JSON document on disk.

    The file is laid out like the mobile app's document database: top-level
    ``users``, ``friendships``, ``expenses``, ``groups`` (each carrying its
    nested ``expenses``), ``settlements`` and ``activityLogs``. Every write
    rewrites the whole snapshot atomically; a failed write leaves both the
    file and the in-memory state untouched.
    """

    durable = True

    def __init__(self, path: Union[str, os.PathLike]):
        super().__init__()
        self.path = os.fspath(path)
        if os.path.exists(self.path):
            self._load()

    def _load(self) -> None:
        try:
            with open(self.path, encoding="utf-8") as fh:
                document = json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreUnavailableError(f"Cannot read ledger file {self.path}: {e}") from e

        for data in document.get("users", []):
            user = User(**data)
            self.users[user.phone] = user.model_dump()
        for data in document.get("friendships", []):
            friendship = Friendship(**data)
            self.friendships[friendship.id] = friendship.model_dump()
        for data in document.get("expenses", []):
            expense = Expense(**data)
            self.expenses[expense.id] = expense.model_dump()
        for data in document.get("groups", []):
            nested = data.pop("expenses", [])
            group = Group(**data)
            self.groups[group.id] = group.model_dump()
            self.group_expenses[group.id] = {}
            for expense_data in nested:
                expense = GroupExpense(**expense_data)
                self.group_expenses[group.id][expense.id] = expense.model_dump()
        for data in document.get("settlements", []):
            settlement = Settlement(**data)
            self.settlements[settlement.id] = settlement.model_dump()
        for data in document.get("activityLogs", []):
            self.activity_logs.append(ActivityEntry(**data).model_dump())
        logger.info("Loaded ledger snapshot from %s", self.path)

    def _document(self) -> dict:
        groups = []
        for group_id, data in self.groups.items():
            group = Group(**data).model_dump(mode="json")
            group["expenses"] = [
                GroupExpense(**e).model_dump(mode="json")
                for e in self.group_expenses.get(group_id, {}).values()
            ]
            groups.append(group)
        return {
            "users": [User(**u).model_dump(mode="json") for u in self.users.values()],
            "friendships": [Friendship(**f).model_dump(mode="json") for f in self.friendships.values()],
            "expenses": [Expense(**e).model_dump(mode="json") for e in self.expenses.values()],
            "groups": groups,
            "settlements": [Settlement(**s).model_dump(mode="json") for s in self.settlements.values()],
            "activityLogs": [ActivityEntry(**a).model_dump(mode="json") for a in self.activity_logs],
        }

    def _flush(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        document = self._document()
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".ledger-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(document, fh, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StoreUnavailableError(f"Cannot write ledger file {self.path}: {e}") from e


def create_storage(path: Optional[str] = None) -> LedgerStore:
    if path:
        return JsonFileStorage(path)
    return InMemoryStorage()
