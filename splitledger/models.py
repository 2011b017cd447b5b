import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict, field_validator


def normalize_phone(number: str) -> str:
    return re.sub(r"\D", "", number or "")


class SplitMode(str, Enum):
    EQUAL = "equal"
    CUSTOM = "custom"


class SettlementMethod(str, Enum):
    CARD = "card"
    OTHER = "other"


class ActivityType(str, Enum):
    EXPENSE = "expense"
    EXPENSE_DELETED = "expense_deleted"
    GROUP_EXPENSE = "group_expense"
    SETTLEMENT = "settlement"
    FRIEND_ADDED = "friend_added"
    FRIEND_REMOVED = "friend_removed"
    GROUP_CREATED = "group_created"
    GROUP_LEFT = "group_left"
    GROUP_DELETED = "group_deleted"


class Identity(BaseModel):
    phone: str
    name: str = ""
    uid: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return normalize_phone(value)


class User(BaseModel):
    phone: str
    name: str
    uid: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Member(BaseModel):
    phone: str
    name: str

    @field_validator("phone")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return normalize_phone(value)


class Friendship(BaseModel):
    id: str
    user1: str
    user2: str
    metadata: dict[str, str] = Field(default_factory=dict, description="phone -> name snapshot")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def involves(self, phone: str) -> bool:
        return phone in (self.user1, self.user2)

    def other(self, phone: str) -> Member:
        other_phone = self.user2 if phone == self.user1 else self.user1
        return Member(phone=other_phone, name=self.metadata.get(other_phone, "Unknown"))


class Expense(BaseModel):
    id: UUID
    payer: str
    participants: list[str]
    amount: Decimal
    category: str
    reason: str
    date: datetime
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def involves(self, *phones: str) -> bool:
        return all(phone in self.participants for phone in phones)


class Split(BaseModel):
    phone: str
    name: str
    amount: Decimal


class Group(BaseModel):
    id: UUID
    name: str
    members: list[Member]
    former_members: list[Member] = Field(default_factory=list)
    created_by: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def member_phones(self) -> list[str]:
        return [m.phone for m in self.members]

    @property
    def ledger_phones(self) -> list[str]:
        """Current members followed by members who have left; both carry balances."""
        phones = self.member_phones
        return phones + [m.phone for m in self.former_members if m.phone not in phones]

    def has_member(self, phone: str) -> bool:
        return phone in self.member_phones

    def member_name(self, phone: str) -> Optional[str]:
        for member in self.members + self.former_members:
            if member.phone == phone:
                return member.name
        return None


class GroupExpense(BaseModel):
    id: UUID
    group_id: UUID
    paid_by: str
    total: Decimal
    reason: str
    category: str = "Other"
    date: datetime
    split_mode: SplitMode
    splits: list[Split]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Settlement(BaseModel):
    id: UUID
    from_phone: str
    to_phone: str
    amount: Decimal
    method: SettlementMethod
    group_id: Optional[UUID] = None
    note: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def between(self, phone_a: str, phone_b: str) -> bool:
        return {self.from_phone, self.to_phone} == {phone_a, phone_b}


class ActivityEntry(BaseModel):
    id: UUID
    type: ActivityType
    actor: str
    target: Optional[str] = None
    participants: list[str] = Field(default_factory=list)
    group_id: Optional[UUID] = None
    amount: Optional[Decimal] = None
    description: str
    timestamp: datetime
    sequence: int = 0

    model_config = ConfigDict(from_attributes=True)

    def visible_to(self, phone: str) -> bool:
        return phone == self.actor or phone == self.target or phone in self.participants


# Requests

class RegisterUserRequest(BaseModel):
    phone: str
    name: str
    uid: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"phone": "514-123-4567", "name": "Subodh Kolhe"}
    })


class AddFriendRequest(BaseModel):
    phone: str = Field(..., description="Phone number of a registered user")


class AddExpenseRequest(BaseModel):
    participants: list[str]
    amount: Decimal
    category: str
    reason: str
    payer: Optional[str] = Field(default=None, description="Defaults to the calling user")
    date: Optional[datetime] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "participants": ["5141234567", "5149876543"],
            "amount": 100.00,
            "category": "Food",
            "reason": "Dinner at Canto"
        }
    })


class CustomSplit(BaseModel):
    phone: str
    amount: Decimal


class AddGroupExpenseRequest(BaseModel):
    selected_members: list[str]
    amount: Decimal
    reason: str
    split_mode: SplitMode = SplitMode.EQUAL
    custom_splits: Optional[list[CustomSplit]] = None
    category: str = "Other"
    payer: Optional[str] = Field(default=None, description="Defaults to the calling user")
    date: Optional[datetime] = None


class SettlementRequest(BaseModel):
    to_phone: str
    amount: Decimal
    method: SettlementMethod = SettlementMethod.OTHER
    group_id: Optional[UUID] = None
    note: Optional[str] = None


class CreateGroupRequest(BaseModel):
    name: str
    members: list[Member] = Field(default_factory=list)


# Views

class UserTotals(BaseModel):
    owed_to_you: Decimal
    you_owe: Decimal
    net: Decimal


class FriendBalance(BaseModel):
    phone: str
    name: str
    amount: Decimal = Field(..., description="Positive: they owe you. Negative: you owe them.")


class GroupBalance(BaseModel):
    group_id: UUID
    name: str
    amount: Decimal


class DashboardSummary(BaseModel):
    user: str
    friends: list[FriendBalance]
    groups: list[GroupBalance]
    totals: UserTotals


class MemberBalance(BaseModel):
    phone: str
    name: str
    amount: Decimal


class SuggestedTransfer(BaseModel):
    from_phone: str
    to_phone: str
    amount: Decimal


class GroupDetail(BaseModel):
    group: Group
    expenses: list[GroupExpense]
    balances: list[MemberBalance]
    totals: list[MemberBalance]
    total_spent: Decimal
    your_balance: Decimal
    suggested_transfers: list[SuggestedTransfer]
    diagnostics: list[str] = Field(default_factory=list)


class FriendExpenseHistory(BaseModel):
    friend: Member
    expenses: list[Expense]
    settlements: list[Settlement]
    total_spent: Decimal
    balance: Decimal


class Reminder(BaseModel):
    user_name: str
    friend_phone: str
    friend_name: str
    amount: Decimal
