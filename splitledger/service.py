import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Union
from uuid import UUID, uuid4

from .activity import ActivityLog
from .config import config
from .engine import (
    ZERO,
    aggregate_user_totals,
    amounts_close,
    group_member_balances,
    pairwise_balance,
    quantize_amount,
    simplify_debts,
    split_equally,
    to_decimal,
    totals_by_member,
)
from .errors import (
    NotFoundError,
    NotGroupMemberError,
    SplitMismatchError,
    UserNotFoundError,
    ValidationError,
)
from .models import (
    ActivityEntry,
    ActivityType,
    CustomSplit,
    DashboardSummary,
    Expense,
    FriendBalance,
    FriendExpenseHistory,
    Group,
    GroupBalance,
    GroupDetail,
    GroupExpense,
    Identity,
    Member,
    MemberBalance,
    Reminder,
    Settlement,
    SettlementMethod,
    Split,
    SplitMode,
    User,
    UserTotals,
    normalize_phone,
)
from .storage import InMemoryStorage, LedgerStore

logger = logging.getLogger(__name__)


class LedgerService:
    def __init__(self, storage: Optional[LedgerStore] = None, activity: Optional[ActivityLog] = None):
        self.storage = storage or InMemoryStorage()
        self.activity = activity or ActivityLog(self.storage)

    # Users

    def register_user(self, phone: str, name: str, uid: Optional[str] = None) -> User:
        phone = self._require_phone(phone)
        name = self._require_text(name, "name")
        if self.storage.get_user(phone):
            raise ValidationError(f"Phone number {phone} is already registered")

        user = User(phone=phone, name=name, uid=uid, created_at=datetime.now(timezone.utc))
        self.storage.add_user(user)
        logger.info("Registered user %s", phone)
        return user

    def get_user(self, phone: str) -> User:
        phone = normalize_phone(phone)
        user = self.storage.get_user(phone)
        if not user:
            raise UserNotFoundError(f"No registered user with phone number {phone}")
        return user

    def get_user_display_name(self, phone: str) -> str:
        user = self.storage.get_user(normalize_phone(phone))
        return user.name if user else normalize_phone(phone)

    # Direct expenses

    def record_direct_expense(
        self,
        payer: str,
        participants: Iterable[str],
        amount: Any,
        category: str,
        reason: str,
        date: Optional[datetime] = None,
    ) -> UUID:
        payer = self._require_phone(payer)
        participants = self._unique_phones(participants)
        amount = self._positive_amount(amount)
        category = self._require_text(category, "category")
        reason = self._require_text(reason, "reason")

        if not participants:
            raise ValidationError("An expense needs at least one participant")
        if payer not in participants:
            raise ValidationError(f"Payer {payer} must be one of the participants")

        now = datetime.now(timezone.utc)
        expense = Expense(
            id=uuid4(),
            payer=payer,
            participants=participants,
            amount=amount,
            category=category,
            reason=reason,
            date=date or now,
            created_at=now,
        )
        self.storage.add_expense(expense)
        logger.info("Recorded expense %s: %s paid %s for %d participants", expense.id, payer, amount, len(participants))

        self.activity.record(
            ActivityType.EXPENSE,
            actor=payer,
            participants=participants,
            amount=amount,
            description=f"{self.get_user_display_name(payer)} added \"{reason}\" ({quantize_amount(amount)})",
        )
        return expense.id

    def delete_expense(self, actor: str, expense_id: UUID) -> None:
        actor = normalize_phone(actor)

        expense = self.storage.get_expense(expense_id)
        if expense:
            if actor not in expense.participants:
                raise ValidationError(f"Only participants of expense {expense_id} may delete it")
            self.storage.delete_expense(expense_id)
            logger.info("Deleted expense %s by %s", expense_id, actor)
            self.activity.record(
                ActivityType.EXPENSE_DELETED,
                actor=actor,
                participants=expense.participants,
                amount=expense.amount,
                description=f"{self.get_user_display_name(actor)} deleted \"{expense.reason}\"",
            )
            return

        group_expense = self.storage.get_group_expense(expense_id)
        if not group_expense:
            raise NotFoundError(f"Expense {expense_id} not found")
        group = self.storage.get_group(group_expense.group_id)
        if group and not self._can_manage_group(group, actor):
            raise NotGroupMemberError(f"{actor} is not a member of group {group.name}")

        self.storage.delete_expense(expense_id)
        logger.info("Deleted group expense %s by %s", expense_id, actor)
        self.activity.record(
            ActivityType.EXPENSE_DELETED,
            actor=actor,
            participants=[group_expense.paid_by] + [s.phone for s in group_expense.splits],
            group_id=group_expense.group_id,
            amount=group_expense.total,
            description=f"{self.get_user_display_name(actor)} deleted \"{group_expense.reason}\""
                        + (f" in \"{group.name}\"" if group else ""),
        )

    # Group expenses

    def record_group_expense(
        self,
        group_id: UUID,
        payer: str,
        selected_members: Iterable[str],
        amount: Any,
        reason: str,
        date: Optional[datetime] = None,
        split_mode: Union[SplitMode, str] = SplitMode.EQUAL,
        custom_splits: Optional[Any] = None,
        category: str = "Other",
    ) -> UUID:
        group = self._require_group(group_id)
        payer = self._require_phone(payer)
        selected = self._unique_phones(selected_members)
        amount = self._positive_amount(amount)
        reason = self._require_text(reason, "reason")
        category = self._require_text(category, "category")
        try:
            split_mode = SplitMode(split_mode)
        except ValueError:
            raise ValidationError(f"Unknown split mode {split_mode!r}") from None

        if not group.has_member(payer):
            raise NotGroupMemberError(f"Payer {payer} is not a member of group {group.name}")
        if not selected:
            raise ValidationError("Select at least one member to split with")
        outsiders = [phone for phone in selected if not group.has_member(phone)]
        if outsiders:
            raise NotGroupMemberError(f"Not members of group {group.name}: {', '.join(outsiders)}")

        if split_mode == SplitMode.EQUAL:
            shares = split_equally(amount, selected)
        else:
            shares = self._custom_shares(custom_splits, selected)
            split_total = sum((share for _, share in shares), ZERO)
            if not amounts_close(split_total, amount, config.SPLIT_TOLERANCE):
                raise SplitMismatchError(
                    f"Custom amounts add up to {quantize_amount(split_total)} but the expense total is "
                    f"{quantize_amount(amount)}"
                )

        now = datetime.now(timezone.utc)
        expense = GroupExpense(
            id=uuid4(),
            group_id=group.id,
            paid_by=payer,
            total=amount,
            reason=reason,
            category=category,
            date=date or now,
            split_mode=split_mode,
            splits=[Split(phone=phone, name=group.member_name(phone), amount=share) for phone, share in shares],
            created_at=now,
        )
        self.storage.add_group_expense(group.id, expense)
        logger.info("Recorded %s group expense %s in group %s", split_mode.value, expense.id, group.id)

        self.activity.record(
            ActivityType.GROUP_EXPENSE,
            actor=payer,
            participants=[payer] + selected,
            group_id=group.id,
            amount=amount,
            description=f"{self.get_user_display_name(payer)} added \"{reason}\" "
                        f"({quantize_amount(amount)}) in \"{group.name}\"",
        )
        return expense.id

    # Settlements

    def record_settlement(
        self,
        from_phone: str,
        to_phone: str,
        amount: Any,
        method: Union[SettlementMethod, str] = SettlementMethod.OTHER,
        group_id: Optional[UUID] = None,
        note: Optional[str] = None,
    ) -> UUID:
        from_phone = self._require_phone(from_phone)
        to_phone = self._require_phone(to_phone)
        amount = self._positive_amount(amount)
        try:
            method = SettlementMethod(method)
        except ValueError:
            raise ValidationError(f"Unknown settlement method {method!r}") from None
        if from_phone == to_phone:
            raise ValidationError("A settlement needs two different people")

        group = None
        if group_id is not None:
            group = self._require_group(group_id)
            for phone in (from_phone, to_phone):
                if phone not in group.ledger_phones:
                    raise NotGroupMemberError(f"{phone} is not a member of group {group.name}")

        settlement = Settlement(
            id=uuid4(),
            from_phone=from_phone,
            to_phone=to_phone,
            amount=amount,
            method=method,
            group_id=group_id,
            note=note,
            created_at=datetime.now(timezone.utc),
        )
        self.storage.add_settlement(settlement)
        logger.info("Recorded settlement %s: %s paid %s %s", settlement.id, from_phone, to_phone, amount)

        description = (
            f"{self.get_user_display_name(from_phone)} paid {self.get_user_display_name(to_phone)} "
            f"{quantize_amount(amount)}"
        )
        if group:
            description += f" in \"{group.name}\""
        self.activity.record(
            ActivityType.SETTLEMENT,
            actor=from_phone,
            target=to_phone,
            group_id=group_id,
            amount=amount,
            description=description,
        )
        return settlement.id

    # Friends

    def add_friend(self, identity: Identity, candidate_phone: str) -> str:
        me = self._require_phone(identity.phone)
        candidate = self._require_phone(candidate_phone)
        if candidate == me:
            raise ValidationError("You cannot add yourself as a friend")

        friend = self.storage.get_user(candidate)
        if not friend:
            raise UserNotFoundError(f"{candidate} is not a registered user")

        my_name = identity.name or self.get_user_display_name(me)
        friendship_id = self.storage.add_friendship(me, candidate, my_name, friend.name)
        logger.info("Friendship %s created", friendship_id)

        self.activity.record(
            ActivityType.FRIEND_ADDED,
            actor=me,
            target=candidate,
            description=f"{my_name} added {friend.name} as a friend",
        )
        return friendship_id

    def remove_friend(self, identity: Identity, friend_phone: str) -> None:
        me = self._require_phone(identity.phone)
        friend = self._require_phone(friend_phone)

        friendship = self.storage.get_friendship(me, friend)
        self.storage.remove_friendship(me, friend)
        logger.info("Friendship between %s and %s removed", me, friend)

        friend_name = friendship.metadata.get(friend, friend) if friendship else friend
        self.activity.record(
            ActivityType.FRIEND_REMOVED,
            actor=me,
            target=friend,
            description=f"{identity.name or self.get_user_display_name(me)} removed {friend_name} as a friend",
        )

    def list_friends(self, user: str) -> list[Member]:
        return self.storage.list_friends_of(normalize_phone(user))

    # Groups

    def create_group(self, creator: Identity, name: str, members: Iterable[Union[Member, dict]] = ()) -> UUID:
        creator_phone = self._require_phone(creator.phone)
        name = self._require_text(name, "group name")

        roster: list[Member] = []
        seen = set()
        for member in members:
            if isinstance(member, dict):
                member = Member(phone=member.get("phone", ""), name=member.get("name", ""))
            if not member.phone:
                raise ValidationError("Every group member needs a phone number")
            if member.phone in seen:
                continue
            seen.add(member.phone)
            if member.phone != creator_phone and not self.storage.get_user(member.phone):
                raise UserNotFoundError(f"{member.phone} is not a registered user")
            roster.append(Member(phone=member.phone, name=member.name or self.get_user_display_name(member.phone)))

        if creator_phone not in seen:
            roster.append(Member(phone=creator_phone, name=creator.name or self.get_user_display_name(creator_phone)))

        group = Group(
            id=uuid4(),
            name=name,
            members=roster,
            created_by=creator_phone,
            created_at=datetime.now(timezone.utc),
        )
        self.storage.add_group(group)
        logger.info("Created group %s (%s) with %d members", group.id, name, len(roster))

        self.activity.record(
            ActivityType.GROUP_CREATED,
            actor=creator_phone,
            participants=group.member_phones,
            group_id=group.id,
            description=f"{self.get_user_display_name(creator_phone)} created the group \"{name}\"",
        )
        return group.id

    def get_group(self, group_id: UUID) -> Group:
        return self._require_group(group_id)

    def list_groups(self, user: str) -> list[Group]:
        return self.storage.list_groups_of(normalize_phone(user))

    def leave_group(self, identity: Identity, group_id: UUID) -> None:
        me = self._require_phone(identity.phone)
        group = self._require_group(group_id)
        if not group.has_member(me):
            raise NotGroupMemberError(f"{me} is not a member of group {group.name}")

        remaining = [m for m in group.members if m.phone != me]
        leaving = [m for m in group.members if m.phone == me]
        former = [m for m in group.former_members if m.phone != me] + leaving
        self.storage.update_group_members(group.id, remaining, former)
        logger.info("%s left group %s", me, group.id)

        self.activity.record(
            ActivityType.GROUP_LEFT,
            actor=me,
            participants=group.member_phones,
            group_id=group.id,
            description=f"{identity.name or self.get_user_display_name(me)} left the group \"{group.name}\"",
        )

    def delete_group(self, group_id: UUID, actor: Optional[str] = None) -> None:
        group = self._require_group(group_id)
        actor = normalize_phone(actor) if actor else group.created_by
        if not self._can_manage_group(group, actor):
            raise NotGroupMemberError(f"{actor} is not a member of group {group.name}")

        self.storage.delete_group(group.id)
        logger.info("Deleted group %s by %s", group.id, actor)

        self.activity.record(
            ActivityType.GROUP_DELETED,
            actor=actor,
            participants=group.ledger_phones + [group.created_by],
            group_id=group.id,
            description=f"{self.get_user_display_name(actor)} deleted the group \"{group.name}\"",
        )

    # Queries

    def get_dashboard_summary(self, user: str) -> DashboardSummary:
        user = normalize_phone(user)

        expenses = self.storage.list_expenses_involving(user)
        settlements = [s for s in self.storage.list_settlements_involving(user) if s.group_id is None]

        counterparts = {m.phone: m.name for m in self.storage.list_friends_of(user)}
        for expense in expenses:
            for phone in expense.participants:
                if phone != user and phone not in counterparts:
                    counterparts[phone] = self.get_user_display_name(phone)
        for settlement in settlements:
            other = settlement.to_phone if settlement.from_phone == user else settlement.from_phone
            if other not in counterparts:
                counterparts[other] = self.get_user_display_name(other)

        pairwise = {phone: pairwise_balance(expenses, settlements, user, phone) for phone in counterparts}

        group_rows = []
        for group in self.storage.list_groups_of(user):
            sheet = self._group_sheet(group)
            group_rows.append((group, sheet.get(user)))

        totals = aggregate_user_totals(pairwise.values(), [amount for _, amount in group_rows])
        return DashboardSummary(
            user=user,
            friends=[
                FriendBalance(phone=phone, name=counterparts[phone], amount=quantize_amount(amount))
                for phone, amount in pairwise.items()
            ],
            groups=[
                GroupBalance(group_id=group.id, name=group.name, amount=quantize_amount(amount))
                for group, amount in group_rows
            ],
            totals=UserTotals(
                owed_to_you=quantize_amount(totals.owed_to_you),
                you_owe=quantize_amount(totals.you_owe),
                net=quantize_amount(totals.net),
            ),
        )

    def get_group_detail(self, group_id: UUID, user: str) -> GroupDetail:
        user = normalize_phone(user)
        group = self._require_group(group_id)
        if not self._can_view_group(group, user):
            raise NotGroupMemberError(f"{user} is not a member of group {group.name}")

        expenses = self.storage.list_group_expenses(group.id)
        sheet = self._group_sheet(group, expenses)

        names = {m.phone: m.name for m in group.former_members + group.members}
        for expense in expenses:
            for split in expense.splits:
                names.setdefault(split.phone, split.name)

        spend = totals_by_member(expenses)
        expenses.sort(key=lambda e: (e.date, e.created_at), reverse=True)

        return GroupDetail(
            group=group,
            expenses=expenses,
            balances=[
                MemberBalance(phone=phone, name=names.get(phone, phone), amount=quantize_amount(sheet.get(phone)))
                for phone in group.ledger_phones
            ],
            totals=[
                MemberBalance(phone=phone, name=names.get(phone, phone), amount=quantize_amount(amount))
                for phone, amount in spend.items()
            ],
            total_spent=quantize_amount(sum((to_decimal(e.total) for e in expenses), ZERO)),
            your_balance=quantize_amount(sheet.get(user)),
            suggested_transfers=simplify_debts(sheet.balances),
            diagnostics=sheet.diagnostics,
        )

    def get_friend_expense_history(self, user: str, friend_phone: str) -> FriendExpenseHistory:
        user = normalize_phone(user)
        friend = self._require_phone(friend_phone)

        expenses = self.storage.list_expenses_involving_pair(user, friend)
        settlements = [s for s in self.storage.list_settlements_between(user, friend) if s.group_id is None]
        friendship = self.storage.get_friendship(user, friend)
        name = friendship.metadata.get(friend) if friendship else None

        expenses.sort(key=lambda e: (e.date, e.created_at), reverse=True)
        settlements.sort(key=lambda s: s.created_at, reverse=True)
        return FriendExpenseHistory(
            friend=Member(phone=friend, name=name or self.get_user_display_name(friend)),
            expenses=expenses,
            settlements=settlements,
            total_spent=quantize_amount(sum((to_decimal(e.amount) for e in expenses), ZERO)),
            balance=quantize_amount(pairwise_balance(expenses, settlements, user, friend)),
        )

    def get_outstanding_amount(self, user: str, friend_phone: str) -> Decimal:
        user = normalize_phone(user)
        friend = normalize_phone(friend_phone)
        expenses = self.storage.list_expenses_involving_pair(user, friend)
        settlements = self.storage.list_settlements_between(user, friend)
        return quantize_amount(pairwise_balance(expenses, settlements, user, friend))

    def get_reminder(self, user: str, friend_phone: str) -> Reminder:
        friend = self._require_phone(friend_phone)
        friendship = self.storage.get_friendship(normalize_phone(user), friend)
        friend_name = friendship.metadata.get(friend) if friendship else None
        return Reminder(
            user_name=self.get_user_display_name(user),
            friend_phone=friend,
            friend_name=friend_name or self.get_user_display_name(friend),
            amount=self.get_outstanding_amount(user, friend),
        )

    def list_activity(self, user: str, limit: Optional[int] = None) -> list[ActivityEntry]:
        if limit is not None and limit < 0:
            raise ValidationError(f"Activity limit must not be negative, got {limit}")
        return self.activity.list_for(normalize_phone(user), limit)

    # Helpers

    def _group_sheet(self, group: Group, expenses: Optional[list[GroupExpense]] = None):
        if expenses is None:
            expenses = self.storage.list_group_expenses(group.id)
        sheet = group_member_balances(group, expenses, self.storage.list_group_settlements(group.id))
        for diagnostic in sheet.diagnostics:
            logger.warning("Group %s: %s", group.id, diagnostic)
        return sheet

    def _require_group(self, group_id: UUID) -> Group:
        group = self.storage.get_group(group_id)
        if not group:
            raise NotFoundError(f"Group {group_id} not found")
        return group

    def _can_view_group(self, group: Group, phone: str) -> bool:
        return phone in group.ledger_phones or group.created_by == phone

    def _can_manage_group(self, group: Group, phone: str) -> bool:
        return group.has_member(phone) or group.created_by == phone

    def _require_phone(self, phone: str) -> str:
        normalized = normalize_phone(phone)
        if not normalized:
            raise ValidationError(f"Invalid phone number {phone!r}")
        return normalized

    def _require_text(self, value: Optional[str], field_name: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValidationError(f"The {field_name} must not be empty")
        return value

    def _positive_amount(self, amount: Any) -> Decimal:
        try:
            value = to_decimal(amount)
        except (ValueError, InvalidOperation):
            raise ValidationError(f"Invalid amount {amount!r}") from None
        if not value.is_finite() or value <= 0:
            raise ValidationError(f"Amount must be greater than zero, got {amount}")
        return value

    def _unique_phones(self, phones: Iterable[str]) -> list[str]:
        unique = []
        for phone in phones or []:
            normalized = self._require_phone(phone)
            if normalized not in unique:
                unique.append(normalized)
        return unique

    def _custom_shares(self, custom_splits: Any, selected: list[str]) -> list[tuple[str, Decimal]]:
        if not custom_splits:
            raise ValidationError("Custom split mode needs an amount for each member")

        if isinstance(custom_splits, dict):
            items = list(custom_splits.items())
        else:
            items = []
            for split in custom_splits:
                if isinstance(split, CustomSplit):
                    items.append((split.phone, split.amount))
                elif isinstance(split, dict):
                    items.append((split.get("phone", ""), split.get("amount")))
                else:
                    items.append(tuple(split))

        shares: list[tuple[str, Decimal]] = []
        seen = set()
        for phone, amount in items:
            phone = self._require_phone(phone)
            if phone not in selected:
                raise ValidationError(f"{phone} has a custom amount but is not part of this expense")
            if phone in seen:
                raise ValidationError(f"Duplicate custom amount for {phone}")
            try:
                value = to_decimal(amount)
            except (ValueError, InvalidOperation):
                raise ValidationError(f"Invalid custom amount {amount!r} for {phone}") from None
            if not value.is_finite() or value < 0:
                raise ValidationError(f"Custom amount for {phone} must not be negative")
            seen.add(phone)
            shares.append((phone, value))
        return shares
