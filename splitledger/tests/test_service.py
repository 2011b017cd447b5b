"""
Unit Tests for the Ledger Service

Tests cover:
1. Direct expense flow and validation
2. Group expense flow (equal and custom splits)
3. Settlement flow
4. Friendships (duplicates, symmetry, snapshots)
5. Group lifecycle (create, leave, delete)
6. Read models (dashboard, group detail, friend history, reminders)
7. Activity log (append-only, visibility, degraded store)
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from splitledger.engine import group_member_balances, pairwise_balance
from splitledger.errors import (
    DuplicateFriendshipError,
    NotFoundError,
    NotGroupMemberError,
    SplitMismatchError,
    StoreUnavailableError,
    UserNotFoundError,
    ValidationError,
)
from splitledger.models import ActivityType, Identity, Member, SplitMode
from splitledger.service import LedgerService
from splitledger.storage import InMemoryStorage


ALICE = Identity(phone="514-111-0001", name="Alice")
BOB = Identity(phone="514-111-0002", name="Bob")
CAROL = Identity(phone="514-111-0003", name="Carol")
DAVE = Identity(phone="514-111-0004", name="Dave")

A, B, C, D = ALICE.phone, BOB.phone, CAROL.phone, DAVE.phone


def make_service(storage=None) -> LedgerService:
    service = LedgerService(storage)
    for identity in (ALICE, BOB, CAROL, DAVE):
        service.register_user(identity.phone, identity.name)
    return service


def make_group(service, *members):
    return service.create_group(
        ALICE, "Trip To Lonavala", [Member(phone=m.phone, name=m.name) for m in members]
    )


class TestDirectExpenseFlow:
    """Tests for recording direct expenses."""

    def test_record_expense_success(self):
        """Test that a valid expense is persisted."""
        service = make_service()

        expense_id = service.record_direct_expense(B, [A, B], Decimal("100"), "Food", "Lunch")

        expense = service.storage.get_expense(expense_id)
        assert expense.payer == B
        assert expense.participants == [A, B]
        assert expense.amount == Decimal("100")

    def test_friend_paid_scenario(self):
        """Bob pays 100 for two; Alice owes 50 until she settles."""
        service = make_service()
        service.record_direct_expense(B, [A, B], Decimal("100"), "Food", "Dinner at Canto")

        assert service.get_outstanding_amount(A, B) == Decimal("-50.00")

        service.record_settlement(A, B, Decimal("50"), "card")

        assert service.get_outstanding_amount(A, B) == Decimal("0.00")
        assert service.get_outstanding_amount(B, A) == Decimal("0.00")

    def test_phone_numbers_are_normalized(self):
        service = make_service()

        expense_id = service.record_direct_expense("(514) 111-0002", ["514 111 0001", "5141110002"], 20, "Food", "Fries")

        expense = service.storage.get_expense(expense_id)
        assert expense.payer == "5141110002"
        assert expense.participants == ["5141110001", "5141110002"]

    @pytest.mark.parametrize("amount", [0, -5, "abc", None])
    def test_rejects_non_positive_amount(self, amount):
        service = make_service()

        with pytest.raises(ValidationError):
            service.record_direct_expense(A, [A, B], amount, "Food", "Lunch")

    def test_rejects_payer_outside_participants(self):
        service = make_service()

        with pytest.raises(ValidationError):
            service.record_direct_expense(C, [A, B], 30, "Food", "Lunch")

    def test_rejects_missing_fields(self):
        service = make_service()

        with pytest.raises(ValidationError):
            service.record_direct_expense(A, [A, B], 30, "", "Lunch")
        with pytest.raises(ValidationError):
            service.record_direct_expense(A, [A, B], 30, "Food", "   ")
        with pytest.raises(ValidationError):
            service.record_direct_expense(A, [], 30, "Food", "Lunch")

        assert service.storage.list_expenses_involving(A) == []
        assert service.list_activity(A) == []

    def test_delete_expense_restores_balance(self):
        service = make_service()
        expense_id = service.record_direct_expense(A, [A, B], 60, "Travel", "Car")
        assert service.get_outstanding_amount(A, B) == Decimal("30.00")

        service.delete_expense(B, expense_id)

        assert service.get_outstanding_amount(A, B) == Decimal("0.00")
        with pytest.raises(NotFoundError):
            service.delete_expense(B, expense_id)

    def test_only_participants_may_delete(self):
        service = make_service()
        expense_id = service.record_direct_expense(A, [A, B], 60, "Travel", "Car")

        with pytest.raises(ValidationError):
            service.delete_expense(C, expense_id)
        assert service.storage.get_expense(expense_id) is not None

    def test_store_outage_on_write_propagates(self):
        """A failed write is not applied and logs nothing."""

        class BrokenStorage(InMemoryStorage):
            def add_expense(self, expense):
                raise StoreUnavailableError("expenses collection unreachable")

        service = make_service(BrokenStorage())

        with pytest.raises(StoreUnavailableError):
            service.record_direct_expense(A, [A, B], 10, "Food", "Tea")
        assert service.list_activity(A) == []


class TestGroupExpenseFlow:
    """Tests for recording group expenses."""

    def test_equal_split_of_100_between_four(self):
        service = make_service()
        group_id = make_group(service, BOB, CAROL, DAVE)

        expense_id = service.record_group_expense(group_id, A, [A, B, C, D], Decimal("100"), "Boat rental")

        expense = service.storage.get_group_expense(expense_id)
        assert expense.split_mode == SplitMode.EQUAL
        assert [s.amount for s in expense.splits] == [Decimal("25.00")] * 4
        assert sum(s.amount for s in expense.splits) == Decimal("100")

    def test_equal_split_scenario_balances(self):
        """Alice pays 120 split equally with Bob and Carol."""
        service = make_service()
        group_id = make_group(service, BOB, CAROL)

        expense_id = service.record_group_expense(group_id, A, [A, B, C], Decimal("120"), "Dinner")

        expense = service.storage.get_group_expense(expense_id)
        assert [(s.phone, s.name, s.amount) for s in expense.splits] == [
            (A, "Alice", Decimal("40.00")),
            (B, "Bob", Decimal("40.00")),
            (C, "Carol", Decimal("40.00")),
        ]
        group = service.get_group(group_id)
        sheet = group_member_balances(group, service.storage.list_group_expenses(group_id))
        assert sheet.balances == {A: Decimal("80"), B: Decimal("-40"), C: Decimal("-40")}
        assert sum(sheet.balances.values()) == 0

    def test_custom_split_mismatch_persists_nothing(self):
        service = make_service()
        group_id = make_group(service, BOB, CAROL)
        activity_before = len(service.list_activity(A))

        with pytest.raises(SplitMismatchError):
            service.record_group_expense(
                group_id, A, [A, B, C], Decimal("100"), "Tickets",
                split_mode="custom", custom_splits={A: "30", B: "30", C: "30"},
            )

        assert service.storage.list_group_expenses(group_id) == []
        assert len(service.list_activity(A)) == activity_before

    def test_custom_split_success(self):
        service = make_service()
        group_id = make_group(service, BOB, CAROL)

        expense_id = service.record_group_expense(
            group_id, B, [A, B, C], Decimal("100"), "Tickets",
            split_mode=SplitMode.CUSTOM,
            custom_splits=[{"phone": A, "amount": "50"}, {"phone": B, "amount": "20"}, {"phone": C, "amount": "30"}],
        )

        expense = service.storage.get_group_expense(expense_id)
        assert {s.phone: s.amount for s in expense.splits} == {A: Decimal("50"), B: Decimal("20"), C: Decimal("30")}
        detail = service.get_group_detail(group_id, A)
        assert {b.phone: b.amount for b in detail.balances} == {
            A: Decimal("-50.00"), B: Decimal("80.00"), C: Decimal("-30.00"),
        }

    def test_custom_split_rejects_unselected_member(self):
        service = make_service()
        group_id = make_group(service, BOB, CAROL)

        with pytest.raises(ValidationError):
            service.record_group_expense(
                group_id, A, [A, B], Decimal("100"), "Tickets",
                split_mode="custom", custom_splits={A: "50", C: "50"},
            )

    def test_payer_and_members_must_belong_to_group(self):
        service = make_service()
        group_id = make_group(service, BOB)

        with pytest.raises(NotGroupMemberError):
            service.record_group_expense(group_id, D, [A, B], 10, "Snacks")
        with pytest.raises(NotGroupMemberError):
            service.record_group_expense(group_id, A, [A, D], 10, "Snacks")

    def test_unknown_group(self):
        service = make_service()

        with pytest.raises(NotFoundError):
            service.record_group_expense(uuid4(), A, [A], 10, "Snacks")

    def test_unknown_split_mode(self):
        service = make_service()
        group_id = make_group(service, BOB)

        with pytest.raises(ValidationError):
            service.record_group_expense(group_id, A, [A, B], 10, "Snacks", split_mode="shares")


class TestSettlementFlow:
    """Tests for recording settlements."""

    def test_settlement_convergence_on_uneven_split(self):
        service = make_service()
        service.record_direct_expense(A, [A, B, C], Decimal("100"), "Travel", "Hotel")
        expenses = service.storage.list_expenses_involving_pair(A, B)
        owed = pairwise_balance(expenses, [], A, B)

        service.record_settlement(B, A, owed, "other")

        settlements = service.storage.list_settlements_between(A, B)
        assert abs(pairwise_balance(expenses, settlements, A, B)) < Decimal("1e-6")

    def test_settlement_does_not_touch_expenses(self):
        service = make_service()
        expense_id = service.record_direct_expense(B, [A, B], 100, "Food", "Dinner")
        before = service.storage.get_expense(expense_id)

        service.record_settlement(A, B, 50)

        assert service.storage.get_expense(expense_id) == before

    def test_overpayment_is_allowed(self):
        service = make_service()
        service.record_direct_expense(B, [A, B], 100, "Food", "Dinner")

        service.record_settlement(A, B, 80)

        assert service.get_outstanding_amount(A, B) == Decimal("30.00")

    def test_rejects_invalid_settlements(self):
        service = make_service()

        with pytest.raises(ValidationError):
            service.record_settlement(A, B, 0)
        with pytest.raises(ValidationError):
            service.record_settlement(A, A, 10)
        with pytest.raises(ValidationError):
            service.record_settlement(A, B, 10, method="cash")

    def test_group_settlement_clears_group_balance(self):
        service = make_service()
        group_id = make_group(service, BOB, CAROL)
        service.record_group_expense(group_id, A, [A, B, C], Decimal("120"), "Dinner")

        service.record_settlement(B, A, Decimal("40"), "card", group_id=group_id)

        detail = service.get_group_detail(group_id, B)
        assert detail.your_balance == Decimal("0.00")
        assert service.get_outstanding_amount(A, B) == Decimal("0.00")

    def test_group_settlement_requires_members(self):
        service = make_service()
        group_id = make_group(service, BOB)

        with pytest.raises(NotGroupMemberError):
            service.record_settlement(D, A, 10, group_id=group_id)


class TestFriendships:
    """Tests for adding and removing friends."""

    def test_add_friend_twice_from_either_side_fails(self):
        service = make_service()
        service.add_friend(ALICE, B)

        with pytest.raises(DuplicateFriendshipError):
            service.add_friend(BOB, A)

        assert [m.phone for m in service.list_friends(A)] == [B]
        assert [m.phone for m in service.list_friends(B)] == [A]

    def test_names_are_snapshotted(self):
        service = make_service()
        service.add_friend(Identity(phone=A, name="Ali"), B)

        assert service.list_friends(B) == [Member(phone=A, name="Ali")]
        assert service.list_friends(A) == [Member(phone=B, name="Bob")]

    def test_unregistered_candidate(self):
        service = make_service()

        with pytest.raises(UserNotFoundError):
            service.add_friend(ALICE, "5559990000")

    def test_cannot_friend_yourself(self):
        service = make_service()

        with pytest.raises(ValidationError):
            service.add_friend(ALICE, "(514) 111-0001")

    def test_remove_friend_from_other_side(self):
        service = make_service()
        service.add_friend(ALICE, B)

        service.remove_friend(BOB, A)

        assert service.list_friends(A) == []
        assert service.list_friends(B) == []
        with pytest.raises(NotFoundError):
            service.remove_friend(ALICE, B)


class TestGroupLifecycle:
    """Tests for creating, leaving and deleting groups."""

    def test_create_group_dedupes_and_adds_creator(self):
        service = make_service()

        group_id = service.create_group(
            ALICE, "Movie Night",
            [Member(phone=B, name="Bob"), {"phone": "514.111.0002", "name": "Bobby"}, Member(phone=C, name="")],
        )

        group = service.get_group(group_id)
        assert group.members == [
            Member(phone=B, name="Bob"), Member(phone=C, name="Carol"), Member(phone=A, name="Alice"),
        ]
        assert group.created_by == A

    def test_create_group_requires_name(self):
        service = make_service()

        with pytest.raises(ValidationError):
            service.create_group(ALICE, "  ", [Member(phone=B, name="Bob")])

    def test_create_group_requires_registered_members(self):
        service = make_service()

        with pytest.raises(UserNotFoundError):
            service.create_group(ALICE, "Movie Night", [Member(phone="5550000000", name="Ghost")])

    def test_leave_group_removes_only_caller(self):
        service = make_service()
        group_id = make_group(service, BOB, CAROL)
        expense_id = service.record_group_expense(group_id, A, [A, B, C], Decimal("90"), "Dinner")

        service.leave_group(CAROL, group_id)

        group = service.get_group(group_id)
        assert group.member_phones == [B, A]
        assert [m.phone for m in group.former_members] == [C]
        assert [s.phone for s in service.storage.get_group_expense(expense_id).splits] == [A, B, C]

        detail = service.get_group_detail(group_id, A)
        assert {b.phone: b.amount for b in detail.balances} == {
            B: Decimal("-30.00"), A: Decimal("60.00"), C: Decimal("-30.00"),
        }
        assert detail.balances[-1].name == "Carol"
        assert detail.diagnostics == []

        with pytest.raises(NotGroupMemberError):
            service.leave_group(CAROL, group_id)

    def test_leaver_keeps_group_debt(self):
        """Bob leaves owing 40 for a 120 dinner Alice paid for three."""
        service = make_service()
        group_id = make_group(service, BOB, CAROL)
        service.record_group_expense(group_id, A, [A, B, C], Decimal("120"), "Dinner")

        service.leave_group(BOB, group_id)

        assert service.get_group_detail(group_id, A).your_balance == Decimal("80.00")
        summary = service.get_dashboard_summary(B)
        assert [(g.group_id, g.amount) for g in summary.groups] == [(group_id, Decimal("-40.00"))]
        assert summary.totals.you_owe == Decimal("40.00")
        assert service.get_group_detail(group_id, B).your_balance == Decimal("-40.00")

        service.record_settlement(B, A, Decimal("40"), "card", group_id=group_id)

        assert service.get_dashboard_summary(B).totals.you_owe == Decimal("0.00")
        assert service.get_group_detail(group_id, A).your_balance == Decimal("40.00")

    def test_former_member_cannot_change_group(self):
        service = make_service()
        group_id = make_group(service, BOB, CAROL)
        service.leave_group(BOB, group_id)

        with pytest.raises(NotGroupMemberError):
            service.record_group_expense(group_id, B, [A, B], 10, "Snacks")
        with pytest.raises(NotGroupMemberError):
            service.delete_group(group_id, actor=B)
        assert [g.id for g in service.list_groups(B)] == [group_id]

    def test_delete_group(self):
        service = make_service()
        group_id = make_group(service, BOB)
        expense_id = service.record_group_expense(group_id, A, [A, B], 10, "Snacks")

        service.delete_group(group_id, actor=A)

        with pytest.raises(NotFoundError):
            service.get_group(group_id)
        assert service.storage.get_group_expense(expense_id) is None
        assert service.list_groups(B) == []

    def test_outsider_cannot_delete_or_view_group(self):
        service = make_service()
        group_id = make_group(service, BOB)

        with pytest.raises(NotGroupMemberError):
            service.delete_group(group_id, actor=D)
        with pytest.raises(NotGroupMemberError):
            service.get_group_detail(group_id, D)


class TestReadModels:
    """Tests for dashboard, group detail and friend history."""

    def test_dashboard_summary(self):
        service = make_service()
        service.add_friend(ALICE, B)
        service.add_friend(ALICE, D)
        service.record_direct_expense(A, [A, B], Decimal("100"), "Food", "Dinner")
        group_id = make_group(service, BOB, CAROL)
        service.record_group_expense(group_id, A, [A, B, C], Decimal("120"), "Boat")

        alice = service.get_dashboard_summary(A)
        bob = service.get_dashboard_summary(B)

        assert {f.phone: f.amount for f in alice.friends} == {B: Decimal("50.00"), D: Decimal("0.00")}
        assert [(g.group_id, g.amount) for g in alice.groups] == [(group_id, Decimal("80.00"))]
        assert alice.totals.owed_to_you == Decimal("130.00")
        assert alice.totals.you_owe == Decimal("0.00")
        assert alice.totals.net == Decimal("130.00")

        assert {f.phone: f.amount for f in bob.friends} == {A: Decimal("-50.00")}
        assert bob.totals.you_owe == Decimal("90.00")
        assert bob.totals.net == Decimal("-90.00")

    def test_dashboard_totals_match_rows(self):
        service = make_service()
        service.record_direct_expense(A, [A, B], 40, "Food", "Lunch")
        service.record_direct_expense(C, [A, C], 10, "Food", "Coffee")
        group_id = make_group(service, BOB)
        service.record_group_expense(group_id, B, [A, B], 30, "Taxi")

        summary = service.get_dashboard_summary(A)

        rows = [f.amount for f in summary.friends] + [g.amount for g in summary.groups]
        assert summary.totals.owed_to_you == sum(r for r in rows if r > 0)
        assert summary.totals.you_owe == -sum(r for r in rows if r < 0)
        assert summary.totals.net == sum(rows)

    def test_dashboard_is_recomputed_on_every_read(self):
        service = make_service()
        service.record_direct_expense(A, [A, B], 40, "Food", "Lunch")
        assert service.get_dashboard_summary(A).totals.net == Decimal("20.00")

        service.record_settlement(B, A, 20)

        assert service.get_dashboard_summary(A).totals.net == Decimal("0.00")

    def test_group_detail(self):
        service = make_service()
        group_id = make_group(service, BOB, CAROL)
        service.record_group_expense(group_id, A, [A, B, C], Decimal("120"), "Boat")
        service.record_group_expense(group_id, B, [A, B], Decimal("20"), "Fries")

        detail = service.get_group_detail(group_id, C)

        assert [e.reason for e in detail.expenses] == ["Fries", "Boat"]
        assert detail.total_spent == Decimal("140.00")
        assert detail.your_balance == Decimal("-40.00")
        assert {t.phone: t.amount for t in detail.totals} == {
            A: Decimal("50.00"), B: Decimal("50.00"), C: Decimal("40.00"),
        }
        assert sum(b.amount for b in detail.balances) == 0
        assert sum(t.amount for t in detail.suggested_transfers) == Decimal("70.00")
        assert detail.diagnostics == []

    def test_friend_expense_history(self):
        service = make_service()
        service.add_friend(Identity(phone=A, name="Alice"), B)
        service.record_direct_expense(A, [A, B], 30, "Travel", "Car")
        service.record_direct_expense(B, [A, B], 10, "Food", "Fries")
        service.record_direct_expense(A, [A, C], 99, "Food", "Unrelated")
        service.record_settlement(B, A, 5)

        history = service.get_friend_expense_history(A, B)

        assert history.friend == Member(phone=B, name="Bob")
        assert [e.reason for e in history.expenses] == ["Fries", "Car"]
        assert history.total_spent == Decimal("40.00")
        assert len(history.settlements) == 1
        assert history.balance == Decimal("5.00")

    def test_reminder(self):
        service = make_service()
        service.record_direct_expense(A, [A, B], 30, "Travel", "Car")

        reminder = service.get_reminder(A, B)

        assert reminder.user_name == "Alice"
        assert reminder.friend_name == "Bob"
        assert reminder.amount == Decimal("15.00")
        assert service.get_user_display_name("5559990000") == "5559990000"


class TestActivityLog:
    """Tests for the activity feed."""

    def test_each_mutation_appends_exactly_one_entry(self):
        service = make_service()
        users = [A, B, C, D]

        def all_entries():
            seen = {}
            for user in users:
                for entry in service.list_activity(user):
                    seen[entry.id] = entry.model_dump()
            return seen

        service.add_friend(ALICE, B)
        before = all_entries()

        group_id = make_group(service, BOB, CAROL)
        expense_id = service.record_direct_expense(A, [A, B], 10, "Food", "Tea")
        service.record_group_expense(group_id, B, [A, B, C], 30, "Taxi")
        service.record_settlement(B, A, 5)
        service.delete_expense(A, expense_id)
        service.leave_group(CAROL, group_id)
        service.remove_friend(BOB, A)

        after = all_entries()
        assert len(after) - len(before) == 7
        for entry_id, data in before.items():
            assert after[entry_id] == data

    def test_newest_first_and_visibility(self):
        service = make_service()
        service.add_friend(ALICE, B)
        service.record_direct_expense(A, [A, B], 10, "Food", "Tea")
        service.record_settlement(B, A, 5)

        feed = service.list_activity(A)

        assert [e.type for e in feed] == [
            ActivityType.SETTLEMENT, ActivityType.EXPENSE, ActivityType.FRIEND_ADDED,
        ]
        assert feed[1].description == 'Alice added "Tea" (10.00)'
        assert service.list_activity(D) == []
        assert len(service.list_activity(A, limit=1)) == 1
        assert service.list_activity(A, limit=0) == []

    def test_negative_limit_is_rejected(self):
        service = make_service()
        service.record_direct_expense(A, [A, B], 10, "Food", "Tea")
        service.record_direct_expense(A, [A, B], 20, "Food", "Coffee")

        with pytest.raises(ValidationError):
            service.list_activity(A, limit=-1)
        assert len(service.list_activity(A)) == 2

    def test_activity_outage_does_not_undo_the_expense(self):
        class FlakyActivityStorage(InMemoryStorage):
            def append_activity(self, entry):
                raise StoreUnavailableError("activity log unreachable")

            def list_activity_for(self, user):
                raise StoreUnavailableError("activity log unreachable")

        service = make_service(FlakyActivityStorage())

        expense_id = service.record_direct_expense(A, [A, B], 10, "Food", "Tea")

        assert service.storage.get_expense(expense_id) is not None
        assert service.list_activity(A) == []

    def test_activity_append_is_retried(self):
        class OnceFlakyStorage(InMemoryStorage):
            failures = 1

            def append_activity(self, entry):
                if self.failures:
                    self.failures -= 1
                    raise StoreUnavailableError("activity log unreachable")
                super().append_activity(entry)

        service = make_service(OnceFlakyStorage())

        service.record_direct_expense(A, [A, B], 10, "Food", "Tea")

        assert len(service.list_activity(A)) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
