"""
Balance computation for the ledger.

Every function here is pure: it folds already-loaded ledger entries into
balances and never touches storage. Amounts stay unrounded until they reach
``quantize_amount`` at the presentation boundary.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Sequence

from .models import Expense, Group, GroupExpense, Settlement, SuggestedTransfer, UserTotals

ZERO = Decimal("0")
CENT = Decimal("0.01")


@dataclass
class BalanceSheet:
    balances: dict[str, Decimal] = field(default_factory=dict)
    diagnostics: list[str] = field(default_factory=list)

    def get(self, phone: str) -> Decimal:
        return self.balances.get(phone, ZERO)

    def total(self) -> Decimal:
        return sum(self.balances.values(), ZERO)


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, (int, str)):
        return Decimal(value)
    raise ValueError(f"Cannot convert {value!r} to Decimal")


def quantize_amount(value: Decimal) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def amounts_close(a: Decimal, b: Decimal, tolerance: Decimal = CENT) -> bool:
    return abs(to_decimal(a) - to_decimal(b)) <= tolerance


def split_equally(total: Decimal, phones: Sequence[str]) -> list[tuple[str, Decimal]]:
    """Cent-exact equal split; the last member absorbs the rounding remainder."""
    if not phones:
        raise ValueError("Cannot split an amount between zero members")

    total = to_decimal(total)
    per_person = (total / len(phones)).quantize(CENT, rounding=ROUND_HALF_UP)
    shares = [(phone, per_person) for phone in phones[:-1]]
    assigned = per_person * len(shares)
    shares.append((phones[-1], (total - assigned).quantize(CENT, rounding=ROUND_HALF_UP)))
    return shares


def pairwise_balance(
    expenses: Iterable[Expense],
    settlements: Iterable[Settlement],
    user_a: str,
    user_b: str,
) -> Decimal:
    """Net amount ``user_b`` owes ``user_a``; negative when ``user_a`` owes.

    Group-scoped settlements are left to ``group_member_balances``.
    """
    if user_a == user_b:
        return ZERO

    balance = ZERO
    for expense in expenses:
        if not expense.involves(user_a, user_b):
            continue
        share = to_decimal(expense.amount) / len(expense.participants)
        if expense.payer == user_a:
            balance += share
        elif expense.payer == user_b:
            balance -= share

    for settlement in settlements:
        if settlement.group_id is not None or not settlement.between(user_a, user_b):
            continue
        if settlement.from_phone == user_b:
            balance -= to_decimal(settlement.amount)
        else:
            balance += to_decimal(settlement.amount)
    return balance


def group_member_balances(
    group: Group,
    group_expenses: Iterable[GroupExpense],
    settlements: Iterable[Settlement] = (),
) -> BalanceSheet:
    """Net balance per member of one group; positive means the group owes them.

    Members who left keep their balance. Entries naming a phone that was never
    in the group are skipped and reported in ``diagnostics``.
    """
    sheet = BalanceSheet(balances={phone: ZERO for phone in group.ledger_phones})
    balances = sheet.balances

    for expense in group_expenses:
        payer = expense.paid_by
        if payer not in balances:
            sheet.diagnostics.append(
                f"Expense {expense.id} ({expense.reason}) skipped: payer {payer} is not a member"
            )
            continue
        for split in expense.splits:
            if split.phone == payer:
                continue
            if split.phone not in balances:
                sheet.diagnostics.append(
                    f"Expense {expense.id} ({expense.reason}): split for unknown member {split.phone} skipped"
                )
                continue
            amount = to_decimal(split.amount)
            balances[split.phone] -= amount
            balances[payer] += amount

    for settlement in settlements:
        if settlement.group_id != group.id:
            continue
        if settlement.from_phone not in balances or settlement.to_phone not in balances:
            sheet.diagnostics.append(
                f"Settlement {settlement.id} skipped: {settlement.from_phone} -> {settlement.to_phone} "
                "is not between group members"
            )
            continue
        amount = to_decimal(settlement.amount)
        balances[settlement.from_phone] += amount
        balances[settlement.to_phone] -= amount

    return sheet


def totals_by_member(group_expenses: Iterable[GroupExpense]) -> dict[str, Decimal]:
    totals: dict[str, Decimal] = {}
    for expense in group_expenses:
        for split in expense.splits:
            totals[split.phone] = totals.get(split.phone, ZERO) + to_decimal(split.amount)
    return totals


def aggregate_user_totals(
    pairwise: Iterable[Decimal],
    group_balances: Iterable[Decimal],
) -> UserTotals:
    owed_to_you = ZERO
    you_owe = ZERO
    for amount in list(pairwise) + list(group_balances):
        if amount > 0:
            owed_to_you += amount
        elif amount < 0:
            you_owe -= amount
    return UserTotals(owed_to_you=owed_to_you, you_owe=you_owe, net=owed_to_you - you_owe)


def simplify_debts(balances: dict[str, Decimal]) -> list[SuggestedTransfer]:
    """Greedy debtor/creditor matching over cent-rounded net balances."""
    creditors = []
    debtors = []
    for phone, amount in balances.items():
        amount = quantize_amount(amount)
        if amount > 0:
            creditors.append([phone, amount])
        elif amount < 0:
            debtors.append([phone, -amount])

    transfers: list[SuggestedTransfer] = []
    debtor_idx = 0
    creditor_idx = 0
    while debtor_idx < len(debtors) and creditor_idx < len(creditors):
        debtor = debtors[debtor_idx]
        creditor = creditors[creditor_idx]

        settled = min(debtor[1], creditor[1])
        if settled > 0:
            transfers.append(SuggestedTransfer(from_phone=debtor[0], to_phone=creditor[0], amount=settled))

        debtor[1] -= settled
        creditor[1] -= settled
        if debtor[1] <= 0:
            debtor_idx += 1
        if creditor[1] <= 0:
            creditor_idx += 1

    return transfers
