"""Net balance calculation for expense groups.

Balance = what a member paid - what a member owes.
Positive balance: the member is owed money. Negative: the member owes money.
"""

import logging
from collections import defaultdict

from .db import Database
from .exceptions import LedgerIntegrityError
from .money import Money

logger = logging.getLogger(__name__)


def assert_balanced(balances: dict[str, Money]) -> None:
    """
    Check that a group's balances add up to exactly zero.

    Raises:
        LedgerIntegrityError: If the sum is not zero
    """
    if not balances:
        return
    total = sum(balances.values())
    if total.minor_units != 0:
        raise LedgerIntegrityError(f"Group balances sum to {total}, expected zero")


class BalanceCalculator:
    """Aggregates expenses, splits and payments into one balance per member."""

    def __init__(self, database: Database):
        """Initialize the calculator with its ledger store."""
        self.db = database

    def calculate(self, group_id: str) -> dict[str, Money]:
        """
        Compute net balances for a group.

        Args:
            group_id: The group to compute balances for

        Returns:
            Member ID -> net balance, for every member of the group

        Raises:
            EntityNotFoundError: If the group doesn't exist
            LedgerIntegrityError: If the balances don't sum to zero
        """
        group = self.db.require_group(group_id)
        currency = group.currency_code

        balances: dict[str, Money] = {
            member.id: Money.zero(currency) for member in self.db.list_members(group_id)
        }

        splits_by_expense = defaultdict(list)
        for split in self.db.list_group_splits(group_id):
            splits_by_expense[split.expense_id].append(split)

        for expense in self.db.list_expenses(group_id=group_id):
            splits = splits_by_expense.get(expense.id)
            if not splits:
                # Unsplit expenses don't move balances
                logger.debug(f"Skipping unsplit expense {expense.id}")
                continue

            payer = expense.paid_by_member_id
            if payer is not None:
                balances[payer] = balances.get(payer, Money.zero(currency)) + expense.amount
            for split in splits:
                balances[split.member_id] = (
                    balances.get(split.member_id, Money.zero(currency)) - split.amount
                )

        # A payment moves both parties toward zero: the payer owes less,
        # the payee is owed less
        for payment in self.db.list_payments(group_id):
            balances[payment.from_member_id] = (
                balances.get(payment.from_member_id, Money.zero(currency)) + payment.amount
            )
            balances[payment.to_member_id] = (
                balances.get(payment.to_member_id, Money.zero(currency)) - payment.amount
            )

        assert_balanced(balances)
        return balances
