"""Split engine: turns an expense amount and a split policy into member shares.

Every policy returns shares whose minor units add up to the expense amount
exactly. Rounding residuals are assigned deterministically so the same input
always produces the same split.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from fractions import Fraction

from .db import Database
from .exceptions import CurrencyMismatchError, InvalidSplitError
from .models import (
    EqualSplit,
    ExactSplit,
    Expense,
    ExpenseSplit,
    PercentageSplit,
    SplitPolicy,
)
from .money import Money

logger = logging.getLogger(__name__)

# Exact amounts may miss the total by at most one minor unit
SPLIT_TOLERANCE_MINOR = 1
PERCENTAGE_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class SplitShare:
    """One member's share of an expense."""

    member_id: str
    amount: Money
    percentage: Decimal | None = None


def _validate_members(member_ids: Sequence[str]) -> None:
    if not member_ids:
        raise InvalidSplitError("A split needs at least one member")
    if len(set(member_ids)) != len(member_ids):
        raise InvalidSplitError("A member can only appear once in a split")


def _absorb_residual(amounts: list[int], expected_total: int) -> list[int]:
    """
    Make `amounts` add up to `expected_total` by adjusting the largest share.

    The largest absolute share absorbs the residual (first one in input order
    on ties), which keeps the relative error as small as possible.
    """
    residual = expected_total - sum(amounts)
    if residual != 0:
        largest = max(range(len(amounts)), key=lambda i: abs(amounts[i]))
        amounts[largest] += residual
        logger.debug(f"Applied rounding adjustment of {residual} minor units to share {largest}")

    assert sum(amounts) == expected_total, "Adjustment failed"
    return amounts


def split_equal(total: Money, member_ids: Sequence[str]) -> list[SplitShare]:
    """
    Split an amount equally.

    The remainder (at most N-1 minor units) goes one unit at a time to the
    first members in input order.

    Example:
        100.00 between 3 members -> 33.34, 33.33, 33.33
    """
    _validate_members(member_ids)
    if total.minor_units < 0:
        raise InvalidSplitError("Cannot split a negative amount")

    quotient, remainder = divmod(total.minor_units, len(member_ids))
    return [
        SplitShare(
            member_id=member_id,
            amount=Money.of_minor(quotient + (1 if i < remainder else 0), total.currency),
        )
        for i, member_id in enumerate(member_ids)
    ]


def split_by_percentage(
    total: Money, percentages: Mapping[str, Decimal | int | str]
) -> list[SplitShare]:
    """
    Split an amount by percentage.

    Args:
        total: The expense amount
        percentages: Member ID -> percent (e.g. Decimal("33.33")), in input order

    Returns:
        Shares rounded half-away-from-zero, residual on the largest share

    Raises:
        InvalidSplitError: If percentages are negative or don't sum to 100 (±0.01)
    """
    member_ids = list(percentages)
    _validate_members(member_ids)

    pcts = {member_id: Decimal(str(pct)) for member_id, pct in percentages.items()}
    if any(pct < 0 for pct in pcts.values()):
        raise InvalidSplitError("Percentages cannot be negative")

    total_pct = sum(pcts.values(), Decimal("0"))
    if abs(total_pct - Decimal("100")) > PERCENTAGE_TOLERANCE:
        raise InvalidSplitError(f"Percentages sum to {total_pct}%, expected 100%")

    amounts = [
        total.scale(Fraction(pcts[member_id]) / 100).minor_units for member_id in member_ids
    ]
    amounts = _absorb_residual(amounts, total.minor_units)

    return [
        SplitShare(
            member_id=member_id,
            amount=Money.of_minor(amount, total.currency),
            percentage=pcts[member_id],
        )
        for member_id, amount in zip(member_ids, amounts, strict=True)
    ]


def split_exact(total: Money, amounts: Mapping[str, Money | int]) -> list[SplitShare]:
    """
    Split an amount by explicit per-member amounts.

    Args:
        total: The expense amount
        amounts: Member ID -> Money (or minor units), in input order

    Returns:
        Shares adding up to the total exactly

    Raises:
        InvalidSplitError: If amounts are negative or miss the total by more
            than one minor unit
    """
    member_ids = list(amounts)
    _validate_members(member_ids)

    minor: list[int] = []
    for member_id in member_ids:
        value = amounts[member_id]
        if isinstance(value, Money):
            if value.currency != total.currency:
                raise InvalidSplitError(
                    f"Split for {member_id} is in {value.currency}, expense is in {total.currency}"
                )
            minor.append(value.minor_units)
        else:
            minor.append(int(value))

    if any(value < 0 for value in minor):
        raise InvalidSplitError("Split amounts cannot be negative")

    residual = total.minor_units - sum(minor)
    if abs(residual) > SPLIT_TOLERANCE_MINOR:
        raise InvalidSplitError(
            f"Split amounts add up to {Money.of_minor(sum(minor), total.currency)}, "
            f"expected {total}"
        )

    minor = _absorb_residual(minor, total.minor_units)
    return [
        SplitShare(member_id=member_id, amount=Money.of_minor(amount, total.currency))
        for member_id, amount in zip(member_ids, minor, strict=True)
    ]


def split_by_weights(total: Money, weights: Mapping[str, int]) -> list[SplitShare]:
    """
    Split an amount in proportion to integer weights.

    Used to rescale an existing split when an expense amount changes: the
    old share amounts are the weights.
    """
    member_ids = list(weights)
    _validate_members(member_ids)
    weight_total = sum(weights.values())
    if weight_total <= 0 or any(w < 0 for w in weights.values()):
        raise InvalidSplitError("Split weights must be non-negative with a positive total")

    amounts = [
        total.scale(Fraction(weights[member_id], weight_total)).minor_units
        for member_id in member_ids
    ]
    amounts = _absorb_residual(amounts, total.minor_units)
    return [
        SplitShare(member_id=member_id, amount=Money.of_minor(amount, total.currency))
        for member_id, amount in zip(member_ids, amounts, strict=True)
    ]


def compute_shares(total: Money, policy: SplitPolicy) -> list[SplitShare]:
    """Dispatch a split policy to the matching split function."""
    if isinstance(policy, EqualSplit):
        return split_equal(total, policy.member_ids)
    if isinstance(policy, PercentageSplit):
        return split_by_percentage(total, policy.percentages)
    if isinstance(policy, ExactSplit):
        return split_exact(total, policy.amounts)
    raise TypeError(f"Unknown split policy: {policy!r}")


class SplitEngine:
    """Computes and stores the splits of group expenses."""

    def __init__(self, database: Database):
        """Initialize the split engine."""
        self.db = database

    def build_splits(self, expense: Expense, policy: SplitPolicy) -> list[ExpenseSplit]:
        """
        Compute split records for an expense without saving them.

        Raises:
            InvalidSplitError: If the policy is invalid or names non-members
        """
        if not expense.group_id:
            raise InvalidSplitError("Only group expenses can be split")

        try:
            shares = compute_shares(expense.amount, policy)
        except CurrencyMismatchError as e:
            raise InvalidSplitError(str(e)) from e

        group_members = {member.id for member in self.db.list_members(expense.group_id)}
        strangers = [share.member_id for share in shares if share.member_id not in group_members]
        if strangers:
            raise InvalidSplitError(
                f"Not members of group {expense.group_id}: {', '.join(strangers)}"
            )

        return [
            ExpenseSplit(
                expense_id=expense.id,
                member_id=share.member_id,
                amount_minor=share.amount.minor_units,
                currency_code=share.amount.currency,
                percentage=share.percentage,
            )
            for share in shares
        ]

    def apply(self, expense_id: str, policy: SplitPolicy) -> list[ExpenseSplit]:
        """
        Split an expense, replacing any previous splits.

        Args:
            expense_id: The expense to split
            policy: EqualSplit, PercentageSplit or ExactSplit

        Returns:
            The stored splits

        Raises:
            EntityNotFoundError: If the expense doesn't exist
            InvalidSplitError: If the policy is invalid
        """
        expense = self.db.require_expense(expense_id)
        splits = self.build_splits(expense, policy)
        self.db.replace_splits(expense_id, splits)

        logger.info(f"Split expense {expense_id} {policy.kind} between {len(splits)} members")
        return splits
