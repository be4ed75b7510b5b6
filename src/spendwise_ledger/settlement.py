"""Settle-up suggestions: turn net balances into a short list of transfers.

The matching is greedy: the largest creditor is paid by the largest debtor,
the smaller of the two magnitudes is transferred, settled parties drop out,
and the loop repeats. Each transfer settles at least one party, so a group
with N non-zero balances gets at most N-1 suggestions.

Known limitation: greedy matching is not guaranteed to find the fewest
transfers in every topology. Finding the true minimum is NP-hard in general
(it requires searching for zero-sum subgroups), so it is out of scope here.
"""

import logging
from dataclasses import dataclass

from .money import Money

logger = logging.getLogger(__name__)

# Magnitudes below one minor unit count as settled
EPSILON_MINOR = 1


@dataclass(frozen=True)
class SettlementSuggestion:
    """A suggested transfer from a debtor to a creditor."""

    from_member_id: str
    to_member_id: str
    amount: Money


def _largest(parties: dict[str, int]) -> str:
    # Ties break on member ID so suggestions are reproducible
    return min(parties, key=lambda member_id: (-parties[member_id], member_id))


def suggest_settlements(balances: dict[str, Money]) -> list[SettlementSuggestion]:
    """
    Suggest transfers that bring every balance to zero.

    Args:
        balances: Member ID -> net balance (positive = is owed money)

    Returns:
        Ordered transfers, largest matches first
    """
    if not balances:
        return []
    currency = next(iter(balances.values())).currency

    creditors: dict[str, int] = {}
    debtors: dict[str, int] = {}
    for member_id, balance in balances.items():
        if balance.currency != currency:
            raise ValueError(f"Mixed currencies in balances: {currency}, {balance.currency}")
        if balance.minor_units >= EPSILON_MINOR:
            creditors[member_id] = balance.minor_units
        elif balance.minor_units <= -EPSILON_MINOR:
            debtors[member_id] = -balance.minor_units

    suggestions: list[SettlementSuggestion] = []
    while creditors and debtors:
        creditor = _largest(creditors)
        debtor = _largest(debtors)
        amount = min(creditors[creditor], debtors[debtor])

        suggestions.append(
            SettlementSuggestion(
                from_member_id=debtor,
                to_member_id=creditor,
                amount=Money.of_minor(amount, currency),
            )
        )

        creditors[creditor] -= amount
        debtors[debtor] -= amount
        if creditors[creditor] < EPSILON_MINOR:
            del creditors[creditor]
        if debtors[debtor] < EPSILON_MINOR:
            del debtors[debtor]

    if creditors or debtors:
        logger.warning(
            f"Balances did not net to zero; {len(creditors) + len(debtors)} "
            f"parties left unsettled"
        )

    return suggestions


def apply_suggestions(
    balances: dict[str, Money], suggestions: list[SettlementSuggestion]
) -> dict[str, Money]:
    """Return the balances that result from making every suggested transfer."""
    result = dict(balances)
    for suggestion in suggestions:
        result[suggestion.from_member_id] = result[suggestion.from_member_id] + suggestion.amount
        result[suggestion.to_member_id] = result[suggestion.to_member_id] - suggestion.amount
    return result
