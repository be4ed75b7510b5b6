"""Tests for greedy settle-up suggestions."""

from hypothesis import given
from hypothesis import strategies as st

from spendwise_ledger.money import Money
from spendwise_ledger.settlement import (
    SettlementSuggestion,
    apply_suggestions,
    suggest_settlements,
)


def usd(minor: int) -> Money:
    return Money.of_minor(minor, "USD")


class TestSuggestSettlements:
    """Largest debtor pays largest creditor until everyone is settled."""

    def test_worked_example(self):
        """{A:+60, B:-30, C:-30} -> B pays A 30, C pays A 30."""
        balances = {"A": usd(6000), "B": usd(-3000), "C": usd(-3000)}

        suggestions = suggest_settlements(balances)

        assert suggestions == [
            SettlementSuggestion("B", "A", usd(3000)),
            SettlementSuggestion("C", "A", usd(3000)),
        ]

    def test_all_settled(self):
        assert suggest_settlements({"A": usd(0), "B": usd(0)}) == []

    def test_empty(self):
        assert suggest_settlements({}) == []

    def test_largest_matched_first(self):
        balances = {"A": usd(100), "B": usd(500), "C": usd(-450), "D": usd(-150)}

        suggestions = suggest_settlements(balances)

        assert suggestions[0] == SettlementSuggestion("C", "B", usd(450))
        assert apply_suggestions(balances, suggestions) == {
            member_id: usd(0) for member_id in balances
        }

    def test_ties_break_on_member_id(self):
        """Equal balances are matched in member-id order, deterministically."""
        balances = {"Z": usd(100), "Y": usd(100), "B": usd(-100), "A": usd(-100)}

        suggestions = suggest_settlements(balances)

        assert suggestions == [
            SettlementSuggestion("A", "Y", usd(100)),
            SettlementSuggestion("B", "Z", usd(100)),
        ]

    def test_one_cent_is_significant(self):
        suggestions = suggest_settlements({"A": usd(1), "B": usd(-1)})
        assert suggestions == [SettlementSuggestion("B", "A", usd(1))]

    @given(st.lists(st.integers(-10**9, 10**9), min_size=1, max_size=30))
    def test_settles_everyone_within_count_bound(self, amounts):
        """Applying the suggestions zeroes every balance in at most N-1 transfers."""
        # Make the balances net to zero like a real group
        amounts = amounts + [-sum(amounts)]
        balances = {f"m{i:02d}": usd(a) for i, a in enumerate(amounts)}

        suggestions = suggest_settlements(balances)

        settled = apply_suggestions(balances, suggestions)
        assert all(balance.is_zero() for balance in settled.values())

        nonzero = sum(1 for a in amounts if a != 0)
        assert len(suggestions) <= max(nonzero - 1, 0)
        assert all(s.amount.minor_units > 0 for s in suggestions)
        assert all(s.from_member_id != s.to_member_id for s in suggestions)
