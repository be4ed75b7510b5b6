"""Tests for the LedgerService layer."""

from datetime import date
from decimal import Decimal

import pytest

from spendwise_ledger.exceptions import (
    AuthenticationFailedError,
    CurrencyMismatchError,
    DuplicateTagError,
    EntityNotFoundError,
    InvalidExpenseError,
    InvalidSplitError,
    KeyUnavailableError,
    MemberInUseError,
)
from spendwise_ledger.models import TAG_COLORS, EqualSplit, ExactSplit, PercentageSplit
from spendwise_ledger.money import Money
from spendwise_ledger.service import LedgerService
from spendwise_ledger.settlement import SettlementSuggestion


def usd(amount: str) -> Money:
    return Money.of(amount, "USD")


class TestGroups:
    """Groups and membership."""

    def test_create_group_with_creator(self, service):
        group = service.create_group("Trip", creator_name="Me")

        assert group.currency_code == "USD"
        assert [m.name for m in service.list_members(group.id)] == ["Me"]

    def test_update_group(self, service):
        group = service.create_group("Trip", description="Summer")
        updated = service.update_group(group.id, name="Ski trip", description=None)

        assert updated.name == "Ski trip"
        assert updated.description is None
        assert service.list_groups()[0].name == "Ski trip"

    def test_remove_unreferenced_member(self, service, trio):
        group, _, _, c = trio
        service.remove_member(c.id)
        assert c.id not in {m.id for m in service.list_members(group.id)}

    def test_remove_referenced_member_refused(self, service, trio):
        group, a, b, _ = trio
        service.record_payment(group.id, b.id, a.id, usd("5.00"))

        with pytest.raises(MemberInUseError):
            service.remove_member(b.id)

    def test_delete_group(self, service, trio):
        group, _, _, _ = trio
        service.delete_group(group.id)
        with pytest.raises(EntityNotFoundError):
            service.list_members(group.id)


class TestExpenses:
    """Adding, editing and splitting expenses."""

    def test_worked_example(self, service, trio):
        """A pays 90.00 split equally between A, B and C."""
        group, a, b, c = trio
        expense = service.add_expense(
            usd("90.00"),
            "Food",
            group_id=group.id,
            paid_by_member_id=a.id,
            split=EqualSplit(member_ids=[a.id, b.id, c.id]),
        )

        splits = service.get_splits(expense.id)
        assert [s.amount for s in splits] == [usd("30.00")] * 3

        assert service.get_balances(group.id) == {
            a.id: usd("60.00"),
            b.id: usd("-30.00"),
            c.id: usd("-30.00"),
        }
        suggestions = service.get_settlement_suggestions(group.id)
        assert sorted(suggestions, key=lambda s: s.from_member_id) == sorted(
            [
                SettlementSuggestion(b.id, a.id, usd("30.00")),
                SettlementSuggestion(c.id, a.id, usd("30.00")),
            ],
            key=lambda s: s.from_member_id,
        )

    def test_personal_expense(self, service):
        expense = service.add_expense(usd("4.50"), "Coffee", expense_date=date(2024, 4, 2))

        assert expense.group_id is None
        assert service.list_expenses(personal_only=True) == [expense]

    def test_personal_expense_cannot_have_payer(self, service, trio):
        _, a, _, _ = trio
        with pytest.raises(InvalidExpenseError):
            service.add_expense(usd("1.00"), "Misc", paid_by_member_id=a.id)

    def test_group_expense_needs_payer(self, service, trio):
        group, _, _, _ = trio
        with pytest.raises(InvalidExpenseError):
            service.add_expense(usd("1.00"), "Misc", group_id=group.id)
        assert service.list_expenses() == []

    def test_group_currency_enforced(self, service, trio):
        group, a, _, _ = trio
        with pytest.raises(CurrencyMismatchError):
            service.add_expense(
                Money.of("10.00", "EUR"), "Food", group_id=group.id, paid_by_member_id=a.id
            )

    def test_payer_must_be_member(self, service, trio):
        group, _, _, _ = trio
        other = service.create_group("Other", creator_name="Z")
        outsider = service.list_members(other.id)[0]
        with pytest.raises(EntityNotFoundError):
            service.add_expense(
                usd("10.00"), "Food", group_id=group.id, paid_by_member_id=outsider.id
            )

    def test_invalid_split_leaves_nothing_behind(self, service, trio):
        """A rejected split rolls back the expense and its undo entry."""
        group, a, b, _ = trio
        with pytest.raises(InvalidSplitError):
            service.add_expense(
                usd("10.00"),
                "Food",
                group_id=group.id,
                paid_by_member_id=a.id,
                split=ExactSplit(amounts={a.id: 500, b.id: 300}),
            )

        assert service.list_expenses() == []
        assert service.undo_history() == []

    def test_percentage_split(self, service, trio):
        group, a, b, c = trio
        expense = service.add_expense(
            usd("100.00"),
            "Rent",
            group_id=group.id,
            paid_by_member_id=a.id,
            split=PercentageSplit(percentages={a.id: 50, b.id: 25, c.id: 25}),
        )
        assert [s.amount_minor for s in service.get_splits(expense.id)] == [5000, 2500, 2500]

    def test_edit_amount_rescales_split(self, service, trio):
        group, a, b, _ = trio
        expense = service.add_expense(
            usd("10.00"),
            "Food",
            group_id=group.id,
            paid_by_member_id=a.id,
            split=ExactSplit(amounts={a.id: 750, b.id: 250}),
        )

        service.edit_expense(expense.id, amount=usd("20.00"))

        assert [s.amount_minor for s in service.get_splits(expense.id)] == [1500, 500]

    def test_edit_with_new_split(self, service, trio):
        group, a, b, c = trio
        expense = service.add_expense(
            usd("9.00"), "Food", group_id=group.id, paid_by_member_id=a.id
        )
        service.edit_expense(expense.id, split=EqualSplit(member_ids=[a.id, b.id, c.id]))
        assert [s.amount_minor for s in service.get_splits(expense.id)] == [300, 300, 300]

    def test_delete_expense(self, service, trio):
        group, a, _, _ = trio
        expense = service.add_expense(
            usd("9.00"), "Food", group_id=group.id, paid_by_member_id=a.id
        )
        service.delete_expense(expense.id)
        with pytest.raises(EntityNotFoundError):
            service.get_expense(expense.id)


class TestNotes:
    """Notes are stored encrypted and revealed on demand."""

    def test_note_is_encrypted_at_rest(self, service, db):
        expense = service.add_expense(usd("12.00"), "Gift", note="surprise for B")

        stored = db.require_expense(expense.id)
        assert stored.note_ciphertext is not None
        assert "surprise" not in stored.note_ciphertext
        assert service.read_note(stored) == "surprise for B"

    def test_no_note(self, service):
        expense = service.add_expense(usd("12.00"), "Gift")
        assert service.read_note(expense) is None

    def test_clear_note_on_edit(self, service):
        expense = service.add_expense(usd("12.00"), "Gift", note="x")
        edited = service.edit_expense(expense.id, note=None)
        assert edited.note_ciphertext is None

    def test_locked_key_blocks_notes(self, service, key_session):
        expense = service.add_expense(usd("12.00"), "Gift", note="hidden")
        key_session.lock()

        with pytest.raises(KeyUnavailableError):
            service.read_note(expense)
        with pytest.raises(KeyUnavailableError):
            service.add_expense(usd("1.00"), "Gift", note="another")

    def test_tampered_note(self, service):
        expense = service.add_expense(usd("12.00"), "Gift", note="hidden")
        token = expense.note_ciphertext
        tampered = expense.model_copy(
            update={"note_ciphertext": token[:-4] + ("AAAA" if token[-4:] != "AAAA" else "BBBB")}
        )
        with pytest.raises(AuthenticationFailedError):
            service.read_note(tampered)

    def test_without_secret_box(self, settings, db):
        service = LedgerService(settings, db)
        with pytest.raises(KeyUnavailableError):
            service.add_expense(usd("1.00"), "Gift", note="no key")


class TestPayments:
    """Payments and settle-up."""

    def test_payment_currency_must_match_group(self, service, trio):
        group, a, b, _ = trio
        with pytest.raises(CurrencyMismatchError):
            service.record_payment(group.id, b.id, a.id, Money.of("1.00", "EUR"))

    def test_settle_up_zeroes_balances(self, service, trio):
        group, a, b, c = trio
        service.add_expense(
            usd("100.00"),
            "Food",
            group_id=group.id,
            paid_by_member_id=a.id,
            split=EqualSplit(member_ids=[a.id, b.id, c.id]),
        )
        service.add_expense(
            usd("40.00"),
            "Taxi",
            group_id=group.id,
            paid_by_member_id=b.id,
            split=EqualSplit(member_ids=[b.id, c.id]),
        )

        payments = service.settle_up(group.id)

        assert payments
        assert all(balance.is_zero() for balance in service.get_balances(group.id).values())
        assert service.get_settlement_suggestions(group.id) == []
        assert len(service.list_payments(group.id)) == len(payments)

    def test_delete_payment(self, service, trio):
        group, a, b, _ = trio
        payment = service.record_payment(group.id, b.id, a.id, usd("3.00"))
        service.delete_payment(payment.id)
        assert service.list_payments(group.id) == []


class TestRecurring:
    """Recurring rules through the service."""

    def test_generate_monthly(self, service, trio):
        """Monthly from Jan 1 with now = Apr 15 -> Feb 1, Mar 1, Apr 1."""
        group, a, b, c = trio
        rule = service.create_recurring_rule(
            usd("30.00"),
            "Internet",
            "monthly",
            date(2024, 1, 1),
            group_id=group.id,
            paid_by_member_id=a.id,
        )

        generated = service.generate_recurring()

        assert [e.date for e in generated] == [date(2024, 2, 1), date(2024, 3, 1), date(2024, 4, 1)]
        assert service.generate_recurring() == []
        rules = service.list_recurring_rules()
        assert rules[0].id == rule.id
        assert rules[0].last_generated == date(2024, 4, 1)
        assert service.get_balances(group.id) == {
            a.id: usd("60.00"),
            b.id: usd("-30.00"),
            c.id: usd("-30.00"),
        }

    def test_update_keeps_last_generated(self, service):
        rule = service.create_recurring_rule(usd("5.00"), "Gym", "weekly", date(2024, 4, 1))
        service.generate_recurring()

        updated = service.update_recurring_rule(rule.id, end_date=date(2024, 12, 31))

        assert updated.last_generated == date(2024, 4, 15)
        assert updated.end_date == date(2024, 12, 31)


class TestTags:
    """Tag management and tagging expenses."""

    def test_create_picks_palette_colors_in_turn(self, service):
        first = service.create_tag("food")
        second = service.create_tag("work")
        custom = service.create_tag("trip", color="#123456")

        assert first.color == TAG_COLORS[0]
        assert second.color == TAG_COLORS[1]
        assert custom.color == "#123456"
        assert [t.name for t in service.list_tags()] == ["food", "trip", "work"]

    def test_duplicate_name_refused(self, service):
        service.create_tag("food")
        with pytest.raises(DuplicateTagError):
            service.create_tag(" food ")

    def test_update_tag(self, service):
        tag = service.create_tag("food")
        service.create_tag("work")

        updated = service.update_tag(tag.id, name="groceries", color="#000000")

        assert (updated.name, updated.color) == ("groceries", "#000000")
        assert updated.created_at == tag.created_at
        with pytest.raises(DuplicateTagError):
            service.update_tag(tag.id, name="work")

    def test_tagging_an_expense(self, service):
        expense = service.add_expense(usd("12.00"), "Food")
        food = service.create_tag("food")
        work = service.create_tag("work")

        service.add_tag_to_expense(expense.id, work.id)
        service.add_tag_to_expense(expense.id, food.id)
        service.add_tag_to_expense(expense.id, food.id)
        assert service.get_expense_tags(expense.id) == [food, work]

        service.remove_tag_from_expense(expense.id, food.id)
        assert service.get_expense_tags(expense.id) == [work]

        assert service.set_expense_tags(expense.id, [food.id]) == [food]
        assert service.list_expenses(tag_id=food.id) == [expense]

    def test_set_with_unknown_tag_changes_nothing(self, service):
        expense = service.add_expense(usd("12.00"), "Food")
        food = service.create_tag("food")
        service.add_tag_to_expense(expense.id, food.id)

        with pytest.raises(EntityNotFoundError):
            service.set_expense_tags(expense.id, [food.id, "missing"])

        assert service.get_expense_tags(expense.id) == [food]

    def test_delete_tag_keeps_expenses(self, service):
        expense = service.add_expense(usd("12.00"), "Food")
        food = service.create_tag("food")
        service.add_tag_to_expense(expense.id, food.id)

        service.delete_tag(food.id)

        assert service.list_tags() == []
        assert service.get_expense_tags(expense.id) == []
        assert service.get_expense(expense.id) == expense

    def test_undo_delete_restores_tags(self, service):
        expense = service.add_expense(usd("12.00"), "Food")
        food = service.create_tag("food")
        service.add_tag_to_expense(expense.id, food.id)

        service.delete_expense(expense.id)
        service.undo_last()

        assert service.get_expense_tags(expense.id) == [food]


class TestAnalytics:
    """Reports over stored expenses."""

    @pytest.fixture
    def spending(self, service, trio):
        group, a, _, _ = trio
        rent = service.add_expense(
            usd("75.00"),
            "Rent",
            expense_date=date(2024, 3, 1),
            group_id=group.id,
            paid_by_member_id=a.id,
        )
        food = service.add_expense(
            usd("25.00"),
            "Food",
            expense_date=date(2024, 4, 1),
            group_id=group.id,
            paid_by_member_id=a.id,
        )
        service.add_expense(usd("4.00"), "Coffee", expense_date=date(2024, 4, 2))
        service.add_expense(Money.of("9.00", "EUR"), "Coffee", expense_date=date(2024, 4, 3))
        return group, rent, food

    def test_category_breakdown_for_group(self, service, spending):
        group, _, _ = spending

        result = service.category_breakdown(group_id=group.id)

        assert [(c.category, c.total, c.percentage) for c in result] == [
            ("Rent", usd("75.00"), Decimal("75.00")),
            ("Food", usd("25.00"), Decimal("25.00")),
        ]

    def test_other_currencies_left_out(self, service, spending):
        usd_total = sum(c.total for c in service.category_breakdown())
        eur = service.category_breakdown(currency="eur")

        assert usd_total == usd("104.00")
        assert [(c.category, c.total) for c in eur] == [("Coffee", Money.of("9.00", "EUR"))]

    def test_monthly_trends_end_at_current_month(self, service, spending):
        trends = service.monthly_trends(months=2)
        assert [(t.month, t.total, t.count) for t in trends] == [
            (date(2024, 3, 1), usd("75.00"), 1),
            (date(2024, 4, 1), usd("29.00"), 2),
        ]

    def test_highest_and_ranges(self, service, spending):
        group, rent, food = spending

        assert service.highest_expenses(limit=2, group_id=group.id) == [rent, food]
        assert service.spending_by_date_range(date(2024, 4, 1), date(2024, 4, 30)) == usd(
            "29.00"
        )
        # 104.00 over Mar 1 .. Apr 2 (32 days)
        assert service.average_daily_spending() == usd("3.25")

    def test_tag_breakdown(self, service, spending):
        _, rent, food = spending
        home = service.create_tag("home")
        service.set_expense_tags(rent.id, [home.id])
        service.set_expense_tags(food.id, [home.id])

        (item,) = service.tag_breakdown()

        assert (item.tag, item.total, item.count) == (home, usd("100.00"), 2)
