"""Service layer composing the ledger components.

This is the surface the presentation layer talks to. Every mutation runs in a
single store transaction, and expense, payment and recurring-rule mutations
record an undo command before they write.
"""

import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta
from typing import Any

from . import analytics
from .analytics import CategoryTotal, MonthlyTrend, TagTotal
from .balances import BalanceCalculator
from .config import Settings
from .db import Database
from .exceptions import (
    CurrencyMismatchError,
    DuplicateTagError,
    EntityNotFoundError,
    InvalidExpenseError,
    KeyUnavailableError,
    MemberInUseError,
)
from .models import (
    TAG_COLORS,
    ExactSplit,
    Expense,
    ExpenseGroup,
    ExpenseSplit,
    GroupMember,
    Payment,
    RecurringInterval,
    RecurringRule,
    SplitPolicy,
    Tag,
    UndoEntry,
    utcnow,
)
from .money import Money
from .recurrence import RecurrencePlanner
from .secret_box import SecretBox
from .settlement import SettlementSuggestion, suggest_settlements
from .splitter import SplitEngine, split_by_weights
from .undo import (
    AddExpense,
    AddPayment,
    AddRecurring,
    DeleteExpense,
    DeletePayment,
    DeleteRecurring,
    EditExpense,
    EditRecurring,
    UndoCommand,
    UndoLog,
)

logger = logging.getLogger(__name__)

# Marks keyword arguments the caller did not pass (None is a real value)
_UNSET: Any = object()


class LedgerService:
    """Ledger operations for groups, expenses, payments and recurring rules."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        secret_box: SecretBox | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the ledger service."""
        self.settings = settings
        self.db = database
        self.secret_box = secret_box
        self.clock = clock

        self.splitter = SplitEngine(database)
        self.balance_calculator = BalanceCalculator(database)
        self.planner = RecurrencePlanner(database, clock=clock)
        self.undo_log = UndoLog(
            database,
            retention=timedelta(days=settings.undo_retention_days),
            max_entries=settings.max_undo_history,
            clock=clock,
        )

    # ========================================================================
    # Groups and members
    # ========================================================================

    def create_group(
        self,
        name: str,
        currency_code: str | None = None,
        description: str | None = None,
        creator_name: str | None = None,
    ) -> ExpenseGroup:
        """
        Create a group, optionally adding its creator as the first member.

        Args:
            name: Group name
            currency_code: Group currency (defaults to the configured currency)
            description: Optional description
            creator_name: If given, a member with this name is added

        Returns:
            The new group
        """
        group = ExpenseGroup(
            name=name,
            currency_code=currency_code or self.settings.default_currency,
            description=description,
        )
        with self.db.transaction():
            self.db.insert_group(group)
            if creator_name:
                self.db.insert_member(GroupMember(group_id=group.id, name=creator_name))

        logger.info(f"Created group '{group.name}' ({group.id})")
        return group

    def update_group(
        self,
        group_id: str,
        name: str | None = None,
        description: str | None = _UNSET,
    ) -> ExpenseGroup:
        """Rename a group or change its description."""
        group = self.db.require_group(group_id)
        updates: dict[str, Any] = {"updated_at": self.clock()}
        if name is not None:
            updates["name"] = name
        if description is not _UNSET:
            updates["description"] = description
        updated = ExpenseGroup.model_validate({**group.model_dump(), **updates})
        return self.db.update_group(updated)

    def delete_group(self, group_id: str) -> None:
        """Delete a group with everything it owns."""
        self.db.require_group(group_id)
        self.db.delete_group(group_id)
        logger.info(f"Deleted group {group_id}")

    def list_groups(self) -> list[ExpenseGroup]:
        return self.db.list_groups()

    def add_member(
        self,
        group_id: str,
        name: str,
        user_id: str | None = None,
        email: str | None = None,
    ) -> GroupMember:
        """Add a member to a group."""
        self.db.require_group(group_id)
        member = self.db.insert_member(
            GroupMember(group_id=group_id, name=name, user_id=user_id, email=email)
        )
        logger.info(f"Added member '{name}' to group {group_id}")
        return member

    def remove_member(self, member_id: str) -> None:
        """
        Remove a member from their group.

        Raises:
            EntityNotFoundError: If the member doesn't exist
            MemberInUseError: If splits, expenses, payments or rules reference them
        """
        self.db.require_member(member_id)
        if self.db.is_member_referenced(member_id):
            raise MemberInUseError(member_id)
        self.db.delete_member(member_id)
        logger.info(f"Removed member {member_id}")

    def list_members(self, group_id: str) -> list[GroupMember]:
        self.db.require_group(group_id)
        return self.db.list_members(group_id)

    # ========================================================================
    # Expenses
    # ========================================================================

    def add_expense(
        self,
        amount: Money,
        category: str,
        expense_date: date | None = None,
        description: str | None = None,
        note: str | None = None,
        group_id: str | None = None,
        paid_by_member_id: str | None = None,
        split: SplitPolicy | None = None,
    ) -> Expense:
        """
        Record an expense, optionally splitting it right away.

        Raises:
            EntityNotFoundError: If the group or payer doesn't exist
            CurrencyMismatchError: If the amount isn't in the group currency
            InvalidSplitError: If the split policy is invalid
            KeyUnavailableError: If a note is given while the key is locked
        """
        self._check_expense_refs(group_id, paid_by_member_id, amount.currency)
        expense = Expense(
            amount_minor=amount.minor_units,
            currency_code=amount.currency,
            category=category,
            description=description,
            note_ciphertext=self._seal(note),
            date=expense_date or self.clock().date(),
            group_id=group_id,
            paid_by_member_id=paid_by_member_id,
        )

        with self.db.transaction():
            self.undo_log.record(AddExpense(expense=expense))
            self.db.insert_expense(expense)
            if split is not None:
                splits = self.splitter.build_splits(expense, split)
                self.db.replace_splits(expense.id, splits)

        logger.info(f"Added expense {expense.id}: {expense.amount} ({category})")
        return expense

    def edit_expense(
        self,
        expense_id: str,
        amount: Money | None = None,
        category: str | None = None,
        expense_date: date | None = None,
        description: str | None = _UNSET,
        note: str | None = _UNSET,
        paid_by_member_id: str | None = None,
        split: SplitPolicy | None = None,
    ) -> Expense:
        """
        Edit an expense.

        When the amount changes and no new split is given, the existing
        split is rescaled in proportion to the old shares.
        """
        before = self.db.require_expense(expense_id)
        before_splits = self.db.list_splits(expense_id)

        updates: dict[str, Any] = {"updated_at": self.clock()}
        if amount is not None:
            updates["amount_minor"] = amount.minor_units
            updates["currency_code"] = amount.currency
        if category is not None:
            updates["category"] = category
        if expense_date is not None:
            updates["date"] = expense_date
        if description is not _UNSET:
            updates["description"] = description
        if note is not _UNSET:
            updates["note_ciphertext"] = self._seal(note)
        if paid_by_member_id is not None:
            updates["paid_by_member_id"] = paid_by_member_id

        updated = Expense.model_validate({**before.model_dump(), **updates})
        self._check_expense_refs(
            updated.group_id, updated.paid_by_member_id, updated.currency_code
        )

        new_splits: list[ExpenseSplit] | None = None
        if split is not None:
            new_splits = self.splitter.build_splits(updated, split)
        elif before_splits and updated.amount_minor != before.amount_minor:
            rescaled = split_by_weights(
                updated.amount, {s.member_id: s.amount_minor for s in before_splits}
            )
            new_splits = self.splitter.build_splits(
                updated,
                ExactSplit(amounts={s.member_id: s.amount.minor_units for s in rescaled}),
            )

        with self.db.transaction():
            self.undo_log.record(EditExpense(before=before, splits=before_splits))
            self.db.update_expense(updated)
            if new_splits is not None:
                self.db.replace_splits(expense_id, new_splits)

        logger.info(f"Edited expense {expense_id}")
        return updated

    def delete_expense(self, expense_id: str) -> None:
        """Delete an expense with its splits and tag links."""
        expense = self.db.require_expense(expense_id)
        splits = self.db.list_splits(expense_id)
        tag_ids = [tag.id for tag in self.db.list_expense_tags(expense_id)]
        with self.db.transaction():
            self.undo_log.record(
                DeleteExpense(expense=expense, splits=splits, tag_ids=tag_ids)
            )
            self.db.delete_expense(expense_id)
        logger.info(f"Deleted expense {expense_id}")

    def split_expense(self, expense_id: str, policy: SplitPolicy) -> list[ExpenseSplit]:
        """Split a group expense, replacing its previous split (undoable)."""
        expense = self.db.require_expense(expense_id)
        before_splits = self.db.list_splits(expense_id)
        with self.db.transaction():
            self.undo_log.record(EditExpense(before=expense, splits=before_splits))
            return self.splitter.apply(expense_id, policy)

    def get_expense(self, expense_id: str) -> Expense:
        return self.db.require_expense(expense_id)

    def list_expenses(self, **filters: Any) -> list[Expense]:
        """List expenses; accepts the filters of `Database.list_expenses`."""
        return self.db.list_expenses(**filters)

    def get_splits(self, expense_id: str) -> list[ExpenseSplit]:
        self.db.require_expense(expense_id)
        return self.db.list_splits(expense_id)

    def read_note(self, expense: Expense) -> str | None:
        """
        Decrypt an expense note.

        Raises:
            KeyUnavailableError: If the key session is locked
            AuthenticationFailedError: If the stored note was tampered with
        """
        if expense.note_ciphertext is None:
            return None
        if self.secret_box is None:
            raise KeyUnavailableError("No secret box configured")
        return self.secret_box.decrypt(expense.note_ciphertext)

    # ========================================================================
    # Payments, balances and settle-up
    # ========================================================================

    def record_payment(
        self,
        group_id: str,
        from_member_id: str,
        to_member_id: str,
        amount: Money,
        payment_date: date | None = None,
        note: str | None = None,
    ) -> Payment:
        """Record a settlement payment between two members of a group."""
        group = self.db.require_group(group_id)
        if amount.currency != group.currency_code:
            raise CurrencyMismatchError(
                f"Payment is in {amount.currency}, group uses {group.currency_code}"
            )
        self._require_group_member(group_id, from_member_id)
        self._require_group_member(group_id, to_member_id)

        payment = Payment(
            group_id=group_id,
            from_member_id=from_member_id,
            to_member_id=to_member_id,
            amount_minor=amount.minor_units,
            currency_code=amount.currency,
            date=payment_date or self.clock().date(),
            note=note,
        )
        with self.db.transaction():
            self.undo_log.record(AddPayment(payment=payment))
            self.db.insert_payment(payment)

        logger.info(f"Recorded payment {from_member_id} -> {to_member_id}: {amount}")
        return payment

    def delete_payment(self, payment_id: str) -> None:
        """Delete a payment."""
        payment = self.db.require_payment(payment_id)
        with self.db.transaction():
            self.undo_log.record(DeletePayment(payment=payment))
            self.db.delete_payment(payment_id)
        logger.info(f"Deleted payment {payment_id}")

    def list_payments(self, group_id: str) -> list[Payment]:
        self.db.require_group(group_id)
        return self.db.list_payments(group_id)

    def get_balances(self, group_id: str) -> dict[str, Money]:
        """Net balance per member (positive = is owed money)."""
        return self.balance_calculator.calculate(group_id)

    def get_settlement_suggestions(self, group_id: str) -> list[SettlementSuggestion]:
        """Suggested transfers that would settle the group."""
        return suggest_settlements(self.get_balances(group_id))

    def settle_up(
        self, group_id: str, payment_date: date | None = None
    ) -> list[Payment]:
        """
        Record every suggested transfer as a payment.

        Each payment is a separate undoable mutation, so undo reverses only
        the last one.
        """
        payments = [
            self.record_payment(
                group_id,
                suggestion.from_member_id,
                suggestion.to_member_id,
                suggestion.amount,
                payment_date=payment_date,
                note="Settle up",
            )
            for suggestion in self.get_settlement_suggestions(group_id)
        ]
        logger.info(f"Settled group {group_id} with {len(payments)} payments")
        return payments

    # ========================================================================
    # Recurring rules
    # ========================================================================

    def create_recurring_rule(
        self,
        amount: Money,
        category: str,
        interval: RecurringInterval,
        start_date: date,
        interval_value: int = 1,
        end_date: date | None = None,
        description: str | None = None,
        group_id: str | None = None,
        paid_by_member_id: str | None = None,
    ) -> RecurringRule:
        """Create a recurring rule; its first generated occurrence follows start_date."""
        self._check_expense_refs(group_id, paid_by_member_id, amount.currency)
        rule = RecurringRule(
            amount_minor=amount.minor_units,
            currency_code=amount.currency,
            category=category,
            description=description,
            interval=interval,
            interval_value=interval_value,
            start_date=start_date,
            end_date=end_date,
            group_id=group_id,
            paid_by_member_id=paid_by_member_id,
        )
        with self.db.transaction():
            self.undo_log.record(AddRecurring(rule=rule))
            self.db.insert_recurring_rule(rule)

        logger.info(f"Created recurring rule {rule.id}: {rule.amount} {interval}")
        return rule

    def update_recurring_rule(
        self,
        rule_id: str,
        amount: Money | None = None,
        category: str | None = None,
        description: str | None = _UNSET,
        interval: RecurringInterval | None = None,
        interval_value: int | None = None,
        end_date: date | None = _UNSET,
    ) -> RecurringRule:
        """Edit a recurring rule. `last_generated` is left untouched."""
        before = self.db.require_recurring_rule(rule_id)
        updates: dict[str, Any] = {"updated_at": self.clock()}
        if amount is not None:
            updates["amount_minor"] = amount.minor_units
            updates["currency_code"] = amount.currency
        if category is not None:
            updates["category"] = category
        if description is not _UNSET:
            updates["description"] = description
        if interval is not None:
            updates["interval"] = interval
        if interval_value is not None:
            updates["interval_value"] = interval_value
        if end_date is not _UNSET:
            updates["end_date"] = end_date

        updated = RecurringRule.model_validate({**before.model_dump(), **updates})
        self._check_expense_refs(
            updated.group_id, updated.paid_by_member_id, updated.currency_code
        )
        with self.db.transaction():
            self.undo_log.record(EditRecurring(before=before))
            self.db.update_recurring_rule(updated)
        return updated

    def delete_recurring_rule(self, rule_id: str) -> None:
        """Delete a recurring rule; expenses it generated are kept."""
        rule = self.db.require_recurring_rule(rule_id)
        with self.db.transaction():
            self.undo_log.record(DeleteRecurring(rule=rule))
            self.db.delete_recurring_rule(rule_id)
        logger.info(f"Deleted recurring rule {rule_id}")

    def list_recurring_rules(self) -> list[RecurringRule]:
        return self.db.list_recurring_rules()

    def generate_recurring(self, now: datetime | date | None = None) -> list[Expense]:
        """Materialize missed recurring occurrences (call on launch and resume)."""
        return self.planner.run(now)

    # ========================================================================
    # Tags
    # ========================================================================

    def create_tag(self, name: str, color: str | None = None) -> Tag:
        """
        Create a tag.

        Without a color the next one from the palette is used.

        Raises:
            DuplicateTagError: If the name is taken
        """
        if color is None:
            color = TAG_COLORS[len(self.db.list_tags()) % len(TAG_COLORS)]
        tag = Tag(name=name, color=color)
        if self.db.get_tag_by_name(tag.name) is not None:
            raise DuplicateTagError(tag.name)
        self.db.insert_tag(tag)
        logger.info(f"Created tag '{tag.name}'")
        return tag

    def update_tag(
        self, tag_id: str, name: str | None = None, color: str | None = None
    ) -> Tag:
        """Rename or recolor a tag."""
        existing = self.db.require_tag(tag_id)
        updates: dict[str, Any] = {}
        if name is not None:
            updates["name"] = name
        if color is not None:
            updates["color"] = color
        updated = Tag.model_validate({**existing.model_dump(), **updates})

        clash = self.db.get_tag_by_name(updated.name)
        if clash is not None and clash.id != tag_id:
            raise DuplicateTagError(updated.name)
        return self.db.update_tag(updated)

    def delete_tag(self, tag_id: str) -> None:
        """Delete a tag; expenses carrying it keep everything else."""
        self.db.require_tag(tag_id)
        self.db.delete_tag(tag_id)
        logger.info(f"Deleted tag {tag_id}")

    def list_tags(self) -> list[Tag]:
        return self.db.list_tags()

    def add_tag_to_expense(self, expense_id: str, tag_id: str) -> None:
        """Attach a tag to an expense (attaching twice is a no-op)."""
        self.db.require_expense(expense_id)
        self.db.require_tag(tag_id)
        if not self.db.add_expense_tag(expense_id, tag_id):
            logger.debug(f"Tag {tag_id} already on expense {expense_id}")

    def remove_tag_from_expense(self, expense_id: str, tag_id: str) -> None:
        self.db.require_expense(expense_id)
        self.db.remove_expense_tag(expense_id, tag_id)

    def set_expense_tags(self, expense_id: str, tag_ids: list[str]) -> list[Tag]:
        """
        Replace all tags of an expense.

        Raises:
            EntityNotFoundError: If the expense or any tag doesn't exist; no
                tags change in that case
        """
        self.db.require_expense(expense_id)
        for tag_id in tag_ids:
            self.db.require_tag(tag_id)
        self.db.set_expense_tags(expense_id, tag_ids)
        return self.db.list_expense_tags(expense_id)

    def get_expense_tags(self, expense_id: str) -> list[Tag]:
        self.db.require_expense(expense_id)
        return self.db.list_expense_tags(expense_id)

    # ========================================================================
    # Analytics
    # ========================================================================

    def category_breakdown(
        self, currency: str | None = None, **filters: Any
    ) -> list[CategoryTotal]:
        """Spending per category over the expenses matching `filters`."""
        code, selected = self._expenses_for_report(currency, filters)
        return analytics.category_breakdown(selected, code)

    def tag_breakdown(self, currency: str | None = None, **filters: Any) -> list[TagTotal]:
        """Spending per tag over the expenses matching `filters`."""
        code, selected = self._expenses_for_report(currency, filters)
        return analytics.tag_breakdown(selected, self.db.tags_by_expense(), code)

    def monthly_trends(
        self, months: int = 6, currency: str | None = None, **filters: Any
    ) -> list[MonthlyTrend]:
        """Spending per month for the last `months` months, oldest first."""
        code, selected = self._expenses_for_report(currency, filters)
        return analytics.monthly_trends(selected, code, self.clock().date(), months)

    def highest_expenses(
        self, limit: int = 5, currency: str | None = None, **filters: Any
    ) -> list[Expense]:
        code, selected = self._expenses_for_report(currency, filters)
        return analytics.highest_expenses(selected, code, limit)

    def spending_by_date_range(
        self, start: date, end: date, currency: str | None = None, **filters: Any
    ) -> Money:
        """Total spent between two dates (inclusive)."""
        code, selected = self._expenses_for_report(currency, filters)
        return analytics.spending_by_date_range(selected, code, start, end)

    def average_daily_spending(self, currency: str | None = None, **filters: Any) -> Money:
        code, selected = self._expenses_for_report(currency, filters)
        return analytics.average_daily_spending(selected, code)

    # ========================================================================
    # Undo
    # ========================================================================

    def undo_last(self, now: datetime | None = None) -> UndoCommand:
        """Undo the most recent expense, payment or recurring-rule mutation."""
        return self.undo_log.undo_last(now)

    def undo_history(self, limit: int | None = None) -> list[UndoEntry]:
        return self.undo_log.history(limit)

    # ========================================================================
    # Helpers
    # ========================================================================

    def _expenses_for_report(
        self, currency: str | None, filters: dict[str, Any]
    ) -> tuple[str, list[Expense]]:
        """
        Pick the report currency and the expenses in it.

        The currency defaults to the filtered group's, else the configured
        default. Expenses in other currencies are left out of the report.
        """
        if currency is None:
            group_id = filters.get("group_id")
            if group_id is not None:
                currency = self.db.require_group(group_id).currency_code
            else:
                currency = self.settings.default_currency
        code = currency.upper()
        expenses = self.db.list_expenses(**filters)
        selected = [e for e in expenses if e.currency_code == code]
        if len(selected) < len(expenses):
            logger.debug(f"Left {len(expenses) - len(selected)} non-{code} expenses out of report")
        return code, selected

    def _seal(self, note: str | None) -> str | None:
        if note is None:
            return None
        if self.secret_box is None:
            raise KeyUnavailableError("No secret box configured")
        return self.secret_box.encrypt(note)

    def _require_group_member(self, group_id: str, member_id: str) -> GroupMember:
        member = self.db.require_member(member_id)
        if member.group_id != group_id:
            raise EntityNotFoundError(
                "member", member_id, f"Member {member_id} is not in group {group_id}"
            )
        return member

    def _check_expense_refs(
        self, group_id: str | None, paid_by_member_id: str | None, currency: str
    ) -> None:
        if group_id is None:
            if paid_by_member_id is not None:
                raise InvalidExpenseError("Only group expenses have a paying member")
            return

        group = self.db.require_group(group_id)
        if currency != group.currency_code:
            raise CurrencyMismatchError(
                f"Amount is in {currency}, group uses {group.currency_code}"
            )
        if paid_by_member_id is None:
            raise InvalidExpenseError("Group expenses must have a paying member")
        self._require_group_member(group_id, paid_by_member_id)
