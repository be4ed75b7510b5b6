"""Undo log for destructive ledger mutations (command pattern).

Each mutation records a typed command holding what is needed to reverse it:
the created entity for an add, the prior entity for an edit or delete.
`undo_last` applies the inverse of the most recent command.

Undo is single-shot and non-chaining: a successful undo consumes the most
recent entry and discards the older ones, so only the latest mutation can
ever be undone. There is no redo.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Annotated, ClassVar, Literal, assert_never

from pydantic import BaseModel, Field, TypeAdapter

from .db import Database
from .exceptions import EntityNotFoundError, LedgerIntegrityError, UndoUnavailableError
from .models import (
    ActionKind,
    EntityKind,
    Expense,
    ExpenseSplit,
    Payment,
    RecurringRule,
    UndoEntry,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(days=7)
DEFAULT_MAX_ENTRIES = 50


# ============================================================================
# Commands
# ============================================================================


class AddExpense(BaseModel):
    """Undone by deleting the created expense."""

    kind: Literal["add_expense"] = "add_expense"
    action_kind: ClassVar[ActionKind] = "add"
    entity_kind: ClassVar[EntityKind] = "expense"

    expense: Expense


class EditExpense(BaseModel):
    """Undone by restoring the expense and splits as they were before the edit."""

    kind: Literal["edit_expense"] = "edit_expense"
    action_kind: ClassVar[ActionKind] = "edit"
    entity_kind: ClassVar[EntityKind] = "expense"

    before: Expense
    splits: list[ExpenseSplit] = Field(default_factory=list)


class DeleteExpense(BaseModel):
    """Undone by re-inserting the deleted expense with its splits and tags."""

    kind: Literal["delete_expense"] = "delete_expense"
    action_kind: ClassVar[ActionKind] = "delete"
    entity_kind: ClassVar[EntityKind] = "expense"

    expense: Expense
    splits: list[ExpenseSplit] = Field(default_factory=list)
    tag_ids: list[str] = Field(default_factory=list)


class AddPayment(BaseModel):
    """Undone by deleting the recorded payment."""

    kind: Literal["add_payment"] = "add_payment"
    action_kind: ClassVar[ActionKind] = "add"
    entity_kind: ClassVar[EntityKind] = "payment"

    payment: Payment


class DeletePayment(BaseModel):
    """Undone by re-inserting the deleted payment."""

    kind: Literal["delete_payment"] = "delete_payment"
    action_kind: ClassVar[ActionKind] = "delete"
    entity_kind: ClassVar[EntityKind] = "payment"

    payment: Payment


class AddRecurring(BaseModel):
    """Undone by deleting the created rule."""

    kind: Literal["add_recurring"] = "add_recurring"
    action_kind: ClassVar[ActionKind] = "add"
    entity_kind: ClassVar[EntityKind] = "recurring"

    rule: RecurringRule


class EditRecurring(BaseModel):
    """Undone by restoring the rule settings, keeping its generation progress."""

    kind: Literal["edit_recurring"] = "edit_recurring"
    action_kind: ClassVar[ActionKind] = "edit"
    entity_kind: ClassVar[EntityKind] = "recurring"

    before: RecurringRule


class DeleteRecurring(BaseModel):
    """Undone by re-inserting the deleted rule."""

    kind: Literal["delete_recurring"] = "delete_recurring"
    action_kind: ClassVar[ActionKind] = "delete"
    entity_kind: ClassVar[EntityKind] = "recurring"

    rule: RecurringRule


UndoCommand = Annotated[
    AddExpense
    | EditExpense
    | DeleteExpense
    | AddPayment
    | DeletePayment
    | AddRecurring
    | EditRecurring
    | DeleteRecurring,
    Field(discriminator="kind"),
]

_COMMANDS: TypeAdapter[UndoCommand] = TypeAdapter(UndoCommand)


def parse_command(entry: UndoEntry) -> UndoCommand:
    """Decode the command stored in an undo entry."""
    return _COMMANDS.validate_json(entry.payload)


# ============================================================================
# Log
# ============================================================================


class UndoLog:
    """Persistent, size- and age-bounded log of undoable commands."""

    def __init__(
        self,
        database: Database,
        retention: timedelta = DEFAULT_RETENTION,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = database
        self.retention = retention
        self.max_entries = max_entries
        self.clock = clock

    def record(self, command: UndoCommand, now: datetime | None = None) -> UndoEntry:
        """
        Append a command to the log and prune old entries.

        Args:
            command: The command describing how to reverse a mutation
            now: Entry timestamp (defaults to the clock)

        Returns:
            The stored entry
        """
        now = now or self.clock()
        entry = UndoEntry(
            action_kind=command.action_kind,
            entity_kind=command.entity_kind,
            payload=command.model_dump_json(),
            timestamp=now,
        )
        with self.db.transaction():
            self.db.insert_undo_entry(entry)
            self.prune(now)

        logger.debug(f"Recorded undo entry {entry.id} ({command.kind})")
        return entry

    def prune(self, now: datetime | None = None) -> int:
        """Drop entries past the retention window or beyond the count cap."""
        now = now or self.clock()
        removed = self.db.delete_undo_entries_before(now - self.retention)
        removed += self.db.trim_undo_entries(self.max_entries)
        if removed:
            logger.debug(f"Pruned {removed} undo entries")
        return removed

    def history(self, limit: int | None = None) -> list[UndoEntry]:
        """Recent entries, newest first."""
        return self.db.list_undo_entries(limit=limit)

    def undo_last(self, now: datetime | None = None) -> UndoCommand:
        """
        Reverse the most recent mutation.

        Returns:
            The command that was undone

        Raises:
            UndoUnavailableError: If the log is empty
            EntityNotFoundError / LedgerIntegrityError: If the ledger no longer
                matches the command; the entry stays in the log
        """
        self.prune(now)
        entry = self.db.latest_undo_entry()
        if entry is None:
            raise UndoUnavailableError("Nothing to undo")

        command = parse_command(entry)
        with self.db.transaction():
            self._apply_inverse(command)
            # Consume the entry and drop the older ones: undo does not chain
            self.db.clear_undo_entries()

        logger.info(f"Undid {command.action_kind} of {command.entity_kind} ({entry.id})")
        return command

    def _apply_inverse(self, command: UndoCommand) -> None:
        if isinstance(command, AddExpense):
            self.db.require_expense(command.expense.id)
            self.db.delete_expense(command.expense.id)
        elif isinstance(command, EditExpense):
            self.db.require_expense(command.before.id)
            self._require_expense_refs(command.before, command.splits)
            self.db.update_expense(command.before)
            self.db.replace_splits(command.before.id, command.splits)
        elif isinstance(command, DeleteExpense):
            if self.db.get_expense(command.expense.id) is not None:
                raise LedgerIntegrityError(f"Expense {command.expense.id} already exists")
            self._require_expense_refs(command.expense, command.splits)
            self.db.insert_expense(command.expense)
            self.db.replace_splits(command.expense.id, command.splits)
            for tag_id in command.tag_ids:
                # Tags deleted in the meantime stay deleted
                if self.db.get_tag(tag_id) is not None:
                    self.db.add_expense_tag(command.expense.id, tag_id)
        elif isinstance(command, AddPayment):
            self.db.require_payment(command.payment.id)
            self.db.delete_payment(command.payment.id)
        elif isinstance(command, DeletePayment):
            payment = command.payment
            if self.db.get_payment(payment.id) is not None:
                raise LedgerIntegrityError(f"Payment {payment.id} already exists")
            self._require_members(
                payment.group_id, [payment.from_member_id, payment.to_member_id]
            )
            self.db.insert_payment(payment)
        elif isinstance(command, AddRecurring):
            self.db.require_recurring_rule(command.rule.id)
            self.db.delete_recurring_rule(command.rule.id)
        elif isinstance(command, EditRecurring):
            current = self.db.require_recurring_rule(command.before.id)
            if command.before.group_id:
                self._require_members(
                    command.before.group_id, [command.before.paid_by_member_id]
                )
            # last_generated only moves forward; restoring it would regenerate occurrences
            restored = command.before.model_copy(
                update={"last_generated": current.last_generated}
            )
            self.db.update_recurring_rule(restored)
        elif isinstance(command, DeleteRecurring):
            if self.db.get_recurring_rule(command.rule.id) is not None:
                raise LedgerIntegrityError(f"Recurring rule {command.rule.id} already exists")
            if command.rule.group_id:
                self._require_members(command.rule.group_id, [command.rule.paid_by_member_id])
            self.db.insert_recurring_rule(command.rule)
        else:
            assert_never(command)

    def _require_expense_refs(self, expense: Expense, splits: list[ExpenseSplit]) -> None:
        """Check that the group and every member a restored expense points at still exist."""
        if expense.group_id is None:
            return
        member_ids = [expense.paid_by_member_id] + [s.member_id for s in splits]
        self._require_members(expense.group_id, member_ids)

    def _require_members(self, group_id: str, member_ids: Iterable[str | None]) -> None:
        """
        Check that a group and the given members of it still exist.

        Raises:
            EntityNotFoundError: If the group is gone, or a member is gone or
                no longer belongs to it
        """
        self.db.require_group(group_id)
        for member_id in dict.fromkeys(member_ids):
            if member_id is None:
                continue
            member = self.db.require_member(member_id)
            if member.group_id != group_id:
                raise EntityNotFoundError(
                    "member", member_id, f"Member {member_id} is not in group {group_id}"
                )
