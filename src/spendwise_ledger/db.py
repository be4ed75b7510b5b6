"""SQLite ledger store for SpendWise."""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from .exceptions import EntityNotFoundError
from .models import (
    Expense,
    ExpenseGroup,
    ExpenseSplit,
    GroupMember,
    Payment,
    RecurringRule,
    Tag,
    UndoEntry,
    utcnow,
)

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS expense_groups (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        currency_code TEXT NOT NULL,
        description TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS members (
        id TEXT PRIMARY KEY,
        group_id TEXT NOT NULL,
        name TEXT NOT NULL,
        user_id TEXT,
        email TEXT,
        created_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_members_group ON members (group_id)",
    """
    CREATE TABLE IF NOT EXISTS expenses (
        id TEXT PRIMARY KEY,
        amount_minor INTEGER NOT NULL,
        currency_code TEXT NOT NULL,
        category TEXT NOT NULL,
        description TEXT,
        note_ciphertext TEXT,
        date DATE NOT NULL,
        group_id TEXT,
        paid_by_member_id TEXT,
        recurring_rule_id TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_expenses_group ON expenses (group_id)",
    "CREATE INDEX IF NOT EXISTS idx_expenses_date ON expenses (date)",
    """
    CREATE TABLE IF NOT EXISTS splits (
        id TEXT PRIMARY KEY,
        expense_id TEXT NOT NULL,
        member_id TEXT NOT NULL,
        amount_minor INTEGER NOT NULL,
        currency_code TEXT NOT NULL,
        percentage TEXT,
        created_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_splits_expense ON splits (expense_id)",
    """
    CREATE TABLE IF NOT EXISTS payments (
        id TEXT PRIMARY KEY,
        group_id TEXT NOT NULL,
        from_member_id TEXT NOT NULL,
        to_member_id TEXT NOT NULL,
        amount_minor INTEGER NOT NULL,
        currency_code TEXT NOT NULL,
        date DATE NOT NULL,
        note TEXT,
        created_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_payments_group ON payments (group_id)",
    """
    CREATE TABLE IF NOT EXISTS recurring_rules (
        id TEXT PRIMARY KEY,
        amount_minor INTEGER NOT NULL,
        currency_code TEXT NOT NULL,
        category TEXT NOT NULL,
        description TEXT,
        interval TEXT NOT NULL,
        interval_value INTEGER NOT NULL,
        start_date DATE NOT NULL,
        end_date DATE,
        last_generated DATE,
        group_id TEXT,
        paid_by_member_id TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tags (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        color TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS expense_tags (
        expense_id TEXT NOT NULL,
        tag_id TEXT NOT NULL,
        PRIMARY KEY (expense_id, tag_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_expense_tags_tag ON expense_tags (tag_id)",
    """
    CREATE TABLE IF NOT EXISTS undo_entries (
        id TEXT PRIMARY KEY,
        action_kind TEXT NOT NULL,
        entity_kind TEXT NOT NULL,
        payload TEXT NOT NULL,
        timestamp TIMESTAMP NOT NULL
    )
    """,
]


def _format_timestamp(value: datetime) -> str:
    """Fixed-width UTC timestamp so stored values sort lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _to_row(model: BaseModel) -> dict[str, Any]:
    """Serialize a model into column values (dates and decimals as text)."""
    row = model.model_dump(mode="json")
    for name, value in model:
        if isinstance(value, datetime):
            row[name] = _format_timestamp(value)
    return row


class Database:
    """SQLite database manager.

    Every public write commits on its own unless it runs inside
    `transaction()`, in which case the outermost block commits or rolls back.
    """

    def __init__(self, db_path: Path | str):
        """Initialize database connection."""
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self._depth = 0
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        cursor = self.conn.cursor()
        for statement in _SCHEMA:
            cursor.execute(statement)
        self.conn.commit()

    def close(self):
        """Close database connection."""
        self.conn.close()

    # ========================================================================
    # Transactions
    # ========================================================================

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """Group several writes into one atomic unit."""
        self._depth += 1
        try:
            yield self
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                self.conn.rollback()
                logger.debug("Rolled back transaction")
            raise
        else:
            self._depth -= 1
            if self._depth == 0:
                self.conn.commit()

    def _commit(self):
        if self._depth == 0:
            self.conn.commit()

    def _insert(self, table: str, row: dict[str, Any]) -> None:
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        self.conn.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            tuple(row.values()),
        )

    def _update(self, table: str, row: dict[str, Any]) -> int:
        values = {k: v for k, v in row.items() if k != "id"}
        assignments = ", ".join(f"{k} = ?" for k in values)
        cursor = self.conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            (*values.values(), row["id"]),
        )
        return cursor.rowcount

    def _fetch_one(self, query: str, params: tuple | dict = ()) -> sqlite3.Row | None:
        cursor = self.conn.cursor()
        cursor.execute(query, params)
        row: sqlite3.Row | None = cursor.fetchone()
        return row

    def _fetch_all(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        cursor = self.conn.cursor()
        cursor.execute(query, params)
        return cursor.fetchall()

    # ========================================================================
    # Group operations
    # ========================================================================

    def insert_group(self, group: ExpenseGroup) -> ExpenseGroup:
        """Save a new group."""
        self._insert("expense_groups", _to_row(group))
        self._commit()
        return group

    def update_group(self, group: ExpenseGroup) -> ExpenseGroup:
        """Overwrite an existing group."""
        if self._update("expense_groups", _to_row(group)) == 0:
            raise EntityNotFoundError("group", group.id)
        self._commit()
        return group

    def get_group(self, group_id: str) -> ExpenseGroup | None:
        """Get a group by ID."""
        row = self._fetch_one("SELECT * FROM expense_groups WHERE id = ?", (group_id,))
        return ExpenseGroup.model_validate(dict(row)) if row else None

    def require_group(self, group_id: str) -> ExpenseGroup:
        """Get a group by ID or raise EntityNotFoundError."""
        group = self.get_group(group_id)
        if group is None:
            raise EntityNotFoundError("group", group_id)
        return group

    def list_groups(self) -> list[ExpenseGroup]:
        """Get all groups, newest first."""
        rows = self._fetch_all("SELECT * FROM expense_groups ORDER BY created_at DESC, rowid DESC")
        return [ExpenseGroup.model_validate(dict(row)) for row in rows]

    def delete_group(self, group_id: str) -> None:
        """Delete a group with its members, expenses, splits, payments and rules."""
        with self.transaction():
            self.conn.execute(
                """
                DELETE FROM expense_tags WHERE expense_id IN (
                    SELECT id FROM expenses WHERE group_id = ?
                )
                """,
                (group_id,),
            )
            self.conn.execute(
                """
                DELETE FROM splits WHERE expense_id IN (
                    SELECT id FROM expenses WHERE group_id = ?
                )
                """,
                (group_id,),
            )
            self.conn.execute("DELETE FROM expenses WHERE group_id = ?", (group_id,))
            self.conn.execute("DELETE FROM payments WHERE group_id = ?", (group_id,))
            self.conn.execute(
                "DELETE FROM recurring_rules WHERE group_id = ?", (group_id,)
            )
            self.conn.execute("DELETE FROM members WHERE group_id = ?", (group_id,))
            self.conn.execute("DELETE FROM expense_groups WHERE id = ?", (group_id,))

    # ========================================================================
    # Member operations
    # ========================================================================

    def insert_member(self, member: GroupMember) -> GroupMember:
        """Save a new group member."""
        self._insert("members", _to_row(member))
        self._commit()
        return member

    def get_member(self, member_id: str) -> GroupMember | None:
        """Get a member by ID."""
        row = self._fetch_one("SELECT * FROM members WHERE id = ?", (member_id,))
        return GroupMember.model_validate(dict(row)) if row else None

    def require_member(self, member_id: str) -> GroupMember:
        """Get a member by ID or raise EntityNotFoundError."""
        member = self.get_member(member_id)
        if member is None:
            raise EntityNotFoundError("member", member_id)
        return member

    def list_members(self, group_id: str) -> list[GroupMember]:
        """Get the members of a group in the order they joined."""
        rows = self._fetch_all(
            "SELECT * FROM members WHERE group_id = ? ORDER BY created_at ASC, rowid ASC",
            (group_id,),
        )
        return [GroupMember.model_validate(dict(row)) for row in rows]

    def is_member_referenced(self, member_id: str) -> bool:
        """Check whether any split, expense or payment points at the member."""
        row = self._fetch_one(
            """
            SELECT
                EXISTS(SELECT 1 FROM splits WHERE member_id = :m)
                OR EXISTS(SELECT 1 FROM expenses WHERE paid_by_member_id = :m)
                OR EXISTS(
                    SELECT 1 FROM payments
                    WHERE from_member_id = :m OR to_member_id = :m
                )
                OR EXISTS(SELECT 1 FROM recurring_rules WHERE paid_by_member_id = :m)
                AS referenced
            """,
            {"m": member_id},
        )
        return bool(row and row["referenced"])

    def delete_member(self, member_id: str) -> None:
        """Delete a member."""
        self.conn.execute("DELETE FROM members WHERE id = ?", (member_id,))
        self._commit()

    # ========================================================================
    # Expense operations
    # ========================================================================

    def insert_expense(self, expense: Expense) -> Expense:
        """Save a new expense."""
        self._insert("expenses", _to_row(expense))
        self._commit()
        return expense

    def update_expense(self, expense: Expense) -> Expense:
        """Overwrite an existing expense."""
        if self._update("expenses", _to_row(expense)) == 0:
            raise EntityNotFoundError("expense", expense.id)
        self._commit()
        return expense

    def get_expense(self, expense_id: str) -> Expense | None:
        """Get an expense by ID."""
        row = self._fetch_one("SELECT * FROM expenses WHERE id = ?", (expense_id,))
        return Expense.model_validate(dict(row)) if row else None

    def require_expense(self, expense_id: str) -> Expense:
        """Get an expense by ID or raise EntityNotFoundError."""
        expense = self.get_expense(expense_id)
        if expense is None:
            raise EntityNotFoundError("expense", expense_id)
        return expense

    def delete_expense(self, expense_id: str) -> None:
        """Delete an expense, its splits and its tag links."""
        with self.transaction():
            self.conn.execute("DELETE FROM expense_tags WHERE expense_id = ?", (expense_id,))
            self.conn.execute("DELETE FROM splits WHERE expense_id = ?", (expense_id,))
            self.conn.execute("DELETE FROM expenses WHERE id = ?", (expense_id,))

    def list_expenses(
        self,
        group_id: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        personal_only: bool = False,
        recurring_rule_id: str | None = None,
        tag_id: str | None = None,
    ) -> list[Expense]:
        """
        List expenses, newest first (date desc, then creation order desc).

        Args:
            group_id: Only expenses of this group
            start_date: Only expenses on or after this date
            end_date: Only expenses on or before this date
            personal_only: Only expenses without a group
            recurring_rule_id: Only expenses generated from this rule
            tag_id: Only expenses carrying this tag

        Returns:
            Matching expenses
        """
        clauses = []
        params: list[str] = []
        if group_id is not None:
            clauses.append("group_id = ?")
            params.append(group_id)
        if personal_only:
            clauses.append("group_id IS NULL")
        if start_date is not None:
            clauses.append("date >= ?")
            params.append(start_date.isoformat())
        if end_date is not None:
            clauses.append("date <= ?")
            params.append(end_date.isoformat())
        if recurring_rule_id is not None:
            clauses.append("recurring_rule_id = ?")
            params.append(recurring_rule_id)
        if tag_id is not None:
            clauses.append("id IN (SELECT expense_id FROM expense_tags WHERE tag_id = ?)")
            params.append(tag_id)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetch_all(
            f"SELECT * FROM expenses {where} "
            "ORDER BY date DESC, created_at DESC, rowid DESC",
            tuple(params),
        )
        return [Expense.model_validate(dict(row)) for row in rows]

    # ========================================================================
    # Split operations
    # ========================================================================

    def list_splits(self, expense_id: str) -> list[ExpenseSplit]:
        """Get the splits of an expense in insertion order."""
        rows = self._fetch_all(
            "SELECT * FROM splits WHERE expense_id = ? ORDER BY rowid ASC",
            (expense_id,),
        )
        return [ExpenseSplit.model_validate(dict(row)) for row in rows]

    def list_group_splits(self, group_id: str) -> list[ExpenseSplit]:
        """Get all splits of all expenses in a group."""
        rows = self._fetch_all(
            """
            SELECT s.* FROM splits s
            JOIN expenses e ON e.id = s.expense_id
            WHERE e.group_id = ?
            ORDER BY s.rowid ASC
            """,
            (group_id,),
        )
        return [ExpenseSplit.model_validate(dict(row)) for row in rows]

    def replace_splits(
        self, expense_id: str, splits: list[ExpenseSplit]
    ) -> list[ExpenseSplit]:
        """Replace every split of an expense with the given ones."""
        with self.transaction():
            self.conn.execute("DELETE FROM splits WHERE expense_id = ?", (expense_id,))
            for split in splits:
                if split.expense_id != expense_id:
                    raise ValueError(
                        f"Split {split.id} belongs to expense {split.expense_id}"
                    )
                self._insert("splits", _to_row(split))
        return splits

    # ========================================================================
    # Payment operations
    # ========================================================================

    def insert_payment(self, payment: Payment) -> Payment:
        """Save a new payment."""
        self._insert("payments", _to_row(payment))
        self._commit()
        return payment

    def get_payment(self, payment_id: str) -> Payment | None:
        """Get a payment by ID."""
        row = self._fetch_one("SELECT * FROM payments WHERE id = ?", (payment_id,))
        return Payment.model_validate(dict(row)) if row else None

    def require_payment(self, payment_id: str) -> Payment:
        """Get a payment by ID or raise EntityNotFoundError."""
        payment = self.get_payment(payment_id)
        if payment is None:
            raise EntityNotFoundError("payment", payment_id)
        return payment

    def list_payments(self, group_id: str) -> list[Payment]:
        """Get the payments of a group, newest first."""
        rows = self._fetch_all(
            """
            SELECT * FROM payments WHERE group_id = ?
            ORDER BY date DESC, created_at DESC, rowid DESC
            """,
            (group_id,),
        )
        return [Payment.model_validate(dict(row)) for row in rows]

    def delete_payment(self, payment_id: str) -> None:
        """Delete a payment."""
        self.conn.execute("DELETE FROM payments WHERE id = ?", (payment_id,))
        self._commit()

    # ========================================================================
    # Recurring rule operations
    # ========================================================================

    def insert_recurring_rule(self, rule: RecurringRule) -> RecurringRule:
        """Save a new recurring rule."""
        self._insert("recurring_rules", _to_row(rule))
        self._commit()
        return rule

    def update_recurring_rule(self, rule: RecurringRule) -> RecurringRule:
        """Overwrite an existing recurring rule."""
        if self._update("recurring_rules", _to_row(rule)) == 0:
            raise EntityNotFoundError("recurring rule", rule.id)
        self._commit()
        return rule

    def get_recurring_rule(self, rule_id: str) -> RecurringRule | None:
        """Get a recurring rule by ID."""
        row = self._fetch_one("SELECT * FROM recurring_rules WHERE id = ?", (rule_id,))
        return RecurringRule.model_validate(dict(row)) if row else None

    def require_recurring_rule(self, rule_id: str) -> RecurringRule:
        """Get a recurring rule by ID or raise EntityNotFoundError."""
        rule = self.get_recurring_rule(rule_id)
        if rule is None:
            raise EntityNotFoundError("recurring rule", rule_id)
        return rule

    def list_recurring_rules(self) -> list[RecurringRule]:
        """Get all recurring rules in creation order."""
        rows = self._fetch_all(
            "SELECT * FROM recurring_rules ORDER BY created_at ASC, rowid ASC"
        )
        return [RecurringRule.model_validate(dict(row)) for row in rows]

    def delete_recurring_rule(self, rule_id: str) -> None:
        """Delete a recurring rule (generated expenses are kept)."""
        self.conn.execute("DELETE FROM recurring_rules WHERE id = ?", (rule_id,))
        self._commit()

    def advance_last_generated(
        self, rule_id: str, expected: date | None, new: date
    ) -> bool:
        """
        Compare-and-set a rule's last generated date.

        Args:
            rule_id: The recurring rule ID
            expected: The value the caller last read (None if never generated)
            new: The occurrence date just materialized

        Returns:
            True if the rule was advanced, False if someone else moved it first
        """
        now = _format_timestamp(utcnow())
        if expected is None:
            cursor = self.conn.execute(
                """
                UPDATE recurring_rules SET last_generated = ?, updated_at = ?
                WHERE id = ? AND last_generated IS NULL
                """,
                (new.isoformat(), now, rule_id),
            )
        else:
            cursor = self.conn.execute(
                """
                UPDATE recurring_rules SET last_generated = ?, updated_at = ?
                WHERE id = ? AND last_generated = ?
                """,
                (new.isoformat(), now, rule_id, expected.isoformat()),
            )
        self._commit()
        return cursor.rowcount == 1

    # ========================================================================
    # Tag operations
    # ========================================================================

    def insert_tag(self, tag: Tag) -> Tag:
        """Save a new tag."""
        self._insert("tags", _to_row(tag))
        self._commit()
        return tag

    def update_tag(self, tag: Tag) -> Tag:
        """Overwrite an existing tag."""
        if self._update("tags", _to_row(tag)) == 0:
            raise EntityNotFoundError("tag", tag.id)
        self._commit()
        return tag

    def get_tag(self, tag_id: str) -> Tag | None:
        """Get a tag by ID."""
        row = self._fetch_one("SELECT * FROM tags WHERE id = ?", (tag_id,))
        return Tag.model_validate(dict(row)) if row else None

    def get_tag_by_name(self, name: str) -> Tag | None:
        """Get a tag by its (unique) name."""
        row = self._fetch_one("SELECT * FROM tags WHERE name = ?", (name,))
        return Tag.model_validate(dict(row)) if row else None

    def require_tag(self, tag_id: str) -> Tag:
        """Get a tag by ID or raise EntityNotFoundError."""
        tag = self.get_tag(tag_id)
        if tag is None:
            raise EntityNotFoundError("tag", tag_id)
        return tag

    def list_tags(self) -> list[Tag]:
        """Get all tags sorted by name."""
        rows = self._fetch_all("SELECT * FROM tags ORDER BY name ASC")
        return [Tag.model_validate(dict(row)) for row in rows]

    def delete_tag(self, tag_id: str) -> None:
        """Delete a tag and detach it from every expense."""
        with self.transaction():
            self.conn.execute("DELETE FROM expense_tags WHERE tag_id = ?", (tag_id,))
            self.conn.execute("DELETE FROM tags WHERE id = ?", (tag_id,))

    def add_expense_tag(self, expense_id: str, tag_id: str) -> bool:
        """Attach a tag to an expense; returns False if it was already attached."""
        cursor = self.conn.execute(
            "INSERT OR IGNORE INTO expense_tags (expense_id, tag_id) VALUES (?, ?)",
            (expense_id, tag_id),
        )
        self._commit()
        return cursor.rowcount == 1

    def remove_expense_tag(self, expense_id: str, tag_id: str) -> None:
        """Detach a tag from an expense."""
        self.conn.execute(
            "DELETE FROM expense_tags WHERE expense_id = ? AND tag_id = ?",
            (expense_id, tag_id),
        )
        self._commit()

    def set_expense_tags(self, expense_id: str, tag_ids: list[str]) -> None:
        """Replace every tag of an expense with the given ones."""
        with self.transaction():
            self.conn.execute("DELETE FROM expense_tags WHERE expense_id = ?", (expense_id,))
            for tag_id in dict.fromkeys(tag_ids):
                self.conn.execute(
                    "INSERT INTO expense_tags (expense_id, tag_id) VALUES (?, ?)",
                    (expense_id, tag_id),
                )

    def list_expense_tags(self, expense_id: str) -> list[Tag]:
        """Get the tags of an expense sorted by name."""
        rows = self._fetch_all(
            """
            SELECT t.* FROM tags t
            JOIN expense_tags et ON et.tag_id = t.id
            WHERE et.expense_id = ?
            ORDER BY t.name ASC
            """,
            (expense_id,),
        )
        return [Tag.model_validate(dict(row)) for row in rows]

    def tags_by_expense(self) -> dict[str, list[Tag]]:
        """Map every tagged expense ID to its tags (sorted by name)."""
        rows = self._fetch_all(
            """
            SELECT et.expense_id, t.* FROM expense_tags et
            JOIN tags t ON t.id = et.tag_id
            ORDER BY t.name ASC
            """
        )
        result: dict[str, list[Tag]] = {}
        for row in rows:
            values = dict(row)
            expense_id = values.pop("expense_id")
            result.setdefault(expense_id, []).append(Tag.model_validate(values))
        return result

    # ========================================================================
    # Undo entry operations
    # ========================================================================

    def insert_undo_entry(self, entry: UndoEntry) -> UndoEntry:
        """Save an undo entry."""
        self._insert("undo_entries", _to_row(entry))
        self._commit()
        return entry

    def list_undo_entries(self, limit: int | None = None) -> list[UndoEntry]:
        """Get undo entries, newest first."""
        query = "SELECT * FROM undo_entries ORDER BY timestamp DESC, rowid DESC"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        return [UndoEntry.model_validate(dict(row)) for row in self._fetch_all(query, params)]

    def latest_undo_entry(self) -> UndoEntry | None:
        """Get the most recent undo entry."""
        entries = self.list_undo_entries(limit=1)
        return entries[0] if entries else None

    def delete_undo_entries_before(self, cutoff: datetime) -> int:
        """Delete undo entries older than the cutoff; returns how many were removed."""
        cursor = self.conn.execute(
            "DELETE FROM undo_entries WHERE timestamp < ?", (_format_timestamp(cutoff),)
        )
        self._commit()
        return cursor.rowcount

    def trim_undo_entries(self, keep: int) -> int:
        """Keep only the newest `keep` undo entries; returns how many were removed."""
        cursor = self.conn.execute(
            """
            DELETE FROM undo_entries WHERE id NOT IN (
                SELECT id FROM undo_entries
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ?
            )
            """,
            (keep,),
        )
        self._commit()
        return cursor.rowcount

    def clear_undo_entries(self) -> None:
        """Delete every undo entry."""
        self.conn.execute("DELETE FROM undo_entries")
        self._commit()
