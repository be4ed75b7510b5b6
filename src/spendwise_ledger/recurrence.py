"""Recurring expense generation.

Called on process start and on resume. Every rule remembers the date of the
last occurrence it produced (`last_generated`); each run materializes the
occurrences that fell due since then, one at a time, advancing
`last_generated` in the same transaction as the generated expense. A crash
mid-run therefore leaves each rule exactly where its last committed expense
put it, and running again immediately generates nothing new.
"""

import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta

from dateutil.relativedelta import relativedelta

from .db import Database
from .exceptions import RecurrenceExhausted
from .models import EqualSplit, Expense, RecurringRule, utcnow
from .splitter import SplitEngine

logger = logging.getLogger(__name__)


def occurrence(rule: RecurringRule, index: int) -> date:
    """
    The index-th occurrence of a rule, counted from its start date.

    Occurrences are anchored on the start date rather than chained from the
    previous one, so a rule starting on Jan 31 yields Feb 29, Mar 31, Apr 30...
    instead of drifting to the 29th.
    """
    steps = rule.interval_value * index
    if rule.interval == "weekly":
        return rule.start_date + timedelta(weeks=steps)
    if rule.interval == "monthly":
        return rule.start_date + relativedelta(months=steps)
    # daily, and custom which counts in days
    return rule.start_date + timedelta(days=steps)


def _first_index_after(rule: RecurringRule, after: date) -> int:
    if rule.interval == "monthly":
        months = (after.year - rule.start_date.year) * 12 + (
            after.month - rule.start_date.month
        )
        index = max(months // rule.interval_value, 1)
    else:
        step_days = rule.interval_value * (7 if rule.interval == "weekly" else 1)
        index = max((after - rule.start_date).days // step_days, 1)

    while occurrence(rule, index) <= after:
        index += 1
    return index


def next_occurrence(rule: RecurringRule, after: date) -> date:
    """
    First occurrence of a rule strictly after a date.

    Raises:
        RecurrenceExhausted: If that occurrence falls after the rule's end date
    """
    upcoming = occurrence(rule, _first_index_after(rule, after))
    if rule.end_date is not None and upcoming > rule.end_date:
        raise RecurrenceExhausted(rule.id)
    return upcoming


class RecurrencePlanner:
    """Materializes missed occurrences of recurring rules exactly once."""

    def __init__(
        self,
        database: Database,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the planner.

        Args:
            database: The ledger store
            clock: Returns the current time (injectable for tests)
        """
        self.db = database
        self.clock = clock
        self.split_engine = SplitEngine(database)
        self._in_flight: set[str] = set()

    def run(self, now: datetime | date | None = None) -> list[Expense]:
        """
        Generate every occurrence due on or before `now` for all active rules.

        Rules whose end date is already past are skipped. A failure in one
        rule is logged and does not stop the others.

        Returns:
            Expenses created by this run, in generation order
        """
        today = self._today(now)
        generated: list[Expense] = []

        for rule in self.db.list_recurring_rules():
            if not rule.is_active(today):
                logger.debug(f"Rule {rule.id} ended on {rule.end_date}; skipping")
                continue
            try:
                generated.extend(self.generate_for_rule(rule.id, today))
            except Exception:
                logger.exception(f"Failed to generate occurrences for rule {rule.id}")

        logger.info(f"Generated {len(generated)} recurring expenses up to {today}")
        return generated

    def generate_for_rule(
        self, rule_id: str, now: datetime | date | None = None
    ) -> list[Expense]:
        """
        Generate the due occurrences of one rule.

        Raises:
            EntityNotFoundError: If the rule doesn't exist
        """
        today = self._today(now)
        if rule_id in self._in_flight:
            logger.warning(f"Rule {rule_id} is already being generated; skipping")
            return []

        self._in_flight.add(rule_id)
        try:
            generated: list[Expense] = []
            while True:
                rule = self.db.require_recurring_rule(rule_id)
                if not rule.is_active(today):
                    logger.debug(f"Rule {rule_id} ended on {rule.end_date}; nothing to generate")
                    break
                try:
                    due = next_occurrence(rule, rule.anchor)
                except RecurrenceExhausted:
                    logger.debug(f"Rule {rule_id} has no occurrences left")
                    break
                if due > today:
                    break

                expense = self._materialize(rule, due)
                if expense is None:
                    break
                generated.append(expense)
            return generated
        finally:
            self._in_flight.discard(rule_id)

    def _materialize(self, rule: RecurringRule, due: date) -> Expense | None:
        """Create the expense for one occurrence and advance the rule atomically."""
        expense = Expense(
            amount_minor=rule.amount_minor,
            currency_code=rule.currency_code,
            category=rule.category,
            description=rule.description,
            date=due,
            group_id=rule.group_id,
            paid_by_member_id=rule.paid_by_member_id,
            recurring_rule_id=rule.id,
        )

        with self.db.transaction():
            if not self.db.advance_last_generated(rule.id, rule.last_generated, due):
                logger.info(f"Rule {rule.id} was advanced by another run; stopping")
                return None

            self.db.insert_expense(expense)
            if rule.group_id:
                member_ids = [m.id for m in self.db.list_members(rule.group_id)]
                if member_ids:
                    splits = self.split_engine.build_splits(
                        expense, EqualSplit(member_ids=member_ids)
                    )
                    self.db.replace_splits(expense.id, splits)

        logger.info(f"Generated {expense.amount} for rule {rule.id} on {due}")
        return expense

    def _today(self, now: datetime | date | None) -> date:
        if now is None:
            now = self.clock()
        if isinstance(now, datetime):
            return now.date()
        return now
