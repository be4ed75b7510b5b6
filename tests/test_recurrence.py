"""Tests for recurring expense generation."""

from datetime import UTC, date, datetime, timedelta
from unittest.mock import patch

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from spendwise_ledger.db import Database
from spendwise_ledger.exceptions import RecurrenceExhausted
from spendwise_ledger.models import ExpenseGroup, GroupMember, RecurringRule
from spendwise_ledger.recurrence import RecurrencePlanner, next_occurrence, occurrence


def make_rule(**overrides) -> RecurringRule:
    fields = {
        "amount_minor": 1500,
        "currency_code": "USD",
        "category": "Subscriptions",
        "interval": "monthly",
        "start_date": date(2024, 1, 1),
    }
    fields.update(overrides)
    return RecurringRule(**fields)


class TestOccurrences:
    """Occurrence dates are anchored on the start date."""

    def test_monthly(self):
        rule = make_rule()
        assert [occurrence(rule, i) for i in range(4)] == [
            date(2024, 1, 1),
            date(2024, 2, 1),
            date(2024, 3, 1),
            date(2024, 4, 1),
        ]

    def test_month_end_does_not_drift(self):
        """Jan 31 -> Feb 29 -> Mar 31 -> Apr 30 (clamped per month, never drifting)."""
        rule = make_rule(start_date=date(2024, 1, 31))
        assert [occurrence(rule, i) for i in range(1, 4)] == [
            date(2024, 2, 29),
            date(2024, 3, 31),
            date(2024, 4, 30),
        ]

    def test_weekly_with_interval_value(self):
        rule = make_rule(interval="weekly", interval_value=2)
        assert occurrence(rule, 1) == date(2024, 1, 15)

    def test_custom_counts_days(self):
        rule = make_rule(interval="custom", interval_value=10)
        assert occurrence(rule, 3) == date(2024, 1, 31)

    def test_next_occurrence_is_strictly_after(self):
        rule = make_rule(interval="daily")
        assert next_occurrence(rule, date(2024, 1, 1)) == date(2024, 1, 2)
        assert next_occurrence(rule, date(2024, 3, 10)) == date(2024, 3, 11)

    def test_next_occurrence_past_end_date(self):
        rule = make_rule(end_date=date(2024, 3, 15))
        assert next_occurrence(rule, date(2024, 2, 1)) == date(2024, 3, 1)
        with pytest.raises(RecurrenceExhausted):
            next_occurrence(rule, date(2024, 3, 1))


class TestRecurrencePlanner:
    """Materializing missed occurrences exactly once."""

    NOW = datetime(2024, 4, 15, 9, 30, tzinfo=UTC)

    @pytest.fixture
    def planner(self, db):
        return RecurrencePlanner(db, clock=lambda: self.NOW)

    def test_worked_example(self, db, planner):
        """Monthly from 2024-01-01, last generated Jan 1, now Apr 15 -> Feb 1, Mar 1, Apr 1."""
        rule = db.insert_recurring_rule(make_rule(last_generated=date(2024, 1, 1)))

        generated = planner.run()

        assert [e.date for e in generated] == [
            date(2024, 2, 1),
            date(2024, 3, 1),
            date(2024, 4, 1),
        ]
        assert all(e.recurring_rule_id == rule.id for e in generated)
        assert db.require_recurring_rule(rule.id).last_generated == date(2024, 4, 1)

    def test_start_date_is_not_generated(self, db, planner):
        """A fresh rule treats its start date as already generated."""
        db.insert_recurring_rule(make_rule(start_date=date(2024, 3, 1)))
        generated = planner.run()
        assert [e.date for e in generated] == [date(2024, 4, 1)]

    def test_second_run_is_idempotent(self, db, planner):
        db.insert_recurring_rule(make_rule(last_generated=date(2024, 1, 1)))
        planner.run()

        assert planner.run() == []
        assert len(db.list_expenses()) == 3

    def test_only_new_occurrences_after_time_passes(self, db):
        """Running again after T days yields exactly the occurrences in between."""
        clock_now = [datetime(2024, 1, 10, tzinfo=UTC)]
        planner = RecurrencePlanner(db, clock=lambda: clock_now[0])
        db.insert_recurring_rule(make_rule(interval="daily"))

        assert len(planner.run()) == 9  # Jan 2 .. Jan 10

        clock_now[0] = datetime(2024, 1, 17, tzinfo=UTC)
        generated = planner.run()

        assert [e.date for e in generated] == [date(2024, 1, d) for d in range(11, 18)]

    def test_end_date_stops_generation(self, db, planner):
        """A rule whose end date is already past is no longer active."""
        rule = db.insert_recurring_rule(
            make_rule(last_generated=date(2024, 1, 1), end_date=date(2024, 3, 15))
        )

        assert planner.run() == []
        assert planner.generate_for_rule(rule.id) == []
        assert db.list_expenses() == []
        assert db.require_recurring_rule(rule.id).last_generated == date(2024, 1, 1)

    def test_rule_ending_after_now_is_active(self, db, planner):
        rule = db.insert_recurring_rule(make_rule(end_date=date(2024, 4, 30)))

        generated = planner.run()

        assert [e.date for e in generated] == [
            date(2024, 2, 1),
            date(2024, 3, 1),
            date(2024, 4, 1),
        ]
        assert db.require_recurring_rule(rule.id).last_generated == date(2024, 4, 1)

    def test_rule_ending_today_is_active(self, db, planner):
        """The end date itself is inclusive."""
        db.insert_recurring_rule(
            make_rule(interval="weekly", start_date=date(2024, 4, 1), end_date=date(2024, 4, 15))
        )
        assert [e.date for e in planner.run()] == [date(2024, 4, 8), date(2024, 4, 15)]

    def test_future_rule_generates_nothing(self, db, planner):
        db.insert_recurring_rule(make_rule(start_date=date(2024, 5, 1)))
        assert planner.run() == []

    def test_crash_mid_run_resumes_without_duplicates(self, db, planner):
        """A failure after some occurrences leaves earlier ones committed exactly once."""
        rule = db.insert_recurring_rule(make_rule(last_generated=date(2024, 1, 1)))
        real_insert = db.insert_expense
        calls = []

        def flaky_insert(expense):
            calls.append(expense.date)
            if len(calls) == 2:
                raise RuntimeError("disk full")
            return real_insert(expense)

        with patch.object(db, "insert_expense", side_effect=flaky_insert):
            planner.run()

        # The failed occurrence rolled back together with its last_generated update
        assert db.require_recurring_rule(rule.id).last_generated == date(2024, 2, 1)
        assert [e.date for e in db.list_expenses()] == [date(2024, 2, 1)]

        generated = planner.run()
        assert [e.date for e in generated] == [date(2024, 3, 1), date(2024, 4, 1)]
        dates = sorted(e.date for e in db.list_expenses(recurring_rule_id=rule.id))
        assert dates == [date(2024, 2, 1), date(2024, 3, 1), date(2024, 4, 1)]

    def test_concurrent_advance_stops_generation(self, db, planner):
        """If another run moved the rule first, the stale run generates nothing."""
        rule = db.insert_recurring_rule(make_rule(last_generated=date(2024, 1, 1)))
        assert db.advance_last_generated(rule.id, date(2024, 1, 1), date(2024, 4, 1))

        assert planner._materialize(rule, date(2024, 2, 1)) is None
        assert db.list_expenses() == []

    def test_in_flight_rule_is_skipped(self, db, planner):
        rule = db.insert_recurring_rule(make_rule(last_generated=date(2024, 1, 1)))
        planner._in_flight.add(rule.id)
        assert planner.generate_for_rule(rule.id) == []

    def test_failing_rule_does_not_block_others(self, db, planner):
        bad = db.insert_recurring_rule(make_rule(last_generated=date(2024, 3, 1)))
        good = db.insert_recurring_rule(make_rule(last_generated=date(2024, 3, 1)))
        real_insert = db.insert_expense

        def insert(expense):
            if expense.recurring_rule_id == bad.id:
                raise RuntimeError("boom")
            return real_insert(expense)

        with patch.object(db, "insert_expense", side_effect=insert):
            generated = planner.run()

        assert [e.recurring_rule_id for e in generated] == [good.id]
        assert db.require_recurring_rule(bad.id).last_generated == date(2024, 3, 1)

    def test_group_rule_is_split_equally(self, db, planner):
        group = db.insert_group(ExpenseGroup(name="Flat"))
        a = db.insert_member(GroupMember(group_id=group.id, name="A"))
        b = db.insert_member(GroupMember(group_id=group.id, name="B"))
        db.insert_recurring_rule(
            make_rule(
                amount_minor=1001,
                last_generated=date(2024, 3, 1),
                group_id=group.id,
                paid_by_member_id=a.id,
            )
        )

        (expense,) = planner.run()

        splits = db.list_splits(expense.id)
        assert [(s.member_id, s.amount_minor) for s in splits] == [(a.id, 501), (b.id, 500)]

    def test_accepts_date_as_now(self, tmp_path):
        db = Database(tmp_path / "dates.db")
        try:
            db.insert_recurring_rule(make_rule(last_generated=date(2024, 3, 1)))
            planner = RecurrencePlanner(db)
            assert [e.date for e in planner.run(date(2024, 4, 1))] == [date(2024, 4, 1)]
        finally:
            db.close()


RULE_SHAPES = [
    ("daily", date(2024, 1, 1)),
    ("weekly", date(2024, 1, 1)),
    ("monthly", date(2024, 1, 1)),
    ("monthly", date(2024, 1, 31)),
]


class TestInvocationTimes:
    """The generated sequence does not depend on when the planner runs."""

    @staticmethod
    def _generate(path, interval, start, nows):
        db = Database(path)
        try:
            db.insert_recurring_rule(make_rule(interval=interval, start_date=start))
            planner = RecurrencePlanner(db)
            dates = []
            for now in nows:
                dates.extend(e.date for e in planner.run(now))
            return dates
        finally:
            db.close()

    @settings(max_examples=20, deadline=None)
    @given(
        shape=st.sampled_from(RULE_SHAPES),
        offsets=st.lists(st.integers(0, 150), min_size=1, max_size=6).map(sorted),
    )
    def test_any_invocation_times_match_single_run(self, tmp_path_factory, shape, offsets):
        interval, start = shape
        nows = [start + timedelta(days=offset) for offset in offsets]
        last = nows[-1]
        directory = tmp_path_factory.mktemp("recurrence")

        stepped = self._generate(directory / "stepped.db", interval, start, nows)
        single = self._generate(directory / "single.db", interval, start, [last])

        rule = make_rule(interval=interval, start_date=start)
        expected = []
        index = 1
        while occurrence(rule, index) <= last:
            expected.append(occurrence(rule, index))
            index += 1

        assert stepped == single == expected
