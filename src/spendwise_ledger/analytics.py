"""Spending analytics over lists of expenses.

The functions here are pure: callers choose the expenses (usually through the
filters of `Database.list_expenses`) and the currency to report in. Totals are
Money, so every expense passed in must already be in that currency.
"""

import logging
from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from fractions import Fraction

from dateutil.relativedelta import relativedelta

from .exceptions import CurrencyMismatchError
from .models import Expense, Tag
from .money import Money

logger = logging.getLogger(__name__)

PERCENTAGE_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class CategoryTotal:
    """Spending in one category and its share of the whole."""

    category: str
    total: Money
    count: int
    percentage: Decimal


@dataclass(frozen=True)
class TagTotal:
    """Spending on expenses carrying one tag."""

    tag: Tag
    total: Money
    count: int


@dataclass(frozen=True)
class MonthlyTrend:
    """Spending in one calendar month (`month` is its first day)."""

    month: date
    total: Money
    count: int


def _check_currency(expenses: Sequence[Expense], currency: str) -> None:
    for expense in expenses:
        if expense.currency_code != currency:
            raise CurrencyMismatchError(
                f"Expense {expense.id} is in {expense.currency_code}, report uses {currency}"
            )


def _sum(expenses: Sequence[Expense], currency: str) -> Money:
    return Money.of_minor(sum(e.amount_minor for e in expenses), currency)


def percentage_of(part: Money, whole: Money) -> Decimal:
    """Share of `whole` as a percentage with two decimals (0 when whole is zero)."""
    if whole.is_zero():
        return Decimal("0.00")
    exact = Fraction(part.minor_units * 100, whole.minor_units)
    value = Decimal(exact.numerator) / Decimal(exact.denominator)
    return value.quantize(PERCENTAGE_PLACES, rounding=ROUND_HALF_UP)


def total_spent(expenses: Sequence[Expense], currency: str) -> Money:
    """Sum of all expenses."""
    _check_currency(expenses, currency)
    return _sum(expenses, currency)


def category_breakdown(expenses: Sequence[Expense], currency: str) -> list[CategoryTotal]:
    """
    Total, count and percentage of spending per category.

    Categories are sorted by total (largest first), then by name. Percentages
    are rounded independently, so they may not add up to exactly 100.

    Example:
        Food 75.00 and Rent 25.00 -> Food 75.00%, Rent 25.00%
    """
    _check_currency(expenses, currency)
    by_category: dict[str, list[Expense]] = defaultdict(list)
    for expense in expenses:
        by_category[expense.category].append(expense)

    grand_total = _sum(expenses, currency)
    result = []
    for category, items in by_category.items():
        total = _sum(items, currency)
        result.append(
            CategoryTotal(
                category=category,
                total=total,
                count=len(items),
                percentage=percentage_of(total, grand_total),
            )
        )
    result.sort(key=lambda c: (-c.total.minor_units, c.category))
    return result


def tag_breakdown(
    expenses: Sequence[Expense],
    tags_by_expense: Mapping[str, Sequence[Tag]],
    currency: str,
) -> list[TagTotal]:
    """
    Total and count of spending per tag.

    An expense with several tags counts toward each of them; untagged
    expenses are left out. Sorted by total (largest first), then tag name.
    """
    _check_currency(expenses, currency)
    tags: dict[str, Tag] = {}
    minor: dict[str, int] = defaultdict(int)
    counts: dict[str, int] = defaultdict(int)
    for expense in expenses:
        for tag in tags_by_expense.get(expense.id, ()):
            tags[tag.id] = tag
            minor[tag.id] += expense.amount_minor
            counts[tag.id] += 1

    result = [
        TagTotal(tag=tag, total=Money.of_minor(minor[tag_id], currency), count=counts[tag_id])
        for tag_id, tag in tags.items()
    ]
    result.sort(key=lambda t: (-t.total.minor_units, t.tag.name))
    return result


def monthly_trends(
    expenses: Sequence[Expense], currency: str, today: date, months: int = 6
) -> list[MonthlyTrend]:
    """
    Spending per calendar month for the `months` months ending with today's.

    Months without expenses are included with a zero total. Oldest first.
    """
    if months < 1:
        raise ValueError("months must be at least 1")
    _check_currency(expenses, currency)

    current = today.replace(day=1)
    starts = [current - relativedelta(months=offset) for offset in range(months - 1, -1, -1)]
    minor: dict[tuple[int, int], int] = defaultdict(int)
    counts: dict[tuple[int, int], int] = defaultdict(int)
    for expense in expenses:
        key = (expense.date.year, expense.date.month)
        minor[key] += expense.amount_minor
        counts[key] += 1

    return [
        MonthlyTrend(
            month=start,
            total=Money.of_minor(minor[(start.year, start.month)], currency),
            count=counts[(start.year, start.month)],
        )
        for start in starts
    ]


def highest_expenses(
    expenses: Sequence[Expense], currency: str, limit: int = 5
) -> list[Expense]:
    """The `limit` largest expenses; equal amounts keep their input order."""
    _check_currency(expenses, currency)
    return sorted(expenses, key=lambda e: -e.amount_minor)[:limit]


def spending_by_date_range(
    expenses: Sequence[Expense], currency: str, start: date, end: date
) -> Money:
    """Total spent between two dates, both inclusive."""
    if end < start:
        raise ValueError("end must not be before start")
    _check_currency(expenses, currency)
    return _sum([e for e in expenses if start <= e.date <= end], currency)


def average_daily_spending(expenses: Sequence[Expense], currency: str) -> Money:
    """
    Total spent divided by the days between the first and last expense.

    The span is at least one day, so a single day of spending averages to
    its own total. Rounded half away from zero to the minor unit.
    """
    _check_currency(expenses, currency)
    if not expenses:
        return Money.zero(currency)

    dates = [e.date for e in expenses]
    days = max(1, (max(dates) - min(dates)).days)
    average = _sum(expenses, currency).scale(Fraction(1, days))
    logger.debug(f"Average over {days} days: {average}")
    return average
