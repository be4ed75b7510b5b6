"""SpendWise ledger - shared expenses, balances, settle-up and recurring bills."""

__version__ = "0.1.0"

from .analytics import CategoryTotal, MonthlyTrend, TagTotal
from .balances import BalanceCalculator
from .config import Settings, load_settings
from .db import Database
from .models import (
    EqualSplit,
    ExactSplit,
    Expense,
    ExpenseGroup,
    ExpenseSplit,
    GroupMember,
    Payment,
    PercentageSplit,
    RecurringRule,
    Tag,
)
from .money import Money
from .recurrence import RecurrencePlanner
from .secret_box import KeySession, SecretBox
from .service import LedgerService
from .settlement import SettlementSuggestion, suggest_settlements
from .splitter import SplitEngine
from .undo import UndoLog

__all__ = [
    "BalanceCalculator",
    "Settings",
    "load_settings",
    "Database",
    "EqualSplit",
    "ExactSplit",
    "Expense",
    "ExpenseGroup",
    "ExpenseSplit",
    "GroupMember",
    "Payment",
    "PercentageSplit",
    "RecurringRule",
    "Tag",
    "CategoryTotal",
    "MonthlyTrend",
    "TagTotal",
    "Money",
    "RecurrencePlanner",
    "KeySession",
    "SecretBox",
    "LedgerService",
    "SettlementSuggestion",
    "suggest_settlements",
    "SplitEngine",
    "UndoLog",
]
