"""Pydantic domain models for the SpendWise ledger."""

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Annotated, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from .money import Money, validate_currency_code

RecurringInterval = Literal["daily", "weekly", "monthly", "custom"]
ActionKind = Literal["add", "edit", "delete"]
EntityKind = Literal["expense", "payment", "recurring"]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    """Generate a record identifier."""
    return str(uuid4())


class _CurrencyModel(BaseModel):
    """Mixin validating `currency_code` fields."""

    @field_validator("currency_code", check_fields=False)
    @classmethod
    def _check_currency(cls, value: str) -> str:
        return validate_currency_code(value.upper())


# ============================================================================
# Groups
# ============================================================================


class ExpenseGroup(_CurrencyModel):
    """A group of people sharing expenses in one currency."""

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    currency_code: str = "USD"
    description: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class GroupMember(BaseModel):
    """A participant of an expense group."""

    id: str = Field(default_factory=new_id)
    group_id: str
    name: str = Field(min_length=1)
    user_id: str | None = None  # external account reference
    email: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# Expenses
# ============================================================================


class Expense(_CurrencyModel):
    """A personal or group expense.

    The free-text note is only ever held as Secret Box ciphertext; use
    `LedgerService.read_note` to reveal it.
    """

    id: str = Field(default_factory=new_id)
    amount_minor: int = Field(gt=0)
    currency_code: str
    category: str
    description: str | None = None
    note_ciphertext: str | None = None
    date: date
    group_id: str | None = None
    paid_by_member_id: str | None = None
    recurring_rule_id: str | None = None  # set when generated from a rule
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _group_expense_has_payer(self) -> "Expense":
        if self.group_id and not self.paid_by_member_id:
            raise ValueError("Group expenses must have a paying member")
        return self

    @property
    def amount(self) -> Money:
        return Money.of_minor(self.amount_minor, self.currency_code)


class ExpenseSplit(_CurrencyModel):
    """A member's owed share of one expense.

    `amount_minor` is authoritative; `percentage` is informational.
    """

    id: str = Field(default_factory=new_id)
    expense_id: str
    member_id: str
    amount_minor: int = Field(ge=0)
    currency_code: str
    percentage: Decimal | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def amount(self) -> Money:
        return Money.of_minor(self.amount_minor, self.currency_code)


class Payment(_CurrencyModel):
    """An out-of-band settlement between two group members."""

    id: str = Field(default_factory=new_id)
    group_id: str
    from_member_id: str  # payer
    to_member_id: str  # payee
    amount_minor: int = Field(gt=0)
    currency_code: str
    date: date
    note: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _distinct_parties(self) -> "Payment":
        if self.from_member_id == self.to_member_id:
            raise ValueError("A payment needs two different members")
        return self

    @property
    def amount(self) -> Money:
        return Money.of_minor(self.amount_minor, self.currency_code)


# ============================================================================
# Recurring rules
# ============================================================================


class RecurringRule(_CurrencyModel):
    """A template that produces an expense every `interval_value` intervals.

    `last_generated` is None until the first occurrence is materialized, in
    which case the start date acts as the last generated date.
    """

    id: str = Field(default_factory=new_id)
    amount_minor: int = Field(gt=0)
    currency_code: str
    category: str
    description: str | None = None
    interval: RecurringInterval
    interval_value: int = Field(default=1, ge=1)
    start_date: date
    end_date: date | None = None
    last_generated: date | None = None
    group_id: str | None = None
    paid_by_member_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_dates_and_payer(self) -> "RecurringRule":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if self.group_id and not self.paid_by_member_id:
            raise ValueError("Group recurring rules must have a paying member")
        return self

    @property
    def amount(self) -> Money:
        return Money.of_minor(self.amount_minor, self.currency_code)

    @property
    def anchor(self) -> date:
        """Date after which the next occurrence is due."""
        return self.last_generated or self.start_date

    def is_active(self, today: date) -> bool:
        """Whether the rule can still produce occurrences as of `today`."""
        return self.end_date is None or self.end_date >= today


# ============================================================================
# Tags
# ============================================================================

# Colors handed out to tags created without one, in order
TAG_COLORS = (
    "#EF4444",
    "#F97316",
    "#EAB308",
    "#22C55E",
    "#14B8A6",
    "#3B82F6",
    "#8B5CF6",
    "#EC4899",
)


class Tag(BaseModel):
    """A free-form label attached to any number of expenses."""

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    color: str = Field(pattern=r"^#[0-9A-Fa-f]{6}$")
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Tag name must not be blank")
        return value


# ============================================================================
# Undo
# ============================================================================


class UndoEntry(BaseModel):
    """A persisted undo command.

    `payload` is the JSON of one command from `undo.UndoCommand`.
    """

    id: str = Field(default_factory=new_id)
    action_kind: ActionKind
    entity_kind: EntityKind
    payload: str
    timestamp: datetime = Field(default_factory=utcnow)


# ============================================================================
# Split policies
# ============================================================================


class EqualSplit(BaseModel):
    """Split the amount equally; remainder cents go to the first members."""

    kind: Literal["equal"] = "equal"
    member_ids: list[str]


class PercentageSplit(BaseModel):
    """Split by percentage (member id -> percent, in input order)."""

    kind: Literal["percentage"] = "percentage"
    percentages: dict[str, Decimal]


class ExactSplit(BaseModel):
    """Split by explicit amounts in minor units (member id -> amount)."""

    kind: Literal["exact"] = "exact"
    amounts: dict[str, int]


SplitPolicy = Annotated[
    EqualSplit | PercentageSplit | ExactSplit, Field(discriminator="kind")
]
