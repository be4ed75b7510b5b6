"""
Money Primitive Type

Immutable currency value that stores an integer number of minor units
(cents, pence, yen) next to its ISO-4217 currency code. Every balance,
split and payment in the ledger is computed with this type, so repeated
additions never accumulate binary floating-point drift.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from fractions import Fraction

from .exceptions import CurrencyMismatchError

# Currencies whose minor unit is the major unit itself.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG", "RWF", "UGX",
     "VND", "VUV", "XAF", "XOF", "XPF"}
)

DEFAULT_MINOR_UNIT_EXPONENT = 2


def minor_unit_exponent(currency: str) -> int:
    """Number of decimal places of the currency's minor unit."""
    if currency in ZERO_DECIMAL_CURRENCIES:
        return 0
    return DEFAULT_MINOR_UNIT_EXPONENT


def validate_currency_code(currency: str) -> str:
    """Return the code if it looks like an ISO-4217 code, else raise ValueError."""
    if len(currency) != 3 or not currency.isalpha() or not currency.isupper():
        raise ValueError(f"Invalid currency code: {currency!r}")
    return currency


def round_half_away_from_zero(value: Fraction | Decimal | int) -> int:
    """
    Round an exact rational value to the nearest integer.

    Ties (x.5) round away from zero, so 2.5 -> 3 and -2.5 -> -3.

    Args:
        value: Exact value to round (floats are rejected)

    Returns:
        Rounded integer
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError("Refusing to round a binary float; use Decimal or Fraction")
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal):
        # Decimal's ROUND_HALF_UP rounds ties away from zero
        return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    numerator, denominator = value.numerator, value.denominator
    quotient, remainder = divmod(abs(numerator), denominator)
    if 2 * remainder >= denominator:
        quotient += 1
    return quotient if numerator >= 0 else -quotient


def _as_fraction(factor: Fraction | Decimal | int | str) -> Fraction:
    if isinstance(factor, bool) or isinstance(factor, float):
        raise TypeError("Scale factors must be exact (int, Decimal, Fraction or str)")
    return Fraction(factor)


@dataclass(frozen=True)
class Money:
    """
    Immutable money value in integer minor units.

    Examples:
        >>> Money.of("90.00", "USD").minor_units
        9000
        >>> str(Money.of_minor(3333, "USD") + Money.of_minor(1, "USD"))
        '33.34 USD'
        >>> Money.of_minor(100, "USD").scale(Fraction(1, 3)).minor_units
        33
    """

    minor_units: int
    currency: str

    def __post_init__(self):
        if isinstance(self.minor_units, bool) or not isinstance(self.minor_units, int):
            raise TypeError(f"minor_units must be int, got {type(self.minor_units)!r}")
        validate_currency_code(self.currency)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def of_minor(cls, minor_units: int, currency: str) -> "Money":
        """Create Money from minor units (e.g. cents)."""
        return cls(minor_units=minor_units, currency=currency)

    @classmethod
    def of(cls, amount: Decimal | int | str, currency: str) -> "Money":
        """
        Create Money from an amount in major units ("12.34", Decimal("12.34"), 12).

        Extra precision is rounded half-away-from-zero to the minor unit.
        """
        if isinstance(amount, bool) or isinstance(amount, float):
            raise TypeError("Money amounts must be Decimal, int or str, not float")
        try:
            major = Decimal(amount.strip() if isinstance(amount, str) else amount)
        except InvalidOperation as e:
            raise ValueError(f"Invalid money amount: {amount!r}") from e
        if not major.is_finite():
            raise ValueError(f"Invalid money amount: {amount!r}")
        scaled = major.scaleb(minor_unit_exponent(currency))
        return cls(minor_units=round_half_away_from_zero(scaled), currency=currency)

    @classmethod
    def zero(cls, currency: str) -> "Money":
        """Zero in the given currency."""
        return cls(minor_units=0, currency=currency)

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def to_major(self) -> Decimal:
        """Amount in major units as an exact Decimal."""
        return Decimal(self.minor_units).scaleb(-minor_unit_exponent(self.currency))

    def is_zero(self) -> bool:
        return self.minor_units == 0

    def abs(self) -> "Money":
        """Absolute value."""
        return Money(abs(self.minor_units), self.currency)

    def scale(self, factor: Fraction | Decimal | int | str) -> "Money":
        """
        Multiply by an exact rational factor and round to the minor unit.

        Args:
            factor: Ratio such as Fraction(1, 3) or Decimal("0.25")

        Returns:
            New Money rounded half-away-from-zero
        """
        exact = Fraction(self.minor_units) * _as_fraction(factor)
        return Money(round_half_away_from_zero(exact), self.currency)

    # ------------------------------------------------------------------
    # Arithmetic and comparison
    # ------------------------------------------------------------------

    def _check_currency(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Expected Money, got {type(other)!r}")
        if other.currency != self.currency:
            raise CurrencyMismatchError(
                f"Cannot combine {self.currency} with {other.currency}"
            )

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.minor_units + other.minor_units, self.currency)

    def __radd__(self, other):
        # Lets sum() work without an explicit start value
        if other == 0:
            return self
        return NotImplemented

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.minor_units - other.minor_units, self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.minor_units, self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.minor_units < other.minor_units

    def __le__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.minor_units <= other.minor_units

    def __gt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.minor_units > other.minor_units

    def __ge__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.minor_units >= other.minor_units

    def __str__(self) -> str:
        exponent = minor_unit_exponent(self.currency)
        return f"{self.to_major():.{exponent}f} {self.currency}"
