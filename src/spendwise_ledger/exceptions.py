"""Custom exceptions for the SpendWise ledger."""


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    pass


class ConfigurationError(LedgerError, ValueError):
    """Raised when configuration is invalid or missing."""

    pass


class InvalidSplitError(LedgerError):
    """Raised when splits don't add up to the expense total (or percentages to 100)."""

    pass


class InvalidExpenseError(LedgerError, ValueError):
    """Raised when an expense or rule has the wrong shape for where it is recorded.

    A personal expense cannot name a payer; a group expense must.
    """

    pass


class DuplicateTagError(LedgerError, ValueError):
    """Raised when a tag name is already taken."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"A tag named '{name}' already exists")


class EntityNotFoundError(LedgerError):
    """Raised when an operation references a missing record."""

    def __init__(self, entity_kind: str, entity_id: str, message: str | None = None):
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        super().__init__(message or f"{entity_kind.capitalize()} {entity_id} not found")


class MemberInUseError(LedgerError):
    """Raised when removing a member that is still referenced by the ledger."""

    def __init__(self, member_id: str, message: str | None = None):
        self.member_id = member_id
        super().__init__(
            message
            or f"Member {member_id} is still referenced by splits, expenses or payments"
        )


class CurrencyMismatchError(LedgerError, ValueError):
    """Raised when amounts in different currencies are combined."""

    pass


class LedgerIntegrityError(LedgerError):
    """Raised when computed balances violate the sum-to-zero invariant."""

    pass


class SecretBoxError(LedgerError):
    """Base class for encryption errors."""

    pass


class KeyUnavailableError(SecretBoxError):
    """Raised when the encryption key is locked or was never initialized."""

    pass


class AuthenticationFailedError(SecretBoxError):
    """Raised when a ciphertext fails authentication or is malformed."""

    pass


class UndoUnavailableError(LedgerError):
    """Raised when undo is requested but there is nothing to undo."""

    pass


class RecurrenceExhausted(LedgerError):
    """Signals that a recurring rule has no occurrences left before its end date.

    This is not a failure; the planner treats it as a no-op.
    """

    def __init__(self, rule_id: str, message: str | None = None):
        self.rule_id = rule_id
        super().__init__(message or f"Recurring rule {rule_id} is past its end date")
