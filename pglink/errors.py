"""
Exception hierarchy for pglink.

Validation errors (:exc:`InvalidArgumentError` and its subclasses) are raised
before any connection is touched. :exc:`TransactionError` and
:exc:`RollbackError` are raised after ``BEGIN`` and always wrap the driver
error that caused them.
"""

from typing import Optional


class PgLinkError(Exception):
    """Base class for every error raised by pglink."""


class InvalidArgumentError(PgLinkError, ValueError):
    """Required structured input is missing or malformed."""


class InvalidClauseError(InvalidArgumentError):
    """A caller-supplied where clause failed validation."""

    def __init__(self, message: str, clause: str = None, position: int = None):
        self.clause = clause
        self.position = position
        if position is not None:
            message = f"{message} (at position {position})"
        super().__init__(message)


class MissingAliasError(InvalidArgumentError):
    """``return_with_alias`` was requested but a statement has no alias."""


class TransactionError(PgLinkError):
    """A statement, commit or post hook failed inside a transaction."""

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        self.original_error = original_error
        super().__init__(message)


class RollbackError(TransactionError):
    """ROLLBACK itself failed; the connection was discarded."""

    def __init__(
        self,
        message: str,
        original_error: Optional[BaseException] = None,
        rollback_error: Optional[BaseException] = None,
    ):
        self.rollback_error = rollback_error
        super().__init__(message, original_error=original_error)
