"""
Atomic execution of statement batches.

:class:`TransactionExecutor` runs every :class:`~pglink.sql_builder.StatementSpec`
of a :class:`TransactionRequest` on one leased connection between ``BEGIN``
and ``COMMIT``, shapes the collected rows, lets an optional post hook inspect
or replace the result before commit, and rolls everything back on any error.

Statements run sequentially, in input order; results keep that order (or are
keyed by alias).

A call made while another transaction call is running on the same lease (for
example from inside a post hook) runs inside a ``SAVEPOINT`` and leaves
commit to the outer call. With ``preserve_client`` the commit is skipped and
the lease stays checked out; the next call in the same context, or one
passing ``client=``, continues that database transaction and commits it.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from pglink import diagnostics as diag
from pglink.db_util import fetch_rows
from pglink.diagnostics import Diagnostics
from pglink.errors import (
    InvalidArgumentError,
    MissingAliasError,
    RollbackError,
    TransactionError,
)
from pglink.lease import ConnectionLeaseManager, LeasedConnection
from pglink.sql_builder import StatementSpec

logger = logging.getLogger("pglink.transaction")

PostHook = Callable[[Any], Any]
Rows = List[Dict[str, Any]]


class TransactionRequest(BaseModel):
    """
    Statements to run atomically plus result-shaping options.

    Attributes:
        statements: Statements to execute; ``None`` is rejected, ``[]`` is a no-op.
        return_with_alias: Key the result by each statement's alias.
        return_single_record: Keep only the first element of the result.
        force_flat: Flatten per-statement row lists into one list.
        preserve_client: Skip COMMIT and keep the lease for further calls.
        client: Lease to run on instead of the context's own.
    """

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    statements: Optional[List[StatementSpec]]
    return_with_alias: bool = False
    return_single_record: bool = False
    force_flat: bool = False
    preserve_client: bool = False
    client: Optional[LeasedConnection] = None

    @field_validator("statements", mode="before")
    @classmethod
    def _coerce_statements(cls, value: Any) -> Any:
        if value is None:
            return value
        return [StatementSpec(sql=item) if isinstance(item, str) else item for item in value]


def coerce_request(request: Union[TransactionRequest, Dict[str, Any]]) -> TransactionRequest:
    if isinstance(request, TransactionRequest):
        return request
    if request is None:
        raise InvalidArgumentError("a transaction request is required")
    try:
        return TransactionRequest.model_validate(request)
    except ValidationError as error:
        raise InvalidArgumentError(f"invalid transaction request: {error}") from error


def empty_result(request: TransactionRequest) -> Union[Rows, Dict[str, Any]]:
    if request.return_with_alias or request.return_single_record:
        return {}
    return []


def shape_result(raw: Union[List[Rows], Dict[str, Rows]], request: TransactionRequest) -> Any:
    """
    Flatten, alias-key or single-record the per-statement row lists.

    A list result is flattened one level when exactly one statement ran or
    ``force_flat`` is set; ``return_single_record`` then keeps the first
    element. Alias maps keep the first row of each alias instead.
    """
    if isinstance(raw, dict):
        if request.return_single_record:
            return {alias: (rows[0] if rows else {}) for alias, rows in raw.items()}
        return raw

    result: list = raw
    if len(raw) == 1 or request.force_flat:
        result = [row for rows in raw for row in rows]
    if request.return_single_record:
        return result[0] if result else {}
    return result


def check_aliases(request: TransactionRequest) -> None:
    if not request.return_with_alias:
        return
    seen = set()
    for statement in request.statements:
        if not statement.alias:
            raise MissingAliasError(
                "alias should be a string when return_with_alias is true, but got None"
            )
        if statement.alias in seen:
            raise InvalidArgumentError(f"duplicate alias {statement.alias!r}")
        seen.add(statement.alias)


class TransactionExecutor:
    """Runs :class:`TransactionRequest` batches on leased connections."""

    def __init__(self, leases: ConnectionLeaseManager):
        self.leases = leases

    def run(
        self,
        request: Union[TransactionRequest, Dict[str, Any]],
        post_hook: PostHook = None,
        diagnostics: Diagnostics = None,
    ) -> Any:
        """
        Execute ``request`` atomically and return the shaped result.

        Raises:
            InvalidArgumentError: ``statements`` is missing or the request is malformed.
            MissingAliasError: ``return_with_alias`` with an alias-less statement.
            TransactionError: A statement, the post hook or COMMIT failed; rolled back.
            RollbackError: ROLLBACK failed as well; the connection was discarded.
        """
        request = coerce_request(request)
        if request.statements is None:
            raise InvalidArgumentError(
                '"statements" is invalid: expected a list but got None'
            )

        if not request.statements:
            diag.warn(diagnostics, diag.EMPTY_TRANSACTION, '"statements" is an empty list, skipped')
            result = empty_result(request)
            if post_hook is not None:
                hooked = post_hook(result)
                if hooked is not None:
                    result = hooked
            return result

        check_aliases(request)

        with self.leases.lease(request.client) as lease:
            return self._run_on(lease, request, post_hook)

    def finish(self, lease: LeasedConnection, commit: bool = True) -> None:
        """COMMIT (or ROLLBACK) a transaction kept open by ``preserve_client``."""
        if lease.released or not lease.transaction_open:
            raise InvalidArgumentError("client has no open transaction to finish")
        if lease.active_calls:
            raise InvalidArgumentError("cannot finish a transaction from inside its own call")

        with self.leases.lease(lease):
            if not commit:
                self._rollback_only(lease)
                return
            try:
                self._issue(lease, "COMMIT")
                lease.transaction_open = False
            except Exception as error:
                self._rollback(lease, error, None)
            self.leases.release_holds(lease)

    def _rollback_only(self, lease: LeasedConnection) -> None:
        try:
            self._issue(lease, "ROLLBACK")
            lease.transaction_open = False
        except Exception as rollback_error:
            logger.error("ROLLBACK ERROR: %s", rollback_error, exc_info=True)
            lease.broken = True
            raise RollbackError(
                "rollback failed; connection discarded", rollback_error=rollback_error
            ) from rollback_error
        self.leases.release_holds(lease)

    def _run_on(
        self, lease: LeasedConnection, request: TransactionRequest, post_hook: Optional[PostHook]
    ) -> Any:
        nested = lease.active_calls > 0
        savepoint = f"pglink_sp_{lease.active_calls}" if nested else None
        lease.active_calls += 1
        try:
            try:
                if nested:
                    self._issue(lease, f"SAVEPOINT {savepoint}")
                elif not lease.transaction_open:
                    self._issue(lease, "BEGIN")
                    lease.transaction_open = True

                result = shape_result(self._execute_statements(lease, request), request)
                if post_hook is not None:
                    hooked = post_hook(result)
                    if hooked is not None:
                        result = hooked

                if nested:
                    self._issue(lease, f"RELEASE SAVEPOINT {savepoint}")
                elif not request.preserve_client:
                    self._issue(lease, "COMMIT")
                    lease.transaction_open = False
            except Exception as error:
                self._rollback(lease, error, savepoint)
            except BaseException:
                lease.broken = True
                raise
        finally:
            lease.active_calls -= 1

        if not nested:
            if request.preserve_client:
                lease.hold()
            else:
                self.leases.release_holds(lease)
        return result

    def _execute_statements(
        self, lease: LeasedConnection, request: TransactionRequest
    ) -> Union[List[Rows], Dict[str, Rows]]:
        if request.return_with_alias:
            return {
                statement.alias: fetch_rows(lease.connection, statement.sql, statement.replacements)
                for statement in request.statements
            }
        return [
            fetch_rows(lease.connection, statement.sql, statement.replacements)
            for statement in request.statements
        ]

    @staticmethod
    def _issue(lease: LeasedConnection, command: str) -> None:
        fetch_rows(lease.connection, command)

    def _rollback(self, lease: LeasedConnection, error: Exception, savepoint: Optional[str]):
        if lease.released or lease.broken:
            # a nested call already discarded the connection
            raise error

        logger.error("TRANSACTION ROLLBACK: %s", error, exc_info=True)
        try:
            if savepoint:
                self._issue(lease, f"ROLLBACK TO SAVEPOINT {savepoint}")
                self._issue(lease, f"RELEASE SAVEPOINT {savepoint}")
            else:
                self._issue(lease, "ROLLBACK")
                lease.transaction_open = False
        except Exception as rollback_error:
            logger.error("ROLLBACK ERROR: %s", rollback_error, exc_info=True)
            lease.broken = True
            raise RollbackError(
                f"rollback failed after {type(error).__name__}: {error}",
                original_error=error,
                rollback_error=rollback_error,
            ) from rollback_error

        if not savepoint:
            self.leases.release_holds(lease)
        if isinstance(error, TransactionError):
            # from a nested call, which already wrapped its cause
            raise error
        raise TransactionError(f"transaction rolled back: {error}", original_error=error) from error
