"""
Query executors: CRUD helpers that build SQL and run it transactionally.

:class:`DataAccess` is the surface the model layer talks to. Every executor
builds its statement(s) with :mod:`pglink.sql_builder`, validates any
caller-supplied where clause, and delegates to the
:class:`~pglink.transaction.TransactionExecutor`. All executors accept an
options struct (or a dict), an optional ``post_hook`` run before commit, an
optional ``client`` lease to run on, and an optional
:class:`~pglink.diagnostics.Diagnostics` collector.

Example::

    access = DataAccess(DbUtil(params={"database": "app"}))
    row = access.insert_executor({"params": {"name": "Tim"}, "table_name": "users"})
    access.disconnect()
"""

import logging
from typing import Any, Dict, List, Optional, Union

import pandas as pd
import psycopg2 as psycopg

from pglink.db_util import DbUtil, fetch_frame, fetch_rows
from pglink.diagnostics import Diagnostics
from pglink.errors import InvalidArgumentError
from pglink.lease import ConnectionLeaseManager, LeasedConnection
from pglink.options import (
    DeleteOptions,
    InsertOptions,
    MultiInsertOptions,
    MultiInsertToOneTableOptions,
    MultiUpdateOptions,
    SingleQueryOptions,
    UpdateByPkOptions,
    UpdateOptions,
)
from pglink.sql_builder import (
    StatementSpec,
    build_delete,
    build_insert,
    build_multi_insert,
    build_select,
    build_update,
)
from pglink.transaction import PostHook, TransactionExecutor, TransactionRequest

logger = logging.getLogger("pglink.data_access")

Row = Dict[str, Any]


class DataAccess:
    """CRUD executors over a pooled PostgreSQL connection."""

    def __init__(self, db: DbUtil):
        self.db = db
        self.leases = ConnectionLeaseManager(db)
        self.executor = TransactionExecutor(self.leases)

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------

    def execute(
        self,
        sql: str,
        params: List[Any] = None,
        as_pd: bool = False,
        client: LeasedConnection = None,
    ) -> Union[List[Row], pd.DataFrame]:
        """
        Run a single query outside any transaction wrapper.

        Args:
            sql: Query text, ``$n`` placeholders bind ``params``.
            params: Values for the placeholders.
            as_pd: Return a :class:`pandas.DataFrame` instead of a list of dicts.
            client: Lease to run on (joins its open transaction, if any).
        """
        if not sql or not str(sql).strip():
            raise InvalidArgumentError('"sql" is required but got None or an empty string')

        with self.leases.lease(client) as lease:
            try:
                if as_pd:
                    return fetch_frame(lease.connection, sql, params)
                return fetch_rows(lease.connection, sql, params)
            except psycopg.Error:
                logger.error("DB: Error executing query", exc_info=True)
                raise

    def transaction(
        self,
        request: Union[TransactionRequest, Dict[str, Any]],
        post_hook: PostHook = None,
        diagnostics: Diagnostics = None,
    ) -> Any:
        """Run statements atomically; see :class:`~pglink.transaction.TransactionExecutor`."""
        return self.executor.run(request, post_hook=post_hook, diagnostics=diagnostics)

    def commit(self, client: LeasedConnection) -> None:
        """Commit a transaction left open with ``preserve_client``."""
        self.executor.finish(client, commit=True)

    def rollback(self, client: LeasedConnection) -> None:
        """Roll back a transaction left open with ``preserve_client``."""
        self.executor.finish(client, commit=False)

    def check_table_column_exist(
        self, table_name: str, column_name: str, client: LeasedConnection = None
    ) -> bool:
        """
        Return whether ``table_name`` has a column ``column_name``.

        Unqualified table names are looked up in the schemas on the search path.
        """
        schema, _, table = table_name.rpartition(".")
        sql = (
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_name = $1 AND column_name = $2"
        )
        replacements = [table.strip('"'), column_name]
        if schema:
            sql += " AND table_schema = $3"
            replacements.append(schema.strip('"'))
        else:
            sql += " AND table_schema = ANY (current_schemas(false))"
        statement = StatementSpec(sql=f"{sql} LIMIT 1", replacements=replacements)

        lease = client or self.leases.current()
        if lease is not None and lease.transaction_open:
            # read inside the open transaction instead of committing it
            with self.leases.lease(lease) as joined:
                rows = fetch_rows(joined.connection, statement.sql, statement.replacements)
        else:
            rows = self.transaction(TransactionRequest(statements=[statement], client=client))
        return len(rows) > 0

    def disconnect(self) -> None:
        """Drain and close the pool. Logs, never raises."""
        if self.leases.checked_out:
            logger.warning(
                "DB: Disconnecting with %s connection(s) still leased", self.leases.checked_out
            )
        self.db.disconnect()

    # ------------------------------------------------------------------
    # Executors
    # ------------------------------------------------------------------

    def _column_checker(self, client: Optional[LeasedConnection]):
        return lambda table, column: self.check_table_column_exist(table, column, client=client)

    @staticmethod
    def _require_each(statements: List[Optional[StatementSpec]], action: str) -> List[StatementSpec]:
        # results are positional per item, so an item without values cannot be skipped
        for index, statement in enumerate(statements):
            if statement is None:
                raise InvalidArgumentError(f"item {index} has no field values to {action}")
        return statements

    def _run(
        self,
        statements: List[Optional[StatementSpec]],
        post_hook: Optional[PostHook],
        client: Optional[LeasedConnection],
        diagnostics: Optional[Diagnostics],
        **shaping,
    ) -> Any:
        request = TransactionRequest(
            statements=[statement for statement in statements if statement is not None],
            client=client,
            **shaping,
        )
        return self.executor.run(request, post_hook=post_hook, diagnostics=diagnostics)

    def insert_executor(
        self,
        options: Union[InsertOptions, Dict[str, Any]],
        post_hook: PostHook = None,
        client: LeasedConnection = None,
        diagnostics: Diagnostics = None,
    ) -> Row:
        """Insert one row; returns it (``{}`` when no field carried a value)."""
        options = InsertOptions.coerce(options)
        statement = build_insert(options.params, options.table_name)
        return self._run(
            [statement], post_hook, client, diagnostics, return_single_record=True
        )

    def multi_insert_executor(
        self,
        options: Union[MultiInsertOptions, Dict[str, Any]],
        post_hook: PostHook = None,
        client: LeasedConnection = None,
        diagnostics: Diagnostics = None,
    ) -> list:
        """
        Insert each item with its own statement, all in one transaction.

        With ``force_flat`` the result is one flat list of rows rather than one
        row list per item. An item without any field value is rejected.
        """
        options = MultiInsertOptions.coerce(options)
        statements = self._require_each(
            [build_insert(item.params, item.table_name) for item in options.items], "insert"
        )
        return self._run(
            statements, post_hook, client, diagnostics, force_flat=options.force_flat
        )

    def multi_insert_to_one_table_executor(
        self,
        options: Union[MultiInsertToOneTableOptions, Dict[str, Any]],
        post_hook: PostHook = None,
        client: LeasedConnection = None,
        diagnostics: Diagnostics = None,
    ) -> List[Row]:
        """Insert many rows into one table with a single multi-row statement."""
        options = MultiInsertToOneTableOptions.coerce(options)
        statement = build_multi_insert(options.insert_fields, options.params, options.table_name)
        return self._run([statement], post_hook, client, diagnostics)

    def update_by_pk_executor(
        self,
        options: Union[UpdateByPkOptions, Dict[str, Any]],
        post_hook: PostHook = None,
        client: LeasedConnection = None,
        diagnostics: Diagnostics = None,
    ) -> Row:
        """Update the row identified by the primary key found in ``params``."""
        options = UpdateByPkOptions.coerce(options)
        statement = build_update(
            options.params,
            options.table_name,
            pk_name=options.pk_name,
            auto_set_time_fields=options.auto_set_time_fields,
            column_exists=self._column_checker(client),
            diagnostics=diagnostics,
        )
        return self._run(
            [statement], post_hook, client, diagnostics, return_single_record=True
        )

    def update_executor(
        self,
        options: Union[UpdateOptions, Dict[str, Any]],
        post_hook: PostHook = None,
        client: LeasedConnection = None,
        diagnostics: Diagnostics = None,
    ) -> List[Row]:
        """Update the rows matching a validated where clause."""
        options = UpdateOptions.coerce(options)
        statement = build_update(
            options.params,
            options.table_name,
            where_clause=options.where_clause,
            clause_params=options.clause_params,
            auto_set_time_fields=options.auto_set_time_fields,
            column_exists=self._column_checker(client),
            diagnostics=diagnostics,
        )
        return self._run([statement], post_hook, client, diagnostics)

    def multi_update_executor(
        self,
        options: Union[MultiUpdateOptions, Dict[str, Any]],
        post_hook: PostHook = None,
        client: LeasedConnection = None,
        diagnostics: Diagnostics = None,
    ) -> list:
        """
        Run one UPDATE per item (by clause or by primary key) in one transaction.

        An item without any field value is rejected.
        """
        options = MultiUpdateOptions.coerce(options)
        column_exists = self._column_checker(client)
        statements = [
            build_update(
                item.params,
                item.table_name,
                where_clause=item.where_clause,
                pk_name=item.pk_name,
                auto_set_time_fields=item.auto_set_time_fields,
                column_exists=column_exists,
                clause_params=item.clause_params,
                diagnostics=diagnostics,
            )
            for item in options.items
        ]
        self._require_each(statements, "update")
        return self._run(
            statements, post_hook, client, diagnostics, force_flat=options.force_flat
        )

    def delete_executor(
        self,
        options: Union[DeleteOptions, Dict[str, Any]],
        post_hook: PostHook = None,
        client: LeasedConnection = None,
        diagnostics: Diagnostics = None,
    ) -> Union[List[Row], Row]:
        """Delete the rows matching a validated where clause; returns them."""
        options = DeleteOptions.coerce(options)
        statement = build_delete(
            options.table_name, options.where_clause, clause_params=options.clause_params
        )
        return self._run(
            [statement],
            post_hook,
            client,
            diagnostics,
            return_single_record=options.return_single_record,
        )

    def single_query_executor(
        self,
        options: Union[SingleQueryOptions, Dict[str, Any]],
        post_hook: PostHook = None,
        client: LeasedConnection = None,
        diagnostics: Diagnostics = None,
    ) -> Union[List[Row], Row]:
        """SELECT from one table, run through the transactional path."""
        options = SingleQueryOptions.coerce(options)
        statement = build_select(
            options.table_name,
            where_clause=options.where_clause,
            select_fields=options.select_fields,
            sort_by=options.sort_by,
            limit=options.limit,
            offset=options.offset,
            clause_params=options.clause_params,
        )
        return self._run(
            [statement],
            post_hook,
            client,
            diagnostics,
            return_single_record=options.return_single_record,
        )
