"""
PostgreSQL connection pool and low-level statement execution.

:class:`DbUtil` owns a psycopg2 :class:`~psycopg2.pool.ThreadedConnectionPool`
built from a :class:`~pglink.config.ConnectionConfig`. Pooled connections run
in autocommit mode so that transactions are delimited only by the explicit
``BEGIN`` / ``COMMIT`` / ``ROLLBACK`` statements the transaction executor
issues.

The module-level helpers run one statement on a connection and convert the
``$1..$n`` placeholders produced by :mod:`pglink.sql_builder` to psycopg2's
``%s`` style.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd
import psycopg2 as psycopg
from psycopg2 import sql
from psycopg2.pool import ThreadedConnectionPool

from pglink.config import ConnectionConfig
from pglink.errors import InvalidArgumentError

logger = logging.getLogger("pglink.db_util")

# "$" is also an identifier character, so "t$1" is a name, not a placeholder
_PLACEHOLDER_RE = re.compile(
    r"""('(?:[^']|'')*'|"(?:[^"]|"")*")|(?<![A-Za-z0-9_$])\$(\d+)|%"""
)


def to_pyformat(query: str, replacements: Sequence[Any] = None) -> Tuple[str, Optional[List[Any]]]:
    """
    Rewrite ``$n`` placeholders to ``%s`` and order the values to match.

    Quoted literals are left alone apart from ``%`` escaping. Without
    replacements the query is returned untouched, since psycopg2 only
    interprets ``%`` when parameters are passed.
    """
    if not replacements:
        return query, None

    values: List[Any] = []

    def _replace(match: "re.Match") -> str:
        quoted, number = match.group(1), match.group(2)
        if quoted is not None:
            return quoted.replace("%", "%%")
        if number is not None:
            index = int(number) - 1
            if index < 0 or index >= len(replacements):
                raise InvalidArgumentError(
                    f"placeholder ${number} has no replacement value ({len(replacements)} given)"
                )
            values.append(replacements[index])
            return "%s"
        return "%%"

    return _PLACEHOLDER_RE.sub(_replace, query), values


def _execute(cursor, query: str, replacements: Sequence[Any] = None) -> None:
    statement, params = to_pyformat(query, replacements)
    if params is not None:
        cursor.execute(statement, params)
    else:
        cursor.execute(statement)
    logger.debug("Query executed: %s", statement)


def fetch_rows(connection, query: str, replacements: Sequence[Any] = None) -> List[Dict[str, Any]]:
    """Execute ``query`` and return its rows as dicts (``[]`` without a result set)."""
    with connection.cursor() as cursor:
        _execute(cursor, query, replacements)
        if cursor.description is None:
            return []
        column_names = [desc[0] for desc in cursor.description]
        return [dict(zip(column_names, row)) for row in cursor.fetchall()]


def fetch_frame(connection, query: str, replacements: Sequence[Any] = None) -> pd.DataFrame:
    """Execute ``query`` and return its rows as a :class:`pandas.DataFrame`."""
    with connection.cursor() as cursor:
        _execute(cursor, query, replacements)
        if cursor.description is None:
            return pd.DataFrame()
        column_names = [desc[0] for desc in cursor.description]
        return pd.DataFrame(cursor.fetchall(), columns=column_names)


class DbUtil:
    """
    PostgreSQL connection pool manager.

    The pool is created by :meth:`connect`, or lazily by the first
    :meth:`getconn`. Connection parameters not given in ``config`` fall back
    to the ``DATABASE_*`` environment variables.

    On failure methods log and raise (e.g. :exc:`RuntimeError`), except
    :meth:`disconnect`, which only logs.
    """

    def __init__(self, config: ConnectionConfig = None, params: Dict = None):
        """
        Use ``config`` as-is, or build one from ``params`` and the environment.
        """
        self.config = config or ConnectionConfig(**(params or {}))
        self.pool: Optional[ThreadedConnectionPool] = None

    @property
    def connected(self) -> bool:
        return self.pool is not None and not self.pool.closed

    def connect(self) -> None:
        """
        Open the pool. If ``default_schema`` is configured, create the schema
        if needed; pooled connections already use it as their search_path.
        Raises :exc:`RuntimeError` on failure.
        """
        if self.connected:
            return
        try:
            self.pool = ThreadedConnectionPool(
                self.config.connection_min,
                self.config.connection_max,
                **self.config.to_connect_kwargs(),
            )
        except Exception as error:
            logger.error("DB: Error creating connection pool", exc_info=True)
            raise RuntimeError("Failed to create DB connection pool") from error

        if self.config.default_schema:
            self.create_schema(self.config.default_schema)

    def getconn(self):
        """Check a connection out of the pool, connecting first if needed."""
        if not self.connected:
            self.connect()
        connection = self.pool.getconn()
        if not connection.autocommit:
            connection.autocommit = True
        return connection

    def putconn(self, connection, close: bool = False) -> None:
        """Return ``connection`` to the pool; ``close`` discards it instead."""
        if not self.connected:
            logger.warning("DB: Pool already closed, closing returned connection")
            if not connection.closed:
                connection.close()
            return
        self.pool.putconn(connection, close=close)

    def disconnect(self) -> None:
        """Close every pooled connection. Logs, never raises."""
        try:
            if self.pool is not None and not self.pool.closed:
                self.pool.closeall()
        except Exception:
            logger.error("DB: Error closing connection pool", exc_info=True)
        finally:
            self.pool = None

    def create_schema(self, schema: str) -> None:
        """
        Create schema ``schema`` (IF NOT EXISTS). Raises :exc:`RuntimeError` on failure.
        """
        connection = self.getconn()
        try:
            with connection.cursor() as cursor:
                cursor.execute(
                    sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(schema))
                )
        except psycopg.Error as error:
            logger.error("DB: Failed to create schema %s", schema, exc_info=True)
            raise RuntimeError(f"Failed to create Schema: {schema}") from error
        finally:
            self.putconn(connection)
