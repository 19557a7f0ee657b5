"""Tests for pglink.db_util."""

from unittest.mock import MagicMock, patch

import pandas as pd
import psycopg2
import pytest
from psycopg2 import sql

from pglink.config import ConnectionConfig
from pglink.db_util import DbUtil, fetch_frame, fetch_rows, to_pyformat
from pglink.errors import InvalidArgumentError
from pglink.sql_builder import build_insert


def make_pool(mock_pool_cls, connection=None):
    pool = MagicMock()
    pool.closed = False
    pool.getconn.return_value = connection or MagicMock()
    mock_pool_cls.return_value = pool
    return pool


class TestToPyformat:
    """Tests for $n to %s placeholder conversion."""

    def test_no_replacements_untouched(self):
        """Test queries without values are passed through unchanged."""
        assert to_pyformat("SELECT '100%'") == ("SELECT '100%'", None)

    def test_reorders_values(self):
        """Test values follow placeholder order, including repeats."""
        query, values = to_pyformat("SELECT $2, $1, $2", ["a", "b"])
        assert query == "SELECT %s, %s, %s"
        assert values == ["b", "a", "b"]

    def test_escapes_percent(self):
        """Test percent signs are escaped, inside literals too."""
        query, values = to_pyformat("SELECT * FROM t WHERE a LIKE 'x%' AND b = $1 % 2", [5])
        assert query == "SELECT * FROM t WHERE a LIKE 'x%%' AND b = %s %% 2"
        assert values == [5]

    def test_placeholders_in_literals_kept(self):
        """Test $n inside quoted literals and identifiers is not bound."""
        query, values = to_pyformat('SELECT \'$1\', "$1" FROM t WHERE a = $1', [1])
        assert query == 'SELECT \'$1\', "$1" FROM t WHERE a = %s'
        assert values == [1]

    def test_dollar_inside_identifier_kept(self):
        """Test a "$" inside a table name is not taken for a placeholder."""
        spec = build_insert({"a": 1}, "t$1")

        query, values = to_pyformat(spec.sql, spec.replacements)

        assert query == 'INSERT INTO t$1 ("a") VALUES (%s) RETURNING *'
        assert values == [1]

    def test_missing_value(self):
        """Test a placeholder beyond the values is rejected."""
        with pytest.raises(InvalidArgumentError):
            to_pyformat("SELECT $3", [1])


class TestFetch:
    """Tests for fetch_rows and fetch_frame."""

    def test_fetch_rows_as_dicts(self):
        """Test rows are returned as dicts keyed by column."""
        mock_conn = MagicMock()
        mock_cursor = MagicMock()
        mock_cursor.description = [("id",), ("name",)]
        mock_cursor.fetchall.return_value = [(1, "test"), (2, "test2")]
        mock_conn.cursor.return_value.__enter__.return_value = mock_cursor

        result = fetch_rows(mock_conn, "SELECT * FROM test WHERE id > $1", [0])

        assert result == [{"id": 1, "name": "test"}, {"id": 2, "name": "test2"}]
        mock_cursor.execute.assert_called_once_with("SELECT * FROM test WHERE id > %s", [0])

    def test_fetch_rows_without_result_set(self):
        """Test statements without a result set return []."""
        mock_conn = MagicMock()
        mock_cursor = MagicMock()
        mock_cursor.description = None
        mock_conn.cursor.return_value.__enter__.return_value = mock_cursor

        assert fetch_rows(mock_conn, "BEGIN") == []
        mock_cursor.execute.assert_called_once_with("BEGIN")
        mock_cursor.fetchall.assert_not_called()

    def test_fetch_frame(self):
        """Test query execution returning a pandas DataFrame."""
        mock_conn = MagicMock()
        mock_cursor = MagicMock()
        mock_cursor.description = [("id",), ("name",)]
        mock_cursor.fetchall.return_value = [(1, "test"), (2, "test2")]
        mock_conn.cursor.return_value.__enter__.return_value = mock_cursor

        result = fetch_frame(mock_conn, "SELECT * FROM test")

        assert isinstance(result, pd.DataFrame)
        assert len(result) == 2
        assert list(result.columns) == ["id", "name"]

    def test_fetch_failure_propagates(self):
        """Test driver errors propagate unchanged."""
        mock_conn = MagicMock()
        mock_cursor = MagicMock()
        mock_cursor.execute.side_effect = psycopg2.ProgrammingError("SQL error")
        mock_conn.cursor.return_value.__enter__.return_value = mock_cursor

        with pytest.raises(psycopg2.ProgrammingError):
            fetch_rows(mock_conn, "INVALID SQL")


class TestDbUtil:
    """Tests for DbUtil class."""

    def test_init_with_params(self):
        """Test initialization with explicit parameters."""
        db = DbUtil(params={"host": "dbhost", "database": "testdb", "port": "5432"})
        assert db.config.host == "dbhost"
        assert db.config.database == "testdb"
        assert db.config.port == 5432
        assert db.pool is None
        assert not db.connected

    def test_init_with_config(self):
        """Test a ready-made config is used as-is."""
        config = ConnectionConfig(host="h", database="d")
        assert DbUtil(config).config is config

    @patch("pglink.db_util.ThreadedConnectionPool")
    def test_connect_success(self, mock_pool_cls):
        """Test the pool is built from the config."""
        pool = make_pool(mock_pool_cls)
        db = DbUtil(params={"host": "localhost", "database": "test", "connection_max": 3})
        db.connect()

        assert db.pool is pool
        assert db.connected
        args, kwargs = mock_pool_cls.call_args
        assert args == (1, 3)
        assert kwargs["dbname"] == "test"

    @patch("pglink.db_util.ThreadedConnectionPool")
    def test_connect_is_idempotent(self, mock_pool_cls):
        """Test connecting twice keeps the first pool."""
        make_pool(mock_pool_cls)
        db = DbUtil(params={"database": "test"})
        db.connect()
        db.connect()
        mock_pool_cls.assert_called_once()

    @patch("pglink.db_util.ThreadedConnectionPool")
    def test_connect_failure(self, mock_pool_cls):
        """Test pool failure raises RuntimeError."""
        mock_pool_cls.side_effect = psycopg2.OperationalError("Connection failed")

        db = DbUtil(params={"host": "localhost", "database": "test"})
        with pytest.raises(RuntimeError, match="Failed to create DB connection pool"):
            db.connect()
        assert db.pool is None

    @patch("pglink.db_util.ThreadedConnectionPool")
    def test_connect_with_schema(self, mock_pool_cls):
        """Test a default schema is created on connect."""
        mock_conn = MagicMock()
        mock_cursor = MagicMock()
        mock_conn.cursor.return_value.__enter__.return_value = mock_cursor
        pool = make_pool(mock_pool_cls, mock_conn)

        db = DbUtil(params={"database": "test", "default_schema": "app"})
        db.connect()

        mock_cursor.execute.assert_called_once_with(
            sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier("app"))
        )
        pool.putconn.assert_called_once_with(mock_conn, close=False)
        assert mock_pool_cls.call_args[1]["options"] == "-c search_path=app"

    @patch("pglink.db_util.ThreadedConnectionPool")
    def test_create_schema_failure(self, mock_pool_cls):
        """Test schema creation failure raises RuntimeError and returns the connection."""
        mock_conn = MagicMock()
        mock_cursor = MagicMock()
        mock_cursor.execute.side_effect = psycopg2.ProgrammingError("Schema error")
        mock_conn.cursor.return_value.__enter__.return_value = mock_cursor
        pool = make_pool(mock_pool_cls, mock_conn)

        db = DbUtil(params={"database": "test"})
        with pytest.raises(RuntimeError, match="Failed to create Schema"):
            db.create_schema("test_schema")
        pool.putconn.assert_called_once_with(mock_conn, close=False)

    @patch("pglink.db_util.ThreadedConnectionPool")
    def test_getconn_connects_and_enables_autocommit(self, mock_pool_cls):
        """Test getconn builds the pool lazily and switches on autocommit."""
        mock_conn = MagicMock()
        mock_conn.autocommit = False
        make_pool(mock_pool_cls, mock_conn)

        db = DbUtil(params={"database": "test"})
        assert db.getconn() is mock_conn
        assert mock_conn.autocommit is True
        mock_pool_cls.assert_called_once()

    @patch("pglink.db_util.ThreadedConnectionPool")
    def test_putconn_close(self, mock_pool_cls):
        """Test discarding a connection."""
        mock_conn = MagicMock()
        pool = make_pool(mock_pool_cls, mock_conn)
        db = DbUtil(params={"database": "test"})
        db.connect()

        db.putconn(mock_conn, close=True)
        pool.putconn.assert_called_once_with(mock_conn, close=True)

    def test_putconn_after_disconnect_closes(self):
        """Test a connection returned to a closed pool is closed."""
        mock_conn = MagicMock()
        mock_conn.closed = 0
        db = DbUtil(params={"database": "test"})
        db.putconn(mock_conn)
        mock_conn.close.assert_called_once()

    @patch("pglink.db_util.ThreadedConnectionPool")
    def test_disconnect(self, mock_pool_cls):
        """Test disconnect closes every pooled connection."""
        pool = make_pool(mock_pool_cls)
        db = DbUtil(params={"database": "test"})
        db.connect()

        db.disconnect()

        pool.closeall.assert_called_once()
        assert db.pool is None

    @patch("pglink.db_util.ThreadedConnectionPool")
    def test_disconnect_never_raises(self, mock_pool_cls):
        """Test disconnect logs and swallows pool errors."""
        pool = make_pool(mock_pool_cls)
        pool.closeall.side_effect = psycopg2.InterfaceError("already closed")
        db = DbUtil(params={"database": "test"})
        db.connect()

        db.disconnect()
        assert db.pool is None

    def test_disconnect_no_pool(self):
        """Test disconnect when no pool exists."""
        db = DbUtil()
        db.disconnect()
        assert db.pool is None
