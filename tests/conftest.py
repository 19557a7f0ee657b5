"""Shared fixtures: a scripted in-memory connection standing in for psycopg2."""

from unittest.mock import MagicMock

import pytest

from pglink.data_access import DataAccess
from pglink.db_util import DbUtil
from pglink.lease import ConnectionLeaseManager
from pglink.transaction import TransactionExecutor


class FakeCursor:
    def __init__(self, connection):
        self.connection = connection
        self.description = None
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        return False

    def execute(self, query, params=None):
        self.connection.executed.append((query, params))
        for fragment, rows, error in self.connection.rules:
            if fragment not in query:
                continue
            if error is not None:
                raise error
            if callable(rows):
                rows = rows(params)
            columns = list(rows[0]) if rows else ["id"]
            self.description = [(column,) for column in columns]
            self._rows = [tuple(row[column] for column in columns) for row in rows]
            return
        self.description = None
        self._rows = []

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records executed statements; ``on()`` scripts results or errors by SQL fragment."""

    def __init__(self):
        self.executed = []
        self.rules = []
        self.autocommit = True
        self.closed = 0

    def on(self, fragment, rows=None, error=None):
        self.rules.append((fragment, rows if rows is not None else [], error))
        return self

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.closed = 1

    @property
    def statements(self):
        return [query for query, _ in self.executed]


@pytest.fixture
def connection():
    return FakeConnection()


@pytest.fixture
def db(connection):
    db = MagicMock(spec=DbUtil)
    db.getconn.return_value = connection
    return db


@pytest.fixture
def leases(db):
    return ConnectionLeaseManager(db)


@pytest.fixture
def executor(leases):
    return TransactionExecutor(leases)


@pytest.fixture
def access(db):
    return DataAccess(db)
