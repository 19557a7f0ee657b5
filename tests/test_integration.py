"""
Tests against a live PostgreSQL server.

Skipped unless ``PGLINK_TEST_DSN`` points at a database the tests may create
and drop tables in.
"""

import os
import uuid

import psycopg2
import pytest

from pglink import PgLink, TransactionError
from pglink.sql_builder import StatementSpec, build_insert

DSN = os.getenv("PGLINK_TEST_DSN")

pytestmark = pytest.mark.skipif(not DSN, reason="PGLINK_TEST_DSN is not set")


@pytest.fixture
def link():
    link = PgLink.from_dsn(DSN, connection_max=4)
    yield link
    link.disconnect()


@pytest.fixture
def table(link):
    name = f"pglink_test_{uuid.uuid4().hex[:8]}"
    link.data_access.execute(
        f'CREATE TABLE {name} (id serial PRIMARY KEY, name text UNIQUE, age int, "updatedAt" timestamp)'
    )
    yield name
    link.data_access.execute(f"DROP TABLE IF EXISTS {name}")


class TestLiveDatabase:
    """Round trips against a real server."""

    def test_insert_round_trip(self, link, table):
        """Test an inserted row reads back equal to its input fields."""
        model = link.model(table)
        row = model.insert_one({"name": "Tim", "age": 30})

        found = model.find_by_pk(row["id"])
        assert {"name": found["name"], "age": found["age"]} == {"name": "Tim", "age": 30}

    def test_failed_statement_rolls_back_batch(self, link, table):
        """Test no statement of a failed batch is visible afterwards."""
        statements = [
            build_insert({"name": "a"}, table),
            build_insert({"name": "dup"}, table),
            build_insert({"name": "dup"}, table),
        ]
        with pytest.raises(TransactionError) as exc_info:
            link.data_access.transaction({"statements": statements})

        assert isinstance(exc_info.value.original_error, psycopg2.IntegrityError)
        assert link.data_access.execute(f"SELECT * FROM {table}") == []
        assert link.data_access.leases.checked_out == 0

    def test_update_sets_timestamp(self, link, table):
        """Test an existing timestamp column is filled on update."""
        model = link.model(table, auto_set_time_fields=("updatedAt",))
        row = model.insert_one({"name": "x"})

        updated = model.update_by_pk({"id": row["id"], "age": 5})

        assert updated["age"] == 5
        assert updated["updatedAt"] is not None

    def test_nested_hook(self, link, table):
        """Test a post hook can write on the same transaction."""
        model = link.model(table)

        def hook(row):
            return model.insert_one({"name": f"{row['name']}-child"})

        child = model.insert_one({"name": "parent"}, post_hook=hook)

        assert child["name"] == "parent-child"
        assert len(model.find_all()) == 2

    def test_alias_results(self, link, table):
        """Test aliased batch results."""
        result = link.data_access.transaction(
            {
                "statements": [
                    StatementSpec(sql="SELECT 1 AS one", alias="one"),
                    StatementSpec(sql="SELECT 2 AS two", alias="two"),
                ],
                "return_with_alias": True,
                "return_single_record": True,
            }
        )
        assert result == {"one": {"one": 1}, "two": {"two": 2}}
