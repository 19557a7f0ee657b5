"""
pglink: a thin transactional query layer over a pooled PostgreSQL connection.

Example::

    from pglink import PgLink, TableMapping, Model

    class Users(Model):
        mapping = TableMapping(table_name="users", enum_mapping={"role": {"ADMIN": 0, "USER": 1}})

    with PgLink(database="app", global_auto_set_time_fields=["updatedAt"]) as link:
        users = link.model(model_class=Users)
        tim = users.insert_one({"name": "Tim", "role": "ADMIN"})
        users.update_by_pk({"id": tim["id"], "name": "Timothy"})
"""

__version__ = "0.1.0"

from pglink.clause import ClauseValidator, validate_clause
from pglink.config import ConnectionConfig
from pglink.data_access import DataAccess
from pglink.db_util import DbUtil
from pglink.diagnostics import Diagnostics, Notice
from pglink.errors import (
    InvalidArgumentError,
    InvalidClauseError,
    MissingAliasError,
    PgLinkError,
    RollbackError,
    TransactionError,
)
from pglink.link import PgLink
from pglink.model import Model, TableMapping
from pglink.sql_builder import UNSET, SortSpec, StatementSpec
from pglink.transaction import TransactionRequest

__all__ = [
    "PgLink",
    "ConnectionConfig",
    "DbUtil",
    "DataAccess",
    "Model",
    "TableMapping",
    "TransactionRequest",
    "StatementSpec",
    "SortSpec",
    "UNSET",
    "ClauseValidator",
    "validate_clause",
    "Diagnostics",
    "Notice",
    "PgLinkError",
    "InvalidArgumentError",
    "InvalidClauseError",
    "MissingAliasError",
    "TransactionError",
    "RollbackError",
    "__version__",
]
