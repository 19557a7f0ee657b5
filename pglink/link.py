"""
Library entry point.

:class:`PgLink` wires a :class:`~pglink.config.ConnectionConfig` to a
:class:`~pglink.db_util.DbUtil` pool and a :class:`~pglink.data_access.DataAccess`,
and hands out :class:`~pglink.model.Model` instances bound to it.
"""

import logging
from typing import Sequence, Type

from pglink.config import ConnectionConfig
from pglink.data_access import DataAccess
from pglink.db_util import DbUtil
from pglink.model import Model, TableMapping

logger = logging.getLogger("pglink.link")


class PgLink:
    """
    Connection pool plus query layer for one database.

    Args:
        config: Connection settings; when omitted, built from ``overrides``
            and the ``DATABASE_*`` environment variables.
        global_auto_set_time_fields: Timestamp columns every model sets to
            ``CURRENT_TIMESTAMP`` on update unless its mapping says otherwise.
        **overrides: :class:`~pglink.config.ConnectionConfig` fields.
    """

    def __init__(
        self,
        config: ConnectionConfig = None,
        global_auto_set_time_fields: Sequence[str] = None,
        **overrides,
    ):
        self.config = config or ConnectionConfig(**overrides)
        self.db = DbUtil(self.config)
        self.data_access = DataAccess(self.db)
        self.global_auto_set_time_fields = list(global_auto_set_time_fields or [])

    @classmethod
    def from_dsn(cls, dsn: str, global_auto_set_time_fields: Sequence[str] = None, **overrides):
        return cls(
            ConnectionConfig.from_dsn(dsn, **overrides),
            global_auto_set_time_fields=global_auto_set_time_fields,
        )

    def connect(self) -> "PgLink":
        """Open the pool now instead of on first use."""
        self.db.connect()
        logger.info("DB: Connected to %s:%s/%s", self.config.host, self.config.port, self.config.database)
        return self

    def model(
        self, table_name: str = None, model_class: Type[Model] = Model, **mapping_fields
    ) -> Model:
        """
        A model bound to this link.

        Pass ``table_name`` (plus ``pk_name``, ``enum_mapping``,
        ``auto_set_time_fields``) to map a table ad hoc, or a ``model_class``
        that carries its own class-level ``mapping``.
        """
        mapping = None
        if table_name is not None:
            mapping = TableMapping(table_name=table_name, **mapping_fields)
        return model_class(
            self.data_access,
            mapping=mapping,
            global_auto_set_time_fields=self.global_auto_set_time_fields,
        )

    def disconnect(self) -> None:
        self.data_access.disconnect()

    def __enter__(self) -> "PgLink":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.disconnect()
