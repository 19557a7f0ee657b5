"""
Per-table CRUD models.

A :class:`TableMapping` describes one table; a :class:`Model` binds it to a
:class:`~pglink.data_access.DataAccess` and exposes find/insert/update/delete
helpers that translate enum fields on the way in and out.

Subclass with a class-level mapping::

    class Users(Model):
        mapping = TableMapping(table_name="users", enum_mapping={"role": {"ADMIN": 0, "USER": 1}})

    users = Users(access)
    users.insert_one({"name": "Tim", "role": "ADMIN"})
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, field_validator

from pglink.data_access import DataAccess
from pglink.enum_codec import EnumCodec, EnumSpec
from pglink.errors import InvalidArgumentError
from pglink.lease import LeasedConnection
from pglink.sql_builder import quote_ident, split_pk
from pglink.transaction import PostHook

Row = Dict[str, Any]


class TableMapping(BaseModel):
    """Immutable description of a mapped table."""

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    table_name: str
    pk_name: str = "id"
    enum_mapping: Optional[Dict[str, EnumSpec]] = None
    auto_set_time_fields: Optional[Tuple[str, ...]] = None

    @field_validator("pk_name")
    @classmethod
    def _pk_not_blank(cls, value: str) -> str:
        split_pk(value)
        return value

    @property
    def pk_names(self) -> List[str]:
        return split_pk(self.pk_name)


class Model:
    """CRUD helpers for one table. Every method accepts ``post_hook`` and ``client``."""

    mapping: Optional[TableMapping] = None

    def __init__(
        self,
        data_access: DataAccess,
        mapping: TableMapping = None,
        global_auto_set_time_fields: Sequence[str] = None,
    ):
        mapping = mapping or type(self).mapping
        if mapping is None:
            raise InvalidArgumentError(f"{type(self).__name__} needs a TableMapping")
        self.mapping = mapping
        self.data_access = data_access
        self.codec = EnumCodec(mapping.enum_mapping)
        if mapping.auto_set_time_fields is not None:
            self.auto_set_time_fields = list(mapping.auto_set_time_fields)
        else:
            self.auto_set_time_fields = list(global_auto_set_time_fields or [])

    @property
    def table_name(self) -> str:
        return self.mapping.table_name

    @property
    def pk_name(self) -> str:
        return self.mapping.pk_name

    def encode_from_enum(self, value: Any) -> Any:
        return self.codec.encode(value)

    def decode_to_enum(self, value: Any) -> Any:
        return self.codec.decode(value)

    def _query(self, **options) -> Any:
        post_hook = options.pop("post_hook", None)
        client = options.pop("client", None)
        result = self.data_access.single_query_executor(
            {"table_name": self.table_name, **options}, post_hook=post_hook, client=client
        )
        return self.decode_to_enum(result)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_all(
        self,
        options: Mapping[str, Any] = None,
        post_hook: PostHook = None,
        client: LeasedConnection = None,
    ) -> List[Row]:
        """All rows; ``options`` may hold ``sort_by``, ``limit`` and ``offset``."""
        return self._query(**dict(options or {}), post_hook=post_hook, client=client)

    def find_by_pk(
        self,
        pk: Any,
        select_fields: Union[str, List[str]] = "*",
        post_hook: PostHook = None,
        client: LeasedConnection = None,
    ) -> Row:
        """
        The row with primary key ``pk`` (``{}`` if absent). Composite keys
        take a dict of key values.
        """
        pk_names = self.mapping.pk_names
        if len(pk_names) > 1:
            if not isinstance(pk, Mapping) or any(name not in pk for name in pk_names):
                raise InvalidArgumentError(
                    f'Invalid parameter "pk": {self.table_name} has composite primary key '
                    f"{self.pk_name!r}, pass a dict of its values"
                )
            values = [pk[name] for name in pk_names]
        else:
            values = [pk]
        encoded = self.encode_from_enum(dict(zip(pk_names, values)))
        where_clause = " AND ".join(
            f"{quote_ident(name)} = ${index}" for index, name in enumerate(pk_names, 1)
        )
        return self._query(
            where_clause=where_clause,
            clause_params=[encoded[name] for name in pk_names],
            select_fields=select_fields,
            return_single_record=True,
            post_hook=post_hook,
            client=client,
        )

    def find_by_conditions(
        self,
        where_clause: str,
        select_fields: Union[str, List[str]] = "*",
        options: Mapping[str, Any] = None,
        clause_params: Sequence[Any] = None,
        post_hook: PostHook = None,
        client: LeasedConnection = None,
    ) -> List[Row]:
        """Rows matching ``where_clause`` (e.g. ``"employeeId" = '123'``)."""
        return self._query(
            where_clause=where_clause,
            clause_params=list(clause_params or []),
            select_fields=select_fields,
            **dict(options or {}),
            post_hook=post_hook,
            client=client,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def insert_one(
        self, params: Any, post_hook: PostHook = None, client: LeasedConnection = None
    ) -> Row:
        result = self.data_access.insert_executor(
            {"params": self.encode_from_enum(params), "table_name": self.table_name},
            post_hook=post_hook,
            client=client,
        )
        return self.decode_to_enum(result)

    def multi_insert(
        self,
        items: Sequence[Any],
        force_flat: bool = False,
        post_hook: PostHook = None,
        client: LeasedConnection = None,
    ) -> list:
        """Insert each item in one transaction."""
        result = self.data_access.multi_insert_executor(
            {
                "items": [
                    {"params": self.encode_from_enum(item), "table_name": self.table_name}
                    for item in items
                ],
                "force_flat": force_flat,
            },
            post_hook=post_hook,
            client=client,
        )
        return self.decode_to_enum(result)

    def update_by_pk(
        self,
        params: Any,
        auto_set_time_fields: Sequence[str] = None,
        post_hook: PostHook = None,
        client: LeasedConnection = None,
    ) -> Row:
        """Update by primary key; the key must be included in ``params``."""
        result = self.data_access.update_by_pk_executor(
            {
                "params": self.encode_from_enum(params),
                "table_name": self.table_name,
                "pk_name": self.pk_name,
                "auto_set_time_fields": self._time_fields(auto_set_time_fields),
            },
            post_hook=post_hook,
            client=client,
        )
        return self.decode_to_enum(result)

    def update_by_conditions(
        self,
        params: Any,
        where_clause: str,
        clause_params: Sequence[Any] = None,
        auto_set_time_fields: Sequence[str] = None,
        post_hook: PostHook = None,
        client: LeasedConnection = None,
    ) -> List[Row]:
        result = self.data_access.update_executor(
            {
                "params": self.encode_from_enum(params),
                "table_name": self.table_name,
                "where_clause": where_clause,
                "clause_params": list(clause_params or []),
                "auto_set_time_fields": self._time_fields(auto_set_time_fields),
            },
            post_hook=post_hook,
            client=client,
        )
        return self.decode_to_enum(result)

    def multi_update_with_conditions(
        self,
        items: Sequence[Any],
        where_clause: str = None,
        replacement_fields: Sequence[str] = None,
        auto_set_time_fields: Sequence[str] = None,
        force_flat: bool = False,
        post_hook: PostHook = None,
        client: LeasedConnection = None,
    ) -> list:
        """
        Update every item in one transaction.

        Without ``where_clause`` each item is matched by primary key. With it,
        ``$1..$n`` in the clause bind the item's ``replacement_fields`` values,
        e.g. ``where_clause='"companyId" = $1'``, ``replacement_fields=["companyId"]``.
        """
        time_fields = self._time_fields(auto_set_time_fields)
        updates = []
        for item in items:
            encoded = self.encode_from_enum(item)
            clause_params = []
            if where_clause and replacement_fields:
                missing = [field for field in replacement_fields if field not in encoded]
                if missing:
                    raise InvalidArgumentError(f"item is missing replacement fields {missing}")
                clause_params = [encoded[field] for field in replacement_fields]
            updates.append(
                {
                    "params": encoded,
                    "table_name": self.table_name,
                    "where_clause": where_clause,
                    "clause_params": clause_params,
                    "pk_name": self.pk_name,
                    "auto_set_time_fields": time_fields,
                }
            )
        result = self.data_access.multi_update_executor(
            {"items": updates, "force_flat": force_flat}, post_hook=post_hook, client=client
        )
        return self.decode_to_enum(result)

    def delete_by_conditions(
        self,
        where_clause: str,
        return_single_record: bool = False,
        clause_params: Sequence[Any] = None,
        post_hook: PostHook = None,
        client: LeasedConnection = None,
    ) -> Union[List[Row], Row]:
        result = self.data_access.delete_executor(
            {
                "table_name": self.table_name,
                "where_clause": where_clause,
                "clause_params": list(clause_params or []),
                "return_single_record": return_single_record,
            },
            post_hook=post_hook,
            client=client,
        )
        return self.decode_to_enum(result)

    def _time_fields(self, auto_set_time_fields: Optional[Sequence[str]]) -> List[str]:
        if auto_set_time_fields is None:
            return list(self.auto_set_time_fields)
        return list(auto_set_time_fields)
