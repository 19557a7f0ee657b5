"""
Parameterized SQL generation for INSERT, UPDATE, DELETE and SELECT.

Every builder is pure: it takes field/value mappings and returns a
:class:`StatementSpec` holding SQL with ``$1..$n`` placeholders and the
ordered replacement values. Nothing here touches a connection; the only
lookup :func:`build_update` needs (whether an auto-timestamp column exists)
is injected as the ``column_exists`` callable.

Example::

    spec = build_insert({"name": "Tim", "age": 30}, "users")
    spec.sql           # INSERT INTO users ("name", "age") VALUES ($1, $2) RETURNING *
    spec.replacements  # ("Tim", 30)
"""

import json
import re
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from pglink import diagnostics as diag
from pglink.clause import tokenize, validate_clause
from pglink.diagnostics import Diagnostics
from pglink.errors import InvalidArgumentError


ColumnExists = Callable[[str, str], bool]
FieldValues = Union[Mapping[str, Any], BaseModel]

_TABLE_NAME_RE = re.compile(
    r'^(?:[A-Za-z_][A-Za-z0-9_$]*|"(?:[^"]|"")+")(?:\.(?:[A-Za-z_][A-Za-z0-9_$]*|"(?:[^"]|"")+"))?$'
)


class _Unset:
    """Marks a field as absent: the column is left out of the statement."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = _Unset()


class StatementSpec(BaseModel):
    """One unit of executable work: SQL, its replacement values, an optional alias."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    sql: str
    replacements: Tuple[Any, ...] = ()
    alias: Optional[str] = None

    @field_validator("sql")
    @classmethod
    def _sql_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("sql must not be empty")
        return value


class SortSpec(BaseModel):
    """One ``ORDER BY`` entry."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    field: str
    direction: str = Field("ASC", validation_alias=AliasChoices("direction", "sequence"))

    @field_validator("direction", mode="before")
    @classmethod
    def _normalize_direction(cls, value: Any) -> str:
        direction = str(value or "ASC").upper()
        if direction not in ("ASC", "DESC"):
            raise ValueError(f"direction must be ASC or DESC, got {value!r}")
        return direction


def quote_ident(name: str) -> str:
    """Double-quote a column name."""
    return '"' + str(name).replace('"', '""') + '"'


def unquote_ident(name: str) -> str:
    """Undo :func:`quote_ident` for a name wrapped in one pair of double quotes."""
    if len(name) >= 2 and name.startswith('"') and name.endswith('"'):
        return name[1:-1].replace('""', '"')
    return name


def quote_literal(value: Any) -> str:
    """Render ``value`` as a single-quoted SQL literal."""
    return "'" + str(value).replace("'", "''") + "'"


def format_value(value: Any) -> Any:
    """Adapt a Python value for binding (dicts and lists of dicts become JSON)."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return json.dumps(value)
    if isinstance(value, list) and len(value) > 0 and isinstance(value[0], dict):
        return json.dumps(value)
    return value


def split_pk(pk_name: str) -> List[str]:
    """Split a possibly composite ``"a,b"`` primary key name."""
    names = [name.strip() for name in str(pk_name or "").split(",")]
    names = [name for name in names if name]
    if not names:
        raise InvalidArgumentError("pk_name must name at least one column")
    return names


def check_table_name(table_name: str) -> str:
    if not isinstance(table_name, str) or not _TABLE_NAME_RE.match(table_name):
        raise InvalidArgumentError(f"invalid table name: {table_name!r}")
    return table_name


def present_fields(params: Optional[FieldValues]) -> Dict[str, Any]:
    """
    Return the fields of ``params`` that carry a value, in declaration order.

    Keys set to :data:`UNSET` are dropped; ``None`` stays and binds ``NULL``.
    Pydantic models contribute only the fields that were explicitly set.
    """
    if params is None:
        return {}
    if isinstance(params, BaseModel):
        params = params.model_dump(exclude_unset=True)
    if not isinstance(params, Mapping):
        raise InvalidArgumentError(
            f"params must be a mapping or a pydantic model, got {type(params).__name__}"
        )
    return {key: value for key, value in params.items() if value is not UNSET}


def bind_clause(
    where_clause: str, offset: int = 0, clause_params: Sequence[Any] = None
) -> Tuple[str, List[Any]]:
    """
    Validate ``where_clause`` and renumber its ``$n`` placeholders by ``offset``.

    Returns the rewritten clause and the values bound to it.
    """
    validate_clause(where_clause)
    clause_params = list(clause_params or [])
    pieces = []
    cursor = 0
    highest = 0
    for token in tokenize(where_clause):
        if token.kind != "param":
            continue
        number = int(token.value[1:])
        if number < 1 or number > len(clause_params):
            raise InvalidArgumentError(
                f"placeholder {token.value} has no matching clause parameter"
            )
        highest = max(highest, number)
        pieces.append(where_clause[cursor:token.position])
        pieces.append(f"${number + offset}")
        cursor = token.position + len(token.value)
    pieces.append(where_clause[cursor:])
    if len(clause_params) > highest:
        raise InvalidArgumentError(
            f"{len(clause_params)} clause parameter(s) given but the highest "
            f"placeholder in the clause is ${highest}"
        )
    return "".join(pieces), [format_value(value) for value in clause_params]


def build_insert(
    params: FieldValues, table_name: str, alias: str = None
) -> Optional[StatementSpec]:
    """Build a single-row INSERT; ``None`` when no field carries a value."""
    check_table_name(table_name)
    fields = present_fields(params)
    if not fields:
        return None

    columns = ", ".join(quote_ident(key) for key in fields)
    placeholders = ", ".join(f"${index}" for index in range(1, len(fields) + 1))
    sql = f"INSERT INTO {table_name} ({columns}) VALUES ({placeholders}) RETURNING *"
    return StatementSpec(
        sql=sql,
        replacements=tuple(format_value(value) for value in fields.values()),
        alias=alias,
    )


def build_multi_insert(
    insert_fields: Sequence[str],
    rows: Sequence[FieldValues],
    table_name: str,
    alias: str = None,
) -> StatementSpec:
    """Build one multi-row INSERT; placeholders run sequentially across rows."""
    if not insert_fields:
        raise InvalidArgumentError("insert_fields must not be empty")
    if not rows:
        raise InvalidArgumentError("cannot build an insert without rows")
    check_table_name(table_name)

    replacements: List[Any] = []
    groups: List[str] = []
    counter = 1
    for row in rows:
        values = present_fields(row)
        placeholders = []
        for field in insert_fields:
            placeholders.append(f"${counter}")
            counter += 1
            replacements.append(format_value(values.get(field)))
        groups.append(f"({', '.join(placeholders)})")

    columns = ", ".join(quote_ident(field) for field in insert_fields)
    sql = f"INSERT INTO {table_name} ({columns}) VALUES {', '.join(groups)} RETURNING *"
    return StatementSpec(sql=sql, replacements=tuple(replacements), alias=alias)


def build_update(
    params: FieldValues,
    table_name: str,
    where_clause: str = None,
    pk_name: str = "id",
    auto_set_time_fields: Iterable[str] = None,
    column_exists: ColumnExists = None,
    clause_params: Sequence[Any] = None,
    diagnostics: Diagnostics = None,
    alias: str = None,
) -> Optional[StatementSpec]:
    """
    Build an UPDATE ... RETURNING * statement.

    With ``where_clause`` the clause is validated and ANDed onto ``1 = 1``;
    its ``$n`` placeholders bind ``clause_params``. Without it the condition
    is the primary key (``pk_name``, possibly composite) taken from
    ``params``. Primary-key columns present in ``params`` stay in the SET
    list.

    Each auto-timestamp field is set to ``CURRENT_TIMESTAMP`` when
    ``column_exists(table_name, field)`` confirms the column (or when no
    checker is given); otherwise it is skipped with a notice.

    Returns ``None`` when no field carries a value.
    """
    check_table_name(table_name)
    pk_names = split_pk(pk_name)
    fields = present_fields(params)
    if not fields:
        return None

    replacements = [format_value(value) for value in fields.values()]
    set_parts = [f"{quote_ident(key)} = ${index}" for index, key in enumerate(fields, 1)]

    where = "WHERE 1 = 1"
    if where_clause:
        clause, bound = bind_clause(where_clause, len(replacements), clause_params)
        replacements.extend(bound)
        where = f"{where} AND {clause}"
    else:
        if clause_params:
            raise InvalidArgumentError("clause_params require a where_clause")
        for pk in pk_names:
            if fields.get(pk) is None:
                raise InvalidArgumentError(
                    f"primary key {pk!r} is required to update {table_name} without a where clause"
                )
            where = f"{where} AND {quote_ident(pk)} = {quote_literal(fields[pk])}"

    for field in auto_set_time_fields or []:
        if field in fields:
            continue
        if column_exists is None or column_exists(table_name, field):
            set_parts.append(f"{quote_ident(field)} = CURRENT_TIMESTAMP")
        else:
            diag.warn(
                diagnostics,
                diag.AUTO_SET_TIME_FIELD_MISSING,
                f'Table {table_name} doesn\'t include field "{field}", skipped',
                table_name=table_name,
                field=field,
            )

    sql = f"UPDATE {table_name} SET {', '.join(set_parts)} {where} RETURNING *"
    return StatementSpec(sql=sql, replacements=tuple(replacements), alias=alias)


def build_delete(
    table_name: str,
    where_clause: str,
    clause_params: Sequence[Any] = None,
    alias: str = None,
) -> StatementSpec:
    """Build DELETE ... RETURNING * for a validated, required where clause."""
    check_table_name(table_name)
    if not where_clause:
        raise InvalidArgumentError("a where clause is required to delete")
    clause, bound = bind_clause(where_clause, 0, clause_params)
    sql = f"DELETE FROM {table_name} WHERE {clause} RETURNING *"
    return StatementSpec(sql=sql, replacements=tuple(bound), alias=alias)


def select_list(select_fields: Union[str, Sequence[str]] = "*") -> str:
    if select_fields is None or select_fields == "*":
        return "*"
    if isinstance(select_fields, str):
        select_fields = select_fields.split(",")
    names = [unquote_ident(str(name).strip()) for name in select_fields]
    names = [name for name in names if name]
    if not names:
        raise InvalidArgumentError("select_fields must name at least one column")
    return ", ".join(quote_ident(name) for name in names)


def build_select(
    table_name: str,
    where_clause: str = None,
    select_fields: Union[str, Sequence[str]] = "*",
    sort_by: Sequence[Union[SortSpec, Mapping[str, Any], str]] = None,
    limit: int = None,
    offset: int = None,
    clause_params: Sequence[Any] = None,
    alias: str = None,
) -> StatementSpec:
    """Build a read-only SELECT with optional clause, ordering, limit and offset."""
    check_table_name(table_name)
    sql = f"SELECT {select_list(select_fields)} FROM {table_name}"
    replacements: List[Any] = []
    if where_clause:
        clause, replacements = bind_clause(where_clause, 0, clause_params)
        sql = f"{sql} WHERE {clause}"
    elif clause_params:
        raise InvalidArgumentError("clause_params require a where_clause")

    if sort_by:
        order = []
        for entry in sort_by:
            if isinstance(entry, str):
                entry = SortSpec(field=entry)
            elif not isinstance(entry, SortSpec):
                entry = SortSpec.model_validate(entry)
            order.append(f"{quote_ident(entry.field)} {entry.direction}")
        sql = f"{sql} ORDER BY {', '.join(order)}"

    for keyword, value in (("LIMIT", limit), ("OFFSET", offset)):
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidArgumentError(f"{keyword.lower()} must be a non-negative integer")
        sql = f"{sql} {keyword} {value}"

    return StatementSpec(sql=sql, replacements=tuple(replacements), alias=alias)
