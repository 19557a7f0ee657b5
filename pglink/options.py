"""
Typed option structs for the query executors.

Each executor in :class:`~pglink.data_access.DataAccess` accepts one of these
models, or a plain dict that is validated into it. Unknown keys are rejected.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from pglink.errors import InvalidArgumentError
from pglink.sql_builder import SortSpec

FieldValues = Union[Dict[str, Any], BaseModel]


class ExecutorOptions(BaseModel):
    """Base for executor options: strict keys, arbitrary values."""

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    @classmethod
    def coerce(cls, options: Union["ExecutorOptions", Dict[str, Any]]):
        if isinstance(options, cls):
            return options
        if options is None:
            raise InvalidArgumentError(f"{cls.__name__} are required")
        try:
            return cls.model_validate(options)
        except ValidationError as error:
            raise InvalidArgumentError(f"invalid {cls.__name__}: {error}") from error


class InsertOptions(ExecutorOptions):
    params: FieldValues
    table_name: str


class InsertItem(ExecutorOptions):
    params: FieldValues
    table_name: str


class MultiInsertOptions(ExecutorOptions):
    items: List[InsertItem]
    force_flat: bool = False


class MultiInsertToOneTableOptions(ExecutorOptions):
    insert_fields: List[str]
    params: List[FieldValues]
    table_name: str


class UpdateByPkOptions(ExecutorOptions):
    params: FieldValues
    table_name: str
    pk_name: str = "id"
    auto_set_time_fields: Optional[List[str]] = None


class UpdateOptions(ExecutorOptions):
    """Update by a where clause; ``$n`` in the clause binds ``clause_params``."""

    params: FieldValues
    table_name: str
    where_clause: str
    clause_params: List[Any] = Field(default_factory=list)
    auto_set_time_fields: Optional[List[str]] = None


class UpdateItem(ExecutorOptions):
    params: FieldValues
    table_name: str
    where_clause: Optional[str] = None
    clause_params: List[Any] = Field(default_factory=list)
    pk_name: str = "id"
    auto_set_time_fields: Optional[List[str]] = None


class MultiUpdateOptions(ExecutorOptions):
    items: List[UpdateItem]
    force_flat: bool = False


class DeleteOptions(ExecutorOptions):
    table_name: str
    where_clause: str
    clause_params: List[Any] = Field(default_factory=list)
    return_single_record: bool = False


class SingleQueryOptions(ExecutorOptions):
    """
    A single-table SELECT.

    ``sort_by`` takes ``{"field": ..., "direction": "ASC" | "DESC"}`` entries
    (``sequence`` is accepted for ``direction``) or bare field names.
    """

    table_name: str
    where_clause: Optional[str] = None
    clause_params: List[Any] = Field(default_factory=list)
    select_fields: Union[str, List[str]] = "*"
    sort_by: Optional[List[SortSpec]] = None
    limit: Optional[int] = Field(None, ge=0)
    offset: Optional[int] = Field(None, ge=0)
    return_single_record: bool = False

    @field_validator("sort_by", mode="before")
    @classmethod
    def _coerce_sort_by(cls, value: Any) -> Any:
        if value is None:
            return value
        if isinstance(value, (str, dict, SortSpec)):
            value = [value]
        return [SortSpec(field=entry) if isinstance(entry, str) else entry for entry in value]
