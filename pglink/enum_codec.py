"""Translation between symbolic enum names and the integers stored in the table."""

from enum import Enum
from typing import Any, Dict, Mapping, Optional, Type, Union

from pydantic import BaseModel

EnumSpec = Union[Mapping[str, Any], Type[Enum]]


def _as_mapping(spec: EnumSpec) -> Dict[str, Any]:
    if isinstance(spec, type) and issubclass(spec, Enum):
        return {member.name: member.value for member in spec}
    return dict(spec)


class EnumCodec:
    """
    Encode ``{"role": "ADMIN"}`` to ``{"role": 0}`` and back.

    ``enum_mapping`` maps a field name to ``{symbolic_name: stored_value}`` or
    to an :class:`~enum.Enum` class. Nested dicts and lists are walked; values
    without a mapping entry pass through. Inputs are never mutated.
    """

    def __init__(self, enum_mapping: Optional[Mapping[str, EnumSpec]] = None):
        self.encoding = {
            field: _as_mapping(spec) for field, spec in (enum_mapping or {}).items()
        }
        self.decoding = {
            field: {stored: name for name, stored in names.items()}
            for field, names in self.encoding.items()
        }

    def encode(self, value: Any) -> Any:
        if isinstance(value, BaseModel):
            value = value.model_dump(exclude_unset=True)
        return self._walk(value, self.encoding, to_stored=True)

    def decode(self, value: Any) -> Any:
        return self._walk(value, self.decoding, to_stored=False)

    def _walk(self, value: Any, table: Dict[str, Dict[Any, Any]], to_stored: bool) -> Any:
        if not table:
            return value
        if isinstance(value, list):
            return [self._walk(item, table, to_stored) for item in value]
        if not isinstance(value, Mapping):
            return value

        translated = {}
        for key, item in value.items():
            lookup = table.get(key)
            if lookup is not None:
                probe = item.name if to_stored and isinstance(item, Enum) else item
                try:
                    item = lookup.get(probe, item)
                except TypeError:
                    # unhashable values never match an enum entry
                    pass
            translated[key] = self._walk(item, table, to_stored)
        return translated
