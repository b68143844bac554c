"""Typed attribute descriptors for entity schemas."""

from __future__ import annotations

from enum import Enum
from typing import Any

from docstore.errors import ArgumentError, InternalError, SchemaError
from docstore.schema import AttributeDefinition, parse_definition, validate_sql_name

# Sets are stored as bitmasks in a single 64-bit integer column.
MAX_SET_VALUES = 64

_UINT64 = 1 << 64
_INT64_MAX = (1 << 63) - 1


class AttributeType(Enum):
    """Supported attribute types."""

    STR = "str"
    TEXT = "text"
    PASSWORD = "password"
    IMG = "img"
    URL = "url"
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"
    ENUM = "enum"
    SET = "set"

    @classmethod
    def from_str(cls, value: str) -> AttributeType:
        for kind in cls:
            if kind.value == value:
                return kind
        valid = ", ".join(k.value for k in cls)
        raise SchemaError(f"Unknown attribute type {value!r}; expected one of: {valid}")

    @property
    def is_string(self) -> bool:
        return self in _STRING_TYPES

    @property
    def has_values(self) -> bool:
        return self in (AttributeType.ENUM, AttributeType.SET)


_STRING_TYPES = frozenset(
    {
        AttributeType.STR,
        AttributeType.TEXT,
        AttributeType.PASSWORD,
        AttributeType.IMG,
        AttributeType.URL,
    }
)

_DEFAULT_LEN = {
    AttributeType.STR: 256,
    AttributeType.PASSWORD: 128,
    AttributeType.IMG: 1024,
    AttributeType.URL: 1024,
}


class Attribute:
    """A scalar typed field of an entity.

    Built once from its definition when the entity is loaded and never
    changed afterwards.
    """

    def __init__(self, definition: AttributeDefinition | dict[str, Any]) -> None:
        d = parse_definition(AttributeDefinition, definition, "attribute")
        validate_sql_name(d.name, "attribute name")
        if d.name.startswith("_"):
            raise SchemaError(f"Invalid attribute name {d.name!r}: leading '_' is reserved")
        self._definition = d
        self.name: str = d.name
        self.type = AttributeType.from_str(d.type)
        self.len: int | None = d.len
        self.values: tuple[str, ...] | None = tuple(d.values) if d.values is not None else None
        self.unit: str | None = d.unit
        self.opt: Any = d.opt
        self._title = d.title
        self._mandatory = d.mandatory
        self._unique = d.unique
        # A unique index needs a real column to live on.
        self._indexed = d.indexed or d.unique

        if self.type.has_values:
            if not self.values:
                raise SchemaError(
                    f"Attribute {self.name!r} of type {self.type.value!r} requires 'values'"
                )
            if self.type is AttributeType.SET and len(self.values) > MAX_SET_VALUES:
                raise SchemaError(
                    f"Attribute {self.name!r}: set supports at most {MAX_SET_VALUES} values, "
                    f"got {len(self.values)}"
                )

    def __repr__(self) -> str:
        return f"Attribute({self.name!r}, {self.type.value!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Attribute):
            return NotImplemented
        return self._definition == other._definition

    def __hash__(self) -> int:
        return hash((self.name, self.type))

    @property
    def title(self) -> str:
        return self._title or self.name

    @property
    def mandatory(self) -> bool:
        return self._mandatory

    @property
    def indexed(self) -> bool:
        return self._indexed

    @property
    def unique(self) -> bool:
        return self._unique

    def to_definition(self) -> dict[str, Any]:
        return self._definition.to_json_dict()

    # --- SQL mapping ---

    def sql_type(self) -> str:
        """Column type used when the attribute is materialized."""
        t = self.type
        if t in _DEFAULT_LEN:
            return f"VARCHAR({self.len or _DEFAULT_LEN[t]})"
        if t is AttributeType.TEXT:
            return "TEXT"
        if t is AttributeType.INT:
            return "INTEGER"
        if t is AttributeType.FLOAT:
            return "DOUBLE"
        if t is AttributeType.BOOL:
            return "TINYINT"
        if t is AttributeType.ENUM:
            return "SMALLINT"
        if t is AttributeType.SET:
            return "BIGINT"
        raise InternalError(f"Unhandled attribute type {t!r} on {self.name!r}")

    def sql_value(self, raw: Any) -> Any:
        """Return raw as a parameter value for the attribute's column."""
        if raw is None:
            return None
        t = self.type
        if t.is_string:
            return str(raw)
        if t is AttributeType.INT or t is AttributeType.ENUM:
            return int(raw)
        if t is AttributeType.FLOAT:
            return float(raw)
        if t is AttributeType.BOOL:
            return 1 if raw else 0
        if t is AttributeType.SET:
            # fold into signed 64-bit so SQLite can store the top bit
            mask = int(raw) % _UINT64
            return mask - _UINT64 if mask > _INT64_MAX else mask
        raise InternalError(f"Unhandled attribute type {t!r} on {self.name!r}")

    def where_value(self, raw: Any) -> Any:
        """Return a where literal as a parameter compared against the column.

        Numbers are bound as given; only bools and set bitmasks are mapped
        to their column form.
        """
        t = self.type
        number = isinstance(raw, (int, float)) and not isinstance(raw, bool)
        if t.is_string:
            ok = isinstance(raw, str)
        elif t is AttributeType.BOOL:
            ok = isinstance(raw, bool) or (number and raw in (0, 1))
        elif t is AttributeType.SET:
            ok = isinstance(raw, int) and not isinstance(raw, bool)
        else:
            ok = number
        if not ok:
            raise ArgumentError(f"Unable to parse value {raw!r} for field {self.name!r}")
        if t is AttributeType.BOOL or t is AttributeType.SET:
            return self.sql_value(raw)
        return raw

    # --- value semantics ---

    def is_empty(self, value: Any) -> bool:
        t = self.type
        if t.is_string:
            return len(value) == 0
        if t is AttributeType.SET:
            return int(value) == 0
        if t in (AttributeType.INT, AttributeType.FLOAT, AttributeType.BOOL, AttributeType.ENUM):
            return False
        raise InternalError(f"Unhandled attribute type {t!r} on {self.name!r}")

    def resolve(self, value: Any) -> Any:
        """Convert a stored value into its human-facing shape.

        Enum indexes become their title (None when out of range), set
        bitmasks become the ordered list of titles whose bit is set.
        """
        if value is None:
            return None
        if self.type is AttributeType.ENUM:
            assert self.values is not None
            if isinstance(value, int) and 0 <= value < len(self.values):
                return self.values[value]
            return None
        if self.type is AttributeType.SET:
            assert self.values is not None
            mask = int(value) % _UINT64
            return [v for i, v in enumerate(self.values) if mask & (1 << i)]
        return value

    def validate(self, value: Any) -> None:
        """Raise ArgumentError if value can't be stored in this attribute."""
        t = self.type
        ok: bool
        if t.is_string:
            ok = isinstance(value, str)
        elif t is AttributeType.INT:
            ok = isinstance(value, int) and not isinstance(value, bool)
        elif t is AttributeType.FLOAT:
            ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        elif t is AttributeType.BOOL:
            ok = isinstance(value, bool)
        elif t is AttributeType.ENUM:
            assert self.values is not None
            ok = (
                isinstance(value, int)
                and not isinstance(value, bool)
                and 0 <= value < len(self.values)
            )
        elif t is AttributeType.SET:
            assert self.values is not None
            ok = (
                isinstance(value, int)
                and not isinstance(value, bool)
                and 0 <= value < (1 << len(self.values))
            )
        else:
            raise InternalError(f"Unhandled attribute type {t!r} on {self.name!r}")
        if not ok:
            raise ArgumentError(
                f"Invalid value {value!r} for attribute {self.name!r} of type {t.value!r}"
            )
