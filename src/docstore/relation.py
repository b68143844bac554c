"""Typed relation descriptors: foreign-key columns and link tables."""

from __future__ import annotations

from enum import Enum
from typing import Any

from docstore.errors import SchemaError
from docstore.schema import RelationDefinition, parse_definition, validate_sql_name
from docstore.storage import quote_ident


class RelationType(Enum):
    """Relation cardinality.

    '01' and '1' hold a single target id in a column of the owning table;
    '0n' and '1n' hold any number of target ids in a link table.
    """

    OPTIONAL = "01"
    ONE = "1"
    MANY = "0n"
    ONE_OR_MANY = "1n"

    @classmethod
    def from_str(cls, value: str) -> RelationType:
        for kind in cls:
            if kind.value == value:
                return kind
        valid = ", ".join(repr(k.value) for k in cls)
        raise SchemaError(f"Unknown relation type {value!r}; expected one of: {valid}")


class Relation:
    """A typed reference from one entity to another, by target name."""

    def __init__(self, entity_name: str, definition: RelationDefinition | dict[str, Any]) -> None:
        d = parse_definition(RelationDefinition, definition, "relation")
        validate_sql_name(d.name, "relation name")
        if d.name.startswith("_"):
            raise SchemaError(f"Invalid relation name {d.name!r}: leading '_' is reserved")
        validate_sql_name(d.target, "relation target")
        self._definition = d
        self.entity_name = entity_name
        self.name: str = d.name
        self.type = RelationType.from_str(d.type)
        self.target: str = d.target
        self._title = d.title

    def __repr__(self) -> str:
        return f"Relation({self.entity_name!r}.{self.name!r} -> {self.target!r}, {self.type.value!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Relation):
            return NotImplemented
        return self.entity_name == other.entity_name and self._definition == other._definition

    def __hash__(self) -> int:
        return hash((self.entity_name, self.name))

    @property
    def title(self) -> str:
        return self._title or self.name

    @property
    def mandatory(self) -> bool:
        return self.type in (RelationType.ONE, RelationType.ONE_OR_MANY)

    @property
    def multi(self) -> bool:
        return self.type in (RelationType.MANY, RelationType.ONE_OR_MANY)

    @property
    def self_referencing(self) -> bool:
        return self.entity_name == self.target

    def to_definition(self) -> dict[str, Any]:
        return self._definition.to_json_dict()

    # --- SQL naming ---

    @property
    def link_table(self) -> str:
        return self.name

    def link_column_names(self) -> tuple[str, str]:
        """Return (owner column, target column) of the link table."""
        if self.self_referencing:
            return f"{self.entity_name}_1", f"{self.entity_name}_2"
        return self.entity_name, self.target

    def foreign_key_column_ddl(self) -> str | None:
        """Column definition for single relations; None for multi ones."""
        if self.type is RelationType.OPTIONAL:
            return f"{quote_ident(self.name)} INTEGER NULL"
        if self.type is RelationType.ONE:
            return f"{quote_ident(self.name)} INTEGER NOT NULL"
        return None

    def foreign_key_index_ddl(self) -> str | None:
        if self.multi:
            return None
        return (
            f"CREATE INDEX {quote_ident(f'_idx_{self.entity_name}_{self.name}')} "
            f"ON {quote_ident(self.entity_name)} ({quote_ident(self.name)})"
        )

    def link_table_ddl(self) -> list[str]:
        """Statements creating the link table of a multi relation."""
        if not self.multi:
            return []
        table = quote_ident(self.link_table)
        col1, col2 = (quote_ident(c) for c in self.link_column_names())
        return [
            f"CREATE TABLE {table} ("
            f"{col1} INTEGER NOT NULL, "
            f"{col2} INTEGER NOT NULL, "
            f"PRIMARY KEY ({col1}, {col2}))",
            f"CREATE INDEX {quote_ident(f'_idx_{self.link_table}_1')} ON {table} ({col1})",
            f"CREATE INDEX {quote_ident(f'_idx_{self.link_table}_2')} ON {table} ({col2})",
        ]
