"""Pydantic models for the JSON entity definition format.

An entity definition looks like::

    {
        "title": "Book",
        "header": ["name"],
        "attr": [{"name": "name", "type": "str", "len": 100, "ind": true}],
        "rel": [{"name": "author", "type": "0n", "target": "person"}],
    }

The models only check shape; semantic checks (known types, header
resolution, name uniqueness) live in Attribute, Relation and Entity.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from docstore.errors import SchemaError

_SQL_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_sql_name(name: str, what: str = "name") -> str:
    """Check that name can be used verbatim as an SQL identifier."""
    if not isinstance(name, str) or not _SQL_NAME_RE.match(name):
        raise SchemaError(f"Invalid {what} {name!r}: must match [A-Za-z_][A-Za-z0-9_]*")
    return name


class _Definition(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize with the compact aliases, omitting defaults."""
        return self.model_dump(by_alias=True, exclude_none=True, exclude_defaults=True)


class AttributeDefinition(_Definition):
    name: str
    type: str
    title: str | None = None
    len: int | None = Field(default=None, gt=0)
    values: list[str] | None = None
    unit: str | None = None
    opt: Any = None
    mandatory: bool = Field(default=False, alias="mand")
    indexed: bool = Field(default=False, alias="ind")
    unique: bool = Field(default=False, alias="uniq")


class RelationDefinition(_Definition):
    name: str
    type: str
    target: str
    title: str | None = None


class EntityDefinition(_Definition):
    title: str | None = None
    header: list[str] | None = None
    attributes: list[AttributeDefinition] = Field(default_factory=list, alias="attr")
    relations: list[RelationDefinition] = Field(default_factory=list, alias="rel")


def parse_definition(model: type[_Definition], raw: Any, what: str) -> Any:
    """Validate raw (a mapping or an already built model) into model."""
    if isinstance(raw, model):
        return raw
    if not isinstance(raw, dict):
        raise SchemaError(f"Invalid {what} definition {raw!r}: expected an object")
    try:
        return model.model_validate(raw)
    except PydanticValidationError as exc:
        problems = ", ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        )
        raise SchemaError(f"Invalid {what} {raw!r}: {problems}") from exc
