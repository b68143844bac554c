"""Entity: a schema plus the read/write protocol over its tables.

Each entity ``E`` owns three kinds of tables:

* ``E`` - one row per record: ``_id``, the JSON document in ``_data``, a
  soft-delete flag, one column per indexed attribute and one foreign-key
  column per single relation;
* ``E_h`` - append-only history, one full document snapshot per write;
* one link table per multi relation, named after the relation.

Documents are stored in canonical form (relation values are bare target
ids) and returned in presentation form (relation values are
``{"_id", "_header"}`` stubs).
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

from docstore.attribute import Attribute
from docstore.errors import (
    ArgumentError,
    InternalError,
    NotFoundError,
    SchemaError,
    TooManyFoundError,
    ValidationError,
)
from docstore.query import ListQuery, SearchQuery
from docstore.records import Record, RecordSet
from docstore.relation import Relation
from docstore.schema import EntityDefinition, parse_definition, validate_sql_name
from docstore.storage import quote_ident

if TYPE_CHECKING:
    from docstore.storage import Repository

logger = logging.getLogger(__name__)

HISTORY_SUFFIX = "_h"

# Keys that only exist in presentation form and are dropped on write.
SYNTHETIC_KEYS = frozenset({"_id", "_header", "_ts", "_user"})


class EntityRegistry(Protocol):
    """Lookup of sibling entities, used to resolve relation targets."""

    def entity(self, name: str) -> Entity | None: ...

    def entity_or_fail(self, name: str) -> Entity: ...

    def back_relations(self, name: str) -> list[Relation]: ...


def dump_document(doc: Mapping[str, Any]) -> str:
    """Serialize a canonical document; equal documents give identical text."""
    return json.dumps(doc, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _validate_id(value: Any, what: str = "ID") -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ArgumentError(f"{what} must be integer, but got {value!r}")
    return value


def _parse_user(user: Any) -> int | None:
    if user is None:
        return None
    if not isinstance(user, int) or isinstance(user, bool):
        raise ArgumentError(f"Unable to use user ID {user!r}")
    return user


def _parse_timestamp(ts: datetime | float | None) -> int:
    if ts is None:
        return int(time.time())
    if isinstance(ts, datetime):
        return int(ts.timestamp())
    if isinstance(ts, (int, float)) and not isinstance(ts, bool):
        return int(ts)
    raise ArgumentError(f"Unable to use timestamp {ts!r}")


class Entity:
    """A named collection of attributes and relations mapped to tables.

    The repository and registry are injected at construction; an entity
    built without them can still be inspected (attributes, DDL) but not
    read from or written to.
    """

    def __init__(
        self,
        name: str,
        definition: EntityDefinition | dict[str, Any],
        *,
        repo: Repository | None = None,
        registry: EntityRegistry | None = None,
    ) -> None:
        validate_sql_name(name, "entity name")
        if name.startswith("_"):
            raise SchemaError(f"Invalid entity name {name!r}: leading '_' is reserved")
        d = parse_definition(EntityDefinition, definition, "entity")
        self.name = name
        self._title = d.title
        self._repo = repo
        self._registry = registry

        # Order matters: the header refers to attributes.
        self._parse_attributes(d.attributes)
        self._parse_header(d.header)
        self._parse_relations(d.relations)

    def _parse_attributes(self, defs: Iterable[Any]) -> None:
        self._attrs: dict[str, Attribute] = {}
        for a in defs:
            attr = Attribute(a)
            if attr.name in self._attrs:
                raise SchemaError(f"Entity {self.name!r}: duplicate attribute {attr.name!r}")
            self._attrs[attr.name] = attr

    def _parse_header(self, header: list[str] | None) -> None:
        if header is None:
            attr = self._attrs.get("name")
            if attr is None:
                raise SchemaError(
                    f"Entity {self.name!r} must include attribute 'name' "
                    "or specify alternative header fields"
                )
            self._header = [attr]
            self._default_header = True
            return
        if not header:
            raise SchemaError(f"Entity {self.name!r}: header must not be empty")
        resolved = []
        for field_name in header:
            attr = self._attrs.get(field_name)
            if attr is None:
                raise SchemaError(
                    f"Entity {self.name!r}: header field includes attribute "
                    f"{field_name!r}, but it doesn't exist"
                )
            resolved.append(attr)
        self._header = resolved
        self._default_header = False

    def _parse_relations(self, defs: Iterable[Any]) -> None:
        self._rels: dict[str, Relation] = {}
        for r in defs:
            rel = Relation(self.name, r)
            if rel.name in self._rels:
                raise SchemaError(f"Entity {self.name!r}: duplicate relation {rel.name!r}")
            if rel.name in self._attrs:
                raise SchemaError(
                    f"Entity {self.name!r}: relation {rel.name!r} clashes with an attribute"
                )
            self._rels[rel.name] = rel

    def __repr__(self) -> str:
        return f"Entity({self.name!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return NotImplemented
        return self.name == other.name and self.to_definition() == other.to_definition()

    def __hash__(self) -> int:
        return hash(self.name)

    # --- Schema access ---

    @property
    def title(self) -> str:
        return self._title or self.name

    @property
    def repo(self) -> Repository:
        if self._repo is None:
            raise InternalError(f"Entity {self.name!r} is not bound to a repository")
        return self._repo

    @property
    def registry(self) -> EntityRegistry | None:
        return self._registry

    @property
    def attributes(self) -> list[Attribute]:
        return list(self._attrs.values())

    @property
    def relations(self) -> list[Relation]:
        return list(self._rels.values())

    @property
    def header(self) -> list[Attribute]:
        return list(self._header)

    @property
    def history_table(self) -> str:
        return f"{self.name}{HISTORY_SUFFIX}"

    def attr(self, name: str) -> Attribute | None:
        return self._attrs.get(name)

    def attr_or_fail(self, name: str) -> Attribute:
        attr = self._attrs.get(name)
        if attr is None:
            raise NotFoundError(f"Attribute {name!r} not found in entity {self.name!r}")
        return attr

    def rel(self, name: str) -> Relation | None:
        return self._rels.get(name)

    def rel_or_fail(self, name: str) -> Relation:
        rel = self._rels.get(name)
        if rel is None:
            raise NotFoundError(f"Relation {name!r} not found in entity {self.name!r}")
        return rel

    def back_relations(self) -> list[Relation]:
        """Relations of registered entities that point at this one."""
        if self._registry is None:
            return []
        return self._registry.back_relations(self.name)

    def table_names(self) -> list[str]:
        return [self.name, self.history_table] + [r.link_table for r in self.relations if r.multi]

    def to_definition(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        if self._title is not None:
            d["title"] = self._title
        if not self._default_header:
            d["header"] = [a.name for a in self._header]
        if self._attrs:
            d["attr"] = [a.to_definition() for a in self._attrs.values()]
        if self._rels:
            d["rel"] = [r.to_definition() for r in self._rels.values()]
        return d

    # --- SQL generation ---

    def column_sql(self, attr: Attribute) -> str:
        """Expression reading attr: its column, or the JSON document if not indexed."""
        table = quote_ident(self.name)
        if attr.indexed:
            return f"{table}.{quote_ident(attr.name)}"
        return f"json_extract({table}.{quote_ident('_data')}, '$.{attr.name}')"

    def header_expression(self) -> str:
        """Header fields joined by a single space."""
        return " || ' ' || ".join(self.column_sql(a) for a in self._header)

    def header_of(self, doc: Mapping[str, Any]) -> str | None:
        """Header text computed from a document instead of a row."""
        parts = [doc.get(a.name) for a in self._header]
        if any(p is None for p in parts):
            return None
        return " ".join(str(p) for p in parts)

    def schema_ddl(self) -> list[str]:
        """CREATE TABLE statement for the primary table, then its indexes."""
        table = quote_ident(self.name)
        columns = [
            f"{quote_ident('_id')} INTEGER PRIMARY KEY AUTOINCREMENT",
            f"{quote_ident('_data')} TEXT NOT NULL",
            f"{quote_ident('_deleted')} TINYINT NOT NULL DEFAULT 0",
        ]
        indexes = []
        for attr in self._attrs.values():
            if not attr.indexed:
                continue
            col = quote_ident(attr.name)
            columns.append(f"{col} {attr.sql_type()}")
            if attr.unique:
                idx = quote_ident(f"_uniq_{self.name}_{attr.name}")
                indexes.append(f"CREATE UNIQUE INDEX {idx} ON {table} ({col})")
            else:
                idx = quote_ident(f"_idx_{self.name}_{attr.name}")
                indexes.append(f"CREATE INDEX {idx} ON {table} ({col})")
        for rel in self._rels.values():
            col_ddl = rel.foreign_key_column_ddl()
            idx_ddl = rel.foreign_key_index_ddl()
            if col_ddl is not None and idx_ddl is not None:
                columns.append(col_ddl)
                indexes.append(idx_ddl)
        return [f"CREATE TABLE {table} ({', '.join(columns)})", *indexes]

    def history_ddl(self) -> list[str]:
        table = quote_ident(self.history_table)
        return [
            f"CREATE TABLE {table} ("
            "hid INTEGER PRIMARY KEY AUTOINCREMENT, "
            f"{quote_ident('_id')} INTEGER NOT NULL, "
            f"{quote_ident('_data')} TEXT NOT NULL, "
            "ts INTEGER NOT NULL, "
            "user_id INTEGER)",
            f"CREATE INDEX {quote_ident(f'_idx_{self.history_table}_id')} "
            f"ON {table} ({quote_ident('_id')})",
        ]

    def ddl(self) -> list[str]:
        """Every statement needed to create this entity's tables."""
        statements = self.schema_ddl() + self.history_ddl()
        for rel in self._rels.values():
            statements.extend(rel.link_table_ddl())
        return statements

    # --- Reads ---

    def get(self, id: int) -> Record:
        _validate_id(id)
        row = self.repo.query_one(
            f"SELECT {quote_ident('_id')}, {quote_ident('_data')}, "
            f"{self.header_expression()} AS _header "
            f"FROM {quote_ident(self.name)} "
            f"WHERE {quote_ident('_id')} = ? AND {quote_ident('_deleted')} = 0",
            (id,),
        )
        if row is None:
            raise NotFoundError(f"No record with ID={id} in entity {self.name!r}")
        doc = json.loads(row["_data"])
        self._resolve_relations(doc)
        return Record({"_id": row["_id"], "_header": row["_header"]}, doc)

    def list(self, **options: Any) -> RecordSet:
        """List records; see ListQuery for the options."""
        return ListQuery(self, **options).run()

    def search(self, **options: Any) -> RecordSet:
        """Search records across relations; see SearchQuery for the options."""
        return SearchQuery(self, **options).run()

    def count(self, **options: Any) -> int:
        return ListQuery(self, **options).count()

    def group_count(self, field: str, **options: Any) -> dict[Any, int]:
        return ListQuery(self, **options).group_count(field)

    def find_by(self, where: Mapping[str, Any]) -> Record | None:
        return self.list(where=where).first()

    def find_by_or_fail(self, where: Mapping[str, Any]) -> Record:
        found = self.list(where=where, page=1, per_page=2)
        if len(found) == 0:
            raise NotFoundError(f"No record found that matches {dict(where)!r}")
        if len(found) > 1:
            raise TooManyFoundError(f"Too many records satisfy {dict(where)!r}")
        rec = found.first()
        assert rec is not None
        return rec

    def history_list(
        self, id: int, page: int | None = None, per_page: int | None = None
    ) -> RecordSet:
        """Versions of one record, oldest first: rows of hid, _id, ts, user_id."""
        _validate_id(id)
        table = quote_ident(self.history_table)
        sql = (
            f"SELECT hid, {quote_ident('_id')}, ts, user_id FROM {table} "
            f"WHERE {quote_ident('_id')} = ? ORDER BY hid"
        )
        if page is None:
            return RecordSet(self.repo.query(sql, (id,)))
        page = max(int(page), 1)
        per_page = int(per_page) if per_page is not None else self.repo.config.default_per_page
        if per_page < 1:
            raise ArgumentError(f"per_page must be a positive integer, got {per_page!r}")
        total = self.repo.scalar(
            f"SELECT COUNT(*) FROM {table} WHERE {quote_ident('_id')} = ?", (id,)
        )
        rows = self.repo.query(f"{sql} LIMIT ? OFFSET ?", (id, per_page, (page - 1) * per_page))
        return RecordSet(rows, page=page, per_page=per_page, total_count=int(total or 0))

    def history_get(self, hid: int) -> Record:
        _validate_id(hid, "History ID")
        row = self.repo.query_one(
            f"SELECT hid, {quote_ident('_id')}, {quote_ident('_data')}, ts, user_id "
            f"FROM {quote_ident(self.history_table)} WHERE hid = ?",
            (hid,),
        )
        if row is None:
            raise NotFoundError(f"No history entry with HID={hid} in entity {self.name!r}")
        doc = json.loads(row["_data"])
        header = self.header_of(doc)
        self._resolve_relations(doc)
        return Record(
            {
                "_id": row["_id"],
                "_header": header,
                "_ts": datetime.fromtimestamp(row["ts"], tz=timezone.utc),
                "_user": row["user_id"],
            },
            doc,
        )

    # --- Writes ---

    def insert(
        self,
        data: Mapping[str, Any],
        user: int | None = None,
        timestamp: datetime | float | None = None,
    ) -> int:
        """Insert a new record and return its ID.

        Raises ValidationError listing every missing or empty mandatory
        field, and ArgumentError for unknown fields or malformed values.
        """
        doc = self._prepare(data)
        with self.repo.transaction():
            return self._real_insert(doc, _parse_user(user), _parse_timestamp(timestamp))

    def update(
        self,
        id: int,
        data: Mapping[str, Any],
        user: int | None = None,
        timestamp: datetime | float | None = None,
    ) -> bool:
        """Replace record id with data; returns False if nothing changed.

        A write whose canonical document equals the stored one touches no
        table at all, so it adds no history entry.
        """
        _validate_id(id)
        doc = self._prepare(data)
        user_id = _parse_user(user)
        ts = _parse_timestamp(timestamp)
        table = quote_ident(self.name)
        id_col = quote_ident("_id")
        with self.repo.transaction():
            row = self.repo.query_one(
                f"SELECT {quote_ident('_data')} FROM {table} "
                f"WHERE {id_col} = ? AND {quote_ident('_deleted')} = 0",
                (id,),
            )
            if row is None:
                raise NotFoundError(f"No record with ID={id} in entity {self.name!r}")
            if row["_data"] == dump_document(doc):
                logger.debug("Update of %s #%d is a no-op", self.name, id)
                return False

            self.repo.execute(f"DELETE FROM {table} WHERE {id_col} = ?", (id,))
            for rel in self._rels.values():
                if rel.multi:
                    owner_col, _ = rel.link_column_names()
                    self.repo.execute(
                        f"DELETE FROM {quote_ident(rel.link_table)} "
                        f"WHERE {quote_ident(owner_col)} = ?",
                        (id,),
                    )
            self._real_insert(doc, user_id, ts, record_id=id)
        return True

    def delete(self, id: int) -> None:
        """Soft-delete a record; it disappears from get, list and search."""
        _validate_id(id)
        cur = self.repo.execute(
            f"UPDATE {quote_ident(self.name)} SET {quote_ident('_deleted')} = 1 "
            f"WHERE {quote_ident('_id')} = ? AND {quote_ident('_deleted')} = 0",
            (id,),
        )
        if cur.rowcount == 0:
            raise NotFoundError(f"No record with ID={id} in entity {self.name!r}")

    def _real_insert(
        self,
        doc: dict[str, Any],
        user_id: int | None,
        ts: int,
        *,
        record_id: int | None = None,
    ) -> int:
        """Write the row, the history snapshot and the link rows.

        Shared by insert and update so both always write the same way.
        """
        doc_json = dump_document(doc)
        cols: dict[str, Any] = {}
        if record_id is not None:
            cols["_id"] = record_id
        cols["_data"] = doc_json
        for attr in self._attrs.values():
            if attr.indexed and attr.name in doc:
                cols[attr.name] = attr.sql_value(doc[attr.name])
        for rel in self._rels.values():
            if not rel.multi and rel.name in doc:
                cols[rel.name] = doc[rel.name]

        names = ", ".join(quote_ident(c) for c in cols)
        placeholders = ", ".join("?" for _ in cols)
        cur = self.repo.execute(
            f"INSERT INTO {quote_ident(self.name)} ({names}) VALUES ({placeholders})",
            list(cols.values()),
        )
        new_id = record_id if record_id is not None else cur.lastrowid
        if new_id is None:
            raise InternalError(f"Insert into {self.name!r} returned no row id")

        self.repo.execute(
            f"INSERT INTO {quote_ident(self.history_table)} "
            f"({quote_ident('_id')}, {quote_ident('_data')}, ts, user_id) VALUES (?, ?, ?, ?)",
            (new_id, doc_json, ts, user_id),
        )

        for rel in self._rels.values():
            if not rel.multi or rel.name not in doc:
                continue
            owner_col, target_col = (quote_ident(c) for c in rel.link_column_names())
            for target_id in doc[rel.name]:
                self.repo.execute(
                    f"INSERT INTO {quote_ident(rel.link_table)} ({owner_col}, {target_col}) "
                    "VALUES (?, ?)",
                    (new_id, target_id),
                )
        return new_id

    # --- Canonical / presentation forms ---

    def _prepare(self, data: Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(data, Mapping):
            raise ArgumentError(f"Record data must be a mapping, got {type(data).__name__}")
        doc = self.canonicalize(data)
        self.check_mandatories(doc)
        return doc

    def canonicalize(self, data: Mapping[str, Any]) -> dict[str, Any]:
        """Convert presentation form into canonical form.

        Synthetic keys are dropped, absent values removed, and relation
        values reduced to a target id (single) or list of ids (multi).
        Unknown fields raise ArgumentError.
        """
        doc: dict[str, Any] = {}
        for key, value in data.items():
            if key in SYNTHETIC_KEYS:
                continue
            attr = self._attrs.get(key)
            if attr is not None:
                if value is not None:
                    attr.validate(value)
                    doc[key] = value
                continue
            rel = self._rels.get(key)
            if rel is not None:
                canon = self._canonical_relation_value(rel, value)
                if canon is not None:
                    doc[key] = canon
                continue
            raise ArgumentError(f"Unknown argument {key!r} for entity {self.name!r}")
        return doc

    def _canonical_relation_value(self, rel: Relation, value: Any) -> Any:
        if value is None:
            return None
        if rel.multi:
            if not isinstance(value, (list, tuple)):
                raise ArgumentError(
                    f"Relation {rel.name!r} is multi, expected a list of IDs, got {value!r}"
                )
            ids: list[int] = []
            for v in value:
                target_id = self._parse_presentation_id(rel, v)
                if target_id not in ids:
                    ids.append(target_id)
            return ids or None
        if isinstance(value, (list, tuple)):
            if len(value) == 0:
                return None
            if len(value) > 1:
                raise ArgumentError(
                    f"Relation {rel.name!r} is single, but got {len(value)} values"
                )
            value = value[0]
        return self._parse_presentation_id(rel, value)

    @staticmethod
    def _parse_presentation_id(rel: Relation, value: Any) -> int:
        if isinstance(value, Mapping):
            target_id = value.get("_id")
            if target_id is None:
                raise ArgumentError(f"Unable to parse value for relation {rel.name!r}: {value!r}")
        else:
            target_id = value
        if not isinstance(target_id, int) or isinstance(target_id, bool):
            raise ArgumentError(
                f"Invalid type in value for relation {rel.name!r}: "
                f"expected integer, got {target_id!r}"
            )
        return target_id

    def check_mandatories(self, doc: Mapping[str, Any]) -> None:
        """Raise ValidationError listing every missing or empty mandatory field."""
        errors: list[str] = []
        for attr in self._attrs.values():
            if not attr.mandatory:
                continue
            if attr.name not in doc:
                errors.append(f"Mandatory attribute {attr.name!r} is missing")
            elif attr.is_empty(doc[attr.name]):
                errors.append(f"Mandatory attribute {attr.name!r} is empty")
        for rel in self._rels.values():
            if rel.mandatory and rel.name not in doc:
                errors.append(f"Mandatory relation {rel.name!r} is missing")
        if errors:
            raise ValidationError(errors)

    def _resolve_relations(self, doc: dict[str, Any]) -> None:
        """Replace relation ids in doc with {_id, _header} stubs, in place."""
        for rel in self._rels.values():
            value = doc.get(rel.name)
            if value is None or value == []:
                continue
            ids: Sequence[int] = value if isinstance(value, list) else [value]
            stubs = self._relation_stubs(rel, ids)
            if rel.multi:
                doc[rel.name] = stubs
            else:
                doc[rel.name] = stubs[0] if stubs else None

    def _relation_stubs(self, rel: Relation, ids: Sequence[int]) -> list[dict[str, Any]]:
        if self._registry is None:
            raise InternalError(f"Entity {self.name!r} is not bound to an engine")
        target = self._registry.entity_or_fail(rel.target)
        placeholders = ", ".join("?" for _ in ids)
        rows = self.repo.query(
            f"SELECT {quote_ident('_id')}, {target.header_expression()} AS _header "
            f"FROM {quote_ident(target.name)} WHERE {quote_ident('_id')} IN ({placeholders})",
            list(ids),
        )
        by_id = {row["_id"]: row["_header"] for row in rows}
        return [{"_id": i, "_header": by_id[i]} for i in ids if i in by_id]
