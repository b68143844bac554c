"""Query builders: ListQuery (one entity) and SearchQuery (across relations)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from docstore.errors import ArgumentError, InternalError
from docstore.filters import Comparison, Condition, Membership, compile_condition, parse_condition
from docstore.records import RecordSet
from docstore.storage import quote_ident

if TYPE_CHECKING:
    from docstore.entity import Entity
    from docstore.relation import Relation
    from docstore.storage import Repository

_identity: Callable[[Any], Any] = lambda v: v  # noqa: E731


class _PagedQuery(ABC):
    """Shared paging and execution for the query builders."""

    _repo: Repository

    def _init_paging(self, page: int | None, per_page: int | None) -> None:
        self.page: int | None = None
        self.per_page: int | None = None
        if page is None:
            return
        self.page = max(int(page), 1)
        self.per_page = int(per_page) if per_page is not None else self._repo.config.default_per_page
        if self.per_page < 1:
            raise ArgumentError(f"per_page must be a positive integer, got {per_page!r}")

    @property
    @abstractmethod
    def sql(self) -> str: ...

    @property
    @abstractmethod
    def params(self) -> list[Any]: ...

    @abstractmethod
    def count(self) -> int: ...

    def run(self) -> RecordSet:
        if self.page is None or self.per_page is None:
            return RecordSet(self._repo.query(self.sql, self.params))
        total = self.count()
        rows = self._repo.query(
            f"{self.sql} LIMIT ? OFFSET ?",
            [*self.params, self.per_page, (self.page - 1) * self.per_page],
        )
        return RecordSet(rows, page=self.page, per_page=self.per_page, total_count=total)


class ListQuery(_PagedQuery):
    """Compiles list options for a single entity into SQL.

    Options:

    * fields - projection; defaults to the id and every materialized column.
      The synthesized header (``_header``) and the JSON document
      (``_data_0``) are always appended.
    * where - mapping of field name to condition (see docstore.filters);
      keys are indexed attributes, single relations, ``_id`` or multi
      relations (matched through their link table).
    * order_by - a name or list of names; declared attributes are quoted,
      anything else is used as a raw SQL expression. Defaults to the
      header fields.
    * page / per_page - 1-based page number and page size.
    * resolve - left-join the targets of all single relations, aliased by
      relation name, so fields like ``"source.name"`` can be projected.
    * deleted - include soft-deleted rows.
    """

    def __init__(
        self,
        entity: Entity,
        *,
        fields: Sequence[str] | None = None,
        where: Mapping[str, Any] | None = None,
        order_by: str | Sequence[str] | None = None,
        page: int | None = None,
        per_page: int | None = None,
        resolve: bool = False,
        deleted: bool = False,
    ) -> None:
        self._entity = entity
        self._repo = entity.repo
        self._table = quote_ident(entity.name)
        self._joins: list[str] = []
        self._distinct = False
        self._where_params: list[Any] = []
        self._init_paging(page, per_page)

        if resolve:
            self._generate_resolve_joins()
        self.where_sql = self._generate_where(where or {}, deleted)
        self.fields = self._generate_fields(fields)
        self.order_by_sql = self._generate_order_by(order_by)

    # --- Compiled pieces ---

    @property
    def tables(self) -> str:
        return " ".join([self._table, *self._joins])

    @property
    def sql(self) -> str:
        distinct = "DISTINCT " if self._distinct else ""
        parts = [f"SELECT {distinct}{', '.join(self.fields)} FROM {self.tables}"]
        if self.where_sql:
            parts.append(self.where_sql)
        parts.append(f"ORDER BY {self.order_by_sql}")
        return " ".join(parts)

    @property
    def params(self) -> list[Any]:
        return list(self._where_params)

    def _count_expr(self) -> str:
        if self._distinct:
            return f"COUNT(DISTINCT {self._table}.{quote_ident('_id')})"
        return "COUNT(*)"

    # --- Execution ---

    def count(self) -> int:
        sql = f"SELECT {self._count_expr()} FROM {self.tables}"
        if self.where_sql:
            sql += f" {self.where_sql}"
        return int(self._repo.scalar(sql, self._where_params) or 0)

    def group_count(self, field: str) -> dict[Any, int]:
        """Count rows per distinct value of an indexed attribute or single relation."""
        column, _ = self._field_column(field, for_group=True)
        sql = f"SELECT {column} AS k, {self._count_expr()} AS cnt FROM {self.tables}"
        if self.where_sql:
            sql += f" {self.where_sql}"
        sql += f" GROUP BY {column} ORDER BY {column}"
        return {row["k"]: row["cnt"] for row in self._repo.query(sql, self._where_params)}

    # --- Generation ---

    def _generate_fields(self, fields: Sequence[str] | None) -> list[str]:
        if fields is None:
            result = [f"{self._table}.{quote_ident('_id')}"]
            for attr in self._entity.attributes:
                if attr.indexed:
                    result.append(f"{self._table}.{quote_ident(attr.name)}")
            for rel in self._entity.relations:
                if not rel.multi:
                    result.append(f"{self._table}.{quote_ident(rel.name)}")
        elif isinstance(fields, str):
            result = [fields]
        else:
            result = list(fields)
        result.append(f"{self._entity.header_expression()} AS _header")
        result.append(f"{self._table}.{quote_ident('_data')} AS _data_0")
        return result

    def _generate_resolve_joins(self) -> None:
        for rel in self._entity.relations:
            if rel.multi:
                raise ArgumentError(
                    f"Unable to resolve multi relation {rel.name!r} in a list query"
                )
            if rel.name == self._entity.name:
                # alias would shadow the base table
                continue
            target = quote_ident(rel.target)
            alias = quote_ident(rel.name)
            self._joins.append(
                f"LEFT JOIN {target} AS {alias} "
                f"ON {self._table}.{alias} = {alias}.{quote_ident('_id')}"
            )

    def _link_join(self, rel: Relation) -> str:
        alias = quote_ident(f"_link_{rel.name}")
        owner_col, target_col = rel.link_column_names()
        self._joins.append(
            f"LEFT JOIN {quote_ident(rel.link_table)} AS {alias} "
            f"ON {self._table}.{quote_ident('_id')} = {alias}.{quote_ident(owner_col)}"
        )
        self._distinct = True
        return f"{alias}.{quote_ident(target_col)}"

    def _field_column(
        self, name: str, *, for_group: bool = False
    ) -> tuple[str, Callable[[Any], Any]]:
        if name == "_id":
            return f"{self._table}.{quote_ident('_id')}", _identity
        attr = self._entity.attr(name)
        if attr is not None:
            if not attr.indexed:
                raise ArgumentError(f"Field {name!r} is not indexed")
            return f"{self._table}.{quote_ident(name)}", attr.where_value
        rel = self._entity.rel(name)
        if rel is not None:
            if not rel.multi:
                return f"{self._table}.{quote_ident(name)}", _identity
            if for_group:
                raise ArgumentError(f"Unable to group by multi relation {name!r}")
            return self._link_join(rel), _identity
        raise ArgumentError(f"Invalid field name: {name!r}")

    def _generate_where(self, where: Mapping[str, Any], deleted: bool) -> str:
        if not isinstance(where, Mapping):
            raise ArgumentError(f"where must be a mapping, got {where!r}")
        clauses: list[str] = []
        for name, raw in where.items():
            column, to_param = self._field_column(name)
            cond = parse_condition(name, raw)
            clause = compile_condition(column, cond, self._where_params, to_param)
            if clause is not None:
                clauses.append(clause)
        if not deleted:
            clauses.append(f"{self._table}.{quote_ident('_deleted')} = 0")
        return f"WHERE {' AND '.join(clauses)}" if clauses else ""

    def _generate_order_by(self, order_by: str | Sequence[str] | None) -> str:
        if order_by is None:
            exprs = [self._entity.column_sql(a) for a in self._entity.header]
            exprs.append(f"{self._table}.{quote_ident('_id')}")
            return ", ".join(exprs)
        items = [order_by] if isinstance(order_by, str) else list(order_by)
        if not items:
            raise ArgumentError("order_by must not be empty")
        exprs = []
        for item in items:
            attr = self._entity.attr(item)
            if attr is not None:
                exprs.append(self._entity.column_sql(attr))
            elif item == "_id":
                exprs.append(f"{self._table}.{quote_ident('_id')}")
            else:
                exprs.append(item)
        return ", ".join(exprs)


# --- Cross-entity search ---

_SEARCH_OPS = {"eq": "=", "ne": "!=", "lt": "<", "le": "<=", "gt": ">", "ge": ">="}
_LIKE_OPS = {"starts": "{}%", "ends": "%{}", "contains": "%{}%"}


def _like_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass(frozen=True)
class _Edge:
    """One relation hop from an already-joined entity to a new one."""

    relation: Relation
    source: str
    dest: str
    forward: bool


class SearchQuery(_PagedQuery):
    """Search one entity's records, joining related entities as needed.

    Fields and order items are ``entity.field`` references; where is a
    list of ``[entity.field, op, value]`` triples with op one of eq, ne,
    lt, le, gt, ge, starts, ends, contains, in. Every referenced entity is
    joined along the shortest relation path from the searched entity,
    following relations in either direction. Rows come back keyed by the
    references given in fields and are distinct.
    """

    def __init__(
        self,
        entity: Entity,
        *,
        fields: Sequence[str] | None = None,
        where: Sequence[Sequence[Any]] | None = None,
        order: Sequence[str] | None = None,
        page: int | None = None,
        per_page: int | None = None,
        deleted: bool = False,
    ) -> None:
        self._entity = entity
        self._repo = entity.repo
        self._deleted = deleted
        self._where_params: list[Any] = []
        self._joined: set[str] = {entity.name}
        self._joins: list[str] = []
        self._init_paging(page, per_page)
        self._parents = self._explore()

        if fields is None:
            fields = [f"{entity.name}._id"] + [f"{entity.name}.{a.name}" for a in entity.header]
        self.fields = [f"{self._ref_column(ref)} AS {quote_ident(ref)}" for ref in fields]
        self.where_sql = self._generate_where(where or [])
        self.order_by_sql = self._generate_order(order)

    @property
    def tables(self) -> str:
        return " ".join([quote_ident(self._entity.name), *self._joins])

    @property
    def sql(self) -> str:
        parts = [f"SELECT DISTINCT {', '.join(self.fields)} FROM {self.tables}"]
        if self.where_sql:
            parts.append(self.where_sql)
        parts.append(f"ORDER BY {self.order_by_sql}")
        return " ".join(parts)

    @property
    def params(self) -> list[Any]:
        return list(self._where_params)

    def count(self) -> int:
        sql = f"SELECT COUNT(*) FROM ({self.sql})"
        return int(self._repo.scalar(sql, self._where_params) or 0)

    # --- Join planning ---

    def _neighbours(self, name: str) -> list[_Edge]:
        registry = self._entity.registry
        if registry is None:
            raise InternalError(f"Entity {self._entity.name!r} is not bound to an engine")
        ent = registry.entity_or_fail(name)
        edges = []
        for rel in ent.relations:
            if not rel.self_referencing and registry.entity(rel.target) is not None:
                edges.append(_Edge(rel, name, rel.target, True))
        for rel in registry.back_relations(name):
            if not rel.self_referencing:
                edges.append(_Edge(rel, name, rel.entity_name, False))
        return edges

    def _explore(self) -> dict[str, _Edge]:
        """Breadth-first spanning tree of the relation graph from the base entity."""
        parents: dict[str, _Edge] = {}
        seen = {self._entity.name}
        queue = deque([self._entity.name])
        while queue:
            current = queue.popleft()
            for edge in self._neighbours(current):
                if edge.dest in seen:
                    continue
                seen.add(edge.dest)
                parents[edge.dest] = edge
                queue.append(edge.dest)
        return parents

    def _join_entity(self, name: str) -> None:
        if name in self._joined:
            return
        edge = self._parents.get(name)
        if edge is None:
            raise ArgumentError(
                f"Entity {name!r} is not reachable from {self._entity.name!r} through relations"
            )
        self._join_entity(edge.source)

        rel = edge.relation
        src = quote_ident(edge.source)
        dst = quote_ident(edge.dest)
        id_col = quote_ident("_id")
        alive = "" if self._deleted else f" AND {dst}.{quote_ident('_deleted')} = 0"
        if not rel.multi:
            if edge.forward:
                on = f"{dst}.{id_col} = {src}.{quote_ident(rel.name)}"
            else:
                on = f"{dst}.{quote_ident(rel.name)} = {src}.{id_col}"
            self._joins.append(f"LEFT JOIN {dst} ON {on}{alive}")
        else:
            link = quote_ident(rel.link_table)
            owner_col, target_col = (quote_ident(c) for c in rel.link_column_names())
            src_col, dst_col = (owner_col, target_col) if edge.forward else (target_col, owner_col)
            self._joins.append(f"LEFT JOIN {link} ON {link}.{src_col} = {src}.{id_col}")
            self._joins.append(f"LEFT JOIN {dst} ON {dst}.{id_col} = {link}.{dst_col}{alive}")
        self._joined.add(name)

    def _ref_column(self, ref: str) -> str:
        ent_name, sep, field_name = ref.partition(".")
        if not sep or not field_name:
            raise ArgumentError(f"Invalid field reference {ref!r}: expected 'entity.field'")
        registry = self._entity.registry
        ent = self._entity if ent_name == self._entity.name else None
        if ent is None:
            if registry is None or registry.entity(ent_name) is None:
                raise ArgumentError(f"Unknown entity in field reference {ref!r}")
            ent = registry.entity_or_fail(ent_name)
        self._join_entity(ent_name)

        if field_name == "_id":
            return f"{quote_ident(ent_name)}.{quote_ident('_id')}"
        attr = ent.attr(field_name)
        if attr is not None:
            return ent.column_sql(attr)
        rel = ent.rel(field_name)
        if rel is not None and not rel.multi:
            return f"{quote_ident(ent_name)}.{quote_ident(rel.name)}"
        raise ArgumentError(f"Invalid field reference {ref!r}")

    # --- Where / order ---

    def _generate_where(self, where: Sequence[Sequence[Any]]) -> str:
        clauses: list[str] = []
        for entry in where:
            if isinstance(entry, (str, bytes)) or len(entry) != 3:
                raise ArgumentError(f"Invalid search condition {entry!r}: expected [field, op, value]")
            ref, op, value = entry
            column = self._ref_column(ref)
            op = str(op).lower()
            if op in _LIKE_OPS:
                if not isinstance(value, str):
                    raise ArgumentError(f"Operator {op!r} needs a string, got {value!r}")
                self._where_params.append(_LIKE_OPS[op].format(_like_escape(value)))
                clauses.append(f"{column} LIKE ? ESCAPE '\\'")
                continue
            cond: Condition
            if op in _SEARCH_OPS:
                cond = parse_condition(ref, value)
                if not isinstance(cond, Comparison) or cond.op != "=":
                    raise ArgumentError(f"Invalid value {value!r} for operator {op!r}")
                cond = Comparison(_SEARCH_OPS[op], value)
            elif op == "in":
                cond = parse_condition(ref, ["IN", value])
                assert isinstance(cond, Membership)
            else:
                raise ArgumentError(f"Unsupported search operator {op!r}")
            clause = compile_condition(column, cond, self._where_params)
            if clause is not None:
                clauses.append(clause)
        if not self._deleted:
            clauses.append(f"{quote_ident(self._entity.name)}.{quote_ident('_deleted')} = 0")
        return f"WHERE {' AND '.join(clauses)}" if clauses else ""

    def _generate_order(self, order: Sequence[str] | None) -> str:
        if order is None:
            order = [f"{self._entity.name}.{a.name}" for a in self._entity.header]
        exprs = []
        for item in order:
            desc = item.startswith("-")
            column = self._ref_column(item.lstrip("-"))
            exprs.append(f"{column} DESC" if desc else column)
        return ", ".join(exprs) if exprs else f"{quote_ident(self._entity.name)}.{quote_ident('_id')}"
