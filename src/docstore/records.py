"""Result wrappers: Record (one row) and RecordSet (a page of rows)."""

from __future__ import annotations

import json
import math
from collections.abc import Callable, Iterator, Mapping
from typing import Any, TypeVar, overload

T = TypeVar("T")

# Columns holding the serialized document; hidden from the record's keys.
BLOB_COLUMNS = ("_data_0", "_data")


class Record(Mapping[str, Any]):
    """Read-only view over a result row.

    Materialized columns are served straight from the row; everything else
    comes from the JSON document, decoded on first access. When a key is
    both a row column and a document key, the row column wins, in item
    access and in to_dict alike, so a record reads the way it was queried.
    """

    def __init__(self, row: Mapping[str, Any], data: Mapping[str, Any] | None = None) -> None:
        self._row = dict(row)
        self._data: dict[str, Any] | None = dict(data) if data is not None else None
        self._merged: dict[str, Any] | None = None

    @property
    def data(self) -> dict[str, Any]:
        if self._data is None:
            for col in BLOB_COLUMNS:
                blob = self._row.get(col)
                if blob is not None:
                    self._data = json.loads(blob)
                    break
            else:
                self._data = {}
        return self._data

    @property
    def id(self) -> int | None:
        return self._row.get("_id")

    @property
    def header(self) -> str | None:
        return self._row.get("_header")

    def to_dict(self) -> dict[str, Any]:
        if self._merged is None:
            merged = {k: v for k, v in self._row.items() if k not in BLOB_COLUMNS}
            for k, v in self.data.items():
                merged.setdefault(k, v)
            self._merged = merged
        return self._merged

    def __getitem__(self, key: str) -> Any:
        if key in self._row and key not in BLOB_COLUMNS:
            return self._row[key]
        return self.data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.to_dict())

    def __len__(self) -> int:
        return len(self.to_dict())

    def __repr__(self) -> str:
        return f"Record({self.to_dict()!r})"


class RecordSet:
    """Rows of one query, wrapped lazily as Records, with paging metadata."""

    def __init__(
        self,
        rows: list[Mapping[str, Any]],
        *,
        page: int | None = None,
        per_page: int | None = None,
        total_count: int | None = None,
    ) -> None:
        self._rows = rows
        self.current_page = page
        self.per_page = per_page
        self._total_count = total_count

    @property
    def total_count(self) -> int:
        if self._total_count is None:
            return len(self._rows)
        return self._total_count

    @property
    def total_pages(self) -> int:
        if not self.per_page:
            return 1
        return math.ceil(self.total_count / self.per_page)

    def __iter__(self) -> Iterator[Record]:
        for row in self._rows:
            yield Record(row)

    def __len__(self) -> int:
        return len(self._rows)

    @overload
    def __getitem__(self, index: int) -> Record: ...

    @overload
    def __getitem__(self, index: slice) -> list[Record]: ...

    def __getitem__(self, index: int | slice) -> Record | list[Record]:
        if isinstance(index, slice):
            return [Record(row) for row in self._rows[index]]
        return Record(self._rows[index])

    def first(self) -> Record | None:
        return Record(self._rows[0]) if self._rows else None

    def last(self) -> Record | None:
        return Record(self._rows[-1]) if self._rows else None

    def map(self, fn: Callable[[Record], T]) -> list[T]:
        return [fn(rec) for rec in self]

    def to_list(self) -> list[Record]:
        return list(self)

    def __repr__(self) -> str:
        return (
            f"RecordSet(rows={len(self._rows)}, page={self.current_page}, "
            f"total_pages={self.total_pages})"
        )
