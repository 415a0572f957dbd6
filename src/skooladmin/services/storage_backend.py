from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


class StorageBackendError(Exception):
    pass


class FilterOp(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    IN = "in"
    IS_NULL = "is_null"
    NOT_NULL = "not_null"


@dataclass(frozen=True)
class Predicate:
    column: str
    op: FilterOp
    value: Any = None

    @classmethod
    def eq(cls, column: str, value: Any) -> "Predicate":
        return cls(column, FilterOp.EQ, value)

    @classmethod
    def neq(cls, column: str, value: Any) -> "Predicate":
        return cls(column, FilterOp.NEQ, value)

    @classmethod
    def is_in(cls, column: str, values: Iterable[Any]) -> "Predicate":
        return cls(column, FilterOp.IN, tuple(values))

    @classmethod
    def is_null(cls, column: str) -> "Predicate":
        return cls(column, FilterOp.IS_NULL)

    @classmethod
    def not_null(cls, column: str) -> "Predicate":
        return cls(column, FilterOp.NOT_NULL)

    @property
    def relation(self) -> Optional[str]:
        head, sep, _ = self.column.partition(".")
        return head if sep else None

    def local(self) -> "Predicate":
        """Same predicate with any ``relation.`` prefix removed."""
        return Predicate(self.column.split(".", 1)[-1], self.op, self.value)

    def matches(self, row: Dict[str, Any]) -> bool:
        value = row.get(self.column)
        if self.op is FilterOp.EQ:
            return value == self.value
        if self.op is FilterOp.NEQ:
            return value != self.value
        if self.op is FilterOp.IN:
            return value in self.value
        if self.op is FilterOp.IS_NULL:
            return value is None
        return value is not None


@dataclass(frozen=True)
class Projection:
    """A nested relation to embed in each parent row."""

    relation: str
    target: str
    many: bool
    local_column: str
    remote_column: str
    columns: Tuple[str, ...] = ("*",)
    inner: bool = False
    filters: Tuple[Predicate, ...] = ()


@dataclass(frozen=True)
class SelectRequest:
    table: str
    columns: Tuple[str, ...] = ("*",)
    joins: Tuple[Projection, ...] = ()
    filters: Tuple[Predicate, ...] = ()
    order_by: Optional[str] = None
    ascending: bool = True
    limit: Optional[int] = None


@dataclass
class StorageResponse:
    data: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _project(row: Dict[str, Any], columns: Tuple[str, ...]) -> Dict[str, Any]:
    if "*" in columns:
        return dict(row)
    return {name: row.get(name) for name in columns}


class RelationalBackend(ABC):
    """
    Storage contract shared by every backend. Subclasses only know how to load
    and write flat rows of one table; relation embedding, inner-join filtering,
    ordering and limits are done here.
    """

    @abstractmethod
    async def _load_rows(
        self,
        table: str,
        filters: Tuple[Predicate, ...],
        order_by: Optional[str] = None,
        ascending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def _insert_row(self, table: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def _update_row(self, table: str, row_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def _delete_row(self, table: str, row_id: str) -> None:
        ...

    async def close(self) -> None:
        return None

    async def select(self, request: SelectRequest) -> StorageResponse:
        try:
            rows = await self._select(request)
        except StorageBackendError as exc:
            return StorageResponse(error=exc)
        return StorageResponse(data=rows)

    async def insert(self, table: str, payload: Dict[str, Any]) -> StorageResponse:
        try:
            return StorageResponse(data=await self._insert_row(table, dict(payload)))
        except StorageBackendError as exc:
            return StorageResponse(error=exc)

    async def update(self, table: str, row_id: str, payload: Dict[str, Any]) -> StorageResponse:
        try:
            return StorageResponse(data=await self._update_row(table, row_id, dict(payload)))
        except StorageBackendError as exc:
            return StorageResponse(error=exc)

    async def delete(self, table: str, row_id: str) -> StorageResponse:
        try:
            await self._delete_row(table, row_id)
        except StorageBackendError as exc:
            return StorageResponse(error=exc)
        return StorageResponse(data=None)

    async def _select(self, request: SelectRequest) -> List[Dict[str, Any]]:
        local_order = request.order_by is not None and "." not in request.order_by
        pushdown = not any(join.inner for join in request.joins) and (local_order or request.order_by is None)

        if pushdown:
            rows = await self._load_rows(
                request.table, request.filters, request.order_by, request.ascending, request.limit
            )
        else:
            rows = await self._load_rows(request.table, request.filters)

        for join in request.joins:
            rows = await self._embed(rows, join)

        if not pushdown:
            if request.order_by:
                rows = self._sorted(rows, request.order_by, request.ascending)
            if request.limit is not None:
                rows = rows[: request.limit]

        return [
            {**_project(row, request.columns), **{join.relation: row[join.relation] for join in request.joins}}
            for row in rows
        ]

    async def _embed(self, rows: List[Dict[str, Any]], join: Projection) -> List[Dict[str, Any]]:
        keys = sorted({row[join.local_column] for row in rows if row.get(join.local_column) is not None})
        related: Dict[Any, List[Dict[str, Any]]] = {}
        if keys:
            children = await self._load_rows(
                join.target,
                (Predicate.is_in(join.remote_column, keys), *join.filters),
            )
            for child in children:
                related.setdefault(child.get(join.remote_column), []).append(child)

        embedded: List[Dict[str, Any]] = []
        for row in rows:
            matches = related.get(row.get(join.local_column), [])
            if join.inner and not matches:
                continue
            row = dict(row)
            if join.many:
                row[join.relation] = [_project(child, join.columns) for child in matches]
            else:
                row[join.relation] = _project(matches[0], join.columns) if matches else None
            embedded.append(row)
        return embedded

    @staticmethod
    def _sorted(rows: List[Dict[str, Any]], order_by: str, ascending: bool) -> List[Dict[str, Any]]:
        relation, _, column = order_by.rpartition(".")

        def value(row: Dict[str, Any]) -> Any:
            source = row.get(relation) if relation else row
            return source.get(column) if isinstance(source, dict) else None

        # nulls sort last in both directions
        present = [row for row in rows if value(row) is not None]
        missing = [row for row in rows if value(row) is None]
        present.sort(key=value, reverse=not ascending)
        return present + missing


def sort_rows(rows: List[Dict[str, Any]], order_by: Optional[str], ascending: bool = True) -> List[Dict[str, Any]]:
    if not order_by:
        return list(rows)
    return RelationalBackend._sorted(rows, order_by, ascending)


def filter_rows(rows: Iterable[Dict[str, Any]], filters: Tuple[Predicate, ...]) -> List[Dict[str, Any]]:
    return [row for row in rows if all(predicate.matches(row) for predicate in filters)]
