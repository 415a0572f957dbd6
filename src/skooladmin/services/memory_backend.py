from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from uuid import uuid4

from skooladmin.services.storage_backend import (
    Predicate,
    RelationalBackend,
    StorageBackendError,
    filter_rows,
    sort_rows,
)


class InMemoryBackend(RelationalBackend):
    """Process-local tables keyed by row id. Used for tests and local runs."""

    def __init__(self, tables: Optional[Mapping[str, Iterable[Dict[str, Any]]]] = None) -> None:
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.select_calls = 0
        self.write_calls = 0
        self._lock = asyncio.Lock()
        for table, rows in (tables or {}).items():
            self.seed(table, rows)

    def new_id(self) -> str:
        return str(uuid4())

    def seed(self, table: str, rows: Iterable[Dict[str, Any]]) -> None:
        bucket = self.tables.setdefault(table, {})
        for row in rows:
            row = dict(row)
            row.setdefault("id", self.new_id())
            bucket[str(row["id"])] = row

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(row) for row in self.tables.get(table, {}).values()]

    async def select(self, request):
        self.select_calls += 1
        return await super().select(request)

    async def _load_rows(
        self,
        table: str,
        filters: Tuple[Predicate, ...],
        order_by: Optional[str] = None,
        ascending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        rows = sort_rows(filter_rows(self.rows(table), filters), order_by, ascending)
        return rows if limit is None else rows[:limit]

    async def _insert_row(self, table: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            self.write_calls += 1
            row = {"id": self.new_id(), "created_at": datetime.now(timezone.utc).isoformat(), **payload}
            bucket = self.tables.setdefault(table, {})
            if str(row["id"]) in bucket:
                raise StorageBackendError(f"duplicate key value violates unique constraint on {table}.id")
            bucket[str(row["id"])] = row
            return copy.deepcopy(row)

    async def _update_row(self, table: str, row_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            self.write_calls += 1
            row = self.tables.get(table, {}).get(str(row_id))
            if row is None:
                raise StorageBackendError(f"{table} update matched no rows for id {row_id}")
            row.update(payload)
            return copy.deepcopy(row)

    async def _delete_row(self, table: str, row_id: str) -> None:
        async with self._lock:
            self.write_calls += 1
            self.tables.get(table, {}).pop(str(row_id), None)
