from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError

from skooladmin.core.errors import NotFound, RemoteError, ValidationError
from skooladmin.core.schema import SCHEMAS, EntityModel, EntitySchema
from skooladmin.services.storage_backend import (
    Predicate,
    Projection,
    RelationalBackend,
    SelectRequest,
    StorageResponse,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Join:
    """Embed a declared relation. ``inner`` drops parents with no matching rows."""

    relation: str
    columns: Tuple[str, ...] = ("*",)
    inner: bool = False


def require_id(table: str, row_id: Optional[str]) -> str:
    if row_id is None or not str(row_id).strip():
        raise ValidationError(f"{table} id is required")
    return str(row_id)


class QueryExecutor:
    """Turns typed requests into backend calls and backend rows into entity models."""

    def __init__(self, backend: RelationalBackend, schemas: Mapping[str, EntitySchema] = SCHEMAS) -> None:
        self.backend = backend
        self.schemas = schemas

    def schema(self, table: str) -> EntitySchema:
        try:
            return self.schemas[table]
        except KeyError as exc:
            raise ValidationError(f"Unknown table: {table}") from exc

    def build_request(
        self,
        table: str,
        filters: Iterable[Predicate] = (),
        joins: Sequence[Join] = (),
        order_by: Optional[str] = None,
        ascending: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> SelectRequest:
        schema = self.schema(table)
        if limit is not None and limit <= 0:
            raise ValidationError("limit must be greater than 0")

        relation_filters: Dict[str, List[Predicate]] = {}
        local_filters: List[Predicate] = []
        joined = {join.relation for join in joins}
        for predicate in filters:
            if predicate.relation is None:
                local_filters.append(predicate)
                continue
            if predicate.relation not in joined:
                raise ValidationError(f"Filter on {predicate.column} needs a join on {predicate.relation}")
            relation_filters.setdefault(predicate.relation, []).append(predicate.local())

        projections = []
        for join in joins:
            relation = schema.relation(join.relation)
            projections.append(
                Projection(
                    relation=relation.name,
                    target=relation.target,
                    many=relation.is_many,
                    local_column=relation.local_column,
                    remote_column=relation.remote_column,
                    columns=tuple(join.columns),
                    inner=join.inner,
                    filters=tuple(relation_filters.get(join.relation, ())),
                )
            )

        if order_by is None:
            order_by = schema.order_by
            if ascending is None:
                ascending = schema.ascending
        elif "." in order_by and order_by.split(".", 1)[0] not in joined:
            raise ValidationError(f"Ordering on {order_by} needs a join on {order_by.split('.', 1)[0]}")

        return SelectRequest(
            table=table,
            joins=tuple(projections),
            filters=tuple(local_filters),
            order_by=order_by,
            ascending=True if ascending is None else ascending,
            limit=limit,
        )

    @staticmethod
    def _unwrap(response: StorageResponse, action: str) -> Any:
        if response.error is not None:
            logger.warning("%s failed: %s", action, response.error)
            raise RemoteError(f"{action} failed: {response.error}", cause=response.error) from response.error
        return response.data

    def _to_entities(self, schema: EntitySchema, rows: Iterable[Mapping[str, Any]]) -> List[EntityModel]:
        try:
            return [schema.to_entity(row) for row in rows]
        except PydanticValidationError as exc:
            raise RemoteError(f"Malformed {schema.table} row from backend", cause=exc) from exc

    async def fetch_list(
        self,
        table: str,
        filters: Iterable[Predicate] = (),
        joins: Sequence[Join] = (),
        order_by: Optional[str] = None,
        ascending: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[EntityModel]:
        request = self.build_request(table, filters, joins, order_by, ascending, limit)
        rows = self._unwrap(await self.backend.select(request), f"select {table}")
        return self._to_entities(self.schema(table), rows or [])

    async def fetch_one(self, table: str, row_id: Optional[str], joins: Sequence[Join] = ()) -> EntityModel:
        schema = self.schema(table)
        row_id = require_id(table, row_id)
        request = self.build_request(table, [Predicate.eq(schema.id_field, row_id)], joins, limit=1)
        rows = self._unwrap(await self.backend.select(request), f"select {table} {row_id}")
        if not rows:
            raise NotFound(table, row_id)
        return self._to_entities(schema, rows[:1])[0]

    async def insert(self, table: str, payload: Mapping[str, Any]) -> EntityModel:
        schema = self.schema(table)
        row = schema.validate_payload(payload)
        created = self._unwrap(await self.backend.insert(table, row), f"insert {table}")
        return self._to_entities(schema, [created])[0]

    async def update(self, table: str, row_id: Optional[str], payload: Mapping[str, Any]) -> EntityModel:
        schema = self.schema(table)
        row_id = require_id(table, row_id)
        row = schema.validate_payload(payload, partial=True)
        updated = self._unwrap(await self.backend.update(table, row_id, row), f"update {table} {row_id}")
        return self._to_entities(schema, [updated])[0]

    async def delete(self, table: str, row_id: Optional[str]) -> None:
        self.schema(table)
        row_id = require_id(table, row_id)
        self._unwrap(await self.backend.delete(table, row_id), f"delete {table} {row_id}")
