import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from appwrite.client import Client
from appwrite.exception import AppwriteException
from appwrite.id import ID
from appwrite.query import Query
from appwrite.services.databases import Databases

from skooladmin.config.settings import settings
from skooladmin.services.storage_backend import (
    FilterOp,
    Predicate,
    RelationalBackend,
    StorageBackendError,
)


logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class AppwriteBackend(RelationalBackend):
    def __init__(
        self,
        endpoint: str,
        project_id: str,
        api_key: str,
        database_id: str,
        collection_ids: Mapping[str, str],
    ) -> None:
        if not endpoint:
            raise StorageBackendError("Missing APPWRITE_ENDPOINT in environment")
        if not project_id:
            raise StorageBackendError("Missing APPWRITE_PROJECT_ID in environment")
        if not api_key:
            raise StorageBackendError("Missing APPWRITE_API_KEY in environment")
        if not database_id:
            raise StorageBackendError("Missing APPWRITE_DATABASE_ID in environment")

        self.database_id = database_id
        self.collection_ids = dict(collection_ids)

        client = Client()
        client.set_endpoint(endpoint.rstrip("/"))
        client.set_project(project_id)
        client.set_key(api_key)

        self.db = Databases(client)

    @classmethod
    def from_settings(cls) -> "AppwriteBackend":
        return cls(
            endpoint=settings.appwrite_endpoint,
            project_id=settings.appwrite_project_id,
            api_key=settings.appwrite_api_key,
            database_id=settings.appwrite_database_id,
            collection_ids=settings.collection_ids(),
        )

    def _collection(self, table: str) -> str:
        try:
            return self.collection_ids[table]
        except KeyError as exc:
            raise StorageBackendError(f"No Appwrite collection configured for {table}") from exc

    @staticmethod
    def _attribute(column: str) -> str:
        if column == "id":
            return "$id"
        if column == "created_at":
            return "$createdAt"
        return column

    @classmethod
    def _to_query(cls, predicate: Predicate) -> str:
        attribute = cls._attribute(predicate.column)
        if predicate.op is FilterOp.EQ:
            return Query.equal(attribute, [predicate.value])
        if predicate.op is FilterOp.NEQ:
            return Query.not_equal(attribute, predicate.value)
        if predicate.op is FilterOp.IN:
            return Query.equal(attribute, list(predicate.value))
        if predicate.op is FilterOp.IS_NULL:
            return Query.is_null(attribute)
        return Query.is_not_null(attribute)

    @staticmethod
    def _from_document(document: Dict[str, Any]) -> Dict[str, Any]:
        row = {key: value for key, value in document.items() if not key.startswith("$")}
        row["id"] = document.get("$id")
        row.setdefault("created_at", document.get("$createdAt"))
        return row

    def _list_documents(self, collection_id: str, queries: List[str]) -> List[Dict]:
        try:
            result = self.db.list_documents(self.database_id, collection_id, queries=queries)
            return list(result.get("documents", []))
        except AppwriteException as exc:
            raise StorageBackendError(str(exc)) from exc

    def _list_all(self, collection_id: str, queries: List[str], limit: Optional[int]) -> List[Dict]:
        documents: List[Dict] = []
        while True:
            page_size = PAGE_SIZE if limit is None else min(PAGE_SIZE, limit - len(documents))
            page = self._list_documents(
                collection_id,
                [*queries, Query.limit(page_size), Query.offset(len(documents))],
            )
            documents.extend(page)
            if len(page) < page_size or (limit is not None and len(documents) >= limit):
                return documents

    async def _load_rows(
        self,
        table: str,
        filters: Tuple[Predicate, ...],
        order_by: Optional[str] = None,
        ascending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        queries = [self._to_query(predicate) for predicate in filters]
        if order_by:
            attribute = self._attribute(order_by)
            queries.append(Query.order_asc(attribute) if ascending else Query.order_desc(attribute))
        if limit is not None and limit <= 0:
            return []

        logger.debug("Listing %s with %d queries", table, len(queries))
        documents = await asyncio.to_thread(self._list_all, self._collection(table), queries, limit)
        return [self._from_document(document) for document in documents]

    async def _insert_row(self, table: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = {key: value for key, value in payload.items() if key != "id"}
        document_id = payload.get("id") or ID.unique()
        try:
            document = await asyncio.to_thread(
                self.db.create_document, self.database_id, self._collection(table), document_id, data
            )
        except AppwriteException as exc:
            raise StorageBackendError(str(exc)) from exc
        return self._from_document(document)

    async def _update_row(self, table: str, row_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            document = await asyncio.to_thread(
                self.db.update_document, self.database_id, self._collection(table), row_id, payload
            )
        except AppwriteException as exc:
            raise StorageBackendError(str(exc)) from exc
        return self._from_document(document)

    async def _delete_row(self, table: str, row_id: str) -> None:
        try:
            await asyncio.to_thread(self.db.delete_document, self.database_id, self._collection(table), row_id)
        except AppwriteException as exc:
            if exc.code == 404:
                logger.debug("Delete of missing %s %s ignored", table, row_id)
                return
            raise StorageBackendError(str(exc)) from exc
