from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional, Set

from skooladmin.config.settings import settings
from skooladmin.core.errors import ValidationError
from skooladmin.core.invalidation import MUTATION_KINDS, invalidation_prefixes
from skooladmin.core.keys import QueryKey
from skooladmin.services.query_executor import QueryExecutor
from skooladmin.services.school_queries import Operation, get_operation
from skooladmin.services.storage_backend import RelationalBackend
from skooladmin.state.cache_store import CacheEntry, CacheStore, EntryStatus, Listener, Subscription


logger = logging.getLogger(__name__)


def build_backend(kind: Optional[str] = None) -> RelationalBackend:
    kind = (kind or settings.backend).lower()
    if kind == "memory":
        from skooladmin.services.memory_backend import InMemoryBackend

        return InMemoryBackend()
    if kind == "appwrite":
        from skooladmin.services.appwrite_backend import AppwriteBackend

        return AppwriteBackend.from_settings()
    raise ValueError(f"Unsupported backend: {kind}. Use appwrite or memory.")


class QueryObserver:
    """A presentation-side view onto one cache entry."""

    def __init__(self, client: "QueryClient", operation: Operation, args: tuple) -> None:
        self._client = client
        self._operation = operation
        self._args = args
        self.key: QueryKey = operation.key(*args)
        self.enabled = operation.is_enabled(*args)

    @property
    def entry(self) -> CacheEntry:
        entry = self._client.store.get(self.key)
        return entry if entry is not None else CacheEntry(self.key)

    @property
    def status(self) -> EntryStatus:
        return self.entry.status

    @property
    def data(self) -> Any:
        return self.entry.data

    @property
    def error(self) -> Optional[BaseException]:
        return self.entry.error

    @property
    def is_stale(self) -> bool:
        return self.entry.is_stale

    def _fetcher(self):
        return self._operation(self._client.executor, *self._args)

    def subscribe(self, listener: Listener) -> Subscription:
        """Start delivering entry transitions and, if enabled, make sure the data is loaded."""
        subscription = self._client.store.subscribe(self.key, listener)
        if self.enabled:
            self._client._track(asyncio.get_running_loop().create_task(self._load_quietly()))
        return subscription

    async def _load_quietly(self) -> None:
        await self._client.store.ensure_fresh(self.key, self._fetcher, self._client.stale_seconds)

    async def fetch(self) -> Any:
        if not self.enabled:
            raise ValidationError(f"{self.key} is missing {', '.join(self._operation.required())}")
        self._client.store.collect_garbage()
        entry = await self._client.store.ensure_fresh(self.key, self._fetcher, self._client.stale_seconds)
        return _result(entry)

    async def refetch(self) -> Any:
        if not self.enabled:
            raise ValidationError(f"{self.key} is missing {', '.join(self._operation.required())}")
        task = self._client.store.start_fetch(self.key, self._fetcher)
        await asyncio.shield(task)
        return _result(self._client.store.read(self.key))


def _result(entry: CacheEntry) -> Any:
    if entry.status is EntryStatus.ERROR and entry.error is not None:
        raise entry.error
    return entry.data


class QueryClient:
    def __init__(
        self,
        executor: QueryExecutor,
        store: Optional[CacheStore] = None,
        *,
        stale_seconds: Optional[float] = None,
    ) -> None:
        self.executor = executor
        self.stale_seconds = settings.stale_seconds if stale_seconds is None else stale_seconds
        self.store = store or CacheStore(stale_seconds=self.stale_seconds, gc_seconds=settings.gc_seconds)
        self._background: Set["asyncio.Task[Any]"] = set()

    @classmethod
    def from_settings(cls) -> "QueryClient":
        return cls(QueryExecutor(build_backend()))

    def query(self, table: str, operation: str = "all", *params: Any) -> QueryObserver:
        return QueryObserver(self, get_operation(table, operation), params)

    async def fetch(self, table: str, operation: str = "all", *params: Any) -> Any:
        return await self.query(table, operation, *params).fetch()

    async def mutate(
        self,
        table: str,
        kind: str,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        id: Optional[str] = None,
    ) -> Any:
        if kind not in MUTATION_KINDS:
            raise ValidationError(f"Unsupported mutation {kind!r}; expected one of {', '.join(MUTATION_KINDS)}")
        prefixes = invalidation_prefixes(table)
        self.store.collect_garbage()

        try:
            if kind == "insert":
                result = await self.executor.insert(table, payload or {})
            elif kind == "update":
                result = await self.executor.update(table, id, payload or {})
            else:
                result = await self.executor.delete(table, id)
        except Exception:
            logger.warning("%s on %s failed; cache left untouched", kind, table)
            raise

        for prefix in prefixes:
            for task in self.store.invalidate(prefix):
                self._track(task)
        return result

    def _track(self, task: "asyncio.Task[Any]") -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_idle(self) -> None:
        """Wait for background loads and invalidation refetches to settle."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        await self.store.close()
        await self.executor.backend.close()

    async def __aenter__(self) -> "QueryClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

