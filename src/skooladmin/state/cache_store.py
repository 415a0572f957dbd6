"""Keyed query cache with single-flight fetches and issue-order guarantees.

All state lives on one event loop; nothing here is thread-safe.

Every fetch started for a key gets a generation number. A response is applied
only if its generation is newer than the last applied one, so a slow, older
response can never overwrite a newer result. Errors from a fetch that has
already been superseded are dropped.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional

from skooladmin.core.keys import KeyPrefix, QueryKey


logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]
Listener = Callable[["CacheEntry"], None]


class EntryStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(eq=False)
class CacheEntry:
    key: QueryKey
    status: EntryStatus = EntryStatus.IDLE
    data: Any = None
    error: Optional[BaseException] = None
    updated_at: Optional[float] = None
    is_stale: bool = False
    subscriber_count: int = 0
    fetcher: Optional[Fetcher] = field(default=None, repr=False)

    listeners: List[Listener] = field(default_factory=list, init=False, repr=False)
    task: Optional["asyncio.Task[None]"] = field(default=None, init=False, repr=False)
    issued: int = field(default=0, init=False, repr=False)
    applied: int = field(default=0, init=False, repr=False)
    invalidated: int = field(default=0, init=False, repr=False)
    settled_at: Optional[float] = field(default=None, init=False, repr=False)
    evict_when_settled: bool = field(default=False, init=False, repr=False)

    @property
    def is_fetching(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def is_joinable(self) -> bool:
        """An in-flight fetch that was issued after the last invalidation."""
        return self.is_fetching and self.issued > self.invalidated

    def age(self, now: float) -> Optional[float]:
        if self.updated_at is None:
            return None
        return now - self.updated_at

    def is_fresh(self, stale_ttl: float, now: float) -> bool:
        age = self.age(now)
        return self.status is EntryStatus.SUCCESS and not self.is_stale and age is not None and age < stale_ttl


class Subscription:
    def __init__(self, store: "CacheStore", entry: CacheEntry, listener: Listener) -> None:
        self._store = store
        self._entry = entry
        self._listener = listener
        self.active = True

    @property
    def key(self) -> QueryKey:
        return self._entry.key

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._store._release(self._entry, self._listener)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()


class CacheStore:
    def __init__(
        self,
        *,
        stale_seconds: float = 0.0,
        gc_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stale_seconds = stale_seconds
        self.gc_seconds = gc_seconds
        self._clock = clock
        self._entries: Dict[QueryKey, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[CacheEntry]:
        return iter(list(self._entries.values()))

    def get(self, key: QueryKey) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def read(self, key: QueryKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key)
            self._entries[key] = entry
        return entry

    async def ensure_fresh(self, key: QueryKey, fetcher: Fetcher, stale_ttl: Optional[float] = None) -> CacheEntry:
        """
        Return the entry for ``key`` once it holds a settled result.
        Fresh successes are served as-is; an in-flight fetch is joined instead
        of issuing another one, unless it was issued before an invalidation.
        """
        entry = self.read(key)
        entry.fetcher = fetcher
        ttl = self.stale_seconds if stale_ttl is None else stale_ttl

        if not entry.is_joinable and not entry.is_fresh(ttl, self._clock()):
            self._start(entry, fetcher)
        while entry.is_fetching:
            await asyncio.shield(entry.task)
        return entry

    def start_fetch(self, key: QueryKey, fetcher: Optional[Fetcher] = None) -> "asyncio.Task[None]":
        """Issue a new fetch for ``key`` even if one is in flight; the newest one wins."""
        entry = self.read(key)
        fetcher = fetcher or entry.fetcher
        if fetcher is None:
            raise ValueError(f"No fetcher known for {key}")
        return self._start(entry, fetcher)

    def invalidate(self, prefix: KeyPrefix) -> List["asyncio.Task[None]"]:
        """
        Mark every entry under ``prefix`` stale. Subscribed entries are
        refetched right away and keep showing their old data until the new
        result lands; the rest refetch on their next read.
        """
        refetches: List["asyncio.Task[None]"] = []
        matched = 0
        for entry in list(self._entries.values()):
            if not entry.key.startswith(prefix):
                continue
            matched += 1
            entry.is_stale = True
            # responses to fetches issued up to here describe pre-mutation data
            entry.invalidated = entry.issued
            if entry.subscriber_count > 0 and entry.fetcher is not None:
                refetches.append(self._start(entry, entry.fetcher))
        logger.info("Invalidated %s: %d entries, %d refetching", prefix, matched, len(refetches))
        return refetches

    def subscribe(self, key: QueryKey, listener: Listener) -> Subscription:
        entry = self.read(key)
        entry.subscriber_count += 1
        entry.listeners.append(listener)
        entry.evict_when_settled = False
        return Subscription(self, entry, listener)

    def collect_garbage(self, max_idle: Optional[float] = None) -> int:
        """
        Evict unsubscribed, settled entries that have not been refreshed for
        ``max_idle`` seconds (``gc_seconds`` by default).
        """
        max_idle = self.gc_seconds if max_idle is None else max_idle
        now = self._clock()
        idle = [
            entry for entry in self._entries.values()
            if entry.subscriber_count == 0
            and not entry.is_fetching
            and (entry.settled_at is None or now - entry.settled_at >= max_idle)
        ]
        for entry in idle:
            self._evict(entry)
        return len(idle)

    async def close(self) -> None:
        tasks = [entry.task for entry in self._entries.values() if entry.is_fetching]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._entries.clear()

    async def __aenter__(self) -> "CacheStore":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _start(self, entry: CacheEntry, fetcher: Fetcher) -> "asyncio.Task[None]":
        entry.issued += 1
        generation = entry.issued
        entry.fetcher = fetcher
        entry.status = EntryStatus.LOADING
        logger.debug("Fetching %s (generation %d)", entry.key, generation)
        entry.task = asyncio.get_running_loop().create_task(self._run(entry, generation, fetcher))
        self._notify(entry)
        return entry.task

    async def _run(self, entry: CacheEntry, generation: int, fetcher: Fetcher) -> None:
        try:
            data = await fetcher()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Fetch for %s failed: %s", entry.key, exc)
            self._settle(entry, generation, error=exc)
        else:
            self._settle(entry, generation, data=data)

    def _settle(
        self,
        entry: CacheEntry,
        generation: int,
        data: Any = None,
        error: Optional[BaseException] = None,
    ) -> None:
        latest = generation == entry.issued
        if generation <= entry.applied or (error is not None and not latest):
            logger.debug("Discarding out-of-order response for %s (generation %d)", entry.key, generation)
            return

        if error is not None:
            entry.error = error
            entry.status = EntryStatus.ERROR
        else:
            entry.data = data
            entry.error = None
            entry.updated_at = self._clock()
            entry.status = EntryStatus.SUCCESS if latest else EntryStatus.LOADING
            if latest and generation > entry.invalidated:
                entry.is_stale = False
        entry.applied = generation
        entry.settled_at = self._clock()
        self._notify(entry)

        if latest and entry.evict_when_settled and entry.subscriber_count == 0:
            self._evict(entry)

    def _notify(self, entry: CacheEntry) -> None:
        for listener in list(entry.listeners):
            try:
                listener(entry)
            except Exception:
                logger.exception("Listener for %s raised", entry.key)

    def _release(self, entry: CacheEntry, listener: Listener) -> None:
        if listener in entry.listeners:
            entry.listeners.remove(listener)
        entry.subscriber_count = max(0, entry.subscriber_count - 1)
        if entry.subscriber_count > 0:
            return
        if entry.is_fetching:
            entry.evict_when_settled = True
        else:
            self._evict(entry)

    def _evict(self, entry: CacheEntry) -> None:
        if self._entries.get(entry.key) is entry:
            del self._entries[entry.key]
            logger.debug("Evicted %s", entry.key)
