import asyncio
import unittest

from skooladmin.core.keys import QueryKey
from skooladmin.state.cache_store import CacheStore, EntryStatus


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class GatedFetcher:
    """Fetcher whose responses are released by the test, one gate per call."""

    def __init__(self):
        self.calls = 0
        self.gates = []

    async def __call__(self):
        self.calls += 1
        gate = asyncio.get_running_loop().create_future()
        self.gates.append(gate)
        return await gate


async def spin(predicate, rounds=50):
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def counting_fetcher(value="rows"):
    calls = []

    async def fetch():
        calls.append(1)
        return value

    return fetch, calls


class EnsureFreshTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = CacheStore(stale_seconds=30, gc_seconds=120, clock=self.clock)
        self.key = QueryKey.of("students")

    async def asyncTearDown(self):
        await self.store.close()

    async def test_read_creates_idle_entry(self):
        entry = self.store.read(self.key)
        self.assertEqual(entry.status, EntryStatus.IDLE)
        self.assertIs(self.store.read(self.key), entry)
        self.assertEqual(len(self.store), 1)

    async def test_fresh_success_is_served_without_fetching(self):
        fetch, calls = counting_fetcher()
        entry = await self.store.ensure_fresh(self.key, fetch)
        self.assertEqual(entry.status, EntryStatus.SUCCESS)
        self.assertEqual(entry.data, "rows")

        self.clock.now += 10
        await self.store.ensure_fresh(self.key, fetch)
        self.assertEqual(len(calls), 1)

        self.clock.now += 30
        await self.store.ensure_fresh(self.key, fetch)
        self.assertEqual(len(calls), 2)

    async def test_zero_ttl_always_revalidates(self):
        fetch, calls = counting_fetcher()
        await self.store.ensure_fresh(self.key, fetch, stale_ttl=0)
        await self.store.ensure_fresh(self.key, fetch, stale_ttl=0)
        self.assertEqual(len(calls), 2)

    async def test_concurrent_reads_share_one_fetch(self):
        fetcher = GatedFetcher()
        first = asyncio.ensure_future(self.store.ensure_fresh(self.key, fetcher))
        second = asyncio.ensure_future(self.store.ensure_fresh(self.key, fetcher))
        await spin(lambda: fetcher.gates)
        self.assertEqual(self.store.read(self.key).status, EntryStatus.LOADING)

        fetcher.gates[0].set_result(["alice"])
        entries = await asyncio.gather(first, second)

        self.assertEqual(fetcher.calls, 1)
        self.assertEqual([e.data for e in entries], [["alice"], ["alice"]])

    async def test_error_is_stored_and_next_read_retries(self):
        async def broken():
            raise RuntimeError("backend down")

        entry = await self.store.ensure_fresh(self.key, broken)
        self.assertEqual(entry.status, EntryStatus.ERROR)
        self.assertIsInstance(entry.error, RuntimeError)

        fetch, calls = counting_fetcher()
        entry = await self.store.ensure_fresh(self.key, fetch)
        self.assertEqual(entry.status, EntryStatus.SUCCESS)
        self.assertIsNone(entry.error)
        self.assertEqual(len(calls), 1)

    async def test_fetch_issued_before_invalidation_does_not_refresh(self):
        gated = GatedFetcher()
        first = asyncio.ensure_future(self.store.ensure_fresh(self.key, gated))
        await spin(lambda: gated.gates)

        self.store.invalidate("students")
        gated.gates[0].set_result("pre-mutation")
        entry = await first
        self.assertEqual(entry.data, "pre-mutation")
        self.assertTrue(entry.is_stale)

        fetch, calls = counting_fetcher("post-mutation")
        entry = await self.store.ensure_fresh(self.key, fetch)
        self.assertEqual(entry.data, "post-mutation")
        self.assertFalse(entry.is_stale)
        self.assertEqual(len(calls), 1)

    async def test_reads_after_invalidation_do_not_join_older_fetch(self):
        old, new = GatedFetcher(), GatedFetcher()
        first = asyncio.ensure_future(self.store.ensure_fresh(self.key, old))
        await spin(lambda: old.gates)

        self.store.invalidate("students")
        second = asyncio.ensure_future(self.store.ensure_fresh(self.key, new))
        await spin(lambda: new.gates)
        old.gates[0].set_result("pre-mutation")
        new.gates[0].set_result("post-mutation")
        entries = await asyncio.gather(first, second)

        self.assertEqual([e.data for e in entries], ["post-mutation", "post-mutation"])
        self.assertFalse(self.store.read(self.key).is_stale)

    async def test_unsubscribed_entries_expire_after_gc_window(self):
        fetch, _ = counting_fetcher()
        for index in range(100):
            await self.store.ensure_fresh(QueryKey.of("fees", "student", f"s{index}"), fetch)
        self.assertEqual(self.store.collect_garbage(), 0)

        self.clock.now += 60
        await self.store.ensure_fresh(QueryKey.of("fees", "student", "s0"), fetch)
        self.clock.now += 60
        self.assertEqual(self.store.collect_garbage(), 99)
        self.assertEqual(len(self.store), 1)


class OrderingTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = CacheStore()
        self.key = QueryKey.of("fees", "student", "s1")

    async def asyncTearDown(self):
        await self.store.close()

    async def test_newer_response_wins_over_late_older_one(self):
        slow, fast = GatedFetcher(), GatedFetcher()
        task_a = self.store.start_fetch(self.key, slow)
        task_b = self.store.start_fetch(self.key, fast)
        await spin(lambda: slow.gates and fast.gates)

        fast.gates[0].set_result("B")
        await task_b
        self.assertEqual(self.store.read(self.key).data, "B")

        slow.gates[0].set_result("A")
        await task_a
        entry = self.store.read(self.key)
        self.assertEqual(entry.data, "B")
        self.assertEqual(entry.status, EntryStatus.SUCCESS)

    async def test_older_response_arriving_first_is_shown_until_newer_lands(self):
        first, second = GatedFetcher(), GatedFetcher()
        task_a = self.store.start_fetch(self.key, first)
        task_b = self.store.start_fetch(self.key, second)
        await spin(lambda: first.gates and second.gates)

        first.gates[0].set_result("A")
        await task_a
        entry = self.store.read(self.key)
        self.assertEqual(entry.data, "A")
        self.assertEqual(entry.status, EntryStatus.LOADING)

        second.gates[0].set_result("B")
        await task_b
        self.assertEqual(entry.data, "B")
        self.assertEqual(entry.status, EntryStatus.SUCCESS)

    async def test_superseded_error_is_dropped(self):
        first, second = GatedFetcher(), GatedFetcher()
        task_a = self.store.start_fetch(self.key, first)
        task_b = self.store.start_fetch(self.key, second)
        await spin(lambda: first.gates and second.gates)

        second.gates[0].set_result("B")
        first.gates[0].set_exception(RuntimeError("late failure"))
        await asyncio.gather(task_a, task_b)

        entry = self.store.read(self.key)
        self.assertEqual(entry.status, EntryStatus.SUCCESS)
        self.assertIsNone(entry.error)


class InvalidationTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = CacheStore(stale_seconds=60)
        self.fetch, self.calls = counting_fetcher()
        self.keys = [
            QueryKey.of("fees"),
            QueryKey.of("fees", "student", "s1"),
            QueryKey.of("students"),
            QueryKey.of("grades"),
        ]
        for key in self.keys:
            await self.store.ensure_fresh(key, self.fetch)

    async def asyncTearDown(self):
        await self.store.close()

    async def test_prefix_marks_stale_without_clearing(self):
        self.store.invalidate("fees")
        stale = {entry.key for entry in self.store if entry.is_stale}
        self.assertEqual(stale, {QueryKey.of("fees"), QueryKey.of("fees", "student", "s1")})
        self.assertEqual(self.store.read(QueryKey.of("fees")).data, "rows")

    async def test_unsubscribed_entries_refetch_lazily(self):
        self.assertEqual(self.store.invalidate("grades"), [])
        self.assertEqual(len(self.calls), 4)
        await self.store.ensure_fresh(QueryKey.of("grades"), self.fetch)
        self.assertEqual(len(self.calls), 5)
        self.assertFalse(self.store.read(QueryKey.of("grades")).is_stale)

    async def test_subscribed_entries_refetch_immediately_keeping_old_data(self):
        seen = []
        key = QueryKey.of("students")
        self.store.subscribe(key, lambda entry: seen.append((entry.status, entry.data)))

        tasks = self.store.invalidate("students")
        self.assertEqual(len(tasks), 1)
        self.assertEqual(seen[0], (EntryStatus.LOADING, "rows"))
        await asyncio.gather(*tasks)
        self.assertEqual(seen[-1], (EntryStatus.SUCCESS, "rows"))
        self.assertFalse(self.store.read(key).is_stale)

    async def test_invalidation_during_fetch_discards_inflight_result(self):
        gated = GatedFetcher()
        key = QueryKey.of("students", "detail", "s1")
        self.store.subscribe(key, lambda entry: None)
        first = self.store.start_fetch(key, gated)
        await spin(lambda: gated.gates)

        refetch = self.store.invalidate("students")
        await spin(lambda: len(gated.gates) == 2)
        gated.gates[1].set_result("after mutation")
        gated.gates[0].set_result("before mutation")
        await asyncio.gather(first, *refetch)

        self.assertEqual(self.store.read(key).data, "after mutation")


class SubscriptionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = CacheStore()
        self.key = QueryKey.of("teachers")

    async def asyncTearDown(self):
        await self.store.close()

    async def test_transitions_are_delivered(self):
        seen = []
        self.store.subscribe(self.key, lambda entry: seen.append(entry.status))
        fetch, _ = counting_fetcher()
        await self.store.ensure_fresh(self.key, fetch)
        self.assertEqual(seen, [EntryStatus.LOADING, EntryStatus.SUCCESS])

    async def test_last_unsubscribe_evicts(self):
        first = self.store.subscribe(self.key, lambda entry: None)
        second = self.store.subscribe(self.key, lambda entry: None)
        self.assertEqual(self.store.read(self.key).subscriber_count, 2)

        first.unsubscribe()
        first.unsubscribe()
        self.assertIn(self.key, self.store)
        second.unsubscribe()
        self.assertNotIn(self.key, self.store)

    async def test_unsubscribe_while_loading_evicts_after_settling(self):
        seen = []
        gated = GatedFetcher()
        subscription = self.store.subscribe(self.key, lambda entry: seen.append(entry.status))
        task = self.store.start_fetch(self.key, gated)
        await spin(lambda: gated.gates)

        subscription.unsubscribe()
        self.assertIn(self.key, self.store)

        gated.gates[0].set_result("rows")
        await task
        self.assertNotIn(self.key, self.store)
        self.assertEqual(seen, [EntryStatus.LOADING])

    async def test_failing_listener_does_not_break_others(self):
        seen = []

        def broken(entry):
            raise RuntimeError("boom")

        self.store.subscribe(self.key, broken)
        self.store.subscribe(self.key, lambda entry: seen.append(entry.status))
        fetch, _ = counting_fetcher()
        with self.assertLogs("skooladmin.state.cache_store", level="ERROR"):
            await self.store.ensure_fresh(self.key, fetch)
        self.assertEqual(seen[-1], EntryStatus.SUCCESS)

    async def test_collect_garbage_keeps_subscribed_entries(self):
        fetch, _ = counting_fetcher()
        await self.store.ensure_fresh(QueryKey.of("classes"), fetch)
        self.store.subscribe(self.key, lambda entry: None)
        self.assertEqual(self.store.collect_garbage(0), 1)
        self.assertIn(self.key, self.store)
        self.assertNotIn(QueryKey.of("classes"), self.store)

    async def test_close_cancels_inflight_fetches(self):
        gated = GatedFetcher()
        task = self.store.start_fetch(self.key, gated)
        await spin(lambda: gated.gates)
        await self.store.close()
        self.assertTrue(task.cancelled())
        self.assertEqual(len(self.store), 0)


if __name__ == "__main__":
    unittest.main()
