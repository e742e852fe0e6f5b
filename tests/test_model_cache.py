import threading
import time
import unittest

from chat_gateway.services.model_cache import ModelInstanceCache


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeHandle:
    def __init__(self, name: str) -> None:
        self.provider_id = "openai"
        self.model_id = name
        self.closed = False

    def stream(self, messages, options, tools=()):
        return iter(())

    def close(self) -> None:
        self.closed = True


class ModelInstanceCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.cache = ModelInstanceCache(ttl_seconds=300, max_size=3, clock=self.clock)

    def test_make_key_uses_default_for_missing_base_url(self) -> None:
        self.assertEqual(ModelInstanceCache.make_key("openai", "gpt-4o", None), "openai:gpt-4o:default")
        self.assertEqual(
            ModelInstanceCache.make_key("ollama", "llama3.1", "http://localhost:11434/v1"),
            "ollama:llama3.1:http://localhost:11434/v1",
        )

    def test_get_returns_stored_handle_and_counts_access(self) -> None:
        handle = FakeHandle("a")
        self.cache.set("a", handle)

        self.assertIs(self.cache.get("a"), handle)
        self.assertIs(self.cache.get("a"), handle)
        self.assertEqual(self.cache.stats()["total_access"], 2)

    def test_expired_entry_is_a_miss_and_is_removed(self) -> None:
        self.cache.set("a", FakeHandle("a"))
        self.clock.advance(300)
        self.assertIsNotNone(self.cache.get("a"))

        self.clock.advance(0.5)

        self.assertIsNone(self.cache.get("a"))
        self.assertNotIn("a", self.cache)

    def test_insert_at_capacity_evicts_least_recently_accessed(self) -> None:
        for key in ("k1", "k2", "k3"):
            self.cache.set(key, FakeHandle(key))
            self.clock.advance(1)
        self.cache.get("k1")
        self.clock.advance(1)

        self.cache.set("k4", FakeHandle("k4"))

        self.assertEqual(len(self.cache), 3)
        self.assertNotIn("k2", self.cache)
        for key in ("k1", "k3", "k4"):
            self.assertIn(key, self.cache)

    def test_replacing_existing_key_does_not_evict(self) -> None:
        for key in ("k1", "k2", "k3"):
            self.cache.set(key, FakeHandle(key))

        self.cache.set("k2", FakeHandle("k2-new"))

        self.assertEqual(len(self.cache), 3)
        self.assertEqual(self.cache.get("k2").model_id, "k2-new")

    def test_sweep_removes_only_expired_entries(self) -> None:
        self.cache.set("old", FakeHandle("old"))
        self.clock.advance(200)
        self.cache.set("new", FakeHandle("new"))
        self.clock.advance(150)

        removed = self.cache.sweep()

        self.assertEqual(removed, 1)
        self.assertNotIn("old", self.cache)
        self.assertIn("new", self.cache)

    def test_invalidate_and_clear(self) -> None:
        handles = [FakeHandle("a"), FakeHandle("b")]
        self.cache.set("openai:a:default", handles[0])
        self.cache.set("anthropic:b:default", handles[1])

        self.assertTrue(self.cache.invalidate("openai:a:default"))
        self.assertFalse(self.cache.invalidate("openai:a:default"))
        self.assertEqual(self.cache.invalidate_prefix("anthropic:"), 1)

        self.cache.set("x", handles[0])
        self.cache.clear(close_handles=True)
        self.assertEqual(len(self.cache), 0)
        self.assertTrue(handles[0].closed)

    def test_get_or_create_builds_once_under_concurrency(self) -> None:
        cache = ModelInstanceCache()
        calls: list[int] = []
        started = threading.Barrier(8)
        results: list[object] = []

        def factory() -> FakeHandle:
            calls.append(1)
            time.sleep(0.05)
            return FakeHandle("shared")

        def worker() -> None:
            started.wait()
            results.append(cache.get_or_create("openai:gpt-4o:default", factory))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        self.assertEqual(len(calls), 1)
        self.assertEqual(len(results), 8)
        self.assertTrue(all(result is results[0] for result in results))

    def test_factory_failure_is_not_cached(self) -> None:
        def failing() -> FakeHandle:
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            self.cache.get_or_create("k", failing)

        self.assertNotIn("k", self.cache)
        handle = self.cache.get_or_create("k", lambda: FakeHandle("k"))
        self.assertIs(self.cache.get("k"), handle)

    def test_failed_build_keeps_waiters_and_late_callers_serialized(self) -> None:
        cache = ModelInstanceCache()
        key = "openai:gpt-4o:default"
        state = {"active": 0, "max_active": 0, "calls": 0, "built": 0}
        state_lock = threading.Lock()
        first_building = threading.Event()
        release_first = threading.Event()
        rebuilding = threading.Event()
        results: list[object] = []
        errors: list[Exception] = []

        def factory() -> FakeHandle:
            with state_lock:
                state["calls"] += 1
                call = state["calls"]
                state["active"] += 1
                state["max_active"] = max(state["max_active"], state["active"])
            try:
                if call == 1:
                    first_building.set()
                    release_first.wait(5)
                    raise RuntimeError("connect failed")
                rebuilding.set()
                time.sleep(0.1)
                with state_lock:
                    state["built"] += 1
                return FakeHandle("rebuilt")
            finally:
                with state_lock:
                    state["active"] -= 1

        def worker() -> None:
            try:
                results.append(cache.get_or_create(key, factory))
            except RuntimeError as error:
                errors.append(error)

        first = threading.Thread(target=worker)
        first.start()
        self.assertTrue(first_building.wait(5))
        waiters = [threading.Thread(target=worker) for _ in range(3)]
        for thread in waiters:
            thread.start()
        time.sleep(0.05)
        release_first.set()
        first.join(5)
        self.assertTrue(rebuilding.wait(5))
        late = threading.Thread(target=worker)
        late.start()
        for thread in [*waiters, late]:
            thread.join(5)

        self.assertEqual(len(errors), 1)
        self.assertEqual(state["max_active"], 1)
        self.assertEqual(state["built"], 1)
        self.assertEqual(len(results), 4)
        self.assertTrue(all(result is results[0] for result in results))
        self.assertEqual(cache._key_locks, {})


if __name__ == "__main__":
    unittest.main()
