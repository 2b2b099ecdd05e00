import threading

from litrank.cache import RelevanceCache
from litrank.pipeline_types import Candidate


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_get_put_and_stats():
    cache = RelevanceCache(capacity=10, ttl_seconds=100, clock=FakeClock())
    assert cache.get("k") is None
    cache.put("k", 0.7)
    assert cache.get("k") == 0.7
    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5


def test_entries_expire_after_ttl_regardless_of_use():
    clock = FakeClock()
    cache = RelevanceCache(capacity=10, ttl_seconds=10, clock=clock)
    cache.put("k", 0.9)
    clock.now = 9.0
    assert cache.get("k") == 0.9
    clock.now = 10.0
    assert cache.get("k") is None
    assert len(cache) == 0
    assert cache.stats()["expirations"] == 1


def test_least_recently_used_is_evicted():
    cache = RelevanceCache(capacity=2, ttl_seconds=100, clock=FakeClock())
    cache.put("a", 0.1)
    cache.put("b", 0.2)
    assert cache.get("a") == 0.1  # a is now most recent
    cache.put("c", 0.3)
    assert cache.get("b") is None
    assert cache.get("a") == 0.1
    assert cache.get("c") == 0.3
    assert cache.stats()["evictions"] == 1


def test_get_updates_last_access():
    clock = FakeClock()
    cache = RelevanceCache(capacity=2, ttl_seconds=100, clock=clock)
    cache.put("a", 0.5)
    clock.now = 5.0
    cache.get("a")
    entry = cache.peek("a")
    assert entry.inserted_at == 0.0
    assert entry.last_access == 5.0


def test_key_is_stable_across_query_formatting():
    c = Candidate(title="Graph Learning", doi="10.1/ABC")
    k1 = RelevanceCache.make_key("Graph  Learning", c)
    k2 = RelevanceCache.make_key("graph learning ", c)
    assert k1 == k2
    other = Candidate(title="Graph Learning", doi="10.1/xyz")
    assert RelevanceCache.make_key("graph learning", other) != k1


def test_key_falls_back_to_title_identity():
    a = Candidate(title="Deep Learning: A Survey")
    b = Candidate(title="deep learning a survey")
    assert RelevanceCache.make_key("q", a) == RelevanceCache.make_key("q", b)


def test_concurrent_puts_keep_capacity_bound():
    cache = RelevanceCache(capacity=50, ttl_seconds=100)

    def worker(offset):
        for i in range(200):
            cache.put(f"{offset}-{i}", i / 200.0)
            cache.get(f"{offset}-{i // 2}")

    threads = [threading.Thread(target=worker, args=(t,)) for t in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(cache) == 50
