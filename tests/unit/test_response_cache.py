import json
import unittest

import httpx

from narrowdown.schemas import CacheEntry
from narrowdown.services.response_cache import TieredResponseCache, build_cache_id, normalize_key_parts

from fakes import FakeClock, InMemoryDocumentStore

TTL = 3600


def entry(body='{"ok": true}', status=200):
    return CacheEntry(status=status, body=body)


class TestCacheKeys(unittest.TestCase):
    def test_param_order_does_not_change_id(self):
        a = build_cache_id(["tmdb", "discover/movie", httpx.QueryParams({"page": 2, "language": "en-US"})])
        b = build_cache_id(["tmdb", "discover/movie", httpx.QueryParams({"language": "en-US", "page": 2})])
        self.assertEqual(a, b)
        self.assertEqual(len(a), 64)

    def test_mapping_order_does_not_change_id(self):
        self.assertEqual(build_cache_id([{"b": 1, "a": 2}]), build_cache_id([{"a": 2, "b": 1}]))

    def test_credentials_are_excluded(self):
        with_key = build_cache_id(["omdb", {"i": "tt0111161", "apikey": "secret-1"}])
        other_key = build_cache_id(["omdb", {"i": "tt0111161", "apikey": "secret-2"}])
        without = build_cache_id(["omdb", {"i": "tt0111161"}])
        self.assertEqual(with_key, other_key)
        self.assertEqual(with_key, without)
        self.assertNotIn("secret", json.dumps(normalize_key_parts(["omdb", {"apikey": "secret-1"}])))

    def test_param_pairs_are_sorted(self):
        parts = normalize_key_parts([("page", 1), ("api_key", "x"), ("language", "en")])
        self.assertEqual(parts, [[["language", "en"], ["page", "1"]]])

    def test_different_values_differ(self):
        self.assertNotEqual(build_cache_id(["tmdb", {"page": 1}]), build_cache_id(["tmdb", {"page": 2}]))


class TestTieredResponseCache(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = InMemoryDocumentStore()
        self.cache = TieredResponseCache(store=self.store, clock=self.clock)

    async def test_hit_within_ttl_and_miss_after(self):
        await self.cache.write("tmdbCache", ["a"], entry())
        self.clock.advance(TTL - 1)
        hit = await self.cache.read("tmdbCache", ["a"], TTL)
        self.assertIsNotNone(hit)
        self.assertEqual(hit.body, '{"ok": true}')
        self.clock.advance(2)
        self.assertIsNone(await self.cache.read("tmdbCache", ["a"], TTL))

    async def test_exact_ttl_is_still_fresh(self):
        await self.cache.write("tmdbCache", ["a"], entry())
        self.clock.advance(TTL)
        self.assertIsNotNone(await self.cache.read("tmdbCache", ["a"], TTL))

    async def test_no_ttl_never_expires(self):
        await self.cache.write("tmdbCache", ["a"], entry())
        self.clock.advance(10 * 365 * 86400)
        self.assertIsNotNone(await self.cache.read("tmdbCache", ["a"]))

    async def test_document_carries_key_parts_and_timestamp(self):
        await self.cache.write("tmdbCache", ["tmdb", {"page": 1, "api_key": "k"}], entry())
        (collection, _), document = next(iter(self.store.docs.items()))
        self.assertEqual(collection, "tmdbCache")
        self.assertEqual(document["key_parts"], ["tmdb", {"page": 1}])
        self.assertEqual(document["fetched_at"], self.clock.now.isoformat())

    async def test_error_and_empty_responses_are_not_cached(self):
        await self.cache.write("tmdbCache", ["err"], entry(status=500))
        await self.cache.write("tmdbCache", ["empty"], entry(body=""))
        self.assertEqual(self.store.writes, 0)
        self.assertIsNone(await self.cache.read("tmdbCache", ["err"]))
        self.assertIsNone(await self.cache.read("tmdbCache", ["empty"]))

    async def test_fallback_serves_when_store_fails(self):
        await self.cache.write("tmdbCache", ["a"], entry())
        self.store.fail = True
        hit = await self.cache.read("tmdbCache", ["a"], TTL)
        self.assertIsNotNone(hit)
        self.assertIn("offline", self.cache.last_error)

    async def test_write_failure_is_swallowed(self):
        self.store.fail = True
        await self.cache.write("tmdbCache", ["a"], entry())
        self.store.fail = False
        # Memory tier still answers after the store recovers but lost the write
        self.assertIsNotNone(await self.cache.read("tmdbCache", ["a"], TTL))

    async def test_fallback_respects_ttl(self):
        await self.cache.write("tmdbCache", ["a"], entry())
        self.store.fail = True
        self.clock.advance(TTL + 1)
        self.assertIsNone(await self.cache.read("tmdbCache", ["a"], TTL))

    async def test_require_durable_disables_fallback(self):
        cache = TieredResponseCache(store=self.store, require_durable=True, clock=self.clock)
        await cache.write("tmdbCache", ["a"], entry())
        self.store.fail = True
        self.assertIsNone(await cache.read("tmdbCache", ["a"], TTL))
        self.assertEqual(cache.status()["memory_entries"], 0)

    async def test_memory_only_cache(self):
        cache = TieredResponseCache(store=None, clock=self.clock)
        await cache.write_json("omdbRatings", ["x"], {"imdb": 8.1})
        self.assertEqual(await cache.read_json("omdbRatings", ["x"], TTL), {"imdb": 8.1})

    async def test_missing_timestamp_with_ttl_falls_back(self):
        doc_id = build_cache_id(["a"])
        self.store.docs[("tmdbCache", doc_id)] = {"body": '{"v": 1}'}
        self.assertIsNone(await self.cache.read("tmdbCache", ["a"], TTL))
        self.assertIsNotNone(await self.cache.read("tmdbCache", ["a"]))

    async def test_memory_is_bounded_oldest_first(self):
        cache = TieredResponseCache(store=None, max_memory_entries=2, clock=self.clock)
        await cache.write("c", ["1"], entry())
        await cache.write("c", ["2"], entry())
        await cache.write("c", ["1"], entry('{"ok": 2}'))
        await cache.write("c", ["3"], entry())
        self.assertIsNone(await cache.read("c", ["2"]))
        self.assertEqual((await cache.read("c", ["1"])).body, '{"ok": 2}')
        self.assertIsNotNone(await cache.read("c", ["3"]))

    async def test_probe_reports_store_health(self):
        self.assertTrue((await self.cache.probe())["durable_ok"])
        self.store.fail = True
        self.assertFalse((await self.cache.probe())["durable_ok"])


if __name__ == "__main__":
    unittest.main()
