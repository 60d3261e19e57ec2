import asyncio
import unittest
from datetime import timedelta

from narrowdown.core.config import Settings
from narrowdown.schemas import CatalogItem, CatalogMetadata, CatalogState, CriticScores, LookupResult
from narrowdown.services.critic_prefetch import CriticPrefetchJob, lookup_from_item
from narrowdown.services.response_cache import TieredResponseCache

from fakes import FakeClock


class FakeCatalog:
    def __init__(self, items):
        self.items = items
        self.calls = []

    async def ensure_catalog(self, **kwargs):
        self.calls.append(kwargs)
        return CatalogState(items=self.items, metadata=CatalogMetadata(total=len(self.items)))


class FakeOmdb:
    configured = True

    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.lookups = []

    async def lookup(self, imdb_id="", title="", year="", force_refresh=False, **kwargs):
        self.lookups.append(title)
        outcome = self.outcomes.get(title, "fetched")
        return LookupResult(
            outcome=outcome,
            payload=CriticScores(imdb=7.0) if outcome in ("fetched", "cache_hit") else None,
            made_network_request=outcome != "cache_hit",
        )


class TestCriticPrefetch(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.sleeps = []
        self.settings = Settings(
            omdb_prefetch_delay_seconds=1.0,
            omdb_prefetch_jitter_seconds=0,
            omdb_prefetch_checkpoint_every=2,
            omdb_prefetch_max_fetches_per_run=0,
            omdb_prefetch_retry_after_seconds=60,
        )
        self.cache = TieredResponseCache(clock=self.clock)
        self.items = [CatalogItem(id=i, title=f"Movie {i}", release_date="2001-01-01") for i in range(1, 5)]

    async def fake_sleep(self, seconds):
        self.sleeps.append(seconds)

    def job(self, omdb=None, items=None):
        catalog = FakeCatalog(self.items if items is None else items)
        return CriticPrefetchJob(catalog, omdb or FakeOmdb(), self.cache, self.settings,
                                 clock=self.clock, sleep=self.fake_sleep)

    async def test_full_pass_wraps_cursor(self):
        job = self.job()
        progress = await job.run()
        self.assertEqual(progress.halted_reason, "completed_pass")
        self.assertEqual(progress.cursor, 0)
        self.assertEqual(progress.completed_passes, 1)
        self.assertEqual(progress.fetched, 4)
        self.assertEqual(self.sleeps, [1.0] * 4)
        self.assertEqual(job.catalog.calls, [{"allow_stale": True, "cache_only": True}])

    async def test_resumes_after_max_fetches(self):
        omdb = FakeOmdb()
        first = await self.job(omdb).run({"max_fetches": 2})
        self.assertEqual(first.halted_reason, "max_fetches_reached")
        self.assertEqual(first.cursor, 2)

        second = await self.job(omdb).run()
        self.assertEqual(second.halted_reason, "completed_pass")
        self.assertEqual(second.processed, 2)
        self.assertEqual(omdb.lookups, ["Movie 1", "Movie 2", "Movie 3", "Movie 4"])

    async def test_cache_hits_do_not_count_as_fetches(self):
        omdb = FakeOmdb({"Movie 1": "cache_hit", "Movie 2": "cache_hit"})
        progress = await self.job(omdb).run({"max_fetches": 1})
        self.assertEqual(progress.cache_hits, 2)
        self.assertEqual(progress.fetched, 1)
        self.assertEqual(progress.cursor, 3)
        self.assertEqual(len(self.sleeps), 1)

    async def test_rate_limit_halts_with_next_eligible_time(self):
        omdb = FakeOmdb({"Movie 2": "rate_limited"})
        progress = await self.job(omdb).run()
        self.assertEqual(progress.halted_reason, "rate_limited")
        self.assertEqual(progress.cursor, 2)
        self.assertEqual(progress.rate_limited, 1)
        self.assertEqual(progress.next_eligible_at, self.clock.now + timedelta(seconds=300))

    async def test_invalid_key_halts(self):
        progress = await self.job(FakeOmdb({"Movie 1": "invalid_key"})).run()
        self.assertEqual(progress.halted_reason, "invalid_omdb_key")

    async def test_outcome_counters(self):
        omdb = FakeOmdb({"Movie 1": "not_found", "Movie 2": "request_failed"})
        progress = await self.job(omdb, items=self.items[:2] + [CatalogItem(id=9, title=" ")]).run()
        self.assertEqual((progress.not_found, progress.failed, progress.skipped), (1, 1, 1))

    async def test_missing_key_and_empty_catalog(self):
        omdb = FakeOmdb()
        omdb.configured = False
        self.assertEqual((await self.job(omdb).run()).halted_reason, "missing_omdb_key")
        self.assertEqual((await self.job(items=[]).run()).halted_reason, "empty_catalog")
        self.assertEqual(omdb.lookups, [])

    async def test_progress_is_persisted(self):
        await self.job().run({"max_fetches": 3})
        status = await self.job().get_status()
        self.assertFalse(status.running)
        self.assertEqual(status.progress.cursor, 3)

    async def test_reset_cursor(self):
        omdb = FakeOmdb()
        await self.job(omdb).run({"max_fetches": 3})
        await self.job(omdb).run({"max_fetches": 1, "reset_cursor": True})
        self.assertEqual(omdb.lookups[-1], "Movie 1")

    async def test_start_stop_and_single_run(self):
        job = self.job()
        self.assertTrue(job.start())
        self.assertFalse(job.start())
        with self.assertRaises(RuntimeError):
            await job.run()
        self.assertTrue(job.stop())
        await job.wait()
        status = await job.get_status()
        self.assertFalse(status.running)
        self.assertEqual(status.progress.halted_reason, "stop_requested")
        self.assertFalse(job.stop())

    def test_resolve_options(self):
        job = CriticPrefetchJob(None, FakeOmdb(), settings=self.settings)
        opts = job.resolve_options({"delay_seconds": 0.1, "checkpoint_every": 0, "retry_after_seconds": 10})
        self.assertEqual(opts["delay_seconds"], 0.6)
        self.assertEqual(opts["checkpoint_every"], 2)
        self.assertEqual(opts["retry_after_seconds"], 300)
        self.assertEqual(opts["max_fetches"], 0)

    def test_lookup_from_item(self):
        self.assertIsNone(lookup_from_item(CatalogItem(id=1, title="")))
        self.assertEqual(lookup_from_item(CatalogItem(id=1, title="Heat", imdb_id="tt1", release_date="1995-12-15")),
                         {"imdb_id": "tt1", "title": "Heat", "year": "1995"})


if __name__ == "__main__":
    unittest.main()
