import unittest
from datetime import timedelta

import httpx

from narrowdown.core.config import Settings
from narrowdown.core.errors import EnrichmentNotFound, UpstreamRateLimited, UpstreamUnavailable
from narrowdown.schemas import CatalogItem
from narrowdown.services.omdb_client import (
    OmdbClient,
    build_cache_key_parts,
    normalize_payload,
    parse_imdb_rating,
    parse_percent,
)
from narrowdown.services.rate_limit import RateLimitLedger
from narrowdown.services.response_cache import TieredResponseCache

from fakes import FakeClock

OMDB_MATRIX = {
    "Title": "The Matrix",
    "Year": "1999",
    "imdbID": "tt0133093",
    "imdbRating": "8.7",
    "Metascore": "73",
    "Ratings": [
        {"Source": "Internet Movie Database", "Value": "8.7/10"},
        {"Source": "Rotten Tomatoes", "Value": "83%"},
        {"Source": "Metacritic", "Value": "73/100"},
    ],
    "Response": "True",
}


class Recorder:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return self.response


class TestOmdbParsing(unittest.TestCase):
    def test_parsers(self):
        self.assertEqual(parse_percent("83%"), 83)
        self.assertEqual(parse_percent("N/A"), None)
        self.assertEqual(parse_percent("140%"), 100)
        self.assertEqual(parse_imdb_rating("7,46"), 7.5)
        self.assertIsNone(parse_imdb_rating("N/A"))

    def test_normalize_payload(self):
        scores = normalize_payload(OMDB_MATRIX, type="movie")
        self.assertEqual(scores.rotten_tomatoes, 83)
        self.assertEqual(scores.metacritic, 73)
        self.assertEqual(scores.imdb, 8.7)
        self.assertEqual(scores.imdb_id, "tt0133093")

    def test_metacritic_falls_back_to_ratings_list(self):
        data = dict(OMDB_MATRIX, Metascore=None, imdbRating=None)
        scores = normalize_payload(data)
        self.assertIsNone(scores.metacritic)
        self.assertIsNone(scores.imdb)
        data = {"Ratings": [{"Source": "Metacritic", "Value": "61"}]}
        self.assertEqual(normalize_payload(data).metacritic, 61)

    def test_cache_key_prefers_imdb_id(self):
        self.assertEqual(build_cache_key_parts("TT01", "Heat", "1995", "movie"),
                         ["omdb", "type:movie", "imdb:tt01", "year:1995"])
        self.assertEqual(build_cache_key_parts("", "Heat", "", ""), ["omdb", "type:any", "title:heat", "year:"])


class TestOmdbClient(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.settings = Settings(omdb_api_key="omdb-key", omdb_base_url="https://omdb.test/")
        self.cache = TieredResponseCache()

    def client(self, response):
        recorder = Recorder(response)
        return OmdbClient(self.cache, self.settings, transport=httpx.MockTransport(recorder)), recorder

    async def test_fetch_then_cache_hit(self):
        omdb, recorder = self.client(httpx.Response(200, json=OMDB_MATRIX))
        first = await omdb.lookup(imdb_id="tt0133093")
        self.assertEqual(first.outcome, "fetched")
        self.assertTrue(first.made_network_request)
        self.assertEqual(recorder.requests[0].url.params["i"], "tt0133093")
        self.assertEqual(recorder.requests[0].url.params["apikey"], "omdb-key")

        second = await omdb.lookup(imdb_id="TT0133093")
        self.assertEqual(second.outcome, "cache_hit")
        self.assertEqual(second.payload.rotten_tomatoes, 83)
        self.assertEqual(len(recorder.requests), 1)

        forced = await omdb.lookup(imdb_id="tt0133093", force_refresh=True)
        self.assertEqual(forced.outcome, "fetched")
        self.assertEqual(len(recorder.requests), 2)

    async def test_title_lookup_sends_year(self):
        omdb, recorder = self.client(httpx.Response(200, json=OMDB_MATRIX))
        await omdb.lookup(title="The Matrix", year=1999)
        params = recorder.requests[0].url.params
        self.assertEqual(params["t"], "The Matrix")
        self.assertEqual(params["y"], "1999")
        self.assertNotIn("i", params)

    async def test_outcomes(self):
        cases = [
            (httpx.Response(200, json={"Response": "False", "Error": "Movie not found!"}), "not_found"),
            (httpx.Response(200, json={"Response": "False", "Error": "Invalid API key!"}), "invalid_key"),
            (httpx.Response(200, json={"Response": "False", "Error": "Request limit reached!"}), "rate_limited"),
            (httpx.Response(401, json={"Response": "False", "Error": "No API key provided."}), "invalid_key"),
            (httpx.Response(429), "rate_limited"),
            (httpx.Response(500), "request_failed"),
            (httpx.Response(200, text="not json"), "request_failed"),
        ]
        for response, outcome in cases:
            omdb, _ = self.client(response)
            result = await omdb.lookup(imdb_id="tt1", force_refresh=True)
            self.assertEqual(result.outcome, outcome, response)
            self.assertIsNone(result.payload)

    async def test_missing_key_makes_no_request(self):
        omdb = OmdbClient(self.cache, Settings(omdb_api_key=" "))
        self.assertFalse(omdb.configured)
        result = await omdb.lookup(imdb_id="tt1")
        self.assertEqual(result.outcome, "invalid_key")
        self.assertFalse(result.made_network_request)

    async def test_network_failure(self):
        def broken(request):
            raise httpx.ReadTimeout("timed out", request=request)

        omdb = OmdbClient(self.cache, self.settings, transport=httpx.MockTransport(broken))
        self.assertEqual((await omdb.lookup(imdb_id="tt1")).outcome, "request_failed")

    async def test_critic_scores_raise_taxonomy(self):
        item = CatalogItem(id=1, title="Heat", release_date="1995-12-15")
        omdb, recorder = self.client(httpx.Response(200, json=OMDB_MATRIX))
        self.assertEqual((await omdb.get_critic_scores(item)).metacritic, 73)
        self.assertEqual(recorder.requests[0].url.params["y"], "1995")

        omdb, _ = self.client(httpx.Response(200, json={"Response": "False", "Error": "Movie not found!"}))
        with self.assertRaises(EnrichmentNotFound):
            await omdb.get_critic_scores(item, force_refresh=True)
        omdb, _ = self.client(httpx.Response(429))
        with self.assertRaises(UpstreamRateLimited):
            await omdb.get_critic_scores(item, force_refresh=True)
        omdb, _ = self.client(httpx.Response(502))
        with self.assertRaises(UpstreamUnavailable):
            await omdb.get_critic_scores(item, force_refresh=True)

    async def test_rate_limit_is_recorded_and_honored(self):
        clock = FakeClock()
        ledger = RateLimitLedger(clock=clock)
        recorder = Recorder(httpx.Response(429, headers={"Retry-After": "120"}))
        omdb = OmdbClient(self.cache, self.settings, transport=httpx.MockTransport(recorder), ledger=ledger)

        first = await omdb.lookup(imdb_id="tt1")
        self.assertEqual(first.outcome, "rate_limited")
        self.assertTrue(first.made_network_request)
        self.assertIsNotNone(await ledger.next_eligible_at("omdb_api"))

        second = await omdb.lookup(imdb_id="tt2")
        self.assertEqual(second.outcome, "rate_limited")
        self.assertFalse(second.made_network_request)
        with self.assertRaises(UpstreamRateLimited):
            await omdb.get_critic_scores(CatalogItem(id=3, title="Heat"))
        self.assertEqual(len(recorder.requests), 1)

        clock.advance(121)
        recorder.response = httpx.Response(200, json=OMDB_MATRIX)
        third = await omdb.lookup(imdb_id="tt0133093")
        self.assertEqual(third.outcome, "fetched")
        self.assertEqual(len(recorder.requests), 2)

    async def test_limit_message_backs_off_for_configured_window(self):
        clock = FakeClock()
        ledger = RateLimitLedger(clock=clock)
        settings = self.settings.model_copy(update={"omdb_prefetch_retry_after_seconds": 900})
        recorder = Recorder(httpx.Response(200, json={"Response": "False", "Error": "Request limit reached!"}))
        omdb = OmdbClient(self.cache, settings, transport=httpx.MockTransport(recorder), ledger=ledger)
        self.assertEqual((await omdb.lookup(imdb_id="tt1")).outcome, "rate_limited")
        self.assertEqual((await ledger.next_eligible_at("omdb_api")) - clock(), timedelta(seconds=900))

    async def test_cache_hits_are_served_while_backing_off(self):
        clock = FakeClock()
        ledger = RateLimitLedger(clock=clock)
        recorder = Recorder(httpx.Response(200, json=OMDB_MATRIX))
        omdb = OmdbClient(self.cache, self.settings, transport=httpx.MockTransport(recorder), ledger=ledger)
        await omdb.lookup(imdb_id="tt0133093")
        await ledger.mark_rate_limited("omdb_api", "quota", 600)
        self.assertEqual((await omdb.lookup(imdb_id="tt0133093")).outcome, "cache_hit")
        self.assertEqual(len(recorder.requests), 1)


if __name__ == "__main__":
    unittest.main()
