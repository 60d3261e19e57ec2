import unittest

from narrowdown.schemas import CatalogItem
from narrowdown.services.item_normalizer import (
    apply_credits,
    item_cache_key,
    normalize_critic_scores,
    normalize_item,
    normalize_items,
    summarize_item,
)
from narrowdown.utils.payload import parse_bool_flag, parse_id_set, to_float, to_int


class TestNormalizeItem(unittest.TestCase):
    def test_upstream_shape(self):
        item = normalize_item({
            "id": "603", "title": "The Matrix", "vote_average": 8.2, "vote_count": "26,000",
            "release_date": "1999-03-30", "genre_ids": [28, 878], "poster_path": "/p.jpg", "overview": "  ",
        })
        self.assertEqual(item.id, 603)
        self.assertEqual(item.vote_count, 26000)
        self.assertEqual(item.genre_ids, [28, 878])
        self.assertIsNone(item.overview)

    def test_camel_case_restored_shape(self):
        item = normalize_item({
            "tmdbId": 11, "title": "Star Wars", "voteAverage": "8,6", "releaseDate": "1977-05-25T00:00:00Z",
            "genres": [{"id": 12, "name": "Adventure"}, "Sci-Fi"], "topCast": ["Mark Hamill", "Mark Hamill"],
            "criticScores": {"rottenTomatoes": "93", "imdb": 8.6},
        })
        self.assertEqual(item.rating, 8.6)
        self.assertEqual(item.release_date, "1977-05-25")
        self.assertEqual(item.genre_ids, [12])
        self.assertEqual(item.genres, ["Adventure", "Sci-Fi"])
        self.assertEqual(item.cast, ["Mark Hamill"])
        self.assertEqual(item.critic_scores.rotten_tomatoes, 93)

    def test_unusable_records_are_dropped(self):
        self.assertIsNone(normalize_item({"title": "No id"}))
        self.assertIsNone(normalize_item({"id": 0}))
        self.assertIsNone(normalize_item("603"))
        self.assertEqual([i.id for i in normalize_items([{"id": 1}, None, {"id": -3}, {"id": 2}])], [1, 2])

    def test_out_of_range_values_are_clamped(self):
        item = normalize_item({"id": 1, "vote_average": 14, "vote_count": -5})
        self.assertEqual(item.rating, 10)
        self.assertEqual(item.vote_count, 0)

    def test_critic_scores(self):
        scores = normalize_critic_scores({"ratings": {"rottenTomatoes": 101, "metascore": "N/A", "imdbRating": "7.25"}})
        self.assertEqual(scores.rotten_tomatoes, 100)
        self.assertIsNone(scores.metacritic)
        self.assertFalse(normalize_critic_scores({}).has_any())
        self.assertIsNone(normalize_critic_scores("x"))


class TestCredits(unittest.TestCase):
    def test_apply_credits(self):
        credits = {
            "cast": [{"name": f"Actor {i}"} for i in range(7)],
            "crew": [{"name": "Lana", "job": "Director"}, {"name": "Lilly", "job": "Director"},
                     {"name": "Bill", "job": "Producer"}],
        }
        item = apply_credits(CatalogItem(id=1), credits)
        self.assertEqual(len(item.cast), 5)
        self.assertEqual(item.directors, ["Lana", "Lilly"])

    def test_empty_credits_keep_existing(self):
        item = CatalogItem(id=1, cast=["Kept"])
        self.assertIs(apply_credits(item, {"cast": [], "crew": []}), item)

    def test_summary_is_compact(self):
        item = CatalogItem(id=1, title="A", cast=[str(i) for i in range(9)], directors=["x", "y", "z", "w"])
        summary = summarize_item(item)
        self.assertEqual(len(summary["cast"]), 5)
        self.assertEqual(len(summary["directors"]), 3)
        self.assertIsNone(summary["critic_scores"])


class TestCacheKeys(unittest.TestCase):
    def test_key_precedence(self):
        self.assertEqual(item_cache_key(CatalogItem(id=7)), "tmdb:7")
        self.assertEqual(item_cache_key({"id": "7", "title": "Seven"}), "tmdb:7")
        self.assertEqual(item_cache_key({"imdbId": "TT0114369", "title": "Se7en"}), "imdb:tt0114369")
        self.assertEqual(item_cache_key({"title": " Se7en ", "releaseDate": "1995-09-22"}), "title:se7en|year:1995")
        self.assertIsNone(item_cache_key({}))
        self.assertIsNone(item_cache_key(None))


class TestPayloadHelpers(unittest.TestCase):
    def test_numbers(self):
        self.assertEqual(to_float("7,5"), 7.5)
        self.assertIsNone(to_float("N/A"))
        self.assertIsNone(to_float(float("nan")))
        self.assertIsNone(to_float(True))
        self.assertEqual(to_int("1,234"), 1234)

    def test_flags_and_ids(self):
        self.assertTrue(parse_bool_flag("Yes"))
        self.assertFalse(parse_bool_flag("0"))
        self.assertTrue(parse_bool_flag("", default=True))
        self.assertEqual(parse_id_set("3, 4,abc,-1,4"), {3, 4})
        self.assertEqual(parse_id_set([5, "6"]), {5, 6})
        self.assertEqual(parse_id_set(None), set())


if __name__ == "__main__":
    unittest.main()
