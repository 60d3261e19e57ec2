import unittest
from datetime import datetime, timezone

from narrowdown.schemas import CatalogItem, CriticScores
from narrowdown.services.item_normalizer import normalize_items
from narrowdown.services.ranking import (
    completeness_score,
    merge_by_id,
    merge_restored,
    priority_scores,
    rank,
    recency_score,
    select_candidates,
)

from fakes import movie

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def items(*raws):
    return normalize_items(list(raws))


class TestSelection(unittest.TestCase):
    def test_strictest_threshold_wins_when_enough(self):
        pool = items(*[movie(i, 7.5, 500) for i in range(1, 6)], movie(99, 6.2, 20))
        selected = select_candidates(pool, min_results=5)
        self.assertEqual(sorted(i.id for i in selected), [1, 2, 3, 4, 5])

    def test_looser_threshold_used_when_needed(self):
        pool = items(movie(1, 7.5, 500), movie(2, 6.7, 30), movie(3, 6.6, 40))
        selected = select_candidates(pool, min_results=3)
        self.assertEqual([i.id for i in selected], [1, 2, 3])

    def test_first_non_empty_threshold_is_the_fallback(self):
        pool = items(movie(1, 7.5, 500), movie(2, 7.1, 60), movie(3, 6.7, 30))
        selected = select_candidates(pool, min_results=10)
        self.assertEqual([i.id for i in selected], [1, 2])

    def test_nothing_passes_any_threshold(self):
        pool = items(movie(1, 5.0, 5), {"id": 2, "title": "No rating"})
        selected = select_candidates(pool, min_results=10)
        self.assertEqual([i.id for i in selected], [1])


class TestPriority(unittest.TestCase):
    def test_vote_volume_breaks_equal_ratings(self):
        pool = items(movie(1, 7.5, 60), movie(2, 7.5, 20000))
        ranked = rank(pool, min_results=1, now=NOW)
        self.assertEqual([i.id for i in ranked], [2, 1])

    def test_low_vote_rating_is_pulled_toward_prior(self):
        few, many = items(movie(1, 10.0, 15, "2000-01-01"), movie(2, 8.0, 3000, "2000-01-01"))
        scores = priority_scores([few, many], NOW)
        self.assertGreater(scores[1], scores[0])

    def test_ties_keep_input_order(self):
        pool = items(*[movie(i, 7.2, 400, "2015-03-03") for i in (5, 3, 9, 1)])
        self.assertEqual([i.id for i in rank(pool, min_results=1, now=NOW)], [5, 3, 9, 1])

    def test_recency(self):
        fresh, old, unknown = items(movie(1, release_date="2024-06-01"), movie(2, release_date="2019-01-01"),
                                    {"id": 3})
        self.assertEqual(recency_score(fresh, NOW), 1.0)
        self.assertEqual(recency_score(old, NOW), 0.0)
        self.assertEqual(recency_score(unknown, NOW), 0.5)
        half = items(movie(4, release_date="2023-12-03"))[0]
        self.assertAlmostEqual(recency_score(half, NOW), 1 - 181 / 365.0, places=6)

    def test_scores_are_bounded(self):
        pool = items(movie(1, 10.0, 100000, "2024-06-01"), movie(2, 0.0, 0, "1950-01-01"))
        for score in priority_scores(pool, NOW):
            self.assertGreaterEqual(score, 0.0)
            self.assertLessEqual(score, 1.0 + 1e-9)


class TestMerge(unittest.TestCase):
    def test_completeness_counts_fields(self):
        bare = CatalogItem(id=1)
        self.assertEqual(completeness_score(bare), 0)
        rich = CatalogItem(id=1, poster_path="/p.jpg", overview="x", rating=7.0, vote_count=10,
                           release_date="2020-01-01", critic_scores=CriticScores(imdb=7.1),
                           directors=["A"], cast=["B"], genre_ids=[18])
        self.assertEqual(completeness_score(rich), 9)

    def test_more_complete_copy_wins_at_first_position(self):
        first = CatalogItem(id=7, title="Thin")
        second = CatalogItem(id=8, title="Other")
        richer = CatalogItem(id=7, title="Rich", poster_path="/p.jpg", overview="plot")
        merged = merge_by_id([first, second, richer])
        self.assertEqual([i.id for i in merged], [7, 8])
        self.assertEqual(merged[0].title, "Rich")

    def test_equal_completeness_keeps_first(self):
        a = CatalogItem(id=1, title="A", overview="x")
        b = CatalogItem(id=1, title="B", overview="y")
        self.assertEqual(merge_by_id([a, b])[0].title, "A")

    def test_enrichment_is_carried_over(self):
        survivor = CatalogItem(id=1, poster_path="/p", overview="o", rating=7.0)
        enriched = CatalogItem(id=1, critic_scores=CriticScores(imdb=8.0), cast=["Lead"])
        merged = merge_by_id([survivor, enriched])[0]
        self.assertEqual(merged.poster_path, "/p")
        self.assertEqual(merged.critic_scores.imdb, 8.0)
        self.assertEqual(merged.cast, ["Lead"])

    def test_merge_is_idempotent(self):
        pool = items(movie(1), movie(2), movie(1, overview="plot"), movie(3), movie(2))
        once = merge_by_id(pool)
        self.assertEqual(merge_by_id(once), once)
        self.assertEqual(merge_by_id(once + once), once)

    def test_restored_records_skip_suppressed(self):
        feed = items(movie(1))
        merged = merge_restored(feed, [movie(2), movie(3), {"title": "no id"}], suppressed_ids={3})
        self.assertEqual([i.id for i in merged], [1, 2])


if __name__ == "__main__":
    unittest.main()
