import unittest

from application.services.web_deduplication import (
    DeduplicationConfig,
    content_hash,
    deduplicate,
    deduplicate_with_stats,
    normalize_url,
)
from domain.entities import SearchResult, SourceType


def _web(result_id: str, url: str, title: str, snippet: str, score: float) -> SearchResult:
    return SearchResult(
        source_type=SourceType.WEB,
        id=result_id,
        url=url,
        title=title,
        snippet=snippet,
        relevance_score=score,
    )


def _unique(i: int, score: float | None = None) -> SearchResult:
    return _web(
        f"u{i}",
        f"https://site{i}.example.org/page",
        f"Headline{i} story",
        f"unique topic{i} about subject{i} with detail{i}",
        score if score is not None else 1.0 - i * 0.01,
    )


class FakeClock:
    """Returns the queued readings in order, repeating the last one."""

    def __init__(self, *readings: float) -> None:
        self._readings = list(readings)

    def __call__(self) -> float:
        if len(self._readings) > 1:
            return self._readings.pop(0)
        return self._readings[0]


class SteppingClock:
    def __init__(self, step: float) -> None:
        self._now = 0.0
        self._step = step

    def __call__(self) -> float:
        value = self._now
        self._now += self._step
        return value


def _twenty_results() -> list[SearchResult]:
    results = [_unique(i) for i in range(15)]
    results += [
        _web("url-dup-1", "http://WWW.site1.example.org/page/", "Other title", "different words entirely here", 0.5),
        _web("url-dup-2", "site2.example.org/page#section", "Another title", "more different words there", 0.5),
        _web("hash-dup-1", "https://mirror.example.net/3", "Mirror copy", "Unique  TOPIC3 about subject3 with detail3", 0.4),
        _web("hash-dup-2", "https://mirror.example.net/4", "Mirror again", "unique topic4 about\nsubject4 with detail4", 0.4),
        _web("near-dup", "https://mirror.example.net/5", "HEADLINE5 story!", "syndicated version of that article", 0.3),
    ]
    return results


class TestUrlAndHashHelpers(unittest.TestCase):
    def test_normalize_url(self):
        self.assertEqual(normalize_url("HTTPS://www.Example.com/path/?q=1"), "example.com/path?q=1")
        self.assertEqual(normalize_url("http://example.com/path#frag"), "example.com/path")
        self.assertEqual(normalize_url("example.com/path/"), "example.com/path")

    def test_content_hash(self):
        self.assertEqual(content_hash("A  quick\tFox"), content_hash("a quick fox"))
        self.assertIsNone(content_hash("   "))


class TestDeduplicate(unittest.TestCase):
    def test_twenty_results_with_five_duplicates(self):
        results = _twenty_results()

        output, stats = deduplicate_with_stats(results)

        self.assertEqual(len(output), 15)
        self.assertEqual([r.id for r in output], [f"u{i}" for i in range(15)])
        self.assertEqual(stats.url_duplicates, 2)
        self.assertEqual(stats.content_duplicates, 2)
        self.assertEqual(stats.similar_duplicates, 1)
        self.assertEqual(stats.removed, 5)
        self.assertFalse(stats.budget_exhausted)

    def test_url_and_title_duplicates_within_budget(self):
        results = [_unique(i) for i in range(15)]
        results += [
            _web(f"url-{i}", f"https://www.site{i}.example.org/page/", f"Copy{i}", f"reposted item{i} text", 0.3)
            for i in range(3)
        ]
        results += [
            _web(f"title-{i}", f"https://aggregator.example.net/{i}", f"headline{i} STORY", f"summary{i} only", 0.2)
            for i in range(10, 12)
        ]

        output, stats = deduplicate_with_stats(results)

        self.assertEqual(len(results), 20)
        self.assertEqual(len(output), 15)
        self.assertEqual(stats.url_duplicates, 3)
        self.assertEqual(stats.similar_duplicates, 2)
        self.assertFalse(stats.budget_exhausted)
        self.assertLess(stats.processing_time_ms, 150)

    def test_idempotent(self):
        once = deduplicate(_twenty_results())

        self.assertEqual(deduplicate(once), once)

    def test_highest_scored_duplicate_is_kept(self):
        results = [
            _web("low", "https://a.example.org/x", "First", "same body text", 0.2),
            _web("high", "http://a.example.org/x/", "Second", "other body text", 0.9),
        ]

        output = deduplicate(results)

        self.assertEqual([r.id for r in output], ["high"])

    def test_input_order_is_preserved(self):
        results = [_unique(1, score=0.1), _unique(2, score=0.9), _unique(3, score=0.5)]

        self.assertEqual([r.id for r in deduplicate(results)], ["u1", "u2", "u3"])

    def test_cosine_similarity_method(self):
        output = deduplicate(_twenty_results(), DeduplicationConfig(similarity="cosine"))

        self.assertEqual(len(output), 15)
        with self.assertRaises(ValueError):
            deduplicate(_twenty_results(), DeduplicationConfig(similarity="levenshtein"))

    def test_budget_exhausted_after_url_pass_keeps_remaining_items(self):
        clock = FakeClock(0.0, 1.0)

        with self.assertLogs("application.services.web_deduplication", level="WARNING"):
            output, stats = deduplicate_with_stats(_twenty_results(), clock=clock)

        self.assertTrue(stats.budget_exhausted)
        self.assertEqual(stats.url_duplicates, 2)
        self.assertEqual(stats.content_duplicates, 0)
        self.assertEqual(len(output), 18)

    def test_budget_exhausted_during_similarity_pass(self):
        config = DeduplicationConfig(max_processing_time_ms=150)

        with self.assertLogs("application.services.web_deduplication", level="WARNING"):
            output, stats = deduplicate_with_stats(_twenty_results(), config, clock=SteppingClock(0.05))

        self.assertTrue(stats.budget_exhausted)
        self.assertEqual(stats.url_duplicates + stats.content_duplicates, 4)
        self.assertEqual(len(output), 16)

    def test_empty_input(self):
        output, stats = deduplicate_with_stats([])

        self.assertEqual(output, [])
        self.assertEqual(stats.original_count, 0)


if __name__ == "__main__":
    unittest.main()
