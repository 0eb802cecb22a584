import math
import threading
import unittest

from application.services.bm25_index import KeywordIndex
from domain.entities import Chunk, RetrievalFilters, SourceType


def _chunk(chunk_id: str, content: str, document_id: str = "doc-1", **kwargs) -> Chunk:
    return Chunk(id=chunk_id, document_id=document_id, content=content, **kwargs)


class TestKeywordIndex(unittest.TestCase):
    def test_score_matches_bm25_formula(self):
        index = KeywordIndex()
        index.index_many([_chunk("c1", "alpha beta"), _chunk("c2", "gamma delta", document_id="doc-2")])

        results = index.search("alpha")

        self.assertEqual(len(results), 1)
        # N=2, df=1, tf=1 and length equal to the average length
        self.assertAlmostEqual(results[0].keyword_score, math.log(2), places=9)
        self.assertAlmostEqual(results[0].metadata["bm25_score"], math.log(2), places=9)
        self.assertEqual(results[0].relevance_score, 1.0)
        self.assertEqual(results[0].source_type, SourceType.DOCUMENT)

    def test_score_grows_with_term_frequency(self):
        previous = 0.0
        for tf in range(1, 5):
            index = KeywordIndex()
            content = " ".join(["apple"] * tf + ["filler"] * (5 - tf))
            index.index_many([_chunk("target", content), _chunk("other", "kiwi melon plum", document_id="doc-2")])
            score = index.search("apple")[0].keyword_score
            self.assertGreaterEqual(score, previous)
            previous = score

    def test_punctuation_and_case_are_ignored(self):
        index = KeywordIndex()
        index.index(_chunk("c1", "Retrieval-Augmented Generation, explained!"))

        self.assertEqual([r.id for r in index.search("retrieval GENERATION")], ["c1"])

    def test_empty_query_returns_nothing(self):
        index = KeywordIndex()
        index.index(_chunk("c1", "anything"))

        self.assertEqual(index.search("   "), [])
        self.assertEqual(index.search("!!!"), [])

    def test_filters_restrict_candidates_before_scoring(self):
        index = KeywordIndex()
        index.index_many(
            [
                _chunk("c1", "shared term", document_id="doc-1", owner_id="alice", topic_id="t1"),
                _chunk("c2", "shared term", document_id="doc-2", owner_id="bob", topic_id="t1"),
                _chunk("c3", "shared term", document_id="doc-3", owner_id="alice", topic_id="t2"),
            ]
        )

        owner = index.search("shared", RetrievalFilters(owner_id="alice"))
        topic = index.search("shared", RetrievalFilters(owner_id="alice", topic_id="t2"))
        documents = index.search("shared", RetrievalFilters(document_ids=["doc-2"]))

        self.assertEqual({r.id for r in owner}, {"c1", "c3"})
        self.assertEqual([r.id for r in topic], ["c3"])
        self.assertEqual([r.id for r in documents], ["c2"])

    def test_min_score_and_top_k(self):
        index = KeywordIndex()
        index.index_many([_chunk(f"c{i}", "needle " * (i + 1) + "hay " * 5, document_id=f"d{i}") for i in range(5)])
        index.index(_chunk("x", "nothing relevant", document_id="dx"))

        top = index.search("needle", top_k=2)
        self.assertEqual(len(top), 2)
        self.assertGreaterEqual(top[0].keyword_score, top[1].keyword_score)

        best = top[0].keyword_score
        filtered = index.search("needle", min_score=best)
        self.assertEqual([r.id for r in filtered], [top[0].id])

    def test_remove_drops_every_chunk_of_document(self):
        index = KeywordIndex()
        index.index_many(
            [
                _chunk("c1", "solar energy", document_id="doc-1"),
                _chunk("c2", "solar panels", document_id="doc-1"),
                _chunk("c3", "solar wind", document_id="doc-2"),
            ]
        )

        removed = index.remove("doc-1")

        self.assertEqual(removed, 2)
        self.assertEqual([r.id for r in index.search("solar")], ["c3"])
        self.assertEqual(index.stats().total_documents, 1)
        self.assertEqual(index.remove("missing"), 0)

    def test_reindexing_replaces_chunk(self):
        index = KeywordIndex()
        index.index(_chunk("c1", "old words"))
        index.index(_chunk("c1", "new words"))

        self.assertEqual(index.search("old"), [])
        self.assertEqual([r.id for r in index.search("new")], ["c1"])
        self.assertEqual(index.stats().total_chunks, 1)

    def test_zero_length_chunks_do_not_affect_average_length(self):
        index = KeywordIndex()
        index.index_many([_chunk("c1", "one two three four"), _chunk("empty", "", document_id="doc-2")])

        stats = index.stats()

        self.assertEqual(stats.total_chunks, 2)
        self.assertEqual(stats.average_chunk_length, 4.0)

    def test_clear(self):
        index = KeywordIndex()
        index.index(_chunk("c1", "text"))
        index.clear()

        self.assertEqual(index.stats().total_chunks, 0)
        self.assertEqual(index.search("text"), [])

    def test_concurrent_writers_and_readers(self):
        index = KeywordIndex()
        errors: list[Exception] = []

        def writer(offset: int) -> None:
            try:
                for i in range(50):
                    index.index(_chunk(f"w{offset}-{i}", f"common token{i}", document_id=f"d{offset}-{i}"))
            except Exception as exc:  # pragma: no cover - reported below
                errors.append(exc)

        def reader() -> None:
            try:
                for _ in range(100):
                    index.search("common")
            except Exception as exc:  # pragma: no cover - reported below
                errors.append(exc)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(3)]
        threads += [threading.Thread(target=reader) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(index.stats().total_chunks, 150)


if __name__ == "__main__":
    unittest.main()
