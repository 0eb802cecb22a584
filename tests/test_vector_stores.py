import importlib.util
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from domain.entities import Chunk, DocumentMetadata, RetrievalFilters
from infrastructure.repositories import SqliteCorpusStore
from infrastructure.storage.in_memory_vector_store import InMemoryVectorStore

CHUNKS = [
    Chunk("c1", "doc-1", "north", owner_id="alice", metadata={"title": "Compass"}),
    Chunk("c2", "doc-1", "north east", owner_id="alice"),
    Chunk("c3", "doc-2", "east", owner_id="bob", topic_id="travel"),
]
EMBEDDINGS = [[1.0, 0.0], [0.7, 0.7], [0.0, 1.0]]


class VectorStoreContract:
    """Shared checks run against every vector store implementation."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self) -> None:
        self.store = self.make_store()
        self.store.add(CHUNKS, EMBEDDINGS)

    def test_query_orders_by_cosine(self):
        results = self.store.query([1.0, 0.1], top_k=3)

        self.assertEqual([r.id for r in results], ["c1", "c2", "c3"])
        self.assertGreater(results[0].semantic_score, results[1].semantic_score)
        self.assertEqual(results[0].title, "Compass")
        self.assertEqual(results[1].title, "doc-1")

    def test_filters_and_min_score(self):
        owner = self.store.query([1.0, 0.2], RetrievalFilters(owner_id="bob"), top_k=5)
        documents = self.store.query([1.0, 0.2], RetrievalFilters(document_ids=["doc-1"]), top_k=5)
        strong = self.store.query([1.0, 0.2], top_k=5, min_score=0.5)

        self.assertEqual([r.id for r in owner], ["c3"])
        self.assertEqual({r.id for r in documents}, {"c1", "c2"})
        self.assertEqual({r.id for r in strong}, {"c1", "c2"})

    def test_remove_document(self):
        self.assertEqual(self.store.remove_document("doc-1"), 2)
        self.assertEqual([r.id for r in self.store.query([1.0, 0.2], top_k=5)], ["c3"])
        self.assertEqual(self.store.remove_document("doc-1"), 0)

    def test_readding_chunk_replaces_embedding(self):
        self.store.add([CHUNKS[0]], [[0.0, 1.0]])

        top = self.store.query([0.0, 1.0], top_k=2)

        self.assertEqual({r.id for r in top}, {"c1", "c3"})

    def test_mismatched_embeddings_are_rejected(self):
        with self.assertRaises(ValueError):
            self.store.add(CHUNKS, EMBEDDINGS[:2])


class TestInMemoryVectorStore(VectorStoreContract, unittest.TestCase):
    def make_store(self):
        return InMemoryVectorStore()


@unittest.skipIf(importlib.util.find_spec("hnswlib") is None, "hnswlib not installed")
class TestHnswVectorStore(VectorStoreContract, unittest.TestCase):
    def make_store(self):
        from infrastructure.storage.hnsw_vector_store import HnswConfig, HnswVectorStore

        return HnswVectorStore(HnswConfig(dimension=2, max_elements=2))

    def test_index_grows_past_initial_capacity(self):
        extra = [Chunk(f"x{i}", "doc-3", f"extra {i}") for i in range(5)]

        self.store.add(extra, [[0.5, 0.5]] * 5)

        self.assertEqual(len(self.store.query([0.5, 0.5], RetrievalFilters(document_ids=["doc-3"]), top_k=10)), 5)


class TestSqliteCorpusStore(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = SqliteCorpusStore(Path(self._tmp.name) / "corpus.db")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_add_get_list_delete(self):
        published = datetime(2025, 11, 3, 8, 30, tzinfo=timezone.utc)
        self.store.add(DocumentMetadata("doc-2", title="Wind", published_at=published, file_type="pdf"))
        self.store.add(DocumentMetadata("doc-1", title="Solar", author="Ada", file_size=1024))

        fetched = self.store.get_metadata("doc-2")

        self.assertEqual(fetched.title, "Wind")
        self.assertEqual(fetched.published_at, published)
        self.assertEqual([m.document_id for m in self.store.list()], ["doc-1", "doc-2"])
        self.assertTrue(self.store.delete("doc-1"))
        self.assertFalse(self.store.delete("doc-1"))
        self.assertIsNone(self.store.get_metadata("doc-1"))

    def test_add_replaces_existing_metadata(self):
        self.store.add(DocumentMetadata("doc-1", title="Draft"))
        self.store.add(DocumentMetadata("doc-1", title="Final"))

        self.assertEqual(self.store.get_metadata("doc-1").title, "Final")
        self.assertEqual(len(self.store.list()), 1)


if __name__ == "__main__":
    unittest.main()
