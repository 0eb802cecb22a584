import time
import unittest

from application.services.circuit_breaker import CircuitBreakerConfig
from application.services.degradation import VECTOR, WEB, DegradationManager
from application.services.similarity_cache import InvalidationScope, SimilarityCache
from application.use_cases.retrieve_context import BackendTimeouts, EngineConfig, RetrievalEngine
from domain.entities import (
    Chunk,
    DegradationLevel,
    RerankStrategy,
    RetrievalOptions,
    SearchResult,
    SourceType,
    TokenBudget,
    WebSearchFilters,
)
from domain.errors import BackendUnavailable, InvalidQuery, RateLimited, RetrievalFailed
from domain.interfaces import Embedder, TokenCounter, VectorStore, WebSearchProvider
from infrastructure.embedding.hash_embedder import HashEmbedder
from infrastructure.storage.in_memory_vector_store import InMemoryVectorStore

CHUNKS = [
    Chunk("c1", "doc-solar", "Solar panel efficiency depends on cell temperature and irradiance.", owner_id="alice"),
    Chunk("c2", "doc-solar", "Monocrystalline solar panels reach the highest efficiency ratings.", owner_id="alice"),
    Chunk("c3", "doc-wind", "Wind turbine output grows with the cube of wind speed.", owner_id="alice"),
    Chunk("c4", "doc-bob", "Solar panel efficiency notes kept by another user.", owner_id="bob"),
    Chunk("c5", "doc-hydro", "Hydroelectric dams convert river flow into electricity.", owner_id="alice"),
]


class FakeWebSearch(WebSearchProvider):
    def __init__(self, error: Exception | None = None, delay: float = 0.0) -> None:
        self.error = error
        self.delay = delay
        self.calls = 0
        self.closed = False

    def search(self, query, filters=None, max_results=10):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [
            SearchResult(
                source_type=SourceType.WEB,
                id="w1",
                title="Solar efficiency record",
                url="https://en.wikipedia.org/wiki/Solar_cell_efficiency",
                snippet="Researchers set a new solar cell efficiency record this year.",
                relevance_score=0.9,
            ),
            SearchResult(
                source_type=SourceType.WEB,
                id="w2",
                title="Solar efficiency record",
                url="http://www.en.wikipedia.org/wiki/Solar_cell_efficiency/",
                snippet="Mirror of the same article.",
                relevance_score=0.5,
            ),
            SearchResult(
                source_type=SourceType.WEB,
                id="w3",
                title="Buying panels for a small roof",
                url="https://blog.example.com/panels",
                snippet="Tips for choosing rooftop panels on a budget.",
                relevance_score=0.6,
            ),
        ][:max_results]

    def close(self):
        self.closed = True


class DomainAwareWebSearch(WebSearchProvider):
    def __init__(self) -> None:
        self.calls = 0

    def search(self, query, filters=None, max_results=10):
        self.calls += 1
        if filters is not None and filters.domains:
            url, snippet = "https://arxiv.org/abs/solar", "Preprint on perovskite solar cell efficiency."
        else:
            url, snippet = "https://blog.example.com/solar", "A blog post about rooftop solar panels."
        return [SearchResult(source_type=SourceType.WEB, id=url, url=url, snippet=snippet, relevance_score=0.8)]


class WordCounter(TokenCounter):
    def count(self, text):
        return len(text.split())


class BrokenTokenCounter(TokenCounter):
    def count(self, text):
        raise OSError("encoding file unavailable")


class FailingVectorStore(VectorStore):
    def __init__(self) -> None:
        self.calls = 0

    def add(self, chunks, embeddings):
        return None

    def remove_document(self, document_id):
        return 0

    def query(self, embedding, filters=None, top_k=10, min_score=0.0):
        self.calls += 1
        raise BackendUnavailable(VECTOR, "connection refused")


class FailingEmbedder(HashEmbedder):
    def embed_query(self, text):
        raise RuntimeError("embedding model offline")


def _engine(
    *,
    vector_store: VectorStore | None = None,
    web: WebSearchProvider | None = None,
    embedder: Embedder | None = None,
    cache: SimilarityCache | None = None,
    degradation: DegradationManager | None = None,
    token_counter: TokenCounter | None = None,
    config: EngineConfig | None = None,
) -> RetrievalEngine:
    engine = RetrievalEngine(
        embedder=embedder or HashEmbedder(dimension=32),
        vector_store=vector_store if vector_store is not None else InMemoryVectorStore(),
        web_search=web,
        cache=cache,
        degradation=degradation,
        token_counter=token_counter,
        config=config,
    )
    engine.index_chunks(CHUNKS)
    return engine


class TestRetrieveContext(unittest.IsolatedAsyncioTestCase):
    async def test_hybrid_context_within_budget(self):
        web = FakeWebSearch()
        engine = _engine(web=web)
        budget = TokenBudget.compute(2000, 500)

        context = await engine.retrieve_context(
            "solar panel efficiency", RetrievalOptions(owner_id="alice", token_budget=budget)
        )

        self.assertFalse(context.degraded)
        self.assertEqual(context.degradation_level, DegradationLevel.NONE)
        self.assertFalse(context.partial)
        self.assertTrue(context.document_results)
        self.assertLessEqual(context.token_usage.total, budget.remaining_for_context)
        self.assertEqual(context.document_results[0].document_id, "doc-solar")
        self.assertEqual({r.id for r in context.web_results}, {"w1", "w3"})
        for result in context.document_results + context.web_results:
            self.assertIsNotNone(result.priority_score)
            self.assertGreaterEqual(result.weight, 0.3)

    async def test_vector_outage_degrades_to_keyword_results(self):
        engine = _engine(vector_store=FailingVectorStore(), web=FakeWebSearch())

        context = await engine.retrieve_context("solar panel efficiency")

        self.assertTrue(context.degraded)
        self.assertTrue(context.partial)
        self.assertEqual(context.degradation_level, DegradationLevel.SEVERE)
        self.assertIn("connection refused", context.reason)
        self.assertTrue(context.document_results)
        for result in context.document_results:
            self.assertEqual(result.metadata["fusion_source"], "keyword")
            self.assertIsNone(result.semantic_score)
        self.assertTrue(context.web_results)

    async def test_rate_limited_web_is_partial(self):
        engine = _engine(web=FakeWebSearch(error=RateLimited(WEB, retry_after=2)))

        context = await engine.retrieve_context("solar panel efficiency")

        self.assertEqual(context.degradation_level, DegradationLevel.PARTIAL)
        self.assertEqual(context.web_results, [])
        self.assertTrue(context.document_results)

    async def test_every_backend_failing_raises(self):
        engine = _engine(vector_store=FailingVectorStore(), web=FakeWebSearch(error=BackendUnavailable(WEB)))

        with self.assertRaises(RetrievalFailed) as caught:
            await engine.retrieve_context("solar", RetrievalOptions(enable_keyword=False))

        error = caught.exception
        self.assertEqual(error.level, DegradationLevel.CRITICAL)
        self.assertEqual(set(error.failed_backends), {VECTOR, WEB})
        self.assertEqual(error.to_dict()["level"], "critical")

    async def test_invalid_queries(self):
        engine = _engine()

        with self.assertRaises(InvalidQuery):
            await engine.retrieve_context("   ")
        with self.assertRaises(InvalidQuery):
            await engine.retrieve_context("x" * 2001)
        with self.assertRaises(InvalidQuery):
            await engine.retrieve_context(
                "solar", RetrievalOptions(enable_keyword=False, enable_semantic=False, enable_web=False)
            )

    async def test_exact_cache_hit(self):
        web = FakeWebSearch()
        engine = _engine(web=web, cache=SimilarityCache())

        first = await engine.retrieve_context("solar panel efficiency")
        second = await engine.retrieve_context("  Solar panel   EFFICIENCY ")

        self.assertFalse(first.from_cache)
        self.assertTrue(second.from_cache)
        self.assertEqual(web.calls, 1)
        self.assertEqual([r.id for r in second.document_results], [r.id for r in first.document_results])
        self.assertEqual(engine.stats().hits, 1)

    async def test_cold_query_counts_one_miss(self):
        engine = _engine(cache=SimilarityCache())

        await engine.retrieve_context("solar panel efficiency")

        stats = engine.stats()
        self.assertEqual(stats.misses, 1)
        self.assertEqual(stats.hits, 0)
        self.assertEqual(stats.hit_rate, 0.0)

    async def test_web_filters_are_part_of_the_cache_key(self):
        web = DomainAwareWebSearch()
        engine = _engine(web=web, cache=SimilarityCache())

        await engine.retrieve_context("solar panel efficiency")
        filtered = await engine.retrieve_context(
            "solar panel efficiency", RetrievalOptions(web_filters=WebSearchFilters(domains=["arxiv.org"]))
        )
        again = await engine.retrieve_context(
            "solar panel efficiency", RetrievalOptions(web_filters=WebSearchFilters(domains=["ArXiv.org"]))
        )

        self.assertFalse(filtered.from_cache)
        self.assertEqual([r.url for r in filtered.web_results], ["https://arxiv.org/abs/solar"])
        self.assertTrue(again.from_cache)
        self.assertEqual(web.calls, 2)

    async def test_indexing_invalidates_contexts_the_new_chunks_could_join(self):
        engine = _engine(cache=SimilarityCache())
        unscoped = RetrievalOptions()
        bob_only = RetrievalOptions(owner_id="bob")
        await engine.retrieve_context("solar panel prices", unscoped)
        await engine.retrieve_context("solar panel prices", bob_only)

        engine.index_chunks([Chunk("c6", "doc-prices", "Solar panel prices fell sharply this year.", owner_id="alice")])
        unscoped_after = await engine.retrieve_context("solar panel prices", unscoped)
        bob_after = await engine.retrieve_context("solar panel prices", bob_only)

        self.assertFalse(unscoped_after.from_cache)
        self.assertIn("doc-prices", {r.document_id for r in unscoped_after.document_results})
        self.assertTrue(bob_after.from_cache)

    async def test_cache_is_scoped_per_owner(self):
        web = FakeWebSearch()
        engine = _engine(web=web, cache=SimilarityCache())

        alice = await engine.retrieve_context("solar panel efficiency", RetrievalOptions(owner_id="alice"))
        bob = await engine.retrieve_context("solar panel efficiency", RetrievalOptions(owner_id="bob"))

        self.assertFalse(bob.from_cache)
        self.assertEqual({r.document_id for r in bob.document_results}, {"doc-bob"})
        self.assertNotIn("doc-bob", {r.document_id for r in alice.document_results})

    async def test_degraded_contexts_are_not_cached(self):
        web = FakeWebSearch()
        engine = _engine(vector_store=FailingVectorStore(), web=web, cache=SimilarityCache())

        await engine.retrieve_context("solar panel efficiency")
        second = await engine.retrieve_context("solar panel efficiency")

        self.assertFalse(second.from_cache)
        self.assertEqual(web.calls, 2)

    async def test_embedding_failure_for_cache_lookup_only_is_not_degradation(self):
        engine = _engine(embedder=FailingEmbedder(dimension=32), cache=SimilarityCache())

        context = await engine.retrieve_context("solar panel efficiency", RetrievalOptions(enable_semantic=False))

        self.assertFalse(context.degraded)
        self.assertTrue(context.document_results)

    async def test_embedding_failure_degrades_semantic_branch(self):
        engine = _engine(embedder=FailingEmbedder(dimension=32))

        context = await engine.retrieve_context("solar panel efficiency")

        self.assertTrue(context.degraded)
        self.assertTrue(context.partial)
        self.assertTrue(all(r.semantic_score is None for r in context.document_results))

    async def test_slow_web_backend_times_out(self):
        config = EngineConfig(timeouts=BackendTimeouts(web=0.05))
        engine = _engine(web=FakeWebSearch(delay=0.3), config=config)

        context = await engine.retrieve_context("solar panel efficiency")

        self.assertEqual(context.degradation_level, DegradationLevel.SEVERE)
        self.assertEqual(context.web_results, [])
        self.assertTrue(context.document_results)

    async def test_open_circuit_skips_backend(self):
        store = FailingVectorStore()
        degradation = DegradationManager(config=CircuitBreakerConfig(failure_threshold=1))
        engine = _engine(vector_store=store, degradation=degradation)

        await engine.retrieve_context("solar panel efficiency")
        context = await engine.retrieve_context("wind turbine output")

        self.assertEqual(store.calls, 1)
        self.assertIn("circuit open", context.reason)
        self.assertEqual(engine.status()[VECTOR].state.value, "open")

    async def test_token_usage_comes_from_the_counter(self):
        engine = _engine(token_counter=WordCounter())

        context = await engine.retrieve_context("solar panel efficiency", RetrievalOptions(owner_id="alice"))

        words = sum(len(r.snippet.split()) for r in context.document_results)
        self.assertTrue(context.document_results)
        self.assertEqual(context.token_usage.total, words)

    async def test_failing_counter_falls_back_to_estimate(self):
        engine = _engine(token_counter=BrokenTokenCounter())

        with self.assertLogs("application.use_cases.retrieve_context", level="ERROR"):
            context = await engine.retrieve_context("solar panel efficiency")

        self.assertTrue(context.document_results)
        self.assertGreater(context.token_usage.total, 0)

    async def test_rerank_falls_back_to_score_based(self):
        engine = _engine()
        options = RetrievalOptions(enable_rerank=True, rerank_strategy=RerankStrategy.CROSS_ENCODER)

        with self.assertLogs("application.use_cases.retrieve_context", level="WARNING"):
            context = await engine.retrieve_context("solar panel efficiency", options)

        self.assertTrue(context.document_results)
        self.assertTrue(all(r.rank_delta is not None for r in context.document_results))

    async def test_remove_document_invalidates_results(self):
        engine = _engine(cache=SimilarityCache())
        await engine.retrieve_context("solar panel efficiency")

        removed = engine.remove_document("doc-solar")
        context = await engine.retrieve_context("solar panel efficiency")

        self.assertEqual(removed, 2)
        self.assertFalse(context.from_cache)
        self.assertNotIn("doc-solar", {r.document_id for r in context.document_results})

    async def test_manual_invalidation(self):
        engine = _engine(cache=SimilarityCache())
        await engine.retrieve_context("solar panel efficiency", RetrievalOptions(owner_id="alice"))

        self.assertEqual(engine.invalidate(InvalidationScope(owner_id="alice")), 1)
        self.assertEqual(engine.stats().entries, 0)

    async def test_close_releases_resources(self):
        web = FakeWebSearch()
        async with _engine(web=web) as engine:
            await engine.retrieve_context("solar panel efficiency")

        self.assertTrue(web.closed)
        self.assertEqual(engine.keyword_index.stats().total_chunks, 0)
        with self.assertRaises(RuntimeError):
            await engine.retrieve_context("solar panel efficiency")


if __name__ == "__main__":
    unittest.main()
