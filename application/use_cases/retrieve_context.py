"""Use case that assembles a token-budgeted context for a query."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Sequence

from application.services.bm25_index import KeywordIndex
from application.services.circuit_breaker import CircuitStatus
from application.services.context_selector import select_context
from application.services.degradation import (
    EMBEDDING,
    KEYWORD,
    VECTOR,
    WEB,
    DegradationManager,
    DegradationTracker,
)
from application.services.diversity_filter import DiversityConfig, diversify
from application.services.domain_authority import DomainAuthority
from application.services.dynamic_limits import (
    HeuristicTokenCounter,
    LimitConfig,
    analyze_query_complexity,
    calculate_limits,
)
from application.services.hybrid_fusion import FusionWeights, fuse, pass_through
from application.services.reranking import RerankingConfig, ScoreBasedStrategy, build_strategy, rerank
from application.services.similarity_cache import (
    CacheScope,
    CacheStats,
    InvalidationScope,
    SimilarityCache,
    build_key,
)
from application.services.source_prioritizer import PrioritizationRules, SourcePrioritizer, rules_for_preset
from application.services.web_deduplication import DeduplicationConfig, deduplicate
from application.use_cases.index_chunks import index_chunks, remove_document
from domain.entities import (
    Chunk,
    ContextLimits,
    RAGContext,
    RetrievalOptions,
    SearchResult,
    TokenBudget,
)
from domain.errors import BackendTimeout, BackendUnavailable, InvalidQuery, RetrievalFailed
from domain.interfaces import (
    CorpusStore,
    CrossEncoderScorer,
    Embedder,
    RerankingStrategy,
    TokenCounter,
    VectorStore,
    WebSearchProvider,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BackendTimeouts:
    """Per-call deadlines in seconds."""

    keyword: float = 2.0
    vector: float = 5.0
    web: float = 8.0
    embedding: float = 5.0

    def for_backend(self, backend: str) -> float:
        return float(getattr(self, backend))


@dataclass(slots=True)
class EngineConfig:
    default_total_tokens: int = 12_000
    default_reserved_tokens: int = 4_000
    max_query_length: int = 2_000
    keyword_top_k: int = 20
    vector_top_k: int = 20
    vector_min_score: float = 0.0
    web_max_results: int = 10
    use_similarity_cache: bool = True
    fusion_weights: FusionWeights = field(default_factory=FusionWeights)
    reranking: RerankingConfig = field(default_factory=RerankingConfig)
    diversity: DiversityConfig = field(default_factory=DiversityConfig)
    deduplication: DeduplicationConfig = field(default_factory=DeduplicationConfig)
    limits: LimitConfig = field(default_factory=LimitConfig)
    prioritization: PrioritizationRules = field(default_factory=PrioritizationRules)
    timeouts: BackendTimeouts = field(default_factory=BackendTimeouts)


@dataclass(slots=True)
class BranchOutcome:
    """What one retrieval branch contributed: results, or the error it failed with."""

    backend: str
    results: list[SearchResult] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class RetrievalEngine:
    """Fans a query out to keyword, vector and web backends and ranks the evidence.

    The engine owns the keyword index and the context cache; both live as long
    as the engine and are released by :meth:`close`.
    """

    def __init__(
        self,
        *,
        keyword_index: KeywordIndex | None = None,
        embedder: Embedder | None = None,
        vector_store: VectorStore | None = None,
        web_search: WebSearchProvider | None = None,
        corpus_store: CorpusStore | None = None,
        cache: SimilarityCache | None = None,
        degradation: DegradationManager | None = None,
        cross_encoder: CrossEncoderScorer | None = None,
        authority: DomainAuthority | None = None,
        token_counter: TokenCounter | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._keyword_index = keyword_index if keyword_index is not None else KeywordIndex()
        self._embedder = embedder
        self._vector_store = vector_store
        self._web_search = web_search
        self._cache = cache
        self._degradation = degradation or DegradationManager()
        self._cross_encoder = cross_encoder
        self._token_counter = token_counter
        self._prioritizer = SourcePrioritizer(corpus_store=corpus_store, authority=authority)
        self._closed = False

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def keyword_index(self) -> KeywordIndex:
        return self._keyword_index

    async def __aenter__(self) -> "RetrievalEngine":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    async def retrieve_context(self, query: str, options: RetrievalOptions | None = None) -> RAGContext:
        """Return ranked, deduplicated and budgeted evidence for ``query``.

        Raises :class:`InvalidQuery` for unusable input and
        :class:`RetrievalFailed` when every enabled backend failed.
        """
        if self._closed:
            raise RuntimeError("RetrievalEngine is closed")
        opts = options or RetrievalOptions()
        text = self._validate(query, opts)
        budget = opts.token_budget or TokenBudget.compute(
            self._config.default_total_tokens, self._config.default_reserved_tokens
        )
        scope = CacheScope.from_options(replace(opts, token_budget=budget))
        cache_key = build_key(text, scope)
        use_cache = opts.enable_cache and self._cache is not None
        tracker = self._degradation.start_request()

        if use_cache:
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.debug("Exact cache hit for %s", cache_key)
                return cached

        semantic_ready = opts.enable_semantic and self._embedder is not None and self._vector_store is not None
        similarity_lookup = use_cache and self._config.use_similarity_cache and self._embedder is not None
        query_embedding: list[float] | None = None
        embedding_error: BaseException | None = None
        if semantic_ready or similarity_lookup:
            # A query embedded only for the cache lookup does not degrade the request.
            lookup_tracker = tracker if semantic_ready else DegradationTracker()
            query_embedding, embedding_error = await self._call_backend(
                EMBEDDING, self._embedder.embed_query, text, tracker=lookup_tracker
            )
        if similarity_lookup and query_embedding is not None:
            similar = self._cache.get_similar(query_embedding, scope)
            if similar is not None:
                return similar

        outcomes = await self._fan_out(text, opts, semantic_ready, query_embedding, embedding_error, tracker)
        if not outcomes:
            raise InvalidQuery("No retrieval backend is enabled for this request")
        if all(outcome.failed for outcome in outcomes.values()):
            tracker.mark_critical("all enabled retrieval backends failed")
            logger.error("Retrieval failed for every backend: %s", tracker.reason)
            raise RetrievalFailed(tracker.reason or "all backends failed", tracker.failed_backends)

        analysis = analyze_query_complexity(text)
        limits = calculate_limits(budget, analysis.complexity, self._config.limits)
        documents = self._rank_documents(text, opts, outcomes, limits)
        web = self._prepare_web(opts, outcomes)
        prioritized = await self._prioritize(RAGContext(document_results=documents, web_results=web), opts)

        context = self._select(prioritized, limits, budget)
        context.degraded = tracker.degraded
        context.degradation_level = tracker.level
        context.partial = any(outcome.failed for outcome in outcomes.values())
        context.reason = tracker.reason
        logger.info(
            "Context for query (%s): %d documents, %d web, %d tokens, degradation %s",
            analysis.complexity.value,
            len(context.document_results),
            len(context.web_results),
            context.token_usage.total,
            context.degradation_level.value,
        )

        if use_cache and not context.degraded:
            self._cache.set(
                cache_key,
                context,
                scope=scope,
                ttl=self._cache.ttl_for(opts),
                embedding=query_embedding,
            )
        return context

    def index_chunks(self, chunks: Sequence[Chunk]) -> int:
        return index_chunks(
            chunks,
            keyword_index=self._keyword_index,
            embedder=self._embedder,
            vector_store=self._vector_store,
            cache=self._cache,
        )

    def remove_document(self, document_id: str) -> int:
        return remove_document(
            document_id,
            keyword_index=self._keyword_index,
            vector_store=self._vector_store,
            cache=self._cache,
        )

    def invalidate(self, scope: InvalidationScope) -> int:
        if self._cache is None:
            return 0
        return self._cache.invalidate(scope)

    def stats(self) -> CacheStats:
        if self._cache is None:
            return CacheStats()
        return self._cache.stats()

    def status(self) -> dict[str, CircuitStatus]:
        return self._degradation.status()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._cache is not None:
            self._cache.clear()
        self._keyword_index.clear()
        close = getattr(self._web_search, "close", None)
        if callable(close):
            close()
        logger.info("Retrieval engine closed")

    def _validate(self, query: str, options: RetrievalOptions) -> str:
        text = (query or "").strip()
        if not text:
            raise InvalidQuery("Query must not be empty")
        if len(text) > self._config.max_query_length:
            raise InvalidQuery(f"Query exceeds {self._config.max_query_length} characters")
        if options.token_budget is not None and options.token_budget.total_available < 0:
            raise InvalidQuery("Token budget must not be negative")
        return text

    async def _fan_out(
        self,
        text: str,
        opts: RetrievalOptions,
        semantic_ready: bool,
        query_embedding: list[float] | None,
        embedding_error: BaseException | None,
        tracker: DegradationTracker,
    ) -> dict[str, BranchOutcome]:
        filters = opts.filters()
        branches: dict[str, Awaitable[BranchOutcome]] = {}
        outcomes: dict[str, BranchOutcome] = {}
        if opts.enable_keyword:
            branches[KEYWORD] = self._branch(
                KEYWORD, self._keyword_index.search, text, filters, self._config.keyword_top_k, tracker=tracker
            )
        if semantic_ready:
            if query_embedding is None:
                outcomes[VECTOR] = BranchOutcome(VECTOR, error=embedding_error)
            else:
                branches[VECTOR] = self._branch(
                    VECTOR,
                    self._vector_store.query,
                    query_embedding,
                    filters,
                    self._config.vector_top_k,
                    self._config.vector_min_score,
                    tracker=tracker,
                )
        elif opts.enable_semantic:
            logger.debug("Semantic search requested but no embedder/vector store configured")
        if opts.enable_web and self._web_search is not None:
            branches[WEB] = self._branch(
                WEB, self._web_search.search, text, opts.web_filters, self._config.web_max_results, tracker=tracker
            )
        elif opts.enable_web:
            logger.debug("Web search requested but no provider configured")

        settled = await asyncio.gather(*branches.values())
        outcomes.update(zip(branches.keys(), settled))
        return outcomes

    async def _branch(
        self,
        backend: str,
        fn: Callable[..., Sequence[SearchResult]],
        *args: Any,
        tracker: DegradationTracker,
    ) -> BranchOutcome:
        results, error = await self._call_backend(backend, fn, *args, tracker=tracker)
        if error is not None:
            return BranchOutcome(backend, error=error)
        return BranchOutcome(backend, results=list(results or []))

    async def _call_backend(
        self,
        backend: str,
        fn: Callable[..., Any],
        *args: Any,
        tracker: DegradationTracker,
    ) -> tuple[Any, BaseException | None]:
        breaker = self._degradation.breaker(backend)
        if not breaker.allow_request():
            error: BaseException = BackendUnavailable(backend, f"circuit open for {backend}")
            tracker.record_failure(backend, error)
            return None, error
        timeout = self._config.timeouts.for_backend(backend)
        try:
            value = await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout)
        except asyncio.TimeoutError:
            error = BackendTimeout(backend, f"{backend} did not answer within {timeout:.1f}s")
        except Exception as exc:
            error = exc
        else:
            breaker.record_success()
            return value, None
        breaker.record_failure()
        tracker.record_failure(backend, error)
        return None, error

    def _rank_documents(
        self,
        text: str,
        opts: RetrievalOptions,
        outcomes: dict[str, BranchOutcome],
        limits: ContextLimits,
    ) -> list[SearchResult]:
        keyword = outcomes.get(KEYWORD)
        semantic = outcomes.get(VECTOR)
        keyword_ok = keyword is not None and not keyword.failed
        semantic_ok = semantic is not None and not semantic.failed
        if keyword_ok and semantic_ok:
            documents = fuse(semantic.results, keyword.results, self._config.fusion_weights)
        elif keyword_ok:
            documents = pass_through(keyword.results, "keyword")
        elif semantic_ok:
            documents = pass_through(semantic.results, "semantic")
        else:
            return []

        if opts.enable_rerank and documents:
            cfg = self._config.reranking
            documents = rerank(
                text,
                documents,
                self._rerank_strategy(opts),
                top_k=cfg.top_k,
                max_results=max(cfg.max_results, limits.document_chunks),
                min_score=cfg.min_score,
            )
        if opts.enable_diversity and documents:
            try:
                documents = diversify(
                    documents,
                    lambda_=self._config.diversity.lambda_,
                    max_results=max(self._config.diversity.max_results, limits.document_chunks),
                )
            except Exception:
                logger.exception("Diversity filter failed, keeping unfiltered results")
        return documents

    def _rerank_strategy(self, opts: RetrievalOptions) -> RerankingStrategy:
        cfg = self._config.reranking
        name = opts.rerank_strategy or cfg.strategy
        try:
            return build_strategy(name, cfg, self._cross_encoder)
        except ValueError:
            logger.warning("Rerank strategy %s unavailable, using score-based", name, exc_info=True)
            return ScoreBasedStrategy(cfg.weights)

    def _prepare_web(self, opts: RetrievalOptions, outcomes: dict[str, BranchOutcome]) -> list[SearchResult]:
        web = outcomes.get(WEB)
        if web is None or web.failed:
            return []
        if not opts.enable_dedup:
            return web.results
        try:
            return deduplicate(web.results, self._config.deduplication)
        except Exception:
            logger.exception("Web deduplication failed, keeping all web results")
            return web.results

    def _select(self, context: RAGContext, limits: ContextLimits, budget: TokenBudget) -> RAGContext:
        documents, web = context.document_results, context.web_results
        try:
            return select_context(documents, web, limits, budget, self._token_counter)
        except Exception:
            if self._token_counter is None:
                raise
            logger.exception("Token counting failed, falling back to the character estimate")
            return select_context(documents, web, limits, budget, HeuristicTokenCounter())

    async def _prioritize(self, context: RAGContext, opts: RetrievalOptions) -> RAGContext:
        rules = self._config.prioritization
        if opts.prioritization_preset:
            try:
                rules = rules_for_preset(opts.prioritization_preset)
            except ValueError:
                logger.warning("Unknown prioritization preset %s, using defaults", opts.prioritization_preset)
        try:
            return await asyncio.to_thread(self._prioritizer.prioritize, context, rules)
        except Exception:
            logger.exception("Source prioritization failed, keeping retrieval order")
            return context


__all__ = ["RetrievalEngine", "EngineConfig", "BackendTimeouts", "BranchOutcome"]
