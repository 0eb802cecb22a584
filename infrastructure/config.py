"""Dependency wiring for the ContextFusion retrieval engine."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Literal

from application.services.bm25_index import KeywordIndex
from application.services.degradation import DegradationManager
from application.services.domain_authority import DomainAuthority
from application.services.similarity_cache import CacheConfig, SimilarityCache
from application.use_cases.retrieve_context import EngineConfig, RetrievalEngine
from application.services.dynamic_limits import HeuristicTokenCounter
from domain.interfaces import CorpusStore, CrossEncoderScorer, Embedder, TokenCounter, VectorStore, WebSearchProvider
from infrastructure.embedding.hash_embedder import HashEmbedder
from infrastructure.repositories.sqlite_corpus_store import SqliteCorpusStore
from infrastructure.storage.in_memory_vector_store import InMemoryVectorStore

logger = logging.getLogger(__name__)

EmbedderName = Literal["hash", "sentence_transformers"]
VectorStoreName = Literal["memory", "hnsw"]
WebSearchName = Literal["none", "tavily"]
TokenCounterName = Literal["tiktoken", "heuristic"]

ENV_PREFIX = "CONTEXTFUSION_"


@dataclass(slots=True)
class Container:
    """Bundles the engine with the concrete collaborators it was built from."""

    engine: RetrievalEngine
    keyword_index: KeywordIndex
    embedder: Embedder | None
    vector_store: VectorStore | None
    web_search: WebSearchProvider | None
    corpus_store: CorpusStore | None
    cache: SimilarityCache
    degradation: DegradationManager
    token_counter: TokenCounter
    cross_encoder: CrossEncoderScorer | None = None


@dataclass(slots=True)
class ContainerConfig:
    """Selects implementations and tunes the engine."""

    embedder: EmbedderName = "hash"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    vector_store: VectorStoreName = "memory"
    web_search: WebSearchName = "none"
    token_counter: TokenCounterName = "tiktoken"
    token_encoding: str = "cl100k_base"
    tavily_api_key: str | None = None
    corpus_db_path: str | None = None
    cross_encoder: bool = False
    cross_encoder_model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    models_dir: str = "models"
    authority_file: str | None = None
    cache: CacheConfig = field(default_factory=CacheConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "ContainerConfig":
        env = os.environ if environ is None else environ

        def get(name: str, default: str | None = None) -> str | None:
            return env.get(f"{ENV_PREFIX}{name}", default)

        cfg = cls()
        cfg.embedder = get("EMBEDDER", cfg.embedder)  # type: ignore[assignment]
        cfg.embedding_model = get("EMBEDDING_MODEL", cfg.embedding_model) or cfg.embedding_model
        cfg.vector_store = get("VECTOR_STORE", cfg.vector_store)  # type: ignore[assignment]
        cfg.web_search = get("WEB_SEARCH", cfg.web_search)  # type: ignore[assignment]
        cfg.token_counter = get("TOKEN_COUNTER", cfg.token_counter)  # type: ignore[assignment]
        cfg.token_encoding = get("TOKEN_ENCODING", cfg.token_encoding) or cfg.token_encoding
        cfg.tavily_api_key = env.get("TAVILY_API_KEY")
        cfg.corpus_db_path = get("CORPUS_DB")
        cfg.cross_encoder = (get("CROSS_ENCODER", "0") or "0").lower() in {"1", "true", "yes"}
        cfg.models_dir = get("MODELS_DIR", cfg.models_dir) or cfg.models_dir
        cfg.authority_file = get("AUTHORITY_FILE")
        try:
            cfg.cache.max_entries = int(get("CACHE_MAX_ENTRIES", str(cfg.cache.max_entries)))
            cfg.cache.similarity_threshold = float(
                get("CACHE_SIMILARITY_THRESHOLD", str(cfg.cache.similarity_threshold))
            )
            timeouts = cfg.engine.timeouts
            timeouts.keyword = float(get("KEYWORD_TIMEOUT", str(timeouts.keyword)))
            timeouts.vector = float(get("VECTOR_TIMEOUT", str(timeouts.vector)))
            timeouts.web = float(get("WEB_TIMEOUT", str(timeouts.web)))
            timeouts.embedding = float(get("EMBEDDING_TIMEOUT", str(timeouts.embedding)))
        except ValueError as exc:
            raise ValueError(f"Invalid numeric {ENV_PREFIX}* setting: {exc}") from exc
        return cfg


def _resolve_model_reference(model_ref: str, config: ContainerConfig) -> str:
    """Prefer a model saved under ``models_dir`` (see scripts/prefetch_models.py)."""
    local_path = Path(config.models_dir).expanduser() / model_ref
    if local_path.is_dir():
        return str(local_path)
    return model_ref


def _hash_embedder(config: ContainerConfig) -> Embedder:
    return HashEmbedder()


def _sentence_transformers_embedder(config: ContainerConfig) -> Embedder:
    from infrastructure.embedding.sentence_transformers_embedder import (
        SentenceTransformersConfig,
        SentenceTransformersEmbedder,
    )

    model = _resolve_model_reference(config.embedding_model, config)
    return SentenceTransformersEmbedder(SentenceTransformersConfig(model_name=model))


def _memory_store(config: ContainerConfig, embedder: Embedder) -> VectorStore:
    return InMemoryVectorStore()


def _hnsw_store(config: ContainerConfig, embedder: Embedder) -> VectorStore:
    from infrastructure.storage.hnsw_vector_store import HnswConfig, HnswVectorStore

    return HnswVectorStore(HnswConfig(dimension=embedder.dimension))


def _no_web_search(config: ContainerConfig) -> WebSearchProvider | None:
    return None


def _tavily(config: ContainerConfig) -> WebSearchProvider | None:
    from infrastructure.web.tavily_search import TavilyConfig, TavilySearchProvider

    return TavilySearchProvider(
        TavilyConfig(
            api_key=config.tavily_api_key,
            timeout=config.engine.timeouts.web,
            deadline=config.engine.timeouts.web,
        )
    )


def _tiktoken_counter(config: ContainerConfig) -> TokenCounter:
    from infrastructure.tokenization.tiktoken_counter import TiktokenConfig, TiktokenCounter

    return TiktokenCounter(TiktokenConfig(encoding_name=config.token_encoding))


def _heuristic_counter(config: ContainerConfig) -> TokenCounter:
    return HeuristicTokenCounter()


_EMBEDDER_FACTORIES: dict[EmbedderName, Callable[[ContainerConfig], Embedder]] = {
    "hash": _hash_embedder,
    "sentence_transformers": _sentence_transformers_embedder,
}

_VECTOR_STORE_FACTORIES: dict[VectorStoreName, Callable[[ContainerConfig, Embedder], VectorStore]] = {
    "memory": _memory_store,
    "hnsw": _hnsw_store,
}

_WEB_SEARCH_FACTORIES: dict[WebSearchName, Callable[[ContainerConfig], WebSearchProvider | None]] = {
    "none": _no_web_search,
    "tavily": _tavily,
}

_TOKEN_COUNTER_FACTORIES: dict[TokenCounterName, Callable[[ContainerConfig], TokenCounter]] = {
    "tiktoken": _tiktoken_counter,
    "heuristic": _heuristic_counter,
}


def build_default_container(config: ContainerConfig | None = None) -> Container:
    """Instantiate the engine and its infrastructure stack."""

    cfg = config or ContainerConfig()
    try:
        embedder = _EMBEDDER_FACTORIES[cfg.embedder](cfg)
    except KeyError as exc:
        raise ValueError(f"Unknown embedder '{cfg.embedder}'") from exc
    try:
        vector_store = _VECTOR_STORE_FACTORIES[cfg.vector_store](cfg, embedder)
    except KeyError as exc:
        raise ValueError(f"Unknown vector store '{cfg.vector_store}'") from exc
    try:
        web_search = _WEB_SEARCH_FACTORIES[cfg.web_search](cfg)
    except KeyError as exc:
        raise ValueError(f"Unknown web search provider '{cfg.web_search}'") from exc
    try:
        token_counter = _TOKEN_COUNTER_FACTORIES[cfg.token_counter](cfg)
    except KeyError as exc:
        raise ValueError(f"Unknown token counter '{cfg.token_counter}'") from exc

    cross_encoder: CrossEncoderScorer | None = None
    if cfg.cross_encoder:
        from infrastructure.query.cross_encoder_scorer import CrossEncoderConfig, SentenceTransformersCrossEncoder

        model = _resolve_model_reference(cfg.cross_encoder_model, cfg)
        cross_encoder = SentenceTransformersCrossEncoder(CrossEncoderConfig(model_name=model))

    corpus_store = SqliteCorpusStore(cfg.corpus_db_path) if cfg.corpus_db_path else None
    authority = DomainAuthority.from_file(cfg.authority_file) if cfg.authority_file else DomainAuthority()
    keyword_index = KeywordIndex()
    cache = SimilarityCache(cfg.cache)
    degradation = DegradationManager()

    engine = RetrievalEngine(
        keyword_index=keyword_index,
        embedder=embedder,
        vector_store=vector_store,
        web_search=web_search,
        corpus_store=corpus_store,
        cache=cache,
        degradation=degradation,
        cross_encoder=cross_encoder,
        authority=authority,
        token_counter=token_counter,
        config=cfg.engine,
    )
    logger.info(
        "Built engine: embedder=%s vector_store=%s web_search=%s token_counter=%s cross_encoder=%s",
        cfg.embedder,
        cfg.vector_store,
        cfg.web_search,
        cfg.token_counter,
        cfg.cross_encoder,
    )
    return Container(
        engine=engine,
        keyword_index=keyword_index,
        embedder=embedder,
        vector_store=vector_store,
        web_search=web_search,
        corpus_store=corpus_store,
        cache=cache,
        degradation=degradation,
        token_counter=token_counter,
        cross_encoder=cross_encoder,
    )


__all__ = ["Container", "ContainerConfig", "build_default_container"]
