"""FastAPI layer exposing context retrieval, indexing and cache administration."""
from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from application.services.similarity_cache import InvalidationScope
from domain.entities import (
    Chunk,
    RAGContext,
    RerankStrategy,
    RetrievalOptions,
    SearchResult,
    TokenBudget,
    WebSearchFilters,
)
from domain.errors import BackendError, InvalidQuery, RetrievalFailed
from infrastructure.config import Container, ContainerConfig, build_default_container
from ui.logging_utils import setup_logging


class ContextRequest(BaseModel):
    query: str
    owner_id: str | None = None
    topic_id: str | None = None
    document_ids: list[str] | None = None
    enable_keyword: bool = True
    enable_semantic: bool = True
    enable_web: bool = True
    enable_cache: bool = True
    enable_dedup: bool = True
    enable_rerank: bool = False
    enable_diversity: bool = True
    total_tokens: int | None = Field(default=None, ge=0)
    reserved_tokens: int = Field(default=0, ge=0)
    rerank_strategy: str | None = None
    prioritization_preset: str | None = None
    web_topic: str | None = None
    web_time_range: str | None = None
    web_country: str | None = None
    web_domains: list[str] | None = None
    cache_ttl: float | None = Field(default=None, gt=0)

    def to_options(self) -> RetrievalOptions:
        budget = None
        if self.total_tokens is not None:
            budget = TokenBudget.compute(self.total_tokens, self.reserved_tokens)
        strategy = None
        if self.rerank_strategy:
            try:
                strategy = RerankStrategy(self.rerank_strategy)
            except ValueError as exc:
                raise InvalidQuery(f"Unknown rerank strategy '{self.rerank_strategy}'") from exc
        web_filters = None
        if any((self.web_topic, self.web_time_range, self.web_country, self.web_domains)):
            web_filters = WebSearchFilters(
                topic=self.web_topic,
                time_range=self.web_time_range,
                country=self.web_country,
                domains=self.web_domains,
            )
        return RetrievalOptions(
            owner_id=self.owner_id,
            topic_id=self.topic_id,
            document_ids=self.document_ids,
            enable_keyword=self.enable_keyword,
            enable_semantic=self.enable_semantic,
            enable_web=self.enable_web,
            enable_cache=self.enable_cache,
            enable_dedup=self.enable_dedup,
            enable_rerank=self.enable_rerank,
            enable_diversity=self.enable_diversity,
            token_budget=budget,
            web_filters=web_filters,
            rerank_strategy=strategy,
            prioritization_preset=self.prioritization_preset,
            cache_ttl=self.cache_ttl,
        )


class ContextResponse(BaseModel):
    query: str
    document_results: list[dict[str, Any]]
    web_results: list[dict[str, Any]]
    degraded: bool
    degradation_level: str
    partial: bool
    reason: str | None = None
    token_usage: dict[str, int]
    limits: dict[str, int] | None = None
    from_cache: bool


class ChunkPayload(BaseModel):
    id: str
    document_id: str
    content: str
    owner_id: str | None = None
    topic_id: str | None = None
    token_count: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


class IndexRequest(BaseModel):
    chunks: list[ChunkPayload]


class IndexResponse(BaseModel):
    indexed: int


class RemoveResponse(BaseModel):
    document_id: str
    removed: int


class InvalidateRequest(BaseModel):
    owner_id: str | None = None
    topic_id: str | None = None
    document_id: str | None = None


class InvalidateResponse(BaseModel):
    removed: int


class CacheStatsResponse(BaseModel):
    entries: int
    hits: int
    misses: int
    similarity_hits: int
    sets: int
    errors: int
    evictions: int
    invalidations: int
    hit_rate: float


def _serialize_result(result: SearchResult) -> dict[str, Any]:
    return {
        "source_type": result.source_type.value,
        "id": result.id,
        "title": result.title,
        "snippet": result.snippet,
        "url": result.url,
        "document_id": result.document_id,
        "chunk_id": result.chunk_id,
        "relevance_score": result.relevance_score,
        "authority_score": result.authority_score,
        "freshness_score": result.freshness_score,
        "priority_score": result.priority_score,
        "weight": result.weight,
        "rank_delta": result.rank_delta,
        "token_count": result.token_count,
    }


def _serialize_context(query: str, context: RAGContext) -> ContextResponse:
    limits = None
    if context.limits is not None:
        limits = {
            "document_chunks": context.limits.document_chunks,
            "web_results": context.limits.web_results,
        }
    return ContextResponse(
        query=query,
        document_results=[_serialize_result(result) for result in context.document_results],
        web_results=[_serialize_result(result) for result in context.web_results],
        degraded=context.degraded,
        degradation_level=context.degradation_level.value,
        partial=context.partial,
        reason=context.reason,
        token_usage={
            "document": context.token_usage.document,
            "web": context.token_usage.web,
            "total": context.token_usage.total,
        },
        limits=limits,
        from_cache=context.from_cache,
    )


def create_app(container: Container | None = None) -> FastAPI:
    """Build the API; without a container one is built from the environment at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if container is None:
            setup_logging()
            app.state.container = build_default_container(ContainerConfig.from_env())
        else:
            app.state.container = container
        try:
            yield
        finally:
            app.state.container.engine.close()

    app = FastAPI(title="ContextFusion API", lifespan=lifespan)

    def _container(request: Request) -> Container:
        return request.app.state.container

    @app.post("/context", response_model=ContextResponse)
    async def context_endpoint(payload: ContextRequest, request: Request) -> ContextResponse:
        engine = _container(request).engine
        try:
            context = await engine.retrieve_context(payload.query, payload.to_options())
        except InvalidQuery as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except RetrievalFailed as exc:
            raise HTTPException(status_code=503, detail=exc.to_dict()) from exc
        return _serialize_context(payload.query, context)

    @app.post("/index", response_model=IndexResponse)
    def index_endpoint(payload: IndexRequest, request: Request) -> IndexResponse:
        chunks = [Chunk(**item.model_dump()) for item in payload.chunks]
        try:
            indexed = _container(request).engine.index_chunks(chunks)
        except BackendError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return IndexResponse(indexed=indexed)

    @app.delete("/documents/{document_id}", response_model=RemoveResponse)
    def remove_endpoint(document_id: str, request: Request) -> RemoveResponse:
        removed = _container(request).engine.remove_document(document_id)
        return RemoveResponse(document_id=document_id, removed=removed)

    @app.post("/cache/invalidate", response_model=InvalidateResponse)
    def invalidate_endpoint(payload: InvalidateRequest, request: Request) -> InvalidateResponse:
        scope = InvalidationScope(
            owner_id=payload.owner_id, topic_id=payload.topic_id, document_id=payload.document_id
        )
        if scope.is_empty():
            raise HTTPException(status_code=400, detail="Provide owner_id, topic_id or document_id")
        return InvalidateResponse(removed=_container(request).engine.invalidate(scope))

    @app.get("/cache/stats", response_model=CacheStatsResponse)
    def cache_stats_endpoint(request: Request) -> CacheStatsResponse:
        stats = _container(request).engine.stats()
        return CacheStatsResponse(
            entries=stats.entries,
            hits=stats.hits,
            misses=stats.misses,
            similarity_hits=stats.similarity_hits,
            sets=stats.sets,
            errors=stats.errors,
            evictions=stats.evictions,
            invalidations=stats.invalidations,
            hit_rate=stats.hit_rate,
        )

    @app.get("/health")
    def health_endpoint(request: Request) -> dict[str, Any]:
        statuses = _container(request).engine.status()
        return {
            "status": "ok",
            "circuits": {name: status.state.value for name, status in statuses.items()},
        }

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        app,
        host=os.getenv("CONTEXTFUSION_HOST", "127.0.0.1"),
        port=int(os.getenv("CONTEXTFUSION_PORT", "8000")),
    )
