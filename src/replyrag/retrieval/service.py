"""Hybrid retrieval over the chunk store."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Mapping, Protocol, Sequence

from replyrag.embeddings.service import EmbeddingBackend, word_terms
from replyrag.embeddings.store import ChunkFilter, ChunkStore
from replyrag.errors import DependencyError, ValidationError
from replyrag.metrics.observability import PipelineMetrics, clamp_unit, get_logger
from replyrag.models import RetrievalResult, SourceType


@dataclass(frozen=True)
class RetrievalConfig:
    """Configuration for hybrid retrieval."""

    top_k: int = 6
    max_top_k: int = 50
    min_score: float = 0.0
    semantic_weight: float = 0.7
    lexical_weight: float = 0.3
    candidate_multiplier: int = 2


class Retriever(Protocol):
    """Retrieve relevant chunks for a query string."""

    def retrieve(
        self,
        query: str,
        *,
        top_k: int | None = None,
        source_type: SourceType | None = None,
        content_item_id: str | None = None,
        category: str | None = None,
        source_ids: Sequence[str] | None = None,
        min_score: float | None = None,
        query_embedding: Sequence[float] | None = None,
    ) -> Sequence[RetrievalResult]:
        """Return at most ``top_k`` results ordered by fused score."""


def term_overlap_score(query_terms: set[str], text: str) -> float:
    """Fraction of distinct query terms present in ``text``."""

    if not query_terms:
        return 0.0
    terms = set(word_terms(text))
    if not terms:
        return 0.0
    return len(query_terms.intersection(terms)) / len(query_terms)


def _ordering_key(result: RetrievalResult) -> tuple[float, float, str]:
    recency = result.created_at.timestamp() if result.created_at else 0.0
    return (-result.score, -recency, result.chunk_id)


class HybridRetriever:
    """Fuses cosine similarity with term overlap into one 0..1 score.

    Both passes see the same filtered chunk set. Chunks stored without an
    embedding only ever enter through the lexical pass. When the query cannot
    be embedded the call degrades to lexical scoring instead of failing.
    """

    _logger = get_logger("retrieval")

    def __init__(
        self,
        store: ChunkStore,
        embedder: EmbeddingBackend,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._config = config or RetrievalConfig()

    @property
    def config(self) -> RetrievalConfig:
        return self._config

    def retrieve(
        self,
        query: str,
        *,
        top_k: int | None = None,
        source_type: SourceType | None = None,
        content_item_id: str | None = None,
        category: str | None = None,
        source_ids: Sequence[str] | None = None,
        min_score: float | None = None,
        query_embedding: Sequence[float] | None = None,
    ) -> list[RetrievalResult]:
        text = (query or "").strip()
        if not text:
            raise ValidationError("query must not be empty")
        limit = self._config.top_k if top_k is None else top_k
        if limit < 1:
            raise ValidationError("top_k must be at least 1")
        limit = min(limit, self._config.max_top_k)
        threshold = self._config.min_score if min_score is None else min_score
        filters = ChunkFilter(
            source_type=source_type,
            content_item_id=content_item_id,
            category=category,
            source_ids=source_ids,
        )
        pool_size = limit * max(self._config.candidate_multiplier, 1)

        start = time.perf_counter()
        degraded = False
        if query_embedding is None:
            try:
                query_embedding = self._embedder.embed_query(text)
            except DependencyError as exc:
                degraded = True
                self._logger.warning("retrieval.degraded", reason=exc.message)

        semantic: Mapping[str, RetrievalResult] = {}
        if query_embedding is not None:
            semantic = {hit.chunk_id: hit for hit in self._store.similarity_search(query_embedding, filters, limit=pool_size)}
        lexical = self._lexical_pass(text, filters, pool_size)

        fused: list[RetrievalResult] = []
        for chunk_id in set(semantic).union(lexical):
            semantic_hit = semantic.get(chunk_id)
            lexical_hit = lexical.get(chunk_id)
            semantic_score = semantic_hit.score if semantic_hit else 0.0
            lexical_score = lexical_hit.score if lexical_hit else 0.0
            if degraded:
                score = lexical_score
            else:
                score = self._config.semantic_weight * semantic_score + self._config.lexical_weight * lexical_score
            base = semantic_hit if semantic_hit is not None else lexical[chunk_id]
            fused.append(
                base.rescored(
                    clamp_unit(score),
                    semantic=semantic_score,
                    lexical=lexical_score,
                ),
            )
        results = sorted((hit for hit in fused if hit.score >= threshold), key=_ordering_key)[:limit]

        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(duration, len(results), (hit.score for hit in results), degraded=degraded)
        self._logger.info(
            "retrieval.complete",
            result_count=len(results),
            semantic_candidates=len(semantic),
            lexical_candidates=len(lexical),
            source_type=source_type,
            content_item_id=content_item_id,
            top_k=limit,
            degraded=degraded,
            duration_seconds=duration,
        )
        return results

    def _lexical_pass(self, query: str, filters: ChunkFilter, limit: int) -> dict[str, RetrievalResult]:
        terms = set(word_terms(query))
        if not terms:
            return {}
        scored = []
        for row in self._store.scan(filters):
            score = term_overlap_score(terms, row.text)
            if score > 0.0:
                scored.append(row.rescored(score))
        scored.sort(key=_ordering_key)
        return {hit.chunk_id: hit for hit in scored[:limit]}


__all__ = ["HybridRetriever", "RetrievalConfig", "Retriever", "term_overlap_score"]
