"""Observability helpers for replyrag."""

from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Iterable

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "replyrag") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def clamp_unit(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for engine stages."""

    ingestion_latency = Histogram(
        "replyrag_ingestion_duration_seconds",
        "Time spent ingesting one document.",
        ["source_type"],
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
    )
    ingestion_chunks = Histogram(
        "replyrag_ingestion_chunk_count",
        "Chunks produced per ingested document.",
        ["source_type"],
        buckets=(0, 1, 5, 10, 20, 40, 80),
    )
    embedding_failures = Counter(
        "replyrag_embedding_failures_total",
        "Chunks stored without an embedding after gateway failures.",
        ["source_type"],
    )
    retrieval_latency = Histogram(
        "replyrag_retrieval_duration_seconds",
        "Time spent in hybrid retrieval.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    retrieved_chunk_count = Histogram(
        "replyrag_retrieved_chunk_count",
        "Number of results returned by retrieval.",
        buckets=(0, 1, 2, 3, 5, 8, 13, 21),
    )
    retrieval_score = Histogram(
        "replyrag_retrieval_score",
        "Fused relevance score of returned results.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    retrieval_degraded = Counter(
        "replyrag_retrieval_degraded_total",
        "Retrievals that fell back to lexical-only scoring.",
    )
    generation_latency = Histogram(
        "replyrag_generation_duration_seconds",
        "Time spent composing one answer.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
    )
    tokens_used = Counter(
        "replyrag_tokens_total",
        "Tokens consumed by completion calls.",
        ["kind"],
    )
    dropped_references = Counter(
        "replyrag_dropped_references_total",
        "Recommendations dropped by the answer validation gate.",
    )
    answer_repairs = Counter(
        "replyrag_answer_repairs_total",
        "Repair calls issued for malformed structured output.",
    )
    pool_build_latency = Histogram(
        "replyrag_pool_build_duration_seconds",
        "Time spent building one candidate pool.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0),
    )
    pool_size = Histogram(
        "replyrag_pool_size",
        "Entries in a freshly built candidate pool.",
        buckets=(0, 1, 10, 25, 50, 100, 200, 500),
    )
    batch_failures = Counter(
        "replyrag_batch_query_failures_total",
        "Queries of a batch that failed, by error kind.",
        ["kind"],
    )
    chunk_count = Gauge(
        "replyrag_chunk_count",
        "Number of stored chunks per source type.",
        ["source_type"],
    )

    @classmethod
    def observe_ingestion(cls, source_type: str, duration_seconds: float, chunk_count: int) -> None:
        cls.ingestion_latency.labels(source_type=source_type).observe(duration_seconds)
        cls.ingestion_chunks.labels(source_type=source_type).observe(chunk_count)

    @classmethod
    def observe_embedding_failures(cls, source_type: str, count: int) -> None:
        if count:
            cls.embedding_failures.labels(source_type=source_type).inc(count)

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        result_count: int,
        scores: Iterable[float],
        *,
        degraded: bool = False,
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_chunk_count.observe(result_count)
        for score in scores:
            cls.retrieval_score.observe(clamp_unit(score))
        if degraded:
            cls.retrieval_degraded.inc()

    @classmethod
    def observe_generation(cls, duration_seconds: float) -> None:
        cls.generation_latency.observe(duration_seconds)

    @classmethod
    def observe_tokens(cls, prompt_tokens: int, completion_tokens: int) -> None:
        cls.tokens_used.labels(kind="prompt").inc(max(prompt_tokens, 0))
        cls.tokens_used.labels(kind="completion").inc(max(completion_tokens, 0))

    @classmethod
    def observe_dropped_references(cls, count: int) -> None:
        if count:
            cls.dropped_references.inc(count)

    @classmethod
    def observe_pool_build(cls, duration_seconds: float, size: int) -> None:
        cls.pool_build_latency.observe(duration_seconds)
        cls.pool_size.observe(size)

    @classmethod
    def observe_batch_failure(cls, kind: str) -> None:
        cls.batch_failures.labels(kind=kind).inc()

    @classmethod
    def set_chunk_count(cls, source_type: str, count: int) -> None:
        cls.chunk_count.labels(source_type=source_type).set(count)


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clamp_unit",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
