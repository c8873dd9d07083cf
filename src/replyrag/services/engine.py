"""Inbound operations facade and composition root."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import chromadb
from chromadb.api import ClientAPI

from replyrag import __version__
from replyrag.catalog import CatalogSource, InMemoryCatalogSource, JsonCatalogSource
from replyrag.config import Settings, get_settings
from replyrag.embeddings import (
    ChromaChunkStore,
    EmbeddingBackend,
    EmbeddingConfig,
    GatewayCaller,
    GatewayPolicy,
    HashEmbeddingBackend,
    OpenAIEmbeddingBackend,
    RecordTable,
)
from replyrag.errors import NotFoundError, ReplyRagError, ValidationError
from replyrag.ingestion import BulkIngestionReport, IndexJobTracker, IngestionConfig, IngestionFailure, IngestionPipeline
from replyrag.metrics.observability import PipelineMetrics, get_logger
from replyrag.models import (
    SOURCE_TYPES,
    CatalogItemSource,
    CommentSource,
    IngestSource,
    OperationResult,
    SourceType,
    TranscriptSource,
)
from replyrag.pools import ChromaPoolStore, PoolBuilder, PoolWeights
from replyrag.retrieval import HybridRetriever, PatternBudgetExtractor, PriceAwareReranker, RetrievalConfig
from replyrag.services.answer import AnswerComposer, AnswerConfig, AnswerFlags, AnswerRequest, ContextBuilder
from replyrag.services.batch import BatchOrchestrator, BatchQuery
from replyrag.services.generation import (
    CompletionBackend,
    CompletionConfig,
    OpenAICompletionBackend,
    TemplateCompletionBackend,
)
from replyrag.services.tokens import TokenCounter

_RETRIEVE_FILTERS = {"top_k", "source_type", "content_item_id", "category", "source_ids", "min_score", "rerank_by_price"}
_POOL_OPTIONS = {"max_pool_size", "min_relevance_score", "overwrite"}
_ANSWER_FLAGS = {"include_transcripts", "include_catalog", "include_comments", "temperature", "query_id"}


def _require_mapping(payload: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise ValidationError(f"{what} must be an object")
    return payload


def _required_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None or not str(value).strip():
        raise ValidationError(f"'{key}' is required")
    return str(value).strip()


def _optional_str(payload: Mapping[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    return str(value)


def _optional_number(payload: Mapping[str, Any], key: str) -> float | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"'{key}' must be a number")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"'{key}' must be a number") from exc


def _check_keys(options: Mapping[str, Any], allowed: set[str], what: str) -> None:
    unknown = sorted(set(options) - allowed)
    if unknown:
        raise ValidationError(f"Unknown {what}: {', '.join(unknown)}")


def parse_source_type(value: Any) -> SourceType:
    if value not in SOURCE_TYPES:
        raise ValidationError(f"source_type must be one of {', '.join(SOURCE_TYPES)}")
    return value


def transcript_from_payload(payload: Any) -> TranscriptSource:
    data = _require_mapping(payload, "payload")
    return TranscriptSource(
        content_item_id=_required_str(data, "content_item_id"),
        text=str(data.get("text") or ""),
        title=str(data.get("title") or ""),
        channel_name=str(data.get("channel_name") or ""),
        published_at=_optional_str(data, "published_at"),
        duration_seconds=_optional_number(data, "duration_seconds"),
    )


def source_from_payload(source_type: SourceType, payload: Any) -> IngestSource:
    """Build a typed ingestion source from a plain JSON payload."""

    if source_type == "transcript":
        return transcript_from_payload(payload)
    data = _require_mapping(payload, "payload")
    if source_type == "catalog":
        tags = data.get("tags") or ()
        if isinstance(tags, str):
            tags = [tag.strip() for tag in tags.split(",")]
        return CatalogItemSource(
            item_id=_required_str(data, "item_id"),
            name=_required_str(data, "name"),
            description=str(data.get("description") or ""),
            price=_optional_number(data, "price"),
            url=_optional_str(data, "url"),
            image_url=_optional_str(data, "image_url"),
            category=_optional_str(data, "category"),
            brand=_optional_str(data, "brand"),
            tags=tuple(str(tag) for tag in tags if str(tag).strip()),
        )
    like_count = _optional_number(data, "like_count")
    return CommentSource(
        comment_id=_required_str(data, "comment_id"),
        content_item_id=_required_str(data, "content_item_id"),
        text=str(data.get("text") or ""),
        author_name=str(data.get("author_name") or ""),
        published_at=_optional_str(data, "published_at"),
        like_count=int(like_count) if like_count is not None else None,
        is_reply=bool(data.get("is_reply", False)),
        parent_id=_optional_str(data, "parent_id"),
    )


def _flags_from(options: Mapping[str, Any]) -> AnswerFlags:
    return AnswerFlags(
        include_transcripts=bool(options.get("include_transcripts", True)),
        include_catalog=bool(options.get("include_catalog", True)),
        include_comments=bool(options.get("include_comments", False)),
    )


@dataclass(frozen=True)
class EngineComponents:
    store: ChromaChunkStore
    embedder: EmbeddingBackend
    ingestion: IngestionPipeline
    jobs: IndexJobTracker
    retriever: HybridRetriever
    reranker: PriceAwareReranker
    catalog: CatalogSource
    pools: PoolBuilder
    composer: AnswerComposer
    batch: BatchOrchestrator


class RetrievalEngine:
    """Every inbound operation returns an :class:`OperationResult` envelope."""

    _logger = get_logger("engine")

    def __init__(self, components: EngineComponents, *, hosted_models: bool = False) -> None:
        self.components = components
        self._hosted_models = hosted_models

    def _run(self, operation: str, fn: Callable[[], Any]) -> OperationResult:
        try:
            return OperationResult.ok(fn())
        except ReplyRagError as exc:
            self._logger.warning("operation.failed", operation=operation, kind=exc.kind, error=exc.message)
            return OperationResult.fail(exc.kind, exc.message)
        except Exception:
            self._logger.exception("operation.crashed", operation=operation)
            return OperationResult.fail("internal", "Unexpected internal error")

    # Ingestion ------------------------------------------------------------

    def ingest_document(self, source_type: str, payload: Mapping[str, Any], overwrite: bool = False) -> OperationResult:
        def run() -> Any:
            source = source_from_payload(parse_source_type(source_type), payload)
            return self.components.ingestion.ingest(source, overwrite=overwrite)

        return self._run("ingest_document", run)

    def ingest_documents(
        self,
        source_type: str,
        payloads: Sequence[Mapping[str, Any]],
        overwrite: bool = False,
        *,
        batch_size: int | None = None,
        pause_seconds: float | None = None,
    ) -> OperationResult:
        def run() -> BulkIngestionReport:
            kind = parse_source_type(source_type)
            if not isinstance(payloads, Sequence) or isinstance(payloads, (str, bytes)):
                raise ValidationError("payloads must be a list")
            sources: list[IngestSource] = []
            invalid: list[IngestionFailure] = []
            for index, payload in enumerate(payloads):
                try:
                    sources.append(source_from_payload(kind, payload))
                except ValidationError as exc:
                    invalid.append(IngestionFailure(kind, f"#{index}", exc.kind, exc.message))
            report = self.components.ingestion.ingest_many(
                sources,
                overwrite=overwrite,
                batch_size=batch_size,
                pause_seconds=pause_seconds,
            )
            if not invalid:
                return report
            return BulkIngestionReport(
                successful=report.successful,
                failed=report.failed + len(invalid),
                chunks_created=report.chunks_created,
                errors=(*invalid, *report.errors),
            )

        return self._run("ingest_documents", run)

    def delete_document(self, source_type: str, source_id: str) -> OperationResult:
        def run() -> Any:
            kind = parse_source_type(source_type)
            if not (source_id or "").strip():
                raise ValidationError("source_id must not be empty")
            if not self.components.ingestion.delete(kind, source_id):
                raise NotFoundError(f"{kind} {source_id} not found")
            return {"source_type": kind, "source_id": source_id, "deleted": True}

        return self._run("delete_document", run)

    def index_content_item(self, payload: Mapping[str, Any], overwrite: bool = True) -> OperationResult:
        def run() -> Any:
            source = transcript_from_payload(payload)
            report = self.components.ingestion.index_transcript(source, overwrite=overwrite)
            return {"report": report, "job": self.components.jobs.get(source.content_item_id)}

        return self._run("index_content_item", run)

    def content_item_status(self, content_item_id: str) -> OperationResult:
        def run() -> Any:
            if not (content_item_id or "").strip():
                raise ValidationError("content_item_id must not be empty")
            return self.components.jobs.get(content_item_id)

        return self._run("content_item_status", run)

    # Retrieval ------------------------------------------------------------

    def retrieve(self, query: str, filters: Mapping[str, Any] | None = None) -> OperationResult:
        def run() -> Any:
            options = dict(filters or {})
            _check_keys(options, _RETRIEVE_FILTERS, "retrieval filters")
            source_type = options.get("source_type")
            source_ids = options.get("source_ids")
            if source_ids is not None and (isinstance(source_ids, str) or not isinstance(source_ids, Sequence)):
                raise ValidationError("source_ids must be a list")
            results = self.components.retriever.retrieve(
                query,
                top_k=options.get("top_k"),
                source_type=parse_source_type(source_type) if source_type is not None else None,
                content_item_id=options.get("content_item_id"),
                category=options.get("category"),
                source_ids=[str(value) for value in source_ids] if source_ids is not None else None,
                min_score=options.get("min_score"),
            )
            if options.get("rerank_by_price"):
                results = self.components.reranker.rerank(query, results)
            return results

        return self._run("retrieve", run)

    # Pools ----------------------------------------------------------------

    def build_pool(self, content_item_id: str, options: Mapping[str, Any] | None = None) -> OperationResult:
        def run() -> Any:
            opts = dict(options or {})
            _check_keys(opts, _POOL_OPTIONS, "pool options")
            return self.components.pools.build(
                content_item_id,
                max_pool_size=opts.get("max_pool_size"),
                min_relevance_score=opts.get("min_relevance_score"),
                overwrite=bool(opts.get("overwrite", True)),
            )

        return self._run("build_pool", run)

    def build_all_pools(self, options: Mapping[str, Any] | None = None) -> OperationResult:
        def run() -> Any:
            opts = dict(options or {})
            _check_keys(opts, _POOL_OPTIONS, "pool options")
            return self.components.pools.build_all(
                max_pool_size=opts.get("max_pool_size"),
                min_relevance_score=opts.get("min_relevance_score"),
                overwrite=bool(opts.get("overwrite", True)),
            )

        return self._run("build_all_pools", run)

    def pool_stats(self, content_item_id: str, *, top_k: int | None = None) -> OperationResult:
        def run() -> Any:
            if self.components.catalog.get_content_item(content_item_id) is None:
                raise NotFoundError(f"Content item {content_item_id} not found")
            return {
                "stats": self.components.pools.stats(content_item_id),
                "entries": self.components.pools.entries(content_item_id, top_k=top_k),
            }

        return self._run("pool_stats", run)

    # Answers --------------------------------------------------------------

    def answer(self, query: str, content_item_id: str, flags: Mapping[str, Any] | None = None) -> OperationResult:
        def run() -> Any:
            options = dict(flags or {})
            _check_keys(options, _ANSWER_FLAGS, "answer flags")
            request = AnswerRequest(
                query=query,
                content_item_id=content_item_id,
                flags=_flags_from(options),
                temperature=options.get("temperature"),
                query_id=options.get("query_id"),
            )
            return self.components.composer.compose(request)

        return self._run("answer", run)

    def batch_answer(
        self,
        content_item_id: str,
        queries: Sequence[Mapping[str, Any]],
        flags: Mapping[str, Any] | None = None,
    ) -> OperationResult:
        def run() -> Any:
            options = dict(flags or {})
            _check_keys(options, _ANSWER_FLAGS - {"query_id"}, "answer flags")
            if not isinstance(queries, Sequence) or isinstance(queries, (str, bytes)):
                raise ValidationError("queries must be a list")
            batch = [
                BatchQuery(
                    query_id=str(_require_mapping(item, "query").get("query_id") or "").strip(),
                    text=str(item.get("text") or ""),
                )
                for item in queries
            ]
            return self.components.batch.answer_batch(
                content_item_id,
                batch,
                _flags_from(options),
                temperature=options.get("temperature"),
            )

        return self._run("batch_answer", run)

    # Introspection --------------------------------------------------------

    def stats(self) -> OperationResult:
        def run() -> Any:
            per_source = self.components.store.stats()
            for source_type, counts in per_source.items():
                PipelineMetrics.set_chunk_count(source_type, counts.get("chunks", 0))
            return {
                "sources": per_source,
                "total_chunks": sum(counts.get("chunks", 0) for counts in per_source.values()),
                "content_items": len(self.components.catalog.content_items()),
                "catalog_items": len(self.components.catalog.catalog_items()),
            }

        return self._run("stats", run)

    def health(self) -> OperationResult:
        def run() -> Any:
            return {
                "status": "ok",
                "version": __version__,
                "chunks": self.components.store.count(),
                "hosted_models": self._hosted_models,
            }

        return self._run("health", run)


def build_chroma_client(settings: Settings) -> ClientAPI:
    if settings.chroma_host:
        return chromadb.HttpClient(
            host=settings.chroma_host,
            port=settings.chroma_port or 8000,
            ssl=settings.chroma_ssl,
        )
    if settings.chroma_ephemeral or settings.is_test:
        return chromadb.EphemeralClient()
    settings.chroma_persist_dir.mkdir(parents=True, exist_ok=True)
    return chromadb.PersistentClient(path=str(settings.chroma_persist_dir))


def build_engine(
    settings: Settings | None = None,
    *,
    client: ClientAPI | None = None,
    catalog: CatalogSource | None = None,
    embedder: EmbeddingBackend | None = None,
    completion: CompletionBackend | None = None,
) -> RetrievalEngine:
    """Wire every component from ``settings``; explicit arguments win."""

    settings = settings or get_settings()
    client = client or build_chroma_client(settings)
    policy = GatewayPolicy(
        timeout_seconds=settings.gateway_timeout_seconds,
        max_attempts=settings.gateway_max_attempts,
        backoff_min_seconds=settings.gateway_backoff_min_seconds,
        backoff_max_seconds=settings.gateway_backoff_max_seconds,
        max_concurrency=settings.gateway_max_concurrency,
    )
    caller = GatewayCaller(policy, name="openai")

    if embedder is None:
        if settings.use_hosted_models:
            embedder = OpenAIEmbeddingBackend(
                EmbeddingConfig(
                    model=settings.embedding_model,
                    dim=settings.embedding_dim,
                    batch_size=settings.embedding_batch_size,
                ),
                caller=caller,
                api_key=settings.effective_openai_key,
                base_url=settings.openai_base_url,
            )
        else:
            embedder = HashEmbeddingBackend()
    if completion is None:
        if settings.use_hosted_models:
            completion = OpenAICompletionBackend(
                CompletionConfig(
                    model=settings.completion_model,
                    max_tokens=settings.completion_max_tokens,
                    temperature=settings.completion_temperature,
                ),
                caller=caller,
                api_key=settings.effective_openai_key,
                base_url=settings.openai_base_url,
            )
        else:
            completion = TemplateCompletionBackend(max_products=min(settings.answer_max_links, 2))
    if catalog is None:
        catalog = JsonCatalogSource(settings.catalog_path) if settings.catalog_path else InMemoryCatalogSource()

    prefix = settings.chroma_collection_prefix
    store = ChromaChunkStore(client, f"{prefix}_chunks", dim=embedder.dim)
    jobs = IndexJobTracker(RecordTable(client, f"{prefix}_index_jobs"))
    ingestion = IngestionPipeline(
        store,
        embedder,
        config=IngestionConfig(
            transcript_chunk_chars=settings.transcript_chunk_chars,
            transcript_chunk_overlap=settings.transcript_chunk_overlap,
            catalog_chunk_chars=settings.catalog_chunk_chars,
            catalog_chunk_overlap=settings.catalog_chunk_overlap,
            catalog_summary_max_chars=settings.catalog_summary_max_chars,
            batch_size=settings.ingest_batch_size,
            batch_pause_seconds=settings.ingest_batch_pause_seconds,
        ),
        jobs=jobs,
    )
    retriever = HybridRetriever(
        store,
        embedder,
        RetrievalConfig(
            top_k=settings.retrieval_top_k,
            max_top_k=settings.retrieval_max_top_k,
            min_score=settings.retrieval_min_score,
            semantic_weight=settings.retrieval_semantic_weight,
            lexical_weight=settings.retrieval_lexical_weight,
            candidate_multiplier=settings.retrieval_candidate_multiplier,
        ),
    )
    reranker = PriceAwareReranker(
        PatternBudgetExtractor(tolerance=settings.budget_tolerance, min_price=settings.budget_min_price),
        semantic_weight=settings.rerank_semantic_weight,
        price_weight=settings.rerank_price_weight,
    )
    pools = PoolBuilder(
        catalog,
        ChromaPoolStore(RecordTable(client, f"{prefix}_pools")),
        weights=PoolWeights(
            tag=settings.pool_tag_weight,
            category=settings.pool_category_weight,
            price=settings.pool_price_weight,
            brand=settings.pool_brand_weight,
        ),
        price_tolerance=settings.pool_price_tolerance,
        max_pool_size=settings.pool_max_size,
        min_relevance_score=settings.pool_min_relevance,
    )
    answer_config = AnswerConfig(
        max_transcript_chunks=settings.answer_max_transcript_chunks,
        max_catalog_candidates=settings.answer_max_catalog_candidates,
        max_comment_chunks=settings.answer_max_comment_chunks,
        catalog_search_k=settings.answer_catalog_search_k,
        min_score=settings.answer_min_score,
        max_links=settings.answer_max_links,
        max_context_tokens=settings.answer_max_context_tokens,
        reserved_tokens=settings.answer_reserved_tokens,
        repair_attempts=settings.answer_repair_attempts,
        require_pool=settings.answer_require_pool,
        max_tokens=settings.completion_max_tokens,
    )
    context_builder = ContextBuilder(retriever, reranker, catalog, pools=pools, jobs=jobs, config=answer_config)
    composer = AnswerComposer(
        context_builder,
        completion,
        counter=TokenCounter(settings.completion_model),
        config=answer_config,
    )
    batch = BatchOrchestrator(
        composer,
        max_workers=settings.batch_max_workers,
        max_queries=settings.batch_max_queries,
    )
    components = EngineComponents(
        store=store,
        embedder=embedder,
        ingestion=ingestion,
        jobs=jobs,
        retriever=retriever,
        reranker=reranker,
        catalog=catalog,
        pools=pools,
        composer=composer,
        batch=batch,
    )
    return RetrievalEngine(components, hosted_models=settings.use_hosted_models)


__all__ = [
    "EngineComponents",
    "RetrievalEngine",
    "build_chroma_client",
    "build_engine",
    "parse_source_type",
    "source_from_payload",
]
