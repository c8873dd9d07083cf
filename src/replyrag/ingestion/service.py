"""Source ingestion pipeline for replyrag."""

from __future__ import annotations

import re
import time
import unicodedata
from dataclasses import dataclass, field, replace
from typing import Callable, List, Protocol, Sequence, Tuple

from langchain_text_splitters import RecursiveCharacterTextSplitter

from replyrag.embeddings.service import EmbeddingBackend
from replyrag.embeddings.store import ChunkStore
from replyrag.errors import ConflictError, DependencyError, ReplyRagError, ValidationError
from replyrag.ingestion.jobs import IndexJobTracker
from replyrag.metrics.observability import PipelineMetrics, get_logger
from replyrag.models import (
    CatalogItemSource,
    CatalogMeta,
    Chunk,
    CommentMeta,
    CommentSource,
    Document,
    IngestSource,
    SourceType,
    TranscriptMeta,
    TranscriptSource,
    utcnow,
)

_ZERO_WIDTH_RE = re.compile("[\u200b-\u200d\ufeff]")
_DOUBLE_QUOTE_RE = re.compile("[\u201c\u201d]")
_SINGLE_QUOTE_RE = re.compile("[\u2018\u2019]")
_DASH_RE = re.compile("[\u2013\u2014]")
_WHITESPACE_RE = re.compile(r"\s+")
_URL_RE = re.compile(r"https?://\S+")
_EMAIL_RE = re.compile(r"\S+@\S+\.\S+")
_REPEATED_PUNCT_RE = re.compile(r"([!?.])[!?.]{2,}")
_THAI_RE = re.compile("[\u0e00-\u0e7f]")
_THAI_TONE_RE = re.compile("([\u0e48-\u0e4b])\\1+")
_THAI_REPEAT_RE = re.compile("\u0e46{2,}")
_EMOJI_RE = re.compile(
    "[\U0001f300-\U0001f9ff\U0001f600-\U0001f64f\U0001f680-\U0001f6ff\u2600-\u26ff\u2700-\u27bf]"
)


def truncate_text(text: str, max_chars: int) -> str:
    """Cut ``text`` to ``max_chars``, preferring a nearby word boundary."""

    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    last_space = cut.rfind(" ")
    if last_space > max_chars * 0.8:
        cut = cut[:last_space]
    return cut + "..."


def normalize_text(
    raw: str,
    *,
    remove_emojis: bool = False,
    clean_urls: bool = False,
    max_length: int | None = None,
) -> str:
    if not raw:
        return ""
    normalized = unicodedata.normalize("NFC", raw)
    normalized = normalized.replace("\u00a0", " ")
    normalized = _ZERO_WIDTH_RE.sub("", normalized)
    normalized = _DOUBLE_QUOTE_RE.sub('"', normalized)
    normalized = _SINGLE_QUOTE_RE.sub("'", normalized)
    normalized = _DASH_RE.sub("-", normalized)
    if clean_urls:
        normalized = _URL_RE.sub("[URL]", normalized)
        normalized = _EMAIL_RE.sub("[EMAIL]", normalized)
        normalized = _REPEATED_PUNCT_RE.sub(r"\1\1", normalized)
    if remove_emojis:
        normalized = _EMOJI_RE.sub("", normalized)
    if _THAI_RE.search(normalized):
        normalized = _THAI_TONE_RE.sub(r"\1", normalized)
        normalized = _THAI_REPEAT_RE.sub("\u0e46", normalized)
    normalized = _WHITESPACE_RE.sub(" ", normalized).strip()
    if max_length and len(normalized) > max_length:
        normalized = truncate_text(normalized, max_length)
    return normalized


@dataclass(frozen=True)
class IngestionConfig:
    """Chunk windows and bulk ingestion pacing."""

    transcript_chunk_chars: int = 1600
    transcript_chunk_overlap: int = 240
    catalog_chunk_chars: int = 480
    catalog_chunk_overlap: int = 80
    catalog_summary_max_chars: int = 500
    batch_size: int = 20
    batch_pause_seconds: float = 1.5


@dataclass(frozen=True)
class IngestionReport:
    source_type: SourceType
    source_id: str
    chunks_created: int
    chunks_without_embedding: int = 0


@dataclass(frozen=True)
class IngestionFailure:
    source_type: str
    source_id: str
    kind: str
    message: str


@dataclass(frozen=True)
class BulkIngestionReport:
    successful: int
    failed: int
    chunks_created: int
    errors: Sequence[IngestionFailure] = field(default_factory=tuple)


class SourceIngestor(Protocol):
    """Protocol for ingestion implementations."""

    def ingest(self, source: IngestSource, *, overwrite: bool = False) -> IngestionReport:
        """Ingest one source into the chunk store."""


class SourceChunker:
    """Turns a source record into its document and unembedded chunks."""

    def __init__(self, config: IngestionConfig | None = None) -> None:
        self._config = config or IngestionConfig()
        self._transcript_splitter = RecursiveCharacterTextSplitter(
            chunk_size=self._config.transcript_chunk_chars,
            chunk_overlap=self._config.transcript_chunk_overlap,
            separators=[". ", "? ", "! ", " ", ""],
            add_start_index=True,
        )
        self._catalog_splitter = RecursiveCharacterTextSplitter(
            chunk_size=self._config.catalog_chunk_chars,
            chunk_overlap=self._config.catalog_chunk_overlap,
            separators=[". ", " ", ""],
            add_start_index=True,
        )

    def chunk(self, source: IngestSource) -> Tuple[Document, List[Chunk]]:
        if isinstance(source, TranscriptSource):
            return self._chunk_transcript(source)
        if isinstance(source, CatalogItemSource):
            return self._chunk_catalog_item(source)
        if isinstance(source, CommentSource):
            return self._chunk_comment(source)
        raise ValidationError(f"Unsupported source: {type(source).__name__}")

    @staticmethod
    def _draft(document: Document, index: int, text: str, meta) -> Chunk:
        return Chunk(
            chunk_id=f"{document.source_type}:{document.source_id}:{index}",
            document=document,
            chunk_index=index,
            text=text,
            meta=meta,
        )

    def _split(self, splitter: RecursiveCharacterTextSplitter, text: str) -> List[Tuple[str, int]]:
        pieces = []
        for piece in splitter.create_documents([text]):
            content = piece.page_content.strip()
            if content:
                pieces.append((content, int(piece.metadata.get("start_index", 0))))
        return pieces

    def _chunk_transcript(self, source: TranscriptSource) -> Tuple[Document, List[Chunk]]:
        text = normalize_text(source.text)
        meta = TranscriptMeta(
            content_item_id=source.content_item_id,
            title=source.title,
            channel_name=source.channel_name,
            published_at=source.published_at,
            duration_seconds=source.duration_seconds,
        )
        document = Document(source_type="transcript", source_id=source.source_id, meta=meta, created_at=utcnow())
        chunks: List[Chunk] = []
        total_chars = len(text)
        for index, (content, start) in enumerate(self._split(self._transcript_splitter, text)):
            chunk_meta = meta
            if source.duration_seconds and total_chars:
                end = start + len(content)
                chunk_meta = replace(
                    meta,
                    start_seconds=int(start / total_chars * source.duration_seconds),
                    end_seconds=int(end / total_chars * source.duration_seconds),
                )
            chunks.append(self._draft(document, index, content, chunk_meta))
        return document, chunks

    def _chunk_catalog_item(self, source: CatalogItemSource) -> Tuple[Document, List[Chunk]]:
        meta = CatalogMeta(
            name=source.name,
            price=source.price,
            url=source.url,
            image_url=source.image_url,
            category=source.category,
            brand=source.brand,
            tags=tuple(source.tags),
        )
        document = Document(source_type="catalog", source_id=source.source_id, meta=meta, created_at=utcnow())
        chunks: List[Chunk] = []
        summary = normalize_text(
            f"{source.name}. {source.description or ''}".strip(),
            remove_emojis=True,
            max_length=self._config.catalog_summary_max_chars,
        )
        if summary.strip(". "):
            chunks.append(self._draft(document, 0, summary, replace(meta, chunk_type="summary")))
        description = normalize_text(source.description or "", remove_emojis=True)
        if description:
            detail_meta = replace(meta, chunk_type="detail")
            for content, _ in self._split(self._catalog_splitter, description):
                chunks.append(self._draft(document, len(chunks), content, detail_meta))
        return document, chunks

    def _chunk_comment(self, source: CommentSource) -> Tuple[Document, List[Chunk]]:
        meta = CommentMeta(
            content_item_id=source.content_item_id,
            author_name=source.author_name,
            published_at=source.published_at,
            like_count=source.like_count,
            is_reply=source.is_reply,
            parent_id=source.parent_id,
        )
        document = Document(source_type="comment", source_id=source.source_id, meta=meta, created_at=utcnow())
        text = normalize_text(source.text)
        if not text:
            return document, []
        return document, [self._draft(document, 0, text, meta)]


class IngestionPipeline:
    """Normalizes, chunks, embeds and stores sources with replace semantics."""

    _logger = get_logger("ingestion")

    def __init__(
        self,
        store: ChunkStore,
        embedder: EmbeddingBackend,
        *,
        config: IngestionConfig | None = None,
        jobs: IndexJobTracker | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._config = config or IngestionConfig()
        self._chunker = SourceChunker(self._config)
        self._jobs = jobs
        self._sleep = sleep

    def ingest(self, source: IngestSource, *, overwrite: bool = False) -> IngestionReport:
        if not source.source_id or not source.source_id.strip():
            raise ValidationError("source_id must not be empty")
        if isinstance(source, CommentSource) and not source.content_item_id:
            raise ValidationError("comment content_item_id must not be empty")
        start = time.perf_counter()
        document, chunks = self._chunker.chunk(source)
        if not chunks:
            raise ValidationError(f"{document.source_type} {document.source_id} has no text content after normalization")
        if not overwrite and self._store.has_document(document.source_type, document.source_id):
            raise ConflictError(f"{document.source_type} {document.source_id} already exists")

        tracked = self._jobs is not None and isinstance(source, TranscriptSource)
        if tracked:
            self._jobs.start(source.content_item_id)
        try:
            embedded = self._embed(document.source_type, chunks)
            stored = self._store.replace_document(document, embedded)
        except Exception as exc:
            if tracked:
                self._jobs.mark_failed(source.content_item_id, str(exc))
            raise
        if tracked:
            self._jobs.mark_ready(source.content_item_id)

        missing = sum(1 for chunk in embedded if chunk.embedding is None)
        duration = time.perf_counter() - start
        PipelineMetrics.observe_ingestion(document.source_type, duration, stored)
        PipelineMetrics.observe_embedding_failures(document.source_type, missing)
        self._logger.info(
            "ingestion.complete",
            source_type=document.source_type,
            source_id=document.source_id,
            chunk_count=stored,
            chunks_without_embedding=missing,
            overwrite=overwrite,
            duration_seconds=duration,
        )
        return IngestionReport(
            source_type=document.source_type,
            source_id=document.source_id,
            chunks_created=stored,
            chunks_without_embedding=missing,
        )

    def index_transcript(self, source: TranscriptSource, *, overwrite: bool = True) -> IngestionReport:
        """Ingest a content item's transcript and move its index job to ready."""

        if self._jobs is None:
            raise ValidationError("index job tracking is not configured")
        return self.ingest(source, overwrite=overwrite)

    def ingest_many(
        self,
        sources: Sequence[IngestSource],
        *,
        overwrite: bool = False,
        batch_size: int | None = None,
        pause_seconds: float | None = None,
    ) -> BulkIngestionReport:
        size = max(batch_size or self._config.batch_size, 1)
        pause = self._config.batch_pause_seconds if pause_seconds is None else pause_seconds
        successful = 0
        chunks_created = 0
        errors: List[IngestionFailure] = []
        for batch_start in range(0, len(sources), size):
            if batch_start and pause > 0:
                self._sleep(pause)
            for source in sources[batch_start : batch_start + size]:
                try:
                    report = self.ingest(source, overwrite=overwrite)
                except ReplyRagError as exc:
                    errors.append(IngestionFailure(source.source_type, source.source_id, exc.kind, exc.message))
                    self._logger.warning(
                        "ingestion.failed",
                        source_type=source.source_type,
                        source_id=source.source_id,
                        kind=exc.kind,
                        error=exc.message,
                    )
                    continue
                except Exception as exc:
                    errors.append(IngestionFailure(source.source_type, source.source_id, "internal", str(exc)))
                    self._logger.exception(
                        "ingestion.failed",
                        source_type=source.source_type,
                        source_id=source.source_id,
                        kind="internal",
                    )
                    continue
                successful += 1
                chunks_created += report.chunks_created
        self._logger.info(
            "ingestion.bulk_complete",
            total=len(sources),
            successful=successful,
            failed=len(errors),
            chunks_created=chunks_created,
        )
        return BulkIngestionReport(
            successful=successful,
            failed=len(errors),
            chunks_created=chunks_created,
            errors=tuple(errors),
        )

    def delete(self, source_type: SourceType, source_id: str) -> bool:
        deleted = self._store.delete_document(source_type, source_id)
        if deleted and source_type == "transcript" and self._jobs is not None:
            self._jobs.reset(source_id)
        self._logger.info("ingestion.deleted", source_type=source_type, source_id=source_id, deleted=deleted)
        return deleted

    def _embed(self, source_type: SourceType, chunks: Sequence[Chunk]) -> List[Chunk]:
        texts = [chunk.text for chunk in chunks]
        try:
            vectors: List[Tuple[float, ...] | None] = list(self._embedder.embed_texts(texts))
        except DependencyError as exc:
            self._logger.warning("embedding.batch_failed", source_type=source_type, chunk_count=len(texts), error=exc.message)
            vectors = [self._embed_one(source_type, text) for text in texts]
        return [replace(chunk, embedding=vector) for chunk, vector in zip(chunks, vectors)]

    def _embed_one(self, source_type: SourceType, text: str) -> Tuple[float, ...] | None:
        try:
            return self._embedder.embed_texts([text])[0]
        except DependencyError as exc:
            self._logger.warning("embedding.chunk_failed", source_type=source_type, error=exc.message)
            return None


__all__ = [
    "BulkIngestionReport",
    "IngestionConfig",
    "IngestionFailure",
    "IngestionPipeline",
    "IngestionReport",
    "SourceChunker",
    "SourceIngestor",
    "normalize_text",
    "truncate_text",
]
