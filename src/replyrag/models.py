"""Shared domain models used across the replyrag engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, is_dataclass, replace
from datetime import datetime, timezone
from typing import Any, ClassVar, Literal, Mapping, Sequence, Union

SourceType = Literal["transcript", "catalog", "comment"]
SOURCE_TYPES: tuple[SourceType, ...] = ("transcript", "catalog", "comment")

IndexStatus = Literal["not_indexed", "indexing", "ready", "failed"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _known_fields(cls: type, record: Mapping[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in record.items() if key in names}


def _drop_none(record: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in record.items() if value is not None}


def _as_float(value: object) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class TranscriptMeta:
    """Metadata of a transcript document or one of its chunks."""

    source_type: ClassVar[SourceType] = "transcript"

    content_item_id: str
    title: str = ""
    channel_name: str = ""
    published_at: str | None = None
    duration_seconds: float | None = None
    start_seconds: int | None = None
    end_seconds: int | None = None

    def to_record(self) -> dict[str, Any]:
        return _drop_none(asdict(self))

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "TranscriptMeta":
        values = _known_fields(cls, record)
        values["content_item_id"] = str(values.get("content_item_id", ""))
        values["duration_seconds"] = _as_float(values.get("duration_seconds"))
        return cls(**values)


@dataclass(frozen=True)
class CatalogMeta:
    """Metadata of a catalog item document; ``chunk_type`` is chunk-local."""

    source_type: ClassVar[SourceType] = "catalog"

    name: str
    price: float | None = None
    url: str | None = None
    image_url: str | None = None
    category: str | None = None
    brand: str | None = None
    tags: tuple[str, ...] = ()
    chunk_type: Literal["summary", "detail"] = "summary"

    def to_record(self) -> dict[str, Any]:
        record = _drop_none(asdict(self))
        record["tags"] = list(self.tags)
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "CatalogMeta":
        values = _known_fields(cls, record)
        values["name"] = str(values.get("name", ""))
        values["price"] = _as_float(values.get("price"))
        values["tags"] = tuple(str(tag) for tag in values.get("tags") or ())
        return cls(**values)


@dataclass(frozen=True)
class CommentMeta:
    """Metadata of a prior comment on a content item."""

    source_type: ClassVar[SourceType] = "comment"

    content_item_id: str
    author_name: str = ""
    published_at: str | None = None
    like_count: int | None = None
    is_reply: bool = False
    parent_id: str | None = None

    def to_record(self) -> dict[str, Any]:
        return _drop_none(asdict(self))

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "CommentMeta":
        values = _known_fields(cls, record)
        values["content_item_id"] = str(values.get("content_item_id", ""))
        return cls(**values)


DocumentMeta = Union[TranscriptMeta, CatalogMeta, CommentMeta]

_META_TYPES: Mapping[str, type] = {
    "transcript": TranscriptMeta,
    "catalog": CatalogMeta,
    "comment": CommentMeta,
}


def meta_from_record(source_type: str, record: Mapping[str, Any]) -> DocumentMeta:
    """Rebuild the typed metadata for ``source_type`` from a plain record."""

    meta_cls = _META_TYPES.get(source_type)
    if meta_cls is None:
        raise ValueError(f"Unknown source type: {source_type}")
    return meta_cls.from_record(record)


def meta_content_item_id(meta: DocumentMeta) -> str | None:
    if isinstance(meta, (TranscriptMeta, CommentMeta)):
        return meta.content_item_id or None
    return None


def meta_category(meta: DocumentMeta) -> str | None:
    if isinstance(meta, CatalogMeta):
        return meta.category
    return None


@dataclass(frozen=True)
class TranscriptSource:
    """Raw transcript of one content item."""

    source_type: ClassVar[SourceType] = "transcript"

    content_item_id: str
    text: str
    title: str = ""
    channel_name: str = ""
    published_at: str | None = None
    duration_seconds: float | None = None

    @property
    def source_id(self) -> str:
        return self.content_item_id


@dataclass(frozen=True)
class CatalogItemSource:
    """Catalog item as exported by the catalog system."""

    source_type: ClassVar[SourceType] = "catalog"

    item_id: str
    name: str
    description: str = ""
    price: float | None = None
    url: str | None = None
    image_url: str | None = None
    category: str | None = None
    brand: str | None = None
    tags: tuple[str, ...] = ()

    @property
    def source_id(self) -> str:
        return self.item_id


@dataclass(frozen=True)
class CommentSource:
    """A comment left on a content item."""

    source_type: ClassVar[SourceType] = "comment"

    comment_id: str
    content_item_id: str
    text: str
    author_name: str = ""
    published_at: str | None = None
    like_count: int | None = None
    is_reply: bool = False
    parent_id: str | None = None

    @property
    def source_id(self) -> str:
        return self.comment_id


IngestSource = Union[TranscriptSource, CatalogItemSource, CommentSource]


@dataclass(frozen=True)
class Document:
    """One logical source unit, keyed by (source_type, source_id)."""

    source_type: SourceType
    source_id: str
    meta: DocumentMeta
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Chunk:
    """Retrievable unit of a document. ``embedding`` is None until embedded."""

    chunk_id: str
    document: Document
    chunk_index: int
    text: str
    meta: DocumentMeta
    embedding: tuple[float, ...] | None = None


@dataclass(frozen=True)
class CatalogItem:
    """Read-only catalog entry used for pool matching and link lookup."""

    item_id: str
    name: str = ""
    brand: str | None = None
    category: str | None = None
    price: float | None = None
    tags: tuple[str, ...] = ()
    url: str | None = None


@dataclass(frozen=True)
class ContentItem:
    """Read-only content item metadata used for pool matching."""

    content_item_id: str
    title: str = ""
    brand_tags: tuple[str, ...] = ()
    category_tags: tuple[str, ...] = ()
    price_min: float | None = None
    price_max: float | None = None
    tags: tuple[str, ...] = ()

    @property
    def has_pool_metadata(self) -> bool:
        return bool(
            self.brand_tags
            or self.category_tags
            or self.tags
            or (self.price_min is not None and self.price_max is not None),
        )


@dataclass(frozen=True)
class IndexJob:
    """Index status of a content item's transcript."""

    content_item_id: str
    status: IndexStatus = "not_indexed"
    error: str | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class PoolEntry:
    """Cached relevance of one catalog item for one content item."""

    content_item_id: str
    catalog_item_id: str
    relevance_score: float
    matched_brand: bool = False
    matched_category: bool = False
    matched_price_range: bool = False
    matched_tags: int = 0
    generation: int = 0


@dataclass(frozen=True)
class RetrievalResult:
    """Transient retrieval hit; never persisted."""

    chunk_id: str
    source_type: SourceType
    source_id: str
    text: str
    score: float
    meta: DocumentMeta
    created_at: datetime | None = None
    trace: Mapping[str, float] = field(default_factory=dict)

    def rescored(self, score: float, **trace: float) -> "RetrievalResult":
        merged = dict(self.trace)
        merged.update(trace)
        return replace(self, score=score, trace=merged)


@dataclass(frozen=True)
class PriceBand:
    """Inclusive price range inferred from free text."""

    low: float
    high: float

    @property
    def midpoint(self) -> float:
        return (self.low + self.high) / 2

    def contains(self, price: float) -> bool:
        return self.low <= price <= self.high


@dataclass(frozen=True)
class CatalogCandidate:
    """A catalog item supplied to the composer; the only linkable items."""

    item_id: str
    url: str
    name: str
    price: float | None
    score: float
    origin: Literal["retrieval", "pool"] = "retrieval"


@dataclass(frozen=True)
class ProductRecommendation:
    id: str
    url: str
    confidence: float
    reason: str = ""


@dataclass(frozen=True)
class TokenUsage:
    query_tokens: int = 0
    system_tokens: int = 0
    context_tokens: int = 0
    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            query_tokens=self.query_tokens + other.query_tokens,
            system_tokens=self.system_tokens + other.system_tokens,
            context_tokens=self.context_tokens + other.context_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


@dataclass(frozen=True)
class Answer:
    """Grounded reply draft with validated recommendations."""

    query_id: str
    reply_text: str
    products: Sequence[ProductRecommendation]
    usage: TokenUsage
    candidates: Sequence[CatalogCandidate] = ()
    dropped_references: int = 0
    model: str = ""
    latency_ms: float = 0.0


@dataclass(frozen=True)
class BatchError:
    query_id: str
    kind: str
    message: str


@dataclass(frozen=True)
class BatchAnswer:
    content_item_id: str
    answers: Sequence[Answer]
    errors: Sequence[BatchError]
    usage: TokenUsage
    latency_ms: float = 0.0


@dataclass(frozen=True)
class ErrorInfo:
    kind: str
    message: str


@dataclass(frozen=True)
class OperationResult:
    """Envelope returned by every inbound operation."""

    success: bool
    data: Any = None
    error: ErrorInfo | None = None

    @classmethod
    def ok(cls, data: Any) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, kind: str, message: str) -> "OperationResult":
        return cls(success=False, error=ErrorInfo(kind=kind, message=message))

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": to_payload(self.data)}
        error = self.error or ErrorInfo(kind="internal", message="operation failed")
        return {"success": False, "error": {"kind": error.kind, "message": error.message}}


def to_payload(value: Any) -> Any:
    """Convert dataclasses, tuples and datetimes into JSON-friendly values."""

    if is_dataclass(value) and not isinstance(value, type):
        payload = {f.name: to_payload(getattr(value, f.name)) for f in fields(value)}
        source_type = getattr(type(value), "source_type", None)
        if isinstance(source_type, str) and "source_type" not in payload:
            payload["source_type"] = source_type
        return payload
    if isinstance(value, Mapping):
        return {str(key): to_payload(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_payload(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value
