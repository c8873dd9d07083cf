"""Grounded answer composition with a reference validation gate."""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field, replace
from typing import Any, List, Mapping, Sequence
from uuid import NAMESPACE_URL, uuid5

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from replyrag.catalog import CatalogSource
from replyrag.errors import AnswerFormatError, StaleStateError, ValidationError
from replyrag.ingestion.jobs import IndexJobTracker
from replyrag.metrics.observability import PipelineMetrics, clamp_unit, get_logger
from replyrag.models import (
    Answer,
    CatalogCandidate,
    CatalogMeta,
    ProductRecommendation,
    RetrievalResult,
    TokenUsage,
)
from replyrag.pools.service import PoolBuilder
from replyrag.retrieval.pricing import PriceAwareReranker, candidate_price
from replyrag.retrieval.service import Retriever
from replyrag.services.generation import CANDIDATE_LINE, CompletionBackend, Message
from replyrag.services.tokens import TokenCounter

SYSTEM_PROMPT = """คุณคือผู้ช่วยตอบคอมเมนต์ของช่องรีวิวอุปกรณ์ไอที ตอบเป็นภาษาเดียวกับคอมเมนต์ (ภาษาไทยเป็นค่าเริ่มต้น)

Rules:
1. Use only the facts in the context below. Never guess.
2. Prefer transcript facts [T], then product facts [P], then general knowledge. Base product reasons on the [P] sections.
3. Recommend products only from the "Suggested Products" list, and only when they fit the question.
4. Use at most {max_links} product links, copied exactly from "Suggested Products". If the list is empty, include no product links.
5. Keep the reply short (4-5 sentences), polite and to the point.
6. For every recommended product give a concrete reason (price, specs, portability, warranty).

Return a single JSON object and nothing else:
{{"reply_text": "...", "products": [{{"id": "<id from Suggested Products>", "url": "<its url>", "reason": "...", "confidence": 0.0}}]}}
"products" may be empty. confidence is between 0 and 1."""

REPAIR_PROMPT = (
    "Your previous output could not be used: {error}. "
    "Return only the JSON object described in the instructions, with no markdown."
)

_URL_RE = re.compile(r"https?://[^\s<>\"'\]\)]+")
_URL_TRAILING = ".,!?;:"
_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@dataclass(frozen=True)
class AnswerFlags:
    include_transcripts: bool = True
    include_catalog: bool = True
    include_comments: bool = False


@dataclass(frozen=True)
class AnswerRequest:
    query: str
    content_item_id: str
    flags: AnswerFlags = AnswerFlags()
    temperature: float | None = None
    query_id: str | None = None

    @property
    def include_transcripts(self) -> bool:
        return self.flags.include_transcripts

    @property
    def include_catalog(self) -> bool:
        return self.flags.include_catalog

    @property
    def include_comments(self) -> bool:
        return self.flags.include_comments


@dataclass(frozen=True)
class AnswerConfig:
    """Limits applied while building context and validating answers."""

    max_transcript_chunks: int = 3
    max_catalog_candidates: int = 8
    max_comment_chunks: int = 3
    catalog_search_k: int = 20
    min_score: float = 0.2
    max_links: int = 3
    max_context_tokens: int = 2800
    reserved_tokens: int = 500
    repair_attempts: int = 1
    require_pool: bool = False
    max_tokens: int = 2000


@dataclass(frozen=True)
class AnswerContext:
    """Retrieved material for one content item, shared by every query of a batch.

    ``catalog`` holds per-item deduplicated catalog hits that already passed the
    url join; they are re-ranked per query by :meth:`ContextBuilder.candidates_for`.
    """

    content_item_id: str
    transcripts: Sequence[RetrievalResult] = ()
    catalog: Sequence[RetrievalResult] = ()
    comments: Sequence[RetrievalResult] = ()
    urls: Mapping[str, str] = field(default_factory=dict)
    names: Mapping[str, str] = field(default_factory=dict)
    prices: Mapping[str, float | None] = field(default_factory=dict)
    pool_used: bool = False


class _ProductPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    url: str | None = None
    reason: str = ""
    confidence: float = Field(default=0.5)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("reason", mode="before")
    @classmethod
    def _coerce_reason(cls, value: Any) -> Any:
        return "" if value is None else value


class _AnswerPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reply_text: str
    products: List[_ProductPayload] = Field(default_factory=list)

    @field_validator("products", mode="before")
    @classmethod
    def _coerce_products(cls, value: Any) -> Any:
        return [] if value is None else value


def parse_answer_payload(text: str) -> tuple[_AnswerPayload | None, str]:
    """Parse the completion output; returns (payload, error message)."""

    raw = (text or "").strip()
    if not raw:
        return None, "empty output"
    fenced = _CODE_FENCE_RE.match(raw)
    if fenced:
        raw = fenced.group(1)
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        return None, f"invalid JSON ({exc.msg} at position {exc.pos})"
    if not isinstance(decoded, dict):
        return None, "top level value must be a JSON object"
    try:
        payload = _AnswerPayload.model_validate(decoded)
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        return None, f"schema violation ({problems})"
    return payload, ""


def validate_recommendations(
    products: Sequence[_ProductPayload],
    candidates: Sequence[CatalogCandidate],
    max_links: int,
) -> tuple[list[ProductRecommendation], int]:
    """Keep only products that reference a supplied candidate.

    Returns the kept recommendations (best confidence first, at most
    ``max_links``) and the number of dropped references.
    """

    by_id = {candidate.item_id: candidate for candidate in candidates}
    kept: list[ProductRecommendation] = []
    seen: set[str] = set()
    dropped = 0
    for product in products:
        candidate = by_id.get(product.id.strip())
        url = (product.url or "").strip()
        if candidate is None or (url and url != candidate.url):
            dropped += 1
            continue
        if candidate.item_id in seen:
            continue
        seen.add(candidate.item_id)
        kept.append(
            ProductRecommendation(
                id=candidate.item_id,
                url=candidate.url,
                confidence=clamp_unit(product.confidence),
                reason=product.reason.strip(),
            ),
        )
    kept.sort(key=lambda recommendation: -recommendation.confidence)
    return kept[: max(max_links, 0)], dropped


def scrub_reply_links(text: str, allowed_urls: Sequence[str], max_links: int) -> tuple[str, int]:
    """Remove urls that are not candidate urls and cap the number of links."""

    allowed = set(allowed_urls)
    kept = 0
    removed = 0

    def replace_url(match: re.Match[str]) -> str:
        nonlocal kept, removed
        raw = match.group(0)
        url = raw.rstrip(_URL_TRAILING)
        trailing = raw[len(url):]
        if url in allowed and kept < max_links:
            kept += 1
            return raw
        removed += 1
        return trailing

    scrubbed = _URL_RE.sub(replace_url, text or "")
    if removed:
        scrubbed = re.sub(r"[ \t]{2,}", " ", scrubbed)
        scrubbed = re.sub(r" +([,.!?])", r"\1", scrubbed).strip()
    return scrubbed, removed


class ContextBuilder:
    """Collects transcript, catalog and comment context for a content item."""

    _logger = get_logger("answer.context")

    def __init__(
        self,
        retriever: Retriever,
        reranker: PriceAwareReranker,
        catalog: CatalogSource,
        *,
        pools: PoolBuilder | None = None,
        jobs: IndexJobTracker | None = None,
        config: AnswerConfig | None = None,
    ) -> None:
        self._retriever = retriever
        self._reranker = reranker
        self._catalog = catalog
        self._pools = pools
        self._jobs = jobs
        self._config = config or AnswerConfig()

    @property
    def config(self) -> AnswerConfig:
        return self._config

    def build(self, query: str, content_item_id: str, flags: AnswerFlags = AnswerFlags()) -> AnswerContext:
        if not (query or "").strip():
            raise ValidationError("query must not be empty")
        if not (content_item_id or "").strip():
            raise ValidationError("content_item_id must not be empty")

        transcripts: Sequence[RetrievalResult] = ()
        if flags.include_transcripts:
            if self._jobs is not None:
                job = self._jobs.get(content_item_id)
                if job.status != "ready":
                    raise StaleStateError(f"Content item {content_item_id} is not ready (status={job.status})")
            transcripts = self._retriever.retrieve(
                query,
                top_k=self._config.max_transcript_chunks,
                source_type="transcript",
                content_item_id=content_item_id,
            )

        context = AnswerContext(content_item_id=content_item_id, transcripts=tuple(transcripts))
        if flags.include_catalog:
            context = self._with_catalog(context, query)

        if flags.include_comments:
            comments = self._retriever.retrieve(
                query,
                top_k=self._config.max_comment_chunks,
                source_type="comment",
                content_item_id=content_item_id,
            )
            context = replace(context, comments=tuple(comments))

        self._logger.info(
            "answer.context.built",
            content_item_id=content_item_id,
            transcripts=len(context.transcripts),
            catalog=len(context.catalog),
            comments=len(context.comments),
            pool_used=context.pool_used,
        )
        return context

    def _with_catalog(self, context: AnswerContext, query: str) -> AnswerContext:
        content_item_id = context.content_item_id
        pool_ids: list[str] = []
        if self._pools is not None:
            pool_ids = [entry.catalog_item_id for entry in self._pools.entries(content_item_id)]
        if not pool_ids and self._config.require_pool:
            raise StaleStateError(f"Candidate pool for {content_item_id} is empty")
        if not pool_ids:
            self._logger.info("answer.pool_fallback", content_item_id=content_item_id)

        hits = self._retriever.retrieve(
            query,
            top_k=self._config.catalog_search_k,
            source_type="catalog",
            source_ids=pool_ids or None,
            min_score=self._config.min_score,
        )
        catalog: list[RetrievalResult] = []
        urls: dict[str, str] = {}
        names: dict[str, str] = {}
        prices: dict[str, float | None] = {}
        for hit in hits:
            if hit.source_id in urls:
                continue
            item = self._catalog.get_catalog_item(hit.source_id)
            meta = hit.meta if isinstance(hit.meta, CatalogMeta) else None
            url = (item.url if item else None) or (meta.url if meta else None)
            if not url:
                continue
            urls[hit.source_id] = url
            names[hit.source_id] = (item.name if item and item.name else None) or (meta.name if meta else "")
            price = item.price if item and item.price is not None else candidate_price(hit)
            prices[hit.source_id] = price
            catalog.append(hit)
        return replace(
            context,
            catalog=tuple(catalog),
            urls=urls,
            names=names,
            prices=prices,
            pool_used=bool(pool_ids),
        )

    def candidates_for(self, context: AnswerContext, query: str) -> list[CatalogCandidate]:
        """Price re-rank the shared catalog hits for ``query`` and trim them."""

        reranked = self._reranker.rerank(query, context.catalog)
        origin = "pool" if context.pool_used else "retrieval"
        return [
            CatalogCandidate(
                item_id=hit.source_id,
                url=context.urls[hit.source_id],
                name=context.names.get(hit.source_id, ""),
                price=context.prices.get(hit.source_id),
                score=hit.score,
                origin=origin,
            )
            for hit in reranked[: self._config.max_catalog_candidates]
        ]


def _format_price(price: float | None) -> str:
    if price is None:
        return "n/a"
    return f"{price:,.0f}"


class PromptBuilder:
    """Renders the chat messages for one query."""

    def __init__(self, counter: TokenCounter, config: AnswerConfig | None = None) -> None:
        self._counter = counter
        self._config = config or AnswerConfig()

    def system_prompt(self) -> str:
        return SYSTEM_PROMPT.format(max_links=self._config.max_links)

    def candidate_block(self, candidates: Sequence[CatalogCandidate]) -> str:
        lines = ["Suggested Products:"]
        if not candidates:
            lines.append("(none)")
        for candidate in candidates:
            lines.append(
                CANDIDATE_LINE.format(
                    item_id=candidate.item_id,
                    url=candidate.url,
                    name=" ".join(candidate.name.split()) or candidate.item_id,
                    price=_format_price(candidate.price),
                ),
            )
        return "\n".join(lines)

    def build(
        self,
        query: str,
        context: AnswerContext,
        candidates: Sequence[CatalogCandidate],
    ) -> tuple[list[Message], TokenUsage]:
        catalog_text = {hit.source_id: hit.text for hit in context.catalog}
        sections: list[str] = []
        sections.extend(f"[T{index}] {hit.text}" for index, hit in enumerate(context.transcripts, start=1))
        sections.extend(
            f"[P{index}] id={candidate.item_id}: {catalog_text[candidate.item_id]}"
            for index, candidate in enumerate(candidates, start=1)
            if catalog_text.get(candidate.item_id)
        )
        sections.extend(f"[C{index}] {hit.text}" for index, hit in enumerate(context.comments, start=1))
        products = self.candidate_block(candidates)
        system = self.system_prompt()
        reserved = self._config.reserved_tokens + self._counter.count(products) + self._counter.count(system)
        fitted = self._counter.fit(sections, self._config.max_context_tokens, reserved)

        body = [section.text for section in fitted] or ["(no context)"]
        context_text = "\n\n".join(["Context:", *body, products])
        messages: list[Message] = [
            {"role": "system", "content": f"{system}\n\n{context_text}"},
            {"role": "user", "content": query},
        ]
        estimate = TokenUsage(
            query_tokens=self._counter.count(query),
            system_tokens=self._counter.count(system),
            context_tokens=self._counter.count(context_text),
        )
        return messages, estimate


class AnswerComposer:
    """One structured completion per query, validated against the candidates."""

    _logger = get_logger("answer")

    def __init__(
        self,
        context_builder: ContextBuilder,
        backend: CompletionBackend,
        *,
        counter: TokenCounter | None = None,
        config: AnswerConfig | None = None,
    ) -> None:
        self._context_builder = context_builder
        self._backend = backend
        self._config = config or context_builder.config
        self._counter = counter or TokenCounter()
        self._prompts = PromptBuilder(self._counter, self._config)

    @property
    def context_builder(self) -> ContextBuilder:
        return self._context_builder

    def compose(self, request: AnswerRequest, context: AnswerContext | None = None) -> Answer:
        query = (request.query or "").strip()
        if not query:
            raise ValidationError("query must not be empty")
        if request.temperature is not None and not 0.0 <= request.temperature <= 2.0:
            raise ValidationError("temperature must be within [0, 2]")
        query_id = request.query_id or uuid5(NAMESPACE_URL, f"{request.content_item_id}:{query}").hex

        start = time.perf_counter()
        if context is None:
            context = self._context_builder.build(query, request.content_item_id, request.flags)
        candidates = self._context_builder.candidates_for(context, query)
        messages, estimate = self._prompts.build(query, context, candidates)

        completion = self._backend.complete(
            messages,
            temperature=request.temperature,
            max_tokens=self._config.max_tokens,
            json_mode=True,
        )
        prompt_tokens = completion.prompt_tokens
        completion_tokens = completion.completion_tokens
        payload, error = parse_answer_payload(completion.text)
        repairs = 0
        while payload is None and repairs < self._config.repair_attempts:
            repairs += 1
            PipelineMetrics.answer_repairs.inc()
            self._logger.warning("answer.repair", query_id=query_id, error=error, attempt=repairs)
            repair_messages = [
                *messages,
                {"role": "assistant", "content": completion.text},
                {"role": "user", "content": REPAIR_PROMPT.format(error=error)},
            ]
            completion = self._backend.complete(
                repair_messages,
                temperature=request.temperature,
                max_tokens=self._config.max_tokens,
                json_mode=True,
            )
            prompt_tokens += completion.prompt_tokens
            completion_tokens += completion.completion_tokens
            payload, error = parse_answer_payload(completion.text)
        if payload is None:
            raise AnswerFormatError(f"Completion returned malformed output: {error}")

        products, dropped = validate_recommendations(payload.products, candidates, self._config.max_links)
        reply_text, scrubbed = scrub_reply_links(
            payload.reply_text,
            [candidate.url for candidate in candidates],
            self._config.max_links,
        )
        if dropped or scrubbed:
            PipelineMetrics.observe_dropped_references(dropped + scrubbed)
            self._logger.warning(
                "answer.reference_dropped",
                query_id=query_id,
                content_item_id=request.content_item_id,
                dropped_products=dropped,
                scrubbed_links=scrubbed,
            )

        estimated_total = estimate.query_tokens + estimate.system_tokens + estimate.context_tokens
        reported_total = prompt_tokens + completion_tokens
        usage = replace(
            estimate,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=reported_total or estimated_total + self._counter.count(completion.text),
        )
        PipelineMetrics.observe_tokens(prompt_tokens, completion_tokens)

        duration = time.perf_counter() - start
        PipelineMetrics.observe_generation(duration)
        self._logger.info(
            "answer.complete",
            query_id=query_id,
            content_item_id=request.content_item_id,
            candidate_count=len(candidates),
            product_count=len(products),
            repairs=repairs,
            total_tokens=usage.total_tokens,
            duration_seconds=duration,
        )
        return Answer(
            query_id=query_id,
            reply_text=reply_text,
            products=tuple(products),
            usage=usage,
            candidates=tuple(candidates),
            dropped_references=dropped + scrubbed,
            model=completion.model,
            latency_ms=duration * 1000,
        )


__all__ = [
    "AnswerComposer",
    "AnswerConfig",
    "AnswerContext",
    "AnswerFlags",
    "AnswerRequest",
    "ContextBuilder",
    "PromptBuilder",
    "parse_answer_payload",
    "scrub_reply_links",
    "validate_recommendations",
]
