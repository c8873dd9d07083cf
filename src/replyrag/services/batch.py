"""Answer many queries about one content item with a bounded worker pool."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Sequence

from replyrag.errors import ReplyRagError, ValidationError
from replyrag.metrics.observability import PipelineMetrics, get_logger
from replyrag.models import Answer, BatchAnswer, BatchError, TokenUsage
from replyrag.services.answer import AnswerComposer, AnswerContext, AnswerFlags, AnswerRequest


@dataclass(frozen=True)
class BatchQuery:
    query_id: str
    text: str


class BatchOrchestrator:
    """Shares one retrieval context across the queries of a batch.

    Every query gets its own composer pass; a failing pass is recorded in
    ``errors`` and never affects its siblings. Answering writes no shared
    state, so an abandoned batch leaves nothing behind.
    """

    _logger = get_logger("batch")

    def __init__(self, composer: AnswerComposer, *, max_workers: int = 4, max_queries: int = 50) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._composer = composer
        self._max_workers = max_workers
        self._max_queries = max_queries

    def _validate(self, content_item_id: str, queries: Sequence[BatchQuery]) -> None:
        if not (content_item_id or "").strip():
            raise ValidationError("content_item_id must not be empty")
        if not queries:
            raise ValidationError("batch must contain at least one query")
        if len(queries) > self._max_queries:
            raise ValidationError(f"batch accepts at most {self._max_queries} queries")
        ids = [query.query_id for query in queries]
        if any(not (query_id or "").strip() for query_id in ids):
            raise ValidationError("every query needs a query_id")
        if len(set(ids)) != len(ids):
            raise ValidationError("query ids must be unique within a batch")
        if not any((query.text or "").strip() for query in queries):
            raise ValidationError("batch contains only empty queries")

    def answer_batch(
        self,
        content_item_id: str,
        queries: Sequence[BatchQuery],
        flags: AnswerFlags = AnswerFlags(),
        *,
        temperature: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BatchAnswer:
        self._validate(content_item_id, queries)
        start = time.perf_counter()
        joined = " ".join(query.text.strip() for query in queries if (query.text or "").strip())
        context = self._composer.context_builder.build(joined, content_item_id, flags)
        cancel_event = cancel_event or threading.Event()

        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(queries)), thread_name_prefix="batch") as pool:
            futures = [
                pool.submit(self._run_one, content_item_id, query, context, flags, temperature, cancel_event)
                for query in queries
            ]
            outcomes = [future.result() for future in futures]

        answers: list[Answer] = []
        errors: list[BatchError] = []
        for outcome in outcomes:
            if isinstance(outcome, Answer):
                answers.append(outcome)
            else:
                errors.append(outcome)
                PipelineMetrics.observe_batch_failure(outcome.kind)

        usage = sum((answer.usage for answer in answers), TokenUsage())
        duration = time.perf_counter() - start
        self._logger.info(
            "batch.complete",
            content_item_id=content_item_id,
            query_count=len(queries),
            answered=len(answers),
            failed=len(errors),
            total_tokens=usage.total_tokens,
            duration_seconds=duration,
        )
        return BatchAnswer(
            content_item_id=content_item_id,
            answers=tuple(answers),
            errors=tuple(errors),
            usage=usage,
            latency_ms=duration * 1000,
        )

    def _run_one(
        self,
        content_item_id: str,
        query: BatchQuery,
        context: AnswerContext,
        flags: AnswerFlags,
        temperature: float | None,
        cancel_event: threading.Event,
    ) -> Answer | BatchError:
        if cancel_event.is_set():
            return BatchError(query_id=query.query_id, kind="cancelled", message="Batch was cancelled")
        request = AnswerRequest(
            query=query.text,
            content_item_id=content_item_id,
            flags=flags,
            temperature=temperature,
            query_id=query.query_id,
        )
        try:
            answer = self._composer.compose(request, context)
        except ReplyRagError as exc:
            self._logger.warning("batch.query_failed", query_id=query.query_id, kind=exc.kind, error=exc.message)
            return BatchError(query_id=query.query_id, kind=exc.kind, message=exc.message)
        except Exception as exc:
            self._logger.exception("batch.query_crashed", query_id=query.query_id)
            return BatchError(query_id=query.query_id, kind="internal", message=str(exc) or type(exc).__name__)
        if cancel_event.is_set():
            return BatchError(query_id=query.query_id, kind="cancelled", message="Batch was cancelled")
        return answer


__all__ = ["BatchOrchestrator", "BatchQuery"]
