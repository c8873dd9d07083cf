"""Index status tracking for content item transcripts."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta

from replyrag.embeddings.records import RecordTable
from replyrag.errors import ConflictError
from replyrag.metrics.observability import get_logger
from replyrag.models import IndexJob, IndexStatus, utcnow


class IndexJobTracker:
    """Persists ``not_indexed -> indexing -> ready | failed`` per content item.

    A job stuck in ``indexing`` longer than ``stale_after`` is treated as
    abandoned and may be restarted.
    """

    _logger = get_logger("ingestion.jobs")

    def __init__(self, table: RecordTable, *, stale_after: timedelta = timedelta(minutes=10)) -> None:
        self._table = table
        self._stale_after = stale_after
        self._lock = threading.Lock()

    def get(self, content_item_id: str) -> IndexJob:
        record = self._table.get(content_item_id)
        if record is None:
            return IndexJob(content_item_id=content_item_id)
        updated_at = record.get("updated_at")
        return IndexJob(
            content_item_id=content_item_id,
            status=record.get("status", "not_indexed"),
            error=record.get("error"),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )

    def _put(self, content_item_id: str, status: IndexStatus, error: str | None = None) -> IndexJob:
        job = IndexJob(content_item_id=content_item_id, status=status, error=error, updated_at=utcnow())
        self._table.put(
            content_item_id,
            {"status": status, "error": error, "updated_at": job.updated_at.isoformat()},
            {"status": status},
        )
        self._logger.info("index_job.transition", content_item_id=content_item_id, status=status, error=error)
        return job

    def start(self, content_item_id: str) -> IndexJob:
        with self._lock:
            current = self.get(content_item_id)
            if current.status == "indexing" and not self._is_stale(current):
                raise ConflictError(f"Content item {content_item_id} is already being indexed")
            return self._put(content_item_id, "indexing")

    def mark_ready(self, content_item_id: str) -> IndexJob:
        return self._put(content_item_id, "ready")

    def mark_failed(self, content_item_id: str, reason: str) -> IndexJob:
        return self._put(content_item_id, "failed", reason)

    def reset(self, content_item_id: str) -> None:
        self._table.delete(keys=[content_item_id])

    def _is_stale(self, job: IndexJob) -> bool:
        if job.updated_at is None:
            return True
        return utcnow() - job.updated_at > self._stale_after


__all__ = ["IndexJobTracker"]
