"""Pool builder: per content item catalog candidate sets."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from replyrag.catalog import CatalogSource
from replyrag.errors import NotFoundError, ReplyRagError, ValidationError
from replyrag.metrics.observability import PipelineMetrics, get_logger
from replyrag.models import CatalogItem, ContentItem, PoolEntry
from replyrag.pools.store import PoolStore


@dataclass(frozen=True)
class PoolWeights:
    """Signal weights; scores are normalized by their sum."""

    tag: float = 0.3
    category: float = 0.3
    price: float = 0.2
    brand: float = 0.2

    @property
    def total(self) -> float:
        return self.tag + self.category + self.price + self.brand

    def validate(self) -> None:
        if min(self.tag, self.category, self.price, self.brand) < 0 or self.total <= 0:
            raise ValidationError("pool weights must be non-negative with a positive sum")


@dataclass(frozen=True)
class PoolBuildReport:
    content_item_id: str
    pool_size: int
    avg_score: float
    generation: int


@dataclass(frozen=True)
class PoolBulkReport:
    built: int
    failed: int
    reports: Sequence[PoolBuildReport] = field(default_factory=tuple)
    errors: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PoolStats:
    content_item_id: str
    generation: int
    size: int
    avg_score: float
    max_score: float
    min_score: float
    matched_brand: int
    matched_category: int
    matched_price_range: int
    matched_tags: int


def _folded(values: Sequence[str]) -> set[str]:
    return {value.strip().casefold() for value in values if value and value.strip()}


def score_catalog_item(
    content: ContentItem,
    item: CatalogItem,
    weights: PoolWeights = PoolWeights(),
    *,
    price_tolerance: float = 0.1,
) -> PoolEntry | None:
    """Score one catalog item against a content item; None when nothing matches."""

    content_tags = _folded(content.tags)
    matched_tags = len(content_tags.intersection(_folded(item.tags)))
    tag_fraction = matched_tags / len(content_tags) if content_tags else 0.0

    matched_category = bool(item.category) and item.category.strip().casefold() in _folded(content.category_tags)
    matched_brand = bool(item.brand) and item.brand.strip().casefold() in _folded(content.brand_tags)

    matched_price = False
    if item.price and content.price_min is not None and content.price_max is not None:
        low = item.price * (1 - price_tolerance)
        high = item.price * (1 + price_tolerance)
        matched_price = low <= content.price_max and high >= content.price_min

    if not (matched_tags or matched_category or matched_brand or matched_price):
        return None
    raw = (
        weights.tag * tag_fraction
        + weights.category * matched_category
        + weights.price * matched_price
        + weights.brand * matched_brand
    )
    return PoolEntry(
        content_item_id=content.content_item_id,
        catalog_item_id=item.item_id,
        relevance_score=round(min(raw / weights.total, 1.0), 6),
        matched_brand=matched_brand,
        matched_category=matched_category,
        matched_price_range=matched_price,
        matched_tags=matched_tags,
    )


def _rank(entries: Sequence[PoolEntry]) -> List[PoolEntry]:
    return sorted(entries, key=lambda entry: (-entry.relevance_score, entry.catalog_item_id))


class PoolBuilder:
    """Precomputes and serves per content item candidate pools."""

    _logger = get_logger("pools")

    def __init__(
        self,
        catalog: CatalogSource,
        store: PoolStore,
        *,
        weights: PoolWeights | None = None,
        price_tolerance: float = 0.1,
        max_pool_size: int = 200,
        min_relevance_score: float = 0.1,
    ) -> None:
        self._catalog = catalog
        self._store = store
        self._weights = weights or PoolWeights()
        self._weights.validate()
        self._price_tolerance = price_tolerance
        self._max_pool_size = max_pool_size
        self._min_relevance_score = min_relevance_score
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, content_item_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(content_item_id, threading.Lock())

    def build(
        self,
        content_item_id: str,
        *,
        max_pool_size: int | None = None,
        min_relevance_score: float | None = None,
        overwrite: bool = True,
    ) -> PoolBuildReport:
        size_cap = self._max_pool_size if max_pool_size is None else max_pool_size
        threshold = self._min_relevance_score if min_relevance_score is None else min_relevance_score
        if size_cap < 1:
            raise ValidationError("max_pool_size must be at least 1")
        if not 0.0 <= threshold <= 1.0:
            raise ValidationError("min_relevance_score must be within [0, 1]")
        content = self._catalog.get_content_item(content_item_id)
        if content is None:
            raise NotFoundError(f"Content item {content_item_id} not found")

        start = time.perf_counter()
        with self._lock_for(content_item_id):
            scored: List[PoolEntry] = []
            if content.has_pool_metadata:
                for item in self._catalog.catalog_items():
                    entry = score_catalog_item(content, item, self._weights, price_tolerance=self._price_tolerance)
                    if entry is not None and entry.relevance_score >= threshold:
                        scored.append(entry)
            else:
                self._logger.info("pool.no_metadata", content_item_id=content_item_id)
            if not overwrite:
                merged = {entry.catalog_item_id: entry for entry in self._store.read(content_item_id)}
                for entry in scored:
                    existing = merged.get(entry.catalog_item_id)
                    if existing is None or entry.relevance_score > existing.relevance_score:
                        merged[entry.catalog_item_id] = entry
                scored = list(merged.values())
            pool = _rank(scored)[:size_cap]
            generation = self._store.write_generation(content_item_id, pool)

        duration = time.perf_counter() - start
        avg_score = sum(entry.relevance_score for entry in pool) / len(pool) if pool else 0.0
        PipelineMetrics.observe_pool_build(duration, len(pool))
        self._logger.info(
            "pool.build.complete",
            content_item_id=content_item_id,
            pool_size=len(pool),
            avg_score=avg_score,
            generation=generation,
            overwrite=overwrite,
            duration_seconds=duration,
        )
        return PoolBuildReport(
            content_item_id=content_item_id,
            pool_size=len(pool),
            avg_score=avg_score,
            generation=generation,
        )

    def build_all(
        self,
        *,
        max_pool_size: int | None = None,
        min_relevance_score: float | None = None,
        overwrite: bool = True,
    ) -> PoolBulkReport:
        reports: List[PoolBuildReport] = []
        errors: Dict[str, str] = {}
        for content in self._catalog.content_items():
            try:
                reports.append(
                    self.build(
                        content.content_item_id,
                        max_pool_size=max_pool_size,
                        min_relevance_score=min_relevance_score,
                        overwrite=overwrite,
                    )
                )
            except ReplyRagError as exc:
                errors[content.content_item_id] = exc.message
                self._logger.warning("pool.build.failed", content_item_id=content.content_item_id, error=exc.message)
        return PoolBulkReport(built=len(reports), failed=len(errors), reports=tuple(reports), errors=errors)

    def entries(self, content_item_id: str, *, top_k: int | None = None, min_score: float = 0.0) -> List[PoolEntry]:
        """Visible pool entries; an unbuilt pool yields an empty list."""

        entries = [entry for entry in self._store.read(content_item_id) if entry.relevance_score >= min_score]
        if top_k is not None:
            entries = entries[: max(top_k, 0)]
        return entries

    def stats(self, content_item_id: str) -> PoolStats:
        head = self._store.head(content_item_id)
        entries = self._store.read(content_item_id)
        scores = [entry.relevance_score for entry in entries]
        return PoolStats(
            content_item_id=content_item_id,
            generation=int(head["generation"]) if head else 0,
            size=len(entries),
            avg_score=sum(scores) / len(scores) if scores else 0.0,
            max_score=max(scores, default=0.0),
            min_score=min(scores, default=0.0),
            matched_brand=sum(1 for entry in entries if entry.matched_brand),
            matched_category=sum(1 for entry in entries if entry.matched_category),
            matched_price_range=sum(1 for entry in entries if entry.matched_price_range),
            matched_tags=sum(1 for entry in entries if entry.matched_tags),
        )


__all__ = [
    "PoolBuildReport",
    "PoolBuilder",
    "PoolBulkReport",
    "PoolStats",
    "PoolWeights",
    "score_catalog_item",
]
