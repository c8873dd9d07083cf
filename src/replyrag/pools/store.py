"""Generation-swapped pool table."""

from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence

from replyrag.embeddings.records import RecordTable
from replyrag.models import PoolEntry, utcnow

_READ_ATTEMPTS = 3


class PoolStore(Protocol):
    """Storage for per content item candidate pools."""

    def head(self, content_item_id: str) -> Mapping[str, Any] | None:
        """Return the head record of the visible generation."""

    def read(self, content_item_id: str) -> list[PoolEntry]:
        """Return the visible generation, or an empty list."""

    def write_generation(self, content_item_id: str, entries: Sequence[PoolEntry]) -> int:
        """Write a complete generation and make it visible."""

    def delete(self, content_item_id: str) -> None:
        """Remove every generation of the pool."""


class ChromaPoolStore:
    """Pool rows keyed by (content item, generation, catalog item).

    A build writes its whole generation first and only then moves the head
    record, so readers resolving the head see either the old or the new pool.
    The previous generation is kept for readers that resolved the head just
    before the flip; anything older is deleted.
    """

    def __init__(self, table: RecordTable) -> None:
        self._table = table

    @staticmethod
    def _head_key(content_item_id: str) -> str:
        return f"head:{content_item_id}"

    def head(self, content_item_id: str) -> Mapping[str, Any] | None:
        return self._table.get(self._head_key(content_item_id))

    def _read_generation(self, content_item_id: str, generation: int) -> list[PoolEntry]:
        rows = self._table.find(
            {
                "$and": [
                    {"kind": "entry"},
                    {"content_item_id": content_item_id},
                    {"generation": generation},
                ]
            }
        )
        entries = [PoolEntry(**record) for _, record in rows]
        entries.sort(key=lambda entry: (-entry.relevance_score, entry.catalog_item_id))
        return entries

    def read(self, content_item_id: str) -> list[PoolEntry]:
        entries: list[PoolEntry] = []
        for _ in range(_READ_ATTEMPTS):
            head = self.head(content_item_id)
            if head is None:
                return []
            entries = self._read_generation(content_item_id, int(head["generation"]))
            if len(entries) == int(head.get("size", len(entries))):
                return entries
        return entries

    def write_generation(self, content_item_id: str, entries: Sequence[PoolEntry]) -> int:
        head = self.head(content_item_id)
        previous = int(head["generation"]) if head else 0
        generation = previous + 1
        self._table.put_many(
            (
                f"entry:{content_item_id}:{generation}:{entry.catalog_item_id}",
                {
                    "content_item_id": content_item_id,
                    "catalog_item_id": entry.catalog_item_id,
                    "relevance_score": entry.relevance_score,
                    "matched_brand": entry.matched_brand,
                    "matched_category": entry.matched_category,
                    "matched_price_range": entry.matched_price_range,
                    "matched_tags": entry.matched_tags,
                    "generation": generation,
                },
                {"kind": "entry", "content_item_id": content_item_id, "generation": generation},
            )
            for entry in entries
        )
        scores = [entry.relevance_score for entry in entries]
        self._table.put(
            self._head_key(content_item_id),
            {
                "generation": generation,
                "previous": previous,
                "size": len(entries),
                "avg_score": sum(scores) / len(scores) if scores else 0.0,
                "built_at": utcnow().isoformat(),
            },
            {"kind": "head", "content_item_id": content_item_id},
        )
        if previous > 1:
            self._table.delete(
                where={
                    "$and": [
                        {"kind": "entry"},
                        {"content_item_id": content_item_id},
                        {"generation": {"$lt": previous}},
                    ]
                }
            )
        return generation

    def delete(self, content_item_id: str) -> None:
        self._table.delete(where={"content_item_id": content_item_id})


__all__ = ["ChromaPoolStore", "PoolStore"]
