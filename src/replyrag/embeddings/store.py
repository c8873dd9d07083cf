"""Chunk store implementations."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, MutableMapping, Protocol, Sequence

from chromadb.api import ClientAPI

from replyrag.embeddings.records import dumps, first, loads_dict, paged_get
from replyrag.models import (
    SOURCE_TYPES,
    Chunk,
    Document,
    RetrievalResult,
    SourceType,
    meta_category,
    meta_content_item_id,
    meta_from_record,
)


@dataclass(frozen=True)
class ChunkFilter:
    """Filters shared by the semantic and lexical retrieval passes."""

    source_type: SourceType | None = None
    content_item_id: str | None = None
    category: str | None = None
    source_ids: Sequence[str] | None = None

    @property
    def matches_nothing(self) -> bool:
        return self.source_ids is not None and not self.source_ids

    def to_where(self, *, embedded_only: bool = False) -> Dict[str, Any] | None:
        clauses: list[Dict[str, Any]] = []
        if self.source_type:
            clauses.append({"source_type": self.source_type})
        if self.content_item_id:
            clauses.append({"content_item_id": self.content_item_id})
        if self.category:
            clauses.append({"category": self.category.casefold()})
        if self.source_ids is not None:
            clauses.append({"source_id": {"$in": list(dict.fromkeys(self.source_ids))}})
        if embedded_only:
            clauses.append({"has_embedding": True})
        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return {"$and": clauses}


class ChunkStore(Protocol):
    """Protocol for chunk persistence backends."""

    def has_document(self, source_type: SourceType, source_id: str) -> bool:
        """Return whether the document exists."""

    def get_document(self, source_type: SourceType, source_id: str) -> Document | None:
        """Return the stored document, if any."""

    def replace_document(self, document: Document, chunks: Sequence[Chunk]) -> int:
        """Store ``chunks`` as the only chunks of ``document``."""

    def delete_document(self, source_type: SourceType, source_id: str) -> bool:
        """Delete the document and its chunks."""

    def similarity_search(
        self,
        vector: Sequence[float],
        filters: ChunkFilter | None = None,
        *,
        limit: int = 10,
    ) -> Sequence[RetrievalResult]:
        """Return nearest embedded chunks with cosine similarity as score."""

    def scan(self, filters: ChunkFilter | None = None) -> Sequence[RetrievalResult]:
        """Return every chunk matching the filters with a zero score."""

    def count(self, filters: ChunkFilter | None = None) -> int:
        """Return number of stored chunks."""

    def stats(self) -> Mapping[str, Mapping[str, int]]:
        """Return per source type document/chunk counts."""


def _epoch(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


class ChromaChunkStore:
    """Chroma-backed chunk store.

    Every chunk carries its document metadata, so documents are derived from
    their chunks. Chunks without an embedding get a placeholder vector and
    ``has_embedding=False``; semantic queries exclude them.
    """

    def __init__(
        self,
        client: ClientAPI,
        collection_name: str = "replyrag_chunks",
        *,
        dim: int,
    ) -> None:
        self._client = client
        self._collection = client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        self._dim = dim
        self._placeholder = [1.0] + [0.0] * (dim - 1)
        self._write_lock = threading.Lock()

    @property
    def dim(self) -> int:
        return self._dim

    @staticmethod
    def _doc_where(source_type: SourceType, source_id: str) -> Dict[str, Any]:
        return {"$and": [{"source_type": source_type}, {"source_id": source_id}]}

    def has_document(self, source_type: SourceType, source_id: str) -> bool:
        batch = self._collection.get(where=self._doc_where(source_type, source_id), limit=1, include=["metadatas"])
        return bool(batch.get("ids"))

    def get_document(self, source_type: SourceType, source_id: str) -> Document | None:
        batch = self._collection.get(where=self._doc_where(source_type, source_id), limit=1, include=["metadatas"])
        metadatas = batch.get("metadatas") or []
        if not metadatas:
            return None
        return self._deserialize_document(metadatas[0])

    def get_chunks(
        self,
        source_type: SourceType,
        source_id: str,
        *,
        with_embeddings: bool = False,
    ) -> list[Chunk]:
        include = ["documents", "metadatas"] + (["embeddings"] if with_embeddings else [])
        batch = self._collection.get(where=self._doc_where(source_type, source_id), include=include)
        ids = batch.get("ids") or []
        documents = batch.get("documents") or []
        metadatas = batch.get("metadatas") or []
        embeddings = batch.get("embeddings") if with_embeddings else None
        chunks: list[Chunk] = []
        for position, (chunk_id, text, metadata) in enumerate(zip(ids, documents, metadatas)):
            vector: tuple[float, ...] | None = None
            if embeddings is not None and bool(metadata.get("has_embedding")):
                vector = tuple(float(value) for value in embeddings[position])
            chunks.append(self._deserialize_chunk(chunk_id, text, metadata, vector))
        chunks.sort(key=lambda chunk: chunk.chunk_index)
        return chunks

    def replace_document(self, document: Document, chunks: Sequence[Chunk]) -> int:
        revision = time.time_ns()
        ids: list[str] = []
        texts: list[str] = []
        metadatas: list[MutableMapping[str, Any]] = []
        vectors: list[list[float]] = []
        for chunk in chunks:
            ids.append(f"{document.source_type}:{document.source_id}:{revision}:{chunk.chunk_index}")
            texts.append(chunk.text)
            metadatas.append(self._serialize_chunk(document, chunk, revision))
            vectors.append(list(chunk.embedding) if chunk.embedding is not None else list(self._placeholder))
        with self._write_lock:
            if ids:
                self._collection.upsert(ids=ids, documents=texts, metadatas=metadatas, embeddings=vectors)
            # Older revisions go only after the new one is readable.
            self._collection.delete(
                where={
                    "$and": [
                        {"source_type": document.source_type},
                        {"source_id": document.source_id},
                        {"revision": {"$ne": revision}},
                    ]
                }
            )
        return len(ids)

    def delete_document(self, source_type: SourceType, source_id: str) -> bool:
        with self._write_lock:
            if not self.has_document(source_type, source_id):
                return False
            self._collection.delete(where=self._doc_where(source_type, source_id))
        return True

    def similarity_search(
        self,
        vector: Sequence[float],
        filters: ChunkFilter | None = None,
        *,
        limit: int = 10,
    ) -> Sequence[RetrievalResult]:
        filters = filters or ChunkFilter()
        if limit <= 0 or filters.matches_nothing or self._collection.count() == 0:
            return []
        results = self._collection.query(
            query_embeddings=[list(vector)],
            n_results=limit,
            where=filters.to_where(embedded_only=True),
            include=["documents", "metadatas", "distances"],
        )
        ids = first(results.get("ids"))
        documents = first(results.get("documents"))
        metadatas = first(results.get("metadatas"))
        distances = first(results.get("distances"))
        hits: list[RetrievalResult] = []
        for chunk_id, text, metadata, distance in zip(ids, documents, metadatas, distances):
            similarity = min(max(1.0 - float(distance), 0.0), 1.0)
            hits.append(self._deserialize_result(chunk_id, text, metadata, similarity))
        return hits

    def scan(self, filters: ChunkFilter | None = None) -> Sequence[RetrievalResult]:
        filters = filters or ChunkFilter()
        if filters.matches_nothing:
            return []
        return [
            self._deserialize_result(chunk_id, text, metadata, 0.0)
            for chunk_id, text, metadata in paged_get(
                self._collection,
                where=filters.to_where(),
                include=["documents", "metadatas"],
            )
        ]

    def count(self, filters: ChunkFilter | None = None) -> int:
        if filters is None:
            return int(self._collection.count())
        if filters.matches_nothing:
            return 0
        return sum(1 for _ in paged_get(self._collection, where=filters.to_where(), include=["metadatas"]))

    def stats(self) -> Mapping[str, Mapping[str, int]]:
        counts: dict[str, dict[str, int]] = {
            source_type: {"documents": 0, "chunks": 0, "embedded_chunks": 0} for source_type in SOURCE_TYPES
        }
        documents: dict[str, set[str]] = {source_type: set() for source_type in SOURCE_TYPES}
        for _, _, metadata in paged_get(self._collection, where=None, include=["metadatas"]):
            source_type = str(metadata.get("source_type", ""))
            if source_type not in counts:
                continue
            counts[source_type]["chunks"] += 1
            if metadata.get("has_embedding"):
                counts[source_type]["embedded_chunks"] += 1
            documents[source_type].add(str(metadata.get("source_id", "")))
        for source_type, ids in documents.items():
            counts[source_type]["documents"] = len(ids)
        return counts

    def _serialize_chunk(self, document: Document, chunk: Chunk, revision: int) -> MutableMapping[str, Any]:
        category = meta_category(document.meta)
        return {
            "source_type": document.source_type,
            "source_id": document.source_id,
            "content_item_id": meta_content_item_id(document.meta) or "",
            "category": category.casefold() if category else "",
            "chunk_index": chunk.chunk_index,
            "has_embedding": chunk.embedding is not None,
            "created_at": _epoch(document.created_at),
            "revision": revision,
            "doc_meta": dumps(document.meta.to_record()),
            "chunk_meta": dumps(chunk.meta.to_record()),
        }

    @staticmethod
    def _deserialize_document(metadata: Mapping[str, Any]) -> Document:
        source_type = str(metadata.get("source_type", ""))
        return Document(
            source_type=source_type,  # type: ignore[arg-type]
            source_id=str(metadata.get("source_id", "")),
            meta=meta_from_record(source_type, loads_dict(metadata.get("doc_meta"))),
            created_at=datetime.fromtimestamp(float(metadata.get("created_at", 0.0)), tz=timezone.utc),
        )

    def _deserialize_chunk(
        self,
        chunk_id: str,
        text: str,
        metadata: Mapping[str, Any],
        vector: tuple[float, ...] | None,
    ) -> Chunk:
        document = self._deserialize_document(metadata)
        return Chunk(
            chunk_id=chunk_id,
            document=document,
            chunk_index=int(metadata.get("chunk_index", 0)),
            text=text,
            meta=meta_from_record(document.source_type, loads_dict(metadata.get("chunk_meta"))),
            embedding=vector,
        )

    def _deserialize_result(
        self,
        chunk_id: str,
        text: str,
        metadata: Mapping[str, Any],
        score: float,
    ) -> RetrievalResult:
        source_type = str(metadata.get("source_type", ""))
        return RetrievalResult(
            chunk_id=chunk_id,
            source_type=source_type,  # type: ignore[arg-type]
            source_id=str(metadata.get("source_id", "")),
            text=text or "",
            score=score,
            meta=meta_from_record(source_type, loads_dict(metadata.get("chunk_meta"))),
            created_at=datetime.fromtimestamp(float(metadata.get("created_at", 0.0)), tz=timezone.utc),
            trace={"semantic": score},
        )


__all__ = ["ChromaChunkStore", "ChunkFilter", "ChunkStore"]
