"""Keyed record tables stored in Chroma collections.

Pools and index jobs are small keyed tables that live next to the chunk
collection so the engine has a single storage dependency. Records are stored
as JSON documents with a constant placeholder embedding; scalar ``tags`` are
copied into Chroma metadata so they can be filtered with ``where`` clauses.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Iterator, Mapping, Sequence, Tuple

from chromadb.api import ClientAPI

Scalar = str | int | float | bool

_PLACEHOLDER_EMBEDDING = [1.0]
_PAGE_SIZE = 1000


def dumps(value: object) -> str:
    try:
        return json.dumps(value, default=str, ensure_ascii=False)
    except TypeError:
        return json.dumps({}, default=str)


def loads_dict(value: object) -> Dict[str, Any]:
    if isinstance(value, str) and value:
        try:
            loaded = json.loads(value)
            if isinstance(loaded, dict):
                return loaded
        except json.JSONDecodeError:
            return {}
    if isinstance(value, Mapping):
        return dict(value)
    return {}


def first(value: object) -> list:
    """Return the first row of a batched Chroma query result."""

    if isinstance(value, list):
        return list(value[0]) if value and value[0] is not None else []
    return []


def paged_get(collection: Any, *, where: Mapping[str, Any] | None, include: Sequence[str]) -> Iterator[Tuple[str, Any, Any]]:
    """Yield ``(id, document, metadata)`` for every row matching ``where``."""

    offset = 0
    while True:
        batch = collection.get(where=where, include=list(include), limit=_PAGE_SIZE, offset=offset)
        ids = batch.get("ids") or []
        if not ids:
            return
        documents = batch.get("documents") or [None] * len(ids)
        metadatas = batch.get("metadatas") or [None] * len(ids)
        for row in zip(ids, documents, metadatas):
            yield row
        if len(ids) < _PAGE_SIZE:
            return
        offset += _PAGE_SIZE


class RecordTable:
    """JSON records keyed by string id inside one Chroma collection."""

    def __init__(self, client: ClientAPI, name: str) -> None:
        self._collection = client.get_or_create_collection(name=name, metadata={"hnsw:space": "cosine"})

    @property
    def name(self) -> str:
        return self._collection.name

    def put_many(self, items: Iterable[Tuple[str, Mapping[str, Any], Mapping[str, Scalar]]]) -> None:
        ids: list[str] = []
        documents: list[str] = []
        metadatas: list[dict[str, Scalar]] = []
        for key, record, tags in items:
            ids.append(key)
            documents.append(dumps(dict(record)))
            metadata: dict[str, Scalar] = {"record_key": key}
            metadata.update({name: value for name, value in tags.items() if value is not None})
            metadatas.append(metadata)
        if not ids:
            return
        self._collection.upsert(
            ids=ids,
            documents=documents,
            metadatas=metadatas,
            embeddings=[list(_PLACEHOLDER_EMBEDDING) for _ in ids],
        )

    def put(self, key: str, record: Mapping[str, Any], tags: Mapping[str, Scalar] | None = None) -> None:
        self.put_many([(key, record, tags or {})])

    def get(self, key: str) -> Dict[str, Any] | None:
        batch = self._collection.get(ids=[key], include=["documents"])
        documents = batch.get("documents") or []
        if not documents or documents[0] is None:
            return None
        return loads_dict(documents[0])

    def find(self, where: Mapping[str, Any] | None = None) -> list[Tuple[str, Dict[str, Any]]]:
        return [
            (key, loads_dict(document))
            for key, document, _ in paged_get(self._collection, where=where, include=["documents"])
        ]

    def keys(self, where: Mapping[str, Any] | None = None) -> list[str]:
        return [key for key, _, _ in paged_get(self._collection, where=where, include=["metadatas"])]

    def delete(self, *, keys: Sequence[str] | None = None, where: Mapping[str, Any] | None = None) -> None:
        if keys is not None:
            if keys:
                self._collection.delete(ids=list(keys))
            return
        if where:
            self._collection.delete(where=dict(where))

    def count(self) -> int:
        return int(self._collection.count())


__all__ = ["RecordTable", "dumps", "first", "loads_dict", "paged_get"]
