from __future__ import annotations

import pytest

from replyrag.embeddings.store import ChunkFilter
from replyrag.models import CatalogMeta, Chunk, CommentMeta, Document


def _catalog_document(source_id: str = "P1", category: str = "Notebook") -> Document:
    meta = CatalogMeta(
        name="ASUS Vivobook 15",
        price=19900,
        url="https://nbsi.me/p1",
        category=category,
        brand="ASUS",
        tags=("asus", "notebook"),
    )
    return Document(source_type="catalog", source_id=source_id, meta=meta)


def _chunks(document: Document, texts, embedder, *, embedded=True) -> list[Chunk]:
    return [
        Chunk(
            chunk_id=f"draft:{index}",
            document=document,
            chunk_index=index,
            text=text,
            meta=document.meta,
            embedding=embedder.embed_query(text) if embedded else None,
        )
        for index, text in enumerate(texts)
    ]


def test_replace_document_round_trips_metadata(store, embedder):
    document = _catalog_document()
    assert store.replace_document(document, _chunks(document, ["summary text", "detail text"], embedder)) == 2

    loaded = store.get_document("catalog", "P1")
    assert loaded is not None
    assert loaded.meta == document.meta
    chunks = store.get_chunks("catalog", "P1", with_embeddings=True)
    assert [chunk.text for chunk in chunks] == ["summary text", "detail text"]
    assert chunks[0].embedding == pytest.approx(embedder.embed_query("summary text"), abs=1e-5)


def test_replace_document_drops_previous_chunks(store, embedder):
    document = _catalog_document()
    store.replace_document(document, _chunks(document, ["one", "two", "three"], embedder))
    store.replace_document(document, _chunks(document, ["only"], embedder))

    assert [chunk.text for chunk in store.get_chunks("catalog", "P1")] == ["only"]
    assert store.count(ChunkFilter(source_type="catalog")) == 1


def test_unembedded_chunks_are_scanned_but_not_searched(store, embedder):
    document = Document(source_type="comment", source_id="c1", meta=CommentMeta(content_item_id="V1"))
    store.replace_document(document, _chunks(document, ["no vector here"], embedder, embedded=False))

    assert store.similarity_search(embedder.embed_query("no vector here"), ChunkFilter(), limit=5) == []
    scanned = store.scan(ChunkFilter(content_item_id="V1"))
    assert [hit.text for hit in scanned] == ["no vector here"]
    assert store.stats()["comment"] == {"documents": 1, "chunks": 1, "embedded_chunks": 0}


def test_similarity_search_filters_category_case_insensitively(store, embedder):
    notebook = _catalog_document("P1", "Notebook")
    mouse = _catalog_document("P3", "Mouse")
    store.replace_document(notebook, _chunks(notebook, ["asus notebook"], embedder))
    store.replace_document(mouse, _chunks(mouse, ["asus notebook"], embedder))

    hits = store.similarity_search(embedder.embed_query("asus notebook"), ChunkFilter(category="NOTEBOOK"), limit=5)
    assert [hit.source_id for hit in hits] == ["P1"]
    assert hits[0].score == pytest.approx(1.0, abs=1e-4)


def test_empty_source_id_filter_matches_nothing(store, embedder):
    document = _catalog_document()
    store.replace_document(document, _chunks(document, ["asus notebook"], embedder))

    empty = ChunkFilter(source_ids=())
    assert store.scan(empty) == []
    assert store.similarity_search(embedder.embed_query("asus"), empty, limit=5) == []


def test_delete_document(store, embedder):
    document = _catalog_document()
    store.replace_document(document, _chunks(document, ["asus notebook"], embedder))

    assert store.delete_document("catalog", "P1") is True
    assert store.delete_document("catalog", "P1") is False
    assert store.get_document("catalog", "P1") is None
