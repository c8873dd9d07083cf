from __future__ import annotations

import pytest

from replyrag.errors import ValidationError
from replyrag.models import CatalogItemSource, CommentSource, TranscriptSource
from replyrag.services.engine import parse_source_type, source_from_payload

TRANSCRIPT = {
    "content_item_id": "V1",
    "title": "Best ASUS notebooks",
    "text": "Today we review ASUS notebooks for students. The Vivobook 15 is light and cheap.",
}


def test_source_from_payload_builds_typed_sources():
    catalog = source_from_payload("catalog", {"item_id": 5, "name": "Mouse", "price": "390", "tags": "a, b,"})
    comment = source_from_payload(
        "comment",
        {"comment_id": "c1", "content_item_id": "V1", "text": "nice", "like_count": "3"},
    )

    assert isinstance(source_from_payload("transcript", TRANSCRIPT), TranscriptSource)
    assert isinstance(catalog, CatalogItemSource)
    assert (catalog.item_id, catalog.price, catalog.tags) == ("5", 390.0, ("a", "b"))
    assert isinstance(comment, CommentSource)
    assert comment.like_count == 3


@pytest.mark.parametrize(
    "source_type, payload",
    [
        ("catalog", {"name": "missing id"}),
        ("catalog", {"item_id": "P1", "name": "x", "price": "cheap"}),
        ("catalog", {"item_id": "P1", "name": "x", "price": True}),
        ("comment", {"comment_id": "c1", "text": "no content item"}),
        ("transcript", ["not", "a", "mapping"]),
    ],
)
def test_source_from_payload_rejects_bad_payloads(source_type, payload):
    with pytest.raises(ValidationError):
        source_from_payload(source_type, payload)


def test_parse_source_type_rejects_unknown_types():
    assert parse_source_type("comment") == "comment"
    with pytest.raises(ValidationError):
        parse_source_type("video")


def test_ingest_and_delete_envelopes(engine):
    created = engine.ingest_document("transcript", TRANSCRIPT)
    duplicate = engine.ingest_document("transcript", TRANSCRIPT)
    replaced = engine.ingest_document("transcript", TRANSCRIPT, overwrite=True)

    assert created.success
    assert created.data.chunks_created >= 1
    assert duplicate.error.kind == "conflict"
    assert replaced.success

    assert engine.delete_document("transcript", "V1").success
    assert engine.delete_document("transcript", "V1").error.kind == "not_found"
    assert engine.delete_document("video", "V1").error.kind == "validation"


def test_bulk_ingest_merges_payload_errors(engine, catalog_payloads):
    result = engine.ingest_documents("catalog", [*catalog_payloads, {"name": "no id"}])

    assert result.success
    assert result.data.successful == 3
    assert result.data.failed == 1
    assert result.data.errors[0].source_id == "#3"
    assert result.data.errors[0].kind == "validation"


def test_index_status_and_answer_flow(engine, catalog_payloads):
    assert engine.content_item_status("V1").data.status == "not_indexed"
    assert engine.answer("hello", "V1").error.kind == "not_ready"

    indexed = engine.index_content_item(TRANSCRIPT)
    engine.ingest_documents("catalog", catalog_payloads)
    engine.build_pool("V1")

    assert indexed.success
    assert indexed.data["job"].status == "ready"
    assert engine.content_item_status("V1").data.status == "ready"

    result = engine.answer("ASUS notebook งบ 20000", "V1", {"query_id": "q-1"})
    answer = result.data

    assert result.success
    assert answer.query_id == "q-1"
    assert {candidate.item_id for candidate in answer.candidates} <= {"P1", "P2"}
    assert {product.id for product in answer.products} <= {candidate.item_id for candidate in answer.candidates}

    payload = result.to_dict()
    assert payload["data"]["query_id"] == "q-1"
    assert isinstance(payload["data"]["products"], list)


def test_answer_rejects_unknown_flags(engine):
    result = engine.answer("hello", "V1", {"include_everything": True})

    assert not result.success
    assert result.error.kind == "validation"
    assert "include_everything" in result.error.message


def test_batch_answer_envelope(engine, catalog_payloads):
    engine.index_content_item(TRANSCRIPT)
    engine.ingest_documents("catalog", catalog_payloads)

    result = engine.batch_answer(
        "V1",
        [{"query_id": "a", "text": "ASUS notebook"}, {"query_id": "b", "text": " "}],
        {"include_comments": True},
    )

    assert result.success
    assert [answer.query_id for answer in result.data.answers] == ["a"]
    assert [error.query_id for error in result.data.errors] == ["b"]
    assert engine.batch_answer("V1", [], None).error.kind == "validation"


def test_retrieve_filters(engine, catalog_payloads):
    engine.ingest_documents("catalog", catalog_payloads)
    engine.index_content_item(TRANSCRIPT)

    catalog_only = engine.retrieve("ASUS notebook", {"source_type": "catalog", "top_k": 4})
    restricted = engine.retrieve("ASUS notebook", {"source_ids": ["P3"]})
    reranked = engine.retrieve("ASUS notebook งบ 20000", {"source_type": "catalog", "rerank_by_price": True})

    assert catalog_only.success
    assert 0 < len(catalog_only.data) <= 4
    assert all(hit.source_type == "catalog" for hit in catalog_only.data)
    assert {hit.source_id for hit in restricted.data} <= {"P3"}
    assert reranked.success
    assert engine.retrieve("ASUS", {"colour": "red"}).error.kind == "validation"
    assert engine.retrieve("ASUS", {"source_ids": "P1"}).error.kind == "validation"
    assert engine.retrieve("", {}).error.kind == "validation"


def test_pool_operations(engine):
    built = engine.build_pool("V1", {"max_pool_size": 1})
    everything = engine.build_all_pools({})
    stats = engine.pool_stats("V1", top_k=5)

    assert built.data.pool_size == 1
    assert everything.data.built == 2
    assert stats.data["stats"].size == 2
    assert [entry.catalog_item_id for entry in stats.data["entries"]] == ["P1", "P2"]
    assert engine.build_pool("missing").error.kind == "not_found"
    assert engine.pool_stats("missing").error.kind == "not_found"
    assert engine.build_pool("V1", {"size": 3}).error.kind == "validation"


def test_stats_and_health(engine, catalog_payloads):
    engine.ingest_documents("catalog", catalog_payloads)

    stats = engine.stats().data
    health = engine.health().data

    assert stats["sources"]["catalog"]["documents"] == 3
    assert stats["sources"]["transcript"]["chunks"] == 0
    assert stats["total_chunks"] == stats["sources"]["catalog"]["chunks"]
    assert stats["content_items"] == 2
    assert stats["catalog_items"] == 3
    assert health["status"] == "ok"
    assert health["hosted_models"] is False
    assert health["chunks"] == stats["total_chunks"]


def test_unexpected_errors_become_internal_envelopes(engine, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(engine.components.store, "stats", explode)

    result = engine.stats()

    assert not result.success
    assert result.error.kind == "internal"
    assert "disk on fire" not in result.error.message
