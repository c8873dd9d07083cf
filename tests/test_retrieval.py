from __future__ import annotations

import pytest

from replyrag.embeddings.service import HashEmbeddingBackend
from replyrag.errors import DependencyError, ValidationError
from replyrag.models import CommentSource, TranscriptSource
from replyrag.retrieval.service import HybridRetriever, RetrievalConfig, term_overlap_score


class OfflineQueryEmbedder(HashEmbeddingBackend):
    def embed_query(self, text):
        raise DependencyError("embedding gateway down")


def test_retrieve_is_deterministic(seeded, retriever):
    first = retriever.retrieve("ASUS notebook for students", top_k=5)
    second = retriever.retrieve("ASUS notebook for students", top_k=5)

    assert first
    assert [(hit.chunk_id, hit.score) for hit in first] == [(hit.chunk_id, hit.score) for hit in second]
    assert [hit.score for hit in first] == sorted((hit.score for hit in first), reverse=True)


def test_exact_chunk_text_round_trips_at_rank_one(pipeline, store, retriever):
    pipeline.ingest(CommentSource(comment_id="c1", content_item_id="V1", text="Does the Zenbook 14 support USB-C charging?"))
    pipeline.ingest(CommentSource(comment_id="c2", content_item_id="V1", text="Great review, thanks!"))
    text = store.get_chunks("comment", "c1")[0].text

    results = retriever.retrieve(text, top_k=3)

    assert results[0].source_id == "c1"
    assert results[0].score >= 0.9
    assert results[0].trace["semantic"] == pytest.approx(1.0, abs=1e-3)


def test_filters_restrict_both_passes(seeded, retriever):
    transcripts = retriever.retrieve("ASUS notebook", source_type="transcript", content_item_id="V1")
    assert transcripts and {hit.source_type for hit in transcripts} == {"transcript"}

    mice = retriever.retrieve("Logitech mouse", source_type="catalog", category="mouse")
    assert {hit.source_id for hit in mice} == {"P3"}

    scoped = retriever.retrieve("ASUS notebook", source_type="catalog", source_ids=["P2"])
    assert {hit.source_id for hit in scoped} == {"P2"}

    assert retriever.retrieve("ASUS notebook", source_ids=[]) == []
    assert retriever.retrieve("ASUS notebook", content_item_id="unknown") == []


def test_min_score_and_top_k(seeded, retriever):
    results = retriever.retrieve("ASUS notebook", top_k=2)
    assert len(results) == 2
    assert retriever.retrieve("ASUS notebook", min_score=1.01) == []


def test_lexical_pass_finds_unembedded_chunks(store, jobs):
    from replyrag.ingestion.service import IngestionPipeline

    class NoVectors(HashEmbeddingBackend):
        def embed_texts(self, texts):
            raise DependencyError("embedding gateway down")

    IngestionPipeline(store, NoVectors(), jobs=jobs).ingest(
        TranscriptSource(content_item_id="V1", text="The i5-12400 runs cool"),
    )
    results = HybridRetriever(store, HashEmbeddingBackend()).retrieve("i5-12400")

    assert [hit.source_id for hit in results] == ["V1"]
    assert results[0].trace["semantic"] == 0.0
    assert results[0].trace["lexical"] > 0.0


def test_query_embedding_failure_degrades_to_lexical(seeded, store):
    retriever = HybridRetriever(store, OfflineQueryEmbedder(), RetrievalConfig(top_k=3))
    results = retriever.retrieve("Logitech mouse")

    assert results[0].source_id == "P3"
    assert results[0].score == results[0].trace["lexical"]


def test_precomputed_query_embedding_is_used(seeded, store, embedder):
    retriever = HybridRetriever(store, OfflineQueryEmbedder())
    results = retriever.retrieve("Logitech mouse", query_embedding=embedder.embed_query("Logitech mouse"))
    assert results[0].trace["semantic"] > 0.0


def test_invalid_queries_are_rejected(retriever):
    with pytest.raises(ValidationError):
        retriever.retrieve("   ")
    with pytest.raises(ValidationError):
        retriever.retrieve("ASUS", top_k=0)


def test_term_overlap_score():
    assert term_overlap_score({"asus", "zenbook"}, "The ASUS Zenbook 14") == 1.0
    assert term_overlap_score({"asus", "zenbook"}, "ASUS only") == 0.5
    assert term_overlap_score(set(), "anything") == 0.0
