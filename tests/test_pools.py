from __future__ import annotations

import threading

import pytest

from replyrag.catalog import InMemoryCatalogSource
from replyrag.embeddings import RecordTable
from replyrag.errors import NotFoundError, ValidationError
from replyrag.models import CatalogItem, ContentItem
from replyrag.pools import ChromaPoolStore, PoolBuilder, PoolWeights, score_catalog_item


def test_brand_and_category_outscore_tag_only_match(chroma_client, prefix):
    catalog = InMemoryCatalogSource(
        catalog_items=[
            CatalogItem(item_id="A", brand="ASUS", category="Notebook"),
            CatalogItem(item_id="B", brand="Acer", category="Mouse", tags=("gaming",)),
        ],
        content_items=[
            ContentItem(content_item_id="V1", brand_tags=("ASUS",), category_tags=("Notebook",), tags=("gaming",)),
        ],
    )
    builder = PoolBuilder(catalog, ChromaPoolStore(RecordTable(chroma_client, f"{prefix}_pools")))

    report = builder.build("V1")
    entries = builder.entries("V1")

    assert report.pool_size == 2
    assert [entry.catalog_item_id for entry in entries] == ["A", "B"]
    assert entries[0].matched_brand and entries[0].matched_category
    assert entries[1].matched_tags == 1
    assert entries[0].relevance_score > entries[1].relevance_score


def test_scores_are_normalized_to_unit_range():
    content = ContentItem(
        content_item_id="V1",
        brand_tags=("asus",),
        category_tags=("notebook",),
        price_min=15000,
        price_max=25000,
        tags=("notebook",),
    )
    item = CatalogItem(item_id="P1", brand="ASUS", category="Notebook", price=19900, tags=("Notebook",))
    entry = score_catalog_item(content, item, PoolWeights(tag=4, category=3, price=2, brand=1))

    assert entry is not None
    assert entry.relevance_score == 1.0
    assert entry.matched_price_range
    assert score_catalog_item(content, CatalogItem(item_id="X", brand="Other", price=1000)) is None


def test_price_overlap_uses_item_tolerance():
    content = ContentItem(content_item_id="V1", price_min=15000, price_max=25000)
    near = score_catalog_item(content, CatalogItem(item_id="near", price=27000), price_tolerance=0.1)
    far = score_catalog_item(content, CatalogItem(item_id="far", price=35000), price_tolerance=0.1)

    assert near is not None and near.matched_price_range
    assert far is None


def test_pool_is_capped_and_ranked(pools):
    report = pools.build("V1", max_pool_size=1)

    assert report.pool_size == 1
    assert [entry.catalog_item_id for entry in pools.entries("V1")] == ["P1"]


def test_unbuilt_and_metadata_free_pools_are_empty(pools):
    assert pools.entries("V1") == []
    assert pools.stats("V1").size == 0

    report = pools.build("V2")
    assert report.pool_size == 0
    assert pools.entries("V2") == []


def test_unknown_content_item_and_bad_options(pools):
    with pytest.raises(NotFoundError):
        pools.build("missing")
    with pytest.raises(ValidationError):
        pools.build("V1", max_pool_size=0)
    with pytest.raises(ValidationError):
        pools.build("V1", min_relevance_score=1.5)


def test_overwrite_false_supplements_existing_pool(pools):
    pools.build("V1")
    pools.build("V1", min_relevance_score=0.9)
    assert [entry.catalog_item_id for entry in pools.entries("V1")] == ["P1"]

    report = pools.build("V1", min_relevance_score=0.0, overwrite=False)
    assert report.pool_size == 2
    assert report.generation == 3
    assert {entry.catalog_item_id for entry in pools.entries("V1")} == {"P1", "P2"}


def test_stats_and_build_all(pools):
    bulk = pools.build_all()
    stats = pools.stats("V1")

    assert bulk.built == 2
    assert bulk.failed == 0
    assert stats.size == 2
    assert stats.matched_brand == 2
    assert stats.max_score == 1.0
    assert stats.generation == 1


def test_entries_support_top_k_and_min_score(pools):
    pools.build("V1")
    assert len(pools.entries("V1", top_k=1)) == 1
    assert [entry.catalog_item_id for entry in pools.entries("V1", min_score=0.9)] == ["P1"]


def test_rebuild_racing_reads_sees_whole_generations(pools):
    pools.build("V1")
    allowed = {frozenset({"P1"}), frozenset({"P1", "P2"})}
    observed: list[tuple[frozenset, int]] = []
    stop = threading.Event()

    def reader() -> None:
        while not stop.is_set():
            entries = pools.entries("V1")
            observed.append(
                (
                    frozenset(entry.catalog_item_id for entry in entries),
                    len({entry.generation for entry in entries}),
                ),
            )

    thread = threading.Thread(target=reader)
    thread.start()
    try:
        for round_number in range(10):
            pools.build("V1", min_relevance_score=0.9 if round_number % 2 == 0 else 0.0)
    finally:
        stop.set()
        thread.join()

    assert observed
    assert all(ids in allowed and generations == 1 for ids, generations in observed)
