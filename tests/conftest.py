from __future__ import annotations

import os

os.environ.setdefault("REPLYRAG_ENVIRONMENT", "test")

import json
from typing import Callable, Sequence
from uuid import uuid4

import chromadb
import pytest

from replyrag.catalog import InMemoryCatalogSource
from replyrag.embeddings import ChromaChunkStore, HashEmbeddingBackend, RecordTable
from replyrag.ingestion import IndexJobTracker, IngestionPipeline
from replyrag.models import CatalogItem, CatalogItemSource, ContentItem, TranscriptSource
from replyrag.pools import ChromaPoolStore, PoolBuilder
from replyrag.retrieval import HybridRetriever, PriceAwareReranker
from replyrag.services.generation import Completion


class ScriptedCompletionBackend:
    """Replays canned outputs; callables receive the messages, exceptions are raised."""

    def __init__(self, outputs: Sequence[object]) -> None:
        self.outputs = list(outputs)
        self.calls: list[list[dict]] = []

    def complete(self, messages, *, temperature=None, max_tokens=None, json_mode=True) -> Completion:
        self.calls.append([dict(message) for message in messages])
        output = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        if callable(output):
            output = output(messages)
        if isinstance(output, Exception):
            raise output
        return Completion(text=str(output), prompt_tokens=100, completion_tokens=20, model="scripted")


def answer_json(reply: str, products: Sequence[dict] = ()) -> str:
    return json.dumps({"reply_text": reply, "products": list(products)}, ensure_ascii=False)


@pytest.fixture()
def chroma_client():
    return chromadb.EphemeralClient()


@pytest.fixture()
def prefix() -> str:
    return f"t{uuid4().hex[:12]}"


@pytest.fixture()
def embedder() -> HashEmbeddingBackend:
    return HashEmbeddingBackend()


@pytest.fixture()
def store(chroma_client, prefix, embedder) -> ChromaChunkStore:
    return ChromaChunkStore(chroma_client, f"{prefix}_chunks", dim=embedder.dim)


@pytest.fixture()
def jobs(chroma_client, prefix) -> IndexJobTracker:
    return IndexJobTracker(RecordTable(chroma_client, f"{prefix}_jobs"))


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def pipeline(store, embedder, jobs, sleeps) -> IngestionPipeline:
    return IngestionPipeline(store, embedder, jobs=jobs, sleep=sleeps.append)


@pytest.fixture()
def retriever(store, embedder) -> HybridRetriever:
    return HybridRetriever(store, embedder)


@pytest.fixture()
def reranker() -> PriceAwareReranker:
    return PriceAwareReranker()


@pytest.fixture()
def catalog() -> InMemoryCatalogSource:
    return InMemoryCatalogSource(
        catalog_items=[
            CatalogItem(
                item_id="P1",
                name="ASUS Vivobook 15",
                brand="ASUS",
                category="Notebook",
                price=19900,
                tags=("asus", "notebook"),
                url="https://nbsi.me/p1",
            ),
            CatalogItem(
                item_id="P2",
                name="ASUS Zenbook 14",
                brand="ASUS",
                category="Notebook",
                price=35000,
                tags=("asus", "notebook"),
                url="https://nbsi.me/p2",
            ),
            CatalogItem(
                item_id="P3",
                name="Logitech MX Master 3S",
                brand="Logitech",
                category="Mouse",
                price=3490,
                tags=("mouse",),
                url="https://nbsi.me/p3",
            ),
        ],
        content_items=[
            ContentItem(
                content_item_id="V1",
                title="Best ASUS notebooks",
                brand_tags=("ASUS",),
                category_tags=("Notebook",),
                price_min=15000,
                price_max=25000,
                tags=("notebook",),
            ),
            ContentItem(content_item_id="V2", title="Vlog"),
        ],
    )


@pytest.fixture()
def pools(chroma_client, prefix, catalog) -> PoolBuilder:
    return PoolBuilder(catalog, ChromaPoolStore(RecordTable(chroma_client, f"{prefix}_pools")))


@pytest.fixture()
def seeded(pipeline, catalog) -> IngestionPipeline:
    """Transcript of V1 plus every catalog item, with V1 marked ready."""

    pipeline.ingest(
        TranscriptSource(
            content_item_id="V1",
            text=(
                "Today we review ASUS notebooks for students. The Vivobook 15 is light and cheap. "
                "The Zenbook 14 has a better OLED screen but costs more."
            ),
            title="Best ASUS notebooks",
        ),
    )
    for item in catalog.catalog_items():
        pipeline.ingest(
            CatalogItemSource(
                item_id=item.item_id,
                name=item.name,
                description=f"{item.brand} {item.category} {item.name}",
                price=item.price,
                url=item.url,
                category=item.category,
                brand=item.brand,
                tags=item.tags,
            ),
        )
    return pipeline


@pytest.fixture()
def scripted() -> Callable[[Sequence[object]], ScriptedCompletionBackend]:
    return ScriptedCompletionBackend


@pytest.fixture()
def settings(prefix):
    from replyrag.config import Settings

    return Settings(environment="test", chroma_collection_prefix=prefix, answer_min_score=0.0)


@pytest.fixture()
def engine(settings, chroma_client, catalog):
    from replyrag.services.engine import build_engine

    return build_engine(settings, client=chroma_client, catalog=catalog)


@pytest.fixture()
def catalog_payloads(catalog) -> list[dict]:
    return [
        {
            "item_id": item.item_id,
            "name": item.name,
            "description": f"{item.brand} {item.category} {item.name}",
            "price": item.price,
            "url": item.url,
            "category": item.category,
            "brand": item.brand,
            "tags": list(item.tags),
        }
        for item in catalog.catalog_items()
    ]
