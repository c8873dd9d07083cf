"""Embedding gateway, record tables and chunk store."""

from .records import RecordTable
from .service import (
    EmbeddingBackend,
    EmbeddingConfig,
    GatewayCaller,
    GatewayPolicy,
    HashEmbeddingBackend,
    OpenAIEmbeddingBackend,
)
from .store import ChromaChunkStore, ChunkFilter, ChunkStore

__all__ = [
    "ChromaChunkStore",
    "ChunkFilter",
    "ChunkStore",
    "EmbeddingBackend",
    "EmbeddingConfig",
    "GatewayCaller",
    "GatewayPolicy",
    "HashEmbeddingBackend",
    "OpenAIEmbeddingBackend",
    "RecordTable",
]
