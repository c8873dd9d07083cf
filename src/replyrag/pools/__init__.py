"""Per content item candidate pools."""

from .service import PoolBuilder, PoolBuildReport, PoolBulkReport, PoolStats, PoolWeights, score_catalog_item
from .store import ChromaPoolStore, PoolStore

__all__ = [
    "ChromaPoolStore",
    "PoolBuildReport",
    "PoolBuilder",
    "PoolBulkReport",
    "PoolStats",
    "PoolStore",
    "PoolWeights",
    "score_catalog_item",
]
