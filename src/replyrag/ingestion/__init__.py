"""Source ingestion pipeline."""

from .jobs import IndexJobTracker
from .service import (
    BulkIngestionReport,
    IngestionConfig,
    IngestionFailure,
    IngestionPipeline,
    IngestionReport,
    SourceChunker,
    SourceIngestor,
    normalize_text,
)

__all__ = [
    "BulkIngestionReport",
    "IndexJobTracker",
    "IngestionConfig",
    "IngestionFailure",
    "IngestionPipeline",
    "IngestionReport",
    "SourceChunker",
    "SourceIngestor",
    "normalize_text",
]
