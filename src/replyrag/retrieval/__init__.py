"""Retrieval components."""

from .pricing import BudgetExtractor, PatternBudgetExtractor, PriceAwareReranker, price_closeness
from .service import HybridRetriever, RetrievalConfig, Retriever

__all__ = [
    "BudgetExtractor",
    "HybridRetriever",
    "PatternBudgetExtractor",
    "PriceAwareReranker",
    "RetrievalConfig",
    "Retriever",
    "price_closeness",
]
