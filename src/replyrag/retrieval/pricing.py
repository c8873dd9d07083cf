"""Budget detection and price-aware re-ranking of catalog candidates."""

from __future__ import annotations

import math
import re
from typing import Protocol, Sequence

from replyrag.errors import ValidationError
from replyrag.metrics.observability import get_logger
from replyrag.models import CatalogMeta, PriceBand, RetrievalResult

_NUMBER = r"(\d[\d,]*(?:\.\d+)?)"
# Model numbers such as "i5-12400" must not read as prices.
_NOT_AFTER_ALNUM = r"(?<![A-Za-z0-9.,])"

_RANGE_RE = re.compile(
    _NOT_AFTER_ALNUM + _NUMBER + r"\s*([kK])?\s*(?:-|to|ถึง)\s*" + _NUMBER + r"\s*([kK])?(?![A-Za-z0-9])",
    re.IGNORECASE,
)
_KEYWORD_RE = re.compile(
    r"(?:งบ(?:ประมาณ)?|ราคา|ไม่เกิน|ประมาณ|budget|price|under|around)\s*[:=]?\s*(?:฿|\$)?\s*"
    + _NUMBER
    + r"\s*([kK])?(?![A-Za-z0-9])",
    re.IGNORECASE,
)
_CURRENCY_RE = re.compile(
    _NOT_AFTER_ALNUM + _NUMBER + r"\s*([kK])?\s*(?:บาท|baht|฿)"
    + r"|(?:฿|\$)\s*" + _NUMBER + r"\s*([kK])?(?![A-Za-z0-9])",
    re.IGNORECASE,
)
# "40k" on its own; "i7-13700K" is a model, hence no dash before.
_SUFFIXED_RE = re.compile(r"(?<![A-Za-z0-9.,\-])" + _NUMBER + r"\s*([kK])(?![A-Za-z0-9])")
_BUDGET_CONTEXT_RE = re.compile(r"งบ|ราคา|ไม่เกิน|budget|price|under|around|บาท|baht|฿|\$", re.IGNORECASE)
# Token right before a figure that marks it as a model number: "RTX", "GTX", "i7", "M2".
_MODEL_TOKEN_RE = re.compile(r"(?<![A-Za-z0-9])(?:[A-Z]{2,}[A-Za-z0-9]*|[A-Za-z]+\d[A-Za-z0-9]*)\s*$")


def _figure(raw: str, suffix: str | None) -> float | None:
    try:
        value = float(raw.replace(",", ""))
    except ValueError:
        return None
    if suffix:
        value *= 1000
    return value


class BudgetExtractor(Protocol):
    """Strategy turning free text into an implied price band."""

    def extract_budget(self, text: str) -> PriceBand | None:
        """Return the budget band mentioned in ``text`` or None."""


class PatternBudgetExtractor:
    """Regex rules for Thai/English budget phrases.

    Rules are tried in order: explicit range, suffixed range, keyword plus
    figure, figure plus currency, bare ``k`` figure. Single figures are
    widened to a band of +-``tolerance``. Figures under ``min_price`` are
    ignored, and a plain range right after a model token ("RTX 4060-4070")
    only counts when the text carries budget wording.
    """

    def __init__(self, *, tolerance: float = 0.2, min_price: float = 100.0) -> None:
        if not 0.0 <= tolerance < 1.0:
            raise ValidationError("budget tolerance must be within [0, 1)")
        self._tolerance = tolerance
        self._min_price = min_price

    def extract_budget(self, text: str) -> PriceBand | None:
        if not text:
            return None
        return self._range(text) or self._single(text)

    def _range(self, text: str) -> PriceBand | None:
        has_context = _BUDGET_CONTEXT_RE.search(text) is not None
        for match in _RANGE_RE.finditer(text):
            low_raw, low_suffix, high_raw, high_suffix = match.groups()
            if not (low_suffix or high_suffix or has_context) and _MODEL_TOKEN_RE.search(text[: match.start()]):
                continue
            if high_suffix and not low_suffix:
                # "15-20k" shares the suffix
                low_suffix = high_suffix
            low = _figure(low_raw, low_suffix)
            high = _figure(high_raw, high_suffix)
            if low is None or high is None:
                continue
            low, high = min(low, high), max(low, high)
            if low < self._min_price:
                continue
            return PriceBand(low=low, high=high)
        return None

    def _single(self, text: str) -> PriceBand | None:
        for pattern in (_KEYWORD_RE, _CURRENCY_RE, _SUFFIXED_RE):
            for match in pattern.finditer(text):
                groups = [group for group in match.groups()]
                pairs = [(groups[index], groups[index + 1]) for index in range(0, len(groups), 2)]
                for raw, suffix in pairs:
                    if raw is None:
                        continue
                    value = _figure(raw, suffix)
                    if value is not None and value >= self._min_price:
                        return self._band(value)
        return None

    def _band(self, value: float) -> PriceBand:
        return PriceBand(
            low=round(value * (1 - self._tolerance), 2),
            high=round(value * (1 + self._tolerance), 2),
        )


def price_closeness(price: float | None, band: PriceBand) -> float:
    """1 inside the band, decaying linearly to 0 one band-midpoint away."""

    if price is None or price <= 0:
        return 0.0
    if band.contains(price):
        return 1.0
    distance = band.low - price if price < band.low else price - band.high
    scale = band.midpoint or 1.0
    return max(0.0, 1.0 - distance / scale)


def candidate_price(result: RetrievalResult) -> float | None:
    if isinstance(result.meta, CatalogMeta):
        return result.meta.price
    return None


class PriceAwareReranker:
    """Blends semantic score with closeness to the budget found in the query."""

    _logger = get_logger("retrieval.pricing")

    def __init__(
        self,
        extractor: BudgetExtractor | None = None,
        *,
        semantic_weight: float = 0.6,
        price_weight: float = 0.4,
    ) -> None:
        self._extractor = extractor or PatternBudgetExtractor()
        self._check_weights(semantic_weight, price_weight)
        self._semantic_weight = semantic_weight
        self._price_weight = price_weight

    @staticmethod
    def _check_weights(semantic_weight: float, price_weight: float) -> None:
        if semantic_weight < 0 or price_weight < 0:
            raise ValidationError("re-rank weights must not be negative")
        if not math.isclose(semantic_weight + price_weight, 1.0, abs_tol=1e-9):
            raise ValidationError("semantic_weight + price_weight must equal 1.0")

    def extract_budget(self, query: str) -> PriceBand | None:
        return self._extractor.extract_budget(query)

    def rerank(
        self,
        query: str,
        candidates: Sequence[RetrievalResult],
        *,
        semantic_weight: float | None = None,
        price_weight: float | None = None,
    ) -> list[RetrievalResult]:
        semantic_weight = self._semantic_weight if semantic_weight is None else semantic_weight
        price_weight = self._price_weight if price_weight is None else price_weight
        self._check_weights(semantic_weight, price_weight)
        band = self._extractor.extract_budget(query)
        if band is None:
            return list(candidates)
        rescored = []
        for candidate in candidates:
            price = candidate_price(candidate)
            if price is None or price <= 0:
                rescored.append(candidate.rescored(candidate.score, original_score=candidate.score, price_missing=1.0))
                continue
            closeness = price_closeness(price, band)
            rescored.append(
                candidate.rescored(
                    semantic_weight * candidate.score + price_weight * closeness,
                    original_score=candidate.score,
                    price_closeness=closeness,
                ),
            )
        rescored.sort(key=lambda result: -result.score)
        self._logger.info(
            "rerank.complete",
            budget_low=band.low,
            budget_high=band.high,
            candidate_count=len(rescored),
        )
        return rescored


__all__ = [
    "BudgetExtractor",
    "PatternBudgetExtractor",
    "PriceAwareReranker",
    "candidate_price",
    "price_closeness",
]
