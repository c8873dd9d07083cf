"""Token counting and context truncation."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Sequence

import tiktoken

LOGGER = logging.getLogger(__name__)

_MIN_TRUNCATED_TOKENS = 50


@dataclass(frozen=True)
class FittedSection:
    text: str
    truncated: bool = False


class TokenCounter:
    """tiktoken-based counter; estimates one token per four characters when
    the encoding cannot be loaded."""

    def __init__(self, model: str = "gpt-4o-mini") -> None:
        self._model = model
        self._encoding: tiktoken.Encoding | None = None
        self._loaded = False
        self._lock = threading.Lock()

    def _get_encoding(self) -> tiktoken.Encoding | None:
        if self._loaded:
            return self._encoding
        with self._lock:
            if self._loaded:
                return self._encoding
            try:
                try:
                    self._encoding = tiktoken.encoding_for_model(self._model)
                except KeyError:
                    self._encoding = tiktoken.get_encoding("cl100k_base")
            except Exception as exc:  # pragma: no cover - offline encoding download
                LOGGER.warning("Falling back to character token estimate: %s", exc)
                self._encoding = None
            self._loaded = True
        return self._encoding

    def count(self, text: str) -> int:
        if not text:
            return 0
        encoding = self._get_encoding()
        if encoding is None:
            return math.ceil(len(text) / 4)
        return len(encoding.encode(text))

    def truncate(self, text: str, max_tokens: int) -> str:
        if not text or max_tokens <= 0:
            return ""
        encoding = self._get_encoding()
        if encoding is None:
            return text[: max_tokens * 4]
        tokens = encoding.encode(text)
        if len(tokens) <= max_tokens:
            return text
        return encoding.decode(tokens[:max_tokens])

    def fit(self, texts: Sequence[str], max_total_tokens: int, reserved_tokens: int = 0) -> list[FittedSection]:
        """Keep ``texts`` in order until the budget runs out.

        The first text that does not fit is truncated when enough room is left;
        everything after it is dropped.
        """

        available = max_total_tokens - reserved_tokens
        used = 0
        fitted: list[FittedSection] = []
        for text in texts:
            tokens = self.count(text)
            if used + tokens <= available:
                fitted.append(FittedSection(text=text))
                used += tokens
                continue
            remaining = available - used
            if remaining > _MIN_TRUNCATED_TOKENS:
                fitted.append(FittedSection(text=self.truncate(text, remaining), truncated=True))
            break
        return fitted


__all__ = ["FittedSection", "TokenCounter"]
