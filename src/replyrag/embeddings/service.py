"""Embedding gateway backends for replyrag."""

from __future__ import annotations

import hashlib
import logging
import math
import re
import threading
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence, Tuple, TypeVar

import openai
from openai import OpenAI
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from replyrag.errors import DependencyError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

# Thai combining marks are not \w, so the Thai block is matched explicitly.
_TERM_RE = re.compile(r"[\w\u0e00-\u0e7f]+")


def word_terms(text: str) -> list[str]:
    """Casefolded word terms used for lexical matching and feature hashing."""

    return _TERM_RE.findall(text.casefold())


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends."""

    model: str = "text-embedding-3-small"
    dim: int = 1536
    batch_size: int = 64
    normalize: bool = True


@dataclass(frozen=True)
class GatewayPolicy:
    """Timeout, retry and concurrency limits for outbound model calls."""

    timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_min_seconds: float = 1.0
    backoff_max_seconds: float = 20.0
    max_concurrency: int = 4


def is_transient(exc: BaseException) -> bool:
    """Timeouts, connection errors, rate limits and 5xx are worth retrying."""

    return isinstance(
        exc,
        (
            openai.APITimeoutError,
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.InternalServerError,
        ),
    )


def _log_retry(retry_state: RetryCallState) -> None:
    LOGGER.warning(
        "Gateway retry %d after error: %s",
        retry_state.attempt_number,
        retry_state.outcome.exception() if retry_state.outcome else "unknown",
    )


class GatewayCaller:
    """Runs gateway calls under a shared semaphore with bounded retries."""

    def __init__(self, policy: GatewayPolicy | None = None, *, name: str = "gateway") -> None:
        self.policy = policy or GatewayPolicy()
        self._name = name
        self._semaphore = threading.BoundedSemaphore(max(self.policy.max_concurrency, 1))

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(max(self.policy.max_attempts, 1)),
            wait=wait_exponential(
                multiplier=1,
                min=self.policy.backoff_min_seconds,
                max=self.policy.backoff_max_seconds,
            ),
            retry=retry_if_exception(is_transient),
            before_sleep=_log_retry,
            reraise=True,
        )

    def _guarded(self, fn: Callable[[], T]) -> T:
        with self._semaphore:
            return fn()

    def call(self, fn: Callable[[], T]) -> T:
        try:
            return self._retrying()(self._guarded, fn)
        except openai.OpenAIError as exc:
            transient = is_transient(exc)
            LOGGER.error("%s call failed (transient=%s): %s", self._name, transient, exc)
            raise DependencyError(f"{self._name} unavailable: {exc}", retryable=transient) from exc


def build_openai_client(
    api_key: str | None,
    *,
    base_url: str | None = None,
    policy: GatewayPolicy | None = None,
) -> OpenAI:
    if not api_key:
        raise DependencyError("OpenAI API key is not configured", retryable=False)
    policy = policy or GatewayPolicy()
    # SDK retries are disabled; GatewayCaller owns the retry budget.
    return OpenAI(api_key=api_key, base_url=base_url, timeout=policy.timeout_seconds, max_retries=0)


class EmbeddingBackend(Protocol):
    """Protocol describing embedding behaviour."""

    @property
    def dim(self) -> int:
        """Dimension of produced vectors."""

    def embed_texts(self, texts: Sequence[str]) -> list[Tuple[float, ...]]:
        """Return one vector per input text, in order."""

    def embed_query(self, text: str) -> Tuple[float, ...]:
        """Return embedding vector for a query string."""


def _normalize(vector: Sequence[float]) -> Tuple[float, ...]:
    norm = math.sqrt(sum(value * value for value in vector)) or 1.0
    return tuple(value / norm for value in vector)


class HashEmbeddingBackend:
    """Deterministic feature-hashing embeddings used for tests and offline runs.

    Each casefolded word token is hashed into a bucket, so texts sharing words
    land near each other. Text without word tokens falls back to a digest
    vector.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig(model="hash", dim=256)

    @property
    def dim(self) -> int:
        return self._config.dim

    def _digest_vector(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._config.dim + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._config.dim]
        return [byte / 255.0 + 1e-3 for byte in raw]

    def _hash_to_vector(self, text: str) -> Tuple[float, ...]:
        tokens = word_terms(text)
        if not tokens:
            vector = self._digest_vector(text)
        else:
            vector = [0.0] * self._config.dim
            for token in tokens:
                digest = hashlib.sha256(token.encode("utf-8")).digest()
                vector[int.from_bytes(digest[:4], "big") % self._config.dim] += 1.0
        if self._config.normalize:
            return _normalize(vector)
        return tuple(vector)

    def embed_texts(self, texts: Sequence[str]) -> list[Tuple[float, ...]]:
        return [self._hash_to_vector(text) for text in texts]

    def embed_query(self, text: str) -> Tuple[float, ...]:
        return self._hash_to_vector(text)


class OpenAIEmbeddingBackend:
    """Hosted embeddings through the OpenAI API, batched and rate limited."""

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        client: OpenAI | None = None,
        caller: GatewayCaller | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> None:
        self._config = config or EmbeddingConfig()
        self._caller = caller or GatewayCaller(name="embedding")
        self._client = client or build_openai_client(api_key, base_url=base_url, policy=self._caller.policy)

    @property
    def dim(self) -> int:
        return self._config.dim

    def _embed_batch(self, texts: list[str]) -> list[Tuple[float, ...]]:
        def create() -> list[Tuple[float, ...]]:
            response = self._client.embeddings.create(
                model=self._config.model,
                input=texts,
                dimensions=self._config.dim,
            )
            ordered = sorted(response.data, key=lambda item: item.index)
            return [tuple(item.embedding) for item in ordered]

        vectors = self._caller.call(create)
        if len(vectors) != len(texts):
            LOGGER.error("Embedding backend returned %d vectors for %d texts", len(vectors), len(texts))
            raise DependencyError("Mismatch between number of texts and embedding vectors", retryable=False)
        if vectors and len(vectors[0]) != self._config.dim:
            LOGGER.warning(
                "Embedding dim mismatch: configured=%d, actual=%d",
                self._config.dim,
                len(vectors[0]),
            )
        if self._config.normalize:
            return [_normalize(vector) for vector in vectors]
        return vectors

    def embed_texts(self, texts: Sequence[str]) -> list[Tuple[float, ...]]:
        if not texts:
            return []
        size = max(self._config.batch_size, 1)
        vectors: list[Tuple[float, ...]] = []
        for start in range(0, len(texts), size):
            vectors.extend(self._embed_batch(list(texts[start : start + size])))
        return vectors

    def embed_query(self, text: str) -> Tuple[float, ...]:
        return self._embed_batch([text])[0]


__all__ = [
    "EmbeddingBackend",
    "EmbeddingConfig",
    "GatewayCaller",
    "GatewayPolicy",
    "HashEmbeddingBackend",
    "OpenAIEmbeddingBackend",
    "build_openai_client",
    "word_terms",
    "is_transient",
]
