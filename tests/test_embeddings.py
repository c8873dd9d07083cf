from __future__ import annotations

import math
import threading
import time
from types import SimpleNamespace

import httpx
import openai
import pytest

from replyrag.embeddings.service import (
    EmbeddingConfig,
    GatewayCaller,
    GatewayPolicy,
    HashEmbeddingBackend,
    OpenAIEmbeddingBackend,
    word_terms,
)
from replyrag.errors import DependencyError

FAST_POLICY = GatewayPolicy(max_attempts=3, backoff_min_seconds=0, backoff_max_seconds=0)


def _connection_error() -> openai.APIConnectionError:
    return openai.APIConnectionError(request=httpx.Request("POST", "https://gateway.invalid/v1/embeddings"))


def _bad_request() -> openai.BadRequestError:
    request = httpx.Request("POST", "https://gateway.invalid/v1/embeddings")
    return openai.BadRequestError("bad input", response=httpx.Response(400, request=request), body=None)


def test_hash_embedding_dim_matches_config():
    backend = HashEmbeddingBackend(EmbeddingConfig(model="hash", dim=64))
    vec = backend.embed_query("hello world")
    assert isinstance(vec, tuple)
    assert len(vec) == 64
    assert math.isclose(sum(value * value for value in vec), 1.0, rel_tol=1e-9)


def test_hash_embedding_is_deterministic_and_word_based():
    backend = HashEmbeddingBackend()
    first, second = backend.embed_texts(["ASUS notebook", "ASUS notebook"])
    assert first == second
    same_words = backend.embed_query("notebook ASUS")
    assert same_words == first


def test_word_terms_keep_thai_words_whole():
    assert word_terms("แนะนำโน้ตบุ๊ก ASUS งบ 20000") == ["แนะนำโน้ตบุ๊ก", "asus", "งบ", "20000"]


def test_gateway_retries_transient_errors_then_succeeds():
    attempts = []

    def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise _connection_error()
        return "ok"

    assert GatewayCaller(FAST_POLICY).call(flaky) == "ok"
    assert len(attempts) == 3


def test_gateway_surfaces_dependency_error_after_bounded_retries():
    attempts = []

    def always_down() -> str:
        attempts.append(1)
        raise _connection_error()

    with pytest.raises(DependencyError) as info:
        GatewayCaller(FAST_POLICY).call(always_down)
    assert info.value.retryable
    assert len(attempts) == FAST_POLICY.max_attempts


def test_gateway_does_not_retry_client_errors():
    attempts = []

    def rejected() -> str:
        attempts.append(1)
        raise _bad_request()

    with pytest.raises(DependencyError) as info:
        GatewayCaller(FAST_POLICY).call(rejected)
    assert not info.value.retryable
    assert len(attempts) == 1


def test_gateway_caps_in_flight_calls():
    caller = GatewayCaller(GatewayPolicy(max_attempts=1, max_concurrency=2))
    lock = threading.Lock()
    in_flight = 0
    peak = 0

    def slow() -> None:
        nonlocal in_flight, peak
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
        time.sleep(0.05)
        with lock:
            in_flight -= 1

    threads = [threading.Thread(target=caller.call, args=(slow,)) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert 0 < peak <= 2


class FakeEmbeddings:
    def __init__(self, dim: int) -> None:
        self.dim = dim
        self.batches: list[list[str]] = []

    def create(self, *, model, input, dimensions):
        self.batches.append(list(input))
        # Out of order on purpose; the backend sorts by index.
        data = [
            SimpleNamespace(index=index, embedding=[float(index + 1)] + [0.0] * (self.dim - 1))
            for index in range(len(input))
        ]
        return SimpleNamespace(data=list(reversed(data)))


def test_openai_backend_batches_and_orders_vectors():
    fake = FakeEmbeddings(dim=4)
    backend = OpenAIEmbeddingBackend(
        EmbeddingConfig(model="text-embedding-3-small", dim=4, batch_size=2, normalize=False),
        client=SimpleNamespace(embeddings=fake),
        caller=GatewayCaller(FAST_POLICY),
    )
    vectors = backend.embed_texts(["a", "b", "c"])
    assert fake.batches == [["a", "b"], ["c"]]
    assert [vector[0] for vector in vectors] == [1.0, 2.0, 1.0]


def test_openai_backend_requires_api_key():
    with pytest.raises(DependencyError):
        OpenAIEmbeddingBackend(EmbeddingConfig(), api_key=None)
