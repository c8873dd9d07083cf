from __future__ import annotations

import threading

import pytest

from conftest import answer_json
from replyrag.errors import DependencyError, ValidationError
from replyrag.services.answer import AnswerComposer, AnswerConfig, ContextBuilder
from replyrag.services.batch import BatchOrchestrator, BatchQuery


@pytest.fixture()
def make_batch(seeded, retriever, reranker, catalog, jobs):
    def factory(backend, **kwargs) -> BatchOrchestrator:
        config = AnswerConfig(min_score=0.0)
        builder = ContextBuilder(retriever, reranker, catalog, jobs=jobs, config=config)
        return BatchOrchestrator(AnswerComposer(builder, backend, config=config), **kwargs)

    return factory


def queries(*texts: str) -> list[BatchQuery]:
    return [BatchQuery(query_id=f"q{index}", text=text) for index, text in enumerate(texts, start=1)]


def test_failing_query_does_not_affect_siblings(make_batch, scripted):
    def respond(messages):
        if "third" in messages[-1]["content"]:
            return DependencyError("gateway down")
        return answer_json(f"re: {messages[-1]['content']}")

    backend = scripted([respond])
    batch = make_batch(backend, max_workers=3)

    result = batch.answer_batch("V1", queries("first", "second", "third", "fourth", "fifth"))

    assert [answer.query_id for answer in result.answers] == ["q1", "q2", "q4", "q5"]
    assert [answer.reply_text for answer in result.answers] == ["re: first", "re: second", "re: fourth", "re: fifth"]
    assert len(result.errors) == 1
    assert result.errors[0].query_id == "q3"
    assert result.errors[0].kind == "dependency"
    assert result.usage.total_tokens == 4 * 120
    assert len(backend.calls) == 5


def test_blank_query_is_reported_per_query(make_batch, scripted):
    batch = make_batch(scripted([answer_json("ok")]))

    result = batch.answer_batch("V1", queries("ASUS notebook", "   "))

    assert [answer.query_id for answer in result.answers] == ["q1"]
    assert [(error.query_id, error.kind) for error in result.errors] == [("q2", "validation")]


def test_unexpected_errors_become_internal_batch_errors(make_batch, scripted):
    batch = make_batch(scripted([RuntimeError("boom")]))

    result = batch.answer_batch("V1", queries("ASUS notebook"))

    assert result.answers == ()
    assert result.errors[0].kind == "internal"
    assert result.errors[0].message == "boom"


@pytest.mark.parametrize(
    "content_item_id, batch_queries",
    [
        ("", queries("hi")),
        ("V1", []),
        ("V1", [BatchQuery("q1", "a"), BatchQuery("q1", "b")]),
        ("V1", [BatchQuery("", "a")]),
        ("V1", queries("  ", "")),
    ],
)
def test_batch_level_validation(make_batch, scripted, content_item_id, batch_queries):
    batch = make_batch(scripted([answer_json("ok")]))

    with pytest.raises(ValidationError):
        batch.answer_batch(content_item_id, batch_queries)


def test_batch_size_is_capped(make_batch, scripted):
    batch = make_batch(scripted([answer_json("ok")]), max_queries=2)

    with pytest.raises(ValidationError):
        batch.answer_batch("V1", queries("a", "b", "c"))


def test_cancelled_batch_discards_every_answer(make_batch, scripted):
    cancel = threading.Event()

    def respond(messages):
        cancel.set()
        return answer_json("late")

    batch = make_batch(scripted([respond]), max_workers=1)

    result = batch.answer_batch("V1", queries("one", "two", "three"), cancel_event=cancel)

    assert result.answers == ()
    assert [error.kind for error in result.errors] == ["cancelled"] * 3


def test_context_is_built_once_per_batch(make_batch, scripted, monkeypatch):
    batch = make_batch(scripted([answer_json("ok")]))
    builder = batch._composer.context_builder
    calls = []
    original = builder.build

    def counting_build(*args, **kwargs):
        calls.append(args)
        return original(*args, **kwargs)

    monkeypatch.setattr(builder, "build", counting_build)

    result = batch.answer_batch("V1", queries("ASUS notebook", "Zenbook screen"))

    assert len(result.answers) == 2
    assert len(calls) == 1
    assert calls[0][0] == "ASUS notebook Zenbook screen"
