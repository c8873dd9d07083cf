from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from replyrag.api.app import create_app

TRANSCRIPT = {
    "text": "Today we review ASUS notebooks for students. The Vivobook 15 is light and cheap.",
    "title": "Best ASUS notebooks",
}


@pytest.fixture()
def client(settings, engine) -> TestClient:
    return TestClient(create_app(settings=settings, engine=engine))


@pytest.fixture()
def indexed(client, catalog_payloads) -> TestClient:
    assert client.post("/content-items/V1/index", json=TRANSCRIPT).status_code == 200
    assert client.post("/documents/catalog", json={"items": catalog_payloads}).status_code == 201
    return client


def test_health_and_liveness(client):
    health = client.get("/healthz")

    assert health.status_code == 200
    assert health.json()["data"]["status"] == "ok"
    assert health.json()["data"]["environment"] == "test"
    assert health.headers["X-Correlation-ID"]
    assert client.get("/livez").json() == {"status": "alive"}


def test_correlation_id_is_echoed(client):
    response = client.get("/stats", headers={"X-Request-ID": "req-42"})

    assert response.headers["X-Correlation-ID"] == "req-42"
    assert response.json()["correlation_id"] == "req-42"


def test_metrics_endpoint(indexed):
    response = indexed.get("/metrics")

    assert response.status_code == 200
    assert "replyrag_" in response.text


def test_ingest_conflict_and_delete(client, catalog_payloads):
    single = {"payload": catalog_payloads[0]}

    assert client.post("/documents/catalog", json=single).status_code == 201
    conflict = client.post("/documents/catalog", json=single)
    assert conflict.status_code == 409
    assert conflict.json()["error"]["kind"] == "conflict"
    assert client.post("/documents/catalog", json={**single, "overwrite": True}).status_code == 201

    assert client.delete("/documents/catalog/P1").status_code == 200
    assert client.delete("/documents/catalog/P1").status_code == 404


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"payload": {"item_id": "P1"}, "items": [{"item_id": "P2"}]},
        {"items": []},
    ],
)
def test_malformed_requests_map_to_400(client, body):
    response = client.post("/documents/catalog", json=body)

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["error"]["kind"] == "validation"


def test_unknown_source_type_is_rejected(client):
    response = client.post("/documents/video", json={"payload": {"id": "x"}})

    assert response.status_code == 400


def test_answer_before_indexing_is_not_ready(client):
    response = client.post("/answer", json={"query": "hello", "content_item_id": "V1"})

    assert response.status_code == 503
    assert response.json()["error"]["kind"] == "not_ready"


def test_status_retrieve_and_answer(indexed):
    status = indexed.get("/content-items/V1/status")
    retrieved = indexed.post("/retrieve", json={"query": "ASUS notebook", "source_type": "catalog", "top_k": 3})
    answer = indexed.post(
        "/answer",
        json={"query": "ASUS notebook งบ 20000", "content_item_id": "V1", "query_id": "q-9", "temperature": 0.2},
    )

    assert status.json()["data"]["status"] == "ready"
    assert retrieved.status_code == 200
    assert 0 < len(retrieved.json()["data"]) <= 3
    assert answer.status_code == 200
    body = answer.json()["data"]
    assert body["query_id"] == "q-9"
    candidate_urls = {candidate["item_id"]: candidate["url"] for candidate in body["candidates"]}
    assert all(candidate_urls[product["id"]] == product["url"] for product in body["products"])


def test_answer_temperature_out_of_range(indexed):
    response = indexed.post("/answer", json={"query": "hi", "content_item_id": "V1", "temperature": 5})

    assert response.status_code == 400


def test_batch_answer(indexed):
    response = indexed.post(
        "/answer/batch",
        json={
            "content_item_id": "V1",
            "queries": [{"query_id": "a", "text": "ASUS notebook"}, {"query_id": "b", "text": "Zenbook screen"}],
        },
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert [answer["query_id"] for answer in data["answers"]] == ["a", "b"]
    assert data["errors"] == []
    duplicate = indexed.post(
        "/answer/batch",
        json={"content_item_id": "V1", "queries": [{"query_id": "a", "text": "x"}, {"query_id": "a", "text": "y"}]},
    )
    assert duplicate.status_code == 400


def test_pool_routes(client):
    built = client.post("/pools/V1", json={"max_pool_size": 5})
    everything = client.post("/pools")
    stats = client.get("/pools/V1", params={"top_k": 1})

    assert built.status_code == 200
    assert built.json()["data"]["pool_size"] == 2
    assert everything.json()["data"]["built"] == 2
    assert stats.json()["data"]["stats"]["size"] == 2
    assert len(stats.json()["data"]["entries"]) == 1
    assert client.get("/pools/unknown").status_code == 404


def test_api_key_is_enforced_when_configured(settings, engine):
    secured = TestClient(create_app(settings=settings.model_copy(update={"api_key": "s3cret"}), engine=engine))

    assert secured.post("/retrieve", json={"query": "ASUS"}).status_code == 401
    assert secured.post("/retrieve", json={"query": "ASUS"}, headers={"X-API-Key": "s3cret"}).status_code == 200
    assert secured.get("/stats").status_code == 200
