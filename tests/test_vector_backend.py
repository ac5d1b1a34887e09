"""Tests for the Qdrant REST client."""

import json

import httpx
import pytest

from recall.errors import ConfigurationError, RemoteBackendError
from recall.vector_backend import QdrantBackend, point_id


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, responses=None):
        self.requests: list[httpx.Request] = []
        self.responses = responses or {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        response = self.responses.get(key, httpx.Response(200, json={"result": True}))
        if isinstance(response, Exception):
            raise response
        return response

    def body(self, index=-1):
        return json.loads(self.requests[index].content)


def _backend(recorder, **kwargs):
    return QdrantBackend("http://localhost:6333", transport=httpx.MockTransport(recorder), **kwargs)


class TestHTTPSEnforcement:

    def test_allows_https_with_key(self):
        QdrantBackend("https://qdrant.example.com", api_key="k").close()

    def test_allows_localhost_with_key(self):
        QdrantBackend("http://localhost:6333", api_key="k").close()
        QdrantBackend("http://127.0.0.1:6333", api_key="k").close()

    def test_rejects_plain_http_with_key(self):
        with pytest.raises(ConfigurationError, match="HTTPS"):
            QdrantBackend("http://qdrant.example.com", api_key="k")

    def test_plain_http_without_key(self):
        QdrantBackend("http://qdrant.internal:6333").close()

    def test_api_key_header(self):
        rec = Recorder()
        with _backend(rec, api_key="secret") as backend:
            backend.upsert("c", [{"id": "r1", "vector": [0.1]}])
        assert rec.requests[0].headers["api-key"] == "secret"


class TestCollections:

    def test_existing_collection_not_recreated(self):
        rec = Recorder({("GET", "/collections/mem"): httpx.Response(200, json={"result": {}})})
        with _backend(rec) as backend:
            backend.ensure_collection("mem", 384)
        assert [r.method for r in rec.requests] == ["GET"]

    def test_missing_collection_created(self):
        rec = Recorder({("GET", "/collections/mem"): httpx.Response(404, json={})})
        with _backend(rec) as backend:
            backend.ensure_collection("mem", 384)
        assert [r.method for r in rec.requests] == ["GET", "PUT"]
        assert rec.body() == {"vectors": {"size": 384, "distance": "Cosine"}}

    def test_unreachable_is_retryable(self):
        rec = Recorder({("GET", "/collections/mem"): httpx.ConnectError("refused")})
        with _backend(rec) as backend:
            with pytest.raises(RemoteBackendError) as exc_info:
                backend.ensure_collection("mem", 384)
        assert exc_info.value.retryable
        assert exc_info.value.context["operation"] == "connect"

    def test_unexpected_status(self):
        rec = Recorder({("GET", "/collections/mem"): httpx.Response(403, text="forbidden")})
        with _backend(rec) as backend:
            with pytest.raises(RemoteBackendError) as exc_info:
                backend.ensure_collection("mem", 384)
        assert exc_info.value.retryable is False
        assert exc_info.value.context["status_code"] == 403


class TestPoints:

    def test_upsert_maps_ids(self):
        rec = Recorder()
        with _backend(rec) as backend:
            backend.upsert("mem", [{"id": "tx-abc", "vector": [0.1, 0.2], "payload": {"category": "x"}}])

        request = rec.requests[0]
        assert request.method == "PUT"
        assert request.url.path == "/collections/mem/points"
        assert request.url.params["wait"] == "true"
        point = rec.body()["points"][0]
        assert point["id"] == point_id("tx-abc")
        assert point["payload"] == {"category": "x", "record_id": "tx-abc"}

    def test_upsert_empty_is_noop(self):
        rec = Recorder()
        with _backend(rec) as backend:
            backend.upsert("mem", [])
        assert rec.requests == []

    def test_point_id_stable(self):
        assert point_id("a") == point_id("a")
        assert point_id("a") != point_id("b")

    def test_search_returns_record_ids(self):
        rec = Recorder({("POST", "/collections/mem/points/search"): httpx.Response(200, json={
            "result": [
                {"id": point_id("r1"), "score": 0.93, "payload": {"record_id": "r1"}},
                {"id": point_id("r2"), "score": 0.81, "payload": {"record_id": "r2"}},
            ]
        })})
        with _backend(rec) as backend:
            hits = backend.search("mem", [0.1, 0.2], 5, 0.7)

        assert [(h.id, h.score) for h in hits] == [("r1", 0.93), ("r2", 0.81)]
        assert rec.body() == {"vector": [0.1, 0.2], "limit": 5, "with_payload": True, "score_threshold": 0.7}

    def test_search_malformed_response(self):
        rec = Recorder({("POST", "/collections/mem/points/search"): httpx.Response(200, json={"status": "ok"})})
        with _backend(rec) as backend:
            with pytest.raises(RemoteBackendError) as exc_info:
                backend.search("mem", [0.1], 5)
        assert exc_info.value.retryable is False

    def test_server_error_is_retryable(self):
        rec = Recorder({("POST", "/collections/mem/points/search"): httpx.Response(503, text="busy")})
        with _backend(rec) as backend:
            with pytest.raises(RemoteBackendError) as exc_info:
                backend.search("mem", [0.1], 5)
        assert exc_info.value.retryable
        assert exc_info.value.context["status_code"] == 503

    def test_client_error_not_retryable(self):
        rec = Recorder({("PUT", "/collections/mem/points"): httpx.Response(400, text="bad vector")})
        with _backend(rec) as backend:
            with pytest.raises(RemoteBackendError) as exc_info:
                backend.upsert("mem", [{"id": "r1", "vector": [0.1]}])
        assert exc_info.value.retryable is False
        assert exc_info.value.context["response"] == "bad vector"

    def test_timeout_is_retryable(self):
        rec = Recorder({("PUT", "/collections/mem/points"): httpx.ReadTimeout("slow")})
        with _backend(rec) as backend:
            with pytest.raises(RemoteBackendError) as exc_info:
                backend.upsert("mem", [{"id": "r1", "vector": [0.1]}])
        assert exc_info.value.retryable

    def test_delete(self):
        rec = Recorder()
        with _backend(rec) as backend:
            backend.delete("mem", ["r1", "r2"])
        assert rec.requests[0].url.path == "/collections/mem/points/delete"
        assert rec.body() == {"points": [point_id("r1"), point_id("r2")]}

    def test_health(self):
        rec = Recorder({("GET", "/"): httpx.Response(200, json={"title": "qdrant"})})
        with _backend(rec) as backend:
            assert backend.health() is True

        down = Recorder({("GET", "/"): httpx.ConnectError("refused")})
        with _backend(down) as backend:
            assert backend.health() is False
