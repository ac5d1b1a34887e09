"""
HTTP client for a Qdrant vector database.

Speaks the Qdrant REST API directly with httpx. Used by RetrievalEngine
when a remote URL is configured; its absence or failure only downgrades
the engine to local search.

Qdrant point ids must be unsigned integers or UUIDs, so record ids are
mapped to UUIDv5 values and the original id travels in the payload as
``record_id``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

from .errors import ConfigurationError, RemoteBackendError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

# Namespace for record id -> point id mapping
POINT_NAMESPACE = uuid.UUID("6f1c2f4e-9a59-5b3e-8d0a-2a7c5e1b9d43")

_LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


def point_id(record_id: str) -> str:
    """Stable Qdrant point id for a record id."""
    return str(uuid.uuid5(POINT_NAMESPACE, record_id))


@dataclass
class VectorHit:
    """One vector search result."""
    id: str
    score: float
    payload: dict[str, Any] = field(default_factory=dict)


class QdrantBackend:
    """Minimal Qdrant REST client: collections, upsert, search, delete."""

    def __init__(
        self,
        url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._url = url.rstrip("/")

        # Refuse to send an API key in cleartext to anything but localhost
        if api_key and not self._url.startswith("https://"):
            host = urlparse(self._url).hostname or ""
            if host not in _LOCAL_HOSTS:
                raise ConfigurationError.invalid_config(
                    "remote.url", self._url,
                    "must use HTTPS when an API key is configured (or use localhost)",
                )

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["api-key"] = api_key

        self._client = httpx.Client(
            base_url=self._url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def url(self) -> str:
        return self._url

    def _request(self, method: str, path: str, *, error: RemoteBackendError,
                 **kwargs) -> httpx.Response:
        """
        Send a request, converting failures to RemoteBackendError.

        4xx responses are rejections and not retryable; 5xx, timeouts and
        connection errors are.
        """
        try:
            resp = self._client.request(method, path, **kwargs)
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as e:
            error.context["status_code"] = e.response.status_code
            error.context["response"] = e.response.text[:200]
            if e.response.status_code < 500:
                error.retryable = False
            raise error from e
        except httpx.HTTPError as e:
            raise error from e

    def health(self) -> bool:
        """True if the server answers at all."""
        try:
            resp = self._client.get("/")
            return resp.status_code < 500
        except httpx.HTTPError:
            return False

    def ensure_collection(self, name: str, dimension: int) -> None:
        """Create the collection (cosine distance) unless it already exists."""
        try:
            resp = self._client.get(f"/collections/{name}")
        except httpx.HTTPError as e:
            raise RemoteBackendError.connection_failed(self._url) from e
        if resp.status_code == 200:
            return
        if resp.status_code != 404:
            err = RemoteBackendError.collection_failed("inspect", name)
            err.context["status_code"] = resp.status_code
            err.retryable = resp.status_code >= 500
            raise err

        logger.info("Creating vector collection %s (dimension %d)", name, dimension)
        self._request(
            "PUT", f"/collections/{name}",
            json={"vectors": {"size": dimension, "distance": "Cosine"}},
            error=RemoteBackendError.collection_failed("create", name),
        )

    def upsert(self, name: str, points: list[dict[str, Any]]) -> None:
        """
        Insert or replace points.

        Each point is ``{"id": record_id, "vector": [...], "payload": {...}}``.
        """
        if not points:
            return
        body = {
            "points": [
                {
                    "id": point_id(p["id"]),
                    "vector": p["vector"],
                    "payload": {**(p.get("payload") or {}), "record_id": p["id"]},
                }
                for p in points
            ]
        }
        self._request(
            "PUT", f"/collections/{name}/points",
            params={"wait": "true"},
            json=body,
            error=RemoteBackendError.upsert_failed(points[0]["id"]),
        )

    def search(
        self,
        name: str,
        vector: list[float],
        limit: int,
        score_threshold: Optional[float] = None,
    ) -> list[VectorHit]:
        """Nearest neighbours by cosine similarity, best first."""
        body: dict[str, Any] = {"vector": vector, "limit": limit, "with_payload": True}
        if score_threshold is not None:
            body["score_threshold"] = score_threshold
        resp = self._request(
            "POST", f"/collections/{name}/points/search",
            json=body,
            error=RemoteBackendError.search_failed(f"<vector dim={len(vector)}>"),
        )
        try:
            results = resp.json()["result"]
        except (ValueError, KeyError) as e:
            raise RemoteBackendError(
                "Malformed search response from vector backend",
                {"collection": name, "operation": "search"},
                retryable=False,
            ) from e

        hits = []
        for r in results:
            payload = r.get("payload") or {}
            hits.append(VectorHit(
                id=payload.get("record_id") or str(r["id"]),
                score=float(r.get("score", 0.0)),
                payload=payload,
            ))
        return hits

    def delete(self, name: str, ids: list[str]) -> None:
        if not ids:
            return
        self._request(
            "POST", f"/collections/{name}/points/delete",
            params={"wait": "true"},
            json={"points": [point_id(i) for i in ids]},
            error=RemoteBackendError(
                f"Failed to delete {len(ids)} point(s) from vector backend.",
                {"collection": name, "operation": "delete", "ids": ids[:10]},
            ),
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
