"""
Protocol definitions for the retrieval engine's collaborators.

Defines interface contracts for:
- RecordStoreProtocol: the durable source of truth (SQLite locally)
- VectorBackendProtocol: optional remote vector acceleration (Qdrant)

The engine depends only on these, so tests can substitute in-memory fakes.
"""

from typing import Any, Optional, Protocol, runtime_checkable

from .types import Record


@runtime_checkable
class RecordStoreProtocol(Protocol):
    """
    Persistent record storage.

    Implemented by:
    - RecordStore (SQLite)
    """

    def store_record(self, record: Record, embedding: Optional[list[float]] = None) -> None: ...

    def get_record(self, id: str) -> Optional[Record]: ...

    def delete_record(self, id: str) -> bool: ...

    def search_records_by_text(self, query: str, limit: int = 10) -> list[Record]: ...

    def get_all_records(self, limit: int = 10000) -> list[Record]: ...

    def get_history(self, session_id: Optional[str] = None, limit: int = 50,
                    offset: int = 0) -> list[Record]: ...

    def mark_remote_synced(self, ids: list[str]) -> None: ...

    def get_unsynced_records(self, limit: int = 100) -> list[Record]: ...

    def record_indexed_file(self, path: str, hash: str, size: int, chunks_count: int = 0,
                            indexed_at: Optional[int] = None) -> None: ...

    def count(self) -> int: ...

    def get_stats(self) -> dict[str, Any]: ...

    def close(self) -> None: ...


@runtime_checkable
class VectorBackendProtocol(Protocol):
    """
    Remote vector similarity backend.

    Implemented by:
    - QdrantBackend (Qdrant REST API over httpx)

    Every method raises RemoteBackendError on failure.
    """

    def ensure_collection(self, name: str, dimension: int) -> None: ...

    def upsert(self, name: str, points: list[dict[str, Any]]) -> None: ...

    def search(
        self,
        name: str,
        vector: list[float],
        limit: int,
        score_threshold: Optional[float] = None,
    ) -> list[Any]: ...

    def delete(self, name: str, ids: list[str]) -> None: ...

    def close(self) -> None: ...
