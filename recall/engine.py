"""
Retrieval engine: one query interface over the record store, the local
lexical index and an optional remote vector backend.

- index_record(): embed, persist, update the lexical index, upsert remotely
- search(): remote vector search when available, local fallback otherwise
- delete_record(): remove everywhere
- get_history(): paginated records, newest first
- index_hook() / find_relevant_hooks(): the hook registry

The store is the source of truth. Remote failures never fail a call whose
local part succeeded; they are logged, counted, and fed to the circuit
breaker so a stalled backend stops being called.

Records the backend has not received are flagged unsynced in the store and
pushed before the next remote query, so remote results never silently
omit records stored during an outage.
"""

import logging
import threading
from dataclasses import replace
from typing import Any, Optional

from .config import DEFAULT_COLLECTION, RecallConfig
from .errors import ConfigurationError, ValidationError
from .hooks import HOOK_CATEGORY, HookDefinition, hook_to_record, record_to_hook
from .lexical import Document, LocalLexicalSearch, tokenize
from .protocol import RecordStoreProtocol, VectorBackendProtocol
from .providers.base import EmbeddingProvider, get_registry
from .providers.embeddings import HashEmbedding
from .record_store import RecordStore
from .resilience import CircuitBreaker, ErrorHandler, RetryOptions, retry
from .types import Record, RetrievalResult, validate_id

logger = logging.getLogger(__name__)

DEFAULT_REMOTE_THRESHOLD = 0.7
DEFAULT_LOCAL_THRESHOLD = 0.1

# Records pushed per upsert when catching the backend up
BACKFILL_BATCH = 100

# Extra candidates fetched when results are filtered by category afterwards
CATEGORY_OVERFETCH = 4

DEFAULT_HISTORY_LIMIT = 50
DEFAULT_HOOK_LIMIT = 5


def token_overlap(query: str, text: str) -> float:
    """Jaccard similarity of the token sets of ``query`` and ``text``."""
    q = set(tokenize(query))
    t = set(tokenize(text))
    union = q | t
    if not union:
        return 0.0
    return len(q & t) / len(union)


class RetrievalEngine:
    """
    Unified indexing and search.

    All collaborators are injected; build_engine() wires them from config.
    """

    def __init__(
        self,
        store: RecordStoreProtocol,
        embedder: Optional[EmbeddingProvider] = None,
        vector_backend: Optional[VectorBackendProtocol] = None,
        *,
        lexical: Optional[LocalLexicalSearch] = None,
        error_handler: Optional[ErrorHandler] = None,
        breaker: Optional[CircuitBreaker] = None,
        retry_options: Optional[RetryOptions] = None,
        collection: str = DEFAULT_COLLECTION,
        remote_threshold: float = DEFAULT_REMOTE_THRESHOLD,
        local_threshold: float = DEFAULT_LOCAL_THRESHOLD,
        default_limit: int = 10,
    ):
        self._store = store
        self._embedder = embedder if embedder is not None else HashEmbedding()
        self._backend = vector_backend
        self._lexical = lexical if lexical is not None else LocalLexicalSearch()
        self._handler = error_handler if error_handler is not None else ErrorHandler()
        self._breaker = breaker if breaker is not None else CircuitBreaker("vector-backend")
        self._retry = retry_options if retry_options is not None else RetryOptions()
        self._collection = collection
        self._remote_threshold = remote_threshold
        self._local_threshold = local_threshold
        self._default_limit = default_limit
        self._remote_active = False
        self._initialized = False
        # Set whenever a stored record may be missing from the backend
        self._remote_dirty = True
        self._sync_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def initialize(self) -> None:
        """
        Connect the remote backend and load the lexical index from the store.

        Never raises: a remote failure leaves the engine local-only until
        recheck_remote() succeeds.
        """
        self._connect_remote()
        self._rebuild_lexical()
        self._initialized = True

    def _connect_remote(self) -> bool:
        if self._backend is None:
            logger.info("No vector backend configured, using local search")
            self._remote_active = False
            return False
        try:
            retry(
                lambda: self._backend.ensure_collection(self._collection, self._embedder.dimension),
                self._retry,
            )
        except Exception as e:
            self._handler.handle(e, {"operation": "connect", "collection": self._collection})
            logger.warning("Vector backend unavailable, falling back to local search")
            self._remote_active = False
            return False
        self._remote_active = True
        self._breaker.reset()
        logger.info("Vector backend ready (collection %s)", self._collection)
        self._remote_dirty = True
        self._backfill_remote()
        return True

    def recheck_remote(self) -> bool:
        """Retry remote initialization. Returns True if the backend is now in use."""
        return self._connect_remote()

    def _rebuild_lexical(self) -> None:
        records = self._handler.safe_execute(
            lambda: self._store.get_all_records(), [], {"operation": "rebuild_index"},
        )
        self._lexical.clear()
        self._lexical.batch_index(_to_document(r) for r in records)
        logger.info("Loaded %d records into the local index", len(records))

    @property
    def using_remote_backend(self) -> bool:
        return self._backend is not None and self._remote_active

    @property
    def lexical(self) -> LocalLexicalSearch:
        return self._lexical

    @property
    def store(self) -> RecordStoreProtocol:
        return self._store

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def error_handler(self) -> ErrorHandler:
        return self._handler

    def close(self) -> None:
        """Release the backend client and the store."""
        if self._backend is not None:
            self._backend.close()
        self._store.close()

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    def _embed(self, text: str) -> list[float]:
        vector = self._embedder.embed(text)
        if len(vector) != self._embedder.dimension:
            raise ConfigurationError.invalid_config(
                "embedding.dimension", len(vector),
                f"provider {self._embedder.model_name} declared dimension {self._embedder.dimension}",
            )
        return vector

    def _remote_usable(self) -> bool:
        return self.using_remote_backend and self._breaker.allows_request()

    # -------------------------------------------------------------------------
    # Remote sync
    # -------------------------------------------------------------------------

    def _push(self, records: list[Record]) -> None:
        """Upsert records with their embeddings and flag them synced. Raises on failure."""
        points = [
            {
                "id": r.id,
                "vector": r.embedding,
                "payload": {
                    "session_id": r.session_id,
                    "timestamp": r.timestamp,
                    "category": r.category,
                    "tags": sorted(r.tags),
                },
            }
            for r in records
        ]
        self._breaker.execute(
            lambda: retry(lambda: self._backend.upsert(self._collection, points), self._retry)
        )
        self._store.mark_remote_synced([r.id for r in records])

    def _backfill_remote(self) -> bool:
        """
        Push every unsynced record to the backend.

        Returns True when nothing is left to push. Records whose embedding
        is missing are embedded now; one that still fails stays unsynced.
        """
        with self._sync_lock:
            if not self._remote_dirty:
                return True
            # Cleared first: a record stored while this runs sets it again
            self._remote_dirty = False
            pushed = 0
            seen: set[str] = set()
            try:
                while True:
                    pending = [r for r in self._store.get_unsynced_records(BACKFILL_BATCH)
                               if r.id not in seen]
                    if not pending:
                        break
                    seen.update(r.id for r in pending)
                    ready = []
                    for record in pending:
                        if record.embedding is None:
                            try:
                                record = replace(record, embedding=self._embed(record.text))
                            except Exception as e:
                                self._handler.handle(e, {"operation": "backfill_embed", "id": record.id})
                                self._remote_dirty = True
                                continue
                        ready.append(record)
                    if ready:
                        self._push(ready)
                        pushed += len(ready)
            except Exception as e:
                self._remote_dirty = True
                self._handler.handle(e, {"operation": "backfill", "pushed": pushed})
                return False
            if pushed:
                logger.info("Pushed %d unsynced records to the vector backend", pushed)
            return not self._remote_dirty

    # -------------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------------

    def index_record(self, record: Record, *, merge: bool = False) -> bool:
        """
        Persist and index a record. Same id replaces the previous version.

        With ``merge``, tags and category of an already stored version with
        the same id are carried over.

        Returns False only if the record could not be stored locally.
        """
        validate_id(record.id)
        if merge:
            existing = self._handler.safe_execute(
                lambda: self._store.get_record(record.id), None,
                {"operation": "get_record", "id": record.id},
            )
            record = record.merged_with(existing)
        text = record.text

        try:
            embedding: Optional[list[float]] = self._embed(text)
        except ConfigurationError:
            raise
        except Exception as e:
            # Store without a vector; local search does not need one
            self._handler.handle(e, {"operation": "embed", "id": record.id})
            embedding = None

        stored = replace(record, embedding=embedding)
        try:
            retry(lambda: self._store.store_record(stored, embedding), self._retry)
        except Exception as e:
            self._handler.handle(e, {"operation": "store", "id": record.id})
            return False

        self._lexical.index(_to_document(stored))

        if self._backend is not None:
            pushed = False
            if embedding is not None and self._remote_usable():
                pushed = self._handler.safe_execute(
                    lambda: self._push([stored]) or True, False,
                    {"operation": "upsert", "id": stored.id},
                )
            if not pushed:
                self._remote_dirty = True
        return True

    def delete_record(self, id: str) -> bool:
        """
        Remove a record from the store, the local index and the backend.

        Returns False only if the store delete failed.
        """
        try:
            retry(lambda: self._store.delete_record(id), self._retry)
        except Exception as e:
            self._handler.handle(e, {"operation": "delete", "id": id})
            return False

        self._lexical.remove_document(id)

        if self._remote_usable():
            self._handler.safe_execute_with_circuit_breaker(
                lambda: retry(lambda: self._backend.delete(self._collection, [id]), self._retry),
                None,
                self._breaker,
                {"operation": "delete_remote", "id": id},
            )
        return True

    def index_hook(self, hook: HookDefinition) -> bool:
        """Register or replace a hook. Returns False if it could not be stored."""
        return self.index_record(hook_to_record(hook))

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    def search(self, query: str, limit: Optional[int] = None,
               threshold: Optional[float] = None,
               category: Optional[str] = None) -> RetrievalResult:
        """
        Rank stored records against ``query``.

        Uses the vector backend when it is active, the breaker allows a
        call and every stored record has reached it; any remote failure
        falls through to local search.

        Raises:
            ValidationError: query is empty or not a string, or limit is negative
        """
        if not isinstance(query, str) or not query.strip():
            raise ValidationError.invalid_input("query", query, "must be a non-empty string")
        if limit is None:
            limit = self._default_limit
        if limit < 0:
            raise ValidationError.invalid_input("limit", limit, "must be zero or positive")
        if limit == 0:
            return RetrievalResult(records=[], source="remote" if self._remote_usable() else "local")

        if self._remote_usable() and self._backfill_remote() and self._remote_usable():
            try:
                return self._remote_search(query, limit, threshold, category)
            except Exception as e:
                self._handler.handle(e, {"operation": "search", "fallback": "local"})

        return self._local_search(query, limit, threshold, category)

    def _remote_search(self, query: str, limit: int, threshold: Optional[float],
                       category: Optional[str]) -> RetrievalResult:
        vector = self._embed(query)
        score_threshold = threshold if threshold is not None else self._remote_threshold
        fetch = limit * 2 * (CATEGORY_OVERFETCH if category else 1)
        hits = self._breaker.execute(
            lambda: retry(
                lambda: self._backend.search(self._collection, vector, fetch, score_threshold),
                self._retry,
            )
        )

        records: list[Record] = []
        scores: list[float] = []
        for hit in hits:
            record = self._store.get_record(hit.id)
            if record is None:
                logger.debug("Vector hit %s has no stored record", hit.id)
                continue
            if category is not None and record.category != category:
                continue
            records.append(record)
            scores.append(hit.score)
            if len(records) >= limit:
                break

        return RetrievalResult(
            records=records,
            confidence=scores[0] if scores else 0.0,
            scores=scores,
            source="remote",
        )

    def _local_search(self, query: str, limit: int, threshold: Optional[float],
                      category: Optional[str]) -> RetrievalResult:
        min_score = threshold if threshold is not None else self._local_threshold
        fetch = limit * 2 * (CATEGORY_OVERFETCH if category else 1)

        candidates: dict[str, Record] = {}
        for hit in self._lexical.search(query, fetch, 0.0):
            record = self._handler.safe_execute(
                lambda: self._store.get_record(hit.document.id), None,
                {"operation": "get_record", "id": hit.document.id},
            )
            if record is not None:
                candidates[record.id] = record
        for record in self._handler.safe_execute(
            lambda: self._store.search_records_by_text(query, fetch), [],
            {"operation": "search_records_by_text"},
        ):
            candidates.setdefault(record.id, record)

        scored = []
        for record in candidates.values():
            if category is not None and record.category != category:
                continue
            score = token_overlap(query, record.prompt_text)
            if score > 0 and score >= min_score:
                scored.append((score, record))
        scored.sort(key=lambda s: s[0], reverse=True)
        scored = scored[:limit]

        return RetrievalResult(
            records=[r for _, r in scored],
            confidence=scored[0][0] if scored else 0.0,
            scores=[s for s, _ in scored],
            source="local",
        )

    def find_relevant_hooks(self, prompt: str, limit: int = DEFAULT_HOOK_LIMIT,
                            threshold: Optional[float] = None,
                            trigger: Optional[str] = None) -> list[HookDefinition]:
        """
        Hooks whose name, description or summary match ``prompt``.

        ``trigger`` keeps only hooks registered for that trigger point.
        """
        result = self.search(prompt, limit * CATEGORY_OVERFETCH if trigger else limit,
                             threshold, category=HOOK_CATEGORY)
        hooks = []
        for record in result.records:
            hook = record_to_hook(record)
            if hook is None:
                continue
            if trigger is not None and trigger not in hook.triggers:
                continue
            hooks.append(hook)
        return hooks[:limit]

    def get_history(self, session_id: Optional[str] = None,
                    limit: int = DEFAULT_HISTORY_LIMIT, offset: int = 0) -> list[Record]:
        """
        One page of stored records, newest first.

        Raises:
            ValidationError: negative limit or offset
        """
        if limit < 0:
            raise ValidationError.invalid_input("limit", limit, "must be zero or positive")
        if offset < 0:
            raise ValidationError.invalid_input("offset", offset, "must be zero or positive")
        if limit == 0:
            return []
        return self._store.get_history(session_id, limit, offset)

    def find_similar(self, id: str, limit: int = 5) -> list[Record]:
        """Records lexically similar to a stored one, excluding itself."""
        results = []
        for hit in self._lexical.find_similar(id, limit):
            record = self._store.get_record(hit.document.id)
            if record is not None:
                results.append(record)
        return results

    def get_stats(self) -> dict[str, Any]:
        lexical = self._lexical.get_stats()
        store = self._handler.safe_execute(lambda: self._store.get_stats(), {}, {"operation": "stats"})
        return {
            "total_records": store.get("total_records", lexical["total_documents"]),
            "total_terms": lexical["total_terms"],
            "using_remote_backend": self.using_remote_backend,
            "collection": self._collection,
            "embedding_model": self._embedder.model_name,
            "pending_remote_sync": store.get("unsynced_records", 0) if self._backend is not None else 0,
            "lexical": lexical,
            "store": store,
            "circuit": self._breaker.snapshot(),
            "errors": self._handler.get_stats(),
        }


def _to_document(record: Record) -> Document:
    return Document(
        id=record.id,
        content=record.text,
        timestamp=record.timestamp,
        metadata={
            "session_id": record.session_id,
            "category": record.category,
            "tags": sorted(record.tags),
        },
    )


def build_engine(config: RecallConfig, *, error_handler: Optional[ErrorHandler] = None) -> RetrievalEngine:
    """
    Construct an engine and its collaborators from configuration.

    Raises:
        PersistenceError: the record store cannot be opened
        IntegrationError: the embedding provider cannot be created
        ConfigurationError: invalid remote settings
    """
    from .vector_backend import QdrantBackend

    store = RecordStore(config.db_path)
    try:
        embedder = get_registry().create_embedding(config.embedding.name, config.embedding.params)
        backend = None
        if config.remote.enabled:
            backend = QdrantBackend(
                config.remote.url,
                api_key=config.remote.api_key or None,
                timeout=config.remote.timeout,
            )
    except Exception:
        store.close()
        raise

    r = config.resilience
    return RetrievalEngine(
        store,
        embedder,
        backend,
        error_handler=error_handler or ErrorHandler(),
        breaker=CircuitBreaker(
            "vector-backend",
            failure_threshold=r.failure_threshold,
            cooldown_period=r.cooldown_period,
            recovery_attempts=r.recovery_attempts,
        ),
        retry_options=RetryOptions(
            max_attempts=r.max_attempts,
            initial_delay=r.initial_delay,
            max_delay=r.max_delay,
            multiplier=r.multiplier,
            jitter=r.jitter,
        ),
        collection=config.remote.collection,
        remote_threshold=config.remote.score_threshold,
        local_threshold=config.local_threshold,
        default_limit=config.default_limit,
    )
