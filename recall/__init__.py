"""
Recall

Semantic memory for AI coding-assistant sessions: prompts, tool results and
file edits are queued by editor hooks, drained into a persistent store, and
searched by similarity so past solutions can be recalled.

Quick Start:
    from recall import build_engine, load_or_create_config

    config = load_or_create_config()          # ~/.recall/recall.toml
    engine = build_engine(config)
    engine.initialize()
    result = engine.search("jwt refresh token")

CLI Usage:
    recall serve                 # drain queues in the background
    recall search "query text"
    recall stats

Environment Variables:
    RECALL_DATA_DIR            - Data directory (default ~/.recall)
    RECALL_QDRANT_URL          - Optional Qdrant server for vector search
    RECALL_QDRANT_API_KEY      - API key for the Qdrant server
    RECALL_EMBEDDING_PROVIDER  - hash (default), ollama or openai
    RECALL_VERBOSE             - Set to 1 for debug logging
"""

from .config import RecallConfig, load_or_create_config
from .engine import RetrievalEngine, build_engine
from .errors import RecallError
from .lexical import Document, LocalLexicalSearch
from .queue_processor import QueueProcessor
from .resilience import CircuitBreaker, ErrorHandler, RetryOptions, retry
from .types import Record, RetrievalResult

__version__ = "0.1.0"
__all__ = [
    "RecallConfig",
    "load_or_create_config",
    "RetrievalEngine",
    "build_engine",
    "RecallError",
    "Document",
    "LocalLexicalSearch",
    "QueueProcessor",
    "CircuitBreaker",
    "ErrorHandler",
    "RetryOptions",
    "retry",
    "Record",
    "RetrievalResult",
]
