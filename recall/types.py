"""
Data types for recall memory.
"""

import os
import re
import sys
import time
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from .errors import ValidationError


# Tag added to every record that arrived through a queue file
QUEUE_PROCESSED_TAG = "queue_processed"

MAX_ID_LENGTH = 1024

# IDs: printable characters minus control chars and a small blocklist.
# Blocked: null bytes (\x00), control chars (\x01-\x1f), DEL (\x7f),
#   backslash (path confusion), backtick (shell), angle brackets (HTML/XML),
#   pipe (shell), semicolon (shell/SQL), double quote, single quote
_ID_BLOCKED_RE = re.compile(r'[\x00-\x1f\x7f\\`<>|;"\']')


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def validate_id(id: str) -> None:
    """Validate a record ID: length and no dangerous characters."""
    if not isinstance(id, str) or not id or len(id) > MAX_ID_LENGTH:
        raise ValidationError.invalid_input("id", id, f"must be 1-{MAX_ID_LENGTH} characters")
    if _ID_BLOCKED_RE.search(id):
        raise ValidationError.invalid_input("id", id, "contains invalid characters")


@dataclass
class RecordContext:
    """Environment a prompt ran in. Every field has a usable default."""
    cwd: str = field(default_factory=os.getcwd)
    platform: str = sys.platform
    environment: dict[str, str] = field(default_factory=dict)
    tools_available: list[str] = field(default_factory=list)
    files: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class Record:
    """
    The canonical unit of memory.

    Re-indexing a record with an existing ``id`` replaces its content and
    embedding. Use merged_with() to carry tags/category over from the
    stored version.
    """
    id: str
    prompt_text: str
    result_text: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)
    session_id: str = "unknown"
    tags: set[str] = field(default_factory=set)
    category: Optional[str] = None
    embedding: Optional[list[float]] = None

    prompt_type: str = "user"
    context: RecordContext = field(default_factory=RecordContext)
    success: bool = True
    error: Optional[str] = None
    duration: int = 0
    tools_used: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.tags, set):
            self.tags = set(self.tags or ())

    @property
    def text(self) -> str:
        """Text used for embeddings and the lexical index."""
        return f"{self.prompt_text}\n{self.result_text or ''}"

    def merged_with(self, existing: Optional["Record"]) -> "Record":
        """Copy of self with tags unioned and category kept from ``existing``."""
        if existing is None:
            return self
        return replace(
            self,
            tags=set(self.tags) | set(existing.tags),
            category=self.category or existing.category,
        )


@dataclass
class RetrievalResult:
    """Ranked records for a query. ``confidence`` is the top score, 0.0 when empty."""
    records: list[Record]
    confidence: float = 0.0
    scores: list[float] = field(default_factory=list)
    source: str = "local"

    def __len__(self) -> int:
        return len(self.records)
