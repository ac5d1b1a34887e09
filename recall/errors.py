"""
Error taxonomy for recall.

Every error raised across a component boundary is a RecallError subclass
carrying a stable code, a human message, a structured context map and a
retryable flag. Retry and circuit-breaker policy key off ``retryable``.

Also logs full stack traces for debugging while showing clean messages
to users.
"""

import json
import os
import sqlite3
import time
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class RecallError(Exception):
    """Base class for all recall errors."""

    code = "UNKNOWN_ERROR"
    default_retryable = False

    def __init__(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        *,
        retryable: Optional[bool] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = dict(context or {})
        self.retryable = self.default_retryable if retryable is None else retryable
        if code is not None:
            self.code = code
        self.timestamp = time.time()

    def formatted_message(self) -> str:
        """Message with code and context, suitable for logs and CLI output."""
        parts = [f"[{self.code}] {self.message}"]
        if self.context:
            parts.append("Context:")
            for key, value in self.context.items():
                if isinstance(value, (dict, list)):
                    value = json.dumps(value, indent=2, default=str)
                parts.append(f"  {key}: {value}")
        if self.retryable:
            parts.append("This error is retryable - the system will attempt automatic recovery.")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, Any]:
        cause = self.__cause__
        return {
            "name": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
            "timestamp": self.timestamp,
            "cause": (
                {"name": type(cause).__name__, "message": str(cause)}
                if cause is not None else None
            ),
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class RemoteBackendError(RecallError):
    """Connectivity, search or upsert failure against the remote vector backend."""

    code = "REMOTE_BACKEND_ERROR"
    default_retryable = True

    @classmethod
    def connection_failed(cls, url: str) -> "RemoteBackendError":
        return cls(
            f"Failed to connect to vector backend at {url}. Falling back to local search.",
            {"url": url, "operation": "connect"},
        )

    @classmethod
    def collection_failed(cls, operation: str, collection: str) -> "RemoteBackendError":
        return cls(
            f'Failed to {operation} collection "{collection}".',
            {"collection": collection, "operation": operation},
        )

    @classmethod
    def search_failed(cls, query: str) -> "RemoteBackendError":
        return cls(
            "Vector search failed. Falling back to local text search.",
            {"query": query[:100], "operation": "search"},
        )

    @classmethod
    def upsert_failed(cls, id: str) -> "RemoteBackendError":
        return cls(
            f'Failed to index record "{id}" in vector backend. Local indexing succeeded.',
            {"id": id, "operation": "upsert"},
        )


class PersistenceError(RecallError):
    """Record store initialization, query or save failure."""

    code = "PERSISTENCE_ERROR"
    default_retryable = True

    @classmethod
    def init_failed(cls, db_path: str) -> "PersistenceError":
        return cls(
            f"Failed to initialize database at {db_path}. Check permissions and disk space.",
            {"db_path": db_path, "operation": "init"},
            retryable=False,
        )

    @classmethod
    def query_failed(cls, sql: str) -> "PersistenceError":
        return cls(
            "Database query failed. Check query syntax and data integrity.",
            {"sql": sql.strip()[:200], "operation": "query"},
        )

    @classmethod
    def save_failed(cls, id: str, operation: str = "save") -> "PersistenceError":
        return cls(
            f'Failed to {operation} record "{id}". Data may not be persisted.',
            {"id": id, "operation": operation},
        )


class ResourceAccessError(RecallError):
    """Missing file, permission denied, bad path."""

    code = "RESOURCE_ACCESS_ERROR"

    @classmethod
    def file_not_found(cls, path: str) -> "ResourceAccessError":
        return cls(f"File not found: {path}", {"path": path, "operation": "read"})

    @classmethod
    def permission_denied(cls, path: str, operation: str) -> "ResourceAccessError":
        return cls(
            f"Permission denied: Cannot {operation} {path}",
            {"path": path, "operation": operation},
        )

    @classmethod
    def invalid_path(cls, path: str, reason: str) -> "ResourceAccessError":
        return cls(f'Invalid path "{path}": {reason}', {"path": path, "reason": reason})


class ProtocolError(RecallError):
    """Malformed caller input at a component contract."""

    code = "PROTOCOL_ERROR"

    @classmethod
    def invalid_parameter(cls, param: str, value: Any, expected: str) -> "ProtocolError":
        return cls(
            f'Invalid parameter "{param}". Expected: {expected}',
            {"param": param, "value": repr(value)[:100], "expected": expected},
        )

    @classmethod
    def missing_parameter(cls, param: str) -> "ProtocolError":
        return cls(f"Missing required parameter: {param}", {"param": param})


class IntegrationError(RecallError):
    """An optional external tool or library is absent or unusable."""

    code = "INTEGRATION_ERROR"

    @classmethod
    def tool_missing(cls, tool: str, hint: str = "") -> "IntegrationError":
        message = f"Optional integration unavailable: {tool}"
        if hint:
            message += f". {hint}"
        return cls(message, {"tool": tool})


class ConfigurationError(RecallError):
    code = "CONFIGURATION_ERROR"

    @classmethod
    def invalid_config(cls, key: str, value: Any, reason: str) -> "ConfigurationError":
        return cls(
            f'Invalid configuration value for "{key}": {reason}',
            {"key": key, "value": value, "reason": reason},
        )

    @classmethod
    def missing_config(cls, key: str) -> "ConfigurationError":
        return cls(f"Missing required configuration: {key}", {"key": key})


class ValidationError(RecallError):
    code = "VALIDATION_ERROR"

    @classmethod
    def invalid_input(cls, field: str, value: Any, reason: str) -> "ValidationError":
        return cls(
            f'Invalid input for "{field}": {reason}',
            {"field": field, "value": repr(value)[:100], "reason": reason},
        )

    @classmethod
    def schema_failed(cls, entity: str, reason: str) -> "ValidationError":
        return cls(
            f"Schema validation failed for {entity}: {reason}",
            {"entity": entity},
        )


class CircuitOpenError(RecallError):
    """Raised without calling the protected function while a circuit is open."""

    code = "CIRCUIT_OPEN"

    def __init__(self, name: str, remaining: float):
        super().__init__(
            f"Circuit breaker '{name}' is open. Failing fast. "
            f"Cooldown ends in {max(0, round(remaining))}s",
            {"breaker": name, "cooldown_remaining": round(remaining, 3)},
        )


ERROR_TYPES = (
    RemoteBackendError,
    PersistenceError,
    ResourceAccessError,
    ProtocolError,
    IntegrationError,
    ConfigurationError,
    ValidationError,
    CircuitOpenError,
)


def is_retryable(error: BaseException) -> bool:
    """Default retry predicate: only RecallErrors flagged retryable."""
    return isinstance(error, RecallError) and error.retryable


def to_recall_error(error: BaseException, default_message: str = "An error occurred") -> RecallError:
    """
    Convert any exception to a RecallError.

    Foreign exceptions are mapped onto the taxonomy by type; the original
    exception is kept as ``__cause__``.
    """
    if isinstance(error, RecallError):
        return error

    message = str(error) or default_message
    converted: RecallError
    if isinstance(error, sqlite3.Error):
        converted = PersistenceError(message, {"sqlite_error": type(error).__name__})
    elif isinstance(error, FileNotFoundError):
        converted = ResourceAccessError.file_not_found(str(error.filename or message))
    elif isinstance(error, PermissionError):
        converted = ResourceAccessError.permission_denied(str(error.filename or ""), "access")
    elif isinstance(error, OSError):
        converted = ResourceAccessError(message, {"errno": error.errno})
    elif _is_httpx_error(error):
        converted = RemoteBackendError(message, {"transport_error": type(error).__name__})
    elif isinstance(error, (json.JSONDecodeError, _pydantic_validation_error())):
        converted = ValidationError(message, {"parse_error": type(error).__name__})
    else:
        converted = RecallError(message, {"original_type": type(error).__name__})
    converted.__cause__ = error
    return converted


def _is_httpx_error(error: BaseException) -> bool:
    import httpx
    return isinstance(error, httpx.HTTPError)


def _pydantic_validation_error() -> type:
    from pydantic import ValidationError as PydanticValidationError
    return PydanticValidationError


def format_error(error: BaseException) -> str:
    """Format any error for display."""
    if isinstance(error, RecallError):
        return error.formatted_message()
    return str(error)


def _error_log_path() -> Path:
    """Resolve error log path, respecting RECALL_DATA_DIR."""
    data_dir = os.environ.get("RECALL_DATA_DIR")
    if data_dir:
        return Path(data_dir) / "recall-errors.log"
    return Path.home() / ".recall" / "recall-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            if isinstance(exc, RecallError):
                f.write(exc.formatted_message() + "\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log, don't crash over it
    return log_path
