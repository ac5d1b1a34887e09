"""Tests for the error taxonomy and error logging."""

import json
import sqlite3

import httpx
import pytest

from recall.errors import (
    ERROR_TYPES,
    CircuitOpenError,
    ConfigurationError,
    IntegrationError,
    PersistenceError,
    ProtocolError,
    RecallError,
    RemoteBackendError,
    ResourceAccessError,
    ValidationError,
    format_error,
    is_retryable,
    log_exception,
    to_recall_error,
)


class TestTaxonomy:

    def test_codes_are_distinct(self):
        codes = [cls.code for cls in ERROR_TYPES]
        assert len(codes) == len(set(codes))

    def test_retryable_defaults(self):
        assert RemoteBackendError.connection_failed("http://x").retryable
        assert PersistenceError.query_failed("SELECT 1").retryable
        assert not PersistenceError.init_failed("/tmp/db").retryable
        assert not ValidationError.invalid_input("q", "", "empty").retryable
        assert not ConfigurationError.missing_config("remote.url").retryable

    def test_retryable_override(self):
        err = RemoteBackendError("rejected", retryable=False)
        assert not is_retryable(err)

    def test_context_and_message(self):
        err = RemoteBackendError.upsert_failed("rec-1")
        assert err.code == "REMOTE_BACKEND_ERROR"
        assert err.context == {"id": "rec-1", "operation": "upsert"}
        assert "rec-1" in err.message
        assert str(err).startswith("[REMOTE_BACKEND_ERROR]")

    def test_search_failed_truncates_query(self):
        err = RemoteBackendError.search_failed("q" * 500)
        assert len(err.context["query"]) == 100

    def test_formatted_message(self):
        err = ResourceAccessError.permission_denied("/etc/shadow", "read")
        text = err.formatted_message()
        assert text.splitlines()[0] == "[RESOURCE_ACCESS_ERROR] Permission denied: Cannot read /etc/shadow"
        assert "  path: /etc/shadow" in text
        assert "retryable" not in text

        retryable = RemoteBackendError.connection_failed("http://x").formatted_message()
        assert "retryable" in retryable

    def test_to_dict_includes_cause(self):
        try:
            try:
                raise KeyError("inner")
            except KeyError as e:
                raise ProtocolError.missing_parameter("id") from e
        except ProtocolError as err:
            d = err.to_dict()
        assert d["name"] == "ProtocolError"
        assert d["code"] == "PROTOCOL_ERROR"
        assert d["cause"]["name"] == "KeyError"
        json.dumps(d)

    def test_circuit_open(self):
        err = CircuitOpenError("remote", 12.4)
        assert err.code == "CIRCUIT_OPEN"
        assert "12s" in err.message
        assert not err.retryable

    def test_integration_hint(self):
        err = IntegrationError.tool_missing("openai", "pip install openai")
        assert err.message.endswith("pip install openai")


class TestConversion:

    def test_recall_error_passes_through(self):
        err = ValidationError.schema_failed("entry", "bad")
        assert to_recall_error(err) is err

    @pytest.mark.parametrize("exc, code", [
        (sqlite3.OperationalError("locked"), "PERSISTENCE_ERROR"),
        (FileNotFoundError(2, "missing", "/nope"), "RESOURCE_ACCESS_ERROR"),
        (PermissionError(13, "denied", "/root"), "RESOURCE_ACCESS_ERROR"),
        (httpx.ConnectError("refused"), "REMOTE_BACKEND_ERROR"),
        (json.JSONDecodeError("bad", "{", 0), "VALIDATION_ERROR"),
        (RuntimeError("other"), "UNKNOWN_ERROR"),
    ])
    def test_foreign_errors_mapped(self, exc, code):
        converted = to_recall_error(exc)
        assert isinstance(converted, RecallError)
        assert converted.code == code
        assert converted.__cause__ is exc

    def test_transport_errors_retryable(self):
        assert is_retryable(to_recall_error(httpx.ReadTimeout("slow")))
        assert not is_retryable(httpx.ReadTimeout("slow"))

    def test_empty_message_uses_default(self):
        assert to_recall_error(RuntimeError(), "fallback text").message == "fallback text"

    def test_format_error(self):
        assert format_error(ValueError("plain")) == "plain"
        assert format_error(ConfigurationError("bad")).startswith("[CONFIGURATION_ERROR]")


class TestLogException:

    def test_writes_traceback_to_data_dir(self, data_dir):
        try:
            raise PersistenceError.save_failed("r1")
        except PersistenceError as e:
            path = log_exception(e, context="recall drain")

        assert path == data_dir / "recall-errors.log"
        text = path.read_text()
        assert "recall drain" in text
        assert "[PERSISTENCE_ERROR]" in text
        assert "Traceback" in text

    def test_appends(self, data_dir):
        log_exception(ValueError("one"))
        path = log_exception(ValueError("two"))
        text = path.read_text()
        assert "ValueError: one" in text
        assert "ValueError: two" in text
