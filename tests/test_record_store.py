"""Tests for the SQLite record store."""

import sqlite3
import threading

import pytest

from recall.errors import PersistenceError
from recall.record_store import RecordStore
from recall.types import Record, RecordContext


def _record(id="r1", prompt="how do I refresh a jwt", **kwargs):
    kwargs.setdefault("timestamp", 1_700_000_000_000)
    return Record(id=id, prompt_text=prompt, **kwargs)


class TestStoreAndGet:

    def test_round_trip_preserves_fields(self, store):
        record = _record(
            result_text="use the refresh endpoint",
            session_id="s1",
            tags={"auth", "queue_processed"},
            category="security",
            prompt_type="user",
            context=RecordContext(cwd="/work", platform="linux", environment={"CI": "1"},
                                  tools_available=["bash"], files=[{"path": "a.py"}]),
            success=False,
            error="401",
            duration=1200,
            tools_used=["bash", "edit"],
        )
        store.store_record(record, [0.25, 0.5, 0.75])

        got = store.get_record("r1")
        assert got.prompt_text == record.prompt_text
        assert got.result_text == "use the refresh endpoint"
        assert got.session_id == "s1"
        assert got.tags == {"auth", "queue_processed"}
        assert got.category == "security"
        assert got.context.cwd == "/work"
        assert got.context.environment == {"CI": "1"}
        assert got.context.files == [{"path": "a.py"}]
        assert got.success is False
        assert got.error == "401"
        assert got.duration == 1200
        assert got.tools_used == ["bash", "edit"]
        assert got.embedding == pytest.approx([0.25, 0.5, 0.75])

    def test_missing_record(self, store):
        assert store.get_record("nope") is None

    def test_same_id_replaces(self, store):
        store.store_record(_record(prompt="first version"))
        store.get_record("r1")  # populate cache
        store.store_record(_record(prompt="second version"))

        assert store.count() == 1
        assert store.get_record("r1").prompt_text == "second version"

    def test_embedding_optional(self, store):
        store.store_record(_record())
        assert store.get_record("r1").embedding is None

    def test_delete(self, store):
        store.store_record(_record())
        assert store.delete_record("r1") is True
        assert store.get_record("r1") is None
        assert store.delete_record("r1") is False

    def test_persists_across_instances(self, data_dir):
        path = data_dir / "persist.db"
        with RecordStore(path) as s:
            s.store_record(_record())
        with RecordStore(path) as s:
            assert s.get_record("r1") is not None


class TestQueries:

    def test_text_search_newest_first(self, store):
        store.store_record(_record("old", "jwt expired", timestamp=1))
        store.store_record(_record("new", "jwt refresh", timestamp=2))
        store.store_record(_record("other", "css grid", timestamp=3))

        results = store.search_records_by_text("jwt")
        assert [r.id for r in results] == ["new", "old"]

    def test_text_search_matches_result_and_category(self, store):
        store.store_record(_record("a", "question", result_text="answer mentions docker"))
        store.store_record(_record("b", "question", category="docker"))
        assert {r.id for r in store.search_records_by_text("docker")} == {"a", "b"}

    def test_text_search_escapes_wildcards(self, store):
        store.store_record(_record("pct", "100% coverage"))
        store.store_record(_record("plain", "100 coverage"))
        assert [r.id for r in store.search_records_by_text("100%")] == ["pct"]

    def test_text_search_limit(self, store):
        for i in range(5):
            store.store_record(_record(f"r{i}", "shared prompt", timestamp=i))
        assert len(store.search_records_by_text("shared", limit=3)) == 3

    def test_get_all_records_oldest_first(self, store):
        store.store_record(_record("b", "second", timestamp=2))
        store.store_record(_record("a", "first", timestamp=1))
        assert [r.id for r in store.get_all_records()] == ["a", "b"]

    def test_history_newest_first_with_paging(self, store):
        for i in range(5):
            store.store_record(_record(f"r{i}", f"prompt {i}", timestamp=i))
        assert [r.id for r in store.get_history(limit=2)] == ["r4", "r3"]
        assert [r.id for r in store.get_history(limit=2, offset=2)] == ["r2", "r1"]
        assert [r.id for r in store.get_history(limit=10, offset=4)] == ["r0"]
        assert store.get_history(limit=10, offset=5) == []

    def test_history_for_session(self, store):
        store.store_record(_record("a", "one", session_id="s1", timestamp=1))
        store.store_record(_record("b", "two", session_id="s2", timestamp=2))
        store.store_record(_record("c", "three", session_id="s1", timestamp=3))
        assert [r.id for r in store.get_history("s1")] == ["c", "a"]
        assert [r.id for r in store.get_history("s1", limit=1, offset=1)] == ["a"]

    def test_indexed_files(self, store):
        store.record_indexed_file("src/app.py", "abc123", 2048, chunks_count=3, indexed_at=42)
        assert store.get_indexed_file("src/app.py") == {
            "path": "src/app.py", "hash": "abc123", "indexed_at": 42, "size": 2048, "chunks_count": 3,
        }
        store.record_indexed_file("src/app.py", "def456", 4096)
        assert store.get_indexed_file("src/app.py")["hash"] == "def456"
        assert store.get_indexed_file("missing.py") is None

    def test_stats(self, store):
        store.store_record(_record("a", "one", timestamp=10))
        store.store_record(_record("b", "two", timestamp=20))
        store.record_indexed_file("x.py", "h", 1)
        stats = store.get_stats()
        assert stats["total_records"] == 2
        assert stats["oldest"] == 10
        assert stats["newest"] == 20
        assert stats["indexed_files"] == 1
        assert stats["unsynced_records"] == 2
        assert stats["db_size_bytes"] > 0


class TestRemoteSyncState:

    def test_new_records_are_unsynced(self, store):
        store.store_record(_record("b", "two", timestamp=2))
        store.store_record(_record("a", "one", timestamp=1))
        assert [r.id for r in store.get_unsynced_records()] == ["a", "b"]
        assert store.count_unsynced() == 2

    def test_mark_synced(self, store):
        store.store_record(_record("a", "one"))
        store.store_record(_record("b", "two"))
        store.mark_remote_synced(["a"])
        assert [r.id for r in store.get_unsynced_records()] == ["b"]
        store.mark_remote_synced([])
        assert store.count_unsynced() == 1

    def test_restore_clears_synced_flag(self, store):
        store.store_record(_record("a", "one"))
        store.mark_remote_synced(["a"])
        store.store_record(_record("a", "one, edited"))
        assert [r.id for r in store.get_unsynced_records()] == ["a"]

    def test_unsynced_limit(self, store):
        for i in range(5):
            store.store_record(_record(f"r{i}", "text", timestamp=i))
        assert len(store.get_unsynced_records(limit=2)) == 2

    def test_old_database_migrated(self, data_dir):
        path = data_dir / "old.db"
        conn = sqlite3.connect(str(path))
        conn.execute("""
            CREATE TABLE records (
                id TEXT PRIMARY KEY, timestamp INTEGER NOT NULL, session_id TEXT NOT NULL,
                prompt_text TEXT NOT NULL, prompt_type TEXT NOT NULL DEFAULT 'user',
                result_text TEXT, context_json TEXT NOT NULL DEFAULT '{}',
                success INTEGER NOT NULL DEFAULT 1, error TEXT,
                duration INTEGER NOT NULL DEFAULT 0, tools_used_json TEXT NOT NULL DEFAULT '[]',
                tags_json TEXT NOT NULL DEFAULT '[]', category TEXT, embedding BLOB,
                updated_at INTEGER NOT NULL
            )
        """)
        conn.execute(
            "INSERT INTO records (id, timestamp, session_id, prompt_text, updated_at) "
            "VALUES ('old', 1, 's', 'from an older version', 1)"
        )
        conn.commit()
        conn.close()

        with RecordStore(path) as s:
            assert s.get_record("old").prompt_text == "from an older version"
            assert [r.id for r in s.get_unsynced_records()] == ["old"]


class TestCache:

    def test_write_during_read_not_cached(self, store, monkeypatch):
        """A row read before a concurrent overwrite commits is not served from cache."""
        import recall.record_store as record_store

        store.store_record(_record(prompt="old version"))
        real = record_store._row_to_record
        interleaved = []

        def overwrite_then_convert(row):
            if not interleaved:
                interleaved.append(True)
                store.store_record(_record(prompt="new version"))
            return real(row)

        monkeypatch.setattr(record_store, "_row_to_record", overwrite_then_convert)
        assert store.get_record("r1").prompt_text == "old version"
        assert store.get_record("r1").prompt_text == "new version"

    def test_delete_invalidates(self, store):
        store.store_record(_record())
        store.get_record("r1")
        store.delete_record("r1")
        assert store.get_record("r1") is None


class TestFailures:

    def test_init_failure_is_fatal(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(PersistenceError) as exc_info:
            RecordStore(blocker / "recall.db")
        assert exc_info.value.retryable is False
        assert exc_info.value.context["operation"] == "init"

    def test_closed_store_raises(self, data_dir):
        s = RecordStore(data_dir / "closed.db")
        s.close()
        with pytest.raises(PersistenceError):
            s.get_record("r1")

    def test_query_failure_is_retryable(self, store):
        store._conn.execute("DROP TABLE records")
        with pytest.raises(PersistenceError) as exc_info:
            store.count()
        assert exc_info.value.retryable
        assert isinstance(exc_info.value.__cause__, sqlite3.Error)


class TestConcurrency:

    def test_concurrent_writers(self, store):
        def writer(n):
            for i in range(20):
                store.store_record(_record(f"t{n}-{i}", f"prompt {n} {i}"))

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.count() == 80
