"""
Queue drain processor.

Producers append JSON lines to one queue file per category under
``<data_dir>/queue/``. The processor periodically claims each file (atomic
rename to ``*.draining``), converts every valid line into records, hands
them to the retrieval engine, and deletes the claimed file once the whole
batch has been attempted.

Delivery is at-least-once: a drain interrupted after indexing but before
the delete leaves the ``.draining`` file behind and it is processed again
on the next tick. Record ids are derived from the entry content, so the
replay overwrites instead of duplicating.
"""

import hashlib
import json
import logging
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from .engine import RetrievalEngine
from .errors import RecallError
from .queue_entries import (
    PREVIEW_CHARS,
    EditEntry,
    EntryContext,
    IndexedFilesEntry,
    PromptEntry,
    QueueEntry,
    TransactionEntry,
    parse_entry,
    parse_line,
)
from .resilience import ErrorHandler
from .types import QUEUE_PROCESSED_TAG, Record, RecordContext, now_ms

logger = logging.getLogger(__name__)

QUEUE_FILES = {
    "transaction": "transactions.jsonl",
    "prompt": "prompts.jsonl",
    "edit": "edits.jsonl",
    "indexed_files": "indexed_files.jsonl",
}
LEGACY_TRANSACTIONS = "transactions.json"
CLAIM_SUFFIX = ".draining"

PROMPT_LOG = "prompts.log"
EDIT_LOG = "edits.log"

# Edits smaller than this on both sides are logged but not recorded
SIGNIFICANT_EDIT_CHARS = 100

DEFAULT_INTERVAL = 5.0
DEFAULT_GRACE_PERIOD = 5.0


@dataclass
class CategoryReport:
    """Outcome of draining one queue file."""
    category: str
    source: Optional[str] = None
    lines: int = 0
    skipped: int = 0
    saved: int = 0
    failed: int = 0


@dataclass
class DrainReport:
    started_at: int = field(default_factory=now_ms)
    duration: float = 0.0
    categories: dict[str, CategoryReport] = field(default_factory=dict)

    @property
    def saved(self) -> int:
        return sum(c.saved for c in self.categories.values())

    @property
    def failed(self) -> int:
        return sum(c.failed for c in self.categories.values())

    @property
    def skipped(self) -> int:
        return sum(c.skipped for c in self.categories.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "duration": round(self.duration, 3),
            "saved": self.saved,
            "failed": self.failed,
            "skipped": self.skipped,
            "categories": {
                name: {
                    "source": c.source,
                    "lines": c.lines,
                    "skipped": c.skipped,
                    "saved": c.saved,
                    "failed": c.failed,
                }
                for name, c in self.categories.items()
            },
        }


# -----------------------------------------------------------------------------
# Entry -> Record conversion
# -----------------------------------------------------------------------------

def entry_key(entry: QueueEntry) -> str:
    """Stable digest of an entry's content."""
    canonical = json.dumps(entry.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


def _record_context(ctx: EntryContext, files: Optional[list[Any]] = None) -> RecordContext:
    return RecordContext(
        cwd=ctx.cwd or os.getcwd(),
        platform=ctx.platform or sys.platform,
        environment=dict(ctx.environment),
        tools_available=list(ctx.tools_available),
        files=list(files if files is not None else ctx.files),
    )


def _session(entry_session: Optional[str], ctx: EntryContext) -> str:
    return entry_session or ctx.cwd or "unknown"


def transaction_to_record(entry: TransactionEntry) -> Record:
    return Record(
        id=entry.id or f"tx-{entry_key(entry)}",
        timestamp=entry.timestamp or now_ms(),
        session_id=_session(entry.session_id, entry.context),
        prompt_text=entry.prompt,
        prompt_type=entry.prompt_type,
        result_text=entry.result.output,
        context=_record_context(entry.context),
        success=entry.result.success,
        error=entry.result.error,
        duration=int(entry.result.duration),
        tools_used=list(entry.result.tools_used),
        tags=set(entry.metadata.tags) | {QUEUE_PROCESSED_TAG},
        category=entry.metadata.category,
    )


def prompt_to_record(entry: PromptEntry) -> Record:
    return Record(
        id=entry.id or f"prompt-{entry_key(entry)}",
        timestamp=entry.timestamp or now_ms(),
        session_id=_session(entry.session_id, entry.context),
        prompt_text=entry.prompt,
        prompt_type="user",
        context=_record_context(entry.context),
        tags={"prompt", QUEUE_PROCESSED_TAG},
    )


def is_significant_edit(entry: EditEntry) -> bool:
    return (len(entry.new_content) > SIGNIFICANT_EDIT_CHARS
            or len(entry.old_content) > SIGNIFICANT_EDIT_CHARS)


def edit_to_record(entry: EditEntry) -> Record:
    old_size, new_size = len(entry.old_content), len(entry.new_content)
    return Record(
        id=entry.id or f"edit-{entry_key(entry)}",
        timestamp=entry.timestamp or now_ms(),
        session_id=_session(entry.session_id, entry.context),
        prompt_text=f"{entry.operation} {entry.file_path}",
        prompt_type="file_edit",
        result_text=f"{entry.operation}: {old_size} → {new_size} chars",
        context=_record_context(entry.context, files=[{"path": entry.file_path}]),
        tools_used=[entry.operation],
        tags={"file_edit", entry.operation, QUEUE_PROCESSED_TAG, "auto_tracked"},
        category="file_modification",
    )


def file_hash(path: str, given: Optional[str] = None) -> str:
    """The producer's content hash, or a digest of the path when absent."""
    return given or hashlib.md5(path.encode("utf-8")).hexdigest()


def indexed_file_to_record(entry: IndexedFilesEntry, path: str, size: int) -> Record:
    project = entry.project_dir or ""
    digest = hashlib.sha256(f"{project}\0{path}".encode("utf-8")).hexdigest()[:32]
    return Record(
        id=f"file-{digest}",
        timestamp=entry.timestamp or now_ms(),
        session_id=project or "unknown",
        prompt_text=f"indexed file {path}",
        prompt_type="indexed_file",
        result_text=f"{size} bytes" + (f" in {project}" if project else ""),
        context=RecordContext(cwd=project or os.getcwd(), files=[{"path": path, "size": size}]),
        tags={"indexed_file", QUEUE_PROCESSED_TAG},
        category="indexed_file",
    )


# -----------------------------------------------------------------------------
# Processor
# -----------------------------------------------------------------------------

class QueueProcessor:
    """
    Drains queue files into the retrieval engine on a background thread.

    Drains never overlap: a tick that finds one in progress is skipped.
    """

    def __init__(
        self,
        engine: RetrievalEngine,
        queue_dir: Path,
        *,
        log_dir: Optional[Path] = None,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self._engine = engine
        self._queue_dir = Path(queue_dir)
        self._log_dir = Path(log_dir) if log_dir is not None else self._queue_dir.parent
        self._handler = error_handler if error_handler is not None else engine.error_handler
        self._drain_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_report: Optional[DrainReport] = None
        self._drains = 0

    @property
    def queue_dir(self) -> Path:
        return self._queue_dir

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, interval: float = DEFAULT_INTERVAL) -> None:
        """Drain once now, then every ``interval`` seconds on a daemon thread."""
        with self._state_lock:
            if self._thread is not None:
                logger.warning("Queue processor already running")
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run, args=(interval,), name="recall-queue", daemon=True,
            )

        logger.info("Starting queue processor (interval: %.1fs)", interval)
        self._tick()
        self._thread.start()

    def _run(self, interval: float) -> None:
        while not self._stop_event.wait(interval):
            self._tick()

    def _tick(self) -> Optional[DrainReport]:
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Drain already in progress, skipping tick")
            return None
        try:
            return self._drain_locked()
        except Exception as e:
            # Keep the timer alive; the next tick retries
            self._handler.handle(e, {"operation": "drain"})
            return None
        finally:
            self._drain_lock.release()

    def stop(self, grace_period: float = DEFAULT_GRACE_PERIOD) -> Optional[DrainReport]:
        """
        Stop ticking, wait for an in-flight drain, then drain once more.

        Each wait is bounded by ``grace_period``. Returns the final drain's
        report, or None if it did not finish in time.
        """
        self._stop_event.set()
        with self._state_lock:
            thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(grace_period)
            if thread.is_alive():
                logger.warning("Queue processor thread still busy after %.1fs", grace_period)

        logger.info("Processing remaining items before shutdown...")
        result: list[DrainReport] = []

        def final_drain():
            if not self._drain_lock.acquire(timeout=grace_period):
                return
            try:
                result.append(self._drain_locked())
            except Exception as e:
                self._handler.handle(e, {"operation": "final_drain"})
            finally:
                self._drain_lock.release()

        helper = threading.Thread(target=final_drain, name="recall-queue-final", daemon=True)
        helper.start()
        helper.join(grace_period)
        if helper.is_alive():
            logger.warning("Final drain did not finish within %.1fs", grace_period)
            return None
        logger.info("Queue processor stopped")
        return result[0] if result else None

    # -------------------------------------------------------------------------
    # Draining
    # -------------------------------------------------------------------------

    def drain(self) -> DrainReport:
        """Drain every queue now, waiting for any in-flight drain first."""
        with self._drain_lock:
            return self._drain_locked()

    def _drain_locked(self) -> DrainReport:
        report = DrainReport()
        start = time.monotonic()
        for category in QUEUE_FILES:
            try:
                report.categories[category] = self._drain_category(category)
            except Exception as e:
                # Claim stays on disk for the next tick; other queues still drain
                self._handler.handle(e, {"operation": "drain_category", "category": category})
                report.categories[category] = CategoryReport(category)
        report.duration = time.monotonic() - start
        self._last_report = report
        self._drains += 1
        if report.saved or report.failed or report.skipped:
            logger.info(
                "Drained queues: %d saved, %d failed, %d skipped",
                report.saved, report.failed, report.skipped,
            )
        return report

    def _claim(self, path: Path) -> Optional[Path]:
        """
        Take ownership of a queue file by renaming it.

        A leftover claimed file from an interrupted drain is returned as-is;
        new lines stay in the live file until the next tick.
        """
        claimed = path.with_name(path.name + CLAIM_SUFFIX)
        if claimed.exists():
            logger.info("Resuming interrupted drain of %s", path.name)
            return claimed
        try:
            os.replace(path, claimed)
        except FileNotFoundError:
            return None
        return claimed

    def _drain_category(self, category: str) -> CategoryReport:
        report = CategoryReport(category)
        path = self._queue_dir / QUEUE_FILES[category]
        claimed = self._claim(path)

        entries: list[QueueEntry] = []
        if claimed is not None:
            try:
                entries = self._read_jsonl(claimed, report)
            except OSError as e:
                self._handler.handle(e, {"operation": "read_queue", "path": str(claimed)})
                return report
            report.source = path.name

        if category == "transaction" and not entries and report.skipped == 0:
            legacy = self._claim(self._queue_dir / LEGACY_TRANSACTIONS)
            if legacy is not None:
                if claimed is not None:
                    claimed.unlink(missing_ok=True)
                claimed = legacy
                try:
                    entries = self._read_legacy(legacy, report)
                except OSError as e:
                    self._handler.handle(e, {"operation": "read_queue", "path": str(legacy)})
                    return report
                report.source = LEGACY_TRANSACTIONS

        if claimed is None:
            return report

        if entries:
            logger.info("Processing %d %s entries from %s", len(entries), category, report.source)
            self._process(category, entries, report)

        # Whole batch attempted; failures are counted, not retried
        claimed.unlink(missing_ok=True)
        if report.saved or report.failed:
            logger.info(
                "Saved %d %s records%s", report.saved, category,
                f", {report.failed} failed" if report.failed else "",
            )
        return report

    def _read_jsonl(self, path: Path, report: CategoryReport) -> list[QueueEntry]:
        # Split on b"\n" only: entries may carry raw U+2028 and friends
        entries = []
        for raw in path.read_bytes().split(b"\n"):
            if not raw.strip():
                continue
            report.lines += 1
            try:
                line = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                report.skipped += 1
                logger.warning("Skipping undecodable queue line in %s: %r (%s)",
                               path.name, raw[:PREVIEW_CHARS], e.reason)
                continue
            try:
                entries.append(parse_line(line))
            except RecallError as e:
                report.skipped += 1
                logger.warning("Skipping invalid queue line in %s: %s (%s)",
                               path.name, line[:PREVIEW_CHARS], e)
        return entries

    def _read_legacy(self, path: Path, report: CategoryReport) -> list[QueueEntry]:
        """Older producers wrote a single JSON array of transactions."""
        try:
            text = path.read_bytes().decode("utf-8")
            items = json.loads(text) if text.strip() else []
        except (ValueError, RecursionError) as e:
            logger.warning("Skipping unreadable legacy queue %s: %s", path.name, e)
            report.skipped += 1
            return []
        if not isinstance(items, list):
            logger.warning("Skipping legacy queue %s: not a JSON array", path.name)
            report.skipped += 1
            return []

        entries = []
        for item in items:
            report.lines += 1
            if isinstance(item, dict):
                item = {"type": "transaction", **item}
            try:
                entries.append(parse_entry(item))
            except RecallError as e:
                report.skipped += 1
                logger.warning("Skipping invalid legacy entry: %s (%s)",
                               json.dumps(item, default=str)[:PREVIEW_CHARS], e)
        return entries

    def _process(self, category: str, entries: list[QueueEntry], report: CategoryReport) -> None:
        if category == "prompt":
            self._append_log(PROMPT_LOG, (
                {"timestamp": e.timestamp, "prompt": e.prompt,
                 "context": e.context.model_dump(by_alias=True)}
                for e in entries if isinstance(e, PromptEntry)
            ))
        elif category == "edit":
            self._append_log(EDIT_LOG, (
                {"timestamp": e.timestamp, "filePath": e.file_path, "operation": e.operation,
                 "oldSize": len(e.old_content), "newSize": len(e.new_content),
                 "context": e.context.model_dump(by_alias=True)}
                for e in entries if isinstance(e, EditEntry)
            ))

        for entry in entries:
            for record in self._records_for(entry):
                if self._index(record):
                    report.saved += 1
                else:
                    report.failed += 1

    def _records_for(self, entry: QueueEntry) -> Iterable[Record]:
        """Records an entry produces. Entries in the wrong file are still honoured."""
        if isinstance(entry, TransactionEntry):
            yield transaction_to_record(entry)
        elif isinstance(entry, PromptEntry):
            yield prompt_to_record(entry)
        elif isinstance(entry, EditEntry):
            if is_significant_edit(entry):
                yield edit_to_record(entry)
        elif isinstance(entry, IndexedFilesEntry):
            for f in entry.files:
                try:
                    self._engine.store.record_indexed_file(
                        f.path, file_hash(f.path, f.hash), f.size, f.chunks,
                        indexed_at=entry.timestamp,
                    )
                except Exception as e:
                    self._handler.handle(e, {"operation": "record_indexed_file", "path": f.path})
                yield indexed_file_to_record(entry, f.path, f.size)
            logger.info("Processed %d indexed files from %s", len(entry.files), entry.project_dir)

    def _index(self, record: Record) -> bool:
        try:
            return bool(self._engine.index_record(record))
        except Exception as e:
            self._handler.handle(e, {"operation": "index_record", "id": record.id})
            return False

    def _append_log(self, name: str, rows: Iterable[dict[str, Any]]) -> None:
        lines = [json.dumps(r, ensure_ascii=False, default=str) for r in rows]
        if not lines:
            return
        path = self._log_dir / name
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
        except OSError as e:
            self._handler.handle(e, {"operation": "append_log", "path": str(path)})

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Pending lines per category and whether a drain is running."""
        stats: dict[str, Any] = dict(pending_counts(self._queue_dir))
        stats["is_processing"] = self._drain_lock.locked()
        stats["is_running"] = self.is_running
        stats["drains"] = self._drains
        stats["last_drain"] = self._last_report.to_dict() if self._last_report else None
        return stats


def _count_lines(path: Path) -> int:
    if not path.exists():
        return 0
    with open(path, "rb") as f:
        return sum(1 for line in f if line.strip())


def pending_counts(queue_dir: Path) -> dict[str, int]:
    """Unprocessed entries per category, including interrupted drains."""
    queue_dir = Path(queue_dir)
    counts = {}
    for category, name in QUEUE_FILES.items():
        path = queue_dir / name
        counts[category] = _count_lines(path) + _count_lines(path.with_name(name + CLAIM_SUFFIX))

    for name in (LEGACY_TRANSACTIONS, LEGACY_TRANSACTIONS + CLAIM_SUFFIX):
        legacy = queue_dir / name
        if not legacy.exists():
            continue
        try:
            items = json.loads(legacy.read_bytes().decode("utf-8"))
        except (ValueError, RecursionError):
            continue
        if isinstance(items, list):
            counts["transaction"] += len(items)
    return counts
