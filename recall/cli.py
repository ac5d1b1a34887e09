"""
CLI interface for recall.

Usage:
    recall serve                 # drain queues in the background until Ctrl+C
    recall drain                 # drain queues once and exit
    recall search "query text"
    recall history --session ID --limit 20 --offset 40
    recall add-hook hook.json
    recall check-hooks "refactor the auth module"
    recall stats
"""

import json
import os
import signal
import sys
import threading
from pathlib import Path
from typing import NoReturn, Optional

import typer
from typing_extensions import Annotated

from .config import RecallConfig, load_or_create_config
from .engine import RetrievalEngine, build_engine
from .errors import RecallError, log_exception
from .logging_config import configure_ops_log, configure_quiet_mode, enable_debug_mode, remove_ops_log
from .queue_entries import append_entry
from .queue_processor import QUEUE_FILES, QueueProcessor, pending_counts
from .types import Record


# Configure quiet mode by default (suppress verbose library output)
# Set RECALL_VERBOSE=1 to enable debug mode via environment
if os.environ.get("RECALL_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"recall {version('recall-memory')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_data_dir_override: Optional[Path] = None


def _data_dir_callback(value: Optional[Path]):
    global _data_dir_override
    if value is not None:
        _data_dir_override = value


app = typer.Typer(
    name="recall",
    help="Semantic memory for coding-assistant sessions.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    data_dir: Annotated[Optional[Path], typer.Option(
        "--data-dir", "-d",
        envvar="RECALL_DATA_DIR",
        help="Data directory (default: ~/.recall/)",
        callback=_data_dir_callback,
        is_eager=True,
    )] = None,
):
    """Semantic memory for coding-assistant sessions."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

JsonOption = Annotated[
    bool,
    typer.Option("--json", "-j", help="Output as JSON"),
]

LimitOption = Annotated[
    Optional[int],
    typer.Option("--limit", "-n", help="Maximum results to return"),
]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _fail(e: Exception, context: str) -> NoReturn:
    """Report an error the way every command does, then exit 1."""
    log_path = log_exception(e, context=f"recall {context}")
    if isinstance(e, RecallError):
        typer.echo(e.formatted_message(), err=True)
    else:
        typer.echo(f"Error: {e}", err=True)
    typer.echo(f"Details logged to {log_path}", err=True)
    raise typer.Exit(1)


def _get_config() -> RecallConfig:
    try:
        return load_or_create_config(_data_dir_override)
    except (RecallError, OSError) as e:
        _fail(e, "config")


def _open_engine(config: RecallConfig) -> RetrievalEngine:
    """Build and initialize the engine, exiting cleanly on fatal errors."""
    try:
        engine = build_engine(config)
    except RecallError as e:
        _fail(e, "startup")
    engine.initialize()
    return engine


def _format_record(record: Record, score: Optional[float] = None) -> str:
    prompt = " ".join(record.prompt_text.split())
    if len(prompt) > 100:
        prompt = prompt[:97] + "..."
    prefix = f"{record.id}"
    if score is not None:
        prefix += f" ({score:.2f})"
    tags = f"  [{', '.join(sorted(record.tags))}]" if record.tags else ""
    return f"- {prefix}  {prompt}{tags}"


def _record_to_dict(record: Record, score: Optional[float] = None) -> dict:
    d = {
        "id": record.id,
        "timestamp": record.timestamp,
        "session_id": record.session_id,
        "prompt": record.prompt_text,
        "result": record.result_text,
        "tags": sorted(record.tags),
        "category": record.category,
    }
    if score is not None:
        d["score"] = round(score, 4)
    return d


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def serve(
    interval: Annotated[Optional[float], typer.Option(
        "--interval", "-i",
        help="Seconds between queue drains",
    )] = None,
):
    """Run the queue processor until interrupted."""
    config = _get_config()
    ops_handler = configure_ops_log(config.path)
    engine = _open_engine(config)
    processor = QueueProcessor(engine, config.queue_dir)

    stop = threading.Event()

    def _on_signal(signum, frame):
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    processor.start(interval or config.processor_interval)
    typer.echo(f"Watching {config.queue_dir} (Ctrl+C to stop)", err=True)
    try:
        while not stop.wait(1.0):
            pass
    finally:
        typer.echo("Shutting down...", err=True)
        processor.stop(config.grace_period)
        engine.close()
        remove_ops_log(ops_handler)


@app.command()
def drain(
    output_json: JsonOption = False,
):
    """Drain all queue files once."""
    config = _get_config()
    engine = _open_engine(config)
    try:
        report = QueueProcessor(engine, config.queue_dir).drain()
    finally:
        engine.close()

    if output_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
        return
    for name, c in report.categories.items():
        if c.lines:
            typer.echo(f"{name}: {c.saved} saved, {c.failed} failed, {c.skipped} skipped")
    typer.echo(f"Total: {report.saved} saved, {report.failed} failed, {report.skipped} skipped")


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query")],
    limit: LimitOption = None,
    threshold: Annotated[Optional[float], typer.Option(
        "--threshold", "-t",
        help="Minimum score (default: 0.7 remote, 0.1 local)",
    )] = None,
    output_json: JsonOption = False,
):
    """Find records similar to a query."""
    config = _get_config()
    engine = _open_engine(config)
    try:
        result = engine.search(query, limit, threshold)
    except RecallError as e:
        _fail(e, "search")
    finally:
        engine.close()

    if output_json:
        typer.echo(json.dumps({
            "source": result.source,
            "confidence": round(result.confidence, 4),
            "records": [_record_to_dict(r, s) for r, s in zip(result.records, result.scores)],
        }, indent=2))
        return
    if not result.records:
        typer.echo("No results.")
        return
    typer.echo(f"{len(result)} result(s) from {result.source} search, confidence {result.confidence:.2f}")
    for record, score in zip(result.records, result.scores):
        typer.echo(_format_record(record, score))


@app.command()
def stats(
    output_json: JsonOption = False,
):
    """Show index and store statistics."""
    config = _get_config()
    engine = _open_engine(config)
    try:
        data = engine.get_stats()
    finally:
        engine.close()

    if output_json:
        typer.echo(json.dumps(data, indent=2, default=str))
        return
    store = data.get("store", {})
    typer.echo(f"Records:        {data['total_records']}")
    typer.echo(f"Terms:          {data['total_terms']}")
    typer.echo(f"Indexed files:  {store.get('indexed_files', 0)}")
    typer.echo(f"Database:       {store.get('db_path', config.db_path)} ({store.get('db_size_bytes', 0)} bytes)")
    typer.echo(f"Remote backend: {'yes' if data['using_remote_backend'] else 'no (local search)'}")
    if data["pending_remote_sync"]:
        typer.echo(f"Unsynced:       {data['pending_remote_sync']} record(s) awaiting the backend")
    typer.echo(f"Embedding:      {data['embedding_model']}")
    typer.echo(f"Circuit:        {data['circuit']['state']}")


@app.command()
def delete(
    id: Annotated[str, typer.Argument(help="Record ID to delete")],
):
    """Delete a record from the store and both indexes."""
    config = _get_config()
    engine = _open_engine(config)
    try:
        if engine.store.get_record(id) is None:
            typer.echo(f"Not found: {id}", err=True)
            raise typer.Exit(1)
        if not engine.delete_record(id):
            typer.echo(f"Failed to delete {id}", err=True)
            raise typer.Exit(1)
    finally:
        engine.close()
    typer.echo(f"Deleted {id}")


@app.command()
def history(
    session: Annotated[Optional[str], typer.Option(
        "--session", "-s",
        help="Only records from this session",
    )] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Page size")] = 50,
    offset: Annotated[int, typer.Option("--offset", help="Records to skip")] = 0,
    output_json: JsonOption = False,
):
    """List stored records, newest first."""
    config = _get_config()
    engine = _open_engine(config)
    try:
        records = engine.get_history(session, limit, offset)
    except RecallError as e:
        _fail(e, "history")
    finally:
        engine.close()

    if output_json:
        typer.echo(json.dumps({
            "offset": offset,
            "limit": limit,
            "records": [_record_to_dict(r) for r in records],
        }, indent=2))
        return
    if not records:
        typer.echo("No records.")
        return
    for record in records:
        typer.echo(_format_record(record))


@app.command("add-hook")
def add_hook(
    source: Annotated[str, typer.Argument(help="Hook definition JSON file ('-' reads stdin)")],
):
    """Register a hook, replacing any hook with the same id."""
    from .hooks import parse_hook

    try:
        raw = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
        hook = parse_hook(json.loads(raw))
    except (RecallError, OSError, ValueError) as e:
        _fail(e, "add-hook")

    config = _get_config()
    engine = _open_engine(config)
    try:
        ok = engine.index_hook(hook)
    finally:
        engine.close()
    if not ok:
        typer.echo(f"Failed to store hook {hook.id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Registered hook {hook.id} ({hook.name})")


@app.command("check-hooks")
def check_hooks(
    prompt: Annotated[str, typer.Argument(help="Task or prompt about to be worked on")],
    trigger: Annotated[Optional[str], typer.Option(
        "--trigger",
        help="Only hooks for this trigger point (e.g. PreToolUse)",
    )] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum hooks")] = 5,
    output_json: JsonOption = False,
):
    """Show hooks and past records relevant to a prompt."""
    config = _get_config()
    engine = _open_engine(config)
    try:
        hooks = engine.find_relevant_hooks(prompt, limit, trigger=trigger)
        related = engine.search(prompt, limit)
    except RecallError as e:
        _fail(e, "check-hooks")
    finally:
        engine.close()

    past = [(r, s) for r, s in zip(related.records, related.scores) if r.category != "hook"]
    if output_json:
        typer.echo(json.dumps({
            "hooks": [h.model_dump(by_alias=True) for h in hooks],
            "records": [_record_to_dict(r, s) for r, s in past],
            "source": related.source,
        }, indent=2))
        return
    if not hooks and not past:
        typer.echo("No relevant hooks or history.")
        return
    for hook in hooks:
        typer.echo(f"* {hook.name}: {hook.documentation.summary}")
        for practice in hook.documentation.best_practices:
            typer.echo(f"    - {practice}")
    for record, score in past:
        typer.echo(_format_record(record, score))


@app.command()
def status(
    output_json: JsonOption = False,
):
    """Show pending queue entries."""
    config = _get_config()
    queue_dir = config.queue_dir
    pending = pending_counts(queue_dir)

    if output_json:
        typer.echo(json.dumps({"queue_dir": str(queue_dir), "pending": pending}, indent=2))
        return
    typer.echo(f"Queue directory: {queue_dir}")
    for category, count in pending.items():
        typer.echo(f"  {category}: {count} pending")


@app.command("enqueue-prompt")
def enqueue_prompt(
    text: Annotated[str, typer.Argument(help="Prompt text ('-' reads stdin)")],
    session: Annotated[Optional[str], typer.Option(
        "--session",
        help="Session identifier",
    )] = None,
):
    """Queue a prompt for the next drain."""
    if text == "-":
        text = sys.stdin.read()
    if not text.strip():
        typer.echo("Error: empty prompt", err=True)
        raise typer.Exit(1)
    config = _get_config()
    entry = {
        "type": "prompt",
        "prompt": text,
        "context": {"cwd": os.getcwd(), "platform": sys.platform},
    }
    if session:
        entry["sessionId"] = session
    path = config.queue_dir / QUEUE_FILES["prompt"]
    append_entry(path, entry)
    typer.echo(f"Queued prompt in {path}")


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        log_path = log_exception(e, context="recall CLI")
        if isinstance(e, RecallError):
            typer.echo(e.formatted_message(), err=True)
        else:
            typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
