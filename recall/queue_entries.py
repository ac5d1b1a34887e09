"""
Queue entry schema.

Producers (editor hooks, the file indexer, the CLI) cannot reach the
service directly, so they append one JSON object per line to a queue file
per category. Each line is validated independently into one of the entry
models below, discriminated by ``type``.

Field names follow the producers' camelCase on the wire; the models expose
snake_case attributes.
"""

import json
import os
import time
from pathlib import Path
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

# Preview length for skipped lines in logs
PREVIEW_CHARS = 100


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EntryContext(_WireModel):
    """Producer environment. Missing fields get defaults at conversion time."""
    cwd: Optional[str] = None
    platform: Optional[str] = None
    environment: dict[str, str] = Field(default_factory=dict)
    tools_available: list[str] = Field(default_factory=list, alias="toolsAvailable")
    files: list[Any] = Field(default_factory=list)


class TransactionResult(_WireModel):
    success: bool = True
    output: Optional[str] = None
    error: Optional[str] = None
    duration: float = 0
    tools_used: list[str] = Field(default_factory=list, alias="toolsUsed")

    @field_validator("output", "error", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        # Hooks sometimes pass structured tool output or error objects
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False, default=str)


class TransactionMetadata(_WireModel):
    tags: list[str] = Field(default_factory=list)
    category: Optional[str] = None
    related_hooks: list[str] = Field(default_factory=list, alias="relatedHooks")


class _Entry(_WireModel):
    timestamp: Optional[int] = None
    pid: Optional[int] = None


class TransactionEntry(_Entry):
    """A prompt and its outcome."""
    type: Literal["transaction"]
    id: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    prompt: str
    prompt_type: str = Field(default="user", alias="promptType")
    context: EntryContext = Field(default_factory=EntryContext)
    result: TransactionResult = Field(default_factory=TransactionResult)
    metadata: TransactionMetadata = Field(default_factory=TransactionMetadata)


class PromptEntry(_Entry):
    """A user prompt as submitted, before any result."""
    type: Literal["prompt"]
    id: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    prompt: str
    context: EntryContext = Field(default_factory=EntryContext)


class EditEntry(_Entry):
    """A file modification made by a tool."""
    type: Literal["edit"]
    id: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    file_path: str = Field(alias="filePath")
    operation: str = "edit"
    old_content: str = Field(default="", alias="oldContent")
    new_content: str = Field(default="", alias="newContent")
    context: EntryContext = Field(default_factory=EntryContext)


class IndexedFile(_WireModel):
    path: str
    size: int = 0
    hash: Optional[str] = None
    chunks: int = 0


class IndexedFilesEntry(_Entry):
    """A batch of project files the indexer has processed."""
    type: Literal["indexed_files"]
    files: list[IndexedFile]
    project_dir: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("project_dir", "projectDir"),
    )


QueueEntry = Annotated[
    Union[TransactionEntry, PromptEntry, EditEntry, IndexedFilesEntry],
    Field(discriminator="type"),
]

_entry_adapter: TypeAdapter = TypeAdapter(QueueEntry)

# Spellings seen from older producers
_TYPE_ALIASES = {"indexed-files": "indexed_files"}


def parse_entry(data: Any) -> QueueEntry:
    """
    Validate one decoded JSON value as a queue entry.

    Raises:
        ValidationError: not an object, unknown type, or bad fields
    """
    if not isinstance(data, dict):
        raise ValidationError.schema_failed("queue entry", f"expected object, got {type(data).__name__}")
    kind = data.get("type")
    if kind in _TYPE_ALIASES:
        data = {**data, "type": _TYPE_ALIASES[kind]}
    try:
        return _entry_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError.schema_failed(
            f"queue entry (type={kind!r})", f"{e.error_count()} validation error(s)"
        ) from e


def parse_line(line: str) -> QueueEntry:
    """
    Parse one queue line.

    Raises:
        ValidationError: invalid JSON or schema
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ValidationError.invalid_input("queue line", line[:PREVIEW_CHARS], f"invalid JSON: {e.msg}") from e
    except (ValueError, RecursionError) as e:
        # Nesting too deep for the decoder, or an unparseable number
        raise ValidationError.invalid_input(
            "queue line", line[:PREVIEW_CHARS], f"invalid JSON: {type(e).__name__}"
        ) from e
    try:
        return parse_entry(data)
    except RecursionError as e:
        raise ValidationError.invalid_input(
            "queue line", line[:PREVIEW_CHARS], "nesting too deep"
        ) from e


def append_entry(path: Path, entry: dict[str, Any]) -> None:
    """
    Append an entry to a queue file (producer side).

    Fills ``timestamp`` and ``pid`` when absent. One write per line, so
    concurrent producers appending to the same file never interleave
    within a line.
    """
    record = {"timestamp": int(time.time() * 1000), "pid": os.getpid(), **entry}
    line = json.dumps(record, ensure_ascii=False) + "\n"
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(line)
