"""
Hook registry.

A hook is a named piece of guidance (summary, examples, best practices)
that an assistant should consult before certain tool uses. Hooks are
stored as ordinary records with ``category="hook"``, so they are indexed,
persisted and searched exactly like transactions. The full definition
rides along in the record context and is restored on lookup.
"""

import json
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .types import Record, RecordContext, validate_id

HOOK_CATEGORY = "hook"
HOOK_SESSION = "hooks"
HOOK_ID_PREFIX = "hook-"
# Key in RecordContext.environment holding the serialized definition
DEFINITION_KEY = "hook_definition"

Trigger = Literal["SessionStart", "PreToolUse", "PostToolUse", "PreResponse", "PostResponse"]


class _HookModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class HookDocumentation(_HookModel):
    summary: str
    examples: list[str] = Field(default_factory=list)
    best_practices: list[str] = Field(default_factory=list, alias="bestPractices")


class HookDefinition(_HookModel):
    """A hook as producers describe it (camelCase on the wire)."""
    id: str
    name: str
    description: str = ""
    version: str = "1.0.0"
    triggers: list[Trigger] = Field(default_factory=list)
    rag_query: Optional[str] = Field(default=None, alias="ragQuery")
    documentation: HookDocumentation

    @property
    def record_id(self) -> str:
        return f"{HOOK_ID_PREFIX}{self.id}"


def parse_hook(data: object) -> HookDefinition:
    """
    Validate a decoded JSON value as a hook definition.

    Raises:
        ValidationError: not an object, or missing/invalid fields
    """
    if not isinstance(data, dict):
        raise ValidationError.schema_failed("hook", f"expected object, got {type(data).__name__}")
    try:
        hook = HookDefinition.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError.schema_failed("hook", f"{e.error_count()} validation error(s)") from e
    validate_id(hook.record_id)
    return hook


def hook_to_record(hook: HookDefinition) -> Record:
    doc = hook.documentation
    return Record(
        id=hook.record_id,
        session_id=HOOK_SESSION,
        prompt_text=f"{hook.name}\n{hook.description}\n{doc.summary}",
        prompt_type="hook",
        result_text="\n".join(doc.examples + doc.best_practices) or None,
        context=RecordContext(
            environment={DEFINITION_KEY: hook.model_dump_json(by_alias=True)},
        ),
        tags={"hook", *(f"trigger:{t}" for t in hook.triggers)},
        category=HOOK_CATEGORY,
    )


def record_to_hook(record: Record) -> Optional[HookDefinition]:
    """The definition stored with a hook record, or None for other records."""
    if record.category != HOOK_CATEGORY:
        return None
    raw = record.context.environment.get(DEFINITION_KEY)
    if not raw:
        return None
    try:
        return HookDefinition.model_validate(json.loads(raw))
    except (ValueError, PydanticValidationError):
        return None
