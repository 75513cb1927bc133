"""Parse model output into a validated edit set.

Model responses wrap their JSON in prose or code fences. ``extract_json_object``
finds the first balanced object that actually decodes; the pydantic schema then
checks it. Invalid file entries are skipped one by one so a single bad entry
does not throw away the rest of the response.

This module is headless - no FastAPI or HTTP dependencies.
"""

import json
import logging
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from forgeloop.core.models import Edit, FileAction, FileChange

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_CHARS = 200


def _balanced_end(text: str, start: int) -> Optional[int]:
    """Index just past the brace that closes ``text[start]``, or None."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def extract_json_object(text: str) -> Optional[dict[str, Any]]:
    """Return the first balanced ``{...}`` in *text* that decodes to a dict."""
    start = text.find("{")
    while start != -1:
        end = _balanced_end(text, start)
        if end is None:
            return None
        try:
            value = json.loads(text[start:end])
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class EditPayload(BaseModel):
    """One edit as emitted by the model."""

    search: str = ""
    replace: str
    line: Optional[int] = Field(default=None, ge=1)
    end_line: Optional[int] = Field(default=None, ge=1, alias="endLine")

    model_config = {"populate_by_name": True}

    @property
    def is_usable(self) -> bool:
        return bool(self.search) or (self.line is not None and self.end_line is not None)

    def to_edit(self) -> Edit:
        return Edit(search=self.search, replace=self.replace, line=self.line, end_line=self.end_line)


class FileChangePayload(BaseModel):
    """One file entry as emitted by the model."""

    path: str = Field(min_length=1)
    action: Literal["create", "modify"]
    content: Optional[str] = None
    edits: list[EditPayload] = Field(default_factory=list)

    @field_validator("edits")
    @classmethod
    def drop_unusable_edits(cls, v: list[EditPayload]) -> list[EditPayload]:
        usable = [e for e in v if e.is_usable]
        if len(usable) < len(v):
            logger.warning(f"Dropped {len(v) - len(usable)} edit(s) with empty search and no line range")
        return usable

    @model_validator(mode="after")
    def check_action_payload(self) -> "FileChangePayload":
        if self.action == "create" and self.content is None:
            raise ValueError("create requires content")
        if self.action == "modify" and not self.edits and not self.content:
            raise ValueError("modify requires edits or content")
        return self

    def to_file_change(self) -> FileChange:
        if self.action == "modify" and self.edits:
            return FileChange(
                path=self.path,
                action=FileAction.MODIFY,
                edits=[e.to_edit() for e in self.edits],
            )
        return FileChange(path=self.path, action=FileAction(self.action), content=self.content or "")


class CodeOutput(BaseModel):
    """Validated code output: a description, a risk rating and an edit set."""

    description: str = Field(min_length=1)
    risk: int = Field(ge=1, le=5)
    rollback: str = ""
    files: list[FileChange] = Field(default_factory=list)

    model_config = {"arbitrary_types_allowed": True}

    @field_validator("description")
    @classmethod
    def truncate_description(cls, v: str) -> str:
        return v[:MAX_DESCRIPTION_CHARS]

    @field_validator("files", mode="before")
    @classmethod
    def parse_files(cls, v: Any) -> list[FileChange]:
        if not isinstance(v, list):
            raise ValueError("files must be a list")
        if not v:
            return []
        files = []
        for entry in v:
            if isinstance(entry, FileChange):
                files.append(entry)
                continue
            try:
                files.append(FileChangePayload.model_validate(entry).to_file_change())
            except ValidationError as e:
                path = entry.get("path") if isinstance(entry, dict) else None
                logger.warning(f"Skipping invalid file entry {path!r}: {e.error_count()} error(s)")
        if not files:
            raise ValueError("all file entries were invalid")
        return files


def parse_code_output(text: str) -> Optional[CodeOutput]:
    """Extract and validate a CodeOutput from raw model text.

    Returns:
        CodeOutput, or None (logged) if no valid object was found
    """
    raw = extract_json_object(text or "")
    if raw is None:
        logger.error("No JSON object found in model output")
        return None

    try:
        output = CodeOutput.model_validate(raw)
    except ValidationError as e:
        logger.error(f"Invalid code output: {e}")
        return None

    if not output.files:
        logger.info("Model returned an empty files array (task may already be done)")
    return output
