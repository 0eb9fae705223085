"""Pydantic v2 models for templates, rendered output, and generation results.

Defines the data model shared by every stage of the engine: variable
definitions, file entries and the template that groups them, the in-memory
``RenderedFile``, and the reportable outcome of a generation or update.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from rescaffold.utils import sha256_hex


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Category(str, Enum):
    """Mutability category of a generated file."""

    NEVER = "never"
    PROTECTED_ONCE = "protected_once"
    ALWAYS_UPDATE = "always_update"


class VariableType(str, Enum):
    """Declared type of a template variable."""

    STR = "str"
    BOOL = "bool"
    INT = "int"
    CHOICE = "choice"


class ConflictMode(str, Enum):
    """How a three-way conflict is surfaced on disk."""

    SIDECAR = "sidecar"
    MARKERS = "markers"


class FileAction(str, Enum):
    """Terminal decision for one output path."""

    CREATED = "created"
    UPDATED = "updated"
    OVERWRITTEN = "overwritten"
    REMOVED = "removed"
    UNCHANGED = "unchanged"
    KEPT = "kept"
    SKIPPED = "skipped"
    CONFLICT = "conflict"
    FAILED = "failed"


WRITE_ACTIONS = frozenset({FileAction.CREATED, FileAction.UPDATED, FileAction.OVERWRITTEN})


class ResultStatus(str, Enum):
    SUCCESS = "success"
    SUCCESS_WITH_CONFLICTS = "success_with_conflicts"
    FAILURE = "failure"


# ---------------------------------------------------------------------------
# Template definition
# ---------------------------------------------------------------------------


class VariableDefinition(BaseModel):
    """A single template variable and its validation rule."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Identifier used in templates and conditions")
    type: VariableType = Field(default=VariableType.STR)
    default: Any = Field(default=None, description="Value used when no answer is supplied")
    help: str = Field(default="", description="Prompt text shown in interactive mode")
    required: bool = Field(default=False, description="Reject empty values")
    pattern: Optional[str] = Field(default=None, description="Regex the value must fully match")
    choices: list[Any] = Field(default_factory=list, description="Allowed values")
    derive: Optional[str] = Field(
        default=None,
        description="Jinja2 expression computing the value from other variables",
    )

    @field_validator("name")
    @classmethod
    def _name_is_identifier(cls, value: str) -> str:
        if not _IDENTIFIER_RE.match(value):
            raise ValueError(f"variable name {value!r} is not a valid identifier")
        return value

    @field_validator("pattern")
    @classmethod
    def _pattern_compiles(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            re.compile(value)
        return value

    @property
    def is_derived(self) -> bool:
        return self.derive is not None


class FileEntry(BaseModel):
    """One renderable file of a template."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="Template-relative path expression")
    content: Union[str, bytes] = Field(default="", description="Content template or raw bytes")
    when: Optional[str] = Field(default=None, description="Inclusion condition")
    category: Optional[Category] = Field(
        default=None, description="Explicit category; falls back to the template policy"
    )
    render: bool = Field(default=True, description="Substitute variables in the body")
    executable: bool = Field(default=False, description="Set executable bits on write")
    source: str = Field(default="", description="Where the body came from, for error messages")

    @property
    def label(self) -> str:
        return self.source or self.path


class PolicyRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    glob: str
    category: Category


class PolicyConfig(BaseModel):
    """Category assignment rules declared by a template."""

    model_config = ConfigDict(frozen=True)

    default: Category = Field(default=Category.ALWAYS_UPDATE)
    rules: list[PolicyRule] = Field(default_factory=list)


class TemplateSpec(BaseModel):
    """The full set of variables and file entries defining a template."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Template identity recorded in the manifest")
    revision: str = Field(default="0", description="Template revision recorded in the manifest")
    variables: list[VariableDefinition] = Field(default_factory=list)
    files: list[FileEntry] = Field(default_factory=list)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)

    @field_validator("revision", mode="before")
    @classmethod
    def _revision_as_str(cls, value: Any) -> str:
        return str(value)

    @field_validator("variables")
    @classmethod
    def _unique_variables(cls, value: list[VariableDefinition]) -> list[VariableDefinition]:
        seen: set[str] = set()
        for var in value:
            if var.name in seen:
                raise ValueError(f"variable {var.name!r} is declared more than once")
            seen.add(var.name)
        return value

    @property
    def variable_names(self) -> frozenset[str]:
        return frozenset(v.name for v in self.variables)

    def variable(self, name: str) -> VariableDefinition:
        for var in self.variables:
            if var.name == name:
                return var
        raise KeyError(name)


# ---------------------------------------------------------------------------
# Render output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RenderedFile:
    """In-memory result of rendering one included ``FileEntry``."""

    path: str
    content: bytes
    category: Category
    source: str = ""
    executable: bool = False

    @property
    def sha256(self) -> str:
        return sha256_hex(self.content)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class ConflictRecord(BaseModel):
    """A reconciliation outcome requiring manual resolution."""

    path: str
    old_hash: Optional[str] = Field(default=None, description="Hash recorded at last generation")
    new_hash: Optional[str] = Field(default=None, description="Hash of the new render")
    disk_hash: Optional[str] = Field(default=None, description="Hash of the file on disk")
    resolution: ConflictMode = Field(default=ConflictMode.SIDECAR)
    sidecar_path: Optional[str] = Field(
        default=None, description="Where the new render was written, in sidecar mode"
    )


class FileOutcome(BaseModel):
    path: str
    category: Category
    action: FileAction
    reclassified: bool = False
    detail: str = ""


class FileFailure(BaseModel):
    path: str
    operation: str
    reason: str


class GenerationResult(BaseModel):
    """Aggregate result of a generate or update run."""

    destination: str
    template: str
    revision: str
    planned: bool = Field(default=False, description="True when nothing was written")
    outcomes: list[FileOutcome] = Field(default_factory=list)
    conflicts: list[ConflictRecord] = Field(default_factory=list)
    failures: list[FileFailure] = Field(default_factory=list)

    @computed_field  # type: ignore[misc]
    @property
    def status(self) -> ResultStatus:
        if self.failures:
            return ResultStatus.FAILURE
        if self.conflicts:
            return ResultStatus.SUCCESS_WITH_CONFLICTS
        return ResultStatus.SUCCESS

    @computed_field  # type: ignore[misc]
    @property
    def changed_paths(self) -> list[str]:
        changed = WRITE_ACTIONS | {FileAction.REMOVED}
        return [o.path for o in self.outcomes if o.action in changed]

    @property
    def conflict_paths(self) -> list[str]:
        return [c.path for c in self.conflicts]

    @property
    def failed_paths(self) -> list[str]:
        return [f.path for f in self.failures]

    def outcome(self, path: str) -> FileOutcome:
        for item in self.outcomes:
            if item.path == path:
                return item
        raise KeyError(path)
