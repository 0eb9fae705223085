"""rescaffold -- template-driven project generation with three-way updates.

Renders a template of conditional, variable-driven files into a project
tree, records what was generated in a manifest, and later re-syncs the
project against newer template revisions without silently losing local
edits.

Quick usage::

    from rescaffold import ProjectGenerator, load_template

    template = load_template("./templates/py-service")
    generator = ProjectGenerator(template)
    result = await generator.generate("./billing", {"project_name": "billing"})
    ...
    result = await generator.update("./billing")
    for conflict in result.conflicts:
        print(conflict.path, conflict.sidecar_path)
"""

from rescaffold.config import Config
from rescaffold.errors import (
    ConditionSyntaxError,
    CycleError,
    FilesystemError,
    InvalidPathError,
    ManifestError,
    MissingVariableError,
    PathCollisionError,
    RescaffoldError,
    TemplateLoadError,
    UnresolvedVariableError,
    ValidationError,
)
from rescaffold.generator import ProjectGenerator, generate_project, update_project
from rescaffold.manifest import ProjectManifest
from rescaffold.models import (
    Category,
    ConflictMode,
    ConflictRecord,
    FileAction,
    FileEntry,
    GenerationResult,
    RenderedFile,
    ResultStatus,
    TemplateSpec,
    VariableDefinition,
)
from rescaffold.resolver import AnswerSet, resolve_answers
from rescaffold.template_loader import load_template

__version__ = "0.1.0"

__all__ = [
    "AnswerSet",
    "Category",
    "ConditionSyntaxError",
    "Config",
    "ConflictMode",
    "ConflictRecord",
    "CycleError",
    "FileAction",
    "FileEntry",
    "FilesystemError",
    "GenerationResult",
    "InvalidPathError",
    "ManifestError",
    "MissingVariableError",
    "PathCollisionError",
    "ProjectGenerator",
    "ProjectManifest",
    "RenderedFile",
    "RescaffoldError",
    "ResultStatus",
    "TemplateLoadError",
    "TemplateSpec",
    "UnresolvedVariableError",
    "ValidationError",
    "VariableDefinition",
    "generate_project",
    "load_template",
    "resolve_answers",
    "update_project",
]
