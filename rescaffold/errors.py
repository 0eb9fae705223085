"""Exception hierarchy for the rescaffold engine.

Load-time and resolution errors (``ValidationError``, ``CycleError``,
``UnresolvedVariableError``) abort before any output exists.  Render-time
errors (``MissingVariableError``, ``PathCollisionError``) abort the whole
render set.  ``FilesystemError`` is collected per path during the write phase
and never raised out of the orchestrator.
"""

from __future__ import annotations


class RescaffoldError(Exception):
    """Base class for every error raised by the engine."""


# ---------------------------------------------------------------------------
# Template loading
# ---------------------------------------------------------------------------


class TemplateLoadError(RescaffoldError):
    """Raised when a template package is malformed or incomplete."""

    def __init__(self, message: str, source: str = "") -> None:
        self.source = source
        super().__init__(f"{source}: {message}" if source else message)


class UnresolvedVariableError(RescaffoldError):
    """A condition or derivation references a variable that is not declared."""

    def __init__(self, variable: str, location: str) -> None:
        self.variable = variable
        self.location = location
        super().__init__(f"Undeclared variable '{variable}' referenced in {location}")


class ConditionSyntaxError(RescaffoldError):
    """An inclusion condition does not parse."""

    def __init__(self, expression: str, message: str, position: int = -1) -> None:
        self.expression = expression
        self.position = position
        where = f" at position {position}" if position >= 0 else ""
        super().__init__(f"Invalid condition {expression!r}{where}: {message}")


# ---------------------------------------------------------------------------
# Variable resolution
# ---------------------------------------------------------------------------


class ValidationError(RescaffoldError):
    """One or more raw answers failed validation.

    Every offending field is listed so the caller can correct them all in a
    single pass.
    """

    def __init__(self, violations: list[tuple[str, str]]) -> None:
        self.violations = list(violations)
        lines = [f"  - {name}: {message}" for name, message in self.violations]
        super().__init__(
            f"{len(self.violations)} invalid answer(s):\n" + "\n".join(lines)
        )

    @property
    def fields(self) -> list[str]:
        return [name for name, _ in self.violations]


class CycleError(RescaffoldError):
    """Derived variables depend on each other in a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__("Variable dependency cycle: " + " -> ".join(self.cycle))


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


class MissingVariableError(RescaffoldError):
    """A template references a variable absent from the AnswerSet."""

    def __init__(self, variable: str, path: str) -> None:
        self.variable = variable
        self.path = path
        super().__init__(f"Variable '{variable}' is not defined (while rendering {path})")


class PathCollisionError(RescaffoldError):
    """Two included entries render to the same output path."""

    def __init__(self, path: str, sources: list[str]) -> None:
        self.path = path
        self.sources = list(sources)
        super().__init__(
            f"Output path '{path}' is produced by more than one entry: "
            + ", ".join(self.sources)
        )


class InvalidPathError(RescaffoldError):
    """A rendered path is empty, absolute, or escapes the destination."""

    def __init__(self, path: str, source: str, reason: str) -> None:
        self.path = path
        self.source = source
        super().__init__(f"Invalid output path {path!r} from {source}: {reason}")


# ---------------------------------------------------------------------------
# Persistence / filesystem
# ---------------------------------------------------------------------------


class ManifestError(RescaffoldError):
    """The project manifest is missing, unreadable, or unsupported."""

    def __init__(self, message: str, path: str = "") -> None:
        self.path = path
        super().__init__(f"{message} ({path})" if path else message)


class FilesystemError(RescaffoldError):
    """A single read, write, or delete failed."""

    def __init__(self, path: str, operation: str, reason: str) -> None:
        self.path = path
        self.operation = operation
        self.reason = reason
        super().__init__(f"Failed to {operation} {path}: {reason}")
