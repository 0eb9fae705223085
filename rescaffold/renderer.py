"""Jinja2 rendering of file paths and bodies.

Provides the TemplateRenderer class which substitutes AnswerSet values into
path expressions and content templates, including inline ``{% if %}``
regions inside a single body.  Rendering is a pure transformation into
``RenderedFile`` objects; nothing here touches the filesystem.
"""

from __future__ import annotations

import posixpath
import re
import threading
from collections.abc import Iterable, Mapping
from typing import Any

from jinja2 import Environment, StrictUndefined, Template, TemplateError, UndefinedError, meta

from rescaffold.errors import InvalidPathError, MissingVariableError, TemplateLoadError
from rescaffold.models import Category, FileEntry, RenderedFile
from rescaffold.utils import camel_case, pascal_case, slugify, snake_case


_UNDEFINED_NAME_RE = re.compile(r"'([^']+)' is undefined")


def build_environment() -> Environment:
    """Create the Jinja2 environment shared by paths, bodies and derivations."""
    env = Environment(
        undefined=StrictUndefined,
        autoescape=False,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["slugify"] = slugify
    env.filters["pascal_case"] = pascal_case
    env.filters["snake_case"] = snake_case
    env.filters["camel_case"] = camel_case
    return env


class _Compiled:
    """A parsed template plus the top-level names it reads."""

    __slots__ = ("template", "names")

    def __init__(self, template: Template, names: frozenset[str]) -> None:
        self.template = template
        self.names = names


# ---------------------------------------------------------------------------
# TemplateRenderer
# ---------------------------------------------------------------------------


class TemplateRenderer:
    """Renders path expressions and content templates against an AnswerSet.

    Compiled templates are cached by source text.  Call :meth:`prepare` from
    a single thread before fanning rendering out to a worker pool; the
    rendering itself only reads the cache and the immutable AnswerSet.
    """

    def __init__(self, env: Environment | None = None) -> None:
        self.env = env or build_environment()
        self._cache: dict[str, _Compiled] = {}
        self._lock = threading.Lock()

    # -- Compilation -------------------------------------------------------

    def compile(self, source: str, label: str = "<string>") -> _Compiled:
        """Parse *source* once and cache the result.

        Raises:
            TemplateLoadError: If *source* is not valid template syntax.
        """
        cached = self._cache.get(source)
        if cached is not None:
            return cached
        try:
            ast = self.env.parse(source)
            names = frozenset(meta.find_undeclared_variables(ast)) - frozenset(self.env.globals)
            template = self.env.from_string(source)
        except TemplateError as exc:
            raise TemplateLoadError(f"template syntax error: {exc}", source=label) from exc
        compiled = _Compiled(template, names)
        with self._lock:
            self._cache.setdefault(source, compiled)
        return compiled

    def referenced_names(self, source: str, label: str = "<string>") -> frozenset[str]:
        """Return the top-level variable names read by *source*."""
        return self.compile(source, label).names

    def prepare(self, entries: Iterable[FileEntry]) -> None:
        """Compile every path and body template of *entries* up front."""
        for entry in entries:
            self.compile(entry.path, entry.label)
            if entry.render and isinstance(entry.content, str):
                self.compile(entry.content, entry.label)

    # -- Rendering ---------------------------------------------------------

    def render_string(self, source: str, answers: Mapping[str, Any], path: str) -> str:
        """Render *source*, reporting any missing variable against *path*."""
        compiled = self.compile(source, path)
        for name in sorted(compiled.names):
            if name not in answers:
                raise MissingVariableError(name, path)
        try:
            return compiled.template.render(dict(answers))
        except UndefinedError as exc:
            match = _UNDEFINED_NAME_RE.search(str(exc))
            raise MissingVariableError(match.group(1) if match else str(exc), path) from exc
        except TemplateError as exc:
            raise TemplateLoadError(f"render failed: {exc}", source=path) from exc

    def render_path(self, entry: FileEntry, answers: Mapping[str, Any]) -> str:
        """Render and normalise the output path of *entry*."""
        rendered = self.render_string(entry.path, answers, entry.path)
        return normalize_output_path(rendered, entry.label)

    def render_content(self, entry: FileEntry, answers: Mapping[str, Any]) -> bytes:
        if isinstance(entry.content, bytes):
            return entry.content
        if not entry.render:
            return entry.content.encode("utf-8")
        return self.render_string(entry.content, answers, entry.path).encode("utf-8")

    def render(self, entry: FileEntry, category: Category, answers: Mapping[str, Any]) -> RenderedFile:
        """Render one included entry into a ``RenderedFile``."""
        return RenderedFile(
            path=self.render_path(entry, answers),
            content=self.render_content(entry, answers),
            category=category,
            source=entry.label,
            executable=entry.executable,
        )


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def normalize_output_path(rendered: str, source: str) -> str:
    """Normalise a rendered path to a relative POSIX path inside the root.

    Raises:
        InvalidPathError: If the path is empty, absolute, or contains ``..``.
    """
    candidate = rendered.strip().replace("\\", "/")
    if not candidate:
        raise InvalidPathError(rendered, source, "path is empty")
    if candidate.startswith("/") or re.match(r"^[A-Za-z]:", candidate):
        raise InvalidPathError(rendered, source, "path is absolute")
    parts = candidate.split("/")
    if ".." in parts:
        raise InvalidPathError(rendered, source, "path escapes the destination")
    if any(part == "" for part in parts):
        raise InvalidPathError(rendered, source, "path has an empty segment")
    normalized = posixpath.normpath(candidate)
    if normalized in (".", ""):
        raise InvalidPathError(rendered, source, "path is empty")
    return normalized
