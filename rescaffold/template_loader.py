"""Template package loading and load-time validation.

A template package is a directory holding ``template.yaml`` and a ``files/``
directory of body sources::

    my-template/
        template.yaml
        files/
            README.md.j2
            {{ package }}/__init__.py.j2
            logo.png

``template.yaml`` declares the template identity, its variables, the
category policy and the file entries.  With ``tree: true`` every body under
``files/`` that no explicit entry claims becomes an entry of its own: a
``.j2`` suffix marks a rendered body and is stripped from the output path,
anything else is copied verbatim.

Load-time validation rejects malformed templates before any answer is
resolved: condition syntax, undeclared variables in conditions and
derivations, derivation cycles, and template syntax errors.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from rescaffold.conditions import parse_condition, undeclared
from rescaffold.config import Config
from rescaffold.errors import TemplateLoadError, UnresolvedVariableError
from rescaffold.models import FileEntry, TemplateSpec
from rescaffold.policy import ClassificationPolicy
from rescaffold.renderer import TemplateRenderer
from rescaffold.resolver import derivation_order
from rescaffold.utils import load_document

logger = logging.getLogger(__name__)

_J2_SUFFIX = ".j2"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_template(spec: TemplateSpec, renderer: TemplateRenderer | None = None) -> TemplateSpec:
    """Check *spec* for errors that do not depend on any answers.

    Raises:
        ConditionSyntaxError: A condition does not parse.
        UnresolvedVariableError: A condition or derivation names an
            undeclared variable.
        CycleError: Derivations depend on each other cyclically.
        TemplateLoadError: A path or body of a non-never entry has invalid
            template syntax.
    """
    renderer = renderer or TemplateRenderer()
    declared = spec.variable_names

    for entry in spec.files:
        if entry.when is not None and entry.when.strip():
            parse_condition(entry.when)
            missing = undeclared(entry.when, declared)
            if missing:
                raise UnresolvedVariableError(missing[0], f"condition of {entry.label}")

    derivation_order(spec.variables, renderer)
    kept, _ = ClassificationPolicy(spec.policy).split(spec.files)
    renderer.prepare(entry for entry, _ in kept)
    return spec


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _read_body(source_path: Path, render: bool, label: str) -> str | bytes:
    try:
        raw = source_path.read_bytes()
    except OSError as exc:
        raise TemplateLoadError(f"cannot read body: {exc}", source=label) from exc
    if not render:
        return raw
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise TemplateLoadError(
            "rendered bodies must be UTF-8; set 'render: false' for binary files",
            source=label,
        ) from exc


def _explicit_entry(item: Any, files_root: Path, index: int) -> FileEntry:
    if not isinstance(item, dict):
        raise TemplateLoadError(f"files[{index}] must be a mapping")
    data = dict(item)
    source = data.pop("source", None)
    render = bool(data.get("render", True))

    if source is not None:
        if "content" in data:
            raise TemplateLoadError(f"files[{index}] sets both 'source' and 'content'")
        source_path = files_root / str(source)
        data["content"] = _read_body(source_path, render, str(source))
        data["source"] = str(source)
        if "path" not in data:
            name = str(source)
            data["path"] = name[: -len(_J2_SUFFIX)] if name.endswith(_J2_SUFFIX) else name
    elif "path" not in data:
        raise TemplateLoadError(f"files[{index}] needs a 'path' or a 'source'")

    try:
        return FileEntry.model_validate(data)
    except PydanticValidationError as exc:
        raise TemplateLoadError(f"files[{index}] is invalid: {exc}") from exc


def _tree_entries(files_root: Path, claimed: set[str]) -> list[FileEntry]:
    entries: list[FileEntry] = []
    if not files_root.is_dir():
        return entries
    for body in sorted(p for p in files_root.rglob("*") if p.is_file()):
        rel = body.relative_to(files_root).as_posix()
        if rel in claimed:
            continue
        render = rel.endswith(_J2_SUFFIX)
        out_path = rel[: -len(_J2_SUFFIX)] if render else rel
        entries.append(
            FileEntry(
                path=out_path,
                content=_read_body(body, render, rel),
                render=render,
                source=rel,
            )
        )
    return entries


def load_template(template_dir: str | Path, config: Config | None = None) -> TemplateSpec:
    """Load and validate the template package in *template_dir*.

    Raises:
        TemplateLoadError: The package is missing or malformed.
        ConditionSyntaxError, UnresolvedVariableError, CycleError: see
            :func:`validate_template`.
    """
    config = config or Config()
    root = Path(template_dir)
    meta_path = root / config.template_file
    if not meta_path.is_file():
        raise TemplateLoadError(f"no {config.template_file} found", source=str(root))
    try:
        data = load_document(meta_path)
    except (OSError, ValueError) as exc:
        raise TemplateLoadError(f"cannot parse metadata: {exc}", source=str(meta_path)) from exc

    files_root = root / config.files_dir
    raw_files = data.get("files") or []
    if not isinstance(raw_files, list):
        raise TemplateLoadError("'files' must be a list", source=str(meta_path))
    entries = [_explicit_entry(item, files_root, i) for i, item in enumerate(raw_files)]
    if data.get("tree", False):
        claimed = {e.source for e in entries if e.source}
        entries.extend(_tree_entries(files_root, claimed))

    payload = {
        "name": data.get("name") or root.name,
        "revision": data.get("revision", "0"),
        "variables": data.get("variables") or [],
        "policy": data.get("policy") or {},
        "files": entries,
    }
    try:
        spec = TemplateSpec.model_validate(payload)
    except PydanticValidationError as exc:
        raise TemplateLoadError(f"invalid template: {exc}", source=str(meta_path)) from exc

    logger.info("Loaded template %s rev %s (%d variables, %d files)",
                spec.name, spec.revision, len(spec.variables), len(spec.files))
    return validate_template(spec)
