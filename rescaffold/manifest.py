"""Persisted generation manifest.

The manifest is the only long-lived state the engine keeps.  It lives in the
generated project's root and records the template identity and revision,
the answers used, and the hash and category of every generated path.  The
``schema_version`` field lets the reconciliation rules evolve without
breaking projects generated by older releases.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from rescaffold.errors import ManifestError
from rescaffold.models import Category
from rescaffold.utils import read_bytes_if_exists, sha256_hex, write_bytes_atomic

logger = logging.getLogger(__name__)

MANIFEST_SCHEMA_VERSION = 1


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ManifestEntry(BaseModel):
    """Recorded state of one generated path."""

    sha256: str = Field(..., description="Hash of the content last written (or offered)")
    category: Category


class ProjectManifest(BaseModel):
    """What was generated, and from which inputs."""

    schema_version: int = Field(default=MANIFEST_SCHEMA_VERSION)
    template: str = Field(..., description="Template identity")
    revision: str = Field(default="0", description="Template revision used for the last sync")
    answers: dict[str, Any] = Field(default_factory=dict, description="AnswerSet snapshot")
    files: dict[str, ManifestEntry] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    def entry(self, path: str) -> Optional[ManifestEntry]:
        return self.files.get(path)

    def to_json(self) -> str:
        ordered = self.model_copy(
            update={"files": {key: self.files[key] for key in sorted(self.files)}}
        )
        return ordered.model_dump_json(indent=2) + "\n"


def manifest_path(root: Path, name: str) -> Path:
    return root / name


def load_manifest(root: Path, name: str) -> Optional[ProjectManifest]:
    """Load the manifest from *root*, or return ``None`` if there is none.

    Raises:
        ManifestError: If the file is unreadable, malformed, or was written by
            a newer schema than this release supports.
    """
    path = manifest_path(root, name)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ManifestError(f"Cannot read manifest: {exc}", str(path)) from exc
    if not isinstance(data, dict):
        raise ManifestError("Manifest root must be an object", str(path))

    version = data.get("schema_version")
    if not isinstance(version, int):
        raise ManifestError("Manifest schema_version must be an integer", str(path))
    if version > MANIFEST_SCHEMA_VERSION:
        raise ManifestError(
            f"Manifest schema_version {version} is newer than supported "
            f"({MANIFEST_SCHEMA_VERSION}); upgrade rescaffold",
            str(path),
        )

    try:
        manifest = ProjectManifest.model_validate(data)
    except PydanticValidationError as exc:
        raise ManifestError(f"Invalid manifest: {exc}", str(path)) from exc
    logger.debug("Loaded manifest for %s rev %s (%d files)",
                 manifest.template, manifest.revision, len(manifest.files))
    return manifest


def save_manifest(manifest: ProjectManifest, root: Path, name: str) -> Path:
    """Write *manifest* atomically to *root* and return its path."""
    path = manifest_path(root, name)
    write_bytes_atomic(path, manifest.to_json().encode("utf-8"))
    return path


def drift_report(root: Path, manifest: ProjectManifest) -> dict[str, str]:
    """Compare recorded hashes with the files on disk.

    Returns:
        ``{path: state}`` where state is ``"clean"``, ``"modified"`` or
        ``"missing"``, sorted by path.
    """
    report: dict[str, str] = {}
    for path in sorted(manifest.files):
        content = read_bytes_if_exists(root / path)
        if content is None:
            report[path] = "missing"
        elif sha256_hex(content) == manifest.files[path].sha256:
            report[path] = "clean"
        else:
            report[path] = "modified"
    return report
