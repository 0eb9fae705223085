"""rescaffold configuration.

Typed engine configuration.  All settings use Pydantic v2 models so they are
validated at construction time and can be overridden from environment
variables without boiler-plate.
"""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, Field

from rescaffold.models import ConflictMode


class Config(BaseModel):
    """Global engine configuration.

    Instances are typically created once by the CLI entry point (or by a
    caller embedding the engine) and passed to ``ProjectGenerator``.
    """

    max_workers: int = Field(
        default=8, ge=1, description="Upper bound on concurrent render/read/write tasks"
    )
    conflict_mode: ConflictMode = Field(
        default=ConflictMode.SIDECAR,
        description="Surface conflicts as side files or as in-place markers",
    )
    manifest_name: str = Field(
        default=".rescaffold.json", description="Manifest file name in the project root"
    )
    sidecar_suffix: str = Field(
        default=".rescaffold-new", description="Suffix of side files holding new renders"
    )
    template_file: str = Field(
        default="template.yaml", description="Metadata file name inside a template package"
    )
    files_dir: str = Field(
        default="files", description="Directory of body sources inside a template package"
    )

    @classmethod
    def from_env(cls) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            RESCAFFOLD_MAX_WORKERS, RESCAFFOLD_CONFLICT_MODE,
            RESCAFFOLD_MANIFEST_NAME, RESCAFFOLD_SIDECAR_SUFFIX.
        """
        kwargs: dict[str, Any] = {}
        if os.environ.get("RESCAFFOLD_MAX_WORKERS"):
            kwargs["max_workers"] = int(os.environ["RESCAFFOLD_MAX_WORKERS"])
        if os.environ.get("RESCAFFOLD_CONFLICT_MODE"):
            kwargs["conflict_mode"] = ConflictMode(os.environ["RESCAFFOLD_CONFLICT_MODE"])
        if os.environ.get("RESCAFFOLD_MANIFEST_NAME"):
            kwargs["manifest_name"] = os.environ["RESCAFFOLD_MANIFEST_NAME"]
        if os.environ.get("RESCAFFOLD_SIDECAR_SUFFIX"):
            kwargs["sidecar_suffix"] = os.environ["RESCAFFOLD_SIDECAR_SUFFIX"]
        return cls(**kwargs)
