"""Shared pytest fixtures for the rescaffold test suite.

Provides reusable fixtures for:
- Programmatic template specs covering every file category
- A template package laid out on disk (``template.yaml`` + ``files/``)
- Destination directories and engine configuration
"""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from rescaffold.config import Config
from rescaffold.models import (
    Category,
    FileEntry,
    PolicyConfig,
    PolicyRule,
    TemplateSpec,
    VariableDefinition,
)


# ---------------------------------------------------------------------------
# Paths & Directories
# ---------------------------------------------------------------------------


@pytest.fixture
def dest(tmp_path: Path) -> Path:
    """Destination directory for a generated project (not created yet)."""
    return tmp_path / "out"


@pytest.fixture
def config() -> Config:
    return Config(max_workers=4)


# ---------------------------------------------------------------------------
# Template specs
# ---------------------------------------------------------------------------


def make_spec(
    *,
    revision: str = "1",
    a_txt: str = "A for {{ project_name }}\n",
    b_cfg: str = "name = {{ project_name }}\n",
    c_cfg: str = "[c]\nowner = {{ project_name }}\n",
    extra_files: list[FileEntry] | None = None,
    extra_variables: list[VariableDefinition] | None = None,
    c_category: Category = Category.PROTECTED_ONCE,
) -> TemplateSpec:
    """Build the scenario template used across the suite.

    * ``a.txt``  -- gated by ``include_x`` (default true)
    * ``b.cfg``  -- always_update
    * ``c.cfg``  -- protected_once (by default)
    * ``{{ package }}/__init__.py`` -- variable-driven directory name
    * ``NOTES.md`` -- never
    """
    variables = [
        VariableDefinition(name="project_name", required=True, pattern=r"[a-z][a-z0-9-]*"),
        VariableDefinition(name="include_x", type="bool", default=True),
        VariableDefinition(name="package", derive="{{ project_name | snake_case }}"),
    ]
    variables.extend(extra_variables or [])
    files = [
        FileEntry(path="a.txt", content=a_txt, when="include_x"),
        FileEntry(path="b.cfg", content=b_cfg, category=Category.ALWAYS_UPDATE),
        FileEntry(path="c.cfg", content=c_cfg, category=c_category),
        FileEntry(path="{{ package }}/__init__.py", content='"""{{ project_name }}."""\n'),
        FileEntry(path="NOTES.md", content="authoring notes {{ undefined_thing }}"),
    ]
    files.extend(extra_files or [])
    return TemplateSpec(
        name="scenario",
        revision=revision,
        variables=variables,
        files=files,
        policy=PolicyConfig(
            default=Category.ALWAYS_UPDATE,
            rules=[PolicyRule(glob="*.md", category=Category.NEVER)],
        ),
    )


@pytest.fixture
def spec() -> TemplateSpec:
    return make_spec()


@pytest.fixture
def spec_factory():
    """Build scenario templates with per-test overrides (see ``make_spec``)."""
    return make_spec


@pytest.fixture
def answers() -> dict[str, object]:
    return {"project_name": "demo-app"}


# ---------------------------------------------------------------------------
# Template package on disk
# ---------------------------------------------------------------------------


@pytest.fixture
def template_dir(tmp_path: Path) -> Path:
    """A small template package with explicit and tree-discovered entries."""
    root = tmp_path / "tpl"
    files = root / "files"
    (files / "{{ package }}").mkdir(parents=True)
    (files / "docs").mkdir()

    (root / "template.yaml").write_text(
        textwrap.dedent(
            """\
            name: py-service
            revision: 2
            tree: true
            variables:
              - name: project_name
                required: true
                pattern: "[a-z][a-z0-9-]*"
                help: Distribution name
              - name: package
                derive: "{{ project_name | snake_case }}"
              - name: use_docker
                type: bool
                default: false
              - name: license
                type: choice
                choices: [MIT, Apache-2.0]
                default: MIT
            policy:
              default: always_update
              rules:
                - glob: "docs/**"
                  category: protected_once
                - glob: "*.draft"
                  category: never
            files:
              - source: Dockerfile.j2
                when: use_docker
              - path: LICENSE
                content: "{{ license }} license\\n"
                category: protected_once
              - source: run.sh
                render: false
                executable: true
            """
        ),
        encoding="utf-8",
    )
    (files / "Dockerfile.j2").write_text("FROM python:3.12\nCOPY {{ package }} /app\n", encoding="utf-8")
    (files / "run.sh").write_text("#!/bin/sh\necho {{ not_rendered }}\n", encoding="utf-8")
    (files / "{{ package }}" / "__init__.py.j2").write_text(
        '"""{{ project_name }}."""\n{% if use_docker %}\nDOCKER = True\n{% endif %}\n',
        encoding="utf-8",
    )
    (files / "docs" / "index.md.j2").write_text("# {{ project_name }}\n", encoding="utf-8")
    (files / "logo.bin").write_bytes(b"\x89PNG\x00\xff")
    (files / "ideas.draft").write_text("scratch\n", encoding="utf-8")
    return root
