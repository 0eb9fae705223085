"""Unit tests for the generation orchestrator (rescaffold.generator).

Tests cover:
- First generation: inclusion, categories, manifest contents
- Idempotent regeneration and deterministic parallel rendering
- All-or-nothing aborts (missing variables, path collisions, validation)
- Update scenarios for always_update and protected_once files
- Conflict surfacing (sidecar and markers) without blocking other files
- Per-path filesystem failures and manifest preservation
- Reclassification, removed files, new variables, plan mode
"""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from rescaffold.config import Config
from rescaffold.errors import (
    ManifestError,
    MissingVariableError,
    PathCollisionError,
    ValidationError,
)
from rescaffold.generator import ProjectGenerator, generate_project, update_project
from rescaffold.manifest import load_manifest
from rescaffold.models import (
    Category,
    ConflictMode,
    FileAction,
    FileEntry,
    ResultStatus,
    VariableDefinition,
)
from rescaffold.reconcile import MARKER_LOCAL, MARKER_TEMPLATE
from rescaffold.utils import sha256_hex
from rescaffold.utils import write_bytes_atomic as real_write

MANIFEST = ".rescaffold.json"


def _manifest(dest: Path):
    manifest = load_manifest(dest, MANIFEST)
    assert manifest is not None
    return manifest


# ---------------------------------------------------------------------------
# First generation
# ---------------------------------------------------------------------------


class TestGenerate:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_creates_included_files(self, spec, dest, config, answers):
        result = await ProjectGenerator(spec, config).generate(dest, answers)

        assert result.status is ResultStatus.SUCCESS
        assert (dest / "a.txt").read_text() == "A for demo-app\n"
        assert (dest / "b.cfg").read_text() == "name = demo-app\n"
        assert (dest / "c.cfg").read_text() == "[c]\nowner = demo-app\n"
        assert (dest / "demo_app" / "__init__.py").read_text() == '"""demo-app."""\n'
        assert not (dest / "NOTES.md").exists()
        assert result.changed_paths == ["a.txt", "b.cfg", "c.cfg", "demo_app/__init__.py"]
        assert all(o.action is FileAction.CREATED for o in result.outcomes)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_manifest_records_inputs_and_hashes(self, spec, dest, config, answers):
        await ProjectGenerator(spec, config).generate(dest, answers)

        manifest = _manifest(dest)
        assert manifest.schema_version == 1
        assert manifest.template == "scenario"
        assert manifest.revision == "1"
        assert manifest.answers == {"include_x": True, "package": "demo_app", "project_name": "demo-app"}
        assert set(manifest.files) == {"a.txt", "b.cfg", "c.cfg", "demo_app/__init__.py"}
        for path, entry in manifest.files.items():
            assert entry.sha256 == sha256_hex((dest / path).read_bytes())
        assert manifest.files["c.cfg"].category is Category.PROTECTED_ONCE
        assert manifest.files["b.cfg"].category is Category.ALWAYS_UPDATE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_include_x_gates_a_txt(self, spec, dest, config):
        generator = ProjectGenerator(spec, config)

        await generator.generate(dest, {"project_name": "demo", "include_x": False})
        assert not (dest / "a.txt").exists()

        result = await generator.generate(dest, {"project_name": "demo", "include_x": True})
        assert (dest / "a.txt").read_text() == "A for demo\n"
        assert result.outcome("a.txt").action is FileAction.CREATED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_regeneration_is_idempotent(self, spec, dest, config, answers):
        generator = ProjectGenerator(spec, config)
        await generator.generate(dest, answers)

        result = await generator.generate(dest, answers)
        assert result.changed_paths == []
        assert result.conflicts == []
        assert {o.action for o in result.outcomes} == {FileAction.UNCHANGED}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_existing_files_without_manifest(self, spec, dest, config, answers):
        dest.mkdir()
        (dest / "c.cfg").write_text("mine\n")
        (dest / "b.cfg").write_text("mine\n")

        result = await ProjectGenerator(spec, config).generate(dest, answers)
        assert (dest / "c.cfg").read_text() == "mine\n"
        assert result.outcome("c.cfg").action is FileAction.SKIPPED
        assert (dest / "b.cfg").read_text() == "name = demo-app\n"
        assert result.outcome("b.cfg").action is FileAction.OVERWRITTEN

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_executable_entries(self, spec_factory, dest, config, answers):
        spec = spec_factory(extra_files=[FileEntry(path="run.sh", content="#!/bin/sh\n", executable=True)])
        await ProjectGenerator(spec, config).generate(dest, answers)
        if os.name != "nt":
            assert os.access(dest / "run.sh", os.X_OK)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_plan_writes_nothing(self, spec, dest, config, answers):
        result = await ProjectGenerator(spec, config).generate(dest, answers, plan=True)
        assert result.planned
        assert result.changed_paths == ["a.txt", "b.cfg", "c.cfg", "demo_app/__init__.py"]
        assert not dest.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_convenience_wrappers(self, spec_factory, dest, config, answers):
        await generate_project(spec_factory(), dest, answers, config=config)
        result = await update_project(spec_factory(revision="2"), dest, config=config)
        assert result.status is ResultStatus.SUCCESS
        assert _manifest(dest).revision == "2"


# ---------------------------------------------------------------------------
# All-or-nothing rendering
# ---------------------------------------------------------------------------


class TestAbortBeforeWrite:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_variable_aborts_everything(self, spec_factory, dest, config, answers):
        spec = spec_factory(extra_files=[FileEntry(path="z.txt", content="{{ ghost }}")])
        with pytest.raises(MissingVariableError) as exc_info:
            await ProjectGenerator(spec, config).generate(dest, answers)
        assert exc_info.value.variable == "ghost"
        assert exc_info.value.path == "z.txt"
        assert not dest.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_path_collision(self, spec_factory, dest, config, answers):
        spec = spec_factory(extra_files=[FileEntry(path="{{ 'b' }}.cfg", content="dup")])
        with pytest.raises(PathCollisionError) as exc_info:
            await ProjectGenerator(spec, config).generate(dest, answers)
        assert exc_info.value.path == "b.cfg"
        assert not dest.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_collision_only_among_included(self, spec_factory, dest, config):
        spec = spec_factory(extra_files=[FileEntry(path="a.txt", content="alt", when="not include_x")])
        generator = ProjectGenerator(spec, config)
        await generator.generate(dest, {"project_name": "demo", "include_x": False})
        assert (dest / "a.txt").read_text() == "alt"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_manifest_name_is_reserved(self, spec_factory, dest, config, answers):
        spec = spec_factory(extra_files=[FileEntry(path=MANIFEST, content="{}")])
        with pytest.raises(PathCollisionError):
            await ProjectGenerator(spec, config).generate(dest, answers)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_path_nested_under_file_path(self, spec_factory, dest, config, answers):
        spec = spec_factory(
            extra_files=[FileEntry(path="a", content="x"), FileEntry(path="a/b", content="y")]
        )
        with pytest.raises(PathCollisionError) as exc_info:
            await ProjectGenerator(spec, config).generate(dest, answers)
        assert exc_info.value.path == "a"
        assert not dest.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_path_equal_to_side_file(self, spec_factory, dest, config, answers):
        spec = spec_factory(extra_files=[FileEntry(path="c.cfg.rescaffold-new", content="z")])
        with pytest.raises(PathCollisionError) as exc_info:
            await ProjectGenerator(spec, config).generate(dest, answers)
        assert exc_info.value.path == "c.cfg.rescaffold-new"
        assert not dest.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_never_entry_with_jinja_syntax_in_body(self, spec_factory, dest, config, answers):
        spec = spec_factory(
            extra_files=[
                FileEntry(
                    path="AUTHORING.md",
                    content="Write {% if %} blocks like this",
                    category=Category.NEVER,
                )
            ]
        )
        result = await ProjectGenerator(spec, config).generate(dest, answers)
        assert result.status is ResultStatus.SUCCESS
        assert not (dest / "AUTHORING.md").exists()
        assert (dest / "b.cfg").exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_validation_error_before_output(self, spec, dest, config):
        with pytest.raises(ValidationError) as exc_info:
            await ProjectGenerator(spec, config).generate(dest, {"project_name": "Bad Name"})
        assert exc_info.value.fields == ["project_name"]
        assert not dest.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_render_is_deterministic_across_pool_sizes(self, spec, answers):
        serial = ProjectGenerator(spec, Config(max_workers=1))
        parallel = ProjectGenerator(spec, Config(max_workers=16))
        first = await serial.render_all(serial.resolve(answers))
        second = await parallel.render_all(parallel.resolve(answers))
        assert first == second
        assert [r.path for r in first] == sorted(r.path for r in first)


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


class TestUpdate:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requires_manifest(self, spec, dest, config):
        with pytest.raises(ManifestError, match="run generate first"):
            await ProjectGenerator(spec, config).update(dest)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejects_other_template(self, spec, dest, config, answers):
        await ProjectGenerator(spec, config).generate(dest, answers)
        other = spec.model_copy(update={"name": "other"})
        with pytest.raises(ManifestError, match="generated from template 'scenario'"):
            await ProjectGenerator(other, config).update(dest)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_always_update_discards_user_edit(self, spec_factory, dest, config, answers):
        await ProjectGenerator(spec_factory(), config).generate(dest, answers)
        (dest / "b.cfg").write_text("hand edited\n")

        rev2 = spec_factory(revision="2", b_cfg="name = {{ project_name }}\nversion = 2\n")
        result = await ProjectGenerator(rev2, config).update(dest)

        assert (dest / "b.cfg").read_text() == "name = demo-app\nversion = 2\n"
        assert result.outcome("b.cfg").action is FileAction.OVERWRITTEN
        assert result.status is ResultStatus.SUCCESS

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_protected_untouched_is_refreshed(self, spec_factory, dest, config, answers):
        await ProjectGenerator(spec_factory(), config).generate(dest, answers)

        rev2 = spec_factory(revision="2", c_cfg="[c]\nowner = {{ project_name }}\nlevel = 2\n")
        result = await ProjectGenerator(rev2, config).update(dest)

        assert (dest / "c.cfg").read_text() == "[c]\nowner = demo-app\nlevel = 2\n"
        assert result.outcome("c.cfg").action is FileAction.UPDATED
        assert _manifest(dest).files["c.cfg"].sha256 == sha256_hex((dest / "c.cfg").read_bytes())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_protected_edited_and_changed_conflicts(self, spec_factory, dest, config, answers):
        await ProjectGenerator(spec_factory(), config).generate(dest, answers)
        original = (dest / "c.cfg").read_bytes()
        (dest / "c.cfg").write_text("[c]\nowner = me\n")

        rev2 = spec_factory(
            revision="2",
            b_cfg="name = {{ project_name }}\nv = 2\n",
            c_cfg="[c]\nowner = {{ project_name }}\nlevel = 2\n",
        )
        result = await ProjectGenerator(rev2, config).update(dest)

        assert result.status is ResultStatus.SUCCESS_WITH_CONFLICTS
        assert (dest / "c.cfg").read_text() == "[c]\nowner = me\n"
        assert result.conflict_paths == ["c.cfg"]
        record = result.conflicts[0]
        assert record.old_hash == sha256_hex(original)
        assert record.disk_hash == sha256_hex(b"[c]\nowner = me\n")
        assert record.new_hash == sha256_hex(b"[c]\nowner = demo-app\nlevel = 2\n")
        sidecar = dest / "c.cfg.rescaffold-new"
        assert sidecar.read_text() == "[c]\nowner = demo-app\nlevel = 2\n"
        # The conflict does not block the other files.
        assert (dest / "b.cfg").read_text() == "name = demo-app\nv = 2\n"
        assert result.outcome("b.cfg").action is FileAction.UPDATED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_conflict_not_repeated_on_next_update(self, spec_factory, dest, config, answers):
        await ProjectGenerator(spec_factory(), config).generate(dest, answers)
        (dest / "c.cfg").write_text("mine\n")
        rev2 = ProjectGenerator(spec_factory(revision="2", c_cfg="changed\n"), config)
        await rev2.update(dest)

        again = await rev2.update(dest)
        assert again.status is ResultStatus.SUCCESS
        assert again.outcome("c.cfg").action is FileAction.KEPT
        assert (dest / "c.cfg").read_text() == "mine\n"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_protected_edited_template_unchanged(self, spec_factory, dest, config, answers):
        await ProjectGenerator(spec_factory(), config).generate(dest, answers)
        (dest / "c.cfg").write_text("mine\n")

        result = await ProjectGenerator(spec_factory(revision="2"), config).update(dest)
        assert result.outcome("c.cfg").action is FileAction.KEPT
        assert (dest / "c.cfg").read_text() == "mine\n"
        assert result.conflicts == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_markers_mode(self, spec_factory, dest, answers):
        config = Config(conflict_mode=ConflictMode.MARKERS)
        await ProjectGenerator(spec_factory(), config).generate(dest, answers)
        (dest / "c.cfg").write_text("mine\n")

        result = await ProjectGenerator(spec_factory(revision="2", c_cfg="theirs\n"), config).update(dest)

        text = (dest / "c.cfg").read_text()
        assert text.startswith(MARKER_LOCAL)
        assert "mine\n" in text and "theirs\n" in text
        assert text.rstrip().endswith(MARKER_TEMPLATE)
        assert not (dest / "c.cfg.rescaffold-new").exists()
        assert result.conflicts[0].resolution is ConflictMode.MARKERS

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unresolved_markers_reported_on_next_update(self, spec_factory, dest, answers):
        config = Config(conflict_mode=ConflictMode.MARKERS)
        await ProjectGenerator(spec_factory(), config).generate(dest, answers)
        (dest / "c.cfg").write_text("mine\n")
        v2 = spec_factory(revision="2", c_cfg="theirs\n")
        await ProjectGenerator(v2, config).update(dest)
        block = (dest / "c.cfg").read_bytes()

        result = await ProjectGenerator(v2, config).update(dest)

        outcome = result.outcome("c.cfg")
        assert outcome.action is FileAction.KEPT
        assert "unresolved conflict markers" in outcome.detail
        assert result.conflicts == []
        assert (dest / "c.cfg").read_bytes() == block

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_overrides_and_recorded_answers(self, spec, dest, config, answers):
        generator = ProjectGenerator(spec, config)
        await generator.generate(dest, answers)

        result = await generator.update(dest, {"include_x": False})
        assert not (dest / "a.txt").exists()
        assert result.outcome("a.txt").action is FileAction.REMOVED
        manifest = _manifest(dest)
        assert manifest.answers["include_x"] is False
        assert manifest.answers["project_name"] == "demo-app"
        assert "a.txt" not in manifest.files

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_new_variable_uses_default(self, spec_factory, dest, config, answers):
        await ProjectGenerator(spec_factory(), config).generate(dest, answers)
        rev2 = spec_factory(
            revision="2",
            extra_variables=[VariableDefinition(name="author", default="anon")],
            extra_files=[FileEntry(path="AUTHORS", content="{{ author }}\n")],
        )
        await ProjectGenerator(rev2, config).update(dest)
        assert (dest / "AUTHORS").read_text() == "anon\n"
        assert _manifest(dest).answers["author"] == "anon"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_file_dropped_from_template(self, spec_factory, dest, config, answers):
        rev1 = spec_factory(extra_files=[FileEntry(path="legacy/old.txt", content="x")])
        await ProjectGenerator(rev1, config).generate(dest, answers)

        result = await ProjectGenerator(spec_factory(revision="2"), config).update(dest)
        assert result.outcome("legacy/old.txt").action is FileAction.REMOVED
        assert not (dest / "legacy").exists()
        assert "legacy/old.txt" not in _manifest(dest).files

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_plan_leaves_project_untouched(self, spec_factory, dest, config, answers):
        await ProjectGenerator(spec_factory(), config).generate(dest, answers)
        before = (dest / MANIFEST).read_bytes()

        rev2 = spec_factory(revision="2", b_cfg="changed\n")
        result = await ProjectGenerator(rev2, config).update(dest, plan=True)
        assert result.outcome("b.cfg").action is FileAction.UPDATED
        assert (dest / "b.cfg").read_text() == "name = demo-app\n"
        assert (dest / MANIFEST).read_bytes() == before


# ---------------------------------------------------------------------------
# Reclassification
# ---------------------------------------------------------------------------


class TestReclassification:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_protected_to_always_update(self, spec_factory, dest, config, answers):
        await ProjectGenerator(spec_factory(), config).generate(dest, answers)
        (dest / "c.cfg").write_text("mine\n")

        rev2 = spec_factory(revision="2", c_category=Category.ALWAYS_UPDATE)
        result = await ProjectGenerator(rev2, config).update(dest)

        outcome = result.outcome("c.cfg")
        assert outcome.action is FileAction.OVERWRITTEN
        assert outcome.reclassified
        assert _manifest(dest).files["c.cfg"].category is Category.ALWAYS_UPDATE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_always_update_to_protected_keeps_edit(self, spec_factory, dest, config, answers):
        rev1 = spec_factory(c_category=Category.ALWAYS_UPDATE)
        await ProjectGenerator(rev1, config).generate(dest, answers)
        baseline = _manifest(dest).files["c.cfg"].sha256
        (dest / "c.cfg").write_text("mine\n")

        result = await ProjectGenerator(spec_factory(revision="2"), config).update(dest)

        outcome = result.outcome("c.cfg")
        assert outcome.action is FileAction.KEPT
        assert outcome.reclassified
        assert (dest / "c.cfg").read_text() == "mine\n"
        entry = _manifest(dest).files["c.cfg"]
        assert entry.category is Category.PROTECTED_ONCE
        assert entry.sha256 == baseline

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_now_never_is_left_on_disk(self, spec_factory, dest, config, answers):
        rev1 = spec_factory(extra_files=[FileEntry(path="drop.txt", content="d")])
        await ProjectGenerator(rev1, config).generate(dest, answers)

        rev2 = spec_factory(
            revision="2",
            extra_files=[FileEntry(path="drop.txt", content="d", category=Category.NEVER)],
        )
        result = await ProjectGenerator(rev2, config).update(dest)

        outcome = result.outcome("drop.txt")
        assert outcome.action is FileAction.SKIPPED
        assert outcome.category is Category.NEVER
        assert (dest / "drop.txt").exists()
        assert "drop.txt" not in _manifest(dest).files


# ---------------------------------------------------------------------------
# Filesystem failures
# ---------------------------------------------------------------------------


class TestFilesystemFailures:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_write_recorded_and_others_continue(self, spec_factory, dest, config, answers):
        await ProjectGenerator(spec_factory(), config).generate(dest, answers)
        old_b = _manifest(dest).files["b.cfg"].sha256

        def flaky(path, content, executable=False):
            if Path(path).name == "b.cfg":
                raise OSError("disk full")
            real_write(path, content, executable=executable)

        rev2 = ProjectGenerator(spec_factory(revision="2", b_cfg="b2\n", c_cfg="c2\n"), config)
        with patch("rescaffold.generator.write_bytes_atomic", side_effect=flaky):
            result = await rev2.update(dest)

        assert result.status is ResultStatus.FAILURE
        assert result.failed_paths == ["b.cfg"]
        assert result.failures[0].reason == "disk full"
        assert result.outcome("b.cfg").action is FileAction.FAILED
        assert (dest / "c.cfg").read_text() == "c2\n"
        manifest = _manifest(dest)
        assert manifest.files["b.cfg"].sha256 == old_b
        assert manifest.files["c.cfg"].sha256 == sha256_hex(b"c2\n")

        retry = await rev2.update(dest)
        assert retry.status is ResultStatus.SUCCESS
        assert (dest / "b.cfg").read_text() == "b2\n"
        assert retry.changed_paths == ["b.cfg"]
