"""Generation orchestrator.

Sequences variable resolution, inclusion, classification, rendering and
reconciliation, then commits the result to disk and rewrites the manifest.

Rendering is all-or-nothing: every included entry is rendered in memory
(on a bounded worker pool) and the whole set is validated before the first
byte is written.  Writes are independent per path; a failed write is
recorded and the remaining writes still run.  The manifest is written once,
after every per-file action has completed.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Mapping
from pathlib import Path
from typing import Any, Optional, TypeVar

from rescaffold.answers import collect_answers
from rescaffold.conditions import is_included
from rescaffold.config import Config
from rescaffold.errors import (
    FilesystemError,
    ManifestError,
    PathCollisionError,
    RescaffoldError,
)
from rescaffold.manifest import (
    ManifestEntry,
    ProjectManifest,
    load_manifest,
    save_manifest,
    utc_now,
)
from rescaffold.models import (
    Category,
    FileAction,
    FileFailure,
    FileOutcome,
    GenerationResult,
    RenderedFile,
    TemplateSpec,
)
from rescaffold.policy import ClassificationPolicy
from rescaffold.reconcile import Decision, reconcile_file
from rescaffold.renderer import TemplateRenderer
from rescaffold.resolver import AnswerSet, resolve_answers
from rescaffold.template_loader import validate_template
from rescaffold.utils import read_bytes_if_exists, remove_file, write_bytes_atomic

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _PathWork:
    """Inputs to the reconciliation of one output path."""

    __slots__ = ("path", "category", "new", "executable", "previous")

    def __init__(
        self,
        path: str,
        category: Category,
        new: Optional[bytes],
        executable: bool,
        previous: Optional[ManifestEntry],
    ) -> None:
        self.path = path
        self.category = category
        self.new = new
        self.executable = executable
        self.previous = previous


# ---------------------------------------------------------------------------
# Main generator
# ---------------------------------------------------------------------------


class ProjectGenerator:
    """Renders a ``TemplateSpec`` into a project tree and keeps it in sync.

    The template is validated on construction, so a malformed template fails
    before any answers are resolved.
    """

    def __init__(self, template: TemplateSpec, config: Config | None = None) -> None:
        self.template = template
        self.config = config or Config()
        self.renderer = TemplateRenderer()
        self.policy = ClassificationPolicy(template.policy)
        validate_template(template, self.renderer)
        self._semaphores: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Semaphore] = (
            weakref.WeakKeyDictionary()
        )

    # -- Public API --------------------------------------------------------

    def resolve(self, raw_answers: Mapping[str, Any] | None = None) -> AnswerSet:
        """Resolve raw answers against the template's variables."""
        return resolve_answers(self.template.variables, raw_answers, renderer=self.renderer)

    def read_manifest(self, destination: str | Path) -> Optional[ProjectManifest]:
        manifest = load_manifest(Path(destination), self.config.manifest_name)
        if manifest is not None and manifest.template != self.template.name:
            raise ManifestError(
                f"Project was generated from template '{manifest.template}', "
                f"not '{self.template.name}'",
                str(Path(destination) / self.config.manifest_name),
            )
        return manifest

    async def generate(
        self,
        destination: str | Path,
        raw_answers: Mapping[str, Any] | None = None,
        *,
        plan: bool = False,
    ) -> GenerationResult:
        """Generate the project into *destination*.

        If *destination* already holds a manifest for this template the run
        reconciles against it, so regenerating with the same answers is a
        no-op.

        Args:
            destination: Project root directory (created if missing).
            raw_answers: Values for the template's variables.
            plan: Decide everything but write nothing.
        """
        root = Path(destination)
        manifest = self.read_manifest(root)
        answers = self.resolve(raw_answers)
        return await self._sync(root, answers, manifest, plan=plan)

    async def update(
        self,
        destination: str | Path,
        overrides: Mapping[str, Any] | None = None,
        *,
        plan: bool = False,
    ) -> GenerationResult:
        """Re-sync a previously generated project with this template revision.

        The AnswerSet is re-resolved from the manifest snapshot with
        *overrides* applied on top.

        Raises:
            ManifestError: *destination* has no manifest, or it belongs to a
                different template.
        """
        root = Path(destination)
        manifest = self.read_manifest(root)
        if manifest is None:
            raise ManifestError(
                "No manifest found; run generate first",
                str(root / self.config.manifest_name),
            )
        raw = collect_answers(self.template.variables, overrides, recorded=manifest.answers)
        answers = self.resolve(raw)
        logger.info("Updating %s from revision %s to %s",
                    root, manifest.revision, self.template.revision)
        return await self._sync(root, answers, manifest, plan=plan)

    async def render_all(self, answers: AnswerSet) -> list[RenderedFile]:
        """Render every included entry; the first error in entry order aborts.

        Returns:
            Rendered files sorted by output path.

        Raises:
            MissingVariableError, InvalidPathError, PathCollisionError.
        """
        kept, _ = self.policy.split(self.template.files)
        included = [
            (entry, category) for entry, category in kept
            if is_included(entry.when, answers, f"condition of {entry.label}")
        ]
        results = await asyncio.gather(
            *[self._bounded(lambda e=entry, c=category: self.renderer.render(e, c, answers))
              for entry, category in included],
            return_exceptions=True,
        )
        rendered: list[RenderedFile] = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            rendered.append(result)

        self._check_collisions(rendered)
        return sorted(rendered, key=lambda r: r.path)

    # -- Internals -----------------------------------------------------------

    async def _bounded(self, func: Callable[[], T]) -> T:
        """Run *func* on a worker thread, at most ``max_workers`` at a time."""
        loop = asyncio.get_running_loop()
        semaphore = self._semaphores.get(loop)
        if semaphore is None:
            semaphore = self._semaphores[loop] = asyncio.Semaphore(self.config.max_workers)
        async with semaphore:
            return await asyncio.to_thread(func)

    def _check_collisions(self, rendered: Iterable[RenderedFile]) -> None:
        """Reject output paths that would contend for the same spot on disk.

        Besides exact duplicates, a path may not be a parent directory of
        another, may not shadow the manifest, and may not equal another
        path's conflict side file.
        """
        by_path: dict[str, list[str]] = defaultdict(list)
        for item in rendered:
            by_path[item.path].append(item.source)
        reserved = self.config.manifest_name
        suffix = self.config.sidecar_suffix
        for path in sorted(by_path):
            sources = by_path[path]
            if len(sources) > 1:
                raise PathCollisionError(path, sources)
            if path == reserved:
                raise PathCollisionError(path, sources + ["<manifest>"])
            parts = path.split("/")
            for depth in range(1, len(parts)):
                parent = "/".join(parts[:depth])
                if parent in by_path:
                    raise PathCollisionError(parent, by_path[parent] + sources)
                if parent == reserved:
                    raise PathCollisionError(parent, sources + ["<manifest>"])
            if suffix and path.endswith(suffix):
                base = path[: -len(suffix)]
                if base in by_path:
                    raise PathCollisionError(path, sources + [f"side file of {base}"])

    def _never_paths(self, answers: AnswerSet) -> set[str]:
        """Best-effort output paths of entries classified as never."""
        _, excluded = self.policy.split(self.template.files)
        paths: set[str] = set()
        for entry in excluded:
            try:
                paths.add(self.renderer.render_path(entry, answers))
            except RescaffoldError:
                continue
        return paths

    def _work_items(
        self,
        rendered: list[RenderedFile],
        manifest: Optional[ProjectManifest],
        never: set[str],
    ) -> tuple[list[_PathWork], list[FileOutcome]]:
        recorded = dict(manifest.files) if manifest is not None else {}
        work = [
            _PathWork(r.path, r.category, r.content, r.executable, recorded.pop(r.path, None))
            for r in rendered
        ]
        dropped: list[FileOutcome] = []
        for path in sorted(recorded):
            entry = recorded[path]
            if path in never:
                dropped.append(FileOutcome(
                    path=path, category=Category.NEVER, action=FileAction.SKIPPED,
                    reclassified=True, detail="now classified as never; left on disk",
                ))
                continue
            work.append(_PathWork(path, entry.category, None, False, entry))
        return work, dropped

    async def _decide(self, root: Path, item: _PathWork, fresh: bool) -> Decision:
        target = root / item.path
        try:
            disk = await self._bounded(lambda: read_bytes_if_exists(target))
        except OSError as exc:
            raise FilesystemError(item.path, "read", str(exc)) from exc
        previous = item.previous
        return reconcile_file(
            item.path,
            item.category,
            previous.sha256 if previous is not None else None,
            item.new,
            disk,
            previous_category=previous.category if previous is not None else None,
            fresh=fresh,
            conflict_mode=self.config.conflict_mode,
            sidecar_suffix=self.config.sidecar_suffix,
            executable=item.executable,
        )

    def _apply(self, root: Path, decision: Decision) -> None:
        target = root / decision.path
        if decision.delete:
            remove_file(target, root)
        if decision.write is not None:
            write_bytes_atomic(target, decision.write, executable=decision.executable)
        if decision.sidecar is not None and decision.sidecar_path is not None:
            write_bytes_atomic(root / decision.sidecar_path, decision.sidecar)

    async def _commit(self, root: Path, decision: Decision) -> Optional[FileFailure]:
        if not decision.touches_disk:
            return None
        operation = "delete" if decision.delete else "write"
        try:
            await self._bounded(lambda: self._apply(root, decision))
        except OSError as exc:
            logger.error("Failed to %s %s: %s", operation, decision.path, exc)
            return FileFailure(path=decision.path, operation=operation, reason=str(exc))
        return None

    async def _gather_each(self, tasks: list[Awaitable[T]]) -> list[T | BaseException]:
        return list(await asyncio.gather(*tasks, return_exceptions=True))

    async def _sync(
        self,
        root: Path,
        answers: AnswerSet,
        manifest: Optional[ProjectManifest],
        *,
        plan: bool,
    ) -> GenerationResult:
        rendered = await self.render_all(answers)
        fresh = manifest is None
        work, dropped = self._work_items(rendered, manifest, self._never_paths(answers))

        result = GenerationResult(
            destination=str(root),
            template=self.template.name,
            revision=self.template.revision,
            planned=plan,
        )

        decisions: list[Decision] = []
        outcomes = await self._gather_each([self._decide(root, item, fresh) for item in work])
        for item, outcome in zip(work, outcomes):
            if isinstance(outcome, FilesystemError):
                result.failures.append(
                    FileFailure(path=outcome.path, operation=outcome.operation, reason=outcome.reason)
                )
                result.outcomes.append(FileOutcome(
                    path=item.path, category=item.category, action=FileAction.FAILED,
                    detail=outcome.reason,
                ))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                decisions.append(outcome)

        failed: set[str] = set()
        if not plan and decisions:
            try:
                await asyncio.to_thread(root.mkdir, parents=True, exist_ok=True)
            except OSError as exc:
                raise FilesystemError(str(root), "create", str(exc)) from exc
            commits = await self._gather_each([self._commit(root, d) for d in decisions])
            for decision, failure in zip(decisions, commits):
                if isinstance(failure, BaseException):
                    raise failure
                if failure is not None:
                    result.failures.append(failure)
                    failed.add(decision.path)

        for decision in decisions:
            if decision.path in failed:
                result.outcomes.append(FileOutcome(
                    path=decision.path, category=decision.category, action=FileAction.FAILED,
                    reclassified=decision.reclassified,
                    detail=f"intended {decision.action.value}",
                ))
                continue
            result.outcomes.append(decision.outcome())
            if decision.conflict is not None:
                result.conflicts.append(decision.conflict)
        result.outcomes.extend(dropped)
        result.outcomes.sort(key=lambda o: o.path)
        result.conflicts.sort(key=lambda c: c.path)
        result.failures.sort(key=lambda f: f.path)

        if not plan:
            failure = await self._write_manifest(root, answers, manifest, decisions, failed, work)
            if failure is not None:
                result.failures.append(failure)

        logger.info(
            "%s %s: %d changed, %d conflicts, %d failures",
            "Planned" if plan else "Synced", root,
            len(result.changed_paths), len(result.conflicts), len(result.failures),
        )
        return result

    async def _write_manifest(
        self,
        root: Path,
        answers: AnswerSet,
        previous: Optional[ProjectManifest],
        decisions: list[Decision],
        failed: set[str],
        work: list[_PathWork],
    ) -> Optional[FileFailure]:
        files: dict[str, ManifestEntry] = {}
        decided = {d.path for d in decisions}
        for item in work:
            # Paths whose disk read failed keep their previous record.
            if item.path not in decided and item.previous is not None:
                files[item.path] = item.previous
        for decision in decisions:
            if decision.path in failed:
                old = previous.files.get(decision.path) if previous is not None else None
                if old is not None:
                    files[decision.path] = old
                continue
            if decision.record_hash is not None:
                files[decision.path] = ManifestEntry(
                    sha256=decision.record_hash, category=decision.category
                )

        if previous is None:
            manifest = ProjectManifest(
                template=self.template.name,
                revision=self.template.revision,
                answers=answers.snapshot(),
                files=files,
            )
        else:
            manifest = previous.model_copy(update={
                "revision": self.template.revision,
                "answers": answers.snapshot(),
                "files": files,
                "updated_at": utc_now(),
            })
        try:
            await asyncio.to_thread(save_manifest, manifest, root, self.config.manifest_name)
        except OSError as exc:
            logger.error("Failed to write manifest in %s: %s", root, exc)
            return FileFailure(path=self.config.manifest_name, operation="write", reason=str(exc))
        return None


# ---------------------------------------------------------------------------
# Convenience wrappers
# ---------------------------------------------------------------------------


async def generate_project(
    template: TemplateSpec,
    destination: str | Path,
    raw_answers: Mapping[str, Any] | None = None,
    *,
    config: Config | None = None,
    plan: bool = False,
) -> GenerationResult:
    """Generate *template* into *destination* in one call."""
    return await ProjectGenerator(template, config).generate(destination, raw_answers, plan=plan)


async def update_project(
    template: TemplateSpec,
    destination: str | Path,
    overrides: Mapping[str, Any] | None = None,
    *,
    config: Config | None = None,
    plan: bool = False,
) -> GenerationResult:
    """Update the project in *destination* to *template* in one call."""
    return await ProjectGenerator(template, config).update(destination, overrides, plan=plan)

