"""Three-way reconciliation of generated files.

For every output path the engine compares three versions of the content:

* ``O``: the hash recorded in the manifest at the last generation,
* ``N``: the freshly rendered content,
* ``D``: the content currently on disk,

where ``None`` stands for "absent".  Each path lands in exactly one terminal
state.  The engine never merges file bodies: a three-way divergence always
yields a ``ConflictRecord`` and the new render is surfaced next to (or
inside) the user's file for manual resolution.

``reconcile_file`` only decides; the orchestrator performs the I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from rescaffold.models import (
    Category,
    ConflictMode,
    ConflictRecord,
    FileAction,
    FileOutcome,
)
from rescaffold.utils import optional_hash

MARKER_LOCAL = "<<<<<<< local"
MARKER_SEP = "======="
MARKER_TEMPLATE = ">>>>>>> template"


@dataclass(frozen=True)
class Decision:
    """What to do with one path, and what the manifest records afterwards.

    ``record_hash`` is the manifest hash once the decision has been applied;
    ``None`` drops the path from the manifest.
    """

    path: str
    category: Category
    action: FileAction
    record_hash: Optional[str]
    write: Optional[bytes] = None
    delete: bool = False
    sidecar_path: Optional[str] = None
    sidecar: Optional[bytes] = None
    conflict: Optional[ConflictRecord] = None
    reclassified: bool = False
    executable: bool = False
    detail: str = ""

    @property
    def touches_disk(self) -> bool:
        return self.write is not None or self.delete or self.sidecar is not None

    def outcome(self) -> FileOutcome:
        return FileOutcome(
            path=self.path,
            category=self.category,
            action=self.action,
            reclassified=self.reclassified,
            detail=self.detail,
        )


# ---------------------------------------------------------------------------
# Conflict surfacing
# ---------------------------------------------------------------------------


def conflict_markers(disk: bytes, new: bytes) -> Optional[bytes]:
    """Wrap both versions in conflict markers, or ``None`` for binary bodies."""
    try:
        local = disk.decode("utf-8")
        incoming = new.decode("utf-8")
    except UnicodeDecodeError:
        return None
    if local and not local.endswith("\n"):
        local += "\n"
    if incoming and not incoming.endswith("\n"):
        incoming += "\n"
    text = f"{MARKER_LOCAL}\n{local}{MARKER_SEP}\n{incoming}{MARKER_TEMPLATE}\n"
    return text.encode("utf-8")


def has_conflict_markers(content: bytes) -> bool:
    """True if *content* still holds a marker block written by a past conflict."""
    lines = content.splitlines()
    return MARKER_LOCAL.encode() in lines and MARKER_TEMPLATE.encode() in lines


def _conflict(
    path: str,
    category: Category,
    old_hash: Optional[str],
    new: Optional[bytes],
    disk: Optional[bytes],
    *,
    mode: ConflictMode,
    sidecar_suffix: str,
    reclassified: bool,
    executable: bool,
    detail: str,
) -> Decision:
    new_hash = optional_hash(new)
    disk_hash = optional_hash(disk)

    if new is None:
        # Template dropped a file the user has modified: leave it where it is.
        record = ConflictRecord(
            path=path, old_hash=old_hash, new_hash=None, disk_hash=disk_hash,
            resolution=ConflictMode.SIDECAR,
        )
        return Decision(
            path=path, category=category, action=FileAction.CONFLICT, record_hash=None,
            conflict=record, reclassified=reclassified, detail=detail,
        )

    if mode is ConflictMode.MARKERS and disk is not None:
        merged = conflict_markers(disk, new)
        if merged is not None:
            record = ConflictRecord(
                path=path, old_hash=old_hash, new_hash=new_hash, disk_hash=disk_hash,
                resolution=ConflictMode.MARKERS,
            )
            return Decision(
                path=path, category=category, action=FileAction.CONFLICT,
                record_hash=new_hash, write=merged, conflict=record,
                reclassified=reclassified, executable=executable,
                detail=detail + "; conflict markers written",
            )

    sidecar_path = path + sidecar_suffix
    record = ConflictRecord(
        path=path, old_hash=old_hash, new_hash=new_hash, disk_hash=disk_hash,
        resolution=ConflictMode.SIDECAR, sidecar_path=sidecar_path,
    )
    return Decision(
        path=path, category=category, action=FileAction.CONFLICT, record_hash=new_hash,
        sidecar_path=sidecar_path, sidecar=new, conflict=record,
        reclassified=reclassified, detail=detail + f"; new version in {sidecar_path}",
    )


# ---------------------------------------------------------------------------
# Per-category rules
# ---------------------------------------------------------------------------


def _always_update(
    path: str,
    old_hash: Optional[str],
    new: Optional[bytes],
    disk: Optional[bytes],
    reclassified: bool,
    executable: bool,
) -> Decision:
    category = Category.ALWAYS_UPDATE
    new_hash = optional_hash(new)
    disk_hash = optional_hash(disk)

    if new is None:
        if disk is None:
            return Decision(path=path, category=category, action=FileAction.UNCHANGED,
                            record_hash=None, reclassified=reclassified,
                            detail="removed from template, already absent")
        return Decision(path=path, category=category, action=FileAction.REMOVED,
                        record_hash=None, delete=True, reclassified=reclassified,
                        detail="removed from template")
    if disk_hash == new_hash:
        return Decision(path=path, category=category, action=FileAction.UNCHANGED,
                        record_hash=new_hash, reclassified=reclassified)
    if disk is None:
        action = FileAction.CREATED
    elif disk_hash != old_hash:
        action = FileAction.OVERWRITTEN
    else:
        action = FileAction.UPDATED
    detail = "local edits discarded" if action is FileAction.OVERWRITTEN else ""
    return Decision(path=path, category=category, action=action, record_hash=new_hash,
                    write=new, reclassified=reclassified, executable=executable,
                    detail=detail)


def _protected_once(
    path: str,
    old_hash: Optional[str],
    new: Optional[bytes],
    disk: Optional[bytes],
    *,
    fresh: bool,
    mode: ConflictMode,
    sidecar_suffix: str,
    reclassified: bool,
    executable: bool,
) -> Decision:
    category = Category.PROTECTED_ONCE
    new_hash = optional_hash(new)
    disk_hash = optional_hash(disk)

    if disk_hash == new_hash:
        return Decision(path=path, category=category, action=FileAction.UNCHANGED,
                        record_hash=new_hash, reclassified=reclassified,
                        detail="" if new is not None else "removed from template, already absent")

    if old_hash is None and fresh:
        if disk is None:
            return Decision(path=path, category=category, action=FileAction.CREATED,
                            record_hash=new_hash, write=new, reclassified=reclassified,
                            executable=executable)
        return Decision(path=path, category=category, action=FileAction.SKIPPED,
                        record_hash=new_hash, reclassified=reclassified,
                        detail="exists already; left untouched")

    if disk_hash == old_hash:
        if new is None:
            return Decision(path=path, category=category, action=FileAction.REMOVED,
                            record_hash=None, delete=True, reclassified=reclassified,
                            detail="removed from template")
        action = FileAction.CREATED if disk is None else FileAction.UPDATED
        return Decision(path=path, category=category, action=action, record_hash=new_hash,
                        write=new, reclassified=reclassified, executable=executable)

    if new_hash == old_hash:
        if disk is None:
            detail = "deleted locally"
        elif has_conflict_markers(disk):
            detail = "unresolved conflict markers"
        else:
            detail = "edited locally"
        return Decision(path=path, category=category, action=FileAction.KEPT,
                        record_hash=old_hash, reclassified=reclassified,
                        detail=f"{detail}; template unchanged")

    if new is None:
        detail = "edited locally but removed from template"
    elif disk is None:
        detail = "deleted locally but changed in template"
    else:
        detail = "edited locally and changed in template"
    return _conflict(
        path, category, old_hash, new, disk,
        mode=mode, sidecar_suffix=sidecar_suffix, reclassified=reclassified,
        executable=executable, detail=detail,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def reconcile_file(
    path: str,
    category: Category,
    old_hash: Optional[str],
    new: Optional[bytes],
    disk: Optional[bytes],
    *,
    previous_category: Optional[Category] = None,
    fresh: bool = False,
    conflict_mode: ConflictMode = ConflictMode.SIDECAR,
    sidecar_suffix: str = ".rescaffold-new",
    executable: bool = False,
) -> Decision:
    """Decide the terminal state of one output path.

    Args:
        path: Output path relative to the project root.
        category: Current category.  For a path the template no longer
            renders, the category recorded in the manifest.
        old_hash: Hash recorded at the last generation (``O``).
        new: Newly rendered bytes (``N``), ``None`` if no longer rendered.
        disk: Bytes currently on disk (``D``), ``None`` if absent.
        previous_category: Category recorded in the manifest, if any.
        fresh: True when no manifest exists yet, so protected files that are
            already present are kept rather than reported as conflicts.
        conflict_mode: How a three-way conflict is surfaced.
        sidecar_suffix: Suffix of the side file holding ``N`` on conflict.
        executable: Whether a written file gets executable bits.
    """
    if category is Category.NEVER:
        raise ValueError(f"{path}: files classified as never are not reconciled")
    reclassified = previous_category is not None and previous_category is not category
    if category is Category.ALWAYS_UPDATE:
        return _always_update(path, old_hash, new, disk, reclassified, executable)
    return _protected_once(
        path, old_hash, new, disk,
        fresh=fresh, mode=conflict_mode, sidecar_suffix=sidecar_suffix,
        reclassified=reclassified, executable=executable,
    )
