"""Command-line interface.

Usage::

    rescaffold generate ./templates/py-service ./my-service --data project_name=billing
    rescaffold update ./templates/py-service ./my-service --pretend
    rescaffold inspect ./my-service

Exit codes: 0 on success, 2 when the run completed with conflicts, 1 on
failure.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from rescaffold.answers import collect_answers, load_answers_file, parse_overrides
from rescaffold.config import Config
from rescaffold.errors import ManifestError, RescaffoldError
from rescaffold.generator import ProjectGenerator
from rescaffold.manifest import drift_report, load_manifest
from rescaffold.models import ConflictMode, FileAction, GenerationResult, ResultStatus
from rescaffold.template_loader import load_template
from rescaffold.utils import (
    console,
    print_error,
    print_success,
    print_summary_table,
    print_warning,
)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFLICTS = 2

_ACTION_STYLES: dict[FileAction, str] = {
    FileAction.CREATED: "green",
    FileAction.UPDATED: "cyan",
    FileAction.OVERWRITTEN: "yellow",
    FileAction.REMOVED: "magenta",
    FileAction.UNCHANGED: "dim",
    FileAction.KEPT: "blue",
    FileAction.SKIPPED: "dim",
    FileAction.CONFLICT: "bold red",
    FileAction.FAILED: "bold red",
}


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def print_result(result: GenerationResult, show_unchanged: bool = False) -> None:
    """Render a ``GenerationResult`` as a Rich table plus conflict details."""
    table = Table(
        title=f"{result.template} rev {result.revision} -> {result.destination}",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Path", no_wrap=True)
    table.add_column("Category", style="dim")
    table.add_column("Action")
    table.add_column("Detail", style="dim")
    for outcome in result.outcomes:
        if outcome.action is FileAction.UNCHANGED and not show_unchanged:
            continue
        style = _ACTION_STYLES.get(outcome.action, "white")
        detail = outcome.detail
        if outcome.reclassified:
            detail = f"reclassified; {detail}" if detail else "reclassified"
        table.add_row(
            outcome.path,
            outcome.category.value,
            f"[{style}]{outcome.action.value}[/{style}]",
            detail,
        )
    console.print(table)

    for conflict in result.conflicts:
        lines = [
            f"old:  {conflict.old_hash or '-'}",
            f"new:  {conflict.new_hash or '-'}",
            f"disk: {conflict.disk_hash or '-'}",
        ]
        if conflict.sidecar_path:
            lines.append(f"new version written to [bold]{conflict.sidecar_path}[/bold]")
        elif conflict.resolution is ConflictMode.MARKERS:
            lines.append("conflict markers written in place")
        console.print(Panel("\n".join(lines), title=f"[bold red]conflict: {conflict.path}[/bold red]",
                            style="red"))

    for failure in result.failures:
        print_error(f"{failure.operation} failed for {failure.path}: {failure.reason}")

    prefix = "[pretend] " if result.planned else ""
    if result.status is ResultStatus.SUCCESS:
        print_success(f"{prefix}Done: {len(result.changed_paths)} file(s) changed.")
    elif result.status is ResultStatus.SUCCESS_WITH_CONFLICTS:
        print_warning(
            f"{prefix}Completed with {len(result.conflicts)} conflict(s); resolve them manually."
        )
    else:
        print_error(f"{prefix}{len(result.failures)} file operation(s) failed; re-run to retry.")


def exit_code(result: GenerationResult) -> int:
    if result.status is ResultStatus.FAILURE:
        return EXIT_FAILURE
    if result.status is ResultStatus.SUCCESS_WITH_CONFLICTS:
        return EXIT_CONFLICTS
    return EXIT_OK


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _supplied_answers(args: argparse.Namespace) -> dict[str, Any]:
    supplied: dict[str, Any] = {}
    if args.answers:
        supplied.update(load_answers_file(args.answers))
    supplied.update(parse_overrides(args.data or []))
    return supplied


def _config_from_args(args: argparse.Namespace) -> Config:
    config = Config.from_env()
    updates: dict[str, Any] = {}
    if getattr(args, "conflict_mode", None):
        updates["conflict_mode"] = ConflictMode(args.conflict_mode)
    if getattr(args, "workers", None):
        updates["max_workers"] = args.workers
    return config.model_copy(update=updates) if updates else config


def _interactive(args: argparse.Namespace) -> bool:
    return not args.no_input and sys.stdin.isatty()


def cmd_generate(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    template = load_template(args.template, config)
    generator = ProjectGenerator(template, config)
    raw = collect_answers(
        template.variables, _supplied_answers(args), interactive=_interactive(args)
    )
    result = asyncio.run(generator.generate(args.destination, raw, plan=args.pretend))
    print_result(result, show_unchanged=args.verbose)
    return exit_code(result)


def cmd_update(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    template = load_template(args.template, config)
    generator = ProjectGenerator(template, config)
    manifest = generator.read_manifest(args.destination)
    if manifest is None:
        raise ManifestError(
            "No manifest found; run generate first",
            str(Path(args.destination) / config.manifest_name),
        )
    raw = collect_answers(
        template.variables, _supplied_answers(args),
        recorded=manifest.answers, interactive=_interactive(args),
    )
    result = asyncio.run(generator.update(args.destination, raw, plan=args.pretend))
    print_result(result, show_unchanged=args.verbose)
    return exit_code(result)


def cmd_inspect(args: argparse.Namespace) -> int:
    config = Config.from_env()
    root = Path(args.destination)
    manifest = load_manifest(root, config.manifest_name)
    if manifest is None:
        print_error(f"No {config.manifest_name} in {root}")
        return EXIT_FAILURE
    print_summary_table(
        {
            "Template": manifest.template,
            "Revision": manifest.revision,
            "Schema": str(manifest.schema_version),
            "Created": manifest.created_at,
            "Updated": manifest.updated_at,
            "Files": str(len(manifest.files)),
        },
        title="Manifest",
    )
    print_summary_table({k: repr(v) for k, v in manifest.answers.items()}, title="Answers")

    drift = drift_report(root, manifest)
    changed = {path: state for path, state in drift.items() if state != "clean"}
    if not changed:
        print_success("All generated files match the manifest.")
        return EXIT_OK
    table = Table(title="Local changes", show_header=True, header_style="bold cyan")
    table.add_column("Path", no_wrap=True)
    table.add_column("Category", style="dim")
    table.add_column("State")
    for path, state in changed.items():
        table.add_row(path, manifest.files[path].category.value, f"[yellow]{state}[/yellow]")
    console.print(table)
    return EXIT_OK


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rescaffold",
        description="Generate projects from templates and keep them in sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  rescaffold generate ./tpl ./out --data project_name=demo\n"
            "  rescaffold update ./tpl ./out --conflict-mode markers\n"
            "  rescaffold inspect ./out\n"
        ),
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("generate", "Render a template into a directory"),
        ("update", "Re-sync a generated project with a newer template"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("template", help="Template package directory")
        cmd.add_argument("destination", help="Project directory")
        cmd.add_argument("--answers", "-a", help="YAML or JSON answers file")
        cmd.add_argument(
            "--data", "-d", action="append", metavar="KEY=VALUE",
            help="Answer override (repeatable)",
        )
        cmd.add_argument("--no-input", action="store_true", help="Never prompt")
        cmd.add_argument("--pretend", action="store_true", help="Show decisions without writing")
        cmd.add_argument(
            "--conflict-mode", choices=[m.value for m in ConflictMode],
            help="How to surface conflicts (default: sidecar)",
        )
        cmd.add_argument("--workers", type=int, help="Worker pool size")

    inspect_cmd = sub.add_parser("inspect", help="Show the manifest and local drift")
    inspect_cmd.add_argument("destination", help="Project directory")
    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point for ``rescaffold`` and ``python -m rescaffold``."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    handlers = {"generate": cmd_generate, "update": cmd_update, "inspect": cmd_inspect}
    try:
        return handlers[args.command](args)
    except RescaffoldError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        return EXIT_FAILURE
    except (OSError, ValueError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print_warning("Cancelled.")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
