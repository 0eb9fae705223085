"""Answer collection.

Answers come from a key/value document (YAML or JSON), ``KEY=VALUE``
overrides, a manifest snapshot on update, and interactive Rich prompts.  All
sources merge into one raw mapping handed to
:func:`rescaffold.resolver.resolve_answers`; nothing is written to disk
while answers are being collected.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.prompt import Confirm, IntPrompt, Prompt

from rescaffold.models import VariableDefinition, VariableType
from rescaffold.resolver import check_value, default_for, stale_variables
from rescaffold.utils import console as default_console
from rescaffold.utils import load_document

AskFn = Callable[[VariableDefinition, Any], Any]


# ---------------------------------------------------------------------------
# Non-interactive sources
# ---------------------------------------------------------------------------


def load_answers_file(path: str | Path) -> dict[str, Any]:
    """Load a YAML or JSON answers document."""
    return load_document(path)


def parse_overrides(pairs: Iterable[str]) -> dict[str, str]:
    """Parse ``KEY=VALUE`` strings.

    Raises:
        ValueError: If an item has no ``=`` or an empty key.
    """
    result: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(f"Expected KEY=VALUE, got {pair!r}")
        result[key] = value
    return result


# ---------------------------------------------------------------------------
# Interactive prompts
# ---------------------------------------------------------------------------


def rich_ask(defn: VariableDefinition, default: Any, console: Console | None = None) -> Any:
    """Ask for one variable with the Rich prompt matching its type."""
    console = console or default_console
    question = f"[bold cyan]{defn.name}[/bold cyan]"
    if defn.help:
        question += f" [dim]({defn.help})[/dim]"

    if defn.type is VariableType.BOOL:
        return Confirm.ask(question, default=bool(default), console=console)
    if defn.type is VariableType.INT:
        if default is None:
            return IntPrompt.ask(question, console=console)
        return IntPrompt.ask(question, default=int(default), console=console)
    if defn.choices:
        choices = [str(c) for c in defn.choices]
        shown = str(default) if default is not None and str(default) in choices else choices[0]
        return Prompt.ask(question, choices=choices, default=shown, console=console)
    if default is None:
        return Prompt.ask(question, console=console)
    return Prompt.ask(question, default=str(default), console=console)


def prompt_answers(
    definitions: Iterable[VariableDefinition],
    names: Iterable[str],
    current: Mapping[str, Any],
    ask: AskFn | None = None,
    console: Console | None = None,
) -> dict[str, Any]:
    """Prompt for each variable in *names*, re-asking until the value is valid."""
    console = console or default_console
    ask = ask or (lambda defn, default: rich_ask(defn, default, console))
    wanted = set(names)
    answers: dict[str, Any] = {}
    for defn in definitions:
        if defn.is_derived or defn.name not in wanted:
            continue
        default = current.get(defn.name, default_for(defn))
        while True:
            value = ask(defn, default)
            _, problems = check_value(defn, value)
            if not problems:
                answers[defn.name] = value
                break
            for problem in problems:
                console.print(f"[bold red]{defn.name}: {problem}[/bold red]")
    return answers


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def collect_answers(
    definitions: Iterable[VariableDefinition],
    supplied: Mapping[str, Any] | None = None,
    *,
    recorded: Optional[Mapping[str, Any]] = None,
    interactive: bool = False,
    ask: AskFn | None = None,
) -> dict[str, Any]:
    """Merge every answer source into one raw mapping.

    Precedence, lowest first: the *recorded* manifest snapshot, then
    *supplied* values (answers file and overrides).  In interactive mode the
    user is asked for every input variable not supplied; on update
    (*recorded* given) only for variables that are new or whose recorded
    value no longer validates.
    """
    defs = list(definitions)
    supplied = dict(supplied or {})
    inputs = {d.name for d in defs if not d.is_derived}
    # Derived values and retired variables in the snapshot are recomputed or dropped.
    raw: dict[str, Any] = {k: v for k, v in (recorded or {}).items() if k in inputs}
    raw.update(supplied)

    if interactive:
        if recorded is None:
            pending = [d.name for d in defs if not d.is_derived and d.name not in supplied]
        else:
            pending = [n for n in stale_variables(defs, recorded) if n not in supplied]
        raw.update(prompt_answers(defs, pending, raw, ask=ask))
    return raw
