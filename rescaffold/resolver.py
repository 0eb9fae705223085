"""Variable resolution: raw answers to an immutable ``AnswerSet``.

Raw values are coerced to their declared type, defaulted, and validated with
every violation accumulated into a single ``ValidationError``.  Derived
variables are then computed in dependency order; a dependency cycle is
reported as ``CycleError`` before any derivation runs.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator, Mapping
from graphlib import CycleError as _GraphCycleError
from graphlib import TopologicalSorter
from types import MappingProxyType
from typing import Any, Optional

from rescaffold.errors import CycleError, UnresolvedVariableError, ValidationError
from rescaffold.models import VariableDefinition, VariableType
from rescaffold.renderer import TemplateRenderer

logger = logging.getLogger(__name__)

_TRUE_STRINGS = frozenset({"true", "yes", "y", "1", "on"})
_FALSE_STRINGS = frozenset({"false", "no", "n", "0", "off", ""})


# ---------------------------------------------------------------------------
# AnswerSet
# ---------------------------------------------------------------------------


class AnswerSet(Mapping[str, Any]):
    """Resolved, read-only variable environment for one invocation."""

    __slots__ = ("_data",)

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._data = MappingProxyType(dict(values or {}))

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"AnswerSet({dict(self._data)!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            return dict(self._data) == dict(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def snapshot(self) -> dict[str, Any]:
        """Return a plain, sorted dict copy suitable for persistence."""
        return {key: self._data[key] for key in sorted(self._data)}


# ---------------------------------------------------------------------------
# Coercion and validation
# ---------------------------------------------------------------------------


def _coerce(defn: VariableDefinition, value: Any) -> Any:
    """Convert *value* to the declared type, raising ``ValueError`` on mismatch."""
    if value is None:
        return None
    if defn.type is VariableType.BOOL:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
        raise ValueError(f"expected a boolean, got {value!r}")
    if defn.type is VariableType.INT:
        if isinstance(value, bool):
            raise ValueError(f"expected an integer, got {value!r}")
        if isinstance(value, int):
            return value
        if isinstance(value, str) and re.fullmatch(r"\s*[-+]?\d+\s*", value):
            return int(value)
        raise ValueError(f"expected an integer, got {value!r}")
    if defn.type is VariableType.CHOICE:
        for choice in defn.choices:
            if value == choice or (isinstance(value, str) and str(choice) == value):
                return choice
        return value
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return str(value)
    raise ValueError(f"expected a string, got {value!r}")


def _violations(defn: VariableDefinition, value: Any) -> list[str]:
    """Check *value* against the variable's rule; return every failed check."""
    problems: list[str] = []
    empty = value is None or (isinstance(value, str) and value.strip() == "")
    if empty:
        if defn.required:
            problems.append("a value is required")
        return problems
    if defn.pattern is not None and isinstance(value, str):
        if re.fullmatch(defn.pattern, value) is None:
            problems.append(f"{value!r} does not match pattern {defn.pattern!r}")
    if defn.choices and value not in defn.choices:
        allowed = ", ".join(repr(c) for c in defn.choices)
        problems.append(f"{value!r} is not one of {allowed}")
    return problems


def check_value(defn: VariableDefinition, raw: Any) -> tuple[Any, list[str]]:
    """Coerce and validate a single raw value.

    Returns:
        ``(value, problems)``; *problems* is empty when the value is valid.
    """
    try:
        value = _coerce(defn, raw)
    except ValueError as exc:
        return raw, [str(exc)]
    if value is None and defn.type is VariableType.BOOL and not defn.required:
        value = False
    return value, _violations(defn, value)


# ---------------------------------------------------------------------------
# Dependency ordering
# ---------------------------------------------------------------------------


def derivation_order(
    definitions: Iterable[VariableDefinition],
    renderer: TemplateRenderer | None = None,
) -> list[str]:
    """Return derived variable names in dependency order.

    Raises:
        UnresolvedVariableError: If a derivation references an undeclared name.
        CycleError: If derivations depend on each other cyclically.
    """
    renderer = renderer or TemplateRenderer()
    defs = list(definitions)
    declared = {d.name for d in defs}
    derived = {d.name for d in defs if d.is_derived}

    sorter: TopologicalSorter[str] = TopologicalSorter()
    for defn in defs:
        if not defn.is_derived:
            continue
        assert defn.derive is not None
        refs = renderer.referenced_names(defn.derive, f"derivation of '{defn.name}'")
        for ref in sorted(refs):
            if ref not in declared:
                raise UnresolvedVariableError(ref, f"derivation of '{defn.name}'")
        sorter.add(defn.name, *sorted(r for r in refs if r in derived))
    try:
        return list(sorter.static_order())
    except _GraphCycleError as exc:
        cycle = list(exc.args[1]) if len(exc.args) > 1 else []
        raise CycleError(cycle) from exc


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def resolve_answers(
    definitions: Iterable[VariableDefinition],
    raw_answers: Mapping[str, Any] | None = None,
    *,
    renderer: TemplateRenderer | None = None,
) -> AnswerSet:
    """Resolve *raw_answers* against *definitions* into an ``AnswerSet``.

    Args:
        definitions: Every variable the template declares.
        raw_answers: User-supplied values keyed by variable name.  Values for
            derived variables are ignored.
        renderer: Renderer used to evaluate derivations.

    Raises:
        CycleError: Derived variables form a cycle.  Checked first.
        ValidationError: One or more values are invalid; lists all of them.
    """
    renderer = renderer or TemplateRenderer()
    defs = {d.name: d for d in definitions}
    raw = dict(raw_answers or {})

    order = derivation_order(defs.values(), renderer)

    for name in sorted(set(raw) - set(defs)):
        logger.warning("Ignoring answer for undeclared variable '%s'", name)
    for name in sorted(n for n in raw if n in defs and defs[n].is_derived):
        logger.warning("Ignoring answer for derived variable '%s'", name)

    values: dict[str, Any] = {}
    violations: list[tuple[str, str]] = []
    for name, defn in defs.items():
        if defn.is_derived:
            continue
        supplied = raw.get(name, defn.default)
        value, problems = check_value(defn, supplied)
        violations.extend((name, problem) for problem in problems)
        values[name] = value
    if violations:
        raise ValidationError(violations)

    for name in order:
        defn = defs[name]
        assert defn.derive is not None
        rendered = renderer.render_string(defn.derive, values, f"derivation of '{name}'")
        value, problems = check_value(defn, rendered)
        violations.extend((name, problem) for problem in problems)
        values[name] = value
        logger.debug("Derived %s = %r", name, value)
    if violations:
        raise ValidationError(violations)

    return AnswerSet({name: values[name] for name in defs})


def stale_variables(
    definitions: Iterable[VariableDefinition],
    recorded: Mapping[str, Any],
) -> list[str]:
    """Names that must be asked again on update.

    A non-derived variable is stale when it is new since *recorded* was
    captured, or when its recorded value no longer passes validation.
    """
    stale: list[str] = []
    for defn in definitions:
        if defn.is_derived:
            continue
        if defn.name not in recorded:
            stale.append(defn.name)
            continue
        _, problems = check_value(defn, recorded[defn.name])
        if problems:
            stale.append(defn.name)
    return stale


def default_for(defn: VariableDefinition) -> Optional[Any]:
    """The coerced default of *defn*, or ``None`` if it does not coerce."""
    value, problems = check_value(defn, defn.default)
    return None if problems else value
