"""Inclusion conditions: a closed boolean grammar over variable references.

Grammar::

    expr     := and_expr ( ("or" | "||") and_expr )*
    and_expr := not_expr ( ("and" | "&&") not_expr )*
    not_expr := ("not" | "!") not_expr | atom
    atom     := IDENT | "true" | "false" | "(" expr ")"

Expressions are tokenized, parsed into an immutable tree, and evaluated by
walking that tree.  Nothing is ever handed to ``eval``.  A variable's truth
value is the Python truthiness of its resolved answer.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Union

from rescaffold.errors import ConditionSyntaxError, MissingVariableError


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: bool


@dataclass(frozen=True)
class Var:
    name: str


@dataclass(frozen=True)
class Not:
    operand: "Condition"


@dataclass(frozen=True)
class And:
    operands: tuple["Condition", ...]


@dataclass(frozen=True)
class Or:
    operands: tuple["Condition", ...]


Condition = Union[Literal, Var, Not, And, Or]

ALWAYS = Literal(True)


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"\s*(?:(?P<lparen>\()|(?P<rparen>\))|(?P<and>&&)|(?P<or>\|\|)|(?P<bang>!)"
    r"|(?P<ident>[A-Za-z_][A-Za-z0-9_]*))"
)
_KEYWORDS = {"and": "and", "or": "or", "not": "bang", "true": "true", "false": "false"}


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(expression: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    length = len(expression)
    while pos < length:
        if expression[pos:].strip() == "":
            break
        match = _TOKEN_RE.match(expression, pos)
        if match is None or match.end() == pos:
            offset = pos + (len(expression[pos:]) - len(expression[pos:].lstrip()))
            raise ConditionSyntaxError(
                expression, f"unexpected character {expression[offset]!r}", offset
            )
        kind = match.lastgroup or ""
        text = match.group(kind)
        start = match.start(kind)
        if kind == "ident":
            kind = _KEYWORDS.get(text.lower(), "ident")
        tokens.append(_Token(kind, text, start))
        pos = match.end()
    tokens.append(_Token("end", "", length))
    return tokens


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _Parser:
    """Recursive-descent parser producing a ``Condition`` tree."""

    def __init__(self, expression: str) -> None:
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.index = 0

    @property
    def current(self) -> _Token:
        return self.tokens[self.index]

    def _advance(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _fail(self, message: str) -> ConditionSyntaxError:
        return ConditionSyntaxError(self.expression, message, self.current.pos)

    def parse(self) -> Condition:
        if self.current.kind == "end":
            raise self._fail("empty expression")
        node = self._or()
        if self.current.kind != "end":
            raise self._fail(f"unexpected {self.current.text!r}")
        return node

    def _or(self) -> Condition:
        operands = [self._and()]
        while self.current.kind == "or":
            self._advance()
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else Or(tuple(operands))

    def _and(self) -> Condition:
        operands = [self._not()]
        while self.current.kind == "and":
            self._advance()
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else And(tuple(operands))

    def _not(self) -> Condition:
        if self.current.kind == "bang":
            self._advance()
            return Not(self._not())
        return self._atom()

    def _atom(self) -> Condition:
        token = self.current
        if token.kind == "ident":
            self._advance()
            return Var(token.text)
        if token.kind in ("true", "false"):
            self._advance()
            return Literal(token.kind == "true")
        if token.kind == "lparen":
            self._advance()
            node = self._or()
            if self.current.kind != "rparen":
                raise self._fail("expected ')'")
            self._advance()
            return node
        if token.kind == "end":
            raise self._fail("unexpected end of expression")
        raise self._fail(f"unexpected {token.text!r}")


@lru_cache(maxsize=512)
def parse_condition(expression: str) -> Condition:
    """Parse *expression* into an immutable condition tree.

    Raises:
        ConditionSyntaxError: If the expression is not in the grammar.
    """
    return _Parser(expression).parse()


# ---------------------------------------------------------------------------
# Analysis and evaluation
# ---------------------------------------------------------------------------


def references(node: Condition) -> frozenset[str]:
    """Return every variable name referenced by *node*."""
    if isinstance(node, Var):
        return frozenset({node.name})
    if isinstance(node, Not):
        return references(node.operand)
    if isinstance(node, (And, Or)):
        names: set[str] = set()
        for operand in node.operands:
            names |= references(operand)
        return frozenset(names)
    return frozenset()


def evaluate(node: Condition, answers: Mapping[str, Any], location: str = "<condition>") -> bool:
    """Evaluate *node* against *answers*.

    ``And``/``Or`` evaluate every operand so a missing variable is reported
    regardless of short-circuiting.
    """
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Var):
        if node.name not in answers:
            raise MissingVariableError(node.name, location)
        return bool(answers[node.name])
    if isinstance(node, Not):
        return not evaluate(node.operand, answers, location)
    if isinstance(node, And):
        return all([evaluate(op, answers, location) for op in node.operands])
    if isinstance(node, Or):
        return any([evaluate(op, answers, location) for op in node.operands])
    raise TypeError(f"Unknown condition node: {node!r}")


def is_included(expression: str | None, answers: Mapping[str, Any], location: str = "") -> bool:
    """Decide whether an entry guarded by *expression* is included."""
    if expression is None or not expression.strip():
        return True
    return evaluate(parse_condition(expression), answers, location or expression)


def undeclared(expression: str, declared: Iterable[str]) -> list[str]:
    """Names referenced by *expression* that are not in *declared*, sorted."""
    known = set(declared)
    return sorted(name for name in references(parse_condition(expression)) if name not in known)
