from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, Union

SelectionLookup = Callable[[str], bool]

_TOKEN_RE = re.compile(r"\(|\)|[^\s()]+")
_KEYWORDS = {"and", "or", "not", "of"}


class ConditionSyntaxError(ValueError):
    """Raised when a Sigma condition cannot be parsed or references unknown selections."""

    def __init__(self, message: str, condition: str = "", position: Optional[int] = None):
        self.condition = condition
        self.position = position
        self.reason = message
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"Invalid condition {condition!r}{where}: {message}")


class ConditionExpr:
    def evaluate(self, get_selection: SelectionLookup) -> bool:
        raise NotImplementedError

    def identifiers(self) -> Tuple[str, ...]:
        return ()


@dataclass(frozen=True)
class Ident(ConditionExpr):
    name: str

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        return get_selection(self.name)

    def identifiers(self) -> Tuple[str, ...]:
        return (self.name,)


@dataclass(frozen=True)
class Not(ConditionExpr):
    node: ConditionExpr

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        return not self.node.evaluate(get_selection)

    def identifiers(self) -> Tuple[str, ...]:
        return self.node.identifiers()


@dataclass(frozen=True)
class And(ConditionExpr):
    left: ConditionExpr
    right: ConditionExpr

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        return self.left.evaluate(get_selection) and self.right.evaluate(get_selection)

    def identifiers(self) -> Tuple[str, ...]:
        return self.left.identifiers() + self.right.identifiers()


@dataclass(frozen=True)
class Or(ConditionExpr):
    left: ConditionExpr
    right: ConditionExpr

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        return self.left.evaluate(get_selection) or self.right.evaluate(get_selection)

    def identifiers(self) -> Tuple[str, ...]:
        return self.left.identifiers() + self.right.identifiers()


@dataclass(frozen=True)
class Quantifier(ConditionExpr):
    """
    ``N of <glob>`` (kind "N") or ``all of <glob>`` (kind "all").

    ``selection_names`` is filled by :func:`bind` with the rule's selection
    names matching ``pattern``. A pattern matching no selection is false.
    """
    kind: str
    pattern: str
    count: int = 1
    selection_names: Tuple[str, ...] = ()

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        if not self.selection_names:
            return False

        if self.kind == "all":
            return all(get_selection(name) for name in self.selection_names)

        matched = 0
        for name in self.selection_names:
            if get_selection(name):
                matched += 1
                if matched >= self.count:
                    return True
        return False


class _ConditionParser:
    def __init__(self, condition: str):
        self.condition = condition
        self.tokens: List[Tuple[str, int]] = [(m.group(0), m.start()) for m in _TOKEN_RE.finditer(condition)]
        self.pos = 0

    def _peek(self) -> Optional[str]:
        if self.pos >= len(self.tokens):
            return None
        return self.tokens[self.pos][0]

    def _position(self) -> int:
        if self.pos >= len(self.tokens):
            return len(self.condition)
        return self.tokens[self.pos][1]

    def _error(self, message: str) -> ConditionSyntaxError:
        return ConditionSyntaxError(message, condition=self.condition, position=self._position())

    def _consume(self) -> Optional[str]:
        tok = self._peek()
        if tok is None:
            return None
        self.pos += 1
        return tok

    def _expect_keyword(self, expected: str) -> None:
        tok = self._peek()
        if tok is None:
            raise self._error(f"expected {expected!r}, got end of condition")
        if tok.lower() != expected:
            raise self._error(f"expected {expected!r}, got {tok!r}")
        self._consume()

    def parse(self) -> ConditionExpr:
        if not self.tokens:
            raise self._error("condition is empty")
        node = self._parse_or()
        if self._peek() is not None:
            raise self._error(f"unexpected token {self._peek()!r}")
        return node

    def _parse_or(self) -> ConditionExpr:
        node = self._parse_and()
        while True:
            tok = self._peek()
            if tok and tok.lower() == "or":
                self._consume()
                rhs = self._parse_and()
                node = Or(node, rhs)
                continue
            break
        return node

    def _parse_and(self) -> ConditionExpr:
        node = self._parse_not()
        while True:
            tok = self._peek()
            if tok and tok.lower() == "and":
                self._consume()
                rhs = self._parse_not()
                node = And(node, rhs)
                continue
            break
        return node

    def _parse_not(self) -> ConditionExpr:
        tok = self._peek()
        if tok and tok.lower() == "not":
            self._consume()
            return Not(self._parse_not())
        return self._parse_atom()

    def _parse_atom(self) -> ConditionExpr:
        tok = self._peek()
        if tok is None:
            raise self._error("unexpected end of condition")

        if tok == "(":
            self._consume()
            node = self._parse_or()
            if self._peek() != ")":
                raise self._error("missing closing parenthesis")
            self._consume()
            return node

        if tok == ")":
            raise self._error("unexpected ')'")

        lower = tok.lower()
        if lower in ("all", "any") or tok.isdigit():
            return self._parse_quantifier()

        if lower in _KEYWORDS:
            raise self._error(f"unexpected keyword {tok!r}")

        if not re.fullmatch(r"[A-Za-z0-9_.\-]+", tok):
            raise self._error(f"invalid selection name {tok!r}")

        self._consume()
        return Ident(tok)

    def _parse_pattern(self, quantifier: str) -> str:
        tok = self._peek()
        if tok is None or tok in ("(", ")") or tok.lower() in _KEYWORDS:
            raise self._error(f"missing selection pattern after {quantifier!r}")
        self._consume()
        if tok.lower() == "them":
            return "*"
        if not re.fullmatch(r"[A-Za-z0-9_.\-*]+", tok):
            raise self._error(f"invalid selection pattern {tok!r}")
        return tok

    def _parse_quantifier(self) -> ConditionExpr:
        tok = self._consume()
        lower = tok.lower()

        if lower == "all":
            self._expect_keyword("of")
            return Quantifier(kind="all", pattern=self._parse_pattern("all of"))

        if lower == "any":
            self._expect_keyword("of")
            return Quantifier(kind="N", pattern=self._parse_pattern("any of"), count=1)

        count = int(tok)
        if count <= 0:
            self.pos -= 1
            raise self._error(f"quantifier count must be a positive integer, got {tok!r}")
        self._expect_keyword("of")
        return Quantifier(kind="N", pattern=self._parse_pattern(f"{tok} of"), count=count)


def parse_condition(condition: Union[str, Sequence[str]]) -> ConditionExpr:
    """
    Parse a Sigma condition into a ConditionExpr tree.

    A list of conditions is combined with AND.
    """
    if isinstance(condition, str):
        return _ConditionParser(condition).parse()

    if isinstance(condition, (list, tuple)):
        if not condition:
            raise ConditionSyntaxError("condition list is empty", condition=str(condition))
        node: Optional[ConditionExpr] = None
        for item in condition:
            if not isinstance(item, str):
                raise ConditionSyntaxError(f"condition entries must be strings, got {item!r}", condition=str(condition))
            parsed = _ConditionParser(item).parse()
            node = parsed if node is None else And(node, parsed)
        return node

    raise ConditionSyntaxError(f"condition must be a string or a list of strings, got {type(condition).__name__}", condition=str(condition))


def bind(node: ConditionExpr, selection_names: Sequence[str], condition: str = "") -> ConditionExpr:
    """
    Resolve a parsed tree against a rule's selection names.

    Identifiers must name an existing selection; quantifier globs are expanded
    here once so evaluation never has to glob.
    """
    if isinstance(node, Ident):
        if node.name not in selection_names:
            raise ConditionSyntaxError(f"undefined selection {node.name!r}", condition=condition)
        return node

    if isinstance(node, Not):
        return Not(bind(node.node, selection_names, condition))

    if isinstance(node, And):
        return And(bind(node.left, selection_names, condition), bind(node.right, selection_names, condition))

    if isinstance(node, Or):
        return Or(bind(node.left, selection_names, condition), bind(node.right, selection_names, condition))

    if isinstance(node, Quantifier):
        matched = tuple(name for name in selection_names if fnmatch.fnmatchcase(name, node.pattern))
        return Quantifier(kind=node.kind, pattern=node.pattern, count=node.count, selection_names=matched)

    raise ConditionSyntaxError(f"unsupported node {type(node).__name__}", condition=condition)


def compile_condition(condition: Union[str, Sequence[str]], selection_names: Sequence[str]) -> ConditionExpr:
    tree = parse_condition(condition)
    return bind(tree, list(selection_names), condition=condition if isinstance(condition, str) else " and ".join(map(str, condition)))
