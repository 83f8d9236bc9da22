"""Parsing and evaluation of the condition expression of a detection."""

from __future__ import annotations

import enum
import re
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Union

_I64_MAX = 2**63 - 1
_LEXEME = re.compile(r"\(|\)|[^\s()]+")
_IDENTIFIER = re.compile(r"[A-Za-z0-9_*?.\-]+")
_COUNT = re.compile(r"[0-9]+")
_KEYWORDS = frozenset({"and", "or", "not", "of"})


class ConditionError(ValueError):
    """Raised when a condition expression cannot be parsed."""


class _BoolOp(enum.Enum):
    OR = "or"
    AND = "and"


@dataclass(frozen=True)
class _Identifier:
    name: str

    def evaluate(self, statement: Mapping[str, bool]) -> bool:
        return bool(statement.get(self.name, False))


@dataclass(frozen=True)
class _Not:
    operand: _Node

    def evaluate(self, statement: Mapping[str, bool]) -> bool:
        return not self.operand.evaluate(statement)


@dataclass(frozen=True)
class _XOf:
    """``N of pattern`` when ``count`` is set, ``all of pattern`` otherwise."""

    count: int | None
    operand: _Node

    def evaluate(self, statement: Mapping[str, bool]) -> bool:
        if not isinstance(self.operand, _Identifier):
            return False
        pattern = self.operand.name
        matching = [value for key, value in statement.items() if fnmatchcase(key, pattern)]
        if self.count is None:
            return all(matching)
        return sum(1 for value in matching if value) >= self.count


@dataclass(frozen=True)
class _Binary:
    lhs: _Node
    op: _BoolOp
    rhs: _Node

    def evaluate(self, statement: Mapping[str, bool]) -> bool:
        if self.op is _BoolOp.OR:
            return self.lhs.evaluate(statement) or self.rhs.evaluate(statement)
        return self.lhs.evaluate(statement) and self.rhs.evaluate(statement)


_Node = Union[_Identifier, _Not, _XOf, _Binary]


class _Parser:
    """Recursive-descent parser: ``or`` binds loosest, then ``and``, then prefixes."""

    def __init__(self, lexemes: Iterable[str]) -> None:
        self._lexemes = deque(lexemes)

    def _peek(self, offset: int = 0) -> str | None:
        return self._lexemes[offset] if len(self._lexemes) > offset else None

    def _take(self) -> str:
        if not self._lexemes:
            raise ConditionError("unexpected end of condition")
        return self._lexemes.popleft()

    def parse(self) -> _Node:
        node = self._or()
        if self._lexemes:
            raise ConditionError(f"unexpected word in condition: {self._peek()!r}")
        return node

    def _or(self) -> _Node:
        node = self._and()
        while self._peek() == "or":
            self._take()
            node = _Binary(node, _BoolOp.OR, self._and())
        return node

    def _and(self) -> _Node:
        node = self._unary()
        while self._peek() == "and":
            self._take()
            node = _Binary(node, _BoolOp.AND, self._unary())
        return node

    def _unary(self) -> _Node:
        word = self._peek()
        if word == "not":
            self._take()
            return _Not(self._unary())
        if word is not None and self._peek(1) == "of":
            if word == "all":
                count = None
            elif _COUNT.fullmatch(word):
                count = int(word)
                if count > _I64_MAX:
                    raise ConditionError(f"count out of range: {word}")
            else:
                return self._primary()
            self._take()
            self._take()
            return _XOf(count, self._unary())
        return self._primary()

    def _primary(self) -> _Node:
        word = self._take()
        if word == "(":
            node = self._or()
            if self._take() != ")":
                raise ConditionError("expected ')' in condition")
            return node
        if word == ")" or word in _KEYWORDS or not _IDENTIFIER.fullmatch(word):
            raise ConditionError(f"expected identifier in condition, found {word!r}")
        return _Identifier(word)


def parse_condition(text: str) -> _Node:
    """Parse a condition expression into its syntax tree."""
    lexemes = _LEXEME.findall(text)
    if not lexemes:
        raise ConditionError("empty condition")
    return _Parser(lexemes).parse()


class Condition:
    """The compiled condition of a detection."""

    def __init__(self, text: str) -> None:
        self.text = text
        self._ast = parse_condition(text)

    def is_match(self, statement: Mapping[str, bool]) -> bool:
        """Evaluate the condition given the result of each named selection."""
        return self._ast.evaluate(statement)

    def __repr__(self) -> str:
        return f"Condition({self.text!r})"