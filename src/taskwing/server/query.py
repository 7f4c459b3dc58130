"""Small boolean query language for ``query-tasks``.

Grammar (case-insensitive keywords)::

    expr   := term ( "OR" term )*
    term   := factor ( ["AND"] factor )*
    factor := "NOT" factor | atom
    atom   := status:<s> | priority:<p> | parent:<id|none> | <free text>

Free-text atoms match as substrings of title, description or acceptance
criteria.  Quoted phrases stay one atom.
"""

from __future__ import annotations

import shlex
from typing import Callable

from ..errors import InvalidInputError
from ..store.task_store import Task, TaskPriority, TaskStatus

Predicate = Callable[[Task], bool]

_FILTERS = ("status", "priority", "parent")


def _atom(token: str) -> Predicate:
    key, sep, value = token.partition(":")
    key = key.lower()
    if sep and key in _FILTERS:
        value = value.strip().lower()
        if key == "status":
            if value not in {s.value for s in TaskStatus}:
                raise InvalidInputError(f"unknown status '{value}'", details={"token": token})
            return lambda t: t.status.value == value
        if key == "priority":
            if value not in {p.value for p in TaskPriority}:
                raise InvalidInputError(f"unknown priority '{value}'", details={"token": token})
            return lambda t: t.priority.value == value
        if value in ("", "none", "null"):
            return lambda t: not t.parent_id
        return lambda t: (t.parent_id or "").lower().startswith(value)

    needle = token.lower()
    return lambda t: (
        needle in t.title.lower()
        or needle in t.description.lower()
        or needle in t.acceptance_criteria.lower()
    )


class _Parser:
    def __init__(self, tokens: list[str]) -> None:
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> str | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> str:
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def expr(self) -> Predicate:
        parts = [self.term()]
        while (self.peek() or "").upper() == "OR":
            self.take()
            parts.append(self.term())
        if len(parts) == 1:
            return parts[0]
        return lambda t: any(p(t) for p in parts)

    def term(self) -> Predicate:
        parts = [self.factor()]
        while self.peek() is not None and self.peek().upper() != "OR":
            if self.peek().upper() == "AND":
                self.take()
            parts.append(self.factor())
        if len(parts) == 1:
            return parts[0]
        return lambda t: all(p(t) for p in parts)

    def factor(self) -> Predicate:
        tok = self.peek()
        if tok is None or tok.upper() in ("AND", "OR"):
            raise InvalidInputError("incomplete query", details={"position": self.pos})
        self.take()
        if tok.upper() == "NOT":
            inner = self.factor()
            return lambda t: not inner(t)
        return _atom(tok)


def compile_query(query: str) -> Predicate:
    """Compile *query* into a task predicate; an empty query matches all."""
    try:
        tokens = shlex.split(query or "")
    except ValueError as exc:
        raise InvalidInputError(f"cannot parse query: {exc}", details={"query": query}) from exc
    if not tokens:
        return lambda t: True
    parser = _Parser(tokens)
    pred = parser.expr()
    if parser.peek() is not None:
        raise InvalidInputError(f"unexpected token '{parser.peek()}'", details={"query": query})
    return pred
