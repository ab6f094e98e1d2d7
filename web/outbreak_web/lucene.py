"""
Small typed builder for the Lucene-like ``q`` parameter of the search backends.

Clauses render to the exact syntax the backends expect::

    All(Term("mostRecent", True), Range("confirmed_per_100k", 9.5, 10.5)).render()
    -> 'mostRecent:true AND confirmed_per_100k:[9.5 TO 10.5]'
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple, Union


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return repr(value)
    return str(value)


def _quote(value: Any) -> str:
    text = _literal(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


class Clause:
    def render(self, nested: bool = False) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class Raw(Clause):
    """Pre-built query text, e.g. a user's free-text search."""

    text: str

    def render(self, nested: bool = False) -> str:
        return self.text


@dataclass(frozen=True)
class Term(Clause):
    field: str
    value: Any
    quoted: bool = False
    negate: bool = False

    def render(self, nested: bool = False) -> str:
        value = _quote(self.value) if self.quoted else _literal(self.value)
        return f"{'-' if self.negate else ''}{self.field}:{value}"


@dataclass(frozen=True)
class Range(Clause):
    field: str
    lo: Any
    hi: Any

    def render(self, nested: bool = False) -> str:
        return f"{self.field}:[{_literal(self.lo)} TO {_literal(self.hi)}]"


@dataclass(frozen=True)
class AnyOf(Clause):
    """Quoted OR-list, optionally bound to a field: ``field:("a" OR "b")``."""

    field: Optional[str]
    values: Tuple[Any, ...]

    def render(self, nested: bool = False) -> str:
        body = f"({' OR '.join(_quote(v) for v in self.values)})"
        return f"{self.field}:{body}" if self.field else body


@dataclass(frozen=True)
class Terms(Clause):
    """Facet filter list: ``field:("a","b")``."""

    field: str
    values: Tuple[Any, ...]

    def render(self, nested: bool = False) -> str:
        return f"{self.field}:({','.join(_quote(v) for v in self.values)})"


class _Compound(Clause):
    joiner = ""
    always_wrap = False

    def __init__(self, *clauses: Union[Clause, str]) -> None:
        self.clauses: Tuple[Clause, ...] = tuple(
            Raw(c) if isinstance(c, str) else c for c in clauses if c is not None
        )

    def render(self, nested: bool = False) -> str:
        parts = [c.render(nested=True) for c in self.clauses]
        text = self.joiner.join(parts)
        if len(parts) > 1 and (nested or self.always_wrap):
            return f"({text})"
        return text

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and self.clauses == other.clauses  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((type(self), self.clauses))

    def __repr__(self) -> str:
        return f"{type(self).__name__}{self.clauses!r}"


class All(_Compound):
    joiner = " AND "


class Either(_Compound):
    joiner = " OR "
    always_wrap = True


def any_of(field: Optional[str], values: Sequence[Any]) -> AnyOf:
    return AnyOf(field=field, values=tuple(values))


def terms(field: str, values: Sequence[Any]) -> Terms:
    return Terms(field=field, values=tuple(values))


def render(clause: Union[Clause, str, None]) -> str:
    if clause is None:
        return ""
    if isinstance(clause, str):
        return clause
    return clause.render()


__all__ = [
    "Clause",
    "Raw",
    "Term",
    "Range",
    "AnyOf",
    "Terms",
    "All",
    "Either",
    "any_of",
    "terms",
    "render",
]
