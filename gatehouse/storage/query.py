"""Backend-neutral query specifications.

Services describe *what* rows they want as a list of predicate objects; each
store decides how to evaluate them. The memory store walks its records with
:func:`matches`, the Postgres store compiles the same list into a
parameterized ``WHERE`` clause.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence, Tuple, Union


@dataclass(frozen=True)
class Eq:
    field: str
    value: Any


@dataclass(frozen=True)
class Gte:
    field: str
    value: Any


@dataclass(frozen=True)
class Lte:
    field: str
    value: Any


@dataclass(frozen=True)
class Lt:
    field: str
    value: Any


@dataclass(frozen=True)
class MetaEq:
    """Equality on a single key of the record's ``metadata`` mapping."""

    key: str
    value: Any


Predicate = Union[Eq, Gte, Lte, Lt, MetaEq]


@dataclass(frozen=True)
class QuerySpec:
    predicates: Tuple[Predicate, ...] = field(default_factory=tuple)
    limit: Optional[int] = None
    offset: int = 0
    newest_first: bool = True

    @classmethod
    def of(cls, predicates: Iterable[Predicate], **kwargs: Any) -> "QuerySpec":
        return cls(predicates=tuple(predicates), **kwargs)


def _field_value(record: Any, name: str) -> Any:
    if not hasattr(record, name):
        raise ValueError(f"unknown query field: {name}")
    return getattr(record, name)


def matches(record: Any, predicates: Sequence[Predicate]) -> bool:
    """Return True when ``record`` satisfies every predicate.

    A comparison against a ``None`` column never matches, mirroring SQL
    semantics so both stores return the same rows.
    """
    for predicate in predicates:
        if isinstance(predicate, MetaEq):
            metadata = getattr(record, "metadata", None) or {}
            if metadata.get(predicate.key) != predicate.value:
                return False
            continue
        value = _field_value(record, predicate.field)
        if isinstance(predicate, Eq):
            if value is None or value != predicate.value:
                return False
        elif value is None:
            return False
        elif isinstance(predicate, Gte):
            if not value >= predicate.value:
                return False
        elif isinstance(predicate, Lte):
            if not value <= predicate.value:
                return False
        elif isinstance(predicate, Lt):
            if not value < predicate.value:
                return False
        else:
            raise ValueError(f"unsupported predicate: {predicate!r}")
    return True


_SQL_OPERATORS = {Eq: "=", Gte: ">=", Lte: "<=", Lt: "<"}


def compile_where(
    predicates: Sequence[Predicate], columns: frozenset[str]
) -> tuple[str, list[Any]]:
    """Translate predicates into ``(where_sql, params)`` for psycopg.

    Column names are checked against ``columns`` and never interpolated from
    user input otherwise; values always travel as parameters.
    """
    clauses: list[str] = []
    params: list[Any] = []
    for predicate in predicates:
        if isinstance(predicate, MetaEq):
            clauses.append("metadata ->> %s = %s")
            params.extend([predicate.key, None if predicate.value is None else str(predicate.value)])
            continue
        operator = _SQL_OPERATORS.get(type(predicate))
        if operator is None:
            raise ValueError(f"unsupported predicate: {predicate!r}")
        if predicate.field not in columns:
            raise ValueError(f"unknown query field: {predicate.field}")
        clauses.append(f"{predicate.field} {operator} %s")
        params.append(predicate.value)
    where = " AND ".join(clauses) if clauses else "TRUE"
    return where, params
