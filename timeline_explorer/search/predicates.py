"""
Typed WHERE-clause building blocks.

Every clause lowers to ``(sql, params)`` where ``sql`` only ever contains
validated column identifiers and ``?`` placeholders; user values always travel
as bound parameters.
"""

import re
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

from ..errors import QueryError


IDENT_PATTERN = re.compile(r"^(c\d+|data\.rowid)$")

NUMERIC_OPERATORS = (">", "<", ">=", "<=")


def _ident(column):
    if not isinstance(column, str) or not IDENT_PATTERN.match(column):
        raise QueryError(f"Invalid column identifier: {column!r}")
    return column


class Clause:
    def to_sql(self) -> Tuple[str, List[Any]]:
        raise NotImplementedError


@dataclass(frozen=True)
class TrueClause(Clause):
    def to_sql(self):
        return "1", []


TRUE = TrueClause()


@dataclass(frozen=True)
class Like(Clause):
    column: str
    pattern: str
    negate: bool = False

    def to_sql(self):
        op = "NOT LIKE" if self.negate else "LIKE"
        return f"{_ident(self.column)} {op} ?", [self.pattern]


@dataclass(frozen=True)
class Equals(Clause):
    column: str
    value: Any
    negate: bool = False

    def to_sql(self):
        op = "!=" if self.negate else "="
        return f"{_ident(self.column)} {op} ?", [self.value]


@dataclass(frozen=True)
class In(Clause):
    column: str
    values: Tuple[Any, ...]

    def to_sql(self):
        if not self.values:
            return "0", []
        placeholders = ",".join("?" * len(self.values))
        return f"{_ident(self.column)} IN ({placeholders})", list(self.values)


@dataclass(frozen=True)
class Range(Clause):
    column: str
    low: Optional[str] = None
    high: Optional[str] = None

    def to_sql(self):
        column = _ident(self.column)
        parts = []
        params = []
        if self.low:
            parts.append(f"{column} >= ?")
            params.append(self.low)
        if self.high:
            parts.append(f"{column} <= ?")
            params.append(self.high)
        if not parts:
            return "1", []
        return " AND ".join(parts), params


@dataclass(frozen=True)
class Regex(Clause):
    column: str
    pattern: str

    def to_sql(self):
        return f"{_ident(self.column)} REGEXP ?", [self.pattern]


@dataclass(frozen=True)
class Fuzzy(Clause):
    column: str
    term: str

    def to_sql(self):
        return f"fuzzy_match({_ident(self.column)}, ?)", [self.term]


@dataclass(frozen=True)
class Empty(Clause):
    column: str
    negate: bool = False

    def to_sql(self):
        column = _ident(self.column)
        if self.negate:
            return f"({column} IS NOT NULL AND {column} != '')", []
        return f"({column} IS NULL OR {column} = '')", []


@dataclass(frozen=True)
class NumberCompare(Clause):
    column: str
    op: str
    value: Any

    def to_sql(self):
        if self.op not in NUMERIC_OPERATORS:
            raise QueryError(f"Invalid numeric operator: {self.op!r}")
        return (
            f"CAST({_ident(self.column)} AS REAL) {self.op} CAST(? AS REAL)",
            [self.value],
        )


@dataclass(frozen=True)
class FullText(Clause):
    query: str
    negate: bool = False

    def to_sql(self):
        op = "NOT IN" if self.negate else "IN"
        return (
            f"data.rowid {op} (SELECT rowid FROM data_fts WHERE data_fts MATCH ?)",
            [self.query],
        )


@dataclass(frozen=True)
class Bookmarked(Clause):
    def to_sql(self):
        return "data.rowid IN (SELECT rowid FROM bookmarks)", []


@dataclass(frozen=True)
class Tagged(Clause):
    """Rows carrying any tag (``tags`` empty) or one of the given tags."""

    tags: Tuple[str, ...] = ()

    def to_sql(self):
        if not self.tags:
            return "data.rowid IN (SELECT DISTINCT rowid FROM tags)", []
        if len(self.tags) == 1:
            return "data.rowid IN (SELECT rowid FROM tags WHERE tag = ?)", [self.tags[0]]
        placeholders = ",".join("?" * len(self.tags))
        return (
            f"data.rowid IN (SELECT rowid FROM tags WHERE tag IN ({placeholders}))",
            list(self.tags),
        )


class _Compound(Clause):
    joiner = " AND "
    identity = "1"
    absorbing = "0"

    def __init__(self, clauses: Sequence[Clause] = ()):
        self.clauses = tuple(clauses)

    def __eq__(self, other):
        return type(self) is type(other) and self.clauses == other.clauses

    def __hash__(self):
        return hash((type(self).__name__, self.clauses))

    def __repr__(self):
        return f"{type(self).__name__}({list(self.clauses)!r})"

    def to_sql(self):
        parts = []
        params = []
        for clause in self.clauses:
            sql, clause_params = clause.to_sql()
            if sql == self.identity:
                continue
            if sql == self.absorbing:
                return self.absorbing, []
            parts.append(sql)
            params.extend(clause_params)
        if not parts:
            return self.identity, []
        if len(parts) == 1:
            return parts[0], params
        return "(" + self.joiner.join(f"({p})" for p in parts) + ")", params


class And(_Compound):
    joiner = " AND "
    identity = "1"
    absorbing = "0"


class Or(_Compound):
    joiner = " OR "
    identity = "0"
    absorbing = "1"


@dataclass(frozen=True)
class Predicate:
    sql: str
    params: Tuple[Any, ...] = ()

    @property
    def where(self):
        return "" if self.sql == "1" else f"WHERE {self.sql}"

    @property
    def signature(self):
        return (self.sql, self.params)


def compile_predicate(clauses: Sequence[Clause]) -> Predicate:
    sql, params = And(clauses).to_sql()
    return Predicate(sql, tuple(params))


def group_advanced(conditions: Sequence[Tuple[Clause, str]]) -> Optional[Clause]:
    """
    Group ``(clause, logic)`` pairs left to right: a condition whose logic is
    ``OR`` starts a new AND-run, and the runs are ORed together, so
    ``A AND B OR C AND D`` becomes ``(A AND B) OR (C AND D)``.

    The logic of the first condition is ignored.
    """
    if not conditions:
        return None

    groups = [[conditions[0][0]]]
    for clause, logic in conditions[1:]:
        if str(logic or "AND").upper() == "OR":
            groups.append([clause])
        else:
            groups[-1].append(clause)

    if len(groups) == 1:
        return And(groups[0])
    return Or([And(group) for group in groups])
