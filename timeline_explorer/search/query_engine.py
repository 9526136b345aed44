import csv
import logging
import sqlite3
from collections import OrderedDict
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple, Union

from ..config import EngineConfig
from ..errors import QueryError
from .predicates import (
    And,
    Bookmarked,
    Clause,
    Empty,
    Equals,
    In,
    Like,
    NumberCompare,
    Or,
    Predicate,
    Range,
    Regex,
    Tagged,
    compile_predicate,
    group_advanced,
)
from .search_compiler import SEARCH_CONDITIONS, SEARCH_MODES, SearchCompiler

logger = logging.getLogger(__name__)


ROW_KEY_FIELD = "__row_key"

ADVANCED_OPERATORS = (
    "contains",
    "not_contains",
    "equals",
    "not_equals",
    "starts_with",
    "ends_with",
    "greater_than",
    "less_than",
    "is_empty",
    "is_not_empty",
    "regex",
)

# Tag filter value selecting rows that carry any tag
ANY_TAG = "__any__"


@dataclass
class AdvancedFilter:
    column: str
    operator: str
    value: Any = ""
    logic: str = "AND"

    @classmethod
    def from_dict(cls, data):
        if isinstance(data, AdvancedFilter):
            return data
        return cls(
            column=data.get("column") or "",
            operator=data.get("operator") or "",
            value=data.get("value", ""),
            logic=(data.get("logic") or "AND").upper(),
        )

    @property
    def is_complete(self):
        if not self.column or not self.operator:
            return False
        if self.operator in ("is_empty", "is_not_empty"):
            return True
        return self.value is not None and str(self.value) != ""


@dataclass
class FilterSpec:
    """Filter and search fields shared by row queries and analytics."""

    search_term: str = ""
    search_mode: str = "mixed"
    search_condition: str = "contains"
    column_filters: Dict[str, str] = field(default_factory=dict)
    checkbox_filters: Dict[str, List[Optional[str]]] = field(default_factory=dict)
    date_range_filters: Dict[str, Dict[str, Optional[str]]] = field(default_factory=dict)
    bookmarked_only: bool = False
    tag_filter: Union[None, str, List[str]] = None
    advanced_filters: List[AdvancedFilter] = field(default_factory=list)

    CAMEL_CASE_KEYS = {
        "searchTerm": "search_term",
        "searchMode": "search_mode",
        "searchCondition": "search_condition",
        "columnFilters": "column_filters",
        "checkboxFilters": "checkbox_filters",
        "dateRangeFilters": "date_range_filters",
        "bookmarkedOnly": "bookmarked_only",
        "tagFilter": "tag_filter",
        "advancedFilters": "advanced_filters",
        "offset": "offset",
        "limit": "limit",
        "sortColumn": "sort_column",
        "sortDirection": "sort_direction",
    }

    def __post_init__(self):
        self.search_term = self.search_term or ""
        self.search_mode = self.search_mode or "mixed"
        self.search_condition = self.search_condition or "contains"
        if self.search_mode not in SEARCH_MODES:
            raise QueryError(f"Unknown search mode: {self.search_mode!r}")
        if self.search_condition not in SEARCH_CONDITIONS:
            raise QueryError(f"Unknown search condition: {self.search_condition!r}")

        self.advanced_filters = [AdvancedFilter.from_dict(f) for f in self.advanced_filters or []]
        for advanced in self.advanced_filters:
            if advanced.operator and advanced.operator not in ADVANCED_OPERATORS:
                raise QueryError(f"Unknown filter operator: {advanced.operator!r}")

        self.column_filters = dict(self.column_filters or {})
        self.checkbox_filters = dict(self.checkbox_filters or {})
        self.date_range_filters = dict(self.date_range_filters or {})

        for name, values in self.checkbox_filters.items():
            if values is not None and not isinstance(values, (list, tuple)):
                raise QueryError(f"Checkbox filter for {name!r} must be a list of values")
        for name, bounds in self.date_range_filters.items():
            if bounds is not None and not isinstance(bounds, Mapping):
                raise QueryError(f"Date range for {name!r} must map 'from'/'to' to timestamps")
        if self.tag_filter is not None and not isinstance(self.tag_filter, (str, list, tuple)):
            raise QueryError(f"Unsupported tag filter: {self.tag_filter!r}")

    @classmethod
    def from_dict(cls, data: Optional[Dict]):
        data = data or {}
        names = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = cls.CAMEL_CASE_KEYS.get(key, key)
            if name in names:
                kwargs[name] = value
        return cls(**kwargs)


@dataclass
class QueryRequest(FilterSpec):
    offset: int = 0
    limit: int = 1000
    sort_column: Optional[str] = None
    sort_direction: str = "asc"

    def __post_init__(self):
        super().__post_init__()
        if self.offset is None or int(self.offset) < 0:
            raise QueryError("offset must not be negative")
        if self.limit is None or int(self.limit) < 0:
            raise QueryError("limit must not be negative")
        self.offset = int(self.offset)
        self.limit = int(self.limit)
        direction = (self.sort_direction or "asc").lower()
        if direction not in ("asc", "desc"):
            raise QueryError(f"Unknown sort direction: {self.sort_direction!r}")
        self.sort_direction = direction


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    total_filtered: int = 0
    total_rows: int = 0
    bookmarked_row_keys: List[int] = field(default_factory=list)
    tags_by_row_key: Dict[int, List[str]] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self):
        result = {
            "rows": self.rows,
            "totalFiltered": self.total_filtered,
            "totalRows": self.total_rows,
            "bookmarkedRowKeys": self.bookmarked_row_keys,
            "tagsByRowKey": self.tags_by_row_key,
        }
        if self.error:
            result["error"] = self.error
        return result


class CountCache:
    """Memoised filtered counts keyed by predicate signature."""

    def __init__(self, max_size=256):
        self.max_size = max_size
        self._counts = OrderedDict()

    def get(self, signature) -> Optional[int]:
        count = self._counts.get(signature)
        if count is not None:
            self._counts.move_to_end(signature)
        return count

    def put(self, signature, count: int):
        self._counts[signature] = count
        self._counts.move_to_end(signature)
        while len(self._counts) > self.max_size:
            self._counts.popitem(last=False)

    def invalidate(self):
        self._counts.clear()

    def __len__(self):
        return len(self._counts)


class QueryEngine:
    def __init__(self, store, indexes, annotations, count_cache=None, config=None):
        self.store = store
        self.indexes = indexes
        self.annotations = annotations
        self.config = config or EngineConfig()
        if count_cache is None:
            count_cache = CountCache(self.config.count_cache_size)
        self.count_cache = count_cache
        self.search_compiler = SearchCompiler(store, indexes)

    @property
    def conn(self):
        return self.store.conn

    # Predicate compilation

    def filter_clauses(self, spec: FilterSpec, exclude_checkbox=None) -> List[Clause]:
        clauses: List[Clause] = []

        for name, text in spec.column_filters.items():
            column = self.store.resolve(name)
            if column is None or not text:
                continue
            clauses.append(Like(column.ident, f"%{text}%"))

        for name, values in spec.checkbox_filters.items():
            column = self.store.resolve(name)
            if column is None or not values or name == exclude_checkbox:
                continue
            clauses.append(self._checkbox_clause(column.ident, values))

        for name, bounds in spec.date_range_filters.items():
            column = self.store.resolve(name)
            if column is None or not bounds:
                continue
            clauses.append(Range(column.ident, bounds.get("from"), bounds.get("to")))

        if spec.bookmarked_only:
            clauses.append(Bookmarked())

        tag_clause = self._tag_clause(spec.tag_filter)
        if tag_clause is not None:
            clauses.append(tag_clause)

        search = self.search_compiler.compile(
            spec.search_term, spec.search_mode, spec.search_condition
        )
        if search is not None:
            clauses.append(search)

        advanced = self._advanced_clause(spec.advanced_filters)
        if advanced is not None:
            clauses.append(advanced)

        return clauses

    def build_predicate(self, spec: FilterSpec, exclude_checkbox=None, extra=()) -> Predicate:
        return compile_predicate(list(extra) + self.filter_clauses(spec, exclude_checkbox))

    @staticmethod
    def _checkbox_clause(ident, values) -> Clause:
        wants_empty = any(v is None or v == "" for v in values)
        non_empty = tuple(str(v) for v in values if v is not None and v != "")
        parts: List[Clause] = []
        if wants_empty:
            parts.append(Empty(ident))
        if len(non_empty) == 1:
            parts.append(Equals(ident, non_empty[0]))
        elif non_empty:
            parts.append(In(ident, non_empty))
        return parts[0] if len(parts) == 1 else Or(parts)

    @staticmethod
    def _tag_clause(tag_filter) -> Optional[Clause]:
        if tag_filter is None or tag_filter == "" or tag_filter == []:
            return None
        if isinstance(tag_filter, str):
            if tag_filter == ANY_TAG:
                return Tagged()
            return Tagged((tag_filter,))
        return Tagged(tuple(str(t) for t in tag_filter))

    def _advanced_clause(self, filters: List[AdvancedFilter]) -> Optional[Clause]:
        conditions: List[Tuple[Clause, str]] = []
        for advanced in filters:
            if not advanced.is_complete:
                continue
            column = self.store.resolve(advanced.column)
            if column is None:
                continue
            conditions.append((self._operator_clause(column.ident, advanced), advanced.logic))
        return group_advanced(conditions)

    @staticmethod
    def _operator_clause(ident, advanced: AdvancedFilter) -> Clause:
        value = "" if advanced.value is None else str(advanced.value)
        operator = advanced.operator
        if operator == "contains":
            return Like(ident, f"%{value}%")
        if operator == "not_contains":
            return Like(ident, f"%{value}%", negate=True)
        if operator == "equals":
            return Equals(ident, value)
        if operator == "not_equals":
            return Equals(ident, value, negate=True)
        if operator == "starts_with":
            return Like(ident, f"{value}%")
        if operator == "ends_with":
            return Like(ident, f"%{value}")
        if operator == "greater_than":
            return NumberCompare(ident, ">", value)
        if operator == "less_than":
            return NumberCompare(ident, "<", value)
        if operator == "is_empty":
            return Empty(ident)
        if operator == "is_not_empty":
            return Empty(ident, negate=True)
        if operator == "regex":
            return Regex(ident, value)
        raise QueryError(f"Unknown filter operator: {operator!r}")

    # Execution

    def count_predicate(self, predicate: Predicate) -> int:
        cached = self.count_cache.get(predicate.signature)
        if cached is not None:
            return cached
        count = self.conn.execute(
            f"SELECT COUNT(*) FROM data {predicate.where}", predicate.params
        ).fetchone()[0]
        self.count_cache.put(predicate.signature, count)
        return count

    def count_rows(self, spec: FilterSpec) -> int:
        try:
            return self.count_predicate(self.build_predicate(spec))
        except sqlite3.Error as e:
            logger.warning(f"Count query failed: {e}")
            return 0

    def search_count(self, term, mode="mixed", condition="contains") -> int:
        return self.count_rows(
            FilterSpec(search_term=term, search_mode=mode, search_condition=condition)
        )

    def order_by(self, sort_column, direction="asc") -> str:
        column = self.store.resolve(sort_column)
        if column is None:
            return "ORDER BY data.rowid"

        self.indexes.ensure_sort_index(column)
        direction = "DESC" if str(direction).lower() == "desc" else "ASC"
        if column.is_numeric:
            key = f"CAST({column.ident} AS REAL)"
        elif column.is_timestamp:
            key = column.ident
        else:
            key = f"{column.ident} COLLATE NOCASE"
        return f"ORDER BY {key} {direction}, data.rowid ASC"

    def query_rows(self, request: QueryRequest) -> QueryResult:
        try:
            predicate = self.build_predicate(request)
            total_filtered = self.count_predicate(predicate)
            order = self.order_by(request.sort_column, request.sort_direction)
            select = ", ".join(self.store.idents)
            records = self.conn.execute(
                f"SELECT data.rowid, {select} FROM data {predicate.where} {order} "
                f"LIMIT ? OFFSET ?",
                predicate.params + (request.limit, request.offset),
            ).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Row query failed: {e}")
            return QueryResult(total_rows=self.store.row_count, error=str(e))

        headers = self.store.headers
        rows = []
        keys = []
        for record in records:
            row = dict(zip(headers, record[1:]))
            row[ROW_KEY_FIELD] = record[0]
            rows.append(row)
            keys.append(record[0])

        return QueryResult(
            rows=rows,
            total_filtered=total_filtered,
            total_rows=self.store.row_count,
            bookmarked_row_keys=self.annotations.bookmarked_among(keys),
            tags_by_row_key=self.annotations.tags_among(keys),
        )

    # Column helpers

    def column_unique_values(self, name, spec: Optional[FilterSpec] = None, limit=1000):
        """
        Distinct values and counts for a column under the active filters,
        ignoring that column's own checkbox filter.
        """
        column = self.store.resolve(name)
        if column is None:
            return []
        spec = spec or FilterSpec()
        try:
            predicate = self.build_predicate(spec, exclude_checkbox=name)
            return [
                (value, count)
                for value, count in self.conn.execute(
                    f"SELECT {column.ident} AS val, COUNT(*) AS cnt FROM data "
                    f"{predicate.where} GROUP BY val ORDER BY cnt DESC, val ASC LIMIT ?",
                    predicate.params + (limit,),
                )
            ]
        except sqlite3.Error as e:
            logger.warning(f"Unique value query failed for '{name}': {e}")
            return []

    def group_values(self, name, spec: Optional[FilterSpec] = None, parents=None):
        """Row counts per value of ``name`` inside an optional parent group path."""
        column = self.store.resolve(name)
        if column is None:
            return []
        extra = []
        for parent_name, parent_value in (parents or {}).items():
            parent = self.store.resolve(parent_name)
            if parent is None:
                continue
            if parent_value is None or parent_value == "":
                extra.append(Empty(parent.ident))
            else:
                extra.append(Equals(parent.ident, str(parent_value)))
        try:
            predicate = self.build_predicate(spec or FilterSpec(), extra=extra)
            return [
                (value, count)
                for value, count in self.conn.execute(
                    f"SELECT {column.ident} AS val, COUNT(*) AS cnt FROM data "
                    f"{predicate.where} GROUP BY val ORDER BY cnt DESC, val ASC",
                    predicate.params,
                )
            ]
        except sqlite3.Error as e:
            logger.warning(f"Group query failed for '{name}': {e}")
            return []

    def column_stats(self, name, spec: Optional[FilterSpec] = None, top=25):
        column = self.store.resolve(name)
        empty = {
            "totalRows": 0,
            "nonEmptyCount": 0,
            "emptyCount": 0,
            "uniqueCount": 0,
            "fillRate": 0.0,
            "topValues": [],
        }
        if column is None:
            return empty

        ident = column.ident
        try:
            predicate = self.build_predicate(spec or FilterSpec())
            total, non_empty, unique = self.conn.execute(
                f"SELECT COUNT(*), "
                f"SUM(CASE WHEN {ident} IS NOT NULL AND {ident} != '' THEN 1 ELSE 0 END), "
                f"COUNT(DISTINCT CASE WHEN {ident} != '' THEN {ident} END) "
                f"FROM data {predicate.where}",
                predicate.params,
            ).fetchone()
            non_empty = non_empty or 0
            value_filter = "AND" if predicate.where else "WHERE"
            top_values = [
                {"value": value, "count": count, "percent": round(count / non_empty * 100, 2)}
                for value, count in self.conn.execute(
                    f"SELECT {ident} AS val, COUNT(*) AS cnt FROM data {predicate.where} "
                    f"{value_filter} {ident} != '' GROUP BY val "
                    f"ORDER BY cnt DESC, val ASC LIMIT ?",
                    predicate.params + (top,),
                )
            ]
            stats = {
                "totalRows": total,
                "nonEmptyCount": non_empty,
                "emptyCount": total - non_empty,
                "uniqueCount": unique,
                "fillRate": round(non_empty / total * 100, 2) if total else 0.0,
                "topValues": top_values,
            }
            if column.is_timestamp or column.is_numeric:
                key = f"CAST({ident} AS REAL)" if column.is_numeric else ident
                low, high = self.conn.execute(
                    f"SELECT MIN({key}), MAX({key}) FROM data {predicate.where} "
                    f"{value_filter} {ident} != ''",
                    predicate.params,
                ).fetchone()
                stats["min"] = low
                stats["max"] = high
            return stats
        except sqlite3.Error as e:
            logger.warning(f"Column stats failed for '{name}': {e}")
            return dict(empty, error=str(e))

    def empty_columns(self) -> List[str]:
        empty = []
        for column in self.store.columns:
            found = self.conn.execute(
                f"SELECT 1 FROM data WHERE {column.ident} IS NOT NULL "
                f"AND {column.ident} != '' LIMIT 1"
            ).fetchone()
            if found is None:
                empty.append(column.name)
        return empty

    # Export

    def iter_export_rows(self, request: QueryRequest, columns=None):
        """Yield the header row, then every filtered row in sort order."""
        selected = [self.store.resolve(name) for name in (columns or self.store.headers)]
        selected = [c for c in selected if c is not None]
        predicate = self.build_predicate(request)
        order = self.order_by(request.sort_column, request.sort_direction)
        select = ", ".join(c.ident for c in selected)

        yield [c.name for c in selected]
        cursor = self.conn.execute(
            f"SELECT {select} FROM data {predicate.where} {order}", predicate.params
        )
        for record in cursor:
            yield ["" if v is None else v for v in record]

    def export_csv(self, request: QueryRequest, path, columns=None) -> int:
        written = 0
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            for i, row in enumerate(self.iter_export_rows(request, columns)):
                writer.writerow(row)
                written = i
        logger.info(f"Exported {written} rows to {path}")
        return written
