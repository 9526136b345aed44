import logging
import sqlite3
from typing import Dict, List, Optional, Sequence

from ..config import EngineConfig
from ..errors import TimelineError
from ..inference.column_classifier import ColumnClassifier
from .sql_functions import QUERY_PRAGMAS, apply_pragmas
from .table_core import ColumnInfo, ColumnKind, ImportResult

logger = logging.getLogger(__name__)


class TableStore:
    """
    Row store for one session.

    Columns are stored under positional identifiers (``c0``, ``c1``, ...) so
    arbitrary header text never reaches SQL. Every value is TEXT.
    """

    def __init__(self, conn, config: Optional[EngineConfig] = None):
        self.conn = conn
        self.config = config or EngineConfig()
        self.columns: List[ColumnInfo] = []
        self.row_count = 0
        self.finalized = False
        self._by_name: Dict[str, ColumnInfo] = {}
        self._by_casefold: Dict[str, ColumnInfo] = {}

    def create_store(self, headers: Sequence[str]) -> List[ColumnInfo]:
        if self.columns:
            raise TimelineError("Row store already created for this session")

        headers = [str(h) for h in headers]
        if not headers:
            raise TimelineError("Cannot create a row store without columns")
        if len(set(headers)) != len(headers):
            raise TimelineError("Header names must be unique")

        for position, name in enumerate(headers):
            kind = (
                ColumnKind.TIMESTAMP
                if ColumnClassifier.is_timestamp_name(name)
                else ColumnKind.TEXT
            )
            column = ColumnInfo(name=name, ident=f"c{position}", kind=kind)
            self.columns.append(column)
            self._by_name[name] = column
            self._by_casefold.setdefault(name.casefold(), column)

        column_defs = ", ".join(f"{c.ident} TEXT" for c in self.columns)
        statements = [
            f"CREATE TABLE data (rowid INTEGER PRIMARY KEY, {column_defs})",
            "CREATE TABLE bookmarks (rowid INTEGER PRIMARY KEY)",
            "CREATE TABLE tags (rowid INTEGER NOT NULL, tag TEXT NOT NULL, "
            "PRIMARY KEY (rowid, tag))",
            "CREATE INDEX idx_tags_tag ON tags (tag)",
            "CREATE TABLE color_rules (id INTEGER PRIMARY KEY AUTOINCREMENT, "
            "col_name TEXT, condition TEXT, value TEXT, bg_color TEXT, fg_color TEXT)",
        ]
        for statement in statements:
            self.conn.execute(statement)

        logger.info(
            f"Created row store with {len(self.columns)} columns "
            f"({len(self.timestamp_columns)} timestamp candidates)"
        )
        return list(self.columns)

    @property
    def headers(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def idents(self) -> List[str]:
        return [c.ident for c in self.columns]

    @property
    def timestamp_columns(self) -> List[str]:
        return [c.name for c in self.columns if c.is_timestamp]

    @property
    def numeric_columns(self) -> List[str]:
        return [c.name for c in self.columns if c.is_numeric]

    def resolve(self, name) -> Optional[ColumnInfo]:
        if name is None:
            return None
        return self._by_name.get(name)

    def resolve_casefold(self, name) -> Optional[ColumnInfo]:
        if name is None:
            return None
        return self._by_name.get(name) or self._by_casefold.get(str(name).casefold())

    def sample_rows(self, limit):
        select = ", ".join(self.idents)
        return self.conn.execute(
            f"SELECT {select} FROM data ORDER BY rowid LIMIT ?", (limit,)
        ).fetchall()

    def finalize_import(self) -> ImportResult:
        """
        Classify numeric columns from a row sample and switch to query tuning.

        Timestamp columns are never reclassified as numeric.
        """
        sample = self.sample_rows(self.config.numeric_sample_rows)
        candidates = [i for i, c in enumerate(self.columns) if not c.is_timestamp]
        numeric = ColumnClassifier.numeric_columns(
            sample, candidates, self.config.numeric_threshold
        )
        for position in numeric:
            self.columns[position].kind = ColumnKind.NUMERIC

        try:
            apply_pragmas(self.conn, QUERY_PRAGMAS)
        except sqlite3.Error as e:
            logger.warning(f"Could not switch store to query tuning: {e}")

        self.finalized = True
        result = self.import_result()
        logger.info(
            f"Finalized import: {result.row_count} rows, "
            f"{len(result.timestamp_columns)} timestamp and "
            f"{len(result.numeric_columns)} numeric columns"
        )
        return result

    def import_result(self) -> ImportResult:
        return ImportResult(
            headers=self.headers,
            row_count=self.row_count,
            timestamp_columns=self.timestamp_columns,
            numeric_columns=self.numeric_columns,
        )
