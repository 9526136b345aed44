import asyncio
import atexit
import heapq
import logging
import os
import sqlite3
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from ..config import EngineConfig
from ..errors import IngestError, TimelineError, UnknownSessionError
from ..ingest.ingest_engine import IngestEngine
from ..ingest.spreadsheet_reader import list_sheets
from ..search.query_engine import CountCache, FilterSpec, QueryEngine, QueryRequest, QueryResult
from ..stats.host_analysis import LateralMovementResult, PersistenceResult, ProcessTreeResult
from ..stats.timeline_analyzer import (
    BurstAnalysis,
    CoverageResult,
    GapAnalysis,
    HistogramResult,
    IocMatchResult,
    StackingResult,
    TimelineAnalyzer,
)
from ..store.annotations import AnnotationStore, HighlightRule
from ..store.indexes import IndexManager, SearchIndexState
from ..store.loader import BulkLoader
from ..store.schema import TableStore
from ..store.sql_functions import open_connection
from ..store.table_core import ImportResult

logger = logging.getLogger(__name__)


SOURCE_COLUMN = "_Source"
DATETIME_COLUMN = "datetime"


class Session:
    """One imported file: its own store file, connection and derived state."""

    def __init__(self, handle: str, name: str, config: EngineConfig):
        self.handle = handle
        self.name = name
        self.config = config
        fd, path = tempfile.mkstemp(
            prefix=f"tle_{handle[:8]}_", suffix=".db", dir=config.temp_dir
        )
        os.close(fd)
        self.path = path
        self.closed = False

        self.conn = open_connection(path)
        self.store = TableStore(self.conn, config)
        self.indexes = IndexManager(self.store, is_open=lambda: not self.closed, config=config)
        self.count_cache = CountCache(config.count_cache_size)
        self.annotations = AnnotationStore(
            self.conn,
            on_change=self.count_cache.invalidate,
            chunk_size=config.lookup_chunk_size,
        )
        self.engine = QueryEngine(
            self.store, self.indexes, self.annotations, self.count_cache, config
        )
        self.analyzer = TimelineAnalyzer(self.engine, config)
        self.loader: Optional[BulkLoader] = None
        self.search_task: Optional[asyncio.Task] = None

    def create_store(self, headers):
        columns = self.store.create_store(headers)
        self.loader = BulkLoader(self.store)
        return columns

    def insert_batch(self, rows) -> int:
        if self.loader is None:
            raise TimelineError("create_store() must run before rows are inserted")
        return self.loader.insert_arrays(rows)

    def insert_mappings(self, rows) -> int:
        if self.loader is None:
            raise TimelineError("create_store() must run before rows are inserted")
        return self.loader.insert_mappings(rows)

    def finalize_import(self) -> ImportResult:
        result = self.store.finalize_import()
        self.indexes.build_eager_indexes([c for c in self.store.columns if c.is_timestamp])
        self.count_cache.invalidate()
        self.start_search_index()
        return result

    def start_search_index(self):
        """
        Schedule the full-text build on the running event loop. Without a
        loop the index is built by the first search that needs it.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running event loop, search index for {self.name} builds on demand")
            return None
        if self.search_task is None or self.search_task.done():
            self.search_task = loop.create_task(self.indexes.run_search_index_build())
        return self.search_task

    def info(self) -> Dict[str, Any]:
        return {
            "handle": self.handle,
            "name": self.name,
            "headers": self.store.headers,
            "rowCount": self.store.row_count,
            "timestampColumns": self.store.timestamp_columns,
            "numericColumns": self.store.numeric_columns,
            "searchIndex": self.indexes.status(),
            "sortIndexedColumns": [
                c.name for c in self.store.columns if c.ident in self.indexes.sort_indexed
            ],
            "bookmarkCount": self.annotations.bookmark_count(),
        }

    def close(self):
        """Best-effort optimize, then release the connection and delete the store files."""
        if self.closed:
            return
        self.closed = True
        if self.search_task is not None and not self.search_task.done():
            self.search_task.cancel()
        try:
            self.conn.execute("PRAGMA analysis_limit = 1000")
            self.conn.execute("PRAGMA optimize")
        except sqlite3.Error as e:
            logger.warning(f"Optimize on close failed for session {self.handle}: {e}")
        try:
            self.conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Closing connection failed for session {self.handle}: {e}")

        for suffix in ("", "-wal", "-shm"):
            try:
                os.unlink(self.path + suffix)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not delete {self.path + suffix}: {e}")
        logger.debug(f"Closed session {self.handle} ({self.name})")


@dataclass
class RestorePayload:
    """Saved view of a session, re-applied onto a freshly imported copy."""

    bookmarked_row_keys: List[int] = field(default_factory=list)
    tags_by_row_key: Dict[int, List[str]] = field(default_factory=dict)
    highlight_rules: List[HighlightRule] = field(default_factory=list)
    view_state: Dict[str, Any] = field(default_factory=dict)

    VIEW_KEYS = (
        "columnFilters",
        "checkboxFilters",
        "hiddenColumns",
        "pinnedColumns",
        "columnOrder",
        "sortColumn",
        "sortDirection",
        "searchTerm",
        "searchMode",
        "searchCondition",
        "groupByColumns",
        "showBookmarkedOnly",
        "dateRangeFilters",
        "advancedFilters",
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        if not isinstance(data, dict):
            raise TimelineError("Restore payload must be a mapping")
        try:
            bookmarks = [int(k) for k in data.get("bookmarkedRowKeys") or []]
            tags = {
                int(key): [str(t) for t in values]
                for key, values in (data.get("tagsByRowKey") or {}).items()
            }
        except (TypeError, ValueError) as e:
            raise TimelineError(f"Invalid restore payload: {e}") from e
        rules = [HighlightRule.from_dict(r) for r in data.get("highlightRules") or []]
        view = {key: data[key] for key in cls.VIEW_KEYS if key in data}
        return cls(bookmarks, tags, rules, view)


class SessionManager:
    """
    Owns every open session, keyed by an opaque handle.

    Mutating and annotation calls on an unknown handle raise
    ``UnknownSessionError``; query and analytics calls return an empty default.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self.ingest_engine = IngestEngine(self.config)
        self._sessions: Dict[str, Session] = {}
        atexit.register(self.close_all)

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, handle):
        return handle in self._sessions

    @property
    def handles(self) -> List[str]:
        return list(self._sessions)

    def _new_session(self, name) -> Session:
        handle = uuid.uuid4().hex
        session = Session(handle, name, self.config)
        self._sessions[handle] = session
        return session

    def _discard(self, session: Session):
        self._sessions.pop(session.handle, None)
        session.close()

    def get(self, handle) -> Session:
        session = self._sessions.get(handle)
        if session is None:
            raise UnknownSessionError(handle)
        return session

    def find(self, handle) -> Optional[Session]:
        return self._sessions.get(handle)

    # Lifecycle

    def import_file(self, path, sheet=None, name=None, progress=None) -> Tuple[str, ImportResult]:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")

        session = self._new_session(name or path.name)
        try:
            result = self.ingest_engine.parse_file(path, session, sheet=sheet, progress=progress)
        except IngestError as e:
            logger.error(f"Import of {path.name} failed: {e}")
            self._discard(session)
            raise
        except Exception as e:
            logger.error(f"Import of {path.name} failed: {e}")
            self._discard(session)
            raise IngestError(f"Failed to import {path.name}: {e}") from e

        logger.info(f"Opened session {session.handle} for {path.name}")
        return session.handle, result

    def create_session(self, headers, name="Untitled") -> str:
        session = self._new_session(name)
        try:
            session.create_store(headers)
        except Exception:
            self._discard(session)
            raise
        return session.handle

    def insert_rows(self, handle, rows: Iterable[Dict[str, str]]) -> int:
        return self.get(handle).insert_mappings(list(rows))

    def finalize_session(self, handle) -> ImportResult:
        return self.get(handle).finalize_import()

    def close_session(self, handle):
        session = self._sessions.pop(handle, None)
        if session is None:
            raise UnknownSessionError(handle)
        session.close()

    def close_all(self):
        for handle in list(self._sessions):
            self._sessions.pop(handle).close()

    def merge_sessions(
        self, sources: Union[Dict[str, str], Iterable[Tuple[str, str]]], name=None
    ) -> Tuple[str, ImportResult]:
        """
        Merge sessions into a new one ordered by each source's timestamp column.

        ``sources`` maps source handle -> name of that source's timestamp column.
        """
        pairs = list(sources.items()) if isinstance(sources, dict) else list(sources)
        resolved = [(self.get(handle), column) for handle, column in pairs]
        if not resolved:
            raise TimelineError("No sessions to merge")
        for session, column in resolved:
            if session.store.resolve(column) is None:
                raise TimelineError(
                    f"Unknown timestamp column {column!r} in session {session.name}"
                )

        others = set()
        for session, _ in resolved:
            others.update(
                h for h in session.store.headers if h not in (SOURCE_COLUMN, DATETIME_COLUMN)
            )
        headers = [SOURCE_COLUMN, DATETIME_COLUMN] + sorted(others)
        position = {h: i for i, h in enumerate(headers)}

        merged = self._new_session(name or "Merged timeline")
        try:
            merged.create_store(headers)
            streams = [
                self._merge_stream(session, column, position) for session, column in resolved
            ]
            batch = []
            for row in heapq.merge(*streams, key=lambda r: r[1]):
                batch.append(row)
                if len(batch) >= self.config.merge_batch_size:
                    merged.insert_batch(batch)
                    batch = []
            if batch:
                merged.insert_batch(batch)

            result = merged.finalize_import()
            for column_name in (DATETIME_COLUMN, SOURCE_COLUMN):
                merged.indexes.ensure_sort_index(merged.store.resolve(column_name))
        except Exception:
            self._discard(merged)
            raise

        logger.info(
            f"Merged {len(resolved)} sessions into {merged.handle}: "
            f"{result.row_count} rows, {len(headers)} columns"
        )
        return merged.handle, result

    @staticmethod
    def _merge_stream(session: Session, timestamp_name, position):
        """Rows of one source in unified column order, sorted by its timestamp."""
        width = len(position)
        timestamp = session.store.resolve(timestamp_name)
        mapping = [
            (position[c.name], i)
            for i, c in enumerate(session.store.columns)
            if c.name not in (SOURCE_COLUMN, DATETIME_COLUMN)
        ]
        cursor = session.conn.execute(
            f"SELECT {', '.join(session.store.idents)} FROM data ORDER BY {timestamp.ident}, rowid"
        )
        timestamp_index = session.store.columns.index(timestamp)
        for record in cursor:
            row = [""] * width
            row[0] = session.name
            row[1] = record[timestamp_index] or ""
            for dest, src in mapping:
                value = record[src]
                row[dest] = "" if value is None else value
            yield row

    # Search index

    def build_search_index(self, handle, chunk_size=None):
        return self.get(handle).indexes.iter_search_index_build(chunk_size)

    def build_search_index_async(self, handle, chunk_size=None):
        return self.get(handle).indexes.build_search_index_async(chunk_size)

    def search_status(self, handle):
        session = self.find(handle)
        if session is None:
            return {"state": SearchIndexState.NOT_BUILT.value, "indexed": 0, "total": 0}
        return session.indexes.status()

    # Queries

    @staticmethod
    def _request(request) -> QueryRequest:
        if request is None:
            return QueryRequest()
        if isinstance(request, QueryRequest):
            return request
        if isinstance(request, FilterSpec):
            values = {f: getattr(request, f) for f in request.__dataclass_fields__}
            return QueryRequest(**values)
        return QueryRequest.from_dict(request)

    @staticmethod
    def _spec(spec) -> FilterSpec:
        if spec is None:
            return FilterSpec()
        if isinstance(spec, FilterSpec):
            return spec
        return FilterSpec.from_dict(spec)

    def session_info(self, handle) -> Dict[str, Any]:
        session = self.find(handle)
        return session.info() if session else {}

    def query_rows(self, handle, request=None) -> QueryResult:
        session = self.find(handle)
        if session is None:
            return QueryResult()
        return session.engine.query_rows(self._request(request))

    def count_rows(self, handle, spec=None) -> int:
        session = self.find(handle)
        return session.engine.count_rows(self._spec(spec)) if session else 0

    def search_count(self, handle, term, mode="mixed", condition="contains") -> int:
        session = self.find(handle)
        return session.engine.search_count(term, mode, condition) if session else 0

    def column_unique_values(self, handle, column, spec=None, limit=1000):
        session = self.find(handle)
        if session is None:
            return []
        return session.engine.column_unique_values(column, self._spec(spec), limit)

    def column_stats(self, handle, column, spec=None):
        session = self.find(handle)
        return session.engine.column_stats(column, self._spec(spec)) if session else {}

    def group_values(self, handle, column, spec=None, parents=None):
        session = self.find(handle)
        return session.engine.group_values(column, self._spec(spec), parents) if session else []

    def empty_columns(self, handle) -> List[str]:
        session = self.find(handle)
        return session.engine.empty_columns() if session else []

    def export_csv(self, handle, path, request=None, columns=None) -> int:
        return self.get(handle).engine.export_csv(self._request(request), path, columns)

    # Analytics

    def histogram(self, handle, column, spec=None, granularity="day"):
        session = self.find(handle)
        if session is None:
            return HistogramResult(granularity=granularity)
        return session.analyzer.histogram(column, self._spec(spec), granularity)

    def gap_analysis(self, handle, column, threshold_minutes=60, spec=None):
        session = self.find(handle)
        if session is None:
            return GapAnalysis()
        return session.analyzer.gap_analysis(column, threshold_minutes, self._spec(spec))

    def burst_analysis(self, handle, column, window_minutes=5, multiplier=5.0, spec=None):
        session = self.find(handle)
        if session is None:
            return BurstAnalysis(window_minutes=window_minutes)
        return session.analyzer.burst_analysis(
            column, window_minutes, multiplier, self._spec(spec)
        )

    def source_coverage(self, handle, source_column, timestamp_column, spec=None):
        session = self.find(handle)
        if session is None:
            return CoverageResult()
        return session.analyzer.source_coverage(source_column, timestamp_column, self._spec(spec))

    def value_stacking(self, handle, column, spec=None, sort_by="count", filter_text=""):
        session = self.find(handle)
        if session is None:
            return StackingResult()
        return session.analyzer.value_stacking(column, self._spec(spec), sort_by, filter_text)

    def match_iocs(self, handle, patterns, spec=None):
        session = self.find(handle)
        if session is None:
            return IocMatchResult()
        return session.analyzer.match_iocs(patterns, self._spec(spec))

    def process_tree(self, handle, spec=None, columns=None, event_ids="1"):
        session = self.find(handle)
        if session is None:
            return ProcessTreeResult()
        return session.analyzer.process_tree(self._spec(spec), columns, event_ids)

    def lateral_movement(self, handle, spec=None, columns=None, **options):
        session = self.find(handle)
        if session is None:
            return LateralMovementResult()
        return session.analyzer.lateral_movement(self._spec(spec), columns, **options)

    def persistence_analysis(self, handle, spec=None, mode="auto", columns=None):
        session = self.find(handle)
        if session is None:
            return PersistenceResult()
        return session.analyzer.persistence_analysis(self._spec(spec), mode, columns)

    # Bookmarks

    def toggle_bookmarks(self, handle, row_keys, add=True) -> int:
        return self.get(handle).annotations.set_bookmarks(row_keys, add)

    def set_bookmarks(self, handle, row_keys) -> int:
        return self.get(handle).annotations.replace_bookmarks(row_keys)

    def bookmark_count(self, handle) -> int:
        return self.get(handle).annotations.bookmark_count()

    def bookmarked_keys(self, handle) -> List[int]:
        return self.get(handle).annotations.bookmarked_keys()

    def bulk_bookmark_filtered(self, handle, spec=None, add=True) -> int:
        session = self.get(handle)
        predicate = session.engine.build_predicate(self._spec(spec))
        return session.annotations.bookmark_where(predicate, add)

    # Tags

    def add_tag(self, handle, row_key, tag) -> int:
        return self.get(handle).annotations.add_tags([(row_key, tag)])

    def remove_tag(self, handle, row_key, tag) -> int:
        return self.get(handle).annotations.remove_tag(row_key, tag)

    def bulk_add_tags(self, handle, keys_by_tag: Dict[str, Iterable[int]]) -> int:
        pairs = [(key, tag) for tag, keys in keys_by_tag.items() for key in keys]
        return self.get(handle).annotations.add_tags(pairs)

    def bulk_tag_filtered(self, handle, tag, spec=None) -> int:
        session = self.get(handle)
        predicate = session.engine.build_predicate(self._spec(spec))
        return session.annotations.tag_where(tag, predicate)

    def bulk_tag_by_time_range(self, handle, column, ranges) -> int:
        """Tag rows whose ``column`` value lies in each ``(from, to, tag)`` range."""
        session = self.get(handle)
        resolved = session.store.resolve(column)
        if resolved is None:
            raise TimelineError(f"Unknown column: {column}")
        return session.annotations.tag_ranges(resolved.ident, ranges)

    def tags_for_rows(self, handle, row_keys) -> Dict[int, List[str]]:
        return self.get(handle).annotations.tags_among(list(row_keys))

    def all_tags(self, handle):
        return self.get(handle).annotations.all_tags()

    # Highlight rules

    def add_highlight_rule(self, handle, rule: Union[HighlightRule, Dict]) -> int:
        if isinstance(rule, dict):
            rule = HighlightRule.from_dict(rule)
        return self.get(handle).annotations.add_highlight_rule(rule)

    def highlight_rules(self, handle) -> List[HighlightRule]:
        return self.get(handle).annotations.highlight_rules()

    def remove_highlight_rule(self, handle, rule_id) -> bool:
        return self.get(handle).annotations.remove_highlight_rule(rule_id)

    # Restore

    def apply_restore(self, handle, payload: Union[RestorePayload, Dict]) -> Dict[str, Any]:
        """
        Re-apply saved bookmarks, tags and highlight rules, replacing the current
        ones, and return the remaining view state for the caller to apply.
        """
        session = self.get(handle)
        if isinstance(payload, dict):
            payload = RestorePayload.from_dict(payload)
        annotations = session.annotations
        annotations.replace_bookmarks(payload.bookmarked_row_keys)
        annotations.replace_tags(payload.tags_by_row_key)
        annotations.replace_highlight_rules(payload.highlight_rules)
        logger.info(
            f"Restored {len(payload.bookmarked_row_keys)} bookmarks and "
            f"{len(payload.tags_by_row_key)} tagged rows into session {handle}"
        )
        return dict(payload.view_state)

    def snapshot_annotations(self, handle) -> Dict[str, Any]:
        session = self.get(handle)
        annotations = session.annotations
        tags: Dict[int, List[str]] = {}
        for rowid, tag in session.conn.execute("SELECT rowid, tag FROM tags ORDER BY rowid, tag"):
            tags.setdefault(rowid, []).append(tag)
        return {
            "bookmarkedRowKeys": annotations.bookmarked_keys(),
            "tagsByRowKey": tags,
            "highlightRules": [r.to_dict() for r in annotations.highlight_rules()],
        }

    # Misc

    @staticmethod
    def list_sheets(path):
        return list_sheets(path)
