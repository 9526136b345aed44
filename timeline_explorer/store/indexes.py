import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..config import EngineConfig
from .sql_functions import transaction

logger = logging.getLogger(__name__)


class SearchIndexState(Enum):
    NOT_BUILT = "not_built"
    BUILDING = "building"
    READY = "ready"
    ABORTED = "aborted"


@dataclass
class IndexProgress:
    indexed: int
    total: int
    done: bool
    state: SearchIndexState

    def to_dict(self):
        return {
            "indexed": self.indexed,
            "total": self.total,
            "done": self.done,
            "state": self.state.value,
        }


class IndexManager:
    """
    Lazy sort indexes plus the full-text search index of one session.

    The full-text index is an external-content FTS5 table over ``data``. It is
    filled in rowid chunks up to the last row present when the build started.
    """

    def __init__(
        self,
        store,
        is_open: Callable[[], bool] = lambda: True,
        config: Optional[EngineConfig] = None,
    ):
        self.store = store
        self.conn = store.conn
        self.is_open = is_open
        self.config = config or EngineConfig()
        self.sort_indexed = set()
        self._attempted = set()
        self.state = SearchIndexState.NOT_BUILT
        self.indexed = 0
        self.total = 0
        self._fts_unavailable = False

    # Sort indexes

    def ensure_sort_index(self, column) -> bool:
        if column.ident in self.sort_indexed:
            return True
        if column.ident in self._attempted:
            return False

        self._attempted.add(column.ident)
        try:
            self.conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{column.ident} ON data ({column.ident})"
            )
        except sqlite3.Error as e:
            logger.warning(f"Could not create index for column '{column.name}': {e}")
            return False

        self.sort_indexed.add(column.ident)
        logger.debug(f"Created sort index for column '{column.name}'")
        return True

    def build_eager_indexes(self, columns):
        for column in columns:
            self.ensure_sort_index(column)

    # Full-text index

    @property
    def search_ready(self) -> bool:
        return self.state == SearchIndexState.READY

    def status(self):
        return {"state": self.state.value, "indexed": self.indexed, "total": self.total}

    def _progress(self, done=False):
        return IndexProgress(self.indexed, self.total, done, self.state)

    def _create_fts_table(self) -> bool:
        if self._fts_unavailable:
            return False
        columns = ", ".join(self.store.idents)
        try:
            self.conn.execute(
                f"CREATE VIRTUAL TABLE IF NOT EXISTS data_fts USING fts5("
                f"{columns}, content=data, content_rowid=rowid)"
            )
        except sqlite3.Error as e:
            self._fts_unavailable = True
            logger.warning(f"Full-text search unavailable, using direct scans: {e}")
            return False
        return True

    def _clear_fts(self):
        self.conn.execute("INSERT INTO data_fts(data_fts) VALUES ('delete-all')")

    def iter_search_index_build(self, chunk_size: Optional[int] = None):
        """
        Build the full-text index in rowid chunks, yielding an
        ``IndexProgress`` after each chunk and a final one with ``done=True``.

        The build stops silently with state ABORTED when the session closes,
        when a chunk fails, or when the caller abandons the generator.
        """
        if self.state in (SearchIndexState.READY, SearchIndexState.BUILDING):
            yield self._progress(done=self.state == SearchIndexState.READY)
            return

        chunk_size = chunk_size or self.config.fts_chunk_size
        if not self.is_open() or not self._create_fts_table():
            self.state = SearchIndexState.ABORTED
            yield self._progress(done=True)
            return

        previous_state = self.state
        self.state = SearchIndexState.BUILDING
        try:
            if previous_state == SearchIndexState.ABORTED:
                self._clear_fts()
            upper = self.conn.execute("SELECT MAX(rowid) FROM data").fetchone()[0] or 0
            self.total = self.conn.execute(
                "SELECT COUNT(*) FROM data WHERE rowid <= ?", (upper,)
            ).fetchone()[0]
        except sqlite3.Error as e:
            logger.warning(f"Search index build failed to start: {e}")
            self.state = SearchIndexState.ABORTED
            yield self._progress(done=True)
            return

        self.indexed = 0
        columns = ", ".join(self.store.idents)
        insert_sql = (
            f"INSERT INTO data_fts(rowid, {columns}) SELECT rowid, {columns} "
            f"FROM data WHERE rowid > ? AND rowid <= ?"
        )
        logger.info(f"Building search index over {self.total} rows")

        last = 0
        finished = False
        try:
            while True:
                if not self.is_open():
                    logger.info("Session closed, abandoning search index build")
                    self.state = SearchIndexState.ABORTED
                    return

                try:
                    chunk_upper, chunk_rows = self.conn.execute(
                        "SELECT MAX(rowid), COUNT(*) FROM (SELECT rowid FROM data "
                        "WHERE rowid > ? AND rowid <= ? ORDER BY rowid LIMIT ?)",
                        (last, upper, chunk_size),
                    ).fetchone()
                    if not chunk_rows:
                        break
                    with transaction(self.conn):
                        self.conn.execute(insert_sql, (last, chunk_upper))
                except sqlite3.Error as e:
                    logger.warning(f"Search index build aborted: {e}")
                    self.state = SearchIndexState.ABORTED
                    return

                last = chunk_upper
                self.indexed += chunk_rows
                logger.debug(f"Indexed {self.indexed}/{self.total} rows")
                yield self._progress()

            try:
                self.conn.execute("INSERT INTO data_fts(data_fts) VALUES ('optimize')")
            except sqlite3.Error as e:
                logger.warning(f"Search index optimize failed: {e}")

            self.state = SearchIndexState.READY
            finished = True
            logger.info(f"Search index ready ({self.indexed} rows)")
            yield self._progress(done=True)
        finally:
            if not finished and self.state == SearchIndexState.BUILDING:
                self.state = SearchIndexState.ABORTED

    async def build_search_index_async(self, chunk_size: Optional[int] = None):
        """Async progress stream; control returns to the event loop between chunks."""
        for progress in self.iter_search_index_build(chunk_size):
            yield progress
            await asyncio.sleep(0)

    async def run_search_index_build(self, chunk_size: Optional[int] = None):
        last = self._progress()
        async for progress in self.build_search_index_async(chunk_size):
            last = progress
        return last

    def ensure_search_index(self) -> bool:
        """
        Build the index synchronously unless a build is already running.

        Returns True when the index is ready afterwards.
        """
        if self.state == SearchIndexState.NOT_BUILT or (
            self.state == SearchIndexState.ABORTED and not self._fts_unavailable
        ):
            for _ in self.iter_search_index_build():
                pass
        return self.search_ready

    def rebuild_search_index(self):
        if self.state == SearchIndexState.BUILDING:
            raise RuntimeError("Search index build already in progress")
        if self.state != SearchIndexState.NOT_BUILT and not self._fts_unavailable:
            try:
                self._clear_fts()
            except sqlite3.Error as e:
                logger.warning(f"Could not clear search index: {e}")
        self.state = SearchIndexState.NOT_BUILT
        self.indexed = 0
        self.total = 0
