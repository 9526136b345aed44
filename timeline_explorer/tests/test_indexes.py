import asyncio

import pytest

from timeline_explorer.config import EngineConfig
from timeline_explorer.store.indexes import IndexManager, SearchIndexState
from timeline_explorer.store.loader import BulkLoader
from timeline_explorer.store.schema import TableStore
from timeline_explorer.store.sql_functions import open_connection


@pytest.fixture
def store(tmp_path):
    conn = open_connection(tmp_path / "idx.db")
    table = TableStore(conn, EngineConfig())
    table.create_store(["datetime", "Message"])
    BulkLoader(table).insert_arrays(
        [[f"2024-01-01 00:00:{i:02d}", f"event number {i} powershell" if i % 2 else f"event {i}"] for i in range(10)]
    )
    table.finalize_import()
    yield table
    conn.close()


def _matches(store, query):
    return [
        r[0]
        for r in store.conn.execute(
            "SELECT rowid FROM data_fts WHERE data_fts MATCH ? ORDER BY rowid", (query,)
        )
    ]


def test_sort_index_is_created_once(store):
    indexes = IndexManager(store)
    column = store.resolve("datetime")
    assert indexes.ensure_sort_index(column)
    assert indexes.ensure_sort_index(column)
    names = [
        r[0]
        for r in store.conn.execute("SELECT name FROM sqlite_master WHERE type = 'index'")
    ]
    assert "idx_c0" in names
    assert "c0" in indexes.sort_indexed


def test_chunked_build_reports_progress(store):
    indexes = IndexManager(store)
    progress = list(indexes.iter_search_index_build(chunk_size=3))

    assert [p.indexed for p in progress] == [3, 6, 9, 10, 10]
    assert all(p.total == 10 for p in progress)
    assert progress[-1].done
    assert progress[-1].state == SearchIndexState.READY
    assert indexes.search_ready
    assert _matches(store, "powershell") == [2, 4, 6, 8, 10]


def test_build_is_idempotent(store):
    indexes = IndexManager(store)
    for _ in indexes.iter_search_index_build(chunk_size=4):
        pass
    again = list(indexes.iter_search_index_build(chunk_size=4))
    assert len(again) == 1
    assert again[0].done
    assert _matches(store, "powershell") == [2, 4, 6, 8, 10]


def test_async_build_matches_sync_build(store):
    indexes = IndexManager(store)
    last = asyncio.run(indexes.run_search_index_build(chunk_size=4))
    assert last.done
    assert last.indexed == 10
    assert indexes.state == SearchIndexState.READY
    # A later synchronous request is a no-op
    assert indexes.ensure_search_index()
    assert _matches(store, "powershell") == [2, 4, 6, 8, 10]


def test_build_aborts_when_session_closes(store):
    state = {"open": True}
    indexes = IndexManager(store, is_open=lambda: state["open"])
    builder = indexes.iter_search_index_build(chunk_size=2)
    first = next(builder)
    assert first.indexed == 2
    state["open"] = False
    assert list(builder) == []
    assert indexes.state == SearchIndexState.ABORTED


def test_abandoned_build_is_marked_aborted_and_restarts_cleanly(store):
    indexes = IndexManager(store)
    builder = indexes.iter_search_index_build(chunk_size=2)
    next(builder)
    builder.close()
    assert indexes.state == SearchIndexState.ABORTED

    assert indexes.ensure_search_index()
    assert _matches(store, "powershell") == [2, 4, 6, 8, 10]


def test_rebuild_resets_state(store):
    indexes = IndexManager(store)
    indexes.ensure_search_index()
    indexes.rebuild_search_index()
    assert indexes.state == SearchIndexState.NOT_BUILT
    assert indexes.status() == {"state": "not_built", "indexed": 0, "total": 0}
    assert indexes.ensure_search_index()


def test_rebuild_during_build_is_rejected(store):
    indexes = IndexManager(store)
    builder = indexes.iter_search_index_build(chunk_size=2)
    next(builder)
    with pytest.raises(RuntimeError):
        indexes.rebuild_search_index()
    builder.close()
