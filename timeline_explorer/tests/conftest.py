import pytest

from timeline_explorer.store.table_core import ImportResult


class RecordingSink:
    """Import sink that keeps everything in memory."""

    def __init__(self):
        self.headers = None
        self.rows = []
        self.batches = 0
        self.finalized = False

    def create_store(self, headers):
        assert self.headers is None, "create_store called twice"
        self.headers = list(headers)

    def insert_batch(self, rows):
        assert self.headers is not None, "rows inserted before create_store"
        for row in rows:
            assert len(row) == len(self.headers)
            self.rows.append(list(row))
        self.batches += 1
        return len(rows)

    def finalize_import(self):
        self.finalized = True
        return ImportResult(headers=self.headers, row_count=len(self.rows))


@pytest.fixture
def sink():
    return RecordingSink()
