import logging
from itertools import chain
from typing import Mapping, Sequence

from .sql_functions import transaction, variable_limit

logger = logging.getLogger(__name__)


class BulkLoader:
    """
    Batched inserts into the ``data`` table.

    Full chunks go through one multi-row INSERT sized to stay under the bound
    parameter limit; the remainder goes through a single-row statement. Each
    call runs in one transaction.
    """

    def __init__(self, store):
        if not store.columns:
            raise ValueError("BulkLoader needs a store with columns")
        self.store = store
        self.conn = store.conn
        self.column_count = len(store.columns)
        self.rows_per_statement = max(1, variable_limit(self.conn) // self.column_count)

        column_list = ", ".join(store.idents)
        row_placeholders = "(" + ",".join("?" * self.column_count) + ")"
        self._single_sql = f"INSERT INTO data ({column_list}) VALUES {row_placeholders}"
        self._multi_sql = (
            f"INSERT INTO data ({column_list}) VALUES "
            + ",".join([row_placeholders] * self.rows_per_statement)
        )

    def insert_arrays(self, rows: Sequence[Sequence[str]]) -> int:
        if not isinstance(rows, list):
            rows = list(rows)
        if not rows:
            return 0

        width = self.column_count
        for row in rows:
            if len(row) != width:
                raise ValueError(f"Row has {len(row)} values, expected {width}")

        step = self.rows_per_statement
        full = len(rows) - len(rows) % step
        with transaction(self.conn):
            for start in range(0, full, step):
                params = list(chain.from_iterable(rows[start : start + step]))
                self.conn.execute(self._multi_sql, params)
            if full < len(rows):
                self.conn.executemany(self._single_sql, rows[full:])

        self.store.row_count += len(rows)
        logger.debug(f"Inserted {len(rows)} rows ({full // step} multi-row statements)")
        return len(rows)

    def insert_mappings(self, rows: Sequence[Mapping[str, str]]) -> int:
        """Insert rows given as header name -> value maps; missing names become ""."""
        headers = self.store.headers
        arrays = []
        for row in rows:
            arrays.append(
                ["" if row.get(name) is None else str(row.get(name)) for name in headers]
            )
        return self.insert_arrays(arrays)
