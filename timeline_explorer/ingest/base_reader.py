import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from ..config import EngineConfig
from ..store.table_core import ImportResult

logger = logging.getLogger(__name__)


@dataclass
class ImportProgress:
    rows_imported: int
    bytes_read: int = 0
    total_bytes: int = 0

    @property
    def fraction(self):
        if not self.total_bytes:
            return 0.0
        return min(1.0, self.bytes_read / self.total_bytes)


def fit_row(values: List[str], width: int) -> List[str]:
    """Pad with empty strings or truncate so the row has exactly ``width`` values."""
    if len(values) < width:
        return values + [""] * (width - len(values))
    if len(values) > width:
        return values[:width]
    return values


class BaseReader(ABC):
    """
    Streams one input file into an import sink.

    The sink is the session being filled. It must provide
    ``create_store(headers)``, ``insert_batch(rows)`` and ``finalize_import()``.
    Readers hand it lists of strings in header order, ``config.batch_size``
    rows at a time.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        progress: Optional[Callable[[ImportProgress], None]] = None,
    ):
        self.config = config or EngineConfig()
        self.progress = progress
        self.rows_imported = 0
        self.bytes_read = 0
        self.total_bytes = 0

    def read(self, path, sink) -> ImportResult:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")

        self.total_bytes = path.stat().st_size
        self._read_into(path, sink)
        result = sink.finalize_import()
        logger.info(
            f"{type(self).__name__} imported {result.row_count} rows "
            f"with {len(result.headers)} columns from {path.name}"
        )
        return result

    @abstractmethod
    def _read_into(self, path: Path, sink):
        pass

    def _flush(self, sink, batch: List[List[str]]):
        if not batch:
            return
        sink.insert_batch(batch)
        self.rows_imported += len(batch)
        logger.debug(f"Flushed {len(batch)} rows ({self.rows_imported} total)")
        if self.progress is not None:
            self.progress(ImportProgress(self.rows_imported, self.bytes_read, self.total_bytes))

    def _stream_rows(self, sink, rows):
        """Flush an iterable of rows to the sink in ``batch_size`` chunks."""
        batch_size = self.config.batch_size
        batch = []
        for row in rows:
            batch.append(row)
            if len(batch) >= batch_size:
                self._flush(sink, batch)
                batch = []
        self._flush(sink, batch)
