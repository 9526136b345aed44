import logging
from pathlib import Path

from ..config import EngineConfig
from .compression import CompressionHandler
from .delimited_reader import DelimitedReader
from .evtx_reader import EventLogReader
from .plaso_reader import PlasoReader, validate_plaso
from .spreadsheet_reader import SpreadsheetReader

logger = logging.getLogger(__name__)


READER_KINDS = {
    DelimitedReader: "delimited",
    SpreadsheetReader: "spreadsheet",
    EventLogReader: "evtx",
    PlasoReader: "plaso",
}


class IngestEngine:
    """Chooses a reader by file extension; anything unknown is read as delimited text."""

    def __init__(self, config=None):
        self.config = config or EngineConfig()
        self.reader_classes = {
            ".xlsx": SpreadsheetReader,
            ".xlsm": SpreadsheetReader,
            ".xls": SpreadsheetReader,
            ".evtx": EventLogReader,
            ".plaso": PlasoReader,
        }
        logger.debug(f"Initialized ingest engine with {len(self.reader_classes)} readers")

    def reader_class_for(self, filepath):
        # Only text formats stream through a decompressor
        if CompressionHandler.detect_compression(filepath):
            return DelimitedReader
        return self.reader_classes.get(Path(filepath).suffix.lower(), DelimitedReader)

    def detect_kind(self, filepath) -> str:
        return READER_KINDS[self.reader_class_for(filepath)]

    def create_reader(self, filepath, sheet=None, progress=None):
        reader_class = self.reader_class_for(filepath)
        if reader_class is SpreadsheetReader:
            reader = SpreadsheetReader(self.config, progress, sheet=sheet)
        else:
            reader = reader_class(self.config, progress)
        logger.info(f"Created {reader_class.__name__} for {Path(filepath).name}")
        return reader

    def parse_file(self, filepath, sink, sheet=None, progress=None):
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"File not found: {filepath}")

        if self.detect_kind(filepath) == "plaso":
            validate_plaso(filepath)

        reader = self.create_reader(filepath, sheet=sheet, progress=progress)
        return reader.read(filepath, sink)
