import logging
import zipfile
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import List

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from ..errors import IngestError
from ..inference.column_classifier import dedupe_headers
from .base_reader import BaseReader, fit_row

logger = logging.getLogger(__name__)


@dataclass
class SheetInfo:
    name: str
    index: int
    row_count: int


def open_workbook(path):
    try:
        return load_workbook(filename=str(path), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise IngestError(f"Cannot open spreadsheet {path}: {e}") from e


def list_sheets(path) -> List[SheetInfo]:
    workbook = open_workbook(path)
    try:
        return [
            SheetInfo(name=ws.title, index=i, row_count=ws.max_row or 0)
            for i, ws in enumerate(workbook.worksheets, 1)
        ]
    finally:
        workbook.close()


def select_sheet(workbook, sheet=None):
    """Pick a worksheet by name or 1-based index; the first sheet when ``sheet`` is None."""
    if sheet is None or sheet == "":
        return workbook.worksheets[0]

    if isinstance(sheet, str) and sheet in workbook.sheetnames:
        return workbook[sheet]

    if isinstance(sheet, int) or (isinstance(sheet, str) and sheet.strip().isdigit()):
        index = int(sheet)
        if 1 <= index <= len(workbook.worksheets):
            return workbook.worksheets[index - 1]

    raise IngestError(
        f"Sheet {sheet!r} not found; available sheets: {', '.join(workbook.sheetnames)}"
    )


def normalize_cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, timedelta):
        return str(value)
    return str(value)


class SpreadsheetReader(BaseReader):
    """
    Excel workbooks read through openpyxl's streaming (read-only) mode.

    Formula cells yield their cached result. The first row is the header row;
    trailing blank header cells are dropped.
    """

    def __init__(self, config=None, progress=None, sheet=None):
        super().__init__(config, progress)
        self.sheet = sheet

    def _read_into(self, path, sink):
        workbook = open_workbook(path)
        try:
            worksheet = select_sheet(workbook, self.sheet)
            rows = worksheet.iter_rows(values_only=True)
            header_row = next(rows, None)
            if header_row is None or all(v is None or str(v).strip() == "" for v in header_row):
                raise IngestError(f"No data found in sheet '{worksheet.title}'")

            header_row = list(header_row)
            while header_row and (header_row[-1] is None or str(header_row[-1]).strip() == ""):
                header_row.pop()
            headers = dedupe_headers(header_row, blank_name=lambda i: f"Column_{i + 1}")
            logger.info(f"Reading sheet '{worksheet.title}' with {len(headers)} columns")

            sink.create_store(headers)
            width = len(headers)
            self._stream_rows(
                sink,
                (
                    fit_row([normalize_cell(v) for v in row[:width]], width)
                    for row in rows
                    if any(v is not None and v != "" for v in row)
                ),
            )
        finally:
            workbook.close()
