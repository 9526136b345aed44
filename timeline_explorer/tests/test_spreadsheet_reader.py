from datetime import date, datetime, time

import pytest
from openpyxl import Workbook

from timeline_explorer.errors import IngestError
from timeline_explorer.ingest.spreadsheet_reader import (
    SpreadsheetReader,
    list_sheets,
    normalize_cell,
)


@pytest.fixture
def workbook_path(tmp_path):
    wb = Workbook()
    ws = wb.active
    ws.title = "Events"
    ws.append(["Timestamp", "User", None, "User", None])
    ws.append([datetime(2024, 1, 1, 10, 0, 0), "alice", 3.0, True])
    ws.append([None, None, None, None])
    ws.append(["2024-01-02", "bob", None, None, "extra"])

    other = wb.create_sheet("Other")
    other.append(["Name", "Count"])
    other.append(["x", 7])

    wb.create_sheet("Blank")

    path = tmp_path / "timeline.xlsx"
    wb.save(path)
    return path


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, ""),
        (datetime(2024, 1, 1, 10, 11, 12), "2024-01-01 10:11:12"),
        (date(2024, 1, 2), "2024-01-02"),
        (time(8, 30), "08:30:00"),
        (True, "TRUE"),
        (False, "FALSE"),
        (3.0, "3"),
        (2.5, "2.5"),
        (42, "42"),
        ("text", "text"),
    ],
)
def test_normalize_cell(value, expected):
    assert normalize_cell(value) == expected


def test_reads_first_sheet(workbook_path, sink):
    result = SpreadsheetReader().read(workbook_path, sink)

    assert sink.headers == ["Timestamp", "User", "Column_3", "User_1"]
    assert sink.rows == [
        ["2024-01-01 10:00:00", "alice", "3", "TRUE"],
        ["2024-01-02", "bob", "", ""],
    ]
    assert result.row_count == 2


@pytest.mark.parametrize("sheet", ["Other", 2, "2"])
def test_select_sheet(workbook_path, sink, sheet):
    SpreadsheetReader(sheet=sheet).read(workbook_path, sink)
    assert sink.headers == ["Name", "Count"]
    assert sink.rows == [["x", "7"]]


@pytest.mark.parametrize("sheet", ["Missing", 9, "0"])
def test_unknown_sheet(workbook_path, sink, sheet):
    with pytest.raises(IngestError, match="not found"):
        SpreadsheetReader(sheet=sheet).read(workbook_path, sink)


def test_empty_sheet(workbook_path, sink):
    with pytest.raises(IngestError, match="No data found"):
        SpreadsheetReader(sheet="Blank").read(workbook_path, sink)


def test_list_sheets(workbook_path):
    sheets = list_sheets(workbook_path)
    assert [(s.name, s.index) for s in sheets] == [("Events", 1), ("Other", 2), ("Blank", 3)]


def test_corrupt_workbook(tmp_path, sink):
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"this is not a zip archive")
    with pytest.raises(IngestError):
        SpreadsheetReader().read(path, sink)
