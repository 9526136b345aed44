import pytest

from timeline_explorer.errors import IngestError
from timeline_explorer.ingest.ingest_engine import IngestEngine
from timeline_explorer.ingest.spreadsheet_reader import SpreadsheetReader


@pytest.mark.parametrize(
    "name,kind",
    [
        ("timeline.csv", "delimited"),
        ("timeline.csv.gz", "delimited"),
        ("supertimeline.TXT", "delimited"),
        ("report.xlsx", "spreadsheet"),
        ("report.XLSM", "spreadsheet"),
        ("Security.evtx", "evtx"),
        ("case.plaso", "plaso"),
        ("mystery.bin", "delimited"),
    ],
)
def test_detect_kind(name, kind):
    assert IngestEngine().detect_kind(name) == kind


def test_create_reader_passes_sheet():
    reader = IngestEngine().create_reader("report.xlsx", sheet="Events")
    assert isinstance(reader, SpreadsheetReader)
    assert reader.sheet == "Events"


def test_parse_file_missing(tmp_path, sink):
    with pytest.raises(FileNotFoundError):
        IngestEngine().parse_file(tmp_path / "missing.csv", sink)


def test_parse_file_validates_plaso_first(tmp_path, sink):
    path = tmp_path / "fake.plaso"
    path.write_text("not sqlite at all, padded to look like a file " * 5, encoding="utf-8")
    with pytest.raises(IngestError):
        IngestEngine().parse_file(path, sink)
    assert sink.headers is None


def test_parse_file_delimited(tmp_path, sink):
    path = tmp_path / "events.csv"
    path.write_text("datetime,EventID\n2024-01-01 00:00:00,4624\n", encoding="utf-8")
    result = IngestEngine().parse_file(path, sink)
    assert result.row_count == 1
    assert sink.rows == [["2024-01-01 00:00:00", "4624"]]
