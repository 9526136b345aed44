import bz2
import gzip

import pytest

from timeline_explorer.config import EngineConfig
from timeline_explorer.errors import IngestError
from timeline_explorer.ingest.compression import CompressionHandler
from timeline_explorer.ingest.delimited_reader import DelimitedReader

CSV_TEXT = (
    "\ufeffTime,User,Message,User\r\n"
    "2024-01-01 10:00:00,alice,\"hello, world\",x\r\n"
    "\r\n"
    "2024-01-01 10:01:00,bob,\"line1\r\nline2\",y\r\n"
    "2024-01-01 10:02:00,carol\r\n"
    "2024-01-01 10:03:00,dave,m,z,extra\r\n"
)

EXPECTED_ROWS = [
    ["2024-01-01 10:00:00", "alice", "hello, world", "x"],
    ["2024-01-01 10:01:00", "bob", "line1\nline2", "y"],
    ["2024-01-01 10:02:00", "carol", "", ""],
    ["2024-01-01 10:03:00", "dave", "m", "z"],
]


@pytest.mark.parametrize(
    "line,expected",
    [
        ("a\tb\tc", "\t"),
        ("a|b|c", "|"),
        ("a,b,c", ","),
        ("a|b,c|d", "|"),
        ("single", ","),
    ],
)
def test_detect_delimiter(line, expected):
    assert DelimitedReader.detect_delimiter(line) == expected


def test_reads_csv_with_quotes_bom_and_ragged_rows(tmp_path, sink):
    path = tmp_path / "timeline.csv"
    path.write_bytes(CSV_TEXT.encode("utf-8"))

    result = DelimitedReader().read(path, sink)

    assert sink.headers == ["Time", "User", "Message", "User_1"]
    assert sink.rows == EXPECTED_ROWS
    assert sink.finalized
    assert result.row_count == 4


def test_small_read_chunks_carry_partial_lines(tmp_path, sink):
    path = tmp_path / "timeline.csv"
    path.write_bytes(CSV_TEXT.encode("utf-8"))

    DelimitedReader(EngineConfig(read_chunk_bytes=7)).read(path, sink)
    assert sink.rows == EXPECTED_ROWS


def test_tab_overflow_stays_in_last_column(tmp_path, sink):
    path = tmp_path / "timeline.tsv"
    path.write_text("a\tb\tc\n1\t2\t3\t4\n\n5\n", encoding="utf-8")

    DelimitedReader().read(path, sink)
    assert sink.headers == ["a", "b", "c"]
    assert sink.rows == [["1", "2", "3\t4"], ["5", "", ""]]


def test_pipe_delimited(tmp_path, sink):
    path = tmp_path / "timeline.txt"
    path.write_text("when|what\n2024|x|y\n", encoding="utf-8")

    DelimitedReader().read(path, sink)
    assert sink.rows == [["2024", "x|y"]]


def test_invalid_utf8_is_replaced(tmp_path, sink):
    path = tmp_path / "bad.csv"
    path.write_bytes(b"a,b\n\xff\xfe,ok\n")

    DelimitedReader().read(path, sink)
    assert sink.rows == [["\ufffd\ufffd", "ok"]]


def test_blank_header_names(tmp_path, sink):
    path = tmp_path / "blank.csv"
    path.write_text("a,,a\n1,2,3\n", encoding="utf-8")

    DelimitedReader().read(path, sink)
    assert sink.headers == ["a", "Column", "a_1"]


@pytest.mark.parametrize("suffix,opener", [(".gz", gzip.open), (".bz2", bz2.open)])
def test_compressed_input(tmp_path, sink, suffix, opener):
    path = tmp_path / f"timeline.csv{suffix}"
    with opener(path, "wb") as f:
        f.write(CSV_TEXT.encode("utf-8"))

    assert CompressionHandler.detect_compression(path) is not None
    DelimitedReader().read(path, sink)
    assert sink.rows == EXPECTED_ROWS


def test_batches_and_progress(tmp_path, sink):
    path = tmp_path / "many.csv"
    path.write_text("n\n" + "".join(f"{i}\n" for i in range(5)), encoding="utf-8")
    updates = []

    reader = DelimitedReader(EngineConfig(batch_size=2), progress=updates.append)
    reader.read(path, sink)

    assert sink.batches == 3
    assert [u.rows_imported for u in updates] == [2, 4, 5]
    assert updates[-1].fraction == 1.0


def test_empty_file_is_rejected(tmp_path, sink):
    path = tmp_path / "empty.csv"
    path.write_text("\n\n", encoding="utf-8")

    with pytest.raises(IngestError):
        DelimitedReader().read(path, sink)


def test_missing_file(tmp_path, sink):
    with pytest.raises(FileNotFoundError):
        DelimitedReader().read(tmp_path / "nope.csv", sink)


def test_unterminated_quote_does_not_swallow_following_rows(tmp_path, sink):
    path = tmp_path / "broken.csv"
    path.write_text('a,b\n1,"C:\\x\n2,y\n3,z\n4,w\n', encoding="utf-8")

    DelimitedReader().read(path, sink)
    assert sink.rows == [["1", "C:\\x"], ["2", "y"], ["3", "z"], ["4", "w"]]


def test_quoted_span_is_bounded(tmp_path, sink):
    path = tmp_path / "broken.csv"
    path.write_text('a,b\n1,"open\n2,y\n3,z\n4,"ok"\n', encoding="utf-8")

    DelimitedReader(EngineConfig(max_quoted_lines=2)).read(path, sink)
    assert sink.rows == [["1", "open"], ["2", "y"], ["3", "z"], ["4", "ok"]]


def test_embedded_newline_within_span_limit(tmp_path, sink):
    path = tmp_path / "multi.csv"
    path.write_text('a,b\n1,"x\ny"\n2,z\n', encoding="utf-8")

    DelimitedReader(EngineConfig(max_quoted_lines=2)).read(path, sink)
    assert sink.rows == [["1", "x\ny"], ["2", "z"]]
