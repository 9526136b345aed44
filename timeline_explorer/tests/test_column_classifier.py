import pytest

from timeline_explorer.inference.column_classifier import ColumnClassifier, dedupe_headers


@pytest.mark.parametrize(
    "name,expected",
    [
        ("datetime", True),
        ("TimeCreated", True),
        ("Last Modified", True),
        ("date_added", True),
        ("EventID", False),
        ("Computer", False),
        ("", False),
    ],
)
def test_is_timestamp_name(name, expected):
    assert ColumnClassifier.is_timestamp_name(name) is expected


@pytest.mark.parametrize(
    "value,expected",
    [
        ("42", True),
        ("-3.5", True),
        (".5", True),
        ("1e10", True),
        (" 7 ", True),
        ("nan", False),
        ("inf", False),
        ("1_000", False),
        ("0x1F", False),
        ("", False),
        (None, False),
    ],
)
def test_looks_numeric(value, expected):
    assert ColumnClassifier.looks_numeric(value) is expected


def test_numeric_columns_threshold():
    rows = [
        ["1", "a", "", "10"],
        ["2", "b", "", "11"],
        ["3", "c", "", "x"],
        ["4", "d", "", "12"],
        ["5", "e", "", "13"],
    ]
    numeric = ColumnClassifier.numeric_columns(rows, range(4), threshold=0.8)
    # Column 3 is exactly 80% numeric, which does not exceed the threshold
    assert numeric == {0}


def test_numeric_columns_ignores_blanks():
    rows = [["1"], [""], ["2"], [None]]
    assert ColumnClassifier.numeric_columns(rows, [0]) == {0}


def test_numeric_columns_only_checks_candidates():
    rows = [["1", "2"], ["3", "4"]]
    assert ColumnClassifier.numeric_columns(rows, [1]) == {1}


def test_dedupe_headers_suffixes_repeats():
    assert dedupe_headers(["A", "B", "A", "A"]) == ["A", "B", "A_1", "A_2"]


def test_dedupe_headers_skips_taken_suffix():
    assert dedupe_headers(["A", "A_1", "A"]) == ["A", "A_1", "A_2"]


def test_dedupe_headers_blank_names():
    assert dedupe_headers([" x ", "", None]) == ["x", "Column", "Column_1"]
    assert dedupe_headers(["", "b", ""], blank_name=lambda i: f"Column_{i + 1}") == [
        "Column_1",
        "b",
        "Column_3",
    ]
