import csv

import pytest

from timeline_explorer.config import EngineConfig
from timeline_explorer.errors import QueryError
from timeline_explorer.search.query_engine import (
    ANY_TAG,
    ROW_KEY_FIELD,
    AdvancedFilter,
    CountCache,
    FilterSpec,
    QueryRequest,
)
from timeline_explorer.session.session_manager import Session

HEADERS = ["datetime", "EventID", "Message", "Computer", "Notes"]

ROWS = [
    ["2024-01-01 10:00:00", "4624", "Logon success user alice", "host1", ""],
    ["2024-01-01 10:05:00", "4625", "Logon failure user bob", "host1", ""],
    ["2024-01-01 11:00:00", "800", "pipeline started by powershell.exe", "host2", ""],
    ["2024-01-02 09:00:00", "4624", "Logon success user bob", "host2", ""],
    ["2024-01-02 09:30:00", "104", "audit log cleared", "", ""],
]


def _session(tmp_path, name, scan_only=False):
    session = Session(name * 4, name, EngineConfig(temp_dir=str(tmp_path)))
    if scan_only:
        session.indexes._fts_unavailable = True
    session.create_store(HEADERS)
    session.insert_batch(ROWS)
    session.finalize_import()
    return session


@pytest.fixture
def session(tmp_path):
    s = _session(tmp_path, "indexed")
    yield s
    s.close()


@pytest.fixture
def scan_session(tmp_path):
    s = _session(tmp_path, "scanning", scan_only=True)
    yield s
    s.close()


def _keys(session, **kwargs):
    result = session.engine.query_rows(QueryRequest(**kwargs))
    assert result.error is None
    return [row[ROW_KEY_FIELD] for row in result.rows]


def test_unfiltered_query(session):
    result = session.engine.query_rows(QueryRequest())
    assert result.total_rows == 5
    assert result.total_filtered == 5
    assert [r[ROW_KEY_FIELD] for r in result.rows] == [1, 2, 3, 4, 5]
    assert result.rows[2]["Message"] == "pipeline started by powershell.exe"


def test_paging(session):
    result = session.engine.query_rows(QueryRequest(offset=1, limit=2))
    assert [r[ROW_KEY_FIELD] for r in result.rows] == [2, 3]
    assert result.total_filtered == 5


@pytest.mark.parametrize(
    "term,mode,expected",
    [
        ("logon -failure", "mixed", [1, 4]),
        ("logon bob", "mixed", [2, 4]),
        ("-failure", "mixed", [1, 3, 4, 5]),
        ('"user bob"', "mixed", [2, 4]),
        ("EventID:4624 bob", "mixed", [4]),
        ("alice powershell", "or", [1, 3]),
        ("logon bob", "and", [2, 4]),
        ("user bob", "exact", [2, 4]),
        ("logon -", "mixed", [1, 2, 4]),
        ("alice .", "or", [1, 3]),
        (".", "exact", [3]),
    ],
)
def test_search_modes(session, scan_session, term, mode, expected):
    assert _keys(session, search_term=term, search_mode=mode) == expected
    assert _keys(scan_session, search_term=term, search_mode=mode) == expected


def test_search_index_is_built_on_first_search(session):
    assert not session.indexes.search_ready
    session.engine.search_count("logon")
    assert session.indexes.search_ready


@pytest.mark.parametrize(
    "term,mode,condition,expected",
    [
        ("Logon", "mixed", "startswith", [1, 2, 4]),
        ("host2", "mixed", "equals", [3, 4]),
        ("%success%", "mixed", "like", [1, 4]),
        ("^pipeline", "regex", "contains", [3]),
        ("(unclosed", "regex", "contains", []),
        ("powershel", "fuzzy", "contains", [3]),
        ("alicee", "mixed", "fuzzy", [1]),
    ],
)
def test_search_conditions(session, term, mode, condition, expected):
    assert _keys(session, search_term=term, search_mode=mode, search_condition=condition) == expected


def test_column_filter(session):
    assert _keys(session, column_filters={"Computer": "HOST1"}) == [1, 2]
    assert _keys(session, column_filters={"Missing": "x"}) == [1, 2, 3, 4, 5]


def test_checkbox_filter(session):
    assert _keys(session, checkbox_filters={"Computer": ["host2", ""]}) == [3, 4, 5]
    assert _keys(session, checkbox_filters={"Computer": ["host1"]}) == [1, 2]
    assert _keys(session, checkbox_filters={"Computer": []}) == [1, 2, 3, 4, 5]


def test_date_range_filter(session):
    spec = {"datetime": {"from": "2024-01-01 10:05:00", "to": "2024-01-01 23:59:59"}}
    assert _keys(session, date_range_filters=spec) == [2, 3]


def test_advanced_filters_group_on_or(session):
    filters = [
        {"column": "EventID", "operator": "greater_than", "value": "4600"},
        {"column": "Computer", "operator": "equals", "value": "host1", "logic": "AND"},
        {"column": "EventID", "operator": "equals", "value": "104", "logic": "OR"},
        {"column": "Message", "operator": "contains", "value": "", "logic": "AND"},
    ]
    assert _keys(session, advanced_filters=filters) == [1, 2, 5]


def test_advanced_filter_operators(session):
    def run(operator, value=""):
        return _keys(
            session, advanced_filters=[{"column": "Computer", "operator": operator, "value": value}]
        )

    assert run("is_empty") == [5]
    assert run("is_not_empty") == [1, 2, 3, 4]
    assert run("not_equals", "host1") == [3, 4, 5]
    assert run("starts_with", "host") == [1, 2, 3, 4]
    assert run("ends_with", "2") == [3, 4]
    assert run("not_contains", "1") == [3, 4, 5]
    assert run("regex", "^HOST2$") == [3, 4]


def test_advanced_filter_completeness():
    assert not AdvancedFilter("EventID", "equals", "").is_complete
    assert AdvancedFilter("EventID", "is_empty").is_complete
    assert not AdvancedFilter("", "equals", "x").is_complete


def test_filter_spec_validation():
    with pytest.raises(QueryError):
        FilterSpec(search_mode="telepathy")
    with pytest.raises(QueryError):
        FilterSpec(search_condition="near")
    with pytest.raises(QueryError):
        FilterSpec.from_dict({"advancedFilters": [{"column": "a", "operator": "between"}]})
    with pytest.raises(QueryError):
        QueryRequest(limit=-1)
    with pytest.raises(QueryError):
        QueryRequest(sort_direction="sideways")


def test_request_from_camel_case():
    request = QueryRequest.from_dict(
        {"searchTerm": "x", "sortColumn": "EventID", "sortDirection": "DESC", "limit": "10", "bogus": 1}
    )
    assert request.search_term == "x"
    assert request.sort_column == "EventID"
    assert request.sort_direction == "desc"
    assert request.limit == 10


def test_numeric_sort(session):
    assert _keys(session, sort_column="EventID", sort_direction="desc") == [2, 1, 4, 3, 5]
    assert _keys(session, sort_column="EventID") == [5, 3, 1, 4, 2]
    assert "c1" in session.indexes.sort_indexed


def test_text_sort_is_case_insensitive(session):
    assert _keys(session, sort_column="Message") == [5, 2, 1, 4, 3]


def test_timestamp_sort(session):
    assert _keys(session, sort_column="datetime", sort_direction="desc") == [5, 4, 3, 2, 1]


def test_unknown_sort_column_uses_row_order(session):
    assert _keys(session, sort_column="Nope", sort_direction="desc") == [1, 2, 3, 4, 5]


def test_bookmarks_and_tags_in_results(session):
    session.annotations.set_bookmarks([2])
    session.annotations.add_tags([(2, "brute force"), (4, "lateral")])

    result = session.engine.query_rows(QueryRequest())
    assert result.bookmarked_row_keys == [2]
    assert result.tags_by_row_key == {2: ["brute force"], 4: ["lateral"]}

    assert _keys(session, bookmarked_only=True) == [2]
    assert _keys(session, tag_filter=ANY_TAG) == [2, 4]
    assert _keys(session, tag_filter="lateral") == [4]
    assert _keys(session, tag_filter=["lateral", "brute force"]) == [2, 4]


def test_count_cache_is_invalidated_by_annotations(session):
    spec = FilterSpec(bookmarked_only=True)
    assert session.engine.count_rows(spec) == 0
    assert len(session.count_cache) == 1
    session.annotations.set_bookmarks([1, 3])
    assert len(session.count_cache) == 0
    assert session.engine.count_rows(spec) == 2


def test_count_cache_evicts_oldest():
    cache = CountCache(max_size=2)
    cache.put("a", 1)
    cache.put("b", 2)
    cache.get("a")
    cache.put("c", 3)
    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3


def test_column_unique_values_ignore_own_checkbox(session):
    spec = FilterSpec(checkbox_filters={"Computer": ["host1"]})
    assert session.engine.column_unique_values("Computer", spec) == [
        ("host1", 2),
        ("host2", 2),
        ("", 1),
    ]
    assert session.engine.column_unique_values("EventID", spec) == [("4624", 1), ("4625", 1)]


def test_group_values_with_parents(session):
    assert session.engine.group_values("Computer", parents={"EventID": "4624"}) == [
        ("host1", 1),
        ("host2", 1),
    ]
    assert session.engine.group_values("EventID", parents={"Computer": ""}) == [("104", 1)]


def test_column_stats(session):
    stats = session.engine.column_stats("Computer")
    assert stats["totalRows"] == 5
    assert stats["nonEmptyCount"] == 4
    assert stats["emptyCount"] == 1
    assert stats["uniqueCount"] == 2
    assert stats["fillRate"] == 80.0
    assert stats["topValues"] == [
        {"value": "host1", "count": 2, "percent": 50.0},
        {"value": "host2", "count": 2, "percent": 50.0},
    ]

    numeric = session.engine.column_stats("EventID")
    assert numeric["min"] == 104.0
    assert numeric["max"] == 4625.0
    assert session.engine.column_stats("Nope")["totalRows"] == 0


def test_empty_columns(session):
    assert session.engine.empty_columns() == ["Notes"]


def test_export_csv(session, tmp_path):
    out = tmp_path / "export.csv"
    request = QueryRequest(column_filters={"Computer": "host"}, sort_column="datetime", sort_direction="desc")
    assert session.engine.export_csv(request, out, columns=["datetime", "Computer", "Nope"]) == 4

    with open(out, newline="", encoding="utf-8") as f:
        rows = list(csv.reader(f))
    assert rows[0] == ["datetime", "Computer"]
    assert rows[1] == ["2024-01-02 09:00:00", "host2"]
    assert len(rows) == 5


def test_filter_spec_rejects_malformed_shapes():
    with pytest.raises(QueryError):
        FilterSpec(date_range_filters={"datetime": "2024"})
    with pytest.raises(QueryError):
        FilterSpec(checkbox_filters={"Computer": "host1"})
    with pytest.raises(QueryError):
        FilterSpec.from_dict({"tagFilter": 7})
    assert FilterSpec(checkbox_filters={"Computer": ("host1",)}).checkbox_filters


def test_tag_named_any_is_an_ordinary_tag(session):
    session.annotations.add_tags([(1, "any"), (3, "other")])
    assert _keys(session, tag_filter="any") == [1]
    assert _keys(session, tag_filter=ANY_TAG) == [1, 3]


def test_checkbox_selecting_every_value_equals_no_filter(session):
    for name in ("Computer", "EventID", "Notes"):
        values = [value for value, _ in session.engine.column_unique_values(name)]
        assert _keys(session, checkbox_filters={name: values}) == [1, 2, 3, 4, 5]


@pytest.mark.parametrize("scan_only", [False, True])
def test_filtered_total_matches_count_after_annotation_change(tmp_path, scan_only):
    session = _session(tmp_path, "counted", scan_only=scan_only)
    try:
        spec = dict(search_term="logon", bookmarked_only=True)
        assert session.engine.query_rows(QueryRequest(**spec)).total_filtered == 0

        session.annotations.set_bookmarks([1, 2, 3])
        total = session.engine.query_rows(QueryRequest(**spec)).total_filtered
        assert total == session.engine.count_rows(FilterSpec(**spec)) == 2

        tagged = dict(search_term="logon", tag_filter="suspicious")
        session.annotations.add_tags([(2, "suspicious"), (4, "suspicious")])
        total = session.engine.query_rows(QueryRequest(**tagged)).total_filtered
        assert total == session.engine.count_rows(FilterSpec(**tagged)) == 2

        session.annotations.remove_tag(4, "suspicious")
        total = session.engine.query_rows(QueryRequest(**tagged)).total_filtered
        assert total == session.engine.count_rows(FilterSpec(**tagged)) == 1
    finally:
        session.close()
