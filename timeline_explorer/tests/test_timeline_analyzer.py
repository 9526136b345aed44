import pytest

from timeline_explorer.config import EngineConfig
from timeline_explorer.search.query_engine import FilterSpec
from timeline_explorer.session.session_manager import Session
from timeline_explorer.stats.timeline_analyzer import (
    ActivitySession,
    Gap,
    HistogramBucket,
    StackedValue,
    detect_bursts,
    find_gaps,
)

ROWS = [
    ["2024-01-01 10:00:05", "sysmon", "1"],
    ["2024-01-01 10:00:40", "sysmon", "3"],
    ["2024-01-01T10:02:00Z", "security", "4624"],
    ["2024-01-01 13:00:00", "security", "4625"],
    ["2024-01-02 08:00:00", "prefetch", ""],
    ["", "prefetch", ""],
]


def _session(tmp_path, **config):
    session = Session("analytics", "analytics", EngineConfig(temp_dir=str(tmp_path), **config))
    session.create_store(["datetime", "Source", "EventID"])
    session.insert_batch(ROWS)
    session.finalize_import()
    return session


@pytest.fixture
def analyzer(tmp_path):
    session = _session(tmp_path)
    yield session.analyzer
    session.close()


def test_find_gaps_splits_sessions():
    buckets = [("2024-01-01 10:00", 2), ("2024-01-01 10:30", 1), ("2024-01-01 12:00", 3)]
    result = find_gaps(buckets, 60)
    assert result.total_events == 6
    assert result.gaps == [Gap("2024-01-01 10:30", "2024-01-01 12:00", 90)]
    assert result.sessions == [
        ActivitySession(1, "2024-01-01 10:00", "2024-01-01 10:30", 3, 30),
        ActivitySession(2, "2024-01-01 12:00", "2024-01-01 12:00", 3, 0),
    ]


def test_find_gaps_threshold_is_exclusive():
    buckets = [("2024-01-01 10:00", 1), ("2024-01-01 11:00", 1)]
    assert find_gaps(buckets, 60).gaps == []
    assert len(find_gaps(buckets, 59).gaps) == 1
    assert find_gaps([], 60).sessions == []


def test_detect_bursts_merges_adjacent_windows():
    buckets = [
        ("2024-01-01 10:00", 1),
        ("2024-01-01 10:05", 1),
        ("2024-01-01 10:10", 1),
        ("2024-01-01 10:15", 20),
        ("2024-01-01 10:21", 15),
        ("2024-01-01 10:30", 1),
    ]
    result = detect_bursts(buckets, window_minutes=5, multiplier=5.0)
    assert result.baseline == 1.0
    assert result.threshold == 5.0
    assert result.total_events == 39
    assert result.total_windows == 6
    assert result.peak_rate == 20
    assert [w.is_burst for w in result.windows] == [False, False, False, True, True, False]
    assert result.windows[4].start == "2024-01-01 10:20"

    assert len(result.bursts) == 1
    burst = result.bursts[0]
    assert burst.start == "2024-01-01 10:15"
    assert burst.end == "2024-01-01 10:25"
    assert burst.event_count == 35
    assert burst.peak_rate == 20
    assert burst.burst_factor == 17.5
    assert burst.window_count == 2
    assert burst.duration_minutes == 10


def test_detect_bursts_does_not_bridge_empty_windows():
    buckets = [
        ("2024-01-01 10:00", 1),
        ("2024-01-01 10:05", 1),
        ("2024-01-01 10:10", 1),
        ("2024-01-01 10:15", 10),
        ("2024-01-01 10:25", 10),
        ("2024-01-01 10:30", 1),
        ("2024-01-01 10:35", 1),
    ]
    result = detect_bursts(buckets, window_minutes=5, multiplier=5.0)
    assert [b.start for b in result.bursts] == ["2024-01-01 10:15", "2024-01-01 10:25"]


def test_histogram_by_day(analyzer):
    result = analyzer.histogram("datetime")
    assert result.error is None
    assert result.buckets == [HistogramBucket("2024-01-01", 4), HistogramBucket("2024-01-02", 1)]


def test_histogram_by_hour(analyzer):
    result = analyzer.histogram("datetime", granularity="hour")
    assert [(b.bucket, b.count) for b in result.buckets] == [
        ("2024-01-01 10", 3),
        ("2024-01-01 13", 1),
        ("2024-01-02 08", 1),
    ]


def test_histogram_respects_filters(analyzer):
    result = analyzer.histogram("datetime", FilterSpec(column_filters={"Source": "sysmon"}))
    assert result.buckets == [HistogramBucket("2024-01-01", 2)]


def test_histogram_errors(analyzer):
    assert analyzer.histogram("datetime", granularity="week").error
    assert analyzer.histogram("Nope").buckets == []


def test_gap_analysis(analyzer):
    result = analyzer.gap_analysis("datetime", threshold_minutes=60)
    assert result.total_events == 5
    assert [(g.start, g.end, g.duration_minutes) for g in result.gaps] == [
        ("2024-01-01 10:02", "2024-01-01 13:00", 178),
        ("2024-01-01 13:00", "2024-01-02 08:00", 1140),
    ]
    assert [(s.start, s.end, s.event_count) for s in result.sessions] == [
        ("2024-01-01 10:00", "2024-01-01 10:02", 3),
        ("2024-01-01 13:00", "2024-01-01 13:00", 1),
        ("2024-01-02 08:00", "2024-01-02 08:00", 1),
    ]
    assert analyzer.gap_analysis("datetime", threshold_minutes=-1).error


def test_burst_analysis(analyzer):
    result = analyzer.burst_analysis("datetime", window_minutes=5, multiplier=2.0)
    assert result.error is None
    assert [w.count for w in result.windows] == [3, 1, 1]
    assert result.baseline == 1.0
    assert [b.event_count for b in result.bursts] == [3]
    assert analyzer.burst_analysis("datetime", window_minutes=0).error


def test_source_coverage(analyzer):
    result = analyzer.source_coverage("Source", "datetime")
    assert [(s.source, s.count) for s in result.sources] == [
        ("security", 2),
        ("sysmon", 2),
        ("prefetch", 1),
    ]
    assert result.sources[1].earliest == "2024-01-01 10:00:05"
    assert result.sources[1].latest == "2024-01-01 10:00:40"
    assert result.global_earliest == "2024-01-01 10:00:05"
    assert result.global_latest == "2024-01-02 08:00:00"
    assert result.total_events == 5
    assert result.total_sources == 3


def test_value_stacking(analyzer):
    result = analyzer.value_stacking("Source")
    assert result.total_rows == 6
    assert result.total_unique == 3
    assert not result.truncated
    assert result.values == [
        StackedValue("prefetch", 2, 33.33),
        StackedValue("security", 2, 33.33),
        StackedValue("sysmon", 2, 33.33),
    ]

    filtered = analyzer.value_stacking("Source", filter_text="s")
    assert [(v.value, v.percent) for v in filtered.values] == [("security", 50.0), ("sysmon", 50.0)]


def test_value_stacking_sort_by_value(analyzer):
    result = analyzer.value_stacking("EventID", sort_by="value")
    assert [v.value for v in result.values] == ["", "1", "3", "4624", "4625"]


def test_value_stacking_truncates(tmp_path):
    session = _session(tmp_path, stacking_max_values=2)
    try:
        result = session.analyzer.value_stacking("Source")
        assert result.truncated
        assert len(result.values) == 2
    finally:
        session.close()


def test_match_iocs(analyzer):
    result = analyzer.match_iocs(["4624", "sys.*", "(bad", "4624", ""])
    assert result.error is None
    assert result.matched_row_keys == [1, 2, 3]
    assert result.per_ioc_counts == {"4624": 1, "sys.*": 2, "(bad": 0}
    assert result.invalid_patterns == ["(bad"]


def test_match_iocs_with_inline_flags(analyzer):
    result = analyzer.match_iocs(["(?i)SYSMON", "(?i)4625"])
    assert result.matched_row_keys == [1, 2, 4]
    assert result.per_ioc_counts == {"(?i)SYSMON": 2, "(?i)4625": 1}


def test_match_iocs_respects_filters(analyzer):
    result = analyzer.match_iocs(["4624"], FilterSpec(column_filters={"Source": "sysmon"}))
    assert result.matched_row_keys == []
    assert result.per_ioc_counts == {"4624": 0}


def test_match_iocs_without_valid_patterns(analyzer):
    result = analyzer.match_iocs(["[", "("])
    assert result.matched_row_keys == []
    assert result.invalid_patterns == ["[", "("]
