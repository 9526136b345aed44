import logging
import re
import sqlite3
import statistics
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import EngineConfig
from ..inference.timestamp_detector import format_minute_key, parse_minute_key
from ..search.predicates import Empty, Equals, In, Like, Or, Regex
from ..search.query_engine import FilterSpec
from .host_analysis import (
    EVENT_LOG_COLUMNS,
    FIELD_ROLE_PREFIX,
    LATERAL_COLUMNS,
    LOGON_EVENT_IDS,
    PAYLOAD_ROLES,
    PROCESS_COLUMNS,
    REGISTRY_COLUMNS,
    LateralMovementResult,
    PersistenceResult,
    ProcessTreeResult,
    build_lateral_graph,
    build_process_tree,
    scan_event_rows,
    scan_registry_rows,
    score_items,
    summarize_items,
)
from .persistence_rules import event_rule_ids

logger = logging.getLogger(__name__)


DAY_GLOB = "[0-9][0-9][0-9][0-9]-[0-9][0-9]-[0-9][0-9]"
HOUR_GLOB = DAY_GLOB + " [0-9][0-9]"


@dataclass
class HistogramBucket:
    bucket: str
    count: int


@dataclass
class HistogramResult:
    buckets: List[HistogramBucket] = field(default_factory=list)
    granularity: str = "day"
    error: Optional[str] = None


@dataclass
class ActivitySession:
    idx: int
    start: str
    end: str
    event_count: int
    duration_minutes: int


@dataclass
class Gap:
    start: str
    end: str
    duration_minutes: int


@dataclass
class GapAnalysis:
    gaps: List[Gap] = field(default_factory=list)
    sessions: List[ActivitySession] = field(default_factory=list)
    total_events: int = 0
    error: Optional[str] = None


@dataclass
class BurstWindow:
    start: str
    count: int
    is_burst: bool


@dataclass
class Burst:
    start: str
    end: str
    event_count: int
    peak_rate: int
    burst_factor: float
    window_count: int
    duration_minutes: int


@dataclass
class BurstAnalysis:
    bursts: List[Burst] = field(default_factory=list)
    windows: List[BurstWindow] = field(default_factory=list)
    baseline: float = 0.0
    threshold: float = 0.0
    window_minutes: int = 5
    total_events: int = 0
    total_windows: int = 0
    peak_rate: int = 0
    error: Optional[str] = None


@dataclass
class SourceCoverage:
    source: str
    count: int
    earliest: Optional[str]
    latest: Optional[str]


@dataclass
class CoverageResult:
    sources: List[SourceCoverage] = field(default_factory=list)
    global_earliest: Optional[str] = None
    global_latest: Optional[str] = None
    total_events: int = 0
    total_sources: int = 0
    error: Optional[str] = None


@dataclass
class StackedValue:
    value: str
    count: int
    percent: float


@dataclass
class StackingResult:
    values: List[StackedValue] = field(default_factory=list)
    total_rows: int = 0
    total_unique: int = 0
    truncated: bool = False
    error: Optional[str] = None


@dataclass
class IocMatchResult:
    matched_row_keys: List[int] = field(default_factory=list)
    per_ioc_counts: Dict[str, int] = field(default_factory=dict)
    invalid_patterns: List[str] = field(default_factory=list)
    error: Optional[str] = None


def _minutes_between(start: str, end: str) -> int:
    return round((parse_minute_key(end) - parse_minute_key(start)).total_seconds() / 60)


def find_gaps(buckets: Sequence[Tuple[str, int]], threshold_minutes) -> GapAnalysis:
    """
    Split ordered ``(minute, count)`` buckets into activity sessions wherever two
    consecutive non-empty minutes are more than ``threshold_minutes`` apart.
    """
    if not buckets:
        return GapAnalysis()

    total_events = sum(count for _, count in buckets)
    gaps = []
    sessions = []
    session_start = 0
    session_events = buckets[0][1]

    def close_session(last):
        sessions.append(
            ActivitySession(
                idx=len(sessions) + 1,
                start=buckets[session_start][0],
                end=buckets[last][0],
                event_count=session_events,
                duration_minutes=_minutes_between(buckets[session_start][0], buckets[last][0]),
            )
        )

    for i in range(1, len(buckets)):
        previous, current = buckets[i - 1][0], buckets[i][0]
        gap_minutes = _minutes_between(previous, current)
        if gap_minutes > threshold_minutes:
            close_session(i - 1)
            gaps.append(Gap(start=previous, end=current, duration_minutes=gap_minutes))
            session_start = i
            session_events = buckets[i][1]
        else:
            session_events += buckets[i][1]

    close_session(len(buckets) - 1)
    return GapAnalysis(gaps=gaps, sessions=sessions, total_events=total_events)


def detect_bursts(
    buckets: Sequence[Tuple[str, int]], window_minutes=5, multiplier=5.0
) -> BurstAnalysis:
    """
    Aggregate ``(minute, count)`` buckets into windows anchored at the first
    minute and flag windows above ``median × multiplier``.

    Only windows holding events take part; flagged windows merge into one
    burst while their window positions are adjacent.
    """
    if not buckets:
        return BurstAnalysis(window_minutes=window_minutes)

    first = parse_minute_key(buckets[0][0])
    counts: Dict[int, int] = {}
    for key, count in buckets:
        elapsed = (parse_minute_key(key) - first).total_seconds() // 60
        position = int(elapsed // window_minutes)
        counts[position] = counts.get(position, 0) + count

    positions = sorted(counts)
    window_counts = [counts[p] for p in positions]
    baseline = statistics.median(window_counts) or 1
    threshold = baseline * multiplier

    def window_start(position):
        return first + timedelta(minutes=position * window_minutes)

    windows = [
        BurstWindow(
            start=format_minute_key(window_start(p)),
            count=counts[p],
            is_burst=counts[p] > threshold,
        )
        for p in positions
    ]

    bursts = []
    i = 0
    while i < len(positions):
        if not windows[i].is_burst:
            i += 1
            continue
        start = i
        while (
            i + 1 < len(positions)
            and windows[i + 1].is_burst
            and positions[i + 1] == positions[i] + 1
        ):
            i += 1
        run = windows[start : i + 1]
        events = sum(w.count for w in run)
        bursts.append(
            Burst(
                start=run[0].start,
                end=format_minute_key(window_start(positions[i] + 1)),
                event_count=events,
                peak_rate=max(w.count for w in run),
                burst_factor=round(events / (len(run) * baseline), 1),
                window_count=len(run),
                duration_minutes=len(run) * window_minutes,
            )
        )
        i += 1

    return BurstAnalysis(
        bursts=bursts,
        windows=windows,
        baseline=round(baseline, 1),
        threshold=round(threshold, 1),
        window_minutes=window_minutes,
        total_events=sum(window_counts),
        total_windows=len(windows),
        peak_rate=max(window_counts),
    )


class TimelineAnalyzer:
    """
    Read-only timeline analytics over one session.

    Each method applies the full filter set of a ``FilterSpec`` and never raises
    for query-time failures; the result carries an ``error`` message instead.
    """

    def __init__(self, engine, config: Optional[EngineConfig] = None):
        self.engine = engine
        self.store = engine.store
        self.config = config or EngineConfig()

    @property
    def conn(self):
        return self.store.conn

    def _predicate(self, spec, column=None, extra=()):
        clauses = list(extra)
        if column is not None:
            clauses.insert(0, Empty(column.ident, negate=True))
        return self.engine.build_predicate(spec or FilterSpec(), extra=clauses)

    def _minute_buckets(self, column, spec):
        predicate = self._predicate(spec, column)
        return [
            (bucket, count)
            for bucket, count in self.conn.execute(
                f"SELECT minute_bucket({column.ident}) AS mb, COUNT(*) AS cnt FROM data "
                f"{predicate.where} GROUP BY mb HAVING mb IS NOT NULL ORDER BY mb",
                predicate.params,
            )
        ]

    def histogram(self, column_name, spec: Optional[FilterSpec] = None, granularity="day"):
        if granularity not in ("day", "hour"):
            return HistogramResult(granularity=granularity, error=f"Unknown granularity: {granularity}")
        column = self.store.resolve(column_name)
        if column is None:
            return HistogramResult(granularity=granularity)

        if granularity == "hour":
            bucket_sql = f"replace(substr({column.ident}, 1, 13), 'T', ' ')"
            glob = HOUR_GLOB
        else:
            bucket_sql = f"substr({column.ident}, 1, 10)"
            glob = DAY_GLOB
        try:
            predicate = self._predicate(spec, column)
            rows = self.conn.execute(
                f"SELECT {bucket_sql} AS bucket, COUNT(*) AS cnt FROM data "
                f"{predicate.where} GROUP BY bucket HAVING bucket GLOB ? ORDER BY bucket",
                predicate.params + (glob,),
            ).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Histogram failed for '{column_name}': {e}")
            return HistogramResult(granularity=granularity, error=str(e))
        return HistogramResult(
            buckets=[HistogramBucket(bucket, count) for bucket, count in rows],
            granularity=granularity,
        )

    def gap_analysis(self, column_name, threshold_minutes=60, spec: Optional[FilterSpec] = None):
        if threshold_minutes is None or threshold_minutes < 0:
            return GapAnalysis(error="threshold_minutes must not be negative")
        column = self.store.resolve(column_name)
        if column is None:
            return GapAnalysis()
        try:
            buckets = self._minute_buckets(column, spec)
            return find_gaps(buckets, threshold_minutes)
        except (sqlite3.Error, ValueError) as e:
            logger.warning(f"Gap analysis failed for '{column_name}': {e}")
            return GapAnalysis(error=str(e))

    def burst_analysis(
        self,
        column_name,
        window_minutes=5,
        multiplier=5.0,
        spec: Optional[FilterSpec] = None,
    ):
        if not window_minutes or window_minutes < 1 or multiplier is None or multiplier <= 0:
            return BurstAnalysis(
                window_minutes=window_minutes or 0,
                error="window_minutes must be >= 1 and multiplier > 0",
            )
        column = self.store.resolve(column_name)
        if column is None:
            return BurstAnalysis(window_minutes=window_minutes)
        try:
            buckets = self._minute_buckets(column, spec)
            return detect_bursts(buckets, int(window_minutes), multiplier)
        except (sqlite3.Error, ValueError) as e:
            logger.warning(f"Burst analysis failed for '{column_name}': {e}")
            return BurstAnalysis(window_minutes=window_minutes, error=str(e))

    def source_coverage(self, source_name, timestamp_name, spec: Optional[FilterSpec] = None):
        source = self.store.resolve(source_name)
        timestamp = self.store.resolve(timestamp_name)
        if source is None or timestamp is None:
            return CoverageResult()
        try:
            predicate = self._predicate(spec, timestamp)
            rows = self.conn.execute(
                f"SELECT {source.ident} AS src, COUNT(*) AS cnt, "
                f"MIN({timestamp.ident}), MAX({timestamp.ident}) FROM data "
                f"{predicate.where} GROUP BY src ORDER BY cnt DESC, src ASC",
                predicate.params,
            ).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Source coverage failed: {e}")
            return CoverageResult(error=str(e))

        sources = [
            SourceCoverage(source="" if src is None else src, count=cnt, earliest=low, latest=high)
            for src, cnt, low, high in rows
        ]
        earliest = [s.earliest for s in sources if s.earliest]
        latest = [s.latest for s in sources if s.latest]
        return CoverageResult(
            sources=sources,
            global_earliest=min(earliest) if earliest else None,
            global_latest=max(latest) if latest else None,
            total_events=sum(s.count for s in sources),
            total_sources=len(sources),
        )

    def value_stacking(
        self,
        column_name,
        spec: Optional[FilterSpec] = None,
        sort_by="count",
        filter_text="",
    ):
        column = self.store.resolve(column_name)
        if column is None:
            return StackingResult()

        extra = [Like(column.ident, f"%{filter_text}%")] if filter_text.strip() else []
        order = "val ASC" if sort_by == "value" else "cnt DESC, val ASC"
        limit = self.config.stacking_max_values
        try:
            predicate = self._predicate(spec, extra=extra)
            total_rows, total_unique = self.conn.execute(
                f"SELECT COUNT(*), COUNT(DISTINCT {column.ident}) FROM data {predicate.where}",
                predicate.params,
            ).fetchone()
            rows = self.conn.execute(
                f"SELECT {column.ident} AS val, COUNT(*) AS cnt FROM data {predicate.where} "
                f"GROUP BY val ORDER BY {order} LIMIT ?",
                predicate.params + (limit,),
            ).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Value stacking failed for '{column_name}': {e}")
            return StackingResult(error=str(e))

        values = [
            StackedValue(
                value="" if value is None else value,
                count=count,
                percent=round(count / total_rows * 100, 2) if total_rows else 0.0,
            )
            for value, count in rows
        ]
        return StackingResult(
            values=values,
            total_rows=total_rows,
            total_unique=total_unique,
            truncated=total_unique > limit,
        )

    def match_iocs(self, patterns, spec: Optional[FilterSpec] = None):
        """
        Count the rows hit by each indicator regex.

        Valid indicators are scanned in batches joined with ``|`` to collect the
        union of matching rows; each indicator is then re-tested only against
        that subset.
        """
        patterns = [p for p in dict.fromkeys(patterns or []) if p]
        counts = {p: 0 for p in patterns}
        valid = []
        invalid = []
        for pattern in patterns:
            try:
                valid.append((pattern, re.compile(pattern, re.IGNORECASE)))
            except re.error:
                invalid.append(pattern)
        if not valid:
            return IocMatchResult(per_ioc_counts=counts, invalid_patterns=invalid)

        idents = self.store.idents
        batch_size = self.config.ioc_batch_size
        matched = set()
        try:
            for start in range(0, len(valid), batch_size):
                batch = [p for p, _ in valid[start : start + batch_size]]
                alternation = "|".join(batch)
                try:
                    re.compile(alternation)
                    scans = [alternation]
                except re.error:
                    # Inline flags only compile at the start of a pattern
                    scans = batch
                for scan in scans:
                    predicate = self._predicate(
                        spec, extra=[Or([Regex(c, scan) for c in idents])]
                    )
                    matched.update(
                        r[0]
                        for r in self.conn.execute(
                            f"SELECT data.rowid FROM data {predicate.where}",
                            predicate.params,
                        )
                    )

            row_keys = sorted(matched)
            select = ", ".join(idents)
            for start in range(0, len(row_keys), 500):
                chunk = row_keys[start : start + 500]
                placeholders = ",".join("?" * len(chunk))
                for record in self.conn.execute(
                    f"SELECT {select} FROM data WHERE rowid IN ({placeholders})", chunk
                ):
                    values = [v for v in record if v]
                    for pattern, compiled in valid:
                        if any(compiled.search(v) for v in values):
                            counts[pattern] += 1
        except sqlite3.Error as e:
            logger.warning(f"IOC matching failed: {e}")
            return IocMatchResult(
                per_ioc_counts={p: 0 for p in patterns},
                invalid_patterns=invalid,
                error=str(e),
            )

        logger.info(f"IOC scan: {len(row_keys)} rows matched {len(valid)} indicators")
        return IocMatchResult(
            matched_row_keys=row_keys,
            per_ioc_counts=counts,
            invalid_patterns=invalid,
        )

    # Host activity

    def _detect_columns(self, candidates, overrides=None):
        """
        Map each role to a column: an explicit override by exact name, else the
        first candidate name present, compared case-insensitively.
        """
        overrides = overrides or {}
        found = {}
        for role, names in candidates.items():
            if overrides.get(role):
                column = self.store.resolve(overrides[role])
            else:
                column = next(
                    (c for c in map(self.store.resolve_casefold, names) if c is not None), None
                )
            if column is not None:
                found[role] = column
        return found

    def _fetch_roles(self, found, spec, extra, max_rows):
        """Rows under the active filters as ``(row_key, {role: text})``, oldest first."""
        roles = list(found)
        select = ", ".join(["data.rowid"] + [found[r].ident for r in roles])
        ts = found.get("ts")
        order = f"ORDER BY {ts.ident}, data.rowid" if ts is not None else "ORDER BY data.rowid"
        predicate = self._predicate(spec, extra=extra)
        cursor = self.conn.execute(
            f"SELECT {select} FROM data {predicate.where} {order} LIMIT ?",
            predicate.params + (max_rows,),
        )
        return [
            (record[0], {r: "" if v is None else str(v) for r, v in zip(roles, record[1:])})
            for record in cursor
        ]

    @staticmethod
    def _event_id_clause(column, event_ids):
        if isinstance(event_ids, str):
            event_ids = event_ids.split(",")
        wanted = tuple(dict.fromkeys(str(e).strip() for e in event_ids or () if str(e).strip()))
        if not wanted:
            return []
        if len(wanted) == 1:
            return [Equals(column.ident, wanted[0])]
        return [In(column.ident, wanted)]

    def process_tree(
        self,
        spec: Optional[FilterSpec] = None,
        columns: Optional[Dict[str, str]] = None,
        event_ids="1",
        max_rows=200000,
    ):
        """
        Rebuild parent/child process relationships from process creation events
        (Sysmon 1, Security 4688).

        ``event_ids`` is a comma-separated string or a sequence; it only applies
        when an event id column is present.
        """
        found = self._detect_columns(PROCESS_COLUMNS, columns)
        names = {role: c.name for role, c in found.items()}
        if "pid" not in found and "guid" not in found:
            return ProcessTreeResult(columns=names, error="Cannot detect ProcessId or ProcessGuid column")
        if "ppid" not in found and "parent_guid" not in found:
            return ProcessTreeResult(
                columns=names, error="Cannot detect ParentProcessId or ParentProcessGuid column"
            )

        extra = []
        if "event_id" in found:
            extra = self._event_id_clause(found["event_id"], event_ids)
        use_guid = "guid" in found and "parent_guid" in found
        try:
            rows = self._fetch_roles(found, spec, extra, max_rows)
        except (sqlite3.Error, ValueError) as e:
            logger.warning(f"Process tree failed: {e}")
            return ProcessTreeResult(columns=names, use_guid=use_guid, error=str(e))

        processes = build_process_tree(rows, use_guid)
        keys = {p.key for p in processes}
        roots = sum(1 for p in processes if p.parent_key not in keys)
        logger.debug(f"Process tree: {len(processes)} processes, {roots} roots")
        return ProcessTreeResult(
            processes=processes,
            columns=names,
            use_guid=use_guid,
            total_processes=len(processes),
            root_count=roots,
            max_depth=max((p.depth for p in processes), default=0),
            truncated=len(rows) >= max_rows,
        )

    def lateral_movement(
        self,
        spec: Optional[FilterSpec] = None,
        columns: Optional[Dict[str, str]] = None,
        event_ids=LOGON_EVENT_IDS,
        exclude_local=True,
        exclude_service_accounts=True,
        max_rows=500000,
    ):
        """Host-to-host logon graph with time-ordered multi-hop chains."""
        found = self._detect_columns(LATERAL_COLUMNS, columns)
        names = {role: c.name for role, c in found.items()}
        if "source" not in found and "workstation" not in found:
            return LateralMovementResult(
                columns=names,
                error="Cannot detect source host column (IpAddress, WorkstationName, or RemoteHost)",
            )
        if "target" not in found:
            return LateralMovementResult(
                columns=names, error="Cannot detect target host column (Computer)"
            )

        extra = []
        if "event_id" in found:
            extra = self._event_id_clause(found["event_id"], event_ids)
        try:
            rows = self._fetch_roles(found, spec, extra, max_rows)
        except (sqlite3.Error, ValueError) as e:
            logger.warning(f"Lateral movement analysis failed: {e}")
            return LateralMovementResult(columns=names, error=str(e))

        result = build_lateral_graph(rows, exclude_local, exclude_service_accounts)
        result.columns = names
        result.truncated = len(rows) >= max_rows
        logger.debug(
            f"Lateral movement: {len(result.nodes)} hosts, {len(result.edges)} edges, "
            f"{len(result.chains)} chains"
        )
        return result

    def persistence_analysis(
        self,
        spec: Optional[FilterSpec] = None,
        mode="auto",
        columns: Optional[Dict[str, str]] = None,
        max_rows=500000,
    ):
        """
        Flag persistence mechanisms in event log exports (services, scheduled
        tasks, WMI subscriptions, autorun registry writes, account changes) or
        in registry exports (autorun keys and values).

        ``mode`` is ``"evtx"``, ``"registry"`` or ``"auto"``: registry when key
        path and value name columns exist, else evtx when an event id column does.
        """
        if mode == "auto":
            registry = self._detect_columns(
                {k: REGISTRY_COLUMNS[k] for k in ("key_path", "value_name")}, columns
            )
            if len(registry) == 2:
                mode = "registry"
            elif self._detect_columns({"event_id": EVENT_LOG_COLUMNS["event_id"]}, columns):
                mode = "evtx"
            else:
                return PersistenceResult(
                    error="Cannot detect data type. Need EventID column (EVTX) "
                    "or KeyPath column (Registry)."
                )
        if mode not in ("evtx", "registry"):
            return PersistenceResult(error=f"Unknown persistence mode: {mode}")

        found = self._detect_columns(
            EVENT_LOG_COLUMNS if mode == "evtx" else REGISTRY_COLUMNS, columns
        )
        names = {role: c.name for role, c in found.items()}
        required = "event_id" if mode == "evtx" else "key_path"
        if required not in found:
            return PersistenceResult(
                mode=mode, columns=names, error=f"Cannot detect {required} column"
            )

        extra = []
        if mode == "evtx":
            extra = [In(found["event_id"].ident, event_rule_ids())]
            if not any(role in found for role in PAYLOAD_ROLES):
                used = {c.ident for c in found.values()}
                for column in self.store.columns:
                    if column.ident not in used:
                        found[FIELD_ROLE_PREFIX + column.name] = column
        try:
            rows = self._fetch_roles(found, spec, extra, max_rows)
        except (sqlite3.Error, ValueError) as e:
            logger.warning(f"Persistence analysis failed: {e}")
            return PersistenceResult(mode=mode, columns=names, error=str(e))

        items = scan_event_rows(rows) if mode == "evtx" else scan_registry_rows(rows)
        items = score_items(items)
        by_category, by_severity = summarize_items(items)
        logger.info(f"Persistence analysis ({mode}): {len(items)} findings in {len(rows)} rows")
        return PersistenceResult(
            items=items,
            mode=mode,
            columns=names,
            by_category=by_category,
            by_severity=by_severity,
            suspicious=sum(1 for item in items if item.is_suspicious),
            truncated=len(rows) >= max_rows,
        )
