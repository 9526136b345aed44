import argparse
import json
import logging
import sys
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import List, Optional

from .config import EngineConfig
from .errors import TimelineError
from .search.query_engine import FilterSpec, QueryRequest
from .search.search_compiler import SEARCH_CONDITIONS, SEARCH_MODES
from .session.session_manager import SessionManager

logger = logging.getLogger(__name__)


def _emit(value):
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    elif is_dataclass(value):
        value = asdict(value)
    print(json.dumps(value, indent=2, default=str))


def _column_filters(pairs):
    filters = {}
    for pair in pairs or []:
        name, sep, value = pair.partition("=")
        if not sep:
            raise TimelineError(f"Expected COLUMN=VALUE, got {pair!r}")
        filters[name] = value
    return filters


def _filter_values(args):
    return dict(
        search_term=args.search or "",
        search_mode=args.mode,
        search_condition=args.condition,
        column_filters=_column_filters(args.filter),
    )


def _timestamp_column(args, result):
    if args.column:
        return args.column
    if not result.timestamp_columns:
        raise TimelineError("No timestamp column detected; pass --column")
    return result.timestamp_columns[0]


def cmd_info(manager, handle, result, args):
    _emit(manager.session_info(handle))


def cmd_query(manager, handle, result, args):
    request = QueryRequest(
        offset=args.offset,
        limit=args.limit,
        sort_column=args.sort,
        sort_direction="desc" if args.desc else "asc",
        **_filter_values(args),
    )
    _emit(manager.query_rows(handle, request))


def cmd_histogram(manager, handle, result, args):
    spec = FilterSpec(**_filter_values(args))
    _emit(manager.histogram(handle, _timestamp_column(args, result), spec, args.granularity))


def cmd_gaps(manager, handle, result, args):
    spec = FilterSpec(**_filter_values(args))
    _emit(manager.gap_analysis(handle, _timestamp_column(args, result), args.threshold, spec))


def cmd_bursts(manager, handle, result, args):
    spec = FilterSpec(**_filter_values(args))
    _emit(
        manager.burst_analysis(
            handle, _timestamp_column(args, result), args.window, args.multiplier, spec
        )
    )


def cmd_stack(manager, handle, result, args):
    spec = FilterSpec(**_filter_values(args))
    _emit(manager.value_stacking(handle, args.column, spec, args.sort_by, args.filter_text))


def cmd_coverage(manager, handle, result, args):
    spec = FilterSpec(**_filter_values(args))
    _emit(
        manager.source_coverage(
            handle, args.source, _timestamp_column(args, result), spec
        )
    )


def cmd_ioc(manager, handle, result, args):
    patterns = list(args.patterns or [])
    if args.ioc_file:
        lines = Path(args.ioc_file).read_text(encoding="utf-8").splitlines()
        patterns.extend(line.strip() for line in lines if line.strip())
    spec = FilterSpec(**_filter_values(args))
    _emit(manager.match_iocs(handle, patterns, spec))


def cmd_processes(manager, handle, result, args):
    spec = FilterSpec(**_filter_values(args))
    _emit(manager.process_tree(handle, spec, _column_filters(args.map), args.event_ids))


def cmd_lateral(manager, handle, result, args):
    spec = FilterSpec(**_filter_values(args))
    _emit(
        manager.lateral_movement(
            handle,
            spec,
            _column_filters(args.map),
            exclude_local=not args.include_local,
            exclude_service_accounts=not args.include_service_accounts,
        )
    )


def cmd_persistence(manager, handle, result, args):
    spec = FilterSpec(**_filter_values(args))
    _emit(manager.persistence_analysis(handle, spec, args.type, _column_filters(args.map)))


def cmd_export(manager, handle, result, args):
    request = QueryRequest(
        sort_column=args.sort,
        sort_direction="desc" if args.desc else "asc",
        **_filter_values(args),
    )
    columns = args.columns.split(",") if args.columns else None
    count = manager.export_csv(handle, args.output, request, columns)
    _emit({"output": args.output, "rows": count})


def _add_filter_arguments(parser):
    parser.add_argument("--search", help="Search term applied before the command.")
    parser.add_argument("--mode", choices=SEARCH_MODES, default="mixed")
    parser.add_argument("--condition", choices=SEARCH_CONDITIONS, default="contains")
    parser.add_argument(
        "--filter",
        action="append",
        metavar="COLUMN=VALUE",
        help="Per-column substring filter; may be repeated.",
    )


def _add_map_argument(parser):
    parser.add_argument(
        "--map",
        action="append",
        metavar="ROLE=COLUMN",
        help="Use COLUMN for ROLE instead of the detected one; may be repeated.",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Import a forensic timeline and query or analyze it.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    parser.add_argument("--sheet", help="Worksheet name or 1-based index for spreadsheets.")
    parser.add_argument("--batch-size", type=int, default=EngineConfig.batch_size)

    subparsers = parser.add_subparsers(dest="cmd", required=True)

    def command(name, func, help_text):
        sp = subparsers.add_parser(name, help=help_text)
        sp.add_argument("file", help="Timeline file to import.")
        sp.set_defaults(func=func)
        return sp

    command("info", cmd_info, "Show detected columns and row count.")

    sp = command("query", cmd_query, "Print a page of filtered rows.")
    _add_filter_arguments(sp)
    sp.add_argument("--offset", type=int, default=0)
    sp.add_argument("--limit", type=int, default=50)
    sp.add_argument("--sort", help="Column to sort by.")
    sp.add_argument("--desc", action="store_true")

    sp = command("histogram", cmd_histogram, "Event counts per day or hour.")
    _add_filter_arguments(sp)
    sp.add_argument("--column", help="Timestamp column (default: first detected).")
    sp.add_argument("--granularity", choices=["day", "hour"], default="day")

    sp = command("gaps", cmd_gaps, "Quiet periods and activity sessions.")
    _add_filter_arguments(sp)
    sp.add_argument("--column")
    sp.add_argument("--threshold", type=int, default=60, help="Gap threshold in minutes.")

    sp = command("bursts", cmd_bursts, "Windows with abnormally high event rates.")
    _add_filter_arguments(sp)
    sp.add_argument("--column")
    sp.add_argument("--window", type=int, default=5, help="Window size in minutes.")
    sp.add_argument("--multiplier", type=float, default=5.0)

    sp = command("stack", cmd_stack, "Value frequency for one column.")
    _add_filter_arguments(sp)
    sp.add_argument("--column", required=True)
    sp.add_argument("--sort-by", choices=["count", "value"], default="count")
    sp.add_argument("--filter-text", default="")

    sp = command("coverage", cmd_coverage, "Time span covered by each source.")
    _add_filter_arguments(sp)
    sp.add_argument("--source", required=True, help="Column naming the event source.")
    sp.add_argument("--column", help="Timestamp column (default: first detected).")

    sp = command("ioc", cmd_ioc, "Rows matching any indicator of compromise.")
    _add_filter_arguments(sp)
    sp.add_argument("patterns", nargs="*", help="Literal or regex indicators.")
    sp.add_argument("--ioc-file", help="File with one indicator per line.")

    sp = command("processes", cmd_processes, "Parent/child process tree from creation events.")
    _add_filter_arguments(sp)
    _add_map_argument(sp)
    sp.add_argument("--event-ids", default="1", help="Comma-separated creation event ids.")

    sp = command("lateral", cmd_lateral, "Logon graph between hosts.")
    _add_filter_arguments(sp)
    _add_map_argument(sp)
    sp.add_argument("--include-local", action="store_true")
    sp.add_argument("--include-service-accounts", action="store_true")

    sp = command("persistence", cmd_persistence, "Persistence mechanisms in event or registry exports.")
    _add_filter_arguments(sp)
    _add_map_argument(sp)
    sp.add_argument("--type", choices=["auto", "evtx", "registry"], default="auto")

    sp = command("export", cmd_export, "Write filtered rows to CSV.")
    _add_filter_arguments(sp)
    sp.add_argument("--output", "-o", required=True)
    sp.add_argument("--columns", help="Comma-separated column names to export.")
    sp.add_argument("--sort")
    sp.add_argument("--desc", action="store_true")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    manager = SessionManager(EngineConfig(batch_size=args.batch_size))
    try:
        handle, result = manager.import_file(args.file, sheet=args.sheet)
        args.func(manager, handle, result, args)
    except (TimelineError, FileNotFoundError) as e:
        logger.error(str(e))
        return 1
    finally:
        manager.close_all()
    return 0


if __name__ == "__main__":
    sys.exit(main())
