import logging
import re
import sqlite3
from contextlib import contextmanager
from functools import lru_cache

from ..inference.timestamp_detector import TimestampDetector

logger = logging.getLogger(__name__)


# Bulk-write profile applied while a session is being imported
BULK_PRAGMAS = [
    "PRAGMA page_size = 65536",
    "PRAGMA journal_mode = OFF",
    "PRAGMA synchronous = OFF",
    "PRAGMA cache_size = -1048576",
    "PRAGMA temp_store = MEMORY",
    "PRAGMA locking_mode = EXCLUSIVE",
]

# Query profile applied once finalize_import() has run
QUERY_PRAGMAS = [
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA cache_size = -262144",
]

DEFAULT_VARIABLE_LIMIT = 999


@lru_cache(maxsize=512)
def _compile_regex(pattern):
    return re.compile(pattern, re.IGNORECASE)


def regexp(pattern, value):
    """SQLite REGEXP operator: ``value REGEXP pattern`` calls ``regexp(pattern, value)``."""
    if pattern is None or value is None:
        return 0
    try:
        compiled = _compile_regex(pattern)
    except re.error:
        return 0
    return 1 if compiled.search(str(value)) else 0


def fuzzy_match(text, term):
    """
    Approximate substring match based on n-gram overlap.

    An exact substring is always a hit. Otherwise the term is cut into
    overlapping bigrams (terms shorter than 5 characters) or trigrams, and the
    share of those found in the text must reach 0.7 (short) or 0.6 (long).
    """
    if text is None or term is None:
        return 0
    haystack = str(text).lower()
    needle = str(term).lower()
    if needle in haystack:
        return 1
    if len(needle) < 2:
        return 0

    size = 2 if len(needle) < 5 else 3
    grams = [needle[i : i + size] for i in range(len(needle) - size + 1)]
    if not grams:
        return 0

    hits = sum(1 for gram in grams if gram in haystack)
    threshold = 0.7 if len(needle) < 5 else 0.6
    return 1 if hits / len(grams) >= threshold else 0


SCALAR_FUNCTIONS = [
    ("regexp", 2, regexp),
    ("fuzzy_match", 2, fuzzy_match),
    ("minute_bucket", 1, TimestampDetector.minute_key),
    ("day_bucket", 1, TimestampDetector.day_key),
    ("sort_datetime", 1, TimestampDetector.sort_key),
]


def register_functions(conn):
    for name, num_args, func in SCALAR_FUNCTIONS:
        try:
            conn.create_function(name, num_args, func, deterministic=True)
        except sqlite3.NotSupportedError:
            conn.create_function(name, num_args, func)


def apply_pragmas(conn, pragmas):
    for pragma in pragmas:
        conn.execute(pragma)


def open_connection(path):
    """Open a session store in autocommit mode with the bulk-write profile."""
    conn = sqlite3.connect(str(path), isolation_level=None, check_same_thread=False)
    register_functions(conn)
    apply_pragmas(conn, BULK_PRAGMAS)
    return conn


def variable_limit(conn):
    getlimit = getattr(conn, "getlimit", None)
    if getlimit is None:
        return DEFAULT_VARIABLE_LIMIT
    return getlimit(sqlite3.SQLITE_LIMIT_VARIABLE_NUMBER)


@contextmanager
def transaction(conn):
    conn.execute("BEGIN")
    try:
        yield conn
    except BaseException:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning(f"Rollback failed: {e}")
        raise
    else:
        conn.execute("COMMIT")


def quote_identifier(name):
    return '"' + str(name).replace('"', '""') + '"'
