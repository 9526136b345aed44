import logging
import re
from datetime import datetime, timedelta, timezone
from functools import lru_cache

logger = logging.getLogger(__name__)


MONTHS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

_TIME = r"(?:[ T,]+(\d{1,2}):(\d{2})(?::(\d{2}))?(?:[.,]\d+)?\s*([AaPp][Mm])?)?"

EXCEL_EPOCH = datetime(1899, 12, 30)
UNIX_EPOCH = datetime(1970, 1, 1)


class TimestampDetector:
    """
    Normalise timestamp text into naive datetimes.

    Values that already look like ISO 8601 keep their wall-clock time (no zone
    conversion); epoch values are interpreted as UTC.
    """

    TIMESTAMP_PATTERNS = [
        {"name": "iso8601", "pattern": re.compile(r"^(\d{4})-(\d{2})-(\d{2})" + _TIME)},
        {"name": "slash_ymd", "pattern": re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})" + _TIME)},
        {"name": "us_date", "pattern": re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4})" + _TIME)},
        {
            "name": "month_day_year",
            "pattern": re.compile(r"^([A-Za-z]+)\.?\s+(\d{1,2})\w*[\s,]+(\d{4})" + _TIME),
        },
        {
            "name": "day_month_year",
            "pattern": re.compile(r"^(\d{1,2})[\s-]([A-Za-z]+)[\s-](\d{4})" + _TIME),
        },
        {"name": "unix_timestamp", "pattern": re.compile(r"^\d{10}(\.\d+)?$")},
        {"name": "unix_timestamp_ms", "pattern": re.compile(r"^\d{13}$")},
        {"name": "unix_timestamp_us", "pattern": re.compile(r"^\d{16}$")},
        {"name": "excel_serial", "pattern": re.compile(r"^\d{1,5}(\.\d+)?$")},
    ]

    @classmethod
    def parse(cls, value):
        """Return a naive datetime for ``value`` or None when it is not a timestamp."""
        if value is None:
            return None
        text = str(value).strip()
        if not text:
            return None
        return cls._parse_text(text)

    @classmethod
    @lru_cache(maxsize=4096)
    def _parse_text(cls, text):
        for pattern_info in cls.TIMESTAMP_PATTERNS:
            match = pattern_info["pattern"].match(text)
            if not match:
                continue
            try:
                dt = cls._build(pattern_info["name"], match, text)
            except (ValueError, OverflowError) as e:
                logger.debug(f"Rejected '{text}' as {pattern_info['name']}: {e}")
                continue
            if dt is not None:
                return dt
        return None

    @classmethod
    def _build(cls, name, match, text):
        if name == "iso8601" or name == "slash_ymd":
            year, month, day = match.group(1), match.group(2), match.group(3)
            return cls._combine(int(year), int(month), int(day), match.groups()[3:])
        if name == "us_date":
            month, day, year = match.group(1), match.group(2), match.group(3)
            return cls._combine(int(year), int(month), int(day), match.groups()[3:])
        if name == "month_day_year":
            month = MONTHS.get(match.group(1)[:3].lower())
            if month is None:
                return None
            return cls._combine(
                int(match.group(3)), month, int(match.group(2)), match.groups()[3:]
            )
        if name == "day_month_year":
            month = MONTHS.get(match.group(2)[:3].lower())
            if month is None:
                return None
            return cls._combine(
                int(match.group(3)), month, int(match.group(1)), match.groups()[3:]
            )
        if name.startswith("unix_timestamp"):
            return cls._parse_unix_timestamp(text, name)
        if name == "excel_serial":
            return cls._parse_excel_serial(text)
        return None

    @staticmethod
    def _combine(year, month, day, time_groups):
        hour, minute, second, meridiem = time_groups
        hour = int(hour) if hour else 0
        minute = int(minute) if minute else 0
        second = int(second) if second else 0
        if meridiem:
            meridiem = meridiem.upper()
            if meridiem == "PM" and hour != 12:
                hour += 12
            elif meridiem == "AM" and hour == 12:
                hour = 0
        return datetime(year, month, day, hour, minute, second)

    @staticmethod
    def _parse_unix_timestamp(text, format_name):
        if format_name == "unix_timestamp":
            seconds = float(text)
        elif format_name == "unix_timestamp_ms":
            seconds = int(text) / 1000
        else:
            seconds = int(text) / 1000000
        if seconds < 0 or seconds > 4102444800:
            raise ValueError("Unix timestamp out of reasonable range")
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
        return dt.replace(tzinfo=None)

    @staticmethod
    def _parse_excel_serial(text):
        serial = float(text)
        if serial < 1 or serial > 73050:
            return None
        dt = EXCEL_EPOCH + timedelta(days=serial)
        if not 1900 <= dt.year <= 2100:
            return None
        # Serial fractions carry float noise; round to the nearest second
        return (dt + timedelta(microseconds=500000)).replace(microsecond=0)

    @classmethod
    def day_key(cls, value):
        dt = cls.parse(value)
        return dt.strftime("%Y-%m-%d") if dt else None

    @classmethod
    def minute_key(cls, value):
        dt = cls.parse(value)
        return dt.strftime("%Y-%m-%d %H:%M") if dt else None

    @classmethod
    def sort_key(cls, value):
        dt = cls.parse(value)
        return dt.strftime("%Y-%m-%d %H:%M:%S") if dt else None


def parse_minute_key(key):
    return datetime.strptime(key, "%Y-%m-%d %H:%M")


def format_minute_key(dt):
    return dt.strftime("%Y-%m-%d %H:%M")


def microseconds_to_iso(value):
    """Render integer microseconds since the Unix epoch as ``YYYY-MM-DD HH:MM:SS.ffffff``."""
    if value is None or value == 0 or value == "":
        return ""
    try:
        dt = UNIX_EPOCH + timedelta(microseconds=int(value))
    except (TypeError, ValueError, OverflowError):
        return ""
    return dt.strftime("%Y-%m-%d %H:%M:%S.%f")
