import json
import logging
import sqlite3
import zlib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import IngestError
from ..inference.timestamp_detector import microseconds_to_iso
from .base_reader import BaseReader

logger = logging.getLogger(__name__)


FIXED_FIELDS = ["datetime", "timestamp_desc", "data_type"]

KNOWN_COMPRESSION = ("none", "zlib")


class PlasoDialect(Enum):
    """Column naming of the ``event`` table across Plaso storage versions."""

    LEGACY = ("_timestamp", "_timestamp_desc", "_event_data_row_identifier")
    CURRENT = ("timestamp", "timestamp_desc", "_event_data_identifier")

    @property
    def timestamp_column(self):
        return self.value[0]

    @property
    def description_column(self):
        return self.value[1]

    @property
    def reference_column(self):
        return self.value[2]


class ForeignKeyEncoding(Enum):
    INTEGER = "integer"
    TEXT_REFERENCE = "text_reference"  # "event_data.N"


@dataclass
class PlasoInfo:
    format_version: int
    compression: str
    event_count: int


@dataclass
class PlasoLayout:
    dialect: PlasoDialect
    encoding: ForeignKeyEncoding
    has_event_data: bool
    has_reference: bool


def connect_readonly(path):
    try:
        return sqlite3.connect(f"{Path(path).resolve().as_uri()}?mode=ro", uri=True)
    except sqlite3.Error as e:
        raise IngestError(f"Cannot open Plaso storage {path}: {e}") from e


def _tables(conn):
    return {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}


def _metadata(conn, key) -> Optional[str]:
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return None if row is None or row[0] is None else str(row[0])


def validate_plaso(path) -> PlasoInfo:
    """Check the storage declares a known format version and compression."""
    conn = connect_readonly(path)
    try:
        try:
            tables = _tables(conn)
            if "metadata" not in tables:
                raise IngestError(f"{path} is not a Plaso storage file (no metadata table)")

            version = _metadata(conn, "format_version")
            if version is None:
                raise IngestError(f"{path} does not declare a Plaso format_version")
            try:
                format_version = int(version)
            except ValueError:
                raise IngestError(f"Unrecognised Plaso format_version {version!r}") from None

            compression = (_metadata(conn, "compression_format") or "none").lower()
            if compression not in KNOWN_COMPRESSION:
                raise IngestError(f"Unsupported Plaso compression format {compression!r}")

            if "event" not in tables:
                raise IngestError("Plaso file missing 'event' table")
            event_count = conn.execute("SELECT COUNT(*) FROM event").fetchone()[0]
        except sqlite3.Error as e:
            raise IngestError(f"{path} is not a readable Plaso storage file: {e}") from e
    finally:
        conn.close()

    return PlasoInfo(format_version, compression, event_count)


def detect_layout(conn) -> PlasoLayout:
    columns = {r[1] for r in conn.execute("PRAGMA table_info(event)")}
    if PlasoDialect.CURRENT.timestamp_column in columns:
        dialect = PlasoDialect.CURRENT
    elif PlasoDialect.LEGACY.timestamp_column in columns:
        dialect = PlasoDialect.LEGACY
    else:
        raise IngestError("Plaso event table has no recognised timestamp column")

    has_reference = dialect.reference_column in columns
    encoding = ForeignKeyEncoding.INTEGER
    if has_reference:
        sample = conn.execute(
            f"SELECT {dialect.reference_column} FROM event LIMIT 1"
        ).fetchone()
        if sample is not None and isinstance(sample[0], str) and sample[0].startswith("event_data."):
            encoding = ForeignKeyEncoding.TEXT_REFERENCE

    return PlasoLayout(
        dialect=dialect,
        encoding=encoding,
        has_event_data="event_data" in _tables(conn),
        has_reference=has_reference,
    )


def decode_blob(data, compressed: bool) -> Dict:
    """Inflate (when compressed) and JSON-decode a payload; {} when that fails."""
    if data is None:
        return {}
    try:
        if compressed and isinstance(data, (bytes, memoryview)):
            data = zlib.decompress(bytes(data))
        if isinstance(data, (bytes, memoryview)):
            data = bytes(data).decode("utf-8")
        decoded = json.loads(data)
    except (zlib.error, UnicodeDecodeError, ValueError) as e:
        logger.debug(f"Undecodable Plaso payload: {e}")
        return {}
    return decoded if isinstance(decoded, dict) else {}


def _value_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


class PlasoReader(BaseReader):
    """
    Plaso storage files (SQLite with JSON, optionally zlib-compressed, payloads).

    Both event table dialects and both event_data reference encodings are
    resolved once per file by ``detect_layout``.
    """

    def _discover_fields(self, conn, info: PlasoInfo, layout: PlasoLayout) -> List[str]:
        table = "event_data" if layout.has_event_data else "event"
        compressed = info.compression == "zlib"
        count = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

        samples = [
            conn.execute(
                f"SELECT _data FROM {table} LIMIT ?", (self.config.plaso_head_sample,)
            )
        ]
        if count > self.config.plaso_head_sample:
            samples.append(
                conn.execute(
                    f"SELECT _data FROM {table} LIMIT ? OFFSET ?",
                    (self.config.plaso_middle_sample, count // 2),
                )
            )

        fields = set()
        for cursor in samples:
            for (data,) in cursor:
                fields.update(
                    key for key in decode_blob(data, compressed) if not key.startswith("_")
                )
        fields.difference_update(FIXED_FIELDS)
        return sorted(fields)

    def _event_query(self, layout: PlasoLayout) -> str:
        dialect = layout.dialect
        if layout.has_event_data and layout.has_reference:
            if layout.encoding == ForeignKeyEncoding.TEXT_REFERENCE:
                join = (
                    f"ed._identifier = CAST(SUBSTR(e.{dialect.reference_column}, 12) "
                    f"AS INTEGER)"
                )
            else:
                join = f"ed._identifier = e.{dialect.reference_column}"
            return (
                f"SELECT e.{dialect.timestamp_column}, e.{dialect.description_column}, "
                f"ed._data FROM event e LEFT JOIN event_data ed ON {join}"
            )
        return (
            f"SELECT {dialect.timestamp_column}, {dialect.description_column}, _data "
            f"FROM event"
        )

    def _read_into(self, path, sink):
        info = validate_plaso(path)
        conn = connect_readonly(path)
        try:
            try:
                layout = detect_layout(conn)
                discovered = self._discover_fields(conn, info, layout)
                headers = FIXED_FIELDS + discovered
                logger.info(
                    f"Plaso format {info.format_version} ({layout.dialect.name}, "
                    f"{layout.encoding.value} references, compression {info.compression}): "
                    f"{info.event_count} events, {len(discovered)} payload fields"
                )
                sink.create_store(headers)
                compressed = info.compression == "zlib"
                cursor = conn.execute(self._event_query(layout))
                self._stream_rows(sink, self._rows(cursor, discovered, compressed))
            except sqlite3.Error as e:
                raise IngestError(f"Failed reading Plaso storage {path.name}: {e}") from e
        finally:
            conn.close()

    @staticmethod
    def _rows(cursor, discovered, compressed):
        for timestamp, description, data in cursor:
            payload = decode_blob(data, compressed)
            row = [
                microseconds_to_iso(timestamp),
                _value_text(description or payload.get("timestamp_desc")),
                _value_text(payload.get("data_type")),
            ]
            row.extend(_value_text(payload.get(name)) for name in discovered)
            yield row
