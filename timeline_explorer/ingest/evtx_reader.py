import json
import logging
from typing import Dict, List

from evtx import PyEvtxParser

from ..errors import IngestError
from .base_reader import BaseReader

logger = logging.getLogger(__name__)


FIXED_FIELDS = [
    "datetime",
    "RecordId",
    "EventID",
    "Provider",
    "Level",
    "Channel",
    "Computer",
    "Task",
    "Keywords",
]

LEVEL_NAMES = {
    0: "LogAlways",
    1: "Critical",
    2: "Error",
    3: "Warning",
    4: "Information",
    5: "Verbose",
}


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, dict):
        if "#text" in value:
            return _text(value["#text"])
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, list):
        return ", ".join(_text(v) for v in value)
    return str(value)


def _flatten(value, prefix, out: Dict[str, str]):
    if isinstance(value, dict):
        for key, child in value.items():
            if key == "#attributes":
                continue
            if key == "#text":
                _flatten(child, prefix, out)
            else:
                _flatten(child, f"{prefix}.{key}" if prefix else key, out)
    elif prefix:
        out[prefix] = _text(value)


def event_data_fields(event_data) -> Dict[str, str]:
    """Named <Data> entries keep their name, unnamed ones become param1..N."""
    fields: Dict[str, str] = {}
    if event_data is None:
        return fields
    if not isinstance(event_data, dict):
        if str(event_data).strip():
            fields["param1"] = _text(event_data)
        return fields

    for key, value in event_data.items():
        if key == "#attributes":
            continue
        if key in ("Data", "#text"):
            values = value.get("#text") if isinstance(value, dict) else value
            if not isinstance(values, list):
                values = [values]
            for i, item in enumerate(values, 1):
                if item is not None:
                    fields[f"param{i}"] = _text(item)
        else:
            _flatten(value, key, fields)
    return fields


def user_data_fields(user_data) -> Dict[str, str]:
    """Leaf elements of <UserData>, keyed by their own element name."""
    flat: Dict[str, str] = {}
    _flatten(user_data, "", flat)
    fields: Dict[str, str] = {}
    for path, value in flat.items():
        fields.setdefault(path.rsplit(".", 1)[-1], value)
    return fields


def _system_time(system, record) -> str:
    created = system.get("TimeCreated")
    if isinstance(created, dict):
        stamp = (created.get("#attributes") or {}).get("SystemTime")
        if stamp:
            return str(stamp).replace("T", " ").rstrip("Z")
    stamp = record.get("timestamp")
    if stamp:
        return str(stamp).replace(" UTC", "").replace("T", " ").rstrip("Z")
    return ""


def _level_name(level) -> str:
    text = _text(level)
    try:
        return LEVEL_NAMES.get(int(text), text)
    except ValueError:
        return text


def flatten_record(record) -> Dict[str, str]:
    """Turn one ``records_json()`` record into a flat field -> text map."""
    data = record["data"]
    event = json.loads(data) if isinstance(data, (str, bytes)) else data
    event = event.get("Event", event)
    system = event.get("System") or {}
    provider = system.get("Provider") or {}

    fields = {
        "datetime": _system_time(system, record),
        "RecordId": _text(record.get("event_record_id", system.get("EventRecordID"))),
        "EventID": _text(system.get("EventID")),
        "Provider": _text((provider.get("#attributes") or {}).get("Name"))
        if isinstance(provider, dict)
        else _text(provider),
        "Level": _level_name(system.get("Level")),
        "Channel": _text(system.get("Channel")),
        "Computer": _text(system.get("Computer")),
        "Task": _text(system.get("Task")),
        "Keywords": _text(system.get("Keywords")),
    }

    if "EventData" in event:
        payload = event_data_fields(event.get("EventData"))
    else:
        payload = user_data_fields(event.get("UserData"))

    for name, value in payload.items():
        if name in fields:
            name = f"EventData.{name}"
        fields[name] = value
    return fields


class EventLogReader(BaseReader):
    """
    Windows EVTX files via the ``evtx`` bindings.

    The header set is fixed after the first ``evtx_sample_limit`` events: the
    fixed system fields followed by every payload field seen in that sample,
    sorted. Fields first seen later are not imported.
    """

    def iter_events(self, path):
        try:
            parser = PyEvtxParser(str(path))
        except Exception as e:
            raise IngestError(f"Cannot read event log {path.name}: {e}") from e

        for record in parser.records_json():
            try:
                yield flatten_record(record)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.debug(f"Skipping undecodable event record: {e}")

    @staticmethod
    def _row(event, headers: List[str]) -> List[str]:
        return [event.get(name, "") for name in headers]

    def _read_into(self, path, sink):
        sample_limit = self.config.evtx_sample_limit
        buffered = []
        discovered = set()
        headers = None
        batch = []

        for event in self.iter_events(path):
            if headers is None:
                buffered.append(event)
                discovered.update(k for k in event if k not in FIXED_FIELDS)
                if len(buffered) >= sample_limit:
                    headers = self._create_schema(sink, discovered)
                    batch = [self._row(e, headers) for e in buffered]
                    buffered = []
                continue

            batch.append(self._row(event, headers))
            if len(batch) >= self.config.batch_size:
                self._flush(sink, batch)
                batch = []

        if headers is None:
            headers = self._create_schema(sink, discovered)
            batch = [self._row(e, headers) for e in buffered]

        self._flush(sink, batch)

    @staticmethod
    def _create_schema(sink, discovered) -> List[str]:
        headers = FIXED_FIELDS + sorted(discovered)
        logger.info(f"Event log schema: {len(headers)} columns ({len(discovered)} payload fields)")
        sink.create_store(headers)
        return headers
