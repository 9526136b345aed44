from dataclasses import dataclass, field
from enum import Enum
from typing import List


class ColumnKind(Enum):
    TIMESTAMP = "timestamp"
    NUMERIC = "numeric"
    TEXT = "text"


@dataclass
class ColumnInfo:
    name: str
    ident: str
    kind: ColumnKind = ColumnKind.TEXT

    @property
    def is_timestamp(self):
        return self.kind == ColumnKind.TIMESTAMP

    @property
    def is_numeric(self):
        return self.kind == ColumnKind.NUMERIC


@dataclass
class ImportResult:
    headers: List[str]
    row_count: int
    timestamp_columns: List[str] = field(default_factory=list)
    numeric_columns: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "headers": list(self.headers),
            "rowCount": self.row_count,
            "timestampColumns": list(self.timestamp_columns),
            "numericColumns": list(self.numeric_columns),
        }
