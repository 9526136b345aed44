import re
from typing import Iterable, List, Sequence, Set


class ColumnClassifier:

    TIMESTAMP_NAME_PATTERN = re.compile(
        r"(time|date|timestamp|created|modified|accessed|when|start|end|written)",
        re.IGNORECASE,
    )

    # Plain decimal numbers only; float() would also accept "nan", "inf" and "1_000"
    NUMBER_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

    @classmethod
    def is_timestamp_name(cls, name) -> bool:
        return bool(cls.TIMESTAMP_NAME_PATTERN.search(name or ""))

    @classmethod
    def looks_numeric(cls, value) -> bool:
        if value is None:
            return False
        return bool(cls.NUMBER_PATTERN.match(str(value).strip()))

    @classmethod
    def numeric_columns(
        cls,
        sample_rows: Sequence[Sequence],
        candidates: Iterable[int],
        threshold: float = 0.8,
    ) -> Set[int]:
        """
        Return the candidate column positions whose non-blank sampled values are
        numbers more than ``threshold`` of the time.

        Columns with no non-blank sampled value are never numeric.
        """
        numeric = set()
        for position in candidates:
            non_blank = 0
            hits = 0
            for row in sample_rows:
                value = row[position] if position < len(row) else None
                if value is None or str(value).strip() == "":
                    continue
                non_blank += 1
                if cls.looks_numeric(value):
                    hits += 1
            if non_blank and hits / non_blank > threshold:
                numeric.add(position)
        return numeric


def dedupe_headers(names: Iterable, blank_name=None) -> List[str]:
    """
    Trim header names, fill blanks and make repeated names unique with ``_N``.

    ``blank_name`` is either a fixed string or a callable receiving the 0-based
    position; the default yields ``Column``.
    """
    result = []
    taken = set()
    counts = {}
    for position, raw in enumerate(names):
        name = "" if raw is None else str(raw).strip()
        if not name:
            if callable(blank_name):
                name = blank_name(position)
            else:
                name = blank_name or "Column"

        candidate = name
        while candidate in taken:
            counts[name] = counts.get(name, 0) + 1
            candidate = f"{name}_{counts[name]}"

        taken.add(candidate)
        result.append(candidate)
    return result
