from dataclasses import dataclass
from typing import Optional


@dataclass
class EngineConfig:
    """
    Tuning knobs shared by the readers, the store and the query engine.

    Attributes:
        batch_size: rows handed to the bulk loader per transaction during import
        read_chunk_bytes: byte chunk size for streaming delimited text
        max_quoted_lines: physical lines one quoted CSV record may span before
            its opening quote is treated as unterminated
        evtx_sample_limit: events buffered before the EVTX header set is fixed
        plaso_head_sample: payload rows sampled from the start of a Plaso file
        plaso_middle_sample: payload rows sampled from the middle of a Plaso file
        numeric_sample_rows: rows sampled per column for numeric classification
        numeric_threshold: share of non-blank sampled values that must be numbers
        fts_chunk_size: rows indexed per full-text build step
        merge_batch_size: rows per insert batch when merging sessions
        lookup_chunk_size: row keys per bookmark/tag lookup statement
        ioc_batch_size: indicators joined into one alternation regex
        stacking_max_values: maximum distinct values returned by value stacking
        count_cache_size: memoised filtered counts kept per session
        temp_dir: directory for session stores (system temp dir when None)
    """

    batch_size: int = 50000
    read_chunk_bytes: int = 16 * 1024 * 1024
    max_quoted_lines: int = 10000
    evtx_sample_limit: int = 500
    plaso_head_sample: int = 500
    plaso_middle_sample: int = 200
    numeric_sample_rows: int = 100
    numeric_threshold: float = 0.8
    fts_chunk_size: int = 100000
    merge_batch_size: int = 50000
    lookup_chunk_size: int = 5000
    ioc_batch_size: int = 200
    stacking_max_values: int = 10000
    count_cache_size: int = 256
    temp_dir: Optional[str] = None

    def __post_init__(self):
        positive = (
            "batch_size",
            "read_chunk_bytes",
            "max_quoted_lines",
            "evtx_sample_limit",
            "numeric_sample_rows",
            "fts_chunk_size",
            "merge_batch_size",
            "lookup_chunk_size",
            "ioc_batch_size",
            "stacking_max_values",
            "count_cache_size",
        )
        for name in positive:
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")

        for name in ("plaso_head_sample", "plaso_middle_sample"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")

        if not 0.0 < self.numeric_threshold <= 1.0:
            raise ValueError(
                f"numeric_threshold must be in (0, 1], got {self.numeric_threshold}"
            )
