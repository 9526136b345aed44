import bz2
import gzip
import logging
import lzma
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class CompressionHandler:

    COMPRESSION_MAP = {".gz": "gzip", ".bz2": "bz2", ".xz": "xz", ".lzma": "lzma"}

    OPENERS = {"gzip": gzip.open, "bz2": bz2.open, "xz": lzma.open, "lzma": lzma.open}

    @classmethod
    def detect_compression(cls, filepath):
        return cls.COMPRESSION_MAP.get(Path(filepath).suffix.lower())

    @classmethod
    @contextmanager
    def open_binary(cls, filepath):
        compression = cls.detect_compression(filepath)
        opener = cls.OPENERS.get(compression, open)
        try:
            stream = opener(filepath, "rb")
        except OSError as e:
            logger.error(f"Error opening file {filepath}: {e}")
            raise
        with stream:
            yield stream
