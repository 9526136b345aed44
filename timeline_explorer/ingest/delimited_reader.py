import csv
import logging
from collections import deque

from ..errors import IngestError
from ..inference.column_classifier import dedupe_headers
from .base_reader import BaseReader, fit_row
from .compression import CompressionHandler

logger = logging.getLogger(__name__)


# Forensic exports carry long fields (command lines, script blocks)
FIELD_SIZE_LIMIT = 64 * 1024 * 1024


class DelimitedReader(BaseReader):
    """
    Tab, pipe or comma separated text, optionally gzip/bz2/xz compressed.

    Tab and pipe files are split directly; comma files go through the csv
    module so quoted fields (including embedded newlines) are honoured.
    """

    @staticmethod
    def detect_delimiter(line: str) -> str:
        tabs = line.count("\t")
        pipes = line.count("|")
        commas = line.count(",")
        if tabs > commas and tabs > pipes:
            return "\t"
        if pipes > commas:
            return "|"
        return ","

    def iter_lines(self, stream):
        """Decode byte chunks into lines, carrying a partial line across chunks."""
        chunk_size = self.config.read_chunk_bytes
        carry = b""
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            self.bytes_read += len(chunk)
            data = carry + chunk
            cut = data.rfind(b"\n")
            if cut < 0:
                carry = data
                continue
            carry = data[cut + 1 :]
            for raw in data[:cut].split(b"\n"):
                yield raw.decode("utf-8", errors="replace").rstrip("\r")
        if carry:
            yield carry.decode("utf-8", errors="replace").rstrip("\r")

    def _read_into(self, path, sink):
        if CompressionHandler.detect_compression(path):
            # Progress is measured on decompressed bytes
            self.total_bytes = 0
        if csv.field_size_limit() < FIELD_SIZE_LIMIT:
            csv.field_size_limit(FIELD_SIZE_LIMIT)

        with CompressionHandler.open_binary(path) as stream:
            lines = self.iter_lines(stream)
            header_line = next((line for line in lines if line.strip()), None)
            if header_line is None:
                raise IngestError(f"No header row found in {path.name}")

            header_line = header_line.lstrip("\ufeff")
            delimiter = self.detect_delimiter(header_line)
            if delimiter == ",":
                raw_headers = next(csv.reader([header_line]), [])
            else:
                raw_headers = header_line.split(delimiter)

            headers = dedupe_headers(raw_headers)
            logger.info(
                f"Detected delimiter {delimiter!r} with {len(headers)} columns in {path.name}"
            )
            sink.create_store(headers)
            self._stream_rows(sink, self._split_rows(lines, delimiter, len(headers)))

    def _quoted_records(self, lines):
        """
        Group physical lines into CSV records by quote parity.

        A quote still open after ``max_quoted_lines`` lines (or at end of
        file) is treated as unterminated: its first line becomes a record on
        its own and the lines after it are scanned again.
        """
        limit = self.config.max_quoted_lines
        lines = iter(lines)
        backlog = deque()
        pending = []
        open_quote = False
        while True:
            if backlog:
                line = backlog.popleft()
            else:
                line = next(lines, None)
                if line is None:
                    break
            pending.append(line)
            if line.count('"') % 2:
                open_quote = not open_quote
            if not open_quote:
                yield pending
                pending = []
            elif len(pending) > limit:
                logger.warning(
                    f"Quoted field not closed within {limit} lines, reading its lines as separate rows"
                )
                yield pending[:1]
                backlog.extendleft(reversed(pending[1:]))
                pending = []
                open_quote = False

        if len(pending) > 1:
            logger.warning("Quoted field not closed at end of file, reading its lines as separate rows")
            yield pending[:1]
            yield from self._quoted_records(pending[1:])
        elif pending:
            yield pending

    def _split_rows(self, lines, delimiter, width):
        if delimiter == ",":
            for record in self._quoted_records(lines):
                # Newlines are kept only between the lines of one record
                physical = [line + "\n" for line in record[:-1]] + record[-1:]
                for fields in csv.reader(physical):
                    if not fields or (len(fields) == 1 and not fields[0].strip()):
                        continue
                    yield fit_row(fields, width)
        else:
            for line in lines:
                if not line:
                    continue
                # Overflow stays in the last column
                yield fit_row(line.split(delimiter, width - 1), width)
