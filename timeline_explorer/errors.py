class TimelineError(Exception):
    """Base class for every error raised by the engine."""


class IngestError(TimelineError):
    """An input file could not be imported; the partial session is discarded."""


class UnknownSessionError(TimelineError):
    def __init__(self, handle):
        super().__init__(f"Unknown session: {handle}")
        self.handle = handle


class QueryError(TimelineError):
    """A request was malformed (unknown mode, operator or negative paging)."""
