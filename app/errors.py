"""
Error taxonomy for the import pipeline.

Only ``ImportFatalError`` (and its subclasses) aborts a job. Row validation
failures are plain values (see ``app.validation.RowFailure``); commit and
delivery errors are caught where they happen and recorded or dropped.
"""


class ImportFatalError(Exception):
    """Aborts the whole job; ``message`` is shown to the caller as-is."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ParseError(ImportFatalError):
    """The upload could not be decoded as a worksheet with a header range."""


class ReferenceDataError(ImportFatalError):
    """Reference data could not be loaded from the store."""


class CommitError(Exception):
    """A single record (or a whole chunk) failed to persist.

    ``chunk_fatal`` marks failures that take the connection down with them;
    the committer stops scheduling further chunks after one of these.
    """

    def __init__(self, message: str, *, context: str = "", chunk_fatal: bool = False):
        super().__init__(message)
        self.message = message
        self.context = context
        self.chunk_fatal = chunk_fatal


class DeliveryError(Exception):
    """A progress event could not be handed to the caller's stream."""
