# --- ppaper_lib/errors.py ---
"""Exception types raised by the structuring engine and its services."""


class PaperParseError(Exception):
    """Base class for all ppaper errors."""


class IdExhaustedError(PaperParseError):
    """No unique identifier could be allocated for a prefix."""


class ImageFetchError(PaperParseError):
    """A remote image could not be downloaded or decoded."""


class StorageError(PaperParseError):
    """A persistence read or write failed."""


class JobConflictError(PaperParseError):
    """A parse job is already queued or running for the document."""


class JobCancelledError(PaperParseError):
    """The job's cancellation token was set."""
