from __future__ import annotations


class DedupError(Exception):
    """Base class for failures raised by the dedup pipeline."""


class IndexUnavailable(DedupError):
    """The fingerprint index could not be read or written."""


class TransientIndexConflict(IndexUnavailable):
    """Serialization conflicts outlasted the transaction retry budget."""


class ListingError(DedupError):
    """A listing page or a single object's description could not be fetched."""

    def __init__(self, message: str, name: str | None = None):
        super().__init__(message)
        self.name = name


class CopyPreconditionFailed(DedupError):
    """The destination object already exists."""


class CopyFailed(DedupError):
    def __init__(self, message: str, name: str, code: str | None = None):
        super().__init__(message)
        self.name = name
        self.code = code
