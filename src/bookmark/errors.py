"""
Typed errors shared by the engine, model lifecycle and voice layers.
"""
from __future__ import annotations


class BookmarkError(Exception):
    """Base class for every error raised by the reading companion."""


class ModelNotReady(BookmarkError):
    """A capability was requested before its model reached the ready state."""

    def __init__(self, name: str, state: str = "absent"):
        super().__init__(f"model '{name}' is not ready (state={state})")
        self.name = name
        self.state = state


class UnknownModel(BookmarkError):
    """The model name is not present in the catalogue."""


class ModelDownloadFailed(BookmarkError):
    """Fetching a model artifact failed; the partial file has been removed."""

    def __init__(self, name: str, reason: str = ""):
        super().__init__(f"download of model '{name}' failed: {reason}".rstrip(": "))
        self.name = name


class ModelInitFailed(BookmarkError):
    """Loading a downloaded model artifact into memory failed."""

    def __init__(self, name: str, reason: str = ""):
        super().__init__(f"initialization of model '{name}' failed: {reason}".rstrip(": "))
        self.name = name


class DimensionMismatch(BookmarkError):
    """An embedding's width differs from the width fixed by the index."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"embedding dimension {actual} does not match index dimension {expected}")
        self.expected = expected
        self.actual = actual


class IndexCorrupt(BookmarkError):
    """The ordinal mapping and the native index disagree. Re-ingest the book."""


class DuplicateChunk(BookmarkError):
    """The chunk id is already present in the index."""

    def __init__(self, chunk_id: str):
        super().__init__(f"chunk '{chunk_id}' is already indexed")
        self.chunk_id = chunk_id


class NoActiveSession(BookmarkError):
    """A session operation was attempted with no session started."""

    def __init__(self, message: str = "No active session"):
        super().__init__(message)


class RecordingPermissionDenied(BookmarkError):
    """The microphone could not be opened."""


class BookNotFound(BookmarkError):
    """No book with the requested id exists in the library."""


class UnsupportedFormat(BookmarkError):
    """The book file type cannot be imported."""
