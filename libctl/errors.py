"""
Library Errors — Failure Taxonomy

Every failure surfaced by the library index is one of four kinds:

    NotFoundError          - library root (or other required path) missing
    MalformedDocumentError - envelope is not a JSON object
    LibraryIOError         - read / stat / walk / permission failure
    StoreError             - SQLite preparation, binding or execution failure
                             (including "database is locked")

All derive from LibraryError so callers at the command boundary can catch
one type and report ``error.kind`` alongside the message.
"""

from __future__ import annotations

from typing import Optional


class LibraryError(Exception):
    """Base class for library index failures."""

    kind = "library_error"

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class NotFoundError(LibraryError):
    """Raised when a required path does not exist."""

    kind = "not_found"


class MalformedDocumentError(LibraryError):
    """Raised when a document envelope fails to parse as a JSON object."""

    kind = "malformed_document"


class LibraryIOError(LibraryError):
    """Raised on read, stat, or directory walk failures."""

    kind = "io_failure"


class StoreError(LibraryError):
    """Raised when a store statement fails. ``operation`` names the call."""

    kind = "store_failure"

    def __init__(self, operation: str, cause: Exception):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
