"""
libctl — A searchable index of library documents.

One file, one truth. Every indexed document is a row in a single SQLite
database with an FTS5 shadow index kept in lockstep by explicit
transactional writes; the filesystem is reconciled into it on demand.
"""

__version__ = "0.1.0"

from libctl.types import (
    LibraryFile,
    SearchParams,
    EnvelopeMetadata,
    RebuildResult,
    ScanFailure,
)
from libctl.errors import (
    LibraryError,
    NotFoundError,
    MalformedDocumentError,
    LibraryIOError,
    StoreError,
)
from libctl.store import LibraryStore, SCHEMA_VERSION
from libctl.scan import rebuild_from_library
from libctl.config import LibraryConfig

__all__ = [
    "__version__",
    "LibraryFile",
    "SearchParams",
    "EnvelopeMetadata",
    "RebuildResult",
    "ScanFailure",
    "LibraryError",
    "NotFoundError",
    "MalformedDocumentError",
    "LibraryIOError",
    "StoreError",
    "LibraryStore",
    "LibraryConfig",
    "rebuild_from_library",
    "SCHEMA_VERSION",
]
