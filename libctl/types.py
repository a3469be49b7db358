"""
Library Data Model

Defines the indexed document record, search requests, envelope metadata,
and reconciliation results. Records are plain dataclasses; the store owns
``id`` assignment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

DEFAULT_SEARCH_LIMIT = 50

# Client-side (camelCase) spellings accepted by from_dict()
_FIELD_ALIASES = {
    "lastOpened": "last_opened",
    "snapshotCount": "snapshot_count",
    "fromDate": "from_date",
    "toDate": "to_date",
}


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def filename_of(path: str) -> str:
    """Last path segment of a file path."""
    return os.path.basename(path.rstrip(os.sep))


def _unalias(d: Dict[str, Any]) -> Dict[str, Any]:
    return {_FIELD_ALIASES.get(k, k): v for k, v in d.items()}


# ---------------------------------------------------------------------------
# LibraryFile (canonical record)
# ---------------------------------------------------------------------------

@dataclass
class LibraryFile:
    """
    One indexed document, identified by its absolute ``path``.

    ``modified`` is the author-declared edit time from the document's front
    matter; ``last_opened`` is when a user last opened it through the
    application. Both are ISO-8601-like strings compared lexically.
    """

    path: str = ""
    filename: str = ""
    thumbnail: Optional[str] = None
    title: Optional[str] = None
    summary: Optional[str] = None
    keywords: Optional[str] = None
    modified: Optional[str] = None
    last_opened: Optional[str] = None
    snapshot_count: int = 0
    id: Optional[int] = None

    def __post_init__(self):
        """Validate identity and counts; derive filename when omitted."""
        if not isinstance(self.path, str) or not self.path.strip():
            raise ValueError("LibraryFile.path must be a non-empty string")
        if not os.path.isabs(self.path):
            raise ValueError(f"LibraryFile.path must be absolute, got {self.path!r}")
        if not self.filename:
            self.filename = filename_of(self.path)
        if self.snapshot_count is None:
            self.snapshot_count = 0
        if not isinstance(self.snapshot_count, int) or self.snapshot_count < 0:
            raise ValueError(
                f"Invalid snapshot_count: {self.snapshot_count!r}"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> LibraryFile:
        """Deserialize from dict, accepting camelCase aliases and ignoring unknown keys."""
        data = _unalias(d)
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in data.items() if k in known})

    def projection(self) -> tuple:
        """The four fields mirrored into the full-text shadow index."""
        return (self.filename, self.title, self.summary, self.keywords)


# ---------------------------------------------------------------------------
# Search request
# ---------------------------------------------------------------------------

@dataclass
class SearchParams:
    """A search request: free-text query, optional date range, optional limit."""

    query: Optional[str] = None
    from_date: Optional[str] = None
    to_date: Optional[str] = None
    limit: Optional[int] = None

    @property
    def effective_limit(self) -> int:
        return DEFAULT_SEARCH_LIMIT if self.limit is None else self.limit

    @property
    def terms(self) -> List[str]:
        """Whitespace tokens of the query (empty for absent or blank queries)."""
        return (self.query or "").split()

    @property
    def uses_fulltext(self) -> bool:
        return bool(self.terms)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SearchParams:
        data = _unalias(d)
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in data.items() if k in known})


# ---------------------------------------------------------------------------
# Envelope metadata (thumbnail + snapshot probe)
# ---------------------------------------------------------------------------

@dataclass
class EnvelopeMetadata:
    """Lightweight metadata read from an envelope without indexing it."""

    thumbnail: Optional[str] = None
    snapshot_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Reconciliation results
# ---------------------------------------------------------------------------

@dataclass
class ScanFailure:
    """A candidate file that could not be indexed (skip policy only)."""

    path: str
    kind: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RebuildResult:
    """Result of reconciling the index with a library root."""

    root: str
    files_processed: int = 0
    files_pruned: int = 0
    files_skipped: int = 0
    failures: List[ScanFailure] = field(default_factory=list)
    finished_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root,
            "files_processed": self.files_processed,
            "files_pruned": self.files_pruned,
            "files_skipped": self.files_skipped,
            "failures": [f.to_dict() for f in self.failures],
            "finished_at": self.finished_at,
        }
