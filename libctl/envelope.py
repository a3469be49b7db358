"""
Document Envelope — reader for the on-disk .ssce JSON format

An envelope is a JSON object. Only these fields matter to the index:

    thumbnail                opaque string (e.g. a data URI)
    keywords                 list of strings
    frontMatter.title        string
    frontMatter.summary      string
    frontMatter.modified     ISO-8601-like string (author-declared edit time)
    snapshots                list (only its length is used)

Fields of the wrong JSON type are treated as absent. The public entry
points are ``read_envelope(path)`` and ``record_from_envelope(path, env)``.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from libctl.errors import LibraryIOError, MalformedDocumentError
from libctl.types import EnvelopeMetadata, LibraryFile, filename_of

logger = logging.getLogger(__name__)

DOCUMENT_EXTENSION = ".ssce"


def parse_envelope(text: str, *, source: str = "<string>") -> Dict[str, Any]:
    """Parse envelope text into a dict.

    Raises:
        MalformedDocumentError: text is not JSON or not a JSON object.
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, RecursionError) as exc:
        raise MalformedDocumentError(
            f"Failed to parse {source}: {exc}", path=source,
        ) from exc
    if not isinstance(data, dict):
        raise MalformedDocumentError(
            f"Failed to parse {source}: expected a JSON object, "
            f"got {type(data).__name__}",
            path=source,
        )
    return data


def read_envelope(path: str) -> Dict[str, Any]:
    """Read and parse the envelope at *path*.

    Raises:
        LibraryIOError: the file cannot be read.
        MalformedDocumentError: the content is not UTF-8 JSON object text.
    """
    try:
        raw = Path(path).read_bytes()
    except OSError as exc:
        raise LibraryIOError(f"Failed to read {path}: {exc}", path=path) from exc
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedDocumentError(
            f"Failed to parse {path}: not UTF-8 ({exc.reason})", path=path,
        ) from exc
    return parse_envelope(text, source=path)


# ---------------------------------------------------------------------------
# Field accessors
# ---------------------------------------------------------------------------

def _opt_str(obj: Any, key: str) -> Optional[str]:
    if not isinstance(obj, dict):
        return None
    value = obj.get(key)
    return value if isinstance(value, str) else None


def joined_keywords(envelope: Dict[str, Any]) -> Optional[str]:
    """Keyword list joined with single spaces; None for an absent or empty list."""
    keywords = envelope.get("keywords")
    if not isinstance(keywords, list):
        return None
    words = [k for k in keywords if isinstance(k, str)]
    return " ".join(words) if words else None


def snapshot_count(envelope: Dict[str, Any]) -> int:
    snapshots = envelope.get("snapshots")
    return len(snapshots) if isinstance(snapshots, list) else 0


def record_from_envelope(path: str, envelope: Dict[str, Any]) -> LibraryFile:
    """Derive the index record for the document at *path*.

    ``last_opened`` is seeded from ``modified`` so a newly discovered
    document shows up in recency views; the store keeps any existing value.
    """
    front = envelope.get("frontMatter")
    modified = _opt_str(front, "modified")
    return LibraryFile(
        path=path,
        filename=filename_of(path),
        thumbnail=_opt_str(envelope, "thumbnail"),
        title=_opt_str(front, "title"),
        summary=_opt_str(front, "summary"),
        keywords=joined_keywords(envelope),
        modified=modified,
        last_opened=modified,
        snapshot_count=snapshot_count(envelope),
    )


def read_envelope_metadata(path: str) -> EnvelopeMetadata:
    """Thumbnail and snapshot count of the document at *path*.

    A missing file yields empty metadata rather than an error; read and
    parse failures still raise.
    """
    if not os.path.exists(path):
        logger.debug("metadata probe: %s does not exist", path)
        return EnvelopeMetadata()
    envelope = read_envelope(path)
    return EnvelopeMetadata(
        thumbnail=_opt_str(envelope, "thumbnail"),
        snapshot_count=snapshot_count(envelope),
    )
