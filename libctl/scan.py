"""
Scan — Reconciliation of the library index with the filesystem

Three separate steps, run once per pass while holding exclusive store access:

  1. enumerate   iter_documents() lazily yields every file under the root
                 with the document extension (sorted, recursive)
  2. apply       each document is parsed and upserted in reconciliation
                 mode (an existing last_opened is never overwritten)
  3. prune       every stored path whose file is gone is deleted

Failure policy is a single decision point in rebuild_from_library():
``on_error="abort"`` re-raises the first per-file error (rows already
written stay written); ``on_error="skip"`` records a ScanFailure and moves
on. Directory walk and store errors always abort.

Public API:
    iter_documents(root, extension) -> Iterator[str]
    index_document(store, path) -> LibraryFile
    prune_missing(store) -> int
    rebuild_from_library(store, root, ...) -> RebuildResult
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator

from libctl.envelope import DOCUMENT_EXTENSION, read_envelope, record_from_envelope
from libctl.errors import (
    LibraryIOError,
    MalformedDocumentError,
    NotFoundError,
)
from libctl.store import LibraryStore
from libctl.types import LibraryFile, RebuildResult, ScanFailure, _now_iso

logger = logging.getLogger(__name__)

ON_ERROR_POLICIES = ("abort", "skip")


# ---------------------------------------------------------------------------
# Enumerate
# ---------------------------------------------------------------------------

def iter_documents(
    root: str,
    extension: str = DOCUMENT_EXTENSION,
    *,
    follow_symlinks: bool = False,
) -> Iterator[str]:
    """Yield the path of every document under *root*, recursively.

    Directories are traversed, never yielded. Extension matching is
    case-insensitive. Order is deterministic (sorted per directory).

    Raises:
        LibraryIOError: a directory cannot be listed.
    """
    ext = extension.lower()

    def _onerror(err: OSError) -> None:
        raise LibraryIOError(
            f"Failed to list {err.filename}: {err.strerror or err}",
            path=err.filename,
        ) from err

    for dirpath, dirnames, filenames in os.walk(
        root, onerror=_onerror, followlinks=follow_symlinks,
    ):
        dirnames.sort()
        for fname in sorted(filenames):
            if Path(fname).suffix.lower() != ext:
                continue
            yield os.path.join(dirpath, fname)


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

def index_document(store: LibraryStore, path: str) -> LibraryFile:
    """Parse the document at *path* and upsert it in reconciliation mode."""
    record = record_from_envelope(path, read_envelope(path))
    record.id = store.upsert(record, keep_last_opened=True)
    return record


# ---------------------------------------------------------------------------
# Prune
# ---------------------------------------------------------------------------

def prune_missing(store: LibraryStore) -> int:
    """Delete every stored file whose path no longer exists. Returns count."""
    pruned = 0
    with store.exclusive():
        for path in store.list_paths():
            if os.path.exists(path):
                continue
            if store.delete(path):
                pruned += 1
                logger.info("[rebuild] Pruned missing file: %s", path)
    return pruned


# ---------------------------------------------------------------------------
# Reconcile
# ---------------------------------------------------------------------------

def rebuild_from_library(
    store: LibraryStore,
    root: str,
    *,
    extension: str = DOCUMENT_EXTENSION,
    on_error: str = "abort",
    follow_symlinks: bool = False,
) -> RebuildResult:
    """Make the index agree with the documents under *root*.

    Args:
        store: Open library store.
        root: Library root directory.
        extension: Document extension to index.
        on_error: "abort" (raise on the first bad document) or "skip"
            (record it in ``failures`` and continue).
        follow_symlinks: Descend into symlinked directories.

    Returns:
        RebuildResult; ``files_processed`` counts documents inserted or
        updated, not pruned ones.

    Raises:
        NotFoundError: *root* does not exist.
        LibraryIOError: *root* is not a directory, or a read fails (abort).
        MalformedDocumentError: a document fails to parse (abort).
        StoreError: a store write fails.
    """
    if on_error not in ON_ERROR_POLICIES:
        raise ValueError(f"on_error must be one of {ON_ERROR_POLICIES}, got {on_error!r}")
    if not os.path.exists(root):
        raise NotFoundError(f"Library path does not exist: {root}", path=root)
    if not os.path.isdir(root):
        raise LibraryIOError(f"Library path is not a directory: {root}", path=root)

    canonical = os.path.abspath(root)
    result = RebuildResult(root=canonical)
    logger.info("[rebuild] Scanning %s for *%s", canonical, extension)

    with store.exclusive():
        for path in iter_documents(
            canonical, extension, follow_symlinks=follow_symlinks,
        ):
            try:
                index_document(store, path)
            except (MalformedDocumentError, LibraryIOError) as exc:
                if on_error == "abort":
                    logger.error("[rebuild] Aborted on %s: %s", path, exc)
                    raise
                result.files_skipped += 1
                result.failures.append(ScanFailure(path=path, kind=exc.kind, message=str(exc)))
                logger.warning("[rebuild] Skipped %s: %s", path, exc)
                continue
            result.files_processed += 1

        result.files_pruned = prune_missing(store)
        result.finished_at = _now_iso()
        store.record_rebuild(result)

    logger.info(
        "[rebuild] Done: %d processed, %d pruned, %d skipped",
        result.files_processed, result.files_pruned, result.files_skipped,
    )
    return result
