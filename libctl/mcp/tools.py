"""
libctl MCP Tools — the library command boundary for MCP clients.

Thin wrappers around LibraryStore and the reconciliation scanner. Every
tool returns a status dict and never raises:

    success  {"status": "ok", ...}
    failure  {"status": "error", "error": <kind>, "message": ...}

``kind`` is one of not_found, malformed_document, io_failure,
store_failure (see libctl.errors), invalid_request (bad arguments), or
error (anything unexpected). Each call is audited after it completes.

Tools:
    library_upsert_file   — insert or fully replace a record by path
    library_get_file      — look up one record by path
    library_file_metadata — thumbnail and snapshot count from a document file
    library_recent_files  — recently opened files
    library_search        — full-text / date-filtered listing
    library_remove_file   — delete by path (no-op when absent)
    library_touch         — mark a file as opened now (or at a timestamp)
    library_rebuild       — reconcile the index with a library root
    library_stats         — index statistics
    library_reindex       — re-derive the full-text shadow index
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from libctl.config import LibraryConfig
from libctl.envelope import read_envelope_metadata
from libctl.errors import LibraryError
from libctl.scan import rebuild_from_library
from libctl.store import LibraryStore
from libctl.types import LibraryFile, SearchParams, _now_iso

logger = logging.getLogger(__name__)


def _failure(exc: Exception, action: str) -> Dict[str, Any]:
    """Translate an exception into the error status dict."""
    if isinstance(exc, LibraryError):
        kind = exc.kind
    elif isinstance(exc, (ValueError, TypeError)):
        kind = "invalid_request"
    else:
        kind = "error"
        logger.exception("%s failed", action)
    return {"status": "error", "error": kind, "message": f"{action} failed: {exc}"}


def register_library_tools(
    mcp,
    store: LibraryStore,
    config: LibraryConfig,
    *,
    audit=None,
) -> None:
    """
    Register the library MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance.
        store: Open LibraryStore.
        config: LibraryConfig for scan and search defaults.
        audit: AuditLogger for structured logging. None → stderr logger.
    """
    from libctl.mcp.audit import AuditLogger

    if audit is None:
        audit = AuditLogger()

    db_path = store.db_path

    def _finish(tool: str, rid: str, t0: float, outcome: str, detail: Dict[str, Any]) -> None:
        audit.log(
            tool=tool, rid=rid, db_path=db_path, outcome=outcome,
            detail=detail, latency_ms=(time.monotonic() - t0) * 1000,
        )

    # =====================================================================
    # MUTATION
    # =====================================================================

    @mcp.tool()
    def library_upsert_file(file: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a library file, or replace every field of the existing record.

        Args:
            file: Record fields: path (required, absolute), filename,
                thumbnail, title, summary, keywords, modified, last_opened,
                snapshot_count. camelCase spellings are accepted.

        Returns:
            id: Row id (existing id when the path was already indexed).
        """
        t0, rid = time.monotonic(), audit.new_rid()
        outcome, detail = "ok", {}
        try:
            record = LibraryFile.from_dict(file)
            file_id = store.upsert(record)
            detail = {"id": file_id}
            return {"status": "ok", "id": file_id, "path": record.path}
        except Exception as e:
            outcome = "error"
            return _failure(e, "Upsert")
        finally:
            _finish("library_upsert_file", rid, t0, outcome, detail)

    @mcp.tool()
    def library_remove_file(path: str) -> Dict[str, Any]:
        """Remove a file from the library index. Unknown paths are a no-op.

        Returns:
            removed: True if a record was deleted.
        """
        t0, rid = time.monotonic(), audit.new_rid()
        outcome, detail = "ok", {}
        try:
            removed = store.delete(path)
            detail = {"removed": removed}
            return {"status": "ok", "removed": removed}
        except Exception as e:
            outcome = "error"
            return _failure(e, "Remove")
        finally:
            _finish("library_remove_file", rid, t0, outcome, detail)

    @mcp.tool()
    def library_touch(path: str, timestamp: Optional[str] = None) -> Dict[str, Any]:
        """Mark a file as recently opened. Unknown paths are a no-op.

        Args:
            path: Indexed file path.
            timestamp: ISO-8601 time; defaults to now (UTC).

        Returns:
            updated: True if a record was updated.
        """
        t0, rid = time.monotonic(), audit.new_rid()
        outcome, detail = "ok", {}
        try:
            ts = timestamp or _now_iso()
            updated = store.touch_last_opened(path, ts)
            detail = {"updated": updated}
            return {"status": "ok", "updated": updated, "last_opened": ts}
        except Exception as e:
            outcome = "error"
            return _failure(e, "Touch")
        finally:
            _finish("library_touch", rid, t0, outcome, detail)

    # =====================================================================
    # QUERY
    # =====================================================================

    @mcp.tool()
    def library_get_file(path: str) -> Dict[str, Any]:
        """Look up one indexed file by path."""
        t0, rid = time.monotonic(), audit.new_rid()
        outcome, detail = "ok", {}
        try:
            record = store.get_file(path)
            if record is None:
                outcome = "error"
                return {
                    "status": "error", "error": "not_found",
                    "message": f"Not in library: {path}",
                }
            return {"status": "ok", "file": record.to_dict()}
        except Exception as e:
            outcome = "error"
            return _failure(e, "Lookup")
        finally:
            _finish("library_get_file", rid, t0, outcome, detail)

    @mcp.tool()
    def library_file_metadata(path: str) -> Dict[str, Any]:
        """Thumbnail and snapshot count read straight from a document file.

        Works for files that are not indexed. A missing file returns no
        thumbnail and 0 snapshots.
        """
        t0, rid = time.monotonic(), audit.new_rid()
        outcome, detail = "ok", {}
        try:
            meta = read_envelope_metadata(path)
            detail = {"snapshots": meta.snapshot_count}
            return {"status": "ok", "path": path, **meta.to_dict()}
        except Exception as e:
            outcome = "error"
            return _failure(e, "Metadata")
        finally:
            _finish("library_file_metadata", rid, t0, outcome, detail)

    @mcp.tool()
    def library_recent_files(limit: Optional[int] = None) -> Dict[str, Any]:
        """Recently opened files, most recent first.

        Args:
            limit: Max files (default from config, 20).
        """
        t0, rid = time.monotonic(), audit.new_rid()
        outcome, detail = "ok", {}
        try:
            n = config.search.recent_limit if limit is None else limit
            files = store.get_recent_files(n)
            detail = {"limit": n, "count": len(files)}
            return {
                "status": "ok",
                "files": [f.to_dict() for f in files],
                "count": len(files),
            }
        except Exception as e:
            outcome = "error"
            return _failure(e, "Recent files")
        finally:
            _finish("library_recent_files", rid, t0, outcome, detail)

    @mcp.tool()
    def library_search(
        query: Optional[str] = None,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Search the library, newest ``modified`` first.

        Each whitespace-separated term must prefix-match a word in the
        filename, title, summary, or keywords. A blank query lists files.

        Args:
            query: Free-text terms (optional).
            from_date: Inclusive lower bound on ``modified`` (string compare).
            to_date: Inclusive upper bound on ``modified``.
            limit: Max files (default from config, 50).
        """
        t0, rid = time.monotonic(), audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = audit.make_query_detail(query)
        try:
            params = SearchParams(
                query=query, from_date=from_date, to_date=to_date,
                limit=config.search.default_limit if limit is None else limit,
            )
            files = store.search(params)
            detail["count"] = len(files)
            return {
                "status": "ok",
                "files": [f.to_dict() for f in files],
                "count": len(files),
                "mode": "fulltext" if params.uses_fulltext else "listing",
            }
        except Exception as e:
            outcome = "error"
            return _failure(e, "Search")
        finally:
            _finish("library_search", rid, t0, outcome, detail)

    # =====================================================================
    # RECONCILIATION & ADMIN
    # =====================================================================

    @mcp.tool()
    def library_rebuild(
        root_path: str, on_error: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Reconcile the index with every document under a library folder.

        New and changed documents are upserted (keeping any recorded
        last-opened time); records whose file is gone are removed.

        Args:
            root_path: Library root directory (must exist).
            on_error: "abort" (default from config) or "skip" bad documents.

        Returns:
            files_processed: Documents inserted or updated.
            files_pruned, files_skipped, failures: Pass details.
        """
        t0, rid = time.monotonic(), audit.new_rid()
        outcome, detail = "ok", {}
        try:
            result = rebuild_from_library(
                store, root_path,
                extension=config.scan.extension,
                on_error=on_error or config.scan.on_error,
                follow_symlinks=config.scan.follow_symlinks,
            )
            detail = {
                "processed": result.files_processed,
                "pruned": result.files_pruned,
                "skipped": result.files_skipped,
            }
            return {"status": "ok", **result.to_dict()}
        except Exception as e:
            outcome = "error"
            failure = _failure(e, "Rebuild")
            if isinstance(e, LibraryError) and e.path:
                failure["path"] = e.path
            return failure
        finally:
            _finish("library_rebuild", rid, t0, outcome, detail)

    @mcp.tool()
    def library_stats() -> Dict[str, Any]:
        """Library index statistics: counts, FTS status, last rebuild."""
        t0, rid = time.monotonic(), audit.new_rid()
        outcome = "ok"
        try:
            stats = store.stats()
            stats["status"] = "ok"
            return stats
        except Exception as e:
            outcome = "error"
            return _failure(e, "Stats")
        finally:
            _finish("library_stats", rid, t0, outcome, {})

    @mcp.tool()
    def library_reindex(tokenizer: Optional[str] = None) -> Dict[str, Any]:
        """Re-derive the full-text index from the stored records.

        Args:
            tokenizer: Optional new FTS5 tokenizer (preset name or string).
        """
        from libctl.store import FTS_TOKENIZER_PRESETS

        t0, rid = time.monotonic(), audit.new_rid()
        outcome, detail = "ok", {}
        try:
            tok = FTS_TOKENIZER_PRESETS.get(tokenizer, tokenizer) if tokenizer else None
            count = store.rebuild_fts(tokenizer=tok)
            if count < 0:
                outcome = "error"
                return {
                    "status": "error", "error": "store_failure",
                    "message": "FTS5 is not available in this SQLite build",
                }
            detail = {"indexed": count}
            return {"status": "ok", "indexed": count}
        except Exception as e:
            outcome = "error"
            return _failure(e, "Reindex")
        finally:
            _finish("library_reindex", rid, t0, outcome, detail)
