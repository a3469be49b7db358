"""
libctl CLI — Library Index Commands

Commands:
    libctl add     <file.ssce>                     — index one document, mark opened
    libctl open    <file.ssce>                     — mark an indexed document opened now
    libctl recent  [-k N]                          — recently opened documents
    libctl search  [query] [--from D] [--to D]     — full-text / date search
    libctl show    <file.ssce>                     — display one indexed record
    libctl remove  <file.ssce>                     — drop a record (no-op if absent)
    libctl rebuild <library-root> [--skip-errors]  — reconcile index with folder
    libctl stats                                   — index metrics
    libctl reindex [--tokenizer T]                 — re-derive the full-text index
    libctl serve                                   — start MCP server (foreground)

Environment variables:
    LIBCTL_DB       Path to SQLite database (default: per-user config dir)
    LIBCTL_CONFIG   JSON config file
    LIBCTL_FTS      FTS5 tokenizer preset: default|en|raw

Precedence (invariant):
    CLI --flag  >  LIBCTL_* env var  >  config file  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (bad args, missing path, malformed document)
    2  Internal failure (store error, unexpected exception)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from libctl.errors import LibraryError, StoreError

logger = logging.getLogger(__name__)


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    """Parse string env var with fallback (empty counts as unset)."""
    return os.environ.get(name) or default


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _load_config(args: argparse.Namespace):
    """Config file (--config > LIBCTL_CONFIG) with CLI/env overrides applied."""
    from libctl.config import load_config
    from libctl.store import FTS_TOKENIZER_PRESETS

    config = load_config(
        getattr(args, "config", None) or _env_str("LIBCTL_CONFIG"), strict=True,
    )
    db = getattr(args, "db", None) or _env_str("LIBCTL_DB")
    if db:
        config.store.db_path = db
    fts = getattr(args, "fts_tokenizer", None) or _env_str("LIBCTL_FTS")
    if fts:
        config.store.fts_tokenizer = FTS_TOKENIZER_PRESETS.get(fts, fts)
    return config


def _open_store(config):
    """Open the LibraryStore. Creates the DB and parent dirs if needed."""
    from libctl.store import LibraryStore
    return LibraryStore.from_config(config.store)


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _print_files(files, as_json: bool) -> None:
    if as_json:
        print(json.dumps([f.to_dict() for f in files], indent=2, ensure_ascii=False))
        return
    for f in files:
        when = f.modified or "-"
        title = f.title or f.filename
        print(f"{when:<25} {title}")
        print(f"{'':<25} {f.path}")


# ===========================================================================
# Mutation commands
# ===========================================================================


def cmd_add(args: argparse.Namespace) -> None:
    """Index one document and mark it opened now."""
    from libctl.envelope import read_envelope, record_from_envelope
    from libctl.types import _now_iso

    path = os.path.abspath(args.path)
    record = record_from_envelope(path, read_envelope(path))
    record.last_opened = _now_iso()

    store = _open_store(_load_config(args))
    try:
        file_id = store.upsert(record)
    finally:
        store.close()
    if getattr(args, "json", False):
        print(json.dumps({"id": file_id, "path": path}))
    else:
        _info(f"[add] Indexed {path} (id={file_id})")


def cmd_open(args: argparse.Namespace) -> None:
    """Mark an indexed document as opened now."""
    from libctl.types import _now_iso

    path = os.path.abspath(args.path)
    store = _open_store(_load_config(args))
    try:
        updated = store.touch_last_opened(path, args.timestamp or _now_iso())
    finally:
        store.close()
    if not updated:
        _info(f"[open] Not in library (nothing to update): {path}")


def cmd_remove(args: argparse.Namespace) -> None:
    """Drop a record from the index."""
    path = os.path.abspath(args.path)
    store = _open_store(_load_config(args))
    try:
        removed = store.delete(path)
    finally:
        store.close()
    _info(f"[remove] {'Removed' if removed else 'Not in library'}: {path}")


def cmd_rebuild(args: argparse.Namespace) -> None:
    """Reconcile the index with a library folder."""
    from libctl.scan import rebuild_from_library

    config = _load_config(args)
    on_error = "skip" if args.skip_errors else config.scan.on_error
    store = _open_store(config)
    try:
        result = rebuild_from_library(
            store, args.root,
            extension=config.scan.extension,
            on_error=on_error,
            follow_symlinks=config.scan.follow_symlinks,
        )
    finally:
        store.close()

    if getattr(args, "json", False):
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return
    for failure in result.failures:
        _warn(f"[rebuild] Skipped {failure.path}: {failure.message}")
    _info(
        f"[rebuild] {result.files_pruned} pruned, "
        f"{result.files_skipped} skipped in {result.root}"
    )
    print(result.files_processed)


# ===========================================================================
# Query commands
# ===========================================================================


def cmd_recent(args: argparse.Namespace) -> None:
    """List recently opened documents."""
    config = _load_config(args)
    store = _open_store(config)
    try:
        files = store.get_recent_files(args.k or config.search.recent_limit)
    finally:
        store.close()
    if not files and not getattr(args, "json", False):
        _info("No recent files.")
        return
    _print_files(files, getattr(args, "json", False))


def cmd_search(args: argparse.Namespace) -> None:
    """Search the library index."""
    from libctl.types import SearchParams

    config = _load_config(args)
    params = SearchParams(
        query=args.query,
        from_date=args.from_date,
        to_date=args.to_date,
        limit=args.k or config.search.default_limit,
    )
    store = _open_store(config)
    try:
        files = store.search(params)
    finally:
        store.close()
    if not files and not getattr(args, "json", False):
        _info("No results found.")
        return
    _print_files(files, getattr(args, "json", False))


def cmd_show(args: argparse.Namespace) -> None:
    """Display one indexed record."""
    path = os.path.abspath(args.path)
    store = _open_store(_load_config(args))
    try:
        record = store.get_file(path)
    finally:
        store.close()
    if record is None:
        _warn(f"Not in library: {path}")
        sys.exit(1)

    if getattr(args, "json", False):
        print(json.dumps(record.to_dict(), indent=2, ensure_ascii=False))
        return
    print(f"ID:          {record.id}")
    print(f"Path:        {record.path}")
    print(f"Filename:    {record.filename}")
    print(f"Title:       {record.title or ''}")
    print(f"Summary:     {record.summary or ''}")
    print(f"Keywords:    {record.keywords or ''}")
    print(f"Modified:    {record.modified or ''}")
    print(f"Last opened: {record.last_opened or ''}")
    print(f"Snapshots:   {record.snapshot_count}")
    print(f"Thumbnail:   {'yes' if record.thumbnail else 'no'}")


# ===========================================================================
# Admin commands
# ===========================================================================


def cmd_stats(args: argparse.Namespace) -> None:
    """Show index statistics."""
    store = _open_store(_load_config(args))
    try:
        stats = store.stats()
    finally:
        store.close()

    if getattr(args, "json", False):
        print(json.dumps(stats, indent=2, ensure_ascii=False))
        return
    print(f"Database:       {stats['db_path']}")
    print(f"Files:          {stats['total_files']}")
    print(f"Recently open:  {stats['recent_files']}")
    fts = stats["fts_tokenizer"] if stats["fts5_available"] else "unavailable (LIKE fallback)"
    print(f"Full-text:      {fts}")
    if stats["fts_tokenizer_mismatch"]:
        print(f"  (stored tokenizer {stats['fts_tokenizer_stored']!r} differs; run reindex)")
    if stats["last_rebuild_at"]:
        print(
            f"Last rebuild:   {stats['last_rebuild_at']} "
            f"({stats['last_rebuild_processed']} processed, "
            f"{stats['last_rebuild_pruned']} pruned) {stats['last_rebuild_root']}"
        )


def cmd_reindex(args: argparse.Namespace) -> None:
    """Re-derive the full-text shadow index."""
    from libctl.store import FTS_TOKENIZER_PRESETS

    store = _open_store(_load_config(args))
    try:
        tok = args.tokenizer
        count = store.rebuild_fts(FTS_TOKENIZER_PRESETS.get(tok, tok) if tok else None)
    finally:
        store.close()
    if count < 0:
        _warn("FTS5 is not available in this SQLite build.")
        sys.exit(1)
    _info(f"[reindex] {count} files indexed")


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the libctl MCP server in foreground."""
    try:
        from libctl.mcp.server import build_parser as mcp_parser, create_server
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install libctl[mcp]")
        sys.exit(1)

    server_argv: List[str] = []
    for flag in ("db", "config", "fts_tokenizer"):
        value = getattr(args, flag, None)
        if value:
            server_argv.extend([f"--{flag.replace('_', '-')}", value])
    if getattr(args, "verbose", False):
        server_argv.append("--verbose")

    try:
        mcp, store = create_server(mcp_parser().parse_args(server_argv))
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install libctl[mcp]")
        sys.exit(1)

    _info(f"libctl MCP server (db={store.db_path})")
    _info("Press Ctrl+C to stop.")
    try:
        mcp.run()
    finally:
        store.close()


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the libctl argument parser."""
    # SUPPRESS defaults prevent subparser defaults from overriding values
    # parsed at the main-parser level (argparse parents quirk).
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help="Path to SQLite database (default: LIBCTL_DB or per-user config dir)",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="JSON config file (default: LIBCTL_CONFIG)",
    )
    _common.add_argument(
        "--fts-tokenizer", default=argparse.SUPPRESS,
        help="FTS5 tokenizer preset: default|en|raw (default: LIBCTL_FTS or default)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="libctl",
        description="libctl — searchable index of library documents",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    p_add = sub.add_parser("add", parents=[_common], help="Index one document and mark it opened")
    p_add.add_argument("path", help="Document file")
    p_add.set_defaults(func=cmd_add)

    p_open = sub.add_parser("open", parents=[_common], help="Mark an indexed document opened")
    p_open.add_argument("path", help="Document file")
    p_open.add_argument("--timestamp", default=None, help="ISO-8601 time (default: now)")
    p_open.set_defaults(func=cmd_open)

    p_recent = sub.add_parser("recent", parents=[_common], help="Recently opened documents")
    p_recent.add_argument("-k", type=int, default=None, help="Max results (default: 20)")
    p_recent.set_defaults(func=cmd_recent)

    p_search = sub.add_parser("search", parents=[_common], help="Search the library")
    p_search.add_argument("query", nargs="?", default=None, help="Search terms (prefix match)")
    p_search.add_argument("--from", dest="from_date", default=None, help="Modified on/after")
    p_search.add_argument("--to", dest="to_date", default=None, help="Modified on/before")
    p_search.add_argument("-k", type=int, default=None, help="Max results (default: 50)")
    p_search.set_defaults(func=cmd_search)

    p_show = sub.add_parser("show", parents=[_common], help="Show one indexed record")
    p_show.add_argument("path", help="Document file")
    p_show.set_defaults(func=cmd_show)

    p_remove = sub.add_parser("remove", parents=[_common], help="Remove a record")
    p_remove.add_argument("path", help="Document file")
    p_remove.set_defaults(func=cmd_remove)

    p_rebuild = sub.add_parser("rebuild", parents=[_common], help="Reconcile index with a library folder")
    p_rebuild.add_argument("root", help="Library root directory")
    p_rebuild.add_argument(
        "--skip-errors", action="store_true",
        help="Skip unreadable or malformed documents instead of aborting",
    )
    p_rebuild.set_defaults(func=cmd_rebuild)

    p_stats = sub.add_parser("stats", parents=[_common], help="Index statistics")
    p_stats.set_defaults(func=cmd_stats)

    p_reindex = sub.add_parser("reindex", parents=[_common], help="Rebuild the full-text index")
    p_reindex.add_argument("--tokenizer", default=None, help="New tokenizer preset or string")
    p_reindex.set_defaults(func=cmd_reindex)

    p_serve = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: libctl <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args(argv)

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        # Handle broken pipe gracefully (e.g. libctl search | head)
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except StoreError as e:
        _warn(f"Store error: {e}")
        sys.exit(2)
    except (LibraryError, ValueError) as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
