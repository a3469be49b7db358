"""
libctl MCP Server — library index over the Model Context Protocol

Standalone MCP server exposing the library index commands (upsert,
recent, search, remove, touch, rebuild) to any MCP-compatible client.

Architecture: thin MCP layer delegating to LibraryStore and libctl.scan.
Zero business logic in this module.

Usage:
    python -m libctl.mcp.server --db /path/to/library.db
    python -m libctl.mcp.server --fts-tokenizer en
    python -m libctl.mcp.server --config ~/.config/ssce-desktop/libctl.json
"""

from __future__ import annotations

import argparse
import logging
import os

logger = logging.getLogger(__name__)

_MCP_INSTRUCTIONS = (
    "Searchable catalog of the user's .ssce documents (10 tools).\n"
    "\n"
    "FIND:    library_search (terms are prefix-matched, all must match;\n"
    "         optional from_date/to_date bound the document's modified time),\n"
    "         library_recent_files, library_get_file, library_file_metadata.\n"
    "UPDATE:  library_upsert_file, library_touch (mark opened),\n"
    "         library_remove_file.\n"
    "SYNC:    library_rebuild re-reads a library folder and prunes records\n"
    "         whose file is gone. It locks the index until it finishes.\n"
    "ADMIN:   library_stats, library_reindex.\n"
)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the library MCP server."""
    p = argparse.ArgumentParser(
        prog="libctl-mcp",
        description="libctl MCP Server — searchable library index",
    )
    p.add_argument(
        "--db",
        default=os.environ.get("LIBCTL_DB"),
        help="SQLite database path (default: $LIBCTL_DB or the per-user config dir)",
    )
    p.add_argument(
        "--config",
        default=os.environ.get("LIBCTL_CONFIG"),
        help="JSON config file (default: $LIBCTL_CONFIG)",
    )
    p.add_argument(
        "--fts-tokenizer",
        default=os.environ.get("LIBCTL_FTS"),
        help=(
            "FTS5 tokenizer preset: default (accent-insensitive), en (porter "
            "stemming), raw (unicode61), or a custom tokenizer string"
        ),
    )
    p.add_argument(
        "--audit-log",
        default=None,
        help="Audit log file path (default: stderr)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with library tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, store) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from libctl.config import load_config
    from libctl.mcp.audit import AuditLogger
    from libctl.mcp.tools import register_library_tools
    from libctl.store import FTS_TOKENIZER_PRESETS, LibraryStore

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config, strict=True)
    if args.db:
        config.store.db_path = args.db
    if args.fts_tokenizer:
        config.store.fts_tokenizer = FTS_TOKENIZER_PRESETS.get(
            args.fts_tokenizer, args.fts_tokenizer,
        )

    store = LibraryStore.from_config(config.store)

    audit_output = None
    if args.audit_log:
        audit_output = open(args.audit_log, "a", encoding="utf-8")
    audit = AuditLogger(output=audit_output)

    mcp = FastMCP(
        name="libctl Library",
        instructions=_MCP_INSTRUCTIONS,
    )
    register_library_tools(mcp, store, config, audit=audit)

    logger.info(
        "libctl MCP server ready: db=%s, fts=%s",
        store.db_path, config.store.fts_tokenizer,
    )
    return mcp, store


def main():
    """CLI entry point — parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, store = create_server(args)
    try:
        mcp.run()
    finally:
        store.close()


if __name__ == "__main__":
    main()
