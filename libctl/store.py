"""
Library Store — SQLite Persistent Backend

Tables:
    files        - One row per indexed document, unique by absolute path
    files_fts    - FTS5 shadow index: (filename, title, summary, keywords),
                   rowid = files.id
    schema_meta  - Key/value metadata (schema version, tokenizer, last rebuild)

Shadow synchronization is an explicit write path, not engine triggers:
every mutation of ``files`` runs inside one BEGIN IMMEDIATE ... COMMIT unit
that also deletes the old shadow entry for that id and inserts the new
projection. A crash between the row write and the shadow write rolls both
back. ``verify_shadow()`` re-derives the projection from ``files`` and
reports any id that disagrees.

Thread safety: one connection (check_same_thread=False) behind a re-entrant
lock. Each public operation holds the lock for its full duration;
``exclusive()`` lets a caller (reconciliation) hold it across many
operations.

No schema migrations: tables are created with IF NOT EXISTS only.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from libctl.errors import StoreError
from libctl.query import (
    FILE_COLUMNS,
    SHADOW_COLUMNS,
    compile_recent,
    compile_search,
)
from libctl.types import LibraryFile, RebuildResult, SearchParams

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS files (
    id             INTEGER PRIMARY KEY,
    path           TEXT UNIQUE NOT NULL,
    filename       TEXT NOT NULL,
    thumbnail      TEXT,
    title          TEXT,
    summary        TEXT,
    keywords       TEXT,              -- keyword list joined with spaces
    modified       TEXT,              -- author-declared, from front matter
    last_opened    TEXT,              -- set when opened through the app
    snapshot_count INTEGER NOT NULL DEFAULT 0 CHECK(snapshot_count >= 0)
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_files_modified ON files(modified);
CREATE INDEX IF NOT EXISTS idx_files_last_opened ON files(last_opened);
"""

# ---------------------------------------------------------------------------
# FTS5 Schema (separate, requires the SQLite FTS5 extension)
# ---------------------------------------------------------------------------
# The shadow table stores its own copy of the projection (no content=
# option), so deleting an entry needs only the rowid and the projection can
# be compared column by column against files.
# ---------------------------------------------------------------------------

# Conservative whitelist for FTS5 tokenizer strings: only alphanumeric, space,
# underscore, dot, hyphen.  Rejects quotes, semicolons, parentheses.
_FTS_TOKENIZER_PATTERN = re.compile(r"^[a-zA-Z0-9_ .\-]+$")

FTS_TOKENIZER_PRESETS = {
    "default": "unicode61 remove_diacritics 2",
    "en": "porter unicode61 remove_diacritics 2",
    "raw": "unicode61",
}


def _validate_fts_tokenizer(tokenizer: str) -> str:
    """Validate and return a safe FTS5 tokenizer string."""
    tokenizer = tokenizer.strip()
    if not tokenizer:
        raise ValueError("FTS5 tokenizer string cannot be empty")
    if not _FTS_TOKENIZER_PATTERN.match(tokenizer):
        raise ValueError(
            f"Unsafe FTS5 tokenizer string: {tokenizer!r} — "
            "only [a-zA-Z0-9_ .-] characters allowed"
        )
    return tokenizer


def _fts5_schema_sql(tokenizer: str) -> str:
    """Generate FTS5 schema SQL with a validated tokenizer string."""
    safe = _validate_fts_tokenizer(tokenizer)
    return f"""
CREATE VIRTUAL TABLE IF NOT EXISTS files_fts USING fts5(
    {", ".join(SHADOW_COLUMNS)},
    tokenize='{safe}'
);
"""


_UPSERT_SQL = """
INSERT INTO files (path, filename, thumbnail, title, summary, keywords,
                   modified, last_opened, snapshot_count)
VALUES (?,?,?,?,?,?,?,?,?)
ON CONFLICT(path) DO UPDATE SET
    filename = excluded.filename,
    thumbnail = excluded.thumbnail,
    title = excluded.title,
    summary = excluded.summary,
    keywords = excluded.keywords,
    modified = excluded.modified,
    last_opened = {last_opened},
    snapshot_count = excluded.snapshot_count
"""


# ---------------------------------------------------------------------------
# LibraryStore
# ---------------------------------------------------------------------------

class LibraryStore:
    """
    SQLite-backed catalog of library files with a synchronized FTS5 index.

    Thread-safe via an explicit re-entrant lock.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        wal_mode: bool = True,
        fts_tokenizer: Optional[str] = None,
        busy_timeout_s: float = 5.0,
    ):
        """Open (creating if needed) the library index.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for disk databases.
            fts_tokenizer: FTS5 tokenizer string.  Defaults to
                ``"unicode61 remove_diacritics 2"``.  Must match
                ``[a-zA-Z0-9_ .-]+``.
            busy_timeout_s: How long a statement waits on a locked database
                before failing with StoreError.
        """
        self._db_path = db_path
        self._lock = threading.RLock()
        self._fts5_available: bool = False
        self._fts_tokenizer = _validate_fts_tokenizer(
            fts_tokenizer or FTS_TOKENIZER_PRESETS["default"]
        )
        # Auto-create parent directory for disk-backed databases.
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            # isolation_level=None: transactions are issued explicitly.
            self._conn = sqlite3.connect(
                db_path, check_same_thread=False,
                timeout=busy_timeout_s, isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            if wal_mode and db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA_SQL)
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'libctl')",
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_at', datetime('now'))",
            )
        except sqlite3.Error as exc:
            raise StoreError("open", exc) from exc
        self._init_fts5()
        logger.info(
            f"LibraryStore initialized: {db_path} "
            f"(fts5={'yes' if self._fts5_available else 'no'}"
            f"{', tokenizer=' + self._fts_tokenizer if self._fts5_available else ''})"
        )

    @classmethod
    def from_config(cls, config) -> LibraryStore:
        """Open a store from a StoreConfig."""
        return cls(
            db_path=config.resolved_db_path(),
            wal_mode=config.wal_mode,
            fts_tokenizer=config.fts_tokenizer,
            busy_timeout_s=config.busy_timeout_s,
        )

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def fts5_available(self) -> bool:
        return self._fts5_available

    def _init_fts5(self) -> None:
        """
        Create the FTS5 shadow table.

        If the SQLite build does not include FTS5, ``_fts5_available`` stays
        False: shadow writes are skipped and full-text queries use the
        LIKE-based prefix match instead.
        """
        try:
            fts_existed = self._fts_table_sql() is not None
            self._check_fts_tokenizer_mismatch()
            self._conn.executescript(_fts5_schema_sql(self._fts_tokenizer))
            self._fts5_available = True
            if not fts_existed:
                self._set_meta("fts_tokenizer", self._fts_tokenizer)
                self._set_meta("fts_indexed_at", None)
                # Rows written while FTS5 was unavailable need a projection.
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    self._shadow_rebuild_all()
                    self._conn.execute("COMMIT")
                except Exception:
                    self._conn.execute("ROLLBACK")
                    raise
            logger.debug(
                f"FTS5 shadow table initialized (tokenizer={self._fts_tokenizer})"
            )
        except sqlite3.OperationalError as exc:
            # Typical message: "no such module: fts5"
            self._fts5_available = False
            logger.info(f"FTS5 not available, falling back to LIKE search: {exc}")

    def _fts_table_sql(self) -> Optional[str]:
        row = self._conn.execute(
            "SELECT sql FROM sqlite_master WHERE type='table' AND name='files_fts'"
        ).fetchone()
        return None if row is None else (row[0] or "")

    def _check_fts_tokenizer_mismatch(self) -> None:
        """Warn if an existing FTS table uses a different tokenizer than configured."""
        existing_sql = self._fts_table_sql()
        if existing_sql is None:
            return
        match = re.search(r"tokenize='([^']*)'", existing_sql)
        existing_tok = match.group(1).strip() if match else "unicode61"
        if existing_tok != self._fts_tokenizer:
            logger.warning(
                f"FTS tokenizer mismatch: existing='{existing_tok}', "
                f"configured='{self._fts_tokenizer}'. Call rebuild_fts() to "
                f"recreate the shadow index with the new tokenizer."
            )

    def _check_tokenizer_loads(self, tokenizer: str) -> None:
        """Raise ValueError if FTS5 rejects *tokenizer* (e.g. unknown name)."""
        with self._guard("rebuild_fts"):
            try:
                self._conn.execute(
                    "CREATE VIRTUAL TABLE temp.files_fts_check "
                    f"USING fts5(x, tokenize='{tokenizer}')"
                )
            except sqlite3.OperationalError as exc:
                raise ValueError(f"Unknown FTS5 tokenizer {tokenizer!r}: {exc}") from exc
            self._conn.execute("DROP TABLE temp.files_fts_check")

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    # -- Serialization -----------------------------------------------------

    @contextmanager
    def exclusive(self) -> Iterator[LibraryStore]:
        """Hold exclusive access to the store across several operations."""
        with self._lock:
            yield self

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Serialize and translate sqlite3 errors into StoreError."""
        with self._lock:
            try:
                yield
            except sqlite3.Error as exc:
                raise StoreError(operation, exc) from exc

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[None]:
        """One atomic write unit: BEGIN IMMEDIATE ... COMMIT, ROLLBACK on error."""
        with self._guard(operation):
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise

    # -- Shadow index synchronization (call inside a transaction) ----------

    def _shadow_replace(self, file_id: int) -> None:
        """Delete the shadow entry for *file_id* and insert the current projection."""
        if not self._fts5_available:
            return
        self._conn.execute("DELETE FROM files_fts WHERE rowid=?", (file_id,))
        self._conn.execute(
            f"INSERT INTO files_fts (rowid, {', '.join(SHADOW_COLUMNS)}) "
            f"SELECT id, {', '.join(SHADOW_COLUMNS)} FROM files WHERE id=?",
            (file_id,),
        )

    def _shadow_delete(self, file_id: int) -> None:
        if not self._fts5_available:
            return
        self._conn.execute("DELETE FROM files_fts WHERE rowid=?", (file_id,))

    def _shadow_rebuild_all(self) -> int:
        self._conn.execute("DELETE FROM files_fts")
        self._conn.execute(
            f"INSERT INTO files_fts (rowid, {', '.join(SHADOW_COLUMNS)}) "
            f"SELECT id, {', '.join(SHADOW_COLUMNS)} FROM files"
        )
        return self._conn.execute("SELECT COUNT(*) AS cnt FROM files").fetchone()["cnt"]

    def verify_shadow(self) -> List[int]:
        """Return ids whose shadow projection disagrees with the files row.

        Covers missing entries, stale projections, and orphan shadow rows.
        An empty list means the index is consistent. Always empty when FTS5
        is unavailable.
        """
        if not self._fts5_available:
            return []
        cols = ", ".join(SHADOW_COLUMNS)
        with self._guard("verify_shadow"):
            base = {
                r["id"]: self._row_to_file(r).projection()
                for r in self._conn.execute(
                    f"SELECT {', '.join(FILE_COLUMNS)} FROM files"
                )
            }
            shadow = {
                r["rowid"]: tuple(r[c] for c in SHADOW_COLUMNS)
                for r in self._conn.execute(f"SELECT rowid, {cols} FROM files_fts")
            }
        bad = [fid for fid, proj in base.items() if shadow.get(fid) != proj]
        bad.extend(fid for fid in shadow if fid not in base)
        return sorted(bad)

    def rebuild_fts(self, tokenizer: Optional[str] = None) -> int:
        """
        Re-derive the whole shadow index from ``files``.

        If *tokenizer* is provided and differs from the current tokenizer,
        the FTS table is dropped and recreated with the new tokenizer.
        A tokenizer SQLite does not know raises ValueError and leaves the
        current index in place.

        Returns the number of rows indexed, or -1 if FTS5 is unavailable.
        """
        if tokenizer and tokenizer.strip() != self._fts_tokenizer:
            new_tok = _validate_fts_tokenizer(tokenizer)
            if self._fts5_available:
                self._check_tokenizer_loads(new_tok)
            logger.info(
                f"FTS tokenizer change: '{self._fts_tokenizer}' → '{new_tok}'"
            )
            with self._guard("rebuild_fts"):
                self._conn.execute("DROP TABLE IF EXISTS files_fts")
                self._fts_tokenizer = new_tok
                self._init_fts5()

        if not self._fts5_available:
            logger.warning("rebuild_fts called but FTS5 is not available")
            return -1

        with self._transaction("rebuild_fts"):
            count = self._shadow_rebuild_all()
            self._set_meta("fts_tokenizer", self._fts_tokenizer)
            self._set_meta("fts_indexed_at", None)
            prev = self._get_meta("fts_reindex_count")
            self._set_meta("fts_reindex_count", str(int(prev or 0) + 1))
        logger.info(
            f"FTS5 index rebuilt: {count} files indexed "
            f"(tokenizer={self._fts_tokenizer})"
        )
        return count

    # -- Mutation API ------------------------------------------------------

    def upsert(self, record: LibraryFile, *, keep_last_opened: bool = False) -> int:
        """Insert *record*, or replace every field of the row with its path.

        Args:
            record: The file record; ``record.id`` is ignored.
            keep_last_opened: Reconciliation mode. An existing non-null
                ``last_opened`` is kept (COALESCE) instead of overwritten.

        Returns:
            The row id (existing id on conflict, new id on insert).
        """
        last_opened = (
            "COALESCE(files.last_opened, excluded.last_opened)"
            if keep_last_opened else "excluded.last_opened"
        )
        with self._transaction("upsert"):
            self._conn.execute(
                _UPSERT_SQL.format(last_opened=last_opened),
                (
                    record.path, record.filename, record.thumbnail,
                    record.title, record.summary, record.keywords,
                    record.modified, record.last_opened, record.snapshot_count,
                ),
            )
            file_id = self._conn.execute(
                "SELECT id FROM files WHERE path=?", (record.path,)
            ).fetchone()["id"]
            self._shadow_replace(file_id)
        logger.debug("upsert %s -> id=%d", record.path, file_id)
        return file_id

    def delete(self, path: str) -> bool:
        """Remove the row for *path* and its shadow entry. False if absent."""
        with self._transaction("delete"):
            row = self._conn.execute(
                "SELECT id FROM files WHERE path=?", (path,)
            ).fetchone()
            if row is None:
                return False
            self._shadow_delete(row["id"])
            self._conn.execute("DELETE FROM files WHERE id=?", (row["id"],))
        logger.debug("delete %s (id=%d)", path, row["id"])
        return True

    def touch_last_opened(self, path: str, timestamp: str) -> bool:
        """Set only ``last_opened`` for *path*. False (no row created) if absent."""
        # last_opened is not projected, so the shadow entry is unchanged.
        with self._transaction("touch_last_opened"):
            cur = self._conn.execute(
                "UPDATE files SET last_opened=? WHERE path=?", (timestamp, path)
            )
        return cur.rowcount > 0

    # -- Query operations --------------------------------------------------

    def get_file(self, path: str) -> Optional[LibraryFile]:
        """Look up a single file by path."""
        with self._guard("get_file"):
            row = self._conn.execute(
                f"SELECT {', '.join(FILE_COLUMNS)} FROM files WHERE path=?",
                (path,),
            ).fetchone()
        return None if row is None else self._row_to_file(row)

    def list_paths(self) -> List[str]:
        """Every stored path, in id order."""
        with self._guard("list_paths"):
            rows = self._conn.execute("SELECT path FROM files ORDER BY id").fetchall()
        return [r["path"] for r in rows]

    def count_files(self) -> int:
        with self._guard("count_files"):
            return self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM files"
            ).fetchone()["cnt"]

    def get_recent_files(self, limit: int = 20) -> List[LibraryFile]:
        """Files with a ``last_opened`` timestamp, most recent first."""
        compiled = compile_recent(limit)
        with self._guard("get_recent_files"):
            rows = self._conn.execute(compiled.sql, compiled.params).fetchall()
        return [self._row_to_file(r) for r in rows]

    def search(self, params: SearchParams) -> List[LibraryFile]:
        """
        Date-filtered, recency-ordered search.

        Non-blank queries go through the FTS5 shadow index (prefix AND);
        blank or absent queries list files. On an FTS5 error the same
        request is retried through the LIKE path.
        """
        compiled = compile_search(params, fts_available=self._fts5_available)
        with self._guard("search"):
            try:
                rows = self._conn.execute(compiled.sql, compiled.params).fetchall()
            except sqlite3.OperationalError as exc:
                if compiled.mode != "fts":
                    raise
                logger.warning("FTS5 search failed, falling back to LIKE: %s", exc)
                compiled = compile_search(params, fts_available=False)
                rows = self._conn.execute(compiled.sql, compiled.params).fetchall()
        return [self._row_to_file(r) for r in rows]

    # -- Metadata & stats --------------------------------------------------

    def record_rebuild(self, result: RebuildResult) -> None:
        """Persist the outcome of a reconciliation pass in schema_meta."""
        with self._transaction("record_rebuild"):
            self._set_meta("last_rebuild_at", result.finished_at)
            self._set_meta("last_rebuild_root", result.root)
            self._set_meta("last_rebuild_processed", str(result.files_processed))
            self._set_meta("last_rebuild_pruned", str(result.files_pruned))

    def stats(self) -> Dict[str, Any]:
        """Summary statistics for the library index."""
        with self._guard("stats"):
            total = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM files"
            ).fetchone()["cnt"]
            opened = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM files WHERE last_opened IS NOT NULL"
            ).fetchone()["cnt"]
            meta = {
                r["key"]: r["value"]
                for r in self._conn.execute("SELECT key, value FROM schema_meta")
            }
        stored_tok = meta.get("fts_tokenizer")
        mismatch = (
            stored_tok is not None and stored_tok != self._fts_tokenizer
        ) if self._fts5_available else False
        return {
            "db_path": self._db_path,
            "schema_version": int(meta.get("schema_version", SCHEMA_VERSION)),
            "total_files": total,
            "recent_files": opened,
            "fts5_available": self._fts5_available,
            "fts_tokenizer": self._fts_tokenizer if self._fts5_available else None,
            "fts_tokenizer_stored": stored_tok,
            "fts_tokenizer_mismatch": mismatch,
            "fts_indexed_at": meta.get("fts_indexed_at"),
            "fts_reindex_count": int(meta.get("fts_reindex_count", 0)),
            "last_rebuild_at": meta.get("last_rebuild_at"),
            "last_rebuild_root": meta.get("last_rebuild_root"),
            "last_rebuild_processed": (
                int(meta["last_rebuild_processed"])
                if "last_rebuild_processed" in meta else None
            ),
            "last_rebuild_pruned": (
                int(meta["last_rebuild_pruned"])
                if "last_rebuild_pruned" in meta else None
            ),
        }

    # -- Internal helpers --------------------------------------------------

    def _get_meta(self, key: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT value FROM schema_meta WHERE key=?", (key,)
        ).fetchone()
        return row[0] if row else None

    def _set_meta(self, key: str, value: Optional[str]) -> None:
        """Write a schema_meta entry (must be called within lock). None = now."""
        if value is None:
            self._conn.execute(
                "INSERT OR REPLACE INTO schema_meta (key, value) VALUES (?, datetime('now'))",
                (key,),
            )
        else:
            self._conn.execute(
                "INSERT OR REPLACE INTO schema_meta (key, value) VALUES (?, ?)",
                (key, value),
            )

    @staticmethod
    def _row_to_file(row: sqlite3.Row) -> LibraryFile:
        """Convert a SQLite Row to LibraryFile."""
        return LibraryFile(
            id=row["id"],
            path=row["path"],
            filename=row["filename"],
            thumbnail=row["thumbnail"],
            title=row["title"],
            summary=row["summary"],
            keywords=row["keywords"],
            modified=row["modified"],
            last_opened=row["last_opened"],
            snapshot_count=row["snapshot_count"] or 0,
        )
