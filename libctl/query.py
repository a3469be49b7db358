"""
Query Engine — search request to SQL composition.

Translates a SearchParams into exactly one SQL statement against the store:

    full-text path   query has at least one non-blank token
                     -> JOIN files_fts, MATCH "tok1"* "tok2"* (implicit AND)
    LIKE path        same as full-text when FTS5 is unavailable
                     -> each token must prefix-match a word in any shadow field
    listing path     query absent or blank
                     -> plain SELECT over files

Date bounds (``modified >= from_date``, ``modified <= to_date``) are ANDed
onto whichever path is chosen. Ordering is always ``modified DESC`` with
``id DESC`` as a stable tie-break, capped at ``limit``.

This module is pure: it builds SQL and parameters and never touches a
connection, so composition can be tested without a database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Literal, Optional

from libctl.types import SearchParams

logger = logging.getLogger(__name__)

QueryMode = Literal["fts", "like", "list", "recent"]

FILE_COLUMNS = (
    "id", "path", "filename", "thumbnail", "title", "summary",
    "keywords", "modified", "last_opened", "snapshot_count",
)

# Fields projected into the full-text shadow index (order matters)
SHADOW_COLUMNS = ("filename", "title", "summary", "keywords")

_SELECT_F = ", ".join(f"f.{c}" for c in FILE_COLUMNS)


@dataclass
class CompiledQuery:
    """A ready-to-execute statement and its bound parameters."""

    mode: QueryMode
    sql: str
    params: List[Any] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Term handling
# ---------------------------------------------------------------------------


def prefix_match_expression(terms: List[str]) -> str:
    """Build an FTS5 MATCH string: every term quoted and prefix-expanded.

    Quoting keeps FTS5 operators and punctuation in user input from being
    parsed as query syntax; juxtaposition gives AND semantics.

    Examples:
        >>> prefix_match_expression(["quart", "rep"])
        '"quart"* "rep"*'
        >>> prefix_match_expression(['say"hi'])
        '"say""hi"*'
    """
    return " ".join('"' + t.replace('"', '""') + '"*' for t in terms)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _validate_limit(limit: Any) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValueError(f"limit must be a positive integer, got {limit!r}")
    return limit


def _validate_date(name: str, value: Any) -> Optional[str]:
    if value is not None and not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {type(value).__name__}")
    return value


# ---------------------------------------------------------------------------
# Compilers
# ---------------------------------------------------------------------------


def compile_search(
    params: SearchParams, *, fts_available: bool = True,
) -> CompiledQuery:
    """Compile a search request into one statement.

    Raises:
        ValueError: limit is not a positive integer or a date is not a string.
    """
    limit = _validate_limit(params.effective_limit)
    from_date = _validate_date("from_date", params.from_date)
    to_date = _validate_date("to_date", params.to_date)
    terms = params.terms

    conditions: List[str] = []
    bound: List[Any] = []

    if not terms:
        mode: QueryMode = "list"
        source = "files f"
    elif fts_available:
        mode = "fts"
        source = "files f JOIN files_fts ON f.id = files_fts.rowid"
        conditions.append("files_fts MATCH ?")
        bound.append(prefix_match_expression(terms))
    else:
        mode = "like"
        source = "files f"
        for term in terms:
            esc = _escape_like(term)
            per_field = []
            for col in SHADOW_COLUMNS:
                per_field.append(
                    f"f.{col} LIKE ? ESCAPE '\\' OR f.{col} LIKE ? ESCAPE '\\'"
                )
                bound.extend([f"{esc}%", f"% {esc}%"])
            conditions.append("(" + " OR ".join(per_field) + ")")

    if from_date is not None:
        conditions.append("f.modified >= ?")
        bound.append(from_date)
    if to_date is not None:
        conditions.append("f.modified <= ?")
        bound.append(to_date)

    where = " AND ".join(conditions) if conditions else "1=1"
    sql = (
        f"SELECT {_SELECT_F} FROM {source} WHERE {where} "
        "ORDER BY f.modified DESC, f.id DESC LIMIT ?"
    )
    bound.append(limit)
    logger.debug("[query] mode=%s terms=%d where=%s", mode, len(terms), where)
    return CompiledQuery(mode=mode, sql=sql, params=bound)


def compile_recent(limit: int) -> CompiledQuery:
    """Files with a last_opened timestamp, most recently opened first."""
    limit = _validate_limit(limit)
    sql = (
        f"SELECT {_SELECT_F} FROM files f "
        "WHERE f.last_opened IS NOT NULL "
        "ORDER BY f.last_opened DESC, f.id DESC LIMIT ?"
    )
    return CompiledQuery(mode="recent", sql=sql, params=[limit])
