"""
MCP Audit Logger — Structured JSONL logging for library tool calls.

One record per tool call, written after the call completes (success or
failure). Records are schema-versioned so they can be filtered with jq.

Privacy rules:
- Search terms are never logged verbatim beyond a short preview
- A SHA-256 hash allows correlating repeated queries

The log() method is fire-and-forget: catches all exceptions
internally and never disrupts tool execution.
"""

from __future__ import annotations

import hashlib
import json
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

AUDIT_SCHEMA_VERSION = 1
PREVIEW_MAX_CHARS = 40


class AuditLogger:
    """Structured JSONL audit logger for MCP tool calls."""

    def __init__(self, output: Optional[TextIO] = None):
        """
        Args:
            output: File handle for audit output. None → stderr.
        """
        self._output = output if output is not None else sys.stderr

    def new_rid(self) -> str:
        """Generate a new request ID (UUID4 hex string)."""
        return uuid.uuid4().hex

    def log(
        self,
        tool: str,
        rid: str,
        db_path: str,
        outcome: str,
        detail: Optional[Dict[str, Any]] = None,
        latency_ms: float = 0.0,
    ) -> None:
        """
        Write one JSONL audit record. Fire-and-forget — never raises.

        Args:
            tool: MCP tool name (e.g. "library_search").
            rid: Request ID (from new_rid()).
            db_path: Index database path.
            outcome: "ok" or "error".
            detail: Tool-specific fields.
            latency_ms: Wall-clock latency in milliseconds.
        """
        try:
            now = datetime.now(timezone.utc)
            record = {
                "v": AUDIT_SCHEMA_VERSION,
                "ts": now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z",
                "rid": rid,
                "tool": tool,
                "db": db_path,
                "outcome": outcome,
            }
            if detail:
                record["d"] = detail
            record["ms"] = round(latency_ms, 1)

            line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
            self._output.write(line + "\n")
            self._output.flush()
        except Exception:
            # fire-and-forget
            pass

    @staticmethod
    def make_query_detail(query: Optional[str]) -> Dict[str, Any]:
        """
        Build safe audit detail fields for a search query.

        Returns:
            Dict with query length, terms count, hash and a short preview.
            Empty dict for an absent query.
        """
        if query is None:
            return {}
        digest = hashlib.sha256(query.encode("utf-8")).hexdigest()
        preview = query[:PREVIEW_MAX_CHARS].replace("\n", " ").replace("\r", "")
        if len(query) > PREVIEW_MAX_CHARS:
            preview = preview.rstrip() + "…"  # …
        return {
            "query_len": len(query),
            "terms": len(query.split()),
            "hash": digest,
            "preview": preview,
        }
