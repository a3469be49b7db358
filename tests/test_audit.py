"""
Tests for libctl.mcp.audit — structured JSONL audit records for tool calls.
"""

import hashlib
import io
import json

import pytest

from libctl.mcp.audit import AUDIT_SCHEMA_VERSION, PREVIEW_MAX_CHARS, AuditLogger


@pytest.fixture
def buf():
    """StringIO buffer for capturing audit output."""
    return io.StringIO()


@pytest.fixture
def logger(buf):
    """AuditLogger writing to an in-memory buffer."""
    return AuditLogger(output=buf)


def _parse_record(buf: io.StringIO) -> dict:
    buf.seek(0)
    lines = [ln for ln in buf.read().strip().splitlines() if ln]
    assert len(lines) == 1, f"Expected 1 line, got {len(lines)}"
    return json.loads(lines[0])


class TestRecordShape:
    def test_required_fields(self, logger, buf):
        logger.log("library_stats", logger.new_rid(), "/tmp/library.db", "ok", latency_ms=1.234)
        rec = _parse_record(buf)
        assert rec["v"] == AUDIT_SCHEMA_VERSION
        assert rec["tool"] == "library_stats"
        assert rec["db"] == "/tmp/library.db"
        assert rec["outcome"] == "ok"
        assert rec["ms"] == 1.2
        assert rec["ts"].endswith("Z")
        assert "d" not in rec

    def test_detail_included(self, logger, buf):
        logger.log("library_rebuild", "r1", "db", "ok", detail={"processed": 3})
        assert _parse_record(buf)["d"] == {"processed": 3}

    def test_rids_unique(self, logger):
        assert len({logger.new_rid() for _ in range(100)}) == 100


class TestQueryDetail:
    def test_absent_query(self):
        assert AuditLogger.make_query_detail(None) == {}

    def test_hash_and_terms(self):
        d = AuditLogger.make_query_detail("quart rep")
        assert d["hash"] == hashlib.sha256(b"quart rep").hexdigest()
        assert d["terms"] == 2
        assert d["query_len"] == 9

    def test_preview_truncated(self):
        d = AuditLogger.make_query_detail("x" * 500)
        assert len(d["preview"]) <= PREVIEW_MAX_CHARS + 1
        assert d["preview"].endswith("…")


class TestFireAndForget:
    def test_broken_output_never_raises(self):
        class Broken:
            def write(self, _):
                raise OSError("disk full")

            def flush(self):
                pass

        AuditLogger(output=Broken()).log("library_stats", "r", "db", "ok")
