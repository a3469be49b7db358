"""
Tests for libctl.store — schema, mutation API, shadow index sync, search.
"""

import sqlite3
import threading
import time
from dataclasses import replace

import pytest

from libctl.errors import StoreError
from libctl.store import FTS_TOKENIZER_PRESETS, SCHEMA_VERSION, LibraryStore
from libctl.types import LibraryFile, SearchParams


@pytest.fixture
def store():
    """Create an in-memory store for testing."""
    s = LibraryStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def disk_store(tmp_path):
    """Create a disk-backed store for testing."""
    s = LibraryStore(db_path=str(tmp_path / "index" / "library.db"))
    yield s
    s.close()


def make_file(name="report.ssce", **kw):
    kw.setdefault("title", "Quarterly Report")
    return LibraryFile(path=f"/library/{name}", **kw)


@pytest.fixture
def dated_store(store):
    """Three files modified one month apart."""
    for month, title in (("01", "Alpha notes"), ("02", "Beta notes"), ("03", "Gamma notes")):
        store.upsert(LibraryFile(
            path=f"/library/{title.split()[0].lower()}.ssce",
            title=title,
            modified=f"2024-{month}-01",
        ))
    return store


def _paths(files):
    return [f.path for f in files]


def _require_fts(store):
    if not store.fts5_available:
        pytest.skip("FTS5 not available")


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_schema_version(self, store):
        row = store._conn.execute(
            "SELECT value FROM schema_meta WHERE key='schema_version'"
        ).fetchone()
        assert row["value"] == str(SCHEMA_VERSION)

    def test_created_by(self, store):
        row = store._conn.execute(
            "SELECT value FROM schema_meta WHERE key='created_by'"
        ).fetchone()
        assert row["value"] == "libctl"

    def test_files_columns(self, store):
        cols = {
            r["name"] for r in store._conn.execute("PRAGMA table_info(files)")
        }
        assert cols == {
            "id", "path", "filename", "thumbnail", "title", "summary",
            "keywords", "modified", "last_opened", "snapshot_count",
        }

    def test_fts_virtual_table(self, store):
        if not store.fts5_available:
            pytest.skip("FTS5 not available")
        names = {
            r["name"] for r in store._conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            )
        }
        assert "files_fts" in names

    def test_no_sync_triggers(self, store):
        triggers = store._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='trigger'"
        ).fetchall()
        assert triggers == []

    def test_disk_store_creates_parent_dir(self, tmp_path):
        db = tmp_path / "nested" / "dir" / "library.db"
        s = LibraryStore(db_path=str(db))
        s.close()
        assert db.exists()

    def test_reopen_keeps_rows(self, tmp_path):
        db = str(tmp_path / "library.db")
        s = LibraryStore(db_path=db)
        s.upsert(make_file())
        s.close()
        s2 = LibraryStore(db_path=db)
        assert s2.count_files() == 1
        assert _paths(s2.search(SearchParams(query="quart"))) == ["/library/report.ssce"]
        s2.close()

    def test_unsafe_tokenizer_rejected(self):
        with pytest.raises(ValueError, match="Unsafe"):
            LibraryStore(":memory:", fts_tokenizer="unicode61'); DROP TABLE files; --")


# ---------------------------------------------------------------------------
# Mutation API
# ---------------------------------------------------------------------------


class TestUpsert:
    def test_upsert_then_read(self, store):
        record = LibraryFile(
            path="/library/a.ssce", thumbnail="data:image/png;base64,AAAA",
            title="A", summary="first", keywords="x y", modified="2024-01-01",
            last_opened="2024-01-02", snapshot_count=3,
        )
        file_id = store.upsert(record)
        assert store.get_file(record.path) == replace(record, id=file_id)

    def test_insert_assigns_new_ids(self, store):
        a = store.upsert(make_file("a.ssce"))
        b = store.upsert(make_file("b.ssce"))
        assert a != b

    def test_conflict_returns_existing_id(self, store):
        first = store.upsert(make_file(title="Old"))
        store.upsert(make_file("other.ssce"))
        second = store.upsert(make_file(title="New"))
        assert first == second
        assert store.count_files() == 2

    def test_conflict_replaces_every_field(self, store):
        store.upsert(make_file(
            summary="s", keywords="k", thumbnail="t",
            modified="2024-01-01", last_opened="2024-01-05", snapshot_count=4,
        ))
        store.upsert(make_file(title="Replaced"))
        got = store.get_file("/library/report.ssce")
        assert got.title == "Replaced"
        assert got.summary is None
        assert got.keywords is None
        assert got.thumbnail is None
        assert got.modified is None
        assert got.last_opened is None
        assert got.snapshot_count == 0

    def test_keep_last_opened_coalesces(self, store):
        store.upsert(make_file(last_opened="2024-05-01"))
        store.upsert(make_file(last_opened="2024-01-01"), keep_last_opened=True)
        assert store.get_file("/library/report.ssce").last_opened == "2024-05-01"

    def test_keep_last_opened_backfills_null(self, store):
        store.upsert(make_file())
        store.upsert(make_file(last_opened="2024-01-01"), keep_last_opened=True)
        assert store.get_file("/library/report.ssce").last_opened == "2024-01-01"

    def test_record_id_is_ignored(self, store):
        file_id = store.upsert(make_file(id=999))
        assert store.get_file("/library/report.ssce").id == file_id


class TestDelete:
    def test_delete_existing(self, store):
        store.upsert(make_file())
        assert store.delete("/library/report.ssce") is True
        assert store.get_file("/library/report.ssce") is None

    def test_delete_absent_is_noop(self, store):
        assert store.delete("/library/missing.ssce") is False

    def test_delete_removes_from_search(self, store):
        store.upsert(make_file())
        store.delete("/library/report.ssce")
        assert store.search(SearchParams(query="quarterly")) == []


class TestTouch:
    def test_touch_updates_only_last_opened(self, store):
        store.upsert(make_file(modified="2024-01-01"))
        assert store.touch_last_opened("/library/report.ssce", "2024-09-09T10:00:00") is True
        got = store.get_file("/library/report.ssce")
        assert got.last_opened == "2024-09-09T10:00:00"
        assert got.modified == "2024-01-01"
        assert got.title == "Quarterly Report"

    def test_touch_absent_creates_nothing(self, store):
        assert store.touch_last_opened("/library/ghost.ssce", "2024-01-01") is False
        assert store.count_files() == 0


# ---------------------------------------------------------------------------
# Shadow index synchronization
# ---------------------------------------------------------------------------


class TestShadowSync:
    @pytest.fixture(autouse=True)
    def _needs_fts(self, store):
        if not store.fts5_available:
            pytest.skip("FTS5 not available")

    def test_consistent_after_mutations(self, store):
        store.upsert(make_file("a.ssce", keywords="one two"))
        store.upsert(make_file("b.ssce"))
        store.upsert(make_file("a.ssce", title="Renamed"))
        store.touch_last_opened("/library/b.ssce", "2024-01-01")
        store.delete("/library/b.ssce")
        assert store.verify_shadow() == []

    def test_one_shadow_entry_per_row(self, store):
        for _ in range(3):
            store.upsert(make_file())
        count = store._conn.execute("SELECT COUNT(*) FROM files_fts").fetchone()[0]
        assert count == 1

    def test_update_drops_stale_terms(self, store):
        store.upsert(make_file(title="Zeppelin manual"))
        store.upsert(make_file(title="Bicycle manual"))
        assert store.search(SearchParams(query="zeppelin")) == []
        assert len(store.search(SearchParams(query="bicycle"))) == 1

    def test_verify_detects_stale_projection(self, store):
        file_id = store.upsert(make_file())
        store._conn.execute("UPDATE files_fts SET title='tampered' WHERE rowid=?", (file_id,))
        assert store.verify_shadow() == [file_id]

    def test_verify_detects_orphan(self, store):
        store._conn.execute(
            "INSERT INTO files_fts (rowid, filename, title, summary, keywords) "
            "VALUES (42, 'x', NULL, NULL, NULL)"
        )
        assert store.verify_shadow() == [42]

    def test_failed_shadow_write_rolls_back_row(self, store, monkeypatch):
        def boom(file_id):
            raise RuntimeError("simulated crash")

        monkeypatch.setattr(store, "_shadow_replace", boom)
        with pytest.raises(RuntimeError):
            store.upsert(make_file())
        assert store.get_file("/library/report.ssce") is None

    def test_rebuild_fts_repairs(self, store):
        file_id = store.upsert(make_file())
        store._conn.execute("DELETE FROM files_fts")
        assert store.verify_shadow() == [file_id]
        assert store.rebuild_fts() == 1
        assert store.verify_shadow() == []
        assert len(store.search(SearchParams(query="quart"))) == 1

    def test_rebuild_fts_tokenizer_change(self, store):
        store.upsert(make_file(title="Running shoes"))
        assert store.rebuild_fts(tokenizer=FTS_TOKENIZER_PRESETS["en"]) == 1
        assert store.stats()["fts_tokenizer"] == FTS_TOKENIZER_PRESETS["en"]
        assert len(store.search(SearchParams(query="run"))) == 1

    def test_rebuild_fts_counts_reindex(self, store):
        store.rebuild_fts()
        store.rebuild_fts()
        assert store.stats()["fts_reindex_count"] == 2

    def test_rebuild_fts_unavailable(self, store):
        store._fts5_available = False
        assert store.rebuild_fts() == -1

    def test_rebuild_fts_unknown_tokenizer_keeps_index(self, store):
        store.upsert(make_file())
        with pytest.raises(ValueError, match="Unknown FTS5 tokenizer"):
            store.rebuild_fts(tokenizer="bogus")
        assert store.fts5_available is True
        assert store.stats()["fts_tokenizer"] == FTS_TOKENIZER_PRESETS["default"]
        assert len(store.search(SearchParams(query="quart"))) == 1
        assert store.verify_shadow() == []


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class TestSearch:
    def test_prefix_match(self, store):
        store.upsert(make_file())
        assert len(store.search(SearchParams(query="quart"))) == 1
        assert store.search(SearchParams(query="zrep")) == []

    def test_all_terms_must_match(self, store):
        store.upsert(make_file("a.ssce", title="Quarterly Report"))
        store.upsert(make_file("b.ssce", title="Quarterly Budget"))
        got = store.search(SearchParams(query="quart rep"))
        assert _paths(got) == ["/library/a.ssce"]

    def test_terms_match_across_fields(self, store):
        _require_fts(store)
        store.upsert(make_file(summary="Sales figures", keywords="finance emea"))
        assert len(store.search(SearchParams(query="sales emea"))) == 1
        assert len(store.search(SearchParams(query="report.ss"))) == 1

    def test_case_and_diacritics_insensitive(self, store):
        _require_fts(store)
        store.upsert(make_file(title="Café Résumé"))
        assert len(store.search(SearchParams(query="CAFE resum"))) == 1

    def test_fts_syntax_in_query_is_literal(self, store):
        _require_fts(store)
        store.upsert(make_file(title="Design AND review"))
        assert len(store.search(SearchParams(query='design "AND'))) == 1
        assert store.search(SearchParams(query="NOT OR")) == []

    def test_blank_query_degrades_to_listing(self, dated_store):
        blank = dated_store.search(SearchParams(query="  ", from_date="2024-02-01"))
        none = dated_store.search(SearchParams(query=None, from_date="2024-02-01"))
        assert _paths(blank) == _paths(none)
        assert len(blank) == 2

    def test_from_date_excludes_older(self, store):
        store.upsert(make_file(modified="2024-01-01"))
        assert store.search(SearchParams(from_date="2024-06-01")) == []
        assert store.search(SearchParams(query="quart", from_date="2024-06-01")) == []

    def test_to_date_inclusive(self, dated_store):
        got = dated_store.search(SearchParams(to_date="2024-02-01"))
        assert [f.modified for f in got] == ["2024-02-01", "2024-01-01"]

    def test_date_range_with_query(self, dated_store):
        got = dated_store.search(SearchParams(
            query="notes", from_date="2024-02-01", to_date="2024-02-28",
        ))
        assert [f.title for f in got] == ["Beta notes"]

    def test_ordered_by_modified_desc(self, dated_store):
        got = dated_store.search(SearchParams(from_date="2024-02-01"))
        assert [f.modified for f in got] == ["2024-03-01", "2024-02-01"]

    def test_limit(self, dated_store):
        assert len(dated_store.search(SearchParams(limit=2))) == 2
        assert len(dated_store.search(SearchParams(query="notes", limit=1))) == 1

    def test_default_limit_is_50(self, store):
        for i in range(55):
            store.upsert(make_file(f"f{i:02d}.ssce", modified=f"2024-01-{i % 28 + 1:02d}"))
        assert len(store.search(SearchParams())) == 50

    def test_invalid_limit(self, store):
        with pytest.raises(ValueError):
            store.search(SearchParams(limit=0))

    def test_null_modified_sorted_last(self, dated_store):
        dated_store.upsert(LibraryFile(path="/library/undated.ssce", title="Undated notes"))
        got = dated_store.search(SearchParams(query="notes"))
        assert got[-1].path == "/library/undated.ssce"


class TestLikeFallback:
    @pytest.fixture
    def like_store(self, dated_store):
        dated_store.upsert(make_file(summary="Sales figures", modified="2024-04-01"))
        dated_store._fts5_available = False
        return dated_store

    def test_prefix_match(self, like_store):
        assert _paths(like_store.search(SearchParams(query="quart"))) == ["/library/report.ssce"]
        assert like_store.search(SearchParams(query="zrep")) == []

    def test_prefix_matches_inner_word(self, like_store):
        assert len(like_store.search(SearchParams(query="figu"))) == 1

    def test_no_infix_match(self, like_store):
        assert like_store.search(SearchParams(query="arterly")) == []

    def test_wildcards_are_literal(self, like_store):
        assert like_store.search(SearchParams(query="%")) == []

    def test_and_with_dates(self, like_store):
        got = like_store.search(SearchParams(query="notes", from_date="2024-02-01"))
        assert [f.modified for f in got] == ["2024-03-01", "2024-02-01"]


# ---------------------------------------------------------------------------
# Recent files
# ---------------------------------------------------------------------------


class TestRecent:
    def test_only_opened_files(self, store):
        store.upsert(make_file("a.ssce", last_opened="2024-01-01"))
        store.upsert(make_file("b.ssce"))
        assert _paths(store.get_recent_files(10)) == ["/library/a.ssce"]

    def test_ordered_by_last_opened_desc(self, store):
        store.upsert(make_file("a.ssce", last_opened="2024-01-01"))
        store.upsert(make_file("b.ssce", last_opened="2024-03-01"))
        store.upsert(make_file("c.ssce", last_opened="2024-02-01"))
        assert _paths(store.get_recent_files(2)) == ["/library/b.ssce", "/library/c.ssce"]

    def test_touch_moves_to_front(self, store):
        store.upsert(make_file("a.ssce", last_opened="2024-01-01"))
        store.upsert(make_file("b.ssce", last_opened="2024-03-01"))
        store.touch_last_opened("/library/a.ssce", "2024-12-31")
        assert store.get_recent_files(1)[0].path == "/library/a.ssce"


# ---------------------------------------------------------------------------
# Errors & serialization
# ---------------------------------------------------------------------------


class TestStoreErrors:
    def test_closed_store_raises_store_error(self):
        s = LibraryStore(":memory:")
        s.close()
        with pytest.raises(StoreError) as exc_info:
            s.upsert(make_file())
        assert exc_info.value.operation == "upsert"
        assert isinstance(exc_info.value.__cause__, sqlite3.Error)

    def test_lock_contention_surfaces_as_error(self, tmp_path):
        db = str(tmp_path / "library.db")
        holder = LibraryStore(db_path=db)
        waiter = LibraryStore(db_path=db, busy_timeout_s=0.1)
        holder._conn.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(StoreError, match="locked"):
                waiter.upsert(make_file())
        finally:
            holder._conn.execute("ROLLBACK")
            holder.close()
            waiter.close()


class TestSerialization:
    def test_concurrent_upserts(self, disk_store):
        def worker(n):
            for i in range(20):
                disk_store.upsert(make_file(f"t{n}-{i}.ssce"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert disk_store.count_files() == 80
        assert disk_store.verify_shadow() == []

    def test_exclusive_blocks_other_threads(self, store):
        done = threading.Event()

        def reader():
            store.count_files()
            done.set()

        with store.exclusive():
            t = threading.Thread(target=reader)
            t.start()
            time.sleep(0.1)
            assert not done.is_set()
        t.join(timeout=5)
        assert done.is_set()

    def test_exclusive_is_reentrant(self, store):
        with store.exclusive():
            store.upsert(make_file())
            assert store.count_files() == 1


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


class TestStats:
    def test_counts(self, store):
        store.upsert(make_file("a.ssce", last_opened="2024-01-01"))
        store.upsert(make_file("b.ssce"))
        stats = store.stats()
        assert stats["total_files"] == 2
        assert stats["recent_files"] == 1
        assert stats["schema_version"] == SCHEMA_VERSION
        assert stats["last_rebuild_at"] is None

    def test_tokenizer_reported(self, store):
        if not store.fts5_available:
            pytest.skip("FTS5 not available")
        stats = store.stats()
        assert stats["fts_tokenizer"] == FTS_TOKENIZER_PRESETS["default"]
        assert stats["fts_tokenizer_mismatch"] is False

    def test_tokenizer_mismatch_on_reopen(self, tmp_path):
        db = str(tmp_path / "library.db")
        s = LibraryStore(db_path=db)
        if not s.fts5_available:
            s.close()
            pytest.skip("FTS5 not available")
        s.close()
        s2 = LibraryStore(db_path=db, fts_tokenizer=FTS_TOKENIZER_PRESETS["raw"])
        assert s2.stats()["fts_tokenizer_mismatch"] is True
        s2.close()
