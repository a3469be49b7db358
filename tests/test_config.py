"""
Tests for libctl.config — defaults, JSON loading, validation, index location.
"""

import json
import os

import pytest

from libctl.config import (
    LibraryConfig,
    ScanConfig,
    SearchConfig,
    StoreConfig,
    ValidationError,
    default_db_path,
    load_config,
    user_config_dir,
)
from libctl.store import LibraryStore


class TestDefaults:
    def test_sections(self):
        cfg = LibraryConfig()
        assert cfg.store.db_path is None
        assert cfg.store.wal_mode is True
        assert cfg.scan.extension == ".ssce"
        assert cfg.scan.on_error == "abort"
        assert cfg.search.default_limit == 50
        assert cfg.search.recent_limit == 20

    def test_defaults_validate(self):
        assert LibraryConfig().validate() == []

    def test_resolved_db_path_default(self):
        assert StoreConfig().resolved_db_path() == default_db_path()

    def test_resolved_db_path_explicit(self):
        assert StoreConfig(db_path="/tmp/x.db").resolved_db_path() == "/tmp/x.db"


class TestIndexLocation:
    def test_under_app_dir(self):
        path = default_db_path()
        assert os.path.basename(path) == "library.db"
        assert os.path.basename(os.path.dirname(path)) == "ssce-desktop"

    @pytest.mark.skipif(os.name == "nt", reason="XDG applies to POSIX only")
    def test_xdg_config_home(self, monkeypatch, tmp_path):
        import sys

        if sys.platform == "darwin":
            pytest.skip("macOS uses Application Support")
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert user_config_dir() == tmp_path / "ssce-desktop"


class TestLoadConfig:
    def test_none_returns_defaults(self):
        assert load_config(None) == LibraryConfig()

    def test_missing_file_returns_defaults(self, tmp_path):
        assert load_config(str(tmp_path / "nope.json")) == LibraryConfig()

    def test_invalid_json_returns_defaults(self, tmp_path):
        p = tmp_path / "bad.json"
        p.write_text("{oops")
        assert load_config(str(p)) == LibraryConfig()

    def test_unknown_key_returns_defaults(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({"store": {"no_such_field": 1}}))
        assert load_config(str(p)) == LibraryConfig()

    def test_partial_override(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({
            "store": {"db_path": "/data/lib.db", "fts_tokenizer": "unicode61"},
            "scan": {"on_error": "skip"},
        }))
        cfg = load_config(str(p))
        assert cfg.store.db_path == "/data/lib.db"
        assert cfg.store.fts_tokenizer == "unicode61"
        assert cfg.scan.on_error == "skip"
        assert cfg.search == SearchConfig()

    def test_strict_rejects_bad_values(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({"search": {"default_limit": 0}}))
        with pytest.raises(ValidationError, match="search.default_limit"):
            load_config(str(p), strict=True)

    def test_non_strict_keeps_bad_values(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({"search": {"default_limit": 0}}))
        assert load_config(str(p)).search.default_limit == 0


class TestValidation:
    def test_bad_policy(self):
        errors = ScanConfig(on_error="retry").validate()
        assert any("scan.on_error" in e for e in errors)

    def test_bad_extension(self):
        errors = ScanConfig(extension="ssce").validate()
        assert any("scan.extension" in e for e in errors)

    def test_limit_type(self):
        errors = SearchConfig(recent_limit="20").validate()
        assert any("expected int" in e for e in errors)

    def test_busy_timeout_range(self):
        errors = StoreConfig(busy_timeout_s=-1).validate()
        assert any("busy_timeout_s" in e for e in errors)

    def test_validation_error_is_value_error(self):
        assert issubclass(ValidationError, ValueError)


class TestStoreFromConfig:
    def test_opens_configured_path(self, tmp_path):
        db = tmp_path / "cfg" / "library.db"
        s = LibraryStore.from_config(StoreConfig(db_path=str(db), wal_mode=False))
        try:
            assert s.db_path == str(db)
            assert db.exists()
        finally:
            s.close()
