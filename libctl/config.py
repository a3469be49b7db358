"""
Library Index Configuration

Configuration dataclasses for libctl: store, scan, and search settings.
Includes load_config() for reading a JSON config file with silent fallback
to compiled defaults, and default_db_path() for the per-user index location.
"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

DEFAULT_APP_NAME = "ssce-desktop"
DEFAULT_DB_NAME = "library.db"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


# ---------------------------------------------------------------------------
# Index location
# ---------------------------------------------------------------------------


def user_config_dir(app_name: str = DEFAULT_APP_NAME) -> Path:
    """Per-user, per-application configuration directory."""
    if sys.platform.startswith("win"):
        base = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
    elif sys.platform == "darwin":
        base = str(Path.home() / "Library" / "Application Support")
    else:
        base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / app_name


def default_db_path(app_name: str = DEFAULT_APP_NAME) -> str:
    """Default index file: <user config dir>/<app>/library.db."""
    return str(user_config_dir(app_name) / DEFAULT_DB_NAME)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: Optional[str] = None  # None -> default_db_path()
    wal_mode: bool = True
    fts_tokenizer: str = "unicode61 remove_diacritics 2"
    busy_timeout_s: float = 5.0

    def resolved_db_path(self) -> str:
        return self.db_path or default_db_path()

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "store.busy_timeout_s",
                      self.busy_timeout_s, 0.0, 600.0)
        return errors


@dataclass
class ScanConfig:
    """Reconciliation scanner configuration."""
    extension: str = ".ssce"
    on_error: str = "abort"  # abort | skip
    follow_symlinks: bool = False

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not self.extension.startswith(".") or len(self.extension) < 2:
            errors.append(f"scan.extension: {self.extension!r} must look like '.ext'")
        if self.on_error not in ("abort", "skip"):
            errors.append(f"scan.on_error: {self.on_error!r} not in ['abort', 'skip']")
        return errors


@dataclass
class SearchConfig:
    """Query engine defaults."""
    default_limit: int = 50
    recent_limit: int = 20

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "search.default_limit",
                      self.default_limit, 1, 100000, int)
        _check_range(errors, "search.recent_limit",
                      self.recent_limit, 1, 100000, int)
        return errors


@dataclass
class LibraryConfig:
    """Top-level libctl configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    search: SearchConfig = field(default_factory=SearchConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> LibraryConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "scan" in d:
            kwargs["scan"] = ScanConfig(**d["scan"])
        if "search" in d:
            kwargs["search"] = SearchConfig(**d["search"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.scan.validate())
        errors.extend(self.search.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> LibraryConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        LibraryConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = LibraryConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = LibraryConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = LibraryConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
