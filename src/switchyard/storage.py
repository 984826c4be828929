"""Local storage hardening and SQLite helpers."""

from __future__ import annotations

import os
import sqlite3
from pathlib import Path


DB_FILENAME = "switchyard.sqlite3"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def database_path(data_dir: Path) -> Path:
    """Return the router database path inside a private data directory."""
    ensure_private_dir(data_dir)
    return data_dir / DB_FILENAME


def connect(db_path: Path) -> sqlite3.Connection:
    """Open an autocommit connection; callers issue BEGIN IMMEDIATE themselves."""
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def init_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=FULL")
