from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Union

from formengine.config import DB_PATH


DATA_DIR = Path(__file__).resolve().parent
SCHEMA_PATH = DATA_DIR / "schema.sql"
SCHEMA_VERSION = "1"


def iso_now() -> str:
    # UTC ISO 8601
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def get_connection(db_path: Optional[Union[str, Path]] = None) -> sqlite3.Connection:
    """
    Returns a SQLite connection and ensures schema is applied.
    """
    path = Path(db_path) if db_path is not None else DB_PATH
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row

    _ensure_schema(conn)

    return conn


@contextmanager
def open_db(db_path: Optional[Union[str, Path]] = None) -> Iterator[sqlite3.Connection]:
    """
    Connection scope: commits on success, rolls back on error, always closes.
    """
    conn = get_connection(db_path)
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def _ensure_schema(conn: sqlite3.Connection) -> None:
    """
    Applies schema.sql (idempotent because schema uses IF NOT EXISTS).
    """
    if not SCHEMA_PATH.exists():
        raise FileNotFoundError(f"schema.sql not found: {SCHEMA_PATH}")

    sql = SCHEMA_PATH.read_text(encoding="utf-8")
    # Runs all CREATE TABLE/INDEX statements
    conn.executescript(sql)
    _ensure_sync_queue_columns(conn)
    _ensure_meta(conn)
    conn.commit()


def _ensure_sync_queue_columns(conn: sqlite3.Connection) -> None:
    """
    Adds columns introduced after the first release to existing DBs.
    """
    rows = conn.execute("PRAGMA table_info(sync_queue)").fetchall()
    existing = {row[1] for row in rows}

    if "last_error" not in existing:
        conn.execute("ALTER TABLE sync_queue ADD COLUMN last_error TEXT NULL")
    if "conflict_version" not in existing:
        conn.execute("ALTER TABLE sync_queue ADD COLUMN conflict_version INTEGER NULL")
    if "conflict_checksum" not in existing:
        conn.execute("ALTER TABLE sync_queue ADD COLUMN conflict_checksum TEXT NULL")


def _ensure_meta(conn: sqlite3.Connection) -> None:
    row = conn.execute(
        "SELECT meta_value FROM app_meta WHERE meta_key = 'schema_version'"
    ).fetchone()
    if row is None:
        conn.execute(
            "INSERT INTO app_meta (meta_key, meta_value) VALUES (?, ?)",
            ("schema_version", SCHEMA_VERSION),
        )
