# formengine/data/version_history_repo.py
from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Tuple, Union

from formengine.data.db import iso_now, open_db


DbPath = Optional[Union[str, Path]]


def add_version(db_path: DbPath, form_id: str, version: int, payload: bytes, limit: int = 10) -> None:
    """
    Stores one compressed snapshot and keeps only the newest `limit` versions
    of the form. Re-adding an existing version replaces it.
    """
    fid = (form_id or "").strip()
    if not fid:
        raise ValueError("form_id is required")

    with open_db(db_path) as conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO form_snapshot_history (form_id, version, payload, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (fid, int(version), payload, iso_now()),
        )
        if limit > 0:
            conn.execute(
                """
                DELETE FROM form_snapshot_history
                WHERE form_id = ?
                  AND version NOT IN (
                    SELECT version FROM form_snapshot_history
                    WHERE form_id = ?
                    ORDER BY version DESC
                    LIMIT ?
                  )
                """,
                (fid, fid, int(limit)),
            )


def list_versions(db_path: DbPath, form_id: str) -> List[Tuple[int, bytes]]:
    """(version, payload) pairs, oldest first."""
    with open_db(db_path) as conn:
        rows = conn.execute(
            """
            SELECT version, payload
            FROM form_snapshot_history
            WHERE form_id = ?
            ORDER BY version
            """,
            (form_id,),
        ).fetchall()

    return [(int(r["version"]), bytes(r["payload"])) for r in rows]


def get_version(db_path: DbPath, form_id: str, version: int) -> Optional[bytes]:
    with open_db(db_path) as conn:
        row = conn.execute(
            "SELECT payload FROM form_snapshot_history WHERE form_id = ? AND version = ?",
            (form_id, int(version)),
        ).fetchone()

    if row is None:
        return None
    return bytes(row["payload"])


def delete_versions(db_path: DbPath, form_id: str) -> None:
    with open_db(db_path) as conn:
        conn.execute("DELETE FROM form_snapshot_history WHERE form_id = ?", (form_id,))
