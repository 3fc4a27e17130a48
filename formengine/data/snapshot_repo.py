# formengine/data/snapshot_repo.py
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from formengine.data.db import iso_now, open_db


class SnapshotStore(Protocol):
    """
    Local durable key-value store: form_id -> compressed snapshot blob.
    """

    def get(self, form_id: str) -> Optional[bytes]: ...

    def set(self, form_id: str, blob: bytes) -> None: ...

    def delete(self, form_id: str) -> None: ...


class SqliteSnapshotStore:
    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = db_path

    def get(self, form_id: str) -> Optional[bytes]:
        fid = (form_id or "").strip()
        if not fid:
            return None

        with open_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT payload FROM form_snapshots WHERE form_id = ?",
                (fid,),
            ).fetchone()

        if row is None:
            return None
        return bytes(row["payload"])

    def set(self, form_id: str, blob: bytes) -> None:
        fid = (form_id or "").strip()
        if not fid:
            raise ValueError("form_id is required")

        with open_db(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO form_snapshots (form_id, payload, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(form_id) DO UPDATE SET
                  payload = excluded.payload,
                  updated_at = excluded.updated_at
                """,
                (fid, blob, iso_now()),
            )

    def delete(self, form_id: str) -> None:
        with open_db(self.db_path) as conn:
            conn.execute("DELETE FROM form_snapshots WHERE form_id = ?", (form_id,))

    def form_ids(self) -> List[str]:
        with open_db(self.db_path) as conn:
            rows = conn.execute("SELECT form_id FROM form_snapshots ORDER BY form_id").fetchall()
        return [str(r["form_id"]) for r in rows]


class MemorySnapshotStore:
    """Non-durable store for previews and tests."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}

    def get(self, form_id: str) -> Optional[bytes]:
        return self._data.get(form_id)

    def set(self, form_id: str, blob: bytes) -> None:
        if not form_id:
            raise ValueError("form_id is required")
        self._data[form_id] = bytes(blob)

    def delete(self, form_id: str) -> None:
        self._data.pop(form_id, None)
