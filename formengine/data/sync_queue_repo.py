# formengine/data/sync_queue_repo.py
from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from formengine.data.db import iso_now, open_db
from formengine.data.models import FormVersion, SyncOperation


STATE_PENDING = "PENDING"
STATE_CONFLICT = "CONFLICT"
STATE_DEAD = "DEAD"


def _row_to_op(r: sqlite3.Row) -> SyncOperation:
    return SyncOperation(
        id=str(r["op_id"]),
        form_id=str(r["form_id"]),
        base_version=int(r["base_version"]),
        version=int(r["version"]),
        payload=bytes(r["payload"]),
        created_at=float(r["created_at"]),
        attempts=int(r["attempts"]),
    )


class SyncQueue:
    """
    Durable FIFO of SyncOperations (SQLite, survives restarts).

    Operations leave the PENDING state only through this class:
      - remove():        acknowledged by the server
      - mark_conflict(): server diverged, waits for a resolution
      - mark_dead():     attempts exhausted (dead-letter)
    A form with a CONFLICT or DEAD operation is blocked: its later
    operations stay queued until the blocking one is resolved.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = db_path

    # ----------------------------
    # Writes
    # ----------------------------
    def append(self, op: SyncOperation) -> None:
        with open_db(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO sync_queue (
                  op_id, form_id, base_version, version, payload, created_at, attempts, state
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    op.id,
                    op.form_id,
                    op.base_version,
                    op.version,
                    op.payload,
                    op.created_at,
                    op.attempts,
                    STATE_PENDING,
                ),
            )

    def record_attempt(self, op_id: str, attempts: int, error: str = "") -> None:
        with open_db(self.db_path) as conn:
            conn.execute(
                "UPDATE sync_queue SET attempts = ?, last_error = ? WHERE op_id = ?",
                (int(attempts), error or None, op_id),
            )

    def mark_dead(self, op_id: str, error: str = "") -> None:
        with open_db(self.db_path) as conn:
            conn.execute(
                "UPDATE sync_queue SET state = ?, last_error = ? WHERE op_id = ?",
                (STATE_DEAD, error or None, op_id),
            )

    def mark_conflict(self, op_id: str, server_version: FormVersion) -> None:
        with open_db(self.db_path) as conn:
            conn.execute(
                """
                UPDATE sync_queue
                SET state = ?, conflict_version = ?, conflict_checksum = ?
                WHERE op_id = ?
                """,
                (STATE_CONFLICT, server_version.version, server_version.checksum, op_id),
            )

    def requeue(self, op_id: str) -> bool:
        """DEAD -> PENDING with a fresh attempt budget."""
        with open_db(self.db_path) as conn:
            cur = conn.execute(
                """
                UPDATE sync_queue
                SET state = ?, attempts = 0, last_error = NULL
                WHERE op_id = ? AND state = ?
                """,
                (STATE_PENDING, op_id, STATE_DEAD),
            )
            return cur.rowcount > 0

    def remove(self, op_id: str) -> None:
        with open_db(self.db_path) as conn:
            conn.execute("DELETE FROM sync_queue WHERE op_id = ?", (op_id,))

    def remove_form(self, form_id: str) -> int:
        with open_db(self.db_path) as conn:
            cur = conn.execute("DELETE FROM sync_queue WHERE form_id = ?", (form_id,))
            return cur.rowcount

    # ----------------------------
    # Reads
    # ----------------------------
    def _select(self, state: str, form_id: Optional[str]) -> List[sqlite3.Row]:
        sql = "SELECT * FROM sync_queue WHERE state = ?"
        params: Tuple[Any, ...] = (state,)
        if form_id:
            sql += " AND form_id = ?"
            params = (state, form_id)
        sql += " ORDER BY seq"

        with open_db(self.db_path) as conn:
            return conn.execute(sql, params).fetchall()

    def pending(self, form_id: Optional[str] = None) -> List[SyncOperation]:
        return [_row_to_op(r) for r in self._select(STATE_PENDING, form_id)]

    def dead_letters(self, form_id: Optional[str] = None) -> List[SyncOperation]:
        return [_row_to_op(r) for r in self._select(STATE_DEAD, form_id)]

    def conflicts(self, form_id: Optional[str] = None) -> List[Tuple[SyncOperation, FormVersion]]:
        out = []
        for r in self._select(STATE_CONFLICT, form_id):
            fv = FormVersion(
                form_id=str(r["form_id"]),
                version=int(r["conflict_version"] or 0),
                checksum=str(r["conflict_checksum"] or ""),
            )
            out.append((_row_to_op(r), fv))
        return out

    def get(self, op_id: str) -> Optional[SyncOperation]:
        with open_db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM sync_queue WHERE op_id = ?", (op_id,)).fetchone()
        return _row_to_op(row) if row is not None else None

    def find_version(self, form_id: str, version: int) -> Optional[SyncOperation]:
        with open_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM sync_queue WHERE form_id = ? AND version = ? ORDER BY seq LIMIT 1",
                (form_id, int(version)),
            ).fetchone()
        return _row_to_op(row) if row is not None else None

    def last_version(self, form_id: str) -> Optional[int]:
        """Target version of the newest queued operation of the form (any state)."""
        with open_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT version FROM sync_queue WHERE form_id = ? ORDER BY seq DESC LIMIT 1",
                (form_id,),
            ).fetchone()
        return int(row["version"]) if row is not None else None

    def blocked_forms(self) -> Set[str]:
        with open_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT DISTINCT form_id FROM sync_queue WHERE state IN (?, ?)",
                (STATE_CONFLICT, STATE_DEAD),
            ).fetchall()
        return {str(r["form_id"]) for r in rows}

    def counts(self) -> Dict[str, int]:
        with open_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT state, COUNT(*) AS n FROM sync_queue GROUP BY state"
            ).fetchall()
        out = {STATE_PENDING: 0, STATE_CONFLICT: 0, STATE_DEAD: 0}
        out.update({str(r["state"]): int(r["n"]) for r in rows})
        return out

    def __len__(self) -> int:
        return self.counts()[STATE_PENDING]

    # ----------------------------
    # Server-acknowledged versions
    # ----------------------------
    def record_ack(self, server_version: FormVersion) -> None:
        with open_db(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO form_server_versions (form_id, version, checksum, acknowledged_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(form_id) DO UPDATE SET
                  version = excluded.version,
                  checksum = excluded.checksum,
                  acknowledged_at = excluded.acknowledged_at
                """,
                (server_version.form_id, server_version.version, server_version.checksum, iso_now()),
            )

    def server_version(self, form_id: str) -> Optional[FormVersion]:
        with open_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT form_id, version, checksum FROM form_server_versions WHERE form_id = ?",
                (form_id,),
            ).fetchone()
        if row is None:
            return None
        return FormVersion(form_id=str(row["form_id"]), version=int(row["version"]), checksum=str(row["checksum"]))

    def forget_form(self, form_id: str) -> None:
        with open_db(self.db_path) as conn:
            conn.execute("DELETE FROM sync_queue WHERE form_id = ?", (form_id,))
            conn.execute("DELETE FROM form_server_versions WHERE form_id = ?", (form_id,))
