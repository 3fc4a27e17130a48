from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional

from formengine.config import PersistenceConfig, SyncConfig
from formengine.core.errors import (
    FormEngineError,
    PersistenceWriteError,
    SyncTransportError,
    VersionConflict,
)
from formengine.data import codec, version_history_repo
from formengine.data.encryption import SnapshotEncryption
from formengine.data.models import (
    ConflictResolution,
    FlushReport,
    FormSnapshot,
    FormVersion,
    SyncOperation,
    SyncStatus,
)
from formengine.data.remote import RemoteEndpoint
from formengine.data.snapshot_repo import SnapshotStore, SqliteSnapshotStore
from formengine.data.sync_queue_repo import SyncQueue


logger = logging.getLogger(__name__)

ErrorListener = Callable[[FormEngineError], None]
Sleep = Callable[[float], Any]

# Errors a local write may raise and that are worth retrying.
_WRITE_ERRORS = (sqlite3.Error, OSError)


def uuid4_str() -> str:
    return str(uuid.uuid4())


class PersistenceLayer:
    """
    Durable form state + offline sync queue.

    - Local writes: compressed snapshots in a SnapshotStore, idempotent per
      version, retried `write_retries` times before PersistenceWriteError.
      Each form's writes and enqueues are serialized; stored blobs are
      encrypted when `encrypt` is configured.
    - Sync: FIFO SyncQueue flushed to a RemoteEndpoint. Transport failures
      back off exponentially and are dead-lettered after `max_attempts`.
      Version divergence is a VersionConflict left for the caller to resolve.
    - Sync failures are reported to error listeners; nothing is dropped.
    """

    def __init__(
        self,
        config: Optional[PersistenceConfig] = None,
        sync_config: Optional[SyncConfig] = None,
        *,
        store: Optional[SnapshotStore] = None,
        queue: Optional[SyncQueue] = None,
        remote: Optional[RemoteEndpoint] = None,
        on_error: Optional[ErrorListener] = None,
        sleep: Optional[Sleep] = None,
    ):
        self.config = config or PersistenceConfig()
        self.sync_config = sync_config or SyncConfig()
        self.store: SnapshotStore = store if store is not None else SqliteSnapshotStore(self.config.db_path)
        self.queue = queue if queue is not None else SyncQueue(self.config.db_path)
        self.remote = remote
        self._sleep: Sleep = sleep or asyncio.sleep

        self._listeners: List[ErrorListener] = [on_error] if on_error else []
        self._local_versions: Dict[str, int] = {}
        self._persisted_versions: Dict[str, int] = {}
        self._online = True
        self._in_progress = False
        self._flush_lock: Optional[asyncio.Lock] = None
        self._form_locks: Dict[str, asyncio.Lock] = {}
        self._cipher: Optional[SnapshotEncryption] = (
            SnapshotEncryption(self.config.encryption_key) if self.config.encrypt else None
        )

    # ----------------------------
    # Error channel
    # ----------------------------
    def add_error_listener(self, listener: ErrorListener) -> None:
        self._listeners.append(listener)

    def _report(self, err: FormEngineError) -> None:
        logger.error("%s", err)
        for listener in list(self._listeners):
            try:
                listener(err)
            except Exception:
                logger.exception("Persistence error listener failed")

    # ----------------------------
    # Versions
    # ----------------------------
    def _load_versions(self, form_id: str) -> None:
        if form_id in self._local_versions:
            return
        snap = self.load_local(form_id)
        version = snap.version if snap is not None else 0
        self._local_versions[form_id] = version
        self._persisted_versions[form_id] = version

    def local_version(self, form_id: str) -> int:
        self._load_versions(form_id)
        return self._local_versions[form_id]

    def server_version(self, form_id: str) -> Optional[FormVersion]:
        return self.queue.server_version(form_id)

    def _sync_base(self, form_id: str) -> int:
        last = self.queue.last_version(form_id)
        if last is not None:
            return last
        acked = self.queue.server_version(form_id)
        return acked.version if acked is not None else 0

    # ----------------------------
    # Local persistence
    # ----------------------------
    def snapshot(self, form_id: str, values: Mapping[str, Any]) -> FormSnapshot:
        """Captures values as the next local version of the form."""
        fid = (form_id or "").strip()
        if not fid:
            raise ValueError("form_id is required")

        version = self.local_version(fid) + 1
        self._local_versions[fid] = version
        return FormSnapshot(form_id=fid, values=dict(values), version=version, updated_at=time.time())

    def _pack(self, raw: bytes, at_rest: bool) -> bytes:
        blob = codec.pack(raw, self.config.compression_level)
        if at_rest and self._cipher is not None:
            blob = self._cipher.encrypt(blob)
        return blob

    async def _encode(self, snapshot: FormSnapshot, *, at_rest: bool = False) -> bytes:
        """
        Compressed snapshot bytes. `at_rest` blobs (local snapshot, restore
        points) are also encrypted when configured; sync payloads never are.
        """
        raw = codec.serialize(snapshot)
        if len(raw) >= self.config.compress_threshold_bytes:
            return await asyncio.to_thread(self._pack, raw, at_rest)
        return self._pack(raw, at_rest)

    def _decode(self, blob: bytes) -> FormSnapshot:
        if self._cipher is not None:
            blob = self._cipher.decrypt(blob)
        return codec.decompress(blob)

    def _form_lock(self, form_id: str) -> asyncio.Lock:
        lock = self._form_locks.get(form_id)
        if lock is None:
            lock = self._form_locks[form_id] = asyncio.Lock()
        return lock

    async def persist_local(self, snapshot: FormSnapshot) -> bool:
        """
        Writes the snapshot. Returns False (no-op) when this or a newer
        version is already stored. Raises PersistenceWriteError once the
        local retries are exhausted.
        """
        fid = snapshot.form_id
        # Check, encode and write under one lock: an older version never lands after a newer one.
        async with self._form_lock(fid):
            return await self._persist_locked(snapshot)

    async def _persist_locked(self, snapshot: FormSnapshot) -> bool:
        fid = snapshot.form_id
        self._load_versions(fid)
        if snapshot.version <= self._persisted_versions[fid]:
            logger.debug("Snapshot %s v%d already persisted", fid, snapshot.version)
            return False

        blob = await self._encode(snapshot, at_rest=True)

        last_error: Optional[BaseException] = None
        for attempt in range(1, max(1, self.config.write_retries) + 1):
            try:
                self.store.set(fid, blob)
                break
            except _WRITE_ERRORS as e:
                last_error = e
                logger.warning("Local write of %s failed (attempt %d): %s", fid, attempt, e)
        else:
            raise PersistenceWriteError(fid, last_error)

        self._persisted_versions[fid] = snapshot.version
        self._local_versions[fid] = max(self._local_versions[fid], snapshot.version)

        try:
            version_history_repo.add_version(
                self.config.db_path, fid, snapshot.version, blob, self.config.history_limit
            )
        except _WRITE_ERRORS as e:
            # The snapshot itself is stored; only restore points are affected.
            logger.warning("Could not record history for %s v%d: %s", fid, snapshot.version, e)

        return True

    def load_local(self, form_id: str) -> Optional[FormSnapshot]:
        blob = self.store.get(form_id)
        if blob is None:
            return None
        return self._decode(blob)

    def version_history(self, form_id: str) -> List[FormSnapshot]:
        return [self._decode(blob) for _, blob in version_history_repo.list_versions(self.config.db_path, form_id)]

    async def restore_version(self, form_id: str, version: int) -> FormSnapshot:
        """
        Re-applies the values of an old version as a NEW version (history is
        never rewritten). The restored snapshot is persisted and queued.
        """
        blob = version_history_repo.get_version(self.config.db_path, form_id, version)
        if blob is None:
            raise ValueError(f"Version {version} of form {form_id!r} not found")

        old = self._decode(blob)
        snap = self.snapshot(form_id, old.values)
        await self.persist_local(snap)
        if self.sync_config.enabled:
            await self.enqueue_sync(snap)
        return snap

    def clear_form(self, form_id: str) -> None:
        """Drops local snapshot, restore points, queued operations and known server version."""
        self.store.delete(form_id)
        version_history_repo.delete_versions(self.config.db_path, form_id)
        self.queue.forget_form(form_id)
        self._local_versions.pop(form_id, None)
        self._persisted_versions.pop(form_id, None)

    # ----------------------------
    # Sync queue
    # ----------------------------
    async def enqueue_sync(self, snapshot: FormSnapshot) -> Optional[SyncOperation]:
        """
        Appends an operation for the snapshot to the durable queue.
        Enqueuing the same version twice returns the existing operation;
        versions older than the queue head are ignored (None).
        """
        async with self._form_lock(snapshot.form_id):
            return await self._enqueue_locked(snapshot)

    async def _enqueue_locked(self, snapshot: FormSnapshot) -> Optional[SyncOperation]:
        fid = snapshot.form_id
        existing = self.queue.find_version(fid, snapshot.version)
        if existing is not None:
            return existing

        base = self._sync_base(fid)
        if snapshot.version <= base:
            logger.debug("Not queueing %s v%d: already at v%d", fid, snapshot.version, base)
            return None

        op = SyncOperation(
            id=uuid4_str(),
            form_id=fid,
            base_version=base,
            version=snapshot.version,
            payload=await self._encode(snapshot),
            created_at=time.time(),
            attempts=0,
        )
        try:
            self.queue.append(op)
        except _WRITE_ERRORS as e:
            raise PersistenceWriteError(fid, e) from e

        logger.debug("Queued %s for %s (v%d -> v%d)", op.id, fid, base, op.version)
        return op

    def pending(self, form_id: Optional[str] = None) -> List[SyncOperation]:
        return self.queue.pending(form_id)

    def dead_letters(self, form_id: Optional[str] = None) -> List[SyncOperation]:
        return self.queue.dead_letters(form_id)

    def conflicts(self, form_id: Optional[str] = None) -> List[VersionConflict]:
        return [VersionConflict(op, fv) for op, fv in self.queue.conflicts(form_id)]

    def retry_dead_letter(self, op_id: str) -> bool:
        return self.queue.requeue(op_id)

    def discard_operation(self, op_id: str) -> None:
        self.queue.remove(op_id)

    def _lock(self) -> asyncio.Lock:
        if self._flush_lock is None:
            self._flush_lock = asyncio.Lock()
        return self._flush_lock

    async def flush_queue(self) -> FlushReport:
        """
        Sends pending operations in FIFO order. Forms blocked by a conflict
        or a dead letter are skipped until resolved.
        """
        report = FlushReport()
        if not self.sync_config.enabled or self.remote is None:
            return report
        if not self._online:
            logger.debug("Offline, flush deferred")
            return report

        async with self._lock():
            self._in_progress = True
            try:
                blocked = self.queue.blocked_forms()
                for op in self.queue.pending():
                    if not self._online:
                        break
                    if op.form_id in blocked:
                        report.skipped += 1
                        continue
                    if not await self._deliver(op, report):
                        blocked.add(op.form_id)
            finally:
                self._in_progress = False

        return report

    async def _deliver(self, op: SyncOperation, report: FlushReport) -> bool:
        timeout_s = self.sync_config.send_timeout_ms / 1000.0
        attempts = op.attempts

        while True:
            attempts += 1
            failure: Optional[BaseException] = None
            try:
                response = await asyncio.wait_for(self.remote.send(op), timeout=timeout_s)
            except Exception as e:
                response = None
                failure = e

            if response is not None:
                if response.accepted:
                    self.queue.remove(op.id)
                    self.queue.record_ack(response.server_version)
                    report.sent.append(op.with_attempts(attempts))
                    logger.info("Synced %s for %s (server v%d)", op.id, op.form_id, response.server_version.version)
                    return True

                if response.server_version.version != op.base_version:
                    self.queue.record_attempt(op.id, attempts)
                    self.queue.mark_conflict(op.id, response.server_version)
                    conflict = VersionConflict(op.with_attempts(attempts), response.server_version)
                    report.conflicts.append(conflict)
                    self._report(conflict)
                    return False

                failure = RuntimeError(f"server refused operation {op.id}")

            self.queue.record_attempt(op.id, attempts, repr(failure))
            if attempts >= self.sync_config.max_attempts:
                self.queue.mark_dead(op.id, repr(failure))
                err = SyncTransportError(op.with_attempts(attempts), failure)
                report.dead_lettered.append(err)
                self._report(err)
                return False

            delay_s = self.sync_config.retry_delay_ms * (2 ** (attempts - 1)) / 1000.0
            logger.warning(
                "Sync of %s failed (attempt %d/%d), retrying in %.2fs: %r",
                op.id, attempts, self.sync_config.max_attempts, delay_s, failure,
            )
            await self._sleep(delay_s)
            if not self._online:
                return False

    async def resolve_conflict(
        self,
        conflict: VersionConflict,
        resolution: ConflictResolution,
        values: Optional[Mapping[str, Any]] = None,
    ) -> Optional[SyncOperation]:
        """
        Applies the caller's decision. There is no default merge strategy.

        - ACCEPT_LOCAL: re-queue the latest local values on top of the server version.
        - ACCEPT_REMOTE: adopt server values (given, or fetched when the
          endpoint supports fetch()); nothing is queued.
        - MERGE: queue the caller-merged `values` on top of the server version.
        """
        fid = conflict.form_id
        server = conflict.server_version

        if resolution is ConflictResolution.ACCEPT_REMOTE:
            if values is None:
                fetch = getattr(self.remote, "fetch", None)
                if fetch is None:
                    raise ValueError("Remote values are required to accept the remote version")
                values, server = await fetch(fid)
        elif resolution is ConflictResolution.MERGE:
            if values is None:
                raise ValueError("Merged values are required for a MERGE resolution")
        else:
            local = self.load_local(fid)
            values = local.values if local is not None else codec.decompress(conflict.operation.payload).values

        self.queue.remove_form(fid)
        self.queue.record_ack(server)

        version = max(self.local_version(fid), server.version) + 1
        self._local_versions[fid] = version
        snap = FormSnapshot(form_id=fid, values=dict(values), version=version, updated_at=time.time())
        await self.persist_local(snap)

        logger.info("Conflict on %s resolved with %s", fid, resolution.value)
        if resolution is ConflictResolution.ACCEPT_REMOTE:
            return None
        return await self.enqueue_sync(snap)

    # ----------------------------
    # Connectivity / status
    # ----------------------------
    @property
    def is_online(self) -> bool:
        return self._online

    async def set_online(self, online: bool) -> Optional[FlushReport]:
        """Going back online flushes the queue."""
        was_online = self._online
        self._online = bool(online)
        if self._online and not was_online:
            logger.info("Back online, flushing sync queue")
            return await self.flush_queue()
        return None

    def sync_status(self) -> SyncStatus:
        counts = self.queue.counts()
        return SyncStatus(
            is_online=self._online,
            queue_size=counts["PENDING"],
            sync_in_progress=self._in_progress,
            conflicts=counts["CONFLICT"],
            dead_letters=counts["DEAD"],
        )
