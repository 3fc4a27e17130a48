from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from PySide6.QtCore import QObject, Signal

from formengine.config import ControllerConfig
from formengine.core.engine import ValidationEngine
from formengine.core.errors import FormEngineError, PersistenceWriteError, VersionConflict
from formengine.core.rules import ValidationResult, first_error, summarize
from formengine.data import codec
from formengine.data.models import FormSnapshot
from formengine.data.persistence import PersistenceLayer


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldState:
    """What a field widget needs to render itself."""
    value: Any
    error: Optional[str] = None
    is_validating: bool = False


@dataclass(frozen=True)
class SubmitResult:
    ok: bool
    errors: Dict[str, str] = field(default_factory=dict)
    snapshot: Optional[FormSnapshot] = None


@dataclass
class FormMetrics:
    field_updates: int = 0
    saves: int = 0
    validation_time_ms: float = 0.0
    last_update: float = 0.0


class FormController(QObject):
    """
    Wires edits -> DependencyGraph -> ValidationEngine -> PersistenceLayer.

    IMPORTANT:
    - Engine and persistence are injected; the controller never builds them.
    - Errors reach the UI only through signals, never as task exceptions.
    """

    field_state_changed = Signal(str, object)  # field_id, FieldState
    validation_error = Signal(object)  # RuleExecutionError / RuleTimeoutError
    persistence_error = Signal(object)  # PersistenceWriteError / SyncTransportError
    sync_conflict = Signal(object)  # VersionConflict
    sync_status_changed = Signal(object)  # SyncStatus
    submitted = Signal(object)  # SubmitResult

    def __init__(
        self,
        form_id: str,
        engine: ValidationEngine,
        persistence: PersistenceLayer,
        *,
        initial_values: Optional[Mapping[str, Any]] = None,
        config: Optional[ControllerConfig] = None,
        parent: Optional[QObject] = None,
    ):
        super().__init__(parent)

        fid = (form_id or "").strip()
        if not fid:
            raise ValueError("form_id is required")

        self.form_id = fid
        self.engine = engine
        self.persistence = persistence
        self.config = config or ControllerConfig()

        self._values: Dict[str, Any] = dict(initial_values or {})
        self._errors: Dict[str, Optional[str]] = {}
        self._save_task: Optional[asyncio.Task] = None
        self._save_due = False
        self._inflight: Set[asyncio.Task] = set()
        self._last_saved_checksum: Optional[str] = None
        self._metrics = FormMetrics()

        engine.add_error_listener(self._on_engine_error)
        persistence.add_error_listener(self._on_persistence_error)

    # ----------------------------
    # Error channel
    # ----------------------------
    def _on_engine_error(self, err: FormEngineError) -> None:
        self.validation_error.emit(err)

    def _on_persistence_error(self, err: FormEngineError) -> None:
        if isinstance(err, VersionConflict):
            if err.form_id == self.form_id:
                self.sync_conflict.emit(err)
            return
        form_id = getattr(err, "form_id", None) or getattr(getattr(err, "operation", None), "form_id", None)
        if form_id in (None, self.form_id):
            self.persistence_error.emit(err)

    # ----------------------------
    # State
    # ----------------------------
    @property
    def values(self) -> Dict[str, Any]:
        return dict(self._values)

    def field_state(self, field_id: str) -> FieldState:
        return FieldState(
            value=self._values.get(field_id),
            error=self._errors.get(field_id),
            is_validating=self.engine.is_validating(field_id),
        )

    def field_states(self) -> Dict[str, FieldState]:
        names = list(dict.fromkeys(list(self.engine.fields) + list(self._values)))
        return {name: self.field_state(name) for name in names}

    def errors(self) -> Dict[str, str]:
        return {k: v for k, v in self._errors.items() if v}

    def metrics(self) -> FormMetrics:
        m = self._metrics
        return FormMetrics(
            field_updates=m.field_updates,
            saves=m.saves,
            validation_time_ms=self.engine.last_duration_ms,
            last_update=m.last_update,
        )

    def get_snapshot(self) -> FormSnapshot:
        """Current in-memory values at the latest local version."""
        return FormSnapshot(
            form_id=self.form_id,
            values=dict(self._values),
            version=self.persistence.local_version(self.form_id),
            updated_at=self._metrics.last_update or time.time(),
        )

    def _apply_results(self, field_id: str, results: List[ValidationResult]) -> None:
        self._errors[field_id] = first_error(results)
        self.field_state_changed.emit(field_id, self.field_state(field_id))

    def load(self) -> bool:
        """Restores the last locally persisted snapshot, if any."""
        snap = self.persistence.load_local(self.form_id)
        if snap is None:
            return False
        self._values = dict(snap.values)
        self._errors.clear()
        self._last_saved_checksum = codec.checksum(snap.values)
        for name in self._values:
            self.field_state_changed.emit(name, self.field_state(name))
        return True

    # ----------------------------
    # Edits
    # ----------------------------
    async def on_change(self, field_id: str, value: Any) -> None:
        """
        Records the value, re-validates the field and everything that reads
        it (dependencies first), then schedules a debounced save.
        """
        self._values[field_id] = value
        self._metrics.field_updates += 1
        self._metrics.last_update = time.time()

        affected = self.engine.on_field_change(field_id, value, self._values)
        for name in [field_id] + affected:
            self.field_state_changed.emit(
                name, FieldState(self._values.get(name), self._errors.get(name), is_validating=True)
            )

        results = await self.engine.validate_field(field_id, value, dict(self._values))
        self._apply_results(field_id, results)

        for name in affected:
            dep_results = await self.engine.validate_field(name, self._values.get(name), dict(self._values))
            self._apply_results(name, dep_results)

        self._schedule_save()

    async def submit(self, action: Optional[Callable[[Dict[str, Any]], Any]] = None) -> SubmitResult:
        """
        Full-form validation without debounce. Rejected when any field's
        latest result is invalid; otherwise saves immediately and runs action.
        """
        self._cancel_pending_save()

        results = await self.engine.validate_form(dict(self._values))
        for name, field_results in results.items():
            self._apply_results(name, field_results)

        errors = summarize(results)
        if errors:
            outcome = SubmitResult(ok=False, errors=errors)
            self.submitted.emit(outcome)
            return outcome

        snap = await self._save_now(force=True)
        if action is not None:
            ret = action(dict(self._values))
            if inspect.isawaitable(ret):
                await ret

        outcome = SubmitResult(ok=True, snapshot=snap)
        self.submitted.emit(outcome)
        return outcome

    # ----------------------------
    # Persistence scheduling
    # ----------------------------
    def _cancel_pending_save(self) -> None:
        task, self._save_task = self._save_task, None
        if task is None or task.done():
            return
        if self._save_due:
            # Debounce elapsed, the write is under way: let it finish.
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
        else:
            task.cancel()

    def _schedule_save(self) -> None:
        self._cancel_pending_save()
        self._save_due = False
        self._save_task = asyncio.get_running_loop().create_task(self._save_later())

    async def _save_later(self) -> Optional[FormSnapshot]:
        await asyncio.sleep(self.config.persist_debounce_ms / 1000.0)
        self._save_due = True
        return await self._save_now()

    async def flush_pending_save(self) -> Optional[FormSnapshot]:
        """Runs a scheduled save right away (e.g. before closing the form)."""
        task = self._save_task
        if task is None or task.done():
            return None
        if self._save_due:
            return await task
        self._cancel_pending_save()
        return await self._save_now()

    async def _save_now(self, force: bool = False) -> Optional[FormSnapshot]:
        cs = codec.checksum(self._values)
        if not force and cs == self._last_saved_checksum:
            return None

        snap: Optional[FormSnapshot] = None
        try:
            snap = self.persistence.snapshot(self.form_id, self._values)
            await self.persistence.persist_local(snap)
            self._last_saved_checksum = cs
            self._metrics.saves += 1
            if self.persistence.sync_config.enabled:
                await self.persistence.enqueue_sync(snap)
                if self.config.auto_flush:
                    await self.persistence.flush_queue()
        except FormEngineError as e:
            logger.error("Saving form %s failed: %s", self.form_id, e)
            self.persistence_error.emit(e)
        except Exception as e:
            logger.exception("Unexpected error while saving form %s", self.form_id)
            self.persistence_error.emit(PersistenceWriteError(self.form_id, e))

        self.sync_status_changed.emit(self.persistence.sync_status())
        return snap

    async def set_online(self, online: bool) -> None:
        await self.persistence.set_online(online)
        self.sync_status_changed.emit(self.persistence.sync_status())

    async def aclose(self) -> None:
        """Saves anything still scheduled and waits for writes in flight."""
        await self.flush_pending_save()
        pending = [t for t in self._inflight if not t.done()]
        if pending:
            await asyncio.gather(*pending)
