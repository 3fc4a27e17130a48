from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from formengine.data.models import FormVersion, SyncOperation


class FormEngineError(Exception):
    """Base class for every error raised or reported by formengine."""


# ---------------------------------------------------------------------
# Setup-time (fatal, raised immediately)
# ---------------------------------------------------------------------
class CycleError(FormEngineError):
    def __init__(self, path: Sequence[str]):
        self.path = list(path)
        super().__init__("Dependency cycle: " + " -> ".join(self.path))


class RuleSetError(FormEngineError):
    """Malformed or duplicate rule registration."""


# ---------------------------------------------------------------------
# Per-validation (reported, never raised across the public API)
# ---------------------------------------------------------------------
class RuleExecutionError(FormEngineError):
    def __init__(self, field_id: str, rule_id: str, cause: BaseException):
        self.field_id = field_id
        self.rule_id = rule_id
        self.cause = cause
        super().__init__(f"Rule {rule_id!r} on field {field_id!r} failed: {cause!r}")


class RuleTimeoutError(FormEngineError):
    def __init__(self, field_id: str, rule_id: str, timeout_ms: float):
        self.field_id = field_id
        self.rule_id = rule_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Rule {rule_id!r} on field {field_id!r} timed out after {timeout_ms:g} ms")


# ---------------------------------------------------------------------
# Persistence / sync (retried, then surfaced)
# ---------------------------------------------------------------------
class PersistenceWriteError(FormEngineError):
    def __init__(self, form_id: str, cause: Optional[BaseException] = None):
        self.form_id = form_id
        self.cause = cause
        super().__init__(f"Failed to persist form {form_id!r}: {cause!r}")


class SyncTransportError(FormEngineError):
    """An operation exhausted its attempts and was dead-lettered."""

    def __init__(self, operation: "SyncOperation", cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        super().__init__(
            f"Sync operation {operation.id} for form {operation.form_id!r} "
            f"dead-lettered after {operation.attempts} attempts: {cause!r}"
        )


class VersionConflict(FormEngineError):
    """
    Local base version diverges from the server version.
    Carried as a value (FlushReport.conflicts) and emitted on the error channel.
    """

    def __init__(self, operation: "SyncOperation", server_version: "FormVersion"):
        self.operation = operation
        self.local_version = operation.base_version
        self.server_version = server_version
        super().__init__(
            f"Version conflict on form {operation.form_id!r}: "
            f"local base {self.local_version}, server {server_version.version}"
        )

    @property
    def form_id(self) -> str:
        return self.operation.form_id
