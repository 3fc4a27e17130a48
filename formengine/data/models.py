from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, TYPE_CHECKING

if TYPE_CHECKING:
    from formengine.core.errors import SyncTransportError, VersionConflict


@dataclass(frozen=True)
class FormSnapshot:
    """
    Values of one form at one local version.
    Superseded by later snapshots, never mutated.
    """
    form_id: str
    values: Dict[str, Any]
    version: int
    updated_at: float


@dataclass(frozen=True)
class SyncOperation:
    """
    Queued push of one snapshot.
    - base_version: server version this change was built on
    - version: version the server moves to when it applies the operation
    - payload: compressed FormSnapshot
    """
    id: str
    form_id: str
    base_version: int
    version: int
    payload: bytes
    created_at: float
    attempts: int = 0

    def with_attempts(self, attempts: int) -> "SyncOperation":
        return replace(self, attempts=attempts)


@dataclass(frozen=True)
class FormVersion:
    """Server-acknowledged version of a form."""
    form_id: str
    version: int
    checksum: str


@dataclass(frozen=True)
class SyncResponse:
    accepted: bool
    server_version: FormVersion


class ConflictResolution(str, Enum):
    ACCEPT_LOCAL = "accept_local"
    ACCEPT_REMOTE = "accept_remote"
    MERGE = "merge"


@dataclass
class FlushReport:
    sent: List[SyncOperation] = field(default_factory=list)
    conflicts: List["VersionConflict"] = field(default_factory=list)
    dead_lettered: List["SyncTransportError"] = field(default_factory=list)
    skipped: int = 0

    @property
    def ok(self) -> bool:
        return not self.conflicts and not self.dead_lettered


@dataclass(frozen=True)
class SyncStatus:
    is_online: bool
    queue_size: int
    sync_in_progress: bool
    conflicts: int = 0
    dead_letters: int = 0

    @property
    def has_unsaved_changes(self) -> bool:
        """True when something needs user attention ("changes not saved")."""
        return self.conflicts > 0 or self.dead_letters > 0
