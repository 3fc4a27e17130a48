from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Protocol, Tuple

from formengine.data import codec
from formengine.data.models import FormVersion, SyncOperation, SyncResponse


logger = logging.getLogger(__name__)


class RemoteEndpoint(Protocol):
    """
    Transport-agnostic sync target (HTTP, WebSocket, ... live elsewhere).

    send() raises on transport failure; a reachable server answers with
    accepted=False plus its current version when it refuses the operation.
    """

    async def send(self, op: SyncOperation) -> SyncResponse: ...


class InMemoryRemoteEndpoint:
    """
    Reference server.

    - Applies an operation only when op.base_version equals the current
      version; the form then moves to op.version.
    - Idempotent on operation id: resending an applied operation returns
      accepted=True and leaves state untouched.
    - `offline` / fail_next() simulate transport failures.
    """

    def __init__(self, latency_s: float = 0.0):
        self.latency_s = latency_s
        self.offline = False
        self._fail_next = 0
        self._forms: Dict[str, Tuple[int, Dict[str, Any], str]] = {}
        self._applied: Dict[str, FormVersion] = {}
        self.received: List[str] = []

    def fail_next(self, count: int = 1) -> None:
        self._fail_next += count

    def seed(self, form_id: str, values: Dict[str, Any], version: int) -> FormVersion:
        """Simulates an edit made elsewhere."""
        cs = codec.checksum(values)
        self._forms[form_id] = (version, dict(values), cs)
        return FormVersion(form_id=form_id, version=version, checksum=cs)

    def current(self, form_id: str) -> FormVersion:
        version, _, cs = self._forms.get(form_id, (0, {}, ""))
        return FormVersion(form_id=form_id, version=version, checksum=cs)

    async def fetch(self, form_id: str) -> Tuple[Dict[str, Any], FormVersion]:
        version, values, cs = self._forms.get(form_id, (0, {}, ""))
        return dict(values), FormVersion(form_id=form_id, version=version, checksum=cs)

    async def send(self, op: SyncOperation) -> SyncResponse:
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        if self.offline:
            raise ConnectionError("remote endpoint unreachable")
        if self._fail_next > 0:
            self._fail_next -= 1
            raise ConnectionError("simulated transport failure")

        self.received.append(op.id)

        if op.id in self._applied:
            return SyncResponse(accepted=True, server_version=self.current(op.form_id))

        current = self.current(op.form_id)
        if op.base_version != current.version:
            logger.debug(
                "Refusing %s for %s: base %d, server %d",
                op.id, op.form_id, op.base_version, current.version,
            )
            return SyncResponse(accepted=False, server_version=current)

        snapshot = codec.decompress(op.payload)
        self.seed(op.form_id, snapshot.values, op.version)
        applied = self.current(op.form_id)
        self._applied[op.id] = applied
        return SyncResponse(accepted=True, server_version=applied)
