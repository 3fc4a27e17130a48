from __future__ import annotations

import os

# Qt needs a platform plugin; offscreen avoids display/libGL dependencies.
os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

from pathlib import Path
from typing import List

import pytest

from formengine.config import PersistenceConfig, SyncConfig
from formengine.data.persistence import PersistenceLayer
from formengine.data.remote import InMemoryRemoteEndpoint


class FakeClock:
    """Millisecond clock driven by the test."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class SleepRecorder:
    """Stands in for asyncio.sleep in backoff paths; records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "formengine.db"


@pytest.fixture
def remote() -> InMemoryRemoteEndpoint:
    return InMemoryRemoteEndpoint()


@pytest.fixture
def persistence(db_path, remote, sleeper) -> PersistenceLayer:
    return PersistenceLayer(
        PersistenceConfig(db_path=db_path),
        SyncConfig(max_attempts=3, retry_delay_ms=100, send_timeout_ms=1_000),
        remote=remote,
        sleep=sleeper,
    )


@pytest.fixture(scope="session")
def qt_app():
    from PySide6.QtCore import QCoreApplication

    app = QCoreApplication.instance() or QCoreApplication([])
    yield app
