from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union


DATA_DIR = Path(__file__).resolve().parent / "data"
DB_PATH = DATA_DIR / "formengine.db"


@dataclass(frozen=True)
class EngineConfig:
    # Async rules wait this long for a quiet period before running.
    debounce_ms: int = 300
    # Default cache TTL per rule kind; a rule's own ttl_ms wins.
    sync_ttl_ms: int = 5_000
    async_ttl_ms: int = 60_000
    rule_timeout_ms: int = 5_000


@dataclass(frozen=True)
class PersistenceConfig:
    db_path: Path = DB_PATH
    compression_level: int = 6
    # Snapshots larger than this (serialized bytes) are compressed off-loop.
    compress_threshold_bytes: int = 256 * 1024
    write_retries: int = 3
    history_limit: int = 10
    # Stored snapshots and restore points are encrypted after compression.
    encrypt: bool = False
    encryption_key: str = ""

    def __post_init__(self):
        if self.encrypt and not self.encryption_key:
            raise ValueError("encryption_key is required when encrypt is enabled")


@dataclass(frozen=True)
class SyncConfig:
    enabled: bool = True
    max_attempts: int = 3
    retry_delay_ms: int = 1_000
    send_timeout_ms: int = 10_000


@dataclass(frozen=True)
class ControllerConfig:
    persist_debounce_ms: int = 500
    # Flush the sync queue right after every scheduled save.
    auto_flush: bool = True


@dataclass(frozen=True)
class FormEngineConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)


_SECTIONS = {
    "engine": EngineConfig,
    "persistence": PersistenceConfig,
    "sync": SyncConfig,
    "controller": ControllerConfig,
}


def _build_section(name: str, cls: type, raw: Dict[str, Any]) -> Any:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown keys in config section '{name}': {', '.join(unknown)}")

    values = dict(raw)
    if "db_path" in values:
        values["db_path"] = Path(values["db_path"])
    return replace(cls(), **values)


def config_from_dict(data: Dict[str, Any]) -> FormEngineConfig:
    """
    Builds a config from a nested dict:
      {"engine": {...}, "persistence": {...}, "sync": {...}, "controller": {...}}
    Missing sections/keys keep their defaults.
    """
    unknown = sorted(set(data) - set(_SECTIONS))
    if unknown:
        raise ValueError(f"Unknown config sections: {', '.join(unknown)}")

    parts = {
        name: _build_section(name, cls, data.get(name) or {})
        for name, cls in _SECTIONS.items()
    }
    return FormEngineConfig(**parts)


def load_config(path: Optional[Union[str, Path]] = None) -> FormEngineConfig:
    if path is None:
        return FormEngineConfig()
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {p}")
    with p.open("r", encoding="utf-8") as f:
        return config_from_dict(json.load(f))
