import json
from pathlib import Path

import pytest

from formengine.config import FormEngineConfig, PersistenceConfig, config_from_dict, load_config


def test_defaults():
    cfg = load_config()
    assert cfg == FormEngineConfig()
    assert cfg.engine.debounce_ms == 300
    assert cfg.persistence.history_limit == 10
    assert cfg.sync.max_attempts == 3


def test_partial_override_keeps_defaults(tmp_path):
    cfg = config_from_dict(
        {
            "engine": {"debounce_ms": 50},
            "persistence": {"db_path": str(tmp_path / "x.db")},
        }
    )
    assert cfg.engine.debounce_ms == 50
    assert cfg.engine.rule_timeout_ms == 5_000
    assert cfg.persistence.db_path == tmp_path / "x.db"
    assert isinstance(cfg.persistence.db_path, Path)


def test_unknown_section_or_key_is_rejected():
    with pytest.raises(ValueError):
        config_from_dict({"cache": {}})
    with pytest.raises(ValueError):
        config_from_dict({"sync": {"retries": 5}})


def test_load_from_file(tmp_path):
    path = tmp_path / "formengine.json"
    path.write_text(json.dumps({"sync": {"enabled": False}}), encoding="utf-8")

    cfg = load_config(path)
    assert cfg.sync.enabled is False


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.json")


def test_encryption_needs_a_key():
    with pytest.raises(ValueError):
        PersistenceConfig(encrypt=True)
    with pytest.raises(ValueError):
        config_from_dict({"persistence": {"encrypt": True}})

    cfg = config_from_dict({"persistence": {"encrypt": True, "encryption_key": "s3cret"}})
    assert cfg.persistence.encrypt is True
