"""Tests for EngineConfig — defaults and PARLEY_* environment overrides."""

from __future__ import annotations

from pathlib import Path

import pytest

from parley.config import EngineConfig
from parley.streaming import AbortPolicy

_VARS = (
    "PARLEY_MODEL",
    "PARLEY_TOKEN_BUDGET",
    "PARLEY_RESERVED_TURNS",
    "PARLEY_SUMMARY_MAX_TOKENS",
    "PARLEY_COMPRESS_THRESHOLD",
    "PARLEY_ABORT_POLICY",
    "PARLEY_SAVE_SESSION",
    "PARLEY_SNAPSHOT_DEFAULTS",
    "PARLEY_SESSIONS_DIR",
    "PARLEY_LOCK_TIMEOUT_SEC",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in _VARS:
        monkeypatch.delenv(var, raising=False)


def test_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    config = EngineConfig.from_env()
    assert config.model_id == "gpt-4o-mini"
    assert config.token_budget == 8192
    assert config.reserved_turns == 2
    assert config.abort_policy == AbortPolicy.COMMIT_PARTIAL
    assert config.save_session is None
    assert config.snapshot_defaults is False
    assert config.compress_threshold is None
    assert config.sessions_dir == tmp_path / "parley" / "sessions"


def test_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("PARLEY_MODEL", "llama3")
    monkeypatch.setenv("PARLEY_TOKEN_BUDGET", "2048")
    monkeypatch.setenv("PARLEY_RESERVED_TURNS", "4")
    monkeypatch.setenv("PARLEY_SUMMARY_MAX_TOKENS", "128")
    monkeypatch.setenv("PARLEY_COMPRESS_THRESHOLD", "1500")
    monkeypatch.setenv("PARLEY_ABORT_POLICY", "DISCARD")
    monkeypatch.setenv("PARLEY_SAVE_SESSION", "yes")
    monkeypatch.setenv("PARLEY_SNAPSHOT_DEFAULTS", "1")
    monkeypatch.setenv("PARLEY_SESSIONS_DIR", str(tmp_path))
    monkeypatch.setenv("PARLEY_LOCK_TIMEOUT_SEC", "0.5")

    config = EngineConfig.from_env()

    assert config.model_id == "llama3"
    assert config.token_budget == 2048
    assert config.reserved_turns == 4
    assert config.summary_max_tokens == 128
    assert config.compress_threshold == 1500
    assert config.abort_policy == AbortPolicy.DISCARD
    assert config.save_session is True
    assert config.snapshot_defaults is True
    assert config.sessions_dir == tmp_path
    assert config.lock_timeout == 0.5


def test_save_session_false(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PARLEY_SAVE_SESSION", "off")
    assert EngineConfig.from_env().save_session is False


@pytest.mark.parametrize(
    ("var", "value"),
    [
        ("PARLEY_TOKEN_BUDGET", "lots"),
        ("PARLEY_TOKEN_BUDGET", "0"),
        ("PARLEY_RESERVED_TURNS", "-1"),
        ("PARLEY_COMPRESS_THRESHOLD", "0"),
        ("PARLEY_ABORT_POLICY", "explode"),
        ("PARLEY_SAVE_SESSION", "maybe"),
        ("PARLEY_LOCK_TIMEOUT_SEC", "soon"),
    ],
)
def test_invalid_values_name_the_variable(monkeypatch: pytest.MonkeyPatch, var: str, value: str):
    monkeypatch.setenv(var, value)
    with pytest.raises(ValueError, match=var):
        EngineConfig.from_env()


def test_direct_construction_validates():
    with pytest.raises(ValueError):
        EngineConfig(token_budget=0)
    with pytest.raises(ValueError):
        EngineConfig(reserved_turns=-1)
    with pytest.raises(ValueError):
        EngineConfig(compress_threshold=0)
