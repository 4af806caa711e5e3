"""Engine configuration — dataclass defaults, overridable from ``PARLEY_*`` env vars."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from .streaming import AbortPolicy

_DEFAULT_MODEL = "gpt-4o-mini"
_DEFAULT_TOKEN_BUDGET = 8192

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


def _default_sessions_dir() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "parley" / "sessions"


@dataclass
class EngineConfig:
    """Settings shared by the session manager and the REPL.

    Environment variables (all optional):
        - ``PARLEY_MODEL``: default model id for new sessions
        - ``PARLEY_TOKEN_BUDGET``: default token budget for new sessions
        - ``PARLEY_RESERVED_TURNS``: turns never touched by compression
        - ``PARLEY_SUMMARY_MAX_TOKENS``: cap on the compression summary
        - ``PARLEY_COMPRESS_THRESHOLD``: token count that triggers a model-written
          summary before the hard budget is reached
        - ``PARLEY_ABORT_POLICY``: ``commit_partial`` or ``discard``
        - ``PARLEY_SAVE_SESSION``: ``true`` / ``false``; unset means ask
        - ``PARLEY_SNAPSHOT_DEFAULTS``: record resolved role/agent on save
        - ``PARLEY_SESSIONS_DIR``: where session files live
        - ``PARLEY_LOCK_TIMEOUT_SEC``: wait for a session file lock
    """

    model_id: str = _DEFAULT_MODEL
    token_budget: int = _DEFAULT_TOKEN_BUDGET
    reserved_turns: int = 2
    summary_max_tokens: int = 512
    compress_threshold: int | None = None
    abort_policy: AbortPolicy = AbortPolicy.COMMIT_PARTIAL
    save_session: bool | None = None
    snapshot_defaults: bool = False
    sessions_dir: Path = field(default_factory=_default_sessions_dir)
    lock_timeout: float = 5.0

    def __post_init__(self) -> None:
        if self.token_budget <= 0:
            msg = "token_budget must be positive"
            raise ValueError(msg)
        if self.reserved_turns < 0:
            msg = "reserved_turns must be >= 0"
            raise ValueError(msg)
        if self.compress_threshold is not None and self.compress_threshold <= 0:
            msg = "compress_threshold must be positive"
            raise ValueError(msg)
        self.sessions_dir = Path(self.sessions_dir)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Build a config from ``PARLEY_*`` variables; unset ones keep defaults.

        Raises:
            ValueError: If a variable is set to a value that does not parse.
        """
        config = cls()
        env = os.environ

        if model := env.get("PARLEY_MODEL", "").strip():
            config.model_id = model
        if raw := env.get("PARLEY_TOKEN_BUDGET", "").strip():
            config.token_budget = _parse_int("PARLEY_TOKEN_BUDGET", raw, minimum=1)
        if raw := env.get("PARLEY_RESERVED_TURNS", "").strip():
            config.reserved_turns = _parse_int("PARLEY_RESERVED_TURNS", raw, minimum=0)
        if raw := env.get("PARLEY_SUMMARY_MAX_TOKENS", "").strip():
            config.summary_max_tokens = _parse_int("PARLEY_SUMMARY_MAX_TOKENS", raw, minimum=1)
        if raw := env.get("PARLEY_COMPRESS_THRESHOLD", "").strip():
            config.compress_threshold = _parse_int("PARLEY_COMPRESS_THRESHOLD", raw, minimum=1)
        if raw := env.get("PARLEY_ABORT_POLICY", "").strip().lower():
            try:
                config.abort_policy = AbortPolicy(raw)
            except ValueError as exc:
                valid = ", ".join(p.value for p in AbortPolicy)
                msg = f"Invalid PARLEY_ABORT_POLICY '{raw}'. Valid values: {valid}"
                raise ValueError(msg) from exc
        if raw := env.get("PARLEY_SAVE_SESSION", "").strip().lower():
            config.save_session = _parse_bool("PARLEY_SAVE_SESSION", raw)
        if raw := env.get("PARLEY_SNAPSHOT_DEFAULTS", "").strip().lower():
            config.snapshot_defaults = bool(_parse_bool("PARLEY_SNAPSHOT_DEFAULTS", raw))
        if raw := env.get("PARLEY_SESSIONS_DIR", "").strip():
            config.sessions_dir = Path(raw).expanduser()
        if raw := env.get("PARLEY_LOCK_TIMEOUT_SEC", "").strip():
            try:
                config.lock_timeout = float(raw)
            except ValueError as exc:
                msg = f"Invalid PARLEY_LOCK_TIMEOUT_SEC '{raw}': expected a number"
                raise ValueError(msg) from exc
        return config


def _parse_int(var: str, raw: str, minimum: int) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        msg = f"Invalid {var} '{raw}': expected an integer"
        raise ValueError(msg) from exc
    if value < minimum:
        msg = f"Invalid {var} '{raw}': must be >= {minimum}"
        raise ValueError(msg)
    return value


def _parse_bool(var: str, raw: str) -> bool:
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    msg = f"Invalid {var} '{raw}': expected true or false"
    raise ValueError(msg)
