"""Session — aggregate root owning one conversation's store and settings."""

from __future__ import annotations

import re
import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from ..defaults import AgentDefaults
from ..provider import ChatRole
from .store import MessageStore, Turn
from .tokens import TokenEstimator

TEMP_SESSION_NAME = "temp"

_SLUG_RE = re.compile(r"[^0-9A-Za-z]+")
_AUTONAME_WORDS = 6


class SessionState(StrEnum):
    """Lifecycle state derived from the backing path and the dirty flag."""

    EPHEMERAL = "ephemeral"
    BOUND = "bound"
    PERSISTED = "persisted"


def slugify(text: str, max_words: int = _AUTONAME_WORDS) -> str:
    words = _SLUG_RE.sub(" ", text).split()[:max_words]
    return "-".join(w.lower() for w in words)


class SessionRecord(BaseModel):
    """Persisted form of a session. Role and agent are stored by name only."""

    model: str
    token_budget: int = Field(gt=0)
    temperature: float | None = None
    top_p: float | None = None
    save_session: bool | None = None
    role_name: str | None = None
    role_explicit: bool = False
    agent_name: str | None = None
    agent_variables: dict[str, str] = Field(default_factory=dict)
    revision: int = 0
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    defaults_snapshot: dict[str, Any] | None = None
    compressed_turns: list[Turn] = Field(default_factory=list)
    turns: list[Turn] = Field(default_factory=list)

    def to_data(self) -> dict[str, Any]:
        """Plain data for the YAML writer; cached token counts are dropped."""
        data = self.model_dump(
            mode="json",
            exclude_none=True,
            exclude={
                "turns": {"__all__": {"estimated_tokens"}},
                "compressed_turns": {"__all__": {"estimated_tokens"}},
            },
        )
        for key in ("turns", "compressed_turns"):
            for turn in data.get(key, []):
                if not turn.get("summary"):
                    turn.pop("summary", None)
                if not turn.get("partial"):
                    turn.pop("partial", None)
        if not data["compressed_turns"]:
            del data["compressed_turns"]
        if not data["agent_variables"]:
            del data["agent_variables"]
        return data


class Session:
    """One conversation bound to a model and a token budget.

    The session owns its :class:`MessageStore`. Roles and agents are held
    by name and resolved at assembly time, so configuration edits apply to
    the next call. Every mutation sets ``dirty``; only a persist clears it.
    """

    def __init__(
        self,
        model_id: str,
        token_budget: int,
        name: str = TEMP_SESSION_NAME,
        store: MessageStore | None = None,
    ) -> None:
        if token_budget <= 0:
            msg = "token_budget must be positive"
            raise ValueError(msg)
        self._name = name
        self._path: str | None = None
        self._model_id = model_id
        self._token_budget = token_budget
        self.store = store or MessageStore()
        self._role_name: str | None = None
        self._role_explicit = False
        self._agent_name: str | None = None
        self._agent_variables: dict[str, str] = {}
        self._temperature: float | None = None
        self._top_p: float | None = None
        self._save_session: bool | None = None
        self._autoname: str | None = None
        self._revision = 0
        self._defaults_snapshot: dict[str, Any] | None = None
        self._streaming = False
        self.created_at = time.time()
        self.updated_at = self.created_at
        self.dirty = False

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def path(self) -> str | None:
        return self._path

    @property
    def state(self) -> SessionState:
        if self._path is None:
            return SessionState.EPHEMERAL
        return SessionState.BOUND if self.dirty else SessionState.PERSISTED

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def token_budget(self) -> int:
        return self._token_budget

    @property
    def role_name(self) -> str | None:
        return self._role_name

    @property
    def role_explicit(self) -> bool:
        return self._role_explicit

    @property
    def agent_name(self) -> str | None:
        return self._agent_name

    @property
    def agent_variables(self) -> dict[str, str]:
        return dict(self._agent_variables)

    @property
    def temperature(self) -> float | None:
        return self._temperature

    @property
    def top_p(self) -> float | None:
        return self._top_p

    @property
    def save_session(self) -> bool | None:
        return self._save_session

    @property
    def autoname(self) -> str | None:
        return self._autoname

    @property
    def revision(self) -> int:
        return self._revision

    @property
    def defaults_snapshot(self) -> dict[str, Any] | None:
        return self._defaults_snapshot

    @property
    def streaming(self) -> bool:
        return self._streaming

    def is_temp(self) -> bool:
        return self._name == TEMP_SESSION_NAME

    def is_empty(self) -> bool:
        return self.store.is_empty()

    def tokens(self) -> int:
        return self.store.total_tokens()

    def has_user_messages(self) -> bool:
        return any(t.role == ChatRole.USER for t in self.store)

    def user_turn_count(self) -> int:
        return sum(1 for t in self.store if t.role == ChatRole.USER)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _touch(self) -> None:
        self.dirty = True
        self.updated_at = time.time()

    def append_turn(self, turn: Turn, estimator: TokenEstimator) -> Turn:
        turn = self.store.append(turn.estimated(estimator, self._model_id))
        if (
            self.is_temp()
            and self._autoname is None
            and turn.role == ChatRole.USER
            and self.user_turn_count() == 1
        ):
            self._autoname = slugify(turn.text) or None
        self._touch()
        return turn

    def pop_turn(self) -> Turn:
        turn = self.store.pop()
        self._touch()
        return turn

    def replace_last_turn(self, turn: Turn, estimator: TokenEstimator) -> Turn:
        turn = self.store.replace_last(turn.estimated(estimator, self._model_id))
        self._touch()
        return turn

    def mark_compressed(self) -> None:
        self._touch()

    def clear(self) -> None:
        self.store.clear()
        self._autoname = None
        self._touch()

    def set_role_name(self, name: str | None) -> None:
        """Explicit role choice; ``None`` drops the override."""
        self._role_name = name
        self._role_explicit = name is not None
        self._touch()

    def set_agent(self, agent: AgentDefaults | None) -> None:
        """Attach or detach an agent without rewriting past turns.

        An agent's default role becomes the session role only when the
        session has no explicit role of its own.
        """
        if agent is None:
            if not self._role_explicit:
                self._role_name = None
            self._agent_name = None
            self._agent_variables = {}
        else:
            self._agent_name = agent.name
            self._agent_variables = {}
            if not self._role_explicit:
                self._role_name = agent.default_role
        self._touch()

    def set_agent_variable(self, key: str, value: str) -> None:
        if self._agent_name is None:
            msg = "no agent is set on this session"
            raise ValueError(msg)
        if self._agent_variables.get(key) != value:
            self._agent_variables[key] = value
            self._touch()

    def set_model(self, model_id: str, estimator: TokenEstimator) -> None:
        if model_id != self._model_id:
            self._model_id = model_id
            self.store.reestimate(estimator, model_id)
            self._touch()

    def set_token_budget(self, value: int) -> None:
        if value <= 0:
            msg = "token_budget must be positive"
            raise ValueError(msg)
        if value != self._token_budget:
            self._token_budget = value
            self._touch()

    def set_temperature(self, value: float | None) -> None:
        if value != self._temperature:
            self._temperature = value
            self._touch()

    def set_top_p(self, value: float | None) -> None:
        if value != self._top_p:
            self._top_p = value
            self._touch()

    def set_save_session(self, value: bool | None) -> None:
        if value != self._save_session:
            self._save_session = value
            self._touch()

    def set_streaming(self, value: bool) -> None:
        self._streaming = value

    def set_defaults_snapshot(self, snapshot: dict[str, Any] | None) -> None:
        self._defaults_snapshot = snapshot

    def mark_saved(self, name: str, path: str, revision: int) -> None:
        self._name = name
        self._path = path
        self._revision = revision
        self.dirty = False

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_record(self, revision: int | None = None) -> SessionRecord:
        return SessionRecord(
            model=self._model_id,
            token_budget=self._token_budget,
            temperature=self._temperature,
            top_p=self._top_p,
            save_session=self._save_session,
            role_name=self._role_name,
            role_explicit=self._role_explicit,
            agent_name=self._agent_name,
            agent_variables=dict(self._agent_variables),
            revision=self._revision if revision is None else revision,
            created_at=self.created_at,
            updated_at=self.updated_at,
            defaults_snapshot=self._defaults_snapshot,
            compressed_turns=self.store.archive,
            turns=self.store.turns,
        )

    @classmethod
    def from_record(
        cls,
        record: SessionRecord,
        name: str,
        path: str | None,
        estimator: TokenEstimator,
    ) -> Session:
        store = MessageStore(turns=record.turns, archive=record.compressed_turns)
        store.reestimate(estimator, record.model)
        session = cls(record.model, record.token_budget, name=name, store=store)
        session._path = path
        session._temperature = record.temperature
        session._top_p = record.top_p
        session._save_session = record.save_session
        session._role_name = record.role_name
        session._role_explicit = record.role_explicit
        session._agent_name = record.agent_name
        session._agent_variables = dict(record.agent_variables)
        session._revision = record.revision
        session._defaults_snapshot = record.defaults_snapshot
        session.created_at = record.created_at
        session.updated_at = record.updated_at
        session.dirty = False
        return session

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    def tokens_usage(self, prompt_tokens: int = 0) -> tuple[int, float]:
        """Total tokens and the percentage of the budget they use."""
        tokens = self.tokens() + prompt_tokens
        percent = round(tokens / self._token_budget * 100, 2)
        return tokens, percent

    def export(self, prompt_tokens: int = 0) -> dict[str, Any]:
        """Summary of settings, usage and turns for the ``.info`` command."""
        tokens, percent = self.tokens_usage(prompt_tokens)
        data: dict[str, Any] = {
            "name": self._name,
            "path": self._path,
            "state": self.state.value,
            "model": self._model_id,
        }
        if self._autoname:
            data["autoname"] = self._autoname
        for key, value in (
            ("role", self._role_name),
            ("agent", self._agent_name),
            ("temperature", self._temperature),
            ("top_p", self._top_p),
            ("save_session", self._save_session),
        ):
            if value is not None:
                data[key] = value
        data["token_budget"] = self._token_budget
        data["total_tokens"] = tokens
        data["total/budget"] = f"{percent}%"
        data["compressed_turns"] = len(self.store.archive)
        data["turns"] = [
            {"role": t.role.value, "content": t.text} for t in self.store
        ]
        return data

    def render(self) -> str:
        """Plain-text transcript."""
        lines: list[str] = []
        for turn in self.store:
            if turn.role == ChatRole.USER:
                lines.append(f">> {turn.text}")
            elif turn.role == ChatRole.SYSTEM:
                lines.append(turn.text)
                lines.append("")
            else:
                suffix = " [partial]" if turn.partial else ""
                lines.append(f"{turn.text}{suffix}")
                lines.append("")
        return "\n".join(lines).rstrip("\n")
