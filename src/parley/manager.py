"""Session lifecycle — create, load, save, switch and keep sessions in budget."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Generator
from datetime import datetime
from pathlib import Path
from typing import Any

from .config import EngineConfig
from .context.assembler import AssembledContext, ContextAssembler
from .context.compression import AsyncSummarizer, CompressionPolicy, CompressionResult
from .context.session import Session, SessionState
from .context.store import Turn
from .context.tokens import TokenEstimator, default_estimator
from .defaults import DefaultsProvider
from .errors import BudgetExceededAfterCompression, UnsavedSessionError
from .provider import ChatRole
from .storage import AUTONAME_DIR, YamlSessionStorage
from .streaming import ReplyStream
from .telemetry import trace_compression, trace_session_load, trace_session_save

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n[truncated]"


class SessionManager:
    """Owns naming, dirty tracking, persistence and role/agent sync.

    The role/agent registry is injected and only ever read. Compression
    and persistence happen at turn-commit boundaries, never while a reply
    is streaming.
    """

    def __init__(
        self,
        storage: YamlSessionStorage,
        registry: DefaultsProvider,
        estimator: TokenEstimator | None = None,
        config: EngineConfig | None = None,
        policy: CompressionPolicy | None = None,
        summarizer: AsyncSummarizer | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._storage = storage
        self._registry = registry
        self._estimator: TokenEstimator = estimator or default_estimator()
        self._assembler = ContextAssembler(registry, self._estimator)
        self._policy = policy or CompressionPolicy(
            self._estimator,
            reserved_turns=self._config.reserved_turns,
            summary_max_tokens=self._config.summary_max_tokens,
        )
        self._summarizer = summarizer

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        registry: DefaultsProvider,
        summarizer: AsyncSummarizer | None = None,
    ) -> SessionManager:
        storage = YamlSessionStorage(config.sessions_dir, lock_timeout=config.lock_timeout)
        return cls(storage, registry, config=config, summarizer=summarizer)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def estimator(self) -> TokenEstimator:
        return self._estimator

    @property
    def assembler(self) -> ContextAssembler:
        return self._assembler

    @property
    def policy(self) -> CompressionPolicy:
        return self._policy

    @property
    def storage(self) -> YamlSessionStorage:
        return self._storage

    # ------------------------------------------------------------------
    # Creation and restore
    # ------------------------------------------------------------------

    def new_session(
        self,
        model_id: str | None = None,
        role: str | None = None,
        agent: str | None = None,
        token_budget: int | None = None,
    ) -> Session:
        """A fresh ephemeral session; clean until its first mutation."""
        session = Session(
            model_id or self._config.model_id,
            token_budget or self._config.token_budget,
        )
        session.set_save_session(self._config.save_session)
        if role is not None:
            self.set_role(session, role)
        if agent is not None:
            self.set_agent(session, agent)
        session.dirty = False
        return session

    def load(self, name: str) -> Session:
        """Restore a saved session.

        Raises :class:`SessionNotFound` or :class:`SessionCorrupt`; a failed
        restore never turns into an empty session.
        """
        with trace_session_load(name):
            session = self._storage.load(name, self._estimator)
        for kind, ref in (("role", session.role_name), ("agent", session.agent_name)):
            if ref is not None and not self._resolvable(kind, ref):
                logger.warning("Session '%s' references unknown %s '%s'", name, kind, ref)
        return session

    def list_sessions(self) -> list[str]:
        return self._storage.list_names()

    def delete(self, name: str) -> bool:
        return self._storage.delete(name)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @staticmethod
    def is_dirty(session: Session) -> bool:
        return session.dirty

    @staticmethod
    def state(session: Session) -> SessionState:
        return session.state

    def autoname_for(self, session: Session) -> str:
        stamp = datetime.now().strftime("%Y%m%dT%H%M%S")
        if session.autoname:
            return f"{AUTONAME_DIR}/{stamp}-{session.autoname}"
        return f"{AUTONAME_DIR}/{stamp}"

    def save(self, session: Session, name: str | None = None, force: bool = False) -> Path:
        """Persist *session*; ephemeral sessions without a name get the auto-name."""
        self._require_quiescent(session)
        if name is None:
            name = session.name if session.path is not None else self.autoname_for(session)
        if self._config.snapshot_defaults:
            session.set_defaults_snapshot(self._assembler.snapshot(session))
        with trace_session_save(name):
            return self._storage.save(session, name, force=force)

    def switch(
        self,
        current: Session | None,
        name: str | None = None,
        discard: bool = False,
    ) -> Session:
        """Leave *current* for the session *name* (or a new one).

        A dirty current session must be saved first or explicitly discarded.
        """
        if current is not None:
            self._require_quiescent(current)
            if current.dirty and not discard:
                raise UnsavedSessionError(current.name)
            if current.dirty:
                logger.info("Discarding unsaved changes in session '%s'", current.name)
        if name is None:
            return self.new_session(model_id=current.model_id if current else None)
        return self.load(name)

    def close(self, session: Session) -> Path | None:
        """Exit handling driven by the session's ``save_session`` flag.

        ``True`` saves (auto-naming if needed), ``False`` drops changes,
        ``None`` raises :class:`UnsavedSessionError` for a dirty session so
        the caller can ask the user.
        """
        self._require_quiescent(session)
        if not session.dirty:
            return None
        policy = session.save_session
        if policy is None:
            policy = self._config.save_session
        if policy is True:
            return self.save(session)
        if policy is False:
            logger.info("Not saving session '%s' (save_session is off)", session.name)
            return None
        raise UnsavedSessionError(session.name)

    # ------------------------------------------------------------------
    # Role / agent / settings
    # ------------------------------------------------------------------

    def set_role(self, session: Session, name: str | None) -> None:
        """Choose the role resolved on the next assembly; past turns stay as they are."""
        if name is not None:
            self._registry.lookup_role(name)
        session.set_role_name(name)

    def set_agent(self, session: Session, name: str | None) -> None:
        if name is None:
            session.set_agent(None)
            return
        agent = self._registry.lookup_agent(name)
        if agent.default_role is not None and not session.role_explicit:
            self._registry.lookup_role(agent.default_role)
        session.set_agent(agent)

    def set_model(self, session: Session, model_id: str) -> None:
        session.set_model(model_id, self._estimator)

    def clear(self, session: Session) -> None:
        self._require_quiescent(session)
        session.clear()

    def info(self, session: Session) -> dict[str, Any]:
        return session.export(self._assembler.prompt_tokens(session))

    # ------------------------------------------------------------------
    # Turns, budget and assembly
    # ------------------------------------------------------------------

    def append_user_turn(self, session: Session, text: str) -> Turn:
        """Commit a user turn, then re-check the budget.

        On :class:`BudgetExceededAfterCompression` the turn stays committed;
        the caller may :meth:`truncate_last_turn` or pop it.
        """
        return self._append(session, Turn(role=ChatRole.USER, content=text))

    def append_assistant_turn(self, session: Session, text: str) -> Turn:
        return self._append(session, Turn(role=ChatRole.ASSISTANT, content=text))

    def _append(self, session: Session, turn: Turn) -> Turn:
        self._require_quiescent(session)
        committed = session.append_turn(turn, self._estimator)
        self.compress(session)
        return committed

    def compress(self, session: Session, extra_tokens: int = 0) -> CompressionResult:
        """Run a compression pass against the session budget."""
        self._require_quiescent(session)
        with trace_compression(session.name, session.token_budget) as span:
            with self._tracking(session):
                result = self._policy.compress(
                    session.store,
                    session.token_budget,
                    session.model_id,
                    prompt_tokens=self._assembler.prompt_tokens(session),
                    extra_tokens=extra_tokens,
                )
            span.set_attribute("compression.absorbed", result.absorbed_count)
        self._log_result(session, result)
        return result

    async def summarize(self, session: Session, extra_tokens: int = 0) -> CompressionResult:
        """Fold old turns with the model summarizer once past the threshold.

        Without a summarizer this is the same as :meth:`compress`.
        """
        if self._summarizer is None:
            return self.compress(session, extra_tokens)
        self._require_quiescent(session)
        with trace_compression(session.name, session.token_budget) as span:
            span.set_attribute("compression.strategy", "summarize")
            with self._tracking(session):
                result = await self._policy.compress_async(
                    session.store,
                    session.token_budget,
                    session.model_id,
                    self._summarizer,
                    prompt_tokens=self._assembler.prompt_tokens(session),
                    extra_tokens=extra_tokens,
                    threshold=self._config.compress_threshold,
                )
            span.set_attribute("compression.absorbed", result.absorbed_count)
        self._log_result(session, result)
        return result

    def truncate_last_turn(self, session: Session) -> Turn:
        """Shrink the trailing turn so the reserved tail fits the budget."""
        self._require_quiescent(session)
        turns = session.store.turns
        if not turns:
            msg = "session has no turns"
            raise IndexError(msg)
        last = turns[-1]
        reserved = self._policy.reserved_turns
        others = turns[-reserved:-1] if reserved > 1 else []
        room = (
            session.token_budget
            - self._assembler.prompt_tokens(session)
            - sum(t.estimated_tokens for t in others)
        )
        if room <= 0:
            raise BudgetExceededAfterCompression(
                session.token_budget - room + last.estimated_tokens, session.token_budget
            )
        text = self._fit_text(last.text, room, session.model_id)
        truncated = session.replace_last_turn(
            Turn(role=last.role, content=text, partial=last.partial), self._estimator
        )
        self.compress(session)
        return truncated

    def assemble_context(self, session: Session, pending_text: str | None = None) -> AssembledContext:
        return self._assembler.assemble(session, pending_text)

    def stream_reply(self, session: Session, user_text: str | None = None) -> ReplyStream:
        """Make room for *user_text*, then hand back an unstarted reply stream.

        The user turn is committed together with the reply on finalize (or
        with a partial reply on cancel), never before the call succeeds.
        """
        pending = self._assembler.estimate(user_text, session) if user_text is not None else 0
        self.compress(session, extra_tokens=pending)
        return ReplyStream(
            session,
            self._estimator,
            user_text=user_text,
            abort_policy=self._config.abort_policy,
            on_commit=self._after_commit,
        )

    async def prepare_reply(self, session: Session, user_text: str | None = None) -> ReplyStream:
        """Like :meth:`stream_reply`, but lets the model summarizer run first."""
        pending = self._assembler.estimate(user_text, session) if user_text is not None else 0
        await self.summarize(session, extra_tokens=pending)
        return self.stream_reply(session, user_text)

    def _after_commit(self, session: Session) -> None:
        self.compress(session)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _tracking(self, session: Session) -> Generator[None, None, None]:
        """Mark *session* dirty if the store changed, even when compression raised."""
        before = session.store.turns
        try:
            yield
        finally:
            after = session.store.turns
            if len(before) != len(after) or any(
                a is not b for a, b in zip(before, after, strict=False)
            ):
                session.mark_compressed()

    @staticmethod
    def _log_result(session: Session, result: CompressionResult) -> None:
        if result.changed:
            logger.info(
                "Session '%s' compressed (%s): %d -> %d tokens",
                session.name,
                result.strategy_used,
                result.original_tokens,
                result.final_tokens,
            )

    def _fit_text(self, text: str, room: int, model_id: str) -> str:
        estimate = self._estimator.estimate
        if estimate(text, model_id) <= room:
            return text
        lo, hi = 0, len(text)
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if estimate(text[:mid] + TRUNCATION_MARKER, model_id) <= room:
                lo = mid
            else:
                hi = mid - 1
        candidate = text[:lo] + TRUNCATION_MARKER
        if estimate(candidate, model_id) > room:
            return text[:lo]
        return candidate

    def _resolvable(self, kind: str, name: str) -> bool:
        lookup = self._registry.lookup_role if kind == "role" else self._registry.lookup_agent
        try:
            lookup(name)
        except KeyError:
            return False
        return True

    @staticmethod
    def _require_quiescent(session: Session) -> None:
        if session.streaming:
            msg = f"session '{session.name}' has a reply in flight"
            raise RuntimeError(msg)
