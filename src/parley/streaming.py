"""Streamed reply construction — start, append, then finalize or cancel."""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import StrEnum

from .context.session import Session
from .context.store import Turn
from .context.tokens import TokenEstimator
from .provider import ChatRole

logger = logging.getLogger(__name__)

PARTIAL_MARKER = "\n[reply interrupted]"


class AbortPolicy(StrEnum):
    """What happens to already-streamed output when a reply is cancelled."""

    COMMIT_PARTIAL = "commit_partial"
    DISCARD = "discard"


class StreamPhase(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ReplyStream:
    """Accumulates an assistant reply outside the store until it completes.

    While streaming, the buffer is pending: it is not a turn, is never
    compressed and never persisted. ``finalize()`` commits the pending user
    turn (if any) and the reply together; ``cancel()`` commits them with a
    partial marker or drops them, depending on the abort policy. ``on_commit``
    runs after any commit (the manager uses it to re-check the budget).
    """

    def __init__(
        self,
        session: Session,
        estimator: TokenEstimator,
        user_text: str | None = None,
        abort_policy: AbortPolicy = AbortPolicy.COMMIT_PARTIAL,
        on_commit: Callable[[Session], None] | None = None,
    ) -> None:
        self._session = session
        self._estimator = estimator
        self._user_text = user_text
        self._policy = abort_policy
        self._on_commit = on_commit
        self._chunks: list[str] = []
        self._phase = StreamPhase.IDLE
        self._committed = False

    @property
    def phase(self) -> StreamPhase:
        return self._phase

    @property
    def committed(self) -> bool:
        """Whether any turn reached the session, even if the budget check then failed."""
        return self._committed

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    @property
    def user_text(self) -> str | None:
        return self._user_text

    def start(self) -> None:
        if self._phase != StreamPhase.IDLE:
            msg = f"cannot start a stream in phase {self._phase}"
            raise RuntimeError(msg)
        if self._session.streaming:
            msg = f"session '{self._session.name}' already has a reply in flight"
            raise RuntimeError(msg)
        self._session.set_streaming(True)
        self._phase = StreamPhase.STREAMING

    def append(self, chunk: str) -> None:
        self._require_streaming()
        self._chunks.append(chunk)

    def finalize(self) -> Turn:
        self._require_streaming()
        turn = self._commit(Turn(role=ChatRole.ASSISTANT, content=self.text))
        self._phase = StreamPhase.FINALIZED
        self._after_commit()
        return turn

    def cancel(self) -> Turn | None:
        """Resolve an abort; returns the committed partial turn, if any."""
        self._require_streaming()
        self._phase = StreamPhase.CANCELLED
        if self._policy == AbortPolicy.DISCARD or not self._chunks:
            self._session.set_streaming(False)
            if self._chunks:
                logger.warning(
                    "Discarded partial reply (%d chars) in session '%s'",
                    len(self.text),
                    self._session.name,
                )
            return None
        turn = self._commit(
            Turn(role=ChatRole.ASSISTANT, content=self.text + PARTIAL_MARKER, partial=True)
        )
        self._after_commit()
        return turn

    def fail(self) -> None:
        """Drop everything after a model error; nothing is committed."""
        self._require_streaming()
        self._session.set_streaming(False)
        self._phase = StreamPhase.FAILED

    def _commit(self, reply: Turn) -> Turn:
        self._session.set_streaming(False)
        self._committed = True
        if self._user_text is not None:
            self._session.append_turn(
                Turn(role=ChatRole.USER, content=self._user_text), self._estimator
            )
        return self._session.append_turn(reply, self._estimator)

    def _after_commit(self) -> None:
        if self._on_commit is not None:
            self._on_commit(self._session)

    def _require_streaming(self) -> None:
        if self._phase != StreamPhase.STREAMING:
            msg = f"stream is not active (phase {self._phase})"
            raise RuntimeError(msg)
