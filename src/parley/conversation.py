"""Multi-turn conversation driver: compress, assemble, stream, commit."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .context.assembler import AssembledContext
from .context.session import Session
from .context.store import Turn
from .errors import ModelCallError, ParleyError, StreamAborted
from .manager import SessionManager
from .provider import ChatRole, LLMProvider
from .streaming import ReplyStream
from .telemetry import trace_model_call

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]


class Conversation:
    """Runs model calls for one active session.

    Each call is made with a freshly assembled context; the reply is
    committed to the session only when the stream completes (or, on
    abort, according to the configured abort policy).
    """

    def __init__(
        self,
        manager: SessionManager,
        provider: LLMProvider,
        session: Session | None = None,
    ) -> None:
        self._manager = manager
        self._provider = provider
        self._session = session or manager.new_session()

    @property
    def session(self) -> Session:
        return self._session

    @property
    def provider(self) -> LLMProvider:
        return self._provider

    def use(self, session: Session) -> None:
        if self._session.streaming:
            msg = "cannot switch sessions while a reply is streaming"
            raise RuntimeError(msg)
        self._session = session

    async def send(
        self,
        text: str,
        on_chunk: ChunkCallback | None = None,
        abort: asyncio.Event | None = None,
    ) -> Turn:
        """Send *text* and return the committed assistant turn.

        Raises:
            BudgetExceededAfterCompression: *text* cannot fit (nothing
                committed), or the committed reply leaves the session over
                budget (the exchange stays; see ``truncate_last_turn``).
            StreamAborted: *abort* was set mid-reply; carries the partial turn.
            ModelCallError: the provider failed; nothing committed.
        """
        stream = await self._manager.prepare_reply(self._session, user_text=text)
        ctx = self._manager.assemble_context(self._session, pending_text=text)
        return await self._run(stream, ctx, on_chunk, abort)

    async def continue_reply(
        self,
        on_chunk: ChunkCallback | None = None,
        abort: asyncio.Event | None = None,
    ) -> Turn:
        """Ask for more of the last assistant reply."""
        last = self._last_turn()
        if last is None or last.role != ChatRole.ASSISTANT:
            msg = "no assistant reply to continue"
            raise ValueError(msg)
        stream = await self._manager.prepare_reply(self._session)
        ctx = self._manager.assemble_context(self._session)
        return await self._run(stream, ctx, on_chunk, abort)

    async def regenerate(
        self,
        on_chunk: ChunkCallback | None = None,
        abort: asyncio.Event | None = None,
    ) -> Turn:
        """Drop the last exchange and send its user message again.

        Whenever the new call ends without committing a reply (failure,
        discarded abort, cancellation), the dropped exchange is put back.
        """
        turns = self._session.store.turns
        index = next(
            (i for i in range(len(turns) - 1, -1, -1) if turns[i].role == ChatRole.USER),
            None,
        )
        if index is None or turns[-1].role != ChatRole.ASSISTANT:
            msg = "no exchange to regenerate"
            raise ValueError(msg)

        popped = [self._session.pop_turn() for _ in range(len(turns) - index)]
        popped.reverse()
        user_text = popped[0].text
        stream: ReplyStream | None = None
        try:
            stream = await self._manager.prepare_reply(self._session, user_text=user_text)
            ctx = self._manager.assemble_context(self._session, pending_text=user_text)
            return await self._run(stream, ctx, on_chunk, abort)
        finally:
            if stream is None or not stream.committed:
                for turn in popped:
                    self._session.append_turn(turn, self._manager.estimator)

    async def _run(
        self,
        stream: ReplyStream,
        ctx: AssembledContext,
        on_chunk: ChunkCallback | None,
        abort: asyncio.Event | None,
    ) -> Turn:
        stream.start()
        aborted = False
        in_callback = False
        try:
            with trace_model_call(ctx.model_id) as span:
                span.set_attribute("context.tokens", ctx.token_count)
                async for chunk in self._provider.stream(ctx.to_request()):
                    if abort is not None and abort.is_set():
                        aborted = True
                        span.add_event("model/aborted", {"chars": len(stream.text)})
                        break
                    stream.append(chunk)
                    if on_chunk is not None:
                        in_callback = True
                        on_chunk(chunk)
                        in_callback = False
        except asyncio.CancelledError:
            stream.cancel()
            raise
        except ParleyError:
            stream.fail()
            raise
        except Exception as exc:
            stream.fail()
            if in_callback:
                raise
            logger.error("Model call failed for '%s': %s", ctx.model_id, exc)
            msg = f"model call failed: {exc}"
            raise ModelCallError(msg) from exc

        if aborted:
            turn = stream.cancel()
            raise StreamAborted(turn)
        return stream.finalize()

    def _last_turn(self) -> Turn | None:
        turns = self._session.store.turns
        return turns[-1] if turns else None
