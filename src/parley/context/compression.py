"""Context Compression — fold old turns into one summary turn to fit a token budget."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from ..errors import BudgetExceededAfterCompression, ModelCallError, ParleyError
from ..provider import ChatMessage, ChatRequest, ChatRole, LLMProvider
from .store import MessageStore, Turn
from .tokens import TokenEstimator

logger = logging.getLogger(__name__)

SUMMARY_HEADER = "Summary of earlier conversation:"
SUMMARIZE_PROMPT = (
    "Summarize the conversation below in a few short lines, one fact per line. "
    "Keep names, decisions and open questions. Reply with the summary only."
)
_ELLIPSIS = "..."


class CompressionStrategy(StrEnum):
    """Available compression strategies."""

    TRUNCATE = "truncate"
    SUMMARIZE = "summarize"


@dataclass
class CompressionResult:
    """Outcome of one compression pass."""

    original_tokens: int
    final_tokens: int
    absorbed_count: int
    strategy_used: CompressionStrategy
    summary: str = ""

    @property
    def changed(self) -> bool:
        return self.absorbed_count > 0


class Summarizer(Protocol):
    """Condenses turns into summary lines, extending a previous summary."""

    def summarize(self, previous: list[str], turns: list[Turn], model_id: str) -> list[str]: ...


class TruncatingSummarizer:
    """Deterministic summary: one ``role: excerpt`` line per absorbed turn."""

    def __init__(self, excerpt_chars: int = 200) -> None:
        self._excerpt = excerpt_chars

    def summarize(self, previous: list[str], turns: list[Turn], model_id: str) -> list[str]:
        lines = list(previous)
        for turn in turns:
            text = " ".join(turn.text.split())
            if len(text) > self._excerpt:
                text = text[: self._excerpt].rstrip() + _ELLIPSIS
            lines.append(f"{turn.role.value}: {text}")
        return lines


class AsyncSummarizer(Protocol):
    """Summarizer that needs to await something, usually a model call."""

    async def summarize(
        self, previous: list[str], turns: list[Turn], model_id: str
    ) -> list[str]: ...


class ModelSummarizer:
    """Asks the chat model to condense absorbed turns into summary lines.

    The request carries the previous summary (if any) and a transcript of
    the absorbed turns. Each non-empty line of the reply becomes one
    summary line.
    """

    def __init__(
        self,
        provider: LLMProvider,
        prompt: str = SUMMARIZE_PROMPT,
        max_tokens: int | None = None,
    ) -> None:
        self._provider = provider
        self._prompt = prompt
        self._max_tokens = max_tokens

    def request_for(self, previous: list[str], turns: list[Turn], model_id: str) -> ChatRequest:
        parts: list[str] = []
        if previous:
            parts.append("Earlier summary:\n" + "\n".join(previous))
        transcript = "\n".join(f"{t.role.value}: {t.text}" for t in turns)
        parts.append("Conversation:\n" + transcript)
        return ChatRequest(
            model=model_id,
            messages=[
                ChatMessage(role=ChatRole.SYSTEM, content=self._prompt),
                ChatMessage(role=ChatRole.USER, content="\n\n".join(parts)),
            ],
            max_tokens=self._max_tokens,
        )

    async def summarize(self, previous: list[str], turns: list[Turn], model_id: str) -> list[str]:
        request = self.request_for(previous, turns, model_id)
        try:
            reply = await self._provider.chat(request)
        except ParleyError:
            raise
        except Exception as exc:
            logger.error("Summarization call failed for '%s': %s", model_id, exc)
            msg = f"summarization call failed: {exc}"
            raise ModelCallError(msg) from exc
        return [line.strip() for line in reply.splitlines() if line.strip()]


def summary_lines(turn: Turn) -> list[str]:
    """Recover the lines of a summary turn produced by this module."""
    lines = turn.text.split("\n")
    if lines and lines[0] == SUMMARY_HEADER:
        return [line for line in lines[1:] if line]
    return [line for line in lines if line]


class CompressionPolicy:
    """Keeps ``store + prompt + pending`` within a token budget.

    The most recent ``reserved_turns`` turns are never touched. Older turns
    are absorbed oldest-first into a single leading ``system`` summary turn
    until the budget holds.
    """

    def __init__(
        self,
        estimator: TokenEstimator,
        reserved_turns: int = 2,
        strategy: CompressionStrategy = CompressionStrategy.TRUNCATE,
        summarizer: Summarizer | None = None,
        summary_max_tokens: int = 512,
    ) -> None:
        if reserved_turns < 0:
            msg = "reserved_turns must be >= 0"
            raise ValueError(msg)
        if strategy == CompressionStrategy.SUMMARIZE and summarizer is None:
            msg = "the summarize strategy needs a summarizer"
            raise ValueError(msg)
        self._estimator = estimator
        self._reserved = reserved_turns
        self._strategy = strategy
        self._summarizer: Summarizer = summarizer or TruncatingSummarizer()
        self._summary_max = summary_max_tokens

    @property
    def reserved_turns(self) -> int:
        return self._reserved

    def total_tokens(
        self, store: MessageStore, prompt_tokens: int = 0, extra_tokens: int = 0
    ) -> int:
        return store.total_tokens() + prompt_tokens + extra_tokens

    def needs_compression(
        self,
        store: MessageStore,
        budget: int,
        prompt_tokens: int = 0,
        extra_tokens: int = 0,
    ) -> bool:
        return self.total_tokens(store, prompt_tokens, extra_tokens) > budget

    def compress(
        self,
        store: MessageStore,
        budget: int,
        model_id: str,
        prompt_tokens: int = 0,
        extra_tokens: int = 0,
    ) -> CompressionResult:
        """Run one pass; raise :class:`BudgetExceededAfterCompression` if it cannot fit.

        ``extra_tokens`` accounts for input that is not in the store yet.
        """
        original = self.total_tokens(store, prompt_tokens, extra_tokens)
        if original <= budget:
            return CompressionResult(original, original, 0, self._strategy)

        turns = store.turns
        ends = self._prefix_ends(turns)
        if not ends:
            raise BudgetExceededAfterCompression(original, budget)

        lead = turns[0] if turns[0].role == ChatRole.SYSTEM else None
        previous = summary_lines(lead) if lead is not None and lead.summary else []

        summary: Turn | None = None
        total = original
        end = ends[0]
        for end in ends:
            rest = sum(t.estimated_tokens for t in turns[end:]) + prompt_tokens + extra_tokens
            absorbed = [t for t in turns[:end] if not t.summary]
            lines = self._summarizer.summarize(previous, absorbed, model_id)
            summary = self._fit(lines, budget - rest, model_id)
            total = rest + (summary.estimated_tokens if summary is not None else 0)
            if total <= budget:
                break

        store.compact_prefix(end, summary)
        logger.debug(
            "Compressed %d turns: %d -> %d tokens (budget %d)", end, original, total, budget
        )
        if total > budget:
            raise BudgetExceededAfterCompression(total, budget)
        return CompressionResult(
            original_tokens=original,
            final_tokens=total,
            absorbed_count=end,
            strategy_used=self._strategy,
            summary=summary.text if summary is not None else "",
        )

    async def compress_async(
        self,
        store: MessageStore,
        budget: int,
        model_id: str,
        summarizer: AsyncSummarizer,
        prompt_tokens: int = 0,
        extra_tokens: int = 0,
        threshold: int | None = None,
    ) -> CompressionResult:
        """Fold everything outside the reserved tail with one summarizer call.

        Triggers once the total passes ``threshold`` (or the budget, when
        lower or unset). Raises :class:`BudgetExceededAfterCompression` only
        if the result is still over the hard budget.
        """
        original = self.total_tokens(store, prompt_tokens, extra_tokens)
        trigger = budget if threshold is None else min(threshold, budget)
        unchanged = CompressionResult(original, original, 0, CompressionStrategy.SUMMARIZE)
        if original <= trigger:
            return unchanged

        turns = store.turns
        ends = self._prefix_ends(turns)
        if not ends:
            if original > budget:
                raise BudgetExceededAfterCompression(original, budget)
            return unchanged

        end = ends[-1]
        lead = turns[0] if turns[0].role == ChatRole.SYSTEM else None
        previous = summary_lines(lead) if lead is not None and lead.summary else []
        absorbed = [t for t in turns[:end] if not t.summary]
        lines = await summarizer.summarize(previous, absorbed, model_id)

        rest = sum(t.estimated_tokens for t in turns[end:]) + prompt_tokens + extra_tokens
        summary = self._fit(lines, budget - rest, model_id)
        total = rest + (summary.estimated_tokens if summary is not None else 0)
        store.compact_prefix(end, summary)
        logger.debug(
            "Summarized %d turns: %d -> %d tokens (budget %d)", end, original, total, budget
        )
        if total > budget:
            raise BudgetExceededAfterCompression(total, budget)
        return CompressionResult(
            original_tokens=original,
            final_tokens=total,
            absorbed_count=end,
            strategy_used=CompressionStrategy.SUMMARIZE,
            summary=summary.text if summary is not None else "",
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _prefix_ends(self, turns: list[Turn]) -> list[int]:
        """Candidate prefix lengths to fold into the summary, shortest first."""
        tail_start = max(0, len(turns) - self._reserved)
        if not any(t.role != ChatRole.SYSTEM for t in turns):
            return []
        lead = 1 if turns and turns[0].role == ChatRole.SYSTEM else 0
        ends = list(range(lead + 1, tail_start + 1))
        if not ends and lead and tail_start >= 1 and not turns[0].summary:
            # Only a non-summary system turn is outside the tail
            ends = [1]
        return ends

    def _render(self, lines: list[str]) -> str:
        return "\n".join([SUMMARY_HEADER, *lines])

    def _fit(self, lines: list[str], room: int, model_id: str) -> Turn | None:
        """Newest-first sliding window over *lines* within ``room`` tokens."""
        room = min(room, self._summary_max)
        estimate = self._estimator.estimate
        if room <= 0 or estimate(SUMMARY_HEADER, model_id) > room:
            return None

        kept: list[str] = []
        for line in reversed(lines):
            candidate = [line, *kept]
            if estimate(self._render(candidate), model_id) > room:
                break
            kept = candidate

        if not kept and lines:
            line = self._truncate_line(lines[-1], room, model_id)
            kept = [line] if line else []
        text = self._render(kept)
        return Turn(
            role=ChatRole.SYSTEM,
            content=text,
            estimated_tokens=estimate(text, model_id),
            summary=True,
        )

    def _truncate_line(self, line: str, room: int, model_id: str) -> str:
        """Longest prefix of *line* (plus ellipsis) that keeps the summary in room."""
        lo, hi = 0, len(line)
        while lo < hi:
            mid = (lo + hi + 1) // 2
            text = self._render([line[:mid] + _ELLIPSIS])
            if self._estimator.estimate(text, model_id) <= room:
                lo = mid
            else:
                hi = mid - 1
        candidate = line[:lo] + _ELLIPSIS
        if self._estimator.estimate(self._render([candidate]), model_id) > room:
            return ""
        return candidate
