"""Turns and the per-session message store."""

from __future__ import annotations

import json
import time
from collections.abc import Iterator
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..provider import ChatMessage, ChatRole
from .tokens import TokenEstimator


class PartKind(StrEnum):
    """Kinds of content parts in a multi-part turn."""

    TEXT = "text"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"


class ContentPart(BaseModel):
    """One part of a multi-part turn (tool/function traffic)."""

    model_config = ConfigDict(frozen=True)

    type: PartKind = PartKind.TEXT
    text: str = ""
    name: str | None = None
    call_id: str | None = None
    arguments: dict[str, Any] | None = None

    def render(self) -> str:
        if self.type == PartKind.TOOL_CALL:
            args = json.dumps(self.arguments or {}, sort_keys=True)
            return f"[tool_call {self.name or '?'}] {args}"
        if self.type == PartKind.TOOL_RESULT:
            return f"[tool_result {self.name or '?'}] {self.text}"
        return self.text


class Turn(BaseModel):
    """A single role-tagged message unit.

    Turns are frozen; the store replaces them rather than editing them.
    """

    model_config = ConfigDict(frozen=True)

    role: ChatRole
    content: str | list[ContentPart]
    estimated_tokens: int = 0
    summary: bool = False
    partial: bool = False
    created_at: float = Field(default_factory=time.time)

    @property
    def text(self) -> str:
        """Flattened text used for estimation and summaries."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(part.render() for part in self.content)

    def estimated(self, estimator: TokenEstimator, model_id: str) -> Turn:
        """Return a copy whose cached token count matches *model_id*."""
        tokens = estimator.estimate(self.text, model_id)
        if tokens == self.estimated_tokens:
            return self
        return self.model_copy(update={"estimated_tokens": tokens})

    def same_message(self, other: Turn) -> bool:
        return self.role == other.role and self.content == other.content

    def to_message(self) -> ChatMessage:
        if isinstance(self.content, str):
            return ChatMessage(role=self.role, content=self.content)
        return ChatMessage(
            role=self.role,
            content=[part.model_dump(exclude_none=True, mode="json") for part in self.content],
        )


class MessageStore:
    """Ordered log of turns for one session.

    Append-only until compressed. At most one ``system`` turn, and only in
    the leading position. Turns removed by compression land in ``archive``.
    """

    def __init__(
        self,
        turns: list[Turn] | None = None,
        archive: list[Turn] | None = None,
    ) -> None:
        self._turns: list[Turn] = []
        self._archive: list[Turn] = list(archive or [])
        for turn in turns or []:
            self.append(turn)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(list(self._turns))

    def __getitem__(self, index: int) -> Turn:
        return self._turns[index]

    @property
    def turns(self) -> list[Turn]:
        return list(self._turns)

    @property
    def archive(self) -> list[Turn]:
        return list(self._archive)

    def is_empty(self) -> bool:
        return not self._turns and not self._archive

    def has_conversation(self) -> bool:
        """True when the store holds anything besides a leading system turn."""
        return any(t.role != ChatRole.SYSTEM for t in self._turns)

    def leading_system(self) -> Turn | None:
        if self._turns and self._turns[0].role == ChatRole.SYSTEM:
            return self._turns[0]
        return None

    def append(self, turn: Turn) -> Turn:
        if turn.role == ChatRole.SYSTEM and self._turns:
            msg = "a system turn may only lead the store"
            raise ValueError(msg)
        self._turns.append(turn)
        return turn

    def pop(self) -> Turn:
        return self._turns.pop()

    def replace_last(self, turn: Turn) -> Turn:
        """Swap the trailing turn (used when an oversized turn is truncated)."""
        if not self._turns:
            msg = "store is empty"
            raise IndexError(msg)
        if turn.role == ChatRole.SYSTEM and len(self._turns) > 1:
            msg = "a system turn may only lead the store"
            raise ValueError(msg)
        self._turns[-1] = turn
        return turn

    def compact_prefix(self, count: int, summary: Turn | None) -> list[Turn]:
        """Replace the first *count* turns with *summary*.

        Absorbed conversation turns move to the archive; a previous summary
        is dropped since the new one supersedes it. Returns the absorbed turns.
        """
        if summary is not None and summary.role != ChatRole.SYSTEM:
            msg = "compression summaries must be system turns"
            raise ValueError(msg)
        absorbed = self._turns[:count]
        rest = self._turns[count:]
        self._archive.extend(t for t in absorbed if not t.summary)
        self._turns = ([summary] if summary is not None else []) + rest
        return absorbed

    def reestimate(self, estimator: TokenEstimator, model_id: str) -> None:
        self._turns = [t.estimated(estimator, model_id) for t in self._turns]

    def total_tokens(self) -> int:
        return sum(t.estimated_tokens for t in self._turns)

    def clear(self) -> None:
        self._turns.clear()
        self._archive.clear()

    def same_messages(self, other: MessageStore) -> bool:
        """Equal roles, content and order (cached fields ignored)."""
        if len(self) != len(other):
            return False
        return all(a.same_message(b) for a, b in zip(self._turns, other._turns, strict=True))

    def to_messages(self) -> list[ChatMessage]:
        return [t.to_message() for t in self._turns]
