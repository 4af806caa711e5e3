"""LLM Provider abstraction — one streaming capability per backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from enum import StrEnum
from typing import Any

from pydantic import BaseModel

# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


class ChatRole(StrEnum):
    """Role of a message participant."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """Single message in an outbound payload."""

    role: ChatRole
    content: str | list[dict[str, Any]]


class ChatRequest(BaseModel):
    """Request payload sent to an LLM provider."""

    model: str
    messages: list[ChatMessage]
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None


# ---------------------------------------------------------------------------
# LLMProvider ABC
# ---------------------------------------------------------------------------


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    The engine only relies on :meth:`stream`: an ordered sequence of text
    fragments that ends normally on completion or raises on error.
    """

    @abstractmethod
    def name(self) -> str:
        """Return the canonical provider name (e.g. 'openai', 'stub')."""

    @abstractmethod
    def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        """Stream the reply to *request* as text fragments."""

    async def chat(self, request: ChatRequest) -> str:
        """Collect the full streamed reply."""
        return "".join([chunk async for chunk in self.stream(request)])


# ---------------------------------------------------------------------------
# Stub implementation (for testing / offline development)
# ---------------------------------------------------------------------------


class StubLLMProvider(LLMProvider):
    """Streams canned responses without making real HTTP calls."""

    _CANNED = "This is a stub response for testing purposes."

    def __init__(self, reply: str | None = None) -> None:
        self._reply = reply

    def name(self) -> str:
        return "stub"

    def reply_for(self, request: ChatRequest) -> str:
        if self._reply is not None:
            return self._reply
        return f"{self._CANNED} (model={request.model})"

    async def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        """Yield the canned reply word by word."""
        words = self.reply_for(request).split(" ")
        for i, word in enumerate(words):
            yield word if i == 0 else f" {word}"
