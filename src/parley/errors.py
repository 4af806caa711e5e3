"""Error taxonomy for the session engine.

Every condition a caller may need to render distinctly gets its own type.
``EstimationFallback`` is the only one handled internally.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .context.store import Turn


class ParleyError(Exception):
    """Base class for all engine errors."""


class EstimationFallback(ParleyError):
    """Raised by an estimator that cannot serve a model; caught by FallbackEstimator."""

    def __init__(self, model_id: str, reason: str = "") -> None:
        self.model_id = model_id
        self.reason = reason
        msg = f"no token estimator for model '{model_id}'"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


class BudgetExceededAfterCompression(ParleyError):
    """The reserved tail (plus prompt and pending input) does not fit the budget."""

    def __init__(self, total: int, budget: int) -> None:
        self.total = total
        self.budget = budget
        super().__init__(
            f"turn exceeds budget: {total} tokens after compression, budget is {budget}"
        )

    @property
    def overflow(self) -> int:
        return max(0, self.total - self.budget)


class SessionNotFound(ParleyError):
    """No persisted session exists under the requested name."""

    def __init__(self, name: str, path: str | None = None) -> None:
        self.name = name
        self.path = path
        super().__init__(f"session not found: {name}")


class SessionCorrupt(ParleyError):
    """A persisted session exists but cannot be read back."""

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"session '{name}' is unreadable: {reason}")


class ConcurrentSaveConflict(ParleyError):
    """Another control path holds or has changed the persisted session."""

    def __init__(self, name: str, expected: int | None = None, found: int | None = None) -> None:
        self.name = name
        self.expected = expected
        self.found = found
        if expected is not None or found is not None:
            msg = (
                f"session '{name}' changed on disk "
                f"(expected revision {expected}, found {found})"
            )
        else:
            msg = f"session '{name}' is locked by another writer"
        super().__init__(msg)


class StreamAborted(ParleyError):
    """An in-flight reply was cancelled.

    ``turn`` is the committed partial reply, or ``None`` when the partial
    output was discarded.
    """

    def __init__(self, turn: Turn | None = None) -> None:
        self.turn = turn
        outcome = "committed as partial" if turn is not None else "discarded"
        super().__init__(f"reply stream aborted; partial output {outcome}")


class ModelCallError(ParleyError):
    """The model client failed; nothing was committed to the session."""


class DefaultsNotFound(ParleyError, KeyError):
    """No role or agent is registered under the given name."""

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} not found: {name}")

    def __str__(self) -> str:
        return f"{self.kind} not found: {self.name}"


class UnsavedSessionError(ParleyError):
    """The session has unsaved changes and the caller must save or discard."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"session '{name}' has unsaved changes")


class InvalidSessionName(ParleyError, ValueError):
    """A session name is empty, reserved, or escapes the sessions directory."""
