"""Context assembly — the exact ordered payload for one model call."""

from __future__ import annotations

from dataclasses import dataclass

from ..defaults import AgentDefaults, DefaultsProvider, RoleDefaults
from ..provider import ChatMessage, ChatRequest, ChatRole
from .session import Session
from .store import Turn
from .tokens import TokenEstimator


@dataclass
class AssembledContext:
    """Budget-aware projection of a session, ready for a provider."""

    model_id: str
    turns: list[Turn]
    system_prompt: str
    token_count: int
    budget: int
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None

    def is_within_budget(self) -> bool:
        return self.token_count <= self.budget

    def overflow(self) -> int:
        return max(0, self.token_count - self.budget)

    def to_messages(self) -> list[ChatMessage]:
        return [t.to_message() for t in self.turns]

    def to_request(self) -> ChatRequest:
        return ChatRequest(
            model=self.model_id,
            messages=self.to_messages(),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
        )


class ContextAssembler:
    """Combines role/agent defaults, session history and pending input.

    Nothing is cached: the effective system prompt is resolved through the
    registry on every call so that edits to a role or agent apply at once.
    """

    def __init__(self, registry: DefaultsProvider, estimator: TokenEstimator) -> None:
        self._registry = registry
        self._estimator = estimator

    def resolve(self, session: Session) -> tuple[RoleDefaults | None, AgentDefaults | None]:
        role = self._registry.lookup_role(session.role_name) if session.role_name else None
        agent = self._registry.lookup_agent(session.agent_name) if session.agent_name else None
        return role, agent

    def effective_prompt(self, session: Session) -> str:
        """Agent instructions if the agent supplies any, else the role prompt."""
        role, agent = self.resolve(session)
        if agent is not None:
            instructions = agent.interpolated_instructions(session.agent_variables)
            if instructions:
                return instructions
        if role is not None:
            return role.system_prompt
        return ""

    def prompt_tokens(self, session: Session) -> int:
        return self._estimator.estimate(self.effective_prompt(session), session.model_id)

    def estimate(self, text: str, session: Session) -> int:
        return self._estimator.estimate(text, session.model_id)

    def assemble(self, session: Session, pending_text: str | None = None) -> AssembledContext:
        """``[system prompt] + history + [pending user turn]``; never mutates *session*."""
        role, agent = self.resolve(session)
        prompt = self.effective_prompt(session)

        turns: list[Turn] = []
        if prompt:
            turns.append(
                Turn(
                    role=ChatRole.SYSTEM,
                    content=prompt,
                    estimated_tokens=self._estimator.estimate(prompt, session.model_id),
                )
            )
        turns.extend(session.store)
        if pending_text is not None:
            turns.append(
                Turn(role=ChatRole.USER, content=pending_text).estimated(
                    self._estimator, session.model_id
                )
            )

        return AssembledContext(
            model_id=session.model_id,
            turns=turns,
            system_prompt=prompt,
            token_count=sum(t.estimated_tokens for t in turns),
            budget=session.token_budget,
            temperature=_first(
                session.temperature,
                agent.temperature if agent else None,
                role.temperature if role else None,
            ),
            top_p=_first(
                session.top_p,
                agent.top_p if agent else None,
                role.top_p if role else None,
            ),
            max_tokens=_first(
                agent.max_tokens if agent else None,
                role.max_tokens if role else None,
            ),
        )

    def snapshot(self, session: Session) -> dict[str, object]:
        """Resolved defaults recorded alongside a save for reproducibility."""
        ctx = self.assemble(session)
        snapshot: dict[str, object] = {"system_prompt": ctx.system_prompt}
        for key, value in (
            ("temperature", ctx.temperature),
            ("top_p", ctx.top_p),
            ("max_tokens", ctx.max_tokens),
        ):
            if value is not None:
                snapshot[key] = value
        return snapshot


def _first(*values: float | int | None) -> float | int | None:
    for value in values:
        if value is not None:
            return value
    return None
