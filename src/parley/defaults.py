"""Role and agent presets — named system prompts and generation defaults."""

from __future__ import annotations

import re
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from .errors import DefaultsNotFound

_VARIABLE_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class RoleDefaults(BaseModel):
    """A reusable named system prompt with generation parameters."""

    model_config = ConfigDict(frozen=True)

    name: str
    system_prompt: str = ""
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None


class AgentDefaults(BaseModel):
    """A higher-level preset: instructions, variables, document context."""

    model_config = ConfigDict(frozen=True)

    name: str
    instructions: str = ""
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    default_role: str | None = None
    document: str | None = None
    variables: dict[str, str] = Field(default_factory=dict)

    def interpolated_instructions(self, overrides: dict[str, str] | None = None) -> str:
        """Fill ``{{name}}`` placeholders; unknown names are left as written."""
        values = {**self.variables, **(overrides or {})}

        def _sub(match: re.Match[str]) -> str:
            return values.get(match.group(1), match.group(0))

        return _VARIABLE_RE.sub(_sub, self.instructions)


class DefaultsProvider(Protocol):
    """Read-only lookup capability handed to the assembler and manager."""

    def lookup_role(self, name: str) -> RoleDefaults: ...

    def lookup_agent(self, name: str) -> AgentDefaults: ...


class DefaultsRegistry:
    """In-memory registry of roles and agents."""

    def __init__(self) -> None:
        self._roles: dict[str, RoleDefaults] = {}
        self._agents: dict[str, AgentDefaults] = {}

    def register_role(self, role: RoleDefaults) -> None:
        self._roles[role.name] = role

    def register_agent(self, agent: AgentDefaults) -> None:
        self._agents[agent.name] = agent

    def lookup_role(self, name: str) -> RoleDefaults:
        if name not in self._roles:
            raise DefaultsNotFound("role", name)
        return self._roles[name]

    def lookup_agent(self, name: str) -> AgentDefaults:
        if name not in self._agents:
            raise DefaultsNotFound("agent", name)
        return self._agents[name]

    def list_roles(self) -> list[str]:
        return sorted(self._roles.keys())

    def list_agents(self) -> list[str]:
        return sorted(self._agents.keys())

    def remove_role(self, name: str) -> bool:
        return self._roles.pop(name, None) is not None

    def remove_agent(self, name: str) -> bool:
        return self._agents.pop(name, None) is not None

    @classmethod
    def with_defaults(cls) -> DefaultsRegistry:
        """Create a registry with a few built-in roles."""
        registry = cls()

        registry.register_role(
            RoleDefaults(
                name="shell",
                system_prompt=(
                    "Provide only shell commands for the user's platform, "
                    "without explanations or markdown."
                ),
                temperature=0.2,
            )
        )

        registry.register_role(
            RoleDefaults(
                name="code",
                system_prompt="Provide only code as output, without any description.",
                temperature=0.2,
            )
        )

        registry.register_role(
            RoleDefaults(
                name="explain",
                system_prompt=(
                    "Explain the user's input clearly and concisely, "
                    "highlighting the important parts."
                ),
                temperature=0.5,
            )
        )

        return registry
