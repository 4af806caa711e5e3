"""Tests for context assembly — prompt resolution, precedence, purity."""

from __future__ import annotations

import pytest

from parley.context.assembler import ContextAssembler
from parley.context.session import Session
from parley.context.store import Turn
from parley.context.tokens import CharRatioEstimator
from parley.defaults import AgentDefaults, DefaultsRegistry, RoleDefaults
from parley.errors import DefaultsNotFound
from parley.provider import ChatRole

EST = CharRatioEstimator()


@pytest.fixture
def registry() -> DefaultsRegistry:
    registry = DefaultsRegistry()
    registry.register_role(
        RoleDefaults(name="X", system_prompt="You are X.", temperature=0.1, max_tokens=100)
    )
    registry.register_role(RoleDefaults(name="Y", system_prompt="You are Y.", top_p=0.5))
    registry.register_agent(
        AgentDefaults(
            name="translator",
            instructions="Translate into {{language}}.",
            variables={"language": "French"},
            temperature=0.7,
            default_role="X",
        )
    )
    registry.register_agent(AgentDefaults(name="quiet", default_role="Y"))
    return registry


@pytest.fixture
def assembler(registry: DefaultsRegistry) -> ContextAssembler:
    return ContextAssembler(registry, EST)


def _session() -> Session:
    return Session("test-model", 1000)


def test_empty_session_has_no_system_turn(assembler: ContextAssembler):
    ctx = assembler.assemble(_session())
    assert ctx.turns == []
    assert ctx.system_prompt == ""
    assert ctx.token_count == 0


def test_role_prompt_leads_history(assembler: ContextAssembler):
    session = _session()
    session.set_role_name("X")
    session.append_turn(Turn(role=ChatRole.USER, content="hi"), EST)

    ctx = assembler.assemble(session, pending_text="next")

    assert [t.role for t in ctx.turns] == [ChatRole.SYSTEM, ChatRole.USER, ChatRole.USER]
    assert ctx.turns[0].text == "You are X."
    assert ctx.turns[-1].text == "next"
    assert ctx.token_count == sum(t.estimated_tokens for t in ctx.turns)
    assert ctx.temperature == 0.1
    assert ctx.max_tokens == 100


def test_role_switch_applies_to_next_call_only(assembler: ContextAssembler):
    session = _session()
    session.set_role_name("X")
    session.append_turn(Turn(role=ChatRole.USER, content="first"), EST)
    session.append_turn(Turn(role=ChatRole.ASSISTANT, content="reply under X"), EST)
    history = session.store.turns

    session.set_role_name("Y")
    ctx = assembler.assemble(session)

    assert ctx.turns[0].text == "You are Y."
    assert ctx.turns[1:] == history
    assert session.store.turns == history


def test_assemble_does_not_mutate_session(assembler: ContextAssembler):
    session = _session()
    session.set_role_name("X")
    session.mark_saved("s", "/tmp/s.yaml", 1)
    assembler.assemble(session, pending_text="pending")
    assert len(session.store) == 0
    assert session.dirty is False


def test_agent_instructions_override_role_prompt(assembler: ContextAssembler):
    session = _session()
    session.set_role_name("Y")
    session.set_agent(AgentDefaults(name="translator", default_role="X"))
    ctx = assembler.assemble(session)
    assert ctx.system_prompt == "Translate into French."


def test_agent_variables_from_session(assembler: ContextAssembler):
    session = _session()
    session.set_agent(AgentDefaults(name="translator"))
    session.set_agent_variable("language", "German")
    assert assembler.effective_prompt(session) == "Translate into German."


def test_agent_without_instructions_falls_back_to_role(
    assembler: ContextAssembler, registry: DefaultsRegistry
):
    session = _session()
    session.set_agent(registry.lookup_agent("quiet"))
    assert session.role_name == "Y"
    assert assembler.effective_prompt(session) == "You are Y."


def test_parameter_precedence(assembler: ContextAssembler, registry: DefaultsRegistry):
    session = _session()
    session.set_agent(registry.lookup_agent("translator"))  # default role X

    ctx = assembler.assemble(session)
    assert ctx.temperature == 0.7  # agent over role
    assert ctx.max_tokens == 100  # role fills gaps

    session.set_temperature(0.0)
    assert assembler.assemble(session).temperature == 0.0  # session over agent


def test_unknown_role_raises(assembler: ContextAssembler):
    session = _session()
    session.set_role_name("deleted")
    with pytest.raises(DefaultsNotFound):
        assembler.assemble(session)


def test_registry_edits_apply_on_next_assembly(
    assembler: ContextAssembler, registry: DefaultsRegistry
):
    session = _session()
    session.set_role_name("X")
    registry.register_role(RoleDefaults(name="X", system_prompt="You are X, revised."))
    assert assembler.effective_prompt(session) == "You are X, revised."


def test_to_request(assembler: ContextAssembler):
    session = _session()
    session.set_role_name("Y")
    ctx = assembler.assemble(session, pending_text="hello")
    request = ctx.to_request()
    assert request.model == "test-model"
    assert request.top_p == 0.5
    assert [m.role for m in request.messages] == [ChatRole.SYSTEM, ChatRole.USER]


def test_budget_helpers(assembler: ContextAssembler):
    session = Session("test-model", 5)
    ctx = assembler.assemble(session, pending_text="x" * 40)
    assert not ctx.is_within_budget()
    assert ctx.overflow() == 5


def test_snapshot(assembler: ContextAssembler):
    session = _session()
    session.set_role_name("X")
    assert assembler.snapshot(session) == {
        "system_prompt": "You are X.",
        "temperature": 0.1,
        "max_tokens": 100,
    }
