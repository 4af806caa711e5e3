"""Interactive REPL for parley sessions."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Awaitable

import yaml

from . import __version__
from .config import EngineConfig
from .context.compression import ModelSummarizer
from .context.session import Session
from .context.store import Turn
from .conversation import Conversation
from .defaults import DefaultsRegistry
from .errors import ParleyError, StreamAborted, UnsavedSessionError
from .manager import SessionManager
from .provider import LLMProvider, StubLLMProvider

logger = logging.getLogger(__name__)

HELP_TEXT = """\
.help                    Show this help
.info [session]          Show the current session (or its transcript)
.sessions                List saved sessions
.session [name]          Start a new session or load a saved one
.drop                    Discard unsaved changes and start a new session
.save [name]             Save the current session
.role [name]             Set the role (no name clears it)
.agent [name]            Set the agent (no name clears it)
.set <key> <value>       Set temperature, top_p, token_budget or model
.compress                Compress the current session now
.empty                   Erase all turns of the current session
.regenerate              Ask again for the last reply
.continue                Continue the last reply
.exit                    Exit (also: quit, exit)
Anything else is sent to the model."""


def _configure_logging() -> None:
    level = os.environ.get("PARLEY_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_chunk(chunk: str) -> None:
    print(chunk, end="", flush=True)


class Repl:
    """Reads lines, dispatches dot-commands, streams replies."""

    def __init__(self, manager: SessionManager, conversation: Conversation) -> None:
        self._manager = manager
        self._conversation = conversation

    @property
    def manager(self) -> SessionManager:
        return self._manager

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def session(self) -> Session:
        return self._conversation.session

    def prompt(self) -> str:
        session = self.session
        marker = "*" if session.dirty else ""
        label = session.role_name or session.agent_name
        prefix = f"{session.name}{marker}"
        return f"{prefix}:{label}> " if label else f"{prefix}> "

    async def handle(self, line: str) -> bool:
        """Process one line; returns ``False`` when the REPL should stop."""
        stripped = line.strip()
        if not stripped:
            return True
        if stripped in ("quit", "exit", ".exit", ".quit"):
            return not self.exit()
        if stripped.startswith("."):
            try:
                await self._command(stripped)
            except UnsavedSessionError as exc:
                print(f"  {exc}. Use .save first or .drop to discard.")
            except ParleyError as exc:
                print(f"  Error: {exc}")
            except ValueError as exc:
                print(f"  Error: {exc}")
            return True

        await self._ask(self._conversation.send(stripped, on_chunk=_print_chunk))
        return True

    async def _command(self, text: str) -> None:
        cmd, _, arg = text.partition(" ")
        arg = arg.strip()
        manager = self._manager
        session = self.session

        if cmd == ".help":
            print(HELP_TEXT)
        elif cmd == ".info" and arg == "session":
            print(session.render())
        elif cmd == ".info":
            print(yaml.safe_dump(manager.info(session), sort_keys=False, allow_unicode=True))
        elif cmd == ".sessions":
            names = manager.list_sessions()
            print("\n".join(f"  {n}" for n in names) if names else "  (no saved sessions)")
        elif cmd == ".session":
            self._conversation.use(manager.switch(session, arg or None))
            print(f"  Session: {self.session.name}")
        elif cmd == ".drop":
            self._conversation.use(manager.switch(session, None, discard=True))
            print("  Started a new session")
        elif cmd == ".save":
            path = manager.save(session, arg or None)
            print(f"  Saved '{session.name}' to {path}")
        elif cmd == ".role":
            manager.set_role(session, arg or None)
        elif cmd == ".agent":
            manager.set_agent(session, arg or None)
        elif cmd == ".set":
            self._set(arg)
        elif cmd == ".compress":
            result = manager.compress(session)
            if result.changed:
                print(f"  Compressed {result.original_tokens} -> {result.final_tokens} tokens")
            else:
                print("  Nothing to compress")
        elif cmd == ".empty":
            manager.clear(session)
        elif cmd == ".regenerate":
            await self._ask(self._conversation.regenerate(on_chunk=_print_chunk))
        elif cmd == ".continue":
            await self._ask(self._conversation.continue_reply(on_chunk=_print_chunk))
        else:
            print(f"  Unknown command '{cmd}'. Type .help for commands.")

    def _set(self, arg: str) -> None:
        key, _, value = arg.partition(" ")
        value = value.strip()
        session = self.session
        if key == "model" and value:
            self._manager.set_model(session, value)
        elif key == "token_budget":
            session.set_token_budget(int(value))
        elif key == "temperature":
            session.set_temperature(float(value) if value else None)
        elif key == "top_p":
            session.set_top_p(float(value) if value else None)
        else:
            msg = f"cannot set '{key}'"
            raise ValueError(msg)

    async def _ask(self, call: Awaitable[Turn]) -> None:
        try:
            await call
            print()
        except StreamAborted as exc:
            print("\n  Reply interrupted" + (" (partial kept)" if exc.turn else ""))
        except ParleyError as exc:
            print(f"\n  Error: {exc}")
        except ValueError as exc:
            print(f"  Error: {exc}")

    def exit(self) -> bool:
        """Apply the exit policy; returns ``True`` once it is safe to leave."""
        session = self.session
        try:
            path = self._manager.close(session)
        except UnsavedSessionError:
            answer = input(f"Save session '{session.name}'? [y/N] ").strip().lower()
            if answer not in ("y", "yes"):
                print("Bye!")
                return True
            name = None
            if session.path is None:
                name = input("Session name (blank for automatic): ").strip() or None
            try:
                path = self._manager.save(session, name)
            except ParleyError as exc:
                print(f"  Error: {exc}")
                return False
        if path is not None:
            print(f"  Saved to {path}")
        print("Bye!")
        return True


def build(
    config: EngineConfig | None = None,
    provider: LLMProvider | None = None,
) -> Repl:
    config = config or EngineConfig.from_env()
    provider = provider or StubLLMProvider()
    summarizer = ModelSummarizer(provider) if config.compress_threshold is not None else None
    manager = SessionManager.from_config(
        config, DefaultsRegistry.with_defaults(), summarizer=summarizer
    )
    conversation = Conversation(manager, provider)
    return Repl(manager, conversation)


async def async_main(repl: Repl | None = None, session_name: str | None = None) -> None:
    """Async entry point; reads from stdin until ``.exit`` or EOF."""
    repl = repl or build()
    if session_name:
        repl.conversation.use(repl.manager.load(session_name))

    print(f"parley REPL v{__version__}")
    print(f"Provider: {repl.conversation.provider.name()}")
    print("Type .help for commands, .exit to quit")
    print()

    while True:
        try:
            user_input = input(repl.prompt())
        except (EOFError, KeyboardInterrupt):
            print()
            if repl.exit():
                break
            continue
        if not await repl.handle(user_input):
            break


def main() -> None:
    """Entry point for the ``parley`` command."""
    _configure_logging()
    session_name = sys.argv[1] if len(sys.argv) > 1 else None
    try:
        asyncio.run(async_main(session_name=session_name))
    except ParleyError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
