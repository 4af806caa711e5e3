"""Tests for the REPL module — interactive CLI entry points."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from parley.config import EngineConfig
from parley.provider import StubLLMProvider
from parley.repl import Repl, async_main, build, main


def _repl(tmp_path: Path, save_session: bool | None = False) -> Repl:
    config = EngineConfig(model_id="test-model", sessions_dir=tmp_path, save_session=save_session)
    return build(config, StubLLMProvider(reply="Sure, here you go."))


async def _run(repl: Repl, *lines: str) -> None:
    with patch("builtins.input", side_effect=list(lines)):
        await async_main(repl)


# ---------------------------------------------------------------------------
# Basics
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_banner_help_and_exit(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    await _run(_repl(tmp_path), ".help", ".exit")
    out = capsys.readouterr().out
    assert "parley REPL v0.1.0" in out
    assert "Provider: stub" in out
    assert ".compress" in out
    assert "Bye!" in out


@pytest.mark.asyncio
async def test_quit_word(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    await _run(_repl(tmp_path), "quit")
    assert "Bye!" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_eof_exits(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    with patch("builtins.input", side_effect=EOFError):
        await async_main(_repl(tmp_path))
    assert "Bye!" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_message_streams_reply(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    repl = _repl(tmp_path)
    await _run(repl, "hello", ".exit")
    assert "Sure, here you go." in capsys.readouterr().out
    assert [t.text for t in repl.session.store] == ["hello", "Sure, here you go."]


@pytest.mark.asyncio
async def test_unknown_command(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    await _run(_repl(tmp_path), ".bogus", ".exit")
    assert "Unknown command '.bogus'" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Session commands
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_save_command(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    repl = _repl(tmp_path, save_session=None)
    await _run(repl, "hello", ".save notes", ".sessions", ".exit")
    out = capsys.readouterr().out
    assert "Saved 'notes'" in out
    assert "  notes" in out
    # Clean session: no exit prompt
    assert "Save session" not in out
    assert repl.manager.list_sessions() == ["notes"]


@pytest.mark.asyncio
async def test_exit_prompt_saves_with_autoname(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    repl = _repl(tmp_path, save_session=None)
    await _run(repl, "hello", ".exit", "y", "")
    out = capsys.readouterr().out
    assert "Saved to" in out
    names = repl.manager.list_sessions()
    assert len(names) == 1
    assert names[0].startswith("_/")


@pytest.mark.asyncio
async def test_exit_prompt_declined(tmp_path: Path) -> None:
    repl = _repl(tmp_path, save_session=None)
    await _run(repl, "hello", "exit", "n")
    assert repl.manager.list_sessions() == []


@pytest.mark.asyncio
async def test_switch_refused_when_dirty(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    repl = _repl(tmp_path)
    await _run(repl, "hello", ".session other", ".drop", ".exit")
    out = capsys.readouterr().out
    assert "unsaved changes" in out
    assert "Started a new session" in out
    assert repl.session.is_empty()


@pytest.mark.asyncio
async def test_load_saved_session(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    repl = _repl(tmp_path)
    await _run(repl, "hello", ".save notes", ".drop", ".session notes", ".exit")
    assert "Session: notes" in capsys.readouterr().out
    assert repl.session.name == "notes"
    assert len(repl.session.store) == 2


@pytest.mark.asyncio
async def test_missing_session(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    await _run(_repl(tmp_path), ".session ghost", ".exit")
    assert "Error: session not found: ghost" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Role, settings, compression
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_role_and_info(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    repl = _repl(tmp_path)
    await _run(repl, ".role code", ".info", ".exit")
    out = capsys.readouterr().out
    assert "role: code" in out
    assert repl.session.role_name == "code"
    assert repl.prompt().endswith(":code> ")


@pytest.mark.asyncio
async def test_info_session_transcript(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    await _run(_repl(tmp_path), "hello", ".info session", ".exit")
    assert ">> hello\nSure, here you go." in capsys.readouterr().out


@pytest.mark.asyncio
async def test_unknown_role(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    await _run(_repl(tmp_path), ".role ghost", ".exit")
    assert "Error: role not found: ghost" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_set_command(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    repl = _repl(tmp_path)
    await _run(repl, ".set temperature 0.3", ".set token_budget 2048", ".set colour red", ".exit")
    assert repl.session.temperature == 0.3
    assert repl.session.token_budget == 2048
    assert "cannot set 'colour'" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_compress_and_empty(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    repl = _repl(tmp_path)
    await _run(repl, "hello", ".compress", ".empty", ".exit")
    assert "Nothing to compress" in capsys.readouterr().out
    assert repl.session.is_empty()


@pytest.mark.asyncio
async def test_regenerate_and_continue(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    repl = _repl(tmp_path)
    await _run(repl, ".regenerate", "hello", ".regenerate", ".continue", ".exit")
    out = capsys.readouterr().out
    assert "Error: no exchange to regenerate" in out
    assert len(repl.session.store) == 3


@pytest.mark.asyncio
async def test_oversized_input_reported(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config = EngineConfig(
        model_id="test-model", sessions_dir=tmp_path, token_budget=10, save_session=False
    )
    repl = build(config, StubLLMProvider())
    await _run(repl, "x" * 200, ".exit")
    assert "turn exceeds budget" in capsys.readouterr().out
    assert repl.session.is_empty()


# ---------------------------------------------------------------------------
# main() synchronous entry point
# ---------------------------------------------------------------------------


def test_main_reads_env(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("PARLEY_SESSIONS_DIR", str(tmp_path))
    monkeypatch.setenv("PARLEY_SAVE_SESSION", "false")
    monkeypatch.setenv("PARLEY_MODEL", "test-model")
    monkeypatch.setattr("sys.argv", ["parley"])
    with patch("builtins.input", side_effect=["hi", ".exit"]):
        main()
    out = capsys.readouterr().out
    assert "parley REPL v0.1.0" in out
    assert "stub response" in out
    assert "Bye!" in out


def test_main_missing_session_exits_nonzero(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("PARLEY_SESSIONS_DIR", str(tmp_path))
    monkeypatch.setattr("sys.argv", ["parley", "ghost"])
    with pytest.raises(SystemExit) as exc_info:
        main()
    assert exc_info.value.code == 1
    assert "session not found" in capsys.readouterr().err


def test_main_corrupt_session_exits_nonzero(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    (tmp_path / "bad.yaml").write_text("model: m\ntoken_budget: 0\n", encoding="utf-8")
    monkeypatch.setenv("PARLEY_SESSIONS_DIR", str(tmp_path))
    monkeypatch.setattr("sys.argv", ["parley", "bad"])
    with pytest.raises(SystemExit) as exc_info:
        main()
    assert exc_info.value.code == 1
    assert "session 'bad' is unreadable" in capsys.readouterr().err
