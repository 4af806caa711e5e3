"""Tests for ReplyStream — commit on finalize, abort policies, failures."""

from __future__ import annotations

import logging

import pytest

from parley.context.session import Session
from parley.context.tokens import CharRatioEstimator
from parley.provider import ChatRole
from parley.streaming import PARTIAL_MARKER, AbortPolicy, ReplyStream, StreamPhase

EST = CharRatioEstimator()


def _stream(session: Session, **kwargs) -> ReplyStream:
    return ReplyStream(session, EST, **kwargs)


def test_pending_reply_is_not_a_turn():
    session = Session("m", 1000)
    stream = _stream(session, user_text="question")
    stream.start()
    stream.append("partial ")
    assert session.streaming
    assert len(session.store) == 0
    assert session.dirty is False


def test_finalize_commits_user_and_reply():
    session = Session("m", 1000)
    commits: list[Session] = []
    stream = _stream(session, user_text="question", on_commit=commits.append)
    stream.start()
    stream.append("an ")
    stream.append("answer")

    turn = stream.finalize()

    assert turn.role == ChatRole.ASSISTANT
    assert turn.text == "an answer"
    assert [t.text for t in session.store] == ["question", "an answer"]
    assert stream.phase == StreamPhase.FINALIZED
    assert session.streaming is False
    assert session.dirty is True
    assert commits == [session]
    assert stream.committed


def test_cancel_commits_partial_by_default():
    session = Session("m", 1000)
    stream = _stream(session, user_text="question")
    stream.start()
    stream.append("half")

    turn = stream.cancel()

    assert turn is not None
    assert turn.partial is True
    assert turn.text == "half" + PARTIAL_MARKER
    assert [t.role for t in session.store] == [ChatRole.USER, ChatRole.ASSISTANT]
    assert stream.phase == StreamPhase.CANCELLED


def test_cancel_with_discard_policy_commits_nothing():
    session = Session("m", 1000)
    commits: list[Session] = []
    stream = _stream(
        session, user_text="question", abort_policy=AbortPolicy.DISCARD, on_commit=commits.append
    )
    stream.start()
    stream.append("half")

    assert stream.cancel() is None
    assert len(session.store) == 0
    assert session.streaming is False
    assert commits == []


def test_cancel_before_any_output_commits_nothing(caplog: pytest.LogCaptureFixture):
    session = Session("m", 1000)
    stream = _stream(session, user_text="question")
    stream.start()
    with caplog.at_level(logging.WARNING, logger="parley.streaming"):
        assert stream.cancel() is None
    assert len(session.store) == 0
    assert not stream.committed
    assert caplog.records == []


def test_discarded_output_is_logged(caplog: pytest.LogCaptureFixture):
    session = Session("m", 1000)
    stream = _stream(session, user_text="question", abort_policy=AbortPolicy.DISCARD)
    stream.start()
    stream.append("half")
    with caplog.at_level(logging.WARNING, logger="parley.streaming"):
        stream.cancel()
    assert "Discarded partial reply (4 chars)" in caplog.text


def test_fail_commits_nothing():
    session = Session("m", 1000)
    stream = _stream(session, user_text="question")
    stream.start()
    stream.append("half")
    stream.fail()
    assert len(session.store) == 0
    assert session.streaming is False
    assert stream.phase == StreamPhase.FAILED


def test_continuation_stream_has_no_user_turn():
    session = Session("m", 1000)
    stream = _stream(session)
    stream.start()
    stream.append("more")
    stream.finalize()
    assert [t.role for t in session.store] == [ChatRole.ASSISTANT]


def test_one_stream_per_session():
    session = Session("m", 1000)
    _stream(session).start()
    with pytest.raises(RuntimeError):
        _stream(session).start()


def test_inactive_stream_rejects_operations():
    session = Session("m", 1000)
    stream = _stream(session)
    with pytest.raises(RuntimeError):
        stream.append("x")
    stream.start()
    stream.finalize()
    with pytest.raises(RuntimeError):
        stream.append("x")
    with pytest.raises(RuntimeError):
        stream.start()
    with pytest.raises(RuntimeError):
        stream.cancel()
