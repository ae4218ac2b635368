"""Tests for the session engine turn lifecycle."""

from __future__ import annotations

import pytest

from chatmux.cancel import CancelToken
from chatmux.compression import DEFAULT_SUMMARIZE_PROMPT
from chatmux.config import ChatConfig
from chatmux.context import ContextStore
from chatmux.engine import SessionEngine, TurnFSM, TurnState
from chatmux.errors import (
    ChatError,
    EngineBusyError,
    ErrorKind,
    TransportError,
    UnknownModelError,
)
from chatmux.messages import ChatRole, DeltaEvent, DoneEvent, ErrorEvent, Message, MetaEvent, UsageEvent
from chatmux.registry import ProviderRegistry
from chatmux.roles import SHELL_ROLE, Role
from chatmux.session import Session, SessionStore
from chatmux.specs import CodecKind, ModelEntry, ProviderConfig

from fakes import FakeResponse, ScriptedTransport, error_response, openai_completion, openai_stream


def _registry(max_input_tokens: int = 8192) -> ProviderRegistry:
    return ProviderRegistry.from_providers(
        [
            ProviderConfig(
                name="openai",
                kind=CodecKind.OPENAI,
                api_key="sk-test",
                models=[ModelEntry(name="gpt-4", max_input_tokens=max_input_tokens), ModelEntry(name="gpt-4o")],
            )
        ]
    )


def _engine(tmp_path, *responses, session=None, max_input_tokens=8192, **overrides):
    config = ChatConfig(model="openai:gpt-4", sessions_dir=tmp_path / "sessions", **overrides)
    transport = ScriptedTransport(*responses)
    engine = SessionEngine(config, _registry(max_input_tokens), transport=transport, session=session)
    return engine, transport


def _long_session() -> Session:
    store = ContextStore()
    roles = [ChatRole.USER, ChatRole.ASSISTANT]
    store.extend(Message.of(roles[i % 2], "x" * 800) for i in range(6))
    return Session(model_id="openai:gpt-4", context=store)


# ---------------------------------------------------------------------------
# FSM
# ---------------------------------------------------------------------------


def test_fsm_valid_cycle():
    fsm = TurnFSM()
    for target in (
        TurnState.AWAITING_RESPONSE,
        TurnState.STREAMING_DELTA,
        TurnState.STREAMING_DELTA,
        TurnState.COMPLETED,
        TurnState.IDLE,
    ):
        fsm = fsm.transition(target)
    assert fsm.state == TurnState.IDLE


def test_fsm_invalid_transition():
    with pytest.raises(ValueError, match="Invalid transition"):
        TurnFSM().transition(TurnState.COMPLETED)


# ---------------------------------------------------------------------------
# Completed turns
# ---------------------------------------------------------------------------


def test_streamed_turn_commits_user_and_assistant(tmp_path):
    engine, transport = _engine(tmp_path, openai_stream("Hel", "lo"))
    events = list(engine.ask("hi"))

    assert [e.text for e in events if isinstance(e, DeltaEvent)] == ["Hel", "lo"]
    assert isinstance(events[-1], DoneEvent)
    assert [m.role for m in engine.store.history()] == [ChatRole.USER, ChatRole.ASSISTANT]
    assert engine.store.history()[1].plain_text() == "Hello"
    assert engine.state == TurnState.IDLE
    assert engine.last_outcome.state == TurnState.COMPLETED
    request, stream = transport.requests[0]
    assert stream is True
    assert request.body["messages"] == [{"role": "user", "content": "hi"}]


def test_usage_reconciles_running_total(tmp_path):
    engine, _ = _engine(tmp_path, openai_stream("ok", usage=(120, 3)))
    list(engine.ask("hi"))
    assert engine.token_status().running_total == 123
    assert engine.session.token_usage_running_total == 123


def test_missing_usage_falls_back_to_estimate(tmp_path):
    engine, _ = _engine(tmp_path, openai_stream("ok"))
    list(engine.ask("hi"))
    expected = sum(engine._accountant.estimate(m) for m in engine.store.history())
    assert engine.token_status().running_total == expected


def test_nonstream_chat_returns_text(tmp_path):
    engine, transport = _engine(tmp_path, openai_completion("hello there"), stream=False)
    assert engine.chat("hi") == "hello there"
    assert transport.requests[0][1] is False
    assert transport.requests[0][0].body["stream"] is False
    assert engine.token_status().running_total == 15


def test_chat_raises_on_error_event(tmp_path):
    engine, _ = _engine(tmp_path, error_response(429, {"error": {"message": "slow down"}}))
    with pytest.raises(ChatError) as exc_info:
        engine.chat("hi")
    assert exc_info.value.kind == ErrorKind.RATE_LIMITED


def test_autosave_writes_session_file(tmp_path):
    engine, _ = _engine(tmp_path, openai_stream("saved"), save_session=True)
    list(engine.ask("remember this"))
    store = SessionStore(tmp_path / "sessions")
    assert store.exists(engine.session.id)
    loaded = store.load(engine.session.id)
    assert loaded.context.history() == engine.store.history()


def test_open_resumes_saved_session(tmp_path):
    engine, _ = _engine(tmp_path, openai_stream("first"))
    list(engine.ask("one"))
    engine.save("resume-me")

    config = engine.config
    reopened = SessionEngine.open(
        config, _registry(), "resume-me", transport=ScriptedTransport(openai_stream("second"))
    )
    assert reopened.store.history() == engine.store.history()
    list(reopened.ask("two"))
    assert len(reopened.store.non_system()) == 4


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


def test_http_401_becomes_auth_failed(tmp_path):
    body = {"error": {"message": "Incorrect API key", "type": "invalid_request_error", "code": "invalid_api_key"}}
    engine, _ = _engine(tmp_path, error_response(401, body))
    events = list(engine.ask("hi"))
    assert len(events) == 1
    assert events[0].kind == ErrorKind.AUTH_FAILED
    assert engine.store.history() == ()
    assert engine.last_outcome.state == TurnState.FAILED


def test_transport_error_becomes_provider_unavailable(tmp_path):
    failure = TransportError(ErrorKind.PROVIDER_UNAVAILABLE, "connection refused")
    engine, _ = _engine(tmp_path, failure)
    events = list(engine.ask("hi"))
    assert events == [ErrorEvent(kind=ErrorKind.PROVIDER_UNAVAILABLE, detail="connection refused")]
    assert engine.state == TurnState.IDLE


def test_malformed_frame_fails_turn(tmp_path):
    engine, _ = _engine(tmp_path, FakeResponse(200, [b"dat: {broken\n\n"]))
    events = list(engine.ask("hi"))
    assert events[-1] == ErrorEvent(kind=ErrorKind.MALFORMED_FRAME, detail="dat: {broken")
    assert engine.store.history() == ()


def test_oversized_prompt_fails_locally(tmp_path):
    engine, transport = _engine(tmp_path, max_input_tokens=1000)
    events = list(engine.ask("y" * 5000))
    assert len(events) == 1
    assert events[0].kind == ErrorKind.CONTEXT_TOO_LONG
    assert transport.requests == []
    assert engine.state == TurnState.IDLE


def test_empty_input_rejected(tmp_path):
    engine, _ = _engine(tmp_path)
    with pytest.raises(ValueError, match="empty"):
        engine.ask("")


def test_image_rejected_for_text_only_model(tmp_path):
    engine, transport = _engine(tmp_path)
    with pytest.raises(ChatError) as exc_info:
        engine.ask("what is this?", files=["data:image/png;base64,AAAA"])
    assert exc_info.value.kind == ErrorKind.UNKNOWN
    assert transport.requests == []


def test_image_accepted_for_vision_model(tmp_path):
    engine, transport = _engine(tmp_path, openai_stream("a cat"))
    engine.set_model("openai:gpt-4o")
    list(engine.ask("what is this?", files=["data:image/png;base64,AAAA"]))
    content = transport.requests[0][0].body["messages"][0]["content"]
    assert content[0] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}}


# ---------------------------------------------------------------------------
# Cancellation and reentrancy
# ---------------------------------------------------------------------------


def test_cancel_mid_stream_leaves_history_untouched(tmp_path):
    response = openai_stream("a", "b", "c")
    engine, _ = _engine(tmp_path, response)
    token = CancelToken()
    events = engine.ask("hi", cancel=token)

    first = next(events)
    assert first == DeltaEvent(text="a")
    token.cancel()
    rest = list(events)

    assert rest[-1].kind == ErrorKind.CANCELLED
    assert response.closed
    assert engine.store.history() == ()
    assert engine.state == TurnState.IDLE
    assert engine.last_outcome.error.kind == ErrorKind.CANCELLED


def test_cancel_keeps_partial_answer_when_asked(tmp_path):
    engine, _ = _engine(tmp_path, openai_stream("a", "b", "c"))
    token = CancelToken()
    events = engine.ask("hi", cancel=token, keep_partial=True)
    next(events)
    token.cancel()
    list(events)
    history = engine.store.history()
    assert [m.role for m in history] == [ChatRole.USER, ChatRole.ASSISTANT]
    assert history[1].plain_text() == "a"


def test_closing_event_stream_cancels_turn(tmp_path):
    response = openai_stream("a", "b")
    engine, _ = _engine(tmp_path, response)
    events = engine.ask("hi")
    next(events)
    events.close()
    assert response.closed
    assert engine.state == TurnState.IDLE
    assert engine.last_outcome.error.kind == ErrorKind.CANCELLED
    assert engine.store.history() == ()


def test_closing_after_done_is_not_a_cancel(tmp_path):
    engine, _ = _engine(tmp_path, openai_stream("ok"))
    events = engine.ask("hi")
    for event in events:
        if isinstance(event, DoneEvent):
            break
    events.close()
    assert engine.last_outcome.state == TurnState.COMPLETED
    assert len(engine.store.history()) == 2


def test_ask_while_streaming_raises_busy(tmp_path):
    engine, _ = _engine(tmp_path, openai_stream("a", "b"))
    events = engine.ask("hi")
    next(events)
    assert engine.state == TurnState.STREAMING_DELTA
    with pytest.raises(EngineBusyError):
        engine.ask("again")
    with pytest.raises(EngineBusyError):
        engine.set_model("openai:gpt-4o")
    list(events)
    assert engine.state == TurnState.IDLE


# ---------------------------------------------------------------------------
# Compression
# ---------------------------------------------------------------------------


def test_compression_runs_before_request(tmp_path):
    engine, transport = _engine(
        tmp_path,
        openai_completion("short recap"),
        openai_stream("answer", usage=(40, 2)),
        session=_long_session(),
        compress_threshold=1000,
    )
    events = list(engine.ask("next question"))

    meta = events[0]
    assert isinstance(meta, MetaEvent)
    assert meta.info["type"] == "compression"
    assert meta.info["after_tokens"] <= 500
    assert meta.info["before_tokens"] > 1000

    summary_request, summary_stream = transport.requests[0]
    assert summary_stream is False
    assert summary_request.body["messages"][-1]["content"] == DEFAULT_SUMMARIZE_PROMPT

    history = engine.store.history()
    assert history[0].summary
    assert history[0].plain_text().endswith("short recap")
    assert [m.plain_text() for m in history[1:]] == ["next question", "answer"]
    assert engine.token_status().running_total == 42


def test_compression_archives_persisted_session(tmp_path):
    engine, _ = _engine(
        tmp_path,
        openai_completion("short recap"),
        openai_stream("answer"),
        session=_long_session(),
        compress_threshold=1000,
        save_session=True,
    )
    list(engine.ask("next question"))
    archive = engine.sessions.archive_path_for(engine.session.id)
    assert archive.is_file()
    assert archive.read_text(encoding="utf-8").count("\n") == 1


def test_useless_summary_fails_turn_with_context_too_long(tmp_path):
    engine, transport = _engine(
        tmp_path,
        openai_completion("z" * 6000),
        session=_long_session(),
        compress_threshold=1000,
    )
    before = engine.store.history()
    events = list(engine.ask("next question"))
    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].kind == ErrorKind.CONTEXT_TOO_LONG
    assert "did not reduce" in events[0].detail
    assert len(transport.requests) == 1
    assert engine.store.history() == before
    assert engine.state == TurnState.IDLE


def test_summary_above_target_fails_turn(tmp_path):
    # Smaller than the ~1224 tokens before, but above the 500-token target.
    engine, transport = _engine(
        tmp_path,
        openai_completion("w" * 2400),
        session=_long_session(),
        compress_threshold=1000,
    )
    before = engine.store.history()
    events = list(engine.ask("next question"))
    assert [type(e) for e in events] == [ErrorEvent]
    assert events[0].kind == ErrorKind.CONTEXT_TOO_LONG
    assert "exceeds the target" in events[0].detail
    assert len(transport.requests) == 1
    assert engine.store.history() == before


def test_summary_failure_fails_turn(tmp_path):
    engine, transport = _engine(
        tmp_path,
        error_response(401, {"error": {"message": "bad key", "code": "invalid_api_key"}}),
        session=_long_session(),
        compress_threshold=1000,
    )
    events = list(engine.ask("next question"))
    assert len(events) == 1
    assert events[-1].kind == ErrorKind.AUTH_FAILED
    assert len(transport.requests) == 1
    assert len(engine.store.non_system()) == 6


# ---------------------------------------------------------------------------
# Roles and models
# ---------------------------------------------------------------------------


def test_system_role_prepends_system_message(tmp_path):
    engine, transport = _engine(
        tmp_path,
        openai_stream("ok"),
        roles=[Role(name="terse", prompt="Be terse.", temperature=0.2)],
    )
    engine.set_role("terse")
    list(engine.ask("hi"))
    body = transport.requests[0][0].body
    assert body["messages"][0] == {"role": "system", "content": "Be terse."}
    assert body["temperature"] == 0.2
    assert engine.session.role == "terse"


def test_embedded_role_wraps_input(tmp_path):
    engine, transport = _engine(tmp_path, openai_stream("ls -la"))
    engine.set_role(SHELL_ROLE)
    list(engine.ask("list files"))
    messages = transport.requests[0][0].body["messages"]
    assert len(messages) == 1
    assert messages[0]["role"] == "user"
    assert messages[0]["content"].endswith("list files")
    assert "__INPUT__" not in messages[0]["content"]
    assert engine.store.system is None
    assert engine.store.role_name == SHELL_ROLE


def test_set_model_unknown_keeps_current(tmp_path):
    engine, _ = _engine(tmp_path)
    with pytest.raises(UnknownModelError):
        engine.set_model("openai:gpt-9")
    assert engine.spec.key == "openai:gpt-4"


def test_clear_messages_resets_tokens(tmp_path):
    engine, _ = _engine(tmp_path, openai_stream("ok", usage=(50, 1)))
    list(engine.ask("hi"))
    engine.clear_messages()
    assert engine.store.history() == ()
    assert engine.token_status().running_total == 0


def test_usage_event_is_forwarded(tmp_path):
    engine, _ = _engine(tmp_path, openai_stream("ok", usage=(7, 1)))
    events = list(engine.ask("hi"))
    assert UsageEvent(prompt_tokens=7, completion_tokens=1) in events
