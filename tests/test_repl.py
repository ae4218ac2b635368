"""Tests for the interactive REPL."""

from __future__ import annotations

import io

import pytest

from chatmux.config import ChatConfig
from chatmux.registry import ProviderRegistry
from chatmux.repl import Repl, is_incomplete, parse_command, unwrap_multiline
from chatmux.roles import Role
from chatmux.specs import CodecKind, ModelEntry, ProviderConfig

from fakes import ScriptedTransport, openai_stream


def _repl(tmp_path, *responses, lines=(), **overrides):
    config = ChatConfig(
        model="openai:gpt-4",
        sessions_dir=tmp_path / "sessions",
        roles=[Role(name="terse", prompt="Be terse.")],
        **overrides,
    )
    registry = ProviderRegistry.from_providers(
        [
            ProviderConfig(
                name="openai",
                kind=CodecKind.OPENAI,
                api_key="sk-test",
                models=[ModelEntry(name="gpt-4"), ModelEntry(name="gpt-4o")],
            )
        ]
    )
    transport = ScriptedTransport(*responses)
    feed = iter(lines)
    prompts: list[str] = []

    def read_line(prompt: str) -> str:
        prompts.append(prompt)
        try:
            return next(feed)
        except StopIteration:
            raise EOFError from None

    out = io.StringIO()
    repl = Repl(config, registry, transport=transport, read_line=read_line, out=out)
    return repl, transport, out, prompts


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        (".info", (".info", None)),
        (".info role", (".info", "role")),
        (".prompt \nabc\n", (".prompt", "abc")),
        ("  .save session mine ", (".save", "session mine")),
        ("hello there", None),
    ],
)
def test_parse_command(line, expected):
    assert parse_command(line) == expected


def test_multiline_helpers():
    assert is_incomplete(":::")
    assert is_incomplete("::: first line")
    assert not is_incomplete(":::\nfirst\nsecond\n:::")
    assert unwrap_multiline(":::\nfirst\nsecond\n:::") == "first\nsecond"
    assert unwrap_multiline("plain") == "plain"


def test_prompt_shows_model_and_budget(tmp_path):
    repl, *_ = _repl(tmp_path)
    assert repl.prompt() == "openai:gpt-4(0.0%)> "
    repl.handle(".role terse")
    assert repl.prompt().startswith("terse@openai:gpt-4(")


def test_chat_flow_and_exit(tmp_path):
    repl, transport, out, prompts = _repl(
        tmp_path, openai_stream("Hello", "!"), lines=["hi", ".info", ".exit", "n"]
    )
    repl.run()
    text = out.getvalue()
    assert "Hello!" in text
    assert "openai:gpt-4" in text
    assert prompts[-1].startswith("Save session")
    assert len(transport.requests) == 1
    assert repl.engine.sessions.list() == []


def test_multiline_input_is_joined(tmp_path):
    repl, transport, _out, _prompts = _repl(
        tmp_path, openai_stream("ok"), lines=[":::", "line one", "line two", ":::", ".exit", "n"]
    )
    repl.run()
    body = transport.requests[0][0].body
    assert body["messages"][-1]["content"] == "line one\nline two"


def test_role_one_off_restores_previous_role(tmp_path):
    repl, transport, _out, _prompts = _repl(tmp_path, openai_stream("k"))
    repl.handle(".role terse quick question")
    messages = transport.requests[0][0].body["messages"]
    assert messages[0] == {"role": "system", "content": "Be terse."}
    assert messages[-1]["content"] == "quick question"
    assert repl.engine.role is None


def test_set_updates_config(tmp_path):
    repl, _transport, out, _prompts = _repl(tmp_path)
    repl.handle(".set temperature 0.5")
    repl.handle(".set stream false")
    repl.handle(".set compress_threshold 10")
    assert repl.config.temperature == 0.5
    assert repl.config.stream is False
    assert repl.config.compress_threshold == 4000
    assert "Invalid value for compress_threshold" in out.getvalue()


def test_save_session_command(tmp_path):
    repl, _transport, out, _prompts = _repl(tmp_path, openai_stream("ok"))
    repl.handle("hi")
    repl.handle(".save session mine")
    assert repl.engine.sessions.exists("mine")
    assert "Saved session" in out.getvalue()


def test_resume_named_session(tmp_path):
    repl, _transport, _out, _prompts = _repl(
        tmp_path, openai_stream("ok"), lines=["y"]
    )
    repl.handle(".session work")
    repl.handle("hi")
    repl.handle(".exit session")
    assert repl.engine.sessions.exists("work")

    repl.handle(".session work")
    assert repl.engine.session.id == "work"
    assert len(repl.engine.store.non_system()) == 2


def test_invalid_session_name_rejected_up_front(tmp_path):
    repl, _transport, _out, _prompts = _repl(tmp_path)
    original = repl.engine
    with pytest.raises(ValueError, match="invalid session id"):
        repl.handle(".session ../escape")
    assert repl.engine is original
    assert repl.engine.session.id != "../escape"


def test_errors_are_reported_and_loop_continues(tmp_path):
    repl, _transport, out, _prompts = _repl(tmp_path, lines=[".model openai:nope", ".bogus", ".exit"])
    repl.run()
    text = out.getvalue()
    assert "Error: unknown_model" in text
    assert "Unknown command" in text


def test_clear_messages(tmp_path):
    repl, _transport, _out, _prompts = _repl(tmp_path, openai_stream("ok"))
    repl.handle("hi")
    repl.handle(".clear messages")
    assert repl.engine.store.non_system() == ()
