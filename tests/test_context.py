"""Tests for the context store: ordering, compression and serialization."""

from __future__ import annotations

import pytest

from chatmux.compression import DEFAULT_SUMMARY_PREFIX, PromptSummaryStrategy
from chatmux.context import ContextStore
from chatmux.errors import ContextTooLongError
from chatmux.messages import ChatRole, MediaPart, Message, TextPart
from chatmux.specs import CodecKind
from chatmux.tokens import TokenAccountant

SYSTEM = Message.of(ChatRole.SYSTEM, "You are a helpful assistant.", timestamp=1.0)


def _turns(count: int, size: int = 800) -> list[Message]:
    roles = [ChatRole.USER, ChatRole.ASSISTANT]
    return [
        Message.of(roles[i % 2], f"{i}:" + "x" * size, timestamp=float(i + 2)) for i in range(count)
    ]


def _summarizer(prefix):
    return PromptSummaryStrategy().to_summary(f"{len(prefix)} messages about x")


def test_history_preserves_insertion_order_with_system_first():
    store = ContextStore()
    turns = _turns(4, size=10)
    store.append(turns[0])
    store.set_system(SYSTEM, "helper")
    store.extend(turns[1:])
    assert store.history() == (SYSTEM, *turns)
    assert store.non_system() == tuple(turns)
    assert len(store) == 5


def test_append_rejects_system_message():
    with pytest.raises(ValueError):
        ContextStore().append(SYSTEM)


def test_set_system_requires_system_role():
    with pytest.raises(ValueError):
        ContextStore().set_system(Message.of(ChatRole.USER, "nope"))


def test_clear_keeps_system_message():
    store = ContextStore(SYSTEM, "helper")
    store.extend(_turns(2, size=10))
    store.clear()
    assert store.history() == (SYSTEM,)
    assert store.role_name == "helper"


def test_compress_replaces_prefix_and_keeps_system():
    estimate = TokenAccountant(CodecKind.OPENAI).estimate
    store = ContextStore(SYSTEM, "helper")
    store.extend(_turns(6))
    before = sum(estimate(m) for m in store.history())

    report = store.compress(_summarizer, target=1000, estimate=estimate)

    history = store.history()
    assert history[0] == SYSTEM
    assert history[1].summary
    assert history[1].role == ChatRole.ASSISTANT
    assert history[1].plain_text().startswith(DEFAULT_SUMMARY_PREFIX)
    assert report.before_tokens == before
    assert report.after_tokens == sum(estimate(m) for m in history)
    assert report.after_tokens < before


def test_compress_keeps_recent_suffix_starting_at_user():
    estimate = TokenAccountant(CodecKind.OPENAI).estimate
    store = ContextStore()
    turns = _turns(6)
    store.extend(turns)
    # 204 tokens each: half of 1000 keeps the last two messages.
    report = store.compress(_summarizer, target=1000, estimate=estimate)
    assert report.replaced_messages == 4
    assert report.kept_messages == 2
    assert store.non_system()[1:] == tuple(turns[4:])


def test_compress_empty_history_fails():
    store = ContextStore(SYSTEM)
    with pytest.raises(ContextTooLongError):
        store.compress(_summarizer, target=1000, estimate=TokenAccountant().estimate)


def test_compress_fails_when_summary_is_not_smaller():
    store = ContextStore()
    store.extend(_turns(2, size=4))
    huge = Message.of(ChatRole.ASSISTANT, "z" * 4000, summary=True)
    with pytest.raises(ContextTooLongError, match="did not reduce"):
        store.compress(lambda prefix: huge, target=1000, estimate=TokenAccountant().estimate)
    assert len(store.non_system()) == 2


def test_compress_fails_when_result_exceeds_target():
    estimate = TokenAccountant(CodecKind.OPENAI).estimate
    store = ContextStore()
    turns = _turns(6)
    store.extend(turns)
    wordy = Message.of(ChatRole.ASSISTANT, "w" * 2400, summary=True)
    with pytest.raises(ContextTooLongError, match="exceeds the target"):
        store.compress(lambda prefix: wordy, target=500, estimate=estimate)
    assert store.non_system() == tuple(turns)


def test_serialize_round_trip_is_byte_for_byte():
    store = ContextStore(SYSTEM, "helper")
    store.extend(_turns(3, size=20))
    data = store.serialize()
    restored = ContextStore.deserialize(data)
    assert restored.history() == store.history()
    assert restored.role_name == "helper"
    assert restored.serialize() == data


def test_embedded_role_name_survives_round_trip():
    store = ContextStore()
    store.role_name = "%shell%"
    store.extend(_turns(2, size=5))
    restored = ContextStore.deserialize(store.serialize())
    assert restored.system is None
    assert restored.role_name == "%shell%"


def test_deserialize_rejects_late_system_message():
    data = (
        '{"role": null, "messages": ['
        '{"role": "user", "content": [{"type": "text", "text": "hi"}]},'
        '{"role": "system", "content": [{"type": "text", "text": "late"}]}]}'
    )
    with pytest.raises(ValueError):
        ContextStore.deserialize(data)


def test_media_references_survive_round_trip():
    media = (
        MediaPart(uri="data:image/png;base64,iVBORw0KGgo=", mime="image/png"),
        MediaPart(uri="https://example.com/cat.jpg", mime="image/jpeg"),
    )
    message = Message(role=ChatRole.USER, content=(TextPart(text="what is this?"), *media))
    store = ContextStore()
    store.append(message)

    restored = ContextStore.deserialize(store.serialize())

    parts = restored.non_system()[0].content
    assert [(p.uri, p.mime) for p in parts if isinstance(p, MediaPart)] == [
        ("data:image/png;base64,iVBORw0KGgo=", "image/png"),
        ("https://example.com/cat.jpg", "image/jpeg"),
    ]
    assert restored.history() == store.history()
