"""Tests for user message construction from text and attachments."""

from __future__ import annotations

import base64

from chatmux.inputs import build_user_message, load_attachment
from chatmux.messages import ChatRole, MediaPart, TextPart


def test_text_only_message():
    msg = build_user_message("hello")
    assert msg.role == ChatRole.USER
    assert msg.content == (TextPart(text="hello"),)


def test_local_image_is_inlined_as_data_uri(tmp_path):
    image = tmp_path / "pic.png"
    image.write_bytes(b"\x89PNG")
    part = load_attachment(str(image))
    assert isinstance(part, MediaPart)
    assert part.mime == "image/png"
    assert part.uri == "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode()


def test_local_text_file_is_fenced(tmp_path):
    source = tmp_path / "notes.txt"
    source.write_text("line one", encoding="utf-8")
    part = load_attachment(str(source))
    assert isinstance(part, TextPart)
    assert "```\nline one\n```" in part.text


def test_remote_url_and_data_uri():
    assert load_attachment("https://example.com/a.jpg") == MediaPart(
        uri="https://example.com/a.jpg", mime="image/jpeg"
    )
    assert load_attachment("data:image/gif;base64,R0lG").mime == "image/gif"


def test_attachments_come_before_text(tmp_path):
    source = tmp_path / "a.txt"
    source.write_text("x", encoding="utf-8")
    msg = build_user_message("explain", [str(source)])
    assert isinstance(msg.content[0], TextPart)
    assert msg.content[-1] == TextPart(text="explain")
    assert len(msg.content) == 2


def test_empty_input_has_no_parts():
    assert build_user_message("").content == ()
