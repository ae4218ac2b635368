"""Build user messages from typed text and attached files."""

from __future__ import annotations

import base64
import mimetypes
from collections.abc import Sequence
from pathlib import Path

from .messages import ChatRole, MediaPart, Message, TextPart


def _guess_mime(name: str) -> str | None:
    return mimetypes.guess_type(name)[0]


def load_attachment(source: str) -> TextPart | MediaPart:
    """Turn a path, URL or data URI into a message part.

    Images become media references (local files are inlined as ``data:``
    URLs); any other local file is inlined as fenced text.
    """
    if source.startswith("data:"):
        mime = source[len("data:") :].split(";", 1)[0].split(",", 1)[0] or "application/octet-stream"
        return MediaPart(uri=source, mime=mime)
    if source.startswith(("http://", "https://")):
        return MediaPart(uri=source, mime=_guess_mime(source) or "image/png")

    path = Path(source).expanduser()
    mime = _guess_mime(path.name)
    if mime is not None and mime.startswith("image/"):
        encoded = base64.b64encode(path.read_bytes()).decode("ascii")
        return MediaPart(uri=f"data:{mime};base64,{encoded}", mime=mime)
    text = path.read_text(encoding="utf-8")
    return TextPart(text=f"`{path}`:\n```\n{text}\n```\n")


def build_user_message(text: str, files: Sequence[str] = ()) -> Message:
    """User message with attachments first and the typed text last."""
    parts: list[TextPart | MediaPart] = [load_attachment(f) for f in files]
    if text:
        parts.append(TextPart(text=text))
    return Message(role=ChatRole.USER, content=tuple(parts))
