"""Normalized message, request and event model shared by every provider."""

from __future__ import annotations

import base64
import time
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .errors import ChatError, ErrorKind

# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class ChatRole(StrEnum):
    """Role of a message participant."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class TextPart(BaseModel):
    """Plain text content."""

    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class MediaPart(BaseModel):
    """Reference to media content (``data:`` URL, ``http(s)`` URL or file URI)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["media"] = "media"
    uri: str
    mime: str

    @property
    def is_data_uri(self) -> bool:
        return self.uri.startswith("data:")

    def data_payload(self) -> tuple[str, str]:
        """Split a ``data:<mime>;base64,<payload>`` URI into ``(mime, payload)``."""
        if not self.is_data_uri:
            msg = f"not a data URI: {self.uri[:40]}"
            raise ValueError(msg)
        header, _, payload = self.uri.partition(",")
        mime = header[len("data:") :].split(";", 1)[0] or self.mime
        if ";base64" not in header:
            payload = base64.b64encode(payload.encode("utf-8")).decode("ascii")
        return mime, payload


Part = Annotated[TextPart | MediaPart, Field(discriminator="type")]


class Message(BaseModel):
    """Single finalized message in a conversation.

    Messages are frozen: once built, their content can no longer change.
    ``summary`` marks the synthetic message produced by history compression.
    """

    model_config = ConfigDict(frozen=True)

    role: ChatRole
    content: tuple[Part, ...]
    timestamp: float = Field(default_factory=time.time)
    summary: bool = False

    @classmethod
    def of(cls, role: ChatRole, text: str, **kwargs: Any) -> Message:
        """Build a single-text-part message."""
        return cls(role=role, content=(TextPart(text=text),), **kwargs)

    def plain_text(self) -> str:
        """Concatenate the text parts, ignoring media."""
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    def media(self) -> list[MediaPart]:
        return [p for p in self.content if isinstance(p, MediaPart)]

    @property
    def has_media(self) -> bool:
        return any(isinstance(p, MediaPart) for p in self.content)


class ChatRequest(BaseModel):
    """Immutable request snapshot built fresh for every turn."""

    model_config = ConfigDict(frozen=True)

    model_id: str
    messages: tuple[Message, ...]
    temperature: float | None = None
    top_p: float | None = None
    stream: bool = True
    max_tokens: int | None = None

    @property
    def provider(self) -> str:
        return self.model_id.split(":", 1)[0]

    @property
    def model_name(self) -> str:
        return self.model_id.split(":", 1)[-1]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class DeltaEvent(BaseModel):
    """Incremental assistant content."""

    model_config = ConfigDict(frozen=True)

    type: Literal["delta"] = "delta"
    text: str


class MetaEvent(BaseModel):
    """Provider metadata or tool information that carries no content."""

    model_config = ConfigDict(frozen=True)

    type: Literal["meta"] = "meta"
    info: dict[str, Any] = Field(default_factory=dict)


class UsageEvent(BaseModel):
    """Exact token usage reported by the provider."""

    model_config = ConfigDict(frozen=True)

    type: Literal["usage"] = "usage"
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class DoneEvent(BaseModel):
    """Successful end of a turn; non-streamed responses carry the full content."""

    model_config = ConfigDict(frozen=True)

    type: Literal["done"] = "done"
    content: str | None = None
    usage: UsageEvent | None = None


class ErrorEvent(BaseModel):
    """Failed end of a turn."""

    model_config = ConfigDict(frozen=True)

    type: Literal["error"] = "error"
    kind: ErrorKind
    detail: str = ""

    def to_exception(self) -> ChatError:
        return ChatError(self.kind, self.detail)


ChatEvent = Annotated[
    DeltaEvent | MetaEvent | UsageEvent | DoneEvent | ErrorEvent,
    Field(discriminator="type"),
]


def is_terminal(event: BaseModel) -> bool:
    """Return True for the events that end a turn."""
    return isinstance(event, DoneEvent | ErrorEvent)
