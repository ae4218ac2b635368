"""WireCodec ABC — shared decode loop and error normalization."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar

from ..errors import ChatError, ErrorKind
from ..messages import (
    ChatEvent,
    ChatRequest,
    ChatRole,
    DoneEvent,
    ErrorEvent,
    Message,
    Part,
    UsageEvent,
    is_terminal,
)
from ..specs import CodecKind, ModelSpec, ProviderConfig
from ..transport import HttpRequest
from .framing import Frame, iter_lines, iter_ndjson_frames, iter_sse_frames

logger = logging.getLogger(__name__)

# Phrases providers use when the prompt does not fit the window.
_CONTEXT_PHRASES = (
    "context length",
    "context_length",
    "context window",
    "prompt is too long",
    "too many tokens",
    "maximum number of tokens",
    "maximum context",
)


@dataclass
class StreamState:
    """Scratch state for one decode pass."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    has_usage: bool = False

    def record_usage(self, prompt: int | None = None, completion: int | None = None) -> None:
        if prompt is not None:
            self.prompt_tokens = prompt
        if completion is not None:
            self.completion_tokens = completion
        self.has_usage = True

    def usage(self) -> UsageEvent:
        return UsageEvent(
            prompt_tokens=self.prompt_tokens, completion_tokens=self.completion_tokens
        )


def classify_status(status: int) -> ErrorKind:
    """Map an HTTP status code to a normalized error kind."""
    if status in (401, 403):
        return ErrorKind.AUTH_FAILED
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status == 413:
        return ErrorKind.CONTEXT_TOO_LONG
    if status >= 500:
        return ErrorKind.PROVIDER_UNAVAILABLE
    return ErrorKind.UNKNOWN


def mentions_context_overflow(message: str) -> bool:
    lower = message.lower()
    return any(phrase in lower for phrase in _CONTEXT_PHRASES)


def split_system(messages: Sequence[Message]) -> tuple[str, list[Message]]:
    """Separate system prompt text from the conversational messages."""
    system = "\n\n".join(m.plain_text() for m in messages if m.role == ChatRole.SYSTEM)
    rest = [m for m in messages if m.role != ChatRole.SYSTEM]
    return system, rest


def alternate_turns(messages: Sequence[Message]) -> list[tuple[ChatRole, list[Part]]]:
    """Merge consecutive same-role messages for providers that require alternation.

    A leading assistant turn (e.g. a compression summary) is sent as user
    content, since these providers reject conversations that open with the model.
    """
    turns: list[tuple[ChatRole, list[Part]]] = []
    for msg in messages:
        if msg.role == ChatRole.SYSTEM:
            continue
        role = msg.role
        if not turns and role == ChatRole.ASSISTANT:
            role = ChatRole.USER
        if turns and turns[-1][0] == role:
            turns[-1][1].extend(msg.content)
        else:
            turns.append((role, list(msg.content)))
    return turns


class WireCodec(ABC):
    """Translates between the normalized model and one provider's wire format.

    Codecs are pure translators: they never perform I/O themselves.
    """

    kind: ClassVar[CodecKind]
    default_base: ClassVar[str | None] = None
    sse: ClassVar[bool] = True
    done_sentinel: ClassVar[str | None] = None

    def __init__(self, provider: ProviderConfig) -> None:
        self.provider = provider

    @property
    def base_url(self) -> str:
        base = self.provider.api_base or self.default_base
        if not base:
            msg = f"provider '{self.provider.name}' has no api_base configured"
            raise ChatError(ErrorKind.UNKNOWN, msg)
        return base.rstrip("/")

    # ------------------------------------------------------------------
    # Provider hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def encode(self, request: ChatRequest, spec: ModelSpec) -> HttpRequest:
        """Build the provider HTTP request for *request*."""

    @abstractmethod
    def _decode_payload(
        self, payload: dict[str, Any], frame: Frame, state: StreamState
    ) -> list[ChatEvent]:
        """Translate one decoded stream frame into events."""

    @abstractmethod
    def _decode_full(self, payload: dict[str, Any]) -> DoneEvent:
        """Translate a complete non-streamed response body."""

    @abstractmethod
    def _error_from_payload(self, payload: dict[str, Any]) -> ErrorEvent | None:
        """Return an error event if *payload* is a provider error object."""

    def _end_of_stream(self, state: StreamState) -> list[ChatEvent]:
        """Events to emit when the body ends without an explicit terminal event."""
        return []

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def decode_stream(self, chunks: Iterable[bytes]) -> Iterator[ChatEvent]:
        """Lazily decode a streamed body into events.

        The sequence always ends with exactly one ``DoneEvent`` or
        ``ErrorEvent`` and yields nothing after it.
        """
        state = StreamState()
        lines = iter_lines(chunks)
        frames = iter_sse_frames(lines) if self.sse else iter_ndjson_frames(lines)
        for frame in frames:
            if frame.malformed:
                logger.warning("%s: malformed frame %r", self.provider.name, frame.raw)
                yield ErrorEvent(kind=ErrorKind.MALFORMED_FRAME, detail=frame.raw)
                return
            for event in self._decode_frame(frame, state):
                yield event
                if is_terminal(event):
                    return
        for event in self._finish(state):
            yield event
            if is_terminal(event):
                return

    def decode_nonstream(self, body: bytes) -> ChatEvent:
        """Decode a complete response body into a single terminal event."""
        text = body.decode("utf-8", errors="replace")
        try:
            payload = json.loads(text)
        except ValueError:
            return ErrorEvent(kind=ErrorKind.MALFORMED_FRAME, detail=text)
        if not isinstance(payload, dict):
            return ErrorEvent(kind=ErrorKind.MALFORMED_FRAME, detail=text)
        error = self._error_from_payload(payload)
        if error is not None:
            return error
        try:
            return self._decode_full(payload)
        except (KeyError, IndexError, TypeError, AttributeError):
            return ErrorEvent(kind=ErrorKind.MALFORMED_FRAME, detail=text)

    def decode_error(self, status: int, body: bytes) -> ErrorEvent:
        """Normalize a non-2xx response."""
        text = body.decode("utf-8", errors="replace").strip()
        status_kind = classify_status(status)
        try:
            payload = json.loads(text) if text else None
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            event = self._error_from_payload(payload)
            if event is not None:
                kind = event.kind if event.kind != ErrorKind.UNKNOWN else status_kind
                return ErrorEvent(kind=kind, detail=f"HTTP {status}: {event.detail}")
        if status_kind == ErrorKind.UNKNOWN and mentions_context_overflow(text):
            status_kind = ErrorKind.CONTEXT_TOO_LONG
        return ErrorEvent(kind=status_kind, detail=f"HTTP {status}: {text}" if text else f"HTTP {status}")

    def _decode_frame(self, frame: Frame, state: StreamState) -> list[ChatEvent]:
        data = frame.data.strip()
        if not data:
            return []
        if self.done_sentinel is not None and data == self.done_sentinel:
            return self._finish(state)
        try:
            payload = json.loads(data)
        except ValueError:
            return [ErrorEvent(kind=ErrorKind.MALFORMED_FRAME, detail=frame.raw)]
        if not isinstance(payload, dict):
            return [ErrorEvent(kind=ErrorKind.MALFORMED_FRAME, detail=frame.raw)]
        error = self._error_from_payload(payload)
        if error is not None:
            return [error]
        try:
            return self._decode_payload(payload, frame, state)
        except (KeyError, IndexError, TypeError, AttributeError):
            return [ErrorEvent(kind=ErrorKind.MALFORMED_FRAME, detail=frame.raw)]

    def _finish(self, state: StreamState) -> list[ChatEvent]:
        return [*self._end_of_stream(state), DoneEvent()]
