"""OpenAI chat-completions codec (official and compatible endpoints)."""

from __future__ import annotations

from typing import Any

from ..errors import ErrorKind
from ..messages import (
    ChatEvent,
    ChatRequest,
    DeltaEvent,
    DoneEvent,
    ErrorEvent,
    MediaPart,
    Message,
    MetaEvent,
    TextPart,
    UsageEvent,
)
from ..specs import CodecKind, ModelSpec
from ..transport import HttpRequest
from .base import StreamState, WireCodec, mentions_context_overflow
from .framing import Frame

_ERROR_CODES: dict[str, ErrorKind] = {
    "context_length_exceeded": ErrorKind.CONTEXT_TOO_LONG,
    "string_above_max_length": ErrorKind.CONTEXT_TOO_LONG,
    "rate_limit_exceeded": ErrorKind.RATE_LIMITED,
    "insufficient_quota": ErrorKind.RATE_LIMITED,
    "invalid_api_key": ErrorKind.AUTH_FAILED,
    "authentication_error": ErrorKind.AUTH_FAILED,
    "invalid_authentication": ErrorKind.AUTH_FAILED,
    "server_error": ErrorKind.PROVIDER_UNAVAILABLE,
    "service_unavailable": ErrorKind.PROVIDER_UNAVAILABLE,
}


def _content(message: Message) -> str | list[dict[str, Any]]:
    if not message.has_media:
        return message.plain_text()
    blocks: list[dict[str, Any]] = []
    for part in message.content:
        if isinstance(part, TextPart):
            blocks.append({"type": "text", "text": part.text})
        elif isinstance(part, MediaPart):
            blocks.append({"type": "image_url", "image_url": {"url": part.uri}})
    return blocks


def _usage(raw: dict[str, Any]) -> UsageEvent:
    return UsageEvent(
        prompt_tokens=int(raw.get("prompt_tokens") or 0),
        completion_tokens=int(raw.get("completion_tokens") or 0),
    )


class OpenAICodec(WireCodec):
    """``POST /chat/completions`` with bearer auth and ``data: [DONE]`` termination."""

    kind = CodecKind.OPENAI
    default_base = "https://api.openai.com/v1"
    done_sentinel = "[DONE]"

    def encode(self, request: ChatRequest, spec: ModelSpec) -> HttpRequest:
        body: dict[str, Any] = {
            "model": spec.name,
            "messages": [
                {"role": str(m.role), "content": _content(m)} for m in request.messages
            ],
            "stream": request.stream,
        }
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens
        if request.stream and self.kind == CodecKind.OPENAI:
            body["stream_options"] = {"include_usage": True}
        return HttpRequest(
            method="POST",
            url=f"{self.base_url}/chat/completions",
            headers=self._headers(),
            body=body,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.provider.api_key:
            headers["Authorization"] = f"Bearer {self.provider.api_key}"
        headers.update(self.provider.extra_headers)
        return headers

    def _decode_payload(
        self, payload: dict[str, Any], frame: Frame, state: StreamState
    ) -> list[ChatEvent]:
        events: list[ChatEvent] = []
        for choice in payload.get("choices") or []:
            delta = choice.get("delta") or {}
            text = delta.get("content")
            if text:
                events.append(DeltaEvent(text=text))
            if delta.get("tool_calls"):
                events.append(MetaEvent(info={"tool_calls": delta["tool_calls"]}))
            if choice.get("finish_reason"):
                events.append(MetaEvent(info={"finish_reason": choice["finish_reason"]}))
        if payload.get("usage"):
            events.append(_usage(payload["usage"]))
        return events

    def _decode_full(self, payload: dict[str, Any]) -> DoneEvent:
        message = payload["choices"][0]["message"]
        usage = _usage(payload["usage"]) if payload.get("usage") else None
        return DoneEvent(content=message.get("content") or "", usage=usage)

    def _error_from_payload(self, payload: dict[str, Any]) -> ErrorEvent | None:
        error = payload.get("error")
        if not error:
            return None
        if isinstance(error, str):
            return ErrorEvent(kind=ErrorKind.UNKNOWN, detail=error)
        message = str(error.get("message") or "")
        kind = ErrorKind.UNKNOWN
        for key in (error.get("code"), error.get("type")):
            if isinstance(key, str) and key in _ERROR_CODES:
                kind = _ERROR_CODES[key]
                break
        if kind == ErrorKind.UNKNOWN and mentions_context_overflow(message):
            kind = ErrorKind.CONTEXT_TOO_LONG
        return ErrorEvent(kind=kind, detail=message or str(error))


class OpenAICompatibleCodec(OpenAICodec):
    """Any endpoint speaking the OpenAI shape; ``api_base`` is mandatory."""

    kind = CodecKind.OPENAI_COMPATIBLE
    default_base = None
