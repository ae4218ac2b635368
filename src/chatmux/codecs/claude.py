"""Anthropic Messages API codec."""

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
    MetaEvent,
    TextPart,
    UsageEvent,
)
from ..specs import CodecKind, ModelSpec
from ..transport import HttpRequest
from .base import StreamState, WireCodec, alternate_turns, mentions_context_overflow, split_system
from .framing import Frame

ANTHROPIC_VERSION = "2023-06-01"

# Claude rejects requests without max_tokens.
_FALLBACK_MAX_TOKENS = 4096

_ERROR_TYPES: dict[str, ErrorKind] = {
    "authentication_error": ErrorKind.AUTH_FAILED,
    "permission_error": ErrorKind.AUTH_FAILED,
    "rate_limit_error": ErrorKind.RATE_LIMITED,
    "overloaded_error": ErrorKind.PROVIDER_UNAVAILABLE,
    "api_error": ErrorKind.PROVIDER_UNAVAILABLE,
    "request_too_large": ErrorKind.CONTEXT_TOO_LONG,
}


def _block(part: TextPart | MediaPart) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if part.is_data_uri:
        mime, data = part.data_payload()
        return {"type": "image", "source": {"type": "base64", "media_type": mime, "data": data}}
    return {"type": "image", "source": {"type": "url", "url": part.uri}}


class ClaudeCodec(WireCodec):
    """``POST /messages`` with ``x-api-key``; terminated by ``message_stop``."""

    kind = CodecKind.CLAUDE
    default_base = "https://api.anthropic.com/v1"

    def encode(self, request: ChatRequest, spec: ModelSpec) -> HttpRequest:
        system, rest = split_system(request.messages)
        messages = []
        for role, parts in alternate_turns(rest):
            if all(isinstance(p, TextPart) for p in parts):
                content: str | list[dict[str, Any]] = "\n\n".join(
                    p.text for p in parts if isinstance(p, TextPart)
                )
            else:
                content = [_block(p) for p in parts]
            messages.append({"role": str(role), "content": content})

        body: dict[str, Any] = {
            "model": spec.name,
            "messages": messages,
            "max_tokens": request.max_tokens or spec.max_output_tokens or _FALLBACK_MAX_TOKENS,
            "stream": request.stream,
        }
        if system:
            body["system"] = system
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p

        headers = {
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        if self.provider.api_key:
            headers["x-api-key"] = self.provider.api_key
        headers.update(self.provider.extra_headers)
        return HttpRequest(
            method="POST", url=f"{self.base_url}/messages", headers=headers, body=body
        )

    def _decode_payload(
        self, payload: dict[str, Any], frame: Frame, state: StreamState
    ) -> list[ChatEvent]:
        kind = payload.get("type") or frame.event
        if kind == "message_start":
            usage = (payload.get("message") or {}).get("usage") or {}
            state.record_usage(
                prompt=usage.get("input_tokens"), completion=usage.get("output_tokens")
            )
            return []
        if kind == "content_block_delta":
            delta = payload.get("delta") or {}
            if delta.get("type") == "text_delta":
                return [DeltaEvent(text=delta.get("text", ""))]
            return [MetaEvent(info={"delta": delta})]
        if kind == "content_block_start":
            block = payload.get("content_block") or {}
            if block.get("type") not in (None, "text"):
                return [MetaEvent(info={"content_block": block})]
            return []
        if kind == "message_delta":
            events: list[ChatEvent] = []
            stop = (payload.get("delta") or {}).get("stop_reason")
            if stop:
                events.append(MetaEvent(info={"finish_reason": stop}))
            usage = payload.get("usage") or {}
            if usage:
                state.record_usage(
                    prompt=usage.get("input_tokens"), completion=usage.get("output_tokens")
                )
                events.append(state.usage())
            return events
        if kind == "message_stop":
            return [DoneEvent()]
        # ping, content_block_stop
        return []

    def _decode_full(self, payload: dict[str, Any]) -> DoneEvent:
        text = "".join(
            block.get("text", "")
            for block in payload["content"]
            if block.get("type") == "text"
        )
        usage = payload.get("usage")
        return DoneEvent(
            content=text,
            usage=UsageEvent(
                prompt_tokens=int(usage.get("input_tokens") or 0),
                completion_tokens=int(usage.get("output_tokens") or 0),
            )
            if usage
            else None,
        )

    def _error_from_payload(self, payload: dict[str, Any]) -> ErrorEvent | None:
        if payload.get("type") != "error":
            return None
        error = payload.get("error") or {}
        message = str(error.get("message") or "")
        kind = _ERROR_TYPES.get(str(error.get("type")), ErrorKind.UNKNOWN)
        if kind == ErrorKind.UNKNOWN and mentions_context_overflow(message):
            kind = ErrorKind.CONTEXT_TOO_LONG
        return ErrorEvent(kind=kind, detail=message or str(error))
