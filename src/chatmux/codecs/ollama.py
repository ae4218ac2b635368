"""Ollama ``/api/chat`` codec (newline-delimited JSON stream)."""

from __future__ import annotations

from typing import Any

from ..errors import ErrorKind
from ..messages import (
    ChatEvent,
    ChatRequest,
    DeltaEvent,
    DoneEvent,
    ErrorEvent,
    Message,
    MetaEvent,
    UsageEvent,
)
from ..specs import CodecKind, ModelSpec
from ..transport import HttpRequest
from .base import StreamState, WireCodec, mentions_context_overflow
from .framing import Frame


def _message(message: Message) -> dict[str, Any]:
    out: dict[str, Any] = {"role": str(message.role), "content": message.plain_text()}
    images = [part.data_payload()[1] for part in message.media() if part.is_data_uri]
    if images:
        out["images"] = images
    return out


def _usage(payload: dict[str, Any]) -> UsageEvent:
    return UsageEvent(
        prompt_tokens=int(payload.get("prompt_eval_count") or 0),
        completion_tokens=int(payload.get("eval_count") or 0),
    )


class OllamaCodec(WireCodec):
    """One JSON object per line; the last one carries ``"done": true``."""

    kind = CodecKind.OLLAMA
    default_base = "http://localhost:11434"
    sse = False

    def encode(self, request: ChatRequest, spec: ModelSpec) -> HttpRequest:
        body: dict[str, Any] = {
            "model": spec.name,
            "messages": [_message(m) for m in request.messages],
            "stream": request.stream,
        }
        options: dict[str, Any] = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.top_p is not None:
            options["top_p"] = request.top_p
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        if options:
            body["options"] = options
        headers = {"Content-Type": "application/json"}
        if self.provider.api_key:
            headers["Authorization"] = f"Bearer {self.provider.api_key}"
        headers.update(self.provider.extra_headers)
        return HttpRequest(method="POST", url=f"{self.base_url}/api/chat", headers=headers, body=body)

    def _decode_payload(
        self, payload: dict[str, Any], frame: Frame, state: StreamState
    ) -> list[ChatEvent]:
        events: list[ChatEvent] = []
        text = (payload.get("message") or {}).get("content")
        if text:
            events.append(DeltaEvent(text=text))
        if payload.get("done"):
            if payload.get("done_reason"):
                events.append(MetaEvent(info={"finish_reason": payload["done_reason"]}))
            events.append(_usage(payload))
            events.append(DoneEvent())
        return events

    def _decode_full(self, payload: dict[str, Any]) -> DoneEvent:
        return DoneEvent(content=payload["message"]["content"], usage=_usage(payload))

    def _error_from_payload(self, payload: dict[str, Any]) -> ErrorEvent | None:
        error = payload.get("error")
        if not error:
            return None
        message = str(error)
        kind = ErrorKind.CONTEXT_TOO_LONG if mentions_context_overflow(message) else ErrorKind.UNKNOWN
        return ErrorEvent(kind=kind, detail=message)
