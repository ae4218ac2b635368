"""Google Gemini codecs (AI Studio API key and Vertex AI IAM token)."""

from __future__ import annotations

from typing import Any

from ..errors import ChatError, ErrorKind
from ..messages import (
    ChatEvent,
    ChatRequest,
    ChatRole,
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

_STATUS_KINDS: dict[str, ErrorKind] = {
    "UNAUTHENTICATED": ErrorKind.AUTH_FAILED,
    "PERMISSION_DENIED": ErrorKind.AUTH_FAILED,
    "RESOURCE_EXHAUSTED": ErrorKind.RATE_LIMITED,
    "UNAVAILABLE": ErrorKind.PROVIDER_UNAVAILABLE,
    "INTERNAL": ErrorKind.PROVIDER_UNAVAILABLE,
    "DEADLINE_EXCEEDED": ErrorKind.PROVIDER_UNAVAILABLE,
}


def _part(part: TextPart | MediaPart) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"text": part.text}
    if part.is_data_uri:
        mime, data = part.data_payload()
        return {"inline_data": {"mime_type": mime, "data": data}}
    return {"file_data": {"mime_type": part.mime, "file_uri": part.uri}}


def _usage(meta: dict[str, Any]) -> tuple[int | None, int | None]:
    return meta.get("promptTokenCount"), meta.get("candidatesTokenCount")


class GeminiCodec(WireCodec):
    """``:streamGenerateContent?alt=sse``; the stream simply ends, no sentinel."""

    kind = CodecKind.GEMINI
    default_base = "https://generativelanguage.googleapis.com/v1beta"

    def encode(self, request: ChatRequest, spec: ModelSpec) -> HttpRequest:
        return HttpRequest(
            method="POST",
            url=self._url(spec, request.stream),
            headers=self._headers(),
            body=self._body(request, spec),
        )

    def _url(self, spec: ModelSpec, stream: bool) -> str:
        method = "streamGenerateContent?alt=sse" if stream else "generateContent"
        return f"{self.base_url}/models/{spec.name}:{method}"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.provider.api_key:
            headers["x-goog-api-key"] = self.provider.api_key
        headers.update(self.provider.extra_headers)
        return headers

    @staticmethod
    def _body(request: ChatRequest, spec: ModelSpec) -> dict[str, Any]:
        system, rest = split_system(request.messages)
        contents = [
            {
                "role": "model" if role == ChatRole.ASSISTANT else "user",
                "parts": [_part(p) for p in parts],
            }
            for role, parts in alternate_turns(rest)
        ]
        body: dict[str, Any] = {"contents": contents}
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        config: dict[str, Any] = {}
        if request.temperature is not None:
            config["temperature"] = request.temperature
        if request.top_p is not None:
            config["topP"] = request.top_p
        max_tokens = request.max_tokens or spec.max_output_tokens
        if max_tokens:
            config["maxOutputTokens"] = max_tokens
        if config:
            body["generationConfig"] = config
        return body

    def _decode_payload(
        self, payload: dict[str, Any], frame: Frame, state: StreamState
    ) -> list[ChatEvent]:
        events: list[ChatEvent] = []
        feedback = payload.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            events.append(MetaEvent(info={"block_reason": feedback["blockReason"]}))
        for candidate in payload.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                text = part.get("text")
                if text:
                    events.append(DeltaEvent(text=text))
            reason = candidate.get("finishReason")
            if reason and reason != "STOP":
                events.append(MetaEvent(info={"finish_reason": reason}))
        meta = payload.get("usageMetadata")
        if meta:
            prompt, completion = _usage(meta)
            state.record_usage(prompt=prompt, completion=completion)
        return events

    def _end_of_stream(self, state: StreamState) -> list[ChatEvent]:
        return [state.usage()] if state.has_usage else []

    def _decode_full(self, payload: dict[str, Any]) -> DoneEvent:
        candidate = payload["candidates"][0]
        text = "".join(
            part.get("text", "") for part in (candidate.get("content") or {}).get("parts") or []
        )
        usage = None
        if payload.get("usageMetadata"):
            prompt, completion = _usage(payload["usageMetadata"])
            usage = UsageEvent(prompt_tokens=prompt or 0, completion_tokens=completion or 0)
        return DoneEvent(content=text, usage=usage)

    def _error_from_payload(self, payload: dict[str, Any]) -> ErrorEvent | None:
        error = payload.get("error")
        if not isinstance(error, dict):
            return None
        message = str(error.get("message") or "")
        kind = _STATUS_KINDS.get(str(error.get("status")), ErrorKind.UNKNOWN)
        if kind == ErrorKind.UNKNOWN and mentions_context_overflow(message):
            kind = ErrorKind.CONTEXT_TOO_LONG
        return ErrorEvent(kind=kind, detail=message or str(error))


class VertexAICodec(GeminiCodec):
    """Gemini on Vertex AI, authenticated with a cloud-IAM OAuth access token.

    ``api_key`` holds the access token (e.g. from ``gcloud auth print-access-token``).
    """

    kind = CodecKind.VERTEXAI
    default_base = None

    def _url(self, spec: ModelSpec, stream: bool) -> str:
        project = self.provider.project_id
        location = self.provider.location or "us-central1"
        if not project:
            msg = f"provider '{self.provider.name}' needs project_id for Vertex AI"
            raise ChatError(ErrorKind.UNKNOWN, msg)
        base = (
            self.provider.api_base.rstrip("/")
            if self.provider.api_base
            else f"https://{location}-aiplatform.googleapis.com/v1"
        )
        method = "streamGenerateContent?alt=sse" if stream else "generateContent"
        return (
            f"{base}/projects/{project}/locations/{location}"
            f"/publishers/google/models/{spec.name}:{method}"
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.provider.api_key:
            headers["Authorization"] = f"Bearer {self.provider.api_key}"
        headers.update(self.provider.extra_headers)
        return headers
