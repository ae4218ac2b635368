"""In-memory transport and payload helpers shared by the tests."""

from __future__ import annotations

import json
from collections.abc import Iterator
from typing import Any

from chatmux.errors import ErrorKind, TransportError
from chatmux.transport import HttpRequest, HttpResponse, Transport


class FakeResponse(HttpResponse):
    """Response replaying scripted body chunks."""

    def __init__(self, status_code: int = 200, chunks: list[bytes] | None = None) -> None:
        self.status_code = status_code
        self.chunks = list(chunks or [])
        self.closed = False

    def iter_bytes(self) -> Iterator[bytes]:
        for chunk in self.chunks:
            if self.closed:
                raise TransportError(ErrorKind.PROVIDER_UNAVAILABLE, "connection closed")
            yield chunk

    def read(self) -> bytes:
        return b"".join(self.chunks)

    def close(self) -> None:
        self.closed = True


class ScriptedTransport(Transport):
    """Hands out pre-built responses (or raises pre-built errors) in order."""

    def __init__(self, *responses: FakeResponse | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[tuple[HttpRequest, bool]] = []

    def open(self, request: HttpRequest, stream: bool = True) -> HttpResponse:
        self.requests.append((request, stream))
        if not self.responses:
            raise AssertionError(f"unexpected request to {request.url}")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def sse(payload: dict[str, Any] | str) -> bytes:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode()


def openai_stream(*texts: str, usage: tuple[int, int] | None = None) -> FakeResponse:
    chunks = [sse({"choices": [{"index": 0, "delta": {"content": t}}]}) for t in texts]
    chunks.append(sse({"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]}))
    if usage is not None:
        chunks.append(
            sse({"choices": [], "usage": {"prompt_tokens": usage[0], "completion_tokens": usage[1]}})
        )
    chunks.append(sse("[DONE]"))
    return FakeResponse(200, chunks)


def openai_completion(text: str, usage: tuple[int, int] = (10, 5)) -> FakeResponse:
    body = {
        "choices": [{"index": 0, "message": {"role": "assistant", "content": text}}],
        "usage": {"prompt_tokens": usage[0], "completion_tokens": usage[1]},
    }
    return FakeResponse(200, [json.dumps(body).encode()])


def error_response(status: int, body: dict[str, Any]) -> FakeResponse:
    return FakeResponse(status, [json.dumps(body).encode()])
