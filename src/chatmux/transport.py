"""HTTP transport — executes encoded requests and exposes the body as byte chunks."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

import requests

from .errors import ErrorKind, TransportError

logger = logging.getLogger(__name__)

_SECRET_HEADERS = frozenset({"authorization", "x-api-key", "x-goog-api-key", "api-key"})


@dataclass(frozen=True)
class HttpRequest:
    """Provider-specific HTTP request produced by a codec."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: dict[str, Any] | None = None

    def redacted_headers(self) -> dict[str, str]:
        """Headers with credentials masked, safe for logs."""
        return {
            k: ("***" if k.lower() in _SECRET_HEADERS else v) for k, v in self.headers.items()
        }


class HttpResponse(ABC):
    """An in-flight HTTP response."""

    status_code: int

    @abstractmethod
    def iter_bytes(self) -> Iterator[bytes]:
        """Yield body chunks as they arrive."""

    @abstractmethod
    def read(self) -> bytes:
        """Read the whole remaining body."""

    @abstractmethod
    def close(self) -> None:
        """Release the connection. Safe to call more than once and from another thread."""


class Transport(ABC):
    """Executes one HTTP exchange. Exactly one attempt, no retries."""

    @abstractmethod
    def open(self, request: HttpRequest, stream: bool = True) -> HttpResponse:
        """Send *request* and return the response once headers are received.

        Raises:
            TransportError: If the connection fails or times out.
        """


# ---------------------------------------------------------------------------
# requests implementation
# ---------------------------------------------------------------------------


class RequestsResponse(HttpResponse):
    """Wraps a streamed :class:`requests.Response`."""

    def __init__(self, response: requests.Response) -> None:
        self._response = response
        self.status_code = response.status_code

    def iter_bytes(self) -> Iterator[bytes]:
        try:
            for chunk in self._response.iter_content(chunk_size=None):
                if chunk:
                    yield chunk
        except requests.Timeout as exc:
            msg = "no data received from provider within the read timeout"
            raise TransportError(ErrorKind.PROVIDER_UNAVAILABLE, msg) from exc
        except (requests.RequestException, OSError) as exc:
            raise TransportError(ErrorKind.PROVIDER_UNAVAILABLE, str(exc)) from exc

    def read(self) -> bytes:
        return b"".join(self.iter_bytes())

    def close(self) -> None:
        self._response.close()


class RequestsTransport(Transport):
    """Transport backed by a :class:`requests.Session`.

    ``read_timeout`` bounds the gap between two received chunks, so a stalled
    stream surfaces as ``provider_unavailable`` instead of hanging.
    """

    def __init__(
        self,
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
        session: requests.Session | None = None,
    ) -> None:
        self._connect_timeout = connect_timeout
        self._read_timeout = read_timeout
        self._session = session if session is not None else requests.Session()

    def open(self, request: HttpRequest, stream: bool = True) -> HttpResponse:
        logger.debug(
            "%s %s headers=%s", request.method, request.url, request.redacted_headers()
        )
        try:
            response = self._session.request(
                request.method,
                request.url,
                headers=request.headers,
                json=request.body,
                stream=stream,
                timeout=(self._connect_timeout, self._read_timeout),
            )
        except requests.Timeout as exc:
            msg = f"request to {request.url} timed out"
            raise TransportError(ErrorKind.PROVIDER_UNAVAILABLE, msg) from exc
        except requests.RequestException as exc:
            raise TransportError(ErrorKind.PROVIDER_UNAVAILABLE, str(exc)) from exc
        logger.debug("response status %s from %s", response.status_code, request.url)
        return RequestsResponse(response)

    def close(self) -> None:
        self._session.close()
