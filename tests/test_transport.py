"""Tests for the requests-backed HTTP transport."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from chatmux.errors import ErrorKind, TransportError
from chatmux.transport import HttpRequest, RequestsTransport

REQUEST = HttpRequest(
    method="POST",
    url="https://api.example.com/v1/chat/completions",
    headers={"Authorization": "Bearer secret", "Content-Type": "application/json"},
    body={"model": "m"},
)


def test_redacted_headers_hide_credentials():
    assert REQUEST.redacted_headers() == {
        "Authorization": "***",
        "Content-Type": "application/json",
    }


def test_open_passes_timeouts_and_streams_chunks():
    raw = MagicMock()
    raw.status_code = 200
    raw.iter_content.return_value = iter([b"a", b"", b"b"])
    session = MagicMock()
    session.request.return_value = raw

    transport = RequestsTransport(connect_timeout=3.0, read_timeout=7.0, session=session)
    response = transport.open(REQUEST, stream=True)

    session.request.assert_called_once_with(
        "POST",
        REQUEST.url,
        headers=REQUEST.headers,
        json=REQUEST.body,
        stream=True,
        timeout=(3.0, 7.0),
    )
    assert response.status_code == 200
    assert list(response.iter_bytes()) == [b"a", b"b"]
    response.close()
    raw.close.assert_called_once()


def test_connection_error_becomes_transport_error():
    session = MagicMock()
    session.request.side_effect = requests.ConnectionError("refused")
    with pytest.raises(TransportError) as exc_info:
        RequestsTransport(session=session).open(REQUEST)
    assert exc_info.value.kind == ErrorKind.PROVIDER_UNAVAILABLE


def test_read_timeout_mid_stream():
    def stalled(chunk_size=None):
        yield b"data: partial"
        raise requests.exceptions.ReadTimeout("stalled")

    raw = MagicMock()
    raw.status_code = 200
    raw.iter_content.side_effect = stalled
    session = MagicMock()
    session.request.return_value = raw

    response = RequestsTransport(session=session).open(REQUEST)
    chunks = response.iter_bytes()
    assert next(chunks) == b"data: partial"
    with pytest.raises(TransportError, match="read timeout"):
        next(chunks)
