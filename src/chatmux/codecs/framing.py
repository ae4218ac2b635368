"""Framing for streamed bodies: SSE and newline-delimited JSON."""

from __future__ import annotations

import codecs
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

_SSE_FIELDS = frozenset({"data", "event", "id", "retry"})


@dataclass(frozen=True)
class Frame:
    """One logical frame of a streamed response.

    ``raw`` keeps the original text so malformed frames can be reported verbatim.
    """

    data: str
    raw: str
    event: str | None = None
    malformed: bool = False


def iter_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    """Yield complete text lines, buffering reads split mid-line or mid-character."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    for chunk in chunks:
        buffer += decoder.decode(chunk)
        if "\n" not in buffer:
            continue
        complete, buffer = buffer.rsplit("\n", 1)
        for line in complete.split("\n"):
            yield line.rstrip("\r")
    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer.rstrip("\r")


def iter_sse_frames(lines: Iterable[str]) -> Iterator[Frame]:
    """Group lines into Server-Sent Events frames.

    Comment lines (``:`` prefix) are heartbeats and are dropped. A line whose
    field name is not a known SSE field is yielded as a malformed frame.
    """
    data_lines: list[str] = []
    raw_lines: list[str] = []
    event: str | None = None

    def pending() -> Frame | None:
        if not data_lines and event is None:
            return None
        return Frame(data="\n".join(data_lines), raw="\n".join(raw_lines), event=event)

    for line in lines:
        if not line:
            frame = pending()
            if frame is not None:
                yield frame
            data_lines, raw_lines, event = [], [], None
            continue
        if line.startswith(":"):
            continue
        name, sep, value = line.partition(":")
        if name not in _SSE_FIELDS:
            frame = pending()
            if frame is not None:
                yield frame
            data_lines, raw_lines, event = [], [], None
            yield Frame(data="", raw=line, malformed=True)
            continue
        if sep and value.startswith(" "):
            value = value[1:]
        raw_lines.append(line)
        if name == "data":
            data_lines.append(value)
        elif name == "event":
            event = value

    frame = pending()
    if frame is not None:
        yield frame


def iter_ndjson_frames(lines: Iterable[str]) -> Iterator[Frame]:
    """Newline-delimited JSON: every non-blank line is a frame."""
    for line in lines:
        if line.strip():
            yield Frame(data=line, raw=line)
