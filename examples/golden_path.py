"""chatmux Golden Path Demo.

Demonstrates one session end-to-end:
1. Providers registered and a model resolved
2. A streamed turn decoded into events
3. History compressed once the threshold is crossed
4. Session saved to disk and resumed

Uses a canned in-memory transport -- no real LLM or API key needed.

Run: python examples/golden_path.py
"""

from __future__ import annotations

import json
import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from chatmux import (
    ChatConfig,
    CodecKind,
    DeltaEvent,
    DoneEvent,
    MetaEvent,
    ModelEntry,
    ProviderConfig,
    ProviderRegistry,
    SessionEngine,
)
from chatmux.transport import HttpRequest, HttpResponse, Transport


class CannedResponse(HttpResponse):
    def __init__(self, chunks: list[bytes]) -> None:
        self.status_code = 200
        self._chunks = chunks

    def iter_bytes(self) -> Iterator[bytes]:
        yield from self._chunks

    def read(self) -> bytes:
        return b"".join(self._chunks)

    def close(self) -> None:
        pass


class CannedTransport(Transport):
    """Answers every streamed request with an echo and every summary with a recap."""

    def open(self, request: HttpRequest, stream: bool = True) -> HttpResponse:
        messages = (request.body or {}).get("messages", [])
        if not stream:
            body = {"choices": [{"message": {"content": f"{len(messages) - 1} earlier messages"}}]}
            return CannedResponse([json.dumps(body).encode()])
        last = str(messages[-1]["content"]) if messages else ""
        words = f"You said {len(last)} characters. ".split(" ")
        chunks = [
            f"data: {json.dumps({'choices': [{'delta': {'content': w + ' '}}]})}\n\n".encode()
            for w in words
            if w
        ]
        chunks.append(b"data: [DONE]\n\n")
        return CannedResponse(chunks)


def _check(condition: bool, msg: str) -> None:  # noqa: FBT001
    """Raise RuntimeError if *condition* is False (demo validation)."""
    if not condition:
        raise RuntimeError(msg)


def run_demo() -> None:
    print("=" * 60)
    print("chatmux Golden Path Demo")
    print("=" * 60)

    with tempfile.TemporaryDirectory() as tmp:
        # ------------------------------------------------------------------
        # Step 1: Register providers
        # ------------------------------------------------------------------
        print("\n[1/4] Registering providers...")
        provider = ProviderConfig(
            name="local",
            kind=CodecKind.OPENAI_COMPATIBLE,
            api_base="http://localhost:8000/v1",
            models=[ModelEntry(name="demo", max_input_tokens=4096)],
        )
        registry = ProviderRegistry.from_providers([provider])
        config = ChatConfig(
            model="local:demo", compress_threshold=1000, sessions_dir=Path(tmp) / "sessions"
        )
        engine = SessionEngine(config, registry, transport=CannedTransport())
        print(f"  Models : {[s.key for s in registry.list()]}")
        print(f"  Session: {engine.session.id}")

        # ------------------------------------------------------------------
        # Step 2: Stream a turn
        # ------------------------------------------------------------------
        print("\n[2/4] Streaming a turn...")
        print("  ", end="")
        for event in engine.ask("Hello there"):
            if isinstance(event, DeltaEvent):
                print(event.text, end="", flush=True)
            elif isinstance(event, DoneEvent):
                print()
        _check(len(engine.store.non_system()) == 2, "Turn should commit two messages")

        # ------------------------------------------------------------------
        # Step 3: Grow the history until it compresses
        # ------------------------------------------------------------------
        print("\n[3/4] Filling the context until it compresses...")
        compressed = False
        for i in range(6):
            for event in engine.ask(f"Paragraph {i}: " + "lorem ipsum " * 120):
                if isinstance(event, MetaEvent) and event.info.get("type") == "compression":
                    compressed = True
                    print(
                        f"  Compressed {event.info['before_tokens']} -> "
                        f"{event.info['after_tokens']} tokens"
                    )
            print(f"  Tokens : {engine.token_status().percent}% of window")
        _check(compressed, "History should have been compressed")
        _check(engine.store.non_system()[0].summary, "First message should be the summary")

        # ------------------------------------------------------------------
        # Step 4: Save and resume
        # ------------------------------------------------------------------
        print("\n[4/4] Saving and resuming the session...")
        path = engine.save("golden")
        resumed = SessionEngine.open(config, registry, "golden", transport=CannedTransport())
        print(f"  Saved to: {path}")
        print(f"  Resumed : {len(resumed.store.non_system())} messages")
        _check(
            resumed.store.history() == engine.store.history(), "Resumed history should match"
        )

    print("\n" + "=" * 60)
    print("Golden path completed successfully")
    print("=" * 60)


if __name__ == "__main__":
    run_demo()
