"""Wire codecs — one variant per provider family."""

from __future__ import annotations

from ..specs import CodecKind, ProviderConfig
from .base import StreamState, WireCodec, classify_status
from .claude import ClaudeCodec
from .framing import Frame, iter_lines, iter_ndjson_frames, iter_sse_frames
from .gemini import GeminiCodec, VertexAICodec
from .ollama import OllamaCodec
from .openai import OpenAICodec, OpenAICompatibleCodec

CODECS: dict[CodecKind, type[WireCodec]] = {
    CodecKind.OPENAI: OpenAICodec,
    CodecKind.OPENAI_COMPATIBLE: OpenAICompatibleCodec,
    CodecKind.CLAUDE: ClaudeCodec,
    CodecKind.GEMINI: GeminiCodec,
    CodecKind.VERTEXAI: VertexAICodec,
    CodecKind.OLLAMA: OllamaCodec,
}


def codec_for(provider: ProviderConfig) -> WireCodec:
    """Instantiate the codec variant matching ``provider.kind``."""
    return CODECS[provider.kind](provider)


__all__ = [
    "CODECS",
    "ClaudeCodec",
    "Frame",
    "GeminiCodec",
    "OllamaCodec",
    "OpenAICodec",
    "OpenAICompatibleCodec",
    "StreamState",
    "VertexAICodec",
    "WireCodec",
    "classify_status",
    "codec_for",
    "iter_lines",
    "iter_ndjson_frames",
    "iter_sse_frames",
]
