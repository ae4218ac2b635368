"""chatmux — multi-provider LLM chat client core."""

from __future__ import annotations

__version__ = "0.1.0"

from .cancel import CancelToken
from .codecs import (
    ClaudeCodec,
    GeminiCodec,
    OllamaCodec,
    OpenAICodec,
    OpenAICompatibleCodec,
    VertexAICodec,
    WireCodec,
    codec_for,
)
from .compression import CompressionReport, PromptSummaryStrategy, SummaryStrategy
from .config import ChatConfig
from .context import ContextSnapshot, ContextStore
from .engine import SessionEngine, TokenStatus, TurnOutcome, TurnState
from .errors import (
    ChatError,
    ContextTooLongError,
    DuplicateModelError,
    EngineBusyError,
    ErrorKind,
    TransportError,
    UnknownModelError,
)
from .messages import (
    ChatEvent,
    ChatRequest,
    ChatRole,
    DeltaEvent,
    DoneEvent,
    ErrorEvent,
    MediaPart,
    Message,
    MetaEvent,
    TextPart,
    UsageEvent,
)
from .registry import ProviderRegistry
from .roles import Role, RoleRegistry
from .session import Session, SessionStore
from .specs import CodecKind, ModelEntry, ModelSpec, ProviderConfig
from .telemetry import ChatTracer, TelemetryConfig
from .tokens import TokenAccountant, budget_remaining, should_compress
from .transport import HttpRequest, HttpResponse, RequestsTransport, Transport

__all__ = [
    "CancelToken",
    "ChatConfig",
    "ChatError",
    "ChatEvent",
    "ChatRequest",
    "ChatRole",
    "ChatTracer",
    "ClaudeCodec",
    "CodecKind",
    "CompressionReport",
    "ContextSnapshot",
    "ContextStore",
    "ContextTooLongError",
    "DeltaEvent",
    "DoneEvent",
    "DuplicateModelError",
    "EngineBusyError",
    "ErrorEvent",
    "ErrorKind",
    "GeminiCodec",
    "HttpRequest",
    "HttpResponse",
    "MediaPart",
    "Message",
    "MetaEvent",
    "ModelEntry",
    "ModelSpec",
    "OllamaCodec",
    "OpenAICodec",
    "OpenAICompatibleCodec",
    "PromptSummaryStrategy",
    "ProviderConfig",
    "ProviderRegistry",
    "RequestsTransport",
    "Role",
    "RoleRegistry",
    "Session",
    "SessionEngine",
    "SessionStore",
    "SummaryStrategy",
    "TelemetryConfig",
    "TextPart",
    "TokenAccountant",
    "TokenStatus",
    "Transport",
    "TransportError",
    "TurnOutcome",
    "TurnState",
    "UnknownModelError",
    "UsageEvent",
    "WireCodec",
    "budget_remaining",
    "codec_for",
    "should_compress",
]
