"""Error taxonomy shared by the registry, codecs, transport and engine."""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Normalized error kinds surfaced to callers."""

    UNKNOWN_MODEL = "unknown_model"
    DUPLICATE_MODEL = "duplicate_model"
    AUTH_FAILED = "auth_failed"
    RATE_LIMITED = "rate_limited"
    CONTEXT_TOO_LONG = "context_too_long"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    CANCELLED = "cancelled"
    MALFORMED_FRAME = "malformed_frame"
    UNKNOWN = "unknown"


class ChatError(Exception):
    """Base error carrying a normalized kind and a raw diagnostic detail."""

    def __init__(self, kind: ErrorKind, detail: str = "") -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind}: {detail}" if detail else str(kind))


class UnknownModelError(ChatError):
    """Raised when no registered provider matches a ``provider:name`` id."""

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(ErrorKind.UNKNOWN_MODEL, f"unknown model '{model_id}'")


class DuplicateModelError(ChatError):
    """Raised at registration time when a model key is registered twice."""

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(ErrorKind.DUPLICATE_MODEL, f"model '{model_id}' is already registered")


class ContextTooLongError(ChatError):
    """Raised when history cannot be brought under the model's input window."""

    def __init__(self, detail: str) -> None:
        super().__init__(ErrorKind.CONTEXT_TOO_LONG, detail)


class TransportError(ChatError):
    """Raised by the HTTP transport for connection failures and read timeouts."""


class EngineBusyError(RuntimeError):
    """Raised when a turn is started while another is still in flight."""
