"""OpenTelemetry tracing for turns, compression passes and provider requests.

Exporters: ``stdout``, ``otlp`` (needs the ``otlp`` extra) or ``none``.
"""

from __future__ import annotations

import contextlib
import logging
import os
from collections.abc import Generator
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor, SpanExporter
from opentelemetry.trace import NoOpTracer, Span, Tracer

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class TelemetryConfig:
    """Configuration for the chatmux tracing subsystem."""

    service_name: str = "chatmux"
    enabled: bool = True
    exporter: str = "none"  # "stdout" | "otlp" | "none"
    otlp_endpoint: str = "http://localhost:4317"

    @classmethod
    def from_env(cls) -> TelemetryConfig:
        return cls(
            exporter=os.environ.get("CHATMUX_TRACE_EXPORTER", "none"),
            otlp_endpoint=os.environ.get("CHATMUX_OTLP_ENDPOINT", "http://localhost:4317"),
        )


# ---------------------------------------------------------------------------
# ChatTracer
# ---------------------------------------------------------------------------


class ChatTracer:
    """Central tracer for chatmux.

    Wraps OpenTelemetry ``TracerProvider`` setup and provides helpers for
    creating spans and recording events.
    """

    def __init__(self, config: TelemetryConfig | None = None) -> None:
        self._config = config or TelemetryConfig()
        self._provider: TracerProvider | None = None
        self._tracer: Tracer = NoOpTracer()

    # -- lifecycle -----------------------------------------------------------

    def init(self) -> None:
        """Install a TracerProvider for the configured exporter."""
        cfg = self._config
        if not cfg.enabled:
            return
        exporter = _make_exporter(cfg)
        if exporter is None:
            return
        provider = TracerProvider(resource=Resource.create({"service.name": cfg.service_name}))
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        self._provider = provider
        self._tracer = provider.get_tracer(cfg.service_name)

    # -- span helpers --------------------------------------------------------

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
        current: bool = True,
    ) -> Generator[Span, None, None]:
        """Create a span as a context manager.

        With ``current=False`` the span is not attached to the active context;
        use this for spans that stay open across generator yields.
        """
        if current:
            with self._tracer.start_as_current_span(name) as s:
                _set_attributes(s, attributes)
                yield s
            return
        s = self._tracer.start_span(name)
        _set_attributes(s, attributes)
        try:
            yield s
        finally:
            s.end()

    def record_event(self, name: str, attributes: dict[str, Any] | None = None) -> None:
        """Attach an event to the active span; a no-op when nothing is recording."""
        active = trace.get_current_span()
        if active.is_recording():
            active.add_event(name, {k: v for k, v in (attributes or {}).items() if v is not None})

    def shutdown(self) -> None:
        """Flush pending spans and shut down the provider.

        Safe to call multiple times.
        """
        if self._provider is not None:
            self._provider.shutdown()
            self._provider = None


def _make_exporter(cfg: TelemetryConfig) -> SpanExporter | None:
    if cfg.exporter == "stdout":
        return ConsoleSpanExporter()
    if cfg.exporter == "otlp":
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:  # pragma: no cover
            logger.warning("otlp exporter requested but not installed; tracing disabled")
            return None
        return OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True)
    if cfg.exporter != "none":
        logger.warning("unknown trace exporter %r; tracing disabled", cfg.exporter)
    return None


def _set_attributes(span: Span, attributes: dict[str, Any] | None) -> None:
    if attributes:
        for k, v in attributes.items():
            if v is not None:
                span.set_attribute(k, v)


# ---------------------------------------------------------------------------
# Module-level default tracer
# ---------------------------------------------------------------------------

_DEFAULT_TRACER: ChatTracer | None = None


def get_tracer() -> ChatTracer:
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is None:
        _DEFAULT_TRACER = ChatTracer()
    return _DEFAULT_TRACER


def set_tracer(tracer: ChatTracer | None) -> None:
    """Install *tracer* as the default (``None`` restores a fresh noop tracer)."""
    global _DEFAULT_TRACER  # noqa: PLW0603
    _DEFAULT_TRACER = tracer


# ---------------------------------------------------------------------------
# Convenience context managers
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def trace_turn(session_id: str, model_id: str) -> Generator[Span, None, None]:
    """Trace one conversational turn. The span is not made current."""
    attrs = {"session.id": session_id, "chat.model": model_id}
    with get_tracer().span("session/turn", attrs, current=False) as s:
        yield s


@contextlib.contextmanager
def trace_compression(session_id: str, before_tokens: int) -> Generator[Span, None, None]:
    """Trace a history compression pass."""
    attrs = {"session.id": session_id, "compression.before_tokens": before_tokens}
    with get_tracer().span("context/compress", attrs) as s:
        yield s


@contextlib.contextmanager
def trace_http_request(provider: str, url: str) -> Generator[Span, None, None]:
    """Trace the issuance of one provider HTTP request."""
    with get_tracer().span("provider/request", {"chat.provider": provider, "http.url": url}) as s:
        yield s
