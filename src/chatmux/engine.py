"""Session engine — drives one conversational turn at a time through a small FSM."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from .cancel import CancelToken
from .codecs import WireCodec
from .compression import CompressionReport, PromptSummaryStrategy, SummaryStrategy
from .config import ChatConfig
from .context import ContextStore
from .errors import ChatError, ContextTooLongError, EngineBusyError, ErrorKind
from .inputs import build_user_message
from .messages import (
    ChatEvent,
    ChatRequest,
    ChatRole,
    DeltaEvent,
    DoneEvent,
    ErrorEvent,
    Message,
    MetaEvent,
    UsageEvent,
)
from .registry import ProviderRegistry
from .roles import Role, RoleRegistry
from .session import Session, SessionStore, validate_session_id
from .specs import ModelSpec
from .telemetry import get_tracer, trace_compression, trace_http_request, trace_turn
from .tokens import MIN_COMPRESS_THRESHOLD, TokenAccountant, budget_remaining, should_compress
from .transport import HttpRequest, RequestsTransport, Transport

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Turn state machine
# ---------------------------------------------------------------------------


class TurnState(StrEnum):
    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"
    STREAMING_DELTA = "streaming_delta"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[TurnState, list[TurnState]] = {
    TurnState.IDLE: [TurnState.AWAITING_RESPONSE],
    TurnState.AWAITING_RESPONSE: [
        TurnState.STREAMING_DELTA,
        TurnState.COMPLETED,
        TurnState.FAILED,
    ],
    TurnState.STREAMING_DELTA: [
        TurnState.STREAMING_DELTA,
        TurnState.COMPLETED,
        TurnState.FAILED,
    ],
    TurnState.COMPLETED: [TurnState.IDLE],
    TurnState.FAILED: [TurnState.IDLE],
}


class TurnFSM(BaseModel):
    state: TurnState = TurnState.IDLE

    def can_transition(self, target: TurnState) -> bool:
        return target in _TRANSITIONS.get(self.state, [])

    def transition(self, target: TurnState) -> TurnFSM:
        if not self.can_transition(target):
            msg = f"Invalid transition: {self.state} -> {target}"
            raise ValueError(msg)
        return TurnFSM(state=target)


class TurnOutcome(BaseModel):
    """How the last turn ended."""

    state: TurnState
    error: ErrorEvent | None = None
    content: str = ""
    usage: UsageEvent | None = None


class TokenStatus(BaseModel):
    """Budget snapshot for the renderer."""

    running_total: int
    max_input_tokens: int

    @property
    def percent(self) -> float:
        return round(100.0 * self.running_total / self.max_input_tokens, 1)


_CANCELLED_DETAIL = "turn cancelled"


def _guard(chunks: Iterator[bytes], token: CancelToken) -> Iterator[bytes]:
    """Check *token* around every body read."""
    if token.cancelled:
        raise ChatError(ErrorKind.CANCELLED, _CANCELLED_DETAIL)
    for chunk in chunks:
        if token.cancelled:
            raise ChatError(ErrorKind.CANCELLED, _CANCELLED_DETAIL)
        yield chunk


# ---------------------------------------------------------------------------
# SessionEngine
# ---------------------------------------------------------------------------


class SessionEngine:
    """Owns one session: its context, token accounting and turn lifecycle.

    Only one turn may be in flight; :meth:`ask` raises
    :class:`EngineBusyError` otherwise. Nothing from a turn reaches the
    context store unless the turn completes.
    """

    def __init__(
        self,
        config: ChatConfig,
        registry: ProviderRegistry,
        transport: Transport | None = None,
        session: Session | None = None,
        strategy: SummaryStrategy | None = None,
        roles: RoleRegistry | None = None,
        sessions: SessionStore | None = None,
    ) -> None:
        self.config = config
        self._registry = registry
        self._transport = (
            transport
            if transport is not None
            else RequestsTransport(config.connect_timeout, config.read_timeout)
        )
        self._strategy = strategy or PromptSummaryStrategy(
            config.summarize_prompt, config.summary_prefix
        )
        self._roles = roles if roles is not None else RoleRegistry(config.roles)
        self._sessions = sessions if sessions is not None else SessionStore(config.sessions_dir)
        self._fsm = TurnFSM()
        self._last_outcome: TurnOutcome | None = None
        self._persisted = False

        if session is None:
            session = Session(model_id=config.model or self._default_model())
        self.session = session
        self._spec, self._codec = registry.resolve(session.model_id)
        self._accountant = TokenAccountant(self._codec.provider.kind)
        self._role: Role | None = None
        if session.role:
            try:
                self._role = self._roles.get(session.role)
            except KeyError:
                logger.warning("session %s uses unknown role %r", session.id, session.role)
        self._sync_tokens(reset=True)

    @classmethod
    def open(
        cls,
        config: ChatConfig,
        registry: ProviderRegistry,
        session_id: str,
        **kwargs: Any,
    ) -> SessionEngine:
        """Re-hydrate a saved session and continue it."""
        sessions = kwargs.pop("sessions", None) or SessionStore(config.sessions_dir)
        session = sessions.load(session_id)
        engine = cls(config, registry, session=session, sessions=sessions, **kwargs)
        engine._persisted = True
        return engine

    def _default_model(self) -> str:
        specs = self._registry.list()
        if not specs:
            msg = "no model configured and no provider registered"
            raise ChatError(ErrorKind.UNKNOWN_MODEL, msg)
        return specs[0].key

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> TurnState:
        return self._fsm.state

    @property
    def last_outcome(self) -> TurnOutcome | None:
        return self._last_outcome

    @property
    def store(self) -> ContextStore:
        return self.session.context

    @property
    def spec(self) -> ModelSpec:
        return self._spec

    @property
    def role(self) -> Role | None:
        return self._role

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def roles(self) -> RoleRegistry:
        return self._roles

    def token_status(self) -> TokenStatus:
        return TokenStatus(
            running_total=self._accountant.running_total,
            max_input_tokens=self._spec.max_input_tokens,
        )

    def info(self) -> dict[str, Any]:
        status = self.token_status()
        return {
            "session": self.session.id,
            "model": self._spec.key,
            "role": self._role.name if self._role else None,
            "messages": len(self.store.non_system()),
            "tokens": f"{status.running_total}/{status.max_input_tokens} ({status.percent}%)",
            "compress_threshold": self.config.compress_threshold,
            "stream": self.config.stream,
            "save_session": self.config.save_session,
        }

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    def _ensure_idle(self) -> None:
        if self._fsm.state != TurnState.IDLE:
            msg = f"a turn is already in progress (state: {self._fsm.state})"
            raise EngineBusyError(msg)

    def set_model(self, model_id: str) -> ModelSpec:
        self._ensure_idle()
        spec, codec = self._registry.resolve(model_id)
        self._spec, self._codec = spec, codec
        self.session.model_id = spec.key
        self._accountant.set_kind(codec.provider.kind)
        self._sync_tokens(reset=True)
        logger.debug("session %s switched to %s", self.session.id, spec.key)
        return spec

    def set_role(self, role: str | Role | None) -> Role | None:
        """Switch role by name or instance; ``None`` leaves the current role."""
        self._ensure_idle()
        if isinstance(role, str):
            role = self._roles.get(role)
        self._role = role
        if role is None:
            self.store.set_system(None)
        elif role.embedded:
            self.store.set_system(None)
            self.store.role_name = role.name
        else:
            self.store.set_system(role.system_message(), role.name)
        self.session.role = role.name if role else None
        self._sync_tokens(reset=True)
        return role

    def clear_messages(self) -> None:
        self._ensure_idle()
        self.store.clear()
        self._sync_tokens(reset=True)

    def save(self, name: str | None = None) -> Path:
        """Write the session to disk, optionally under a new id."""
        self._ensure_idle()
        if name is not None:
            self.session.id = validate_session_id(name)
        path = self._sessions.save(self.session)
        self._persisted = True
        return path

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def ask(
        self,
        text: str,
        files: Sequence[str] = (),
        cancel: CancelToken | None = None,
        keep_partial: bool = False,
    ) -> Iterator[ChatEvent]:
        """Start a turn and return its event stream.

        Local problems (busy engine, unsupported media, empty input) raise
        immediately; everything after that ends the stream with exactly one
        ``DoneEvent`` or ``ErrorEvent``. Closing the iterator early cancels
        the turn.

        Raises:
            EngineBusyError: If another turn is still in flight.
            ChatError: If the input carries media the model cannot accept.
        """
        self._ensure_idle()
        user = build_user_message(text, files)
        if not user.content:
            msg = "empty input"
            raise ValueError(msg)
        if user.has_media and not self._spec.supports_vision:
            msg = f"model {self._spec.key} does not accept images"
            raise ChatError(ErrorKind.UNKNOWN, msg)
        pending = self._role.apply(user) if self._role is not None else user
        return self._run_turn(pending, cancel or CancelToken(), keep_partial)

    def chat(
        self,
        text: str,
        files: Sequence[str] = (),
        cancel: CancelToken | None = None,
    ) -> str:
        """Run a turn to completion and return the assistant text.

        Raises:
            ChatError: If the turn ends with an error event.
        """
        parts: list[str] = []
        for event in self.ask(text, files, cancel=cancel):
            if isinstance(event, DeltaEvent):
                parts.append(event.text)
            elif isinstance(event, DoneEvent):
                return "".join(parts) if parts else (event.content or "")
            elif isinstance(event, ErrorEvent):
                raise event.to_exception()
        return "".join(parts)

    def _run_turn(
        self, pending: Message, token: CancelToken, keep_partial: bool
    ) -> Iterator[ChatEvent]:
        self._ensure_idle()
        self._transition(TurnState.AWAITING_RESPONSE)
        parts: list[str] = []
        usage: UsageEvent | None = None
        finished = False
        with trace_turn(self.session.id, self._spec.key) as span:
            try:
                try:
                    report = self._prepare(pending, token)
                    request = self._build_request(pending)
                    http_request = self._codec.encode(request, self._spec)
                except ChatError as exc:
                    kind = ErrorKind.CANCELLED if token.cancelled else exc.kind
                    error = ErrorEvent(kind=kind, detail=exc.detail)
                    self._fail(pending, parts, error, keep_partial)
                    finished = True
                    span.set_attribute("turn.outcome", str(error.kind))
                    yield error
                    return
                if report is not None:
                    yield MetaEvent(info=report.as_info())

                events = self._exchange(http_request, request.stream, token)
                try:
                    for event in events:
                        if token.cancelled:
                            event = ErrorEvent(kind=ErrorKind.CANCELLED, detail=_CANCELLED_DETAIL)
                        if isinstance(event, DeltaEvent):
                            self._transition(TurnState.STREAMING_DELTA)
                            parts.append(event.text)
                            yield event
                        elif isinstance(event, UsageEvent):
                            usage = event
                            yield event
                        elif isinstance(event, MetaEvent):
                            yield event
                        elif isinstance(event, DoneEvent):
                            content = "".join(parts) if parts else (event.content or "")
                            self._complete(pending, content, event.usage or usage)
                            finished = True
                            span.set_attribute("turn.outcome", "completed")
                            yield event
                            return
                        else:
                            self._fail(pending, parts, event, keep_partial)
                            finished = True
                            span.set_attribute("turn.outcome", str(event.kind))
                            yield event
                            return
                finally:
                    events.close()
            except BaseException as exc:
                if not finished:
                    token.cancel()
                    if isinstance(exc, GeneratorExit | KeyboardInterrupt):
                        error = ErrorEvent(kind=ErrorKind.CANCELLED, detail=_CANCELLED_DETAIL)
                    else:
                        error = ErrorEvent(kind=ErrorKind.UNKNOWN, detail=repr(exc))
                    self._fail(pending, parts, error, keep_partial)
                    span.set_attribute("turn.outcome", str(error.kind))
                raise

    def _prepare(self, pending: Message, token: CancelToken) -> CompressionReport | None:
        """Compress if the budget demands it, then fail fast if the request cannot fit."""
        spec = self._spec
        projected = self._accountant.running_total + self._accountant.estimate(pending)
        threshold = max(MIN_COMPRESS_THRESHOLD, min(self.config.compress_threshold, spec.max_input_tokens))
        report = None
        if self.store.non_system() and should_compress(projected, spec.max_input_tokens, threshold):
            report = self._compress(threshold, token)
            projected = self._accountant.running_total + self._accountant.estimate(pending)
        if budget_remaining(projected, spec.max_input_tokens) < 0:
            msg = f"request needs ~{projected} tokens but {spec.key} accepts {spec.max_input_tokens}"
            raise ContextTooLongError(msg)
        return report

    def _compress(self, threshold: int, token: CancelToken) -> CompressionReport:
        """Summarize the history down to the target; failure is fatal to the turn."""
        store = self.store
        target = self.config.compress_target or threshold // 2
        before = store.history()

        def summarize(prefix: Sequence[Message]) -> Message:
            prompt = self._strategy.build_prompt(store.system, prefix)
            return self._strategy.to_summary(self._summarize(prompt, token))

        with trace_compression(self.session.id, self._accountant.running_total) as span:
            try:
                report = store.compress(summarize, target, self._accountant.estimate)
            except ContextTooLongError as exc:
                logger.warning("session %s: compression failed: %s", self.session.id, exc.detail)
                get_tracer().record_event("compression.failed", {"reason": exc.detail})
                raise
            span.set_attribute("compression.after_tokens", report.after_tokens)

        if self.config.archive_compressed and (self.config.save_session or self._persisted):
            self._sessions.archive(self.session.id, before)
        self._sync_tokens(reset=True)
        return report

    def _summarize(self, messages: Sequence[Message], token: CancelToken) -> str:
        """Nested non-streaming request; never triggers compression itself."""
        request = ChatRequest(
            model_id=self._spec.key,
            messages=tuple(messages),
            temperature=self.config.temperature,
            top_p=self.config.top_p,
            stream=False,
        )
        events = self._exchange(self._codec.encode(request, self._spec), False, token)
        try:
            for event in events:
                if isinstance(event, ErrorEvent):
                    raise event.to_exception()
                if isinstance(event, DoneEvent):
                    return event.content or ""
        finally:
            events.close()
        msg = "summary request ended without a result"
        raise ChatError(ErrorKind.UNKNOWN, msg)

    def _build_request(self, pending: Message) -> ChatRequest:
        role = self._role
        temperature = self.config.temperature
        top_p = self.config.top_p
        if role is not None:
            temperature = role.temperature if role.temperature is not None else temperature
            top_p = role.top_p if role.top_p is not None else top_p
        return ChatRequest(
            model_id=self._spec.key,
            messages=(*self.store.history(), pending),
            temperature=temperature,
            top_p=top_p,
            stream=self.config.stream,
        )

    def _exchange(
        self, http_request: HttpRequest, stream: bool, token: CancelToken
    ) -> Iterator[ChatEvent]:
        """One HTTP attempt; every failure becomes a terminal error event."""
        try:
            yield from self._open_and_decode(self._codec, http_request, stream, token)
        except Exception as exc:
            if token.cancelled:
                yield ErrorEvent(kind=ErrorKind.CANCELLED, detail=_CANCELLED_DETAIL)
            elif isinstance(exc, ChatError):
                yield ErrorEvent(kind=exc.kind, detail=exc.detail)
            else:
                raise

    def _open_and_decode(
        self,
        codec: WireCodec,
        http_request: HttpRequest,
        stream: bool,
        token: CancelToken,
    ) -> Iterator[ChatEvent]:
        if token.cancelled:
            raise ChatError(ErrorKind.CANCELLED, _CANCELLED_DETAIL)
        logger.debug("session %s: %s %s", self.session.id, http_request.method, http_request.url)
        with trace_http_request(codec.provider.name, http_request.url):
            response = self._transport.open(http_request, stream=stream)
        unregister = token.on_cancel(response.close)
        try:
            if response.status_code >= 400:
                body = response.read()
                logger.debug("provider %s returned HTTP %s", codec.provider.name, response.status_code)
                yield codec.decode_error(response.status_code, body)
                return
            if stream:
                yield from codec.decode_stream(_guard(response.iter_bytes(), token))
            else:
                body = b"".join(_guard(response.iter_bytes(), token))
                yield codec.decode_nonstream(body)
        finally:
            unregister()
            response.close()

    # ------------------------------------------------------------------
    # Commit points
    # ------------------------------------------------------------------

    def _transition(self, target: TurnState) -> None:
        self._fsm = self._fsm.transition(target)

    def _sync_tokens(self, reset: bool = False) -> None:
        history = self.store.history()
        if reset:
            self._accountant.reset(history)
        else:
            self._accountant.recompute(history)
        self.session.token_usage_running_total = self._accountant.running_total

    def _complete(self, pending: Message, content: str, usage: UsageEvent | None) -> None:
        self.store.extend((pending, Message.of(ChatRole.ASSISTANT, content)))
        if usage is not None and usage.total_tokens > 0:
            self._accountant.reconcile(usage, self.store.history())
            self.session.token_usage_running_total = self._accountant.running_total
        else:
            self._sync_tokens()
        self._transition(TurnState.COMPLETED)
        self._last_outcome = TurnOutcome(state=TurnState.COMPLETED, content=content, usage=usage)
        if self.config.save_session:
            try:
                self._sessions.save(self.session)
                self._persisted = True
            except OSError:
                logger.exception("autosave of session %s failed", self.session.id)
        self._transition(TurnState.IDLE)

    def _fail(
        self, pending: Message, parts: list[str], error: ErrorEvent, keep_partial: bool
    ) -> None:
        partial = "".join(parts)
        if keep_partial and error.kind == ErrorKind.CANCELLED and partial:
            self.store.extend((pending, Message.of(ChatRole.ASSISTANT, partial)))
            self._sync_tokens()
        logger.warning("session %s: turn failed (%s) %s", self.session.id, error.kind, error.detail)
        self._transition(TurnState.FAILED)
        self._last_outcome = TurnOutcome(state=TurnState.FAILED, error=error, content=partial)
        self._transition(TurnState.IDLE)
