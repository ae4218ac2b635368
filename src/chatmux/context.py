"""Context store — ordered conversation history with compression and serialization."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence

from pydantic import BaseModel, Field

from .compression import CompressionReport
from .errors import ContextTooLongError
from .messages import ChatRole, Message

logger = logging.getLogger(__name__)

Summarizer = Callable[[Sequence[Message]], Message]
Estimator = Callable[[Message], int]


class ContextSnapshot(BaseModel):
    """Serialized form of a context store."""

    role: str | None = None
    messages: list[Message] = Field(default_factory=list)


class ContextStore:
    """Ordered history of one session.

    The system/role message, when present, is always first and is never
    compressed or truncated. Everything else keeps insertion order.
    """

    def __init__(self, system: Message | None = None, role_name: str | None = None) -> None:
        self._system: Message | None = None
        self._role_name: str | None = None
        self._messages: list[Message] = []
        if system is not None:
            self.set_system(system, role_name)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def system(self) -> Message | None:
        return self._system

    @property
    def role_name(self) -> str | None:
        return self._role_name

    @role_name.setter
    def role_name(self, name: str | None) -> None:
        self._role_name = name

    def history(self) -> tuple[Message, ...]:
        """Read-only view of the full history, system message first."""
        if self._system is None:
            return tuple(self._messages)
        return (self._system, *self._messages)

    def non_system(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages) + (1 if self._system is not None else 0)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def set_system(self, message: Message | None, role_name: str | None = None) -> None:
        """Install, replace or remove (``None``) the leading system message."""
        if message is not None and message.role != ChatRole.SYSTEM:
            msg = f"system message must have role 'system', got '{message.role}'"
            raise ValueError(msg)
        self._system = message
        self._role_name = role_name if message is not None else None

    def append(self, message: Message) -> None:
        if message.role == ChatRole.SYSTEM:
            msg = "use set_system() for system messages"
            raise ValueError(msg)
        self._messages.append(message)

    def extend(self, messages: Iterable[Message]) -> None:
        for message in messages:
            self.append(message)

    def clear(self) -> None:
        """Erase conversation messages, keeping the system/role message."""
        self._messages.clear()

    def compress(self, summarizer: Summarizer, target: int, estimate: Estimator) -> CompressionReport:
        """Replace older messages with one summary message.

        The most recent messages that fit in half of *target* (starting at a
        user message) are kept untouched; everything before them is handed to
        *summarizer* and replaced by its result. Destructive and irreversible.

        Raises:
            ContextTooLongError: If there is nothing to compress, or the result
                is not smaller than the original or still above *target*.
        """
        messages = self._messages
        if not messages:
            msg = "history is empty; nothing to compress"
            raise ContextTooLongError(msg)

        before = sum(estimate(m) for m in self.history())
        keep_budget = target // 2
        split = len(messages)
        kept = 0
        for index in range(len(messages) - 1, -1, -1):
            cost = estimate(messages[index])
            if kept + cost > keep_budget:
                break
            kept += cost
            split = index
        while split < len(messages) and messages[split].role != ChatRole.USER:
            split += 1
        if split == 0:
            split = len(messages)

        prefix = messages[:split]
        suffix = messages[split:]
        summary = summarizer(tuple(prefix))
        if summary.role == ChatRole.SYSTEM:
            msg = "summarizer returned a system message"
            raise ValueError(msg)

        after = sum(estimate(m) for m in (summary, *suffix))
        if self._system is not None:
            after += estimate(self._system)
        if after >= before:
            msg = f"compression did not reduce the context ({before} -> {after} tokens)"
            raise ContextTooLongError(msg)
        if after > target:
            msg = f"compressed context still exceeds the target ({after} > {target} tokens)"
            raise ContextTooLongError(msg)

        self._messages = [summary, *suffix]
        logger.info(
            "compressed %d messages into a summary (%d -> %d tokens)", len(prefix), before, after
        )
        return CompressionReport(
            before_tokens=before,
            after_tokens=after,
            replaced_messages=len(prefix),
            kept_messages=len(suffix),
        )

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def snapshot(self) -> ContextSnapshot:
        return ContextSnapshot(role=self._role_name, messages=list(self.history()))

    def serialize(self) -> str:
        """Deterministic JSON encoding; ``serialize(deserialize(s)) == s``."""
        return self.snapshot().model_dump_json(indent=2)

    @classmethod
    def from_snapshot(cls, snapshot: ContextSnapshot) -> ContextStore:
        store = cls()
        for message in snapshot.messages:
            if message.role == ChatRole.SYSTEM:
                if store._system is not None or store._messages:
                    msg = "system message must be the first message"
                    raise ValueError(msg)
                store.set_system(message, snapshot.role)
            else:
                store.append(message)
        store._role_name = snapshot.role
        return store

    @classmethod
    def deserialize(cls, data: str | bytes) -> ContextStore:
        return cls.from_snapshot(ContextSnapshot.model_validate_json(data))
