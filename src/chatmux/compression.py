"""Summary strategies used when session history is compressed."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass

from .messages import ChatRole, Message

DEFAULT_SUMMARIZE_PROMPT = (
    "Summarize the discussion briefly in 200 words or less to use as a prompt for future context."
)
DEFAULT_SUMMARY_PREFIX = "This is a summary of the chat history as a recap: "


class SummaryStrategy(ABC):
    """Policy deciding what the model is asked and how its answer is stored."""

    @abstractmethod
    def build_prompt(self, system: Message | None, prefix: Sequence[Message]) -> list[Message]:
        """Messages sent to the model to summarize *prefix*."""

    @abstractmethod
    def to_summary(self, text: str) -> Message:
        """Wrap the model's answer as the synthetic summary message."""


class PromptSummaryStrategy(SummaryStrategy):
    """Replays the prefix and appends a user instruction asking for a summary."""

    def __init__(
        self,
        summarize_prompt: str = DEFAULT_SUMMARIZE_PROMPT,
        summary_prefix: str = DEFAULT_SUMMARY_PREFIX,
    ) -> None:
        self.summarize_prompt = summarize_prompt
        self.summary_prefix = summary_prefix

    def build_prompt(self, system: Message | None, prefix: Sequence[Message]) -> list[Message]:
        messages = [system] if system is not None else []
        messages.extend(prefix)
        messages.append(Message.of(ChatRole.USER, self.summarize_prompt))
        return messages

    def to_summary(self, text: str) -> Message:
        return Message.of(ChatRole.ASSISTANT, f"{self.summary_prefix}{text.strip()}", summary=True)


@dataclass
class CompressionReport:
    """Outcome of one compression pass."""

    before_tokens: int
    after_tokens: int
    replaced_messages: int
    kept_messages: int

    def as_info(self) -> dict[str, int | str]:
        return {
            "type": "compression",
            "before_tokens": self.before_tokens,
            "after_tokens": self.after_tokens,
            "replaced_messages": self.replaced_messages,
            "kept_messages": self.kept_messages,
        }
